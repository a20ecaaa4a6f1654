"""
Microphone frame encoder.

Responsibilities:
- Convert fixed-size float mono frames to PCM16 AudioChunks
- Assign monotonic sequence numbers to produced chunks
- Drop frames while muted (no chunk, no transport call)
- Hand chunks to the transport without ever blocking the capture callback

Threading:
- on_frame() runs on the device's capture thread. It only encodes and
  posts the payload to the event loop with call_soon_threadsafe.
- A single sender task on the loop drains the outbound queue in order,
  so chunks reach the transport in sequence order.
- Send failures are logged and swallowed; capture keeps going.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable

import numpy as np

from audio.frames import AudioChunk, MediaPayload
from audio.pcm import float32_to_pcm16le, to_media_payload
from constants import CAPTURE_CHANNELS, CAPTURE_SAMPLE_RATE_HZ
from observability.logger import log_event
from observability.metrics import emit_counters

SendFn = Callable[[MediaPayload], Awaitable[None]]
# Outbound backlog bound (frames). ~6.5 s of audio at 2048 samples/16 kHz.
_MAX_PENDING_FRAMES = 50


@dataclass
class EncoderCounters:
    """Counters for observability."""
    produced: int = 0
    muted_dropped: int = 0
    backlog_dropped: int = 0
    send_failures: int = 0


class CaptureEncoder:
    """
    Encodes captured frames and forwards them to the transport.

    Lifecycle:
        encoder = CaptureEncoder(send=transport.send_audio_frame, loop=loop)
        encoder.start()          # on the loop
        ... device thread calls encoder.on_frame(samples) ...
        await encoder.close()
    """

    def __init__(
        self,
        *,
        send: SendFn,
        loop: asyncio.AbstractEventLoop,
        session_id: str | None = None,
        sample_rate_hz: int = CAPTURE_SAMPLE_RATE_HZ,
    ) -> None:
        self._send = send
        self._loop = loop
        self._session_id = session_id
        self._sample_rate_hz = sample_rate_hz

        self._muted = False
        self._next_seq = 1
        self._closed = False

        self._queue: asyncio.Queue[MediaPayload] | None = None
        self._sender: asyncio.Task[None] | None = None
        self.counters = EncoderCounters()

    # ------------------------------------------------------------------
    # Mute
    # ------------------------------------------------------------------

    @property
    def muted(self) -> bool:
        return self._muted

    def set_muted(self, muted: bool) -> None:
        """Takes effect on the next captured frame."""
        self._muted = muted

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the sender task. Must be called on the event loop."""
        if self._sender is not None:
            return
        self._queue = asyncio.Queue(maxsize=_MAX_PENDING_FRAMES)
        self._sender = self._loop.create_task(self._drain())

    async def close(self) -> None:
        """Stop sending. Idempotent; pending frames are discarded."""
        if self._closed:
            return
        self._closed = True
        sender, self._sender = self._sender, None
        if sender is not None and not sender.done():
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
        emit_counters("capture_encoder", asdict(self.counters), session_id=self._session_id)

    # ------------------------------------------------------------------
    # Capture path
    # ------------------------------------------------------------------

    def encode(self, frame: np.ndarray) -> AudioChunk:
        """
        Encode one mono frame to a PCM16 chunk and assign its sequence number.

        Accepts (n,) or (n, 1) arrays as delivered by capture callbacks.
        """
        mono = np.asarray(frame)
        if mono.ndim == 2:
            mono = mono[:, 0]
        chunk = AudioChunk(
            sequence_num=self._next_seq,
            pcm_bytes=float32_to_pcm16le(mono),
            sample_rate_hz=self._sample_rate_hz,
            channels=CAPTURE_CHANNELS,
        )
        self._next_seq += 1
        return chunk

    def on_frame(self, frame: np.ndarray) -> AudioChunk | None:
        """
        Capture callback entry point.

        Returns the produced chunk, or None if the frame was dropped.
        Never blocks and never raises into the audio thread.
        """
        if self._closed:
            return None
        if self._muted:
            self.counters.muted_dropped += 1
            return None

        chunk = self.encode(frame)
        self.counters.produced += 1

        payload = to_media_payload(chunk)
        try:
            self._loop.call_soon_threadsafe(self._enqueue, payload)
        except RuntimeError:
            # Loop already closed during teardown
            self.counters.send_failures += 1
        return chunk

    # ------------------------------------------------------------------
    # Loop side
    # ------------------------------------------------------------------

    def _enqueue(self, payload: MediaPayload) -> None:
        if self._queue is None or self._closed:
            return
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.counters.backlog_dropped += 1
            log_event({
                "event_type": "capture_backlog_drop",
                "session_id": self._session_id,
                "sequence_num": payload.sequence_num,
            })

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            payload = await self._queue.get()
            try:
                await self._send(payload)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pylint: disable=broad-exception-caught
                self.counters.send_failures += 1
                log_event({
                    "event_type": "capture_send_failed",
                    "session_id": self._session_id,
                    "sequence_num": payload.sequence_num,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })
