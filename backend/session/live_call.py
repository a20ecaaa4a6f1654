"""
LiveCall: everything owned by one connection attempt.

One LiveCall == one transport session + one pair of processing contexts.
The supervisor builds a fresh LiveCall on every (re)initialization and
tears the previous one down first.

Owns:
- capture context (microphone stream) and CaptureEncoder
- playback context (output stream), PlaybackGraph and PlaybackScheduler
- the transport session

Borrows (owned by the supervisor, outlive a single call):
- SettingsStore (read as complete snapshots)
- TranscriptAccumulator
- RecordingMixer

Threading:
- _on_mic_frame runs on the capture thread
- _render runs on the output thread
- everything else runs on the event loop
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import numpy as np

from audio.auto_gain import AutoGainNormalizer
from audio.capture_encoder import CaptureEncoder
from audio.devices import AudioBackend, StreamHandle
from audio.frames import AudioChunk
from audio.graph import PlaybackGraph
from audio.pcm import decode_base64
from audio.recording import RecordingArtifact, RecordingMixer
from audio.scheduler import PlaybackScheduler
from constants import (
    CAPTURE_CHUNK_SAMPLES,
    CAPTURE_SAMPLE_RATE_HZ,
    PLAYBACK_BLOCK_FRAMES,
    PLAYBACK_CHANNELS,
    PLAYBACK_SAMPLE_RATE_HZ,
)
from errors import ChunkDecodeError
from observability.logger import log_event
from observability.metrics import timed
from session.settings import AudioSettings, SettingsStore
from session.transcript import TranscriptAccumulator
from transport.base import ServerMessage, TransportCallbacks, TransportSession

RecordingSink = Callable[[RecordingArtifact], None]


class LiveCall:
    """Explicit owned session object; replaces ad-hoc references into the graph."""

    def __init__(
        self,
        *,
        session_id: str,
        loop: asyncio.AbstractEventLoop,
        settings: SettingsStore,
        transcript: TranscriptAccumulator,
        mixer: RecordingMixer,
        muted: bool = False,
        input_device: int | str | None = None,
        output_device: int | str | None = None,
        on_recording: RecordingSink | None = None,
    ) -> None:
        self.session_id = session_id
        self._loop = loop
        self._settings = settings
        self.transcript = transcript
        self.mixer = mixer
        self._muted = muted
        self._input_device = input_device
        self._output_device = output_device
        self._on_recording = on_recording

        self.normalizer = AutoGainNormalizer()
        self.graph: PlaybackGraph | None = None
        self.scheduler: PlaybackScheduler | None = None
        self.encoder: CaptureEncoder | None = None
        self.transport: TransportSession | None = None

        self._input: StreamHandle | None = None
        self._output: StreamHandle | None = None
        self._inbound_seq = 0
        self._torn_down = False

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def open_audio(self, backend: AudioBackend) -> None:
        """
        Acquire both processing contexts and the microphone.

        Raises:
            AudioContextInitError, CaptureAcquisitionError (subclasses).
            Whatever was opened before the failure is released by teardown().
        """
        snapshot = self._settings.current
        self.graph = PlaybackGraph(
            sample_rate_hz=PLAYBACK_SAMPLE_RATE_HZ,
            volume=snapshot.volume,
            enhancer=snapshot.enhancer,
            dispatch=self._dispatch_to_loop,
        )
        self.scheduler = PlaybackScheduler(self.graph, session_id=self.session_id)

        self._output = backend.open_output(
            sample_rate_hz=PLAYBACK_SAMPLE_RATE_HZ,
            block_frames=PLAYBACK_BLOCK_FRAMES,
            render=self._render,
            device=self._output_device,
        )
        self._output.start()

        self._input = backend.open_input(
            sample_rate_hz=CAPTURE_SAMPLE_RATE_HZ,
            block_frames=CAPTURE_CHUNK_SAMPLES,
            callback=self._on_mic_frame,
            device=self._input_device,
        )
        self._input.start()

    async def open_transport(
        self,
        transport: TransportSession,
        callbacks: TransportCallbacks,
    ) -> None:
        self.transport = transport
        await transport.open(callbacks)

    def start_capture(self) -> None:
        """Begin encoding and sending microphone frames (on session open)."""
        if self.encoder is not None or self.transport is None or self._input is None:
            return
        encoder = CaptureEncoder(
            send=self.transport.send_audio_frame,
            loop=self._loop,
            session_id=self.session_id,
        )
        encoder.set_muted(self._muted)
        encoder.start()
        self.encoder = encoder

    @property
    def input_available(self) -> bool:
        return self._input is not None and not self._input.closed

    # ------------------------------------------------------------------
    # Device callbacks
    # ------------------------------------------------------------------

    def _dispatch_to_loop(self, fn: Callable[[], None]) -> None:
        try:
            self._loop.call_soon_threadsafe(fn)
        except RuntimeError:
            pass  # loop closed

    def _on_mic_frame(self, frame: np.ndarray) -> None:
        self.mixer.on_mic_frame(frame)
        encoder = self.encoder
        if encoder is not None:
            encoder.on_frame(frame)

    def _render(self, frames: int) -> np.ndarray:
        graph = self.graph
        if graph is None:
            return np.zeros(frames, dtype=np.float32)
        return graph.render(frames)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_message(self, message: ServerMessage) -> None:
        """
        Apply one inbound message: audio, transcript deltas, turn flags.

        Runs on the event loop, so the cursor and ActiveSourceSet have a
        single writer.
        """
        if message.audio_data:
            self._schedule_audio(message.audio_data)

        if message.input_transcription:
            self.transcript.add_input_delta(message.input_transcription)
        if message.output_transcription:
            self.transcript.add_output_delta(message.output_transcription)

        if message.turn_complete:
            self.transcript.complete_turn()

        if message.interrupted and self.scheduler is not None:
            with timed("interruption_to_silence", session_id=self.session_id):
                self.scheduler.interrupt()

    def _schedule_audio(self, data: str) -> None:
        scheduler = self.scheduler
        if scheduler is None or self.graph is None or self.graph.closed:
            return

        self._inbound_seq += 1
        try:
            pcm = decode_base64(data)
        except ChunkDecodeError as exc:
            log_event({
                "event_type": "chunk_decode_failed",
                "session_id": self.session_id,
                "sequence_num": self._inbound_seq,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            return

        # One snapshot per chunk: speed and autoLevel are read together
        snapshot = self._settings.current
        chunk = AudioChunk(
            sequence_num=self._inbound_seq,
            pcm_bytes=pcm,
            sample_rate_hz=PLAYBACK_SAMPLE_RATE_HZ,
            channels=PLAYBACK_CHANNELS,
        )
        scheduler.schedule_chunk(
            chunk,
            playback_rate=snapshot.speed,
            normalizer=self.normalizer if snapshot.auto_level else None,
        )

    # ------------------------------------------------------------------
    # Live controls
    # ------------------------------------------------------------------

    def set_muted(self, muted: bool) -> None:
        self._muted = muted
        if self.encoder is not None:
            self.encoder.set_muted(muted)

    def set_volume(self, volume: float) -> None:
        if self.graph is not None:
            self.graph.set_volume(volume)

    def set_enhancer(self, enabled: bool) -> None:
        if self.graph is not None:
            self.graph.set_enhancer(enabled)

    def set_speed(self, speed: float) -> None:
        if self.scheduler is not None:
            self.scheduler.set_playback_rate(speed)

    def apply_settings(self, settings: AudioSettings, changed: frozenset[str]) -> None:
        """Push changed fields of a settings snapshot into the live graph."""
        if "volume" in changed:
            self.set_volume(settings.volume)
        if "enhancer" in changed:
            self.set_enhancer(settings.enhancer)
        if "speed" in changed:
            self.set_speed(settings.speed)
        # auto_level is read per chunk

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def start_recording(self) -> None:
        """
        Raises:
            RecordingError if no microphone stream is open or a recording
            is already running.
        """
        self.mixer.start(input_available=self.input_available)
        if self.graph is not None:
            self.graph.add_source_tap(self.mixer.on_output_block)

    def stop_recording(self) -> RecordingArtifact | None:
        if self.graph is not None:
            self.graph.remove_source_tap(self.mixer.on_output_block)
        artifact = self.mixer.stop()
        if artifact is not None and self._on_recording is not None:
            self._on_recording(artifact)
        return artifact

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self) -> None:
        """
        Release everything this call owns. Idempotent.

        Each step runs even if an earlier one failed.
        """
        if self._torn_down:
            return
        self._torn_down = True

        await self._step("recording", self._stop_recording_if_active)
        await self._step("capture_encoder", self._close_encoder)
        await self._step("capture_stream", self._close_input)
        await self._step("playback_stream", self._close_output)
        await self._step("playback_graph", self._close_graph)
        await self._step("transport", self._close_transport)

    async def _step(self, name: str, fn: Callable[[], Awaitable[None]]) -> None:
        try:
            await fn()
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "teardown_step_failed",
                "session_id": self.session_id,
                "step": name,
                "exception": type(exc).__name__,
                "message": str(exc),
            })

    async def _stop_recording_if_active(self) -> None:
        if self.mixer.is_recording:
            self.stop_recording()

    async def _close_encoder(self) -> None:
        encoder, self.encoder = self.encoder, None
        if encoder is not None:
            await encoder.close()

    async def _close_input(self) -> None:
        handle = self._input
        if handle is not None and not handle.closed:
            handle.close()

    async def _close_output(self) -> None:
        handle = self._output
        if handle is not None and not handle.closed:
            handle.close()

    async def _close_graph(self) -> None:
        if self.graph is not None:
            self.graph.close()

    async def _close_transport(self) -> None:
        transport, self.transport = self.transport, None
        if transport is not None:
            await transport.close()
