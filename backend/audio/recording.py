"""
Conversation recording mixer.

Independent of the playback graph's lifecycle:
- start(): begin accepting both sides of the conversation
- on_mic_frame(): raw microphone frames (capture thread, capture rate)
- on_output_block(): synthesized voice blocks (render thread, playback rate)
- stop(): flush, finalize into one WAV artifact, reset

The microphone is resampled to the playback rate (polyphase, scipy) and
mixed sample-for-sample with the voice blocks. Mixed audio is kept as
encoded PCM16 chunks until stop().
"""

from __future__ import annotations

import io
import math
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone

import numpy as np
import soundfile as sf
from scipy import signal

from audio.pcm import float32_to_pcm16le
from constants import (
    CAPTURE_SAMPLE_RATE_HZ,
    PLAYBACK_SAMPLE_RATE_HZ,
    RECORDING_MIME_TYPE,
)
from errors import RecordingError
from observability.logger import log_event


@dataclass(frozen=True)
class RecordingArtifact:
    """Finalized recording, ready for download."""
    data: bytes
    mime_type: str
    filename: str
    sample_rate_hz: int
    duration_s: float


def artifact_filename(label: str, when: datetime | None = None) -> str:
    stamp = (when or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S")
    safe_label = "".join(c if c.isalnum() or c in "-_" else "_" for c in label) or "call"
    return f"session-{safe_label}-{stamp}.wav"


class RecordingMixer:
    """Tee of local microphone + remote voice into a recording sink."""

    def __init__(
        self,
        *,
        label: str = "call",
        session_id: str | None = None,
        sample_rate_hz: int = PLAYBACK_SAMPLE_RATE_HZ,
        mic_sample_rate_hz: int = CAPTURE_SAMPLE_RATE_HZ,
    ) -> None:
        self._label = label
        self._session_id = session_id
        self.sample_rate_hz = sample_rate_hz

        g = math.gcd(sample_rate_hz, mic_sample_rate_hz)
        self._up = sample_rate_hz // g
        self._down = mic_sample_rate_hz // g

        self._lock = threading.Lock()
        self._mic_fifo: deque[np.ndarray] = deque()
        self._mic_fifo_len = 0
        self._chunks: list[bytes] = []
        self._recording = False

    @property
    def is_recording(self) -> bool:
        return self._recording

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, *, input_available: bool) -> None:
        """
        Begin a new recording.

        Raises:
            RecordingError if there is no live input stream or a recording
            is already running.
        """
        if not input_available:
            raise RecordingError("Audio stream not available.")
        if self._recording:
            raise RecordingError("Recording already in progress.")

        with self._lock:
            self._mic_fifo.clear()
            self._mic_fifo_len = 0
            self._chunks = []
            self._recording = True

        log_event({
            "event_type": "recording_started",
            "session_id": self._session_id,
        })

    def stop(self) -> RecordingArtifact | None:
        """
        Finalize captured chunks into a WAV artifact.

        Returns None if no recording was running. Idempotent.
        """
        if not self._recording:
            return None

        with self._lock:
            self._recording = False
            leftover = self._pop_mic(self._mic_fifo_len)
            if leftover.size:
                self._chunks.append(float32_to_pcm16le(leftover))
            chunks, self._chunks = self._chunks, []

        pcm = np.frombuffer(b"".join(chunks), dtype="<i2")
        buf = io.BytesIO()
        sf.write(buf, pcm, self.sample_rate_hz, format="WAV", subtype="PCM_16")

        artifact = RecordingArtifact(
            data=buf.getvalue(),
            mime_type=RECORDING_MIME_TYPE,
            filename=artifact_filename(self._label),
            sample_rate_hz=self.sample_rate_hz,
            duration_s=pcm.size / self.sample_rate_hz,
        )
        log_event({
            "event_type": "recording_stopped",
            "session_id": self._session_id,
            "duration_s": round(artifact.duration_s, 3),
            "bytes": len(artifact.data),
        })
        return artifact

    # ------------------------------------------------------------------
    # Taps
    # ------------------------------------------------------------------

    def on_mic_frame(self, frame: np.ndarray) -> None:
        """Raw microphone frame at the capture rate (capture thread)."""
        if not self._recording:
            return
        mono = np.asarray(frame, dtype=np.float32)
        if mono.ndim == 2:
            mono = mono[:, 0]
        if self._up != self._down:
            mono = signal.resample_poly(mono, self._up, self._down).astype(np.float32)
        with self._lock:
            self._mic_fifo.append(mono)
            self._mic_fifo_len += mono.size

    def on_output_block(self, block: np.ndarray) -> None:
        """Synthesized voice block at the playback rate (render thread)."""
        if not self._recording:
            return
        with self._lock:
            mic = self._pop_mic(block.shape[0])
            mixed = block.astype(np.float32, copy=True)
            mixed[: mic.size] += mic
            self._chunks.append(float32_to_pcm16le(mixed))

    def _pop_mic(self, count: int) -> np.ndarray:
        """Take up to count mic samples from the FIFO. Caller holds the lock."""
        parts: list[np.ndarray] = []
        needed = count
        while needed > 0 and self._mic_fifo:
            head = self._mic_fifo[0]
            if head.size <= needed:
                parts.append(self._mic_fifo.popleft())
                needed -= head.size
            else:
                parts.append(head[:needed])
                self._mic_fifo[0] = head[needed:]
                needed = 0
        taken = count - needed
        self._mic_fifo_len -= taken
        if not parts:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(parts)
