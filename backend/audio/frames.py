"""
Audio frame primitives.

Pure data containers only.
No queues, no timing logic, no device access.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from constants import PCM16_SAMPLE_WIDTH_BYTES


@dataclass(frozen=True)
class AudioChunk:
    """
    Immutable block of interleaved PCM16 little-endian samples.

    sequence_num:
        Monotonic arrival/production number, assigned by the producer
        (CaptureEncoder for outbound, LiveCall for inbound).

    pcm_bytes:
        Raw interleaved PCM16 little-endian bytes.
    """
    sequence_num: int
    pcm_bytes: bytes
    sample_rate_hz: int
    channels: int = 1

    @property
    def frame_count(self) -> int:
        """Number of sample frames (samples per channel)."""
        return len(self.pcm_bytes) // (PCM16_SAMPLE_WIDTH_BYTES * self.channels)

    @property
    def duration_s(self) -> float:
        return self.frame_count / self.sample_rate_hz


@dataclass(frozen=True)
class MediaPayload:
    """
    Transport-ready outbound media: base64 PCM tagged with a MIME type.

    This is what the transport receives; it never sees float samples.
    """
    data: str
    mime_type: str
    sequence_num: int


@dataclass
class DecodedBuffer:
    """
    Float samples in [-1.0, 1.0] decoded from one AudioChunk.

    samples:
        float32 array shaped (channels, frames). Mutable in place, but only
        by AutoGainNormalizer and only before scheduling.
    """
    samples: np.ndarray
    sample_rate_hz: int
    sequence_num: int = 0

    @property
    def channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def frame_count(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration_s(self) -> float:
        """Natural (rate 1.0) playback duration in seconds."""
        return self.frame_count / self.sample_rate_hz

    def channel(self, index: int) -> np.ndarray:
        """Writable view of one channel's samples."""
        return self.samples[index]
