"""PCM conversion utilities."""
from __future__ import annotations

import base64
import binascii

import numpy as np

from audio.frames import AudioChunk, DecodedBuffer, MediaPayload
from constants import (
    CAPTURE_SAMPLE_RATE_HZ,
    OUTBOUND_MIME_TYPE,
    PCM16_DECODE_DIVISOR,
    PCM16_NEGATIVE_SCALE,
    PCM16_POSITIVE_SCALE,
    PCM16_SAMPLE_WIDTH_BYTES,
)
from errors import ChunkDecodeError


def float32_to_pcm16le(samples: np.ndarray) -> bytes:
    """
    Convert float samples to PCM16 little-endian bytes.

    Values are clamped to [-1.0, 1.0] first. Negative values scale by 32768
    and non-negative by 32767 so that both -1.0 and 1.0 are exactly
    representable and nothing can wrap.
    """
    clamped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(
        clamped < 0,
        clamped * PCM16_NEGATIVE_SCALE,
        clamped * PCM16_POSITIVE_SCALE,
    )
    # Truncate toward zero, matching Int16Array assignment semantics
    return np.trunc(scaled).astype("<i2").tobytes()


def pcm16le_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """
    Convert PCM16 little-endian bytes to float32 in [-1.0, 1.0).

    No resampling. No channel handling (see decode_chunk).
    """
    remainder = len(pcm_bytes) % PCM16_SAMPLE_WIDTH_BYTES
    if remainder:
        # Truncated sample; drop the dangling byte
        pcm_bytes = pcm_bytes[: len(pcm_bytes) - remainder]

    audio_i16 = np.frombuffer(pcm_bytes, dtype="<i2")
    return audio_i16.astype(np.float32) / PCM16_DECODE_DIVISOR


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_base64(data: str) -> bytes:
    """
    Strict base64 decode.

    Raises:
        ChunkDecodeError on malformed input.
    """
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ChunkDecodeError(f"invalid base64 audio payload: {exc}") from exc


def to_media_payload(chunk: AudioChunk) -> MediaPayload:
    """Wrap an outbound capture chunk for the transport."""
    if chunk.sample_rate_hz != CAPTURE_SAMPLE_RATE_HZ:
        raise ValueError(
            f"outbound audio must be {CAPTURE_SAMPLE_RATE_HZ} Hz, "
            f"got {chunk.sample_rate_hz}"
        )
    return MediaPayload(
        data=encode_base64(chunk.pcm_bytes),
        mime_type=OUTBOUND_MIME_TYPE,
        sequence_num=chunk.sequence_num,
    )


def decode_chunk(chunk: AudioChunk) -> DecodedBuffer:
    """
    De-interleave an AudioChunk into a (channels, frames) float buffer.

    Raises:
        ChunkDecodeError if the chunk is empty or not frame-aligned.
    """
    if chunk.channels <= 0:
        raise ChunkDecodeError(f"invalid channel count: {chunk.channels}")

    samples = pcm16le_to_float32(chunk.pcm_bytes)
    if samples.size == 0:
        raise ChunkDecodeError("empty audio chunk")
    if samples.size % chunk.channels != 0:
        raise ChunkDecodeError(
            f"{samples.size} samples do not divide into {chunk.channels} channels"
        )

    frames = samples.size // chunk.channels
    planar = samples.reshape(frames, chunk.channels).T.copy()
    return DecodedBuffer(
        samples=planar,
        sample_rate_hz=chunk.sample_rate_hz,
        sequence_num=chunk.sequence_num,
    )
