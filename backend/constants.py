"""
CONSTANTS
---------
Single source of truth for all behavioral invariants in the system.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Other modules MUST import from this file.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Capture (outbound) audio format: PCM16 mono @ 16kHz
# =============================================================================

CAPTURE_SAMPLE_RATE_HZ: Final[int] = 16_000
CAPTURE_CHANNELS: Final[int] = 1

# Samples per captured frame. Latency/throughput trade-off, not negotiated.
CAPTURE_CHUNK_SAMPLES: Final[int] = 2048

OUTBOUND_MIME_TYPE: Final[str] = f"audio/pcm;rate={CAPTURE_SAMPLE_RATE_HZ}"

# =============================================================================
# Playback (inbound) audio format: PCM16 mono @ 24kHz
# =============================================================================

PLAYBACK_SAMPLE_RATE_HZ: Final[int] = 24_000
PLAYBACK_CHANNELS: Final[int] = 1

# Frames rendered per output device callback
PLAYBACK_BLOCK_FRAMES: Final[int] = 512

# =============================================================================
# PCM16 scaling
# =============================================================================

PCM16_SAMPLE_WIDTH_BYTES: Final[int] = 2
PCM16_NEGATIVE_SCALE: Final[float] = 32768.0
PCM16_POSITIVE_SCALE: Final[float] = 32767.0
PCM16_DECODE_DIVISOR: Final[float] = 32768.0

# =============================================================================
# Auto gain (per-chunk peak normalization)
# =============================================================================

AUTO_GAIN_SILENCE_PEAK: Final[float] = 0.01
AUTO_GAIN_TARGET_PEAK: Final[float] = 0.75
AUTO_GAIN_MIN: Final[float] = 0.5
AUTO_GAIN_MAX: Final[float] = 3.0

# =============================================================================
# Dynamics compressor ("enhancer")
# =============================================================================

ENHANCER_ON_THRESHOLD_DB: Final[float] = -30.0
ENHANCER_ON_KNEE_DB: Final[float] = 10.0
ENHANCER_ON_RATIO: Final[float] = 20.0

# Pass-through: knee is left wherever it was (threshold 0 dBFS, ratio 1:1)
ENHANCER_OFF_THRESHOLD_DB: Final[float] = 0.0
ENHANCER_OFF_RATIO: Final[float] = 1.0

# Default compressor parameters before any preset is applied
COMPRESSOR_DEFAULT_KNEE_DB: Final[float] = 30.0

COMPRESSOR_ATTACK_S: Final[float] = 0.002
COMPRESSOR_RELEASE_S: Final[float] = 0.2

# =============================================================================
# Parameter smoothing (exponential approach time constants)
# =============================================================================

VOLUME_RAMP_TIME_CONSTANT_S: Final[float] = 0.05
ENHANCER_RAMP_TIME_CONSTANT_S: Final[float] = 0.1

# =============================================================================
# Analysis tap
# =============================================================================

ANALYSER_FFT_SIZE: Final[int] = 256
ANALYSER_SMOOTHING: Final[float] = 0.5
ANALYSER_MIN_DB: Final[float] = -100.0
ANALYSER_MAX_DB: Final[float] = -30.0

# =============================================================================
# Audio settings defaults
# =============================================================================

DEFAULT_VOLUME: Final[float] = 3.5
DEFAULT_SPEED: Final[float] = 1.0
DEFAULT_ENHANCER: Final[bool] = True
DEFAULT_AUTO_LEVEL: Final[bool] = True

# =============================================================================
# Reconnection policy
# =============================================================================

MAX_TRANSIENT_RETRIES: Final[int] = 3
RETRY_DELAY_MS: Final[int] = 2_000

# Websocket close codes for abnormal closure and server-side unavailability
TRANSIENT_CLOSE_CODES: Final[Tuple[int, ...]] = (1006, 1011, 1012, 1013, 1014)

# Case-sensitive substrings identifying a transient transport failure
TRANSIENT_ERROR_PATTERNS: Final[Tuple[str, ...]] = (
    "unavailable",
    "503",
    "aborted",
)

ERROR_MESSAGE_MAX_CHARS: Final[int] = 60

# =============================================================================
# Summarization
# =============================================================================

SUMMARY_MIN_TRANSCRIPT_ITEMS: Final[int] = 2
SUMMARY_MAX_WORDS: Final[int] = 100

# =============================================================================
# Recording
# =============================================================================

RECORDING_MIME_TYPE: Final[str] = "audio/wav"
RECORDING_ERROR_CLEAR_S: Final[float] = 5.0

# =============================================================================
# Connectivity probing
# =============================================================================

CONNECTIVITY_CHECK_PORT: Final[int] = 443
CONNECTIVITY_CHECK_TIMEOUT_S: Final[float] = 3.0

