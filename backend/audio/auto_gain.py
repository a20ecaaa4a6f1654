"""
Per-chunk peak-based loudness normalization.

Each inbound chunk is leveled independently, per channel:
- peak <= AUTO_GAIN_SILENCE_PEAK: channel left untouched (no noise-floor boost)
- otherwise gain = AUTO_GAIN_TARGET_PEAK / peak, clamped to
  [AUTO_GAIN_MIN, AUTO_GAIN_MAX], applied in place

No smoothing across chunks: quiet passages (breaths) come up quickly and
loud ones are pulled down, at the cost of some chunk-to-chunk level jumps.
"""

from __future__ import annotations

import numpy as np

from audio.frames import DecodedBuffer
from constants import (
    AUTO_GAIN_MAX,
    AUTO_GAIN_MIN,
    AUTO_GAIN_SILENCE_PEAK,
    AUTO_GAIN_TARGET_PEAK,
)


def compute_gain(peak: float) -> float | None:
    """
    Gain multiplier for a channel with the given absolute peak.

    Returns None when the channel counts as near-silence and must not be
    modified.
    """
    if peak <= AUTO_GAIN_SILENCE_PEAK:
        return None
    gain = AUTO_GAIN_TARGET_PEAK / peak
    return max(AUTO_GAIN_MIN, min(gain, AUTO_GAIN_MAX))


class AutoGainNormalizer:
    """
    Stateless peak normalizer.

    Kept as a class so the session can hold one instance and tests can
    substitute it; there is no inter-chunk state.
    """

    def apply(self, buffer: DecodedBuffer) -> list[float | None]:
        """
        Normalize every channel of buffer in place.

        Returns:
            Applied gain per channel (None where the channel was skipped).
        """
        applied: list[float | None] = []
        for c in range(buffer.channels):
            data = buffer.channel(c)
            peak = float(np.max(np.abs(data))) if data.size else 0.0
            gain = compute_gain(peak)
            if gain is not None:
                data *= np.float32(gain)
            applied.append(gain)
        return applied
