"""
Block-based dynamics compressor.

Static curve (soft knee, all values in dB):

    x <  T - K/2           : y = x
    x >  T + K/2           : y = T + (x - T) / R
    otherwise              : y = x + (1/R - 1) * (x - T + K/2)^2 / (2K)

The detector measures each render block's peak. The gain reduction follows
it with a one-pole smoother (attack when reduction grows, release when it
shrinks) and is interpolated linearly across the block to avoid steps.

threshold, knee and ratio are AudioParams so enhancer toggles ramp.
attack and release are fixed.
"""

from __future__ import annotations

import math

import numpy as np

from audio.params import AudioParam
from constants import (
    COMPRESSOR_ATTACK_S,
    COMPRESSOR_DEFAULT_KNEE_DB,
    COMPRESSOR_RELEASE_S,
    ENHANCER_OFF_RATIO,
    ENHANCER_OFF_THRESHOLD_DB,
)

_SILENCE_DB = -160.0


def static_curve_db(level_db: float, threshold_db: float, knee_db: float, ratio: float) -> float:
    """Output level in dB for a steady input level."""
    if ratio <= 1.0:
        return level_db
    slope = 1.0 / ratio
    half_knee = knee_db / 2.0
    if knee_db > 0.0 and abs(level_db - threshold_db) <= half_knee:
        over = level_db - threshold_db + half_knee
        return level_db + (slope - 1.0) * over * over / (2.0 * knee_db)
    if level_db > threshold_db + half_knee:
        return threshold_db + (level_db - threshold_db) * slope
    return level_db


class DynamicsCompressor:
    """Compressor stage of the playback graph."""

    def __init__(self, *, sample_rate_hz: int) -> None:
        self._sample_rate_hz = sample_rate_hz
        self.threshold = AudioParam("threshold", ENHANCER_OFF_THRESHOLD_DB, min_value=-100.0, max_value=0.0)
        self.knee = AudioParam("knee", COMPRESSOR_DEFAULT_KNEE_DB, min_value=0.0, max_value=40.0)
        self.ratio = AudioParam("ratio", ENHANCER_OFF_RATIO, min_value=1.0, max_value=20.0)
        self.attack_s = COMPRESSOR_ATTACK_S
        self.release_s = COMPRESSOR_RELEASE_S

        self._reduction_db = 0.0

    @property
    def reduction_db(self) -> float:
        """Current gain reduction (<= 0). Read-only metering."""
        return self._reduction_db

    def _coefficient(self, time_s: float, block_s: float) -> float:
        if time_s <= 0.0:
            return 0.0
        return math.exp(-block_s / time_s)

    def process(self, block: np.ndarray, start_time: float) -> np.ndarray:
        """
        Compress one mono block. Returns a new array.

        start_time is the playback-timeline time of the block's first frame,
        used to evaluate the parameter ramps.
        """
        frames = block.shape[0]
        if frames == 0:
            return block.copy()

        threshold = self.threshold.value_at(start_time)
        knee = self.knee.value_at(start_time)
        ratio = self.ratio.value_at(start_time)

        peak = float(np.max(np.abs(block)))
        level_db = 20.0 * math.log10(peak) if peak > 0.0 else _SILENCE_DB
        target_db = static_curve_db(level_db, threshold, knee, ratio) - level_db

        block_s = frames / self._sample_rate_hz
        previous = self._reduction_db
        if target_db < previous:
            coef = self._coefficient(self.attack_s, block_s)
        else:
            coef = self._coefficient(self.release_s, block_s)
        current = target_db + (previous - target_db) * coef
        self._reduction_db = current

        gains_db = np.linspace(previous, current, frames, dtype=np.float64)
        gains = np.power(10.0, gains_db / 20.0)
        return (block * gains).astype(np.float32)
