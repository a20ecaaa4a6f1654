"""
Smoothed, automatable audio parameters.

An AudioParam holds one "set target at time" automation: starting at
start_time it approaches target exponentially with time constant tau:

    v(t) = target + (v0 - target) * exp(-(t - start_time) / tau)

Live settings changes go through set_target_at_time() so gain and
compressor changes glide instead of clicking.

Threading:
- Writers (event loop) replace the automation tuple in one assignment.
- Readers (render thread) read it once per block and never observe a
  half-updated automation.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class _Automation:
    start_value: float
    target: float
    start_time: float
    time_constant: float

    def value_at(self, t: float) -> float:
        if t < self.start_time:
            return self.start_value
        if self.time_constant <= 0.0:
            return self.target
        decay = math.exp(-(t - self.start_time) / self.time_constant)
        return self.target + (self.start_value - self.target) * decay


class AudioParam:
    """A single named parameter on a graph node."""

    def __init__(
        self,
        name: str,
        value: float,
        *,
        min_value: float = -math.inf,
        max_value: float = math.inf,
    ) -> None:
        self.name = name
        self._min = min_value
        self._max = max_value
        self._automation = _Automation(
            start_value=self._clamp(value),
            target=self._clamp(value),
            start_time=0.0,
            time_constant=0.0,
        )

    def _clamp(self, value: float) -> float:
        return min(max(float(value), self._min), self._max)

    @property
    def target(self) -> float:
        """Value the parameter is heading towards."""
        return self._automation.target

    def set_value(self, value: float) -> None:
        """Jump immediately (used only at construction time)."""
        v = self._clamp(value)
        self._automation = _Automation(v, v, 0.0, 0.0)

    def set_target_at_time(self, target: float, start_time: float, time_constant: float) -> None:
        """
        Begin an exponential approach to target at start_time.

        The approach starts from wherever the current automation would be
        at start_time, so overlapping changes stay continuous.
        """
        current = self._automation
        self._automation = _Automation(
            start_value=current.value_at(start_time),
            target=self._clamp(target),
            start_time=start_time,
            time_constant=max(0.0, float(time_constant)),
        )

    def value_at(self, t: float) -> float:
        return self._automation.value_at(t)

    def block_values(self, start_time: float, frames: int, sample_rate_hz: int) -> np.ndarray:
        """Per-sample values for a render block starting at start_time."""
        automation = self._automation
        times = start_time + np.arange(frames, dtype=np.float64) / sample_rate_hz
        if automation.time_constant <= 0.0:
            return np.where(
                times < automation.start_time,
                automation.start_value,
                automation.target,
            )
        elapsed = np.maximum(times - automation.start_time, 0.0)
        decay = np.exp(-elapsed / automation.time_constant)
        values = automation.target + (automation.start_value - automation.target) * decay
        return np.where(times < automation.start_time, automation.start_value, values)
