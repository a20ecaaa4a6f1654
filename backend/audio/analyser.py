"""
Read-only spectrum analysis tap.

Behaves like a browser AnalyserNode:
- keeps the last fft_size output samples
- Blackman window, magnitude FFT normalized by fft_size
- exponential smoothing between reads (smoothing constant)
- byte data maps [min_db, max_db] onto 0..255

The tap only copies samples out of the signal path. It never modifies
the block it observes.
"""

from __future__ import annotations

import threading

import numpy as np
from scipy import signal

from constants import (
    ANALYSER_FFT_SIZE,
    ANALYSER_MAX_DB,
    ANALYSER_MIN_DB,
    ANALYSER_SMOOTHING,
)


class SpectrumAnalyser:
    """Frequency-domain observer on the playback graph output."""

    def __init__(
        self,
        *,
        fft_size: int = ANALYSER_FFT_SIZE,
        smoothing: float = ANALYSER_SMOOTHING,
        min_db: float = ANALYSER_MIN_DB,
        max_db: float = ANALYSER_MAX_DB,
    ) -> None:
        if fft_size <= 0 or fft_size & (fft_size - 1):
            raise ValueError("fft_size must be a positive power of two")
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_db = min_db
        self.max_db = max_db

        self._window = signal.get_window("blackman", fft_size, fftbins=False).astype(np.float32)
        self._ring = np.zeros(fft_size, dtype=np.float32)
        self._smoothed = np.zeros(fft_size // 2, dtype=np.float64)
        self._lock = threading.Lock()

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def observe(self, block: np.ndarray) -> None:
        """Record the most recent output samples (render thread)."""
        n = block.shape[0]
        if n == 0:
            return
        with self._lock:
            if n >= self.fft_size:
                self._ring[:] = block[-self.fft_size:]
            else:
                self._ring[:-n] = self._ring[n:]
                self._ring[-n:] = block

    def float_frequency_data(self) -> np.ndarray:
        """Smoothed magnitudes in dB, one value per bin."""
        with self._lock:
            frame = self._ring.copy()
        spectrum = np.fft.rfft(frame * self._window)[: self.frequency_bin_count]
        magnitude = np.abs(spectrum) / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * magnitude
        with np.errstate(divide="ignore"):
            db = 20.0 * np.log10(self._smoothed)
        return np.where(np.isfinite(db), db, -np.inf)

    def byte_frequency_data(self) -> np.ndarray:
        """Magnitudes scaled into 0..255 over [min_db, max_db]."""
        db = self.float_frequency_data()
        scaled = 255.0 * (db - self.min_db) / (self.max_db - self.min_db)
        return np.clip(np.nan_to_num(scaled, neginf=0.0), 0, 255).astype(np.uint8)
