"""
Playback signal graph.

    sources -> DynamicsCompressor -> gain -> SpectrumAnalyser -> output
       \
        +--> source taps (recording)

The graph is a pull renderer: the output device callback (or a test)
calls render(frames) and receives the next block of the playback timeline.
The timeline clock is frames_rendered / sample_rate, so offline rendering
is deterministic.

Threading:
- start_source() / ScheduledSource.stop() / parameter changes run on the
  event loop.
- render() runs on the output device thread.
- The source list is guarded by a lock held only for list copies and
  removals; DSP happens outside it.
- Natural-completion callbacks are marshalled back through `dispatch`
  (loop.call_soon_threadsafe in production) so ActiveSourceSet bookkeeping
  stays on the loop.
"""

from __future__ import annotations

import itertools
import math
import threading
from typing import Callable

import numpy as np

from audio.analyser import SpectrumAnalyser
from audio.compressor import DynamicsCompressor
from audio.frames import DecodedBuffer
from audio.params import AudioParam
from constants import (
    DEFAULT_VOLUME,
    ENHANCER_OFF_RATIO,
    ENHANCER_OFF_THRESHOLD_DB,
    ENHANCER_ON_KNEE_DB,
    ENHANCER_ON_RATIO,
    ENHANCER_ON_THRESHOLD_DB,
    ENHANCER_RAMP_TIME_CONSTANT_S,
    PLAYBACK_SAMPLE_RATE_HZ,
    VOLUME_RAMP_TIME_CONSTANT_S,
)

Dispatch = Callable[[Callable[[], None]], None]
BlockTap = Callable[[np.ndarray], None]


def _call_now(fn: Callable[[], None]) -> None:
    fn()


def check_playback_rate(rate: float) -> float:
    """Return rate as a float; NaN, infinite and non-positive rates are rejected."""
    if not math.isfinite(rate) or rate <= 0:
        raise ValueError(f"playback rate must be a finite number > 0, got {rate!r}")
    return float(rate)


class ScheduledSource:
    """
    One decoded buffer placed on the playback timeline.

    Created by PlaybackGraph.start_source(); never constructed directly.
    """

    def __init__(
        self,
        *,
        source_id: int,
        buffer: DecodedBuffer,
        start_time: float,
        playback_rate: float,
        on_ended: Callable[[ScheduledSource], None] | None,
    ) -> None:
        self.source_id = source_id
        self.buffer = buffer
        self.start_time = start_time
        self.playback_rate = check_playback_rate(playback_rate)
        self.on_ended = on_ended

        # Mono mixdown read by the renderer
        self._mono = buffer.samples.mean(axis=0, dtype=np.float32) if buffer.channels > 1 else buffer.samples[0]
        self._position = 0.0
        self.stopped = False
        self.ended = False

    @property
    def finished(self) -> bool:
        return self.stopped or self.ended

    def stop(self) -> None:
        """Silence immediately. No natural-completion callback fires afterwards."""
        self.stopped = True

    def set_playback_rate(self, rate: float) -> None:
        self.playback_rate = check_playback_rate(rate)

    def render_into(self, out: np.ndarray, block_start: float, sample_rate_hz: int) -> bool:
        """
        Add this source's contribution to out.

        Returns True when the source reached its natural end in this block.
        """
        if self.finished:
            return False

        frames = out.shape[0]
        offset = int(round((self.start_time - block_start) * sample_rate_hz))
        if offset >= frames:
            return False
        offset = max(offset, 0)

        rate = self.playback_rate
        count = frames - offset
        positions = self._position + rate * np.arange(count, dtype=np.float64)
        total = self._mono.shape[0]
        valid = positions < total
        n_valid = int(np.count_nonzero(valid))
        if n_valid:
            out[offset:offset + n_valid] += np.interp(
                positions[:n_valid],
                np.arange(total, dtype=np.float64),
                self._mono,
            ).astype(np.float32)
        self._position += rate * count

        if self._position >= total:
            self.ended = True
            return True
        return False


class PlaybackGraph:
    """
    Static playback chain with live-tunable volume and enhancer.

    Playback-rate changes are applied per source by the scheduler.
    """

    def __init__(
        self,
        *,
        sample_rate_hz: int = PLAYBACK_SAMPLE_RATE_HZ,
        volume: float = DEFAULT_VOLUME,
        enhancer: bool = True,
        dispatch: Dispatch = _call_now,
    ) -> None:
        self.sample_rate_hz = sample_rate_hz
        self._dispatch = dispatch

        self.compressor = DynamicsCompressor(sample_rate_hz=sample_rate_hz)
        self.gain = AudioParam("gain", volume, min_value=0.0)
        self.analyser = SpectrumAnalyser()

        self._apply_enhancer_preset(enhancer, at_time=None)

        self._sources: list[ScheduledSource] = []
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._source_taps: list[BlockTap] = []

        self._frames_rendered = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------------

    @property
    def current_time(self) -> float:
        """Playback-timeline time of the next frame to be rendered."""
        return self._frames_rendered / self.sample_rate_hz

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def start_source(
        self,
        buffer: DecodedBuffer,
        when: float,
        *,
        playback_rate: float = 1.0,
        on_ended: Callable[[ScheduledSource], None] | None = None,
    ) -> ScheduledSource:
        if buffer.sample_rate_hz != self.sample_rate_hz:
            raise ValueError(
                f"buffer rate {buffer.sample_rate_hz} Hz does not match "
                f"graph rate {self.sample_rate_hz} Hz"
            )
        source = ScheduledSource(
            source_id=next(self._ids),
            buffer=buffer,
            start_time=when,
            playback_rate=playback_rate,
            on_ended=on_ended,
        )
        with self._lock:
            self._sources.append(source)
        return source

    def add_source_tap(self, tap: BlockTap) -> None:
        """Receive each rendered block of the raw source mix (pre-dynamics)."""
        self._source_taps.append(tap)

    def remove_source_tap(self, tap: BlockTap) -> None:
        if tap in self._source_taps:
            self._source_taps.remove(tap)

    # ------------------------------------------------------------------
    # Live parameters
    # ------------------------------------------------------------------

    def set_volume(self, volume: float) -> None:
        self.gain.set_target_at_time(volume, self.current_time, VOLUME_RAMP_TIME_CONSTANT_S)

    def set_enhancer(self, enabled: bool) -> None:
        self._apply_enhancer_preset(enabled, at_time=self.current_time)

    def _apply_enhancer_preset(self, enabled: bool, *, at_time: float | None) -> None:
        comp = self.compressor
        if at_time is None:
            if enabled:
                comp.threshold.set_value(ENHANCER_ON_THRESHOLD_DB)
                comp.knee.set_value(ENHANCER_ON_KNEE_DB)
                comp.ratio.set_value(ENHANCER_ON_RATIO)
            else:
                comp.threshold.set_value(ENHANCER_OFF_THRESHOLD_DB)
                comp.ratio.set_value(ENHANCER_OFF_RATIO)
            return

        tau = ENHANCER_RAMP_TIME_CONSTANT_S
        if enabled:
            comp.threshold.set_target_at_time(ENHANCER_ON_THRESHOLD_DB, at_time, tau)
            comp.knee.set_target_at_time(ENHANCER_ON_KNEE_DB, at_time, tau)
            comp.ratio.set_target_at_time(ENHANCER_ON_RATIO, at_time, tau)
        else:
            comp.threshold.set_target_at_time(ENHANCER_OFF_THRESHOLD_DB, at_time, tau)
            comp.ratio.set_target_at_time(ENHANCER_OFF_RATIO, at_time, tau)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render(self, frames: int) -> np.ndarray:
        """Render the next `frames` samples of the timeline (mono float32)."""
        block_start = self.current_time
        mix = np.zeros(frames, dtype=np.float32)

        if self._closed:
            self._frames_rendered += frames
            return mix

        with self._lock:
            active = list(self._sources)

        ended: list[ScheduledSource] = []
        for source in active:
            if source.render_into(mix, block_start, self.sample_rate_hz):
                ended.append(source)

        with self._lock:
            self._sources = [s for s in self._sources if not s.finished]

        for tap in list(self._source_taps):
            tap(mix)

        out = self.compressor.process(mix, block_start)
        out *= self.gain.block_values(block_start, frames, self.sample_rate_hz).astype(np.float32)
        self.analyser.observe(out)

        self._frames_rendered += frames

        for source in ended:
            callback = source.on_ended
            if callback is not None:
                self._dispatch(lambda s=source, cb=callback: cb(s))
        return out

    def active_source_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._sources if not s.finished)

    def close(self) -> None:
        """Stop all sources and render silence from now on. Idempotent."""
        if self._closed:
            return
        self._closed = True
        with self._lock:
            for source in self._sources:
                source.stop()
            self._sources.clear()
        self._source_taps.clear()
