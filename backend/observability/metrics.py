"""
Metric events for the live audio pipeline.

Two kinds, both emitted as single JSONL events via observability.logger:
- METRIC_TIMER: a monotonic duration (interruption-to-silence, summary latency)
- METRIC_COUNTER: a point-in-time count (frames produced, frames dropped)

Nothing is aggregated in-process.
"""

from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

from observability.logger import log_event


# timer_id -> (metric_name, start_time_ns)
_active_timers: dict[str, tuple[str, int]] = {}


def start_timer(name: str) -> str:
    """
    Start a monotonic timer and return its opaque id.

    Pair with stop_timer() in a finally block, or use timed().
    """
    timer_id = f"timer_{uuid.uuid4().hex[:12]}"
    _active_timers[timer_id] = (name, time.monotonic_ns())
    return timer_id


def stop_timer(
    timer_id: str,
    *,
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> float | None:
    """
    Stop a timer and emit METRIC_TIMER.

    Returns:
        Duration in milliseconds, or None for an unknown timer_id.
    """
    entry = _active_timers.pop(timer_id, None)
    if entry is None:
        return None

    name, start_ns = entry
    duration_ms = (time.monotonic_ns() - start_ns) / 1_000_000

    log_event({
        "event_type": "METRIC_TIMER",
        "metric": name,
        "value_ms": round(duration_ms, 3),
        "session_id": session_id,
        "details": details or {},
    })
    return duration_ms


@contextmanager
def timed(
    name: str,
    *,
    session_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[None]:
    """
    Time the enclosed block. Exactly one metric is emitted, even when the
    block raises; exceptions propagate.

    Usage:
        with timed("interruption_to_silence", session_id=call.session_id):
            scheduler.interrupt()
    """
    timer_id = start_timer(name)
    try:
        yield
    finally:
        stop_timer(timer_id, session_id=session_id, details=details)


def emit_counters(
    name: str,
    counters: Mapping[str, int],
    *,
    session_id: str | None = None,
) -> None:
    """Emit one METRIC_COUNTER event carrying a set of named counts."""
    log_event({
        "event_type": "METRIC_COUNTER",
        "metric": name,
        "values": dict(counters),
        "session_id": session_id,
    })
