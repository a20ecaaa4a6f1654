"""
Gapless playback scheduler.

Owns:
- the playback cursor: next free start time on the graph's timeline
- the ActiveSourceSet: sources scheduled or playing, keyed by source id

Rules:
- start = max(cursor, now); cursor = start + buffer duration at the
  scheduling playback rate. Chunks arriving faster than real time play
  back-to-back; bursts queue up (latency, never loss).
- Chunks are scheduled strictly in call order; nothing is reordered.
- interrupt() is the only operation that discards scheduled audio. It
  resets the cursor to the current timeline time, never to zero.
- Cursor and ActiveSourceSet are only touched on the event loop.
"""

from __future__ import annotations

from observability.logger import log_event

from audio.auto_gain import AutoGainNormalizer
from audio.frames import AudioChunk, DecodedBuffer
from audio.graph import PlaybackGraph, ScheduledSource, check_playback_rate
from audio.pcm import decode_chunk
from errors import ChunkDecodeError


class PlaybackScheduler:
    """Places decoded buffers on the playback timeline."""

    def __init__(self, graph: PlaybackGraph, *, session_id: str | None = None) -> None:
        self._graph = graph
        self._session_id = session_id
        self._cursor = 0.0
        self._active: dict[int, ScheduledSource] = {}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def cursor(self) -> float:
        return self._cursor

    @property
    def active_sources(self) -> tuple[ScheduledSource, ...]:
        """Snapshot of the ActiveSourceSet in schedule order."""
        return tuple(self._active.values())

    def __len__(self) -> int:
        return len(self._active)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self, buffer: DecodedBuffer, *, playback_rate: float = 1.0) -> ScheduledSource:
        """Schedule buffer at max(cursor, now) and advance the cursor."""
        playback_rate = check_playback_rate(playback_rate)

        start = max(self._cursor, self._graph.current_time)
        source = self._graph.start_source(
            buffer,
            start,
            playback_rate=playback_rate,
            on_ended=self._on_source_ended,
        )
        self._cursor = start + buffer.duration_s / playback_rate
        self._active[source.source_id] = source
        return source

    def schedule_chunk(
        self,
        chunk: AudioChunk,
        *,
        playback_rate: float = 1.0,
        normalizer: AutoGainNormalizer | None = None,
    ) -> ScheduledSource | None:
        """
        Decode, optionally level, and schedule one inbound chunk.

        A chunk that fails to decode or schedule is logged and dropped;
        cursor and ActiveSourceSet are left exactly as they were.
        """
        try:
            buffer = decode_chunk(chunk)
            if normalizer is not None:
                normalizer.apply(buffer)
            source = self.schedule(buffer, playback_rate=playback_rate)
        except (ChunkDecodeError, ValueError) as exc:
            log_event({
                "event_type": "chunk_decode_failed",
                "session_id": self._session_id,
                "sequence_num": chunk.sequence_num,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            return None

        log_event({
            "event_type": "chunk_scheduled",
            "session_id": self._session_id,
            "sequence_num": chunk.sequence_num,
            "start_time": round(source.start_time, 6),
            "duration_s": round(buffer.duration_s, 6),
            "active_sources": len(self._active),
        })
        return source

    def _on_source_ended(self, source: ScheduledSource) -> None:
        # Natural completion only; a stopped source was already removed
        self._active.pop(source.source_id, None)

    # ------------------------------------------------------------------
    # Live rate / cancellation
    # ------------------------------------------------------------------

    def set_playback_rate(self, rate: float) -> None:
        """Apply a new playback rate to every active source."""
        rate = check_playback_rate(rate)
        for source in self._active.values():
            source.set_playback_rate(rate)

    def interrupt(self) -> int:
        """
        Stop every active source, clear the set, reset the cursor to now.

        Returns the number of sources stopped.
        """
        stopped = 0
        for source in list(self._active.values()):
            source.stop()
            stopped += 1
        self._active.clear()
        self._cursor = self._graph.current_time

        log_event({
            "event_type": "playback_interrupted",
            "session_id": self._session_id,
            "stopped_sources": stopped,
            "cursor": round(self._cursor, 6),
        })
        return stopped
