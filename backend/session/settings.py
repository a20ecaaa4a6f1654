"""
Process-wide audio settings.

Lifecycle:
- loaded once at startup (saved fields merged over defaults)
- mutated by user action through SettingsStore.update()
- applied live to the playback graph and active sources via subscribers
- persisted on every change

Consistency:
- AudioSettings is frozen; the store swaps in a complete new snapshot in
  a single reference assignment. A reader (possibly mid-scheduling) sees
  either the old or the new record, never a mix.
"""

from __future__ import annotations

import json
import math
import os
import tempfile
import threading
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Mapping

from constants import (
    DEFAULT_AUTO_LEVEL,
    DEFAULT_ENHANCER,
    DEFAULT_SPEED,
    DEFAULT_VOLUME,
)
from errors import InvalidSettings
from observability.logger import log_event

# Persisted key <-> attribute name
_KEY_MAP: dict[str, str] = {
    "volume": "volume",
    "speed": "speed",
    "enhancer": "enhancer",
    "autoLevel": "auto_level",
}


@dataclass(frozen=True)
class AudioSettings:
    """Immutable snapshot of user audio preferences."""
    volume: float = DEFAULT_VOLUME
    speed: float = DEFAULT_SPEED
    enhancer: bool = DEFAULT_ENHANCER
    auto_level: bool = DEFAULT_AUTO_LEVEL

    def validate(self) -> None:
        if isinstance(self.volume, bool) or not isinstance(self.volume, (int, float)):
            raise InvalidSettings("volume must be a number")
        if isinstance(self.speed, bool) or not isinstance(self.speed, (int, float)):
            raise InvalidSettings("speed must be a number")
        if not math.isfinite(self.volume) or self.volume < 0:
            raise InvalidSettings("volume must be a finite number >= 0")
        if not math.isfinite(self.speed) or self.speed <= 0:
            raise InvalidSettings("speed must be a finite number > 0")
        if not isinstance(self.enhancer, bool) or not isinstance(self.auto_level, bool):
            raise InvalidSettings("enhancer and autoLevel must be booleans")

    def to_record(self) -> dict[str, Any]:
        """Flat persisted record."""
        return {key: getattr(self, attr) for key, attr in _KEY_MAP.items()}

    def merged(self, record: Mapping[str, Any]) -> AudioSettings:
        """
        New snapshot with known keys from record applied.

        Accepts persisted keys (autoLevel) or attribute names (auto_level);
        unknown keys are ignored.
        """
        attrs = {f.name for f in fields(self)}
        changes: dict[str, Any] = {}
        for key, value in record.items():
            attr = _KEY_MAP.get(key, key)
            if attr in attrs:
                changes[attr] = value
        updated = replace(self, **changes)
        updated.validate()
        return updated


SettingsListener = Callable[[AudioSettings, frozenset[str]], None]


class SettingsStore:
    """Owns the current AudioSettings snapshot and its persistence."""

    def __init__(self, path: str | os.PathLike[str] | None = None) -> None:
        self._path = Path(path) if path else None
        self._current = AudioSettings()
        self._write_lock = threading.Lock()
        self._listeners: list[SettingsListener] = []

    @property
    def current(self) -> AudioSettings:
        return self._current

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> AudioSettings:
        """
        Read saved settings over the defaults.

        A missing file means defaults. An unreadable or invalid file is
        logged and ignored.
        """
        if self._path is None or not self._path.exists():
            return self._current
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise InvalidSettings("settings file must contain an object")
            self._current = AudioSettings().merged(raw)
        except (OSError, ValueError) as exc:
            log_event({
                "event_type": "settings_load_failed",
                "path": str(self._path),
                "exception": type(exc).__name__,
                "message": str(exc),
            })
        return self._current

    def _persist(self, settings: AudioSettings) -> None:
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self._path.parent, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(settings.to_record(), fh)
            os.replace(tmp, self._path)
        except OSError as exc:
            log_event({
                "event_type": "settings_persist_failed",
                "path": str(self._path),
                "exception": type(exc).__name__,
                "message": str(exc),
            })

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def update(self, **changes: Any) -> AudioSettings:
        """
        Apply changes, persist, and notify listeners.

        Raises:
            InvalidSettings if the resulting snapshot is invalid (nothing
            is changed in that case).
        """
        with self._write_lock:
            previous = self._current
            updated = previous.merged(changes)
            changed = frozenset(
                f.name for f in fields(updated)
                if getattr(updated, f.name) != getattr(previous, f.name)
            )
            if not changed:
                return previous
            self._current = updated
            self._persist(updated)

        log_event({
            "event_type": "settings_changed",
            "changed": sorted(changed),
            "settings": updated.to_record(),
        })
        for listener in list(self._listeners):
            listener(updated, changed)
        return updated

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe
