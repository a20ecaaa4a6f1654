"""
Session lifecycle states.

Rules:
- This enum defines ONLY the lifecycle states of one logical call.
- Transitions are defined exclusively in session/supervisor.py.

    CONNECTING -> ACTIVE -> {ERROR, CLOSED}
    ACTIVE -> SUMMARIZING -> CLOSED        (graceful end)
    ERROR -> CONNECTING                    (user retry / connectivity restored)
"""

from __future__ import annotations

from enum import Enum


class SessionState(str, Enum):
    """Lifecycle state of the live call."""

    CONNECTING = "connecting"
    ACTIVE = "active"
    ERROR = "error"
    CLOSED = "closed"
    SUMMARIZING = "summarizing"


# States in which a transport close event is ignored
CLOSE_IGNORED_STATES = frozenset({
    SessionState.ERROR,
    SessionState.SUMMARIZING,
    SessionState.CONNECTING,
})
