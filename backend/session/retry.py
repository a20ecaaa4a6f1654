"""
Reconnection retry policy.

Purpose:
- Centralize transient/fatal classification of transport failures
- Keep the bounded-retry decision deterministic and testable
- Let the supervisor make retry decisions without embedding the rules

This module contains NO timers, NO awaits, NO side effects.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass

from websockets.exceptions import ConnectionClosedError, InvalidStatus

from constants import (
    ERROR_MESSAGE_MAX_CHARS,
    MAX_TRANSIENT_RETRIES,
    RETRY_DELAY_MS,
    TRANSIENT_CLOSE_CODES,
    TRANSIENT_ERROR_PATTERNS,
)
from errors import describe_error


# =============================================================================
# Retry State
# =============================================================================

@dataclass(frozen=True)
class RetryAttempt:
    """
    Immutable retry counter.

    Semantics:
    - attempt == 0: no transient failure since the last successful open
    - attempt == N: N automatic retries have been scheduled
    """
    attempt: int


def next_attempt(current: RetryAttempt) -> RetryAttempt:
    """Return a new RetryAttempt with attempt incremented by 1."""
    return RetryAttempt(attempt=current.attempt + 1)


def reset_attempt() -> RetryAttempt:
    """Returns a fresh retry counter (successful open)."""
    return RetryAttempt(attempt=0)


# =============================================================================
# Classification
# =============================================================================

def is_transient(message: str) -> bool:
    """
    True if a transport failure message looks self-resolving.

    Matches network-unavailable, 5xx-unavailable and aborted-stream text.
    """
    return any(pattern in message for pattern in TRANSIENT_ERROR_PATTERNS)


def _transient_by_type(exc: BaseException) -> bool:
    if isinstance(exc, InvalidStatus):
        return exc.response.status_code >= 500
    if isinstance(exc, ConnectionClosedError):
        code = exc.rcvd.code if exc.rcvd is not None else 1006
        return code in TRANSIENT_CLOSE_CODES
    # socket.gaierror, refused/reset/aborted connections and timeouts are all OSError
    return isinstance(exc, (OSError, asyncio.TimeoutError))


def is_transient_error(exc: BaseException) -> bool:
    """
    True if a transport failure looks self-resolving.

    Checks the exception and its __cause__ chain by type first, then falls
    back to matching the message text.
    """
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if _transient_by_type(current):
            return True
        current = current.__cause__
    return is_transient(describe_error(exc))


def should_retry(*, message: str, attempt: RetryAttempt) -> bool:
    """
    Returns True if an automatic retry is allowed.

    attempt = number of retries already scheduled since the last open
    """
    return is_transient(message) and attempt.attempt < MAX_TRANSIENT_RETRIES


def should_retry_error(exc: BaseException, attempt: RetryAttempt) -> bool:
    """should_retry() for an exception, classified by type and message."""
    return is_transient_error(exc) and attempt.attempt < MAX_TRANSIENT_RETRIES


def get_retry_delay_ms() -> int:
    """Fixed delay before re-initializing after a transient failure."""
    return RETRY_DELAY_MS


# =============================================================================
# Presentation
# =============================================================================

def truncate_message(message: str, limit: int = ERROR_MESSAGE_MAX_CHARS) -> str:
    """Shorten a fatal error message for display."""
    if len(message) > limit:
        return message[:limit] + "..."
    return message
