# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import socket

import pytest
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedError, InvalidStatus
from websockets.frames import Close
from websockets.http11 import Response

from errors import TransportError
from session.retry import (
    RetryAttempt,
    get_retry_delay_ms,
    is_transient,
    is_transient_error,
    next_attempt,
    reset_attempt,
    should_retry,
    should_retry_error,
    truncate_message,
)


@pytest.mark.parametrize(
    "message",
    [
        "Service unavailable",
        "1011 503 backend overloaded",
        "stream aborted by peer",
    ],
)
def test_transient_messages(message: str):
    assert is_transient(message)


@pytest.mark.parametrize("message", ["401 API key not valid", "1008 Policy violation", ""])
def test_fatal_messages(message: str):
    assert not is_transient(message)


def test_retry_budget_is_three():
    attempt = reset_attempt()
    allowed = []
    for _ in range(5):
        allowed.append(should_retry(message="unavailable", attempt=attempt))
        attempt = next_attempt(attempt)

    assert allowed == [True, True, True, False, False]


def test_fatal_message_never_retries():
    assert not should_retry(message="permission denied", attempt=RetryAttempt(0))


def test_fixed_delay():
    assert get_retry_delay_ms() == 2000


def test_truncation():
    assert truncate_message("short") == "short"
    assert truncate_message("x" * 60) == "x" * 60
    assert truncate_message("y" * 61) == "y" * 60 + "..."


# ---------------------------------------------------------------------
# Classification by exception type
# ---------------------------------------------------------------------

def rejected(status: int) -> InvalidStatus:
    return InvalidStatus(Response(status, "rejected", Headers()))


def closed_with(code: int | None) -> ConnectionClosedError:
    return ConnectionClosedError(Close(code, "") if code is not None else None, None)


def wrapped(cause: BaseException) -> TransportError:
    error = TransportError("connection closed")
    error.__cause__ = cause
    return error


@pytest.mark.parametrize(
    "exc",
    [
        OSError(101, "Network is unreachable"),
        socket.gaierror(-3, "Temporary failure in name resolution"),
        ConnectionRefusedError(111, "Connect call failed ('1.2.3.4', 443)"),
        ConnectionAbortedError(103, "Software caused connection abort"),
        ConnectionResetError(104, "Connection reset by peer"),
        TimeoutError(),
        asyncio.TimeoutError(),
        rejected(502),
        rejected(504),
        closed_with(None),
        closed_with(1011),
        closed_with(1013),
        wrapped(closed_with(1012)),
        TransportError("backend unavailable"),
    ],
)
def test_network_failures_are_transient(exc: BaseException):
    assert is_transient_error(exc)


@pytest.mark.parametrize(
    "exc",
    [
        rejected(401),
        rejected(403),
        closed_with(1008),
        wrapped(closed_with(1007)),
        TransportError("1008 API key not valid"),
        ValueError("bad setup"),
    ],
)
def test_client_side_failures_are_fatal(exc: BaseException):
    assert not is_transient_error(exc)


def test_error_retry_budget_is_bounded():
    exc = OSError(101, "Network is unreachable")
    assert should_retry_error(exc, RetryAttempt(2))
    assert not should_retry_error(exc, RetryAttempt(3))
