"""
Duplex transport contract.

This module defines the *interface only*: a bidirectional channel that
accepts encoded microphone frames and reports inbound audio, transcript
deltas and control signals back through async callbacks.

Key invariants:
- The transport never touches playback state; it only reports.
- Callbacks are awaited on the event loop, one at a time, in arrival order.
- close() MUST be idempotent and safe before open() completes.
- Authentication, model and voice selection are opaque SessionOptions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable

from audio.frames import MediaPayload


@dataclass(frozen=True)
class ServerMessage:
    """
    One inbound message, already parsed.

    audio_data:
        base64 PCM16 mono at the playback rate, or None.
    input_transcription / output_transcription:
        Transcript deltas for the local speaker and the remote voice.
    turn_complete:
        Remote finished its turn; transcript buffers flush.
    interrupted:
        Remote detected barge-in; all in-flight playback must stop.
    """
    audio_data: str | None = None
    input_transcription: str | None = None
    output_transcription: str | None = None
    turn_complete: bool = False
    interrupted: bool = False


@dataclass(frozen=True)
class SessionOptions:
    """Opaque connection parameters passed through at open time."""
    api_key: str
    url: str
    model: str
    voice: str
    system_instruction: str = ""


@dataclass(frozen=True)
class TransportCallbacks:
    """Async sinks the transport reports into."""
    on_open: Callable[[], Awaitable[None]]
    on_message: Callable[[ServerMessage], Awaitable[None]]
    on_error: Callable[[BaseException], Awaitable[None]]
    on_close: Callable[[str | None], Awaitable[None]]


class TransportSession(ABC):
    """
    Abstract live streaming session.

    Implementations are responsible for:
    - Establishing the connection and calling on_open once ready
    - Delivering MediaPayloads in call order
    - Reporting failures through on_error (never raising from the receive loop)
    - Calling on_close when the remote side ends the session
    """

    @abstractmethod
    async def open(self, callbacks: TransportCallbacks) -> None:
        """
        Begin connecting.

        Returns once the connection attempt is underway; success and
        failure are reported through callbacks.
        """
        raise NotImplementedError

    @abstractmethod
    async def send_audio_frame(self, payload: MediaPayload) -> None:
        """
        Send one encoded microphone frame.

        Raises on failure; the capture encoder logs and drops.
        """
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Close the session. Idempotent; never raises."""
        raise NotImplementedError


TransportFactory = Callable[[SessionOptions], TransportSession]
