"""
Error taxonomy for the live audio pipeline.

Every error carries:
- code: stable machine-readable identifier (used in logs and the API)
- user_message: human-readable text surfaced in the ERROR state

Fatal vs. recoverable is decided by the catcher, not here:
- capture / context / pre-flight errors are fatal to a connection attempt
- TransportError is classified transient or fatal by session.retry
- ChunkDecodeError and RecordingError are recovered locally
"""

from __future__ import annotations


class LiveAudioError(Exception):
    """Base class for all pipeline errors."""

    code: str = "LIVE_AUDIO_ERROR"
    default_message: str = "Failed to connect."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def user_message(self) -> str:
        return str(self)


# -------------------------
# Capture acquisition
# -------------------------

class CaptureAcquisitionError(LiveAudioError):
    """Microphone could not be opened. Not retried automatically."""

    code = "MIC_ERROR"
    default_message = "Microphone could not be opened."


class MicPermissionDenied(CaptureAcquisitionError):
    code = "MIC_PERMISSION_DENIED"
    default_message = (
        "Microphone access denied. Please allow microphone permissions "
        "in your system settings."
    )


class MicNotFound(CaptureAcquisitionError):
    code = "MIC_NOT_FOUND"
    default_message = "No microphone found. Please connect a microphone."


class MicInUse(CaptureAcquisitionError):
    code = "MIC_IN_USE"
    default_message = "Microphone is being used by another app."


class MicConstraintsError(CaptureAcquisitionError):
    code = "MIC_CONSTRAINTS_ERROR"
    default_message = (
        "Microphone hardware mismatch. Please try a different device."
    )


# -------------------------
# Processing contexts
# -------------------------

class AudioContextInitError(LiveAudioError):
    """The audio subsystem is unavailable or refused to open a stream."""

    code = "AUDIO_CONTEXT_INIT_FAILED"
    default_message = "Audio system is not available in this environment."


# -------------------------
# Pre-flight
# -------------------------

class MissingApiKey(LiveAudioError):
    code = "MISSING_API_KEY"
    default_message = "Missing API Key. Please check your configuration."


class NetworkOffline(LiveAudioError):
    code = "NETWORK_OFFLINE"
    default_message = "No internet connection. Please check your network."


# -------------------------
# Transport
# -------------------------

class TransportError(LiveAudioError):
    """
    Failure reported by the duplex transport.

    The raw message is preserved verbatim; transient classification
    matches against it.
    """

    code = "TRANSPORT_ERROR"
    default_message = "Connection error."


# -------------------------
# Local-recovery errors
# -------------------------

class ChunkDecodeError(LiveAudioError, ValueError):
    """
    An inbound audio payload could not be turned into samples.

    Scope is a single chunk: the caller drops it and carries on.
    """

    code = "CHUNK_DECODE_ERROR"
    default_message = "Audio chunk could not be decoded."


class RecordingError(LiveAudioError):
    code = "RECORDING_ERROR"
    default_message = "Failed to start recording."


class InvalidSettings(LiveAudioError, ValueError):
    code = "INVALID_SETTINGS"
    default_message = "Invalid audio settings."


def describe_error(exc: BaseException) -> str:
    """
    Best-effort human-readable message for any exception.

    Mirrors how transport callbacks report causes: the message if there is
    one, otherwise the exception's repr.
    """
    if isinstance(exc, LiveAudioError):
        return exc.user_message
    text = str(exc)
    return text if text else repr(exc)
