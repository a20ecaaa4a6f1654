"""
Audio device backends.

Two processing contexts per call:
- capture context: mono input stream at the capture rate, fixed block size,
  delivering float frames to a callback on the device thread
- playback context: mono output stream at the playback rate, pulling
  blocks from a render function on the device thread

AudioBackend is the seam the session depends on. SoundDeviceBackend is
the PortAudio implementation; tests substitute an in-memory backend.

Error mapping:
- failure to load or initialize PortAudio -> AudioContextInitError
- failure to open the microphone -> one of the CaptureAcquisitionError
  subclasses, chosen by classify_device_error()
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable

import numpy as np

from errors import (
    AudioContextInitError,
    CaptureAcquisitionError,
    MicConstraintsError,
    MicInUse,
    MicNotFound,
    MicPermissionDenied,
)
from observability.logger import log_event

FrameCallback = Callable[[np.ndarray], None]
RenderFn = Callable[[int], np.ndarray]

# PortAudio error text fragments, lower-cased
_PERMISSION_MARKERS = ("permission", "not permitted", "access denied", "not authorized")
_NOT_FOUND_MARKERS = (
    "no input device",
    "no default input",
    "invalid device",
    "error querying device",
    "no such device",
    "device not found",
)
_BUSY_MARKERS = ("device unavailable", "busy", "in use", "resource temporarily unavailable")
_CONSTRAINT_MARKERS = (
    "invalid sample rate",
    "invalid number of channels",
    "sample format not supported",
    "incompatible",
    "invalid block size",
)


def classify_device_error(exc: BaseException) -> CaptureAcquisitionError:
    """
    Map a device-layer exception to a distinct capture acquisition cause.

    Unknown failures become a generic CaptureAcquisitionError carrying the
    original message.
    """
    text = str(exc).lower()
    if any(m in text for m in _PERMISSION_MARKERS):
        return MicPermissionDenied()
    if any(m in text for m in _CONSTRAINT_MARKERS):
        return MicConstraintsError()
    if any(m in text for m in _BUSY_MARKERS):
        return MicInUse()
    if any(m in text for m in _NOT_FOUND_MARKERS):
        return MicNotFound()
    return CaptureAcquisitionError(str(exc) or None)


class StreamHandle(ABC):
    """An open device stream. close() must be idempotent."""

    @abstractmethod
    def start(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    @property
    @abstractmethod
    def closed(self) -> bool:
        raise NotImplementedError


class AudioBackend(ABC):
    """Opens the capture and playback processing contexts."""

    @abstractmethod
    def open_input(
        self,
        *,
        sample_rate_hz: int,
        block_frames: int,
        callback: FrameCallback,
        device: int | str | None = None,
    ) -> StreamHandle:
        """
        Open the microphone.

        Raises:
            AudioContextInitError if the audio subsystem is unavailable.
            CaptureAcquisitionError (subclass) if the microphone cannot be opened.
        """
        raise NotImplementedError

    @abstractmethod
    def open_output(
        self,
        *,
        sample_rate_hz: int,
        block_frames: int,
        render: RenderFn,
        device: int | str | None = None,
    ) -> StreamHandle:
        """
        Open the speaker.

        Raises:
            AudioContextInitError if the output stream cannot be opened.
        """
        raise NotImplementedError


# ---------------------------------------------------------------------
# sounddevice implementation
# ---------------------------------------------------------------------

def _import_sounddevice() -> Any:
    """Import sounddevice, reporting a missing PortAudio as an init failure."""
    try:
        import sounddevice as sd  # pylint: disable=import-outside-toplevel
    except (ImportError, OSError) as exc:
        raise AudioContextInitError(
            "Audio system is not available in this environment."
        ) from exc
    return sd


class _SoundDeviceHandle(StreamHandle):
    def __init__(self, stream: Any, kind: str, error_type: type[BaseException]) -> None:
        self._stream = stream
        self._kind = kind
        self._error_type = error_type
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        try:
            self._stream.start()
        except self._error_type as exc:
            if self._kind == "input":
                raise classify_device_error(exc) from exc
            raise AudioContextInitError(str(exc) or None) from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._stream.stop()
        finally:
            self._stream.close()


class SoundDeviceBackend(AudioBackend):
    """PortAudio streams via sounddevice."""

    def __init__(self) -> None:
        self._sd = _import_sounddevice()

    def open_input(
        self,
        *,
        sample_rate_hz: int,
        block_frames: int,
        callback: FrameCallback,
        device: int | str | None = None,
    ) -> StreamHandle:
        sd = self._sd

        def _on_audio(indata: np.ndarray, frames: int, time: Any, status: Any) -> None:  # pylint: disable=unused-argument
            if status:
                log_event({"event_type": "capture_stream_status", "status": str(status)})
            try:
                callback(indata[:, 0].copy())
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "capture_callback_error",
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })

        try:
            stream = sd.InputStream(
                samplerate=sample_rate_hz,
                blocksize=block_frames,
                channels=1,
                dtype="float32",
                device=device,
                callback=_on_audio,
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise classify_device_error(exc) from exc
        return _SoundDeviceHandle(stream, "input", sd.PortAudioError)

    def open_output(
        self,
        *,
        sample_rate_hz: int,
        block_frames: int,
        render: RenderFn,
        device: int | str | None = None,
    ) -> StreamHandle:
        sd = self._sd

        def _on_output(outdata: np.ndarray, frames: int, time: Any, status: Any) -> None:  # pylint: disable=unused-argument
            if status:
                log_event({"event_type": "playback_stream_status", "status": str(status)})
            try:
                outdata[:, 0] = render(frames)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                outdata.fill(0)
                log_event({
                    "event_type": "render_callback_error",
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })

        try:
            stream = sd.OutputStream(
                samplerate=sample_rate_hz,
                blocksize=block_frames,
                channels=1,
                dtype="float32",
                device=device,
                callback=_on_output,
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise AudioContextInitError(str(exc) or None) from exc
        return _SoundDeviceHandle(stream, "output", sd.PortAudioError)
