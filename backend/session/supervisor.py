"""
ReconnectionSupervisor: lifecycle state machine for one logical call.

    CONNECTING -> ACTIVE -> {ERROR, CLOSED}
    ACTIVE -> SUMMARIZING -> CLOSED
    ERROR -> CONNECTING

Responsibilities:
- Build a fresh LiveCall on every (re)initialization; tear the old one down first
- Pre-flight checks (API key, connectivity) before touching devices
- Bounded automatic retry of transient transport failures
- Graceful end: stop recording, summarize transcript into memory, close
- Re-initialize when connectivity is restored while in ERROR

All transitions happen on the event loop. Transport callbacks are bound to
the LiveCall that registered them; callbacks from a torn-down call are
ignored.
"""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import Awaitable, Callable

from audio.devices import AudioBackend
from audio.recording import RecordingArtifact, RecordingMixer
from config import AppConfig
from constants import RECORDING_ERROR_CLEAR_S, SUMMARY_MIN_TRANSCRIPT_ITEMS
from errors import (
    LiveAudioError,
    MissingApiKey,
    NetworkOffline,
    RecordingError,
    describe_error,
)
from observability.logger import log_event
from session.connectivity import ConnectivityNotifier
from session.live_call import LiveCall
from session.retry import (
    RetryAttempt,
    get_retry_delay_ms,
    next_attempt,
    reset_attempt,
    should_retry_error,
    truncate_message,
)
from session.settings import AudioSettings, SettingsStore
from session.state import CLOSE_IGNORED_STATES, SessionState
from session.summarizer import Summarizer
from session.transcript import TranscriptAccumulator
from transport.base import (
    ServerMessage,
    SessionOptions,
    TransportCallbacks,
    TransportFactory,
)

BackendFactory = Callable[[], AudioBackend]
SleepFn = Callable[[float], Awaitable[None]]
MemoryCallback = Callable[[str], None]


class ReconnectionSupervisor:
    """Owns the lifecycle of every other pipeline component."""

    def __init__(
        self,
        *,
        config: AppConfig,
        backend_factory: BackendFactory,
        transport_factory: TransportFactory,
        settings: SettingsStore,
        summarizer: Summarizer | None = None,
        connectivity: ConnectivityNotifier | None = None,
        memory: str | None = None,
        on_memory_updated: MemoryCallback | None = None,
        label: str = "call",
        recordings_dir: str | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.session_id = f"sess_{uuid.uuid4().hex[:12]}"
        self._config = config
        self._backend_factory = backend_factory
        self._transport_factory = transport_factory
        self._settings = settings
        self._summarizer = summarizer
        self._connectivity = connectivity
        self.memory = memory
        self._on_memory_updated = on_memory_updated
        self._recordings_dir = recordings_dir
        self._sleep = sleep

        self.state = SessionState.CONNECTING
        self.error_message: str | None = None
        self.retry = reset_attempt()
        self.muted = False

        self.transcript = TranscriptAccumulator()
        self.mixer = RecordingMixer(label=label, session_id=self.session_id)
        self.last_recording: RecordingArtifact | None = None
        self.recording_error: str | None = None

        self._call: LiveCall | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._unsubscribers: list[Callable[[], None]] = [
            settings.subscribe(self._on_settings_changed),
        ]
        if connectivity is not None:
            self._unsubscribers.append(connectivity.subscribe(self.on_connectivity))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def call(self) -> LiveCall | None:
        return self._call

    @property
    def retry_task(self) -> asyncio.Task[None] | None:
        """Pending automatic re-initialization, if any."""
        return self._retry_task

    def snapshot(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "error": self.error_message,
            "retry_attempt": self.retry.attempt,
            "muted": self.muted,
            "recording": self.mixer.is_recording,
            "recording_error": self.recording_error,
            "transcript": [
                {"role": item.role, "text": item.text} for item in self.transcript.items
            ],
        }

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, new_state: SessionState, *, reason: str) -> None:
        if new_state == self.state:
            return
        log_event({
            "event_type": "session_state_changed",
            "session_id": self.session_id,
            "from_state": self.state.value,
            "to_state": new_state.value,
            "reason": reason,
            "retry_attempt": self.retry.attempt,
        })
        self.state = new_state

    def _system_instruction(self) -> str:
        base = self._config.system_instruction
        if self.memory:
            return f"{base}\n\nUSER MEMORY: {self.memory}" if base else f"USER MEMORY: {self.memory}"
        return base

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Begin the call. No-op while a call is already connecting or active."""
        if self._call is not None and self.state in (SessionState.CONNECTING, SessionState.ACTIVE):
            return
        await self.initialize()

    async def initialize(self) -> None:
        """
        Tear down any previous call, run pre-flight checks, acquire audio,
        open the transport.

        Failures before the transport exists go straight to ERROR and do
        not consume a retry.
        """
        await self._teardown_call()
        self.error_message = None
        self._set_state(SessionState.CONNECTING, reason="initialize")

        if not self._config.live_api_key:
            self._fail(MissingApiKey())
            return
        if self._connectivity is not None and not self._connectivity.online:
            self._fail(NetworkOffline())
            return

        call = LiveCall(
            session_id=self.session_id,
            loop=asyncio.get_running_loop(),
            settings=self._settings,
            transcript=self.transcript,
            mixer=self.mixer,
            muted=self.muted,
            input_device=self._config.input_device,
            output_device=self._config.output_device,
            on_recording=self._on_recording,
        )
        self._call = call

        try:
            call.open_audio(self._backend_factory())
        except LiveAudioError as exc:
            await self._teardown_call()
            self._fail(exc)
            return

        options = SessionOptions(
            api_key=self._config.live_api_key,
            url=self._config.live_api_url,
            model=self._config.live_model,
            voice=self._config.live_voice,
            system_instruction=self._system_instruction(),
        )
        try:
            await call.open_transport(self._transport_factory(options), self._callbacks_for(call))
        except Exception as exc:  # pylint: disable=broad-exception-caught
            await self._on_error(call, exc)

    def _fail(self, exc: LiveAudioError) -> None:
        self.error_message = exc.user_message
        log_event({
            "event_type": "session_init_failed",
            "session_id": self.session_id,
            "code": exc.code,
            "message": exc.user_message,
        })
        self._set_state(SessionState.ERROR, reason=exc.code)

    def _callbacks_for(self, call: LiveCall) -> TransportCallbacks:
        async def on_open() -> None:
            await self._on_open(call)

        async def on_message(message: ServerMessage) -> None:
            await self._on_message(call, message)

        async def on_error(exc: BaseException) -> None:
            await self._on_error(call, exc)

        async def on_close(reason: str | None) -> None:
            await self._on_close(call, reason)

        return TransportCallbacks(
            on_open=on_open,
            on_message=on_message,
            on_error=on_error,
            on_close=on_close,
        )

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    async def _on_open(self, call: LiveCall) -> None:
        if call is not self._call:
            return
        self.retry = reset_attempt()
        self._set_state(SessionState.ACTIVE, reason="transport_open")
        call.start_capture()

    async def _on_message(self, call: LiveCall, message: ServerMessage) -> None:
        if call is not self._call:
            return
        call.handle_message(message)

    async def _on_error(self, call: LiveCall, exc: BaseException) -> None:
        if call is not self._call or self.state == SessionState.CLOSED:
            return

        message = describe_error(exc)
        transient = should_retry_error(exc, self.retry)
        log_event({
            "event_type": "transport_error",
            "session_id": self.session_id,
            "exception": type(exc).__name__,
            "message": message,
            "retry_attempt": self.retry.attempt,
            "will_retry": transient,
        })

        await self._teardown_call()

        if transient:
            self.retry = next_attempt(self.retry)
            delay_ms = get_retry_delay_ms()
            log_event({
                "event_type": "transport_retry_scheduled",
                "session_id": self.session_id,
                "retry_attempt": self.retry.attempt,
                "delay_ms": delay_ms,
            })
            self._set_state(SessionState.CONNECTING, reason="transient_error")
            self._retry_task = asyncio.create_task(self._retry_after(delay_ms / 1000.0))
            return

        self.error_message = truncate_message(message)
        self._set_state(SessionState.ERROR, reason="transport_error")

    async def _on_close(self, call: LiveCall, reason: str | None) -> None:
        if call is not self._call:
            return
        if self.state in CLOSE_IGNORED_STATES or self.state == SessionState.CLOSED:
            log_event({
                "event_type": "transport_close_ignored",
                "session_id": self.session_id,
                "state": self.state.value,
                "reason": reason,
            })
            return
        await self._teardown_call()
        self._set_state(SessionState.CLOSED, reason="transport_closed")

    async def _retry_after(self, delay_s: float) -> None:
        await self._sleep(delay_s)
        if self.state != SessionState.CONNECTING or self._call is not None:
            return
        self._retry_task = None
        await self.initialize()

    def _cancel_retry(self) -> None:
        task, self._retry_task = self._retry_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Caller actions
    # ------------------------------------------------------------------

    async def retry_now(self) -> None:
        """Manual retry from ERROR; the retry budget starts fresh."""
        if self.state != SessionState.ERROR:
            return
        self.retry = reset_attempt()
        await self.initialize()

    async def on_connectivity(self, online: bool) -> None:
        if online and self.state == SessionState.ERROR:
            log_event({
                "event_type": "connectivity_restored_reinit",
                "session_id": self.session_id,
            })
            await self.initialize()

    async def end(self) -> None:
        """
        User-initiated end.

        Stops any recording, releases audio and transport, summarizes the
        transcript when there is enough of it, and always reaches CLOSED.
        """
        if self.state in (SessionState.CLOSED, SessionState.SUMMARIZING):
            return
        self._cancel_retry()
        await self._teardown_call()

        if self._summarizer is not None and len(self.transcript) >= SUMMARY_MIN_TRANSCRIPT_ITEMS:
            self._set_state(SessionState.SUMMARIZING, reason="user_end")
            try:
                updated = await self._summarizer.summarize(self.transcript.items, self.memory)
                self.memory = updated
                if self._on_memory_updated is not None:
                    self._on_memory_updated(updated)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "summarization_failed",
                    "session_id": self.session_id,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })

        self._set_state(SessionState.CLOSED, reason="user_end")

    async def shutdown(self) -> None:
        """Release everything without summarizing (process exit)."""
        self._cancel_retry()
        await self._teardown_call()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def set_muted(self, muted: bool) -> None:
        self.muted = muted
        if self._call is not None:
            self._call.set_muted(muted)

    def _on_settings_changed(self, settings: AudioSettings, changed: frozenset[str]) -> None:
        if self._call is not None:
            self._call.apply_settings(settings, changed)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def start_recording(self) -> bool:
        """Returns False (and sets recording_error) if recording could not start."""
        call = self._call
        try:
            if call is None:
                raise RecordingError("Audio stream not available.")
            call.start_recording()
        except RecordingError as exc:
            self._report_recording_error(exc.user_message)
            return False
        self.recording_error = None
        return True

    def stop_recording(self) -> RecordingArtifact | None:
        if self._call is not None:
            return self._call.stop_recording()
        # Call already torn down; the artifact (if any) was delivered then
        return None

    def _report_recording_error(self, message: str) -> None:
        self.recording_error = message
        log_event({
            "event_type": "recording_error",
            "session_id": self.session_id,
            "message": message,
        })
        loop = asyncio.get_running_loop()
        loop.call_later(RECORDING_ERROR_CLEAR_S, self._clear_recording_error, message)

    def _clear_recording_error(self, message: str) -> None:
        if self.recording_error == message:
            self.recording_error = None

    def _on_recording(self, artifact: RecordingArtifact) -> None:
        self.last_recording = artifact
        if not self._recordings_dir:
            return
        path = Path(self._recordings_dir) / artifact.filename
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(artifact.data)
        except OSError as exc:
            log_event({
                "event_type": "recording_error",
                "session_id": self.session_id,
                "message": f"failed to save {path}: {exc}",
            })
            return
        log_event({
            "event_type": "recording_saved",
            "session_id": self.session_id,
            "path": str(path),
        })

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _teardown_call(self) -> None:
        call, self._call = self._call, None
        if call is not None:
            await call.teardown()
