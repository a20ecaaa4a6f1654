# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import base64
import math
from typing import Any, Callable

import numpy as np
import pytest

import session.live_call as live_call_mod
import session.supervisor as supervisor_mod
from audio.pcm import float32_to_pcm16le
from errors import AudioContextInitError, MicInUse, MicPermissionDenied, TransportError
from fakes import (
    FakeAudioBackend,
    FakeSummarizer,
    FakeTransportFactory,
    make_config,
)
from session.connectivity import ConnectivityNotifier
from session.settings import SettingsStore
from session.state import SessionState
from session.supervisor import ReconnectionSupervisor
from transport.base import ServerMessage

TRANSIENT = "1011 503 The service is currently unavailable."
FATAL = "1008 API key not valid. Please pass a valid API key. Visit the console to create one."


async def no_sleep(_: float) -> None:
    return None


async def settle(predicate: Callable[[], bool], rounds: int = 50) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    assert predicate()


def tone_b64(duration_s: float, amplitude: float = 0.5) -> str:
    frames = int(round(duration_s * 24000))
    t = np.arange(frames) / 24000
    samples = (amplitude * np.sin(2 * math.pi * 440.0 * t)).astype(np.float32)
    return base64.b64encode(float32_to_pcm16le(samples)).decode("ascii")


def mic_frame(value: float = 0.1) -> np.ndarray:
    return np.full(2048, value, dtype=np.float32)


def make_supervisor(
    *,
    backend: FakeAudioBackend | None = None,
    factory: FakeTransportFactory | None = None,
    **kwargs: Any,
) -> tuple[ReconnectionSupervisor, FakeAudioBackend, FakeTransportFactory]:
    backend = backend or FakeAudioBackend()
    factory = factory or FakeTransportFactory()
    config = kwargs.pop("config", make_config())
    kwargs.setdefault("settings", SettingsStore())
    kwargs.setdefault("sleep", no_sleep)
    supervisor = ReconnectionSupervisor(
        config=config,
        backend_factory=lambda: backend,
        transport_factory=factory,
        **kwargs,
    )
    return supervisor, backend, factory


async def open_call(supervisor: ReconnectionSupervisor, factory: FakeTransportFactory) -> None:
    await supervisor.start()
    await factory.last.fire_open()


# ---------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------

def test_open_transitions_to_active_and_starts_capture():
    async def scenario() -> None:
        supervisor, backend, factory = make_supervisor()
        assert supervisor.state == SessionState.CONNECTING

        await supervisor.start()
        assert supervisor.state == SessionState.CONNECTING
        assert backend.inputs[0].started and backend.outputs[0].started
        assert factory.last.options.api_key == "test-key"
        assert factory.last.options.system_instruction == "Be brief."

        await factory.last.fire_open()
        assert supervisor.state == SessionState.ACTIVE
        assert supervisor.call is not None
        assert supervisor.call.encoder is not None

    asyncio.run(scenario())


def test_memory_is_appended_to_system_instruction():
    async def scenario() -> str:
        supervisor, _, factory = make_supervisor(memory="Name is Sam.")
        await supervisor.start()
        return factory.last.options.system_instruction

    assert asyncio.run(scenario()) == "Be brief.\n\nUSER MEMORY: Name is Sam."


def test_state_changes_are_logged(monkeypatch: pytest.MonkeyPatch):
    emitted: list[dict[str, Any]] = []
    monkeypatch.setattr(supervisor_mod, "log_event", emitted.append)

    async def scenario() -> None:
        supervisor, _, factory = make_supervisor()
        await open_call(supervisor, factory)

    asyncio.run(scenario())

    changes = [e for e in emitted if e["event_type"] == "session_state_changed"]
    assert [(e["from_state"], e["to_state"]) for e in changes] == [("connecting", "active")]


# ---------------------------------------------------------------------
# Bounded retry
# ---------------------------------------------------------------------

def test_fourth_consecutive_transient_error_is_fatal():
    async def scenario() -> None:
        supervisor, _, factory = make_supervisor()
        await supervisor.start()

        for expected in (1, 2, 3):
            await factory.last.fire_error(TransportError(TRANSIENT))
            assert supervisor.state == SessionState.CONNECTING
            assert supervisor.retry.attempt == expected
            assert supervisor.error_message is None
            task = supervisor.retry_task
            assert task is not None
            await task
            assert len(factory.created) == expected + 1

        await factory.last.fire_error(TransportError(TRANSIENT))

        assert supervisor.state == SessionState.ERROR
        assert supervisor.retry_task is None
        assert len(factory.created) == 4
        assert supervisor.error_message == TRANSIENT

    asyncio.run(scenario())


def test_successful_open_resets_retry_budget():
    async def scenario() -> None:
        supervisor, _, factory = make_supervisor()
        await supervisor.start()

        for _ in range(2):
            await factory.last.fire_error(TransportError(TRANSIENT))
            await supervisor.retry_task

        await factory.last.fire_open()
        assert supervisor.state == SessionState.ACTIVE
        assert supervisor.retry.attempt == 0

        for _ in range(3):
            await factory.last.fire_error(TransportError(TRANSIENT))
            assert supervisor.state == SessionState.CONNECTING
            await supervisor.retry_task

        await factory.last.fire_error(TransportError(TRANSIENT))
        assert supervisor.state == SessionState.ERROR

    asyncio.run(scenario())


def test_unreachable_network_is_retried():
    async def scenario() -> tuple[ReconnectionSupervisor, FakeTransportFactory]:
        supervisor, _, factory = make_supervisor()
        await supervisor.start()
        await factory.last.fire_error(OSError(101, "Network is unreachable"))

        assert supervisor.state == SessionState.CONNECTING
        assert supervisor.error_message is None
        assert supervisor.retry.attempt == 1
        assert supervisor.retry_task is not None
        await supervisor.retry_task
        return supervisor, factory

    supervisor, factory = asyncio.run(scenario())
    assert supervisor.state == SessionState.CONNECTING
    assert len(factory.created) == 2


def test_retry_waits_the_fixed_delay():
    delays: list[float] = []

    async def record_sleep(seconds: float) -> None:
        delays.append(seconds)

    async def scenario() -> None:
        supervisor, _, factory = make_supervisor(sleep=record_sleep)
        await supervisor.start()
        await factory.last.fire_error(TransportError("stream aborted"))
        await supervisor.retry_task

    asyncio.run(scenario())
    assert delays == [2.0]


def test_fatal_error_is_truncated_and_not_retried():
    async def scenario() -> ReconnectionSupervisor:
        supervisor, backend, factory = make_supervisor()
        await open_call(supervisor, factory)

        await factory.last.fire_error(TransportError(FATAL))

        assert len(factory.created) == 1
        assert factory.last.closed
        assert backend.inputs[0].closed and backend.outputs[0].closed
        return supervisor

    supervisor = asyncio.run(scenario())
    assert supervisor.state == SessionState.ERROR
    assert supervisor.error_message == FATAL[:60] + "..."
    assert supervisor.call is None


def test_manual_retry_after_error_starts_fresh():
    async def scenario() -> ReconnectionSupervisor:
        supervisor, _, factory = make_supervisor()
        await supervisor.start()
        await factory.last.fire_error(TransportError(FATAL))
        assert supervisor.state == SessionState.ERROR

        await supervisor.retry_now()
        assert supervisor.state == SessionState.CONNECTING
        assert supervisor.error_message is None
        await factory.last.fire_open()
        return supervisor

    supervisor = asyncio.run(scenario())
    assert supervisor.state == SessionState.ACTIVE


def test_stale_callbacks_from_torn_down_call_are_ignored():
    async def scenario() -> ReconnectionSupervisor:
        supervisor, _, factory = make_supervisor()
        await supervisor.start()
        first = factory.last
        await first.fire_error(TransportError(TRANSIENT))
        await supervisor.retry_task

        await first.fire_open()
        await first.fire_error(TransportError(FATAL))
        return supervisor

    supervisor = asyncio.run(scenario())
    assert supervisor.state == SessionState.CONNECTING
    assert supervisor.retry.attempt == 1


# ---------------------------------------------------------------------
# Transport close
# ---------------------------------------------------------------------

def test_close_while_active_closes_session():
    async def scenario() -> ReconnectionSupervisor:
        supervisor, _, factory = make_supervisor()
        await open_call(supervisor, factory)
        await factory.last.fire_close("bye")
        assert factory.last.closed
        return supervisor

    assert asyncio.run(scenario()).state == SessionState.CLOSED


def test_close_while_connecting_is_ignored():
    async def scenario() -> ReconnectionSupervisor:
        supervisor, _, factory = make_supervisor()
        await supervisor.start()
        await factory.last.fire_close(None)
        return supervisor

    supervisor = asyncio.run(scenario())
    assert supervisor.state == SessionState.CONNECTING
    assert supervisor.call is not None


def test_close_after_error_is_ignored():
    async def scenario() -> ReconnectionSupervisor:
        supervisor, _, factory = make_supervisor()
        await open_call(supervisor, factory)
        await factory.last.fire_error(TransportError(FATAL))
        await factory.last.fire_close(None)
        return supervisor

    assert asyncio.run(scenario()).state == SessionState.ERROR


def test_close_during_summarizing_is_ignored():
    observed: list[SessionState] = []

    async def scenario() -> ReconnectionSupervisor:
        factory = FakeTransportFactory()

        class ClosingSummarizer(FakeSummarizer):
            async def summarize(self, items: Any, memory: Any = None) -> str:
                await factory.last.fire_close("late close")
                observed.append(supervisor.state)
                return await super().summarize(items, memory)

        supervisor, _, _ = make_supervisor(factory=factory, summarizer=ClosingSummarizer())
        await open_call(supervisor, factory)
        await factory.last.fire_message(ServerMessage(
            input_transcription="hi", output_transcription="hello", turn_complete=True,
        ))
        await supervisor.end()
        return supervisor

    supervisor = asyncio.run(scenario())
    assert observed == [SessionState.SUMMARIZING]
    assert supervisor.state == SessionState.CLOSED


# ---------------------------------------------------------------------
# Pre-flight and acquisition failures
# ---------------------------------------------------------------------

def test_missing_api_key_fails_without_connecting():
    async def scenario() -> tuple[ReconnectionSupervisor, FakeAudioBackend, FakeTransportFactory]:
        result = make_supervisor(config=make_config(live_api_key=None))
        await result[0].start()
        return result

    supervisor, backend, factory = asyncio.run(scenario())
    assert supervisor.state == SessionState.ERROR
    assert supervisor.error_message == "Missing API Key. Please check your configuration."
    assert factory.created == []
    assert backend.inputs == []
    assert supervisor.retry.attempt == 0


def test_offline_fails_then_reconnects_when_online():
    async def scenario() -> tuple[ReconnectionSupervisor, FakeTransportFactory]:
        connectivity = ConnectivityNotifier(online=False)
        supervisor, _, factory = make_supervisor(connectivity=connectivity)
        await supervisor.start()
        assert supervisor.state == SessionState.ERROR
        assert supervisor.error_message == "No internet connection. Please check your network."

        await connectivity.set_online(True)
        return supervisor, factory

    supervisor, factory = asyncio.run(scenario())
    assert supervisor.state == SessionState.CONNECTING
    assert len(factory.created) == 1


def test_connectivity_restored_reinitializes_after_fatal_error():
    async def scenario() -> tuple[ReconnectionSupervisor, FakeTransportFactory]:
        connectivity = ConnectivityNotifier(online=True)
        supervisor, _, factory = make_supervisor(connectivity=connectivity)
        await open_call(supervisor, factory)
        await factory.last.fire_error(TransportError(FATAL))

        await connectivity.set_online(False)
        assert supervisor.state == SessionState.ERROR
        await connectivity.set_online(True)
        return supervisor, factory

    supervisor, factory = asyncio.run(scenario())
    assert supervisor.state == SessionState.CONNECTING
    assert len(factory.created) == 2


@pytest.mark.parametrize("error", [MicPermissionDenied(), MicInUse()])
def test_microphone_failures_surface_distinct_messages(error: Exception):
    async def scenario() -> tuple[ReconnectionSupervisor, FakeAudioBackend, FakeTransportFactory]:
        result = make_supervisor(backend=FakeAudioBackend(input_error=error))
        await result[0].start()
        return result

    supervisor, backend, factory = asyncio.run(scenario())
    assert supervisor.state == SessionState.ERROR
    assert supervisor.error_message == error.user_message
    assert factory.created == []
    # Playback context opened before the mic failed is released
    assert backend.outputs[0].closed


def test_audio_subsystem_failure_is_fatal():
    def broken_backend() -> FakeAudioBackend:
        raise AudioContextInitError()

    async def scenario() -> ReconnectionSupervisor:
        supervisor = ReconnectionSupervisor(
            config=make_config(),
            backend_factory=broken_backend,
            transport_factory=FakeTransportFactory(),
            settings=SettingsStore(),
            sleep=no_sleep,
        )
        await supervisor.start()
        return supervisor

    supervisor = asyncio.run(scenario())
    assert supervisor.state == SessionState.ERROR
    assert supervisor.error_message == "Audio system is not available in this environment."


# ---------------------------------------------------------------------
# Ending
# ---------------------------------------------------------------------

def test_end_summarizes_and_reports_memory():
    updates: list[str] = []

    async def scenario() -> tuple[ReconnectionSupervisor, FakeSummarizer]:
        summarizer = FakeSummarizer(result="Sam likes jazz.")
        supervisor, _, factory = make_supervisor(
            summarizer=summarizer, memory="Name is Sam.", on_memory_updated=updates.append,
        )
        await open_call(supervisor, factory)
        await factory.last.fire_message(ServerMessage(input_transcription="I like jazz", turn_complete=True))
        await factory.last.fire_message(ServerMessage(output_transcription="Noted!", turn_complete=True))
        await supervisor.end()
        assert factory.last.closed
        return supervisor, summarizer

    supervisor, summarizer = asyncio.run(scenario())
    assert supervisor.state == SessionState.CLOSED
    assert updates == ["Sam likes jazz."]
    assert supervisor.memory == "Sam likes jazz."
    items, memory = summarizer.calls[0]
    assert [i.role for i in items] == ["user", "model"]
    assert memory == "Name is Sam."


def test_summarization_failure_still_closes(monkeypatch: pytest.MonkeyPatch):
    emitted: list[dict[str, Any]] = []
    monkeypatch.setattr(supervisor_mod, "log_event", emitted.append)

    async def scenario() -> ReconnectionSupervisor:
        supervisor, _, factory = make_supervisor(summarizer=FakeSummarizer(error=RuntimeError("quota")))
        await open_call(supervisor, factory)
        await factory.last.fire_message(ServerMessage(
            input_transcription="a", output_transcription="b", turn_complete=True,
        ))
        await supervisor.end()
        return supervisor

    supervisor = asyncio.run(scenario())
    assert supervisor.state == SessionState.CLOSED
    states = [e["to_state"] for e in emitted if e["event_type"] == "session_state_changed"]
    assert states == ["active", "summarizing", "closed"]
    assert any(e["event_type"] == "summarization_failed" for e in emitted)


def test_short_transcript_skips_summarization():
    async def scenario() -> tuple[ReconnectionSupervisor, FakeSummarizer]:
        summarizer = FakeSummarizer()
        supervisor, _, factory = make_supervisor(summarizer=summarizer)
        await open_call(supervisor, factory)
        await factory.last.fire_message(ServerMessage(output_transcription="Hi", turn_complete=True))
        await supervisor.end()
        return supervisor, summarizer

    supervisor, summarizer = asyncio.run(scenario())
    assert supervisor.state == SessionState.CLOSED
    assert summarizer.calls == []


def test_end_stops_recording_and_keeps_artifact():
    async def scenario() -> ReconnectionSupervisor:
        supervisor, backend, factory = make_supervisor()
        await open_call(supervisor, factory)
        assert supervisor.start_recording()

        backend.feed_mic(mic_frame())
        await factory.last.fire_message(ServerMessage(audio_data=tone_b64(0.2)))
        backend.pull_output(4800)

        await supervisor.end()
        return supervisor

    supervisor = asyncio.run(scenario())
    assert not supervisor.mixer.is_recording
    assert supervisor.last_recording is not None
    assert supervisor.last_recording.duration_s == pytest.approx(0.2)


def test_recording_without_stream_is_reported_not_raised():
    async def scenario() -> ReconnectionSupervisor:
        supervisor, _, _ = make_supervisor(config=make_config(live_api_key=None))
        await supervisor.start()
        assert supervisor.start_recording() is False
        return supervisor

    supervisor = asyncio.run(scenario())
    assert supervisor.recording_error == "Audio stream not available."


def test_end_from_retry_wait_cancels_reconnect():
    async def scenario() -> tuple[ReconnectionSupervisor, FakeTransportFactory]:
        gate = asyncio.Event()

        async def gated_sleep(_: float) -> None:
            await gate.wait()

        supervisor, _, factory = make_supervisor(sleep=gated_sleep)
        await supervisor.start()
        await factory.last.fire_error(TransportError(TRANSIENT))
        task = supervisor.retry_task
        await supervisor.end()
        gate.set()
        await asyncio.gather(task, return_exceptions=True)
        return supervisor, factory

    supervisor, factory = asyncio.run(scenario())
    assert supervisor.state == SessionState.CLOSED
    assert len(factory.created) == 1


# ---------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------

@pytest.mark.parametrize("opened", [True, False])
def test_repeated_teardown_releases_each_resource_once(opened: bool):
    async def scenario() -> tuple[FakeAudioBackend, FakeTransportFactory]:
        supervisor, backend, factory = make_supervisor()
        await supervisor.start()
        if opened:
            await factory.last.fire_open()
        call = supervisor.call
        assert call is not None

        await supervisor.end()
        await supervisor.end()
        await supervisor.shutdown()
        await call.teardown()
        assert supervisor.state == SessionState.CLOSED
        return backend, factory

    backend, factory = asyncio.run(scenario())
    assert backend.inputs[0].close_calls == 1
    assert backend.outputs[0].close_calls == 1
    assert factory.last.close_calls == 1


def test_teardown_after_error_then_shutdown_is_quiet():
    async def scenario() -> tuple[FakeAudioBackend, FakeTransportFactory]:
        supervisor, backend, factory = make_supervisor()
        await open_call(supervisor, factory)
        await factory.last.fire_error(TransportError(FATAL))
        await supervisor.shutdown()
        await supervisor.shutdown()
        return backend, factory

    backend, factory = asyncio.run(scenario())
    assert backend.inputs[0].close_calls == 1
    assert backend.outputs[0].close_calls == 1
    assert factory.last.close_calls == 1


def test_failing_release_step_does_not_stop_later_steps(monkeypatch: pytest.MonkeyPatch):
    emitted: list[dict[str, Any]] = []
    monkeypatch.setattr(live_call_mod, "log_event", emitted.append)

    async def scenario() -> tuple[ReconnectionSupervisor, FakeAudioBackend, FakeTransportFactory]:
        backend = FakeAudioBackend(input_close_error=RuntimeError("device vanished"))
        supervisor, _, factory = make_supervisor(backend=backend)
        await open_call(supervisor, factory)
        call = supervisor.call
        assert call is not None

        await supervisor.end()
        await call.teardown()
        return supervisor, backend, factory

    supervisor, backend, factory = asyncio.run(scenario())
    assert supervisor.state == SessionState.CLOSED
    assert backend.inputs[0].close_calls == 1
    assert backend.outputs[0].closed
    assert factory.last.close_calls == 1

    failures = [e for e in emitted if e["event_type"] == "teardown_step_failed"]
    assert [(e["step"], e["message"]) for e in failures] == [("capture_stream", "device vanished")]


# ---------------------------------------------------------------------
# Live controls
# ---------------------------------------------------------------------

def test_mute_applies_across_open():
    async def scenario() -> tuple[ReconnectionSupervisor, FakeTransportFactory]:
        supervisor, backend, factory = make_supervisor()
        supervisor.set_muted(True)
        await open_call(supervisor, factory)

        for _ in range(3):
            backend.feed_mic(mic_frame())
        await asyncio.sleep(0)
        assert factory.last.sent == []

        supervisor.set_muted(False)
        backend.feed_mic(mic_frame())
        await settle(lambda: len(factory.last.sent) == 1)
        return supervisor, factory

    supervisor, factory = asyncio.run(scenario())
    assert factory.last.sent[0].sequence_num == 1
    assert supervisor.call is not None
    assert supervisor.call.encoder is not None
    assert supervisor.call.encoder.counters.muted_dropped == 3


def test_settings_changes_reach_the_live_graph():
    async def scenario() -> tuple[Any, Any]:
        settings = SettingsStore()
        supervisor, _, factory = make_supervisor(settings=settings)
        await open_call(supervisor, factory)
        await factory.last.fire_message(ServerMessage(audio_data=tone_b64(0.5)))

        settings.update(volume=1.0, speed=1.5, enhancer=False)

        call = supervisor.call
        assert call is not None and call.graph is not None and call.scheduler is not None
        return call.graph, call.scheduler

    graph, scheduler = asyncio.run(scenario())
    assert graph.gain.target == 1.0
    assert graph.compressor.ratio.target == 1.0
    assert [s.playback_rate for s in scheduler.active_sources] == [1.5]


def test_auto_level_setting_is_read_per_chunk():
    async def scenario() -> list[float]:
        settings = SettingsStore()
        supervisor, _, factory = make_supervisor(settings=settings)
        await open_call(supervisor, factory)

        await factory.last.fire_message(ServerMessage(audio_data=tone_b64(0.1, amplitude=0.25)))
        settings.update(auto_level=False)
        await factory.last.fire_message(ServerMessage(audio_data=tone_b64(0.1, amplitude=0.25)))

        call = supervisor.call
        assert call is not None and call.scheduler is not None
        return [float(np.max(np.abs(s.buffer.samples))) for s in call.scheduler.active_sources]

    peaks = asyncio.run(scenario())
    assert peaks[0] == pytest.approx(0.75, rel=1e-3)
    assert peaks[1] == pytest.approx(0.25, rel=1e-2)


def test_bad_inbound_audio_is_dropped():
    async def scenario() -> ReconnectionSupervisor:
        supervisor, _, factory = make_supervisor()
        await open_call(supervisor, factory)
        await factory.last.fire_message(ServerMessage(audio_data="%%%not-base64%%%"))
        await factory.last.fire_message(ServerMessage(audio_data=tone_b64(0.1)))
        return supervisor

    supervisor = asyncio.run(scenario())
    assert supervisor.state == SessionState.ACTIVE
    assert supervisor.call is not None and supervisor.call.scheduler is not None
    assert len(supervisor.call.scheduler) == 1
    assert supervisor.call.scheduler.cursor == pytest.approx(0.1)


# ---------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------

def test_capture_schedule_and_barge_in():
    async def scenario() -> None:
        supervisor, backend, factory = make_supervisor()
        await open_call(supervisor, factory)
        transport = factory.last

        # 5 captured frames -> 5 outbound chunks in order
        for i in range(5):
            backend.feed_mic(mic_frame(i / 10))
        await settle(lambda: len(transport.sent) == 5)
        assert [p.sequence_num for p in transport.sent] == [1, 2, 3, 4, 5]

        # Two inbound chunks back-to-back
        await transport.fire_message(ServerMessage(audio_data=tone_b64(0.5)))
        await transport.fire_message(ServerMessage(audio_data=tone_b64(0.3)))
        call = supervisor.call
        assert call is not None and call.scheduler is not None
        first, second = call.scheduler.active_sources
        assert second.start_time == pytest.approx(first.start_time + 0.5)

        # Play into the middle of the second chunk
        backend.pull_output(int(0.65 * 24000))
        await settle(lambda: len(call.scheduler) == 1)
        assert first.ended and not second.finished

        await transport.fire_message(ServerMessage(interrupted=True))

        assert len(call.scheduler) == 0
        assert first.finished and second.stopped
        assert np.all(backend.pull_output(2400) == 0.0)
        assert call.scheduler.cursor == pytest.approx(0.65)

    asyncio.run(scenario())
