# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
from typing import Any, Callable

import numpy as np
import pytest

import audio.capture_encoder as encoder_mod
from audio.capture_encoder import CaptureEncoder
from audio.frames import MediaPayload


def make_frame(value: float = 0.1) -> np.ndarray:
    return np.full(2048, value, dtype=np.float32)


async def settle(predicate: Callable[[], bool], rounds: int = 50) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    assert predicate()


# ---------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------

def test_frames_are_sent_in_order_with_increasing_sequence_numbers():
    async def scenario() -> list[MediaPayload]:
        sent: list[MediaPayload] = []

        async def send(payload: MediaPayload) -> None:
            sent.append(payload)

        encoder = CaptureEncoder(send=send, loop=asyncio.get_running_loop())
        encoder.start()
        for i in range(5):
            encoder.on_frame(make_frame(i / 10))
        await settle(lambda: len(sent) == 5)
        await encoder.close()
        return sent

    sent = asyncio.run(scenario())

    assert [p.sequence_num for p in sent] == [1, 2, 3, 4, 5]
    assert all(p.mime_type == "audio/pcm;rate=16000" for p in sent)


def test_encode_accepts_column_frames():
    async def scenario() -> int:
        async def send(_: MediaPayload) -> None:
            return None

        encoder = CaptureEncoder(send=send, loop=asyncio.get_running_loop())
        chunk = encoder.encode(np.zeros((2048, 1), dtype=np.float32))
        return chunk.frame_count

    assert asyncio.run(scenario()) == 2048


# ---------------------------------------------------------------------
# Mute
# ---------------------------------------------------------------------

def test_muted_frames_produce_nothing_and_unmute_resumes():
    async def scenario() -> tuple[list[MediaPayload], CaptureEncoder]:
        sent: list[MediaPayload] = []

        async def send(payload: MediaPayload) -> None:
            sent.append(payload)

        encoder = CaptureEncoder(send=send, loop=asyncio.get_running_loop())
        encoder.start()
        encoder.set_muted(True)
        results = [encoder.on_frame(make_frame()) for _ in range(10)]
        assert results == [None] * 10

        await asyncio.sleep(0)
        assert sent == []

        encoder.set_muted(False)
        assert encoder.on_frame(make_frame()) is not None
        await settle(lambda: len(sent) == 1)
        await encoder.close()
        return sent, encoder

    sent, encoder = asyncio.run(scenario())

    assert encoder.counters.muted_dropped == 10
    assert encoder.counters.produced == 1
    # No sequence numbers are consumed while muted
    assert sent[0].sequence_num == 1


# ---------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------

def test_send_failures_are_logged_and_capture_continues(monkeypatch: pytest.MonkeyPatch):
    emitted: list[dict[str, Any]] = []
    monkeypatch.setattr(encoder_mod, "log_event", emitted.append)

    async def scenario() -> list[int]:
        delivered: list[int] = []

        async def send(payload: MediaPayload) -> None:
            if payload.sequence_num == 2:
                raise ConnectionError("socket closed")
            delivered.append(payload.sequence_num)

        encoder = CaptureEncoder(send=send, loop=asyncio.get_running_loop())
        encoder.start()
        for _ in range(3):
            encoder.on_frame(make_frame())
        await settle(lambda: len(delivered) == 2)
        await encoder.close()
        return delivered

    delivered = asyncio.run(scenario())

    assert delivered == [1, 3]
    failures = [e for e in emitted if e["event_type"] == "capture_send_failed"]
    assert len(failures) == 1
    assert failures[0]["sequence_num"] == 2


def test_closed_encoder_drops_frames():
    async def scenario() -> CaptureEncoder:
        async def send(_: MediaPayload) -> None:
            return None

        encoder = CaptureEncoder(send=send, loop=asyncio.get_running_loop())
        encoder.start()
        await encoder.close()
        await encoder.close()
        assert encoder.on_frame(make_frame()) is None
        return encoder

    encoder = asyncio.run(scenario())
    assert encoder.counters.produced == 0
    assert encoder.counters.muted_dropped == 0
