"""
Live streaming endpoint over a WebSocket (bidirectional JSON protocol).

Wire model:
- Connect to `{url}?key={api_key}`
- Send one `setup` message (model, audio response modality, prebuilt voice,
  system instruction, input/output transcription enabled)
- Server acknowledges with `setupComplete` -> on_open()
- Outbound: `realtimeInput.audio` with base64 PCM16 @ 16kHz + MIME type
- Inbound: `serverContent` carrying modelTurn inline audio, transcription
  deltas, turnComplete and interrupted flags -> on_message()

Failure model:
- Connect failures and abnormal closes -> on_error(exc) with the server's
  close reason preserved in the message (transient matching relies on it)
- Normal remote close -> on_close(reason)
- Local close() never triggers callbacks
"""

from __future__ import annotations

import asyncio
import json
import urllib.parse
from typing import Any

from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from audio.frames import MediaPayload
from errors import TransportError
from observability.logger import log_event
from transport.base import (
    ServerMessage,
    SessionOptions,
    TransportCallbacks,
    TransportSession,
)


def build_setup_message(options: SessionOptions) -> dict[str, Any]:
    """First message on the socket; configures the remote session."""
    setup: dict[str, Any] = {
        "model": options.model,
        "generationConfig": {
            "responseModalities": ["AUDIO"],
            "speechConfig": {
                "voiceConfig": {
                    "prebuiltVoiceConfig": {"voiceName": options.voice},
                },
            },
        },
        "inputAudioTranscription": {},
        "outputAudioTranscription": {},
    }
    if options.system_instruction:
        setup["systemInstruction"] = {"parts": [{"text": options.system_instruction}]}
    return {"setup": setup}


def build_audio_message(payload: MediaPayload) -> dict[str, Any]:
    return {
        "realtimeInput": {
            "audio": {"mimeType": payload.mime_type, "data": payload.data},
        },
    }


def parse_server_message(data: dict[str, Any]) -> ServerMessage | None:
    """
    Extract the fields the pipeline cares about from a serverContent message.

    Returns None for messages without serverContent (setupComplete,
    usage metadata, tool traffic).
    """
    content = data.get("serverContent")
    if not isinstance(content, dict):
        return None

    audio: str | None = None
    parts = (content.get("modelTurn") or {}).get("parts") or []
    if parts:
        inline = parts[0].get("inlineData") or {}
        audio = inline.get("data") or None

    def _text(key: str) -> str | None:
        block = content.get(key)
        if isinstance(block, dict):
            return block.get("text") or None
        return None

    return ServerMessage(
        audio_data=audio,
        input_transcription=_text("inputTranscription"),
        output_transcription=_text("outputTranscription"),
        turn_complete=bool(content.get("turnComplete")),
        interrupted=bool(content.get("interrupted")),
    )


class LiveWebSocketTransport(TransportSession):
    """One WebSocket connection == one live session."""

    def __init__(self, options: SessionOptions, *, session_id: str | None = None) -> None:
        self._options = options
        self._session_id = session_id

        self._ws: ClientConnection | None = None
        self._callbacks: TransportCallbacks | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._send_lock = asyncio.Lock()
        self._closing = False

    def _build_url(self) -> str:
        qs = urllib.parse.urlencode({"key": self._options.api_key})
        sep = "&" if "?" in self._options.url else "?"
        return f"{self._options.url}{sep}{qs}"

    # -------------------------------------------------------------------------
    # TransportSession
    # -------------------------------------------------------------------------

    async def open(self, callbacks: TransportCallbacks) -> None:
        self._callbacks = callbacks
        self._recv_task = asyncio.create_task(self._run())

    async def send_audio_frame(self, payload: MediaPayload) -> None:
        ws = self._ws
        if ws is None or self._closing:
            raise TransportError("session is not open")
        async with self._send_lock:
            await ws.send(json.dumps(build_audio_message(payload)))

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True

        task, self._recv_task = self._recv_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as exc:  # pylint: disable=broad-exception-caught
                log_event({
                    "event_type": "transport_close_failed",
                    "session_id": self._session_id,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })

    # -------------------------------------------------------------------------
    # Background loop
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        callbacks = self._callbacks
        assert callbacks is not None

        try:
            self._ws = await ws_connect(self._build_url(), max_size=None)
            await self._ws.send(json.dumps(build_setup_message(self._options)))
        except asyncio.CancelledError:
            return
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self._ws = None
            if not self._closing:
                await callbacks.on_error(exc)
            return

        ws = self._ws
        try:
            async for raw in ws:
                try:
                    data = json.loads(raw)
                except ValueError:
                    log_event({
                        "event_type": "transport_bad_message",
                        "session_id": self._session_id,
                    })
                    continue

                if "setupComplete" in data:
                    await callbacks.on_open()
                    continue

                message = parse_server_message(data)
                if message is not None:
                    await callbacks.on_message(message)
        except asyncio.CancelledError:
            return
        except ConnectionClosedOK as exc:
            if not self._closing:
                await callbacks.on_close(exc.rcvd.reason if exc.rcvd else None)
            return
        except ConnectionClosedError as exc:
            if not self._closing:
                reason = exc.rcvd.reason if exc.rcvd else ""
                code = exc.rcvd.code if exc.rcvd else 1006
                error = TransportError(f"{code} {reason}".strip())
                error.__cause__ = exc
                await callbacks.on_error(error)
            return
        except Exception as exc:  # pylint: disable=broad-exception-caught
            if not self._closing:
                await callbacks.on_error(exc)
            return

        # Iterator finished: remote closed cleanly
        if not self._closing:
            await callbacks.on_close(ws.close_reason or None)
