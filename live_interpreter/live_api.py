"""
live_api.py — Live Interpreter · Live API Session Transport
===========================================================
One `LiveConnection` wraps one BidiGenerateContent WebSocket:

  open()          connect, send the setup message, wait for setupComplete
  send_audio()    non-blocking; frames go through a bounded outbox drained
                  by a writer task (a full outbox drops the frame)
  reader task     decodes each server message into session events and
                  hands them to the sink; emits exactly one SessionClosed
                  when the socket ends, however it ends
  close()         idempotent

The connection never decides anything.  Whether a closure was expected,
and what to do about it, belongs to the controller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .codec import TransportFrame
from .config import LiveApiConfig
from .errors import ConnectionFailed
from .transcript import Channel

log = logging.getLogger("live_interpreter.live_api")


# ---------------------------------------------------------------------------
# Session events (connection → controller)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PartialText:
    channel: Channel
    text: str


@dataclass(frozen=True)
class AudioChunk:
    frame: TransportFrame


@dataclass(frozen=True)
class TurnComplete:
    pass


@dataclass(frozen=True)
class GoAway:
    """Server notice that the session will be terminated soon."""
    time_left: Optional[str] = None


@dataclass(frozen=True)
class SessionClosed:
    code: Optional[int] = None
    reason: str = ""


@dataclass(frozen=True)
class SessionError:
    message: str


EventSink = Callable[[Any], None]


@dataclass(frozen=True)
class SessionSetup:
    model: str
    system_instruction: str
    voice_name: str
    continuation: bool = False


# ---------------------------------------------------------------------------
# Wire messages
# ---------------------------------------------------------------------------

def build_setup_message(setup: SessionSetup) -> dict:
    model = setup.model if setup.model.startswith("models/") else f"models/{setup.model}"
    return {
        "setup": {
            "model": model,
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": setup.voice_name}},
                },
            },
            "systemInstruction": {"parts": [{"text": setup.system_instruction}]},
            "inputAudioTranscription": {},
            "outputAudioTranscription": {},
        }
    }


def build_audio_message(frame: TransportFrame) -> dict:
    return {"realtimeInput": {"audio": {"mimeType": frame.mime_type, "data": frame.data}}}


def parse_server_message(msg: dict, default_rate: int = 24000) -> list:
    """Translate one server message into zero or more session events.

    Ordering within a message: audio parts, input text, output text, then
    turn completion, so a turn never closes ahead of its own text.
    """
    events: list = []
    content = msg.get("serverContent") or {}

    for part in (content.get("modelTurn") or {}).get("parts") or []:
        inline = part.get("inlineData")
        if inline and inline.get("data"):
            events.append(AudioChunk(TransportFrame.from_mime(
                inline["data"], inline.get("mimeType"), default_rate=default_rate,
            )))

    text_in = (content.get("inputTranscription") or {}).get("text")
    if text_in:
        events.append(PartialText(Channel.INPUT, text_in))
    text_out = (content.get("outputTranscription") or {}).get("text")
    if text_out:
        events.append(PartialText(Channel.OUTPUT, text_out))

    if content.get("turnComplete"):
        events.append(TurnComplete())

    if "goAway" in msg:
        events.append(GoAway(time_left=(msg.get("goAway") or {}).get("timeLeft")))

    if "error" in msg:
        err = msg.get("error")
        events.append(SessionError(str(err.get("message", err)) if isinstance(err, dict) else str(err)))

    return events


def _decode(message) -> Optional[dict]:
    if isinstance(message, (bytes, bytearray)):
        message = message.decode("utf-8", errors="replace")
    try:
        msg = json.loads(message)
    except ValueError:
        return None
    return msg if isinstance(msg, dict) else None


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

class LiveConnection:
    def __init__(self, session_id: int, ws, sink: EventSink, outbound_queue_size: int = 64, default_rate: int = 24000):
        self.session_id = session_id
        self._ws = ws
        self._sink = sink
        self._default_rate = default_rate
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=outbound_queue_size)
        self._closing = False
        self._closed_emitted = False
        self.frames_dropped = 0
        self._reader = asyncio.create_task(self._read_loop(), name=f"live-reader-{session_id}")
        self._writer = asyncio.create_task(self._write_loop(), name=f"live-writer-{session_id}")

    @classmethod
    async def open(cls, session_id: int, setup: SessionSetup, sink: EventSink, config: LiveApiConfig, default_rate: int = 24000) -> "LiveConnection":
        api_key = os.getenv(config.api_key_env, "")
        if not api_key:
            raise ConnectionFailed(f"{config.api_key_env} is not set")

        url = f"{config.url}?key={api_key}"
        try:
            ws = await websockets.connect(url, max_size=None, open_timeout=config.open_timeout_sec)
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            log.error("event=live_connect_failed session=%d error=%s", session_id, exc)
            raise ConnectionFailed(f"could not connect to Live API: {exc}") from exc

        try:
            await ws.send(json.dumps(build_setup_message(setup)))
            reply = await asyncio.wait_for(ws.recv(), timeout=config.open_timeout_sec)
            msg = _decode(reply)
            if msg is None or "setupComplete" not in msg:
                raise ConnectionFailed(f"unexpected setup reply: {str(reply)[:200]}")
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            await ws.close()
            log.error("event=live_setup_failed session=%d error=%s", session_id, exc)
            raise ConnectionFailed(f"Live API setup failed: {exc}") from exc
        except ConnectionFailed:
            await ws.close()
            raise
        except asyncio.CancelledError:
            log.info("event=live_setup_cancelled session=%d", session_id)
            await ws.close()
            raise

        log.info("event=live_session_open session=%d model=%s continuation=%s",
                 session_id, setup.model, setup.continuation)
        return cls(session_id, ws, sink, config.outbound_queue_size, default_rate)

    def send_audio(self, frame: TransportFrame) -> bool:
        if self._closing:
            return False
        try:
            self._outbox.put_nowait(build_audio_message(frame))
        except asyncio.QueueFull:
            self.frames_dropped += 1
            log.warning("event=live_outbox_full session=%d dropped=%d", self.session_id, self.frames_dropped)
            return False
        return True

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._writer.cancel()
        try:
            await self._ws.close()
        except (WebSocketException, OSError) as exc:
            log.warning("event=live_close_error session=%d error=%s", self.session_id, exc)
        await asyncio.gather(self._reader, self._writer, return_exceptions=True)
        log.info("event=live_session_closed session=%d", self.session_id)

    # -- tasks --

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                msg = _decode(message)
                if msg is None:
                    log.warning("event=live_undecodable_message session=%d", self.session_id)
                    continue
                for event in parse_server_message(msg, self._default_rate):
                    self._sink(event)
        except ConnectionClosed:
            pass
        except WebSocketException as exc:
            log.warning("event=live_reader_error session=%d error=%s", self.session_id, exc)
            self._sink(SessionError(str(exc)))
        finally:
            self._emit_closed()

    async def _write_loop(self) -> None:
        try:
            while True:
                payload = await self._outbox.get()
                await self._ws.send(json.dumps(payload))
        except ConnectionClosed:
            pass
        except WebSocketException as exc:
            log.warning("event=live_writer_error session=%d error=%s", self.session_id, exc)

    def _emit_closed(self) -> None:
        if self._closed_emitted:
            return
        self._closed_emitted = True
        code = getattr(self._ws, "close_code", None)
        reason = getattr(self._ws, "close_reason", None) or ""
        log.info("event=live_socket_ended session=%d code=%s reason=%s", self.session_id, code, reason)
        self._sink(SessionClosed(code=code, reason=reason))


class LiveApiConnector:
    """Opens `LiveConnection`s with the configured endpoint and credentials."""

    def __init__(self, config: LiveApiConfig, output_sample_rate: int = 24000):
        self.config = config
        self.output_sample_rate = output_sample_rate

    async def __call__(self, session_id: int, setup: SessionSetup, sink: EventSink) -> LiveConnection:
        return await LiveConnection.open(session_id, setup, sink, self.config, self.output_sample_rate)
