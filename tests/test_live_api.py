import asyncio
import json

import pytest

from live_interpreter.codec import TransportFrame
from live_interpreter.config import LiveApiConfig
from live_interpreter.errors import ConnectionFailed
from live_interpreter.live_api import (
    AudioChunk,
    GoAway,
    LiveConnection,
    PartialText,
    SessionClosed,
    SessionSetup,
    TurnComplete,
    build_audio_message,
    build_setup_message,
    parse_server_message,
)
from live_interpreter.transcript import Channel

from .fakes import wait_until


class FakeSocket:
    def __init__(self, messages):
        self._messages = list(messages)
        self.sent = []
        self.closed = False
        self.close_code = None
        self.close_reason = ""
        self._release = asyncio.Event()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._messages:
            yield message
        await self._release.wait()

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True
        self.close_code = 1000
        self._release.set()


def test_setup_message_shape():
    msg = build_setup_message(SessionSetup(
        model="gemini-live", system_instruction="CONTEXT: x", voice_name="Zephyr",
    ))
    setup = msg["setup"]
    assert setup["model"] == "models/gemini-live"
    assert setup["generationConfig"]["responseModalities"] == ["AUDIO"]
    assert setup["generationConfig"]["speechConfig"]["voiceConfig"]["prebuiltVoiceConfig"]["voiceName"] == "Zephyr"
    assert setup["systemInstruction"]["parts"][0]["text"] == "CONTEXT: x"
    assert setup["inputAudioTranscription"] == {}
    assert setup["outputAudioTranscription"] == {}


def test_audio_message_carries_rate():
    msg = build_audio_message(TransportFrame(data="AAAA", sample_rate=16000))
    assert msg == {"realtimeInput": {"audio": {"mimeType": "audio/pcm;rate=16000", "data": "AAAA"}}}


def test_parse_server_content_orders_text_before_turn_complete():
    events = parse_server_message({
        "serverContent": {
            "modelTurn": {"parts": [{"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": "AAAA"}}]},
            "inputTranscription": {"text": "Hello"},
            "outputTranscription": {"text": "你好"},
            "turnComplete": True,
        }
    })
    assert isinstance(events[0], AudioChunk)
    assert events[0].frame.sample_rate == 24000
    assert events[1:] == [
        PartialText(Channel.INPUT, "Hello"),
        PartialText(Channel.OUTPUT, "你好"),
        TurnComplete(),
    ]


def test_parse_go_away_and_unknown_messages():
    assert parse_server_message({"goAway": {"timeLeft": "30s"}}) == [GoAway(time_left="30s")]
    assert parse_server_message({"setupComplete": {}}) == []
    assert parse_server_message({"usageMetadata": {"totalTokenCount": 10}}) == []


def test_connection_reads_events_and_reports_close_once():
    async def scenario():
        ws = FakeSocket([
            json.dumps({"serverContent": {"inputTranscription": {"text": "Hi"}}}),
            b'{"serverContent": {"turnComplete": true}}',
            "not json",
        ])
        events = []
        conn = LiveConnection(7, ws, events.append, outbound_queue_size=4)
        await wait_until(lambda: len(events) == 2)
        assert events == [PartialText(Channel.INPUT, "Hi"), TurnComplete()]

        await conn.close()
        await conn.close()
        assert ws.closed
        assert events[-1] == SessionClosed(code=1000, reason="")
        assert sum(isinstance(e, SessionClosed) for e in events) == 1
        assert conn.send_audio(TransportFrame(data="AAAA", sample_rate=16000)) is False

    asyncio.run(scenario())


def test_full_outbox_drops_frames():
    async def scenario():
        ws = FakeSocket([])
        conn = LiveConnection(1, ws, lambda e: None, outbound_queue_size=2)
        frame = TransportFrame(data="AAAA", sample_rate=16000)
        results = [conn.send_audio(frame) for _ in range(3)]
        assert results == [True, True, False]
        assert conn.frames_dropped == 1
        await wait_until(lambda: len(ws.sent) == 2)
        assert ws.sent[0]["realtimeInput"]["audio"]["data"] == "AAAA"
        await conn.close()

    asyncio.run(scenario())


def test_open_without_api_key_fails(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    async def scenario():
        setup = SessionSetup(model="m", system_instruction="s", voice_name="v")
        with pytest.raises(ConnectionFailed):
            await LiveConnection.open(1, setup, lambda e: None, LiveApiConfig())

    asyncio.run(scenario())


class StalledSocket(FakeSocket):
    def __init__(self):
        super().__init__([])

    async def recv(self):
        await self._release.wait()
        return json.dumps({"setupComplete": {}})


def test_cancelled_setup_closes_the_socket(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")

    async def scenario():
        ws = StalledSocket()

        async def connect(url, **kwargs):
            return ws

        monkeypatch.setattr("live_interpreter.live_api.websockets.connect", connect)
        setup = SessionSetup(model="m", system_instruction="s", voice_name="v")
        task = asyncio.create_task(LiveConnection.open(3, setup, lambda e: None, LiveApiConfig()))
        await wait_until(lambda: len(ws.sent) == 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert ws.closed
        assert "setup" in ws.sent[0]

    asyncio.run(scenario())
