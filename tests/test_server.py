import json

import pytest
from fastapi.testclient import TestClient

from live_interpreter.engine import MeetingInterpreter
from live_interpreter.server import create_app

from .fakes import FakeConnector, FakeMicrophone, FakeOutput


@pytest.fixture
def harness(tmp_path, monkeypatch):
    config_path = tmp_path / "interpreter_config.json"
    monkeypatch.setenv("INTERPRETER_CONFIG", str(config_path))
    connector = FakeConnector()

    def factory(config):
        return MeetingInterpreter(config, connector=connector, output=FakeOutput(), microphone=FakeMicrophone())

    with TestClient(create_app(factory)) as client:
        yield client, connector, config_path


def test_health_and_status(harness):
    client, _, _ = harness
    assert client.get("/health").json() == {"status": "ok", "state": "idle"}
    status = client.get("/status").json()
    assert status["state"] == "idle"
    assert status["source_language"] == "English"
    assert status["target_language"] == "Chinese"
    assert status["error"] is None


def test_start_stop_lifecycle(harness):
    client, connector, _ = harness
    resp = client.post("/start")
    assert resp.status_code == 200
    assert resp.json()["state"] == "active"
    assert resp.json()["active_session_id"] == 1

    assert client.post("/start").status_code == 409
    resp = client.put("/languages", json={"source_language": "French", "target_language": "English"})
    assert resp.status_code == 409
    assert resp.json()["kind"] == "InvalidTransition"

    resp = client.post("/stop")
    assert resp.json()["state"] == "idle"
    assert connector.connections[0].close_calls == 1
    assert client.get("/transcript").json() == []


def test_languages_while_idle(harness):
    client, connector, _ = harness
    resp = client.put("/languages", json={"source_language": "Japanese", "target_language": "Korean"})
    assert resp.status_code == 200
    assert resp.json()["source_language"] == "Japanese"
    assert client.put("/languages", json={"source_language": "Klingon", "target_language": "Korean"}).status_code == 422

    client.post("/start")
    assert "SOURCE: Japanese. TARGET: Korean." in connector.setups()[0].system_instruction
    client.post("/stop")


def test_initial_connect_failure_maps_to_502_and_is_dismissible(harness):
    client, connector, _ = harness
    connector.fail_next = 1
    resp = client.post("/start")
    assert resp.status_code == 502
    assert resp.json()["kind"] == "ConnectionFailed"

    status = client.get("/status").json()
    assert status["state"] == "idle"
    assert status["error"]["kind"] == "ConnectionFailed"

    assert client.delete("/error").json()["error"] is None


def test_minutes_download(harness):
    client, _, _ = harness
    resp = client.get("/minutes", params={"title": "Board Review"})
    assert resp.status_code == 200
    assert resp.text.startswith("MEETING MINUTES: Board Review\nDATE: ")
    assert 'filename="Board_Review_Minutes.txt"' in resp.headers["content-disposition"]


def test_config_patch_is_persisted(harness):
    client, _, config_path = harness
    assert client.get("/config").json()["rotation"]["max_session_sec"] == 270.0

    resp = client.put("/config", json={"rotation": {"context_turns": 3}})
    assert resp.status_code == 200
    assert resp.json()["rotation"]["context_turns"] == 3
    assert json.loads(config_path.read_text(encoding="utf-8"))["rotation"]["context_turns"] == 3

    assert client.put("/config", json={"rotation": {"max_session_sec": 0}}).status_code == 422

    client.post("/start")
    assert client.put("/config", json={"meeting": {"title": "x"}}).status_code == 409
    client.post("/stop")


def test_event_stream_replays_history(harness):
    client, _, _ = harness
    client.post("/start")
    client.post("/stop")
    with client.websocket_connect("/ws/events") as ws:
        event = ws.receive_json()
        assert event["kind"] in {"status", "log", "transcript"}
