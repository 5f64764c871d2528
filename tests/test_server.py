import time

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import FakeDevice, ollama_handler
from microsense.server import EventHub, create_app, load_engines
from microsense.services.inference_client import OllamaClient


def wait_for_state(client, state, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        current = client.get("/scan").json()["state"]
        if current == state:
            return
        time.sleep(0.01)
    raise AssertionError(f"state never reached {state!r} (last: {current!r})")


@pytest.fixture
def client(make_service):
    service = make_service()
    with TestClient(create_app(service)) as c:
        wait_for_state(c, "ready")
        yield c


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["state"] == "ready"
    assert data["ollama_connected"] is True


def test_profile_404_before_first_scan(client):
    r = client.get("/profile")
    assert r.status_code == 404
    assert client.get("/history").json() == []


def test_scan_round_trip(client):
    r = client.post("/scan/start")
    assert r.status_code == 200
    assert r.json()["started"] is True

    wait_for_state(client, "results")

    profile = client.get("/profile").json()
    assert profile["dominant_state"] == "balanced"
    assert profile["direction"]["direction"] == "maintaining"
    assert set(profile["params"]) >= {"aggression", "stress", "self_regulation"}
    assert len(client.get("/history").json()) == 1
    assert client.post("/scan/stop").json()["stopped"] is False


def test_scan_start_conflict_when_camera_unavailable(make_service):
    service = make_service(video=FakeDevice(allow=False))
    with TestClient(create_app(service)) as c:
        wait_for_state(c, "ready")
        r = c.post("/scan/start")
        assert r.status_code == 409
        assert "camera" in r.json()["error"]
        assert c.get("/scan").json()["state"] == "ready"


def test_settings_get_put(client):
    assert client.get("/settings").json()["theme"] == "dark"

    r = client.put("/settings", json={"theme": "light", "scan_duration": 20})
    assert r.status_code == 200
    assert r.json()["theme"] == "light"
    assert client.get("/settings").json()["scan_duration"] == 20

    assert client.put("/settings", json={"nope": 1}).status_code == 422

    assert client.delete("/data").json() == {"cleared": True}
    assert client.get("/settings").json()["theme"] == "dark"


def test_chat_streams_plain_text(client):
    r = client.post("/chat", json={"message": "hi there"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert r.text == "Hello there"

    log = client.get("/chat").json()
    assert log == [
        {"role": "user", "content": "hi there"},
        {"role": "assistant", "content": "Hello there"},
    ]


def test_chat_rejects_empty_message(client):
    assert client.post("/chat", json={"message": "   "}).status_code == 422
    assert client.post("/chat", json={}).status_code == 422


def test_chat_502_when_ollama_fails(make_service):
    failing = OllamaClient("http://ollama.test", transport=httpx.MockTransport(ollama_handler(status=503)))
    service = make_service(client=failing)
    with TestClient(create_app(service)) as c:
        r = c.post("/chat", json={"message": "hello"})
        assert r.status_code == 502
        assert "503" in r.json()["error"]


def test_chat_abort_and_models(client):
    assert client.post("/chat/abort").json() == {"aborted": True}
    data = client.get("/models").json()
    assert data["models"] == ["llama3.2:latest"]
    assert data["current"] == "llama3.2"


def test_monitoring_endpoints(client):
    assert client.post("/monitor/start").json()["monitoring"] is False  # no profile yet

    client.post("/scan/start")
    wait_for_state(client, "results")

    assert client.post("/monitor/start").json()["monitoring"] is True
    assert client.post("/monitor/stop").json() == {"monitoring": False}


def test_therapy_lookup(client):
    data = client.get("/therapy/high-stress").json()
    assert data["direction"] == "calming"
    assert data["suggestion"]["technique"] in data["techniques"]
    assert client.get("/therapy/whatever").json()["key"] == "balanced"


def test_websocket_status_ping_and_events(client):
    with client.websocket_connect("/ws/events") as ws:
        first = ws.receive_json()
        assert first["type"] == "status"
        assert first["data"]["state"] == "ready"

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}

        client.post("/scan/start")
        seen = set()
        while "profile" not in seen:
            seen.add(ws.receive_json()["type"])
        assert {"state", "countdown", "profile"} <= seen


def test_event_hub_drops_oldest_for_slow_consumers():
    hub = EventHub(queue_size=2)
    queue = hub.subscribe()
    for i in range(3):
        hub.publish({"n": i})
    assert [queue.get_nowait()["n"] for _ in range(2)] == [1, 2]
    hub.unsubscribe(queue)
    assert hub.subscriber_count == 0


def test_load_engines_rejects_malformed_target():
    with pytest.raises(ValueError):
        load_engines("no-colon-here")
