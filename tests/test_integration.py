import json
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import FakeBackend, directions_payload, order_row

from src.liveroute.api.dependencies import ServiceContainer
from src.liveroute.main import create_app
from src.liveroute.persistence.filesystem import FileStorage
from src.liveroute.services.geocoding.resolver import NominatimGeocodeProvider

STEPS = [{"html_instructions": "Turn <b>left</b>", "end_location": {"lat": 38.41, "lng": 27.12}}]


def _nominatim() -> NominatimGeocodeProvider:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/reverse":
            return httpx.Response(200, json={"address": {"road": "Kordon Boyu"}})
        return httpx.Response(200, json=[])

    return NominatimGeocodeProvider(base_url="http://nominatim.test", transport=httpx.MockTransport(handler))


@pytest.fixture
def backend() -> FakeBackend:
    fake = FakeBackend()
    fake.json(
        "GET",
        "/drivers/7/active-orders",
        [order_row(1, (38.4600, 27.2100)), order_row(2, (38.4700, 27.2200))],
    )
    fake.json("GET", "/drivers/google-directions", directions_payload([300, 300], steps=STEPS))
    fake.json("POST", "/drivers/location", {"ok": True})
    fake.json("PATCH", "/orders/1/status", {"ok": True})
    fake.json("GET", "/drivers/geocode", {"lat": 38.4189, "lng": 27.1287})
    return fake


@pytest.fixture
def client(backend: FakeBackend, tmp_path: Path):
    services = ServiceContainer(
        backend=backend.client(),
        nominatim=_nominatim(),
        storage=FileStorage(root=tmp_path),
        background_uploads=False,
    )
    with TestClient(create_app(services)) as test_client:
        yield test_client


def test_health_endpoints(client: TestClient) -> None:
    assert client.get("/api/health").json() == {"status": "ok"}
    assert client.get("/api/health/backend").json() == {"service": "backend", "healthy": True}
    assert client.get("/").json()["status"] == "running"


def test_session_lifecycle(client: TestClient, backend: FakeBackend, tmp_path: Path) -> None:
    response = client.post("/api/sessions/7", json={})
    assert response.status_code == 201
    snapshot = response.json()
    assert [stop["letter"] for stop in snapshot["route"]["stops"]] == ["A", "B", "C"]
    assert snapshot["route"]["stops"][0]["type"] == "pickup"
    assert snapshot["language"] == "en"

    response = client.post("/api/sessions/7/location", json={"lat": 38.40, "lng": 27.10, "speed": 5})
    assert response.json()["accepted"] is True
    assert len(backend.calls("POST", "/drivers/location")) == 1

    assert client.post("/api/sessions/7/gesture", json={"phase": "press"}).json()["state"] == "idle"
    moved = client.post("/api/sessions/7/gesture", json={"phase": "move", "dx": 80, "dy": 1}).json()
    assert moved["state"] == "dragging"
    assert moved["progress"] == 80
    released = client.post("/api/sessions/7/gesture", json={"phase": "release", "dx": 220, "dy": 1}).json()
    assert released["outcome"] == "delivered"
    assert released["order_id"] == 1
    assert released["state"] == "idle"

    language = client.put("/api/sessions/7/language", json={"code": "tr"})
    assert language.json() == {"code": "tr", "locale": "tr-TR"}
    assert client.put("/api/sessions/7/language", json={"code": "de"}).status_code == 400
    saved = json.loads((tmp_path / "voice_preferences.json").read_text(encoding="utf-8"))
    assert saved["7"]["code"] == "tr"

    steps = client.post("/api/sessions/7/navigate").json()["steps"]
    assert steps[0]["text"] == "Turn left"

    assert client.post("/api/sessions/7/speech/stop").json() == {"speaking": False}

    refreshed = client.post("/api/sessions/7/refresh", params={"reload": True}).json()
    statuses = {stop["id"]: stop["status"] for stop in refreshed["route"]["stops"]}
    assert statuses["order-1"] == "completed"
    assert refreshed["language"] == "tr"

    assert client.delete("/api/sessions/7").json() == {"driver_id": "7", "closed": True}
    assert client.get("/api/sessions/7").status_code == 404
    assert client.delete("/api/sessions/7").status_code == 404


def test_location_accepts_naive_then_server_stamped_samples(client: TestClient) -> None:
    client.post("/api/sessions/7", json={})

    first = client.post(
        "/api/sessions/7/location",
        json={"lat": 38.40, "lng": 27.10, "timestamp": "2020-01-01T12:00:00"},
    )
    second = client.post("/api/sessions/7/location", json={"lat": 38.41, "lng": 27.11})

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["accepted"] is True


def test_map_channel_flushes_queued_commands_on_ready(client: TestClient) -> None:
    client.post("/api/sessions/7", json={})

    with client.websocket_connect("/api/sessions/7/map") as websocket:
        websocket.send_text(json.dumps({"type": "ready"}))
        first = websocket.receive_json()

    assert first["type"] in {"UPSERT_MARKER", "DRAW_POLYLINE", "PAN_TO", "REMOVE_LAYER", "UPDATE_LOCATION"}


def test_map_channel_rejects_unknown_session(client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/api/sessions/99/map") as websocket:
            websocket.receive_json()


def test_single_order_session_requires_order_id(client: TestClient) -> None:
    assert client.post("/api/sessions/8", json={"multi_stop": False}).status_code == 422


def test_single_order_session_when_no_multi_stop_route(client: TestClient) -> None:
    response = client.post(
        "/api/sessions/8",
        json={
            "order_id": 55,
            "pickup_address": "Kemeraltı Restaurant, Konak/İzmir",
            "pickup_lat": 38.4189,
            "pickup_lng": 27.1287,
            "delivery_address": "Street 55, Bornova/İzmir",
            "delivery_lat": 38.4697,
            "delivery_lng": 27.2211,
        },
    )

    assert response.status_code == 201
    snapshot = response.json()
    assert snapshot["mode"] == "single_order"
    assert [stop["id"] for stop in snapshot["route"]["stops"]] == ["pickup-0", "order-55"]


def test_unknown_session_operations_return_404(client: TestClient) -> None:
    assert client.post("/api/sessions/99/location", json={"lat": 1, "lng": 1}).status_code == 404
    assert client.post("/api/sessions/99/gesture", json={"phase": "press"}).status_code == 404
    assert client.post("/api/sessions/99/navigate").status_code == 404


def test_backend_failure_opening_session_returns_502(client: TestClient, backend: FakeBackend) -> None:
    backend.on("GET", "/drivers/7/active-orders", lambda request: httpx.Response(500))

    response = client.post("/api/sessions/7", json={})

    assert response.status_code == 502


def test_one_shot_route(client: TestClient, backend: FakeBackend) -> None:
    response = client.get("/api/routes/7", params={"language": "es"})

    assert response.status_code == 200
    route = response.json()
    assert route["source"] == "directions"
    assert [stop["estimated_arrival_time"] for stop in route["stops"]] == [None, 5, 10]
    assert client.get("/api/routes/99").status_code == 404
    assert backend.calls("GET", "/drivers/google-directions")[-1].url.params["language"] == "es"


def test_geocode_endpoints(client: TestClient) -> None:
    resolved = client.get("/api/geocode", params={"address": "Kordon Boyu, Konak, İzmir"}).json()
    assert resolved["resolved"] is True
    assert resolved["tier"] == 1
    assert (resolved["lat"], resolved["lng"]) == (38.4189, 27.1287)

    reverse = client.get("/api/geocode/reverse", params={"lat": 38.41, "lng": 27.12}).json()
    assert reverse["name"] == "Kordon Boyu"


def test_backend_not_configured_returns_400(monkeypatch, tmp_path: Path) -> None:
    from src.liveroute.services.backend import client as client_module

    monkeypatch.setattr(client_module.settings, "backend_base_url", None)
    services = ServiceContainer(storage=FileStorage(root=tmp_path), nominatim=_nominatim())

    with TestClient(create_app(services)) as test_client:
        response = test_client.post("/api/sessions/7", json={})

    assert response.status_code == 400
