from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest

from src.liveroute.services.backend.client import BackendClient

BACKEND_URL = "http://backend.test/api"


@pytest.fixture
def anyio_backend():
    return "asyncio"


def order_row(
    order_id: int,
    delivery: tuple[float, float] | None,
    pickup: tuple[float, float] | None = (38.4192, 27.1287),
    pickup_address: str = "Kemeraltı Restaurant, Konak/İzmir",
    **extra,
) -> dict:
    row = {
        "id": order_id,
        "customer_name": f"Customer {order_id}",
        "customer_address": f"Street {order_id}, Bornova/İzmir",
        "estimated_arrival": None,
        "pos_location": pickup_address,
        "driver_status": "picked_up",
    }
    if delivery is not None:
        row["delivery_lat"], row["delivery_lng"] = delivery
    if pickup is not None:
        row["pos_location_lat"], row["pos_location_lng"] = pickup
    row.update(extra)
    return row


def directions_payload(
    leg_seconds: list[float],
    waypoint_order: list[int] | None = None,
    polyline: str | None = "_p~iF~ps|U_ulLnnqC_mqNvxq`@",
    steps: list[dict] | None = None,
) -> dict:
    legs = [
        {"duration": {"value": seconds}, "distance": {"value": 1000}, "steps": []}
        for seconds in leg_seconds
    ]
    if steps is not None and legs:
        legs[0]["steps"] = steps
    route = {"legs": legs, "waypoint_order": waypoint_order or []}
    if polyline:
        route["overview_polyline"] = {"points": polyline}
    return {"routes": [route]}


def _path(request: httpx.Request) -> str:
    return request.url.path.removeprefix("/api")


Handler = Callable[[httpx.Request], httpx.Response]


def make_backend(handler: Handler, **kwargs) -> BackendClient:
    kwargs.setdefault("backoff_seconds", 0.0)
    return BackendClient(base_url=BACKEND_URL, transport=httpx.MockTransport(handler), **kwargs)


class FakeBackend:
    """Scripted backend routes keyed by (method, path) with a request log."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, handler: Handler) -> None:
        self.routes[(method, path)] = handler

    def json(self, method: str, path: str, payload, status_code: int = 200) -> None:
        self.on(method, path, lambda request: httpx.Response(status_code, json=payload))

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and _path(r) == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, _path(request)))
        if handler is None:
            return httpx.Response(404, json={"error": f"no route for {request.url.path}"})
        return handler(request)

    def client(self, **kwargs) -> BackendClient:
        return make_backend(self, **kwargs)


def body(request: httpx.Request) -> dict:
    return json.loads(request.content.decode("utf-8"))


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()
