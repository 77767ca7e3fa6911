import json

import pytest

from src.liveroute.models.domain import Coordinates, DeliveryStop, RouteInfo, StopStatus, StopType
from src.liveroute.services.mapbridge.bridge import MapBridge, RouteRenderer


class RecordingSink:
    def __init__(self) -> None:
        self.messages: list[dict] = []

    async def send(self, message: dict) -> None:
        self.messages.append(message)


def _route(polyline: str | None = None) -> RouteInfo:
    return RouteInfo(
        driver_id="7",
        polyline=polyline,
        stops=[
            DeliveryStop(id="pickup-0", order_id=0, type=StopType.PICKUP, stop_number=0,
                         address="Kitchen", latitude=38.41, longitude=27.12),
            DeliveryStop(id="order-1", order_id=1, type=StopType.DELIVERY, stop_number=1,
                         address="Street 1", latitude=38.46, longitude=27.21, status=StopStatus.COMPLETED),
            DeliveryStop(id="order-2", order_id=2, type=StopType.DELIVERY, stop_number=2,
                         address="Street 2", latitude=38.47, longitude=27.22),
        ],
    )


@pytest.mark.anyio
async def test_commands_queue_until_ready_and_coalesce() -> None:
    sink = RecordingSink()
    bridge = MapBridge(sink)

    await bridge.upsert_marker("order-1", 1.0, 1.0, label="A")
    await bridge.pan_to(5.0, 5.0)
    await bridge.update_location(7, 2.0, 2.0)
    await bridge.upsert_marker("order-1", 1.5, 1.5, label="A")
    await bridge.update_location(7, 3.0, 3.0)
    await bridge.pan_to(6.0, 6.0)

    assert sink.messages == []
    assert len(bridge.pending) == 3

    assert await bridge.handle_inbound(json.dumps({"type": "ready"})) == "ready"

    assert [message["type"] for message in sink.messages] == ["UPSERT_MARKER", "PAN_TO", "UPDATE_LOCATION"]
    assert sink.messages[0]["lat"] == 1.5
    assert sink.messages[1] == {"type": "PAN_TO", "lat": 6.0, "lng": 6.0}
    assert sink.messages[2] == {"type": "UPDATE_LOCATION", "driver_id": "7", "lat": 3.0, "lng": 3.0}
    assert bridge.pending == []


@pytest.mark.anyio
async def test_ready_flushes_only_once_and_later_commands_go_straight_through() -> None:
    sink = RecordingSink()
    bridge = MapBridge(sink)
    await bridge.pan_to(1.0, 1.0)

    await bridge.handle_inbound({"type": "ready"})
    await bridge.handle_inbound({"type": "ready"})
    await bridge.pan_to(2.0, 2.0)

    assert [message["lat"] for message in sink.messages] == [1.0, 2.0]


@pytest.mark.anyio
async def test_remove_layer_drops_queued_updates() -> None:
    sink = RecordingSink()
    bridge = MapBridge(sink)
    await bridge.upsert_marker("order-9", 1.0, 1.0)
    await bridge.remove_layer("order-9")

    await bridge.mark_ready()

    assert sink.messages == [{"type": "REMOVE_LAYER", "id": "order-9"}]


@pytest.mark.anyio
async def test_tap_events_reach_listeners_in_both_shapes() -> None:
    bridge = MapBridge(RecordingSink())
    taps: list[str] = []

    async def async_listener(marker_id: str) -> None:
        taps.append(f"async:{marker_id}")

    bridge.on_tap(taps.append)
    bridge.on_tap(async_listener)

    assert await bridge.handle_inbound('{"type": "tap", "marker_id": "order-2"}') == "tap"
    assert await bridge.handle_inbound('{"type": "STOP_SELECTED", "stopId": "pickup-0"}') == "tap"

    assert taps == ["order-2", "async:order-2", "pickup-0", "async:pickup-0"]


@pytest.mark.anyio
async def test_malformed_inbound_messages_are_ignored() -> None:
    bridge = MapBridge(RecordingSink())

    assert await bridge.handle_inbound("not json") is None
    assert await bridge.handle_inbound("[1, 2]") is None
    assert await bridge.handle_inbound({"type": "tap"}) is None
    assert await bridge.handle_inbound({"type": "zoom"}) is None
    assert not bridge.ready


@pytest.mark.anyio
async def test_renderer_draws_letters_polyline_driver_and_pans_to_current_stop() -> None:
    sink = RecordingSink()
    bridge = MapBridge(sink)
    await bridge.mark_ready()

    await RouteRenderer(bridge).render(_route("_p~iF~ps|U_ulLnnqC_mqNvxq`@"), Coordinates(38.40, 27.10))

    markers = [m for m in sink.messages if m["type"] == "UPSERT_MARKER"]
    assert [(m["id"], m["label"], m["kind"]) for m in markers] == [
        ("pickup-0", "A", "pickup"),
        ("order-1", "B", "completed"),
        ("order-2", "C", "delivery"),
    ]
    polyline = next(m for m in sink.messages if m["type"] == "DRAW_POLYLINE")
    assert polyline["points"] == [[38.5, -120.2], [40.7, -120.95], [43.252, -126.453]]
    location = next(m for m in sink.messages if m["type"] == "UPDATE_LOCATION")
    assert location["driver_id"] == "7"
    assert sink.messages[-1] == {"type": "PAN_TO", "lat": 38.41, "lng": 27.12}


@pytest.mark.anyio
async def test_renderer_falls_back_to_straight_segments_and_removes_stale_stops() -> None:
    sink = RecordingSink()
    bridge = MapBridge(sink)
    await bridge.mark_ready()
    renderer = RouteRenderer(bridge)
    route = _route("_p~iF~ps|U_ulL")

    await renderer.render(route, Coordinates(38.40, 27.10))
    polyline = next(m for m in sink.messages if m["type"] == "DRAW_POLYLINE")
    assert polyline["points"][0] == [38.40, 27.10]
    assert len(polyline["points"]) == 4

    route.stops.pop()
    sink.messages.clear()
    await renderer.render(route)

    assert sink.messages[0] == {"type": "REMOVE_LAYER", "id": "order-2"}
