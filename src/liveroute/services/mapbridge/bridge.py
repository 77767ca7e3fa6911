"""Command channel between the route service and the map renderer."""

from __future__ import annotations

import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, Union

from fastapi import WebSocket

from ...models.domain import Coordinates, RouteInfo, StopStatus
from ..routing.polyline import decode_polyline

logger = logging.getLogger(__name__)

TapListener = Callable[[str], Union[None, Awaitable[None]]]
ReadyListener = Callable[[], Union[None, Awaitable[None]]]

ROUTE_LAYER_ID = "route"
DRIVER_MARKER_PREFIX = "driver"
ROUTE_STYLE = {"color": "#2563EB", "weight": 4, "opacity": 0.85}


class MapSink(Protocol):
    async def send(self, message: dict) -> None:
        ...


class WebSocketSink:
    """Forward bridge commands to a connected renderer over a FastAPI websocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def send(self, message: dict) -> None:
        await self.websocket.send_json(message)


async def _invoke(listener: Callable[..., Any], *args: Any) -> None:
    result = listener(*args)
    if inspect.isawaitable(result):
        await result


class MapBridge:
    """Queue commands until the renderer reports ready, then stream them.

    Queued commands coalesce by layer id so the renderer only ever receives the
    latest state of each marker, polyline and pan target.
    """

    def __init__(self, sink: MapSink | None = None) -> None:
        self.sink = sink
        self.ready = False
        self._queue: dict[str, dict] = {}
        self._tap_listeners: list[TapListener] = []
        self._ready_listeners: list[ReadyListener] = []

    def attach(self, sink: MapSink) -> None:
        """Bind a new renderer; commands queue again until it reports ready."""
        self.sink = sink
        self.ready = False

    def detach(self) -> None:
        self.sink = None
        self.ready = False

    @property
    def pending(self) -> list[dict]:
        return list(self._queue.values())

    def on_tap(self, listener: TapListener) -> None:
        self._tap_listeners.append(listener)

    def on_ready(self, listener: ReadyListener) -> None:
        self._ready_listeners.append(listener)

    async def _dispatch(self, key: str, message: dict) -> None:
        if self.ready and self.sink is not None:
            try:
                await self.sink.send(message)
            except Exception as e:
                logger.warning(f"Map renderer rejected {message.get('type')}: {e}")
            return
        self._queue[key] = message

    async def upsert_marker(
        self, marker_id: str, lat: float, lng: float, label: str = "", kind: str = "stop"
    ) -> None:
        await self._dispatch(
            f"marker:{marker_id}",
            {"type": "UPSERT_MARKER", "id": marker_id, "lat": lat, "lng": lng, "label": label, "kind": kind},
        )

    async def draw_polyline(
        self, layer_id: str, points: Sequence[tuple[float, float]], style: dict | None = None
    ) -> None:
        await self._dispatch(
            f"polyline:{layer_id}",
            {
                "type": "DRAW_POLYLINE",
                "id": layer_id,
                "points": [[lat, lng] for lat, lng in points],
                "style": dict(style or ROUTE_STYLE),
            },
        )

    async def pan_to(self, lat: float, lng: float) -> None:
        await self._dispatch("pan", {"type": "PAN_TO", "lat": lat, "lng": lng})

    async def remove_layer(self, layer_id: str) -> None:
        self._queue.pop(f"marker:{layer_id}", None)
        self._queue.pop(f"polyline:{layer_id}", None)
        await self._dispatch(f"remove:{layer_id}", {"type": "REMOVE_LAYER", "id": layer_id})

    async def update_location(self, driver_id: int | str, lat: float, lng: float) -> None:
        await self._dispatch(
            f"location:{driver_id}",
            {"type": "UPDATE_LOCATION", "driver_id": str(driver_id), "lat": lat, "lng": lng},
        )

    async def mark_ready(self) -> None:
        if self.ready:
            return
        self.ready = True
        pending = list(self._queue.values())
        self._queue.clear()
        logger.info(f"Map renderer ready, flushing {len(pending)} queued commands")
        for message in pending:
            if self.sink is None:
                break
            try:
                await self.sink.send(message)
            except Exception as e:
                logger.warning(f"Map renderer rejected {message.get('type')}: {e}")
        for listener in list(self._ready_listeners):
            try:
                await _invoke(listener)
            except Exception:
                logger.exception("Map ready listener failed")

    async def handle_inbound(self, raw: Union[str, bytes, dict]) -> Optional[str]:
        """Handle a renderer event; returns the event type handled, or None."""
        message: Any = raw
        if isinstance(raw, (str, bytes)):
            try:
                message = json.loads(raw)
            except ValueError:
                logger.warning(f"Ignoring malformed map message: {raw!r}")
                return None
        if not isinstance(message, dict):
            logger.warning(f"Ignoring non-object map message: {message!r}")
            return None

        kind = str(message.get("type") or "").lower()
        if kind == "ready":
            await self.mark_ready()
            return "ready"
        if kind in ("tap", "stop_selected"):
            marker_id = message.get("marker_id") or message.get("stopId")
            if not marker_id:
                logger.warning(f"Tap event without a marker id: {message!r}")
                return None
            for listener in list(self._tap_listeners):
                try:
                    await _invoke(listener, str(marker_id))
                except Exception:
                    logger.exception(f"Tap listener failed for marker {marker_id}")
            return "tap"
        logger.debug(f"Unhandled map message type '{kind}'")
        return None


def _marker_kind(stop_status: StopStatus, is_pickup: bool) -> str:
    if stop_status is StopStatus.COMPLETED:
        return "completed"
    return "pickup" if is_pickup else "delivery"


class RouteRenderer:
    """Draw a route (stop markers, path and driver) through a :class:`MapBridge`."""

    def __init__(self, bridge: MapBridge) -> None:
        self.bridge = bridge
        self._rendered: set[str] = set()

    async def render(self, route: RouteInfo, driver_position: Optional[Coordinates] = None) -> None:
        current_ids = {stop.id for stop in route.stops}
        for stale in sorted(self._rendered - current_ids):
            await self.bridge.remove_layer(stale)
        self._rendered = current_ids

        for stop in route.stops:
            await self.bridge.upsert_marker(
                stop.id,
                stop.latitude,
                stop.longitude,
                label=stop.letter,
                kind=_marker_kind(stop.status, stop.is_pickup),
            )

        points = self._path_points(route, driver_position)
        if len(points) >= 2:
            await self.bridge.draw_polyline(ROUTE_LAYER_ID, points)

        if driver_position is not None:
            await self.bridge.update_location(route.driver_id or DRIVER_MARKER_PREFIX, driver_position.lat, driver_position.lng)

        current = route.current_stop()
        focus = current.coordinates if current is not None else driver_position
        if focus is not None:
            await self.bridge.pan_to(focus.lat, focus.lng)

    def _path_points(
        self, route: RouteInfo, driver_position: Optional[Coordinates]
    ) -> list[tuple[float, float]]:
        if route.polyline:
            try:
                return decode_polyline(route.polyline)
            except ValueError as e:
                logger.warning(f"Could not decode route polyline, drawing straight segments: {e}")
        points = [(stop.latitude, stop.longitude) for stop in route.stops]
        if driver_position is not None:
            points.insert(0, (driver_position.lat, driver_position.lng))
        return points
