"""Per-driver map session wiring GPS, routing, voice, swipe and map rendering."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from ..models.domain import (
    ActiveOrder,
    AnnouncementStep,
    Coordinates,
    LocationPoint,
    RouteInfo,
)
from ..preferences import VoicePreferences
from .announcer.proximity import LoggingSpeaker, ProximityAnnouncer, Speaker
from .backend.client import BackendClient, BackendError
from .delivery.swipe import SwipeDeliveryMachine, SwipeResult, SwipeState
from .geocoding.resolver import GeocodeResolver
from .geospatial import eta_minutes, haversine_km
from .mapbridge.bridge import MapBridge, RouteRenderer
from .routing.directions import extract_steps, parse_directions
from .routing.engine import RouteEngine, build_stops, group_pickups, mark_completed, merge_route
from .tracking.location_stream import BackendLocationUploader, LocationStream, PushLocationSource

logger = logging.getLogger(__name__)


class SessionNotFoundError(KeyError):
    """No open session exists for the requested driver."""


class SessionClosedError(RuntimeError):
    """The session was torn down while an operation was pending."""


@dataclass(slots=True)
class SingleOrder:
    """Order fields supplied by the caller when no multi-stop route exists."""

    order_id: int
    customer_name: Optional[str] = None
    pickup_address: Optional[str] = None
    pickup: Optional[Coordinates] = None
    delivery_address: Optional[str] = None
    delivery: Optional[Coordinates] = None
    estimated_arrival: Optional[int] = None

    def as_active_order(self) -> ActiveOrder:
        return ActiveOrder(
            id=self.order_id,
            customer_name=self.customer_name,
            delivery_address=self.delivery_address,
            delivery_lat=self.delivery.lat if self.delivery else None,
            delivery_lng=self.delivery.lng if self.delivery else None,
            estimated_arrival=self.estimated_arrival,
            pickup_address=self.pickup_address,
            pickup_lat=self.pickup.lat if self.pickup else None,
            pickup_lng=self.pickup.lng if self.pickup else None,
        )


class DriverSession:
    """Owns one route for the lifetime of a driver's map session."""

    def __init__(
        self,
        driver_id: int | str,
        backend: BackendClient,
        *,
        resolver: GeocodeResolver | None = None,
        engine: RouteEngine | None = None,
        source: PushLocationSource | None = None,
        speaker: Speaker | None = None,
        preferences: VoicePreferences | None = None,
        bridge: MapBridge | None = None,
        multi_stop: bool = True,
        background_uploads: bool = True,
    ) -> None:
        self.driver_id = driver_id
        self.backend = backend
        self.resolver = resolver
        self.preferences = preferences or VoicePreferences(key=str(driver_id))
        self.engine = engine or RouteEngine(backend, resolver, language=self.preferences.language)
        self.source = source or PushLocationSource()
        self.bridge = bridge or MapBridge()
        self.renderer = RouteRenderer(self.bridge)
        self.multi_stop = multi_stop

        self.stream = LocationStream(self.source)
        self.uploader = BackendLocationUploader(backend, driver_id, background=background_uploads)
        self.announcer = ProximityAnnouncer(speaker or LoggingSpeaker(), self.preferences)
        self.swipe = SwipeDeliveryMachine(
            self._write_completion, on_delivered=self._on_delivered, on_error=self._on_swipe_error
        )

        self.route: Optional[RouteInfo] = None
        self.single_order: Optional[SingleOrder] = None
        self.selected_stop_id: Optional[str] = None
        self.last_error: Optional[str] = None
        self.closed = False
        self.opened_at: Optional[datetime] = None
        self._located = False
        self._tasks: set[asyncio.Task] = set()

        self.stream.add_consumer(self.uploader)
        self.stream.add_consumer(self._on_location)
        self.stream.add_consumer(self.announcer)
        self.bridge.on_ready(self._redraw)
        self.bridge.on_tap(self._on_tap)

    # -- lifecycle -----------------------------------------------------

    async def open(self, single_order: SingleOrder | None = None) -> RouteInfo | None:
        self.preferences.load()
        self.engine.language = self.preferences.language

        if self.multi_stop:
            route = await self.engine.build_route(self.driver_id)
            self._ensure_open()
            if route is not None:
                self.route = route
                self.swipe.bind_route(route)
            elif single_order is None:
                logger.info(f"Driver {self.driver_id} has no multi-stop route")

        if self.route is None and single_order is not None:
            await self._open_single(single_order)

        await self.stream.start()
        self.opened_at = datetime.now().astimezone()
        logger.info(
            f"Session opened for driver {self.driver_id} "
            f"({len(self.route.stops) if self.route else 0} stops, language {self.preferences.language})"
        )
        await self._redraw()
        return self.route

    async def _open_single(self, order: SingleOrder) -> None:
        if self.resolver is not None:
            order.pickup, order.delivery = await self.resolver.correct_pickup_delivery(
                order.pickup_address, order.pickup, order.delivery_address, order.delivery
            )
            self._ensure_open()
        self.single_order = order
        self.swipe.bind_route(None)
        self.swipe.bind_single_order(order.order_id)

        active = order.as_active_order()
        stops = build_stops([active], group_pickups([active]))
        for index, stop in enumerate(stops):
            stop.stop_number = index
        if not stops:
            logger.warning(f"Order {order.order_id} has no usable coordinates to draw")
            return
        self.route = RouteInfo(stops=stops, driver_id=str(self.driver_id))
        await self.engine.refresh_etas(self.route, None, self.preferences.language)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.engine.cancel()
        await self.stream.stop()
        self.announcer.reset_session()
        self.uploader.cancel()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
        self.bridge.detach()
        logger.info(f"Session closed for driver {self.driver_id}")

    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionClosedError(f"Session for driver {self.driver_id} was closed")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -- location ------------------------------------------------------

    @property
    def driver_position(self) -> Optional[LocationPoint]:
        return self.stream.latest

    async def push_location(
        self, lat: float, lng: float, speed: float = 0.0, timestamp: datetime | None = None
    ) -> bool:
        self._ensure_open()
        extra = {"timestamp": timestamp} if timestamp is not None else {}
        sample = LocationPoint(lat=lat, lng=lng, speed=speed, **extra)
        return await self.source.push(sample)

    async def _on_location(self, point: LocationPoint) -> None:
        if self.closed:
            return
        await self.bridge.update_location(self.driver_id, point.lat, point.lng)
        if self._located:
            return
        # First fix: announce the pickup ETA and re-plan from the driver's position.
        self._located = True
        self.announcer.announce_pickup_eta(self._pickup_eta_minutes(point))
        self._spawn(self.refresh_route())

    def _pickup_eta_minutes(self, point: LocationPoint) -> Optional[int]:
        if self.route is None:
            return None
        for stop in self.route.pickup_stops():
            if stop.estimated_arrival_time:
                return stop.estimated_arrival_time
            return eta_minutes(haversine_km(point.lat, point.lng, stop.latitude, stop.longitude))
        return None

    def distance_to_current_km(self) -> Optional[float]:
        position = self.driver_position
        current = self.route.current_stop() if self.route else None
        if position is None or current is None:
            return None
        return round(haversine_km(position.lat, position.lng, current.latitude, current.longitude), 3)

    # -- routing -------------------------------------------------------

    async def refresh_route(self, reload: bool = False) -> RouteInfo | None:
        """Recompute ETAs; with ``reload`` the stops are re-fetched first.

        Reloading keeps deliveries already completed in this session.
        """
        if self.closed:
            return self.route
        if reload and self.multi_stop and self.single_order is None:
            fresh = await self.engine.build_route(self.driver_id, self.driver_position)
            if self.closed:
                return self.route
            if fresh is not None:
                self.route = merge_route(self.route, fresh)
                self.swipe.bind_route(self.route)
                await self._redraw()
                return self.route
        if self.route is None:
            return None
        await self.engine.refresh_etas(self.route, self.driver_position, self.preferences.language)
        if self.closed:
            return self.route
        await self._redraw()
        return self.route

    async def navigate_and_speak(self) -> list[AnnouncementStep]:
        """Load spoken turn-by-turn steps from the driver to the current stop."""
        self._ensure_open()
        current = self.route.current_stop() if self.route else None
        if current is None:
            raise ValueError("There is no pending stop to navigate to.")
        position = self.driver_position
        if position is None:
            raise ValueError("Driver location is not known yet.")

        try:
            payload = await self.backend.get_directions(
                position.coordinates.as_param(),
                current.coordinates.as_param(),
                language=self.preferences.language,
            )
        except BackendError as e:
            logger.warning(f"Navigation directions failed for driver {self.driver_id}: {e}")
            raise
        if self.closed:
            return []
        directions = parse_directions(payload)
        steps = extract_steps(directions) if directions else []
        self.announcer.load_steps(steps)
        logger.info(f"Loaded {len(steps)} spoken steps towards stop {current.letter}")
        return list(self.announcer.steps)

    def stop_speech(self) -> None:
        self.announcer.stop_speaking()

    def select_language(self, code: str) -> str:
        option = self.preferences.select(code)
        self.engine.language = option.code
        return option.code

    # -- swipe ---------------------------------------------------------

    async def gesture(self, phase: str, dx: float = 0.0, dy: float = 0.0) -> SwipeResult | SwipeState:
        self._ensure_open()
        if phase == "press":
            return self.swipe.press()
        if phase == "move":
            return self.swipe.move(dx, dy)
        if phase == "release":
            self.last_error = None
            return await self.swipe.release(dx, dy)
        raise ValueError(f"Unknown gesture phase '{phase}'.")

    async def _write_completion(self, order_id: int) -> None:
        await self.backend.update_order_status(order_id)

    def _on_delivered(self, order_id: int) -> None:
        if self.single_order is not None and self.route is not None:
            mark_completed(self.route, order_id)
        if not self.closed:
            self._spawn(self._redraw())

    def _on_swipe_error(self, message: str) -> None:
        self.last_error = message

    # -- map -----------------------------------------------------------

    async def _redraw(self) -> None:
        if self.closed or self.route is None:
            return
        position = self.driver_position
        await self.renderer.render(self.route, position.coordinates if position else None)

    async def _on_tap(self, marker_id: str) -> None:
        if self.route is None or self.route.find_stop(marker_id) is None:
            logger.debug(f"Tap on unknown marker {marker_id}")
            return
        self.selected_stop_id = marker_id

    def snapshot(self) -> dict:
        route = self.route
        current = route.current_stop() if route else None
        position = self.driver_position
        return {
            "driver_id": str(self.driver_id),
            "mode": "multi_stop" if self.single_order is None else "single_order",
            "language": self.preferences.language,
            "route": route,
            "current_stop_id": current.id if current else None,
            "selected_stop_id": self.selected_stop_id,
            "distance_to_current_km": self.distance_to_current_km(),
            "driver_position": position,
            "speaking": self.announcer.speaking,
            "pending_steps": sum(1 for step in self.announcer.steps if not step.announced),
            "swipe_state": self.swipe.state.value,
            "swipe_progress": self.swipe.progress,
            "last_error": self.last_error,
            "closed": self.closed,
        }


SessionFactory = Callable[[int | str, bool], DriverSession]


class SessionRegistry:
    """Open driver sessions keyed by driver id."""

    def __init__(self, factory: SessionFactory) -> None:
        self.factory = factory
        self._sessions: dict[str, DriverSession] = {}

    def __contains__(self, driver_id: object) -> bool:
        return str(driver_id) in self._sessions

    def get(self, driver_id: int | str) -> DriverSession:
        try:
            return self._sessions[str(driver_id)]
        except KeyError:
            raise SessionNotFoundError(f"No open session for driver {driver_id}") from None

    async def open(
        self, driver_id: int | str, *, multi_stop: bool = True, single_order: SingleOrder | None = None
    ) -> DriverSession:
        existing = self._sessions.pop(str(driver_id), None)
        if existing is not None:
            await existing.close()
        session = self.factory(driver_id, multi_stop)
        self._sessions[str(driver_id)] = session
        try:
            await session.open(single_order)
        except Exception:
            self._sessions.pop(str(driver_id), None)
            await session.close()
            raise
        return session

    async def close(self, driver_id: int | str) -> None:
        session = self._sessions.pop(str(driver_id), None)
        if session is None:
            raise SessionNotFoundError(f"No open session for driver {driver_id}")
        await session.close()

    async def close_all(self) -> None:
        for driver_id in list(self._sessions):
            await self.close(driver_id)
