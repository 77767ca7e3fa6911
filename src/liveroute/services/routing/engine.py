"""Multi-stop route building and ETA derivation for a single driver."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

from ...config import settings
from ...models.domain import (
    ActiveOrder,
    Coordinates,
    DeliveryStop,
    LocationPoint,
    RouteInfo,
    StopStatus,
    StopType,
)
from ..backend.client import BackendClient, BackendError
from ..geocoding.resolver import GeocodeResolver, coordinates_identical
from ..geospatial import coordinates_match
from .directions import DirectionsRequest, DirectionsRoute, parse_directions

logger = logging.getLogger(__name__)

FALLBACK_KM_PER_STOP = 2.0
# Replaces the old random 0-3 km jitter with its midpoint.
FALLBACK_EXTRA_KM = 1.5
FALLBACK_SPEED_KMH = 30.0
FALLBACK_MINUTES_PER_STOP = 3
SINGLE_STOP_DEFAULT_MINUTES = 5


@dataclass(slots=True)
class PickupGroup:
    key: str
    address: str
    coordinates: Optional[Coordinates]
    order_ids: list[int] = field(default_factory=list)


def _pickup_key(order: ActiveOrder, precision: int) -> Optional[str]:
    coords = order.pickup_coordinates
    if coords is not None and coords.is_valid:
        return f"{round(coords.lat, precision)},{round(coords.lng, precision)}"
    address = (order.pickup_address or "").strip().lower()
    if address:
        return f"address:{address}"
    return None


def group_pickups(orders: Sequence[ActiveOrder], precision: int | None = None) -> list[PickupGroup]:
    """Collapse orders sharing a pickup location into one group per location, in first-seen order."""
    precision = settings.pickup_key_precision if precision is None else precision
    groups: dict[str, PickupGroup] = {}
    for order in orders:
        key = _pickup_key(order, precision)
        if key is None:
            logger.warning(f"Order {order.id} has no usable pickup location")
            continue
        group = groups.get(key)
        if group is None:
            coords = order.pickup_coordinates
            group = PickupGroup(
                key=key,
                address=(order.pickup_address or "Restaurant").strip(),
                coordinates=coords if coords is not None and coords.is_valid else None,
            )
            groups[key] = group
        group.order_ids.append(order.id)
    logger.info(f"Pickup dedup: {len(groups)} unique pickups from {len(orders)} orders")
    return list(groups.values())


def build_stops(orders: Sequence[ActiveOrder], pickups: Sequence[PickupGroup]) -> list[DeliveryStop]:
    """Pickups first (one per resolved group), then one delivery per order with valid coordinates."""
    stops: list[DeliveryStop] = []
    for index, group in enumerate(pickups):
        if group.coordinates is None or not group.coordinates.is_valid:
            logger.warning(f"Skipping pickup '{group.address}' without coordinates")
            continue
        stops.append(
            DeliveryStop(
                id=f"pickup-{index}",
                order_id=0,
                type=StopType.PICKUP,
                stop_number=len(stops),
                address=group.address,
                latitude=group.coordinates.lat,
                longitude=group.coordinates.lng,
                customer_name="Restaurant",
                order_number="Pickup",
            )
        )

    for order in orders:
        coords = order.delivery_coordinates
        if coords is None or not coords.is_valid:
            logger.warning(f"Skipping order {order.id} - invalid delivery coords")
            continue
        delivered = (order.driver_status or "").lower() == "delivered"
        stops.append(
            DeliveryStop(
                id=f"order-{order.id}",
                order_id=order.id,
                type=StopType.DELIVERY,
                stop_number=len(stops),
                address=order.display_address,
                latitude=coords.lat,
                longitude=coords.lng,
                status=StopStatus.COMPLETED if delivered else StopStatus.PENDING,
                estimated_arrival_time=order.estimated_arrival,
                customer_name=order.customer_name,
                order_number=f"Order #{order.id}",
                notes=order.notes,
            )
        )
    return stops


def order_stops(stops: Sequence[DeliveryStop]) -> list[DeliveryStop]:
    """Pickup stops first, deliveries after, each group keeping its relative order."""
    pickups = [stop for stop in stops if stop.type is StopType.PICKUP]
    deliveries = [stop for stop in stops if stop.type is StopType.DELIVERY]
    return pickups + deliveries


def estimate_route_totals(stop_count: int) -> tuple[float, int]:
    """Distance (km) and duration (min) used when no provider answer is available."""
    if stop_count <= 0:
        return 0.0, 0
    distance = FALLBACK_KM_PER_STOP * (stop_count - 1) + FALLBACK_EXTRA_KM
    duration = math.ceil(distance / FALLBACK_SPEED_KMH * 60) + FALLBACK_MINUTES_PER_STOP * stop_count
    return distance, duration


def _find_matching_stop(route: RouteInfo, target: DeliveryStop) -> Optional[DeliveryStop]:
    for stop in route.stops:
        if coordinates_match(stop.latitude, stop.longitude, target.latitude, target.longitude):
            return stop
    address = target.address.strip()
    if address:
        for stop in route.stops:
            if stop.address.strip() == address:
                return stop
    return None


def apply_directions(
    route: RouteInfo,
    waypoint_stops: Sequence[DeliveryStop],
    destination_stop: DeliveryStop,
    directions: DirectionsRoute,
) -> dict[str, int]:
    """Write cumulative leg ETAs (minutes) onto the logical stops they arrive at.

    When the provider optimised the waypoints, leg ``i`` arrives at
    ``waypoint_stops[waypoint_order[i]]``. The final leg always arrives at the
    destination. Only ``estimated_arrival_time`` is written; status is left
    alone.
    """
    arrivals: list[tuple[DeliveryStop, float]] = []
    waypoint_count = len(waypoint_stops)
    order = directions.waypoint_order
    for i, leg in enumerate(directions.legs):
        if i < waypoint_count:
            logical_index = order[i] if order and i < len(order) else i
            if 0 <= logical_index < waypoint_count:
                arrivals.append((waypoint_stops[logical_index], leg.duration_seconds))
            else:
                logger.warning(f"Directions waypoint_order index {logical_index} out of range")
        else:
            arrivals.append((destination_stop, leg.duration_seconds))

    written: dict[str, int] = {}
    cumulative = 0.0
    for stop, seconds in arrivals:
        cumulative += seconds
        target = _find_matching_stop(route, stop)
        if target is None:
            continue
        minutes = round(cumulative / 60)
        target.estimated_arrival_time = minutes
        written[target.id] = minutes
    return written


def mark_completed(route: RouteInfo, order_id: int) -> Optional[DeliveryStop]:
    """Complete the delivery stop for ``order_id``; pickup stops are never completed."""
    for stop in route.stops:
        if stop.type is StopType.DELIVERY and stop.order_id == order_id:
            stop.status = StopStatus.COMPLETED
            return stop
    return None


def merge_route(current: Optional[RouteInfo], fresh: RouteInfo) -> RouteInfo:
    """Carry completed delivery statuses from ``current`` into a rebuilt route."""
    if current is None:
        return fresh
    completed = {
        stop.id for stop in current.stops if stop.type is StopType.DELIVERY and stop.status is StopStatus.COMPLETED
    }
    for stop in fresh.stops:
        if stop.id in completed:
            stop.status = StopStatus.COMPLETED
    return fresh


class RouteEngine:
    def __init__(
        self,
        backend: BackendClient,
        resolver: GeocodeResolver | None = None,
        *,
        language: str | None = None,
        optimize: bool | None = None,
        pickup_precision: int | None = None,
    ) -> None:
        self.backend = backend
        self.resolver = resolver
        self.language = language or settings.default_language
        self.optimize = settings.optimize_waypoints if optimize is None else optimize
        self.pickup_precision = settings.pickup_key_precision if pickup_precision is None else pickup_precision
        self._generation = 0

    def cancel(self) -> None:
        """Invalidate in-flight refreshes so their results are never written."""
        self._generation += 1

    async def _repair_pickups(self, orders: Sequence[ActiveOrder], pickups: list[PickupGroup]) -> None:
        if self.resolver is None:
            return
        by_id = {order.id: order for order in orders}
        for group in pickups:
            if group.coordinates is None:
                group.coordinates = await self.resolver.resolve_or_keep(group.address, None)
                continue
            for order_id in group.order_ids:
                order = by_id[order_id]
                if coordinates_identical(group.coordinates, order.delivery_coordinates) and (
                    group.address.strip().lower() != order.display_address.lower()
                ):
                    logger.warning(f"Pickup '{group.address}' shares coordinates with order {order_id}; re-geocoding")
                    group.coordinates = await self.resolver.resolve_or_keep(group.address, group.coordinates)
                    break

    async def build_route(
        self, driver_id: int | str, driver_position: LocationPoint | None = None
    ) -> RouteInfo | None:
        """Build the driver's multi-stop route; ``None`` means single-order mode."""
        orders = await self.backend.get_active_orders(driver_id)
        if not orders:
            logger.info(f"No active orders found for driver {driver_id}")
            return None

        pickups = group_pickups(orders, self.pickup_precision)
        await self._repair_pickups(orders, pickups)
        stops = order_stops(build_stops(orders, pickups))
        if not stops:
            logger.warning("No valid stops found after deduplication")
            return None
        for index, stop in enumerate(stops):
            stop.stop_number = index

        route = RouteInfo(stops=stops, driver_id=str(driver_id))
        logger.info(f"Built route for driver {driver_id} with {len(stops)} stops")
        return await self.refresh_etas(route, driver_position)

    def _plan(
        self, stops: Sequence[DeliveryStop], driver_position: LocationPoint | None
    ) -> tuple[Coordinates, list[DeliveryStop], DeliveryStop]:
        destination = stops[-1]
        if driver_position is not None:
            return driver_position.coordinates, list(stops[:-1]), destination
        return stops[0].coordinates, list(stops[1:-1]), destination

    async def _fallback_totals(self, route: RouteInfo, generation: int) -> None:
        waypoints = [{"lat": s.latitude, "lng": s.longitude, "address": s.address} for s in route.stops]
        try:
            totals = await self.backend.calculate_route(waypoints)
        except BackendError as e:
            logger.warning(f"Backend route calculation failed, using fallback: {e}")
            totals = None
        if generation != self._generation:
            logger.debug(f"Discarding superseded route totals {generation} (latest {self._generation})")
            return
        if totals is not None:
            route.total_distance, route.total_duration = totals
            route.source = "calculate-route"
            return
        route.total_distance, route.total_duration = estimate_route_totals(len(route.stops))
        route.source = "estimate"
        logger.info(
            f"Using fallback route estimate: {route.total_distance:.1f} km, {route.total_duration} min"
        )

    async def refresh_etas(
        self,
        route: RouteInfo,
        driver_position: LocationPoint | None = None,
        language: str | None = None,
    ) -> RouteInfo:
        """Recompute per-stop ETAs and totals; stale refreshes are discarded."""
        self._generation += 1
        generation = self._generation
        stops = route.stops
        if not stops:
            route.total_distance, route.total_duration = 0.0, 0
            return route

        if len(stops) == 1 and driver_position is None:
            route.total_distance = 0.0
            route.total_duration = stops[0].estimated_arrival_time or SINGLE_STOP_DEFAULT_MINUTES
            return route

        origin, waypoint_stops, destination = self._plan(stops, driver_position)
        request = DirectionsRequest(
            origin=origin,
            destination=destination.coordinates,
            waypoints=[stop.coordinates for stop in waypoint_stops],
            optimize=self.optimize,
            language=language or self.language,
        )
        try:
            payload = await self.backend.get_directions(
                request.origin.as_param(),
                request.destination.as_param(),
                waypoints=request.waypoints_param(),
                language=request.language,
            )
            directions = parse_directions(payload)
        except BackendError as e:
            logger.warning(f"Could not fetch directions for driver {route.driver_id}: {e}")
            directions = None

        if generation != self._generation:
            logger.debug(f"Discarding superseded ETA refresh {generation} (latest {self._generation})")
            return route

        if directions is None or not directions.legs:
            await self._fallback_totals(route, generation)
            return route

        apply_directions(route, waypoint_stops, destination, directions)
        route.polyline = directions.polyline
        route.total_distance = round(directions.total_distance_meters / 1000.0, 2)
        route.total_duration = round(directions.total_duration_seconds / 60)
        route.source = "directions"
        return route
