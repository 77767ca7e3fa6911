"""Domain models for delivery stops, routes and live driver samples."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Mapping, Optional


class StopType(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class StopStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_coordinate(value: Any) -> Optional[float]:
    """Return a finite float for backend coordinate fields, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _first_present(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def stop_letter(index: int) -> str:
    """Map a 0-based stop number to a spreadsheet-style label (A..Z, AA..)."""
    if index < 0:
        raise ValueError("Stop number must be non-negative.")
    label = ""
    current = index
    while True:
        current, remainder = divmod(current, 26)
        label = chr(ord("A") + remainder) + label
        if current == 0:
            return label
        current -= 1


@dataclass(slots=True, frozen=True)
class Coordinates:
    lat: float
    lng: float

    @property
    def is_valid(self) -> bool:
        """True for a finite, in-range pair that is not the (0, 0) placeholder."""
        if math.isnan(self.lat) or math.isnan(self.lng):
            return False
        if not (-90.0 <= self.lat <= 90.0 and -180.0 <= self.lng <= 180.0):
            return False
        return not (self.lat == 0 and self.lng == 0)

    def as_param(self) -> str:
        return f"{self.lat},{self.lng}"

    @classmethod
    def from_values(cls, lat: Any, lng: Any) -> Optional["Coordinates"]:
        parsed_lat = parse_coordinate(lat)
        parsed_lng = parse_coordinate(lng)
        if parsed_lat is None or parsed_lng is None:
            return None
        return cls(parsed_lat, parsed_lng)


@dataclass(slots=True)
class DeliveryStop:
    """Represents a single pickup or delivery waypoint in a driver's route."""

    id: str
    order_id: int
    type: StopType
    stop_number: int
    address: str
    latitude: float
    longitude: float
    status: StopStatus = StopStatus.PENDING
    estimated_arrival_time: Optional[int] = None
    customer_name: Optional[str] = None
    order_number: Optional[str] = None
    notes: Optional[str] = None

    @property
    def letter(self) -> str:
        return stop_letter(self.stop_number)

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.latitude, self.longitude)

    @property
    def is_pickup(self) -> bool:
        return self.type is StopType.PICKUP


@dataclass(slots=True)
class RouteInfo:
    """Ordered stops plus aggregates; stop order drives both ETA legs and polylines."""

    stops: List[DeliveryStop]
    total_distance: float = 0.0
    total_duration: float = 0.0
    driver_id: Optional[str] = None
    started_at: datetime = field(default_factory=_utcnow)
    polyline: Optional[str] = None
    source: str = "estimate"

    def current_stop(self) -> Optional[DeliveryStop]:
        for stop in self.stops:
            if stop.status is not StopStatus.COMPLETED:
                return stop
        return None

    def find_stop(self, stop_id: str) -> Optional[DeliveryStop]:
        for stop in self.stops:
            if stop.id == stop_id:
                return stop
        return None

    def delivery_stops(self) -> list[DeliveryStop]:
        return [stop for stop in self.stops if stop.type is StopType.DELIVERY]

    def pickup_stops(self) -> list[DeliveryStop]:
        return [stop for stop in self.stops if stop.type is StopType.PICKUP]


@dataclass(slots=True)
class LocationPoint:
    lat: float
    lng: float
    speed: float = 0.0  # m/s
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        speed = parse_coordinate(self.speed)
        self.speed = speed if speed is not None and speed > 0 else 0.0
        if self.timestamp.tzinfo is None:
            # Naive device clocks are taken as UTC.
            self.timestamp = self.timestamp.replace(tzinfo=timezone.utc)

    @property
    def speed_kmh(self) -> float:
        return self.speed * 3.6

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(self.lat, self.lng)


@dataclass(slots=True)
class AnnouncementStep:
    text: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    announced: bool = False

    @property
    def is_anchored(self) -> bool:
        return self.lat is not None and self.lng is not None


@dataclass(slots=True)
class StopCompletionEvent:
    stop_id: str
    order_id: int
    completed_at: datetime = field(default_factory=_utcnow)
    notes: Optional[str] = None
    signature: Optional[str] = None


@dataclass(slots=True)
class ActiveOrder:
    """An in-flight order row as returned by the backend."""

    id: int
    customer_name: Optional[str] = None
    customer_address: Optional[str] = None
    delivery_address: Optional[str] = None
    delivery_lat: Optional[float] = None
    delivery_lng: Optional[float] = None
    estimated_arrival: Optional[int] = None
    pickup_address: Optional[str] = None
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    restaurant_id: Optional[int] = None
    driver_status: Optional[str] = None
    notes: Optional[str] = None

    @property
    def delivery_coordinates(self) -> Optional[Coordinates]:
        return Coordinates.from_values(self.delivery_lat, self.delivery_lng)

    @property
    def pickup_coordinates(self) -> Optional[Coordinates]:
        return Coordinates.from_values(self.pickup_lat, self.pickup_lng)

    @property
    def display_address(self) -> str:
        return (self.customer_address or self.delivery_address or "").strip()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ActiveOrder":
        raw_eta = parse_coordinate(payload.get("estimated_arrival"))
        raw_restaurant = payload.get("restaurant_id")
        return cls(
            id=int(payload["id"]),
            customer_name=payload.get("customer_name"),
            customer_address=payload.get("customer_address"),
            delivery_address=payload.get("delivery_address"),
            delivery_lat=parse_coordinate(payload.get("delivery_lat")),
            delivery_lng=parse_coordinate(payload.get("delivery_lng")),
            estimated_arrival=int(raw_eta) if raw_eta else None,
            pickup_address=payload.get("pos_location") or payload.get("pickup_address"),
            pickup_lat=parse_coordinate(_first_present(payload, "pos_location_lat", "pickup_lat")),
            pickup_lng=parse_coordinate(_first_present(payload, "pos_location_lng", "pickup_lng")),
            restaurant_id=int(raw_restaurant) if raw_restaurant not in (None, "") else None,
            driver_status=payload.get("driver_status"),
            notes=payload.get("notes") or payload.get("delivery_notes"),
        )
