"""Driver session request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from ..models.domain import AnnouncementStep, Coordinates, DeliveryStop, LocationPoint, RouteInfo


class StopModel(BaseModel):
    id: str
    order_id: int
    type: str
    stop_number: int
    letter: str
    address: str
    latitude: float
    longitude: float
    status: str
    estimated_arrival_time: Optional[int] = None
    customer_name: Optional[str] = None
    order_number: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_stop(cls, stop: DeliveryStop) -> "StopModel":
        return cls(
            id=stop.id,
            order_id=stop.order_id,
            type=stop.type.value,
            stop_number=stop.stop_number,
            letter=stop.letter,
            address=stop.address,
            latitude=stop.latitude,
            longitude=stop.longitude,
            status=stop.status.value,
            estimated_arrival_time=stop.estimated_arrival_time,
            customer_name=stop.customer_name,
            order_number=stop.order_number,
            notes=stop.notes,
        )


class RouteModel(BaseModel):
    driver_id: Optional[str] = None
    stops: List[StopModel]
    total_distance_km: float
    total_duration_min: float
    polyline: Optional[str] = None
    source: str
    started_at: datetime

    @classmethod
    def from_route(cls, route: RouteInfo) -> "RouteModel":
        return cls(
            driver_id=route.driver_id,
            stops=[StopModel.from_stop(stop) for stop in route.stops],
            total_distance_km=route.total_distance,
            total_duration_min=route.total_duration,
            polyline=route.polyline,
            source=route.source,
            started_at=route.started_at,
        )


class PositionModel(BaseModel):
    lat: float
    lng: float
    speed: float = 0.0
    timestamp: Optional[datetime] = None

    @classmethod
    def from_point(cls, point: LocationPoint) -> "PositionModel":
        return cls(lat=point.lat, lng=point.lng, speed=point.speed, timestamp=point.timestamp)


class SessionSnapshotModel(BaseModel):
    driver_id: str
    mode: Literal["multi_stop", "single_order"]
    language: str
    route: Optional[RouteModel] = None
    current_stop_id: Optional[str] = None
    selected_stop_id: Optional[str] = None
    distance_to_current_km: Optional[float] = None
    driver_position: Optional[PositionModel] = None
    speaking: bool = False
    pending_steps: int = 0
    swipe_state: str
    swipe_progress: float = 0.0
    last_error: Optional[str] = None
    closed: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: dict) -> "SessionSnapshotModel":
        data = dict(snapshot)
        route = data.pop("route", None)
        position = data.pop("driver_position", None)
        return cls(
            route=RouteModel.from_route(route) if route is not None else None,
            driver_position=PositionModel.from_point(position) if position is not None else None,
            **data,
        )


class OpenSessionRequest(BaseModel):
    multi_stop: bool = Field(default=True, description="Build the driver's multi-stop route from active orders.")
    order_id: Optional[int] = Field(default=None, description="Order shown when no multi-stop route exists.")
    customer_name: Optional[str] = None
    pickup_address: Optional[str] = None
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    delivery_address: Optional[str] = None
    delivery_lat: Optional[float] = None
    delivery_lng: Optional[float] = None
    estimated_arrival: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _require_order_for_single_mode(self) -> "OpenSessionRequest":
        if not self.multi_stop and self.order_id is None:
            raise ValueError("order_id is required when multi_stop is false")
        return self

    @property
    def pickup(self) -> Optional[Coordinates]:
        return Coordinates.from_values(self.pickup_lat, self.pickup_lng)

    @property
    def delivery(self) -> Optional[Coordinates]:
        return Coordinates.from_values(self.delivery_lat, self.delivery_lng)


class LocationSampleRequest(BaseModel):
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)
    speed: float = Field(default=0.0, description="Ground speed in m/s; negative means unknown.")
    timestamp: Optional[datetime] = None


class LocationAcceptedResponse(BaseModel):
    accepted: bool
    speaking: bool


class GestureRequest(BaseModel):
    phase: Literal["press", "move", "release"]
    dx: float = 0.0
    dy: float = 0.0


class GestureResponse(BaseModel):
    phase: str
    state: str
    progress: float
    outcome: Optional[str] = None
    order_id: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None


class StepModel(BaseModel):
    text: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    announced: bool = False

    @classmethod
    def from_step(cls, step: AnnouncementStep) -> "StepModel":
        return cls(text=step.text, lat=step.lat, lng=step.lng, announced=step.announced)


class NavigateResponse(BaseModel):
    steps: List[StepModel]


class LanguageRequest(BaseModel):
    code: str = Field(..., min_length=2, max_length=5)


class LanguageResponse(BaseModel):
    code: str
    locale: str
