"""Directions request building and response parsing."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from ...models.domain import AnnouncementStep, Coordinates

_TAG_RE = re.compile(r"<[^>]+>")


@dataclass(slots=True)
class DirectionsLeg:
    duration_seconds: float
    distance_meters: float
    steps: list[dict] = field(default_factory=list)


@dataclass(slots=True)
class DirectionsRoute:
    legs: List[DirectionsLeg]
    waypoint_order: List[int]
    polyline: Optional[str]

    @property
    def total_duration_seconds(self) -> float:
        return sum(leg.duration_seconds for leg in self.legs)

    @property
    def total_distance_meters(self) -> float:
        return sum(leg.distance_meters for leg in self.legs)


@dataclass(slots=True)
class DirectionsRequest:
    origin: Coordinates
    destination: Coordinates
    waypoints: Sequence[Coordinates] = ()
    optimize: bool = False
    language: Optional[str] = None

    def waypoints_param(self) -> str | None:
        if not self.waypoints:
            return None
        joined = "|".join(point.as_param() for point in self.waypoints)
        return f"optimize:true|{joined}" if self.optimize else joined

    def as_params(self) -> dict[str, str]:
        params = {"origin": self.origin.as_param(), "destination": self.destination.as_param()}
        waypoints = self.waypoints_param()
        if waypoints:
            params["waypoints"] = waypoints
        if self.language:
            params["language"] = self.language
        return params


def _value(node: Any) -> float:
    if isinstance(node, dict):
        node = node.get("value")
    try:
        return float(node) if node is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def parse_directions(payload: dict) -> DirectionsRoute | None:
    """Extract the first route of a provider payload; ``None`` when it has no route."""
    routes = payload.get("routes") or []
    if not routes or not isinstance(routes[0], dict):
        return None
    route = routes[0]
    legs = [
        DirectionsLeg(
            duration_seconds=_value(leg.get("duration")),
            distance_meters=_value(leg.get("distance")),
            steps=list(leg.get("steps") or []),
        )
        for leg in route.get("legs") or []
        if isinstance(leg, dict)
    ]
    order = [int(index) for index in route.get("waypoint_order") or []]
    polyline = (route.get("overview_polyline") or {}).get("points")
    return DirectionsRoute(legs=legs, waypoint_order=order, polyline=polyline or None)


def strip_html(text: str | None) -> str:
    return _TAG_RE.sub("", text or "").strip()


def extract_steps(route: DirectionsRoute) -> list[AnnouncementStep]:
    """Turn provider steps into fresh, un-announced spoken instructions."""
    steps: list[AnnouncementStep] = []
    for leg in route.legs:
        for raw in leg.steps:
            text = strip_html(raw.get("html_instructions") or raw.get("instructions"))
            if not text:
                continue
            anchor = raw.get("end_location") or raw.get("start_location") or {}
            steps.append(AnnouncementStep(text=text, lat=anchor.get("lat"), lng=anchor.get("lng")))
    return steps
