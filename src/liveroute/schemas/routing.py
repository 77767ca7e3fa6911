"""Route and geocoding response schemas."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class GeocodeResponse(BaseModel):
    address: str
    resolved: bool
    lat: Optional[float] = None
    lng: Optional[float] = None
    tier: Optional[int] = Field(default=None, description="1 full address, 2 city/province, 3 locality/region.")
    query: Optional[str] = None
    attempted_queries: List[str] = Field(default_factory=list)


class ReverseGeocodeResponse(BaseModel):
    lat: float
    lng: float
    name: Optional[str] = None
