"""Geocoding endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...schemas.routing import GeocodeResponse, ReverseGeocodeResponse
from ...services.geocoding.resolver import Resolved
from ..dependencies import ServiceContainer, get_services

router = APIRouter(prefix="/geocode", tags=["geocoding"])


@router.get("", response_model=GeocodeResponse, status_code=status.HTTP_200_OK)
async def geocode(
    address: str = Query(..., min_length=1, description="Free-form address to resolve"),
    services: ServiceContainer = Depends(get_services),
) -> GeocodeResponse:
    try:
        result = await services.resolver.resolve(address)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(result, Resolved):
        return GeocodeResponse(
            address=address,
            resolved=True,
            lat=result.coordinates.lat,
            lng=result.coordinates.lng,
            tier=result.tier,
            query=result.query,
        )
    return GeocodeResponse(address=address, resolved=False, attempted_queries=result.attempted_queries)


@router.get("/reverse", response_model=ReverseGeocodeResponse, status_code=status.HTTP_200_OK)
async def reverse_geocode(
    lat: float = Query(..., ge=-90.0, le=90.0),
    lng: float = Query(..., ge=-180.0, le=180.0),
    services: ServiceContainer = Depends(get_services),
) -> ReverseGeocodeResponse:
    """Name the road at a position (used for the driver's "current location" label)."""
    name = await services.nominatim.reverse(lat, lng)
    return ReverseGeocodeResponse(lat=lat, lng=lng, name=name)
