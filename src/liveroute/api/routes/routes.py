"""Routing endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...schemas.sessions import RouteModel
from ...services.backend.client import BackendError
from ...models.domain import LocationPoint
from ..dependencies import ServiceContainer, get_services

router = APIRouter(prefix="/routes", tags=["routes"])


@router.get("/{driver_id}", response_model=RouteModel, status_code=status.HTTP_200_OK)
async def build_route(
    driver_id: str,
    lat: float | None = Query(default=None, ge=-90.0, le=90.0, description="Driver latitude used as the route origin"),
    lng: float | None = Query(default=None, ge=-180.0, le=180.0, description="Driver longitude used as the route origin"),
    language: str | None = Query(default=None, description="Directions language, e.g. 'en' or 'tr'"),
    services: ServiceContainer = Depends(get_services),
) -> RouteModel:
    """Build the driver's multi-stop route once, without opening a session."""
    position = LocationPoint(lat=lat, lng=lng) if lat is not None and lng is not None else None
    try:
        route = await services.engine(language).build_route(driver_id, position)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except BackendError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to build route: {str(exc)}"
        ) from exc
    except Exception as exc:
        logging.exception(f"Error building route for driver {driver_id}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to build route: {str(exc)}"
        ) from exc
    if route is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active multi-stop route for driver {driver_id}",
        )
    return RouteModel.from_route(route)
