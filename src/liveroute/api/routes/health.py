"""Health endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ..dependencies import ServiceContainer, get_services

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
def health_root() -> dict:
    """Simple health check endpoint that doesn't require any dependencies."""
    return {"status": "ok"}


def _get_backend_health_check():
    """Lazy import to avoid startup failures."""
    from ...services.backend.client import check_health as backend_health_check
    return backend_health_check


@router.get("/health/backend", status_code=status.HTTP_200_OK)
async def health_backend(services: ServiceContainer = Depends(get_services)) -> dict:
    """Check restaurant backend reachability."""
    try:
        backend_health_check = _get_backend_health_check()
        status_flag = await backend_health_check(services.backend)
        return {"service": "backend", "healthy": status_flag}
    except Exception as e:
        return {"service": "backend", "healthy": False, "error": str(e)}
