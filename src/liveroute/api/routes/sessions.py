"""Driver map session endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from ...schemas.sessions import (
    GestureRequest,
    GestureResponse,
    LanguageRequest,
    LanguageResponse,
    LocationAcceptedResponse,
    LocationSampleRequest,
    NavigateResponse,
    OpenSessionRequest,
    SessionSnapshotModel,
    StepModel,
)
from ...services.backend.client import BackendError
from ...services.delivery.swipe import SwipeResult
from ...services.mapbridge.bridge import WebSocketSink
from ...services.session import SessionClosedError, SessionNotFoundError, SessionRegistry, SingleOrder
from ..dependencies import get_registry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _http_error(exc: Exception, action: str) -> HTTPException:
    if isinstance(exc, SessionNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc.args[0]))
    if isinstance(exc, SessionClosedError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, BackendError):
        logger.warning(f"Backend failure while trying to {action}: {exc}")
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Failed to {action}: {exc}")
    logger.exception(f"Error while trying to {action}: {exc}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {str(exc)}",
    )


@router.post("/{driver_id}", response_model=SessionSnapshotModel, status_code=status.HTTP_201_CREATED)
async def open_session(
    driver_id: str,
    payload: OpenSessionRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> SessionSnapshotModel:
    single = None
    if payload.order_id is not None:
        single = SingleOrder(
            order_id=payload.order_id,
            customer_name=payload.customer_name,
            pickup_address=payload.pickup_address,
            pickup=payload.pickup,
            delivery_address=payload.delivery_address,
            delivery=payload.delivery,
            estimated_arrival=payload.estimated_arrival,
        )
    try:
        session = await registry.open(driver_id, multi_stop=payload.multi_stop, single_order=single)
    except Exception as exc:
        raise _http_error(exc, "open session") from exc
    return SessionSnapshotModel.from_snapshot(session.snapshot())


@router.get("/{driver_id}", response_model=SessionSnapshotModel, status_code=status.HTTP_200_OK)
def get_session(driver_id: str, registry: SessionRegistry = Depends(get_registry)) -> SessionSnapshotModel:
    try:
        session = registry.get(driver_id)
    except SessionNotFoundError as exc:
        raise _http_error(exc, "load session") from exc
    return SessionSnapshotModel.from_snapshot(session.snapshot())


@router.delete("/{driver_id}", status_code=status.HTTP_200_OK)
async def close_session(driver_id: str, registry: SessionRegistry = Depends(get_registry)) -> dict:
    try:
        await registry.close(driver_id)
    except Exception as exc:
        raise _http_error(exc, "close session") from exc
    return {"driver_id": driver_id, "closed": True}


@router.post("/{driver_id}/location", response_model=LocationAcceptedResponse, status_code=status.HTTP_200_OK)
async def push_location(
    driver_id: str,
    payload: LocationSampleRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> LocationAcceptedResponse:
    try:
        session = registry.get(driver_id)
        accepted = await session.push_location(payload.lat, payload.lng, payload.speed, payload.timestamp)
    except Exception as exc:
        raise _http_error(exc, "record location") from exc
    return LocationAcceptedResponse(accepted=accepted, speaking=session.announcer.speaking)


@router.post("/{driver_id}/refresh", response_model=SessionSnapshotModel, status_code=status.HTTP_200_OK)
async def refresh_route(
    driver_id: str,
    reload: bool = Query(default=False, description="Re-fetch active orders before recomputing ETAs"),
    registry: SessionRegistry = Depends(get_registry),
) -> SessionSnapshotModel:
    try:
        session = registry.get(driver_id)
        await session.refresh_route(reload=reload)
    except Exception as exc:
        raise _http_error(exc, "refresh route") from exc
    return SessionSnapshotModel.from_snapshot(session.snapshot())


@router.post("/{driver_id}/gesture", response_model=GestureResponse, status_code=status.HTTP_200_OK)
async def gesture(
    driver_id: str,
    payload: GestureRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> GestureResponse:
    try:
        session = registry.get(driver_id)
        result = await session.gesture(payload.phase, payload.dx, payload.dy)
    except Exception as exc:
        raise _http_error(exc, "handle gesture") from exc

    response = GestureResponse(
        phase=payload.phase,
        state=session.swipe.state.value,
        progress=session.swipe.progress,
    )
    if isinstance(result, SwipeResult):
        response.outcome = result.outcome.value
        response.order_id = result.order_id
        response.attempts = result.attempts
        response.error = result.error
    return response


@router.post("/{driver_id}/navigate", response_model=NavigateResponse, status_code=status.HTTP_200_OK)
async def navigate(driver_id: str, registry: SessionRegistry = Depends(get_registry)) -> NavigateResponse:
    """Fetch turn-by-turn directions to the current stop and queue them for voice guidance."""
    try:
        session = registry.get(driver_id)
        steps = await session.navigate_and_speak()
    except Exception as exc:
        raise _http_error(exc, "load directions") from exc
    return NavigateResponse(steps=[StepModel.from_step(step) for step in steps])


@router.post("/{driver_id}/speech/stop", status_code=status.HTTP_200_OK)
def stop_speech(driver_id: str, registry: SessionRegistry = Depends(get_registry)) -> dict:
    try:
        session = registry.get(driver_id)
    except SessionNotFoundError as exc:
        raise _http_error(exc, "stop speech") from exc
    session.stop_speech()
    return {"speaking": session.announcer.speaking}


@router.put("/{driver_id}/language", response_model=LanguageResponse, status_code=status.HTTP_200_OK)
def select_language(
    driver_id: str,
    payload: LanguageRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> LanguageResponse:
    try:
        session = registry.get(driver_id)
        session.select_language(payload.code)
    except Exception as exc:
        raise _http_error(exc, "change language") from exc
    return LanguageResponse(code=session.preferences.language, locale=session.preferences.locale)


@router.websocket("/{driver_id}/map")
async def map_channel(websocket: WebSocket, driver_id: str) -> None:
    """Bridge between a map renderer and the driver's session."""
    registry: SessionRegistry = websocket.app.state.services.registry
    try:
        session = registry.get(driver_id)
    except SessionNotFoundError:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    sink = WebSocketSink(websocket)
    session.bridge.attach(sink)
    logger.info(f"Map renderer connected for driver {driver_id}")
    try:
        while True:
            raw = await websocket.receive_text()
            await session.bridge.handle_inbound(raw)
    except WebSocketDisconnect:
        logger.info(f"Map renderer disconnected for driver {driver_id}")
    finally:
        if session.bridge.sink is sink:
            session.bridge.detach()
