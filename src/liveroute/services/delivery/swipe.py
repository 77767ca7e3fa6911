"""Swipe-to-deliver gesture state machine with a retried completion write.

Transitions read only the machine's own fields and the incoming event, so a
handler can never act on a stale copy of the target or of the in-flight flag.

    idle --move(horizontal)--> dragging --release(>= threshold)--> committed
                                   \\--release(< threshold)--> idle (reset)
    committed --write ok / retries exhausted--> idle
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from ...config import settings
from ...models.domain import RouteInfo, StopCompletionEvent, StopStatus, StopType
from ..backend.client import BackendError
from ..routing.engine import mark_completed

logger = logging.getLogger(__name__)

CompletionWriter = Callable[[int], Awaitable[None]]
DeliveredCallback = Callable[[int], None]
ErrorCallback = Callable[[str], None]

DEFAULT_ERROR_MESSAGE = "Failed to mark delivery. Please try again."


class SwipeState(str, Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    COMMITTED = "committed"


class SwipeOutcome(str, Enum):
    IGNORED = "ignored"
    RESET = "reset"
    NO_TARGET = "no_target"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass(slots=True)
class SwipeResult:
    outcome: SwipeOutcome
    order_id: Optional[int] = None
    attempts: int = 0
    event: Optional[StopCompletionEvent] = None
    error: Optional[str] = None


class SwipeDeliveryMachine:
    def __init__(
        self,
        completion_writer: CompletionWriter,
        *,
        on_delivered: DeliveredCallback | None = None,
        on_error: ErrorCallback | None = None,
        press_gate_px: float | None = None,
        vertical_tolerance_px: float | None = None,
        commit_threshold_px: float | None = None,
        max_travel_px: float | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.completion_writer = completion_writer
        self.on_delivered = on_delivered
        self.on_error = on_error
        self.press_gate_px = settings.swipe_press_gate_px if press_gate_px is None else press_gate_px
        self.vertical_tolerance_px = (
            settings.swipe_vertical_tolerance_px if vertical_tolerance_px is None else vertical_tolerance_px
        )
        self.commit_threshold_px = (
            settings.swipe_commit_threshold_px if commit_threshold_px is None else commit_threshold_px
        )
        self.max_travel_px = settings.swipe_max_travel_px if max_travel_px is None else max_travel_px
        self.max_attempts = settings.completion_max_attempts if max_attempts is None else max_attempts
        self.backoff_seconds = (
            settings.completion_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self._sleep = sleep

        self.state = SwipeState.IDLE
        self.progress = 0.0
        self.route: Optional[RouteInfo] = None
        self.single_order_id: Optional[int] = None
        self.single_delivered = False

    def bind_route(self, route: Optional[RouteInfo]) -> None:
        self.route = route

    def bind_single_order(self, order_id: Optional[int], delivered: bool = False) -> None:
        self.single_order_id = order_id
        self.single_delivered = delivered

    def resolve_target(self) -> Optional[int]:
        if self.route is not None:
            for stop in self.route.stops:
                if stop.type is StopType.DELIVERY and stop.status is not StopStatus.COMPLETED:
                    return stop.order_id
            return None
        if self.single_delivered:
            return None
        return self.single_order_id

    def _horizontal(self, dx: float, dy: float) -> bool:
        return abs(dy) < self.vertical_tolerance_px and dx > self.press_gate_px

    def _reset(self) -> None:
        self.state = SwipeState.IDLE
        self.progress = 0.0

    def press(self) -> SwipeState:
        if self.state is SwipeState.IDLE:
            self.progress = 0.0
        return self.state

    def move(self, dx: float, dy: float) -> SwipeState:
        if self.state is SwipeState.COMMITTED:
            return self.state
        if self.state is SwipeState.IDLE:
            if not self._horizontal(dx, dy):
                return self.state
            self.state = SwipeState.DRAGGING
        self.progress = min(max(dx, 0.0), self.max_travel_px)
        return self.state

    async def release(self, dx: float, dy: float = 0.0) -> SwipeResult:
        if self.state is SwipeState.COMMITTED:
            logger.debug("Release ignored: a delivery commit is already in flight")
            return SwipeResult(outcome=SwipeOutcome.IGNORED)
        if self.state is SwipeState.IDLE and not self._horizontal(dx, dy):
            self._reset()
            return SwipeResult(outcome=SwipeOutcome.RESET)
        if dx < self.commit_threshold_px:
            self._reset()
            return SwipeResult(outcome=SwipeOutcome.RESET)

        order_id = self.resolve_target()
        if order_id is None:
            self._reset()
            return SwipeResult(outcome=SwipeOutcome.NO_TARGET)

        self.state = SwipeState.COMMITTED
        self.progress = self.max_travel_px
        return await self._commit(order_id)

    async def _commit(self, order_id: int) -> SwipeResult:
        attempt = 0
        last_error: BackendError | None = None
        while attempt < self.max_attempts:
            attempt += 1
            try:
                await self.completion_writer(order_id)
                last_error = None
                break
            except BackendError as e:
                last_error = e
                logger.warning(f"Attempt {attempt} failed for order {order_id}: {e}")
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff_seconds * attempt)

        if last_error is not None:
            logger.error(f"Swipe delivery failed after {attempt} attempts for order {order_id}: {last_error}")
            message = str(last_error) or DEFAULT_ERROR_MESSAGE
            self._reset()
            self._notify_error(message)
            return SwipeResult(outcome=SwipeOutcome.FAILED, order_id=order_id, attempts=attempt, error=message)

        stop_id = f"order-{order_id}"
        if self.route is not None:
            stop = mark_completed(self.route, order_id)
            if stop is not None:
                stop_id = stop.id
        else:
            self.single_delivered = True
        event = StopCompletionEvent(stop_id=stop_id, order_id=order_id)
        logger.info(f"Order {order_id} delivered via swipe")
        self._reset()
        if self.on_delivered is not None:
            try:
                self.on_delivered(order_id)
            except Exception as e:
                logger.warning(f"on_delivered callback failed: {e}")
        return SwipeResult(outcome=SwipeOutcome.DELIVERED, order_id=order_id, attempts=attempt, event=event)

    def _notify_error(self, message: str) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(message)
        except Exception as e:
            logger.warning(f"on_error callback failed: {e}")
