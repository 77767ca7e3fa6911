import asyncio

import pytest

from src.liveroute.models.domain import DeliveryStop, RouteInfo, StopStatus, StopType
from src.liveroute.services.backend.client import BackendStatusError, BackendUnavailableError
from src.liveroute.services.delivery.swipe import SwipeDeliveryMachine, SwipeOutcome, SwipeState


class Writer:
    """Completion writer that fails a fixed number of times before succeeding."""

    def __init__(self, failures: int = 0, delay: float = 0.0) -> None:
        self.failures = failures
        self.delay = delay
        self.calls: list[int] = []

    async def __call__(self, order_id: int) -> None:
        self.calls.append(order_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if len(self.calls) <= self.failures:
            raise BackendUnavailableError("network down")


def _stop(stop_id: str, order_id: int, kind: StopType, status: StopStatus = StopStatus.PENDING) -> DeliveryStop:
    return DeliveryStop(
        id=stop_id, order_id=order_id, type=kind, stop_number=0, address=stop_id,
        latitude=38.4, longitude=27.1, status=status,
    )


def _route() -> RouteInfo:
    return RouteInfo(
        stops=[
            _stop("pickup-0", 0, StopType.PICKUP),
            _stop("order-11", 11, StopType.DELIVERY, StopStatus.COMPLETED),
            _stop("order-12", 12, StopType.DELIVERY),
            _stop("order-13", 13, StopType.DELIVERY),
        ]
    )


def _machine(writer: Writer, **kwargs) -> tuple[SwipeDeliveryMachine, list, list, list]:
    delivered: list[int] = []
    errors: list[str] = []
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    machine = SwipeDeliveryMachine(
        writer,
        on_delivered=delivered.append,
        on_error=errors.append,
        sleep=fake_sleep,
        **kwargs,
    )
    return machine, delivered, errors, sleeps


def test_move_enters_dragging_only_for_horizontal_drags() -> None:
    machine, *_ = _machine(Writer())

    assert machine.move(40, 30) is SwipeState.IDLE
    assert machine.move(4, 0) is SwipeState.IDLE
    assert machine.move(40, 3) is SwipeState.DRAGGING
    assert machine.progress == 40

    machine.move(500, 3)
    assert machine.progress == 300
    machine.move(-20, 3)
    assert machine.progress == 0


@pytest.mark.anyio
async def test_short_release_resets_without_writing() -> None:
    writer = Writer()
    machine, delivered, errors, _ = _machine(writer)
    machine.bind_route(_route())
    machine.press()
    machine.move(100, 0)

    result = await machine.release(149, 0)

    assert result.outcome is SwipeOutcome.RESET
    assert machine.state is SwipeState.IDLE
    assert machine.progress == 0
    assert writer.calls == []


@pytest.mark.anyio
async def test_commit_targets_first_pending_delivery_and_completes_it() -> None:
    writer = Writer()
    route = _route()
    machine, delivered, errors, _ = _machine(writer)
    machine.bind_route(route)
    machine.move(60, 0)

    result = await machine.release(150, 0)

    assert result.outcome is SwipeOutcome.DELIVERED
    assert result.order_id == 12
    assert result.event.stop_id == "order-12"
    assert writer.calls == [12]
    assert delivered == [12]
    assert errors == []
    assert route.find_stop("order-12").status is StopStatus.COMPLETED
    assert route.find_stop("pickup-0").status is StopStatus.PENDING
    assert machine.state is SwipeState.IDLE
    assert machine.progress == 0


@pytest.mark.anyio
async def test_release_from_idle_with_horizontal_delta_commits() -> None:
    writer = Writer()
    machine, delivered, *_ = _machine(writer)
    machine.bind_single_order(42)

    result = await machine.release(200, 2)

    assert result.outcome is SwipeOutcome.DELIVERED
    assert delivered == [42]
    # Single-order mode has nothing left to deliver afterwards.
    assert (await machine.release(200, 2)).outcome is SwipeOutcome.NO_TARGET


@pytest.mark.anyio
async def test_two_failures_then_success_writes_three_times() -> None:
    writer = Writer(failures=2)
    machine, delivered, errors, sleeps = _machine(writer)
    machine.bind_single_order(42)

    result = await machine.release(200, 0)

    assert result.outcome is SwipeOutcome.DELIVERED
    assert result.attempts == 3
    assert writer.calls == [42, 42, 42]
    assert sleeps == pytest.approx([0.15, 0.30])
    assert errors == []


@pytest.mark.anyio
async def test_exhausted_retries_report_error_once_and_keep_status() -> None:
    writer = Writer(failures=5)
    route = _route()
    machine, delivered, errors, sleeps = _machine(writer)
    machine.bind_route(route)

    result = await machine.release(200, 0)

    assert result.outcome is SwipeOutcome.FAILED
    assert len(writer.calls) == 3
    assert errors == ["network down"]
    assert delivered == []
    assert route.find_stop("order-12").status is StopStatus.PENDING
    assert machine.state is SwipeState.IDLE


@pytest.mark.anyio
async def test_status_errors_are_retried_too() -> None:
    calls = []

    async def writer(order_id: int) -> None:
        calls.append(order_id)
        raise BackendStatusError(409, "Order already closed")

    errors: list[str] = []

    async def no_sleep(seconds: float) -> None:
        return None

    machine = SwipeDeliveryMachine(writer, on_error=errors.append, sleep=no_sleep)
    machine.bind_single_order(5)

    await machine.release(180, 0)

    assert len(calls) == 3
    assert errors == ["Order already closed"]


@pytest.mark.anyio
async def test_releases_while_committed_are_ignored() -> None:
    writer = Writer(delay=0.01)
    machine, delivered, *_ = _machine(writer)
    machine.bind_single_order(42)

    first, second = await asyncio.gather(machine.release(200, 0), machine.release(200, 0))

    assert first.outcome is SwipeOutcome.DELIVERED
    assert second.outcome is SwipeOutcome.IGNORED
    assert writer.calls == [42]
    assert delivered == [42]


@pytest.mark.anyio
async def test_failing_delivered_callback_is_contained() -> None:
    def explode(order_id: int) -> None:
        raise RuntimeError("ui gone")

    async def writer(order_id: int) -> None:
        return None

    machine = SwipeDeliveryMachine(writer, on_delivered=explode)
    machine.bind_single_order(8)

    result = await machine.release(200, 0)

    assert result.outcome is SwipeOutcome.DELIVERED
    assert machine.state is SwipeState.IDLE
