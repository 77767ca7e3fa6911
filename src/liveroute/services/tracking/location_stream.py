"""Driver GPS subscription, throttling and fan-out to consumers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from ...config import settings
from ...models.domain import LocationPoint
from ..backend.client import BackendClient, BackendError
from ..geospatial import haversine_m

logger = logging.getLogger(__name__)

LocationCallback = Callable[[LocationPoint], Awaitable[None]]
LocationConsumer = Callable[[LocationPoint], Union[None, Awaitable[None]]]

_REMOVAL_METHODS = ("remove", "remove_subscription", "unsubscribe")


class LocationSource(Protocol):
    async def watch(
        self, time_interval_ms: int, min_distance_meters: float, callback: LocationCallback
    ) -> Any:
        """Start delivering samples to ``callback``; returns a subscription handle."""
        ...


def should_emit(
    previous: Optional[LocationPoint],
    sample: LocationPoint,
    time_interval_ms: int,
    min_distance_meters: float,
) -> bool:
    """Apply the time/distance throttle: both gates must be passed after the first sample."""
    if previous is None:
        return True
    elapsed_ms = (sample.timestamp - previous.timestamp).total_seconds() * 1000.0
    if elapsed_ms < time_interval_ms:
        return False
    moved = haversine_m(previous.lat, previous.lng, sample.lat, sample.lng)
    return moved >= min_distance_meters


async def release_subscription(subscription: Any) -> bool:
    """Release a platform subscription, whichever removal method it exposes."""
    if subscription is None:
        return False
    for name in _REMOVAL_METHODS:
        method = getattr(subscription, name, None)
        if callable(method):
            try:
                result = method()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Releasing location subscription via {name}() failed: {e}")
            return True
    logger.warning(f"Location subscription {subscription!r} exposes no removal method")
    return False


class _PushSubscription:
    def __init__(self, source: "PushLocationSource", callback: LocationCallback) -> None:
        self._source = source
        self._callback = callback

    def remove(self) -> None:
        self._source._remove(self._callback)


class PushLocationSource:
    """Location source fed by samples the device pushes over HTTP."""

    def __init__(self) -> None:
        self._watchers: list[tuple[LocationCallback, int, float]] = []
        self._last_emitted: dict[int, LocationPoint] = {}

    async def watch(
        self, time_interval_ms: int, min_distance_meters: float, callback: LocationCallback
    ) -> _PushSubscription:
        self._watchers.append((callback, time_interval_ms, min_distance_meters))
        return _PushSubscription(self, callback)

    def _remove(self, callback: LocationCallback) -> None:
        self._watchers = [entry for entry in self._watchers if entry[0] is not callback]
        self._last_emitted.pop(id(callback), None)

    @property
    def active(self) -> bool:
        return bool(self._watchers)

    async def push(self, sample: LocationPoint) -> bool:
        """Deliver a device sample; returns True when at least one watcher accepted it."""
        delivered = False
        for callback, interval_ms, min_distance in list(self._watchers):
            previous = self._last_emitted.get(id(callback))
            if not should_emit(previous, sample, interval_ms, min_distance):
                continue
            self._last_emitted[id(callback)] = sample
            await callback(sample)
            delivered = True
        return delivered


class LocationStream:
    """Fan a throttled GPS stream out to registered consumers in arrival order."""

    def __init__(
        self,
        source: LocationSource,
        time_interval_ms: int | None = None,
        min_distance_meters: float | None = None,
    ) -> None:
        self.source = source
        self.time_interval_ms = (
            settings.location_time_interval_ms if time_interval_ms is None else time_interval_ms
        )
        self.min_distance_meters = (
            settings.location_min_distance_meters if min_distance_meters is None else min_distance_meters
        )
        self._consumers: list[LocationConsumer] = []
        self._subscription: Any = None
        self._lock = asyncio.Lock()
        self._running = False
        self.latest: Optional[LocationPoint] = None

    def add_consumer(self, consumer: LocationConsumer) -> None:
        self._consumers.append(consumer)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._subscription = await self.source.watch(
            self.time_interval_ms, self.min_distance_meters, self.publish
        )
        self._running = True
        logger.info(
            f"Location watch started (interval {self.time_interval_ms} ms, min distance {self.min_distance_meters} m)"
        )

    async def publish(self, sample: LocationPoint) -> None:
        if not self._running:
            return
        async with self._lock:
            if not self._running:
                return
            self.latest = sample
            for consumer in list(self._consumers):
                try:
                    result = consumer(sample)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception(f"Location consumer {consumer!r} failed")

    async def stop(self) -> None:
        self._running = False
        subscription, self._subscription = self._subscription, None
        await release_subscription(subscription)
        logger.info("Location watch stopped")


class BackendLocationUploader:
    """Best-effort position upload; failures are logged and never block the stream."""

    def __init__(self, backend: BackendClient, driver_id: int | str, *, background: bool = True) -> None:
        self.backend = backend
        self.driver_id = driver_id
        self.background = background
        self.last_uploaded_at: Optional[datetime] = None
        self._pending: set[asyncio.Task] = set()

    async def _upload(self, sample: LocationPoint) -> None:
        try:
            await self.backend.post_location(self.driver_id, sample.lat, sample.lng)
            self.last_uploaded_at = sample.timestamp
        except BackendError as e:
            logger.warning(f"Location update failed for driver {self.driver_id}: {e}")

    async def __call__(self, sample: LocationPoint) -> None:
        if not self.background:
            await self._upload(sample)
            return
        task = asyncio.create_task(self._upload(sample))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for uploads already in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def cancel(self) -> None:
        for task in list(self._pending):
            task.cancel()
