"""Async HTTP client for the restaurant backend consumed by the routing core."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

import httpx

from ...config import settings
from ...models.domain import ActiveOrder, Coordinates

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Base class for backend failures."""


class BackendUnavailableError(BackendError):
    """Network failure or timeout talking to the backend."""


class BackendStatusError(BackendError):
    """The backend answered with a non-success HTTP status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.status_code >= 500 or self.status_code == 429


def _server_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        for key in ("message", "error", "detail"):
            if data.get(key):
                return str(data[key])
    return f"Backend returned HTTP {response.status_code} for {response.request.url.path}"


class BackendClient:
    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or settings.backend_base_url
        if not self.base_url:
            raise ValueError("Backend base URL is not configured.")
        self.token = token if token is not None else settings.backend_token
        self.timeout = timeout if timeout is not None else settings.backend_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.backend_max_retries
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.backend_backoff_seconds
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise BackendUnavailableError(f"Backend request {method} {path} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise BackendUnavailableError(f"Failed to reach backend at {self.base_url}: {e}") from e
        if response.is_error:
            raise BackendStatusError(response.status_code, _server_message(response))
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"Backend returned invalid JSON for {method} {path}") from e

    async def _get_with_retry(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET with bounded retry for transient failures; 4xx answers are not retried."""
        attempt = 0
        while True:
            try:
                return await self._send("GET", path, params=params)
            except BackendStatusError as e:
                if not e.is_transient:
                    raise
                attempt += 1
                if attempt > self.max_retries:
                    raise
                logger.debug(f"Backend GET {path} returned {e.status_code}, retry {attempt}/{self.max_retries}")
                await asyncio.sleep(self.backoff_seconds * attempt)
            except BackendUnavailableError as e:
                attempt += 1
                if attempt > self.max_retries:
                    logger.warning(f"Backend GET {path} failed after {self.max_retries} retries: {e}")
                    raise
                wait_time = self.backoff_seconds * (2 ** (attempt - 1))
                logger.debug(f"Backend network error, retrying in {wait_time:.2f}s (attempt {attempt}/{self.max_retries}): {e}")
                await asyncio.sleep(wait_time)

    async def get_active_orders(self, driver_id: int | str) -> list[ActiveOrder] | None:
        """Return the driver's in-flight orders.

        ``None`` means the multi-stop endpoint is unavailable (404) and the
        caller should fall back to single-order mode.
        """
        try:
            data = await self._get_with_retry(f"/drivers/{driver_id}/active-orders")
        except BackendStatusError as e:
            if e.status_code == 404:
                logger.info(f"Active-orders endpoint unavailable for driver {driver_id}; single-order mode")
                return None
            raise
        if isinstance(data, dict):
            data = data.get("orders")
        if not isinstance(data, list):
            return []
        orders: list[ActiveOrder] = []
        for row in data:
            try:
                orders.append(ActiveOrder.from_payload(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed active order row: {e}")
        return orders

    async def post_location(self, driver_id: int | str, lat: float, lng: float) -> None:
        await self._send("POST", "/drivers/location", json={"driver_id": driver_id, "lat": lat, "lng": lng})

    async def get_directions(
        self,
        origin: str,
        destination: str,
        waypoints: str | None = None,
        language: str | None = None,
    ) -> dict:
        params: dict[str, Any] = {"origin": origin, "destination": destination}
        if waypoints:
            params["waypoints"] = waypoints
        if language:
            params["language"] = language
        data = await self._get_with_retry("/drivers/google-directions", params=params)
        if not isinstance(data, dict):
            raise BackendError("Directions response is not a JSON object.")
        return data

    async def geocode(self, query: str) -> Coordinates | None:
        data = await self._get_with_retry("/drivers/geocode", params={"q": query})
        if not isinstance(data, dict):
            return None
        coords = Coordinates.from_values(data.get("lat"), data.get("lng"))
        if coords is None or not coords.is_valid:
            return None
        return coords

    async def update_order_status(self, order_id: int, status: str = "delivered") -> None:
        await self._send("PATCH", f"/orders/{order_id}/status", json={"status": status, "driver_status": status})

    async def calculate_route(self, waypoints: Sequence[dict[str, Any]]) -> tuple[float, float] | None:
        """Aggregate distance (km) and duration (minutes) for an ordered waypoint list."""
        data = await self._send("POST", "/drivers/calculate-route", json={"waypoints": list(waypoints)})
        if not isinstance(data, dict):
            return None
        distance = data.get("distance_km", data.get("distance"))
        duration = data.get("duration_min", data.get("duration"))
        if distance is None or duration is None:
            return None
        return float(distance), float(duration)


async def check_health(client: BackendClient) -> bool:
    """Check backend reachability with a cheap geocode round-trip."""
    try:
        await client._send("GET", "/drivers/geocode", params={"q": "health"})
        return True
    except BackendStatusError as e:
        # Any HTTP answer means the backend is up.
        return e.status_code < 500
    except BackendError:
        return False
