"""Address-to-coordinate resolution with a tiered fallback chain.

The resolver never raises for "no match": callers receive a
:class:`GeocodeFailure` and must keep whatever coordinates they already had.
Provider errors are logged and treated the same as an empty answer so a flaky
geocoder can only degrade resolution, never break a route build.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence, Union

import httpx

from ...config import settings
from ...models.domain import Coordinates
from ..backend.client import BackendClient, BackendError

logger = logging.getLogger(__name__)

IDENTICAL_COORDINATE_TOLERANCE = 1e-4

_LETTERS = "A-Za-zÇĞİÖŞÜçğıöşüÂâÎîÛû"
# "35900 Tire/İzmir", "Tire/İzmir" anywhere, or a trailing "Tire, İzmir"
_CITY_PROVINCE_RE = re.compile(
    rf"(?:\d{{5}})?\s*([{_LETTERS}]+)/([{_LETTERS}]+)|([{_LETTERS}]+),\s*([{_LETTERS}]+)$"
)


class GeocodeProvider(Protocol):
    async def search(self, query: str) -> Optional[Coordinates]:
        ...


@dataclass(slots=True)
class Resolved:
    coordinates: Coordinates
    tier: int
    query: str


@dataclass(slots=True)
class GeocodeFailure:
    address: str
    attempted_queries: list[str] = field(default_factory=list)


GeocodeResult = Union[Resolved, GeocodeFailure]


def extract_city_province(address: str) -> Optional[str]:
    """Return a ``"City, Province"`` fragment for addresses like ``"... 35900 Tire/İzmir"``."""
    match = _CITY_PROVINCE_RE.search(address)
    if not match:
        return None
    if match.group(1) and match.group(2):
        return f"{match.group(1)}, {match.group(2)}"
    if match.group(3) and match.group(4):
        return f"{match.group(3)}, {match.group(4)}"
    return None


def extract_locality_region(address: str) -> Optional[str]:
    """Return the last two comma-separated segments as a generic locality query."""
    parts = [part.strip() for part in address.split(",") if part.strip()]
    if len(parts) >= 2:
        return f"{parts[-2]}, {parts[-1]}"
    if len(parts) == 1 and parts[0] != address.strip():
        return parts[0]
    return None


def needs_geocoding(coords: Optional[Coordinates]) -> bool:
    return coords is None or not coords.is_valid


def coordinates_identical(
    first: Optional[Coordinates],
    second: Optional[Coordinates],
    tolerance: float = IDENTICAL_COORDINATE_TOLERANCE,
) -> bool:
    if first is None or second is None:
        return False
    return abs(first.lat - second.lat) < tolerance and abs(first.lng - second.lng) < tolerance


def _same_address(first: Optional[str], second: Optional[str]) -> bool:
    return (first or "").strip().lower() == (second or "").strip().lower()


class BackendGeocodeProvider:
    """Geocoder exposed by the restaurant backend (``GET /drivers/geocode``)."""

    def __init__(self, backend: BackendClient) -> None:
        self.backend = backend

    async def search(self, query: str) -> Optional[Coordinates]:
        return await self.backend.geocode(query)


class NominatimGeocodeProvider:
    """OpenStreetMap Nominatim search; no API key required."""

    def __init__(
        self,
        base_url: str | None = None,
        user_agent: str | None = None,
        language: str = "en",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.nominatim_base_url).rstrip("/")
        self.language = language
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"User-Agent": user_agent or settings.nominatim_user_agent},
            timeout=httpx.Timeout(10.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def search(self, query: str) -> Optional[Coordinates]:
        response = await self._client.get(
            "/search",
            params={"q": query, "format": "json", "limit": 1, "accept-language": self.language},
        )
        response.raise_for_status()
        results = response.json()
        if not results:
            return None
        first = results[0]
        coords = Coordinates.from_values(first.get("lat"), first.get("lon"))
        if coords is None or not coords.is_valid:
            return None
        return coords

    async def reverse(self, lat: float, lng: float) -> Optional[str]:
        """Resolve coordinates to a road name (or full display name)."""
        try:
            response = await self._client.get("/reverse", params={"format": "json", "lat": lat, "lon": lng})
            response.raise_for_status()
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Reverse geocoding ({lat}, {lng}) failed: {e}")
            return None
        address = result.get("address") or {}
        return address.get("road") or result.get("display_name") or "Unknown location"


class ChainedGeocodeProvider:
    """Try each provider in turn, moving on only when a provider errors.

    An empty answer from a healthy provider is final for that query; the
    resolver's tiers handle the "no match" case.
    """

    def __init__(self, providers: Sequence[GeocodeProvider]) -> None:
        if not providers:
            raise ValueError("At least one geocode provider is required.")
        self.providers = list(providers)

    async def search(self, query: str) -> Optional[Coordinates]:
        last_error: Exception | None = None
        for provider in self.providers:
            try:
                return await provider.search(query)
            except (BackendError, httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(f"Geocode provider {type(provider).__name__} failed for '{query}': {e}")
        if last_error is not None:
            raise last_error
        return None


class GeocodeResolver:
    def __init__(self, provider: GeocodeProvider) -> None:
        self.provider = provider

    async def _query(self, query: str) -> Optional[Coordinates]:
        try:
            return await self.provider.search(query)
        except (BackendError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"Geocoding '{query}' failed: {e}")
            return None

    async def resolve(self, address: str) -> GeocodeResult:
        """Resolve ``address`` through full-address, city/province and locality tiers."""
        address = (address or "").strip()
        if not address:
            logger.warning("Geocoder called with an empty address")
            return GeocodeFailure(address="")

        tiers = (address, extract_city_province(address), extract_locality_region(address))
        attempted: list[str] = []
        for tier, query in enumerate(tiers, start=1):
            if not query or query in attempted:
                continue
            attempted.append(query)
            coords = await self._query(query)
            if coords is not None:
                if tier > 1:
                    logger.info(f"Geocoded '{address}' via tier {tier} query '{query}'")
                return Resolved(coordinates=coords, tier=tier, query=query)
            logger.debug(f"No geocode result for tier {tier} query '{query}'")

        logger.warning(f"Geocoder: no results for '{address}' (all strategies exhausted)")
        return GeocodeFailure(address=address, attempted_queries=attempted)

    async def resolve_many(self, addresses: Sequence[str]) -> list[GeocodeResult]:
        return list(await asyncio.gather(*(self.resolve(address) for address in addresses)))

    async def resolve_or_keep(self, address: Optional[str], existing: Optional[Coordinates]) -> Optional[Coordinates]:
        """Resolved coordinates, or ``existing`` untouched when resolution fails."""
        if not address:
            return existing
        result = await self.resolve(address)
        if isinstance(result, Resolved):
            return result.coordinates
        return existing

    async def correct_pickup_delivery(
        self,
        pickup_address: Optional[str],
        pickup: Optional[Coordinates],
        delivery_address: Optional[str],
        delivery: Optional[Coordinates],
    ) -> tuple[Optional[Coordinates], Optional[Coordinates]]:
        """Repair missing, zero, or suspiciously identical pickup/delivery coordinates.

        Delivery is re-resolved only when its own coordinates are unusable.
        Identical pickup/delivery pairs with distinct addresses indicate an
        upstream bug in the pickup row, so only the pickup is recomputed.
        """
        if needs_geocoding(delivery):
            delivery = await self.resolve_or_keep(delivery_address, delivery)

        pickup_suspect = needs_geocoding(pickup) or (
            coordinates_identical(pickup, delivery) and not _same_address(pickup_address, delivery_address)
        )
        if pickup_suspect:
            if not needs_geocoding(pickup):
                logger.warning(
                    f"Pickup coordinates equal delivery coordinates for '{pickup_address}' / "
                    f"'{delivery_address}'; re-geocoding pickup"
                )
            pickup = await self.resolve_or_keep(pickup_address, pickup)
        return pickup, delivery
