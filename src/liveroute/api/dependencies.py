"""Shared service wiring for the HTTP layer."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request

from ..config import settings
from ..persistence.filesystem import FileStorage
from ..preferences import VoicePreferences
from ..services.backend.client import BackendClient
from ..services.geocoding.resolver import (
    BackendGeocodeProvider,
    ChainedGeocodeProvider,
    GeocodeResolver,
    NominatimGeocodeProvider,
)
from ..services.routing.engine import RouteEngine
from ..services.session import DriverSession, SessionRegistry

logger = logging.getLogger(__name__)


class ServiceContainer:
    """Lazily built backend client, geocoders and the session registry."""

    def __init__(
        self,
        backend: BackendClient | None = None,
        nominatim: NominatimGeocodeProvider | None = None,
        storage: FileStorage | None = None,
        background_uploads: bool = True,
    ) -> None:
        self._backend = backend
        self._nominatim = nominatim
        self._storage = storage
        self._resolver: Optional[GeocodeResolver] = None
        self.background_uploads = background_uploads
        self.registry = SessionRegistry(self.create_session)

    @property
    def backend(self) -> BackendClient:
        if self._backend is None:
            # Raises ValueError when LIVEROUTE_BACKEND_BASE_URL is unset.
            self._backend = BackendClient()
        return self._backend

    @property
    def nominatim(self) -> NominatimGeocodeProvider:
        if self._nominatim is None:
            self._nominatim = NominatimGeocodeProvider(language=settings.default_language)
        return self._nominatim

    @property
    def storage(self) -> FileStorage:
        if self._storage is None:
            self._storage = FileStorage()
        return self._storage

    @property
    def resolver(self) -> GeocodeResolver:
        if self._resolver is None:
            provider = ChainedGeocodeProvider([BackendGeocodeProvider(self.backend), self.nominatim])
            self._resolver = GeocodeResolver(provider)
        return self._resolver

    def engine(self, language: str | None = None) -> RouteEngine:
        return RouteEngine(self.backend, self.resolver, language=language)

    def create_session(self, driver_id: int | str, multi_stop: bool = True) -> DriverSession:
        preferences = VoicePreferences(self.storage, key=str(driver_id))
        return DriverSession(
            driver_id,
            self.backend,
            resolver=self.resolver,
            engine=self.engine(preferences.language),
            preferences=preferences,
            multi_stop=multi_stop,
            background_uploads=self.background_uploads,
        )

    async def aclose(self) -> None:
        await self.registry.close_all()
        if self._backend is not None:
            await self._backend.aclose()
        if self._nominatim is not None:
            await self._nominatim.aclose()


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.services.registry
