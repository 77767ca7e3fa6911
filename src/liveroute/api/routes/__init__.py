"""Route group exports."""

from . import geocoding, health, routes, sessions

__all__ = ["sessions", "routes", "geocoding", "health"]
