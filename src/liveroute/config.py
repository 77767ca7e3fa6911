"""Application configuration and settings management."""

from pathlib import Path
from typing import Any, Optional

import json
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="LIVEROUTE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Live Delivery Route API"
    api_prefix: str = "/api"
    data_root: Path = Field(default=Path("data"), description="Root directory for persisted preferences.")

    backend_base_url: Optional[str] = Field(
        default=None,
        description="Base URL of the restaurant backend REST API (e.g., https://pos.example.com/api).",
    )
    backend_token: Optional[str] = Field(
        default=None,
        description="Bearer token forwarded to the backend. Session handling lives outside this service.",
    )
    backend_timeout_seconds: float = Field(default=15.0, gt=0.0)
    backend_max_retries: int = Field(default=2, ge=0)
    backend_backoff_seconds: float = Field(default=0.5, ge=0.0)

    nominatim_base_url: str = Field(
        default="https://nominatim.openstreetmap.org",
        description="OpenStreetMap Nominatim endpoint used when the backend geocoder fails.",
    )
    nominatim_user_agent: str = Field(default="LiveRouteService/1.0")

    default_language: str = Field(default="en", description="Default voice guidance / directions language.")
    optimize_waypoints: bool = Field(default=True)

    location_time_interval_ms: int = Field(default=5000, ge=0)
    location_min_distance_meters: float = Field(default=20.0, ge=0.0)

    pickup_key_precision: int = Field(
        default=4,
        ge=0,
        description="Decimal places used to group orders that share one pickup location.",
    )

    proximity_base_km: float = Field(default=0.07, ge=0.0)
    proximity_max_speed_offset_km: float = Field(default=0.06, ge=0.0)
    proximity_reference_speed_kmh: float = Field(default=120.0, gt=0.0)

    swipe_press_gate_px: float = Field(default=5.0, ge=0.0)
    swipe_vertical_tolerance_px: float = Field(default=10.0, ge=0.0)
    swipe_commit_threshold_px: float = Field(default=150.0, gt=0.0)
    swipe_max_travel_px: float = Field(default=300.0, gt=0.0)
    completion_max_attempts: int = Field(default=3, ge=1)
    completion_backoff_seconds: float = Field(default=0.15, ge=0.0)

    frontend_allowed_origins: tuple[str, ...] = Field(
        default=(
            "http://localhost:8081",
            "http://127.0.0.1:8081",
            "http://localhost:19006",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    @field_validator("data_root", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        path_value = value if isinstance(value, Path) else Path(str(value))
        return path_value.expanduser().resolve()

    @field_validator("backend_base_url", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text.rstrip("/") or None

    @field_validator("frontend_allowed_origins", mode="before")
    @classmethod
    def _parse_str_tuple_from_env(cls, value: Any) -> tuple[str, ...]:
        """Parse string tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            # Try JSON first
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(str(item) for item in parsed)
            except (json.JSONDecodeError, TypeError):
                pass
            if "," in value:
                return tuple(item.strip() for item in value.split(",") if item.strip())
            if value.strip():
                return (value.strip(),)
        return tuple()


settings = Settings()
