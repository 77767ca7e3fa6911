"""Proximity-triggered voice announcements."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, Sequence

from ...config import settings
from ...models.domain import AnnouncementStep, LocationPoint
from ...preferences import VoicePreferences
from ..geospatial import haversine_km

logger = logging.getLogger(__name__)

MIN_SPEAK_SECONDS = 2.0
MAX_SPEAK_SECONDS = 8.0
SECONDS_PER_CHARACTER = 0.06
SPEAK_GRACE_SECONDS = 0.25

ANNOUNCEMENT_TEMPLATES = {
    "en": "Pickup in {minutes}",
    "tr": "Alış {minutes} içinde",
    "es": "Recogida en {minutes}",
    "fr": "Retrait dans {minutes}",
}

MINUTE_LABELS = {
    "en": ("minute", "minutes"),
    "tr": ("dakika", "dakika"),
    "es": ("minuto", "minutos"),
    "fr": ("minute", "minutes"),
}


class Speaker(Protocol):
    def speak(self, text: str, locale: str) -> None:
        ...

    def stop(self) -> None:
        ...


class LoggingSpeaker:
    """Speaker that records utterances; the device does the actual text-to-speech."""

    def __init__(self) -> None:
        self.spoken: list[tuple[str, str]] = []

    def speak(self, text: str, locale: str) -> None:
        logger.info(f"Speaking [{locale}]: {text}")
        self.spoken.append((text, locale))

    def stop(self) -> None:
        logger.debug("Speech stopped")


def announce_threshold_km(
    speed_kmh: float,
    base_km: float | None = None,
    max_offset_km: float | None = None,
    reference_speed_kmh: float | None = None,
) -> float:
    """Announcement radius: grows with speed to make up for GPS sampling lag."""
    base_km = settings.proximity_base_km if base_km is None else base_km
    max_offset_km = settings.proximity_max_speed_offset_km if max_offset_km is None else max_offset_km
    reference = settings.proximity_reference_speed_kmh if reference_speed_kmh is None else reference_speed_kmh
    speed_kmh = max(0.0, speed_kmh)
    return base_km + min(max_offset_km, (speed_kmh / reference) * max_offset_km)


def estimated_speech_seconds(text: str) -> float:
    return max(MIN_SPEAK_SECONDS, min(MAX_SPEAK_SECONDS, len(text) * SECONDS_PER_CHARACTER))


def pickup_eta_text(minutes: int, language: str) -> str:
    singular, plural = MINUTE_LABELS.get(language, MINUTE_LABELS["en"])
    label = f"1 {singular}" if minutes == 1 else f"{minutes} {plural}"
    template = ANNOUNCEMENT_TEMPLATES.get(language, ANNOUNCEMENT_TEMPLATES["en"])
    return template.replace("{minutes}", label)


class ProximityAnnouncer:
    def __init__(self, speaker: Speaker, preferences: VoicePreferences) -> None:
        self.speaker = speaker
        self.preferences = preferences
        self.steps: list[AnnouncementStep] = []
        self.speaking = False
        self.pickup_eta_announced = False
        self._speaking_timer: Optional[asyncio.TimerHandle] = None

    def load_steps(self, steps: Sequence[AnnouncementStep]) -> None:
        """Replace the active steps with a fresh, un-announced copy."""
        self.stop_speaking()
        self.steps = [AnnouncementStep(text=s.text, lat=s.lat, lng=s.lng, announced=False) for s in steps]

    def check(self, point: LocationPoint) -> Optional[AnnouncementStep]:
        """Announce the first pending step within range of ``point``, if any."""
        if not self.steps:
            return None
        threshold = announce_threshold_km(point.speed_kmh)
        for step in self.steps:
            if step.announced or not step.is_anchored:
                continue
            if haversine_km(point.lat, point.lng, step.lat, step.lng) <= threshold:
                step.announced = True
                self.announce(step.text)
                return step
        return None

    async def __call__(self, point: LocationPoint) -> None:
        self.check(point)

    def _clear_timer(self) -> None:
        if self._speaking_timer is not None:
            self._speaking_timer.cancel()
            self._speaking_timer = None

    def _speaking_done(self) -> None:
        self._speaking_timer = None
        self.speaking = False

    def announce(self, text: str) -> None:
        """Speak ``text``, interrupting anything already being spoken."""
        self.speaker.stop()
        self._clear_timer()
        self.speaking = True
        try:
            self.speaker.speak(text, self.preferences.locale)
        except Exception as e:
            logger.warning(f"Speech failed: {e}")
            self.speaking = False
            return
        hold = estimated_speech_seconds(text) + SPEAK_GRACE_SECONDS
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to clear the flag later; report not speaking.
            self.speaking = False
            return
        self._speaking_timer = loop.call_later(hold, self._speaking_done)

    def stop_speaking(self) -> None:
        """Stop immediately and drop the pending steps."""
        try:
            self.speaker.stop()
        except Exception as e:
            logger.debug(f"Speaker stop failed: {e}")
        self._clear_timer()
        self.steps = []
        self.speaking = False

    def announce_pickup_eta(self, minutes: Optional[int]) -> bool:
        """One-shot "pickup in N minutes" announcement per map session."""
        if self.pickup_eta_announced or not minutes:
            return False
        self.announce(pickup_eta_text(minutes, self.preferences.language))
        self.pickup_eta_announced = True
        return True

    def reset_session(self) -> None:
        self.stop_speaking()
        self.pickup_eta_announced = False
