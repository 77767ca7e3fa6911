import pytest

from src.liveroute.models.domain import AnnouncementStep, LocationPoint
from src.liveroute.preferences import VoicePreferences
from src.liveroute.services.announcer.proximity import (
    LoggingSpeaker,
    ProximityAnnouncer,
    announce_threshold_km,
    estimated_speech_seconds,
    pickup_eta_text,
)

KM_PER_DEGREE_LAT = 111.19493
ORIGIN = (38.4, 27.1)


def _north(meters: float, speed_ms: float = 0.0) -> LocationPoint:
    return LocationPoint(lat=ORIGIN[0] + (meters / 1000) / KM_PER_DEGREE_LAT, lng=ORIGIN[1], speed=speed_ms)


def _announcer(language: str = "en") -> tuple[ProximityAnnouncer, LoggingSpeaker]:
    preferences = VoicePreferences()
    preferences.select(language)
    speaker = LoggingSpeaker()
    return ProximityAnnouncer(speaker, preferences), speaker


def _steps() -> list[AnnouncementStep]:
    return [
        AnnouncementStep(text="Unanchored", lat=None, lng=None),
        AnnouncementStep(text="Turn right onto Kordon Boyu", lat=ORIGIN[0], lng=ORIGIN[1]),
    ]


def test_threshold_grows_with_speed_and_caps() -> None:
    assert announce_threshold_km(0) == pytest.approx(0.07)
    assert announce_threshold_km(60) == pytest.approx(0.10)
    assert announce_threshold_km(120) == pytest.approx(0.13)
    assert announce_threshold_km(250) == pytest.approx(0.13)
    assert announce_threshold_km(-5) == pytest.approx(0.07)


def test_stationary_driver_announces_within_seventy_meters() -> None:
    announcer, speaker = _announcer()
    announcer.load_steps(_steps())

    assert announcer.check(_north(71)) is None
    step = announcer.check(_north(69))

    assert step is not None and step.text == "Turn right onto Kordon Boyu"
    assert speaker.spoken == [("Turn right onto Kordon Boyu", "en-US")]


def test_fast_driver_announces_earlier() -> None:
    announcer, speaker = _announcer()
    announcer.load_steps(_steps())
    highway_speed = 120 / 3.6

    assert announcer.check(_north(131, highway_speed)) is None
    assert announcer.check(_north(129, highway_speed)) is not None


def test_each_step_is_announced_once() -> None:
    announcer, speaker = _announcer()
    announcer.load_steps(_steps())

    announcer.check(_north(10))
    announcer.check(_north(5))

    assert len(speaker.spoken) == 1


def test_loading_steps_resets_announced_flags() -> None:
    announcer, speaker = _announcer()
    steps = _steps()
    announcer.load_steps(steps)
    announcer.check(_north(0))

    announcer.load_steps(steps)
    announcer.check(_north(0))

    assert len(speaker.spoken) == 2
    assert not steps[1].announced


def test_pickup_eta_text_localised() -> None:
    assert pickup_eta_text(1, "en") == "Pickup in 1 minute"
    assert pickup_eta_text(5, "en") == "Pickup in 5 minutes"
    assert pickup_eta_text(5, "tr") == "Alış 5 dakika içinde"
    assert pickup_eta_text(3, "xx") == "Pickup in 3 minutes"


def test_pickup_eta_is_announced_once_per_session() -> None:
    announcer, speaker = _announcer("tr")

    assert announcer.announce_pickup_eta(4)
    assert not announcer.announce_pickup_eta(4)
    announcer.reset_session()
    assert not announcer.announce_pickup_eta(None)
    assert announcer.announce_pickup_eta(2)

    assert speaker.spoken == [("Alış 4 dakika içinde", "tr-TR"), ("Alış 2 dakika içinde", "tr-TR")]


def test_speech_duration_estimate_is_clamped() -> None:
    assert estimated_speech_seconds("Hi") == 2.0
    assert estimated_speech_seconds("x" * 1000) == 8.0


@pytest.mark.anyio
async def test_speaking_flag_tracks_utterance_and_stop() -> None:
    announcer, speaker = _announcer()
    announcer.load_steps(_steps())

    await announcer(_north(0))
    assert announcer.speaking

    announcer.stop_speaking()
    assert not announcer.speaking
    assert announcer.steps == []
