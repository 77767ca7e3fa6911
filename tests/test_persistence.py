from pathlib import Path

import pytest

from src.liveroute.config import Settings
from src.liveroute.persistence.filesystem import FileStorage
from src.liveroute.preferences import PREFERENCES_FILE, VoicePreferences, find_language


def test_file_storage_creates_root(tmp_path: Path) -> None:
    root = tmp_path / "nested" / "data"
    storage = FileStorage(root=root)

    assert root.exists()
    assert storage.path_for("x.json") == root.resolve() / "x.json"


def test_file_storage_writes_and_reads_json(tmp_path: Path) -> None:
    storage = FileStorage(root=tmp_path)
    path = storage.path_for("summary.json")

    storage.write_json(path, {"hello": "dünya"})

    assert path.read_text(encoding="utf-8") == '{\n  "hello": "dünya"\n}'
    assert storage.read_json(path) == {"hello": "dünya"}
    assert storage.read_json(storage.path_for("missing.json")) is None
    assert not path.with_suffix(".json.tmp").exists()


def test_voice_preferences_persist_per_driver(tmp_path: Path) -> None:
    storage = FileStorage(root=tmp_path)

    VoicePreferences(storage, key="7").select("tr")
    VoicePreferences(storage, key="8").select("fr")

    restored = VoicePreferences(storage, key="7").load()
    assert restored.language == "tr"
    assert restored.locale == "tr-TR"
    assert VoicePreferences(storage, key="8").load().locale == "fr-FR"
    assert VoicePreferences(storage, key="9").load().language == "en"


def test_voice_preferences_reject_unknown_language(tmp_path: Path) -> None:
    preferences = VoicePreferences(FileStorage(root=tmp_path))

    with pytest.raises(ValueError):
        preferences.select("de")
    assert preferences.language == "en"
    assert not (tmp_path / PREFERENCES_FILE).exists()


def test_voice_preferences_survive_corrupt_file(tmp_path: Path) -> None:
    storage = FileStorage(root=tmp_path)
    storage.path_for(PREFERENCES_FILE).write_text("{not json", encoding="utf-8")

    assert VoicePreferences(storage, key="7").load().language == "en"


def test_find_language() -> None:
    assert find_language("es").locale == "es-ES"
    assert find_language(None) is None


def test_settings_parse_origins_and_strip_backend_slash(monkeypatch) -> None:
    monkeypatch.setenv("LIVEROUTE_BACKEND_BASE_URL", "https://pos.example.com/api/")
    monkeypatch.setenv("LIVEROUTE_FRONTEND_ALLOWED_ORIGINS", '["https://a.example", "https://b.example"]')

    settings = Settings()

    assert settings.backend_base_url == "https://pos.example.com/api"
    assert settings.frontend_allowed_origins == ("https://a.example", "https://b.example")
    assert settings.location_time_interval_ms == 5000
    assert settings.swipe_commit_threshold_px == 150
