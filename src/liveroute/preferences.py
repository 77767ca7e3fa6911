"""Voice guidance preferences with an explicit load/persist lifecycle."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

from .config import settings
from .persistence.filesystem import FileStorage

logger = logging.getLogger(__name__)

PREFERENCES_FILE = "voice_preferences.json"


@dataclass(frozen=True, slots=True)
class LanguageOption:
    label: str
    code: str
    locale: str


LANGUAGE_OPTIONS: tuple[LanguageOption, ...] = (
    LanguageOption("English", "en", "en-US"),
    LanguageOption("Türkçe", "tr", "tr-TR"),
    LanguageOption("Español", "es", "es-ES"),
    LanguageOption("Français", "fr", "fr-FR"),
)


def find_language(code: Optional[str]) -> Optional[LanguageOption]:
    for option in LANGUAGE_OPTIONS:
        if option.code == code:
            return option
    return None


class VoicePreferences:
    """Selected voice language, loaded once per session and persisted on change."""

    def __init__(self, storage: FileStorage | None = None, key: str = "default") -> None:
        self.storage = storage
        self.key = key
        self.option = find_language(settings.default_language) or LANGUAGE_OPTIONS[0]

    @property
    def language(self) -> str:
        return self.option.code

    @property
    def locale(self) -> str:
        return self.option.locale

    def _path(self):
        return self.storage.path_for(PREFERENCES_FILE) if self.storage else None

    def load(self) -> "VoicePreferences":
        path = self._path()
        if path is None:
            return self
        try:
            stored = self.storage.read_json(path) or {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load saved language preference: {e}")
            return self
        entry = stored.get(self.key) if isinstance(stored, dict) else None
        restored = find_language(entry.get("code")) if isinstance(entry, dict) else None
        if restored:
            self.option = restored
        return self

    def select(self, code: str) -> LanguageOption:
        option = find_language(code)
        if option is None:
            raise ValueError(f"Unsupported voice language '{code}'.")
        self.option = option
        self.persist()
        return option

    def persist(self) -> None:
        path = self._path()
        if path is None:
            return
        try:
            stored = self.storage.read_json(path) or {}
            if not isinstance(stored, dict):
                stored = {}
            stored[self.key] = {"code": self.option.code, "locale": self.option.locale}
            self.storage.write_json(path, stored)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to persist language preference: {e}")
