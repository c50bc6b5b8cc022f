"""Persistence helpers for console preferences."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Literal, Mapping

from ..config import AppConfig


LOGGER = logging.getLogger(__name__)

LanguageCode = Literal["en", "ar"]

PLAYBACK_RATES = (0.5, 0.75, 1.0, 1.25, 1.5, 1.75, 2.0)


@dataclass
class ConsoleSettings:
    """Container for customisable player and listing options."""

    playback_rate: float = 1.0
    autoplay_next: bool = True
    page_size: int = 12
    language: LanguageCode = "en"
    debug_enabled: bool = False

    def validate(self) -> None:
        if self.playback_rate not in PLAYBACK_RATES:
            raise ValueError(f"Unsupported playback rate {self.playback_rate}")
        if not 1 <= int(self.page_size) <= 100:
            raise ValueError("page_size must be between 1 and 100")
        if self.language not in ("en", "ar"):
            raise ValueError(f"Unsupported language '{self.language}'")


class SettingsStore:
    """Load and store :class:`ConsoleSettings` alongside other persisted state."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._path = config.settings_file

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> ConsoleSettings:
        if not self._path.exists():
            return ConsoleSettings()

        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            LOGGER.warning("Ignoring unreadable settings file %s", self._path)
            return ConsoleSettings()

        return self.merge(ConsoleSettings(), payload)

    @staticmethod
    def merge(settings: ConsoleSettings, updates: Mapping[str, Any]) -> ConsoleSettings:
        known = {field.name for field in fields(ConsoleSettings)}
        values: Dict[str, Any] = asdict(settings)
        for name, value in updates.items():
            if name in known and value is not None:
                values[name] = value
        return ConsoleSettings(**values)

    def save(self, settings: ConsoleSettings) -> None:
        settings.validate()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = asdict(settings)
        self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")


__all__ = ["ConsoleSettings", "LanguageCode", "PLAYBACK_RATES", "SettingsStore"]
