"""Configuration loading utilities for the Academy Console application."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".academy_console_write_check"

DEFAULT_API_BASE_URL = "http://localhost:5000"
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_PROGRESS_INTERVAL = 30.0
DEFAULT_URL_EXPIRY_BUFFER = 300.0
DEFAULT_PLAYER_IDLE_TIMEOUT = 1800.0


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. A flag reports whether a fallback was
    used. When nothing can be prepared ``preferred`` is returned unchanged so
    the bootstrapper can report the failure.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _coerce_float(value: Any, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        LOGGER.warning("Ignoring invalid numeric configuration value %r", value)
        return default
    return parsed if parsed > 0 else default


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and backend settings for the console."""

    storage_root: Path
    state_file: Path
    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL
    url_expiry_buffer: float = DEFAULT_URL_EXPIRY_BUFFER
    player_idle_timeout: float = DEFAULT_PLAYER_IDLE_TIMEOUT

    @property
    def settings_file(self) -> Path:
        return (self.storage_root / "settings.json").resolve()

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".academy_console" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        state_file = (base_path / mapping["state_file"]).resolve()
        if storage_fallback_used:
            try:
                relative_state = state_file.relative_to(preferred_storage)
            except ValueError:
                relative_state = None
            if relative_state is not None:
                fallback_state = (storage_root / relative_state).resolve()
                if _ensure_writable_directory(fallback_state.parent):
                    LOGGER.warning(
                        "Preferred state location '%s' is not writable; using fallback '%s'.",
                        state_file,
                        fallback_state,
                    )
                    state_file = fallback_state

        if not _ensure_writable_directory(state_file.parent):
            fallback_state = (storage_root / state_file.name).resolve()
            if fallback_state != state_file and _ensure_writable_directory(
                fallback_state.parent
            ):
                LOGGER.warning(
                    "Preferred state location '%s' is not writable; using fallback '%s'.",
                    state_file,
                    fallback_state,
                )
                state_file = fallback_state
            else:
                LOGGER.warning(
                    "State location '%s' is not writable and no fallback is available.",
                    state_file,
                )

        api_base_url = (
            os.environ.get("ACADEMY_API_BASE_URL")
            or mapping.get("api_base_url")
            or DEFAULT_API_BASE_URL
        )
        request_timeout = _coerce_float(
            os.environ.get("ACADEMY_REQUEST_TIMEOUT") or mapping.get("request_timeout"),
            DEFAULT_REQUEST_TIMEOUT,
        )

        return cls(
            storage_root=storage_root,
            state_file=state_file,
            api_base_url=str(api_base_url).rstrip("/"),
            request_timeout=request_timeout,
            progress_interval=_coerce_float(
                mapping.get("progress_interval"), DEFAULT_PROGRESS_INTERVAL
            ),
            url_expiry_buffer=_coerce_float(
                mapping.get("url_expiry_buffer"), DEFAULT_URL_EXPIRY_BUFFER
            ),
            player_idle_timeout=_coerce_float(
                mapping.get("player_idle_timeout"), DEFAULT_PLAYER_IDLE_TIMEOUT
            ),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "load_config"]
