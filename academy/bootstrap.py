"""Bootstrap logic that prepares runtime directories and the SQLite state store."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config

LOGGER = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_state_store()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        storage_root = self._config.storage_root
        if not config_module._ensure_writable_directory(storage_root):
            raise BootstrapError(
                f"Storage directory '{storage_root}' is not writable. "
                "Check permissions or point storage_root elsewhere."
            )
        LOGGER.debug("Ensured directory exists: %s", storage_root)

        state_parent = self._config.state_file.parent
        if not config_module._ensure_writable_directory(state_parent):
            raise BootstrapError(f"State directory '{state_parent}' is not writable.")
        LOGGER.debug("Ensured directory exists: %s", state_parent)

    def _ensure_state_store(self) -> None:
        LOGGER.debug("Ensuring state schema at %s", self._config.state_file)
        connection = sqlite3.connect(self._config.state_file)
        try:
            cursor = connection.cursor()
            cursor.executescript(
                """
                CREATE TABLE IF NOT EXISTS kv_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL DEFAULT 0
                );
                """
            )
            connection.commit()

            cursor.execute("PRAGMA table_info(kv_entries)")
            columns = {row[1] for row in cursor.fetchall()}
            if "updated_at" not in columns:
                cursor.execute(
                    "ALTER TABLE kv_entries ADD COLUMN updated_at REAL NOT NULL DEFAULT 0"
                )
                connection.commit()
        except sqlite3.DatabaseError as error:
            raise BootstrapError(f"Could not prepare state store: {error}") from error
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "initialize_app"]
