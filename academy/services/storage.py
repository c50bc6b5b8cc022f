"""Persistent key-value store backed by SQLite.

The console keeps the same handful of keys a browser front-end would keep in
local storage: bearer tokens, cached signed video URLs and the unload progress
snapshot. Values are JSON documents. Writes are last-write-wins and no
operation spans more than one key.
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Literal, Optional, Sequence, Tuple

from ..config import AppConfig


TOKEN_KEY = "token"
ADMIN_TOKEN_KEY = "adminToken"
VIDEO_URL_CACHE_KEY = "videoUrlCache"
PENDING_PROGRESS_KEY = "pendingProgress"
THUMBNAIL_HISTORY_PREFIX = "thumbnailHistory:"

Role = Literal["learner", "admin"]

_ROLE_TOKEN_KEYS: Dict[str, str] = {
    "learner": TOKEN_KEY,
    "admin": ADMIN_TOKEN_KEY,
}


@dataclass
class StoredEntry:
    key: str
    value: Any
    updated_at: float


LOGGER = logging.getLogger(__name__)


class PersistentStore:
    """Small key-value repository with JSON values."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = config.state_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter
        self._clock = clock

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting debug events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_store_event(self, action: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        """Emit a structured debug event capturing execution time for a store action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:  # pragma: no cover - instrumentation only
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {
                key: value for key, value in event_payload.items() if value is not None
            }
            try:
                self._event_emitter(
                    "STORE_OP",
                    action,
                    payload=filtered,
                    duration_ms=duration_ms,
                )
            except TypeError:
                self._event_emitter("STORE_OP", action)  # type: ignore[misc]

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] = (),
    ) -> sqlite3.Cursor:
        return connection.execute(statement, tuple(parameters))

    def _connect(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        return connection

    # ------------------------------------------------------------------
    # Generic key-value helpers
    # ------------------------------------------------------------------
    def get_entry(self, key: str) -> Optional[StoredEntry]:
        with self._track_store_event("get", key=key) as event:
            with contextlib.closing(self._connect()) as connection:
                row = self._execute(
                    connection,
                    "SELECT key, value, updated_at FROM kv_entries WHERE key = ?",
                    (key,),
                ).fetchone()
            event["found"] = row is not None
            if row is None:
                return None
            try:
                value = json.loads(row["value"])
            except json.JSONDecodeError:
                LOGGER.warning("Discarding unreadable value stored under '%s'", key)
                event["status"] = "corrupt"
                return None
            return StoredEntry(key=row["key"], value=value, updated_at=float(row["updated_at"]))

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.get_entry(key)
        return default if entry is None else entry.value

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        with self._track_store_event("set", key=key, size=len(encoded)):
            with contextlib.closing(self._connect()) as connection:
                with connection:
                    self._execute(
                        connection,
                        """
                        INSERT INTO kv_entries(key, value, updated_at) VALUES (?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET
                            value = excluded.value,
                            updated_at = excluded.updated_at
                        """,
                        (key, encoded, self._clock()),
                    )
        LOGGER.debug("Stored key '%s' (%s bytes)", key, len(encoded))

    def delete(self, key: str) -> bool:
        with self._track_store_event("delete", key=key) as event:
            with contextlib.closing(self._connect()) as connection:
                with connection:
                    cursor = self._execute(
                        connection, "DELETE FROM kv_entries WHERE key = ?", (key,)
                    )
            removed = cursor.rowcount > 0
            event["removed"] = removed
            return removed

    def keys(self, prefix: str = "") -> List[str]:
        with contextlib.closing(self._connect()) as connection:
            rows = self._execute(
                connection, "SELECT key FROM kv_entries ORDER BY key"
            ).fetchall()
        return [row["key"] for row in rows if row["key"].startswith(prefix)]

    # ------------------------------------------------------------------
    # Bearer tokens
    # ------------------------------------------------------------------
    def get_token(self, role: Role) -> Optional[str]:
        value = self.get(_ROLE_TOKEN_KEYS[role])
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    def set_token(self, role: Role, token: str) -> None:
        cleaned = token.strip()
        if not cleaned:
            raise ValueError("Token must not be empty")
        self.set(_ROLE_TOKEN_KEYS[role], cleaned)
        LOGGER.info("Stored %s token", role)

    def clear_token(self, role: Role) -> bool:
        removed = self.delete(_ROLE_TOKEN_KEYS[role])
        if removed:
            LOGGER.info("Cleared %s token", role)
        return removed

    def now(self) -> float:
        return self._clock()


__all__ = [
    "ADMIN_TOKEN_KEY",
    "PENDING_PROGRESS_KEY",
    "PersistentStore",
    "Role",
    "StoredEntry",
    "THUMBNAIL_HISTORY_PREFIX",
    "TOKEN_KEY",
    "VIDEO_URL_CACHE_KEY",
]
