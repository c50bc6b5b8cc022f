"""FastAPI application powering the Academy Console."""

from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
import threading
import time
import uuid
from collections import deque
from collections.abc import Mapping, Sequence, Set as AbstractSet
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, List, Literal, Optional, Set, Tuple, TypeVar

import httpx
from fastapi import FastAPI, File, Form, HTTPException, Request, Response, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..logging_utils import DEFAULT_LOG_FORMAT
from ..services.account import AccountService
from ..services.admin import CourseAdmin, UserDirectory
from ..services.api import (
    AccessDenied,
    AccountSuspended,
    AcademyClient,
    AcademyError,
    ApiConnectionError,
    ApiError,
    AuthenticationRequired,
)
from ..services.catalog import CatalogService, CourseFilter
from ..services.certificates import CertificateIdError, CertificateService
from ..services.events import (
    emit_api_event,
    emit_player_event,
    emit_store_event,
    emit_structured_event,
    normalize_context as _normalize_event_context,
    sanitize_context_value as _sanitize_context_value,
)
from ..services.forms import (
    FormValidationError,
    clean_course_fields,
    ensure_valid,
    parse_tags_on_blur,
    validate_course_form,
    validate_video_form,
)
from ..services.playback import PlaybackSession, video_source_for
from ..services.progress import ProgressTracker
from ..services.settings import PLAYBACK_RATES, ConsoleSettings, SettingsStore
from ..services.signed_urls import SignedUrlCache
from ..services.storage import PersistentStore


T = TypeVar("T")

_SERVER_LOGGER_PREFIXES: Tuple[str, ...] = ("uvicorn", "gunicorn", "hypercorn", "werkzeug")
_API_SLOW_WARNING_MS = 2000.0
_STORE_SLOW_WARNING_MS = 250.0

_DEFAULT_MAX_UPLOAD_BYTES = 2 * 1024 * 1024 * 1024
try:
    _MAX_UPLOAD_BYTES = int(
        (os.environ.get("ACADEMY_MAX_UPLOAD_BYTES") or "").strip() or _DEFAULT_MAX_UPLOAD_BYTES
    )
except ValueError:
    _MAX_UPLOAD_BYTES = _DEFAULT_MAX_UPLOAD_BYTES


def get_max_upload_bytes() -> int:
    """Return the configured maximum upload size in bytes."""

    return int(_MAX_UPLOAD_BYTES)


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "academy_console_request_id",
    default=None,
)
_SESSION_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "academy_console_session_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "academy_console_actor",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _format_actor_label(role: str, detail: Optional[str] = None) -> str:
    base = role.strip() if role else "actor"
    if detail is None:
        return base
    suffix = str(detail).strip()
    return f"{base}:{suffix}" if suffix else base


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    session_id = _SESSION_ID_VAR.get()
    if session_id:
        context["session_id"] = str(session_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class LargeUploadRequest(Request):
    """Request subclass that applies the configured multipart upload limit."""

    async def _get_form(
        self,
        *,
        max_files: int | float = 1000,
        max_fields: int | float = 1000,
        max_part_size: int = 1024 * 1024,
    ) -> Any:
        configured_limit = get_max_upload_bytes()
        effective_limit = int(max_part_size)
        if configured_limit > 0:
            effective_limit = max(int(configured_limit), effective_limit)
        else:
            effective_limit = sys.maxsize
        return await super()._get_form(
            max_files=max_files,
            max_fields=max_fields,
            max_part_size=effective_limit,
        )


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method")
        actor_hint = _format_actor_label("request", method.upper() if isinstance(method, str) else None)
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(actor_hint)
        session_token = _SESSION_ID_VAR.set(None)

        try:
            await self.app(scope, receive, send)
        finally:
            _SESSION_ID_VAR.reset(session_token)
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        correlation = _collect_correlation_context()
        for key, value in correlation.items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("academy_console.ui.events"), {})


def _emit_debug_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = EVENT_LOGGER,
) -> None:
    correlation = _collect_correlation_context()
    emit_structured_event(
        event_type,
        message,
        payload=payload,
        context=context,
        correlation=correlation,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


def _emit_service_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
) -> None:
    correlation = _collect_correlation_context()
    if event_type == "STORE_OP":
        emit_store_event(
            message,
            payload=payload,
            correlation=correlation,
            duration_ms=duration_ms,
            level=logging.DEBUG,
            logger=EVENT_LOGGER,
        )
        return
    if event_type != "API_CALL":
        _emit_debug_event(event_type, message, payload=payload, duration_ms=duration_ms)
        return
    status_code = (payload or {}).get("status_code")
    level = logging.INFO
    if isinstance(status_code, int) and status_code >= 400:
        level = logging.WARNING
    elif (payload or {}).get("status") in {"timeout", "unreachable"}:
        level = logging.ERROR
    emit_api_event(
        message,
        payload=payload,
        correlation=correlation,
        duration_ms=duration_ms,
        level=level,
        logger=EVENT_LOGGER,
    )


def _emit_player_state(
    phase: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    emit_player_event(
        phase,
        message,
        payload=payload,
        correlation=_collect_correlation_context(),
        logger=EVENT_LOGGER,
    )


def _log_event(message: str, **context: Any) -> None:
    _emit_debug_event("APP_EVENT", message, context=context)


class DebugLogHandler(logging.Handler):
    """In-memory log handler used to power the live debug console."""

    _IGNORED_FIELDS: Set[str] = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "process",
        "processName",
        "taskName",
        "message",
        "asctime",
        "getMessage",
    }
    _CORRELATION_FIELDS: Tuple[str, ...] = ("request_id", "session_id", "actor")
    _SEVERITY_PRIORITY: Dict[str, int] = {"error": 3, "warning": 2, "info": 1}

    def __init__(self, capacity: int = 500) -> None:
        super().__init__(level=logging.DEBUG)
        self._capacity = max(1, capacity)
        self._entries: Deque[Dict[str, Any]] = deque()
        self._entry_index: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._last_id = 0
        self.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        self._started_at = datetime.now(timezone.utc)

    def _extract_duration(self, record: logging.LogRecord) -> Optional[float]:
        candidate = getattr(record, "debug_duration_ms", None)
        if candidate is None:
            return None
        try:
            return float(candidate)
        except (TypeError, ValueError):
            return None

    def _extract_context(self, record: logging.LogRecord) -> Dict[str, Any]:
        context = getattr(record, "debug_context", None)
        if isinstance(context, dict):
            return dict(_normalize_event_context(context))
        return {}

    def _extract_payload(self, record: logging.LogRecord) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        raw_payload = getattr(record, "debug_payload", None)
        if isinstance(raw_payload, dict):
            payload.update(_normalize_event_context(raw_payload))
        for key, value in record.__dict__.items():
            if key in self._IGNORED_FIELDS or key.startswith("_"):
                continue
            if key.startswith("debug_") or key in self._CORRELATION_FIELDS:
                continue
            sanitized = _sanitize_context_value(value, str(key))
            if sanitized is None:
                continue
            payload[str(key)] = sanitized
        return payload

    def _extract_correlation(self, record: logging.LogRecord) -> Dict[str, str]:
        correlation: Dict[str, str] = {}
        stored = getattr(record, "debug_correlation", None)
        if isinstance(stored, dict):
            for key, value in stored.items():
                sanitized = _sanitize_context_value(value)
                if sanitized is not None:
                    correlation[str(key)] = str(sanitized)
        for field in self._CORRELATION_FIELDS:
            value = getattr(record, field, None)
            if value is None:
                continue
            correlation.setdefault(field, str(value))
        return correlation

    def _compute_severity(
        self,
        record: logging.LogRecord,
        payload: Dict[str, Any],
        duration_ms: Optional[float],
    ) -> Optional[str]:
        event_type = str(getattr(record, "debug_event_type", "") or "")
        error_flag = bool(
            payload.get("error")
            or payload.get("status") in {"error", "timeout", "unreachable", "corrupt"}
        )
        if record.levelno >= logging.ERROR or error_flag:
            return "error"
        slow_threshold: Optional[float] = None
        if event_type == "API_CALL":
            slow_threshold = _API_SLOW_WARNING_MS
        elif event_type == "STORE_OP":
            slow_threshold = _STORE_SLOW_WARNING_MS
        if slow_threshold is not None and duration_ms is not None and duration_ms >= slow_threshold:
            return "warning"
        if record.levelno >= logging.WARNING:
            return "warning"
        return None

    def _freeze_value(self, value: Any) -> Any:
        """Return a hashable representation of *value* for key construction."""

        if isinstance(value, Mapping):
            return tuple(
                (str(key), self._freeze_value(item))
                for key, item in sorted(value.items(), key=lambda pair: str(pair[0]))
            )
        if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
            return tuple(self._freeze_value(item) for item in value)
        if isinstance(value, AbstractSet):
            return tuple(sorted(str(self._freeze_value(item)) for item in value))
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Path):
            return str(value)
        try:
            hash(value)
        except TypeError:
            return str(value)
        return value

    def _build_key(
        self,
        event_type: str,
        message: str,
        context: Dict[str, Any],
        payload: Dict[str, Any],
    ) -> Tuple[Any, ...]:
        # Correlation ids are left out so repeats across requests collapse.
        return (
            event_type,
            message,
            self._freeze_value(context),
            self._freeze_value(payload),
        )

    def _serialize_entry(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        exported = {key: value for key, value in entry.items() if key != "_key"}
        exported.setdefault("timestamp", exported.get("last_seen"))
        return exported

    def _merge_duration(self, entry: Dict[str, Any], duration_ms: float) -> None:
        total = entry.get("total_duration_ms", 0.0) + duration_ms
        entry["total_duration_ms"] = total
        entry["last_duration_ms"] = duration_ms
        entry["average_duration_ms"] = total / entry["count"]
        entry["min_duration_ms"] = min(entry.get("min_duration_ms", duration_ms), duration_ms)
        entry["max_duration_ms"] = max(entry.get("max_duration_ms", duration_ms), duration_ms)

    def emit(self, record: logging.LogRecord) -> None:  # noqa: D401 - inherited documentation
        rendered_message = str(record.getMessage())
        if record.exc_info:
            formatter = self.formatter or logging.Formatter()
            exception_text = formatter.formatException(record.exc_info)
            if exception_text:
                rendered_message = f"{rendered_message}\n{exception_text}"

        base_message = getattr(record, "debug_event", None)
        base_message = rendered_message if base_message is None else str(base_message)

        context = self._extract_context(record)
        payload = self._extract_payload(record)
        duration_ms = self._extract_duration(record)
        correlation = self._extract_correlation(record)
        severity = self._compute_severity(record, payload, duration_ms)

        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        event_type = str(getattr(record, "debug_event_type", "") or record.name)
        category = (
            "server"
            if any(record.name.startswith(prefix) for prefix in _SERVER_LOGGER_PREFIXES)
            else "application"
        )
        if event_type == "PLAYER_STATE":
            category = "player"
        key = self._build_key(event_type, base_message, context, payload)

        with self._lock:
            self._last_id += 1
            existing = self._entry_index.get(key)
            if existing is not None:
                self._entries.remove(existing)
                existing["id"] = self._last_id
                existing["last_seen"] = timestamp
                existing["timestamp"] = timestamp
                existing["count"] = existing.get("count", 1) + 1
                existing["level"] = record.levelname
                if rendered_message != base_message:
                    existing["rendered"] = rendered_message
                if duration_ms is not None:
                    self._merge_duration(existing, duration_ms)
                if severity:
                    previous = str(existing.get("severity") or "")
                    if self._SEVERITY_PRIORITY.get(severity, 0) >= self._SEVERITY_PRIORITY.get(
                        previous, 0
                    ):
                        existing["severity"] = severity
                existing.update(correlation)
                self._entries.append(existing)
                return

            entry: Dict[str, Any] = {
                "id": self._last_id,
                "message": base_message,
                "event_type": event_type,
                "level": record.levelname,
                "logger": record.name,
                "category": category,
                "count": 1,
                "first_seen": timestamp,
                "last_seen": timestamp,
                "timestamp": timestamp,
                "_key": key,
            }
            if severity:
                entry["severity"] = severity
            if context:
                entry["context"] = context
            if payload:
                entry["payload"] = payload
            if rendered_message != base_message:
                entry["rendered"] = rendered_message
            if duration_ms is not None:
                self._merge_duration(entry, duration_ms)
            entry.update(correlation)
            self._entries.append(entry)
            self._entry_index[key] = entry
            while len(self._entries) > self._capacity:
                oldest = self._entries.popleft()
                old_key = oldest.pop("_key", None)
                if old_key is not None:
                    self._entry_index.pop(old_key, None)

    def collect(self, after: Optional[int] = None, limit: int = 200) -> List[Dict[str, Any]]:
        with self._lock:
            if after is None or after <= 0:
                data = list(self._entries)
            else:
                data = [entry for entry in self._entries if entry.get("id", 0) > after]
        return [self._serialize_entry(entry) for entry in data[-limit:]]

    def export_text(self) -> str:
        with self._lock:
            entries = [self._serialize_entry(entry) for entry in self._entries]
        if not entries:
            return "# Debug log is currently empty.\n"

        lines: List[str] = []
        for entry in entries:
            level = str(entry.get("level", "")).upper()
            base = (
                f"[{entry.get('timestamp', '')}] {level:<7} "
                f"{entry.get('event_type', '')}: {entry.get('message', '')}"
            ).strip()
            detail_parts: List[str] = []
            if entry.get("count", 1) > 1:
                detail_parts.append(f"count={entry['count']}")
            if entry.get("severity"):
                detail_parts.append(f"severity={entry['severity']}")
            if entry.get("last_duration_ms") is not None:
                detail_parts.append(f"duration_ms={float(entry['last_duration_ms']):.3f}")
            for label in ("context", "payload"):
                value = entry.get(label)
                if isinstance(value, Mapping) and value:
                    detail_parts.append(
                        f"{label}=" + json.dumps(value, ensure_ascii=False, sort_keys=True)
                    )
            correlation = {
                key: entry[key] for key in self._CORRELATION_FIELDS if entry.get(key)
            }
            if correlation:
                detail_parts.append(
                    "correlation=" + json.dumps(correlation, ensure_ascii=False, sort_keys=True)
                )
            lines.append(f"{base} | " + " | ".join(detail_parts) if detail_parts else base)

        return "\n".join(lines) + "\n"

    @property
    def started_at(self) -> datetime:
        return self._started_at

    @property
    def last_id(self) -> int:
        with self._lock:
            return self._last_id


def http_error_for(error: Exception) -> HTTPException:
    """Translate a service error into the matching HTTP response."""

    if isinstance(error, FormValidationError):
        return HTTPException(
            status_code=400, detail={"message": str(error), "errors": error.errors}
        )
    if isinstance(error, (CertificateIdError, ValueError)):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, AuthenticationRequired):
        return HTTPException(status_code=401, detail=str(error))
    if isinstance(error, (AccessDenied, AccountSuspended)):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, ApiError):
        if error.status_code in {400, 401, 403, 404, 409}:
            return HTTPException(status_code=error.status_code, detail=error.message)
        return HTTPException(status_code=502, detail=error.message)
    if isinstance(error, ApiConnectionError):
        return HTTPException(status_code=503, detail=str(error))
    return HTTPException(status_code=502, detail=str(error))


async def _call(operation: Awaitable[T]) -> T:
    try:
        return await operation
    except (AcademyError, ValueError) as error:
        LOGGER.warning("Request failed: %s", error)
        raise http_error_for(error) from error


class TokenPayload(BaseModel):
    role: Literal["learner", "admin"]
    token: str = Field(..., min_length=1)


class GenerateCertificatePayload(BaseModel):
    course_id: str = Field(..., min_length=1, alias="courseId")

    model_config = {"populate_by_name": True}


class LoginPayload(BaseModel):
    role: Literal["learner", "admin"]
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)


class UserStatusPayload(BaseModel):
    status: Literal["active", "inactive"]


class CoursePayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    category: Optional[str] = None
    level: Optional[str] = None
    tags: Optional[str | List[str]] = None
    status: Optional[str] = None
    hasWhatsappGroup: Optional[bool] = None
    whatsappGroupLink: Optional[str] = None


class ThumbnailRestorePayload(BaseModel):
    url: str = Field(..., min_length=1)


class VideoUpdatePayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    order: Optional[int] = Field(None, ge=1)
    duration: Optional[str] = None


class FreePreviewPayload(BaseModel):
    enabled: bool


class PlayerSessionPayload(BaseModel):
    course_id: str = Field(..., min_length=1)
    role: Literal["learner", "admin"] = "learner"


class SelectVideoPayload(BaseModel):
    video_id: str = Field(..., min_length=1)


class ProgressPayload(BaseModel):
    position: float = Field(..., ge=0)
    duration: float = Field(..., ge=0)


class PlayerEventPayload(BaseModel):
    event: Literal["pause", "play", "hidden", "visible", "unload", "ended"]
    position: Optional[float] = Field(None, ge=0)
    duration: Optional[float] = Field(None, ge=0)


class PlayerErrorPayload(BaseModel):
    code: Optional[int] = None


class SettingsPayload(BaseModel):
    playback_rate: float = 1.0
    autoplay_next: bool = True
    page_size: int = Field(12, ge=1, le=100)
    language: Literal["en", "ar"] = "en"
    debug_enabled: bool = False


def create_app(
    store: PersistentStore,
    *,
    config: AppConfig,
    root_path: str | None = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = time.monotonic,
) -> FastAPI:
    """Return a configured FastAPI application.

    Player sessions untouched for ``config.player_idle_timeout`` seconds are
    closed the next time any session is opened or looked up.
    """

    app = FastAPI(
        title="Academy Console",
        description="Browse courses, manage the academy and drive the protected player",
        root_path=root_path or "",
        request_class=LargeUploadRequest,
    )
    app.state.server = None

    store.configure_event_emitter(_emit_service_event)
    client = AcademyClient.from_config(
        config, store, transport=transport, event_emitter=_emit_service_event
    )
    app.state.client = client

    root_logger = logging.getLogger()
    debug_handler = next(
        (handler for handler in root_logger.handlers if isinstance(handler, DebugLogHandler)),
        None,
    )
    if debug_handler is None:
        debug_handler = DebugLogHandler()
        root_logger.addHandler(debug_handler)
    app.state.debug_log_handler = debug_handler
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    settings_store = SettingsStore(config)
    catalog = CatalogService(client)
    accounts = AccountService(client)
    certificates = CertificateService(client)
    course_admin = CourseAdmin(client)
    url_cache = SignedUrlCache(store, buffer=config.url_expiry_buffer)
    sessions: Dict[str, PlaybackSession] = {}
    last_seen: Dict[str, float] = {}
    app.state.player_sessions = sessions

    def _load_settings() -> ConsoleSettings:
        return settings_store.load()

    def _update_debug_state(enabled: bool) -> None:
        target_level = logging.DEBUG if enabled else logging.INFO
        if root_logger.level != target_level:
            root_logger.setLevel(target_level)
        previously_enabled = getattr(app.state, "debug_enabled", False)
        app.state.debug_enabled = bool(enabled)
        if previously_enabled != app.state.debug_enabled:
            state_text = "enabled" if app.state.debug_enabled else "disabled"
            logging.getLogger("academy_console.debug").info("Debug mode %s", state_text)

    _update_debug_state(_load_settings().debug_enabled)

    async def _close_session(session_id: str) -> None:
        session = sessions.pop(session_id, None)
        last_seen.pop(session_id, None)
        if session is None:
            return
        try:
            await session.close()
        except AcademyError as error:
            LOGGER.warning("Could not flush player session %s: %s", session_id, error)

    async def _evict_idle_sessions() -> None:
        cutoff = clock() - config.player_idle_timeout
        for session_id in [key for key, seen in last_seen.items() if seen < cutoff]:
            LOGGER.info("Closing idle player session %s", session_id)
            await _close_session(session_id)

    async def _require_session(session_id: str) -> PlaybackSession:
        await _evict_idle_sessions()
        session = sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Player session not found")
        last_seen[session_id] = clock()
        _SESSION_ID_VAR.set(session_id)
        return session

    async def _close_sessions() -> None:
        for session_id in list(sessions):
            await _close_session(session_id)
        await client.close()

    app.add_event_handler("shutdown", _close_sessions)

    # ------------------------------------------------------------------
    # Catalog and certificates
    # ------------------------------------------------------------------
    @app.get("/api/catalog")
    async def browse_catalog(
        search: str = "",
        category: str = "",
        level: str = "",
        tag: str = "",
        price_range: str = "",
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        try:
            criteria = CourseFilter(
                search=search.strip(),
                category=category,
                level=level,
                tag=tag,
                price_range=price_range,
            )
        except ValueError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        page_size = limit or _load_settings().page_size
        result = await _call(catalog.browse(criteria, page=page, limit=page_size))
        _log_event(
            "Browsed catalog",
            filtered=result.pagination.total_items,
            total=result.total_courses,
            page=result.pagination.current_page,
        )
        return result.to_dict()

    @app.get("/api/certificates")
    async def list_certificates() -> Dict[str, Any]:
        records = await _call(certificates.list_mine())
        return {"certificates": [record.raw for record in records]}

    @app.get("/api/certificates/verify/{certificate_id}")
    async def verify_certificate(certificate_id: str) -> Dict[str, Any]:
        result = await _call(certificates.verify(certificate_id))
        if not result.found:
            raise HTTPException(status_code=404, detail="Certificate not found")
        return result.to_dict()

    @app.get("/api/certificates/course/{course_id}")
    async def course_certificate(course_id: str) -> Dict[str, Any]:
        record = await _call(certificates.for_course(course_id))
        return {"certificate": record.raw if record else None}

    @app.post("/api/certificates/generate")
    async def generate_certificate(payload: GenerateCertificatePayload) -> Dict[str, Any]:
        record = await _call(certificates.generate(payload.course_id))
        _log_event(
            "Generated certificate",
            certificate_id=record.certificate_id,
            course_id=payload.course_id,
        )
        return {"certificate": record.raw}

    @app.get("/api/certificates/download/{certificate_id}")
    async def download_certificate(certificate_id: str) -> Response:
        pdf = await _call(certificates.download(certificate_id))
        return Response(
            content=pdf.content,
            media_type=pdf.content_type,
            headers={"Content-Disposition": f'attachment; filename="{pdf.filename}"'},
        )

    @app.get("/api/account/status")
    async def account_status() -> Dict[str, Any]:
        result = await _call(accounts.check())
        return result.to_dict()

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------
    @app.get("/api/tokens")
    async def token_status() -> Dict[str, bool]:
        return {
            "learner": store.get_token("learner") is not None,
            "admin": store.get_token("admin") is not None,
        }

    @app.post("/api/tokens", status_code=status.HTTP_201_CREATED)
    async def store_token(payload: TokenPayload) -> Dict[str, Any]:
        try:
            store.set_token(payload.role, payload.token)
        except ValueError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        return {"role": payload.role, "stored": True}

    @app.post("/api/login")
    async def login(payload: LoginPayload) -> Dict[str, Any]:
        await _call(client.login(payload.role, payload.email, payload.password))
        _log_event("Signed in", role=payload.role)
        return {"role": payload.role, "stored": True}

    @app.delete("/api/tokens/{role}")
    async def clear_token(role: Literal["learner", "admin"]) -> Dict[str, Any]:
        return {"role": role, "removed": client.logout(role)}

    # ------------------------------------------------------------------
    # Admin: users
    # ------------------------------------------------------------------
    @app.get("/api/admin/users")
    async def list_users(
        page: int = 1,
        search: str = "",
        status_filter: str = "all",
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        directory = UserDirectory(client)
        result = await _call(
            directory.load(
                page=page,
                search=search,
                status=status_filter,
                sort_by=sort_by,
                sort_order=sort_order,
            )
        )
        return {
            "users": [user.raw or asdict(user) for user in result.users],
            "pagination": result.pagination.to_dict(),
        }

    @app.put("/api/admin/users/{user_id}/status")
    async def set_user_status(user_id: str, payload: UserStatusPayload) -> Dict[str, Any]:
        directory = UserDirectory(client)
        user = await _call(directory.set_status(user_id, payload.status))
        _log_event("Changed account status", user_id=user_id, status=payload.status)
        return {"id": user.id, "status": user.status}

    @app.get("/api/admin/stats")
    async def admin_stats() -> Dict[str, Any]:
        return {"stats": await _call(course_admin.stats())}

    # ------------------------------------------------------------------
    # Admin: courses and thumbnails
    # ------------------------------------------------------------------
    @app.get("/api/admin/courses")
    async def list_admin_courses(
        status_filter: str = "all", page: int = 1, limit: int = 10, search: str = ""
    ) -> Dict[str, Any]:
        result = await _call(
            course_admin.list_courses(status=status_filter, page=page, limit=limit, search=search)
        )
        return {
            "courses": [course.raw for course in result.courses],
            "pagination": result.pagination.to_dict() if result.pagination else None,
        }

    @app.post("/api/admin/courses", status_code=status.HTTP_201_CREATED)
    async def create_course(payload: CoursePayload) -> Dict[str, Any]:
        fields = payload.model_dump(exclude_none=True)
        if isinstance(fields.get("tags"), str):
            fields["tags"] = parse_tags_on_blur(fields["tags"])
        try:
            ensure_valid(validate_course_form(fields))
        except FormValidationError as error:
            raise http_error_for(error) from error
        course = await _call(course_admin.create_course(clean_course_fields(fields)))
        return {"course": course.raw}

    @app.get("/api/admin/courses/{course_id}")
    async def get_course(course_id: str) -> Dict[str, Any]:
        course = await _call(course_admin.get_course(course_id))
        return {
            "course": course.raw,
            "thumbnailHistory": course_admin.thumbnail_history(course_id).entries(),
        }

    @app.put("/api/admin/courses/{course_id}")
    async def update_course(course_id: str, payload: CoursePayload) -> Dict[str, Any]:
        fields = payload.model_dump(exclude_none=True)
        if not fields:
            raise HTTPException(status_code=400, detail="No changes supplied")
        if isinstance(fields.get("tags"), str):
            fields["tags"] = parse_tags_on_blur(fields["tags"])
        errors = {
            key: message
            for key, message in validate_course_form(fields).items()
            if key in fields
        }
        try:
            ensure_valid(errors)
        except FormValidationError as error:
            raise http_error_for(error) from error
        course = await _call(course_admin.update_course(course_id, clean_course_fields(fields)))
        return {"course": course.raw}

    @app.delete("/api/admin/courses/{course_id}")
    async def delete_course(course_id: str) -> Dict[str, Any]:
        await _call(course_admin.delete_course(course_id))
        return {"deleted": course_id}

    @app.put("/api/admin/courses/{course_id}/thumbnail")
    async def upload_thumbnail(course_id: str, file: UploadFile = File(...)) -> Dict[str, Any]:
        content = await file.read()
        upload = await _call(
            course_admin.upload_thumbnail(
                course_id,
                file.filename or "thumbnail",
                content,
                content_type=file.content_type,
            )
        )
        return upload.to_dict()

    @app.get("/api/admin/courses/{course_id}/thumbnails")
    async def thumbnail_history(course_id: str) -> Dict[str, Any]:
        return {"history": course_admin.thumbnail_history(course_id).entries()}

    @app.post("/api/admin/courses/{course_id}/thumbnails/restore")
    async def restore_thumbnail(course_id: str, payload: ThumbnailRestorePayload) -> Dict[str, Any]:
        course = await _call(course_admin.restore_thumbnail(course_id, payload.url))
        return {"course": course.raw, "thumbnailURL": payload.url}

    # ------------------------------------------------------------------
    # Admin: videos
    # ------------------------------------------------------------------
    @app.get("/api/admin/courses/{course_id}/videos")
    async def list_course_videos(course_id: str, version: int = 1) -> Dict[str, Any]:
        videos = await _call(course_admin.list_videos(course_id, version))
        return {"videos": [video.raw for video in videos], "version": version}

    @app.post("/api/admin/courses/{course_id}/videos", status_code=status.HTTP_201_CREATED)
    async def upload_video(
        course_id: str,
        title: str = Form(""),
        description: str = Form(""),
        order: int = Form(1),
        is_free_preview: bool = Form(False),
        duration: str = Form(""),
        file: Optional[UploadFile] = File(None),
    ) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "title": title,
            "description": description,
            "order": order,
            "isFreePreview": is_free_preview,
            "duration": duration,
            "file": file.filename if file is not None else None,
        }
        try:
            ensure_valid(validate_video_form(fields))
        except FormValidationError as error:
            raise http_error_for(error) from error
        if file is None:
            raise HTTPException(status_code=400, detail="Video file is required")
        content = await file.read()
        video = await _call(
            course_admin.upload_video(
                course_id,
                fields,
                file.filename or "video",
                content,
                content_type=file.content_type,
            )
        )
        return {"video": video.raw}

    @app.put("/api/admin/videos/{video_id}")
    async def update_video(video_id: str, payload: VideoUpdatePayload) -> Dict[str, Any]:
        fields = payload.model_dump(exclude_none=True)
        if "title" in fields:
            try:
                ensure_valid(validate_video_form(fields, require_file=False))
            except FormValidationError as error:
                raise http_error_for(error) from error
        video = await _call(course_admin.update_video(video_id, fields))
        return {"video": video.raw}

    @app.delete("/api/admin/videos/{video_id}")
    async def delete_video(video_id: str) -> Dict[str, Any]:
        await _call(course_admin.delete_video(video_id))
        return {"deleted": video_id}

    @app.put("/api/admin/videos/{video_id}/free-preview")
    async def toggle_free_preview(video_id: str, payload: FreePreviewPayload) -> Dict[str, Any]:
        enabled = await _call(course_admin.set_free_preview(video_id, payload.enabled))
        return {"id": video_id, "isFreePreview": enabled}

    # ------------------------------------------------------------------
    # Learner progress
    # ------------------------------------------------------------------
    @app.get("/api/progress/dashboard")
    async def progress_dashboard() -> Dict[str, Any]:
        tracker = ProgressTracker(client, interval=config.progress_interval)
        return {"dashboard": await _call(tracker.dashboard())}

    @app.get("/api/progress/courses/{course_id}")
    async def course_progress(course_id: str) -> Dict[str, Any]:
        tracker = ProgressTracker(client, interval=config.progress_interval)
        progress = await _call(tracker.course_progress(course_id))
        return {
            "course_id": progress.course_id,
            "title": progress.title,
            "videos": [
                {
                    "id": video.id,
                    "title": video.title,
                    "duration": video.display_duration,
                    "progress": asdict(progress.progress[video.id]),
                }
                for video in progress.videos
            ],
            "overall": progress.overall,
        }

    # ------------------------------------------------------------------
    # Player sessions
    # ------------------------------------------------------------------
    @app.post("/api/player/sessions", status_code=status.HTTP_201_CREATED)
    async def open_player(payload: PlayerSessionPayload) -> Dict[str, Any]:
        await _evict_idle_sessions()
        source = video_source_for(payload.role, client)
        tracker = None
        if source.tracks_progress:
            tracker = ProgressTracker(
                client,
                interval=config.progress_interval,
                event_emitter=_emit_player_state,
            )
        session = PlaybackSession(
            source,
            payload.course_id,
            cache=url_cache,
            tracker=tracker,
            expiry_buffer=config.url_expiry_buffer,
            event_emitter=_emit_player_state,
        )
        session_id = _new_correlation_id()
        _SESSION_ID_VAR.set(session_id)
        playlist = await _call(session.open())
        sessions[session_id] = session
        last_seen[session_id] = clock()
        settings = _load_settings()
        return {
            "session_id": session_id,
            "role": payload.role,
            "course_id": payload.course_id,
            "playlist": [
                {
                    "id": video.id,
                    "title": video.title,
                    "duration": video.display_duration,
                    "order": video.order,
                    "isFreePreview": video.is_free_preview,
                }
                for video in playlist
            ],
            "player": {
                "playback_rate": settings.playback_rate,
                "autoplay_next": settings.autoplay_next,
            },
        }

    @app.post("/api/player/sessions/{session_id}/select")
    async def select_video(session_id: str, payload: SelectVideoPayload) -> Dict[str, Any]:
        session = await _require_session(session_id)
        state = await _call(session.select(payload.video_id))
        return state.to_dict()

    @app.post("/api/player/sessions/{session_id}/progress")
    async def report_progress(session_id: str, payload: ProgressPayload) -> Dict[str, Any]:
        session = await _require_session(session_id)
        sent = session.report_progress(payload.position, payload.duration)
        return {"sent": sent}

    @app.post("/api/player/sessions/{session_id}/events")
    async def player_event(session_id: str, payload: PlayerEventPayload) -> Dict[str, Any]:
        session = await _require_session(session_id)
        event = payload.event
        if event == "pause":
            flushed = await _call(session.on_pause(payload.position, payload.duration))
            return {"event": event, "flushed": flushed}
        if event == "hidden":
            flushed = await _call(session.on_hidden(payload.position, payload.duration))
            return {"event": event, "flushed": flushed}
        if event == "unload":
            return {"event": event, "saved": session.on_unload(payload.position, payload.duration)}
        if event == "ended":
            next_video = await _call(session.on_ended())
            autoplay = _load_settings().autoplay_next
            return {
                "event": event,
                "next_video_id": next_video.id if next_video else None,
                "autoplay": autoplay and next_video is not None,
            }
        if event == "play":
            refreshed = await _call(session.on_play())
        else:
            refreshed = await _call(session.on_visible())
        return {"event": event, "state": refreshed.to_dict() if refreshed else None}

    @app.post("/api/player/sessions/{session_id}/errors")
    async def player_error(session_id: str, payload: PlayerErrorPayload) -> Dict[str, Any]:
        session = await _require_session(session_id)
        outcome = await _call(session.handle_error(payload.code))
        return outcome.to_dict()

    @app.get("/api/player/sessions/{session_id}/source")
    async def check_source(session_id: str) -> Dict[str, Any]:
        session = await _require_session(session_id)
        refreshed = await _call(session.check_source())
        current = session.current
        return {
            "refreshed": refreshed is not None,
            "state": current.to_dict() if current else None,
        }

    @app.delete("/api/player/sessions/{session_id}")
    async def close_player(session_id: str) -> Dict[str, Any]:
        session = await _require_session(session_id)
        sessions.pop(session_id, None)
        last_seen.pop(session_id, None)
        await _call(session.close())
        tracker = session.tracker
        return {"closed": True, "updates_sent": tracker.sent_count if tracker else 0}

    # ------------------------------------------------------------------
    # Settings and diagnostics
    # ------------------------------------------------------------------
    @app.get("/api/settings")
    async def get_settings() -> Dict[str, Any]:
        settings = _load_settings()
        return {"settings": asdict(settings), "playback_rates": list(PLAYBACK_RATES)}

    @app.put("/api/settings")
    async def update_settings(payload: SettingsPayload) -> Dict[str, Any]:
        settings = SettingsStore.merge(_load_settings(), payload.model_dump())
        try:
            settings_store.save(settings)
        except ValueError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        _update_debug_state(settings.debug_enabled)
        _log_event(
            "Persisted settings",
            playback_rate=settings.playback_rate,
            page_size=settings.page_size,
            language=settings.language,
            debug_enabled=settings.debug_enabled,
        )
        return {"settings": asdict(settings)}

    @app.get("/api/debug/logs")
    async def get_debug_logs(after: Optional[int] = None) -> Dict[str, Any]:
        handler: DebugLogHandler = app.state.debug_log_handler
        enabled = bool(getattr(app.state, "debug_enabled", False))
        entries = handler.collect(after)
        next_marker = handler.last_id if entries else (after or handler.last_id)
        return {"logs": entries, "next": next_marker, "enabled": enabled}

    @app.get("/api/debug/logs/download")
    async def download_debug_logs() -> Response:
        handler: DebugLogHandler = app.state.debug_log_handler
        now = datetime.now(timezone.utc)
        start_label = handler.started_at.astimezone(timezone.utc).strftime("%Y%m%d-%H%M%S")
        filename = f"{start_label}_to_{now.strftime('%Y%m%d-%H%M%S')}.log"
        return Response(
            content=handler.export_text(),
            media_type="text/plain; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    return app


__all__ = ["DebugLogHandler", "create_app", "get_max_upload_bytes", "http_error_for"]
