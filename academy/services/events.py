"""Structured event helpers shared across the application.

Every event goes through :func:`emit_structured_event`, which flattens the
payload into the log line and attaches the raw pieces as ``debug_*`` record
attributes for the in-memory debug console. Credentials and signed URL
signatures never reach a log record.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlsplit


DEFAULT_EVENT_LOGGER = logging.getLogger("academy_console.events")

REDACTED = "[redacted]"
MAX_VALUE_LENGTH = 200

_SECRET_KEYS = {"authorization", "password", "token", "access_token"}
_SIGNATURE_PARAMS = {"signature", "x-amz-signature", "x-amz-credential", "x-amz-security-token"}


def redact_url(value: str) -> str:
    """Drop the query string of a signed URL, keeping its expiry hint."""

    parts = urlsplit(value)
    if not parts.scheme or not parts.query:
        return value
    params = {key.lower(): item for key, item in parse_qsl(parts.query)}
    if not _SIGNATURE_PARAMS & params.keys():
        return value
    base = f"{parts.scheme}://{parts.netloc}{parts.path}"
    expiry = params.get("expires") or params.get("x-amz-expires")
    return f"{base}?expires={expiry}" if expiry else f"{base}?{REDACTED}"


def sanitize_context_value(value: Any, key: Optional[str] = None) -> Any:
    """Return a JSON-serialisable representation for *value*."""

    if value is None:
        return None
    if key is not None and key.lower() in _SECRET_KEYS:
        return REDACTED
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return normalize_context(value) or None
    if isinstance(value, (list, tuple, set)):
        joined = ", ".join(str(item) for item in value)
    else:
        joined = redact_url(str(value).strip())
    trimmed = joined.strip()
    if not trimmed:
        return None
    if len(trimmed) > MAX_VALUE_LENGTH:
        return trimmed[:MAX_VALUE_LENGTH] + "…"
    return trimmed


def normalize_context(values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop empty entries and sanitise the rest."""

    if not values:
        return {}
    normalised: Dict[str, Any] = {}
    for key, raw_value in values.items():
        if not key:
            continue
        value = sanitize_context_value(raw_value, str(key))
        if value is None or value == "":
            continue
        normalised[str(key)] = value
    return normalised


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    correlation: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> None:
    """Emit a structured event with consistent logging metadata."""

    base_message = str(message).strip()
    sections = {
        "debug_correlation": normalize_context(correlation),
        "debug_context": normalize_context(context),
        "debug_payload": normalize_context(payload),
    }
    details = {key: value for section in sections.values() for key, value in section.items()}
    details_text = ", ".join(f"{key}={value}" for key, value in details.items())
    display_message = f"[{event_type}] {base_message}" if event_type else base_message
    log_message = f"{display_message} ({details_text})" if details_text else display_message

    extra: Dict[str, Any] = {
        "debug_event": base_message,
        "debug_event_type": event_type or "",
    }
    extra.update({name: section for name, section in sections.items() if section})
    if duration_ms is not None:
        extra["debug_duration_ms"] = float(duration_ms)
    logger.log(level, log_message, extra=extra)


def emit_api_event(action: str, **kwargs: Any) -> None:
    """Emit a backend request, e.g. ``GET /api/courses``."""

    emit_structured_event("API_CALL", action, **kwargs)


def emit_store_event(operation: str, **kwargs: Any) -> None:
    """Emit a read or write against the local state store."""

    emit_structured_event("STORE_OP", operation, **kwargs)


def emit_player_event(
    phase: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    **kwargs: Any,
) -> None:
    """Emit a player lifecycle change; *phase* is folded into the payload."""

    emit_structured_event(
        "PLAYER_STATE",
        message or phase,
        payload={"phase": phase, **(payload or {})},
        **kwargs,
    )


__all__ = [
    "DEFAULT_EVENT_LOGGER",
    "REDACTED",
    "emit_api_event",
    "emit_player_event",
    "emit_store_event",
    "emit_structured_event",
    "normalize_context",
    "redact_url",
    "sanitize_context_value",
]
