from __future__ import annotations

import logging
from collections import UserDict, deque
from types import MappingProxyType

import pytest

from academy.services.events import emit_structured_event
from academy.web.server import DebugLogHandler


@pytest.fixture
def handler() -> DebugLogHandler:
    return DebugLogHandler()


@pytest.fixture
def event_logger(handler: DebugLogHandler):
    logger = logging.getLogger("academy_console.tests.debug")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.addHandler(handler)
    yield logger
    logger.removeHandler(handler)


def test_build_key_handles_nested_unhashable_structures(handler: DebugLogHandler) -> None:
    context = {
        "attrs": MappingProxyType({
            "numbers": [1, 2, 3],
            "details": {"enabled": True, "thresholds": {"low", "high"}},
        }),
        "extra": UserDict({"history": deque(({"event": "start"}, {"event": "stop"}))}),
    }
    payload = {"meta": {"ids": [1, {"sub": ("a", "b")}]}}

    key = handler._build_key("TEST", "message", context, payload)

    try:
        hash(key)
    except TypeError as exc:  # pragma: no cover - the assertion below would fail first
        pytest.fail(f"Key is not hashable: {exc}")


def test_build_key_is_order_insensitive(handler: DebugLogHandler) -> None:
    context_a = {"values": {"b": 2, "a": 1}}
    context_b = {"values": {"a": 1, "b": 2}}

    key_a = handler._build_key("TEST", "message", context_a, {})
    key_b = handler._build_key("TEST", "message", context_b, {})

    assert key_a == key_b


def test_repeated_events_are_collapsed(handler: DebugLogHandler, event_logger) -> None:
    for duration in (10.0, 30.0):
        emit_structured_event(
            "API_CALL",
            "GET /api/courses",
            payload={"status_code": 200},
            duration_ms=duration,
            logger=event_logger,
        )

    entries = handler.collect()

    assert len(entries) == 1
    assert entries[0]["count"] == 2
    assert entries[0]["average_duration_ms"] == pytest.approx(20.0)
    assert entries[0]["max_duration_ms"] == pytest.approx(30.0)
    assert handler.collect(after=entries[0]["id"]) == []


def test_slow_api_calls_are_flagged(handler: DebugLogHandler, event_logger) -> None:
    emit_structured_event(
        "API_CALL",
        "GET /api/progress/dashboard",
        payload={"status_code": 200},
        duration_ms=2500.0,
        logger=event_logger,
    )
    emit_structured_event(
        "STORE_OP",
        "set",
        payload={"status": "error", "error": "disk full"},
        logger=event_logger,
    )

    severities = [entry.get("severity") for entry in handler.collect()]

    assert severities == ["warning", "error"]


def test_export_text_lists_entries(handler: DebugLogHandler, event_logger) -> None:
    assert handler.export_text() == "# Debug log is currently empty.\n"

    emit_structured_event(
        "PLAYER_STATE",
        "Video selected",
        payload={"phase": "select", "video_id": "v1"},
        logger=event_logger,
    )

    exported = handler.export_text()
    assert "PLAYER_STATE: Video selected" in exported
    assert '"video_id": "v1"' in exported
    assert handler.collect()[0]["category"] == "player"


def test_capacity_evicts_oldest_entries(event_logger) -> None:
    small = DebugLogHandler(capacity=2)
    event_logger.addHandler(small)
    try:
        for index in range(3):
            event_logger.info("message %d", index)
    finally:
        event_logger.removeHandler(small)

    assert [entry["message"] for entry in small.collect()] == ["message 1", "message 2"]
