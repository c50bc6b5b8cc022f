from __future__ import annotations

import sqlite3

import pytest

from academy.config import AppConfig
from academy.services.storage import ADMIN_TOKEN_KEY, TOKEN_KEY, PersistentStore


def test_store_round_trips_json_values(store: PersistentStore) -> None:
    store.set("videoUrlCache", {"v1": {"url": "https://cdn/v1.mp4", "timestamp": 1.0}})

    assert store.get("videoUrlCache") == {"v1": {"url": "https://cdn/v1.mp4", "timestamp": 1.0}}
    assert store.get("missing", "fallback") == "fallback"

    store.set("videoUrlCache", {})
    assert store.get("videoUrlCache") == {}

    assert store.delete("videoUrlCache") is True
    assert store.delete("videoUrlCache") is False
    assert store.get_entry("videoUrlCache") is None


def test_entries_record_update_time(store: PersistentStore, clock) -> None:
    store.set("pendingProgress", {"position": 12})
    clock.advance(30)
    store.set("other", 1)

    entry = store.get_entry("pendingProgress")
    assert entry is not None
    assert entry.updated_at == clock.now - 30


def test_tokens_are_kept_per_role(store: PersistentStore) -> None:
    store.set_token("learner", "  learner-token ")
    store.set_token("admin", "admin-token")

    assert store.get_token("learner") == "learner-token"
    assert store.get_token("admin") == "admin-token"
    assert store.get(TOKEN_KEY) == "learner-token"
    assert store.get(ADMIN_TOKEN_KEY) == "admin-token"

    assert store.clear_token("learner") is True
    assert store.get_token("learner") is None
    assert store.get_token("admin") == "admin-token"


def test_empty_token_is_rejected(store: PersistentStore) -> None:
    with pytest.raises(ValueError):
        store.set_token("admin", "   ")


def test_keys_filter_by_prefix(store: PersistentStore) -> None:
    store.set("thumbnailHistory:c1", ["a"])
    store.set("thumbnailHistory:c2", ["b"])
    store.set("token", "t")

    assert store.keys("thumbnailHistory:") == ["thumbnailHistory:c1", "thumbnailHistory:c2"]


def test_unreadable_value_is_ignored(store: PersistentStore, temp_config: AppConfig) -> None:
    connection = sqlite3.connect(temp_config.state_file)
    with connection:
        connection.execute(
            "INSERT INTO kv_entries(key, value, updated_at) VALUES (?, ?, ?)",
            ("broken", "{not json", 0),
        )
    connection.close()

    assert store.get("broken", "default") == "default"


def test_store_emits_timed_events(temp_config: AppConfig) -> None:
    events = []

    def emitter(event_type, message, *, payload=None, duration_ms=None):
        events.append((event_type, message, payload, duration_ms))

    store = PersistentStore(temp_config, event_emitter=emitter)
    store.set("token", "abc")
    store.get("token")

    assert [event[:2] for event in events] == [("STORE_OP", "set"), ("STORE_OP", "get")]
    assert events[1][2]["found"] is True
    assert events[1][2]["status"] == "ok"
    assert events[0][3] is not None
