"""Tests for the append-only security log."""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from identity_engine.service.security_log import SecurityLog
from identity_engine.storage.cursors import decode_time_id_cursor, encode_time_id_cursor
from identity_engine.storage.memory import MemoryStore
from identity_engine.storage.models import SecurityEventType


def test_record_normalizes_ip_and_copies_metadata():
    store = MemoryStore()
    log = SecurityLog(store)
    meta = {"reason": "Invalid password"}

    event = log.record(
        SecurityEventType.LOGIN_FAILED,
        False,
        user_id="u1",
        email="a@example.com",
        ip="not-an-ip",
        metadata=meta,
    )
    meta["reason"] = "changed"

    assert event.ip_address is None
    assert store.security_events[0].metadata == {"reason": "Invalid password"}


def test_store_failure_never_reaches_caller():
    store = MagicMock()
    store.append_security_event.side_effect = RuntimeError("database is down")
    log = SecurityLog(store)

    assert log.record(SecurityEventType.LOGIN, True, user_id="u1") is None


async def test_record_async_writes_off_the_event_loop_thread():
    store = MemoryStore()
    append = store.append_security_event
    writer_threads = []

    def tracking_append(event):
        writer_threads.append(threading.get_ident())
        return append(event)

    store.append_security_event = tracking_append

    event = await SecurityLog(store).record_async(
        SecurityEventType.LOGIN, True, user_id="u1", ip="192.0.2.1"
    )

    assert event.user_id == "u1"
    assert str(event.ip_address) == "192.0.2.1"
    assert writer_threads and writer_threads[0] != threading.get_ident()


def test_for_user_pages_newest_first():
    store = MemoryStore()
    log = SecurityLog(store)
    for _ in range(5):
        log.record(SecurityEventType.LOGIN, True, user_id="u1")
    log.record(SecurityEventType.LOGIN, True, user_id="someone-else")

    first_page = log.for_user("u1", limit=3)
    last = first_page[-1]
    second_page = log.for_user("u1", limit=3, cursor=encode_time_id_cursor(last.created_at, last.id))

    assert len(first_page) == 3
    assert len(second_page) == 2
    ordered = first_page + second_page
    assert [(e.created_at, e.id) for e in ordered] == sorted(
        [(e.created_at, e.id) for e in ordered], reverse=True
    )
    assert {e.user_id for e in ordered} == {"u1"}


def test_for_user_clamps_limit_and_tolerates_bad_cursor():
    store = MagicMock()
    store.list_security_events.return_value = []
    log = SecurityLog(store)

    log.for_user("u1", limit=10_000)
    assert store.list_security_events.call_args.kwargs["limit"] == 200

    assert log.for_user("u1", cursor="%%%not-a-cursor") == []

    store.list_security_events.side_effect = RuntimeError("boom")
    assert log.for_user("u1") == []


def test_cursor_round_trip():
    created = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

    assert decode_time_id_cursor(encode_time_id_cursor(created, "evt-1")) == (created, "evt-1")


def test_cleanup_applies_retention():
    store = MemoryStore()
    log = SecurityLog(store, retention_days=90)
    old = log.record(SecurityEventType.LOGIN, True, user_id="u1")
    log.record(SecurityEventType.LOGOUT, True, user_id="u1")
    store.security_events[0].created_at = old.created_at - timedelta(days=91)

    assert log.cleanup() == 1
    assert [e.event_type for e in store.security_events] == [SecurityEventType.LOGOUT]
