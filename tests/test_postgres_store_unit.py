from datetime import datetime, timezone

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from identity_engine.logging import get_logger
from identity_engine.storage.errors import ConstraintViolation, StoreUnavailable
from identity_engine.storage.models import AuthProvider, SecurityEventType, TokenPurpose
from identity_engine.storage.postgres import REQUIRED_TABLES, PostgresStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class DummyCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self.row = row
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.row

    def fetchall(self):
        return self.rows


class DummyConnection:
    def __init__(self, handler):
        self.handler = handler
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.statements.append((sql, params))
        return self.handler(sql, params)


class DummyPool:
    def __init__(self, handler=None):
        self.conn = DummyConnection(handler or self._unexpected)

    @staticmethod
    def _unexpected(sql, params):
        raise AssertionError("database access should be stubbed in unit tests")

    def connection(self):
        return self.conn


def _store(handler=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.logger = get_logger(__name__)
    store.pool = DummyPool(handler)
    return store


def test_missing_tables_are_reported():
    present = {f"public.{name}" for name in REQUIRED_TABLES if name != "rate_limit"}

    def handler(sql, params):
        return DummyCursor({"oid": "1"} if params[0] in present else {"oid": None})

    with pytest.raises(StoreUnavailable) as excinfo:
        _store(handler)._verify_required_schema()

    assert "rate_limit" in str(excinfo.value)


def test_schema_check_passes_when_tables_exist():
    store = _store(lambda sql, params: DummyCursor({"oid": "1"}))

    store._verify_required_schema()

    assert len(store.pool.conn.statements) == len(REQUIRED_TABLES)


def test_ping_reports_failure():
    def handler(sql, params):
        raise errors.OperationalError("connection refused")

    assert _store(handler).ping() is False
    assert _store(lambda sql, params: DummyCursor((1,))).ping() is True


def test_duplicate_email_maps_to_constraint_violation():
    def handler(sql, params):
        raise errors.UniqueViolation("duplicate key value violates unique constraint")

    with pytest.raises(ConstraintViolation) as excinfo:
        _store(handler).create_user("Dup@Example.com", now=NOW)

    assert excinfo.value.detail == {"field": "email"}


def test_create_user_normalizes_email():
    store = _store(lambda sql, params: DummyCursor())

    user = store.create_user("  Mixed@Example.COM ", "Ada", now=NOW)

    _, params = store.pool.conn.statements[0]
    assert user.email == "mixed@example.com"
    assert params[1] == "mixed@example.com"
    assert params[3] == "email"


def test_claim_token_without_row_returns_none():
    store = _store(lambda sql, params: DummyCursor(None))

    assert store.claim_token(TokenPurpose.PASSWORD_RESET, "hash", now=NOW) is None
    assert store.mark_token_used("token-1", now=NOW) is False


def test_claim_token_maps_returned_row():
    row = {
        "id": "tok-1",
        "purpose": "password_reset",
        "user_id": 7,
        "token_hash": "hash",
        "expires_at": datetime(2024, 5, 1, 13, 0),
        "created_at": datetime(2024, 5, 1, 12, 0),
        "used_at": NOW,
    }
    store = _store(lambda sql, params: DummyCursor(row))

    token = store.claim_token(TokenPurpose.PASSWORD_RESET, "hash", now=NOW)

    assert token.user_id == "7"
    assert token.purpose == TokenPurpose.PASSWORD_RESET
    assert token.expires_at.tzinfo is not None


def test_user_row_defaults():
    user = PostgresStore._user_from_row(
        {
            "id": 3,
            "email": "row@example.com",
            "created_at": NOW,
            "updated_at": NOW,
        }
    )

    assert user.id == "3"
    assert user.auth_provider == AuthProvider.EMAIL
    assert user.email_verified is False
    assert user.last_password_change is None


def test_event_row_parses_json_metadata_and_ip():
    event = PostgresStore._event_from_row(
        {
            "id": "evt-1",
            "event_type": "login_failed",
            "success": False,
            "created_at": NOW,
            "user_id": None,
            "email": "row@example.com",
            "ip_address": "192.0.2.5",
            "user_agent": "pytest",
            "metadata": '{"reason": "Invalid password"}',
        }
    )

    assert event.event_type == SecurityEventType.LOGIN_FAILED
    assert event.user_id is None
    assert event.metadata == {"reason": "Invalid password"}
    assert str(event.ip_address) == "192.0.2.5"


def test_security_events_page_uses_keyset_cursor():
    store = _store(lambda sql, params: DummyCursor(rows=[]))

    store.list_security_events("u1", limit=5, before=(NOW, "evt-9"))

    sql, params = store.pool.conn.statements[0]
    assert "(created_at, id) < (%s, %s)" in sql
    assert params == ("u1", NOW, "evt-9", 5)


class TimedOutPool:
    def connection(self):
        raise PoolTimeout("couldn't get a connection after 30.00 sec")


def test_pool_timeout_surfaces_as_store_unavailable():
    store = _store()
    store.pool = TimedOutPool()

    with pytest.raises(StoreUnavailable):
        store.get_user_by_email("someone@example.com")


def test_lost_connection_mid_query_surfaces_as_store_unavailable():
    def handler(sql, params):
        raise errors.OperationalError("server closed the connection unexpectedly")

    with pytest.raises(StoreUnavailable):
        _store(handler).get_rate_limit("ip_203.0.113.1", "login")


def test_second_link_for_provider_maps_to_constraint_violation():
    def handler(sql, params):
        raise errors.UniqueViolation("duplicate key value violates unique constraint")

    with pytest.raises(ConstraintViolation) as excinfo:
        _store(handler).upsert_federated_link(
            "u1", AuthProvider.GOOGLE, "sub-b", email="a@example.com", email_verified=True, now=NOW
        )

    assert excinfo.value.detail == {"provider": "google"}


def test_subject_owned_by_other_account_is_not_relinked():
    store = _store(lambda sql, params: DummyCursor(row=None))

    with pytest.raises(ConstraintViolation):
        store.upsert_federated_link(
            "u2", AuthProvider.GOOGLE, "sub-a", email="b@example.com", email_verified=True, now=NOW
        )

    sql, _ = store.pool.conn.statements[0]
    assert "WHERE user_auth_provider.user_id = EXCLUDED.user_id" in sql
