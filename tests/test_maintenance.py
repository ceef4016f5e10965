from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from identity_engine.service.maintenance import Maintenance
from identity_engine.storage.models import Session, TokenPurpose


def test_run_once_reports_every_sweep(runtime):
    now = datetime.now(timezone.utc)
    user = runtime.store.create_user("sweep@example.com", now=now)
    past = now - timedelta(days=2)
    runtime.store.create_session(Session.new(user.id, "stale", ttl_hours=1, now=past))
    runtime.store.create_token(
        TokenPurpose.PASSWORD_RESET, user.id, "stale-hash", expires_at=past, now=past
    )

    removed = runtime.maintenance.run_once()

    assert set(removed) == {
        "tokens",
        "pending_registrations",
        "rate_limits",
        "security_log",
        "sessions",
    }
    assert removed["sessions"] == 1
    assert removed["tokens"] == 1
    assert removed["security_log"] == 0


def test_failed_sweep_does_not_stop_the_others():
    vault = MagicMock()
    vault.cleanup.side_effect = RuntimeError("database is down")
    healthy = MagicMock()
    healthy.cleanup.return_value = 2
    healthy.cleanup_expired.return_value = 3

    maintenance = Maintenance(
        vault=vault,
        federated=healthy,
        rate_limiter=healthy,
        security_log=healthy,
        sessions=healthy,
    )

    removed = maintenance.run_once()

    assert removed["tokens"] == -1
    assert removed["pending_registrations"] == 3
    assert removed["sessions"] == 2
