from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from identity_engine.logging import get_logger
from identity_engine.storage.common import (
    ensure_utc,
    generate_uuid,
    normalize_email,
    parse_ip_address,
    parse_json_meta,
    safe_row_value,
)
from identity_engine.storage.errors import ConstraintViolation, StoreUnavailable
from identity_engine.storage.models import (
    AuthProvider,
    FederatedLink,
    PendingRegistration,
    RateLimitRecord,
    SecurityEvent,
    SecurityEventType,
    Session,
    TokenPurpose,
    User,
    VerificationToken,
)

REQUIRED_TABLES = [
    "app_user",
    "user_auth_credential",
    "user_auth_provider",
    "pending_registration",
    "verification_token",
    "auth_session",
    "rate_limit",
    "security_log",
]


class PostgresStore:
    """Postgres-backed identity store.

    Atomic operations (token claims, pending-registration promotion, session
    revocation) are expressed as single ``UPDATE ... RETURNING`` or
    ``DELETE ... RETURNING`` statements so concurrent requests serialize on
    the row lock instead of on application code.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        """Borrow a pooled connection; outages surface as ``StoreUnavailable``."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error_type=type(exc).__name__, error=str(exc))
            raise StoreUnavailable("identity store unavailable") from exc

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure identity tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise StoreUnavailable(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except Exception as exc:
            self.logger.warning("postgres_ping_failed", error=str(exc))
            return False
        return True

    # -- row mappers -----------------------------------------------------

    @staticmethod
    def _user_from_row(row: Any) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=safe_row_value(row, "name"),
            auth_provider=AuthProvider(safe_row_value(row, "auth_provider", "email")),
            provider_subject=safe_row_value(row, "provider_subject"),
            email_verified=bool(safe_row_value(row, "email_verified", False)),
            last_password_change=ensure_utc(safe_row_value(row, "last_password_change")),
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row["updated_at"]),
        )

    @staticmethod
    def _link_from_row(row: Any) -> FederatedLink:
        return FederatedLink(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            provider=AuthProvider(row["provider"]),
            provider_uid=row["provider_uid"],
            email=safe_row_value(row, "email"),
            email_verified=bool(safe_row_value(row, "email_verified", False)),
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row["updated_at"]),
        )

    @staticmethod
    def _pending_from_row(row: Any) -> PendingRegistration:
        return PendingRegistration(
            id=str(row["id"]),
            email=row["email"],
            name=safe_row_value(row, "name"),
            provider=AuthProvider(row["provider"]),
            provider_uid=row["provider_uid"],
            picture=safe_row_value(row, "picture"),
            token_hash=row["token_hash"],
            token_expires_at=ensure_utc(row["token_expires_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            attempts=int(safe_row_value(row, "attempts", 1)),
            last_attempt_at=ensure_utc(row["last_attempt_at"]),
            created_at=ensure_utc(row["created_at"]),
        )

    @staticmethod
    def _token_from_row(row: Any) -> VerificationToken:
        return VerificationToken(
            id=str(row["id"]),
            purpose=TokenPurpose(row["purpose"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=ensure_utc(row["expires_at"]),
            created_at=ensure_utc(row["created_at"]),
            used_at=ensure_utc(safe_row_value(row, "used_at")),
        )

    @staticmethod
    def _session_from_row(row: Any) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            user_agent=safe_row_value(row, "user_agent"),
            ip_addr=parse_ip_address(safe_row_value(row, "ip_addr")),
            revoked=bool(safe_row_value(row, "is_revoked", False)),
        )

    @staticmethod
    def _rate_limit_from_row(row: Any) -> RateLimitRecord:
        return RateLimitRecord(
            identifier=row["identifier"],
            endpoint=row["endpoint"],
            attempts=int(row["attempts"]),
            window_start=ensure_utc(row["window_start"]),
            last_attempt=ensure_utc(row["last_attempt"]),
            locked_until=ensure_utc(safe_row_value(row, "locked_until")),
        )

    @staticmethod
    def _event_from_row(row: Any) -> SecurityEvent:
        return SecurityEvent(
            id=str(row["id"]),
            event_type=SecurityEventType(row["event_type"]),
            success=bool(row["success"]),
            created_at=ensure_utc(row["created_at"]),
            user_id=str(row["user_id"]) if safe_row_value(row, "user_id") else None,
            email=safe_row_value(row, "email"),
            ip_address=parse_ip_address(safe_row_value(row, "ip_address")),
            user_agent=safe_row_value(row, "user_agent"),
            metadata=parse_json_meta(safe_row_value(row, "metadata")),
        )

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        auth_provider: AuthProvider = AuthProvider.EMAIL,
        provider_subject: Optional[str] = None,
        email_verified: bool = False,
        now: datetime,
    ) -> User:
        user = User(
            id=generate_uuid(),
            email=normalize_email(email),
            name=name,
            auth_provider=auth_provider,
            provider_subject=provider_subject,
            email_verified=email_verified,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, auth_provider, provider_subject, email_verified, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.auth_provider.value,
                        user.provider_subject,
                        user.email_verified,
                        now,
                        now,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: str, *, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_verified = TRUE, updated_at = %s WHERE id = %s RETURNING *",
                (now, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def touch_user(self, user_id: str, *, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE app_user SET updated_at = %s WHERE id = %s", (now, user_id))

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str, *, now: datetime
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = EXCLUDED.last_updated_at
                    """,
                    (user_id, password_hash, password_algo, now),
                )
                conn.execute(
                    "UPDATE app_user SET last_password_change = %s, updated_at = %s WHERE id = %s",
                    (now, now, user_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row or not row.get("password_hash"):
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- federated links -------------------------------------------------

    def get_federated_link(
        self, provider: AuthProvider, provider_uid: str
    ) -> Optional[FederatedLink]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_auth_provider WHERE provider = %s AND provider_uid = %s",
                (provider.value, provider_uid),
            ).fetchone()
        return self._link_from_row(row) if row else None

    def list_federated_links(self, user_id: str) -> List[FederatedLink]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_auth_provider WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._link_from_row(row) for row in rows]

    def upsert_federated_link(
        self,
        user_id: str,
        provider: AuthProvider,
        provider_uid: str,
        *,
        email: Optional[str],
        email_verified: bool,
        now: datetime,
    ) -> FederatedLink:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_auth_provider (id, user_id, provider, provider_uid, email, email_verified, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (provider, provider_uid) DO UPDATE
                    SET email = EXCLUDED.email,
                        email_verified = EXCLUDED.email_verified,
                        updated_at = EXCLUDED.updated_at
                    WHERE user_auth_provider.user_id = EXCLUDED.user_id
                    RETURNING *
                    """,
                    (
                        generate_uuid(),
                        user_id,
                        provider.value,
                        provider_uid,
                        email,
                        email_verified,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "account already linked to this provider", {"provider": provider.value}
            )
        if row is None:
            raise ConstraintViolation(
                "identity already linked to another account", {"provider": provider.value}
            )
        return self._link_from_row(row)

    # -- pending registrations -------------------------------------------

    def save_pending_registration(self, pending: PendingRegistration) -> PendingRegistration:
        try:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM pending_registration WHERE provider = %s AND provider_uid = %s",
                    (pending.provider.value, pending.provider_uid),
                )
                conn.execute(
                    """
                    INSERT INTO pending_registration (
                        id, email, name, provider, provider_uid, picture, token_hash,
                        token_expires_at, expires_at, attempts, last_attempt_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        pending.id,
                        pending.email,
                        pending.name,
                        pending.provider.value,
                        pending.provider_uid,
                        pending.picture,
                        pending.token_hash,
                        pending.token_expires_at,
                        pending.expires_at,
                        pending.attempts,
                        pending.last_attempt_at,
                        pending.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
        return pending

    def get_pending_registration(
        self, provider: AuthProvider, provider_uid: str, *, now: datetime
    ) -> Optional[PendingRegistration]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM pending_registration
                WHERE provider = %s AND provider_uid = %s AND expires_at > %s
                """,
                (provider.value, provider_uid, now),
            ).fetchone()
        return self._pending_from_row(row) if row else None

    def rotate_pending_registration(
        self,
        pending_id: str,
        *,
        token_hash: str,
        token_expires_at: datetime,
        now: datetime,
    ) -> Optional[PendingRegistration]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE pending_registration
                SET token_hash = %s, token_expires_at = %s,
                    attempts = attempts + 1, last_attempt_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (token_hash, token_expires_at, now, pending_id),
            ).fetchone()
        return self._pending_from_row(row) if row else None

    def claim_pending_registration(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PendingRegistration]:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM pending_registration
                WHERE token_hash = %s AND token_expires_at > %s AND expires_at > %s
                RETURNING *
                """,
                (token_hash, now, now),
            ).fetchone()
        return self._pending_from_row(row) if row else None

    def delete_expired_pending_registrations(self, *, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM pending_registration WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount or 0

    # -- single-use tokens -----------------------------------------------

    def create_token(
        self,
        purpose: TokenPurpose,
        user_id: str,
        token_hash: str,
        *,
        expires_at: datetime,
        now: datetime,
    ) -> VerificationToken:
        token = VerificationToken(
            id=generate_uuid(),
            purpose=purpose,
            user_id=user_id,
            token_hash=token_hash,
            expires_at=expires_at,
            created_at=now,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE verification_token SET used_at = %s
                    WHERE user_id = %s AND purpose = %s AND used_at IS NULL
                    """,
                    (now, user_id, purpose.value),
                )
                conn.execute(
                    """
                    INSERT INTO verification_token (id, purpose, user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (token.id, purpose.value, user_id, token_hash, expires_at, now),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
        return token

    def find_token(self, purpose: TokenPurpose, token_hash: str) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_token WHERE purpose = %s AND token_hash = %s",
                (purpose.value, token_hash),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def find_active_token(
        self, purpose: TokenPurpose, token_hash: str, *, now: datetime
    ) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT t.* FROM verification_token t
                JOIN app_user u ON u.id = t.user_id
                WHERE t.purpose = %s AND t.token_hash = %s
                  AND t.used_at IS NULL AND t.expires_at > %s
                """,
                (purpose.value, token_hash, now),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def mark_token_used(self, token_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE verification_token SET used_at = %s
                WHERE id = %s AND used_at IS NULL
                RETURNING id
                """,
                (now, token_id),
            ).fetchone()
        return row is not None

    def claim_token(
        self, purpose: TokenPurpose, token_hash: str, *, now: datetime
    ) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE verification_token t SET used_at = %s
                FROM app_user u
                WHERE u.id = t.user_id AND t.purpose = %s AND t.token_hash = %s
                  AND t.used_at IS NULL AND t.expires_at > %s
                RETURNING t.*
                """,
                (now, purpose.value, token_hash, now),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def latest_token(self, purpose: TokenPurpose, user_id: str) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM verification_token
                WHERE purpose = %s AND user_id = %s
                ORDER BY created_at DESC LIMIT 1
                """,
                (purpose.value, user_id),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def delete_expired_tokens(self, *, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM verification_token WHERE expires_at <= %s", (now,))
            return cur.rowcount or 0

    # -- sessions --------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, token_hash, created_at, expires_at, user_agent, ip_addr, is_revoked)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, FALSE)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_hash,
                        session.created_at,
                        session.expires_at,
                        session.user_agent,
                        parse_ip_address(session.ip_addr),
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_session SET is_revoked = TRUE WHERE id = %s AND is_revoked = FALSE RETURNING id",
                (session_id,),
            ).fetchone()
        return row is not None

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                cur = conn.execute(
                    "UPDATE auth_session SET is_revoked = TRUE WHERE user_id = %s AND is_revoked = FALSE AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                cur = conn.execute(
                    "UPDATE auth_session SET is_revoked = TRUE WHERE user_id = %s AND is_revoked = FALSE",
                    (user_id,),
                )
            return cur.rowcount or 0

    def delete_expired_sessions(self, *, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
            return cur.rowcount or 0

    # -- rate limits -----------------------------------------------------

    def get_rate_limit(self, identifier: str, endpoint: str) -> Optional[RateLimitRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM rate_limit WHERE identifier = %s AND endpoint = %s",
                (identifier, endpoint),
            ).fetchone()
        return self._rate_limit_from_row(row) if row else None

    def save_rate_limit(self, record: RateLimitRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO rate_limit (identifier, endpoint, attempts, window_start, last_attempt, locked_until)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (identifier, endpoint) DO UPDATE
                SET attempts = EXCLUDED.attempts,
                    window_start = EXCLUDED.window_start,
                    last_attempt = EXCLUDED.last_attempt,
                    locked_until = EXCLUDED.locked_until
                """,
                (
                    record.identifier,
                    record.endpoint,
                    record.attempts,
                    record.window_start,
                    record.last_attempt,
                    record.locked_until,
                ),
            )

    def delete_rate_limit(self, identifier: str, endpoint: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM rate_limit WHERE identifier = %s AND endpoint = %s",
                (identifier, endpoint),
            )

    def delete_stale_rate_limits(self, *, cutoff: datetime, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM rate_limit
                WHERE window_start < %s AND (locked_until IS NULL OR locked_until < %s)
                """,
                (cutoff, now),
            )
            return cur.rowcount or 0

    # -- security log ----------------------------------------------------

    def append_security_event(self, event: SecurityEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_log (id, user_id, email, event_type, success, ip_address, user_agent, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.user_id,
                    event.email,
                    event.event_type.value,
                    event.success,
                    parse_ip_address(event.ip_address),
                    event.user_agent,
                    json.dumps(event.metadata) if event.metadata else None,
                    event.created_at,
                ),
            )

    def list_security_events(
        self,
        user_id: str,
        *,
        limit: int = 50,
        before: Optional[Tuple[datetime, str]] = None,
    ) -> List[SecurityEvent]:
        with self._connect() as conn:
            if before is not None:
                rows = conn.execute(
                    """
                    SELECT * FROM security_log
                    WHERE user_id = %s AND (created_at, id) < (%s, %s)
                    ORDER BY created_at DESC, id DESC LIMIT %s
                    """,
                    (user_id, before[0], before[1], limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM security_log
                    WHERE user_id = %s
                    ORDER BY created_at DESC, id DESC LIMIT %s
                    """,
                    (user_id, limit),
                ).fetchall()
        return [self._event_from_row(row) for row in rows]

    def delete_security_events_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM security_log WHERE created_at < %s", (cutoff,))
            return cur.rowcount or 0
