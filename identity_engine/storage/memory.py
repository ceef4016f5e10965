from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from identity_engine.logging import get_logger
from identity_engine.storage.common import generate_uuid, normalize_email
from identity_engine.storage.errors import ConstraintViolation
from identity_engine.storage.models import (
    AuthProvider,
    FederatedLink,
    PendingRegistration,
    RateLimitRecord,
    SecurityEvent,
    Session,
    TokenPurpose,
    User,
    VerificationToken,
)


class MemoryStore:
    """In-process backing store used for tests and single-node development.

    Every public method takes ``_data_lock`` so compound operations such as
    ``claim_token`` behave like their single-statement Postgres counterparts.
    Returned records are copies; mutating them does not affect stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.links: Dict[Tuple[str, str], FederatedLink] = {}
        self.pending: Dict[str, PendingRegistration] = {}
        self.tokens: Dict[str, VerificationToken] = {}
        self.sessions: Dict[str, Session] = {}
        self.rate_limits: Dict[Tuple[str, str], RateLimitRecord] = {}
        self.security_events: List[SecurityEvent] = []
        # RLock so helpers can re-enter from within a locked method
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

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
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                email=normalized,
                name=name,
                auth_provider=auth_provider,
                provider_subject=provider_subject,
                email_verified=email_verified,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def mark_email_verified(self, user_id: str, *, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            user.updated_at = now
            return replace(user)

    def touch_user(self, user_id: str, *, now: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.updated_at = now

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str, *, now: datetime
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            user.last_password_change = now
            user.updated_at = now

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- federated links -------------------------------------------------

    def get_federated_link(
        self, provider: AuthProvider, provider_uid: str
    ) -> Optional[FederatedLink]:
        with self._data_lock:
            link = self.links.get((provider.value, provider_uid))
            return replace(link) if link else None

    def list_federated_links(self, user_id: str) -> List[FederatedLink]:
        with self._data_lock:
            return [replace(link) for link in self.links.values() if link.user_id == user_id]

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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            key = (provider.value, provider_uid)
            link = self.links.get(key)
            if link and link.user_id != user_id:
                raise ConstraintViolation(
                    "identity already linked to another account", {"provider": provider.value}
                )
            if link is None and any(
                other.user_id == user_id and other.provider == provider
                for other in self.links.values()
            ):
                raise ConstraintViolation(
                    "account already linked to this provider", {"provider": provider.value}
                )
            if link:
                link.email = email
                link.email_verified = email_verified
                link.updated_at = now
            else:
                link = FederatedLink(
                    id=generate_uuid(),
                    user_id=user_id,
                    provider=provider,
                    provider_uid=provider_uid,
                    email=email,
                    email_verified=email_verified,
                    created_at=now,
                    updated_at=now,
                )
                self.links[key] = link
            return replace(link)

    # -- pending registrations -------------------------------------------

    def save_pending_registration(self, pending: PendingRegistration) -> PendingRegistration:
        """Insert or replace the held signup for ``(provider, provider_uid)``."""
        with self._data_lock:
            for existing_id, existing in list(self.pending.items()):
                if (
                    existing.provider == pending.provider
                    and existing.provider_uid == pending.provider_uid
                ):
                    del self.pending[existing_id]
            if any(p.token_hash == pending.token_hash for p in self.pending.values()):
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            self.pending[pending.id] = replace(pending)
            return replace(pending)

    def get_pending_registration(
        self, provider: AuthProvider, provider_uid: str, *, now: datetime
    ) -> Optional[PendingRegistration]:
        with self._data_lock:
            for pending in self.pending.values():
                if (
                    pending.provider == provider
                    and pending.provider_uid == provider_uid
                    and pending.expires_at > now
                ):
                    return replace(pending)
            return None

    def rotate_pending_registration(
        self,
        pending_id: str,
        *,
        token_hash: str,
        token_expires_at: datetime,
        now: datetime,
    ) -> Optional[PendingRegistration]:
        with self._data_lock:
            pending = self.pending.get(pending_id)
            if not pending:
                return None
            pending.token_hash = token_hash
            pending.token_expires_at = token_expires_at
            pending.attempts += 1
            pending.last_attempt_at = now
            return replace(pending)

    def claim_pending_registration(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PendingRegistration]:
        """Remove and return the live registration holding ``token_hash``."""
        with self._data_lock:
            for pending_id, pending in self.pending.items():
                if pending.token_hash != token_hash:
                    continue
                if pending.token_expires_at <= now or pending.expires_at <= now:
                    return None
                del self.pending[pending_id]
                return pending
            return None

    def delete_expired_pending_registrations(self, *, now: datetime) -> int:
        with self._data_lock:
            stale = [pid for pid, p in self.pending.items() if p.expires_at <= now]
            for pid in stale:
                del self.pending[pid]
            return len(stale)

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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if any(t.token_hash == token_hash for t in self.tokens.values()):
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            for token in self.tokens.values():
                if token.user_id == user_id and token.purpose == purpose and token.used_at is None:
                    token.used_at = now
            token = VerificationToken(
                id=generate_uuid(),
                purpose=purpose,
                user_id=user_id,
                token_hash=token_hash,
                expires_at=expires_at,
                created_at=now,
            )
            self.tokens[token.id] = token
            return replace(token)

    def _find_token(self, purpose: TokenPurpose, token_hash: str) -> Optional[VerificationToken]:
        return next(
            (
                t
                for t in self.tokens.values()
                if t.purpose == purpose and t.token_hash == token_hash
            ),
            None,
        )

    def find_token(self, purpose: TokenPurpose, token_hash: str) -> Optional[VerificationToken]:
        with self._data_lock:
            token = self._find_token(purpose, token_hash)
            return replace(token) if token else None

    def find_active_token(
        self, purpose: TokenPurpose, token_hash: str, *, now: datetime
    ) -> Optional[VerificationToken]:
        with self._data_lock:
            token = self._find_token(purpose, token_hash)
            if not token or not token.is_active(now) or token.user_id not in self.users:
                return None
            return replace(token)

    def mark_token_used(self, token_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            token = self.tokens.get(token_id)
            if not token or token.used_at is not None:
                return False
            token.used_at = now
            return True

    def claim_token(
        self, purpose: TokenPurpose, token_hash: str, *, now: datetime
    ) -> Optional[VerificationToken]:
        with self._data_lock:
            token = self._find_token(purpose, token_hash)
            if not token or not token.is_active(now) or token.user_id not in self.users:
                return None
            token.used_at = now
            return replace(token)

    def latest_token(self, purpose: TokenPurpose, user_id: str) -> Optional[VerificationToken]:
        with self._data_lock:
            candidates = [
                t for t in self.tokens.values() if t.purpose == purpose and t.user_id == user_id
            ]
            if not candidates:
                return None
            return replace(max(candidates, key=lambda t: t.created_at))

    def delete_expired_tokens(self, *, now: datetime) -> int:
        with self._data_lock:
            stale = [tid for tid, t in self.tokens.items() if t.expires_at <= now]
            for tid in stale:
                del self.tokens[tid]
            return len(stale)

    # -- sessions --------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = replace(session)
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def revoke_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked:
                return False
            sess.revoked = True
            return True

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            count = 0
            for sid, sess in self.sessions.items():
                if sess.user_id != user_id or sess.revoked or sid == except_session_id:
                    continue
                sess.revoked = True
                count += 1
            return count

    def delete_expired_sessions(self, *, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.expires_at <= now]
            for sid in stale:
                del self.sessions[sid]
            return len(stale)

    # -- rate limits -----------------------------------------------------

    def get_rate_limit(self, identifier: str, endpoint: str) -> Optional[RateLimitRecord]:
        with self._data_lock:
            record = self.rate_limits.get((identifier, endpoint))
            return replace(record) if record else None

    def save_rate_limit(self, record: RateLimitRecord) -> None:
        with self._data_lock:
            self.rate_limits[(record.identifier, record.endpoint)] = replace(record)

    def delete_rate_limit(self, identifier: str, endpoint: str) -> None:
        with self._data_lock:
            self.rate_limits.pop((identifier, endpoint), None)

    def delete_stale_rate_limits(self, *, cutoff: datetime, now: datetime) -> int:
        with self._data_lock:
            stale = [
                key
                for key, rec in self.rate_limits.items()
                if rec.window_start < cutoff
                and (rec.locked_until is None or rec.locked_until < now)
            ]
            for key in stale:
                del self.rate_limits[key]
            return len(stale)

    # -- security log ----------------------------------------------------

    def append_security_event(self, event: SecurityEvent) -> None:
        with self._data_lock:
            self.security_events.append(replace(event))

    def list_security_events(
        self,
        user_id: str,
        *,
        limit: int = 50,
        before: Optional[Tuple[datetime, str]] = None,
    ) -> List[SecurityEvent]:
        with self._data_lock:
            events = [e for e in self.security_events if e.user_id == user_id]
            events.sort(key=lambda e: (e.created_at, e.id), reverse=True)
            if before is not None:
                events = [e for e in events if (e.created_at, e.id) < before]
            return [replace(e) for e in events[:limit]]

    def delete_security_events_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            kept = [e for e in self.security_events if e.created_at >= cutoff]
            removed = len(self.security_events) - len(kept)
            self.security_events = kept
            return removed
