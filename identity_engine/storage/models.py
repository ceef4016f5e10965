from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthProvider(str, Enum):
    EMAIL = "email"
    GOOGLE = "google"


class TokenPurpose(str, Enum):
    """Purpose tag for single-use secrets held by the token vault."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class SecurityEventType(str, Enum):
    REGISTER = "register"
    REGISTER_FAILED = "register_failed"
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    PASSWORD_SET = "password_set"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_CHANGE_FAILED = "password_change_failed"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET = "password_reset"
    PASSWORD_RESET_FAILED = "password_reset_failed"
    EMAIL_VERIFICATION_SENT = "email_verification_sent"
    EMAIL_VERIFIED = "email_verified"
    EMAIL_VERIFICATION_FAILED = "email_verification_failed"
    OAUTH_VALIDATION_FAILED = "oauth_validation_failed"
    OAUTH_CONFLICT = "oauth_conflict"
    GOOGLE_LOGIN = "google_login"
    GOOGLE_LOGIN_NO_ACCOUNT = "google_login_no_account"
    GOOGLE_REGISTER = "google_register"
    GOOGLE_REGISTER_PENDING = "google_register_pending"
    GOOGLE_VERIFICATION_RESENT = "google_verification_resent"
    GOOGLE_EMAIL_VERIFIED = "google_email_verified"
    SESSIONS_REVOKED = "sessions_revoked"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    auth_provider: AuthProvider = AuthProvider.EMAIL
    provider_subject: Optional[str] = None
    email_verified: bool = False
    last_password_change: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "email_verified": self.email_verified,
            "auth_provider": self.auth_provider.value,
        }


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class FederatedLink:
    id: str
    user_id: str
    provider: AuthProvider
    provider_uid: str
    email: Optional[str] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class PendingRegistration:
    """A federated signup held until the address is confirmed."""

    id: str
    email: str
    provider: AuthProvider
    provider_uid: str
    token_hash: str
    token_expires_at: datetime
    expires_at: datetime
    name: Optional[str] = None
    picture: Optional[str] = None
    attempts: int = 1
    last_attempt_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class VerificationToken:
    id: str
    purpose: TokenPurpose
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    revoked: bool = False

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str = "",
        ttl_hours: int = 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            created_at=now,
            expires_at=now + timedelta(hours=ttl_hours),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )


@dataclass
class RateLimitRecord:
    identifier: str
    endpoint: str
    attempts: int
    window_start: datetime
    last_attempt: datetime
    locked_until: Optional[datetime] = None


@dataclass
class SecurityEvent:
    id: str
    event_type: SecurityEventType
    success: bool
    created_at: datetime
    user_id: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type.value,
            "success": self.success,
            "created_at": self.created_at.isoformat(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "metadata": self.metadata,
        }
