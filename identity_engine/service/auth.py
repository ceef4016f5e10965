from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from identity_engine.config import Settings
from identity_engine.logging import get_logger, redact_email
from identity_engine.service.credentials import CredentialService
from identity_engine.service.email import EmailKind, EmailSender, deliver
from identity_engine.service.email_verification import EmailVerification
from identity_engine.service.errors import EmailDeliveryError
from identity_engine.service.oauth import (
    FederatedIdentity,
    FederatedIntent,
    FederatedOutcome,
    FederatedStatus,
)
from identity_engine.service.rate_limit import RateLimitEndpoint, RateLimiter
from identity_engine.service.results import ActionHint, Result
from identity_engine.service.security_log import SecurityLog
from identity_engine.service.sessions import SessionRegistry
from identity_engine.storage.errors import ConstraintViolation
from identity_engine.storage.models import (
    AuthProvider,
    SecurityEvent,
    SecurityEventType,
    Session,
    User,
)

logger = get_logger(__name__)

REGISTER_SUCCESS_MESSAGE = "Registration successful. Please verify your email."
PASSWORD_SET_MESSAGE = "Password set successfully. You can now login with email and password."
PASSWORD_CHANGED_MESSAGE = (
    "Password changed successfully. All sessions, including this one, have been "
    "logged out; please sign in again with your new password."
)


@dataclass
class AuthGrant:
    user: User
    session: Session
    access_token: str
    token_type: str = "bearer"
    message: Optional[str] = None
    already_verified: Optional[bool] = None

    @property
    def expires_at(self) -> datetime:
        return self.session.expires_at

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
            "user": self.user.public_view(),
        }
        if self.message:
            payload["message"] = self.message
        if self.already_verified is not None:
            payload["already_verified"] = self.already_verified
        return payload


@dataclass
class FederatedGrant:
    outcome: FederatedOutcome
    grant: Optional[AuthGrant] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": self.outcome.status.value,
            "message": self.outcome.message,
            "action": self.outcome.action.value if self.outcome.action else None,
        }
        if self.grant is not None:
            payload.update(self.grant.to_dict())
        elif self.outcome.email:
            payload["email"] = self.outcome.email
        return payload


@dataclass
class Profile:
    user: User
    has_password: bool

    def to_dict(self) -> Dict[str, Any]:
        return {**self.user.public_view(), "has_password": self.has_password}


class IdentityEngine:
    """Account lifecycle orchestration.

    Owns registration, password login, password set/change and ties the
    verification and federated flows to session issuance. Expected refusals
    come back as ``Result`` values carrying an ``ActionHint`` the client can
    act on.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        credentials: CredentialService,
        sessions: SessionRegistry,
        rate_limiter: RateLimiter,
        security_log: SecurityLog,
        verification: EmailVerification,
        federated: FederatedIdentity,
        sender: EmailSender,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.security_log = security_log
        self.verification = verification
        self.federated = federated
        self.sender = sender
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _grant(
        self,
        user: User,
        *,
        ip: Optional[str],
        user_agent: Optional[str],
        message: Optional[str] = None,
    ) -> AuthGrant:
        session, token = await self.sessions.issue(user, ip=ip, user_agent=user_agent)
        return AuthGrant(user=user, session=session, access_token=token, message=message)

    async def _password_record(self, user_id: str):
        return await asyncio.to_thread(self.store.get_password_record, user_id)

    async def _notify(self, kind: EmailKind, user: User) -> None:
        if not await deliver(self.sender, kind, user.email, name=user.name):
            self.logger.warning("notification_email_failed", kind=kind.value, user_id=user.id)

    async def register(
        self,
        email: str,
        password: str,
        name: Optional[str] = None,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[AuthGrant]:
        """Create a password account, mail a verification link and open a session.

        The account starts unverified. Refusals: ``forbidden`` when signups are
        off, ``rate_limited`` per client address, ``invalid`` for a weak
        password and ``conflict`` with ``redirect_to_login`` when the address
        is taken.
        """
        if not self.settings.allow_signup:
            return Result.forbidden("Signups are disabled")
        identifier = ip or "unknown"
        limited = await self.rate_limiter.check(identifier, RateLimitEndpoint.REGISTER)
        if not limited.is_ok:
            return limited

        existing = await asyncio.to_thread(self.store.get_user_by_email, email)
        if existing is not None:
            await self.security_log.record_async(
                SecurityEventType.REGISTER_FAILED,
                False,
                email=existing.email,
                ip=ip,
                user_agent=user_agent,
                metadata={"reason": "Email already registered"},
            )
            return Result.conflict("Email already registered", ActionHint.REDIRECT_TO_LOGIN)

        strength = self.credentials.validate_strength(password)
        if not strength.is_ok:
            return strength

        password_hash, algo = await self.credentials.hash_async(password)
        try:
            user = await asyncio.to_thread(
                self.store.create_user,
                email,
                name,
                auth_provider=AuthProvider.EMAIL,
                email_verified=False,
                now=self._now(),
            )
        except ConstraintViolation:
            self.logger.info("register_race_lost", email=redact_email(email))
            return Result.conflict("Email already registered", ActionHint.REDIRECT_TO_LOGIN)
        await asyncio.to_thread(
            self.store.save_password, user.id, password_hash, algo, now=self._now()
        )

        verification_sent = True
        try:
            await self.verification.send_verification(user)
        except EmailDeliveryError:
            verification_sent = False
            self.logger.warning("register_verification_email_failed", user_id=user.id)

        await self.security_log.record_async(
            SecurityEventType.REGISTER,
            True,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=user_agent,
            metadata={
                "auth_provider": AuthProvider.EMAIL.value,
                "email_verification_sent": verification_sent,
            },
        )
        await self.rate_limiter.reset(identifier, RateLimitEndpoint.REGISTER)
        grant = await self._grant(
            user, ip=ip, user_agent=user_agent, message=REGISTER_SUCCESS_MESSAGE
        )
        return Result.ok(grant)

    async def _login_failed(
        self,
        reason: str,
        *,
        email: str,
        user_id: Optional[str],
        ip: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        await self.security_log.record_async(
            SecurityEventType.LOGIN_FAILED,
            False,
            user_id=user_id,
            email=email,
            ip=ip,
            user_agent=user_agent,
            metadata={"reason": reason},
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[AuthGrant]:
        """Check an email and password and open a session.

        Each refusal names the next step in its action hint: an unknown address
        is ``not_found``, a passwordless account is ``conflict`` and a wrong
        password is ``unauthorized``. Success clears the address's login
        counter.
        """
        identifier = ip or "unknown"
        limited = await self.rate_limiter.check(identifier, RateLimitEndpoint.LOGIN)
        if not limited.is_ok:
            return limited

        user = await asyncio.to_thread(self.store.get_user_by_email, email)
        if user is None:
            await self._login_failed("User not found", email=email, user_id=None, ip=ip, user_agent=user_agent)
            return Result.not_found("User not found", ActionHint.REDIRECT_TO_REGISTER)

        record = await self._password_record(user.id)
        if record is None:
            await self._login_failed("No password set", email=user.email, user_id=user.id, ip=ip, user_agent=user_agent)
            return Result.conflict(
                "No password set. Please set a password first or use Google Sign-In.",
                ActionHint.USE_GOOGLE_SIGNIN,
            )

        stored_hash, algo = record
        if not await self.credentials.verify_async(password, stored_hash, algo):
            await self._login_failed("Invalid password", email=user.email, user_id=user.id, ip=ip, user_agent=user_agent)
            return Result.unauthorized("Invalid credentials", ActionHint.RETRY_PASSWORD)

        await self.security_log.record_async(
            SecurityEventType.LOGIN,
            True,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=user_agent,
            metadata={"auth_provider": AuthProvider.EMAIL.value},
        )
        await self.rate_limiter.reset(identifier, RateLimitEndpoint.LOGIN)
        return Result.ok(await self._grant(user, ip=ip, user_agent=user_agent, message="Login successful"))

    async def logout(
        self,
        user_id: str,
        session_id: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Revoke one session and audit it; revoking an unknown session is not an error."""
        revoked = await self.sessions.revoke(session_id)
        await self.security_log.record_async(
            SecurityEventType.LOGOUT,
            True,
            user_id=user_id,
            ip=ip,
            user_agent=user_agent,
            metadata={"session_revoked": revoked},
        )

    async def set_password(
        self,
        user_id: str,
        password: str,
        password_confirm: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[None]:
        """Give a passwordless (federated) account a password."""
        user = await asyncio.to_thread(self.store.get_user, user_id)
        if user is None:
            return Result.not_found("User not found")
        if await self._password_record(user_id) is not None:
            return Result.invalid("Password already set. Use change password instead.")
        if password != password_confirm:
            return Result.invalid("Passwords do not match")
        strength = self.credentials.validate_strength(password)
        if not strength.is_ok:
            return strength

        password_hash, algo = await self.credentials.hash_async(password)
        await asyncio.to_thread(
            self.store.save_password, user_id, password_hash, algo, now=self._now()
        )
        await self.security_log.record_async(
            SecurityEventType.PASSWORD_SET,
            True,
            user_id=user_id,
            email=user.email,
            ip=ip,
            user_agent=user_agent,
        )
        await self._notify(EmailKind.PASSWORD_SET, user)
        return Result.ok(message=PASSWORD_SET_MESSAGE)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        new_password_confirm: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[None]:
        """Replace an existing password after checking the current one.

        Every session of the account is revoked on success, the caller's own
        included, and a notice is mailed.
        """
        identifier = f"user_{user_id}"
        limited = await self.rate_limiter.check(identifier, RateLimitEndpoint.PASSWORD_CHANGE)
        if not limited.is_ok:
            return limited

        user = await asyncio.to_thread(self.store.get_user, user_id)
        if user is None:
            return Result.not_found("User not found")
        record = await self._password_record(user_id)
        if record is None:
            return Result.invalid("No password set. Use set password instead.")
        stored_hash, algo = record

        async def failed(reason: str) -> None:
            await self.security_log.record_async(
                SecurityEventType.PASSWORD_CHANGE_FAILED,
                False,
                user_id=user_id,
                email=user.email,
                ip=ip,
                user_agent=user_agent,
                metadata={"reason": reason},
            )

        if not await self.credentials.verify_async(current_password, stored_hash, algo):
            await failed("Invalid current password")
            return Result.unauthorized("Current password is incorrect")
        if new_password != new_password_confirm:
            return Result.invalid("New passwords do not match")
        strength = self.credentials.validate_strength(new_password)
        if not strength.is_ok:
            return strength
        if await self.credentials.verify_async(new_password, stored_hash, algo):
            await failed("Same as current password")
            return Result.invalid("New password must be different from current password")

        password_hash, new_algo = await self.credentials.hash_async(new_password)
        await asyncio.to_thread(
            self.store.save_password, user_id, password_hash, new_algo, now=self._now()
        )
        revoked = await self.sessions.revoke_all(user_id)
        await self.security_log.record_async(
            SecurityEventType.PASSWORD_CHANGE,
            True,
            user_id=user_id,
            email=user.email,
            ip=ip,
            user_agent=user_agent,
            metadata={"sessions_revoked": revoked},
        )
        await self.rate_limiter.reset(identifier, RateLimitEndpoint.PASSWORD_CHANGE)
        await self._notify(EmailKind.PASSWORD_CHANGED, user)
        return Result.ok(message=PASSWORD_CHANGED_MESSAGE)

    async def has_password(self, user_id: str) -> bool:
        return await self._password_record(user_id) is not None

    async def profile(self, user_id: str) -> Result[Profile]:
        user = await asyncio.to_thread(self.store.get_user, user_id)
        if user is None:
            return Result.not_found("User not found")
        return Result.ok(Profile(user=user, has_password=await self.has_password(user_id)))

    async def security_history(
        self, user_id: str, *, limit: int = 50, cursor: Optional[str] = None
    ) -> List[SecurityEvent]:
        """Newest-first audit entries for ``user_id``; ``cursor`` continues a previous page."""
        return await asyncio.to_thread(self.security_log.for_user, user_id, limit, cursor)

    async def verify_email(
        self,
        token: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[AuthGrant]:
        """Consume an email verification link and sign the account in."""
        confirmed = await self.verification.confirm(token)
        if not confirmed.is_ok:
            return Result(confirmed.outcome, message=confirmed.message)
        verified = confirmed.value
        message = (
            "Email already verified" if verified.already_verified else "Email verified successfully"
        )
        grant = await self._grant(verified.user, ip=ip, user_agent=user_agent, message=message)
        grant.already_verified = verified.already_verified
        return Result.ok(grant)

    async def verify_federated_email(
        self,
        token: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[AuthGrant]:
        """Complete a held Google signup from its emailed link and sign the account in."""
        confirmed = await self.federated.confirm_pending_registration(
            token, ip=ip, user_agent=user_agent
        )
        if not confirmed.is_ok:
            return Result(confirmed.outcome, message=confirmed.message)
        grant = await self._grant(
            confirmed.value, ip=ip, user_agent=user_agent, message="Email verified successfully"
        )
        grant.already_verified = False
        return Result.ok(grant)

    async def federated_sign_in(
        self,
        id_token: str,
        *,
        intent: FederatedIntent = FederatedIntent.REGISTER,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[FederatedGrant]:
        """Resolve a Google ID token to an account.

        A session is issued only for ``created`` and ``existing`` outcomes; a
        held signup returns ``pending_verification`` with no token.
        """
        handled = await self.federated.handle_assertion(
            id_token, ip=ip, user_agent=user_agent, intent=intent
        )
        outcome = handled.value
        if outcome is None:
            return Result(handled.outcome, message=handled.message, action=handled.action)
        if not handled.is_ok:
            return Result(
                handled.outcome,
                value=FederatedGrant(outcome=outcome),
                message=handled.message,
                action=handled.action,
                detail={"status": outcome.status.value},
            )
        grant = None
        if outcome.status in (FederatedStatus.CREATED, FederatedStatus.EXISTING):
            grant = await self._grant(outcome.user, ip=ip, user_agent=user_agent)
        return Result.ok(FederatedGrant(outcome=outcome, grant=grant))
