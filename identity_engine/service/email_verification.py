from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from identity_engine.logging import get_logger
from identity_engine.service.email import EmailKind, EmailSender, deliver
from identity_engine.service.errors import EmailDeliveryError
from identity_engine.service.results import Result
from identity_engine.service.security_log import SecurityLog
from identity_engine.service.tokens import MIN_TOKEN_LENGTH, TokenVault
from identity_engine.storage.models import SecurityEventType, TokenPurpose, User

logger = get_logger(__name__)


@dataclass
class VerifiedAccount:
    user: User
    already_verified: bool = False


@dataclass
class VerificationStatus:
    email_verified: bool
    has_pending_verification: bool


class EmailVerification:
    """Email address verification built on the token vault.

    States per account: unverified, token outstanding, verified. Confirming
    an already-consumed token for an account that is verified succeeds again
    so a double-clicked link does not show an error page.
    """

    def __init__(
        self,
        store,
        vault: TokenVault,
        sender: EmailSender,
        security_log: SecurityLog,
        *,
        ttl_hours: int = 24,
        resend_cooldown_seconds: int = 120,
    ) -> None:
        self.store = store
        self.vault = vault
        self.sender = sender
        self.security_log = security_log
        self.ttl = timedelta(hours=ttl_hours)
        self.resend_cooldown = timedelta(seconds=resend_cooldown_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def send_verification(self, user: User) -> None:
        """Issue a fresh token and mail it; raise if the mail cannot be handed off."""
        token = await self.vault.issue(TokenPurpose.EMAIL_VERIFICATION, user.id, self.ttl)
        sent = await deliver(
            self.sender, EmailKind.EMAIL_VERIFICATION, user.email, token=token, name=user.name
        )
        if not sent:
            logger.error("verification_email_failed", user_id=user.id)
            raise EmailDeliveryError("Failed to send verification email")
        await self.security_log.record_async(
            SecurityEventType.EMAIL_VERIFICATION_SENT, True, user_id=user.id, email=user.email
        )

    async def resend(self, user_id: str) -> Result[None]:
        user = await asyncio.to_thread(self.store.get_user, user_id)
        if user is None:
            return Result.not_found("User not found")
        if user.email_verified:
            return Result.invalid("Email already verified")
        last_issued = await self.vault.latest_issued_at(TokenPurpose.EMAIL_VERIFICATION, user.id)
        if last_issued is not None:
            elapsed = self._now() - last_issued
            if elapsed < self.resend_cooldown:
                retry_after = math.ceil((self.resend_cooldown - elapsed).total_seconds())
                minutes = max(1, math.ceil(self.resend_cooldown.total_seconds() / 60))
                return Result.rate_limited(
                    f"Please wait {minutes} minutes before requesting another verification email",
                    retry_after=retry_after,
                )
        await self.send_verification(user)
        return Result.ok(message="Verification email sent. Please check your inbox.")

    async def confirm(self, token: str) -> Result[VerifiedAccount]:
        if not token or len(token) < MIN_TOKEN_LENGTH:
            return Result.invalid("Invalid verification token format")

        claimed = await self.vault.claim(TokenPurpose.EMAIL_VERIFICATION, token)
        if not claimed.is_ok:
            used = await self.vault.find_used(TokenPurpose.EMAIL_VERIFICATION, token)
            if used is not None:
                user = await asyncio.to_thread(self.store.get_user, used.user_id)
                if user is not None and user.email_verified:
                    logger.info("email_already_verified", user_id=user.id)
                    return Result.ok(VerifiedAccount(user=user, already_verified=True))
            await self.security_log.record_async(
                SecurityEventType.EMAIL_VERIFICATION_FAILED,
                False,
                metadata={"reason": "invalid_or_expired_token"},
            )
            return Result.not_found("Invalid or expired verification token")

        record = claimed.value
        user = await asyncio.to_thread(
            self.store.mark_email_verified, record.user_id, now=self._now()
        )
        if user is None:
            return Result.not_found("Invalid or expired verification token")
        await self.security_log.record_async(
            SecurityEventType.EMAIL_VERIFIED, True, user_id=user.id, email=user.email
        )
        logger.info("email_verified", user_id=user.id)
        return Result.ok(VerifiedAccount(user=user))

    async def status(self, user_id: str) -> Result[VerificationStatus]:
        user = await asyncio.to_thread(self.store.get_user, user_id)
        if user is None:
            return Result.not_found("User not found")
        pending = False
        if not user.email_verified:
            pending = await self.vault.has_active(TokenPurpose.EMAIL_VERIFICATION, user.id)
        return Result.ok(
            VerificationStatus(email_verified=user.email_verified, has_pending_verification=pending)
        )
