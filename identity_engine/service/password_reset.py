from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from identity_engine.logging import get_logger, redact_email
from identity_engine.service.credentials import CredentialService
from identity_engine.service.email import EmailKind, EmailSender, deliver
from identity_engine.service.results import Result
from identity_engine.service.security_log import SecurityLog
from identity_engine.service.sessions import SessionRegistry
from identity_engine.service.tokens import TokenVault
from identity_engine.storage.models import SecurityEventType, TokenPurpose

logger = get_logger(__name__)

GENERIC_RESET_MESSAGE = "If an account exists with this email, a reset link has been sent."
RESET_SUCCESS_MESSAGE = "Password has been reset successfully"
INVALID_RESET_TOKEN_MESSAGE = "Invalid or expired reset token"


class PasswordReset:
    """Forgot-password flow.

    ``request_reset`` answers identically whether or not the address belongs
    to an account, and swallows delivery failures for the same reason.
    """

    def __init__(
        self,
        store,
        vault: TokenVault,
        credentials: CredentialService,
        sessions: SessionRegistry,
        sender: EmailSender,
        security_log: SecurityLog,
        *,
        ttl_minutes: int = 60,
    ) -> None:
        self.store = store
        self.vault = vault
        self.credentials = credentials
        self.sessions = sessions
        self.sender = sender
        self.security_log = security_log
        self.ttl = timedelta(minutes=ttl_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def request_reset(
        self, email: str, *, ip: str | None = None, user_agent: str | None = None
    ) -> Result[None]:
        user = await asyncio.to_thread(self.store.get_user_by_email, email)
        has_password = False
        if user is not None:
            has_password = (
                await asyncio.to_thread(self.store.get_password_record, user.id)
            ) is not None
        if user is None or not has_password:
            logger.info("password_reset_no_eligible_account", email=redact_email(email))
            return Result.ok(message=GENERIC_RESET_MESSAGE)

        token = await self.vault.issue(TokenPurpose.PASSWORD_RESET, user.id, self.ttl)
        sent = await deliver(
            self.sender, EmailKind.PASSWORD_RESET, user.email, token=token, name=user.name
        )
        if not sent:
            logger.error("password_reset_email_failed", user_id=user.id)
        await self.security_log.record_async(
            SecurityEventType.PASSWORD_RESET_REQUESTED,
            True,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=user_agent,
            metadata={"email_sent": sent},
        )
        return Result.ok(message=GENERIC_RESET_MESSAGE)

    async def confirm_reset(
        self,
        token: str,
        new_password: str,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> Result[None]:
        # strength first so a weak choice does not burn the link
        strength = self.credentials.validate_strength(new_password)
        if not strength.is_ok:
            return strength

        claimed = await self.vault.claim(TokenPurpose.PASSWORD_RESET, token)
        if not claimed.is_ok:
            await self.security_log.record_async(
                SecurityEventType.PASSWORD_RESET_FAILED,
                False,
                ip=ip,
                user_agent=user_agent,
                metadata={"reason": "invalid_or_expired_token"},
            )
            return Result.unauthorized(INVALID_RESET_TOKEN_MESSAGE)

        user_id = claimed.value.user_id
        password_hash, algo = await self.credentials.hash_async(new_password)
        await asyncio.to_thread(
            self.store.save_password, user_id, password_hash, algo, now=self._now()
        )
        revoked = await self.sessions.revoke_all(user_id)
        user = await asyncio.to_thread(self.store.get_user, user_id)
        await self.security_log.record_async(
            SecurityEventType.PASSWORD_RESET,
            True,
            user_id=user_id,
            email=user.email if user else None,
            ip=ip,
            user_agent=user_agent,
            metadata={"sessions_revoked": revoked},
        )
        if user is not None:
            if not await deliver(
                self.sender, EmailKind.PASSWORD_RESET_SUCCESS, user.email, name=user.name
            ):
                logger.warning("password_reset_notice_failed", user_id=user_id)
        return Result.ok(message=RESET_SUCCESS_MESSAGE)
