from __future__ import annotations

import asyncio
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from identity_engine.logging import get_logger
from identity_engine.service.results import Result
from identity_engine.storage.models import TokenPurpose, VerificationToken

logger = get_logger(__name__)

MIN_TOKEN_LENGTH = 32


def generate_secret() -> str:
    """256 bits of CSPRNG entropy, hex encoded."""
    return secrets.token_hex(32)


def hash_secret(plaintext: str) -> str:
    return hashlib.sha256(plaintext.encode()).hexdigest()


class TokenVault:
    """Single-use secrets tagged by purpose.

    Only the sha256 of a secret is persisted; the plaintext leaves the vault
    exactly once, from ``issue``. Issuing a new secret retires every unused
    secret of the same purpose for that account.
    """

    def __init__(self, store) -> None:
        self.store = store

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def issue(self, purpose: TokenPurpose, user_id: str, ttl: timedelta) -> str:
        plaintext = generate_secret()
        now = self._now()
        await asyncio.to_thread(
            self.store.create_token,
            purpose,
            user_id,
            hash_secret(plaintext),
            expires_at=now + ttl,
            now=now,
        )
        logger.info("token_issued", purpose=purpose.value, user_id=user_id)
        return plaintext

    async def redeem(self, purpose: TokenPurpose, plaintext: str) -> Result[VerificationToken]:
        """Look up a live token without consuming it."""
        if not plaintext:
            return Result.not_found("Invalid or expired token")
        record = await asyncio.to_thread(
            self.store.find_active_token, purpose, hash_secret(plaintext), now=self._now()
        )
        if record is None:
            return Result.not_found("Invalid or expired token")
        return Result.ok(record)

    async def consume(self, record: VerificationToken) -> bool:
        """Mark ``record`` used; True only for the call that flipped it."""
        return await asyncio.to_thread(self.store.mark_token_used, record.id, now=self._now())

    async def claim(self, purpose: TokenPurpose, plaintext: str) -> Result[VerificationToken]:
        """Redeem and consume in one store operation.

        Of several concurrent claims for the same secret exactly one sees
        ``ok``; the rest see ``not_found``.
        """
        if not plaintext:
            return Result.not_found("Invalid or expired token")
        record = await asyncio.to_thread(
            self.store.claim_token, purpose, hash_secret(plaintext), now=self._now()
        )
        if record is None:
            return Result.not_found("Invalid or expired token")
        logger.info("token_claimed", purpose=purpose.value, user_id=record.user_id)
        return Result.ok(record)

    async def find_used(
        self, purpose: TokenPurpose, plaintext: str
    ) -> Optional[VerificationToken]:
        if not plaintext:
            return None
        record = await asyncio.to_thread(self.store.find_token, purpose, hash_secret(plaintext))
        if record is None or record.used_at is None:
            return None
        return record

    async def latest_issued_at(
        self, purpose: TokenPurpose, user_id: str
    ) -> Optional[datetime]:
        record = await asyncio.to_thread(self.store.latest_token, purpose, user_id)
        return record.created_at if record else None

    async def has_active(self, purpose: TokenPurpose, user_id: str) -> bool:
        record = await asyncio.to_thread(self.store.latest_token, purpose, user_id)
        return record is not None and record.is_active(self._now())

    def cleanup(self) -> int:
        removed = self.store.delete_expired_tokens(now=self._now())
        if removed:
            logger.info("token_cleanup", removed=removed)
        return removed
