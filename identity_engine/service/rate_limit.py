from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from identity_engine.logging import get_logger
from identity_engine.service.results import Result
from identity_engine.service.security_log import SecurityLog
from identity_engine.storage.models import RateLimitRecord, SecurityEventType

logger = get_logger(__name__)


class RateLimitEndpoint(str, Enum):
    OAUTH_CALLBACK = "oauth_callback"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGE = "password_change"
    LOGIN = "login"
    REGISTER = "register"
    DEFAULT = "default"


@dataclass(frozen=True)
class RateLimitPolicy:
    max_attempts: int
    window_minutes: int
    lockout_minutes: int

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.window_minutes)

    @property
    def lockout(self) -> timedelta:
        return timedelta(minutes=self.lockout_minutes)


DEFAULT_POLICIES: Dict[RateLimitEndpoint, RateLimitPolicy] = {
    RateLimitEndpoint.OAUTH_CALLBACK: RateLimitPolicy(10, 15, 30),
    RateLimitEndpoint.EMAIL_VERIFICATION: RateLimitPolicy(5, 60, 60),
    RateLimitEndpoint.PASSWORD_RESET: RateLimitPolicy(5, 60, 60),
    RateLimitEndpoint.PASSWORD_CHANGE: RateLimitPolicy(5, 15, 30),
    RateLimitEndpoint.LOGIN: RateLimitPolicy(10, 15, 30),
    RateLimitEndpoint.REGISTER: RateLimitPolicy(5, 60, 60),
    RateLimitEndpoint.DEFAULT: RateLimitPolicy(10, 15, 30),
}


def _locked_message(retry_after_seconds: int) -> str:
    minutes = max(1, math.ceil(retry_after_seconds / 60))
    return f"Too many attempts. Please try again in {minutes} minute(s)."


class RateLimiter:
    """Per-(identifier, endpoint) attempt window with lockout.

    The window is anchored at the first attempt and resets wholesale once it
    elapses. With ``max_attempts = N`` the (N+1)-th attempt inside the window
    is refused and starts a lockout. Successful operations call ``reset`` so
    a legitimate user is not penalised for earlier typos.

    When a Redis cache is configured the check runs as a single Lua script.
    Otherwise the store is read and written under a per-process lock, which
    leaves a small cross-process race accepted for single-node deployments.
    """

    def __init__(
        self,
        store,
        *,
        cache=None,
        security_log: Optional[SecurityLog] = None,
        overrides: Optional[Mapping[str, Tuple[int, int, int]]] = None,
        retention_hours: int = 24,
    ) -> None:
        self.store = store
        self.cache = cache
        self.security_log = security_log
        self.retention_hours = retention_hours
        self.policies = dict(DEFAULT_POLICIES)
        for name, values in (overrides or {}).items():
            try:
                endpoint = RateLimitEndpoint(name)
            except ValueError:
                logger.warning("rate_limit_unknown_override", endpoint=name)
                continue
            self.policies[endpoint] = RateLimitPolicy(*values)
        self._local_lock = asyncio.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def policy_for(self, endpoint: RateLimitEndpoint) -> RateLimitPolicy:
        return self.policies.get(endpoint, self.policies[RateLimitEndpoint.DEFAULT])

    async def check(self, identifier: str, endpoint: RateLimitEndpoint) -> Result[None]:
        """Count one attempt; return ``rate_limited`` when it must be refused."""
        policy = self.policy_for(endpoint)
        if self.cache is not None:
            try:
                result = await self._check_cache(identifier, endpoint, policy)
            except Exception as exc:
                logger.warning(
                    "rate_limit_cache_unavailable",
                    endpoint=endpoint.value,
                    error=str(exc),
                )
            else:
                return await self._finish(identifier, endpoint, result)
        async with self._local_lock:
            result = await asyncio.to_thread(self._check_store, identifier, endpoint, policy)
        return await self._finish(identifier, endpoint, result)

    async def _finish(
        self, identifier: str, endpoint: RateLimitEndpoint, result: Result[None]
    ) -> Result[None]:
        if not result.is_ok:
            logger.warning(
                "rate_limit_exceeded",
                endpoint=endpoint.value,
                identifier=identifier,
                retry_after=result.retry_after,
            )
            if self.security_log is not None:
                await self.security_log.record_async(
                    SecurityEventType.RATE_LIMIT_EXCEEDED,
                    False,
                    user_id=identifier[5:] if identifier.startswith("user_") else None,
                    metadata={"endpoint": endpoint.value, "identifier": identifier},
                )
        return result

    async def _check_cache(
        self, identifier: str, endpoint: RateLimitEndpoint, policy: RateLimitPolicy
    ) -> Result[None]:
        allowed, retry_after, locked_epoch = await self.cache.check_attempt_window(
            identifier,
            endpoint.value,
            max_attempts=policy.max_attempts,
            window_seconds=int(policy.window.total_seconds()),
            lockout_seconds=int(policy.lockout.total_seconds()),
            retention_seconds=self.retention_hours * 3600,
        )
        if allowed:
            return Result.ok()
        return Result.rate_limited(
            _locked_message(retry_after),
            retry_after=retry_after,
            locked_until=datetime.fromtimestamp(locked_epoch, tz=timezone.utc),
        )

    def _check_store(
        self, identifier: str, endpoint: RateLimitEndpoint, policy: RateLimitPolicy
    ) -> Result[None]:
        now = self._now()
        record = self.store.get_rate_limit(identifier, endpoint.value)

        if record and record.locked_until and record.locked_until > now:
            retry_after = math.ceil((record.locked_until - now).total_seconds())
            return Result.rate_limited(
                _locked_message(retry_after),
                retry_after=retry_after,
                locked_until=record.locked_until,
            )

        in_window = record is not None and now - record.window_start < policy.window

        if in_window and record.attempts >= policy.max_attempts:
            record.locked_until = now + policy.lockout
            record.last_attempt = now
            self.store.save_rate_limit(record)
            retry_after = int(policy.lockout.total_seconds())
            return Result.rate_limited(
                _locked_message(retry_after),
                retry_after=retry_after,
                locked_until=record.locked_until,
            )

        if in_window:
            record.attempts += 1
            record.last_attempt = now
        else:
            record = RateLimitRecord(
                identifier=identifier,
                endpoint=endpoint.value,
                attempts=1,
                window_start=now,
                last_attempt=now,
                locked_until=None,
            )
        self.store.save_rate_limit(record)
        return Result.ok()

    async def reset(self, identifier: str, endpoint: RateLimitEndpoint) -> None:
        """Forget attempts for ``identifier``; failures are logged only."""
        try:
            if self.cache is not None:
                await self.cache.reset_attempt_window(identifier, endpoint.value)
            await asyncio.to_thread(self.store.delete_rate_limit, identifier, endpoint.value)
        except Exception as exc:
            logger.warning(
                "rate_limit_reset_failed",
                endpoint=endpoint.value,
                identifier=identifier,
                error=str(exc),
            )

    def cleanup(self) -> int:
        now = self._now()
        cutoff = now - timedelta(hours=self.retention_hours)
        removed = self.store.delete_stale_rate_limits(cutoff=cutoff, now=now)
        if removed:
            logger.info("rate_limit_cleanup", removed=removed)
        return removed
