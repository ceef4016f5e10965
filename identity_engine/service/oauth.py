from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx

from identity_engine.logging import get_logger, redact_email
from identity_engine.service.email import EmailKind, EmailSender, deliver
from identity_engine.service.results import ActionHint, Outcome, Result
from identity_engine.service.security_log import SecurityLog
from identity_engine.service.tokens import MIN_TOKEN_LENGTH, generate_secret, hash_secret
from identity_engine.storage.errors import ConstraintViolation
from identity_engine.storage.models import (
    AuthProvider,
    PendingRegistration,
    SecurityEventType,
    User,
)

logger = get_logger(__name__)

GOOGLE_ISSUERS = frozenset({"https://accounts.google.com", "accounts.google.com"})

CONFLICT_MESSAGE = (
    "This email is already registered with a password. "
    "Please sign in using your email and password instead."
)
PENDING_CREATED_MESSAGE = (
    "Please check your email to verify your account before signing in."
)
PENDING_RESENT_MESSAGE = (
    "Verification email resent. Please check your inbox to complete registration."
)
NO_ACCOUNT_MESSAGE = (
    "No account found with this email. Please register first before signing in with Google."
)
SUBJECT_MISMATCH_MESSAGE = (
    "This account is already linked to a different Google identity. "
    "Please sign in with the Google account you linked originally."
)

ClaimsFetcher = Callable[[str], Awaitable[Optional[dict]]]


class FederatedStatus(str, Enum):
    CREATED = "created"
    EXISTING = "existing"
    PENDING_VERIFICATION = "pending_verification"
    CONFLICT = "conflict"
    NO_ACCOUNT = "no_account"


class FederatedIntent(str, Enum):
    REGISTER = "register"
    SIGN_IN = "sign_in"


@dataclass
class Assertion:
    subject: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    picture: Optional[str] = None


@dataclass
class FederatedOutcome:
    status: FederatedStatus
    message: str
    user: Optional[User] = None
    action: Optional[ActionHint] = None
    email: Optional[str] = None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _as_timestamp(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class FederatedIdentity:
    """Google sign-in: assertion checks, account matching and held signups.

    Decision order for a valid assertion:

    1. an account with the address exists and has a password -> ``conflict``
       (no link is created; the user must sign in with the password)
    2. an account exists otherwise -> link and return ``existing``
    3. a live pending registration for the subject -> resend, ``pending_verification``
    4. ``sign_in`` intent -> ``no_account``
    5. provider says the address is verified -> create account, ``created``
    6. otherwise hold the signup and mail a link -> ``pending_verification``
    """

    def __init__(
        self,
        store,
        sender: EmailSender,
        security_log: SecurityLog,
        *,
        client_id: Optional[str],
        tokeninfo_url: str = "https://oauth2.googleapis.com/tokeninfo",
        clock_skew_seconds: int = 300,
        pending_ttl_days: int = 7,
        pending_token_ttl_hours: int = 24,
        claims_fetcher: Optional[ClaimsFetcher] = None,
    ) -> None:
        self.store = store
        self.sender = sender
        self.security_log = security_log
        self.client_id = client_id
        self.tokeninfo_url = tokeninfo_url
        self.clock_skew = timedelta(seconds=clock_skew_seconds)
        self.pending_ttl = timedelta(days=pending_ttl_days)
        self.pending_token_ttl = timedelta(hours=pending_token_ttl_hours)
        self.fetch_claims: ClaimsFetcher = claims_fetcher or self._fetch_tokeninfo

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _fetch_tokeninfo(self, id_token: str) -> Optional[dict]:
        """Ask Google to verify the signature and return the token claims."""
        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                response = await client.get(self.tokeninfo_url, params={"id_token": id_token})
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("oauth_tokeninfo_rejected", status_code=exc.response.status_code)
            return None
        except httpx.HTTPError as exc:
            logger.error("oauth_tokeninfo_unreachable", error_type=type(exc).__name__)
            return None
        except ValueError as exc:
            logger.error("oauth_tokeninfo_parse_error", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None

    async def _reject(self, reason: str, *, ip: Optional[str], user_agent: Optional[str], **meta: Any) -> Result[Assertion]:
        logger.warning("oauth_validation_failed", reason=reason)
        await self.security_log.record_async(
            SecurityEventType.OAUTH_VALIDATION_FAILED,
            False,
            ip=ip,
            user_agent=user_agent,
            metadata={"reason": reason, **meta},
        )
        return Result.unauthorized("Invalid Google token")

    async def validate_assertion(
        self,
        id_token: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[Assertion]:
        if not self.client_id:
            logger.error("oauth_client_id_missing")
            return Result.unauthorized("Google sign-in is not configured")
        if not id_token:
            return await self._reject("missing_token", ip=ip, user_agent=user_agent)

        claims = await self.fetch_claims(id_token)
        if not claims:
            return await self._reject("verification_failed", ip=ip, user_agent=user_agent)

        issuer = claims.get("iss")
        if issuer not in GOOGLE_ISSUERS:
            return await self._reject("invalid_issuer", ip=ip, user_agent=user_agent, issuer=issuer)

        if claims.get("aud") != self.client_id:
            return await self._reject("invalid_audience", ip=ip, user_agent=user_agent)

        now_ts = self._now().timestamp()
        skew = self.clock_skew.total_seconds()
        exp = _as_timestamp(claims.get("exp"))
        if exp is None or exp < now_ts:
            return await self._reject("token_expired", ip=ip, user_agent=user_agent)

        iat = _as_timestamp(claims.get("iat"))
        if iat is None or iat > now_ts + skew:
            return await self._reject("issued_in_future", ip=ip, user_agent=user_agent)

        nbf = _as_timestamp(claims.get("nbf"))
        if nbf is not None and nbf > now_ts + skew:
            return await self._reject("not_yet_valid", ip=ip, user_agent=user_agent)

        email = (claims.get("email") or "").strip().lower()
        if not email:
            return await self._reject("missing_email", ip=ip, user_agent=user_agent)

        subject = claims.get("sub")
        if not subject:
            return await self._reject("missing_subject", ip=ip, user_agent=user_agent)

        return Result.ok(
            Assertion(
                subject=str(subject),
                email=email,
                email_verified=_as_bool(claims.get("email_verified")),
                name=claims.get("name"),
                picture=claims.get("picture"),
            )
        )

    async def _link(self, user: User, assertion: Assertion) -> None:
        now = self._now()
        await asyncio.to_thread(
            self.store.upsert_federated_link,
            user.id,
            AuthProvider.GOOGLE,
            assertion.subject,
            email=assertion.email,
            email_verified=assertion.email_verified,
            now=now,
        )
        await asyncio.to_thread(self.store.touch_user, user.id, now=now)

    async def _linked_to_other_subject(self, user: User, assertion: Assertion) -> bool:
        links = await asyncio.to_thread(self.store.list_federated_links, user.id)
        return any(
            link.provider == AuthProvider.GOOGLE and link.provider_uid != assertion.subject
            for link in links
        )

    async def _refuse_subject_mismatch(self, user: User, audit: dict) -> Result[FederatedOutcome]:
        await self.security_log.record_async(
            SecurityEventType.OAUTH_CONFLICT,
            False,
            user_id=user.id,
            email=user.email,
            metadata={"provider": AuthProvider.GOOGLE.value, "reason": "subject_mismatch"},
            **audit,
        )
        return Result.conflict(
            SUBJECT_MISMATCH_MESSAGE,
            value=FederatedOutcome(
                status=FederatedStatus.CONFLICT,
                message=SUBJECT_MISMATCH_MESSAGE,
                email=user.email,
            ),
        )

    async def handle_assertion(
        self,
        id_token: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        intent: FederatedIntent = FederatedIntent.REGISTER,
    ) -> Result[FederatedOutcome]:
        validated = await self.validate_assertion(id_token, ip=ip, user_agent=user_agent)
        if not validated.is_ok:
            return Result(validated.outcome, message=validated.message)
        assertion = validated.value
        audit = {"ip": ip, "user_agent": user_agent}

        user = await asyncio.to_thread(self.store.get_user_by_email, assertion.email)
        if user is not None:
            password = await asyncio.to_thread(self.store.get_password_record, user.id)
            if user.auth_provider == AuthProvider.EMAIL and password is not None:
                await self.security_log.record_async(
                    SecurityEventType.OAUTH_CONFLICT,
                    False,
                    user_id=user.id,
                    email=user.email,
                    metadata={"provider": AuthProvider.GOOGLE.value},
                    **audit,
                )
                return Result.conflict(
                    CONFLICT_MESSAGE,
                    ActionHint.SIGNIN_OR_LINK,
                    value=FederatedOutcome(
                        status=FederatedStatus.CONFLICT,
                        message=CONFLICT_MESSAGE,
                        action=ActionHint.SIGNIN_OR_LINK,
                        email=user.email,
                    ),
                )
            if await self._linked_to_other_subject(user, assertion):
                return await self._refuse_subject_mismatch(user, audit)
            await self._link(user, assertion)
            await self.security_log.record_async(
                SecurityEventType.GOOGLE_LOGIN, True, user_id=user.id, email=user.email, **audit
            )
            return Result.ok(
                FederatedOutcome(status=FederatedStatus.EXISTING, message="Login successful", user=user)
            )

        pending = await asyncio.to_thread(
            self.store.get_pending_registration,
            AuthProvider.GOOGLE,
            assertion.subject,
            now=self._now(),
        )
        if pending is not None:
            return await self._resend_pending(pending, audit)

        if intent == FederatedIntent.SIGN_IN:
            await self.security_log.record_async(
                SecurityEventType.GOOGLE_LOGIN_NO_ACCOUNT, False, email=assertion.email, **audit
            )
            return Result(
                Outcome.NOT_FOUND,
                value=FederatedOutcome(
                    status=FederatedStatus.NO_ACCOUNT,
                    message=NO_ACCOUNT_MESSAGE,
                    action=ActionHint.REGISTER_REQUIRED,
                    email=assertion.email,
                ),
                message=NO_ACCOUNT_MESSAGE,
                action=ActionHint.REGISTER_REQUIRED,
            )

        if assertion.email_verified:
            return await self._create_verified(assertion, audit)
        return await self._hold_registration(assertion, audit)

    async def _create_verified(self, assertion: Assertion, audit: dict) -> Result[FederatedOutcome]:
        try:
            user = await asyncio.to_thread(
                self.store.create_user,
                assertion.email,
                assertion.name,
                auth_provider=AuthProvider.GOOGLE,
                provider_subject=assertion.subject,
                email_verified=True,
                now=self._now(),
            )
        except ConstraintViolation:
            # lost a race with a concurrent signup for the same address
            user = await asyncio.to_thread(self.store.get_user_by_email, assertion.email)
            if user is None:
                raise
            if await self._linked_to_other_subject(user, assertion):
                return await self._refuse_subject_mismatch(user, audit)
            await self._link(user, assertion)
            await self.security_log.record_async(
                SecurityEventType.GOOGLE_LOGIN, True, user_id=user.id, email=user.email, **audit
            )
            return Result.ok(
                FederatedOutcome(status=FederatedStatus.EXISTING, message="Login successful", user=user)
            )
        await self._link(user, assertion)
        await self.security_log.record_async(
            SecurityEventType.GOOGLE_REGISTER,
            True,
            user_id=user.id,
            email=user.email,
            metadata={"email_verified": True},
            **audit,
        )
        return Result.ok(
            FederatedOutcome(status=FederatedStatus.CREATED, message="Registration successful", user=user)
        )

    async def _hold_registration(self, assertion: Assertion, audit: dict) -> Result[FederatedOutcome]:
        now = self._now()
        token = generate_secret()
        pending = PendingRegistration(
            id=str(uuid.uuid4()),
            email=assertion.email,
            name=assertion.name,
            provider=AuthProvider.GOOGLE,
            provider_uid=assertion.subject,
            picture=assertion.picture,
            token_hash=hash_secret(token),
            token_expires_at=now + self.pending_token_ttl,
            expires_at=now + self.pending_ttl,
            attempts=1,
            last_attempt_at=now,
            created_at=now,
        )
        await asyncio.to_thread(self.store.save_pending_registration, pending)
        sent = await deliver(
            self.sender,
            EmailKind.FEDERATED_VERIFICATION,
            assertion.email,
            token=token,
            name=assertion.name,
        )
        if not sent:
            logger.warning("pending_registration_email_failed", email=redact_email(assertion.email))
        await self.security_log.record_async(
            SecurityEventType.GOOGLE_REGISTER_PENDING,
            True,
            email=assertion.email,
            metadata={"email_sent": sent},
            **audit,
        )
        return Result.ok(
            FederatedOutcome(
                status=FederatedStatus.PENDING_VERIFICATION,
                message=PENDING_CREATED_MESSAGE,
                action=ActionHint.VERIFY_EMAIL,
                email=assertion.email,
            )
        )

    async def _resend_pending(
        self, pending: PendingRegistration, audit: dict
    ) -> Result[FederatedOutcome]:
        # only the hash is stored, so a resend has to mint a new secret
        now = self._now()
        token = generate_secret()
        rotated = await asyncio.to_thread(
            self.store.rotate_pending_registration,
            pending.id,
            token_hash=hash_secret(token),
            token_expires_at=now + self.pending_token_ttl,
            now=now,
        )
        attempts = rotated.attempts if rotated else pending.attempts + 1
        sent = await deliver(
            self.sender, EmailKind.FEDERATED_VERIFICATION, pending.email, token=token, name=pending.name
        )
        if not sent:
            logger.warning("pending_registration_email_failed", email=redact_email(pending.email))
        await self.security_log.record_async(
            SecurityEventType.GOOGLE_VERIFICATION_RESENT,
            True,
            email=pending.email,
            metadata={"attempts": attempts, "email_sent": sent},
            **audit,
        )
        return Result.ok(
            FederatedOutcome(
                status=FederatedStatus.PENDING_VERIFICATION,
                message=PENDING_RESENT_MESSAGE,
                action=ActionHint.VERIFY_EMAIL,
                email=pending.email,
            )
        )

    async def confirm_pending_registration(
        self,
        token: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[User]:
        if not token or len(token) < MIN_TOKEN_LENGTH:
            return Result.invalid("Invalid verification token format")
        now = self._now()
        pending = await asyncio.to_thread(
            self.store.claim_pending_registration, hash_secret(token), now=now
        )
        if pending is None:
            await self.security_log.record_async(
                SecurityEventType.EMAIL_VERIFICATION_FAILED,
                False,
                ip=ip,
                user_agent=user_agent,
                metadata={"provider": AuthProvider.GOOGLE.value, "reason": "invalid_or_expired_token"},
            )
            return Result.not_found("Invalid or expired verification token")

        assertion = Assertion(
            subject=pending.provider_uid,
            email=pending.email,
            email_verified=True,
            name=pending.name,
            picture=pending.picture,
        )
        user = await asyncio.to_thread(self.store.get_user_by_email, pending.email)
        kind = "existing_user"
        if user is None:
            try:
                user = await asyncio.to_thread(
                    self.store.create_user,
                    pending.email,
                    pending.name,
                    auth_provider=AuthProvider.GOOGLE,
                    provider_subject=pending.provider_uid,
                    email_verified=True,
                    now=now,
                )
                kind = "new_user"
            except ConstraintViolation:
                user = await asyncio.to_thread(self.store.get_user_by_email, pending.email)
                if user is None:
                    raise
        if await self._linked_to_other_subject(user, assertion):
            refused = await self._refuse_subject_mismatch(user, {"ip": ip, "user_agent": user_agent})
            return Result(refused.outcome, message=refused.message)
        if not user.email_verified:
            user = await asyncio.to_thread(self.store.mark_email_verified, user.id, now=now) or user
        await self._link(user, assertion)
        await self.security_log.record_async(
            SecurityEventType.GOOGLE_EMAIL_VERIFIED,
            True,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=user_agent,
            metadata={"type": kind},
        )
        return Result.ok(user)

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_pending_registrations(now=self._now())
        if removed:
            logger.info("pending_registration_cleanup", removed=removed)
        return removed
