from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from identity_engine.config import Settings
from identity_engine.logging import get_logger
from identity_engine.service.results import Result
from identity_engine.storage.models import Session, User

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    email: str
    session_id: str


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class SessionRegistry:
    """Issues HS256 bearer tokens and tracks the sessions behind them."""

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._clock_skew_leeway = timedelta(seconds=30)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.settings.session_ttl_hours)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    async def issue(
        self,
        user: User,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Session, str]:
        """Create a session for ``user`` and return it with its bearer token."""
        now = self._now()
        session_id = str(uuid.uuid4())
        expires_at = now + self.ttl
        token = self._encode_jwt(
            {
                "sub": user.id,
                "email": user.email,
                "sid": session_id,
                "jti": str(uuid.uuid4()),
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
            }
        )
        session = Session(
            id=session_id,
            user_id=user.id,
            token_hash=hash_token(token),
            created_at=now,
            expires_at=expires_at,
            user_agent=user_agent,
            ip_addr=ip,
        )
        await asyncio.to_thread(self.store.create_session, session)
        logger.info("session_issued", user_id=user.id, session_id=session_id)
        return session, token

    async def resolve(self, token: str) -> Result[AuthContext]:
        payload = self._decode_jwt(token)
        if not payload:
            return Result.unauthorized("Invalid or expired token")
        session_id = payload.get("sid")
        sess = await asyncio.to_thread(self.store.get_session, session_id) if session_id else None
        if sess is None:
            return Result.unauthorized("Invalid or expired token")
        if sess.revoked:
            logger.info("session_revoked_access", session_id=sess.id, user_id=sess.user_id)
            return Result.unauthorized("Session has been revoked")
        if sess.expires_at <= self._now() or sess.user_id != payload.get("sub"):
            return Result.unauthorized("Invalid or expired token")
        if not hmac.compare_digest(sess.token_hash, hash_token(token)):
            return Result.unauthorized("Invalid or expired token")
        return Result.ok(
            AuthContext(user_id=sess.user_id, email=payload.get("email", ""), session_id=sess.id)
        )

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def authenticate(self, authorization: Optional[str]) -> Result[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return Result.unauthorized("Authentication required")
        return await self.resolve(token)

    async def revoke(self, session_id: str) -> bool:
        return await asyncio.to_thread(self.store.revoke_session, session_id)

    async def revoke_all(self, user_id: str, *, except_session_id: Optional[str] = None) -> int:
        revoked = await asyncio.to_thread(
            self.store.revoke_user_sessions, user_id, except_session_id=except_session_id
        )
        logger.info("sessions_revoked", user_id=user_id, count=revoked)
        return revoked

    def cleanup(self) -> int:
        return self.store.delete_expired_sessions(now=self._now())
