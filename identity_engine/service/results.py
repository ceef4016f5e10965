"""Result variants for expected business outcomes.

Engine operations return a :class:`Result` instead of raising for outcomes a
caller is expected to branch on (unknown account, wrong password, cooldown).
Exceptions remain reserved for infrastructure faults. ``Result.unwrap()``
bridges into the ``ServiceError`` hierarchy for HTTP adapters.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

from identity_engine.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServiceError,
)

T = TypeVar("T")


class Outcome(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    INVALID = "invalid"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"


class ActionHint(str, Enum):
    """Client-facing next step attached to a refusal."""

    REDIRECT_TO_LOGIN = "redirect_to_login"
    REDIRECT_TO_REGISTER = "redirect_to_register"
    USE_GOOGLE_SIGNIN = "use_google_signin"
    RETRY_PASSWORD = "retry_password"
    VERIFY_EMAIL = "verify_email"
    SIGNIN_OR_LINK = "signin_or_link"
    REGISTER_REQUIRED = "register_required"


_OUTCOME_ERRORS = {
    Outcome.NOT_FOUND: NotFoundError,
    Outcome.CONFLICT: ConflictError,
    Outcome.UNAUTHORIZED: AuthenticationError,
    Outcome.INVALID: BadRequestError,
    Outcome.FORBIDDEN: ForbiddenError,
    Outcome.RATE_LIMITED: RateLimitedError,
}


@dataclass
class Result(Generic[T]):
    outcome: Outcome
    value: Optional[T] = None
    message: Optional[str] = None
    action: Optional[ActionHint] = None
    retry_after: Optional[int] = None
    locked_until: Optional[datetime] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_ok(self) -> bool:
        return self.outcome == Outcome.OK

    @classmethod
    def ok(cls, value: Optional[T] = None, message: Optional[str] = None) -> "Result[T]":
        return cls(Outcome.OK, value=value, message=message)

    @classmethod
    def not_found(cls, message: str, action: Optional[ActionHint] = None) -> "Result[T]":
        return cls(Outcome.NOT_FOUND, message=message, action=action)

    @classmethod
    def conflict(
        cls,
        message: str,
        action: Optional[ActionHint] = None,
        value: Optional[T] = None,
    ) -> "Result[T]":
        return cls(Outcome.CONFLICT, value=value, message=message, action=action)

    @classmethod
    def unauthorized(cls, message: str, action: Optional[ActionHint] = None) -> "Result[T]":
        return cls(Outcome.UNAUTHORIZED, message=message, action=action)

    @classmethod
    def invalid(
        cls, message: str, *, detail: Optional[Dict[str, Any]] = None
    ) -> "Result[T]":
        return cls(Outcome.INVALID, message=message, detail=detail or {})

    @classmethod
    def forbidden(cls, message: str, action: Optional[ActionHint] = None) -> "Result[T]":
        return cls(Outcome.FORBIDDEN, message=message, action=action)

    @classmethod
    def rate_limited(
        cls,
        message: str,
        *,
        retry_after: int,
        locked_until: Optional[datetime] = None,
    ) -> "Result[T]":
        return cls(
            Outcome.RATE_LIMITED,
            message=message,
            retry_after=retry_after,
            locked_until=locked_until,
        )

    def as_error(self) -> ServiceError:
        """Build the ServiceError matching this non-ok result."""
        if self.is_ok:
            raise ValueError("ok result has no error form")
        detail: Dict[str, Any] = dict(self.detail)
        if self.action is not None:
            detail["action"] = self.action.value
        if self.retry_after is not None:
            detail["retry_after"] = self.retry_after
        if self.locked_until is not None:
            detail["locked_until"] = self.locked_until.isoformat()
        error_cls = _OUTCOME_ERRORS[self.outcome]
        return error_cls(self.message or self.outcome.value, detail=detail)

    def unwrap(self) -> T:
        if not self.is_ok:
            raise self.as_error()
        return self.value  # type: ignore[return-value]


__all__ = ["ActionHint", "Outcome", "Result"]
