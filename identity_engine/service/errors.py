from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """An identity refusal or fault that the HTTP layer renders as an envelope.

    ``status_code`` picks the HTTP status and ``error_code`` the stable code
    in ``error.code``. ``detail`` is returned as ``error.details`` and carries
    the client hints (``action``, ``retry_after``, ``locked_until``,
    ``status``).
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail: Dict[str, Any] = detail or {}

    @property
    def action(self) -> Optional[str]:
        return self.detail.get("action")


class ValidationError(ServiceError):
    """Malformed input, a weak password or an unusable token (400)."""


class BadRequestError(ValidationError):
    pass


class EmailDeliveryError(BadRequestError):
    """A mail the caller explicitly asked for could not be handed to the relay."""


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """The address or identity is already bound elsewhere (409)."""

    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"

    @property
    def retry_after(self) -> Optional[int]:
        return self.detail.get("retry_after")


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class TransientDependencyError(ServerError):
    """The store or the mail relay is unreachable (503)."""

    status_code = 503


__all__ = [
    "AuthenticationError",
    "BadRequestError",
    "ConflictError",
    "EmailDeliveryError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "ServiceError",
    "TransientDependencyError",
    "ValidationError",
]
