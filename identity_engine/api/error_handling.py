from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from psycopg import OperationalError
from psycopg_pool import PoolTimeout

from identity_engine.api.schemas import Envelope, ErrorBody
from identity_engine.logging import get_logger, sanitize_error_message
from identity_engine.service.errors import ServiceError, TransientDependencyError
from identity_engine.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body = Envelope(
        status="error",
        error=ErrorBody(code=code or _error_code_for_status(status_code), message=message, details=details),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def _retry_headers(detail: Dict[str, Any]) -> Optional[Dict[str, str]]:
    retry_after = detail.get("retry_after")
    if retry_after is None:
        return None
    return {"Retry-After": str(retry_after)}


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope.

    Refusals from the engine arrive as ``ServiceError``; storage faults and
    raw driver outages that escape a service become 409 or 503; anything
    else is a sanitized 500.
    """

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "request_refused",
            path=request.url.path,
            status_code=exc.status_code,
            error_code=exc.error_code,
            action=exc.action,
        )
        message = exc.message if exc.status_code < 500 else sanitize_error_message(exc.message)
        return _error_response(
            exc.status_code,
            message,
            exc.detail or None,
            code=exc.error_code,
            headers=_retry_headers(exc.detail),
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning("constraint_violation", path=request.url.path, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail or None, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: Exception):
        logger.error("store_unavailable", path=request.url.path, error=str(exc))
        return await handle_service_error(
            request, TransientDependencyError("service temporarily unavailable")
        )

    # outages raised outside PostgresStore._connect
    app.add_exception_handler(OperationalError, handle_store_unavailable)
    app.add_exception_handler(PoolTimeout, handle_store_unavailable)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        problems = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.info("request_validation_error", path=request.url.path, error_count=len(problems))
        message = problems[0]["msg"] if problems else "invalid request"
        return _error_response(400, message, problems, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code="server_error")
