from __future__ import annotations

import asyncio
from ipaddress import ip_address, ip_network
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from identity_engine.api.schemas import (
    AuthResponse,
    Envelope,
    GoogleCallbackRequest,
    GoogleCallbackResponse,
    HasPasswordResponse,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordSetRequest,
    ProfileResponse,
    RegisterRequest,
    SecurityEventView,
    SecurityLogResponse,
    VerificationStatusResponse,
    VerifyEmailRequest,
)
from identity_engine.logging import get_logger
from identity_engine.service.auth import AuthGrant
from identity_engine.service.errors import ForbiddenError
from identity_engine.service.rate_limit import RateLimitEndpoint
from identity_engine.service.results import ActionHint, Outcome, Result
from identity_engine.service.runtime import get_runtime
from identity_engine.service.sessions import AuthContext
from identity_engine.storage.cursors import encode_time_id_cursor

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

GOOGLE_PROVIDER = "google"


def _is_trusted_proxy(address: Optional[str], networks: List[str]) -> bool:
    if not address or not networks:
        return False
    try:
        parsed = ip_address(address)
    except ValueError:
        return False
    return any(parsed in ip_network(net, strict=False) for net in networks)


def _client_ip(request: Request) -> Optional[str]:
    """Address used for rate limiting and audit rows.

    The socket peer is used unless it is a configured trusted proxy; then the
    right-most ``X-Forwarded-For`` hop that is not itself a trusted proxy is
    taken, so a client cannot pick its own identity by prepending hops.
    """
    peer = request.client.host if request.client else None
    trusted = get_runtime().settings.trusted_proxies
    if not _is_trusted_proxy(peer, trusted):
        return peer
    forwarded = request.headers.get("X-Forwarded-For", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not _is_trusted_proxy(hop, trusted):
            return hop
    return peer


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("User-Agent")


async def _enforce_rate_limit(runtime, identifier: Optional[str], endpoint: RateLimitEndpoint) -> None:
    """Raise 429 once ``identifier`` has exhausted ``endpoint``'s window."""
    limited = await runtime.rate_limiter.check(identifier or "unknown", endpoint)
    if not limited.is_ok:
        raise limited.as_error()


def _auth_payload(grant: AuthGrant) -> AuthResponse:
    return AuthResponse(**grant.to_dict())


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return (await runtime.sessions.authenticate(authorization)).unwrap()


async def require_verified(principal: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Gate sensitive account actions behind a verified address when configured."""
    runtime = get_runtime()
    if not runtime.settings.require_verified_email_for_sensitive_actions:
        return principal
    user = await asyncio.to_thread(runtime.store.get_user, principal.user_id)
    if user is None or not user.email_verified:
        logger.info("verified_email_required", user_id=principal.user_id)
        raise ForbiddenError(
            "Please verify your email address first",
            detail={"action": ActionHint.VERIFY_EMAIL.value},
        )
    return principal


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an email/password account and return a session.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
        429: If the client exceeded the register window
    """
    runtime = get_runtime()
    grant = (
        await runtime.engine.register(
            body.email,
            body.password,
            body.name,
            ip=_client_ip(request),
            user_agent=_user_agent(request),
        )
    ).unwrap()
    return Envelope(status="ok", data=_auth_payload(grant))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Refusals carry ``details.action``: ``redirect_to_register`` for an unknown
    address, ``use_google_signin`` for a passwordless account and
    ``retry_password`` for a wrong password.
    """
    runtime = get_runtime()
    grant = (
        await runtime.engine.login(
            body.email, body.password, ip=_client_ip(request), user_agent=_user_agent(request)
        )
    ).unwrap()
    return Envelope(status="ok", data=_auth_payload(grant))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    await runtime.engine.logout(
        principal.user_id,
        principal.session_id,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.post("/auth/oauth/google/callback", response_model=Envelope, tags=["auth"])
async def google_callback(body: GoogleCallbackRequest, request: Request):
    """Handle a Google ID token from the client.

    A conflicting email/password account yields 409 with
    ``details.status == "conflict"``; no link is created in that case.
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(runtime, ip, RateLimitEndpoint.OAUTH_CALLBACK)
    result = await runtime.engine.federated_sign_in(
        body.id_token, intent=body.intent, ip=ip, user_agent=_user_agent(request)
    )
    if result.outcome != Outcome.CONFLICT and result.value is not None:
        await runtime.rate_limiter.reset(ip or "unknown", RateLimitEndpoint.OAUTH_CALLBACK)
    federated = result.unwrap()
    return Envelope(status="ok", data=GoogleCallbackResponse(**federated.to_dict()))


async def _verify_email(request: Request, token: str, provider: Optional[str]) -> Envelope:
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(runtime, ip, RateLimitEndpoint.EMAIL_VERIFICATION)
    if provider == GOOGLE_PROVIDER:
        result: Result[AuthGrant] = await runtime.engine.verify_federated_email(
            token, ip=ip, user_agent=_user_agent(request)
        )
    else:
        result = await runtime.engine.verify_email(token, ip=ip, user_agent=_user_agent(request))
    grant = result.unwrap()
    await runtime.rate_limiter.reset(ip or "unknown", RateLimitEndpoint.EMAIL_VERIFICATION)
    return Envelope(status="ok", data=_auth_payload(grant))


@router.get("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email_link(
    request: Request,
    token: str = Query(..., min_length=1, max_length=256),
    provider: Optional[str] = Query(None, max_length=32),
):
    """Confirm an address from the emailed link."""
    return await _verify_email(request, token, provider)


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest, request: Request):
    return await _verify_email(request, body.token, body.provider)


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    result = await runtime.verification.resend(principal.user_id)
    result.unwrap()
    return Envelope(status="ok", data=MessageResponse(message=result.message))


@router.get("/auth/verification-status", response_model=Envelope, tags=["auth"])
async def verification_status(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    status = (await runtime.verification.status(principal.user_id)).unwrap()
    return Envelope(
        status="ok",
        data=VerificationStatusResponse(
            email_verified=status.email_verified,
            has_pending_verification=status.has_pending_verification,
        ),
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest, request: Request):
    """Request a reset link.

    The body is the same whether or not the address has an account.
    """
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(runtime, ip, RateLimitEndpoint.PASSWORD_RESET)
    result = await runtime.password_reset.request_reset(
        body.email, ip=ip, user_agent=_user_agent(request)
    )
    return Envelope(status="ok", data=MessageResponse(message=result.message))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(runtime, ip, RateLimitEndpoint.PASSWORD_RESET)
    result = await runtime.password_reset.confirm_reset(
        body.token, body.new_password, ip=ip, user_agent=_user_agent(request)
    )
    result.unwrap()
    await runtime.rate_limiter.reset(ip or "unknown", RateLimitEndpoint.PASSWORD_RESET)
    return Envelope(status="ok", data=MessageResponse(message=result.message))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: AuthContext = Depends(require_verified),
):
    """Change the password; every session for the account is revoked."""
    runtime = get_runtime()
    result = await runtime.engine.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        body.new_password_confirm,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    result.unwrap()
    return Envelope(status="ok", data=MessageResponse(message=result.message))


@router.post("/auth/set-password", response_model=Envelope, tags=["auth"])
async def set_password(
    body: PasswordSetRequest,
    request: Request,
    principal: AuthContext = Depends(require_verified),
):
    runtime = get_runtime()
    result = await runtime.engine.set_password(
        principal.user_id,
        body.password,
        body.password_confirm,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    result.unwrap()
    return Envelope(status="ok", data=MessageResponse(message=result.message))


@router.get("/auth/has-password", response_model=Envelope, tags=["auth"])
async def has_password(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=HasPasswordResponse(has_password=await runtime.engine.has_password(principal.user_id)),
    )


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def profile(principal: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    current = (await runtime.engine.profile(principal.user_id)).unwrap()
    return Envelope(status="ok", data=ProfileResponse(**current.to_dict()))


@router.get("/auth/security-log", response_model=Envelope, tags=["auth"])
async def security_log(
    limit: int = Query(50, ge=1, le=200),
    cursor: Optional[str] = Query(None, max_length=256),
    principal: AuthContext = Depends(require_verified),
):
    """Newest-first audit entries for the caller, keyset-paged by ``cursor``."""
    runtime = get_runtime()
    events = await runtime.engine.security_history(principal.user_id, limit=limit, cursor=cursor)
    next_cursor = None
    if len(events) == limit:
        last = events[-1]
        next_cursor = encode_time_id_cursor(last.created_at, last.id)
    return Envelope(
        status="ok",
        data=SecurityLogResponse(
            items=[SecurityEventView(**event.to_dict()) for event in events],
            next_cursor=next_cursor,
        ),
    )
