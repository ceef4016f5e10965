"""Tests for the forgot-password flow.

Covers enumeration resistance, token single use, session revocation and the
rule that a weak replacement password does not burn the reset link.
"""

from datetime import datetime, timezone

from identity_engine.service.email import EmailKind
from identity_engine.service.password_reset import (
    GENERIC_RESET_MESSAGE,
    INVALID_RESET_TOKEN_MESSAGE,
    RESET_SUCCESS_MESSAGE,
)
from identity_engine.service.results import Outcome
from identity_engine.storage.models import AuthProvider, SecurityEventType

NEW_PASSWORD = "N3w!Passw0rd"


async def _register(runtime, email="reset@example.com", password="Str0ng!Passw0rd"):
    result = await runtime.engine.register(email, password, "Reset User", ip="10.0.0.1")
    assert result.is_ok
    return result.value


class TestRequestReset:
    async def test_known_account_receives_link(self, runtime, outbox):
        grant = await _register(runtime)

        result = await runtime.password_reset.request_reset("reset@example.com", ip="10.0.0.2")

        assert result.message == GENERIC_RESET_MESSAGE
        resets = outbox.of_kind(EmailKind.PASSWORD_RESET)
        assert len(resets) == 1
        assert resets[0].recipient == grant.user.email
        assert len(resets[0].token) == 64

    async def test_unknown_account_gets_identical_answer(self, runtime, outbox):
        await _register(runtime)
        known = await runtime.password_reset.request_reset("reset@example.com")

        unknown = await runtime.password_reset.request_reset("nobody@example.com")

        assert unknown.outcome == known.outcome
        assert unknown.message == known.message
        assert len(outbox.of_kind(EmailKind.PASSWORD_RESET)) == 1

    async def test_passwordless_account_gets_no_link(self, runtime, outbox):
        runtime.store.create_user(
            "google-only@example.com",
            auth_provider=AuthProvider.GOOGLE,
            email_verified=True,
            now=datetime.now(timezone.utc),
        )

        result = await runtime.password_reset.request_reset("google-only@example.com")

        assert result.message == GENERIC_RESET_MESSAGE
        assert outbox.of_kind(EmailKind.PASSWORD_RESET) == []

    async def test_delivery_failure_is_not_revealed(self, runtime, outbox):
        await _register(runtime)
        outbox.fail = True

        result = await runtime.password_reset.request_reset("reset@example.com")

        assert result.is_ok
        assert result.message == GENERIC_RESET_MESSAGE


class TestConfirmReset:
    async def test_reset_changes_password_and_revokes_sessions(self, runtime, outbox):
        grant = await _register(runtime)
        await runtime.password_reset.request_reset("reset@example.com")
        token = outbox.last_token(EmailKind.PASSWORD_RESET)

        result = await runtime.password_reset.confirm_reset(token, NEW_PASSWORD, ip="10.0.0.3")

        assert result.is_ok
        assert result.message == RESET_SUCCESS_MESSAGE
        old_session = await runtime.sessions.resolve(grant.access_token)
        assert old_session.outcome == Outcome.UNAUTHORIZED
        assert (await runtime.engine.login("reset@example.com", NEW_PASSWORD)).is_ok
        assert not (await runtime.engine.login("reset@example.com", "Str0ng!Passw0rd")).is_ok
        assert outbox.of_kind(EmailKind.PASSWORD_RESET_SUCCESS)

    async def test_token_is_single_use(self, runtime, outbox):
        await _register(runtime)
        await runtime.password_reset.request_reset("reset@example.com")
        token = outbox.last_token(EmailKind.PASSWORD_RESET)

        await runtime.password_reset.confirm_reset(token, NEW_PASSWORD)
        again = await runtime.password_reset.confirm_reset(token, "An0ther!Passw0rd")

        assert again.outcome == Outcome.UNAUTHORIZED
        assert again.message == INVALID_RESET_TOKEN_MESSAGE
        assert any(
            e.event_type == SecurityEventType.PASSWORD_RESET_FAILED
            for e in runtime.store.security_events
        )

    async def test_weak_password_keeps_token_usable(self, runtime, outbox):
        await _register(runtime)
        await runtime.password_reset.request_reset("reset@example.com")
        token = outbox.last_token(EmailKind.PASSWORD_RESET)

        weak = await runtime.password_reset.confirm_reset(token, "weak")
        strong = await runtime.password_reset.confirm_reset(token, NEW_PASSWORD)

        assert weak.outcome == Outcome.INVALID
        assert weak.message == "Password must be at least 8 characters long"
        assert strong.is_ok

    async def test_newer_request_retires_older_link(self, runtime, outbox):
        await _register(runtime)
        await runtime.password_reset.request_reset("reset@example.com")
        first = outbox.last_token(EmailKind.PASSWORD_RESET)
        await runtime.password_reset.request_reset("reset@example.com")

        result = await runtime.password_reset.confirm_reset(first, NEW_PASSWORD)

        assert result.outcome == Outcome.UNAUTHORIZED
