"""Tests for the email verification flow."""

from datetime import datetime, timedelta, timezone

import pytest

from identity_engine.service.email import EmailKind
from identity_engine.service.errors import EmailDeliveryError
from identity_engine.service.results import Outcome
from identity_engine.storage.models import SecurityEventType


@pytest.fixture
def user(runtime):
    return runtime.store.create_user(
        "Verify.Me@Example.com", "Verify Me", now=datetime.now(timezone.utc)
    )


class TestSendAndConfirm:
    async def test_send_then_confirm_marks_user_verified(self, runtime, outbox, user):
        await runtime.verification.send_verification(user)
        token = outbox.last_token(EmailKind.EMAIL_VERIFICATION)

        result = await runtime.verification.confirm(token)

        assert result.is_ok
        assert result.value.already_verified is False
        assert result.value.user.email_verified
        assert runtime.store.get_user(user.id).email_verified
        assert outbox.sent[-1].recipient == "verify.me@example.com"

    async def test_confirming_twice_is_idempotent(self, runtime, outbox, user):
        """A double-clicked link reports success the second time too."""
        await runtime.verification.send_verification(user)
        token = outbox.last_token(EmailKind.EMAIL_VERIFICATION)

        await runtime.verification.confirm(token)
        again = await runtime.verification.confirm(token)

        assert again.is_ok
        assert again.value.already_verified is True

    async def test_short_token_is_rejected_as_malformed(self, runtime):
        result = await runtime.verification.confirm("abc")

        assert result.outcome == Outcome.INVALID
        assert result.message == "Invalid verification token format"

    async def test_unknown_token_is_not_found_and_audited(self, runtime):
        result = await runtime.verification.confirm("f" * 64)

        assert result.outcome == Outcome.NOT_FOUND
        assert result.message == "Invalid or expired verification token"
        assert any(
            e.event_type == SecurityEventType.EMAIL_VERIFICATION_FAILED
            for e in runtime.store.security_events
        )

    async def test_delivery_failure_raises(self, runtime, outbox, user):
        outbox.fail = True

        with pytest.raises(EmailDeliveryError) as excinfo:
            await runtime.verification.send_verification(user)

        assert excinfo.value.status_code == 400
        assert excinfo.value.message == "Failed to send verification email"


class TestResend:
    async def test_resend_within_cooldown_is_rate_limited(self, runtime, user):
        await runtime.verification.send_verification(user)

        result = await runtime.verification.resend(user.id)

        assert result.outcome == Outcome.RATE_LIMITED
        assert 0 < result.retry_after <= 120
        assert result.message == (
            "Please wait 2 minutes before requesting another verification email"
        )

    async def test_resend_after_cooldown_retires_old_link(self, runtime, outbox, user):
        await runtime.verification.send_verification(user)
        old_token = outbox.last_token(EmailKind.EMAIL_VERIFICATION)
        runtime.verification.resend_cooldown = timedelta(0)

        result = await runtime.verification.resend(user.id)
        new_token = outbox.last_token(EmailKind.EMAIL_VERIFICATION)

        assert result.is_ok
        assert new_token != old_token
        assert (await runtime.verification.confirm(old_token)).outcome == Outcome.NOT_FOUND
        assert (await runtime.verification.confirm(new_token)).is_ok

    async def test_resend_for_verified_account_is_invalid(self, runtime, user):
        runtime.store.mark_email_verified(user.id, now=datetime.now(timezone.utc))

        result = await runtime.verification.resend(user.id)

        assert result.outcome == Outcome.INVALID
        assert result.message == "Email already verified"

    async def test_resend_for_unknown_user(self, runtime):
        result = await runtime.verification.resend("missing-user")

        assert result.outcome == Outcome.NOT_FOUND


class TestStatus:
    async def test_status_tracks_pending_token(self, runtime, outbox, user):
        before = (await runtime.verification.status(user.id)).value
        assert before.email_verified is False
        assert before.has_pending_verification is False

        await runtime.verification.send_verification(user)
        pending = (await runtime.verification.status(user.id)).value
        assert pending.has_pending_verification is True

        await runtime.verification.confirm(outbox.last_token(EmailKind.EMAIL_VERIFICATION))
        after = (await runtime.verification.status(user.id)).value
        assert after.email_verified is True
        assert after.has_pending_verification is False
