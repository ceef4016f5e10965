"""Tests for Google federated identity.

Assertions are injected through ``fetch_claims`` so no network is touched;
one test drives ``_fetch_tokeninfo`` against a patched ``httpx.AsyncClient``.
"""

import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from identity_engine.service.email import EmailKind
from identity_engine.service.oauth import (
    CONFLICT_MESSAGE,
    NO_ACCOUNT_MESSAGE,
    PENDING_RESENT_MESSAGE,
    SUBJECT_MISMATCH_MESSAGE,
    FederatedIntent,
    FederatedStatus,
)
from identity_engine.service.results import ActionHint, Outcome
from identity_engine.storage.errors import ConstraintViolation
from identity_engine.storage.models import AuthProvider, SecurityEventType


def _claims(**overrides):
    now = int(time.time())
    claims = {
        "iss": "https://accounts.google.com",
        "aud": "test-client-id",
        "sub": "google-subject-1",
        "email": "Fed.User@Example.com",
        "email_verified": "true",
        "name": "Fed User",
        "picture": "https://example.com/p.png",
        "iat": now,
        "exp": now + 3600,
    }
    claims.update(overrides)
    return claims


@pytest.fixture
def federated(runtime):
    service = runtime.federated
    service.fetch_claims = AsyncMock(return_value=_claims())
    return service


def _now():
    return datetime.now(timezone.utc)


class TestAssertionValidation:
    async def test_valid_claims_produce_assertion(self, federated):
        result = await federated.validate_assertion("id-token")

        assert result.is_ok
        assert result.value.email == "fed.user@example.com"
        assert result.value.email_verified is True
        assert result.value.subject == "google-subject-1"

    @pytest.mark.parametrize(
        "overrides,reason",
        [
            ({"aud": "someone-else"}, "invalid_audience"),
            ({"iss": "https://evil.example.com"}, "invalid_issuer"),
            ({"exp": int(time.time()) - 10}, "token_expired"),
            ({"iat": int(time.time()) + 3600}, "issued_in_future"),
            ({"nbf": int(time.time()) + 3600}, "not_yet_valid"),
            ({"email": ""}, "missing_email"),
            ({"sub": None}, "missing_subject"),
        ],
    )
    async def test_bad_claims_are_rejected(self, runtime, federated, overrides, reason):
        federated.fetch_claims = AsyncMock(return_value=_claims(**overrides))

        result = await federated.validate_assertion("id-token", ip="203.0.113.9")

        assert result.outcome == Outcome.UNAUTHORIZED
        assert result.message == "Invalid Google token"
        failures = [
            e
            for e in runtime.store.security_events
            if e.event_type == SecurityEventType.OAUTH_VALIDATION_FAILED
        ]
        assert failures[-1].metadata["reason"] == reason

    async def test_small_clock_skew_on_iat_is_tolerated(self, federated):
        federated.fetch_claims = AsyncMock(return_value=_claims(iat=int(time.time()) + 60))

        assert (await federated.validate_assertion("id-token")).is_ok

    async def test_unverifiable_token_is_rejected(self, federated):
        federated.fetch_claims = AsyncMock(return_value=None)

        result = await federated.validate_assertion("id-token")

        assert result.outcome == Outcome.UNAUTHORIZED

    async def test_missing_client_id_refuses_everything(self, federated):
        federated.client_id = None

        result = await federated.validate_assertion("id-token")

        assert result.outcome == Outcome.UNAUTHORIZED
        federated.fetch_claims.assert_not_called()


class TestTokenInfoFetch:
    async def test_fetch_tokeninfo_returns_claims(self, runtime):
        response = MagicMock()
        response.json.return_value = _claims()
        response.raise_for_status.return_value = None
        client = MagicMock()
        client.get = AsyncMock(return_value=response)
        factory = MagicMock()
        factory.return_value.__aenter__.return_value = client

        with patch("identity_engine.service.oauth.httpx.AsyncClient", factory):
            claims = await runtime.federated._fetch_tokeninfo("id-token")

        assert claims["sub"] == "google-subject-1"
        client.get.assert_awaited_once_with(
            runtime.settings.oauth_google_tokeninfo_url, params={"id_token": "id-token"}
        )
        assert factory.call_args.kwargs["follow_redirects"] is False

    async def test_fetch_tokeninfo_network_error_returns_none(self, runtime):
        client = MagicMock()
        client.get = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
        factory = MagicMock()
        factory.return_value.__aenter__.return_value = client

        with patch("identity_engine.service.oauth.httpx.AsyncClient", factory):
            assert await runtime.federated._fetch_tokeninfo("id-token") is None


class TestDecisionTable:
    async def test_password_account_conflicts_without_linking(self, runtime, federated):
        grant = (
            await runtime.engine.register("fed.user@example.com", "Str0ng!Passw0rd", ip="10.1.1.1")
        ).value

        result = await federated.handle_assertion("id-token")

        assert result.outcome == Outcome.CONFLICT
        assert result.message == CONFLICT_MESSAGE
        assert result.action == ActionHint.SIGNIN_OR_LINK
        assert result.value.status == FederatedStatus.CONFLICT
        assert runtime.store.list_federated_links(grant.user.id) == []

    async def test_passwordless_account_is_linked(self, runtime, federated):
        user = runtime.store.create_user(
            "fed.user@example.com",
            auth_provider=AuthProvider.GOOGLE,
            email_verified=True,
            now=_now(),
        )

        result = await federated.handle_assertion("id-token")

        assert result.is_ok
        assert result.value.status == FederatedStatus.EXISTING
        assert result.value.user.id == user.id
        links = runtime.store.list_federated_links(user.id)
        assert [link.provider_uid for link in links] == ["google-subject-1"]

    async def test_second_google_subject_for_same_account_is_refused(self, runtime, federated):
        created = await federated.handle_assertion("id-token")
        federated.fetch_claims = AsyncMock(return_value=_claims(sub="google-subject-2"))

        result = await federated.handle_assertion("id-token")

        user = created.value.user
        assert result.outcome == Outcome.CONFLICT
        assert result.message == SUBJECT_MISMATCH_MESSAGE
        assert result.value.status == FederatedStatus.CONFLICT
        links = runtime.store.list_federated_links(user.id)
        assert [link.provider_uid for link in links] == ["google-subject-1"]
        conflicts = [
            event
            for event in runtime.store.security_events
            if event.event_type == SecurityEventType.OAUTH_CONFLICT
        ]
        assert conflicts[-1].metadata["reason"] == "subject_mismatch"

    async def test_store_keeps_one_link_per_provider(self, runtime):
        user = runtime.store.create_user("one.com", email_verified=True, now=_now())
        other = runtime.store.create_user("two.com", email_verified=True, now=_now())
        runtime.store.upsert_federated_link(
            user.id, AuthProvider.GOOGLE, "sub-a", email=user.email, email_verified=True, now=_now()
        )

        with pytest.raises(ConstraintViolation):
            runtime.store.upsert_federated_link(
                user.id, AuthProvider.GOOGLE, "sub-b", email=user.email, email_verified=True, now=_now()
            )
        with pytest.raises(ConstraintViolation):
            runtime.store.upsert_federated_link(
                other.id, AuthProvider.GOOGLE, "sub-a", email=other.email, email_verified=True, now=_now()
            )
        assert runtime.store.list_federated_links(other.id) == []

    async def test_verified_email_creates_account(self, runtime, federated):
        result = await federated.handle_assertion("id-token")

        assert result.is_ok
        assert result.value.status == FederatedStatus.CREATED
        user = runtime.store.get_user_by_email("fed.user@example.com")
        assert user.email_verified
        assert user.auth_provider == AuthProvider.GOOGLE
        assert runtime.store.get_password_record(user.id) is None
        assert runtime.store.get_federated_link(AuthProvider.GOOGLE, "google-subject-1") is not None

    async def test_sign_in_intent_without_account(self, runtime, federated):
        result = await federated.handle_assertion("id-token", intent=FederatedIntent.SIGN_IN)

        assert result.outcome == Outcome.NOT_FOUND
        assert result.value.status == FederatedStatus.NO_ACCOUNT
        assert result.value.action == ActionHint.REGISTER_REQUIRED
        assert result.message == NO_ACCOUNT_MESSAGE
        assert runtime.store.get_user_by_email("fed.user@example.com") is None

    async def test_invalid_token_has_no_outcome_value(self, federated):
        federated.fetch_claims = AsyncMock(return_value=None)

        result = await federated.handle_assertion("id-token")

        assert result.outcome == Outcome.UNAUTHORIZED
        assert result.value is None


class TestPendingRegistration:
    async def test_unverified_email_is_held_until_confirmed(self, runtime, federated, outbox):
        federated.fetch_claims = AsyncMock(return_value=_claims(email_verified="false"))

        held = await federated.handle_assertion("id-token")

        assert held.is_ok
        assert held.value.status == FederatedStatus.PENDING_VERIFICATION
        assert held.value.action == ActionHint.VERIFY_EMAIL
        assert runtime.store.get_user_by_email("fed.user@example.com") is None
        token = outbox.last_token(EmailKind.FEDERATED_VERIFICATION)
        assert token

        confirmed = await federated.confirm_pending_registration(token)

        assert confirmed.is_ok
        assert confirmed.value.email_verified
        assert runtime.store.get_federated_link(AuthProvider.GOOGLE, "google-subject-1") is not None
        assert runtime.store.pending == {}

    async def test_repeat_attempt_resends_with_fresh_link(self, runtime, federated, outbox):
        federated.fetch_claims = AsyncMock(return_value=_claims(email_verified="false"))
        await federated.handle_assertion("id-token")
        first = outbox.last_token(EmailKind.FEDERATED_VERIFICATION)

        again = await federated.handle_assertion("id-token", intent=FederatedIntent.SIGN_IN)
        second = outbox.last_token(EmailKind.FEDERATED_VERIFICATION)

        assert again.value.status == FederatedStatus.PENDING_VERIFICATION
        assert again.value.message == PENDING_RESENT_MESSAGE
        assert second != first
        pending = next(iter(runtime.store.pending.values()))
        assert pending.attempts == 2
        assert (await federated.confirm_pending_registration(first)).outcome == Outcome.NOT_FOUND
        assert (await federated.confirm_pending_registration(second)).is_ok

    async def test_pending_confirmation_is_single_use(self, federated, outbox):
        federated.fetch_claims = AsyncMock(return_value=_claims(email_verified="false"))
        await federated.handle_assertion("id-token")
        token = outbox.last_token(EmailKind.FEDERATED_VERIFICATION)

        assert (await federated.confirm_pending_registration(token)).is_ok
        assert (await federated.confirm_pending_registration(token)).outcome == Outcome.NOT_FOUND

    async def test_confirmation_after_password_signup_links_that_account(self, runtime, federated, outbox):
        federated.fetch_claims = AsyncMock(return_value=_claims(email_verified="false"))
        await federated.handle_assertion("id-token")
        token = outbox.last_token(EmailKind.FEDERATED_VERIFICATION)
        grant = (
            await runtime.engine.register("fed.user@example.com", "Str0ng!Passw0rd", ip="10.1.1.3")
        ).value

        confirmed = await federated.confirm_pending_registration(token)

        assert confirmed.is_ok
        assert confirmed.value.id == grant.user.id
        assert confirmed.value.email_verified
        link = runtime.store.get_federated_link(AuthProvider.GOOGLE, "google-subject-1")
        assert link is not None
        assert link.user_id == grant.user.id
        assert runtime.store.pending == {}

    async def test_confirmation_refused_when_account_has_other_subject(self, runtime, federated, outbox):
        federated.fetch_claims = AsyncMock(
            return_value=_claims(sub="google-subject-2", email_verified="false")
        )
        await federated.handle_assertion("id-token")
        token = outbox.last_token(EmailKind.FEDERATED_VERIFICATION)
        federated.fetch_claims = AsyncMock(return_value=_claims())
        user = (await federated.handle_assertion("id-token")).value.user

        result = await federated.confirm_pending_registration(token)

        assert result.outcome == Outcome.CONFLICT
        assert result.message == SUBJECT_MISMATCH_MESSAGE
        links = runtime.store.list_federated_links(user.id)
        assert [link.provider_uid for link in links] == ["google-subject-1"]

    async def test_malformed_pending_token(self, federated):
        result = await federated.confirm_pending_registration("short")

        assert result.outcome == Outcome.INVALID


class TestEngineFederatedSignIn:
    async def test_created_account_gets_session(self, runtime, federated):
        result = await runtime.engine.federated_sign_in("id-token")

        assert result.is_ok
        payload = result.value.to_dict()
        assert payload["status"] == "created"
        assert payload["access_token"]
        assert (await runtime.sessions.resolve(payload["access_token"])).is_ok

    async def test_pending_outcome_has_no_session(self, runtime, federated):
        federated.fetch_claims = AsyncMock(return_value=_claims(email_verified="false"))

        result = await runtime.engine.federated_sign_in("id-token")

        assert result.is_ok
        assert result.value.grant is None
        assert result.value.to_dict()["email"] == "fed.user@example.com"

    async def test_conflict_maps_to_error_with_status(self, runtime, federated):
        await runtime.engine.register("fed.user@example.com", "Str0ng!Passw0rd", ip="10.1.1.2")

        result = await runtime.engine.federated_sign_in("id-token")
        error = result.as_error()

        assert error.status_code == 409
        assert error.detail["status"] == "conflict"
        assert error.detail["action"] == "signin_or_link"

    async def test_verify_federated_email_issues_session(self, runtime, federated, outbox):
        federated.fetch_claims = AsyncMock(return_value=_claims(email_verified="false"))
        await runtime.engine.federated_sign_in("id-token")
        token = outbox.last_token(EmailKind.FEDERATED_VERIFICATION)

        result = await runtime.engine.verify_federated_email(token)

        assert result.is_ok
        assert result.value.user.email == "fed.user@example.com"


class TestCleanup:
    async def test_expired_pending_registrations_are_reaped(self, runtime, federated):
        federated.fetch_claims = AsyncMock(return_value=_claims(email_verified="false"))
        await federated.handle_assertion("id-token")
        pending = next(iter(runtime.store.pending.values()))
        pending.expires_at = datetime(2000, 1, 1, tzinfo=timezone.utc)

        assert federated.cleanup_expired() == 1
        assert runtime.store.pending == {}
