from identity_engine.logging import (
    _redact_identity_fields,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def test_credentials_are_masked_and_addresses_shortened():
    event = _redact_identity_fields(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "Str0ng!Passw0rd",
            "token_hash": "abcdef0123456789",
            "email": "john.doe@example.com",
            "event_type": "login_failed",
            "tokens": 3,
        },
    )

    assert event["password"] == "[redacted]"
    assert event["token_hash"] == "[redacted]"
    assert event["email"] == "jo***@example.com"
    assert event["event_type"] == "login_failed"
    assert event["tokens"] == 3


def test_correlation_id_is_generated_when_missing():
    cid = set_correlation_id(None)

    assert cid
    assert get_correlation_id() == cid
    assert set_correlation_id("req-1") == "req-1"


def test_sanitize_strips_internal_detail():
    message = sanitize_error_message(
        'duplicate key value violates constraint "app_user_email_key" for bob@example.com'
    )

    assert "app_user_email_key" not in message
    assert "bob@example.com" not in message
    assert sanitize_error_message("") == "An error occurred"
