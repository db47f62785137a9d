"""Log redaction and error-message sanitization."""

from authkernel.logging import (
    _redact_secrets,
    get_correlation_id,
    hash_identifier,
    sanitize_error_message,
    set_correlation_id,
)


def test_credentials_are_redacted():
    event = _redact_secrets(
        None,
        "info",
        {
            "event": "login",
            "password": "Str0ng!Pass",
            "refresh_token": "abc.def.ghi",
            "Authorization": "Bearer abc",
            "identity_id": "user-1",
        },
    )

    assert event["password"] == "[REDACTED]"
    assert event["refresh_token"] == "[REDACTED]"
    assert event["Authorization"] == "[REDACTED]"
    assert event["identity_id"] == "user-1"


def test_raw_email_is_replaced_by_digest():
    event = _redact_secrets(None, "info", {"event": "x", "email": "Alice@X.com"})

    assert "email" not in event
    assert event["email_hash"] == hash_identifier("alice@x.com")


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id()
    assert cid
    assert get_correlation_id() == cid
    assert set_correlation_id("req-1") == "req-1"


def test_sanitize_strips_sql_and_paths():
    message = sanitize_error_message(
        "database error: SELECT * FROM app_identity at /var/lib/postgres"
    )

    assert "SELECT" not in message
    assert "/var/lib" not in message


def test_sanitize_handles_empty():
    assert sanitize_error_message("") == "An error occurred"
