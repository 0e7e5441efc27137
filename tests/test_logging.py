from tessera.logging import (
    _add_correlation_id,
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


class TestRedaction:
    def test_credentials_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_failed",
                "password": "hunter2-hunter2",
                "refresh_token": "eyJhbGciOi.abc.def",
                "email": "alice@example.com",
                "code": "123",
            },
        )
        assert event["event"] == "login_failed"
        assert event["password"] == "hu***r2"
        assert event["refresh_token"] == "ey***ef"
        assert event["email"] == "al***om"
        assert event["code"] == "***"

    def test_identifiers_are_kept(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "x", "token_id": "abc-123", "error_code": "invalid_token", "user_id": "u-1"},
        )
        assert event["token_id"] == "abc-123"
        assert event["error_code"] == "invalid_token"
        assert event["user_id"] == "u-1"


def test_correlation_id_is_attached():
    cid = set_correlation_id("req-42")
    assert cid == get_correlation_id() == "req-42"
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"
    assert set_correlation_id()


def test_sanitize_error_message():
    message = sanitize_error_message(
        "could not connect to postgresql://app:pw@10.0.0.5:5432/tessera"
    )
    assert "pw@" not in message
    assert "[redacted]" in message
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 600)) == 500
