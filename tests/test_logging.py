from pmoguard.logging import (
    _redact_credentials,
    get_correlation_id,
    hash_identifier,
    sanitize_error_message,
    set_correlation_id,
)


class TestRedaction:
    def test_credential_keys_are_masked(self):
        event = _redact_credentials(
            None,
            "info",
            {
                "event": "login_failed",
                "password": "hunter2-secret",
                "token": "abc.def.ghi",
                "user_email": "a@example.com",
                "email_hash": "0123456789abcdef",
                "user_id": "u1",
            },
        )
        assert event["event"] == "login_failed"
        assert event["password"] == "hu***et"
        assert event["token"] == "ab***hi"
        assert event["user_email"] == "a@***om"
        assert event["email_hash"] == "0123456789abcdef"
        assert event["user_id"] == "u1"

    def test_short_values_fully_masked(self):
        assert _redact_credentials(None, "info", {"secret": "abc"})["secret"] == "***"


class TestHelpers:
    def test_hash_identifier_is_stable_and_normalized(self):
        assert hash_identifier("A@Example.com ") == hash_identifier("a@example.com")
        assert len(hash_identifier("a@example.com")) == 16
        assert hash_identifier(None) is None

    def test_correlation_id_generated_or_kept(self):
        assert set_correlation_id("req-1") == "req-1"
        assert get_correlation_id() == "req-1"
        generated = set_correlation_id()
        assert generated and generated != "req-1"

    def test_sanitize_strips_paths_and_urls(self):
        message = sanitize_error_message("failed reading /var/lib/pmo/state.json via redis://:pw@cache:6379")
        assert "/var/lib" not in message
        assert "redis://" not in message

    def test_sanitize_truncates(self):
        assert len(sanitize_error_message("x" * 500)) == 200

    def test_sanitize_empty(self):
        assert sanitize_error_message("") == "An error occurred"
