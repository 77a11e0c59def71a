"""Tests for log redaction and context binding."""

import structlog

from gatehouse.logging import (
    _add_correlation_id,
    _redact_credentials,
    auth_log_context,
    correlation_id_var,
    identity_digest,
    set_correlation_id,
)


class TestRedaction:
    def test_masks_credentials(self):
        event = _redact_credentials(
            None,
            "info",
            {"event": "password_reset_link_sent", "password": "hunter22", "api_token": "abc"},
        )
        assert event["event"] == "password_reset_link_sent"
        assert event["password"] == "hu***22"
        assert event["api_token"] == "***"

    def test_digests_pass_through(self):
        digest = identity_digest("alice@example.com")
        event = _redact_credentials(None, "info", {"event": "x", "email_hash": digest})
        assert event["email_hash"] == digest

    def test_nested_mappings(self):
        event = _redact_credentials(
            None, "info", {"event": "x", "credentials": {"email": "a@b.example", "remember": True}}
        )
        assert event["credentials"]["email"] == "a@***le"
        assert event["credentials"]["remember"] is True

    def test_non_string_values_kept(self):
        event = _redact_credentials(None, "info", {"event": "x", "recovery_codes_left": 3})
        assert event["recovery_codes_left"] == 3


class TestContext:
    def test_identity_digest_is_normalized(self):
        assert identity_digest(" Alice@Example.com ") == identity_digest("alice@example.com")
        assert len(identity_digest("alice@example.com")) == 16
        assert identity_digest(None) is None

    def test_correlation_id(self):
        token = correlation_id_var.set(None)
        try:
            cid = set_correlation_id()
            event = _add_correlation_id(None, "info", {"event": "x"})
            assert event["correlation_id"] == cid
        finally:
            correlation_id_var.reset(token)

    def test_auth_log_context_binds_values(self):
        with auth_log_context(guard="web", username_hash="abc"):
            assert structlog.contextvars.get_contextvars() == {
                "guard": "web",
                "username_hash": "abc",
            }
        assert "guard" not in structlog.contextvars.get_contextvars()
