from accountcore.logging import (
    _add_correlation_id,
    _redact_sensitive,
    correlation_id_var,
    set_correlation_id,
)


class TestRedaction:
    def test_masks_credentials_and_addresses(self):
        event = _redact_sensitive(
            None,
            "info",
            {
                "event": "login_failed",
                "password": "hunter2-long",
                "refresh_token": "abcdefghijkl",
                "email": "alice@example.com",
                "account_id": "1234",
            },
        )
        assert event["password"] == "hu***ng"
        assert event["refresh_token"] == "ab***kl"
        assert event["email"] == "al***@example.com"
        assert event["account_id"] == "1234"

    def test_short_values_fully_masked(self):
        assert _redact_sensitive(None, "info", {"secret": "abc"})["secret"] == "***"

    def test_metadata_keys_untouched(self):
        event = _redact_sensitive(
            None, "info", {"token_kind": "refresh", "email_delivered": True}
        )
        assert event == {"token_kind": "refresh", "email_delivered": True}


def test_correlation_id_added():
    token = correlation_id_var.set(None)
    try:
        assert "correlation_id" not in _add_correlation_id(None, "info", {})
        cid = set_correlation_id("req-42")
        assert cid == "req-42"
        assert _add_correlation_id(None, "info", {})["correlation_id"] == "req-42"
    finally:
        correlation_id_var.reset(token)
