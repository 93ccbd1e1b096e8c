from authkernel.logging import (
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


class TestRedaction:
    def test_contact_details_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "otp_generated",
                "identifier": "someone@example.com",
                "email": "someone@example.com",
                "destination_phone": "+919876543210",
            },
        )
        assert event["event"] == "otp_generated"
        assert event["identifier"] == "so***om"
        assert event["email"] == "so***om"
        assert event["destination_phone"] == "+9***10"

    def test_codes_fully_masked(self):
        event = _redact_pii(None, "info", {"event": "x", "code": "12345", "otp_code": "9876"})
        assert event["code"] == "***"
        assert event["otp_code"] == "***"

    def test_short_values_masked(self):
        event = _redact_pii(None, "info", {"event": "x", "refresh_token": "abc"})
        assert event["refresh_token"] == "***"

    def test_other_fields_untouched(self):
        event = _redact_pii(None, "info", {"event": "x", "user_id": 42, "route": "login"})
        assert event == {"event": "x", "user_id": 42, "route": "login"}


class TestCorrelationId:
    def test_generated_when_missing(self):
        cid = set_correlation_id()
        assert cid
        assert get_correlation_id() == cid

    def test_client_value_kept(self):
        assert set_correlation_id("abc-123") == "abc-123"
        assert get_correlation_id() == "abc-123"


class TestSanitizeErrorMessage:
    def test_strips_connection_strings(self):
        cleaned = sanitize_error_message("cannot reach redis://:pw@cache:6379/0 now")
        assert "pw@cache" not in cleaned
        assert "[redacted]" in cleaned

    def test_empty_input(self):
        assert sanitize_error_message("") == "An error occurred"

    def test_long_messages_truncated(self):
        assert len(sanitize_error_message("x" * 900)) == 500
