"""Tests for log redaction."""

from shopcore.logging import _redact_pii


def _redact(**fields):
    return _redact_pii(None, "info", dict(fields))


def test_secrets_and_codes_masked():
    event = _redact(refresh_token="abcdefghijklmnop", code="123456", api_key="short")

    assert event["refresh_token"] == "ab***op"
    assert event["code"] == "***"
    assert event["api_key"] == "***"


def test_descriptive_fields_kept():
    event = _redact(token_type="access", error_code="unauthorized", status_code="401")

    assert event == {"token_type": "access", "error_code": "unauthorized", "status_code": "401"}


def test_phone_numbers_masked():
    event = _redact(phone="9876543210", error="lookup failed for 9876543210")

    assert event["phone"] != "9876543210"
    assert "9876543210" not in event["error"]
