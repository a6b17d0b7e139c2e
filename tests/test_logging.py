"""Tests for log redaction."""

from threeds.core.logging import RedactSensitiveData, get_logger


def test_redacts_card_and_fingerprint_fields():
    """Test card data and browser info never reach the log output."""
    processor = RedactSensitiveData()

    result = processor(None, "info", {
        "event": "Sending auth request",
        "cardNumber": "4111111111111111",
        "acctNumber": "4111111111111111",
        "browserInfo": "eyJ...",
        "cardExpiryDate": "2512",
        "relay_shared_secret": "abc",
    })

    assert result["event"] == "Sending auth request"
    for key in ("cardNumber", "acctNumber", "browserInfo", "cardExpiryDate", "relay_shared_secret"):
        assert result[key] == "***REDACTED***"


def test_masked_values_pass_through():
    """Test *_mask fields are already safe."""
    result = RedactSensitiveData()(None, "info", {"card_mask": "411111******1111"})

    assert result["card_mask"] == "411111******1111"


def test_nested_payloads_redacted():
    """Test redaction reaches nested dicts and dicts inside lists."""
    result = RedactSensitiveData()(None, "info", {
        "payload": {"operation": "auth", "cardNumber": "4111111111111111"},
        "items": [{"cvv": "123"}, "plain"],
    })

    assert result["payload"]["operation"] == "auth"
    assert result["payload"]["cardNumber"] == "***REDACTED***"
    assert result["items"] == [{"cvv": "***REDACTED***"}, "plain"]


def test_get_logger_binds_context():
    logger = get_logger("threeds.test").bind(request_id="req_1")

    logger.info("bound logger works")
