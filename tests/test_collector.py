"""Tests for the fallback browser-info payload."""

import base64
import json

from threeds.core.collector import BrowserInfoCollector, local_timezone_offset_minutes

EXPECTED_KEYS = {
    "browserUserAgent",
    "browserLanguage",
    "browserScreenWidth",
    "browserScreenHeight",
    "browserColorDepth",
    "browserTZ",
    "browserAcceptHeader",
    "browserJavaEnabled",
    "browserJavascriptEnabled",
    "browserIP",
}


def test_default_profile_has_all_fields():
    """Test the default payload carries every browser-info field."""
    info = BrowserInfoCollector().collect_browser_info()

    assert set(info) == EXPECTED_KEYS
    assert info["browserJavascriptEnabled"] is True
    assert info["browserUserAgent"]
    assert info["browserTZ"] == str(local_timezone_offset_minutes())


def test_overrides_from_real_browser():
    """Test browser values read from a page replace the defaults."""
    collector = BrowserInfoCollector({
        "userAgent": "HeadlessChrome/121",
        "language": "fr-FR",
        "screenWidth": 1280,
        "screenHeight": 720,
        "colorDepth": 30,
        "timezoneOffset": -60,
        "javaEnabled": False,
    })

    info = collector.collect_browser_info()

    assert info["browserUserAgent"] == "HeadlessChrome/121"
    assert info["browserLanguage"] == "fr-FR"
    assert info["browserScreenWidth"] == "1280"
    assert info["browserScreenHeight"] == "720"
    assert info["browserColorDepth"] == "30"
    assert info["browserTZ"] == "-60"
    assert info["browserJavaEnabled"] is False


def test_encoded_payload_round_trips_to_json():
    """Test the encoded payload is non-empty base64 JSON."""
    collector = BrowserInfoCollector({"language": "de-DE"})

    encoded = collector.collect_and_encode()

    assert encoded
    decoded = json.loads(base64.b64decode(encoded))
    assert decoded["browserLanguage"] == "de-DE"
