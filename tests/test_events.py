"""Tests for inbound frame message normalization."""

import pytest

from threeds.core.events import (
    ChallengePhaseComplete,
    FingerprintDelivered,
    FingerprintPhaseComplete,
    Unrecognized,
    normalize_frame_message,
)


@pytest.mark.parametrize("token", ["3DSMethodFinished", "3DSMethodSkipped"])
def test_bare_fingerprint_tokens(token):
    """Test bare method tokens complete the fingerprint phase."""
    assert normalize_frame_message(token) == (FingerprintPhaseComplete(token=token),)


def test_server_timeout_token():
    """Test InitAuthTimedOut is a completion flagged as a server timeout."""
    (event,) = normalize_frame_message({"event": "InitAuthTimedOut"})

    assert isinstance(event, FingerprintPhaseComplete)
    assert event.server_timed_out is True


@pytest.mark.parametrize("token", ["Challenge:Completed", "AuthResultReady"])
def test_challenge_tokens(token):
    """Test both challenge tokens map to the same event in every shape."""
    expected = (ChallengePhaseComplete(token=token),)

    assert normalize_frame_message(token) == expected
    assert normalize_frame_message({"event": token}) == expected
    assert normalize_frame_message({"type": "3ds-notification", "event": token}) == expected


def test_param_precedes_completion():
    """Test a payload-carrying completion stores the payload first."""
    events = normalize_frame_message({"event": "3DSMethodFinished", "param": "blob"})

    assert events == (FingerprintDelivered(payload="blob"), FingerprintPhaseComplete(token="3DSMethodFinished"))


def test_param_only_notification():
    """Test a notification with only param delivers the payload."""
    events = normalize_frame_message({"type": "3ds-notification", "param": "blob"})

    assert events == (FingerprintDelivered(payload="blob"),)


def test_json_text_is_decoded():
    """Test JSON posted as text is parsed like a structured message."""
    events = normalize_frame_message('{"event": "AuthResultReady"}')

    assert events == (ChallengePhaseComplete(token="AuthResultReady"),)


def test_bytes_are_decoded():
    """Test byte payloads are decoded before classification."""
    assert normalize_frame_message(b"3DSMethodSkipped") == (FingerprintPhaseComplete(token="3DSMethodSkipped"),)


@pytest.mark.parametrize(
    "raw",
    [
        None,
        42,
        "hello",
        "{not json",
        ["3DSMethodFinished"],
        {"foo": "bar"},
        {"event": "SomethingElse"},
        {"event": "3DSMethodFinishedExtra"},
        {"type": "other", "param": "blob"},
        {"event": "Progress", "param": ""},
        b"\xff\xfe",
    ],
)
def test_unrecognized(raw):
    """Test unrelated traffic is tagged Unrecognized."""
    events = normalize_frame_message(raw)

    assert len(events) == 1
    assert isinstance(events[0], Unrecognized)
