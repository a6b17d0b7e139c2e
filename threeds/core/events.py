"""
Normalization of inbound frame messages.

Frames post messages in three shapes:

- an object with an ``event`` field, optionally carrying ``param``
  (the browser-info blob)
- a typed notification ``{"type": "3ds-notification", "event": ..., "param": ...}``
- a bare string token such as ``"3DSMethodFinished"``

The channel is untrusted and shared with unrelated page traffic, so anything
that does not match becomes ``Unrecognized`` and is ignored downstream.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

NOTIFICATION_TYPE = "3ds-notification"

FINGERPRINT_COMPLETE_TOKENS = frozenset({"3DSMethodFinished", "3DSMethodSkipped"})
SERVER_TIMEOUT_TOKENS = frozenset({"InitAuthTimedOut"})
CHALLENGE_COMPLETE_TOKENS = frozenset({"Challenge:Completed", "AuthResultReady"})


@dataclass(frozen=True)
class FingerprintDelivered:
    payload: str


@dataclass(frozen=True)
class FingerprintPhaseComplete:
    token: str
    server_timed_out: bool = False


@dataclass(frozen=True)
class ChallengePhaseComplete:
    token: str


@dataclass(frozen=True)
class Unrecognized:
    reason: str


FrameEvent = Union[FingerprintDelivered, FingerprintPhaseComplete, ChallengePhaseComplete, Unrecognized]


def _classify_token(token: Any) -> Optional[FrameEvent]:
    if not isinstance(token, str):
        return None
    token = token.strip()
    if token in FINGERPRINT_COMPLETE_TOKENS:
        return FingerprintPhaseComplete(token=token)
    if token in SERVER_TIMEOUT_TOKENS:
        return FingerprintPhaseComplete(token=token, server_timed_out=True)
    if token in CHALLENGE_COMPLETE_TOKENS:
        return ChallengePhaseComplete(token=token)
    return None


def _decode_string(raw: str) -> Any:
    # Some 3DS Servers post JSON text instead of structured clones
    stripped = raw.strip()
    if stripped.startswith("{"):
        try:
            return json.loads(stripped)
        except ValueError:
            return raw
    return raw


def normalize_frame_message(raw: Any) -> Tuple[FrameEvent, ...]:
    """
    Map one raw inbound message to the events it carries, in processing order.

    A message carrying both ``param`` and a phase token yields
    ``FingerprintDelivered`` first so the payload is stored before the phase
    completes.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return (Unrecognized(reason="undecodable bytes"),)

    if isinstance(raw, str):
        raw = _decode_string(raw)
        if isinstance(raw, str):
            event = _classify_token(raw)
            return (event,) if event else (Unrecognized(reason="unknown token"),)

    if not isinstance(raw, dict):
        return (Unrecognized(reason=f"unsupported shape {type(raw).__name__}"),)

    if "event" not in raw and raw.get("type") != NOTIFICATION_TYPE:
        return (Unrecognized(reason="object without event"),)

    events = []
    param = raw.get("param")
    if isinstance(param, str) and param:
        events.append(FingerprintDelivered(payload=param))

    phase_event = _classify_token(raw.get("event"))
    if phase_event:
        events.append(phase_event)

    if not events:
        return (Unrecognized(reason="unknown event"),)
    return tuple(events)


__all__ = [
    "FingerprintDelivered",
    "FingerprintPhaseComplete",
    "ChallengePhaseComplete",
    "Unrecognized",
    "FrameEvent",
    "normalize_frame_message",
]
