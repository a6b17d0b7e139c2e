"""Per-attempt transaction state and its lifecycle."""

import uuid
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from .errors import ProtocolError
from .frames import FrameRef
from .validation import CardValidator


class Phase(str, Enum):
    """Lifecycle phase of one authentication attempt."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    AWAITING_FINGERPRINT = "awaiting_fingerprint"
    AUTHENTICATING = "authenticating"
    IN_CHALLENGE = "in_challenge"
    AWAITING_CHALLENGE_RESULT = "awaiting_challenge_result"
    TERMINAL = "terminal"


# TERMINAL is reachable from every non-terminal phase (failure path)
VALID_TRANSITIONS: Dict[Phase, FrozenSet[Phase]] = {
    Phase.IDLE: frozenset({Phase.INITIALIZING, Phase.TERMINAL}),
    Phase.INITIALIZING: frozenset({Phase.AWAITING_FINGERPRINT, Phase.TERMINAL}),
    Phase.AWAITING_FINGERPRINT: frozenset({Phase.AUTHENTICATING, Phase.TERMINAL}),
    Phase.AUTHENTICATING: frozenset({Phase.IN_CHALLENGE, Phase.TERMINAL}),
    Phase.IN_CHALLENGE: frozenset({Phase.AWAITING_CHALLENGE_RESULT, Phase.TERMINAL}),
    Phase.AWAITING_CHALLENGE_RESULT: frozenset({Phase.TERMINAL}),
    Phase.TERMINAL: frozenset(),
}


class TransactionState:
    """
    Mutable record for one authentication attempt.

    Owned by a single ProtocolOrchestrator. Guards are claimed with
    check-then-set methods that never await, so the first caller on the
    event loop wins.
    """

    def __init__(self):
        self.phase: Phase = Phase.IDLE
        self.requestor_transaction_id: str = str(uuid.uuid4())
        self._server_transaction_id: Optional[str] = None

        # Frame references (the FrameHost owns the frames)
        self.monitor_frame: Optional[FrameRef] = None
        self.callback_frame: Optional[FrameRef] = None
        self.result_monitor_frame: Optional[FrameRef] = None
        self.challenge_frame: Optional[FrameRef] = None

        # Server-supplied URLs
        self.callback_url: Optional[str] = None
        self.monitor_url: Optional[str] = None
        self.auth_url: Optional[str] = None
        self.result_monitor_url: Optional[str] = None
        self.challenge_url: Optional[str] = None

        self.fingerprint_payload: Optional[str] = None
        self.fingerprint_event_received: bool = False
        self.challenge_acknowledged: bool = False

        # Caller payload retained for the fallback continuation
        self.card_number: Optional[str] = None
        self.amount: Optional[Decimal] = None
        self.expiry_date: Optional[str] = None
        self.extra_fields: Dict[str, Any] = {}

        self.trans_status: Optional[str] = None
        self.torn_down: bool = False

    @property
    def server_transaction_id(self) -> Optional[str]:
        return self._server_transaction_id

    @server_transaction_id.setter
    def server_transaction_id(self, value: str) -> None:
        if not value:
            raise ProtocolError("server transaction id must not be empty")
        if self._server_transaction_id is not None and self._server_transaction_id != value:
            raise ProtocolError("server transaction id is immutable once set")
        self._server_transaction_id = value

    @property
    def is_terminal(self) -> bool:
        return self.phase == Phase.TERMINAL

    @property
    def in_flight(self) -> bool:
        return self.phase not in (Phase.IDLE, Phase.TERMINAL)

    def advance(self, to: Phase) -> None:
        """Move to the next phase, rejecting transitions the lifecycle does not allow."""
        if to not in VALID_TRANSITIONS[self.phase]:
            raise ProtocolError(f"illegal transition {self.phase.value} -> {to.value}")
        self.phase = to

    def claim_fingerprint_phase(self) -> bool:
        """Return True for the first caller only."""
        if self.fingerprint_event_received:
            return False
        self.fingerprint_event_received = True
        return True

    def claim_challenge(self) -> bool:
        """Return True for the first caller only."""
        if self.challenge_acknowledged:
            return False
        self.challenge_acknowledged = True
        return True

    def store_fingerprint(self, payload: str) -> bool:
        """Keep the first non-empty payload; later ones are ignored."""
        if not payload or self.fingerprint_payload is not None:
            return False
        self.fingerprint_payload = payload
        return True

    def take_result_monitor_url(self) -> Optional[str]:
        url, self.result_monitor_url = self.result_monitor_url, None
        return url

    def frame_refs(self) -> List[FrameRef]:
        return [
            ref for ref in (self.monitor_frame, self.callback_frame, self.result_monitor_frame, self.challenge_frame)
            if ref is not None
        ]

    def clear_transient(self) -> None:
        """Drop frame refs, URLs, fingerprint and caller payload. Guards and ids stay."""
        self.monitor_frame = None
        self.callback_frame = None
        self.result_monitor_frame = None
        self.challenge_frame = None
        self.callback_url = None
        self.monitor_url = None
        self.auth_url = None
        self.result_monitor_url = None
        self.challenge_url = None
        self.fingerprint_payload = None
        self.card_number = None
        self.amount = None
        self.expiry_date = None
        self.extra_fields = {}
        self.torn_down = True

    def to_dict(self) -> Dict[str, Any]:
        """Diagnostic view; card number masked, fingerprint reduced to a flag."""
        return {
            "phase": self.phase.value,
            "server_transaction_id": self.server_transaction_id,
            "requestor_transaction_id": self.requestor_transaction_id,
            "fingerprint_event_received": self.fingerprint_event_received,
            "challenge_acknowledged": self.challenge_acknowledged,
            "has_fingerprint": self.fingerprint_payload is not None,
            "card_mask": CardValidator.mask_card_number(self.card_number) if self.card_number else None,
            "amount": str(self.amount) if self.amount is not None else None,
            "trans_status": self.trans_status,
            "torn_down": self.torn_down,
        }
