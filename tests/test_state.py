"""Tests for TransactionState lifecycle and guards."""

import pytest

from threeds.core.errors import ProtocolError
from threeds.core.frames import FramePurpose, FrameRef
from threeds.core.state import VALID_TRANSITIONS, Phase, TransactionState


def _to_fingerprint(state):
    state.advance(Phase.INITIALIZING)
    state.advance(Phase.AWAITING_FINGERPRINT)
    return state


class TestLifecycle:
    """Tests for phase transitions."""

    def test_happy_path_with_challenge(self):
        """Test the full challenge path is legal."""
        state = _to_fingerprint(TransactionState())
        for phase in (Phase.AUTHENTICATING, Phase.IN_CHALLENGE, Phase.AWAITING_CHALLENGE_RESULT, Phase.TERMINAL):
            state.advance(phase)

        assert state.is_terminal
        assert not state.in_flight

    @pytest.mark.parametrize("phase", [p for p in Phase if p != Phase.TERMINAL])
    def test_terminal_reachable_from_every_phase(self, phase):
        """Test the failure path is always open."""
        assert Phase.TERMINAL in VALID_TRANSITIONS[phase]

    def test_skipping_phases_rejected(self):
        """Test auth cannot start before init finished."""
        state = TransactionState()
        state.advance(Phase.INITIALIZING)

        with pytest.raises(ProtocolError):
            state.advance(Phase.AUTHENTICATING)

    def test_terminal_is_final(self):
        """Test nothing leaves TERMINAL."""
        state = TransactionState()
        state.advance(Phase.TERMINAL)

        with pytest.raises(ProtocolError):
            state.advance(Phase.INITIALIZING)

    def test_in_flight(self):
        """Test in_flight is true strictly between IDLE and TERMINAL."""
        state = TransactionState()
        assert not state.in_flight

        state.advance(Phase.INITIALIZING)
        assert state.in_flight


class TestGuards:
    """Tests for first-wins guards and payload storage."""

    def test_fingerprint_claim_first_wins(self):
        """Test only the first claimant proceeds."""
        state = TransactionState()

        assert state.claim_fingerprint_phase() is True
        assert state.claim_fingerprint_phase() is False
        assert state.fingerprint_event_received is True

    def test_challenge_claim_first_wins(self):
        state = TransactionState()

        assert state.claim_challenge() is True
        assert state.claim_challenge() is False

    def test_store_fingerprint_keeps_first_non_empty(self):
        """Test empty payloads are skipped and the first real one is kept."""
        state = TransactionState()

        assert state.store_fingerprint("") is False
        assert state.store_fingerprint("first") is True
        assert state.store_fingerprint("second") is False
        assert state.fingerprint_payload == "first"

    def test_result_monitor_url_consumed_once(self):
        state = TransactionState()
        state.result_monitor_url = "https://3ds.example.test/result"

        assert state.take_result_monitor_url() == "https://3ds.example.test/result"
        assert state.take_result_monitor_url() is None


class TestServerTransactionId:
    """Tests for the server transaction id."""

    def test_set_once(self):
        state = TransactionState()
        state.server_transaction_id = "srv-1"
        state.server_transaction_id = "srv-1"

        assert state.server_transaction_id == "srv-1"

    def test_cannot_change(self):
        """Test a different id after the first is a protocol error."""
        state = TransactionState()
        state.server_transaction_id = "srv-1"

        with pytest.raises(ProtocolError):
            state.server_transaction_id = "srv-2"

    def test_cannot_be_empty(self):
        with pytest.raises(ProtocolError):
            TransactionState().server_transaction_id = ""

    def test_requestor_id_generated(self):
        """Test each state gets its own requestor transaction id."""
        assert TransactionState().requestor_transaction_id != TransactionState().requestor_transaction_id


class TestClearTransient:
    """Tests for teardown of per-attempt data."""

    def test_clears_sensitive_and_frame_data(self):
        state = _to_fingerprint(TransactionState())
        state.server_transaction_id = "srv-1"
        state.card_number = "4111111111111111"
        state.store_fingerprint("blob")
        state.claim_fingerprint_phase()
        state.monitor_frame = FrameRef(frame_id="monitor-1", purpose=FramePurpose.MONITOR, url="https://x.test")

        state.clear_transient()

        assert state.card_number is None
        assert state.fingerprint_payload is None
        assert state.frame_refs() == []
        assert state.torn_down is True
        assert state.server_transaction_id == "srv-1"
        assert state.fingerprint_event_received is True
        assert state.phase == Phase.AWAITING_FINGERPRINT

    def test_to_dict_masks_card(self):
        """Test the diagnostic view never holds the full card number."""
        state = TransactionState()
        state.card_number = "4111111111111111"
        state.store_fingerprint("blob")

        data = state.to_dict()

        assert data["card_mask"] == "411111******1111"
        assert "4111111111111111" not in str(data)
        assert "blob" not in str(data)
        assert data["has_fingerprint"] is True
