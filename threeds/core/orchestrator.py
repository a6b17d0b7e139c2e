"""
3DS2 browser-flow orchestration.

This module drives one authentication attempt at a time:
1. Validates the card input (no server contact on failure)
2. Sends ``init`` and opens the 3DS Method monitoring frames
3. Waits for the fingerprint phase to finish, or for the fallback timer
4. Sends ``auth`` and branches on the transaction status
5. For a challenge, opens the challenge frame and waits for completion,
   then sends ``updateChallengeStatus`` and ``getAuthResult``
6. Reports the outcome and releases every frame

Inbound frame messages, the fallback timer and RPC completions all run on one
asyncio event loop. Each first-wins transition is a check-then-set on
TransactionState with no await in between, so duplicate or late events fall
through as no-ops.
"""

import asyncio
import inspect
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import BaseModel, Field

from .collector import BrowserInfoCollector
from .config import Settings, get_settings
from .errors import AuthenticationDeclinedError, ProtocolError, ThreeDSError
from .events import (
    ChallengePhaseComplete,
    FingerprintDelivered,
    FingerprintPhaseComplete,
    FrameEvent,
    Unrecognized,
    normalize_frame_message,
)
from .frames import FrameHost, FramePurpose, FrameRef
from .gateway import AuthResponse, RemoteCallGateway
from .logging import get_logger
from .state import Phase, TransactionState
from .validation import CardValidator, format_amount, parse_amount

logger = get_logger(__name__)


class TransStatus(str, Enum):
    """Single-character transaction status codes."""
    AUTHENTICATED = "Y"
    NOT_AUTHENTICATED = "N"
    ATTEMPTED = "A"
    REJECTED = "R"
    UNAVAILABLE = "U"
    DECOUPLED = "D"
    CHALLENGE = "C"


# transStatus -> (success, status label, message)
TRANS_STATUS_OUTCOMES = {
    TransStatus.AUTHENTICATED.value: (True, "success", "Payment Authenticated Successfully"),
    TransStatus.NOT_AUTHENTICATED.value: (False, "failed", "Authentication Failed - Not Authenticated"),
    TransStatus.ATTEMPTED.value: (True, "partial", "Authentication Attempted but Not Verified"),
    TransStatus.REJECTED.value: (False, "rejected", "Authentication Rejected by Issuer"),
    TransStatus.UNAVAILABLE.value: (False, "error", "Authentication Error - Technical Issue"),
    TransStatus.DECOUPLED.value: (True, "decoupled", "Decoupled Authentication Required - Please verify on your device"),
}
UNSPECIFIED_OUTCOME = (True, "complete", "Authentication Completed")


class AuthenticationAttempt(BaseModel):
    """Caller payload for one authentication attempt."""
    card_number: str
    amount: Union[int, float, str, Decimal]
    expiry_date: Optional[str] = Field(default=None, description="MM/YY")
    extra_fields: Dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class AuthenticationOutcome:
    success: bool
    status: str
    message: str
    trans_status: Optional[str]
    request_id: str
    server_transaction_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ChallengeInfo:
    challenge_url: str
    frame_id: str
    request_id: str
    server_transaction_id: Optional[str]
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


Callback = Callable[[Any], Optional[Awaitable[None]]]


@dataclass
class AuthenticationCallbacks:
    """Caller hooks. Each may be a plain function or a coroutine function."""
    on_outcome: Optional[Callback] = None
    on_failure: Optional[Callback] = None
    on_challenge_started: Optional[Callback] = None


def _consume_exception(future: asyncio.Future) -> None:
    # Attempts nobody waits on must not log "exception was never retrieved"
    if not future.cancelled():
        future.exception()


class ProtocolOrchestrator:
    """Owns the TransactionState of one attempt and sequences the protocol."""

    def __init__(
        self,
        gateway: RemoteCallGateway,
        frame_host: FrameHost,
        callbacks: Optional[AuthenticationCallbacks] = None,
        validator: Optional[CardValidator] = None,
        collector: Optional[BrowserInfoCollector] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.frame_host = frame_host
        self.callbacks = callbacks or AuthenticationCallbacks()
        self.validator = validator or CardValidator()
        self.collector = collector or BrowserInfoCollector()
        self.request_id = gateway.request_id

        self.state = TransactionState()
        self.outcome: Optional[AuthenticationOutcome] = None
        self.error: Optional[ThreeDSError] = None
        self.challenge: Optional[ChallengeInfo] = None

        self._fallback_handle: Optional[asyncio.TimerHandle] = None
        self._fallback_task: Optional[asyncio.Task] = None
        self._outcome_future: Optional[asyncio.Future] = None
        self._log = logger.bind(request_id=self.request_id)

        self.frame_host.set_message_handler(self.on_frame_message)

    # ------------------------------------------------------------------
    # Caller API
    # ------------------------------------------------------------------

    async def authenticate(self, attempt: AuthenticationAttempt) -> Dict[str, Any]:
        """
        Validate the attempt and start the protocol.

        Returns once ``init`` has succeeded and the fingerprint phase is armed;
        the rest of the flow is driven by frame messages and the fallback
        timer. Use ``wait_for_outcome`` or the callbacks for the result.

        Returns:
            Diagnostic snapshot after initialization

        Raises:
            ValidationError: Card input rejected, nothing sent to the server
            RemoteError: ``init`` failed or returned a malformed response
            ProtocolError: An attempt is already in flight
        """
        if self.state.in_flight:
            raise ProtocolError("an authentication attempt is already in progress")

        state = self._start_attempt()
        self._log.info(
            "Starting 3DS authentication",
            card_mask=CardValidator.mask_card_number(attempt.card_number or ""),
            amount=str(attempt.amount),
        )

        try:
            amount = self.validator.validate_attempt(attempt.card_number, attempt.amount, attempt.expiry_date)
            await self.initialize(attempt, amount=amount)
        except ThreeDSError as e:
            await self._fail(e, state)
            raise
        except Exception as e:
            await self._fail(ProtocolError(f"Authentication failed: {e}"), state)
            raise

        return self.diagnostics()

    async def initialize(self, attempt: AuthenticationAttempt, amount: Optional[Decimal] = None) -> None:
        """Send ``init``, open the monitoring frames and arm the fallback timer."""
        state = self.state
        if amount is None:
            amount = parse_amount(attempt.amount)

        state.advance(Phase.INITIALIZING)
        state.card_number = CardValidator.clean_card_number(attempt.card_number)
        state.amount = amount
        state.expiry_date = attempt.expiry_date
        state.extra_fields = dict(attempt.extra_fields)

        init_fields = dict(state.extra_fields)
        if attempt.expiry_date:
            init_fields["expiryDate"] = attempt.expiry_date

        self._log.info("Sending init request")
        response = await self.gateway.init(state.card_number, init_fields)
        if self._is_stale(state):
            return

        state.server_transaction_id = response.server_transaction_id
        if response.requestor_transaction_id:
            state.requestor_transaction_id = response.requestor_transaction_id
        state.callback_url = response.callback_url
        state.monitor_url = response.monitor_url
        state.auth_url = response.auth_url
        state.advance(Phase.AWAITING_FINGERPRINT)

        self._log.info(
            "Init response received",
            server_transaction_id=state.server_transaction_id,
            monitor_url=state.monitor_url,
            callback_url=state.callback_url,
        )

        # Armed before the frames load; the callback page can finish quickly
        self._arm_fallback_timer(state)
        await self._open_monitoring_frames(state)

    async def teardown(self) -> None:
        """Release frames and timers and clear transient state. Safe to call repeatedly."""
        self._cancel_fallback_timer()
        state = self.state

        if state.in_flight:
            state.advance(Phase.TERMINAL)
            self._log.info("Attempt abandoned by teardown", phase_before="in_flight")
            self._resolve_future(error=ProtocolError("authentication attempt was torn down"))

        if not state.torn_down:
            self._log.info("Cleaning up resources", frame_count=self.frame_host.frame_count)

        try:
            await self.frame_host.close_all()
        except Exception as e:
            self._log.warning("Frame cleanup failed", error=str(e))

        state.clear_transient()

    async def close(self) -> None:
        """Tear down and stop listening for frame messages."""
        await self.teardown()
        self.frame_host.set_message_handler(None)

    async def __aenter__(self) -> "ProtocolOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def wait_for_outcome(self, timeout: Optional[float] = None) -> AuthenticationOutcome:
        """Wait for the current attempt to finish; raises its error if it failed."""
        if self._outcome_future is None:
            raise ProtocolError("no authentication attempt has been started")
        return await asyncio.wait_for(asyncio.shield(self._outcome_future), timeout)

    def diagnostics(self) -> Dict[str, Any]:
        """Read-only snapshot for support and debugging."""
        return {
            "request_id": self.request_id,
            "transaction_state": self.state.to_dict(),
            "frame_count": self.frame_host.frame_count,
            "frames": [ref.to_dict() for ref in self.frame_host.open_frames()],
            "challenge_visible": self.state.challenge_frame is not None,
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "error": str(self.error) if self.error else None,
        }

    # ------------------------------------------------------------------
    # Inbound frame messages
    # ------------------------------------------------------------------

    async def on_frame_message(self, payload: Any, frame: Optional[FrameRef] = None) -> None:
        """Single entry point for every inbound frame message."""
        state = self.state
        for event in normalize_frame_message(payload):
            try:
                await self._dispatch(event, frame, state)
            except ThreeDSError as e:
                await self._fail(e, state)
            except Exception as e:
                self._log.exception("Error handling frame event")
                await self._fail(ProtocolError(f"Error processing 3DS response: {e}"), state)

    async def _dispatch(self, event: FrameEvent, frame: Optional[FrameRef], state: TransactionState) -> None:
        frame_id = frame.frame_id if frame else None

        if isinstance(event, Unrecognized):
            self._log.debug("Ignoring unrecognized frame message", reason=event.reason, frame_id=frame_id)
            return

        if self._is_stale(state) or state.phase == Phase.IDLE:
            self._log.debug("Ignoring frame event outside an attempt", event_type=type(event).__name__)
            return

        if isinstance(event, FingerprintDelivered):
            if state.phase not in (Phase.INITIALIZING, Phase.AWAITING_FINGERPRINT):
                self._log.debug("Late browser info ignored", phase=state.phase.value)
                return
            if state.store_fingerprint(event.payload):
                self._log.info("Browser info received from 3DS Server", frame_id=frame_id)
            return

        if isinstance(event, FingerprintPhaseComplete):
            await self._on_fingerprint_complete(event, state)
            return

        if isinstance(event, ChallengePhaseComplete):
            await self._on_challenge_complete(event, state)

    async def _on_fingerprint_complete(self, event: FingerprintPhaseComplete, state: TransactionState) -> None:
        if state.phase != Phase.AWAITING_FINGERPRINT:
            self._log.debug("Fingerprint completion outside fingerprint phase", phase=state.phase.value)
            return
        if not state.claim_fingerprint_phase():
            self._log.debug("Duplicate fingerprint completion ignored", event_name=event.token)
            return

        self._cancel_fallback_timer()
        self._log.info("Fingerprint phase complete", event_name=event.token)

        if state.fingerprint_payload is None:
            if not event.server_timed_out:
                raise ProtocolError("fingerprint phase completed without data")
            self._use_fallback_fingerprint(state)

        await self.run_auth_phase(state)

    async def _on_challenge_complete(self, event: ChallengePhaseComplete, state: TransactionState) -> None:
        # Only a displayed challenge can complete; stray tokens must not claim the guard
        if state.phase != Phase.IN_CHALLENGE:
            self._log.debug("Challenge completion outside challenge", phase=state.phase.value, event_name=event.token)
            return
        if not state.claim_challenge():
            self._log.debug("Duplicate challenge completion ignored", event_name=event.token)
            return

        self._log.info("Challenge completed", event_name=event.token)
        await self.resolve_challenge(state)

    # ------------------------------------------------------------------
    # Fallback timer
    # ------------------------------------------------------------------

    def _arm_fallback_timer(self, state: TransactionState) -> None:
        loop = asyncio.get_running_loop()
        self._fallback_handle = loop.call_later(self.settings.fingerprint_timeout, self._fallback_fired, state)

    def _fallback_fired(self, state: TransactionState) -> None:
        self._fallback_handle = None
        if state is not self.state:
            return
        self._fallback_task = asyncio.get_running_loop().create_task(self._run_fallback(state))

    def _cancel_fallback_timer(self) -> None:
        if self._fallback_handle is not None:
            self._fallback_handle.cancel()
            self._fallback_handle = None

        task = self._fallback_task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()
        self._fallback_task = None

    async def _run_fallback(self, state: TransactionState) -> None:
        # Re-check: a completion event may have won after the timer fired
        if self._is_stale(state) or state.phase != Phase.AWAITING_FINGERPRINT:
            return
        if not state.claim_fingerprint_phase():
            self._log.debug("Fallback suppressed, fingerprint phase already handled")
            return

        self._log.info("Browser info timeout - proceeding with fallback")
        try:
            self._use_fallback_fingerprint(state)
            await self.run_auth_phase(state)
        except ThreeDSError as e:
            await self._fail(e, state)
        except Exception as e:
            self._log.exception("Fallback continuation failed")
            await self._fail(ProtocolError(f"Authentication failed: {e}"), state)

    def _use_fallback_fingerprint(self, state: TransactionState) -> None:
        if state.fingerprint_payload is None:
            self._log.info("Creating fallback browser info")
            state.store_fingerprint(self.collector.collect_and_encode())

    # ------------------------------------------------------------------
    # Protocol phases
    # ------------------------------------------------------------------

    async def run_auth_phase(self, state: Optional[TransactionState] = None) -> None:
        """Send ``auth`` and branch on the returned transaction status."""
        state = state or self.state
        state.advance(Phase.AUTHENTICATING)

        if state.fingerprint_payload is None:
            raise ProtocolError("auth phase started without browser info")

        # Caller fields go last and may override protocol fields
        payload = {
            "acctNumber": state.card_number,
            "cardNumber": state.card_number,
            "browserInfo": state.fingerprint_payload,
            "cardExpiryDate": CardValidator.format_expiry_date(state.expiry_date) if state.expiry_date else None,
            "purchaseAmount": format_amount(state.amount),
            "threeDSServerTransID": state.server_transaction_id,
            "threeDSRequestorTransID": state.requestor_transaction_id,
            "authUrl": state.auth_url,
        }
        if state.expiry_date:
            payload["expiryDate"] = state.expiry_date
        payload.update(state.extra_fields)

        self._log.info("Sending auth request", server_transaction_id=state.server_transaction_id)
        response = await self.gateway.auth(payload)
        if self._is_stale(state):
            return

        state.trans_status = response.trans_status
        state.result_monitor_url = response.result_monitor_url

        result_monitor_url = state.take_result_monitor_url()
        if result_monitor_url:
            ref = await self.frame_host.open(FramePurpose.RESULT_MONITOR, result_monitor_url)
            if self._is_stale(state):
                await self.frame_host.close(ref)
                return
            state.result_monitor_frame = ref

        await self._handle_auth_response(response, state)

    async def _handle_auth_response(self, response: AuthResponse, state: TransactionState) -> None:
        trans_status = response.trans_status
        self._log.info("Auth response received", trans_status=trans_status)

        if trans_status == TransStatus.CHALLENGE.value:
            if not response.challenge_url:
                raise ProtocolError("challenge required but no challenge URL was supplied")
            await self._start_challenge(response, state)
            return

        if trans_status not in TRANS_STATUS_OUTCOMES:
            # Unknown codes are not fatal so newer server versions keep working
            self._log.warning("Unrecognized transStatus treated as completed", trans_status=trans_status)

        success, status, message = TRANS_STATUS_OUTCOMES.get(trans_status, UNSPECIFIED_OUTCOME)
        outcome = AuthenticationOutcome(
            success=success,
            status=status,
            message=message,
            trans_status=trans_status,
            request_id=self.request_id,
            server_transaction_id=state.server_transaction_id,
            details=response.details,
        )

        if not success:
            # Declines are reported through on_failure, carrying the outcome
            self.outcome = outcome
            await self._fail(AuthenticationDeclinedError(outcome), state)
            return

        await self._finish(outcome, state)

    async def _start_challenge(self, response: AuthResponse, state: TransactionState) -> None:
        state.advance(Phase.IN_CHALLENGE)
        state.challenge_url = response.challenge_url

        self._log.info("Challenge required")
        ref = await self.frame_host.open(FramePurpose.CHALLENGE, response.challenge_url)
        if self._is_stale(state):
            await self.frame_host.close(ref)
            return
        state.challenge_frame = ref

        self.challenge = ChallengeInfo(
            challenge_url=response.challenge_url,
            frame_id=ref.frame_id,
            request_id=self.request_id,
            server_transaction_id=state.server_transaction_id,
            details=response.details,
        )
        await self._emit("on_challenge_started", self.challenge)

    async def resolve_challenge(self, state: Optional[TransactionState] = None) -> None:
        """Send ``updateChallengeStatus`` then ``getAuthResult`` and report the outcome."""
        state = state or self.state
        state.advance(Phase.AWAITING_CHALLENGE_RESULT)

        server_transaction_id = state.server_transaction_id
        if not server_transaction_id:
            raise ProtocolError("Missing transaction ID")

        self._log.info("Updating challenge status")
        await self.gateway.update_challenge_status(server_transaction_id, self.settings.challenge_completed_status)
        if self._is_stale(state):
            return

        self._log.info("Getting auth result")
        result = await self.gateway.get_auth_result(server_transaction_id)
        if self._is_stale(state):
            return

        state.trans_status = result.trans_status
        known = TRANS_STATUS_OUTCOMES.get(result.trans_status)
        await self._finish(
            AuthenticationOutcome(
                success=known[0] if known else True,
                status=result.status or "completed",
                message=result.message or "Authentication Completed",
                trans_status=result.trans_status,
                request_id=self.request_id,
                server_transaction_id=server_transaction_id,
                details=result.details,
            ),
            state,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start_attempt(self) -> TransactionState:
        self._cancel_fallback_timer()
        self.state = TransactionState()
        self.outcome = None
        self.error = None
        self.challenge = None
        self._outcome_future = asyncio.get_running_loop().create_future()
        self._outcome_future.add_done_callback(_consume_exception)
        return self.state

    def _is_stale(self, state: TransactionState) -> bool:
        return state is not self.state or state.is_terminal

    async def _open_monitoring_frames(self, state: TransactionState) -> None:
        self._log.info("Setting up monitoring iframes")
        for purpose, url, attr in (
            (FramePurpose.MONITOR, state.monitor_url, "monitor_frame"),
            (FramePurpose.CALLBACK, state.callback_url, "callback_frame"),
        ):
            if not url:
                continue
            ref = await self.frame_host.open(purpose, url)
            if self._is_stale(state):
                await self.frame_host.close(ref)
                return
            setattr(state, attr, ref)

    async def _finish(self, outcome: AuthenticationOutcome, state: TransactionState) -> None:
        state.advance(Phase.TERMINAL)
        self.outcome = outcome
        await self.teardown()

        self._log.info(
            "3DS authentication finished",
            success=outcome.success,
            status=outcome.status,
            trans_status=outcome.trans_status,
        )
        await self._emit("on_outcome", outcome)
        self._resolve_future(result=outcome)

    async def _fail(self, error: ThreeDSError, state: TransactionState) -> None:
        if state is not self.state or state.is_terminal:
            self._log.warning("Error after attempt finished", error=str(error))
            return

        state.advance(Phase.TERMINAL)
        self.error = error
        self._log.error("3DS authentication failed", error=str(error), error_type=type(error).__name__)

        await self.teardown()
        await self._emit("on_failure", error)
        self._resolve_future(error=error)

    def _resolve_future(self, result: Optional[AuthenticationOutcome] = None, error: Optional[BaseException] = None) -> None:
        future = self._outcome_future
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    async def _emit(self, name: str, arg: Any) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            result = callback(arg)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self._log.exception("Callback raised", callback=name)
