"""Attempt endpoints and HMAC-verified frame message relay."""

import hashlib
import hmac
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from ..core.browser import get_browser_manager
from ..core.collector import BrowserInfoCollector
from ..core.config import FrameBackend, get_settings
from ..core.errors import (
    ConfigurationError,
    InvalidSignatureError,
    ProtocolError,
    RemoteError,
    TimestampTooOldError,
    ValidationError,
)
from ..core.frames import RelayFrameHost
from ..core.gateway import RemoteCallGateway
from ..core.logging import get_logger
from ..core.orchestrator import AuthenticationAttempt, ProtocolOrchestrator

logger = get_logger(__name__)
router = APIRouter()

OrchestratorFactory = Callable[[], Awaitable[ProtocolOrchestrator]]


@dataclass
class AttemptRecord:
    """One hosted authentication attempt."""
    attempt_id: str
    orchestrator: ProtocolOrchestrator
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# In-memory attempt registry (single process; attempts do not survive restarts)
_attempts: Dict[str, AttemptRecord] = {}
_attempts_lock = threading.Lock()


class RelayedMessage(BaseModel):
    """One message a front-end received from a rendered frame."""
    payload: Any = Field(default=None, description="event.data exactly as posted by the frame")
    frame_id: Optional[str] = Field(default=None, description="Frame the message came from, if known")


def get_orchestrator_factory(request: Request) -> OrchestratorFactory:
    """Build orchestrators for the configured frame backend."""
    collector = getattr(request.app.state, "collector", None) or BrowserInfoCollector()

    async def factory() -> ProtocolOrchestrator:
        settings = get_settings()
        gateway = RemoteCallGateway.from_settings(settings)
        if settings.frame_backend == FrameBackend.PLAYWRIGHT:
            frame_host = await get_browser_manager().new_frame_host()
        else:
            frame_host = RelayFrameHost(name=gateway.request_id)
        return ProtocolOrchestrator(gateway, frame_host, collector=collector, settings=settings)

    return factory


def verify_hmac_signature(payload: bytes, timestamp: str, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature of a relayed message.

    Args:
        payload: Raw request body bytes
        timestamp: Request timestamp from X-Timestamp header
        signature: HMAC signature from X-Signature header
        secret: Shared secret for HMAC computation

    Returns:
        True if signature is valid, False otherwise
    """
    message = f"{timestamp}.{payload.decode('utf-8')}"
    expected_signature = hmac.new(
        secret.encode('utf-8'),
        message.encode('utf-8'),
        hashlib.sha256
    ).hexdigest()

    # Constant-time comparison
    return hmac.compare_digest(signature, expected_signature)


def verify_timestamp(timestamp: str, tolerance_seconds: int = 300) -> None:
    """
    Verify that timestamp is within acceptable window.

    Raises:
        TimestampTooOldError: If timestamp is outside tolerance window
    """
    try:
        request_time = int(timestamp)
    except ValueError:
        raise TimestampTooOldError(f"Invalid timestamp format: {timestamp}")

    age = abs(int(time.time()) - request_time)
    if age > tolerance_seconds:
        logger.warning(
            "Invalid timestamp - exceeds tolerance",
            timestamp=timestamp,
            age_seconds=age,
            tolerance_seconds=tolerance_seconds,
            security_event="invalid_timestamp",
        )
        raise TimestampTooOldError(
            f"Request timestamp is {age}s old, exceeds tolerance of {tolerance_seconds}s"
        )


async def _dispose(orchestrator: ProtocolOrchestrator) -> None:
    await orchestrator.close()
    dispose = getattr(orchestrator.frame_host, "dispose", None)
    if dispose is not None:
        await dispose()


def _get_record(attempt_id: str) -> AttemptRecord:
    with _attempts_lock:
        record = _attempts.get(attempt_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Attempt {attempt_id} not found")
    return record


def _describe(record: AttemptRecord) -> Dict[str, Any]:
    orchestrator = record.orchestrator
    return {
        "attempt_id": record.attempt_id,
        "created_at": record.created_at.isoformat(),
        "challenge": orchestrator.challenge.to_dict() if orchestrator.challenge else None,
        **orchestrator.diagnostics(),
    }


async def cleanup_old_attempts(
    max_age_minutes: Optional[int] = None,
    abandon_after_minutes: Optional[int] = None,
) -> int:
    """
    Forget finished attempts older than the retention window.

    Attempts still in flight (an abandoned challenge has no timeout) are
    disposed once they pass the absolute age limit.

    Returns:
        Number of attempts cleaned up
    """
    settings = get_settings()
    if max_age_minutes is None:
        max_age_minutes = settings.attempt_retention_minutes
    if abandon_after_minutes is None:
        abandon_after_minutes = settings.attempt_max_age_minutes

    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=max_age_minutes)
    abandon_cutoff = now - timedelta(minutes=abandon_after_minutes)
    with _attempts_lock:
        expired = [
            attempt_id for attempt_id, record in _attempts.items()
            if record.created_at < abandon_cutoff
            or (record.created_at < cutoff and not record.orchestrator.state.in_flight)
        ]
        records = [_attempts.pop(attempt_id) for attempt_id in expired]

    abandoned = 0
    for record in records:
        if record.orchestrator.state.in_flight:
            abandoned += 1
            logger.warning(
                "Disposing abandoned attempt",
                attempt_id=record.attempt_id,
                phase=record.orchestrator.state.phase.value,
            )
        await _dispose(record.orchestrator)

    if records:
        logger.info(
            "Cleaned up old attempts",
            count=len(records),
            abandoned=abandoned,
            max_age_minutes=max_age_minutes,
        )
    return len(records)


async def shutdown_attempts() -> None:
    """Tear down every hosted attempt."""
    with _attempts_lock:
        records = list(_attempts.values())
        _attempts.clear()
    for record in records:
        await _dispose(record.orchestrator)


@router.post("/attempts")
async def create_attempt(
    attempt: AuthenticationAttempt,
    factory: OrchestratorFactory = Depends(get_orchestrator_factory),
):
    """Validate card input, send init, and return the frames to render."""
    await cleanup_old_attempts()

    try:
        orchestrator = await factory()
    except ConfigurationError as e:
        logger.error("Cannot create attempt", error=str(e))
        raise HTTPException(status_code=503, detail=str(e))

    attempt_id = str(uuid.uuid4())
    try:
        await orchestrator.authenticate(attempt)
    except ValidationError as e:
        await _dispose(orchestrator)
        raise HTTPException(status_code=400, detail=str(e))
    except RemoteError as e:
        await _dispose(orchestrator)
        raise HTTPException(status_code=502, detail=str(e))
    except ProtocolError as e:
        await _dispose(orchestrator)
        raise HTTPException(status_code=409, detail=str(e))

    record = AttemptRecord(attempt_id=attempt_id, orchestrator=orchestrator)
    with _attempts_lock:
        _attempts[attempt_id] = record

    logger.info("Attempt created", attempt_id=attempt_id, request_id=orchestrator.request_id)
    return _describe(record)


@router.post("/attempts/{attempt_id}/messages")
async def relay_message(
    attempt_id: str,
    message: RelayedMessage,
    request: Request,
    x_timestamp: Optional[str] = Header(default=None, alias="X-Timestamp"),
    x_signature: Optional[str] = Header(default=None, alias="X-Signature"),
):
    """
    Relay one frame message into the attempt's orchestrator.

    When THREEDS_RELAY_SHARED_SECRET is set the request must carry
    X-Timestamp and X-Signature (HMAC-SHA256 over "<timestamp>.<body>").
    """
    settings = get_settings()

    if settings.relay_shared_secret:
        body = await request.body()
        try:
            if not x_timestamp or not x_signature:
                raise InvalidSignatureError("Missing X-Timestamp or X-Signature header")
            verify_timestamp(x_timestamp, settings.relay_timestamp_tolerance)
            if not verify_hmac_signature(body, x_timestamp, x_signature, settings.relay_shared_secret):
                client_ip = request.client.host if request.client else "unknown"
                logger.error(
                    "Invalid relay signature",
                    attempt_id=attempt_id,
                    client_ip=client_ip,
                    security_event="failed_hmac",
                )
                raise InvalidSignatureError("Invalid HMAC signature")
        except (InvalidSignatureError, TimestampTooOldError) as e:
            raise HTTPException(status_code=401, detail=str(e))

    record = _get_record(attempt_id)
    frame_host = record.orchestrator.frame_host

    if isinstance(frame_host, RelayFrameHost):
        await frame_host.deliver(message.payload, message.frame_id)
    else:
        await record.orchestrator.on_frame_message(message.payload)

    return _describe(record)


@router.get("/attempts/{attempt_id}")
async def get_attempt(attempt_id: str):
    """Current diagnostics, outcome and challenge info for an attempt."""
    return _describe(_get_record(attempt_id))


@router.delete("/attempts/{attempt_id}")
async def delete_attempt(attempt_id: str):
    """Tear down an attempt and forget it."""
    record = _get_record(attempt_id)
    with _attempts_lock:
        _attempts.pop(attempt_id, None)
    await _dispose(record.orchestrator)

    logger.info("Attempt deleted", attempt_id=attempt_id)
    return {"status": "deleted", "attempt_id": attempt_id}
