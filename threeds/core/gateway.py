"""HTTP client for the 3DS Server API."""

import random
import string
import time
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as SchemaValidationError

from .errors import MalformedResponseError, RemoteError
from .logging import get_logger

logger = get_logger(__name__)

UNKNOWN_STATUS = "Unknown"

# Operations understood by the 3DS Server endpoint
OP_INIT = "init"
OP_AUTH = "auth"
OP_UPDATE_CHALLENGE_STATUS = "updateChallengeStatus"
OP_GET_AUTH_RESULT = "getAuthResult"


def generate_request_id() -> str:
    """Stable per-client request id: req_<epoch ms>_<9 base36 chars>."""
    alphabet = string.digits + string.ascii_lowercase
    suffix = "".join(random.choice(alphabet) for _ in range(9))
    return f"req_{int(time.time() * 1000)}_{suffix}"


def _redact_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Redact card and fingerprint fields from payload for logging."""
    redacted = {}
    for key, value in data.items():
        if any(s in key.lower() for s in ["cardnumber", "acctnumber", "browserinfo", "expiry"]):
            redacted[key] = "***REDACTED***"
        else:
            redacted[key] = value
    return redacted


class _Response(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class IframeUrls(_Response):
    callback: Optional[str] = None
    monitor: Optional[str] = None


class InitResponse(_Response):
    """Typed init response; server transaction id and callback URL are required."""
    server_transaction_id: str = Field(alias="threeDSServerTransID", min_length=1)
    requestor_transaction_id: Optional[str] = Field(default=None, alias="threeDSRequestorTransID")
    iframe_urls: IframeUrls = Field(alias="iframeUrls")
    auth_url: Optional[str] = Field(default=None, alias="authUrl")

    @model_validator(mode="after")
    def require_callback(self):
        if not self.iframe_urls.callback:
            raise ValueError("iframeUrls.callback is required")
        return self

    @property
    def callback_url(self) -> str:
        return self.iframe_urls.callback  # type: ignore[return-value]

    @property
    def monitor_url(self) -> Optional[str]:
        return self.iframe_urls.monitor or None


class AuthResponse(_Response):
    """Typed auth response. transStatus may be absent or unknown."""
    trans_status: Optional[str] = Field(default=None, alias="transStatus")
    challenge_url: Optional[str] = Field(default=None, alias="challengeUrl")
    result_monitor_url: Optional[str] = Field(default=None, alias="resultMonUrl")
    details: Dict[str, Any] = Field(default_factory=dict)


class AuthResult(_Response):
    """Typed getAuthResult response."""
    trans_status: str = Field(default=UNKNOWN_STATUS, alias="transStatus")
    status: Optional[str] = None
    message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("trans_status", mode="before")
    @classmethod
    def default_unknown(cls, v):
        return v or UNKNOWN_STATUS


def _unwrap(envelope: Dict[str, Any]) -> Dict[str, Any]:
    data = envelope.get("data")
    if isinstance(data, dict):
        return data
    return envelope


class RemoteCallGateway:
    """
    Client for one 3DS Server endpoint.

    Every call carries the same X-Request-ID and the SDK version tag.
    Nothing here retries; callers decide what a failure means.
    """

    def __init__(
        self,
        endpoint: str,
        request_id: Optional[str] = None,
        sdk_version: str = "1.0.0",
        timeout: float = 30.0,
    ):
        self.endpoint = endpoint
        self.request_id = request_id or generate_request_id()
        self.sdk_version = sdk_version
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings, request_id: Optional[str] = None) -> "RemoteCallGateway":
        return cls(
            endpoint=settings.validate_endpoint(),
            request_id=request_id,
            sdk_version=settings.sdk_version,
            timeout=settings.request_timeout,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Request-ID": self.request_id,
            "X-SDK-Version": self.sdk_version,
        }

    async def call(self, operation: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST an operation and return the decoded response envelope."""
        body = {"operation": operation, **payload, "requestId": self.request_id}
        logger.debug("3DS Server request", operation=operation, payload=_redact_payload(body))

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.endpoint, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error("3DS Server unreachable", operation=operation, error=str(e))
            raise RemoteError(f"{operation} failed: {e}") from e

        return self._decode(operation, resp)

    async def fetch(self, operation: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET an idempotent read operation and return the decoded response envelope."""
        query = {"operation": operation, **params, "requestId": self.request_id}
        logger.debug("3DS Server read", operation=operation, params=query)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(self.endpoint, params=query, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error("3DS Server unreachable", operation=operation, error=str(e))
            raise RemoteError(f"{operation} failed: {e}") from e

        return self._decode(operation, resp)

    def _decode(self, operation: str, resp: httpx.Response) -> Dict[str, Any]:
        if resp.status_code >= 400:
            message = f"HTTP {resp.status_code}: {resp.reason_phrase}"
            logger.error("3DS Server error status", operation=operation, status_code=resp.status_code)
            raise RemoteError(message)

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"{operation} response is not JSON") from e

        if not isinstance(data, dict):
            raise MalformedResponseError(f"{operation} response is not an object")

        if data.get("error"):
            logger.warning("3DS Server reported error", operation=operation, error=data["error"])
            raise RemoteError(str(data["error"]))

        return data

    async def init(self, card_number: str, extra_fields: Optional[Dict[str, Any]] = None) -> InitResponse:
        envelope = await self.call(OP_INIT, {**(extra_fields or {}), "cardNumber": card_number})
        try:
            return InitResponse.model_validate(_unwrap(envelope))
        except SchemaValidationError as e:
            logger.error("Malformed init response", errors=e.error_count())
            raise MalformedResponseError("malformed init response") from e

    async def auth(self, payload: Dict[str, Any]) -> AuthResponse:
        envelope = await self.call(OP_AUTH, payload)
        data = _unwrap(envelope)
        try:
            response = AuthResponse.model_validate({**data, "details": data})
        except SchemaValidationError as e:
            raise MalformedResponseError("malformed auth response") from e

        # resultMonUrl may sit beside the data object rather than inside it
        if not response.result_monitor_url and isinstance(envelope.get("resultMonUrl"), str):
            response.result_monitor_url = envelope["resultMonUrl"]
        return response

    async def update_challenge_status(self, server_transaction_id: str, status: str) -> Dict[str, Any]:
        return await self.call(
            OP_UPDATE_CHALLENGE_STATUS,
            {"threeDSServerTransID": server_transaction_id, "status": status},
        )

    async def get_auth_result(self, server_transaction_id: str) -> AuthResult:
        envelope = await self.fetch(OP_GET_AUTH_RESULT, {"threeDSServerTransID": server_transaction_id})
        data = _unwrap(envelope)
        try:
            return AuthResult.model_validate({**data, "details": data})
        except SchemaValidationError as e:
            raise MalformedResponseError("malformed auth result") from e
