"""Shared pytest fixtures for all tests."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from threeds.core.config import Settings
from threeds.core.frames import RelayFrameHost
from threeds.core.gateway import AuthResponse, AuthResult, InitResponse
from threeds.core.logging import setup_logging
from threeds.core.orchestrator import (
    AuthenticationAttempt,
    AuthenticationCallbacks,
    ProtocolOrchestrator,
)

setup_logging()

SERVER_URL = "https://3ds.example.test"
VISA_TEST_CARD = "4111 1111 1111 1111"


def make_init_response(**overrides) -> InitResponse:
    data = {
        "threeDSServerTransID": "srv-trans-1",
        "iframeUrls": {
            "callback": f"{SERVER_URL}/method/callback",
            "monitor": f"{SERVER_URL}/method/monitor",
        },
        "authUrl": f"{SERVER_URL}/auth",
    }
    data.update(overrides)
    return InitResponse.model_validate(data)


def make_auth_response(trans_status, challenge_url=None, result_monitor_url=None) -> AuthResponse:
    data = {"transStatus": trans_status}
    if challenge_url:
        data["challengeUrl"] = challenge_url
    if result_monitor_url:
        data["resultMonUrl"] = result_monitor_url
    return AuthResponse.model_validate({**data, "details": dict(data)})


def make_auth_result(**data) -> AuthResult:
    return AuthResult.model_validate({**data, "details": dict(data)})


class FakeGateway:
    """Stands in for RemoteCallGateway; every operation is an AsyncMock."""

    def __init__(self):
        self.request_id = "req_1700000000000_testabcde"
        self.init = AsyncMock(return_value=make_init_response())
        self.auth = AsyncMock(return_value=make_auth_response("Y"))
        self.update_challenge_status = AsyncMock(return_value={"data": {"status": "ok"}})
        self.get_auth_result = AsyncMock(return_value=make_auth_result(transStatus="Y", status="success"))

    def auth_payload(self) -> dict:
        return self.auth.call_args.args[0]


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks run up to their next real suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settings():
    """Settings with a fallback timer long enough to never fire on its own."""
    return Settings(
        _env_file=None,
        api_endpoint=f"{SERVER_URL}/api",
        fingerprint_timeout_ms=60000,
        json_logs=False,
    )


@pytest.fixture
def fast_settings():
    """Settings with a short fallback timer."""
    return Settings(
        _env_file=None,
        api_endpoint=f"{SERVER_URL}/api",
        fingerprint_timeout_ms=50,
        json_logs=False,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def frame_host():
    return RelayFrameHost(name="test")


@pytest.fixture
def callbacks():
    return AuthenticationCallbacks(
        on_outcome=MagicMock(),
        on_failure=MagicMock(),
        on_challenge_started=MagicMock(),
    )


@pytest.fixture
def attempt():
    return AuthenticationAttempt(
        card_number=VISA_TEST_CARD,
        amount="10.00",
        expiry_date="12/99",
        extra_fields={"merchantName": "Test Shop"},
    )


@pytest.fixture
def orchestrator(gateway, frame_host, callbacks, settings):
    return ProtocolOrchestrator(gateway, frame_host, callbacks=callbacks, settings=settings)


@pytest.fixture
def fast_orchestrator(gateway, frame_host, callbacks, fast_settings):
    return ProtocolOrchestrator(gateway, frame_host, callbacks=callbacks, settings=fast_settings)
