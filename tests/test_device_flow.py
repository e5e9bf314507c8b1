"""Tests for the OAuth device authorization flow."""

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from baremcp.auth.credentials import DeviceAuthorization, Role
from baremcp.auth.device_flow import (
    DEVICE_CODE_GRANT_TYPE,
    DeviceAuthFlow,
    DeviceFlowDeniedError,
    DeviceFlowError,
    DeviceFlowExpiredError,
    DeviceFlowTimeoutError,
    DeviceFlowTransportError,
    FlowState,
    transition,
)
from baremcp.platform import ExternalLauncher, LaunchOutcome

API_URL = "https://api.test.barecommerce.local"


def pending() -> httpx.Response:
    return httpx.Response(400, json={"error": "authorization_pending"})


class FakeLauncher(ExternalLauncher):
    """Launcher that records URLs instead of spawning a browser."""

    def __init__(self, launched: bool = True):
        self.launched = launched
        self.urls: list[str] = []

    def _launch(self, url: str) -> LaunchOutcome:
        self.urls.append(url)
        return LaunchOutcome(launched=self.launched, url=url, error=None if self.launched else "no browser")


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


def make_flow(handler, launcher: ExternalLauncher, sleep: AsyncMock, **kwargs) -> DeviceAuthFlow:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DeviceAuthFlow(API_URL, http_client=http_client, launcher=launcher, sleep=sleep, **kwargs)


class TestTransition:
    """Tests for the pure poll-response transition function."""

    def test_success(self, token_body: dict[str, Any]):
        """Test that a 2xx with a token authorizes."""
        step = transition(200, token_body, attempt=1, max_attempts=180)
        assert step.state is FlowState.AUTHORIZED
        assert step.token is not None
        assert step.token.store.id == "store_123"

    def test_success_with_malformed_token(self):
        """Test that a 2xx with a bad body fails."""
        step = transition(200, {"access_token": "x"}, attempt=1, max_attempts=180)
        assert step.state is FlowState.FAILED

    def test_pending_keeps_polling(self):
        """Test that pending keeps polling."""
        for attempt in range(1, 180):
            step = transition(400, {"error": "authorization_pending"}, attempt, 180)
            assert step.state is FlowState.POLLING
            assert not step.state.is_terminal

    def test_pending_logs_progress_every_sixth_attempt(self):
        """Test progress logging cadence."""
        logged = [
            a for a in range(1, 30) if transition(400, {"error": "authorization_pending"}, a, 180).log_progress
        ]
        assert logged == [6, 12, 18, 24]

    def test_pending_at_budget_times_out(self):
        """Test that pending on the last attempt times out."""
        step = transition(400, {"error": "authorization_pending"}, attempt=180, max_attempts=180)
        assert step.state is FlowState.TIMED_OUT
        assert step.state.is_terminal

    def test_slow_down_adds_delay(self):
        """Test the slow_down extra delay."""
        step = transition(400, {"error": "slow_down"}, attempt=3, max_attempts=180)
        assert step.state is FlowState.POLLING
        assert step.extra_delay_ms == 5000

    def test_denied(self):
        """Test access_denied handling."""
        step = transition(400, {"error": "access_denied"}, attempt=1, max_attempts=180)
        assert step.state is FlowState.DENIED
        assert step.error == "Authorization denied. Please try again."

    def test_expired(self):
        """Test expired_token handling."""
        step = transition(400, {"error": "expired_token"}, attempt=1, max_attempts=180)
        assert step.state is FlowState.EXPIRED
        assert "expired" in step.error

    def test_denied_and_expired_messages_distinct(self):
        """Test that denial and expiry read differently."""
        denied = transition(400, {"error": "access_denied"}, 1, 180)
        expired = transition(400, {"error": "expired_token"}, 1, 180)
        assert denied.error != expired.error

    def test_unknown_error_uses_description(self):
        """Test that error_description is surfaced."""
        step = transition(400, {"error": "invalid_grant", "error_description": "Device code invalid"}, 1, 180)
        assert step.state is FlowState.FAILED
        assert step.error == "Device code invalid"

    def test_unknown_error_without_description(self):
        """Test the generic failure message."""
        assert transition(400, {"error": "weird"}, 1, 180).error == "Authorization failed"

    def test_non_json_body(self):
        """Test a non-JSON poll response."""
        step = transition(502, None, 1, 180)
        assert step.state is FlowState.FAILED
        assert "502" in step.error


class TestRequestCode:
    """Tests for requesting the device code."""

    @pytest.mark.asyncio
    async def test_request_code(self, recording, launcher, no_sleep, device_body):
        """Test requesting a device code."""
        handler = recording(httpx.Response(200, json=device_body))
        flow = make_flow(handler, launcher, no_sleep)

        authorization = await flow.request_code()

        assert authorization.device_code == "device-code-xyz"
        assert flow.state is FlowState.CODE_REQUESTED
        request = handler.requests[0]
        assert str(request.url) == f"{API_URL}/auth/device"
        assert json.loads(request.content) == {"client_name": "BareMCP"}

    @pytest.mark.asyncio
    async def test_http_error_is_transport_error(self, recording, launcher, no_sleep):
        """Test HTTP failures when requesting a code."""
        handler = recording(httpx.Response(500, json={"error": "boom"}))
        flow = make_flow(handler, launcher, no_sleep)

        with pytest.raises(DeviceFlowTransportError, match="Internal Server Error"):
            await flow.request_code()

        assert flow.state is FlowState.TRANSPORT_ERROR

    @pytest.mark.asyncio
    async def test_network_error_is_transport_error(self, recording, launcher, no_sleep):
        """Test network failures when requesting a code."""
        handler = recording(httpx.ConnectError("unreachable"))
        flow = make_flow(handler, launcher, no_sleep)

        with pytest.raises(DeviceFlowTransportError):
            await flow.request_code()

    @pytest.mark.asyncio
    async def test_malformed_response_is_transport_error(self, recording, launcher, no_sleep):
        """Test an incomplete device code response."""
        handler = recording(httpx.Response(200, json={"user_code": "X"}))
        flow = make_flow(handler, launcher, no_sleep)

        with pytest.raises(DeviceFlowTransportError):
            await flow.request_code()


class TestOpenVerificationUrl:
    """Tests for browser hand-off."""

    def test_opens_complete_uri(self, launcher, no_sleep, device_body):
        """Test that the complete verification URI is opened."""
        flow = DeviceAuthFlow(API_URL, launcher=launcher, sleep=no_sleep)
        outcome = flow.open_verification_url(DeviceAuthorization.from_dict(device_body))

        assert outcome.launched
        assert launcher.urls == [device_body["verification_uri_complete"]]

    def test_launch_failure_is_not_fatal(self, no_sleep, device_body, caplog):
        """Test that the URL and code are logged when no browser opens."""
        flow = DeviceAuthFlow(API_URL, launcher=FakeLauncher(launched=False), sleep=no_sleep)

        with caplog.at_level("INFO"):
            outcome = flow.open_verification_url(DeviceAuthorization.from_dict(device_body))

        assert not outcome.launched
        assert "ABCD-EFGH" in caplog.text
        assert device_body["verification_uri_complete"] in caplog.text

    def test_unsafe_url_not_launched(self, launcher, no_sleep, device_body):
        """Test that non-http URLs are never launched."""
        device_body["verification_uri_complete"] = "file:///etc/passwd"
        flow = DeviceAuthFlow(API_URL, launcher=launcher, sleep=no_sleep)

        outcome = flow.open_verification_url(DeviceAuthorization.from_dict(device_body))

        assert not outcome.launched
        assert launcher.urls == []


class TestPoll:
    """Tests for the polling driver."""

    @pytest.mark.asyncio
    async def test_authorized_after_pending(self, recording, launcher, no_sleep, token_body):
        """Test polling until authorized."""
        handler = recording(pending(), pending(), httpx.Response(200, json=token_body))
        flow = make_flow(handler, launcher, no_sleep)

        token = await flow.poll("device-code-xyz", interval=5)

        assert token.access_token == token_body["access_token"]
        assert token.role is Role.ADMIN
        assert flow.state is FlowState.AUTHORIZED
        assert handler.calls == 3
        assert json.loads(handler.requests[0].content) == {
            "device_code": "device-code-xyz",
            "grant_type": DEVICE_CODE_GRANT_TYPE,
        }
        assert str(handler.requests[0].url) == f"{API_URL}/auth/device/token"

    @pytest.mark.asyncio
    async def test_sleeps_before_each_attempt_with_floor(self, recording, launcher, no_sleep, token_body):
        """Test the 5 second interval floor."""
        handler = recording(pending(), httpx.Response(200, json=token_body))
        flow = make_flow(handler, launcher, no_sleep)

        await flow.poll("dc", interval=1)

        assert [c.args[0] for c in no_sleep.await_args_list] == [5.0, 5.0]

    @pytest.mark.asyncio
    async def test_server_interval_above_floor(self, recording, launcher, no_sleep, token_body):
        """Test that a longer server interval is honoured."""
        handler = recording(httpx.Response(200, json=token_body))
        flow = make_flow(handler, launcher, no_sleep)

        await flow.poll("dc", interval=10)

        assert no_sleep.await_args_list[0].args[0] == 10.0

    @pytest.mark.asyncio
    async def test_slow_down_adds_extra_sleep(self, recording, launcher, no_sleep, token_body):
        """Test the extra sleep after slow_down."""
        handler = recording(
            httpx.Response(400, json={"error": "slow_down"}),
            httpx.Response(200, json=token_body),
        )
        flow = make_flow(handler, launcher, no_sleep)

        await flow.poll("dc", interval=5)

        assert [c.args[0] for c in no_sleep.await_args_list] == [5.0, 5.0, 5.0]

    @pytest.mark.asyncio
    async def test_pending_until_budget_times_out(self, recording, launcher, no_sleep):
        """Test that polling stops at the attempt budget."""
        handler = recording(pending())
        flow = make_flow(handler, launcher, no_sleep, max_attempts=7)

        with pytest.raises(DeviceFlowTimeoutError, match="timed out"):
            await flow.poll("dc", interval=5)

        assert handler.calls == 7
        assert flow.state is FlowState.TIMED_OUT

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error_code,exc_type,state",
        [
            ("access_denied", DeviceFlowDeniedError, FlowState.DENIED),
            ("expired_token", DeviceFlowExpiredError, FlowState.EXPIRED),
        ],
    )
    async def test_terminal_errors_stop_immediately(
        self, recording, launcher, no_sleep, error_code, exc_type, state
    ):
        """Test that denial and expiry end polling."""
        handler = recording(httpx.Response(400, json={"error": error_code}))
        flow = make_flow(handler, launcher, no_sleep)

        with pytest.raises(exc_type) as exc_info:
            await flow.poll("dc", interval=5)

        assert handler.calls == 1
        assert exc_info.value.state is state
        assert flow.state is state

    @pytest.mark.asyncio
    async def test_unknown_error_fails(self, recording, launcher, no_sleep):
        """Test that unknown errors end polling."""
        handler = recording(httpx.Response(400, json={"error": "server_error", "error_description": "Broken"}))
        flow = make_flow(handler, launcher, no_sleep)

        with pytest.raises(DeviceFlowError, match="Broken") as exc_info:
            await flow.poll("dc", interval=5)

        assert exc_info.value.code == "AUTHORIZATION_FAILED"

    @pytest.mark.asyncio
    async def test_network_error_while_polling(self, recording, launcher, no_sleep):
        """Test network failures while polling."""
        handler = recording(pending(), httpx.ReadError("reset"))
        flow = make_flow(handler, launcher, no_sleep)

        with pytest.raises(DeviceFlowTransportError):
            await flow.poll("dc", interval=5)

        assert flow.state is FlowState.TRANSPORT_ERROR


class TestRun:
    """Tests for the end-to-end driver."""

    @pytest.mark.asyncio
    async def test_run(self, recording, launcher, no_sleep, device_body, token_body):
        """Test the full flow end to end."""
        def route(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/device":
                return httpx.Response(200, json=device_body)
            return httpx.Response(200, json=token_body)

        flow = make_flow(recording(route), launcher, no_sleep)

        token = await flow.run()

        assert token.store.name == "Test Store"
        assert launcher.urls == [device_body["verification_uri_complete"]]
        assert flow.state is FlowState.AUTHORIZED

    @pytest.mark.asyncio
    async def test_run_without_browser(self, recording, no_sleep, device_body, token_body):
        """Test the full flow when no browser opens."""
        def route(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/device":
                return httpx.Response(200, json=device_body)
            return httpx.Response(200, json=token_body)

        broken = MagicMock(spec=ExternalLauncher)
        broken.open.return_value = LaunchOutcome(launched=False, url="x", error="no display")
        flow = make_flow(recording(route), broken, no_sleep)

        token = await flow.run()

        assert token.access_token == token_body["access_token"]
