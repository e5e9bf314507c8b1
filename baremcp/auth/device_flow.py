"""OAuth Device Authorization Grant (RFC 8628) against the BareCommerceCore API.

The user never pastes an API key into the chat. Instead:
1. Request a device code from {api}/auth/device
2. Open the verification URL in the browser (user logs in and approves)
3. Poll {api}/auth/device/token until the user finishes
4. Hand the resulting token to the caller for storage

How each poll response moves the flow is decided by transition(), a pure
function. DeviceAuthFlow only does the I/O around it and takes an
injectable sleep so tests never wait on real timers.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from ..errors import BareMCPError
from ..platform import ExternalLauncher, LaunchOutcome, SystemLauncher, UnsafeUrlError
from ..transport import normalize_base_url
from .credentials import DeviceAuthorization, TokenResponse

logger = logging.getLogger(__name__)

CLIENT_NAME = "BareMCP"
DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

POLL_INTERVAL_FLOOR_MS = 5000
MAX_POLL_ATTEMPTS = 180  # 15 minutes at the floor interval
SLOW_DOWN_DELAY_MS = 5000
PROGRESS_LOG_EVERY = 6
REQUEST_TIMEOUT_SECONDS = 30.0


class FlowState(str, Enum):
    """Device flow lifecycle."""

    IDLE = "idle"
    CODE_REQUESTED = "code_requested"
    POLLING = "polling"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    EXPIRED = "expired"
    TRANSPORT_ERROR = "transport_error"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self not in (FlowState.IDLE, FlowState.CODE_REQUESTED, FlowState.POLLING)


class DeviceFlowError(BareMCPError):
    """The device flow ended without a token."""

    code = "AUTHORIZATION_FAILED"
    default_state = FlowState.FAILED

    def __init__(self, message: str, state: FlowState | None = None):
        super().__init__(message)
        self.state = state or self.default_state


class DeviceFlowDeniedError(DeviceFlowError):
    """User rejected the authorization request."""

    code = "AUTHORIZATION_DENIED"
    default_state = FlowState.DENIED


class DeviceFlowExpiredError(DeviceFlowError):
    """Device code expired before the user approved it."""

    code = "AUTHORIZATION_EXPIRED"
    default_state = FlowState.EXPIRED


class DeviceFlowTimeoutError(DeviceFlowError):
    """Polling budget ran out while authorization was still pending."""

    code = "AUTHORIZATION_TIMEOUT"
    default_state = FlowState.TIMED_OUT


class DeviceFlowTransportError(DeviceFlowError):
    """Device endpoints could not be reached or answered unusably."""

    default_state = FlowState.TRANSPORT_ERROR


@dataclass(frozen=True)
class PollStep:
    """Decision produced by transition() for a single poll response.

    Attributes:
        state: State the flow moves to
        token: Parsed token when state is AUTHORIZED
        extra_delay_ms: Additional wait requested by the server (slow_down)
        error: Human-readable failure reason for terminal failure states
        log_progress: Whether the driver should log a "still waiting" line
    """

    state: FlowState
    token: TokenResponse | None = None
    extra_delay_ms: int = 0
    error: str | None = None
    log_progress: bool = False


def transition(status_code: int, body: Any, attempt: int, max_attempts: int) -> PollStep:
    """Decide the next flow state from one token-endpoint response.

    Args:
        status_code: HTTP status of the poll response
        body: Decoded JSON body, or None if it wasn't JSON
        attempt: 1-based number of the poll that produced this response
        max_attempts: Poll budget; pending at this attempt means timeout

    Returns:
        PollStep describing the new state
    """
    if 200 <= status_code < 300:
        try:
            token = TokenResponse.from_dict(body)
        except (KeyError, TypeError, ValueError, AttributeError):
            return PollStep(FlowState.FAILED, error="Authorization server returned an invalid token response")
        return PollStep(FlowState.AUTHORIZED, token=token)

    error_code = body.get("error") if isinstance(body, dict) else None

    if error_code in ("authorization_pending", "slow_down"):
        if attempt >= max_attempts:
            return PollStep(FlowState.TIMED_OUT, error="Authorization timed out. Please try again.")
        if error_code == "slow_down":
            return PollStep(FlowState.POLLING, extra_delay_ms=SLOW_DOWN_DELAY_MS)
        return PollStep(FlowState.POLLING, log_progress=attempt % PROGRESS_LOG_EVERY == 0)

    if error_code == "access_denied":
        return PollStep(FlowState.DENIED, error="Authorization denied. Please try again.")

    if error_code == "expired_token":
        return PollStep(FlowState.EXPIRED, error="Authorization code expired. Please try again.")

    description = body.get("error_description") if isinstance(body, dict) else None
    if not description:
        description = f"Authorization failed (HTTP {status_code})" if error_code is None else "Authorization failed"
    return PollStep(FlowState.FAILED, error=description)


_ERRORS_BY_STATE: dict[FlowState, type[DeviceFlowError]] = {
    FlowState.DENIED: DeviceFlowDeniedError,
    FlowState.EXPIRED: DeviceFlowExpiredError,
    FlowState.TIMED_OUT: DeviceFlowTimeoutError,
    FlowState.TRANSPORT_ERROR: DeviceFlowTransportError,
}


def error_for_step(step: PollStep) -> DeviceFlowError:
    """Build the exception for a terminal failure step."""
    error_cls = _ERRORS_BY_STATE.get(step.state, DeviceFlowError)
    return error_cls(step.error or "Authorization failed", step.state)


class DeviceAuthFlow:
    """Drives the device authorization flow end to end.

    Usage:
        flow = DeviceAuthFlow("https://api.barecommercecore.com")
        token = await flow.run()
    """

    def __init__(
        self,
        api_url: str,
        http_client: httpx.AsyncClient | None = None,
        launcher: ExternalLauncher | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        poll_floor_ms: int = POLL_INTERVAL_FLOOR_MS,
        max_attempts: int = MAX_POLL_ATTEMPTS,
        client_name: str = CLIENT_NAME,
    ):
        """Initialize the flow.

        Args:
            api_url: API base URL hosting the /auth/device endpoints
            http_client: Optional HTTP client (for testing)
            launcher: Opens the verification URL (defaults to SystemLauncher)
            sleep: Awaitable sleep taking seconds (for testing)
            poll_floor_ms: Minimum wait between polls
            max_attempts: Poll budget before giving up
            client_name: Name shown to the user on the approval page
        """
        self.api_url = normalize_base_url(api_url)
        self._http_client = http_client
        self._launcher = launcher or SystemLauncher()
        self._sleep = sleep
        self.poll_floor_ms = poll_floor_ms
        self.max_attempts = max_attempts
        self.client_name = client_name
        self._state = FlowState.IDLE

    @property
    def state(self) -> FlowState:
        return self._state

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS) as client:
            yield client

    def _fail(self, message: str) -> DeviceFlowTransportError:
        self._state = FlowState.TRANSPORT_ERROR
        return DeviceFlowTransportError(message)

    async def request_code(self) -> DeviceAuthorization:
        """Request a device code and user code.

        Raises:
            DeviceFlowTransportError: On any network, HTTP or format failure
        """
        url = f"{self.api_url}/auth/device"
        try:
            async with self._client() as client:
                response = await client.post(url, json={"client_name": self.client_name})
        except httpx.HTTPError as e:
            raise self._fail(f"Failed to initiate device flow: {e}") from e

        if response.is_error:
            raise self._fail(f"Failed to initiate device flow: {response.reason_phrase}")

        try:
            authorization = DeviceAuthorization.from_dict(response.json())
        except (KeyError, TypeError, ValueError) as e:
            raise self._fail(f"Failed to initiate device flow: malformed response ({e})") from e

        self._state = FlowState.CODE_REQUESTED
        return authorization

    def open_verification_url(self, authorization: DeviceAuthorization) -> LaunchOutcome:
        """Try to open the approval page. Never fails the flow."""
        url = authorization.verification_uri_complete
        logger.info("Opening browser for authorization...")
        logger.info(f"If browser doesn't open, visit: {url}")
        logger.info(f"Enter code: {authorization.user_code}")

        try:
            outcome = self._launcher.open(url)
        except UnsafeUrlError as e:
            outcome = LaunchOutcome(launched=False, url=url, error=str(e))

        if not outcome.launched:
            logger.warning(
                f"Could not open browser automatically ({outcome.error}). "
                f"Please visit {url} and enter code {authorization.user_code}"
            )
        return outcome

    async def poll(
        self,
        device_code: str,
        interval: int,
        max_attempts: int | None = None,
    ) -> TokenResponse:
        """Poll the token endpoint until the flow reaches a terminal state.

        Args:
            device_code: Device code from request_code()
            interval: Server-suggested interval in seconds
            max_attempts: Override for the poll budget

        Returns:
            The token response once the user approves

        Raises:
            DeviceFlowDeniedError: User rejected the request
            DeviceFlowExpiredError: Device code expired
            DeviceFlowTimeoutError: Poll budget exhausted
            DeviceFlowTransportError: Network failure while polling
            DeviceFlowError: Any other server-reported failure
        """
        budget = max_attempts if max_attempts is not None else self.max_attempts
        delay_ms = max(interval * 1000, self.poll_floor_ms)
        url = f"{self.api_url}/auth/device/token"
        payload = {"device_code": device_code, "grant_type": DEVICE_CODE_GRANT_TYPE}

        self._state = FlowState.POLLING
        logger.info("Waiting for authorization...")

        async with self._client() as client:
            attempt = 0
            while True:
                await self._sleep(delay_ms / 1000)
                attempt += 1

                try:
                    response = await client.post(url, json=payload)
                except httpx.HTTPError as e:
                    raise self._fail(f"Network error while polling for authorization: {e}") from e

                try:
                    body = response.json()
                except ValueError:
                    body = None

                step = transition(response.status_code, body, attempt, budget)
                self._state = step.state

                if step.state is FlowState.AUTHORIZED and step.token is not None:
                    return step.token

                if step.state is not FlowState.POLLING:
                    raise error_for_step(step)

                if step.log_progress:
                    logger.info(f"Still waiting for authorization... ({attempt * delay_ms // 1000}s)")
                if step.extra_delay_ms:
                    await self._sleep(step.extra_delay_ms / 1000)

    async def run(self) -> TokenResponse:
        """Request a code, open the browser and wait for approval."""
        authorization = await self.request_code()
        self.open_verification_url(authorization)
        token = await self.poll(authorization.device_code, authorization.interval)
        logger.info(f"Successfully authorized as {token.role.value}!")
        return token
