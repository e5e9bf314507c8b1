"""Resilient HTTP transport for the BareCommerceCore API.

Handles authentication headers, query encoding, per-attempt timeouts,
retry with exponential backoff, and decoding of the API's several error
response shapes into the BareMCP error taxonomy.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from .errors import (
    ApiError,
    NotAuthenticatedError,
    PermissionDeniedError,
    RequestTimeoutError,
    StoreIdRequiredError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_MAX_RETRIES = 3
BASE_RETRY_DELAY_MS = 1000
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Uploads get a longer budget than ordinary JSON requests
UPLOAD_TIMEOUT_MULTIPLIER = 4

API_KEY_HEADER = "X-API-Key"

_MISSING_PERMISSION_RE = re.compile(r"Missing permission[:\s]+(\S+)", re.IGNORECASE)


@dataclass(frozen=True)
class RetryPolicy:
    """Read-only retry configuration for HttpClient."""

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay_ms: int = BASE_RETRY_DELAY_MS
    retryable_status_codes: frozenset[int] = field(default=RETRYABLE_STATUS_CODES)


@dataclass
class Session:
    """In-memory authentication state for the current process."""

    base_url: str
    api_key: str | None = None
    default_store_id: str | None = None


def normalize_base_url(url: str) -> str:
    """Strip trailing slashes from a base URL."""
    return url.rstrip("/")


def get_retry_delay(
    attempt: int,
    base_delay_ms: int = BASE_RETRY_DELAY_MS,
    rng: Callable[[], float] = random.random,
) -> int:
    """Delay in milliseconds before retrying after the given attempt.

    Exponential backoff (base, 2*base, 4*base, ...) with +/-25% uniform
    jitter so concurrent clients don't retry in lockstep.

    Args:
        attempt: Zero-based index of the attempt that just failed
        base_delay_ms: Delay for the first retry before jitter
        rng: Source of uniform floats in [0, 1)

    Returns:
        Delay in whole milliseconds
    """
    exponential = base_delay_ms * (2 ** attempt)
    jitter = exponential * 0.25 * (rng() * 2 - 1)
    return math.floor(exponential + jitter)


def is_retryable_error(error: BaseException, policy: RetryPolicy | None = None) -> bool:
    """Check whether an error is transient and worth another attempt."""
    policy = policy or RetryPolicy()
    if isinstance(error, RequestTimeoutError):
        return True
    if isinstance(error, httpx.NetworkError):
        return True
    if isinstance(error, ApiError) and error.status_code is not None:
        return error.status_code in policy.retryable_status_codes
    return False


def encode_params(params: dict[str, Any] | None) -> list[tuple[str, str]]:
    """Encode query parameters.

    Lists are joined with commas, booleans are lower-cased, and None or
    empty-string values are dropped.
    """
    encoded: list[tuple[str, str]] = []
    if not params:
        return encoded

    for key, value in params.items():
        if value is None or value == "":
            continue
        if isinstance(value, (list, tuple)):
            encoded.append((key, ",".join(_stringify(v) for v in value)))
        else:
            encoded.append((key, _stringify(value)))
    return encoded


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_error_response(response: httpx.Response) -> Exception:
    """Decode an error response into a typed error.

    Checked in order:
    1. 403 with top-level {code: "FORBIDDEN", details: {required, ...}}
    2. Legacy nested {error: {code, message, details}}
    3. Flat {code, message, details}
    Anything unparseable becomes ApiError("UNKNOWN", reason phrase).
    """
    status = response.status_code
    status_text = response.reason_phrase

    try:
        body = response.json()
    except ValueError:
        return ApiError("UNKNOWN", status_text, None, status)

    if not isinstance(body, dict):
        return ApiError("UNKNOWN", status_text, None, status)

    details = body.get("details")
    if status == 403 and body.get("code") == "FORBIDDEN" and isinstance(details, dict) and details.get("required"):
        return PermissionDeniedError(
            details["required"],
            details.get("userRole") or "unknown",
            details.get("hint"),
        )

    nested = body.get("error")
    if isinstance(nested, dict) and nested:
        nested_details = nested.get("details")
        message = nested.get("message")

        if status == 403 and nested.get("code") == "FORBIDDEN":
            if isinstance(nested_details, dict) and nested_details.get("required"):
                return PermissionDeniedError(
                    nested_details["required"],
                    nested_details.get("userRole") or "unknown",
                    nested_details.get("hint"),
                )
            match = _MISSING_PERMISSION_RE.search(message) if isinstance(message, str) else None
            if match:
                return PermissionDeniedError(match.group(1), "unknown", message)

        return ApiError(
            nested.get("code") or "UNKNOWN",
            message or status_text,
            nested_details if isinstance(nested_details, dict) else None,
            status,
        )

    if body.get("code") and body.get("message"):
        return ApiError(
            body["code"],
            body["message"],
            details if isinstance(details, dict) else None,
            status,
        )

    return ApiError("UNKNOWN", status_text, None, status)


def store_api_path(store_id: str, resource: str) -> str:
    """Build a store-scoped API path: /stores/{store_id}/{resource}."""
    return f"/stores/{store_id}/{resource}"


class HttpClient:
    """Authenticated, retrying client for the BareCommerceCore API.

    Owns the process-wide Session. Tool handlers call get/post/patch/put/
    delete/upload; SessionManager installs and clears the API key.

    Usage:
        client = HttpClient("https://api.barecommercecore.com")
        client.set_api_key(key)
        store = await client.get(f"/stores/{store_id}")
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        default_store_id: str | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        """Initialize the client.

        Args:
            base_url: API base URL (trailing slashes are stripped)
            api_key: Optional API key; can be installed later via set_api_key
            default_store_id: Optional default store for store-scoped calls
            timeout_ms: Hard timeout for each request attempt
            retry_policy: Retry configuration (defaults to RetryPolicy())
            transport: Optional httpx transport (for testing)
            sleep: Awaitable sleep taking seconds (for testing)
            rng: Jitter source (for testing)
        """
        self.session = Session(
            base_url=normalize_base_url(base_url),
            api_key=api_key,
            default_store_id=default_store_id,
        )
        self.timeout_ms = timeout_ms
        self.retry_policy = retry_policy or RetryPolicy()
        self._transport = transport
        self._sleep = sleep
        self._rng = rng

    # Session state

    @property
    def base_url(self) -> str:
        return self.session.base_url

    @property
    def upload_timeout_ms(self) -> int:
        return self.timeout_ms * UPLOAD_TIMEOUT_MULTIPLIER

    def set_base_url(self, url: str) -> None:
        self.session.base_url = normalize_base_url(url)

    def is_authenticated(self) -> bool:
        return bool(self.session.api_key)

    def set_api_key(self, api_key: str) -> None:
        self.session.api_key = api_key

    def get_default_store_id(self) -> str | None:
        return self.session.default_store_id

    def set_default_store_id(self, store_id: str) -> None:
        self.session.default_store_id = store_id

    def clear_auth(self) -> None:
        """Forget the API key and default store."""
        self.session.api_key = None
        self.session.default_store_id = None

    def resolve_store_id(self, store_id: str | None = None) -> str:
        """Return the explicit store id or the session default.

        Raises:
            StoreIdRequiredError: If neither is available
        """
        resolved = store_id or self.session.default_store_id
        if not resolved:
            raise StoreIdRequiredError()
        return resolved

    # Request plumbing

    def build_url(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.session.base_url}{path}"

    def _headers(self, json_body: bool = True) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if json_body:
            headers["Content-Type"] = "application/json"
        if self.session.api_key:
            headers[API_KEY_HEADER] = self.session.api_key
        return headers

    def _new_http(self) -> httpx.AsyncClient:
        # Timeouts are enforced by asyncio.timeout around each attempt
        return httpx.AsyncClient(transport=self._transport, timeout=None)

    async def _send(
        self,
        method: str,
        url: str,
        timeout_ms: int,
        operation: str = "Request",
        **kwargs: Any,
    ) -> Any:
        """Perform exactly one attempt and decode the response."""
        try:
            async with asyncio.timeout(timeout_ms / 1000):
                async with self._new_http() as http:
                    response = await http.request(method, url, **kwargs)
        except (TimeoutError, httpx.TimeoutException):
            raise RequestTimeoutError(timeout_ms, operation)

        if response.is_error:
            raise parse_error_response(response)

        if response.status_code == 204:
            return {"success": True}

        return response.json()

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Send a JSON request, retrying transient failures.

        Args:
            method: HTTP method
            path: API path, appended to the base URL
            body: Optional JSON-serializable body
            params: Optional query parameters
            headers: Optional headers merged over the defaults

        Returns:
            Decoded JSON body, or {"success": True} for 204 responses

        Raises:
            ApiError: API-reported failure (after retries if transient)
            PermissionDeniedError: 403 with permission metadata
            RequestTimeoutError: Final attempt timed out
            httpx.NetworkError: Connection failure on the final attempt
        """
        url = self.build_url(path)
        request_headers = {**self._headers(), **(headers or {})}
        kwargs: dict[str, Any] = {"headers": request_headers}
        query = encode_params(params)
        if query:
            kwargs["params"] = query
        if body is not None:
            kwargs["json"] = body

        max_retries = self.retry_policy.max_retries
        attempt = 0
        while True:
            try:
                return await self._send(method, url, self.timeout_ms, **kwargs)
            except Exception as e:
                if attempt >= max_retries or not is_retryable_error(e, self.retry_policy):
                    raise

                delay = get_retry_delay(attempt, self.retry_policy.base_delay_ms, self._rng)
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{max_retries + 1}), "
                    f"retrying in {delay}ms..."
                )
                await self._sleep(delay / 1000)
                attempt += 1

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, body: Any = None) -> Any:
        return await self.request("POST", path, body=body)

    async def put(self, path: str, body: Any = None) -> Any:
        return await self.request("PUT", path, body=body)

    async def patch(self, path: str, body: Any = None) -> Any:
        return await self.request("PATCH", path, body=body)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def upload(
        self,
        path: str,
        files: dict[str, Any],
        data: dict[str, Any] | None = None,
    ) -> Any:
        """POST a multipart body.

        No Content-Type header is set so httpx can supply the multipart
        boundary. Uploads get UPLOAD_TIMEOUT_MULTIPLIER times the normal
        timeout and are not retried.
        """
        url = self.build_url(path)
        return await self._send(
            "POST",
            url,
            self.upload_timeout_ms,
            operation="Upload",
            headers=self._headers(json_body=False),
            files=files,
            data=data,
        )


def require_auth(client: HttpClient) -> None:
    """Raise NotAuthenticatedError unless the client holds an API key."""
    if not client.is_authenticated():
        raise NotAuthenticatedError()
