"""Shared fixtures and utilities for BareMCP tests."""

from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from baremcp.auth.credentials import Role, StoredCredentials
from baremcp.auth.vault import CredentialVault
from baremcp.config import Settings

TEST_API_URL = "https://api.test.barecommerce.local"
TEST_API_KEY = "sk_test_abcdefghijklmnopqrstuvwxyz0123"


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """Per-test configuration directory (not created)."""
    return tmp_path / ".baremcp"


@pytest.fixture
def settings(config_dir: Path) -> Settings:
    """Settings pointing at the test API and a temporary config dir."""
    return Settings(api_url=TEST_API_URL, config_dir=config_dir)


@pytest.fixture
def vault(tmp_path: Path, config_dir: Path) -> CredentialVault:
    """Vault with a fixed key identity so tests don't depend on $USER."""
    return CredentialVault(config_dir / "credentials.json", home=tmp_path, username="tester")


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def sample_credentials() -> StoredCredentials:
    """Credentials as saved after a successful connect."""
    return StoredCredentials(
        api_key=TEST_API_KEY,
        store_id="store_123",
        store_name="Test Store",
        role=Role.ADMIN,
        scopes=["products:read", "products:write"],
        created_at=datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def token_body() -> dict[str, Any]:
    """Successful device token endpoint response."""
    return {
        "access_token": TEST_API_KEY,
        "token_type": "Bearer",
        "store": {
            "id": "store_123",
            "name": "Test Store",
            "domain": "test.example.com",
            "currency": "USD",
            "status": "active",
        },
        "role": "admin",
        "scopes": ["products:read", "products:write"],
    }


@pytest.fixture
def device_body() -> dict[str, Any]:
    """Device authorization endpoint response."""
    return {
        "device_code": "device-code-xyz",
        "user_code": "ABCD-EFGH",
        "verification_uri": "https://app.test.barecommerce.local/device",
        "verification_uri_complete": "https://app.test.barecommerce.local/device?code=ABCD-EFGH",
        "expires_in": 900,
        "interval": 5,
    }


# ============================================================================
# Transport Helpers
# ============================================================================


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Sleep replacement that returns immediately and records delays."""
    return AsyncMock(return_value=None)


class RecordingHandler:
    """httpx.MockTransport handler that replays queued responses.

    Each queued item is an httpx.Response, an exception to raise, or a
    callable taking the request. The last item repeats once the queue is
    exhausted.
    """

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self.responses)) - 1
        item = self.responses[index]
        if isinstance(item, Exception):
            raise item
        if callable(item) and not isinstance(item, httpx.Response):
            return item(request)
        # Fresh copy so a repeated response is never re-read
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    @property
    def calls(self) -> int:
        return len(self.requests)


@pytest.fixture
def recording() -> Callable[..., RecordingHandler]:
    """Factory for RecordingHandler instances."""
    return RecordingHandler
