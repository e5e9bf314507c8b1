"""Session lifecycle for BareMCP: connect, disconnect, status and diagnostics.

SessionManager ties the pieces together. DeviceAuthFlow obtains a token,
CredentialVault persists it and HttpClient uses it for every later call.
All public methods return plain dicts ready for the presentation layer.
"""

import asyncio
import logging
import platform
import sys
import time
from typing import Any, Callable

import httpx

from . import __version__
from .auth.credentials import StoredCredentials
from .auth.device_flow import DeviceAuthFlow
from .auth.vault import CredentialVault, CredentialVaultError
from .config import Settings
from .errors import BareMCPError, ConfigError
from .platform import ExternalLauncher, is_safe_url
from .transport import HttpClient, RetryPolicy

logger = logging.getLogger(__name__)

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


def _store_summary(item: dict[str, Any], include_status: bool = False) -> dict[str, Any]:
    summary = {
        "id": item.get("id"),
        "name": item.get("name"),
        "domain": item.get("domain"),
        "currency": item.get("currency"),
    }
    if include_status:
        summary["status"] = item.get("status")
    return summary


class SessionManager:
    """Owns the authenticated session for this process.

    On construction any saved credentials are loaded and installed without a
    network call, so a restarted server is immediately usable.

    Usage:
        manager = SessionManager(load_settings())
        result = await manager.connect()
        info = await manager.status()
    """

    def __init__(
        self,
        settings: Settings,
        client: HttpClient | None = None,
        vault: CredentialVault | None = None,
        flow_factory: Callable[[str], DeviceAuthFlow] | None = None,
        launcher: ExternalLauncher | None = None,
        probe_transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the session manager.

        Args:
            settings: Resolved configuration
            client: HTTP client to authenticate (built from settings if omitted)
            vault: Credential storage (defaults to settings.credentials_file)
            flow_factory: Builds a DeviceAuthFlow for an API URL (for testing)
            launcher: Browser launcher handed to the default flow factory
            probe_transport: httpx transport for the health probe (for testing)
        """
        self.settings = settings
        self.client = client or HttpClient(
            settings.api_url,
            api_key=settings.api_key,
            default_store_id=settings.default_store_id,
            timeout_ms=settings.timeout_ms,
            retry_policy=RetryPolicy(max_retries=settings.max_retries),
        )
        self.vault = vault or CredentialVault(settings.credentials_file)
        self._flow_factory = flow_factory or (lambda api_url: DeviceAuthFlow(api_url, launcher=launcher))
        self._probe_transport = probe_transport
        self._lock = asyncio.Lock()

        self._restore()

    def _restore(self) -> None:
        creds = self.vault.load()
        if creds is None:
            return
        self.client.set_api_key(creds.api_key)
        self.client.set_default_store_id(creds.store_id)
        logger.info(f'Auto-connected to "{creds.store_name}" from saved credentials')

    async def _fetch_store(self, store_id: str) -> dict[str, Any]:
        try:
            response = await self.client.get(f"/stores/{store_id}")
        except ValueError as e:
            raise BareMCPError("Store response was not valid JSON") from e
        item = response.get("item") if isinstance(response, dict) else None
        if not isinstance(item, dict):
            raise BareMCPError("Store response did not include an item")
        return item

    async def connect(self, api_url: str | None = None) -> dict[str, Any]:
        """Authenticate via the device flow unless a working session exists.

        Args:
            api_url: Optional API base URL for self-hosted instances

        Returns:
            Summary with the connected store and role

        Raises:
            ConfigError: If api_url is not an http(s) URL
            DeviceFlowError: If authorization is denied, expires, times out
                or the device endpoints fail
        """
        async with self._lock:
            if api_url:
                if not is_safe_url(api_url):
                    raise ConfigError("apiUrl must be an http:// or https:// URL")
                self.client.set_base_url(api_url)
                logger.info(f"Using custom API URL: {self.client.base_url}")

            store_id = self.client.get_default_store_id()
            if self.client.is_authenticated() and store_id:
                try:
                    item = await self._fetch_store(store_id)
                except (BareMCPError, httpx.HTTPError) as e:
                    logger.info(f"Existing session could not be verified ({e}); starting new authorization")
                    self.client.clear_auth()
                else:
                    return {
                        "connected": True,
                        "store": _store_summary(item),
                        "message": (
                            f'Already connected to "{item.get("name")}". '
                            "Use 'disconnect' first to connect to a different store."
                        ),
                    }

            flow = self._flow_factory(self.client.base_url)
            token = await flow.run()

            creds = StoredCredentials.from_token_response(token)
            saved = True
            try:
                self.vault.save(creds)
            except CredentialVaultError as e:
                saved = False
                logger.warning(f"Connected, but credentials could not be saved: {e}")

            self.client.set_api_key(token.access_token)
            self.client.set_default_store_id(token.store.id)

            if saved:
                message = (
                    f'Connected to "{token.store.name}" as {token.role.value}. '
                    f"Credentials saved to {self.vault.path}"
                )
            else:
                message = (
                    f'Connected to "{token.store.name}" as {token.role.value}. '
                    "Credentials could not be saved; you will need to connect again after a restart."
                )

            return {
                "connected": True,
                "store": token.store.to_dict(),
                "role": token.role.value,
                "credentialsSaved": saved,
                "message": message,
            }

    async def disconnect(self) -> dict[str, Any]:
        """Forget the session and delete saved credentials. Safe to repeat."""
        async with self._lock:
            was_connected = self.client.is_authenticated()
            self.client.clear_auth()
            self.vault.clear()

        return {
            "disconnected": True,
            "message": (
                "Disconnected and cleared saved credentials. Use 'connect' to authenticate again."
                if was_connected
                else "No active connection to disconnect."
            ),
        }

    async def status(self) -> dict[str, Any]:
        """Report whether a session is active and which store it targets."""
        if not self.client.is_authenticated():
            return {
                "connected": False,
                "message": "Not connected. Use 'connect' to authenticate via browser.",
                "hint": "The connect tool will open your browser for secure login; no API key is needed in chat.",
            }

        stored = self.vault.load()
        role = stored.role.value if stored else None
        store_id = self.client.get_default_store_id()

        if not store_id:
            return {
                "connected": True,
                "defaultStoreId": None,
                "role": role,
                "message": "Connected, but no default store set.",
            }

        try:
            item = await self._fetch_store(store_id)
        except (BareMCPError, httpx.HTTPError) as e:
            logger.debug(f"Store lookup failed during status: {e}")
            return {
                "connected": True,
                "defaultStoreId": store_id,
                "role": role,
                "message": (
                    "Connected, but could not fetch store details. "
                    "Token may be expired; try 'disconnect' then 'connect'."
                ),
            }

        return {
            "connected": True,
            "store": _store_summary(item, include_status=True),
            "role": role,
            "credentials": (
                {"savedAt": stored.created_at.isoformat(), "location": str(self.vault.path)}
                if stored
                else None
            ),
        }

    async def _probe(self, api_url: str) -> dict[str, Any]:
        reachable = False
        latency_ms: int | None = None
        error: str | None = None

        start = time.monotonic()
        try:
            async with asyncio.timeout(HEALTH_CHECK_TIMEOUT_SECONDS):
                async with httpx.AsyncClient(
                    transport=self._probe_transport,
                    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                ) as http:
                    response = await http.get(f"{api_url}/health")
            latency_ms = round((time.monotonic() - start) * 1000)
            reachable = response.is_success
        except TimeoutError:
            error = f"Health check timed out after {int(HEALTH_CHECK_TIMEOUT_SECONDS * 1000)}ms"
        except httpx.HTTPError as e:
            error = str(e) or type(e).__name__

        return {"apiReachable": reachable, "apiLatencyMs": latency_ms, "apiError": error}

    async def diagnostics(self) -> dict[str, Any]:
        """Collect troubleshooting information. Never includes the API key."""
        start = time.monotonic()
        api_url = self.client.base_url

        connectivity = await self._probe(api_url)

        load = self.vault.load_result()
        stored = load.credentials

        return {
            "version": __version__,
            "runtime": {
                "platform": sys.platform,
                "arch": platform.machine(),
                "pythonVersion": platform.python_version(),
                "implementation": platform.python_implementation(),
            },
            "configuration": {
                "apiUrl": api_url,
                "defaultStoreId": self.client.get_default_store_id(),
                "authenticated": self.client.is_authenticated(),
                "credentialsFile": str(self.vault.path),
                "credentialsExist": self.vault.exists(),
                "credentialsValid": load.ok,
                "credentialsIssue": None if load.ok else load.reason,
                "timeoutMs": self.client.timeout_ms,
                "maxRetries": self.client.retry_policy.max_retries,
            },
            "connectivity": connectivity,
            "session": stored.summary() if stored else None,
            "diagnosticsTimeMs": round((time.monotonic() - start) * 1000),
        }
