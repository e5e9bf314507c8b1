"""MCP server exposing the session tools over stdio."""

import json
import logging
from collections.abc import Awaitable
from typing import Any

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from . import __version__
from .config import Settings
from .output import error_payload
from .session import SessionManager

logger = logging.getLogger(__name__)

SERVER_NAME = "baremcp"

INSTRUCTIONS = (
    "Manage a BareCommerceCore store. Call 'connect' first; it opens a browser "
    "login so no API key is ever pasted into the conversation."
)


async def _run_tool(name: str, operation: Awaitable[dict[str, Any]]) -> dict[str, Any]:
    """Await a session operation, converting failures to ToolError."""
    try:
        return await operation
    except Exception as e:
        logger.debug(f"Tool '{name}' failed: {type(e).__name__}: {e}")
        raise ToolError(json.dumps(error_payload(e), indent=2)) from e


def create_server(manager: SessionManager) -> FastMCP:
    """Build the MCP server with the session tools registered."""
    server = FastMCP(SERVER_NAME, instructions=INSTRUCTIONS)

    @server.tool(
        description=(
            "Connect to your BareCommerceCore store securely via browser login. "
            "This opens your browser where you log in and authorize access; no API key "
            f"is needed in chat. Credentials are stored encrypted in {manager.vault.path}. "
            "Optionally pass 'api_url' to connect to a self-hosted BareCommerce instance."
        )
    )
    async def connect(api_url: str | None = None) -> dict[str, Any]:
        return await _run_tool("connect", manager.connect(api_url=api_url))

    @server.tool(description="Disconnect from the current store and clear saved credentials.")
    async def disconnect() -> dict[str, Any]:
        return await _run_tool("disconnect", manager.disconnect())

    @server.tool(description="Check the current connection status, store, and your role.")
    async def status() -> dict[str, Any]:
        return await _run_tool("status", manager.status())

    @server.tool(
        description=(
            "Get diagnostic information about the BareMCP server for troubleshooting. "
            "Returns version, configuration, API connectivity status, and environment info."
        )
    )
    async def diagnostics() -> dict[str, Any]:
        return await _run_tool("diagnostics", manager.diagnostics())

    return server


def run_server(settings: Settings) -> None:
    """Serve the session tools on stdio until the client disconnects."""
    logger.info(f"Starting {SERVER_NAME} v{__version__}")
    logger.info(f"API endpoint: {settings.api_url}")

    manager = SessionManager(settings)
    if settings.api_key:
        logger.info("Pre-authenticated with API key")
        if settings.default_store_id:
            logger.info(f"Default store: {settings.default_store_id}")
    elif not manager.client.is_authenticated():
        logger.info("Hosted mode: users must authenticate with the 'connect' tool")

    create_server(manager).run("stdio")
