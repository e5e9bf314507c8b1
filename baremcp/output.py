"""Output formatting for tool results and CLI output.

error_payload() is the single place that turns an exception into the
{code, message, ...} shape callers see. Unexpected exceptions have their
messages screened so secrets and infrastructure details never reach an
MCP client.
"""

import json
import logging
import re
import sys
from typing import Any

import click

from .auth.device_flow import DeviceFlowError
from .errors import (
    ApiError,
    ConfigError,
    NotAuthenticatedError,
    PermissionDeniedError,
    StoreIdRequiredError,
)

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred"
MAX_SAFE_MESSAGE_LENGTH = 500
DEFAULT_PERMISSION_HINT = "Contact a store admin for elevated permissions."

SENSITIVE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"password",
        r"secret",
        r"token",
        r"api[_-]?key",
        r"authorization",
        r"bearer",
        r"credential",
        r"connection.*refused",
        r"ECONNREFUSED",
        r"ETIMEDOUT",
        r"database",
        r"sql",
        r"query",
        r"internal.*error",
    )
]


def sanitize_message(message: str) -> str:
    """Return the message if it is safe to show, else a generic one."""
    if len(message) >= MAX_SAFE_MESSAGE_LENGTH or any(p.search(message) for p in SENSITIVE_PATTERNS):
        logger.error(f"Sanitized error: {message}")
        return GENERIC_ERROR_MESSAGE
    return message


def error_payload(error: BaseException) -> dict[str, Any]:
    """Map an exception to its caller-facing error body."""
    if isinstance(error, PermissionDeniedError):
        return {
            "code": error.code,
            "message": str(error),
            "permission": error.permission,
            "yourRole": error.user_role,
            "hint": error.hint or DEFAULT_PERMISSION_HINT,
        }

    if isinstance(error, ApiError):
        payload: dict[str, Any] = {"code": error.code, "message": error.message}
        if error.details is not None:
            payload["details"] = error.details
        return payload

    if isinstance(
        error,
        (NotAuthenticatedError, StoreIdRequiredError, ConfigError, DeviceFlowError),
    ):
        return {"code": error.code, "message": str(error)}

    return {"code": "UNKNOWN_ERROR", "message": sanitize_message(str(error))}


def success_payload(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def format_json(data: Any, success: bool = True) -> str:
    """Format data as JSON output."""
    if success:
        output = success_payload(data)
    else:
        output = data  # Error dict already has success: false
    return json.dumps(output, indent=2, default=str)


def format_error_json(error: BaseException) -> str:
    """Format an error as JSON; never includes a traceback."""
    return json.dumps({"success": False, "error": error_payload(error)}, indent=2, default=str)


def output_json(data: Any, success: bool = True) -> None:
    """Output data as JSON to stdout."""
    click.echo(format_json(data, success))


def output_error_json(error: BaseException) -> None:
    """Output an error as JSON to stdout."""
    click.echo(format_error_json(error))
    sys.exit(1)


def output_human(message: str) -> None:
    """Output a human-readable message."""
    click.echo(message)


def output_error_human(error: BaseException, help_text: str | None = None) -> None:
    """Output an error in human-readable format."""
    payload = error_payload(error)
    click.secho(f"Error [{payload['code']}]: {payload['message']}", fg="red", err=True)
    hint = help_text or payload.get("hint")
    if hint:
        click.echo(f"\n{hint}", err=True)
    sys.exit(1)


class OutputHandler:
    """Handles output formatting based on mode (JSON or human)."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Output success response."""
        if self.json_mode:
            output_json(data)
        elif human_message:
            output_human(human_message)
        else:
            output_human(json.dumps(data, indent=2, default=str))

    def error(self, error: BaseException, help_text: str | None = None) -> None:
        """Output error response and exit with status 1."""
        if self.json_mode:
            output_error_json(error)
        else:
            output_error_human(error, help_text)
