"""Error taxonomy for BareMCP.

Every error raised at the transport or session boundary derives from
BareMCPError and carries a machine-readable ``code`` so the presentation
layer (see output.py) can render it without inspecting message text.
"""

from typing import Any


class BareMCPError(Exception):
    """Base class for all BareMCP errors."""

    code = "UNKNOWN_ERROR"


class ApiError(BareMCPError):
    """Failure reported by the BareCommerceCore API.

    Attributes:
        code: Machine-readable error code from the API (e.g. "NOT_FOUND")
        details: Optional structured details from the response body
        status_code: HTTP status of the response (0 when no response arrived)
    """

    def __init__(
        self,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"ApiError(code={self.code!r}, message={self.message!r}, status_code={self.status_code!r})"


class RequestTimeoutError(ApiError):
    """A single request attempt exceeded its hard timeout."""

    def __init__(self, timeout_ms: int, operation: str = "Request"):
        super().__init__(
            "TIMEOUT",
            f"{operation} timed out after {timeout_ms}ms",
            None,
            0,
        )
        self.timeout_ms = timeout_ms


class PermissionDeniedError(BareMCPError):
    """The caller's role lacks the permission an endpoint requires."""

    code = "PERMISSION_DENIED"

    def __init__(self, permission: str, user_role: str, hint: str | None = None):
        super().__init__(
            f"Permission denied: {permission}. "
            f"Your role ({user_role}) doesn't have this permission."
        )
        self.permission = permission
        self.user_role = user_role
        self.hint = hint


class ConfigError(BareMCPError):
    """Invalid startup configuration."""

    code = "CONFIG_ERROR"


class NotAuthenticatedError(BareMCPError):
    """No API key is installed; the user must connect first."""

    code = "NOT_AUTHENTICATED"

    def __init__(self) -> None:
        super().__init__(
            "Not connected to a store. Use the 'connect' tool first to authenticate."
        )


class StoreIdRequiredError(BareMCPError):
    """A store-scoped call was made without a store id or default store."""

    code = "STORE_ID_REQUIRED"

    def __init__(self) -> None:
        super().__init__(
            "storeId is required. Either provide it as a parameter "
            "or use the connect tool with a default store."
        )


class IntegrityError(BareMCPError):
    """Stored credentials failed authentication or have an unknown format.

    Raised by the vault when the GCM tag does not verify, which covers both
    tampering and a key derived on a different machine or account.
    """

    code = "INTEGRITY_ERROR"
