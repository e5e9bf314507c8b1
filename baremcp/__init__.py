"""BareMCP - MCP server session and transport layer for BareCommerceCore stores."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("baremcp")
except PackageNotFoundError:
    __version__ = "1.0.0"  # Fallback for development

__all__ = [
    "__version__",
    # Core modules
    "Settings",
    "load_settings",
    "HttpClient",
    "RetryPolicy",
    "SessionManager",
    "OutputHandler",
]

# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("Settings", "load_settings"):
        from .config import Settings, load_settings
        return {"Settings": Settings, "load_settings": load_settings}[name]
    elif name in ("HttpClient", "RetryPolicy"):
        from .transport import HttpClient, RetryPolicy
        return {"HttpClient": HttpClient, "RetryPolicy": RetryPolicy}[name]
    elif name == "SessionManager":
        from .session import SessionManager
        return SessionManager
    elif name == "OutputHandler":
        from .output import OutputHandler
        return OutputHandler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
