"""Configuration loading for BareMCP."""

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigError

DEFAULT_API_URL = "https://api.barecommercecore.com"
DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_MAX_RETRIES = 3

CREDENTIALS_FILENAME = "credentials.json"

# Store API keys: sk_test_* or sk_live_*, alphanumeric/underscore only
API_KEY_PATTERN = re.compile(r"^sk_(test|live)_[a-zA-Z0-9_]+$")
API_KEY_MIN_LENGTH = 32


def default_config_dir() -> Path:
    """Per-user configuration directory (~/.baremcp)."""
    return Path.home() / ".baremcp"


# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    default_config_dir() / ".env",
]


@dataclass
class Settings:
    """Resolved runtime configuration.

    Built once at startup and handed to the vault, transport and session
    manager so none of them read the environment on their own.
    """

    api_url: str = DEFAULT_API_URL
    api_key: str | None = None
    default_store_id: str | None = None
    config_dir: Path = field(default_factory=default_config_dir)
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    debug: bool = False
    env_path: Path | None = None

    @property
    def credentials_file(self) -> Path:
        """Location of the encrypted credential file."""
        return self.config_dir / CREDENTIALS_FILENAME


def is_valid_api_key_format(key: str) -> bool:
    """Check a pre-provisioned API key against the store key format."""
    if not key.startswith(("sk_test_", "sk_live_")):
        return False
    if len(key) < API_KEY_MIN_LENGTH:
        return False
    return API_KEY_PATTERN.match(key) is not None


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def _parse_int(environ: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"Invalid {name}: expected an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"Invalid {name}: must be at least {minimum}, got {value}")
    return value


def load_settings(
    env_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Load settings from the environment.

    A .env file (explicit, ./.env or ~/.baremcp/.env) is loaded first without
    overriding variables that are already set.

    Args:
        env_path: Explicit path to a .env file (optional)
        environ: Mapping to read instead of os.environ (for testing)

    Returns:
        Settings with defaults applied

    Raises:
        ConfigError: If BARECOMMERCE_API_KEY is set but malformed, or a
            numeric setting cannot be parsed
    """
    env_file = None
    if environ is None:
        env_file = find_env_file(env_path)
        if env_file:
            load_dotenv(env_file)
        environ = os.environ

    api_url = environ.get("BARECOMMERCE_API_URL") or DEFAULT_API_URL
    api_key = environ.get("BARECOMMERCE_API_KEY") or None
    default_store_id = environ.get("BARECOMMERCE_DEFAULT_STORE_ID") or None

    if api_key and not is_valid_api_key_format(api_key):
        raise ConfigError(
            "Invalid BARECOMMERCE_API_KEY format. "
            "Store API keys must match pattern: sk_test_* or sk_live_* "
            f"(at least {API_KEY_MIN_LENGTH} characters total). "
            "Alternatively, omit the API key and use the 'connect' tool to authenticate via browser."
        )

    config_dir_value = environ.get("BAREMCP_CONFIG_DIR")
    config_dir = Path(config_dir_value).expanduser() if config_dir_value else default_config_dir()

    debug_value = environ.get("DEBUG", "")

    return Settings(
        api_url=api_url,
        api_key=api_key,
        default_store_id=default_store_id,
        config_dir=config_dir,
        timeout_ms=_parse_int(environ, "BAREMCP_TIMEOUT_MS", DEFAULT_TIMEOUT_MS, 1),
        max_retries=_parse_int(environ, "BAREMCP_MAX_RETRIES", DEFAULT_MAX_RETRIES, 0),
        debug=debug_value in ("baremcp", "*"),
        env_path=env_file,
    )
