"""Cross-platform helpers for handing a URL to the user's browser."""

import logging
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")


class UnsafeUrlError(ValueError):
    """URL is not an absolute http(s) URL and will not be launched."""

    pass


@dataclass(frozen=True)
class LaunchOutcome:
    """Result of asking the OS to open a URL.

    Attributes:
        launched: True if the opener process was started
        url: The URL that was requested
        error: Why the launch did not happen, if it didn't
    """

    launched: bool
    url: str
    error: str | None = None


def is_safe_url(url: str) -> bool:
    """Check that a URL is absolute and uses http or https."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ALLOWED_SCHEMES and bool(parsed.netloc)


class ExternalLauncher(ABC):
    """Opens URLs outside the process.

    The scheme check lives here so every implementation gets it; subclasses
    only implement _launch.
    """

    def open(self, url: str) -> LaunchOutcome:
        """Open a URL.

        Raises:
            UnsafeUrlError: If the URL is not http(s)
        """
        if not is_safe_url(url):
            raise UnsafeUrlError("Invalid URL: must be http:// or https://")
        return self._launch(url)

    @abstractmethod
    def _launch(self, url: str) -> LaunchOutcome:
        """Open a URL that has already passed validation."""


def browser_command(url: str, platform: str | None = None) -> list[str]:
    """Build the argument vector that opens a URL on the given platform.

    Always an argv list, never a shell string. On Windows the URL handler
    DLL is invoked directly rather than going through cmd's start builtin.
    """
    platform = platform or sys.platform
    if platform == "darwin":
        return ["open", url]
    if platform == "win32":
        return ["rundll32", "url.dll,FileProtocolHandler", url]
    return ["xdg-open", url]


class SystemLauncher(ExternalLauncher):
    """Launches the platform's default URL handler as a detached process."""

    def __init__(self, platform: str | None = None):
        self.platform = platform or sys.platform

    def _launch(self, url: str) -> LaunchOutcome:
        cmd = browser_command(url, self.platform)
        try:
            if self.platform == "win32":
                DETACHED_PROCESS = 0x00000008
                CREATE_NEW_PROCESS_GROUP = 0x00000200
                subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    creationflags=DETACHED_PROCESS | CREATE_NEW_PROCESS_GROUP,
                )
            else:
                subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as e:
            logger.debug(f"Browser launch failed: {e}")
            return LaunchOutcome(launched=False, url=url, error=str(e))

        return LaunchOutcome(launched=True, url=url)
