import logging
import subprocess
import sys
from enum import Enum

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class Severity(Enum):
    """How prominent a notification should be."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_URGENCY = {
    Severity.INFO: "low",
    Severity.SUCCESS: "low",
    Severity.WARNING: "normal",
    Severity.ERROR: "critical",
}


class SystemStrategy:
    """Base class defining the interface for desktop notifications.

    The base implementation delivers nothing; it is used on unsupported
    platforms and in silent mode.
    """

    def notify(
        self, title: str, message: str, severity: Severity = Severity.INFO
    ) -> None:
        """Sends a desktop notification.

        Args:
            title (str): The notification title.
            message (str): The notification body text.
            severity (Severity): How prominent the notification should be.
        """
        pass


class MacOSStrategy(SystemStrategy):
    """System strategy implementation for macOS."""

    def notify(
        self, title: str, message: str, severity: Severity = Severity.INFO
    ) -> None:
        """Sends a notification using AppleScript."""
        # Sanitize quotes to prevent AppleScript syntax errors.
        clean_msg = message.replace('"', "'")
        clean_title = title.replace('"', "'")
        script = (
            f'display notification "{clean_msg}" with title "{clean_title}" '
            f'subtitle "{APP_NAME}"'
        )
        try:
            subprocess.run(
                ["osascript", "-e", script], stderr=subprocess.DEVNULL, timeout=10
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Notification failed: {e}")


class LinuxStrategy(SystemStrategy):
    """System strategy implementation for Linux."""

    def notify(
        self, title: str, message: str, severity: Severity = Severity.INFO
    ) -> None:
        """Sends a notification using `notify-send`."""
        try:
            subprocess.run(
                [
                    "notify-send",
                    "--app-name",
                    APP_NAME,
                    "--urgency",
                    _URGENCY[severity],
                    title,
                    message,
                ],
                stderr=subprocess.DEVNULL,
                timeout=10,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Notification failed: {e}")


def get_system(silent: bool = False) -> SystemStrategy:
    """Factory function to retrieve the platform-specific notification strategy.

    Args:
        silent (bool): Return the no-op strategy regardless of platform.

    Returns:
        SystemStrategy: An instance of MacOSStrategy, LinuxStrategy, or the base
        SystemStrategy depending on the operating system.
    """
    if silent:
        return SystemStrategy()
    if sys.platform == "darwin":
        return MacOSStrategy()
    elif sys.platform.startswith("linux"):
        return LinuxStrategy()
    else:
        return SystemStrategy()
