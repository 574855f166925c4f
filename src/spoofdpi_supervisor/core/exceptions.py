"""Custom exceptions for the supervisor.

This module defines the exceptions used throughout the supervisor implementation.
They cover:
- Locating and launching the spoofdpi binary
- Running networksetup and other short-lived commands
- Applying the system proxy configuration
- Privilege elevation

Fatal errors abort ``start`` and leave the supervisor stopped. Every exception
carries a human readable message suitable for showing to the user.

Example:
    try:
        supervisor.start(8080)
    except SupervisorError as e:
        console.print(f"[red]Failed to start: {e}")
"""


class SupervisorError(Exception):
    """Base exception for supervisor errors."""


class BinaryNotFoundError(SupervisorError):
    """Raised when the spoofdpi executable cannot be found."""

    def __init__(self, searched: list[str] | None = None) -> None:
        self.searched = searched or []
        super().__init__("spoofdpi not found. Install it with: brew install spoofdpi")


class StartupFailedError(SupervisorError):
    """Raised when the child process does not survive startup."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Failed to start spoofdpi: {reason}")


class ProxyConfigFailedError(SupervisorError):
    """Raised when the system proxy could not be enabled."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Proxy configuration failed: {reason}")


class CommandFailedError(SupervisorError):
    """Raised when a configuration command exits with a nonzero status."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        self.message = message
        self.exit_code = exit_code
        super().__init__(message)


class PermissionDeniedError(CommandFailedError):
    """Raised when elevation is required but not available."""


class SpawnFailedError(SupervisorError):
    """Raised when an executable cannot be launched at all."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Could not launch {path}: {reason}")
