"""Execution of external commands.

This module wraps :mod:`subprocess` for the three kinds of invocation the
supervisor needs:
- Short-lived commands with captured output (``networksetup``, ``launchctl``)
- The same commands routed through an OS privilege elevation prompt
- The long-running spoofdpi child with stdout and stderr combined

Elevation is a capability object so that platforms without an interactive
prompt can fail closed and tests can substitute their own.

Example:
    runner = CommandRunner()
    result = runner.run("/usr/sbin/networksetup", ["-listallnetworkservices"])
    if result.ok:
        print(result.stdout)
"""

import shlex
import subprocess
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from loguru import logger

from spoofdpi_supervisor.core.exceptions import PermissionDeniedError, SpawnFailedError

OSASCRIPT = "/usr/bin/osascript"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished command.

    Attributes:
        exit_code: Process exit status
        stdout: Captured standard output
        stderr: Captured standard error
    """

    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def message(self) -> str:
        """Best description of what went wrong, stderr first."""
        return (self.stderr or self.stdout).strip() or f"exit status {self.exit_code}"


class Elevator(Protocol):
    """Capability for running a command with elevated privileges."""

    def elevate(self, command: Sequence[str]) -> bool: ...


def _applescript_quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


class AppleScriptElevator:
    """Elevate through the macOS administrator password prompt."""

    def __init__(self, osascript: str = OSASCRIPT) -> None:
        self.osascript = osascript

    def elevate(self, command: Sequence[str]) -> bool:
        script = f"do shell script {_applescript_quote(shlex.join(command))} with administrator privileges"
        try:
            result = subprocess.run(
                [self.osascript, "-e", script],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            logger.error(f"Elevation prompt could not be shown: {e}")
            return False
        if result.returncode != 0:
            logger.warning(f"Elevated command failed: {result.stderr.strip()}")
            return False
        return True


class UnavailableElevator:
    """Elevator for platforms without an interactive prompt."""

    def elevate(self, command: Sequence[str]) -> bool:
        raise PermissionDeniedError(
            f"Administrator privileges are required to run {shlex.join(command)}"
        )


def default_elevator() -> Elevator:
    if sys.platform == "darwin":
        return AppleScriptElevator()
    return UnavailableElevator()


class CommandRunner:
    """Run external commands on behalf of the supervisor components."""

    def __init__(self, elevator: Elevator | None = None) -> None:
        self.elevator = elevator or default_elevator()

    def run(self, path: str, args: Sequence[str]) -> CommandResult:
        """Run a command to completion and capture its output.

        Args:
            path: Executable to run
            args: Arguments passed to the executable

        Returns:
            CommandResult: Exit status and captured text

        Raises:
            SpawnFailedError: If the executable cannot be launched
        """
        logger.debug(f"Running {shlex.join([path, *args])}")
        try:
            completed = subprocess.run(
                [path, *args],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise SpawnFailedError(path, str(e)) from e
        return CommandResult(completed.returncode, completed.stdout, completed.stderr)

    def run_with_elevation(self, path: str, args: Sequence[str]) -> bool:
        """Run a command through the elevation capability.

        The elevation channel does not expose the command's output, so only
        success or failure is reported.
        """
        logger.debug(f"Running with elevation: {shlex.join([path, *args])}")
        return self.elevator.elevate([path, *args])

    def spawn(self, path: str, args: Sequence[str]) -> subprocess.Popen:
        """Start a long-running child with stdout and stderr on one pipe."""
        try:
            return subprocess.Popen(
                [path, *args],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                bufsize=0,
            )
        except OSError as e:
            raise SpawnFailedError(path, str(e)) from e
