"""launchd agent for running spoofdpi outside the supervisor.

The agent descriptor embeds the same argument profile used by
:meth:`ProcessSupervisor.start`, so a binary upgrade that changes flags needs
the agent reinstalled with the matching profile.
"""

import plistlib
from pathlib import Path
from typing import Final

from loguru import logger

from spoofdpi_supervisor.core.exceptions import CommandFailedError
from spoofdpi_supervisor.core.lib.command_runner import CommandRunner
from spoofdpi_supervisor.core.lib.spoofdpi import DEFAULT_PROFILE, ArgumentProfile

LAUNCHCTL: Final = "/bin/launchctl"
AGENT_LABEL: Final = "com.spoofdpi.supervisor"


def default_agents_dir() -> Path:
    return Path.home() / "Library" / "LaunchAgents"


def build_descriptor(
    binary: Path,
    port: int,
    profile: ArgumentProfile = DEFAULT_PROFILE,
    label: str = AGENT_LABEL,
) -> dict:
    """Build the launchd property list for the agent."""
    return {
        "Label": label,
        "ProgramArguments": [str(binary), *profile.arguments(port, system_proxy=True)],
        "RunAtLoad": False,
        "KeepAlive": False,
    }


class LaunchAgent:
    """Install and remove the spoofdpi launch agent."""

    def __init__(
        self,
        runner: CommandRunner,
        agents_dir: Path | None = None,
        label: str = AGENT_LABEL,
    ) -> None:
        self.runner = runner
        self.agents_dir = agents_dir or default_agents_dir()
        self.label = label

    @property
    def plist_path(self) -> Path:
        return self.agents_dir / f"{self.label}.plist"

    @property
    def is_installed(self) -> bool:
        return self.plist_path.exists()

    def install(self, binary: Path, port: int, profile: ArgumentProfile = DEFAULT_PROFILE) -> Path:
        """Write the descriptor and load it with launchctl.

        Raises:
            CommandFailedError: If launchctl refuses the descriptor
        """
        self.agents_dir.mkdir(parents=True, exist_ok=True)
        descriptor = build_descriptor(binary, port, profile, self.label)
        with self.plist_path.open("wb") as f:
            plistlib.dump(descriptor, f)
        logger.info(f"Wrote launch agent {self.plist_path}")

        result = self.runner.run(LAUNCHCTL, ["load", str(self.plist_path)])
        if not result.ok:
            raise CommandFailedError(f"launchctl load failed: {result.message}", result.exit_code)
        return self.plist_path

    def uninstall(self) -> bool:
        """Unload and delete the descriptor.

        Returns:
            bool: False if no agent was installed
        """
        if not self.is_installed:
            return False

        result = self.runner.run(LAUNCHCTL, ["unload", str(self.plist_path)])
        if not result.ok:
            logger.warning(f"launchctl unload failed: {result.message}")
        self.plist_path.unlink()
        logger.info(f"Removed launch agent {self.plist_path}")
        return True
