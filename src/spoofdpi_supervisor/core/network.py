"""System proxy configuration through networksetup.

This module provides functionality for:
- Detecting the active network service (Wi-Fi, Ethernet, ...)
- Enabling and disabling the HTTP and HTTPS system proxy
- Retrying permission failures through privilege elevation

The active service is probed on every call rather than cached, so a laptop that
moves from Ethernet to Wi-Fi between calls is handled.

Example:
    configurator = NetworkProxyConfigurator(NetworkSetup(CommandRunner()))
    configurator.enable_proxy(8080)
    ...
    configurator.disable_proxy()
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final

from loguru import logger

from spoofdpi_supervisor.core.exceptions import (
    CommandFailedError,
    ProxyConfigFailedError,
    SpawnFailedError,
)
from spoofdpi_supervisor.core.lib.command_runner import CommandResult, CommandRunner

NETWORKSETUP: Final = "/usr/sbin/networksetup"
PROXY_HOST: Final = "127.0.0.1"

SERVICE_CANDIDATES: Final = ("Wi-Fi", "Ethernet", "USB 10/100/1000 LAN")
DEFAULT_SERVICE: Final = "Wi-Fi"

PERMISSION_MARKERS: Final = (
    "admin",
    "permission",
    "not permitted",
    "authorization",
    "privilege",
)


def is_permission_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in PERMISSION_MARKERS)


class NetworkSetup:
    """Thin wrapper around the networksetup command."""

    def __init__(self, runner: CommandRunner, path: str = NETWORKSETUP) -> None:
        self.runner = runner
        self.path = path

    def run(self, args: Sequence[str]) -> CommandResult:
        return self.runner.run(self.path, args)

    def query(self, args: Sequence[str]) -> str:
        """Run a read-only subcommand and return its output.

        Raises:
            CommandFailedError: If the command exits with a nonzero status
        """
        result = self.run(args)
        if not result.ok:
            raise CommandFailedError(result.message, result.exit_code)
        return result.stdout

    def configure(self, args: Sequence[str]) -> None:
        """Run a configuration subcommand, elevating once on permission errors.

        Raises:
            CommandFailedError: If the command fails and elevation does not help
        """
        result = self.run(args)
        if result.ok:
            return

        error = CommandFailedError(result.message, result.exit_code)
        if not is_permission_error(result.message):
            logger.error(f"networksetup {' '.join(args)} failed: {result.message}")
            raise error

        logger.warning(f"networksetup needs elevation: {result.message}")
        if self.runner.run_with_elevation(self.path, args):
            return
        raise error


@dataclass(frozen=True)
class ProxyStatus:
    """Web proxy settings reported for a service."""

    service: str
    enabled: bool
    server: str
    port: str


class NetworkProxyConfigurator:
    """Point the system HTTP(S) proxy at the local spoofdpi listener."""

    def __init__(
        self,
        networksetup: NetworkSetup,
        host: str = PROXY_HOST,
        candidates: Sequence[str] = SERVICE_CANDIDATES,
        default_service: str = DEFAULT_SERVICE,
    ) -> None:
        self.networksetup = networksetup
        self.host = host
        self.candidates = tuple(candidates)
        self.default_service = default_service

    def discover_active_service(self) -> str:
        """Return the first candidate service that has an IP address.

        This is a best-effort heuristic and never raises.
        """
        for service in self.candidates:
            try:
                result = self.networksetup.run(["-getinfo", service])
            except SpawnFailedError as e:
                logger.debug(f"Could not probe {service}: {e}")
                continue
            if "IP address:" in result.stdout and "IP address: none" not in result.stdout:
                logger.debug(f"Active network service: {service}")
                return service

        logger.info(f"No active network service found, using {self.default_service}")
        return self.default_service

    def enable_proxy(self, port: int) -> str:
        """Route HTTP and HTTPS traffic of the active service through the proxy.

        Args:
            port: Local port spoofdpi listens on

        Returns:
            str: Name of the service that was configured

        Raises:
            ProxyConfigFailedError: On the first command that fails. Steps that
                already succeeded are left in place.
        """
        service = self.discover_active_service()
        logger.info(f"Configuring proxy for {service} on {self.host}:{port}")
        steps = (
            ["-setwebproxy", service, self.host, str(port)],
            ["-setwebproxystate", service, "on"],
            ["-setsecurewebproxy", service, self.host, str(port)],
            ["-setsecurewebproxystate", service, "on"],
        )
        for args in steps:
            try:
                self.networksetup.configure(args)
            except (CommandFailedError, SpawnFailedError) as e:
                raise ProxyConfigFailedError(str(e)) from e
        logger.info(f"Proxy enabled: {self.host}:{port}")
        return service

    def disable_proxy(self) -> None:
        """Turn the HTTP and HTTPS proxy off, logging but ignoring failures."""
        service = self.discover_active_service()
        logger.info(f"Disabling proxy for {service}")
        for args in (
            ["-setwebproxystate", service, "off"],
            ["-setsecurewebproxystate", service, "off"],
        ):
            try:
                self.networksetup.configure(args)
            except (CommandFailedError, SpawnFailedError) as e:
                logger.warning(f"Could not run networksetup {args[0]}: {e}")

    def proxy_status(self, service: str | None = None) -> ProxyStatus:
        """Read the current web proxy settings of a service."""
        service = service or self.discover_active_service()
        output = self.networksetup.query(["-getwebproxy", service])
        fields = dict(re.findall(r"^(\w[\w ]*):\s*(.*)$", output, re.MULTILINE))
        return ProxyStatus(
            service=service,
            enabled=fields.get("Enabled", "No").strip() == "Yes",
            server=fields.get("Server", "").strip(),
            port=fields.get("Port", "").strip(),
        )

