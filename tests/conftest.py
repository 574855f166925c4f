import queue
import subprocess
import time
from pathlib import Path

import pytest

from spoofdpi_supervisor.core.bypass import BypassReconciler
from spoofdpi_supervisor.core.lib.command_runner import CommandResult
from spoofdpi_supervisor.core.lib.spoofdpi import DEFAULT_PROFILE
from spoofdpi_supervisor.core.network import NETWORKSETUP, NetworkProxyConfigurator, NetworkSetup
from spoofdpi_supervisor.core.supervisor import ProcessSupervisor

ADMIN_ERROR = CommandResult(14, "", "** Error: Command requires admin privileges.\n")
CONFIG_ERROR = CommandResult(4, "", "** Error: The parameters were not valid.\n")


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeStream:
    """Blocking pipe stand-in; an empty chunk signals EOF."""

    def __init__(self) -> None:
        self._chunks: queue.Queue[bytes] = queue.Queue()
        self.closed = False

    def push(self, data: bytes) -> None:
        self._chunks.put(data)

    def read(self, size: int = -1) -> bytes:
        return self._chunks.get()

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    def __init__(self, pid: int = 4242, exit_code: int | None = None, ignore_term: bool = False) -> None:
        self.pid = pid
        self.returncode = None
        self.stdout = FakeStream()
        self.ignore_term = ignore_term
        self.terminated = False
        self.killed = False
        self.args: list[str] = []
        if exit_code is not None:
            self.exit(exit_code)

    def emit(self, data: bytes) -> None:
        self.stdout.push(data)

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self.stdout.push(b"")

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.returncode is None:
            if deadline is not None and time.monotonic() >= deadline:
                raise subprocess.TimeoutExpired("spoofdpi", timeout)
            time.sleep(0.01)
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_term:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    @property
    def alive(self) -> bool:
        return self.returncode is None


class FakeRunner:
    """Command runner simulating networksetup state and the spoofdpi child."""

    def __init__(self, active: str = "Wi-Fi") -> None:
        self.active = active
        self.bypass: dict[str, list[str]] = {"Wi-Fi": ["*.local", "169.254/16"]}
        self.proxy: dict[tuple[str, str], dict] = {}
        self.calls: list[list[str]] = []
        self.elevated: list[list[str]] = []
        self.failures: dict[str, CommandResult] = {}
        self.elevation_ok = True
        self.version_output = "spoofdpi v1.2.0"
        self.processes: list[FakeProcess] = []
        self.process_factory = FakeProcess

    # Helpers for assertions

    def commands(self, subcommand: str) -> list[list[str]]:
        return [call for call in self.calls if call and call[0] == subcommand]

    @property
    def config_calls(self) -> list[list[str]]:
        return [call for call in self.calls if call and call[0].startswith("-set")]

    def proxy_enabled(self, service: str = "Wi-Fi") -> bool:
        web = self.proxy.get((service, "web"), {}).get("enabled", False)
        secure = self.proxy.get((service, "secure"), {}).get("enabled", False)
        return web and secure

    # CommandRunner interface

    def run(self, path: str, args) -> CommandResult:
        args = list(args)
        self.calls.append(args)
        if path != NETWORKSETUP:
            return CommandResult(0, self.version_output, "")
        if args[0] in self.failures:
            return self.failures[args[0]]
        return self._networksetup(args)

    def run_with_elevation(self, path: str, args) -> bool:
        args = list(args)
        self.elevated.append(args)
        if self.elevation_ok:
            self._networksetup(args)
        return self.elevation_ok

    def spawn(self, path: str, args) -> FakeProcess:
        process = self.process_factory()
        process.args = [path, *args]
        self.processes.append(process)
        return process

    def _networksetup(self, args: list[str]) -> CommandResult:
        sub, rest = args[0], args[1:]
        if sub == "-getinfo":
            if rest[0] == self.active:
                return CommandResult(
                    0,
                    "DHCP Configuration\nIP address: 192.168.1.20\nSubnet mask: 255.255.255.0\n"
                    "Router: 192.168.1.1\nWi-Fi ID: a4:83:e7:00:11:22\n",
                    "",
                )
            return CommandResult(0, "DHCP Configuration\nIP address: none\nRouter: none\n", "")
        if sub == "-getproxybypassdomains":
            domains = self.bypass.get(rest[0], [])
            if not domains:
                return CommandResult(0, f"There aren't any bypass domains set on {rest[0]}.\n", "")
            return CommandResult(0, "\n".join(domains) + "\n", "")
        if sub == "-setproxybypassdomains":
            self.bypass[rest[0]] = [] if rest[1:] == ["Empty"] else rest[1:]
        elif sub in ("-setwebproxy", "-setsecurewebproxy"):
            kind = "web" if sub == "-setwebproxy" else "secure"
            self.proxy.setdefault((rest[0], kind), {}).update(server=rest[1], port=rest[2])
        elif sub in ("-setwebproxystate", "-setsecurewebproxystate"):
            kind = "web" if sub == "-setwebproxystate" else "secure"
            self.proxy.setdefault((rest[0], kind), {})["enabled"] = rest[1] == "on"
        elif sub == "-getwebproxy":
            settings = self.proxy.get((rest[0], "web"), {})
            return CommandResult(
                0,
                f"Enabled: {'Yes' if settings.get('enabled') else 'No'}\n"
                f"Server: {settings.get('server', '')}\nPort: {settings.get('port', '0')}\n"
                "Authenticated Proxy Enabled: 0\n",
                "",
            )
        return CommandResult(0, "", "")


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def networksetup(runner) -> NetworkSetup:
    return NetworkSetup(runner)


@pytest.fixture
def configurator(networksetup) -> NetworkProxyConfigurator:
    return NetworkProxyConfigurator(networksetup)


@pytest.fixture
def reconciler(networksetup, configurator) -> BypassReconciler:
    return BypassReconciler(networksetup, configurator.discover_active_service)


@pytest.fixture
def binary(tmp_path) -> Path:
    path = tmp_path / "spoofdpi"
    path.write_text("#!/bin/sh\n")
    return path


@pytest.fixture
def supervisor(runner, configurator, reconciler, binary):
    sup = ProcessSupervisor(
        runner,
        configurator,
        reconciler,
        profile=DEFAULT_PROFILE,
        locate=lambda: binary,
        liveness_grace=0,
        terminate_timeout=0.2,
    )
    yield sup
    sup.stop()
