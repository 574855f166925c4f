import threading
import time

import pytest
from conftest import ADMIN_ERROR, CONFIG_ERROR, FakeProcess, FakeRunner, wait_for

from spoofdpi_supervisor.core.bypass import BypassReconciler
from spoofdpi_supervisor.core.exceptions import (
    BinaryNotFoundError,
    ProxyConfigFailedError,
    StartupFailedError,
)
from spoofdpi_supervisor.core.lib.spoofdpi import DEFAULT_PROFILE
from spoofdpi_supervisor.core.network import NetworkProxyConfigurator, NetworkSetup
from spoofdpi_supervisor.core.supervisor import READER_JOIN_TIMEOUT, EventKind, ProcessSupervisor, SupervisorState

ORIGINAL = ["*.local", "169.254/16"]


def test_start_runs_child_and_enables_proxy(supervisor, runner, binary):
    assert supervisor.start(8080) is True

    assert supervisor.is_running
    assert supervisor.state is SupervisorState.RUNNING
    process = runner.processes[0]
    assert process.args == [str(binary), *DEFAULT_PROFILE.arguments(8080)]
    assert supervisor.pid == process.pid
    assert supervisor.port == 8080
    assert runner.proxy_enabled("Wi-Fi")
    assert runner.commands("-setproxybypassdomains") == []


def test_start_applies_bypass_domains(supervisor, runner):
    supervisor.start(8080, ["discord.com", "discord.com", "youtube.com"])

    assert supervisor.bypass_domains == ["discord.com", "youtube.com"]
    assert runner.bypass["Wi-Fi"] == [*ORIGINAL, "discord.com", "youtube.com"]


def test_second_start_is_noop(supervisor, runner):
    supervisor.start(8080)

    assert supervisor.start(9090) is False
    assert len(runner.processes) == 1
    assert "spoofdpi is already running" in supervisor.logs


def test_missing_binary_fails_before_spawning(supervisor, runner):
    supervisor.locate = lambda: None

    with pytest.raises(BinaryNotFoundError):
        supervisor.start(8080)

    assert supervisor.state is SupervisorState.STOPPED
    assert runner.processes == []
    assert runner.config_calls == []
    assert not supervisor.is_available()


def test_child_exiting_immediately_fails_startup(supervisor, runner):
    runner.process_factory = lambda: FakeProcess(exit_code=1)

    with pytest.raises(StartupFailedError, match="status 1"):
        supervisor.start(8080)

    assert supervisor.state is SupervisorState.STOPPED
    assert runner.config_calls == []
    assert any("Failed to start spoofdpi" in line for line in supervisor.logs)


def test_proxy_failure_terminates_child(supervisor, runner):
    runner.failures["-setsecurewebproxy"] = CONFIG_ERROR

    with pytest.raises(ProxyConfigFailedError):
        supervisor.start(8080)

    process = runner.processes[0]
    assert not supervisor.is_running
    assert supervisor.state is SupervisorState.STOPPED
    assert process.terminated and not process.alive
    assert supervisor.pid is None
    # Partially applied proxy settings were turned off again
    assert runner.proxy[("Wi-Fi", "web")]["enabled"] is False


def test_proxy_failure_after_refused_elevation(supervisor, runner):
    runner.failures["-setwebproxy"] = ADMIN_ERROR
    runner.elevation_ok = False

    with pytest.raises(ProxyConfigFailedError, match="admin privileges"):
        supervisor.start(8080)

    assert not runner.processes[0].alive
    assert not supervisor.is_running


def test_stop_restores_everything(supervisor, runner):
    supervisor.start(8080, ["a.com"])
    process = runner.processes[0]

    supervisor.stop()

    assert supervisor.state is SupervisorState.STOPPED
    assert process.terminated and not process.alive
    assert runner.bypass["Wi-Fi"] == ORIGINAL
    assert not runner.proxy_enabled("Wi-Fi")
    assert not supervisor.reconciler.has_snapshot


def test_second_stop_issues_no_commands(supervisor, runner):
    supervisor.start(8080, ["a.com"])
    supervisor.stop()
    calls_after_first_stop = len(runner.calls)

    supervisor.stop()

    assert len(runner.calls) == calls_after_first_stop


def test_stop_when_never_started_is_noop(supervisor, runner):
    supervisor.stop()

    assert runner.calls == []


def test_stop_kills_child_that_ignores_sigterm(supervisor, runner):
    runner.process_factory = lambda: FakeProcess(ignore_term=True)
    supervisor.start(8080)
    process = runner.processes[0]

    supervisor.stop()

    assert process.terminated and process.killed
    assert supervisor.state is SupervisorState.STOPPED


def test_bypass_failure_is_not_fatal(supervisor, runner):
    runner.failures["-getproxybypassdomains"] = CONFIG_ERROR

    assert supervisor.start(8080, ["a.com"]) is True

    assert supervisor.is_running
    assert any(line.startswith("Could not apply bypass domains") for line in supervisor.logs)


def test_bypass_restore_failure_does_not_block_stop(supervisor, runner):
    supervisor.start(8080, ["a.com"])
    runner.failures["-setproxybypassdomains"] = CONFIG_ERROR

    supervisor.stop()

    assert supervisor.state is SupervisorState.STOPPED
    assert not runner.proxy_enabled("Wi-Fi")
    assert any(line.startswith("Could not restore bypass domains") for line in supervisor.logs)


def test_set_bypass_domains_while_running(supervisor, runner):
    supervisor.start(8080)

    supervisor.set_bypass_domains(["a.com"])
    assert runner.bypass["Wi-Fi"] == [*ORIGINAL, "a.com"]

    supervisor.set_bypass_domains([])
    assert runner.bypass["Wi-Fi"] == ORIGINAL
    writes = len(runner.commands("-setproxybypassdomains"))

    supervisor.set_bypass_domains([])
    assert len(runner.commands("-setproxybypassdomains")) == writes


def test_set_bypass_domains_while_stopped_is_remembered(supervisor, runner):
    supervisor.set_bypass_domains(["a.com"])

    assert runner.calls == []
    assert supervisor.bypass_domains == ["a.com"]


def test_child_output_reaches_logs(supervisor, runner):
    supervisor.start(8080)
    process = runner.processes[0]

    process.emit(b"\x1b[32mINFO\x1b[0m ready\nconn")
    process.emit(b"ection\nconnection\n")

    assert wait_for(lambda: "connection (×2)" in supervisor.logs)
    assert "INFO ready" in supervisor.logs


def test_stop_discards_partial_line(supervisor, runner):
    supervisor.start(8080)
    process = runner.processes[0]
    process.emit(b"half written")
    assert wait_for(lambda: supervisor.normalizer.partial == "half written")

    supervisor.stop()

    assert supervisor.normalizer.partial == ""
    assert not any("half written" in line for line in supervisor.logs)


def test_clear_logs(supervisor):
    supervisor.start(8080)

    supervisor.clear_logs()

    assert supervisor.logs == []


def test_unexpected_exit_restores_configuration(supervisor, runner):
    supervisor.start(8080, ["a.com"])

    runner.processes[0].exit(2)

    assert wait_for(lambda: supervisor.state is SupervisorState.STOPPED)
    assert not runner.proxy_enabled("Wi-Fi")
    assert runner.bypass["Wi-Fi"] == ORIGINAL
    assert "spoofdpi exited unexpectedly with status 2" in supervisor.logs


def test_stop_during_start_cancels_it(runner, configurator, reconciler, binary):
    supervisor = ProcessSupervisor(
        runner,
        configurator,
        reconciler,
        profile=DEFAULT_PROFILE,
        locate=lambda: binary,
        liveness_grace=5,
        terminate_timeout=0.2,
    )
    errors = []

    def start():
        try:
            supervisor.start(8080)
        except StartupFailedError as e:
            errors.append(e)

    thread = threading.Thread(target=start)
    thread.start()
    assert wait_for(lambda: runner.processes)

    supervisor.stop()
    thread.join(timeout=2)

    assert not thread.is_alive()
    assert len(errors) == 1
    assert supervisor.state is SupervisorState.STOPPED
    assert not runner.processes[0].alive
    assert runner.config_calls == []


def test_state_changes_are_published(supervisor):
    states = []
    unsubscribe = supervisor.subscribe(
        lambda event: states.append(event.state) if event.kind is EventKind.STATE else None
    )

    supervisor.start(8080)
    supervisor.stop()
    unsubscribe()
    supervisor.start(8080)

    assert states == [
        SupervisorState.STARTING,
        SupervisorState.RUNNING,
        SupervisorState.STOPPING,
        SupervisorState.STOPPED,
    ]


def test_failing_listener_does_not_break_supervisor(supervisor):
    def broken(event):
        raise RuntimeError("listener bug")

    supervisor.subscribe(broken)

    assert supervisor.start(8080) is True
    assert supervisor.is_running


def test_profile_detected_from_binary_version(runner, configurator, reconciler, binary):
    runner.version_output = "spoofdpi 0.12.1\n"
    supervisor = ProcessSupervisor(
        runner, configurator, reconciler, locate=lambda: binary, liveness_grace=0, terminate_timeout=0.2
    )

    supervisor.start(8080)
    try:
        assert "--listen-port" in runner.processes[0].args
        assert ["--version"] in runner.calls
    finally:
        supervisor.stop()


class SlowBypassRunner(FakeRunner):
    """Holds ``-getproxybypassdomains`` until released."""

    def __init__(self) -> None:
        super().__init__()
        self.reading = threading.Event()
        self.release = threading.Event()

    def run(self, path, args):
        args = list(args)
        if args and args[0] == "-getproxybypassdomains":
            self.reading.set()
            self.release.wait(timeout=5)
        return super().run(path, args)


@pytest.fixture
def slow_supervisor(binary):
    runner = SlowBypassRunner()
    networksetup = NetworkSetup(runner)
    configurator = NetworkProxyConfigurator(networksetup)
    sup = ProcessSupervisor(
        runner,
        configurator,
        BypassReconciler(networksetup, configurator.discover_active_service),
        profile=DEFAULT_PROFILE,
        locate=lambda: binary,
        liveness_grace=0,
        terminate_timeout=0.2,
    )
    yield sup, runner
    runner.release.set()
    sup.stop()


def test_stop_during_bypass_merge_restores_list(slow_supervisor):
    supervisor, runner = slow_supervisor
    starter = threading.Thread(target=supervisor.start, args=(8080, ["a.com"]))
    starter.start()
    assert runner.reading.wait(timeout=2)

    stopper = threading.Thread(target=supervisor.stop)
    stopper.start()
    assert wait_for(lambda: supervisor.state is SupervisorState.STOPPING)
    runner.release.set()
    starter.join(timeout=2)
    stopper.join(timeout=2)

    assert supervisor.state is SupervisorState.STOPPED
    assert runner.bypass["Wi-Fi"] == ORIGINAL
    assert not supervisor.reconciler.has_snapshot
    assert not runner.proxy_enabled("Wi-Fi")


def test_unexpected_exit_during_bypass_change_restores_list(slow_supervisor):
    supervisor, runner = slow_supervisor
    supervisor.start(8080)
    changer = threading.Thread(target=supervisor.set_bypass_domains, args=(["a.com"],))
    changer.start()
    assert runner.reading.wait(timeout=2)

    runner.processes[0].exit(1)
    assert wait_for(lambda: supervisor.state is SupervisorState.STOPPING)
    runner.release.set()
    changer.join(timeout=2)

    assert wait_for(lambda: supervisor.state is SupervisorState.STOPPED)
    assert runner.bypass["Wi-Fi"] == ORIGINAL
    assert not supervisor.reconciler.has_snapshot


def test_stop_does_not_wait_for_reader_timeout(supervisor, runner):
    supervisor.start(8080)

    began = time.monotonic()
    supervisor.stop()

    assert time.monotonic() - began < READER_JOIN_TIMEOUT / 2
    assert not runner.processes[0].alive


def test_transcript_carries_timestamps(supervisor):
    supervisor.start(8080)

    assert supervisor.logs[-1].startswith("spoofdpi running on")
    assert supervisor.transcript[-1].startswith("[")
    assert supervisor.transcript[-1].endswith(supervisor.logs[-1])
