"""Lifecycle supervision of the spoofdpi process.

This module owns the one spoofdpi child process and keeps the system proxy in
step with it:
- Starting the child and checking it survives a short grace period
- Pointing the system proxy at it once it is alive
- Merging bypass domains while it runs
- Undoing all of the above on stop, on a failed start, or when the child
  exits on its own

State moves ``STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED``. Every
transition happens under one lock, and only the thread that moved the state
into STARTING or STOPPING performs the steps that follow. Observers subscribe
to :class:`SupervisorEvent` notifications instead of polling.

Example:
    runner = CommandRunner()
    networksetup = NetworkSetup(runner)
    configurator = NetworkProxyConfigurator(networksetup)
    supervisor = ProcessSupervisor(
        runner,
        configurator,
        BypassReconciler(networksetup, configurator.discover_active_service),
    )
    supervisor.start(8080, ["discord.com"])
    ...
    supervisor.stop()
"""

import contextlib
import subprocess
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Final

from loguru import logger

from spoofdpi_supervisor.core.bypass import BypassReconciler
from spoofdpi_supervisor.core.exceptions import (
    BinaryNotFoundError,
    SpawnFailedError,
    StartupFailedError,
    SupervisorError,
)
from spoofdpi_supervisor.core.lib.command_runner import CommandRunner
from spoofdpi_supervisor.core.lib.log_stream import LogLine, LogStreamNormalizer
from spoofdpi_supervisor.core.lib.spoofdpi import (
    LISTEN_ADDR,
    ArgumentProfile,
    detect_profile,
    locate_binary,
)
from spoofdpi_supervisor.core.network import NetworkProxyConfigurator
from spoofdpi_supervisor.core.utils.utils import unique

LIVENESS_GRACE: Final = 0.5  # Seconds before checking the child is alive
TERMINATE_TIMEOUT: Final = 5.0  # Seconds to wait after SIGTERM before SIGKILL
READER_JOIN_TIMEOUT: Final = 1.0
READ_CHUNK_SIZE: Final = 4096


class SupervisorState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class EventKind(Enum):
    STATE = "state"
    LOG = "log"


@dataclass(frozen=True)
class SupervisorEvent:
    """Notification delivered to subscribers.

    Attributes:
        kind: Whether the state changed or a log line was added
        state: Supervisor state when the event was published
        line: The added or rewritten log line for LOG events
    """

    kind: EventKind
    state: SupervisorState
    line: LogLine | None = None


@dataclass
class SupervisedProcess:
    """The running spoofdpi child."""

    path: Path
    args: list[str]
    port: int
    handle: subprocess.Popen
    started_at: float = field(default_factory=time.monotonic)

    @property
    def pid(self) -> int:
        return self.handle.pid


Listener = Callable[[SupervisorEvent], None]


class ProcessSupervisor:
    """Start and stop spoofdpi together with the system proxy settings."""

    def __init__(
        self,
        runner: CommandRunner,
        configurator: NetworkProxyConfigurator,
        reconciler: BypassReconciler,
        normalizer: LogStreamNormalizer | None = None,
        profile: ArgumentProfile | None = None,
        locate: Callable[[], Path | None] = locate_binary,
        listen_addr: str = LISTEN_ADDR,
        liveness_grace: float = LIVENESS_GRACE,
        terminate_timeout: float = TERMINATE_TIMEOUT,
    ) -> None:
        self.runner = runner
        self.configurator = configurator
        self.reconciler = reconciler
        self.normalizer = normalizer or LogStreamNormalizer()
        self.normalizer.on_line = self._on_log_line
        self.profile = profile
        self.locate = locate
        self.listen_addr = listen_addr
        self.liveness_grace = liveness_grace
        self.terminate_timeout = terminate_timeout

        self._state = SupervisorState.STOPPED
        self._process: SupervisedProcess | None = None
        self._bypass_domains: list[str] = []
        self._listeners: list[Listener] = []
        self._lock = threading.RLock()
        self._reconcile_lock = threading.Lock()
        self._abort = threading.Event()
        self._output_attached: threading.Event | None = None
        self._reader: threading.Thread | None = None

    # Observable state

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SupervisorState.RUNNING

    @property
    def pid(self) -> int | None:
        process = self._process
        return process.pid if process else None

    @property
    def port(self) -> int | None:
        process = self._process
        return process.port if process else None

    @property
    def uptime(self) -> float:
        process = self._process
        if process is None or not self.is_running:
            return 0.0
        return time.monotonic() - process.started_at

    @property
    def bypass_domains(self) -> list[str]:
        return list(self._bypass_domains)

    @property
    def logs(self) -> list[str]:
        return self.normalizer.messages

    @property
    def transcript(self) -> list[str]:
        return self.normalizer.transcript

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def is_available(self) -> bool:
        return self.locate() is not None

    def clear_logs(self) -> None:
        self.normalizer.clear()

    # Lifecycle

    def start(self, port: int, bypass_domains: Sequence[str] = ()) -> bool:
        """Launch spoofdpi and point the system proxy at it.

        Args:
            port: Local port for spoofdpi to listen on
            bypass_domains: Domains that should skip the proxy

        Returns:
            bool: False if spoofdpi was already running or starting

        Raises:
            BinaryNotFoundError: If no spoofdpi executable exists
            StartupFailedError: If the child could not be launched or exited
            ProxyConfigFailedError: If the system proxy could not be enabled
        """
        with self._lock:
            if self._state is not SupervisorState.STOPPED:
                self._log("spoofdpi is already running")
                return False
            self._bypass_domains = unique(bypass_domains)
            self._abort.clear()
            self._set_state(SupervisorState.STARTING)

        proxy_touched = False
        try:
            process = self._launch(port)
            self._await_liveness(process)
            proxy_touched = True
            self.configurator.enable_proxy(port)
            with self._lock:
                if self._abort.is_set():
                    raise StartupFailedError("start cancelled by stop request")
                if process.handle.poll() is not None:
                    raise StartupFailedError(f"process exited with status {process.handle.returncode}")
                self._set_state(SupervisorState.RUNNING)
        except (SupervisorError, KeyboardInterrupt) as e:
            self._unwind_start(e, proxy_touched)
            raise

        self._log(f"spoofdpi running on {self.listen_addr}:{port} (PID {process.pid})")
        if self._bypass_domains:
            self._apply_bypass(self._bypass_domains)
        return True

    def stop(self) -> None:
        """Terminate spoofdpi and restore the proxy configuration.

        Safe to call in any state. While a start is in progress this only
        requests cancellation; the starting thread unwinds its own steps.
        """
        with self._lock:
            if self._state is SupervisorState.STARTING:
                self._abort.set()
                self._log("Stop requested while starting, cancelling start")
                return
            if self._state is not SupervisorState.RUNNING:
                return
            self._set_state(SupervisorState.STOPPING)
            process = self._process

        self._log("Stopping spoofdpi...")
        self._teardown(process)
        self._log("spoofdpi stopped")

    def set_bypass_domains(self, domains: Sequence[str]) -> None:
        """Change the bypass domains, reconciling immediately when running."""
        domains = unique(domains)
        with self._lock:
            self._bypass_domains = domains
            if self._state is not SupervisorState.RUNNING:
                return

        if domains:
            self._apply_bypass(domains)
        else:
            self._restore_bypass()

    # Internals

    def _launch(self, port: int) -> SupervisedProcess:
        path = self.locate()
        if path is None:
            raise BinaryNotFoundError()

        profile = self.profile or detect_profile(self.runner, path)
        args = profile.arguments(port, self.listen_addr)
        self._log(f"Starting: {path.name} {' '.join(args)}")
        try:
            handle = self.runner.spawn(str(path), args)
        except SpawnFailedError as e:
            raise StartupFailedError(e.reason) from e

        process = SupervisedProcess(path, args, port, handle)
        with self._lock:
            self._process = process
        self._attach_output(process)
        return process

    def _await_liveness(self, process: SupervisedProcess) -> None:
        if self._abort.wait(self.liveness_grace):
            raise StartupFailedError("start cancelled by stop request")
        code = process.handle.poll()
        if code is not None:
            raise StartupFailedError(f"process exited immediately with status {code}")
        logger.debug(f"spoofdpi alive after {self.liveness_grace}s, PID {process.pid}")

    def _unwind_start(self, error: BaseException, proxy_touched: bool) -> None:
        self._log(str(error) or "Start interrupted", "ERROR")
        with self._lock:
            process = self._process
        reader = self._detach_output()
        if process is not None:
            self._terminate(process)
        self._join_reader(reader)
        self.normalizer.reset()
        if proxy_touched:
            self.configurator.disable_proxy()
        with self._lock:
            self._process = None
            self._set_state(SupervisorState.STOPPED)

    def _teardown(self, process: SupervisedProcess | None) -> None:
        try:
            reader = self._detach_output()
            if process is not None:
                self._terminate(process)
            self._join_reader(reader)
            self.normalizer.reset()
            self._restore_bypass()
            self.configurator.disable_proxy()
        finally:
            with self._lock:
                self._process = None
                self._set_state(SupervisorState.STOPPED)

    def _terminate(self, process: SupervisedProcess) -> None:
        handle = process.handle
        try:
            if handle.poll() is None:
                handle.terminate()
                try:
                    handle.wait(timeout=self.terminate_timeout)
                except subprocess.TimeoutExpired:
                    logger.warning(f"spoofdpi (PID {process.pid}) ignored SIGTERM, killing it")
                    handle.kill()
                    handle.wait()
            else:
                handle.wait()
        except OSError as e:
            self._log(f"Could not terminate spoofdpi: {e}", "WARNING")

    def _attach_output(self, process: SupervisedProcess) -> None:
        attached = threading.Event()
        attached.set()
        reader = threading.Thread(
            target=self._pump_output,
            args=(process, process.handle.stdout, attached),
            name="spoofdpi-output",
            daemon=True,
        )
        self._output_attached = attached
        self._reader = reader
        reader.start()

    def _detach_output(self) -> threading.Thread | None:
        attached, reader = self._output_attached, self._reader
        self._output_attached = None
        self._reader = None
        if attached is not None:
            attached.clear()
        return reader

    def _join_reader(self, reader: threading.Thread | None) -> None:
        # The reader only returns once the child has closed its end of the pipe
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=READER_JOIN_TIMEOUT)

    def _pump_output(self, process: SupervisedProcess, stream: IO[bytes] | None, attached: threading.Event) -> None:
        if stream is None:
            return
        try:
            while attached.is_set():
                chunk = stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                if attached.is_set():
                    self.normalizer.feed(chunk)
        except (OSError, ValueError) as e:
            logger.debug(f"Output reader stopped: {e}")
        finally:
            with contextlib.suppress(OSError):
                stream.close()

        if attached.is_set():
            self._handle_unexpected_exit(process)

    def _handle_unexpected_exit(self, process: SupervisedProcess) -> None:
        code = process.handle.wait()
        with self._lock:
            if self._state is not SupervisorState.RUNNING or self._process is not process:
                return
            self._set_state(SupervisorState.STOPPING)
        self._log(f"spoofdpi exited unexpectedly with status {code}", "ERROR")
        self._teardown(process)

    def _apply_bypass(self, domains: Sequence[str]) -> None:
        with self._reconcile_lock:
            # Skipped once teardown has begun
            if self._state is not SupervisorState.RUNNING:
                return
            try:
                merged = self.reconciler.apply(domains)
            except SupervisorError as e:
                self._log(f"Could not apply bypass domains: {e}", "WARNING")
                return
        self._log(f"Bypass domains applied ({len(merged)} entries)")

    def _restore_bypass(self) -> None:
        # Waits for an in-flight merge so its snapshot is restored too
        with self._reconcile_lock:
            try:
                self.reconciler.restore()
            except SupervisorError as e:
                self._log(f"Could not restore bypass domains: {e}", "WARNING")

    def _set_state(self, state: SupervisorState) -> None:
        if state is self._state:
            return
        logger.debug(f"Supervisor state {self._state.value} -> {state.value}")
        self._state = state
        self._publish(SupervisorEvent(EventKind.STATE, state))

    def _log(self, message: str, level: str = "INFO") -> None:
        logger.opt(depth=1).log(level, message)
        self.normalizer.append(message)

    def _on_log_line(self, line: LogLine) -> None:
        self._publish(SupervisorEvent(EventKind.LOG, self._state, line))

    def _publish(self, event: SupervisorEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Supervisor listener failed")
