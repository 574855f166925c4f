"""Live status panel for a supervised spoofdpi session."""

import threading
import time

import psutil
from rich.console import Group
from rich.panel import Panel
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

from spoofdpi_supervisor.core.supervisor import ProcessSupervisor, SupervisorState
from spoofdpi_supervisor.core.utils.utils import format_bytes, format_duration

from .prompt import PromptHandler

LOG_TAIL = 12

STATE_STYLES = {
    SupervisorState.STOPPED: "red",
    SupervisorState.STARTING: "yellow",
    SupervisorState.RUNNING: "green",
    SupervisorState.STOPPING: "yellow",
}


def process_memory(pid: int | None) -> str:
    """Resident memory of the child, or a dash if it is gone."""
    if pid is None:
        return "-"
    try:
        return format_bytes(psutil.Process(pid).memory_info().rss)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return "-"


class SupervisorUI(PromptHandler):
    """UI handler showing supervisor state and the most recent log lines."""

    def __init__(self, supervisor: ProcessSupervisor, tail: int = LOG_TAIL) -> None:
        super().__init__()
        self.supervisor = supervisor
        self.tail = tail
        self.running = True
        self._start_time = time.monotonic()
        self._refresh_rate = 0.5
        self._spinner = Spinner("dots", text="")

    def _generate_table(self) -> Table:
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Property", style="cyan", no_wrap=True)
        table.add_column("Value", style="green", no_wrap=True)

        state = self.supervisor.state
        spinner_text = self._spinner.render(time.monotonic() - self._start_time)
        table.add_row("State", Text.assemble(spinner_text, " ", (state.value, STATE_STYLES[state])))
        table.add_row("PID", str(self.supervisor.pid or "-"))
        table.add_row("Uptime", format_duration(self.supervisor.uptime))
        table.add_row("Memory", process_memory(self.supervisor.pid))
        table.add_row("Bypass domains", str(len(self.supervisor.bypass_domains)))
        return table

    def _generate_logs(self) -> Text:
        lines = self.supervisor.normalizer.lines[-self.tail :]
        text = Text()
        for line in lines:
            text.append(f"{line.timestamp:%H:%M:%S} ", style="dim")
            text.append(line.render() + "\n")
        return text

    def _generate_display(self) -> Panel:
        port = self.supervisor.port
        title = Text(f"spoofdpi: {self.supervisor.listen_addr}:{port or '-'}", style="bold cyan")
        return Panel(
            Group(self._generate_table(), Text(), self._generate_logs()),
            title=title,
            subtitle="Press Ctrl+C to stop",
            border_style="blue",
            padding=(1, 2),
        )

    def run(self) -> None:
        """Refresh the panel until stopped or the supervisor stops."""
        with self.create_live_display(self._generate_display()) as live:
            while self.running:
                live.update(self._generate_display(), refresh=True)
                if self.supervisor.state is SupervisorState.STOPPED:
                    self.running = False
                    break
                time.sleep(self._refresh_rate)


def create_supervisor_ui(supervisor: ProcessSupervisor) -> tuple[SupervisorUI, threading.Thread]:
    """Create the UI and the daemon thread that runs it."""
    ui = SupervisorUI(supervisor)
    return ui, threading.Thread(target=ui.run, daemon=True)
