"""Command-line interface for the spoofdpi supervisor.

This module provides the main command-line interface, handling:
- Command-line argument parsing
- Component construction
- Session lifecycle (start, live display, stop on Ctrl+C)
- Error reporting
- Launch agent and BPF permission management

The CLI is built using Typer. Every option that matters for a session can also
be set through an environment variable, so a launchd job or shell profile can
configure it without flags.

Example:
    # Run from command line:
    $ spoofdpi-supervisor run --port 8080 --bypass-discord --bypass youtube.com
"""

import time
from pathlib import Path

import pyperclip
import typer
from loguru import logger
from rich.console import Console

from spoofdpi_supervisor import __version__
from spoofdpi_supervisor.cmd.find_service import show_service_info
from spoofdpi_supervisor.core.bypass import (
    DISCORD_BYPASS_DOMAINS,
    BypassReconciler,
    effective_bypass_domains,
    parse_domain_list,
)
from spoofdpi_supervisor.core.exceptions import BinaryNotFoundError, SupervisorError
from spoofdpi_supervisor.core.lib.bpf import is_bpf_accessible, setup_bpf_permissions
from spoofdpi_supervisor.core.lib.command_runner import CommandRunner
from spoofdpi_supervisor.core.lib.launch_agent import LaunchAgent
from spoofdpi_supervisor.core.lib.spoofdpi import ArgumentProfile, detect_profile, get_profile, locate_binary
from spoofdpi_supervisor.core.network import NetworkProxyConfigurator, NetworkSetup
from spoofdpi_supervisor.core.supervisor import EventKind, ProcessSupervisor, SupervisorEvent, SupervisorState
from spoofdpi_supervisor.core.utils.log_config import LOG_FILE, setup_logging
from spoofdpi_supervisor.core.utils.prompt import create_supervisor_ui

DEFAULT_PORT = 8080
WAIT_INTERVAL = 0.5  # Seconds between checks of the supervisor state

console = Console()
app = typer.Typer(help="Run spoofdpi and keep the macOS system proxy in step with it")
agent_app = typer.Typer(help="Manage the spoofdpi launch agent")
app.add_typer(agent_app, name="agent")

BinaryOption = typer.Option(
    None, "--binary", envvar="SPOOFDPI_BINARY", help="Path to spoofdpi (default: search known locations)"
)
ProfileOption = typer.Option(
    None,
    "--profile",
    envvar="SPOOFDPI_PROFILE",
    help="spoofdpi release whose flags to use, e.g. 1.2 or 0.12 (default: detect)",
)


def resolve_binary(binary: Path | None) -> Path | None:
    if binary is not None:
        return binary if binary.is_file() else None
    return locate_binary()


def resolve_profile(profile: str | None) -> ArgumentProfile | None:
    """Profile named on the command line, or None to detect at start."""
    if profile is None:
        return None
    try:
        return get_profile(profile)
    except ValueError as e:
        console.print(f"[red]{e}")
        raise typer.Exit(1) from e


def build_supervisor(binary: Path | None, profile: str | None) -> ProcessSupervisor:
    runner = CommandRunner()
    networksetup = NetworkSetup(runner)
    configurator = NetworkProxyConfigurator(networksetup)
    return ProcessSupervisor(
        runner,
        configurator,
        BypassReconciler(networksetup, configurator.discover_active_service),
        profile=resolve_profile(profile),
        locate=lambda: resolve_binary(binary),
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(
        default=False,
        help="Enable debug logging",
    ),
):
    """Show version information and configure logging."""
    ctx.obj = {"debug": debug}
    setup_logging(debug=debug)
    console.print(f"[cyan]spoofdpi supervisor v{__version__}[/cyan]")


@app.command(name="run")
def run_session(
    ctx: typer.Context,
    port: int = typer.Option(DEFAULT_PORT, "--port", envvar="SPOOFDPI_PORT", help="Port for spoofdpi to listen on"),
    bypass: list[str] = typer.Option(
        [],
        "--bypass",
        "-b",
        envvar="SPOOFDPI_BYPASS",
        help="Domains to route directly (repeat or separate with commas)",
    ),
    bypass_discord: bool = typer.Option(
        default=False,
        help="Route Discord directly (fixes screen sharing and Go Live)",
    ),
    binary: Path | None = BinaryOption,
    profile: str | None = ProfileOption,
    ui: bool = typer.Option(default=True, help="Show the live status panel"),
    copy_logs: bool = typer.Option(default=False, help="Copy the session log to the clipboard on exit"),
):
    """Start spoofdpi, enable the system proxy, and stop both on Ctrl+C."""
    if ui and not (ctx.obj or {}).get("debug"):
        # Records printed to stderr would tear the live panel
        setup_logging(console_level="ERROR")

    supervisor = build_supervisor(binary, profile)
    domains = effective_bypass_domains(
        DISCORD_BYPASS_DOMAINS if bypass_discord else (),
        parse_domain_list(",".join(bypass)),
    )

    if not ui:
        supervisor.subscribe(print_log_event)

    try:
        supervisor.start(port, domains)
    except BinaryNotFoundError as e:
        console.print(f"[red]{e}")
        raise typer.Exit(1) from e
    except SupervisorError as e:
        logger.error(f"Start failed: {e}")
        console.print(f"[red]Error: {e}")
        console.print(f"[yellow]See {LOG_FILE} for details")
        raise typer.Exit(1) from e

    ui_thread = None
    if ui:
        _, ui_thread = create_supervisor_ui(supervisor)
        ui_thread.start()

    try:
        while supervisor.state is not SupervisorState.STOPPED:
            time.sleep(WAIT_INTERVAL)
        console.print("[red]spoofdpi exited, proxy settings restored")
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
        console.print("\n[yellow]Stopping spoofdpi...")
    finally:
        supervisor.stop()
        if ui_thread:
            ui_thread.join(timeout=2 * WAIT_INTERVAL)
        if copy_logs:
            copy_session_log(supervisor.transcript)


def print_log_event(event: SupervisorEvent) -> None:
    if event.kind is EventKind.LOG and event.line is not None:
        console.print(f"[dim]{event.line.timestamp:%H:%M:%S}[/dim] {event.line.render()}", highlight=False)


def copy_session_log(lines: list[str]) -> None:
    try:
        pyperclip.copy("\n".join(lines))
        console.print("[bold green]Session log copied to clipboard")
    except pyperclip.PyperclipException as e:
        console.print(f"[yellow]Could not copy to clipboard: {e}")


@app.command(name="service")
def show_service():
    """Show the active network service and its proxy settings."""
    runner = CommandRunner()
    networksetup = NetworkSetup(runner)
    configurator = NetworkProxyConfigurator(networksetup)
    show_service_info(configurator, BypassReconciler(networksetup, configurator.discover_active_service))


@app.command(name="disable")
def disable_proxy():
    """Turn the system HTTP(S) proxy off, e.g. after a crash left it on."""
    NetworkProxyConfigurator(NetworkSetup(CommandRunner())).disable_proxy()
    console.print("[green]System proxy disabled")


@app.command(name="bpf")
def bpf_permissions(
    setup: bool = typer.Option(default=False, help="Grant access to /dev/bpf* (asks for the admin password)"),
):
    """Check (and optionally fix) access to the BPF devices."""
    if is_bpf_accessible():
        console.print("[green]BPF devices are accessible")
        return
    if not setup:
        console.print("[yellow]BPF devices are not accessible. Run with --setup to fix.")
        raise typer.Exit(1)
    if not setup_bpf_permissions(CommandRunner()):
        console.print("[red]Could not change BPF permissions")
        raise typer.Exit(1)
    console.print("[green]BPF permissions updated")


@agent_app.command(name="install")
def install_agent(
    port: int = typer.Option(DEFAULT_PORT, "--port", envvar="SPOOFDPI_PORT", help="Port for spoofdpi to listen on"),
    binary: Path | None = BinaryOption,
    profile: str | None = ProfileOption,
):
    """Install a launch agent that runs spoofdpi with the same arguments."""
    runner = CommandRunner()
    path = resolve_binary(binary)
    if path is None:
        console.print(f"[red]{BinaryNotFoundError()}")
        raise typer.Exit(1)

    argument_profile = resolve_profile(profile) or detect_profile(runner, path)
    try:
        plist = LaunchAgent(runner).install(path, port, argument_profile)
    except (OSError, SupervisorError) as e:
        logger.exception("Launch agent installation failed")
        console.print(f"[red]Error: {e}")
        raise typer.Exit(1) from e
    console.print(f"[green]Launch agent installed: {plist}")


@agent_app.command(name="uninstall")
def uninstall_agent():
    """Unload and remove the launch agent."""
    if LaunchAgent(CommandRunner()).uninstall():
        console.print("[green]Launch agent removed")
    else:
        console.print("[yellow]No launch agent installed")


if __name__ == "__main__":
    app()
