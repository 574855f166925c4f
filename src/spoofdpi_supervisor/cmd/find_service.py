"""Active network service information display.

This module provides functionality for:
- Detecting the active network service
- Gathering its address information from networksetup
- Reading its web proxy and bypass settings
- Displaying the details in a Rich table

Example:
    # Show information about the active service
    show_service_info(configurator, reconciler)
"""

import re

from rich.console import Console
from rich.table import Table

from spoofdpi_supervisor.core.bypass import BypassReconciler
from spoofdpi_supervisor.core.exceptions import SupervisorError
from spoofdpi_supervisor.core.network import NetworkProxyConfigurator

console = Console()


def get_service_info(configurator: NetworkProxyConfigurator, service: str) -> dict[str, str]:
    """Get address information about a network service.

    Returns:
        dict[str, str]: Dictionary containing service information with keys:
            - ip: IP address
            - router: Default gateway
            - mac: Hardware address
    """
    result = configurator.networksetup.run(["-getinfo", service])
    if not result.ok:
        return {"ip": "Not found", "router": "Not found", "mac": "Not found"}

    output = result.stdout
    ip_match = re.search(r"^IP address: (\S+)", output, re.MULTILINE)
    router_match = re.search(r"^Router: (\S+)", output, re.MULTILINE)
    mac_match = re.search(r"^(?:Wi-Fi|Ethernet) ID: (\S+)", output, re.MULTILINE)

    return {
        "ip": ip_match.group(1) if ip_match else "Not found",
        "router": router_match.group(1) if router_match else "Not found",
        "mac": mac_match.group(1) if mac_match else "Not found",
    }


def show_service_info(configurator: NetworkProxyConfigurator, reconciler: BypassReconciler) -> dict[str, str]:
    """Display the active service and its proxy configuration."""
    service = configurator.discover_active_service()
    info = get_service_info(configurator, service)

    table = Table(title=f"Network Service ({service})")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("IP Address", info["ip"])
    table.add_row("Router", info["router"])
    table.add_row("Hardware Address", info["mac"])

    try:
        status = configurator.proxy_status(service)
        table.add_row("Web Proxy", "On" if status.enabled else "Off")
        table.add_row("Proxy Server", f"{status.server}:{status.port}" if status.server else "-")
        bypass = reconciler.read_domains(service)
        table.add_row("Bypass Domains", "\n".join(bypass) or "-")
    except SupervisorError as e:
        table.add_row("Proxy", f"[red]{e}")

    console.print(table)
    return info
