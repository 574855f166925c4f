"""Access to the Berkeley Packet Filter devices.

Some spoofdpi modes (fake packets for Discord and Instagram) need read/write
access to ``/dev/bpf*``, which macOS only grants to root by default.
"""

import os
from pathlib import Path
from typing import Final

from loguru import logger

from spoofdpi_supervisor.core.exceptions import PermissionDeniedError
from spoofdpi_supervisor.core.lib.command_runner import CommandRunner

BPF_DEVICE: Final = Path("/dev/bpf0")


def is_bpf_accessible(device: Path = BPF_DEVICE) -> bool:
    return os.access(device, os.R_OK | os.W_OK)


def setup_bpf_permissions(runner: CommandRunner) -> bool:
    """Make the BPF devices world read/writable through elevation."""
    try:
        ok = runner.run_with_elevation("/bin/sh", ["-c", "chmod 666 /dev/bpf*"])
    except PermissionDeniedError as e:
        logger.error(f"BPF setup error: {e}")
        return False
    if not ok:
        logger.error("BPF setup was refused or failed")
    return ok
