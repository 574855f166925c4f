"""Core supervisor library components."""

from .bpf import is_bpf_accessible, setup_bpf_permissions
from .command_runner import CommandResult, CommandRunner, Elevator, default_elevator
from .launch_agent import LaunchAgent, build_descriptor
from .log_stream import LogLine, LogStreamNormalizer
from .spoofdpi import ArgumentProfile, detect_profile, get_profile, locate_binary

__all__ = [
    "ArgumentProfile",
    "build_descriptor",
    "CommandResult",
    "CommandRunner",
    "default_elevator",
    "detect_profile",
    "Elevator",
    "get_profile",
    "is_bpf_accessible",
    "LaunchAgent",
    "locate_binary",
    "LogLine",
    "LogStreamNormalizer",
    "setup_bpf_permissions",
]
