"""Command line interface modules.

This package provides the command-line tools for:
- Running spoofdpi under supervision with a live status panel
- Inspecting the active network service and its proxy settings
- Turning a stuck system proxy off
- Managing the launch agent and BPF permissions

The command modules build the core components and present their state with
Rich.
"""
