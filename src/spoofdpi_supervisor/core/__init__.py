"""Core supervisor implementation.

This package contains the components that keep spoofdpi and the system proxy
settings in step:
- Command execution and privilege elevation
- Log stream normalization
- Network service discovery and proxy configuration
- Bypass domain reconciliation
- Process lifecycle supervision
- Exception handling

The core package has no knowledge of the command line; the ``cmd`` package
builds the components and drives them.
"""
