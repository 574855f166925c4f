"""Utility functions and helpers."""

from spoofdpi_supervisor.core.utils.utils import format_bytes, format_duration, unique

__all__ = ["format_bytes", "format_duration", "unique"]
