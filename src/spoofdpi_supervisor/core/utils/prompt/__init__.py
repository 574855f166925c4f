"""Prompt and UI utilities."""

from spoofdpi_supervisor.core.utils.prompt.prompt import PromptHandler, console
from spoofdpi_supervisor.core.utils.prompt.supervisor_ui import SupervisorUI, create_supervisor_ui

__all__ = ["console", "create_supervisor_ui", "PromptHandler", "SupervisorUI"]
