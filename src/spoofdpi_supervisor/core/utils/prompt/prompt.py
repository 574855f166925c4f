"""Base prompt handling and UI components."""

from rich.console import Console, RenderableType
from rich.live import Live
from rich.spinner import Spinner

console = Console()


class PromptHandler:
    """Base class for live terminal displays."""

    def __init__(self) -> None:
        self._refresh_rate = 1.0
        self._spinner = Spinner("dots")

    def create_live_display(self, content: RenderableType, refresh_per_second: int = 4) -> Live:
        """Create a live updating display that stays on screen when closed."""
        return Live(
            content,
            console=console,
            refresh_per_second=refresh_per_second,
            transient=False,
            auto_refresh=False,
        )
