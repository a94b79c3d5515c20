import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from rich.box import HEAVY, ROUNDED, SIMPLE
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from quotasync.domain.interfaces.user_interface import UserInterface
from quotasync.domain.models.usage import FlushResult, FlushStatus, SyncState, SyncStatus, UsageCounter

logger = logging.getLogger(__name__)

STATUS_STYLES = {
    SyncStatus.IDLE: "green",
    SyncStatus.SYNCING: "cyan",
    SyncStatus.DEGRADED: "yellow",
    SyncStatus.AUTH_REQUIRED: "bold red",
}

FLUSH_STYLES = {
    FlushStatus.COMPLETED: "green",
    FlushStatus.EMPTY: "dim",
    FlushStatus.DEFERRED: "cyan",
    FlushStatus.FAILED: "yellow",
    FlushStatus.AUTH_REQUIRED: "bold red",
    FlushStatus.CANCELLED: "dim",
}

def _format_time(timestamp: Optional[float]) -> str:
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")

class ConsoleDisplay(UserInterface):
    """Concrete implementation of UserInterface using the rich library for console output."""

    def __init__(self, console: Optional[Console] = None):
        self._console = console or Console()

    @property
    def console(self) -> Console:
        """Get the Rich console instance for direct operations."""
        return self._console

    def display_error(self, error_message: str, **kwargs: Any) -> None:
        panel = Panel(
            Text(error_message, style="white"),
            title="[bold red]Error[/bold red]",
            border_style="red",
            box=HEAVY,
            padding=(0, 1)
        )
        self.console.print(panel)

    def display_info(self, info_message: str, **kwargs: Any) -> None:
        panel = Panel(
            Text(info_message, style="white"),
            title="[bold blue]Info[/bold blue]",
            border_style="blue",
            box=SIMPLE,
            padding=(0, 1)
        )
        self.console.print(panel)

    def display_warning(self, warning_message: str, **kwargs: Any) -> None:
        logger.warning(f"Display warning: {warning_message}")
        panel = Panel(
            Text(warning_message, style="white"),
            title="[bold yellow]Warning[/bold yellow]",
            border_style="yellow",
            box=HEAVY,
            padding=(0, 1)
        )
        self.console.print(panel)

    def display_usage(
        self,
        counters: List[UsageCounter],
        pending: Dict[str, int],
        sync_state: SyncState,
        tier: Optional[str] = None,
    ) -> None:
        """Renders the counter table followed by a sync status summary."""
        table = Table(show_header=True, box=ROUNDED, border_style="cyan", padding=(0, 1),
                      title=f"Usage ({tier or 'unknown tier'})")
        table.add_column("Action", style="bold")
        table.add_column("Used", justify="right")
        table.add_column("Limit", justify="right")
        table.add_column("Remaining", justify="right")
        table.add_column("Pending", justify="right", style="cyan")
        table.add_column("Resets at", style="dim")

        seen = set()
        for counter in sorted(counters, key=lambda c: c.action_type):
            seen.add(counter.action_type)
            remaining_style = "red" if counter.remaining == 0 else "green"
            table.add_row(
                counter.action_type,
                str(counter.current_count),
                str(counter.limit),
                f"[{remaining_style}]{counter.remaining}[/{remaining_style}]",
                str(pending.get(counter.action_type, 0)),
                _format_time(counter.reset_timestamp),
            )
        # Types with queued actions but no counter yet
        for action_type in sorted(set(pending) - seen):
            table.add_row(action_type, "-", "-", "-", str(pending[action_type]), "-")

        if not counters and not pending:
            self.display_info("No usage recorded yet.")
        else:
            self.console.print(table)

        style = STATUS_STYLES.get(sync_state.status, "white")
        summary = Table(show_header=False, box=SIMPLE, padding=(0, 1))
        summary.add_column("Key", style="dim")
        summary.add_column("Value")
        summary.add_row("Sync status", f"[{style}]{sync_state.status.value}[/{style}]")
        summary.add_row("Last sync", _format_time(sync_state.last_sync_timestamp))
        if sync_state.last_sync_error:
            summary.add_row("Last error", f"[yellow]{sync_state.last_sync_error}[/yellow]")
        if sync_state.in_flight_batch_ids:
            summary.add_row("In flight", ", ".join(sorted(sync_state.in_flight_batch_ids)))
        self.console.print(summary)

    def display_flush_results(self, results: List[FlushResult]) -> None:
        if not results:
            self.display_info("Nothing to flush.")
            return
        table = Table(show_header=True, box=ROUNDED, border_style="cyan", padding=(0, 1))
        table.add_column("Action", style="bold")
        table.add_column("Result")
        table.add_column("Acked", justify="right")
        table.add_column("Dropped", justify="right")
        table.add_column("Requeued", justify="right")
        table.add_column("Error", style="dim")
        for result in results:
            style = FLUSH_STYLES.get(result.status, "white")
            table.add_row(
                result.action_type,
                f"[{style}]{result.status.value}[/{style}]",
                str(len(result.acked)),
                str(len(result.dropped)),
                str(len(result.requeued)),
                result.error or "",
            )
        self.console.print(table)
