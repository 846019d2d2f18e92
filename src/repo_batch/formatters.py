"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

if TYPE_CHECKING:
    from .core import BatchSummary, RepoOutcome


OPERATION_TITLES = {
    "install": "Install",
    "uninstall": "Remove",
    "exec": "Exec",
    "sync": "Sync",
}


class OutputFormatter:
    """Format output for console or JSON."""

    def __init__(self, console: Console, use_json: bool = False):
        self.console = console
        self.use_json = use_json

    def print_outcomes(
        self,
        outcomes: list[RepoOutcome],
        summary: BatchSummary,
        operation: str,
    ):
        """Print per-repository outcomes followed by the summary."""
        if self.use_json:
            self._print_outcome_json(outcomes, summary)
        else:
            self._print_outcome_table(outcomes, summary, operation)

    def _get_status_display(self, outcome: RepoOutcome) -> str:
        """Get status label with icon."""
        from .core import OutcomeStatus

        match outcome.status:
            case OutcomeStatus.SUCCESS:
                return "[green]✓ Success[/]"
            case OutcomeStatus.ERROR:
                return "[red]✗ Error[/]"
            case OutcomeStatus.SKIPPED:
                return "[yellow]⚠ Skipped[/]"
            case OutcomeStatus.DRY_RUN:
                return "[blue]☐ Dry run[/]"
            case _:
                return "[dim]?[/]"

    def _print_outcome_table(
        self,
        outcomes: list[RepoOutcome],
        summary: BatchSummary,
        operation: str,
    ):
        """Print outcomes as a rich table."""
        if not outcomes:
            self.console.print("[dim]No results to summarize.[/]")
            return

        title = OPERATION_TITLES.get(operation, operation.title())
        table = Table(title=f"{title} Results")
        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("Status", justify="center", no_wrap=True)
        table.add_column("Message")

        for outcome in outcomes:
            message = escape(outcome.message)
            if outcome.is_error:
                message = f"[red]{message}[/]"
            table.add_row(escape(outcome.repo), self._get_status_display(outcome), message)

        self.console.print(table)
        self.console.print()
        self._print_summary_line(summary)

    def _print_summary_line(self, summary: BatchSummary):
        """Print summary."""
        parts = [f"[bold]Total:[/] {summary.total}"]

        if summary.success > 0:
            parts.append(f"[green]✓ Success:[/] {summary.success}")
        if summary.skipped > 0:
            parts.append(f"[yellow]⚠ Skipped:[/] {summary.skipped}")
        if summary.dry_run > 0:
            parts.append(f"[blue]☐ Dry run:[/] {summary.dry_run}")
        if summary.errors > 0:
            parts.append(f"[red]✗ Errors:[/] {summary.errors}")

        self.console.print(" | ".join(parts))

    def _print_outcome_json(self, outcomes: list[RepoOutcome], summary: BatchSummary):
        """Print outcomes as JSON."""
        output = {
            "results": [o.to_dict() for o in outcomes],
            "summary": summary.to_dict(),
        }
        # Raw write: no markup, no line wrapping
        self.console.out(json.dumps(output, indent=2), highlight=False)
