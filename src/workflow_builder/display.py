"""Rich-based terminal display of pipeline outcomes.

Uses a module-level :class:`~rich.console.Console` singleton so that
output formatting is consistent across the session (tests swap
``_console`` for one writing to a buffer).
"""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from src.workflow_builder.delivery import (
    DeliveryOutcome,
    render_delivery_message,
    select_artifact,
)
from src.workflow_builder.metrics import PipelineMetrics
from src.workflow_builder.models import StructuralReport, Terminal
from src.workflow_builder.router import collect_caveats, structural_report

# ---------------------------------------------------------------------------
# Module-level Console singleton
# ---------------------------------------------------------------------------

_console = Console()

_TERMINAL_STYLE: dict[Terminal, str] = {
    Terminal.SUCCESS: "green",
    Terminal.WARNING: "yellow",
    Terminal.FATAL: "red",
}

_OUTCOME_STYLE: dict[str, str] = {
    "ok": "[green]OK[/green]",
    "failed": "[red]FAILED[/red]",
    "skipped": "[dim]SKIPPED[/dim]",
}


# ---------------------------------------------------------------------------
# Display functions
# ---------------------------------------------------------------------------


def print_outcome(outcome: DeliveryOutcome) -> None:
    """Print a panel summarising a finished request."""
    envelope = outcome.envelope
    style = _TERMINAL_STYLE[outcome.terminal]

    body = Text()
    body.append("Request: ", style="bold")
    body.append(f"{envelope.request_id}\n", style="cyan")
    body.append("Origin: ", style="bold")
    body.append(f"{envelope.origin.value}\n")
    body.append("Stages: ", style="bold")
    body.append(", ".join(envelope.processing_trace) or "none")

    artifact = select_artifact(envelope)
    if artifact is not None and outcome.terminal != Terminal.FATAL:
        body.append("\nArtifact: ", style="bold")
        body.append(artifact.label, style="green")

    if outcome.terminal == Terminal.WARNING:
        for caveat in collect_caveats(envelope):
            body.append(f"\n  - {caveat}", style="yellow")
    elif outcome.terminal == Terminal.FATAL:
        # Same notice the requester gets; failure details stay in the logs.
        notice = render_delivery_message(outcome)
        body.append(f"\n{notice.subject}", style="red")

    _console.print(
        Panel(
            body,
            title=f"[bold {style}]{outcome.terminal.value.upper()}[/bold {style}]",
            border_style=style,
            expand=False,
        )
    )


def print_stage_table(metrics: PipelineMetrics) -> None:
    """Print per-stage timing, attempts and cache usage."""
    table = Table(title="Stage Timings", show_header=True, header_style="bold magenta")
    table.add_column("Stage", style="cyan", min_width=14)
    table.add_column("Status", justify="center", min_width=8)
    table.add_column("Attempts", justify="right")
    table.add_column("Cached", justify="center")
    table.add_column("Duration", justify="right", min_width=9)

    for name, timing in metrics.stages.items():
        table.add_row(
            name,
            _OUTCOME_STYLE.get(timing.outcome, escape(timing.outcome or "—")),
            str(timing.attempts),
            "yes" if timing.cache_hit else "—",
            f"{timing.duration_seconds:.2f}s",
        )

    _console.print(table)


def print_structural_report(report: StructuralReport) -> None:
    """Print the structural issues of a workflow document."""
    if not report.issues:
        _console.print("[green]No structural issues found[/green]")
        return

    table = Table(title="Structural Issues", show_header=True, header_style="bold magenta")
    table.add_column("Code", style="cyan")
    table.add_column("Severity", justify="center")
    table.add_column("Message")
    for issue in report.issues:
        colour = "red" if issue.severity.value == "error" else "yellow"
        table.add_row(
            issue.code,
            f"[{colour}]{issue.severity.value.upper()}[/{colour}]",
            escape(issue.message),
        )
    _console.print(table)


class ConsoleDelivery:
    """Delivery channel that renders outcomes on the terminal."""

    def __init__(self, show_metrics: bool = True) -> None:
        self.show_metrics = show_metrics
        self.delivered: list[str] = []

    async def deliver(self, outcome: DeliveryOutcome) -> None:
        print_outcome(outcome)
        report = structural_report(outcome.envelope)
        if report is not None:
            print_structural_report(report)
        if self.show_metrics and outcome.metrics is not None:
            print_stage_table(outcome.metrics)
        self.delivered.append(outcome.reference_id)
