"""
Rich rendering helpers for the opcore CLI.
"""

from typing import Any, Iterable

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from opcore.errors.error_codes import ErrorCodes
from opcore.models.operations import (
    Operation,
    OperationResult,
    OverallProgress,
    StreamChunk,
    StreamChunkType,
)

console = Console()
error_console = Console(stderr=True)

STATUS_STYLES = {
    "running": "green",
    "completed": "bright_green",
    "failed": "red",
    "cancelled": "yellow",
    "pending": "dim",
}


def format_status(status: str) -> str:
    """Colour a status value for table output."""
    style = STATUS_STYLES.get(status)
    label = status.upper()
    return f"[{style}]{label}[/{style}]" if style else label


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


def create_progress() -> Progress:
    """Progress bar driven by the tracker's aggregate view."""
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
        transient=False,
    )


def describe_overall(overall: OverallProgress) -> str:
    parts = [
        f"{overall.completed_operations} done",
        f"{overall.failed_operations} failed",
    ]
    if overall.cancelled_operations:
        parts.append(f"{overall.cancelled_operations} cancelled")
    if overall.estimated_time_remaining is not None:
        parts.append(f"~{format_duration(overall.estimated_time_remaining)} left")
    return ", ".join(parts)


def result_status(result: OperationResult) -> str:
    if result.success:
        return "completed"
    if result.code == ErrorCodes.CANCELLED:
        return "cancelled"
    return "failed"


def results_table(
    operations: Iterable[Operation], results: dict[str, OperationResult]
) -> Table:
    """Final status table, one row per submitted operation."""
    table = Table(title="Operations")
    table.add_column("Operation ID", style="cyan", no_wrap=True)
    table.add_column("Kind", style="green")
    table.add_column("Target", style="magenta")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Duration", style="white")
    table.add_column("Error", style="red", max_width=50)

    for operation in operations:
        result = results.get(operation.id)
        if result is None:
            table.add_row(
                operation.id,
                operation.kind.value,
                operation.target,
                format_status("pending"),
                str(operation.retry_count),
                "N/A",
                "",
            )
            continue

        table.add_row(
            operation.id,
            operation.kind.value,
            operation.target,
            format_status(result_status(result)),
            str(operation.retry_count),
            format_duration(result.duration) if result.duration else "N/A",
            "" if result.success else escape(f"[{result.code}] {result.error}"),
        )
    return table


def settings_table(title: str, values: dict[str, Any]) -> Table:
    table = Table(title=title, show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")
    for key, value in values.items():
        table.add_row(key, str(value))
    return table


def print_chunk(chunk: StreamChunk) -> None:
    """Write a stream chunk to the terminal as it arrives."""
    if chunk.type == StreamChunkType.STDOUT:
        console.print(chunk.data, end="", markup=False, highlight=False)
    elif chunk.type == StreamChunkType.STDERR:
        error_console.print(chunk.data, end="", markup=False, highlight=False, style="red")
    elif chunk.type == StreamChunkType.ERROR:
        error_console.print(f"[bold red]Error:[/bold red] {escape(chunk.data)}")
    elif chunk.type == StreamChunkType.COMPLETION:
        console.print(f"[green]✓[/green] {escape(chunk.data)}")
    else:
        console.print(f"[dim]{escape(chunk.data)}[/dim]")
