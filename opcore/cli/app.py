"""CLI app entry point.

Provides the ``opcore`` Typer app:
- run: Execute a file of operations through the batch dispatcher
- exec: Stream one terminal command (or AI request) as it runs
- config: Show the effective settings
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import pydantic
import typer
import yaml

from opcore.async_infrastructure.cancellation import install_interrupt_handler
from opcore.cli.display import (
    console,
    create_progress,
    describe_overall,
    error_console,
    print_chunk,
    result_status,
    results_table,
    settings_table,
)
from opcore.config.settings import (
    get_cancellation_settings,
    get_dispatcher_settings,
    get_executor_settings,
    get_logging_settings,
    get_streaming_settings,
)
from opcore.core import create_core
from opcore.errors import ConfigurationError, ErrorCodes, OpcoreError
from opcore.logging import configure_logging, get_logger, set_debug_mode
from opcore.models.operations import (
    Operation,
    OperationKind,
    OperationResult,
    OverallProgress,
)

logger = get_logger(__name__)

app = typer.Typer(
    name="opcore",
    help="opcore - operation orchestration for the AI coding sandbox.",
    add_completion=False,
    no_args_is_help=True,
)

# Executor wire names accepted in operation files
_FIELD_ALIASES = {"type": "kind", "path": "target", "content": "payload"}


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug output"
    ),
) -> None:
    """opcore CLI - queue, batch, retry and cancel sandbox operations."""
    logging_settings = get_logging_settings()
    level = getattr(logging, logging_settings.level.upper(), logging.INFO)
    configure_logging(
        log_dir=logging_settings.log_dir,
        console_level=logging.DEBUG if verbose else level,
        component_levels=logging_settings.component_levels,
    )
    if verbose:
        set_debug_mode(True)


def load_operations(path: Path) -> list[Operation]:
    """
    Load operations from a YAML or JSON file.

    The file holds a list of operations, or a mapping with an
    ``operations`` list. Executor wire names (type, path, content) are
    accepted next to kind, target and payload.

    Raises:
        ConfigurationError: If the file cannot be parsed or an entry is invalid
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Cannot read operations file {path}: {e}",
            error_code=ErrorCodes.CONFIG_INVALID,
        ) from e

    if isinstance(data, dict):
        data = data.get("operations")
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigurationError(
            f"Operations file {path} must contain a list of operations",
            error_code=ErrorCodes.CONFIG_INVALID,
        )

    operations = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ConfigurationError(
                f"Operation #{index + 1} in {path} is not a mapping",
                error_code=ErrorCodes.CONFIG_INVALID,
            )
        fields = {_FIELD_ALIASES.get(key, key): value for key, value in entry.items()}
        try:
            operations.append(Operation.model_validate(fields))
        except pydantic.ValidationError as e:
            raise ConfigurationError(
                f"Operation #{index + 1} in {path} is invalid",
                error_code=ErrorCodes.CONFIG_INVALID,
                details={"errors": e.errors(include_url=False)},
            ) from e
    return operations


@app.command("run")
def run(
    file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="YAML or JSON file of operations"
    ),
    url: Optional[str] = typer.Option(
        None, "--url", "-u", help="Sandbox API URL (overrides settings)"
    ),
    local: bool = typer.Option(
        False, "--local", help="Run terminal operations in local subprocesses"
    ),
    batch_size: Optional[int] = typer.Option(
        None, "--batch-size", min=1, help="Operations per executor call"
    ),
    max_concurrent: Optional[int] = typer.Option(
        None, "--max-concurrent", min=1, help="Maximum batches in flight"
    ),
):
    """
    Submit every operation in FILE and wait for all of them to finish.

    Examples:
        opcore run operations.yaml
        opcore run build.yaml --local --batch-size 5
    """
    try:
        operations = load_operations(file)
    except OpcoreError as e:
        error_console.print(f"[bold red]Error:[/bold red] {e.message}")
        raise typer.Exit(code=1) from e

    if not operations:
        console.print("ℹ️  No operations to run")
        return

    try:
        results = asyncio.run(
            _run_async(operations, url, local, batch_size, max_concurrent)
        )
    except OpcoreError as e:
        error_console.print(f"[bold red]Error:[/bold red] {e.message}")
        logger.error(f"Run failed: {e}", exc_info=True)
        raise typer.Exit(code=1) from e

    console.print(results_table(operations, results))

    failed = [r for r in results.values() if result_status(r) == "failed"]
    if failed:
        error_console.print(f"[red]{len(failed)} of {len(operations)} operations failed[/red]")
        raise typer.Exit(code=1)
    console.print(f"✅ {len(operations)} operations finished")


async def _run_async(
    operations: list[Operation],
    url: Optional[str],
    local: bool,
    batch_size: Optional[int],
    max_concurrent: Optional[int],
) -> dict[str, OperationResult]:
    """Async implementation of the run command."""
    dispatcher_settings = get_dispatcher_settings()
    overrides = {}
    if batch_size is not None:
        overrides["batch_size"] = batch_size
    if max_concurrent is not None:
        overrides["max_concurrent_batches"] = max_concurrent
    if overrides:
        dispatcher_settings = dispatcher_settings.model_copy(update=overrides)

    executor_settings = get_executor_settings()
    if url:
        executor_settings = executor_settings.model_copy(update={"base_url": url})

    results: dict[str, OperationResult] = {}
    core = create_core(
        local=local,
        executor_settings=executor_settings,
        dispatcher_settings=dispatcher_settings,
    )
    async with core:
        install_interrupt_handler(
            core.registry, asyncio.get_running_loop(), core.dispatcher.cancel_all
        )
        core.dispatcher.on_result(lambda r: results.__setitem__(r.operation_id, r))

        with create_progress() as progress:
            task_id = progress.add_task("Running operations", total=100)

            def refresh(overall: OverallProgress) -> None:
                progress.update(
                    task_id,
                    completed=overall.overall_progress,
                    description=describe_overall(overall),
                )

            core.tracker.start_tracking()
            core.tracker.on_update(refresh)
            core.submit_many(operations)
            await core.join()

    return results


@app.command("exec")
def exec_command(
    command: str = typer.Argument(..., help="Shell command (or prompt with --ai)"),
    ai: bool = typer.Option(
        False, "--ai", help="Send COMMAND as an AI request to the sandbox API"
    ),
    url: Optional[str] = typer.Option(
        None, "--url", "-u", help="Sandbox API URL for --ai (overrides settings)"
    ),
):
    """
    Stream the output of one command as it runs. Ctrl+C cancels it.

    Examples:
        opcore exec "npm run build"
        opcore exec --ai "Explain this stack trace"
    """
    try:
        result = asyncio.run(_exec_async(command, ai, url))
    except OpcoreError as e:
        error_console.print(f"[bold red]Error:[/bold red] {e.message}")
        raise typer.Exit(code=1) from e

    status = result_status(result)
    if status == "cancelled":
        error_console.print("[yellow]Cancelled[/yellow]")
        raise typer.Exit(code=130)
    if status == "failed":
        raise typer.Exit(code=1)


async def _exec_async(command: str, ai: bool, url: Optional[str]) -> OperationResult:
    """Async implementation of the exec command."""
    executor_settings = get_executor_settings()
    if url:
        executor_settings = executor_settings.model_copy(update={"base_url": url})

    operation = Operation(
        kind=OperationKind.AI_REQUEST if ai else OperationKind.TERMINAL,
        target="ai" if ai else "shell",
        payload=command,
        max_retries=0,
    )

    results: dict[str, OperationResult] = {}
    async with create_core(local=not ai, executor_settings=executor_settings) as core:
        install_interrupt_handler(
            core.registry, asyncio.get_running_loop(), core.dispatcher.cancel_all
        )
        core.streams.on_chunk(operation.id, print_chunk)
        core.dispatcher.on_result(lambda r: results.__setitem__(r.operation_id, r))
        core.submit(operation)
        await core.join()

    return results.get(operation.id) or OperationResult(
        operation_id=operation.id,
        success=False,
        error="No result received",
        code=ErrorCodes.MISSING_RESULT,
    )


@app.command("config")
def show_config():
    """Show the effective settings (defaults, .env and environment overrides)."""
    sections = {
        "Dispatcher": get_dispatcher_settings(),
        "Cancellation": get_cancellation_settings(),
        "Streaming": get_streaming_settings(),
        "Executor": get_executor_settings(),
        "Logging": get_logging_settings(),
    }
    for title, settings in sections.items():
        console.print(settings_table(title, settings.model_dump()))
