"""
Keystone CLI - Dependency-graph-driven infrastructure reconciliation.
"""

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel

from .core import KeystoneCore
from .errors import KeystoneError
from .formatters import TerraformStyleFormatter
from .models import ApplyReport
from .settings import get_settings

# Setup
app = typer.Typer(
    name="keystone",
    help="Dependency-graph-driven infrastructure reconciliation",
    add_completion=False,
)
console = Console()

# Exit codes
EXIT_OK = 0
EXIT_APPLY_FAILED = 1
EXIT_PLAN_ERROR = 2


def configure_logging():
    """Configure logging based on settings."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# Configure logging on module import
configure_logging()


# Shared parameters
def _documents_argument():
    return typer.Argument(None, help="Document files or directories (default: current directory)")


def _state_option():
    return typer.Option(None, "--state", help="State file path (overrides KS_STATE_FILE)")


def _var_option():
    return typer.Option(None, "--var", help="Variable value as KEY=VALUE (repeatable)")


def _parallelism_option():
    return typer.Option(None, "--parallelism", min=1, help="Maximum concurrent operations per wave")


def _parse_variables(values: Optional[List[str]]) -> Dict[str, str]:
    """Parse repeated --var KEY=VALUE options.

    Raises:
        typer.BadParameter: If a value has no '=' or an empty key
    """
    variables = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected KEY=VALUE, got '{item}'", param_hint="--var")
        variables[key.strip()] = value
    return variables


def _documents(documents: Optional[List[Path]]) -> List[Path]:
    return list(documents) if documents else [Path.cwd()]


def _create_command_panel(title: str, color: str, core: KeystoneCore) -> Panel:
    """Create a Rich Panel for command display.

    Args:
        title: Command title (e.g., "Keystone Apply")
        color: Border color (e.g., "blue", "cyan", "red")
        core: Configured core, for the state file shown

    Returns:
        Formatted Rich Panel
    """
    return Panel.fit(
        f"[bold {color}]{title}[/bold {color}]\n"
        f"Directory: {Path.cwd().name}\n"
        f"State: {core.state_file}",
        border_style=color,
    )


def _initialize_core(
    state: Optional[Path] = None,
    variables: Optional[Dict[str, str]] = None,
    parallelism: Optional[int] = None,
) -> KeystoneCore:
    """Initialize KeystoneCore with optional overrides, exiting 2 on configuration errors."""
    try:
        return KeystoneCore(state_file=state, variables=variables, parallel_limit=parallelism)
    except KeystoneError as e:
        _handle_plan_error(e)


def _handle_plan_error(e: Exception) -> None:
    """Print a plan-time error and exit.

    Raises:
        typer.Exit: Always exits with code 2
    """
    console.print(f"\n[bold red]✗ Error:[/bold red] {e}")
    raise typer.Exit(code=EXIT_PLAN_ERROR)


async def _run_cancellable(coroutine_factory) -> ApplyReport:
    """Run an apply/destroy coroutine, turning Ctrl-C into a graceful cancellation."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        # Not supported on this platform or outside the main thread
        installed = False
    try:
        return await coroutine_factory(cancel_event)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _finish(report: ApplyReport, formatter: TerraformStyleFormatter, verb: str) -> None:
    """Print the report and exit 1 unless every operation converged."""
    console.print(formatter.format_apply(report, verb=verb))

    if report.outputs:
        console.print("\n[dim]Outputs:[/dim]")
        console.print(formatter.format_outputs(report.outputs, report.sensitive_outputs))

    if report.success:
        console.print(f"\n[bold green]✓ {verb} successful![/bold green]")
        return

    console.print(f"\n[bold red]✗ {verb} incomplete[/bold red]")
    raise typer.Exit(code=EXIT_APPLY_FAILED)


@app.command()
def plan(
    documents: Optional[List[Path]] = _documents_argument(),
    state: Optional[Path] = _state_option(),
    var: Optional[List[str]] = _var_option(),
    parallelism: Optional[int] = _parallelism_option(),
):
    """Preview changes without calling any provider."""
    core = _initialize_core(state, _parse_variables(var), parallelism)
    console.print(_create_command_panel("Keystone Plan", "cyan", core))

    try:
        result = core.plan(_documents(documents))
    except KeystoneError as e:
        _handle_plan_error(e)

    formatter = TerraformStyleFormatter(console)
    console.print(formatter.format_plan(result))
    if not result.is_empty:
        console.print("[dim]Run 'keystone apply' to make these changes.[/dim]")


@app.command()
def apply(
    documents: Optional[List[Path]] = _documents_argument(),
    state: Optional[Path] = _state_option(),
    var: Optional[List[str]] = _var_option(),
    parallelism: Optional[int] = _parallelism_option(),
):
    """Reconcile infrastructure with the documents."""
    core = _initialize_core(state, _parse_variables(var), parallelism)
    console.print(_create_command_panel("Keystone Apply", "blue", core))
    paths = _documents(documents)

    try:
        report = asyncio.run(_run_cancellable(lambda cancel_event: core.apply(paths, cancel_event)))
    except KeystoneError as e:
        _handle_plan_error(e)

    _finish(report, TerraformStyleFormatter(console), "Apply")


@app.command()
def destroy(
    state: Optional[Path] = _state_option(),
    parallelism: Optional[int] = _parallelism_option(),
):
    """Destroy every resource recorded in state."""
    core = _initialize_core(state, parallelism=parallelism)
    console.print(_create_command_panel("Keystone Destroy", "red", core))
    formatter = TerraformStyleFormatter(console)

    try:
        console.print(formatter.format_plan(core.plan_destroy(), destroy=True))
        report = asyncio.run(_run_cancellable(core.destroy))
    except KeystoneError as e:
        _handle_plan_error(e)

    _finish(report, formatter, "Destroy")


@app.command(name="state")
def state_cmd(
    state: Optional[Path] = _state_option(),
):
    """List resources recorded in state."""
    core = _initialize_core(state)
    try:
        entries = core.state_entries()
    except KeystoneError as e:
        _handle_plan_error(e)
    console.print(TerraformStyleFormatter(console).format_state(entries))


@app.command()
def output(
    name: Optional[str] = typer.Argument(None, help="Print only this output, as JSON"),
    state: Optional[Path] = _state_option(),
):
    """Show document outputs stored by the last apply."""
    core = _initialize_core(state)
    try:
        outputs = core.stored_outputs()
        sensitive = core.stored_sensitive_outputs()
    except KeystoneError as e:
        _handle_plan_error(e)

    if name is None:
        console.print(TerraformStyleFormatter(console).format_outputs(outputs, sensitive))
        return

    if name not in outputs:
        console.print(f"[bold red]✗ Error:[/bold red] No output named '{name}'")
        raise typer.Exit(code=EXIT_APPLY_FAILED)
    console.print_json(json.dumps(outputs[name], default=str))


@app.command()
def version():
    """Show Keystone version."""
    from . import __version__

    console.print(f"Keystone version: [bold]{__version__}[/bold]")


if __name__ == "__main__":
    app()
