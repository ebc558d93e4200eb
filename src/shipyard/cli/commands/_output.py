"""
Shared rich rendering and option helpers for CLI commands.
"""

from __future__ import annotations

from typing import NoReturn, Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from shipyard.approval.domain.models import ApprovalGate
from shipyard.pipeline.domain.enums import RunStatus
from shipyard.pipeline.domain.models import PipelineRun
from shipyard.runs.store import RunStore

console = Console()

STATUS_STYLE = {
    "pending": "dim",
    "running": "cyan",
    "awaiting_approval": "magenta",
    "success": "green",
    "unstable": "yellow",
    "failed": "red",
    "skipped": "dim",
    "aborted": "red",
}


def styled(status) -> str:
    value = getattr(status, "value", status)
    style = STATUS_STYLE.get(value, "white")
    return f"[{style}]{value}[/{style}]"


def fail(error: Exception | str) -> NoReturn:
    console.print(f"[red]Error:[/red] {error}")
    raise typer.Exit(1)


def open_store(state_dir: Optional[str]) -> RunStore:
    return RunStore(state_dir) if state_dir else RunStore()


def parse_assignments(values: Optional[list[str]], option: str) -> dict[str, str]:
    """Parse repeated ``KEY=VALUE`` options."""
    parsed: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got '{item}'", param_hint=option)
        parsed[key.strip()] = value
    return parsed


def runs_table(runs: list[PipelineRun]) -> Table:
    table = Table(title="Pipeline Runs", box=box.ROUNDED)
    table.add_column("Run", style="cyan")
    table.add_column("Pipeline")
    table.add_column("Branch")
    table.add_column("Build")
    table.add_column("Status")
    table.add_column("Reason", style="dim")
    table.add_column("Started", style="dim")

    for run in runs:
        table.add_row(
            run.id,
            run.pipeline,
            run.context.branch,
            run.context.build_id or "-",
            styled(run.status),
            run.reason or "",
            run.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    return table


def stages_table(run: PipelineRun) -> Table:
    table = Table(title=f"{run.pipeline} #{run.id}", box=box.ROUNDED)
    table.add_column("Stage", style="cyan")
    table.add_column("Group", style="dim")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Detail")

    for result in run.results:
        detail = result.error or result.skip_reason or ""
        if result.error_type and result.error:
            detail = f"{result.error_type}: {result.error}"
        if result.non_blocking and result.error:
            detail = f"(non-blocking) {detail}"
        table.add_row(
            result.stage,
            result.parallel_group or "",
            styled(result.status),
            str(result.attempts) if result.attempts else "",
            f"{result.duration:.1f}s" if result.started_at else "",
            detail,
        )
    return table


def gates_table(gates: list[ApprovalGate]) -> Table:
    table = Table(title="Approval Gates", box=box.ROUNDED)
    table.add_column("Gate", style="cyan")
    table.add_column("Run")
    table.add_column("Stage")
    table.add_column("Message")
    table.add_column("Timeout", justify="right")
    table.add_column("Decision")

    for gate in gates:
        table.add_row(
            gate.id,
            gate.run_id,
            gate.stage,
            gate.message,
            f"{gate.timeout:g}s" if gate.timeout is not None else "none",
            gate.decision.value if gate.decision else "[magenta]pending[/magenta]",
        )
    return table


def print_outcome(run: PipelineRun) -> None:
    """Final panel for a finished (or inspected) run."""
    if run.fatal:
        console.print(Panel(
            f"[red bold]FATAL: {run.fatal_message}[/red bold]\n"
            "[yellow]Manual intervention required![/yellow]",
            title=f"Run {run.id}",
            border_style="red",
        ))
        return

    reason = f"\n[dim]Reason: {run.reason}[/dim]" if run.reason else ""
    duration = f"[dim]Duration: {run.duration:.1f}s[/dim]"
    if run.status is RunStatus.SUCCESS:
        console.print(Panel(f"[green bold]Run {run.id} succeeded[/green bold]\n{duration}", border_style="green"))
    elif run.status is RunStatus.UNSTABLE:
        console.print(Panel(
            f"[yellow bold]Run {run.id} is unstable[/yellow bold]{reason}\n{duration}",
            border_style="yellow",
        ))
    elif run.status in (RunStatus.FAILED, RunStatus.ABORTED):
        console.print(Panel(
            f"[red bold]Run {run.id} {run.status.value}[/red bold]{reason}\n{duration}",
            border_style="red",
        ))
    else:
        console.print(Panel(f"[cyan]Run {run.id} is {run.status.value}[/cyan]", border_style="cyan"))
