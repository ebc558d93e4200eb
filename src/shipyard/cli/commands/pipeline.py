"""
Pipeline commands - run and validate pipeline definitions

Usage:
    shipyard run pipeline.yaml --branch main --build-id 42
    shipyard run pipeline.yaml --fail-fast --var REGISTRY=ghcr.io/acme
    shipyard validate pipeline.yaml
"""

from __future__ import annotations

import asyncio
import dataclasses
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.table import Table

from shipyard.approval.domain.models import Decision
from shipyard.cli.commands._output import (
    console,
    fail,
    open_store,
    parse_assignments,
    print_outcome,
    stages_table,
    styled,
)
from shipyard.pipeline.application.loader import PipelineDefinition, load_pipeline
from shipyard.pipeline.application.service import PipelineService
from shipyard.pipeline.domain.enums import FailurePolicy, RunStatus
from shipyard.pipeline.domain.models import PipelineRun, RunContext
from shipyard.shared.domain.exceptions import ShipyardError


def run(
    pipeline_file: Path = typer.Argument(..., help="Pipeline definition (YAML)"),
    branch: str = typer.Option("main", "--branch", "-b", help="Branch being built"),
    build_id: Optional[str] = typer.Option(None, "--build-id", help="Build identifier (default: timestamp)"),
    commit: str = typer.Option("", "--commit", help="Commit hash"),
    build_url: str = typer.Option("", "--build-url", help="Link back to the build"),
    environment: str = typer.Option("staging", "--environment", "-e", help="Target environment"),
    var: Optional[list[str]] = typer.Option(None, "--var", help="Pipeline variable KEY=VALUE (repeatable)"),
    secret: Optional[list[str]] = typer.Option(None, "--secret", help="Secret KEY=VALUE, exported but never logged"),
    fail_fast: bool = typer.Option(False, "--fail-fast", help="Halt the whole run on the first failure"),
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Approve every gate automatically"),
    state_dir: Optional[str] = typer.Option(None, "--state-dir", help="State directory (default: .shipyard)"),
) -> None:
    """
    Execute a pipeline and wait for it to finish.

    Approval gates wait for `shipyard gates resolve` from another terminal.
    Exits with code 1 when the run fails or is aborted.
    """
    try:
        definition = load_pipeline(pipeline_file)
        definition.build_graph()
    except ShipyardError as e:
        fail(e)

    if fail_fast:
        definition.config = dataclasses.replace(definition.config, failure_policy=FailurePolicy.FAIL_FAST)

    context = RunContext(
        branch=branch,
        build_id=build_id or datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S"),
        commit=commit,
        build_url=build_url,
        environment=environment,
        variables=parse_assignments(var, "--var"),
        secrets=parse_assignments(secret, "--secret"),
    )

    def on_progress(event: str, payload: dict) -> None:
        if event == "stage_started":
            console.print(f"[cyan]>[/cyan] {payload['stage']}")
        elif event == "stage_completed":
            console.print(f"  {payload['stage']}: {styled(payload['status'])} [dim]({payload['duration']:.1f}s)[/dim]")
        elif event == "stage_retrying":
            console.print(f"[yellow]~[/yellow] {payload['stage']}: attempt {payload['attempt']} failed, retrying in {payload['delay']:.1f}s")
        elif event == "stage_skipped":
            console.print(f"[dim]- {payload['stage']} skipped ({payload['reason']})[/dim]")
        elif event == "stage_aborted":
            console.print(f"[red]x[/red] {payload['stage']} aborted (dependency '{payload['dependency']}')")
        elif event == "approval_requested":
            if auto_approve:
                service.resolve_gate(payload["gate_id"], Decision.PROCEED, notes="--auto-approve", actor="auto-approve")
                console.print(f"[magenta]?[/magenta] {payload['stage']}: auto-approved")
            else:
                console.print(
                    f"[magenta]?[/magenta] {payload['stage']}: {payload['message']}\n"
                    f"  [dim]shipyard gates resolve {payload['gate_id']} --decision proceed|abort[/dim]"
                )

    service = PipelineService(store=open_store(state_dir), progress_callback=on_progress)

    console.print(f"\n[bold cyan]Running pipeline '{definition.name}'[/bold cyan] [dim]({context})[/dim]\n")
    try:
        finished = asyncio.run(_execute(service, definition, context))
    except ShipyardError as e:
        fail(e)

    console.print()
    console.print(stages_table(finished))
    print_outcome(finished)

    if finished.status in (RunStatus.FAILED, RunStatus.ABORTED):
        raise typer.Exit(1)


async def _execute(service: PipelineService, definition: PipelineDefinition, context: RunContext) -> PipelineRun:
    watcher = service.control_watcher()
    watcher.start()
    try:
        return await service.trigger(definition, context)
    finally:
        await watcher.stop()


def validate(
    pipeline_file: Path = typer.Argument(..., help="Pipeline definition (YAML)"),
) -> None:
    """
    Check a pipeline definition and print its execution order.
    """
    try:
        definition = load_pipeline(pipeline_file)
        graph = definition.build_graph()
    except ShipyardError as e:
        fail(e)

    table = Table(title=f"Pipeline '{graph.name}'", box=box.ROUNDED)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Stage", style="cyan")
    table.add_column("Depends on")
    table.add_column("Group", style="dim")
    table.add_column("Action")
    table.add_column("Flags", style="yellow")

    for position, stage in enumerate(graph, start=1):
        flags = []
        if stage.approval is not None:
            flags.append("approval")
        if stage.retryable:
            flags.append(f"retry x{stage.max_attempts}")
        if stage.non_blocking:
            flags.append("non-blocking")
        if stage.condition is not None:
            describe = getattr(stage.condition, "describe", None)
            flags.append(f"when {describe()}" if describe else "conditional")
        table.add_row(
            str(position),
            stage.name,
            ", ".join(sorted(graph.dependencies[stage.name])) or "-",
            stage.parallel_group or "",
            stage.action.describe() if stage.action is not None else "-",
            ", ".join(flags),
        )

    console.print(table)
    console.print(
        f"[green]Valid:[/green] {len(graph)} stage(s), "
        f"{len(graph.groups)} parallel group(s), "
        f"failure policy {definition.config.failure_policy.value}"
    )
