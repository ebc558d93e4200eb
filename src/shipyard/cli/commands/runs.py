"""
Run inspection and control commands

Usage:
    shipyard status [RUN_ID]
    shipyard runs --limit 20
    shipyard abort RUN_ID
"""

from __future__ import annotations

from typing import Optional

import typer

from shipyard.cli.commands._output import (
    console,
    fail,
    open_store,
    print_outcome,
    runs_table,
    stages_table,
)
from shipyard.pipeline.application.service import PipelineService
from shipyard.shared.domain.exceptions import ShipyardError


def status(
    run_id: Optional[str] = typer.Argument(None, help="Run id (default: most recent run)"),
    state_dir: Optional[str] = typer.Option(None, "--state-dir", help="State directory (default: .shipyard)"),
    show_output: bool = typer.Option(False, "--output", "-o", help="Show captured output of failed stages"),
) -> None:
    """Show the stage-by-stage status of a run."""
    store = open_store(state_dir)
    try:
        run = store.load_run(run_id) if run_id else store.latest_run()
    except ShipyardError as e:
        fail(e)
    if run is None:
        console.print("[yellow]No runs recorded yet.[/yellow]")
        raise typer.Exit(0)

    console.print(stages_table(run))
    current = run.current
    if current:
        console.print(f"[cyan]Executing:[/cyan] {', '.join(current)}")
    pending = [g for g in store.list_gates(pending_only=True) if g.run_id == run.id]
    for gate in pending:
        console.print(f"[magenta]Awaiting approval:[/magenta] {gate.stage} - {gate.message} [dim](gate {gate.id})[/dim]")

    if show_output:
        for result in run.results:
            if result.output_tail and result.error:
                console.print(f"\n[bold]{result.stage}[/bold] [dim]{result.output_ref or ''}[/dim]")
                console.print(result.output_tail, markup=False, highlight=False)

    if run.is_terminal:
        print_outcome(run)


def runs(
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum runs to list"),
    state_dir: Optional[str] = typer.Option(None, "--state-dir", help="State directory (default: .shipyard)"),
) -> None:
    """List recorded runs, newest first."""
    recorded = open_store(state_dir).list_runs()
    if not recorded:
        console.print("[yellow]No runs recorded yet.[/yellow]")
        return
    console.print(runs_table(recorded[:limit]))


def abort(
    run_id: str = typer.Argument(..., help="Run to abort"),
    actor: str = typer.Option("operator", "--actor", help="Who is aborting"),
    state_dir: Optional[str] = typer.Option(None, "--state-dir", help="State directory (default: .shipyard)"),
) -> None:
    """Abort a running pipeline; in-flight stages are cancelled."""
    service = PipelineService(store=open_store(state_dir), notifiers=[])
    try:
        requested = service.abort(run_id, actor=actor)
    except ShipyardError as e:
        fail(e)

    if not requested:
        console.print(f"[yellow]Run {run_id} has already finished.[/yellow]")
        return
    console.print(f"[green]Abort requested for run {run_id}.[/green]")
