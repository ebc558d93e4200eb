"""
Approval gate commands

Usage:
    shipyard gates list
    shipyard gates resolve GATE_ID --decision proceed --notes "release approved"
"""

from __future__ import annotations

from typing import Optional

import typer

from shipyard.approval.domain.models import Decision
from shipyard.cli.commands._output import console, fail, gates_table, open_store
from shipyard.pipeline.application.service import PipelineService
from shipyard.shared.domain.exceptions import ShipyardError

gates_app = typer.Typer(
    name="gates",
    help="List and resolve approval gates",
    no_args_is_help=True,
)


@gates_app.command("list")
def gates_list(
    run_id: Optional[str] = typer.Option(None, "--run", help="Only gates of this run"),
    show_all: bool = typer.Option(False, "--all", "-a", help="Include resolved gates"),
    state_dir: Optional[str] = typer.Option(None, "--state-dir", help="State directory (default: .shipyard)"),
) -> None:
    """List approval gates (pending only unless --all)."""
    store = open_store(state_dir)
    gates = store.list_gates(pending_only=not show_all)
    if run_id:
        gates = [g for g in gates if g.run_id == run_id]

    if not gates:
        console.print("[dim]No pending approval gates.[/dim]" if not show_all else "[dim]No approval gates.[/dim]")
        return
    console.print(gates_table(gates))


@gates_app.command("resolve")
def gates_resolve(
    gate_id: str = typer.Argument(..., help="Gate to resolve"),
    decision: Decision = typer.Option(..., "--decision", "-d", help="proceed or abort"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Free-text notes recorded with the decision"),
    actor: str = typer.Option("operator", "--actor", help="Who is deciding"),
    state_dir: Optional[str] = typer.Option(None, "--state-dir", help="State directory (default: .shipyard)"),
) -> None:
    """
    Record the decision for an approval gate.

    A gate accepts exactly one decision; resolving it again fails.
    """
    service = PipelineService(store=open_store(state_dir), notifiers=[])
    try:
        gate = service.resolve_gate(gate_id, decision, notes=notes, actor=actor)
    except ShipyardError as e:
        fail(e)

    color = "green" if decision is Decision.PROCEED else "red"
    console.print(
        f"[{color}]{decision.value}[/{color}] recorded for gate {gate.id} "
        f"({gate.stage} of run {gate.run_id})"
    )
