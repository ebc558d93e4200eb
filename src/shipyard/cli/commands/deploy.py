"""
Deployment commands

Usage:
    shipyard rollback production --pipeline pipeline.yaml
    shipyard rollback production --pipeline pipeline.yaml --to 1.4.2
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.panel import Panel

from shipyard.cli.commands._output import console, fail, open_store
from shipyard.pipeline.application.loader import load_pipeline
from shipyard.pipeline.application.service import PipelineService
from shipyard.shared.domain.exceptions import RollbackFailed, ShipyardError


def rollback(
    target: str = typer.Argument(..., help="Deployment target (environment) to roll back"),
    pipeline_file: Path = typer.Option(..., "--pipeline", "-p", help="Pipeline definition declaring the target"),
    to_version: Optional[str] = typer.Option(None, "--to", help="Version to restore (default: rollback-to version)"),
    state_dir: Optional[str] = typer.Option(None, "--state-dir", help="State directory (default: .shipyard)"),
) -> None:
    """Redeploy a target's last known-good version and verify its health."""
    service = PipelineService(store=open_store(state_dir), notifiers=[])
    try:
        definition = load_pipeline(pipeline_file)
        restored = asyncio.run(service.rollback(target, to_version=to_version, definition=definition))
    except RollbackFailed as e:
        console.print(Panel(
            f"[red bold]Rollback failed: {e}[/red bold]\n"
            "[yellow]Manual intervention required![/yellow]",
            border_style="red",
        ))
        raise typer.Exit(1)
    except ShipyardError as e:
        fail(e)

    console.print(f"[green]{restored.name} is now at {restored.current_version}[/green]")
