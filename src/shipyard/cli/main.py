"""
Shipyard CLI - deployment pipeline orchestrator
Main entry point for the command-line interface

Usage:
    shipyard run pipeline.yaml          # Execute a pipeline
    shipyard validate pipeline.yaml     # Check a pipeline definition
    shipyard status [RUN_ID]            # Stage-by-stage run status
    shipyard runs                       # List recorded runs
    shipyard gates list                 # Pending approval gates
    shipyard gates resolve GATE_ID      # Approve or abort a gate
    shipyard abort RUN_ID               # Abort a running pipeline
    shipyard rollback TARGET            # Restore a target's known-good version
"""

import typer
from rich.panel import Panel

from shipyard import __version__
from shipyard.cli.commands import deploy, pipeline, runs
from shipyard.cli.commands._output import console
from shipyard.cli.commands.gates import gates_app
from shipyard.shared.infrastructure.config import settings
from shipyard.shared.infrastructure.logging import configure_logging

app = typer.Typer(
    name="shipyard",
    help="Shipyard - deployment pipeline orchestrator",
    add_completion=False,
    no_args_is_help=True,
)


@app.callback()
def _setup() -> None:
    configure_logging()


# Register commands
app.command("run")(pipeline.run)
app.command("validate")(pipeline.validate)
app.command("status")(runs.status)
app.command("runs")(runs.runs)
app.command("abort")(runs.abort)
app.command("rollback")(deploy.rollback)
app.add_typer(gates_app, name="gates", help="List and resolve approval gates")


@app.command()
def version():
    """Show Shipyard version information"""
    console.print(Panel.fit(
        "[bold cyan]Shipyard[/bold cyan]\n"
        f"[dim]Version:[/dim] {__version__}\n"
        f"[dim]Environment:[/dim] {settings.app_env}\n"
        f"[dim]State directory:[/dim] {settings.state_dir}",
        title="About Shipyard",
        border_style="cyan",
    ))


def main():
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
