"""Orchestrator CLI - control loop for PD and TiKV groups."""

import typer

from orchestrator_core.cli.run import run_command
from orchestrator_core.cli.state import (
    apply_command,
    pause_command,
    resume_command,
    status_command,
)

app = typer.Typer(
    name="orchestrator",
    help="Control-loop orchestrator for PD and TiKV groups",
    no_args_is_help=True,
)

app.command("run")(run_command)
app.command("apply")(apply_command)
app.command("status")(status_command)
app.command("pause")(pause_command)
app.command("resume")(resume_command)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
