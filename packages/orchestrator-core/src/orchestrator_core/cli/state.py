"""Desired-state CLI commands.

This module provides CLI commands for editing and inspecting desired state:
- apply: Create or update a cluster and its groups from a YAML manifest
- status: Display cluster, group and instance status
- pause / resume: Stop or restart reconciliation of a cluster

Per project patterns:
- asyncio.run() to execute async database operations in sync CLI commands
- Rich Table for formatted output, JSON for automation
"""

import asyncio
import json
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from orchestrator_core.config import OrchestratorSettings
from orchestrator_core.manifest import load_manifest
from orchestrator_core.status import get_condition
from orchestrator_core.store import SqliteStateStore
from orchestrator_core.types import Condition

console = Console()


def _settings(db_path: Path | None) -> OrchestratorSettings:
    """Load settings, ensuring the database directory exists."""
    settings = OrchestratorSettings(**({"db_path": db_path} if db_path else {}))
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    return settings


def _condition_cell(condition: Condition | None) -> str:
    if condition is None:
        return "-"
    color = "green" if condition.status else "yellow"
    return f"[{color}]{condition.status}[/{color}] {condition.reason}"


def apply_command(
    manifest: Path = typer.Argument(..., help="Cluster manifest (YAML)", exists=True),
    db_path: Path = typer.Option(
        None, "--db", envvar="ORCHESTRATOR_DB_PATH", help="Path to state database"
    ),
) -> None:
    """Create or update a cluster and its groups from a manifest."""
    settings = _settings(db_path)
    try:
        cluster, groups = load_manifest(manifest, settings)
    except (ValueError, ValidationError) as e:
        console.print(f"[red]Invalid manifest:[/red] {e}")
        raise typer.Exit(1)

    async def _apply() -> None:
        async with SqliteStateStore(settings.db_path) as store:
            before = await store.get_cluster(cluster.name)
            saved = await store.put_cluster(cluster)
            _report(cluster.name, before, saved)
            for group in groups:
                before = await store.get_group(group.cluster, group.name)
                try:
                    saved = await store.put_group(group)
                except ValueError as e:
                    console.print(f"[red]Error:[/red] {e}")
                    raise typer.Exit(1)
                _report(group.key, before, saved)

    asyncio.run(_apply())


def _report(key: str, before, after) -> None:
    if before is None:
        console.print(f"{key} [green]created[/green]")
    elif before.generation != after.generation:
        console.print(f"{key} [cyan]configured[/cyan] (generation {after.generation})")
    else:
        console.print(f"{key} unchanged")


def status_command(
    cluster: str = typer.Argument(None, help="Only show this cluster"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    db_path: Path = typer.Option(
        None, "--db", envvar="ORCHESTRATOR_DB_PATH", help="Path to state database"
    ),
) -> None:
    """Show cluster, group and instance status."""
    settings = _settings(db_path)

    async def _status() -> None:
        async with SqliteStateStore(settings.db_path) as store:
            clusters = [
                c for c in await store.list_clusters() if cluster in (None, c.name)
            ]
            groups = {c.name: await store.list_groups(c.name) for c in clusters}
            instances = {
                g.key: await store.list_instances(g.cluster, g.name)
                for gs in groups.values()
                for g in gs
            }

        if json_output:
            data = [
                {
                    **c.model_dump(mode="json"),
                    "groups": [
                        {
                            **g.model_dump(mode="json"),
                            "instances": [
                                i.model_dump(mode="json") for i in instances[g.key]
                            ],
                        }
                        for g in groups[c.name]
                    ],
                }
                for c in clusters
            ]
            print(json.dumps(data, indent=2, default=str))
            return

        if not clusters:
            console.print("No clusters found")
            return

        for c in clusters:
            conds = c.status.conditions
            components = ", ".join(
                f"{comp.kind}={comp.replicas}" for comp in c.status.components
            )
            console.print(
                f"[bold]{c.name}[/bold]"
                f"{' [yellow](paused)[/yellow]' if c.spec.paused else ''}  "
                f"{components or 'no components'}  "
                f"Available: {_condition_cell(get_condition(conds, 'Available'))}  "
                f"Synced: {_condition_cell(get_condition(conds, 'Synced'))}"
            )

            table = Table(title=f"Groups in {c.name}")
            table.add_column("Group", style="cyan")
            table.add_column("Role")
            table.add_column("Ready", justify="right")
            table.add_column("Updated", justify="right")
            table.add_column("Version")
            table.add_column("Progressing")
            table.add_column("Message")
            for g in groups[c.name]:
                progressing = get_condition(g.status.conditions, "Progressing")
                table.add_row(
                    g.name,
                    g.role.value,
                    f"{g.status.ready_replicas}/{g.spec.desired.replicas}",
                    f"{g.status.updated_replicas}/{g.spec.desired.replicas}",
                    g.status.version or "-",
                    _condition_cell(progressing),
                    progressing.message if progressing else "",
                )
            console.print(table)

            table = Table(title=f"Instances in {c.name}")
            table.add_column("Instance", style="cyan")
            table.add_column("State", style="green")
            table.add_column("Ready", justify="center")
            table.add_column("Version")
            table.add_column("Revision")
            table.add_column("Leader", justify="right")
            table.add_column("Warnings", justify="right")
            for g in groups[c.name]:
                for i in instances[g.key]:
                    leader = (
                        ("[bold]yes[/bold]" if i.is_leader else "")
                        if i.role.value == "coordinator"
                        else str(i.leader_count)
                    )
                    table.add_row(
                        i.name,
                        i.state.value,
                        "yes" if i.ready else "[red]no[/red]",
                        i.observed_version or "-",
                        i.revision,
                        leader,
                        str(len(i.warnings)) if i.warnings else "",
                    )
            console.print(table)

    asyncio.run(_status())


def _set_paused(cluster: str, paused: bool, db_path: Path | None) -> None:
    settings = _settings(db_path)

    async def _update() -> None:
        async with SqliteStateStore(settings.db_path) as store:
            record = await store.get_cluster(cluster)
            if record is None:
                console.print(f"Cluster {cluster} not found")
                raise typer.Exit(1)
            if record.spec.paused == paused:
                console.print(f"Cluster {cluster} is already {'paused' if paused else 'running'}")
                return
            await store.put_cluster(
                record.model_copy(
                    update={"spec": record.spec.model_copy(update={"paused": paused})}
                )
            )
            console.print(f"Cluster {cluster} {'paused' if paused else 'resumed'}")

    asyncio.run(_update())


def pause_command(
    cluster: str = typer.Argument(..., help="Cluster to pause"),
    db_path: Path = typer.Option(
        None, "--db", envvar="ORCHESTRATOR_DB_PATH", help="Path to state database"
    ),
) -> None:
    """Pause reconciliation of a cluster. Status keeps updating."""
    _set_paused(cluster, True, db_path)


def resume_command(
    cluster: str = typer.Argument(..., help="Cluster to resume"),
    db_path: Path = typer.Option(
        None, "--db", envvar="ORCHESTRATOR_DB_PATH", help="Path to state database"
    ),
) -> None:
    """Resume reconciliation of a paused cluster."""
    _set_paused(cluster, False, db_path)
