"""Control loop CLI command.

This module provides the CLI command for running the orchestrator:
- run: Reconcile every cluster and group until interrupted

Per project patterns:
- Uses factory pattern for backend creation (no direct TiKV imports)
- asyncio.run() wraps the async daemon in a sync CLI command
"""

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console

from orchestrator_core.cli.backend_factory import (
    AVAILABLE_BACKENDS,
    backend_kwargs,
    create_backend,
)
from orchestrator_core.config import OrchestratorSettings
from orchestrator_core.controller import ControlLoop
from orchestrator_core.quorum import LeadershipCoordinator
from orchestrator_core.reconciler import ClusterReconciler, GroupReconciler
from orchestrator_core.store import SqliteStateStore

console = Console()


def configure_logging(verbose: bool) -> None:
    """Configure root logging for CLI commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run_command(
    backend: str = typer.Option(
        "tikv",
        "--backend",
        "-b",
        help=f"Runtime backend ({', '.join(AVAILABLE_BACKENDS)})",
    ),
    once: bool = typer.Option(
        False, "--once", help="Reconcile every key once and exit"
    ),
    pd_endpoint: str = typer.Option(
        None,
        "--pd",
        envvar="ORCHESTRATOR_PD_ENDPOINT",
        help="PD endpoint (e.g., http://basic-pd-0:2379)",
    ),
    db_path: Path = typer.Option(
        None, "--db", envvar="ORCHESTRATOR_DB_PATH", help="Path to state database"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """
    Run the orchestrator control loop.

    Resyncs every cluster and group in the state database and keeps them
    converging until interrupted with Ctrl+C.

    Environment variables:
        ORCHESTRATOR_PD_ENDPOINT: PD API endpoint
        ORCHESTRATOR_DB_PATH: State database path
        ORCHESTRATOR_RESYNC_INTERVAL_S: Seconds between full resyncs
    """
    configure_logging(verbose)

    overrides = {}
    if pd_endpoint:
        overrides["pd_endpoint"] = pd_endpoint
    if db_path:
        overrides["db_path"] = db_path
    settings = OrchestratorSettings(**overrides)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        runtime, consensus = create_backend(backend, **backend_kwargs(backend, settings))
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"Starting orchestrator (backend: {backend})")
    console.print(f"  PD endpoint: {settings.pd_endpoint}")
    console.print(f"  Database: {settings.db_path}")
    if not once:
        console.print(f"  Resync: {settings.resync_interval_s}s")
        console.print("\nPress Ctrl+C to stop\n")

    async def _run() -> None:
        retry = settings.retry_config()
        try:
            async with SqliteStateStore(settings.db_path) as store:
                groups = GroupReconciler(
                    store=store,
                    runtime=runtime,
                    coordinator=LeadershipCoordinator(consensus=consensus, retry=retry),
                    retry=retry,
                )
                loop = ControlLoop(
                    store=store,
                    groups=groups,
                    clusters=ClusterReconciler(store=store),
                    resync_interval_s=settings.resync_interval_s,
                    max_concurrent=settings.max_concurrent_reconciles,
                    backoff_base_s=settings.backoff_base_s,
                    backoff_max_s=settings.backoff_max_s,
                )
                if once:
                    results = await loop.run_once()
                    failed = [str(k) for k, r in results.items() if r is None]
                    if failed:
                        console.print(f"[red]Failed:[/red] {', '.join(failed)}")
                        raise typer.Exit(1)
                    console.print(f"Reconciled {len(results)} key(s)")
                else:
                    await loop.run()
        finally:
            close = getattr(consensus, "aclose", None)
            if close is not None:
                await close()

    asyncio.run(_run())
