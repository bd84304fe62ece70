"""
Factory function for creating the TiKV collaborators.

This module lets the orchestrator-core CLI build a runtime and consensus
client pair without importing orchestrator-tikv directly.
"""

from pathlib import Path

import httpx

from orchestrator_tikv.docker_runtime import DockerRuntime
from orchestrator_tikv.pd_client import PDClient


def create_tikv_collaborators(
    pd_endpoint: str,
    network: str,
    data_dir: Path,
    http_timeout_s: float = 10.0,
    pd_http: httpx.AsyncClient | None = None,
) -> tuple[DockerRuntime, PDClient]:
    """
    Create a Docker runtime and PD client pair.

    Args:
        pd_endpoint: PD API endpoint URL (e.g., "http://basic-pd-0:2379")
        network: Docker network instances join
        data_dir: Host directory for per-instance config and data
        http_timeout_s: Timeout for PD requests when creating the client
        pd_http: Optional pre-configured httpx client for the PD API.
            If None, a new client is created.

    Returns:
        Tuple of (DockerRuntime, PDClient) ready for the reconcilers.

    Example:
        runtime, coordinator = create_tikv_collaborators(
            pd_endpoint="http://basic-pd-0:2379",
            network="orchestrator",
            data_dir=Path("/var/lib/orchestrator"),
        )
    """
    if pd_http is None:
        pd_http = httpx.AsyncClient(base_url=pd_endpoint, timeout=http_timeout_s)

    runtime = DockerRuntime(network=network, pd_address=pd_endpoint, data_dir=data_dir)
    coordinator = PDClient(http=pd_http)
    return runtime, coordinator
