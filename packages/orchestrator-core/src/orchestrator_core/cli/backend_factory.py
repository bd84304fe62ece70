"""
Factory for creating runtime and consensus collaborators.

Uses lazy imports to avoid loading unused backend packages.
"""

from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from orchestrator_protocols import ConsensusClient, WorkloadRuntime

# Hardcoded list of available backends
AVAILABLE_BACKENDS = ["tikv"]


def create_backend(
    backend_name: str,
    **kwargs: Any,
) -> tuple["WorkloadRuntime", "ConsensusClient"]:
    """
    Factory function to create runtime and consensus client instances.

    Args:
        backend_name: Backend identifier (e.g., "tikv")
        **kwargs: Backend-specific configuration (endpoints, paths, etc.)

    Returns:
        Tuple of (runtime, consensus client) instances

    Raises:
        ValueError: If backend_name is not recognized

    Example:
        runtime, consensus = create_backend(
            "tikv",
            pd_endpoint="http://basic-pd-0:2379",
            network="orchestrator",
            data_dir=Path("/var/lib/orchestrator"),
        )
    """
    if backend_name == "tikv":
        # Lazy import to avoid loading tikv package unless needed
        from orchestrator_tikv.factory import create_tikv_collaborators

        return create_tikv_collaborators(**kwargs)
    raise ValueError(
        f"Unknown backend '{backend_name}'. "
        f"Available backends: {', '.join(AVAILABLE_BACKENDS)}"
    )


def backend_kwargs(backend_name: str, settings: Any) -> dict[str, Any]:
    """Factory keyword arguments for ``backend_name`` taken from settings."""
    if backend_name == "tikv":
        return {
            "pd_endpoint": settings.pd_endpoint,
            "network": settings.network,
            "data_dir": Path(settings.data_dir),
            "http_timeout_s": settings.http_timeout_s,
        }
    return {}


def get_available_backends() -> list[str]:
    """Return list of available backend names."""
    return AVAILABLE_BACKENDS.copy()
