"""
TiKV collaborators for the replica orchestrator.

This package provides the TiKV-specific implementations of the protocols
defined in orchestrator-protocols:

- PDClient: ConsensusClient over the PD HTTP API
- DockerRuntime: WorkloadRuntime running PD and TiKV in Docker
- PD API response types
"""

from orchestrator_tikv.docker_runtime import DockerRuntime
from orchestrator_tikv.factory import create_tikv_collaborators
from orchestrator_tikv.pd_client import PDClient
from orchestrator_tikv.types import (
    PDMember,
    PDMemberHealth,
    PDMembersResponse,
    PDStoreInfo,
    PDStoreItem,
    PDStoresResponse,
    PDStoreStatus,
)

__all__ = [
    # Collaborators
    "PDClient",
    "DockerRuntime",
    "create_tikv_collaborators",
    # PD API types
    "PDMember",
    "PDMemberHealth",
    "PDMembersResponse",
    "PDStoreInfo",
    "PDStoreStatus",
    "PDStoreItem",
    "PDStoresResponse",
]
