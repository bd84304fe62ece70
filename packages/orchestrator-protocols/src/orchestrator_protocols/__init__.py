"""
Protocol definitions for the replica orchestrator.

This package provides the narrow interfaces the orchestration core consumes.
It has zero dependencies on other orchestrator-* packages.

Key protocols:
- WorkloadRuntime: Creates, deletes and observes running instances
- ConsensusClient: Membership, leadership and store operations on PD

Key types:
- Member: Coordinator member or store as seen by the consensus service
- InstanceSpec: What to run for one stable index
- InstanceObservation: What the runtime sees for one stable index
- MemberId: Type alias for consensus identifiers
"""

from orchestrator_protocols.consensus import ConsensusClient
from orchestrator_protocols.runtime import WorkloadRuntime
from orchestrator_protocols.types import (
    InstanceObservation,
    InstanceSpec,
    Member,
    MemberId,
)

__all__ = [
    # Protocols
    "WorkloadRuntime",
    "ConsensusClient",
    # Data types
    "Member",
    "MemberId",
    "InstanceSpec",
    "InstanceObservation",
]
