"""
Consensus client protocol.

The ConsensusClient talks to the Raft-backed metadata service (PD). It is the
authoritative source for membership, leadership and store state. The
orchestrator never caches what it returns across reconciliations.
"""

from typing import Protocol, runtime_checkable

from orchestrator_protocols.types import Member, MemberId


@runtime_checkable
class ConsensusClient(Protocol):
    """
    Protocol for the metadata service API.

    Mutating calls must be safe to repeat: a second begin_evict_leader for
    the same store, or removing a member that is already gone, succeeds.
    """

    async def list_members(self) -> list[Member]:
        """Return coordinator members with health and leadership."""
        ...

    async def list_stores(self) -> list[Member]:
        """Return stores with health, state and shard leader counts."""
        ...

    async def transfer_leader(self, target_name: str) -> None:
        """
        Ask the current coordinator leader to hand leadership over.

        Args:
            target_name: Member name of the new leader.
        """
        ...

    async def begin_evict_leader(self, store_id: MemberId) -> None:
        """Start moving every shard leader away from ``store_id``."""
        ...

    async def end_evict_leader(self, store_id: MemberId) -> None:
        """Stop evicting leaders from ``store_id``."""
        ...

    async def remove_member(self, name: str) -> None:
        """Remove a coordinator member from the Raft group."""
        ...

    async def remove_store(self, store_id: MemberId) -> None:
        """Mark a store offline so its data migrates away."""
        ...

    async def cancel_remove_store(self, store_id: MemberId) -> None:
        """Bring an offlining store back up, cancelling data migration."""
        ...
