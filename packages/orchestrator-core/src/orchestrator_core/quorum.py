"""
Quorum and leadership coordinator.

Answers the consensus-safety questions the lifecycle state machine asks
before a disruptive step, and issues the consensus operations that drain an
instance:

- safe_to_remove: would removing this coordinator keep Raft quorum?
- transfer_leadership: hand coordinator leadership to a healthy peer
- leader_count / begin_evict / end_evict: drain shard leaders off a store
- check_single_leader: detect a coordinator group reporting two leaders

Every question is answered from a fresh read of the consensus service.
Nothing is cached between calls, because other reconciliations may change
membership at any moment; guards are cheap idempotent re-checks rather than
one-time decisions.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from orchestrator_protocols import ConsensusClient, Member

from orchestrator_core.errors import NoTransferTargetError
from orchestrator_core.retry import RetryConfig, call_with_retry
from orchestrator_core.types import InstanceRecord, LifecycleState, Role

logger = logging.getLogger(__name__)


def quorum_size(members: int) -> int:
    """Minimum live coordinator count for ``members`` Raft peers: floor(N/2)+1."""
    return members // 2 + 1


@dataclass(frozen=True)
class QuorumCheck:
    """
    Outcome of a safe-to-remove check.

    Truthy when removal is safe, so it can be used directly as a bool.

    Attributes:
        safe: Whether removal keeps quorum
        live_members: Healthy members observed now
        total_members: Members observed now (N)
        required: floor(N/2)+1
        candidate_live: Whether the candidate itself is a live member
    """

    safe: bool
    live_members: int
    total_members: int
    required: int
    candidate_live: bool

    def __bool__(self) -> bool:
        return self.safe

    @property
    def message(self) -> str:
        after = self.live_members - (1 if self.candidate_live else 0)
        return (
            f"{after} live member(s) would remain of {self.total_members}, "
            f"quorum needs {self.required}"
        )


def find_member(members: Sequence[Member], record: InstanceRecord) -> Member | None:
    """
    Match an instance record to its consensus member.

    Matches by consensus ID when the record already has one, otherwise by
    name (coordinators) or advertised address (stores).
    """
    for member in members:
        if record.member_id and member.id == record.member_id:
            return member
    for member in members:
        if record.role is Role.COORDINATOR and member.name == record.name:
            return member
        if record.role is Role.STORE and record.address and member.address == record.address:
            return member
    return None


def evaluate_quorum(members: Sequence[Member], record: InstanceRecord) -> QuorumCheck:
    """
    Decide whether removing ``record`` keeps coordinator quorum.

    Uses the observed membership, not the desired replica count. Removing a
    live member must leave liveMembers - 1 >= floor(N/2)+1. Removing a member
    that is already down does not lower the live count and is checked
    against the shrunken membership instead. An instance that never joined
    is always safe to remove.
    """
    total = len(members)
    live = sum(1 for m in members if m.healthy)
    member = find_member(members, record)

    if member is None:
        return QuorumCheck(
            safe=True,
            live_members=live,
            total_members=total,
            required=quorum_size(total) if total else 0,
            candidate_live=False,
        )

    if member.healthy:
        required = quorum_size(total)
        return QuorumCheck(
            safe=live - 1 >= required,
            live_members=live,
            total_members=total,
            required=required,
            candidate_live=True,
        )

    required = quorum_size(total - 1) if total > 1 else 0
    return QuorumCheck(
        safe=live >= required,
        live_members=live,
        total_members=total,
        required=required,
        candidate_live=False,
    )


def select_transfer_target(
    record: InstanceRecord,
    peers: Sequence[InstanceRecord],
    members: Sequence[Member],
) -> InstanceRecord | None:
    """
    Pick the peer that should receive leadership from ``record``.

    Candidates are Active peers whose consensus member is healthy and not
    the leader. The lowest stable index wins so the choice is deterministic.
    """
    candidates = []
    for peer in peers:
        if peer.index == record.index or peer.state is not LifecycleState.ACTIVE:
            continue
        member = find_member(members, peer)
        if member is None or not member.healthy or member.is_leader:
            continue
        candidates.append(peer)
    if not candidates:
        return None
    return min(candidates, key=lambda p: p.index)


def check_single_leader(members: Sequence[Member]) -> str | None:
    """
    Check that at most one coordinator member reports leadership.

    Returns:
        A violation message, or None when the invariant holds
    """
    leaders = sorted(m.name or m.id for m in members if m.is_leader)
    if len(leaders) > 1:
        return f"{len(leaders)} members report leadership: {', '.join(leaders)}"
    return None


@dataclass
class LeadershipCoordinator:
    """
    Consensus-facing helper used by the lifecycle state machine.

    Attributes:
        consensus: ConsensusClient for the cluster
        retry: Retry policy for individual consensus calls

    Example:
        coordinator = LeadershipCoordinator(consensus=pd_client)
        check = await coordinator.safe_to_remove(record)
        if not check:
            print(f"Blocked: {check.message}")
    """

    consensus: ConsensusClient
    retry: RetryConfig = field(default_factory=RetryConfig)

    async def list_members(self) -> list[Member]:
        """Fresh coordinator membership."""
        return await call_with_retry(
            self.consensus.list_members, self.retry, description="list members"
        )

    async def list_stores(self) -> list[Member]:
        """Fresh store list."""
        return await call_with_retry(
            self.consensus.list_stores, self.retry, description="list stores"
        )

    async def members_for(self, role: Role) -> list[Member]:
        """Fresh members for the given role."""
        if role is Role.COORDINATOR:
            return await self.list_members()
        return await self.list_stores()

    async def lookup(self, record: InstanceRecord) -> Member | None:
        """Fresh consensus view of one instance."""
        return find_member(await self.members_for(record.role), record)

    async def safe_to_remove(self, record: InstanceRecord) -> QuorumCheck:
        """
        Check whether removing or restarting a coordinator keeps quorum.

        Stores do not take part in coordinator quorum; for them the check
        is always safe.
        """
        if record.role is not Role.COORDINATOR:
            return QuorumCheck(True, 0, 0, 0, False)
        check = evaluate_quorum(await self.list_members(), record)
        if not check:
            logger.info("Disrupting %s would break quorum: %s", record.name, check.message)
        return check

    async def transfer_leadership(
        self, record: InstanceRecord, peers: Sequence[InstanceRecord]
    ) -> str:
        """
        Ask the consensus service to move leadership off ``record``.

        Args:
            record: Coordinator instance currently holding leadership
            peers: All instance records of the group

        Returns:
            Name of the chosen target instance

        Raises:
            NoTransferTargetError: If no healthy non-leader peer exists
        """
        members = await self.list_members()
        target = select_transfer_target(record, peers, members)
        if target is None:
            raise NoTransferTargetError(record.name)

        await call_with_retry(
            lambda: self.consensus.transfer_leader(target.name),
            self.retry,
            description=f"transfer leader to {target.name}",
        )
        logger.info("Requested leader transfer %s -> %s", record.name, target.name)
        return target.name

    async def leader_count(self, record: InstanceRecord) -> int:
        """Shard leaders still hosted on a store; 0 if it is gone."""
        member = find_member(await self.list_stores(), record)
        return member.leader_count if member else 0

    async def begin_evict(self, record: InstanceRecord) -> None:
        """Start evicting shard leaders from a store. Safe to repeat."""
        if not record.member_id:
            return
        await call_with_retry(
            lambda: self.consensus.begin_evict_leader(record.member_id),
            self.retry,
            description=f"begin evict leader {record.name}",
        )

    async def end_evict(self, record: InstanceRecord) -> None:
        """Stop evicting shard leaders from a store. Safe to repeat."""
        if not record.member_id:
            return
        await call_with_retry(
            lambda: self.consensus.end_evict_leader(record.member_id),
            self.retry,
            description=f"end evict leader {record.name}",
        )

    async def remove(self, record: InstanceRecord) -> None:
        """Remove a coordinator member or start offlining a store."""
        if record.role is Role.COORDINATOR:
            await call_with_retry(
                lambda: self.consensus.remove_member(record.name),
                self.retry,
                description=f"remove member {record.name}",
            )
        elif record.member_id:
            await call_with_retry(
                lambda: self.consensus.remove_store(record.member_id),
                self.retry,
                description=f"remove store {record.name}",
            )

    async def cancel_remove(self, record: InstanceRecord) -> None:
        """Cancel an in-progress store offline."""
        if record.role is Role.STORE and record.member_id:
            await call_with_retry(
                lambda: self.consensus.cancel_remove_store(record.member_id),
                self.retry,
                description=f"cancel remove store {record.name}",
            )
