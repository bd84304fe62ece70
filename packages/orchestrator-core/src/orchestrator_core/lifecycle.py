"""
Instance lifecycle state machine.

Drives one stable index through

    Pending -> Joining -> Active -> Offlining -> Removable -> Removed

with Upgrading entered from Active and returning to Active. Each transition
is a named Step (see orchestrator_core.pipeline) over an immutable
InstanceContext snapshot. The group reconciler decides what it wants from
each instance (its Intent); the state machine decides whether it is safe to
get there yet.

Guards that touch consensus safety (quorum, coordinator leadership, shard
leaders, store data) are re-evaluated from fresh consensus reads on every
pass. A guard that is not satisfied is a wait, never an exception.

Drain bookkeeping is written to the record before the matching consensus
call is made, so a reconciliation abandoned half way is resumed from the
record by the next one. Leaving Offlining or Upgrading always releases
leader eviction, including when a removal is cancelled.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from orchestrator_protocols import (
    InstanceObservation,
    InstanceSpec,
    Member,
    WorkloadRuntime,
)

from orchestrator_core.errors import NoTransferTargetError
from orchestrator_core.pipeline import Outcome, Step, StepResult, select_step
from orchestrator_core.quorum import LeadershipCoordinator, find_member
from orchestrator_core.retry import RetryConfig, call_with_retry
from orchestrator_core.revision import config_hash
from orchestrator_core.store.base import DesiredStateStore
from orchestrator_core.types import (
    GroupPolicy,
    GroupRecord,
    InstanceRecord,
    InstanceTemplate,
    LifecycleState,
    Role,
)

logger = logging.getLogger(__name__)

# Wait/fail reasons surfaced in conditions
REASON_QUORUM_AT_RISK = "QuorumAtRisk"
REASON_NO_TRANSFER_TARGET = "NoTransferTarget"
REASON_TRANSFERRING_LEADER = "TransferringLeader"
REASON_EVICTING_LEADERS = "EvictingLeaders"
REASON_OFFLINING_DATA = "OffliningData"
REASON_JOINING = "Joining"
REASON_REJOINING = "Rejoining"
REASON_CRASH_LOOPING = "InstanceCrashLooping"
REASON_INVARIANT_VIOLATED = "InvariantViolated"
REASON_STABLE = "Stable"


class Intent(str, Enum):
    """What the group reconciler wants from one instance this pass."""

    KEEP = "keep"
    """Stay (or return to) Active on the pinned template."""

    REMOVE = "remove"
    """Selected for removal."""

    UPGRADE = "upgrade"
    """Selected for a restart onto the update template."""

    HOT_RELOAD = "hot_reload"
    """Push the new configuration in place without a restart."""


@dataclass(frozen=True)
class InstanceContext:
    """
    Immutable snapshot one lifecycle pass works on.

    Attributes:
        record: The instance record as last read or written
        group: Owning group record
        peers: Every instance record of the group (including ``record``)
        intent: What the group reconciler wants
        target_template: Template of the group's current desired state
        update_revision: Revision hash of ``target_template``
        now: Pass timestamp
        members: Consensus members read at the start of the pass, used only
            to refresh observed fields. Guards read fresh.
        halted: True while the group has an invariant violation; no
            disruptive step may start or continue
    """

    record: InstanceRecord
    group: GroupRecord
    peers: tuple[InstanceRecord, ...]
    intent: Intent
    target_template: InstanceTemplate
    update_revision: str
    now: datetime
    members: tuple[Member, ...] = ()
    halted: bool = False

    @property
    def policy(self) -> GroupPolicy:
        return self.group.spec.policy

    @property
    def state(self) -> LifecycleState:
        return self.record.state

    @property
    def role(self) -> Role:
        return self.record.role


def build_instance_spec(
    record: InstanceRecord, peers: tuple[InstanceRecord, ...] = ()
) -> InstanceSpec:
    """Render the runtime spec for ``record``'s pinned template."""
    template = record.template
    return InstanceSpec(
        name=record.name,
        cluster=record.cluster,
        group=record.group,
        role=record.role.value,
        index=record.index,
        image=template.image_for(record.role),
        version=template.version,
        config=template.config,
        config_hash=config_hash(template.config),
        revision=record.revision,
        hot_reload=record.hot_reload,
        cpu=template.resources.cpu,
        memory=template.resources.memory,
        peers=[
            p.name
            for p in peers
            if p.index != record.index and p.state is LifecycleState.ACTIVE
        ],
    )


def apply_observation(
    record: InstanceRecord,
    observation: InstanceObservation,
    member: Member | None,
) -> InstanceRecord:
    """Copy runtime and consensus observations onto the record."""
    update = {
        "ready": observation.ready,
        "observed_version": observation.version_observed,
        "observed_config_hash": observation.config_hash_observed,
        "address": observation.address or record.address,
        "restart_count": observation.restart_count,
        "crash_looping": observation.crash_looping,
    }
    if member is not None:
        update["member_id"] = member.id
        update["is_leader"] = member.is_leader
        update["leader_count"] = member.leader_count
    else:
        update["is_leader"] = False
        update["leader_count"] = 0
    return record.model_copy(update=update)


def _seconds_since(start: datetime | None, now: datetime) -> float:
    if start is None:
        return 0.0
    return (now - start).total_seconds()


def _warn(record: InstanceRecord, now: datetime, message: str) -> list[str]:
    logger.warning("%s: %s", record.name, message)
    return [*record.warnings, f"{now.isoformat()} {message}"]


_CLEARED_DRAIN = {
    "evicting": False,
    "offline_requested": False,
    "transfer_target": None,
    "drain_started_at": None,
    "restart_issued": False,
}


@dataclass
class InstanceLifecycle:
    """
    Runs lifecycle steps for one instance until it has to wait.

    Attributes:
        runtime: WorkloadRuntime that owns running instances
        coordinator: LeadershipCoordinator for consensus guards
        store: DesiredStateStore for compare-and-set writes
        retry: Retry policy for runtime calls
        max_steps: Upper bound on transitions in one pass

    Example:
        lifecycle = InstanceLifecycle(runtime, coordinator, store)
        result = await lifecycle.reconcile(ctx)
        if result.outcome is Outcome.WAIT:
            print(f"{ctx.record.name} waiting: {result.reason}")
    """

    runtime: WorkloadRuntime
    coordinator: LeadershipCoordinator
    store: DesiredStateStore
    retry: RetryConfig = field(default_factory=RetryConfig)
    max_steps: int = 8

    def __post_init__(self) -> None:
        S = LifecycleState
        self.steps: list[Step[InstanceContext]] = [
            Step(
                "discard-unstarted",
                lambda c: c.state is S.PENDING and c.intent is Intent.REMOVE,
                self.discard_unstarted,
            ),
            Step("start", lambda c: c.state is S.PENDING, self.start),
            Step("join", lambda c: c.state is S.JOINING, self.join),
            Step(
                "cancel-removal",
                lambda c: c.state is S.OFFLINING and c.intent is not Intent.REMOVE,
                self.cancel_removal,
            ),
            Step(
                "release-eviction",
                lambda c: c.state is S.ACTIVE and c.record.evicting,
                self.release_eviction,
            ),
            Step(
                "hot-reload",
                lambda c: c.state is S.ACTIVE
                and c.intent is Intent.HOT_RELOAD
                and c.record.revision != c.update_revision,
                self.hot_reload,
            ),
            Step(
                "begin-removal",
                lambda c: c.state is S.ACTIVE and c.intent is Intent.REMOVE,
                self.begin_removal,
            ),
            Step(
                "begin-upgrade",
                lambda c: c.state is S.ACTIVE
                and c.intent is Intent.UPGRADE
                and c.record.revision != c.update_revision,
                self.begin_upgrade,
            ),
            Step("sync-active", lambda c: c.state is S.ACTIVE, self.sync_active),
            Step("drain", lambda c: c.state is S.OFFLINING, self.drain),
            Step(
                "upgrade-to-removal",
                lambda c: c.state is S.UPGRADING
                and c.intent is Intent.REMOVE
                and not c.record.restart_issued,
                self.upgrade_to_removal,
            ),
            Step("restart", lambda c: c.state is S.UPGRADING, self.restart),
            Step("remove", lambda c: c.state is S.REMOVABLE, self.remove),
        ]

    # -------------------------------------------------------------------------
    # Runner
    # -------------------------------------------------------------------------

    async def reconcile(self, ctx: InstanceContext) -> StepResult:
        """
        Apply steps to ``ctx.record`` until one waits, fails or deletes it.

        Records produced by steps are persisted with compare-and-set. A
        ConflictError from the store propagates so the caller can restart
        from fresh reads.

        Returns:
            The last StepResult. Its ``record`` is the persisted record.
        """
        result = StepResult.wait(REASON_STABLE)
        for _ in range(self.max_steps):
            step = select_step(self.steps, ctx)
            if step is None:
                return StepResult.wait(REASON_STABLE, record=ctx.record)

            result = await step.run(ctx)
            if result.deleted:
                logger.info("%s removed", ctx.record.name)
                return result

            changed = result.record is not None and result.record != ctx.record
            if changed:
                saved = await self.store.update_instance(result.record)
                if saved.state is not ctx.record.state:
                    logger.info(
                        "%s: %s -> %s (%s)",
                        saved.name,
                        ctx.record.state.value,
                        saved.state.value,
                        step.name,
                    )
                ctx = replace(ctx, record=saved)
                result = replace(result, record=saved)

            if result.outcome is not Outcome.ADVANCE or not changed:
                break
        return replace(result, record=ctx.record)

    # -------------------------------------------------------------------------
    # Runtime helpers
    # -------------------------------------------------------------------------

    async def _ensure(
        self, ctx: InstanceContext, record: InstanceRecord
    ) -> InstanceObservation:
        spec = build_instance_spec(record, ctx.peers)
        return await call_with_retry(
            lambda: self.runtime.ensure_instance_running(spec),
            self.retry,
            description=f"ensure {record.name}",
        )

    async def _delete_runtime(self, record: InstanceRecord) -> None:
        await call_with_retry(
            lambda: self.runtime.delete_instance(record.name),
            self.retry,
            description=f"delete {record.name}",
        )

    def _wait(
        self,
        ctx: InstanceContext,
        reason: str,
        message: str = "",
        record: InstanceRecord | None = None,
    ) -> StepResult:
        return StepResult.wait(
            reason, message, requeue_after=ctx.policy.recheck_interval_s, record=record
        )

    def _halted(self, ctx: InstanceContext) -> StepResult:
        return self._wait(
            ctx,
            REASON_INVARIANT_VIOLATED,
            "Disruptive changes halted until the group invariant violation clears",
        )

    # -------------------------------------------------------------------------
    # Steps: creation
    # -------------------------------------------------------------------------

    async def discard_unstarted(self, ctx: InstanceContext) -> StepResult:
        """Pending -> Removed: nothing was started, drop the record."""
        await self.store.delete_instance(ctx.record)
        return StepResult.removed()

    async def start(self, ctx: InstanceContext) -> StepResult:
        """Pending -> Joining: request the runtime instance."""
        record = ctx.record.model_copy(
            update={
                "template": ctx.target_template,
                "revision": ctx.update_revision,
            }
        )
        observation = await self._ensure(ctx, record)
        record = apply_observation(record, observation, None)
        return StepResult.advance(record.transition(LifecycleState.JOINING, ctx.now))

    async def join(self, ctx: InstanceContext) -> StepResult:
        """Joining -> Active once ready and registered with consensus."""
        if ctx.intent is Intent.REMOVE:
            return StepResult.advance(
                ctx.record.transition(LifecycleState.REMOVABLE, ctx.now)
            )

        observation = await self._ensure(ctx, ctx.record)
        record = ctx.record.model_copy(
            update={"address": observation.address or ctx.record.address}
        )
        member = await self.coordinator.lookup(record)
        record = apply_observation(record, observation, member)

        if observation.ready and member is not None and member.healthy:
            return StepResult.advance(record.transition(LifecycleState.ACTIVE, ctx.now))
        if observation.crash_looping:
            return StepResult(
                Outcome.FAIL,
                record=record,
                reason=REASON_CRASH_LOOPING,
                message=f"{record.name} is crash looping "
                f"({observation.restart_count} restarts)",
            )
        detail = "waiting for readiness" if not observation.ready else "waiting for registration"
        return self._wait(ctx, REASON_JOINING, f"{record.name} {detail}", record=record)

    # -------------------------------------------------------------------------
    # Steps: steady state
    # -------------------------------------------------------------------------

    async def release_eviction(self, ctx: InstanceContext) -> StepResult:
        """Active with eviction left on: release it."""
        await self.coordinator.end_evict(ctx.record)
        return StepResult.advance(ctx.record.model_copy(update=_CLEARED_DRAIN))

    async def hot_reload(self, ctx: InstanceContext) -> StepResult:
        """Active: push a config-only change in place, no drain needed."""
        record = ctx.record.model_copy(
            update={
                "template": ctx.target_template,
                "revision": ctx.update_revision,
                "hot_reload": True,
            }
        )
        observation = await self._ensure(ctx, record)
        member = find_member(ctx.members, record)
        record = apply_observation(record, observation, member)
        return StepResult.advance(record, reason="HotReloaded")

    async def sync_active(self, ctx: InstanceContext) -> StepResult:
        """Active: keep the pinned template running and refresh observations."""
        observation = await self._ensure(ctx, ctx.record)
        member = find_member(ctx.members, ctx.record)
        record = apply_observation(ctx.record, observation, member)
        if observation.crash_looping:
            return StepResult(
                Outcome.FAIL,
                record=record,
                reason=REASON_CRASH_LOOPING,
                message=f"{record.name} is crash looping "
                f"({observation.restart_count} restarts)",
            )
        if record != ctx.record:
            return StepResult.advance(record, reason="Observed")
        return StepResult.wait(REASON_STABLE, record=record)

    # -------------------------------------------------------------------------
    # Steps: removal
    # -------------------------------------------------------------------------

    async def begin_removal(self, ctx: InstanceContext) -> StepResult:
        """
        Active -> Offlining when live responsibilities must be drained,
        Active -> Removable otherwise.
        """
        if ctx.halted:
            return self._halted(ctx)

        record = ctx.record
        if ctx.role is Role.COORDINATOR:
            check = await self.coordinator.safe_to_remove(record)
            if not check:
                return self._wait(ctx, REASON_QUORUM_AT_RISK, check.message)
            member = await self.coordinator.lookup(record)
            if member is not None and member.is_leader:
                return StepResult.advance(
                    record.transition(
                        LifecycleState.OFFLINING, ctx.now, drain_started_at=ctx.now
                    )
                )
            return StepResult.advance(record.transition(LifecycleState.REMOVABLE, ctx.now))

        if not record.registered:
            return StepResult.advance(record.transition(LifecycleState.REMOVABLE, ctx.now))
        return StepResult.advance(
            record.transition(
                LifecycleState.OFFLINING,
                ctx.now,
                drain_started_at=ctx.now,
                evicting=True,
            )
        )

    async def drain(self, ctx: InstanceContext) -> StepResult:
        """Offlining -> Removable once leadership and data are drained."""
        if ctx.halted:
            return self._halted(ctx)
        if ctx.role is Role.COORDINATOR:
            guard = await self._release_leadership(ctx)
            if guard.outcome is not Outcome.ADVANCE:
                return guard
            return StepResult.advance(
                guard.record.transition(LifecycleState.REMOVABLE, ctx.now)
            )
        return await self._offline_store(ctx)

    async def _release_leadership(self, ctx: InstanceContext) -> StepResult:
        """
        Move coordinator leadership off ``ctx.record``.

        Returns advance with the updated record once the instance no longer
        leads, or once leader_transfer_timeout_s passed after a transfer was
        requested (with a warning recorded). Never proceeds while no healthy
        peer can take leadership.
        """
        record = ctx.record
        member = await self.coordinator.lookup(record)
        if member is None or not member.is_leader:
            return StepResult.advance(
                record.model_copy(update={"is_leader": False, "transfer_target": None})
            )

        try:
            target = await self.coordinator.transfer_leadership(record, ctx.peers)
        except NoTransferTargetError as e:
            return self._wait(ctx, REASON_NO_TRANSFER_TARGET, str(e))

        elapsed = _seconds_since(record.drain_started_at, ctx.now)
        if record.transfer_target and elapsed >= ctx.policy.leader_transfer_timeout_s:
            warnings = _warn(
                record,
                ctx.now,
                f"leadership still held after {elapsed:.0f}s; proceeding after timeout",
            )
            return StepResult.advance(record.model_copy(update={"warnings": warnings}))

        return self._wait(
            ctx,
            REASON_TRANSFERRING_LEADER,
            f"waiting for leadership to move from {record.name} to {target}",
            record=record.model_copy(update={"transfer_target": target, "is_leader": True}),
        )

    def _transfer_timed_out(self, ctx: InstanceContext) -> bool:
        """True once a requested leader transfer ran past its timeout."""
        elapsed = _seconds_since(ctx.record.drain_started_at, ctx.now)
        return (
            ctx.record.transfer_target is not None
            and elapsed >= ctx.policy.leader_transfer_timeout_s
        )

    async def _evict_store_leaders(self, ctx: InstanceContext) -> StepResult:
        """
        Drain shard leaders off a store ahead of a restart.

        Returns advance with the updated record once no leader is left, or
        once evict_leader_timeout_s passed (with a warning recorded).
        """
        record = ctx.record
        await self.coordinator.begin_evict(record)
        leaders = await self.coordinator.leader_count(record)
        if leaders == 0:
            return StepResult.advance(record.model_copy(update={"leader_count": 0}))

        elapsed = _seconds_since(record.drain_started_at, ctx.now)
        if elapsed >= ctx.policy.evict_leader_timeout_s:
            warnings = _warn(
                record,
                ctx.now,
                f"{leaders} shard leader(s) left after {elapsed:.0f}s; "
                f"restarting after timeout",
            )
            return StepResult.advance(
                record.model_copy(update={"leader_count": leaders, "warnings": warnings})
            )

        return self._wait(
            ctx,
            REASON_EVICTING_LEADERS,
            f"{record.name}: {leaders} shard leader(s) left",
            record=record.model_copy(update={"leader_count": leaders}),
        )

    async def _offline_store(self, ctx: InstanceContext) -> StepResult:
        """Evict shard leaders, offline the store, wait for its data to move."""
        record = ctx.record
        if not record.evicting:
            return StepResult.advance(record.model_copy(update={"evicting": True}))

        await self.coordinator.begin_evict(record)

        if not record.offline_requested:
            await self.coordinator.remove(record)
            return StepResult.advance(record.model_copy(update={"offline_requested": True}))

        member = await self.coordinator.lookup(record)
        leaders = member.leader_count if member else 0
        migrated = member is None or member.is_tombstone
        elapsed = _seconds_since(record.drain_started_at, ctx.now)

        if leaders == 0 and migrated:
            await self.coordinator.end_evict(record)
            return StepResult.advance(
                record.transition(
                    LifecycleState.REMOVABLE, ctx.now, leader_count=0, evicting=False
                )
            )

        if elapsed >= ctx.policy.store_offline_timeout_s:
            await self.coordinator.end_evict(record)
            warnings = _warn(
                record,
                ctx.now,
                f"store offline incomplete after {elapsed:.0f}s "
                f"({leaders} leaders left); proceeding after timeout",
            )
            return StepResult.advance(
                record.transition(
                    LifecycleState.REMOVABLE, ctx.now, evicting=False, warnings=warnings
                )
            )

        reason = REASON_EVICTING_LEADERS if leaders else REASON_OFFLINING_DATA
        return self._wait(
            ctx,
            reason,
            f"{record.name}: {leaders} shard leader(s) left, "
            f"state {member.state if member else 'gone'}",
            record=record.model_copy(update={"leader_count": leaders}),
        )

    async def cancel_removal(self, ctx: InstanceContext) -> StepResult:
        """Offlining -> Active when the instance is wanted again."""
        record = ctx.record
        if record.role is Role.STORE and record.offline_requested:
            member = await self.coordinator.lookup(record)
            if member is None or member.is_tombstone:
                # Data already gone; the index is re-created after removal.
                return StepResult.advance(
                    record.transition(LifecycleState.REMOVABLE, ctx.now)
                )
            await self.coordinator.cancel_remove(record)
        if record.evicting:
            await self.coordinator.end_evict(record)
        return StepResult.advance(
            record.transition(LifecycleState.ACTIVE, ctx.now, **_CLEARED_DRAIN)
        )

    async def remove(self, ctx: InstanceContext) -> StepResult:
        """
        Removable -> Removed: leave consensus, delete instance and record.

        A coordinator that leads again goes back to Offlining, unless its
        leader transfer already timed out.
        """
        if ctx.halted:
            return self._halted(ctx)

        record = ctx.record
        if record.role is Role.COORDINATOR:
            check = await self.coordinator.safe_to_remove(record)
            if not check:
                return self._wait(ctx, REASON_QUORUM_AT_RISK, check.message)
            member = await self.coordinator.lookup(record)
            leads = member is not None and member.is_leader
            if leads and not self._transfer_timed_out(ctx):
                # Leadership landed here after the drain; drain again.
                return StepResult.advance(
                    record.transition(
                        LifecycleState.OFFLINING, ctx.now, drain_started_at=ctx.now
                    ),
                    reason="LeadershipRegained",
                )
            await self.coordinator.remove(record)
        elif record.evicting:
            await self.coordinator.end_evict(record)

        await self._delete_runtime(record)
        await self.store.delete_instance(record)
        return StepResult.removed()

    # -------------------------------------------------------------------------
    # Steps: upgrade
    # -------------------------------------------------------------------------

    async def begin_upgrade(self, ctx: InstanceContext) -> StepResult:
        """Active -> Upgrading."""
        if ctx.halted:
            return self._halted(ctx)
        return StepResult.advance(
            ctx.record.transition(
                LifecycleState.UPGRADING,
                ctx.now,
                drain_started_at=ctx.now,
                restart_issued=False,
                evicting=ctx.role is Role.STORE and ctx.record.registered,
            )
        )

    async def upgrade_to_removal(self, ctx: InstanceContext) -> StepResult:
        """Upgrading -> Offlining when the index was scaled away mid-drain."""
        return StepResult.advance(
            ctx.record.transition(LifecycleState.OFFLINING, ctx.now)
        )

    async def restart(self, ctx: InstanceContext) -> StepResult:
        """
        Upgrading: drain, restart onto the update template, wait to rejoin.

        A coordinator is only restarted while the remaining members keep
        quorum without it.

        The restart is recorded (restart_issued) before the runtime is asked
        to replace the instance, so a pass that dies in between resumes with
        the replacement rather than draining again.
        """
        record = ctx.record
        if not record.restart_issued:
            if ctx.halted:
                return self._halted(ctx)
            if record.role is Role.COORDINATOR:
                # A restart takes the member down like a removal does.
                check = await self.coordinator.safe_to_remove(record)
                if not check:
                    return self._wait(ctx, REASON_QUORUM_AT_RISK, check.message)
                guard = await self._release_leadership(ctx)
            elif record.registered:
                if not record.evicting:
                    return StepResult.advance(record.model_copy(update={"evicting": True}))
                guard = await self._evict_store_leaders(ctx)
            else:
                guard = StepResult.advance(record)
            if guard.outcome is not Outcome.ADVANCE:
                return guard

            return StepResult.advance(
                guard.record.model_copy(
                    update={
                        "template": ctx.target_template,
                        "revision": ctx.update_revision,
                        "hot_reload": False,
                        "restart_issued": True,
                        "ready": False,
                    }
                ),
                reason="RestartIssued",
            )

        observation = await self._ensure(ctx, record)
        member = await self.coordinator.lookup(record)
        record = apply_observation(record, observation, member)

        rejoined = (
            observation.ready
            and member is not None
            and member.healthy
            and observation.version_observed == record.template.version
        )
        if rejoined:
            if record.evicting:
                await self.coordinator.end_evict(record)
            return StepResult.advance(
                record.transition(LifecycleState.ACTIVE, ctx.now, **_CLEARED_DRAIN)
            )
        if observation.crash_looping:
            return StepResult(
                Outcome.FAIL,
                record=record,
                reason=REASON_CRASH_LOOPING,
                message=f"{record.name} is crash looping after restart "
                f"({observation.restart_count} restarts); manual recovery required",
            )
        return self._wait(
            ctx, REASON_REJOINING, f"waiting for {record.name} to rejoin", record=record
        )
