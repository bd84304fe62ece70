"""
Group and cluster reconcilers.

One GroupReconciler pass:

1. Read the group, its cluster and its instance records.
2. If the cluster is paused, only recompute status.
3. Read consensus membership once; a coordinator group reporting more than
   one leader halts every disruptive step for this pass.
4. Diff desired replicas against the records and create Pending records
   for missing indices.
5. Ask the sequencer for this pass's upgrade target and hot reloads.
6. Assign every instance an Intent and run its lifecycle. Instances run
   concurrently; no instance waits on another.
7. Re-read the records, aggregate status, write it with compare-and-set.

Every pass starts from fresh reads and may be abandoned at any point. Two
passes for the same group may overlap; the loser of any compare-and-set
write is requeued and starts over.

ClusterReconciler rolls group status up into cluster status.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from orchestrator_protocols import WorkloadRuntime

from orchestrator_core.diff import DiffPlan, compute_diff
from orchestrator_core.errors import AlreadyExistsError, ConflictError, TransientError
from orchestrator_core.lifecycle import InstanceContext, InstanceLifecycle, Intent
from orchestrator_core.pipeline import Outcome, StepResult
from orchestrator_core.quorum import LeadershipCoordinator, check_single_leader
from orchestrator_core.retry import RetryConfig
from orchestrator_core.status import (
    BLOCKING_REASONS,
    InstanceOutcome,
    PassSummary,
    aggregate_cluster,
    aggregate_group,
)
from orchestrator_core.store.base import DesiredStateStore
from orchestrator_core.types import (
    ClusterStatus,
    GroupRecord,
    GroupStatus,
    InstanceRecord,
    LifecycleState,
    Role,
)
from orchestrator_core.upgrade import RollingUpgradeSequencer, UpgradePlan, find_in_flight

logger = logging.getLogger(__name__)

REASON_CONFLICT = "Conflict"
REASON_TRANSIENT = "TransientError"


@dataclass(frozen=True)
class ReconcileResult:
    """
    Outcome of one reconcile pass.

    Attributes:
        key: Reconciled key ("cluster" or "cluster/group")
        requeue_after: Seconds until the key should be checked again, or
            None to wait for the next resync or trigger
        status: Status written by the pass, if any
        outcomes: Per-index lifecycle result (group passes only)
    """

    key: str
    requeue_after: float | None = None
    status: GroupStatus | ClusterStatus | None = None
    outcomes: dict[int, StepResult] = field(default_factory=dict)


def assign_intents(
    group: GroupRecord,
    instances: Sequence[InstanceRecord],
    plan: UpgradePlan,
) -> dict[int, Intent]:
    """
    Decide what each instance should do this pass.

    Removal goes one instance at a time, highest index first, and only when
    no other disruptive change is in flight. Pending records above the
    desired range were never started and are all discarded at once.
    """
    replicas = group.spec.desired.replicas
    intents = {i.index: Intent.KEEP for i in instances}

    out_of_range = [i for i in instances if i.index >= replicas]
    for record in out_of_range:
        if record.state is LifecycleState.PENDING:
            intents[record.index] = Intent.REMOVE

    started = [i for i in out_of_range if i.state is not LifecycleState.PENDING]
    if started:
        committed = [
            i
            for i in started
            if i.state in (LifecycleState.OFFLINING, LifecycleState.REMOVABLE)
        ]
        selected = max(committed or started, key=lambda i: i.index)
        in_flight = find_in_flight(instances)
        if in_flight is None or in_flight.index == selected.index:
            intents[selected.index] = Intent.REMOVE

    for index in plan.hot_reload:
        intents[index] = Intent.HOT_RELOAD
    for record in instances:
        if record.index < replicas and record.state is LifecycleState.UPGRADING:
            intents[record.index] = Intent.UPGRADE
    if plan.target is not None:
        intents[plan.target] = Intent.UPGRADE
    return intents


@dataclass
class GroupReconciler:
    """
    Reconciles one group toward its desired state.

    Attributes:
        store: DesiredStateStore holding records
        runtime: WorkloadRuntime that runs instances
        coordinator: LeadershipCoordinator for consensus reads and guards
        sequencer: Rolling upgrade planner
        retry: Retry policy for collaborator calls
        now: Clock, injectable for tests
        conflict_requeue_s: Requeue delay after a lost compare-and-set

    Example:
        reconciler = GroupReconciler(store, runtime, LeadershipCoordinator(pd))
        result = await reconciler.reconcile("basic", "pd")
    """

    store: DesiredStateStore
    runtime: WorkloadRuntime
    coordinator: LeadershipCoordinator
    sequencer: RollingUpgradeSequencer = field(default_factory=RollingUpgradeSequencer)
    retry: RetryConfig = field(default_factory=RetryConfig)
    now: Callable[[], datetime] = datetime.now
    conflict_requeue_s: float = 0.5

    def __post_init__(self) -> None:
        self.lifecycle = InstanceLifecycle(
            runtime=self.runtime,
            coordinator=self.coordinator,
            store=self.store,
            retry=self.retry,
        )

    async def reconcile(self, cluster_name: str, group_name: str) -> ReconcileResult:
        """
        Run one pass for ``cluster_name/group_name``.

        Returns:
            ReconcileResult with the requeue hint and written status

        Raises:
            TransientError: If a collaborator stayed unreachable. Status is
                still written first, and no record is regressed.
        """
        key = f"{cluster_name}/{group_name}"
        group = await self.store.get_group(cluster_name, group_name)
        if group is None:
            logger.debug("Group %s no longer exists", key)
            return ReconcileResult(key=key)

        cluster = await self.store.get_cluster(cluster_name)
        paused = cluster is not None and cluster.spec.paused
        desired = group.spec.desired
        policy = group.spec.policy
        instances = await self.store.list_instances(cluster_name, group_name)

        if paused:
            diff = compute_diff(desired.replicas, instances)
            plan = self.sequencer.plan(group, instances)
            summary = PassSummary(
                update_revision=plan.update_revision,
                paused=True,
                pending_creates=diff.creates,
                pending_removes=diff.removes,
            )
            status = await self._write_status(group, instances, summary)
            return ReconcileResult(key=key, status=status)

        try:
            members = await self.coordinator.members_for(group.role)
        except TransientError as e:
            # Bootstrapping groups have no consensus service to ask yet.
            # Guards re-read on their own and wait while it is unreachable.
            logger.warning("Group %s: membership unavailable: %s", key, e)
            members = []
        violation = (
            check_single_leader(members) if group.role is Role.COORDINATOR else None
        )
        if violation:
            logger.error("Group %s invariant violated: %s", key, violation)

        diff = compute_diff(desired.replicas, instances)
        if diff.creates:
            instances = await self._create_missing(group, diff, instances)

        plan = self.sequencer.plan(
            group, instances, scaling_in=bool(diff.removes), halted=violation is not None
        )
        intents = assign_intents(group, instances, plan)
        if plan.target is not None:
            logger.info(
                "Group %s: upgrading index %d to revision %s",
                key,
                plan.target,
                plan.update_revision,
            )

        now = self.now()
        contexts = [
            InstanceContext(
                record=record,
                group=group,
                peers=tuple(instances),
                intent=intents[record.index],
                target_template=desired.template(),
                update_revision=plan.update_revision,
                now=now,
                members=tuple(members),
                halted=violation is not None,
            )
            for record in instances
        ]
        results = await asyncio.gather(
            *(self._run_instance(ctx) for ctx in contexts), return_exceptions=True
        )

        outcomes: dict[int, StepResult] = {}
        transient: TransientError | None = None
        for ctx, result in zip(contexts, results):
            if isinstance(result, TransientError):
                logger.warning("%s: %s", ctx.record.name, result)
                transient = transient or result
                outcomes[ctx.record.index] = StepResult.wait(
                    REASON_TRANSIENT, str(result), requeue_after=policy.recheck_interval_s
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                outcomes[ctx.record.index] = result

        instances = await self.store.list_instances(cluster_name, group_name)
        remaining = compute_diff(desired.replicas, instances)
        in_flight = find_in_flight(instances)
        in_flight_outcome = outcomes.get(in_flight.index) if in_flight else None
        summary = PassSummary(
            update_revision=plan.update_revision,
            invariant_violation=violation,
            pending_creates=remaining.creates,
            pending_removes=remaining.removes,
            blocked=[
                InstanceOutcome(index, r.reason, r.message)
                for index, r in sorted(outcomes.items())
                if r.outcome is Outcome.FAIL or r.reason in BLOCKING_REASONS
            ],
            upgrade_blocked=plan.blocked_reason,
            in_flight_reason=in_flight_outcome.reason if in_flight_outcome else "",
        )
        try:
            status = await self._write_status(group, instances, summary)
        except ConflictError as e:
            logger.info("Group %s status write lost: %s", key, e)
            return ReconcileResult(
                key=key, requeue_after=self.conflict_requeue_s, outcomes=outcomes
            )

        if transient is not None:
            raise transient

        return ReconcileResult(
            key=key,
            requeue_after=self._requeue_after(group, status, outcomes),
            status=status,
            outcomes=outcomes,
        )

    async def _run_instance(self, ctx: InstanceContext) -> StepResult:
        try:
            return await self.lifecycle.reconcile(ctx)
        except ConflictError as e:
            logger.info("%s: %s", ctx.record.name, e)
            return StepResult.wait(
                REASON_CONFLICT, str(e), requeue_after=self.conflict_requeue_s
            )

    async def _create_missing(
        self,
        group: GroupRecord,
        diff: DiffPlan,
        instances: list[InstanceRecord],
    ) -> list[InstanceRecord]:
        """Insert Pending records for missing indices, lowest index first."""
        template = group.spec.desired.template()
        update_revision = self.sequencer.plan(group, instances).update_revision
        created = list(instances)
        for index in diff.creates:
            record = InstanceRecord(
                cluster=group.cluster,
                group=group.name,
                index=index,
                role=group.role,
                template=template,
                revision=update_revision,
                state_changed_at=self.now(),
            )
            try:
                created.append(await self.store.create_instance(record))
                logger.info("Group %s: created %s", group.key, record.name)
            except AlreadyExistsError:
                # A concurrent pass got there first; it owns the record now.
                logger.debug("%s already created", record.name)
        return sorted(created, key=lambda r: r.index)

    async def _write_status(
        self,
        group: GroupRecord,
        instances: Sequence[InstanceRecord],
        summary: PassSummary,
    ) -> GroupStatus:
        status = aggregate_group(group, instances, summary, self.now())
        if status != group.status:
            await self.store.update_group_status(group.model_copy(update={"status": status}))
        return status

    @staticmethod
    def _requeue_after(
        group: GroupRecord, status: GroupStatus, outcomes: dict[int, StepResult]
    ) -> float | None:
        delays = [r.requeue_after for r in outcomes.values() if r.requeue_after]
        if delays:
            return min(delays)
        converged = (
            status.current_revision == status.update_revision
            and status.replicas == group.spec.desired.replicas
            and status.ready_replicas == status.replicas
            and status.inflight_index is None
        )
        return None if converged else group.spec.policy.recheck_interval_s


@dataclass
class ClusterReconciler:
    """
    Rolls group status up into cluster status.

    Example:
        result = await ClusterReconciler(store).reconcile("basic")
    """

    store: DesiredStateStore
    now: Callable[[], datetime] = datetime.now
    conflict_requeue_s: float = 0.5

    async def reconcile(self, cluster_name: str) -> ReconcileResult:
        cluster = await self.store.get_cluster(cluster_name)
        if cluster is None:
            return ReconcileResult(key=cluster_name)

        groups = await self.store.list_groups(cluster_name)
        status = aggregate_cluster(cluster, groups, self.now())
        if status == cluster.status:
            return ReconcileResult(key=cluster_name, status=status)
        try:
            await self.store.update_cluster_status(
                cluster.model_copy(update={"status": status})
            )
        except ConflictError as e:
            logger.info("Cluster %s status write lost: %s", cluster_name, e)
            return ReconcileResult(key=cluster_name, requeue_after=self.conflict_requeue_s)
        return ReconcileResult(key=cluster_name, status=status)
