"""
Status aggregator.

Pure functions that roll instance records into group status, and group
records into cluster status. Status is recomputed from scratch every pass
and never patched incrementally. The only thing carried over from the
previous status is bookkeeping that cannot be derived from records:
``current_revision``, the in-flight stall counter and each condition's
``last_transition_time``.

Conditions:
    Available   - enough ready instances to serve (quorum for coordinators)
    Progressing - the group is moving toward its desired state
    Synced      - every instance runs the desired template
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from orchestrator_core.quorum import quorum_size
from orchestrator_core.types import (
    ClusterRecord,
    ClusterStatus,
    ComponentStatus,
    Condition,
    GroupRecord,
    GroupStatus,
    InstanceRecord,
    LifecycleState,
    Role,
)
from orchestrator_core.upgrade import find_in_flight, instance_updated

AVAILABLE = "Available"
PROGRESSING = "Progressing"
SYNCED = "Synced"

# Reasons
REASON_READY = "Ready"
REASON_NOT_ALL_READY = "NotAllInstancesReady"
REASON_QUORUM_LOST = "QuorumLost"
REASON_NO_READY_INSTANCES = "NoReadyInstances"
REASON_NO_REPLICAS = "NoReplicas"
REASON_SYNCED = "Synced"
REASON_NOT_UP_TO_DATE = "NotAllInstancesUpToDate"
REASON_PAUSED = "Paused"
REASON_INVARIANT_VIOLATED = "InvariantViolated"
REASON_UPGRADE_STALLED = "UpgradeStalled"
REASON_SCALE_IN_STALLED = "ScaleInStalled"
REASON_CONVERGED = "Converged"
REASON_SCALING_OUT = "ScalingOut"
REASON_SCALING_IN = "ScalingIn"
REASON_ROLLING_UPGRADE = "RollingUpgrade"
REASON_OUTDATED_STATUS = "StatusOutdated"

# Wait reasons that mean the group cannot move on by itself
BLOCKING_REASONS = frozenset(
    {"QuorumAtRisk", "NoTransferTarget", "InstanceCrashLooping", "InvariantViolated"}
)

# Drain waits that end on their own timeouts; they do not count toward a stall
BOUNDED_WAIT_REASONS = frozenset(
    {"TransferringLeader", "EvictingLeaders", "OffliningData"}
)


@dataclass(frozen=True)
class InstanceOutcome:
    """Why one instance stopped in the last pass."""

    index: int
    reason: str
    message: str = ""


@dataclass(frozen=True)
class PassSummary:
    """
    Facts from one group pass that the records alone do not carry.

    Attributes:
        update_revision: Revision of the desired template
        paused: The owning cluster is paused
        invariant_violation: Message when an invariant was violated
        pending_creates: Indices the diff still wants created
        pending_removes: Indices the diff still wants removed
        blocked: Instance waits/failures with a reason worth surfacing
        upgrade_blocked: Why the sequencer chose no target
        in_flight_reason: Wait reason of the in-flight instance this pass
    """

    update_revision: str
    paused: bool = False
    invariant_violation: str | None = None
    pending_creates: list[int] = field(default_factory=list)
    pending_removes: list[int] = field(default_factory=list)
    blocked: list[InstanceOutcome] = field(default_factory=list)
    upgrade_blocked: str = ""
    in_flight_reason: str = ""


def instance_ready(record: InstanceRecord) -> bool:
    """Active, ready and not crash looping."""
    return (
        record.state is LifecycleState.ACTIVE
        and record.ready
        and not record.crash_looping
    )


def set_condition(
    previous: Iterable[Condition],
    type_: str,
    status: bool,
    reason: str,
    message: str,
    now: datetime,
) -> Condition:
    """Build a condition, keeping last_transition_time if status is unchanged."""
    for old in previous:
        if old.type == type_ and old.status == status:
            return Condition(
                type=type_,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=old.last_transition_time,
            )
    return Condition(
        type=type_, status=status, reason=reason, message=message, last_transition_time=now
    )


def get_condition(conditions: Iterable[Condition], type_: str) -> Condition | None:
    for condition in conditions:
        if condition.type == type_:
            return condition
    return None


def _available(
    role: Role, desired: int, ready: int, total: int
) -> tuple[bool, str, str]:
    if desired == 0 and total == 0:
        return True, REASON_NO_REPLICAS, "group is scaled to zero"
    if role is Role.COORDINATOR:
        required = quorum_size(max(total, 1))
        if ready < required:
            return (
                False,
                REASON_QUORUM_LOST,
                f"{ready}/{total} coordinators ready, quorum needs {required}",
            )
    elif ready == 0:
        return False, REASON_NO_READY_INSTANCES, f"0/{total} stores ready"
    if ready < desired:
        return True, REASON_NOT_ALL_READY, f"{ready}/{desired} instances ready"
    return True, REASON_READY, f"{ready}/{desired} instances ready"


def aggregate_group(
    group: GroupRecord,
    instances: Sequence[InstanceRecord],
    summary: PassSummary,
    now: datetime,
) -> GroupStatus:
    """
    Compute a group's status from its instance records.

    Args:
        group: Group record (desired state and previous status)
        instances: Instance records after this pass
        summary: Pass facts that are not in the records
        now: Timestamp for condition transitions

    Returns:
        New GroupStatus tagged with ``group.generation``
    """
    previous = group.status
    desired = group.spec.desired
    update_revision = summary.update_revision

    total = len(instances)
    ready = sum(1 for i in instances if instance_ready(i))
    updated = sum(1 for i in instances if instance_updated(i, update_revision))
    all_updated = (
        total == desired.replicas
        and updated == desired.replicas
        and not summary.pending_creates
        and not summary.pending_removes
    )

    current_revision = update_revision if all_updated else previous.current_revision
    current = (
        sum(1 for i in instances if i.revision == current_revision)
        if current_revision
        else 0
    )
    version = desired.version if all_updated else previous.version

    in_flight = find_in_flight(instances)
    if in_flight is None:
        inflight_index, inflight_passes = None, 0
    else:
        same = previous.inflight_index == in_flight.index
        inflight_index = in_flight.index
        inflight_passes = previous.inflight_passes if same else 0
        if summary.in_flight_reason not in BOUNDED_WAIT_REASONS:
            inflight_passes += 1

    conditions = previous.conditions
    ok, reason, message = _available(group.role, desired.replicas, ready, total)
    available = set_condition(conditions, AVAILABLE, ok, reason, message, now)

    progressing_status, reason, message = _progressing(
        summary,
        in_flight,
        inflight_passes,
        group.spec.policy.stall_after_reconciles,
        all_updated,
        instances,
        desired.replicas,
    )
    progressing = set_condition(
        conditions, PROGRESSING, progressing_status, reason, message, now
    )

    if all_updated:
        synced = set_condition(
            conditions, SYNCED, True, REASON_SYNCED, f"{updated}/{desired.replicas} updated", now
        )
    else:
        synced = set_condition(
            conditions,
            SYNCED,
            False,
            REASON_NOT_UP_TO_DATE,
            f"{updated}/{desired.replicas} instances up to date",
            now,
        )

    return GroupStatus(
        observed_generation=group.generation,
        current_revision=current_revision,
        update_revision=update_revision,
        replicas=total,
        ready_replicas=ready,
        current_replicas=current,
        updated_replicas=updated,
        version=version,
        inflight_index=inflight_index,
        inflight_passes=inflight_passes,
        conditions=[available, progressing, synced],
    )


def _progressing(
    summary: PassSummary,
    in_flight: InstanceRecord | None,
    inflight_passes: int,
    stall_after: int,
    all_updated: bool,
    instances: Sequence[InstanceRecord],
    desired_replicas: int,
) -> tuple[bool, str, str]:
    if summary.paused:
        return False, REASON_PAUSED, "reconciliation is paused"
    if summary.invariant_violation:
        return False, REASON_INVARIANT_VIOLATED, summary.invariant_violation

    if in_flight is not None and inflight_passes > stall_after:
        reason = (
            REASON_UPGRADE_STALLED
            if in_flight.state is LifecycleState.UPGRADING
            else REASON_SCALE_IN_STALLED
        )
        return (
            False,
            reason,
            f"{in_flight.name} has been {in_flight.state.value} "
            f"for {inflight_passes} reconciliations",
        )

    for outcome in summary.blocked:
        if outcome.reason in BLOCKING_REASONS:
            return False, outcome.reason, outcome.message

    if all_updated and in_flight is None:
        return False, REASON_CONVERGED, "all instances are up to date"

    if summary.pending_removes or any(i.index >= desired_replicas for i in instances):
        return True, REASON_SCALING_IN, f"removing {summary.pending_removes}"
    creating = [
        i.index
        for i in instances
        if i.state in (LifecycleState.PENDING, LifecycleState.JOINING)
    ]
    if summary.pending_creates or creating:
        return (
            True,
            REASON_SCALING_OUT,
            f"creating {sorted(set(summary.pending_creates) | set(creating))}",
        )
    message = summary.upgrade_blocked or "rolling instances onto the update revision"
    return True, REASON_ROLLING_UPGRADE, message


def aggregate_cluster(
    cluster: ClusterRecord, groups: Sequence[GroupRecord], now: datetime
) -> ClusterStatus:
    """
    Compute a cluster's status from its groups.

    A group whose status was computed for an older generation counts as not
    synced, so the cluster never reports Synced for stale group status.
    """
    previous = cluster.status.conditions

    totals: dict[str, int] = {}
    for role in Role:
        kind_groups = [g for g in groups if g.role is role]
        if kind_groups:
            totals[role.kind] = sum(g.status.replicas for g in kind_groups)
    components = [ComponentStatus(kind=k, replicas=v) for k, v in totals.items()]

    unavailable = [
        (g, c)
        for g in groups
        if (c := get_condition(g.status.conditions, AVAILABLE)) is None or not c.status
    ]
    if unavailable:
        group, cond = unavailable[0]
        available = set_condition(
            previous,
            AVAILABLE,
            False,
            cond.reason if cond else REASON_OUTDATED_STATUS,
            f"group {group.name}: {cond.message if cond else 'no status yet'}",
            now,
        )
    else:
        available = set_condition(
            previous, AVAILABLE, True, REASON_READY, "all groups available", now
        )

    if cluster.spec.paused:
        progressing = set_condition(
            previous, PROGRESSING, False, REASON_PAUSED, "reconciliation is paused", now
        )
    else:
        moving = [
            (g, c)
            for g in groups
            if (c := get_condition(g.status.conditions, PROGRESSING)) is not None
            and (c.status or c.reason in BLOCKING_REASONS or c.reason.endswith("Stalled"))
        ]
        if moving:
            group, cond = moving[0]
            progressing = set_condition(
                previous,
                PROGRESSING,
                cond.status,
                cond.reason,
                f"group {group.name}: {cond.message}",
                now,
            )
        else:
            progressing = set_condition(
                previous, PROGRESSING, False, REASON_CONVERGED, "all groups converged", now
            )

    stale = [g for g in groups if g.status.observed_generation < g.generation]
    unsynced = [
        g
        for g in groups
        if (c := get_condition(g.status.conditions, SYNCED)) is None or not c.status
    ]
    if stale:
        synced = set_condition(
            previous,
            SYNCED,
            False,
            REASON_OUTDATED_STATUS,
            f"group {stale[0].name} status is for generation "
            f"{stale[0].status.observed_generation} < {stale[0].generation}",
            now,
        )
    elif unsynced:
        synced = set_condition(
            previous,
            SYNCED,
            False,
            REASON_NOT_UP_TO_DATE,
            f"groups not synced: {', '.join(g.name for g in unsynced)}",
            now,
        )
    else:
        synced = set_condition(previous, SYNCED, True, REASON_SYNCED, "all groups synced", now)

    return ClusterStatus(
        observed_generation=cluster.generation,
        components=components,
        conditions=[available, progressing, synced],
    )
