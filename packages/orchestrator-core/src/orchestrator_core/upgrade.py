"""
Rolling upgrade sequencer.

Compares each instance's pinned revision with the group's update revision
and picks at most one instance to restart per pass:

- highest stable index first, so index 0 is touched last
- only while no other instance is Upgrading, Offlining or Removable
  (maxUnavailable = 1)
- only once the chosen instance is Active; a lagging instance that is
  still joining holds the rollout until it is

Config-only changes under the HotReload strategy are not restarts. They are
pushed to every lagging Active instance in the same pass and do not count
against maxUnavailable.

The sequencer is a pure planner. It returns an UpgradePlan; the group
reconciler turns the plan into per-instance intents.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field, replace

from orchestrator_core.revision import can_hot_reload, compute_revision, config_hash
from orchestrator_core.types import (
    DISRUPTIVE_STATES,
    GroupRecord,
    InstanceRecord,
    LifecycleState,
)

MAX_UNAVAILABLE = 1


def instance_lags(record: InstanceRecord, update_revision: str) -> bool:
    """True if the instance's pinned template is not the update template."""
    return record.revision != update_revision


def instance_updated(record: InstanceRecord, update_revision: str) -> bool:
    """
    True if the instance fully runs the update template.

    The pinned revision must match, the instance must be Active, and the
    observed version and config hash must match what the template asks for.
    """
    return (
        record.revision == update_revision
        and record.state is LifecycleState.ACTIVE
        and record.observed_version == record.template.version
        and record.observed_config_hash == config_hash(record.template.config)
    )


@dataclass(frozen=True)
class UpgradePlan:
    """
    What the sequencer decided for one pass.

    Attributes:
        update_revision: Revision of the group's desired template
        target: Index to restart onto the update template, if any
        hot_reload: Indices that get the new config in place
        lagging: In-range indices whose pinned revision lags
        in_flight: Index with a disruptive change in flight, if any
        blocked_reason: Why no target was chosen while instances lag
    """

    update_revision: str
    target: int | None = None
    hot_reload: list[int] = field(default_factory=list)
    lagging: list[int] = field(default_factory=list)
    in_flight: int | None = None
    blocked_reason: str = ""

    @property
    def converged(self) -> bool:
        """Nothing lags and nothing is in flight."""
        return not self.lagging and self.in_flight is None


def find_in_flight(instances: Sequence[InstanceRecord]) -> InstanceRecord | None:
    """The instance with a disruptive change in flight, highest index first."""
    disrupted = [i for i in instances if i.state in DISRUPTIVE_STATES]
    if not disrupted:
        return None
    return max(disrupted, key=lambda i: i.index)


class RollingUpgradeSequencer:
    """
    Plans ordered, single-instance upgrades.

    Example:
        plan = RollingUpgradeSequencer().plan(group, instances)
        if plan.target is not None:
            intents[plan.target] = Intent.UPGRADE
    """

    max_unavailable = MAX_UNAVAILABLE

    def plan(
        self,
        group: GroupRecord,
        instances: Sequence[InstanceRecord],
        *,
        scaling_in: bool = False,
        halted: bool = False,
    ) -> UpgradePlan:
        """
        Plan this pass's upgrade work for ``group``.

        Args:
            group: Group record with the desired template
            instances: Current instance records of the group
            scaling_in: True while removals are pending; they go first
            halted: True while the group has an invariant violation

        Returns:
            UpgradePlan
        """
        desired = group.spec.desired
        template = desired.template()
        update_revision = compute_revision(template)

        in_range = [i for i in instances if i.index < desired.replicas]
        lagging = sorted(
            (
                i
                for i in in_range
                if i.state is not LifecycleState.PENDING
                and instance_lags(i, update_revision)
            ),
            key=lambda i: i.index,
        )

        hot_reload = [
            i.index
            for i in lagging
            if i.state is LifecycleState.ACTIVE
            and can_hot_reload(i.template, template, desired.update_strategy)
        ]
        restarts = [
            i
            for i in lagging
            if i.index not in hot_reload
            and i.state in (LifecycleState.ACTIVE, LifecycleState.JOINING)
        ]

        in_flight = find_in_flight(instances)
        plan = UpgradePlan(
            update_revision=update_revision,
            hot_reload=hot_reload,
            lagging=[i.index for i in lagging],
            in_flight=in_flight.index if in_flight else None,
        )
        if not restarts:
            return plan

        candidate = max(restarts, key=lambda i: i.index)
        blocked = ""
        if halted:
            blocked = "rollout halted by invariant violation"
        elif scaling_in:
            blocked = "waiting for scale-in to finish"
        elif in_flight is not None:
            blocked = (
                f"waiting for {in_flight.name} "
                f"({in_flight.state.value}) before the next upgrade"
            )
        elif candidate.state is not LifecycleState.ACTIVE:
            blocked = f"waiting for {candidate.name} to become Active"

        if blocked:
            return replace(plan, blocked_reason=blocked)
        return replace(plan, target=candidate.index)
