"""
Record types for the replica orchestrator.

This module defines the desired-state and observed-state records the
orchestrator reads and writes:

- DesiredSpec / GroupPolicy / GroupSpec / ClusterSpec: what the operator asked for
- InstanceRecord: one stable index of a group, with its lifecycle state
- GroupRecord / ClusterRecord: aggregates with derived status
- Condition: machine-readable status entry (Available, Progressing, Synced)

Per project patterns:
- Use str enum for JSON serialization compatibility
- Pydantic BaseModel for records that are persisted and validated
- Records are frozen; every change produces a new copy via model_copy()

Every persisted record carries ``resource_version``, the compare-and-set
token used by the desired-state store. Specs carry ``generation``, bumped
only when the desired state is edited.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Role of the instances in a group."""

    COORDINATOR = "coordinator"
    """Raft member of the metadata service (PD)."""

    STORE = "store"
    """Data-holding store (TiKV)."""

    @property
    def component(self) -> str:
        """Short component name used in instance names."""
        return "pd" if self is Role.COORDINATOR else "tikv"

    @property
    def kind(self) -> str:
        """Component kind used in the cluster summary."""
        return "PD" if self is Role.COORDINATOR else "TiKV"


class LifecycleState(str, Enum):
    """
    Lifecycle states of one instance.

    Instances flow through these states:
        Pending -> Joining -> Active -> Offlining -> Removable -> Removed
    with Upgrading entered from Active and returning to Active.
    """

    PENDING = "Pending"
    """Record created, runtime instance not requested yet."""

    JOINING = "Joining"
    """Runtime instance requested, waiting for readiness and registration."""

    ACTIVE = "Active"
    """Serving and registered with the consensus cluster."""

    UPGRADING = "Upgrading"
    """Draining responsibilities before, or rejoining after, a restart."""

    OFFLINING = "Offlining"
    """Draining leadership and data before removal."""

    REMOVABLE = "Removable"
    """Drained; runtime instance and record may be deleted."""

    REMOVED = "Removed"
    """Terminal. The record no longer exists in the store."""


DRAIN_STATES = frozenset({LifecycleState.UPGRADING, LifecycleState.OFFLINING})
"""States that count against maxUnavailable."""

DISRUPTIVE_STATES = frozenset(
    {LifecycleState.UPGRADING, LifecycleState.OFFLINING, LifecycleState.REMOVABLE}
)
"""States in which a disruptive change is in flight."""


class UpdateStrategy(str, Enum):
    """How configuration changes reach running instances."""

    HOT_RELOAD = "HotReload"
    """Config-only changes are applied without restarting."""

    RESTART = "Restart"
    """Every change restarts the instance."""


class ResourceRequirements(BaseModel):
    """Compute resources of one instance."""

    model_config = ConfigDict(frozen=True)

    cpu: str | None = None
    memory: str | None = None


class InstanceTemplate(BaseModel):
    """
    The part of the desired state that shapes a running instance.

    Its content hash is the group's update revision.
    """

    model_config = ConfigDict(frozen=True)

    version: str
    image: str | None = None
    config: str = ""
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)

    def image_for(self, role: Role) -> str:
        """Image to run, defaulting to the upstream image for ``role``."""
        if self.image:
            return self.image
        return f"pingcap/{role.component}:{self.version or 'latest'}"


class DesiredSpec(BaseModel):
    """
    Desired state of a group, owned by the operator.

    Attributes:
        replicas: Number of instances (>= 0)
        version: Target version
        image: Optional image override
        config: Target configuration blob (TOML)
        resources: Compute resources per instance
        update_strategy: Hot reload or restart for config-only changes
    """

    model_config = ConfigDict(frozen=True)

    replicas: int = Field(ge=0)
    version: str
    image: str | None = None
    config: str = ""
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    update_strategy: UpdateStrategy = UpdateStrategy.RESTART

    def template(self) -> InstanceTemplate:
        """Return the instance template this spec declares."""
        return InstanceTemplate(
            version=self.version,
            image=self.image,
            config=self.config,
            resources=self.resources,
        )


class GroupPolicy(BaseModel):
    """
    Per-group safety and pacing policy.

    Timeouts bound the waits that would otherwise block a rollout forever.
    After a timeout the orchestrator proceeds and records a warning; it
    never proceeds when no transfer target exists at all.

    Attributes:
        leader_transfer_timeout_s: Wait for coordinator leadership to move
        evict_leader_timeout_s: Wait for store shard leaders to drain
        store_offline_timeout_s: Wait for a removed store's data to migrate
        stall_after_reconciles: Passes one disruptive change may take before
            the group reports it as stalled
        recheck_interval_s: Requeue delay while a guard is not satisfied
    """

    model_config = ConfigDict(frozen=True)

    leader_transfer_timeout_s: float = Field(default=300.0, gt=0)
    evict_leader_timeout_s: float = Field(default=600.0, gt=0)
    store_offline_timeout_s: float = Field(default=86400.0, gt=0)
    stall_after_reconciles: int = Field(default=30, ge=1)
    recheck_interval_s: float = Field(default=5.0, gt=0)


class Condition(BaseModel):
    """
    One status condition.

    Attributes:
        type: "Available", "Progressing" or "Synced"
        status: Whether the condition holds
        reason: Machine-readable CamelCase reason
        message: Human-readable detail
        last_transition_time: When ``status`` last flipped
    """

    model_config = ConfigDict(frozen=True)

    type: str
    status: bool
    reason: str
    message: str = ""
    last_transition_time: datetime | None = None


class ClusterSpec(BaseModel):
    """Desired state of a cluster."""

    model_config = ConfigDict(frozen=True)

    paused: bool = False
    """Pause reconciliation of every group in the cluster."""


class ComponentStatus(BaseModel):
    """Replica total of one component kind in a cluster."""

    model_config = ConfigDict(frozen=True)

    kind: str
    replicas: int


class ClusterStatus(BaseModel):
    """Observed state of a cluster, recomputed every pass."""

    model_config = ConfigDict(frozen=True)

    observed_generation: int = 0
    components: list[ComponentStatus] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)


class ClusterRecord(BaseModel):
    """A cluster: the parent of coordinator and store groups."""

    model_config = ConfigDict(frozen=True)

    name: str
    spec: ClusterSpec = Field(default_factory=ClusterSpec)
    generation: int = 1
    status: ClusterStatus = Field(default_factory=ClusterStatus)
    resource_version: int = 0

    @property
    def key(self) -> str:
        return self.name


class GroupSpec(BaseModel):
    """Desired state of a group."""

    model_config = ConfigDict(frozen=True)

    role: Role
    desired: DesiredSpec
    policy: GroupPolicy = Field(default_factory=GroupPolicy)


class GroupStatus(BaseModel):
    """
    Observed state of a group.

    Counts are derived from instance records and never set by hand.

    Attributes:
        observed_generation: Group generation the status was computed for
        current_revision: Last template revision fully applied everywhere
        update_revision: Revision of the latest desired template
        replicas: Instance records in the group
        ready_replicas: Active, ready, without pending guard failures
        current_replicas: Instances running current_revision
        updated_replicas: Instances fully on update_revision
        version: Version every instance runs, once converged
        inflight_index: Index of the disruptive change in flight, if any
        inflight_passes: Reconciliations the in-flight change has taken
        conditions: Available, Progressing, Synced
    """

    model_config = ConfigDict(frozen=True)

    observed_generation: int = 0
    current_revision: str = ""
    update_revision: str = ""
    replicas: int = 0
    ready_replicas: int = 0
    current_replicas: int = 0
    updated_replicas: int = 0
    version: str = ""
    inflight_index: int | None = None
    inflight_passes: int = 0
    conditions: list[Condition] = Field(default_factory=list)


class GroupRecord(BaseModel):
    """A group of instances sharing one role."""

    model_config = ConfigDict(frozen=True)

    cluster: str
    name: str
    spec: GroupSpec
    generation: int = 1
    status: GroupStatus = Field(default_factory=GroupStatus)
    resource_version: int = 0

    @property
    def key(self) -> str:
        return f"{self.cluster}/{self.name}"

    @property
    def role(self) -> Role:
        return self.spec.role


def instance_name(group: str, role: Role, index: int) -> str:
    """
    Stable instance name for ``index`` of ``group``.

    Example:
        instance_name("basic", Role.COORDINATOR, 0) == "basic-pd-0"
    """
    return f"{group}-{role.component}-{index}"


class InstanceRecord(BaseModel):
    """
    One stable index of a group.

    The record pins the template the instance runs. Active instances keep
    their pinned template until the upgrade sequencer selects them, so a
    desired-state edit never restarts anything by itself.

    Observed fields are refreshed from the runtime and consensus service on
    every pass; drain bookkeeping fields make each guard resumable after the
    process restarts.
    """

    model_config = ConfigDict(frozen=True)

    cluster: str
    group: str
    index: int = Field(ge=0)
    role: Role
    state: LifecycleState = LifecycleState.PENDING
    template: InstanceTemplate
    revision: str
    hot_reload: bool = False

    # Observed
    ready: bool = False
    observed_version: str = ""
    observed_config_hash: str = ""
    address: str = ""
    member_id: str | None = None
    is_leader: bool = False
    leader_count: int = 0
    restart_count: int = 0
    crash_looping: bool = False

    # Drain bookkeeping
    evicting: bool = False
    offline_requested: bool = False
    transfer_target: str | None = None
    drain_started_at: datetime | None = None
    restart_issued: bool = False

    state_changed_at: datetime | None = None
    warnings: list[str] = Field(default_factory=list)
    resource_version: int = 0

    @property
    def name(self) -> str:
        return instance_name(self.group, self.role, self.index)

    @property
    def key(self) -> str:
        return f"{self.cluster}/{self.group}/{self.index}"

    @property
    def registered(self) -> bool:
        """True once the consensus service assigned an identifier."""
        return bool(self.member_id)

    def transition(self, state: LifecycleState, now: datetime, **changes) -> "InstanceRecord":
        """Return a copy moved to ``state`` with extra field ``changes``."""
        return self.model_copy(
            update={"state": state, "state_changed_at": now, **changes}
        )
