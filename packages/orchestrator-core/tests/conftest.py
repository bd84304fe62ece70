"""
Shared fixtures for orchestrator-core tests.

SimulatedCluster implements both collaborator protocols (WorkloadRuntime and
ConsensusClient) in memory, so scenario tests can drive real reconcilers
against a cluster whose behaviour each test controls:

- coordinators register as PD members when started; the first one leads
- stores register with a store ID and a configurable shard leader count
- leader transfer, leader eviction and store offlining complete immediately
  unless the test turns them off
"""

import itertools
from datetime import datetime, timedelta

import pytest

from orchestrator_core.quorum import LeadershipCoordinator
from orchestrator_core.reconciler import ClusterReconciler, GroupReconciler
from orchestrator_core.retry import RetryConfig
from orchestrator_core.store import MemoryStateStore
from orchestrator_core.types import (
    ClusterRecord,
    ClusterSpec,
    DesiredSpec,
    GroupPolicy,
    GroupRecord,
    GroupSpec,
    Role,
    UpdateStrategy,
)
from orchestrator_protocols import InstanceObservation, InstanceSpec, Member


class SimulatedCluster:
    """In-memory runtime plus consensus service."""

    def __init__(self) -> None:
        self.containers: dict[str, InstanceSpec] = {}
        self.running: dict[str, bool] = {}
        self.ready_on_start = True
        self.unready: set[str] = set()
        self.crash_looping: set[str] = set()
        self.applied: dict[str, tuple[str, str]] = {}  # name -> (revision, config_hash)

        self.members: dict[str, Member] = {}  # PD members by name
        self.stores: dict[str, Member] = {}  # stores by address
        self.store_leaders = 10
        self.transfer_completes = True
        self.evict_completes = True
        self.offline_completes = True
        self.evicting: set[str] = set()

        self.calls: list[tuple[str, str]] = []
        self._ids = itertools.count(1)

    # -------------------------------------------------------------------------
    # WorkloadRuntime
    # -------------------------------------------------------------------------

    async def ensure_instance_running(self, spec: InstanceSpec) -> InstanceObservation:
        current = self.containers.get(spec.name)
        if current is None or (
            current.revision != spec.revision
            and not (spec.hot_reload and current.image == spec.image)
        ):
            self.calls.append(("start", spec.name))
            self.containers[spec.name] = spec
            self.running[spec.name] = True
            self.applied[spec.name] = (spec.revision, spec.config_hash)
            self._register(spec)
        elif current.revision != spec.revision:
            self.calls.append(("reload", spec.name))
            self.containers[spec.name] = spec
            self.applied[spec.name] = (spec.revision, spec.config_hash)
        return await self.observe_instance(spec.name)

    async def delete_instance(self, name: str) -> None:
        self.calls.append(("delete", name))
        self.containers.pop(name, None)
        self.running.pop(name, None)
        self.applied.pop(name, None)
        member = self.members.get(name)
        if member is not None:
            member.healthy = False

    async def observe_instance(self, name: str) -> InstanceObservation:
        spec = self.containers.get(name)
        if spec is None:
            return InstanceObservation.missing(name)
        revision, config_hash = self.applied[name]
        crash_looping = name in self.crash_looping
        return InstanceObservation(
            name=name,
            exists=True,
            running=self.running[name] and not crash_looping,
            ready=self.ready_on_start and name not in self.unready and not crash_looping,
            version_observed=spec.version,
            config_hash_observed=config_hash,
            revision_observed=revision,
            address=self.address_of(spec),
            restart_count=5 if crash_looping else 0,
            crash_looping=crash_looping,
        )

    @staticmethod
    def address_of(spec: InstanceSpec) -> str:
        port = 2379 if spec.role == "coordinator" else 20160
        return f"{spec.name}:{port}"

    def _register(self, spec: InstanceSpec) -> None:
        address = self.address_of(spec)
        if spec.role == "coordinator":
            member = self.members.get(spec.name)
            if member is None:
                member = Member(
                    id=str(next(self._ids)), name=spec.name, address=address, healthy=True
                )
                self.members[spec.name] = member
            member.healthy = True
            if self.leader is None:
                member.is_leader = True
        else:
            store = self.stores.get(address)
            if store is None or store.is_tombstone:
                self.stores[address] = Member(
                    id=str(next(self._ids)),
                    address=address,
                    healthy=True,
                    leader_count=self.store_leaders,
                )
            else:
                store.healthy = True

    # -------------------------------------------------------------------------
    # ConsensusClient
    # -------------------------------------------------------------------------

    @property
    def leader(self) -> Member | None:
        return next((m for m in self.members.values() if m.is_leader), None)

    async def list_members(self) -> list[Member]:
        return list(self.members.values())

    async def list_stores(self) -> list[Member]:
        return list(self.stores.values())

    async def transfer_leader(self, target_name: str) -> None:
        self.calls.append(("transfer_leader", target_name))
        if not self.transfer_completes:
            return
        for member in self.members.values():
            member.is_leader = member.name == target_name

    async def begin_evict_leader(self, store_id: str) -> None:
        self.calls.append(("begin_evict", store_id))
        self.evicting.add(store_id)
        if self.evict_completes:
            self.store_by_id(store_id).leader_count = 0

    async def end_evict_leader(self, store_id: str) -> None:
        self.calls.append(("end_evict", store_id))
        self.evicting.discard(store_id)

    async def remove_member(self, name: str) -> None:
        self.calls.append(("remove_member", name))
        member = self.members.pop(name, None)
        if member is not None and member.is_leader and self.members:
            successor = min(
                (m for m in self.members.values() if m.healthy),
                key=lambda m: m.name,
                default=None,
            )
            if successor is not None:
                successor.is_leader = True

    async def remove_store(self, store_id: str) -> None:
        self.calls.append(("remove_store", store_id))
        store = self.store_by_id(store_id)
        if self.offline_completes:
            store.state = "Tombstone"
            store.healthy = False
            store.leader_count = 0
        else:
            store.state = "Offline"

    async def cancel_remove_store(self, store_id: str) -> None:
        self.calls.append(("cancel_remove_store", store_id))
        store = self.store_by_id(store_id)
        store.state = "Up"

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def store_by_id(self, store_id: str) -> Member:
        return next(s for s in self.stores.values() if s.id == store_id)

    def calls_of(self, op: str) -> list[str]:
        return [arg for name, arg in self.calls if name == op]

    def make_leader(self, name: str) -> None:
        for member in self.members.values():
            member.is_leader = member.name == name


class FakeClock:
    """Settable clock for timeout tests."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def sim() -> SimulatedCluster:
    return SimulatedCluster()


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_retry() -> RetryConfig:
    """Retry policy that gives up after the first transient failure."""
    return RetryConfig(max_attempts=1, min_wait_seconds=0.0, max_wait_seconds=0.0)


@pytest.fixture
def reconciler(store, sim, clock, no_retry) -> GroupReconciler:
    return GroupReconciler(
        store=store,
        runtime=sim,
        coordinator=LeadershipCoordinator(consensus=sim, retry=no_retry),
        retry=no_retry,
        now=clock,
    )


@pytest.fixture
def cluster_reconciler(store, clock) -> ClusterReconciler:
    return ClusterReconciler(store=store, now=clock)


@pytest.fixture
def make_group():
    """Build a GroupRecord with test defaults."""

    def _make(
        name: str = "pd",
        role: Role = Role.COORDINATOR,
        replicas: int = 3,
        version: str = "v8.5.0",
        config: str = "",
        strategy: UpdateStrategy = UpdateStrategy.RESTART,
        cluster: str = "basic",
        **policy,
    ) -> GroupRecord:
        return GroupRecord(
            cluster=cluster,
            name=name,
            spec=GroupSpec(
                role=role,
                desired=DesiredSpec(
                    replicas=replicas,
                    version=version,
                    config=config,
                    update_strategy=strategy,
                ),
                policy=GroupPolicy(**policy),
            ),
        )

    return _make


@pytest.fixture
def apply(store):
    """Apply a cluster and groups to the store."""

    async def _apply(*groups: GroupRecord, paused: bool = False) -> None:
        cluster = groups[0].cluster if groups else "basic"
        await store.put_cluster(ClusterRecord(name=cluster, spec=ClusterSpec(paused=paused)))
        for group in groups:
            await store.put_group(group)

    return _apply


@pytest.fixture
def converge(reconciler):
    """Run group passes until the group stops changing, or ``max_passes``."""

    async def _converge(group: GroupRecord, max_passes: int = 20) -> None:
        for _ in range(max_passes):
            result = await reconciler.reconcile(group.cluster, group.name)
            if result.requeue_after is None:
                return

    return _converge
