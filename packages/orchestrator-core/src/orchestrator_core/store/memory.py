"""In-process desired-state store with compare-and-set semantics."""

import asyncio

from orchestrator_core.errors import AlreadyExistsError, ConflictError, NotFoundError
from orchestrator_core.store.base import apply_cluster, apply_group
from orchestrator_core.types import ClusterRecord, GroupRecord, InstanceRecord


class MemoryStateStore:
    """
    Dict-backed DesiredStateStore.

    Records are immutable pydantic models, so handing them out never lets a
    caller mutate stored state behind the store's back.

    Example:
        store = MemoryStateStore()
        await store.put_cluster(ClusterRecord(name="basic"))
        clusters = await store.list_clusters()
    """

    def __init__(self) -> None:
        self._clusters: dict[str, ClusterRecord] = {}
        self._groups: dict[str, GroupRecord] = {}
        self._instances: dict[str, InstanceRecord] = {}
        self._lock = asyncio.Lock()

    # Clusters

    async def get_cluster(self, name: str) -> ClusterRecord | None:
        return self._clusters.get(name)

    async def list_clusters(self) -> list[ClusterRecord]:
        return sorted(self._clusters.values(), key=lambda c: c.name)

    async def put_cluster(self, record: ClusterRecord) -> ClusterRecord:
        async with self._lock:
            existing = self._clusters.get(record.key)
            merged = apply_cluster(existing, record)
            if merged is None:
                return existing
            self._clusters[record.key] = merged
            return merged

    async def update_cluster_status(self, record: ClusterRecord) -> ClusterRecord:
        async with self._lock:
            current = self._clusters.get(record.key)
            if current is None:
                raise NotFoundError(record.key)
            self._check(record.key, record.resource_version, current.resource_version)
            saved = current.model_copy(
                update={
                    "status": record.status,
                    "resource_version": current.resource_version + 1,
                }
            )
            self._clusters[record.key] = saved
            return saved

    # Groups

    async def get_group(self, cluster: str, name: str) -> GroupRecord | None:
        return self._groups.get(f"{cluster}/{name}")

    async def list_groups(self, cluster: str | None = None) -> list[GroupRecord]:
        groups = [
            g for g in self._groups.values() if cluster is None or g.cluster == cluster
        ]
        return sorted(groups, key=lambda g: g.key)

    async def put_group(self, record: GroupRecord) -> GroupRecord:
        async with self._lock:
            existing = self._groups.get(record.key)
            merged = apply_group(existing, record)
            if merged is None:
                return existing
            self._groups[record.key] = merged
            return merged

    async def update_group_status(self, record: GroupRecord) -> GroupRecord:
        async with self._lock:
            current = self._groups.get(record.key)
            if current is None:
                raise NotFoundError(record.key)
            self._check(record.key, record.resource_version, current.resource_version)
            saved = current.model_copy(
                update={
                    "status": record.status,
                    "resource_version": current.resource_version + 1,
                }
            )
            self._groups[record.key] = saved
            return saved

    # Instances

    async def list_instances(self, cluster: str, group: str) -> list[InstanceRecord]:
        instances = [
            i
            for i in self._instances.values()
            if i.cluster == cluster and i.group == group
        ]
        return sorted(instances, key=lambda i: i.index)

    async def create_instance(self, record: InstanceRecord) -> InstanceRecord:
        async with self._lock:
            if record.key in self._instances:
                raise AlreadyExistsError(record.key)
            saved = record.model_copy(update={"resource_version": 1})
            self._instances[record.key] = saved
            return saved

    async def update_instance(self, record: InstanceRecord) -> InstanceRecord:
        async with self._lock:
            current = self._instances.get(record.key)
            self._check(
                record.key,
                record.resource_version,
                current.resource_version if current else None,
            )
            saved = record.model_copy(
                update={"resource_version": record.resource_version + 1}
            )
            self._instances[record.key] = saved
            return saved

    async def delete_instance(self, record: InstanceRecord) -> None:
        async with self._lock:
            current = self._instances.get(record.key)
            self._check(
                record.key,
                record.resource_version,
                current.resource_version if current else None,
            )
            del self._instances[record.key]

    @staticmethod
    def _check(key: str, expected: int, actual: int | None) -> None:
        if actual is None or actual != expected:
            raise ConflictError(key, expected, actual)
