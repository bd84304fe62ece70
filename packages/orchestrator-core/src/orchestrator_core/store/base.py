"""
Desired-state store interface.

The store holds three record kinds: clusters, groups and instances. Every
write is a compare-and-set against the ``resource_version`` the writer
read; a stale write raises ConflictError instead of overwriting. The only
exception is apply (``put_cluster`` / ``put_group``), which is the operator
editing desired state: last write wins, and ``generation`` is bumped only
when the desired state actually changed.
"""

from typing import Protocol, runtime_checkable

from orchestrator_core.types import ClusterRecord, GroupRecord, InstanceRecord


@runtime_checkable
class DesiredStateStore(Protocol):
    """
    Persistence used by reconcilers, the control loop and the CLI.

    Implementations:
        MemoryStateStore: in-process, for tests and one-shot runs
        SqliteStateStore: aiosqlite-backed, survives restarts
    """

    async def get_cluster(self, name: str) -> ClusterRecord | None:
        ...

    async def list_clusters(self) -> list[ClusterRecord]:
        ...

    async def put_cluster(self, record: ClusterRecord) -> ClusterRecord:
        """Create or edit a cluster's spec. Status is preserved."""
        ...

    async def update_cluster_status(self, record: ClusterRecord) -> ClusterRecord:
        """Write ``record.status`` if ``record.resource_version`` is current."""
        ...

    async def get_group(self, cluster: str, name: str) -> GroupRecord | None:
        ...

    async def list_groups(self, cluster: str | None = None) -> list[GroupRecord]:
        ...

    async def put_group(self, record: GroupRecord) -> GroupRecord:
        """Create or edit a group's spec. Status is preserved."""
        ...

    async def update_group_status(self, record: GroupRecord) -> GroupRecord:
        """Write ``record.status`` if ``record.resource_version`` is current."""
        ...

    async def list_instances(self, cluster: str, group: str) -> list[InstanceRecord]:
        """Instance records of a group, ascending by index."""
        ...

    async def create_instance(self, record: InstanceRecord) -> InstanceRecord:
        """Insert a new record. Raises AlreadyExistsError if the index is taken."""
        ...

    async def update_instance(self, record: InstanceRecord) -> InstanceRecord:
        """Compare-and-set write. Raises ConflictError on a stale record."""
        ...

    async def delete_instance(self, record: InstanceRecord) -> None:
        """Compare-and-set delete. Raises ConflictError on a stale record."""
        ...


def apply_cluster(
    existing: ClusterRecord | None, incoming: ClusterRecord
) -> ClusterRecord | None:
    """
    Merge an applied cluster into the stored one.

    Returns:
        The record to store, or None when nothing changed
    """
    if existing is None:
        return incoming.model_copy(update={"generation": 1, "resource_version": 1})
    if existing.spec == incoming.spec:
        return None
    return existing.model_copy(
        update={
            "spec": incoming.spec,
            "generation": existing.generation + 1,
            "resource_version": existing.resource_version + 1,
        }
    )


def apply_group(
    existing: GroupRecord | None, incoming: GroupRecord
) -> GroupRecord | None:
    """
    Merge an applied group into the stored one.

    Returns:
        The record to store, or None when nothing changed

    Raises:
        ValueError: If the apply would change the group's role
    """
    if existing is None:
        return incoming.model_copy(update={"generation": 1, "resource_version": 1})
    if existing.spec.role is not incoming.spec.role:
        raise ValueError(
            f"Group {existing.key} is a {existing.spec.role.value} group; "
            f"role cannot change to {incoming.spec.role.value}"
        )
    if existing.spec == incoming.spec:
        return None
    return existing.model_copy(
        update={
            "spec": incoming.spec,
            "generation": existing.generation + 1,
            "resource_version": existing.resource_version + 1,
        }
    )
