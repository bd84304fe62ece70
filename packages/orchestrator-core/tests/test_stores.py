"""Tests for the desired-state stores.

Both MemoryStateStore and SqliteStateStore run the same compare-and-set
contract tests; SQLite-only tests cover persistence across connections.
"""

from pathlib import Path

import pytest
import pytest_asyncio

from orchestrator_core.errors import AlreadyExistsError, ConflictError, NotFoundError
from orchestrator_core.store import (
    DesiredStateStore,
    MemoryStateStore,
    SqliteStateStore,
)
from orchestrator_core.types import (
    ClusterRecord,
    ClusterSpec,
    GroupStatus,
    InstanceRecord,
    InstanceTemplate,
    LifecycleState,
    Role,
)


def pd_instance(index: int = 0) -> InstanceRecord:
    return InstanceRecord(
        cluster="basic",
        group="pd",
        index=index,
        role=Role.COORDINATOR,
        template=InstanceTemplate(version="v8.5.0"),
        revision="r1",
    )


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def any_store(request, tmp_path):
    if request.param == "memory":
        yield MemoryStateStore()
    else:
        async with SqliteStateStore(tmp_path / "state.db") as store:
            yield store


class TestStoreContract:
    @pytest.mark.asyncio
    async def test_implements_protocol(self, any_store):
        assert isinstance(any_store, DesiredStateStore)

    @pytest.mark.asyncio
    async def test_empty_store(self, any_store):
        """Fresh stores return nothing rather than raising."""
        assert await any_store.list_clusters() == []
        assert await any_store.get_cluster("basic") is None
        assert await any_store.get_group("basic", "pd") is None
        assert await any_store.list_instances("basic", "pd") == []

    @pytest.mark.asyncio
    async def test_apply_bumps_generation_only_on_change(self, any_store, make_group):
        group = make_group()

        first = await any_store.put_group(group)
        same = await any_store.put_group(group)
        edited = await any_store.put_group(make_group(replicas=5))

        assert first.generation == 1
        assert same.generation == 1
        assert edited.generation == 2
        assert edited.spec.desired.replicas == 5

    @pytest.mark.asyncio
    async def test_apply_preserves_status(self, any_store, make_group):
        saved = await any_store.put_group(make_group())
        await any_store.update_group_status(
            saved.model_copy(update={"status": GroupStatus(replicas=3)})
        )

        edited = await any_store.put_group(make_group(replicas=4))

        assert edited.status.replicas == 3

    @pytest.mark.asyncio
    async def test_apply_cannot_change_role(self, any_store, make_group):
        await any_store.put_group(make_group())

        with pytest.raises(ValueError, match="role cannot change"):
            await any_store.put_group(make_group(role=Role.STORE))

    @pytest.mark.asyncio
    async def test_list_groups_by_cluster(self, any_store, make_group):
        await any_store.put_group(make_group(name="pd"))
        await any_store.put_group(make_group(name="tikv", role=Role.STORE))
        await any_store.put_group(make_group(name="pd", cluster="other"))

        names = [g.name for g in await any_store.list_groups("basic")]
        everything = await any_store.list_groups()

        assert names == ["pd", "tikv"]
        assert len(everything) == 3

    @pytest.mark.asyncio
    async def test_stale_status_write_conflicts(self, any_store, make_group):
        saved = await any_store.put_group(make_group())
        await any_store.update_group_status(
            saved.model_copy(update={"status": GroupStatus(replicas=1)})
        )

        with pytest.raises(ConflictError):
            await any_store.update_group_status(
                saved.model_copy(update={"status": GroupStatus(replicas=2)})
            )

    @pytest.mark.asyncio
    async def test_status_write_to_missing_group(self, any_store, make_group):
        with pytest.raises(NotFoundError):
            await any_store.update_group_status(make_group())

    @pytest.mark.asyncio
    async def test_cluster_status_round_trip(self, any_store):
        saved = await any_store.put_cluster(ClusterRecord(name="basic"))
        paused = await any_store.put_cluster(
            ClusterRecord(name="basic", spec=ClusterSpec(paused=True))
        )

        assert saved.generation == 1
        assert paused.generation == 2
        assert (await any_store.get_cluster("basic")).spec.paused is True

    @pytest.mark.asyncio
    async def test_instance_create_update_delete(self, any_store):
        created = await any_store.create_instance(pd_instance())
        updated = await any_store.update_instance(
            created.model_copy(update={"state": LifecycleState.JOINING})
        )
        assert created.resource_version == 1
        assert updated.resource_version == 2

        await any_store.delete_instance(updated)

        assert await any_store.list_instances("basic", "pd") == []

    @pytest.mark.asyncio
    async def test_instances_listed_by_index(self, any_store):
        for index in (2, 0, 1):
            await any_store.create_instance(pd_instance(index))

        indices = [i.index for i in await any_store.list_instances("basic", "pd")]

        assert indices == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_duplicate_index_rejected(self, any_store):
        await any_store.create_instance(pd_instance())

        with pytest.raises(AlreadyExistsError):
            await any_store.create_instance(pd_instance())

    @pytest.mark.asyncio
    async def test_stale_instance_update_conflicts(self, any_store):
        """A writer holding an old resource_version must not overwrite."""
        created = await any_store.create_instance(pd_instance())
        await any_store.update_instance(created.model_copy(update={"ready": True}))

        with pytest.raises(ConflictError) as exc_info:
            await any_store.update_instance(created.model_copy(update={"ready": False}))

        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 2

    @pytest.mark.asyncio
    async def test_stale_delete_conflicts(self, any_store):
        created = await any_store.create_instance(pd_instance())
        await any_store.update_instance(created)

        with pytest.raises(ConflictError):
            await any_store.delete_instance(created)

    @pytest.mark.asyncio
    async def test_update_of_deleted_instance_conflicts(self, any_store):
        created = await any_store.create_instance(pd_instance())
        await any_store.delete_instance(created)

        with pytest.raises(ConflictError) as exc_info:
            await any_store.update_instance(created)

        assert exc_info.value.actual is None


class TestSqlitePersistence:
    @pytest.mark.asyncio
    async def test_records_survive_reconnect(self, tmp_path: Path, make_group):
        """Records written by one connection are read back by the next."""
        db_path = tmp_path / "state.db"
        async with SqliteStateStore(db_path) as store:
            await store.put_cluster(ClusterRecord(name="basic"))
            await store.put_group(make_group())
            created = await store.create_instance(pd_instance())
            await store.update_instance(
                created.model_copy(update={"evicting": True, "transfer_target": "pd-pd-1"})
            )

        async with SqliteStateStore(db_path) as store:
            group = await store.get_group("basic", "pd")
            instances = await store.list_instances("basic", "pd")

        assert group.spec.desired.replicas == 3
        assert instances[0].evicting is True
        assert instances[0].transfer_target == "pd-pd-1"
        assert instances[0].resource_version == 2

    @pytest.mark.asyncio
    async def test_schema_init_is_idempotent(self, tmp_path: Path):
        db_path = tmp_path / "state.db"
        async with SqliteStateStore(db_path):
            pass
        async with SqliteStateStore(db_path) as store:
            assert await store.list_clusters() == []
