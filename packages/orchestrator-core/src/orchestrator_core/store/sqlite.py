"""
SQLite-backed desired-state store.

Per project patterns:
- Use async context manager for connection lifecycle
- Compare-and-set is one conditional UPDATE/DELETE; rowcount 0 means the
  writer's resource_version was stale
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

import aiosqlite

from orchestrator_core.errors import AlreadyExistsError, ConflictError, NotFoundError
from orchestrator_core.store.base import apply_cluster, apply_group
from orchestrator_core.store.schema import SCHEMA_SQL
from orchestrator_core.types import ClusterRecord, GroupRecord, InstanceRecord

logger = logging.getLogger(__name__)


class SqliteStateStore:
    """
    Async context manager implementing DesiredStateStore on SQLite.

    Example:
        async with SqliteStateStore(Path("orchestrator.db")) as store:
            await store.put_group(group)
            instances = await store.list_instances("basic", "pd")
    """

    def __init__(self, db_path: Path) -> None:
        """
        Initialize the store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "SqliteStateStore":
        """Open database connection and ensure schema exists."""
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def _fetchone(self, sql: str, params: tuple) -> aiosqlite.Row | None:
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        async with self._conn.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    async def _write(self, sql: str, params: tuple) -> int:
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return cursor.rowcount

    # -------------------------------------------------------------------------
    # Clusters
    # -------------------------------------------------------------------------

    async def get_cluster(self, name: str) -> ClusterRecord | None:
        row = await self._fetchone("SELECT body FROM clusters WHERE name = ?", (name,))
        return ClusterRecord.model_validate_json(row["body"]) if row else None

    async def list_clusters(self) -> list[ClusterRecord]:
        rows = await self._fetchall("SELECT body FROM clusters ORDER BY name")
        return [ClusterRecord.model_validate_json(r["body"]) for r in rows]

    async def put_cluster(self, record: ClusterRecord) -> ClusterRecord:
        async with self._lock:
            existing = await self.get_cluster(record.name)
            merged = apply_cluster(existing, record)
            if merged is None:
                return existing
            await self._write(
                """
                INSERT INTO clusters (name, resource_version, body) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    resource_version = excluded.resource_version,
                    body = excluded.body,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (merged.name, merged.resource_version, merged.model_dump_json()),
            )
            logger.info("Applied cluster %s (generation %d)", merged.name, merged.generation)
            return merged

    async def update_cluster_status(self, record: ClusterRecord) -> ClusterRecord:
        async with self._lock:
            current = await self.get_cluster(record.name)
            if current is None:
                raise NotFoundError(record.key)
            if current.resource_version != record.resource_version:
                raise ConflictError(record.key, record.resource_version, current.resource_version)
            saved = current.model_copy(
                update={
                    "status": record.status,
                    "resource_version": current.resource_version + 1,
                }
            )
            rows = await self._write(
                """
                UPDATE clusters SET resource_version = ?, body = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE name = ? AND resource_version = ?
                """,
                (saved.resource_version, saved.model_dump_json(), saved.name, record.resource_version),
            )
            if rows == 0:
                raise ConflictError(record.key, record.resource_version, None)
            return saved

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    async def get_group(self, cluster: str, name: str) -> GroupRecord | None:
        row = await self._fetchone(
            "SELECT body FROM instance_groups WHERE cluster = ? AND name = ?", (cluster, name)
        )
        return GroupRecord.model_validate_json(row["body"]) if row else None

    async def list_groups(self, cluster: str | None = None) -> list[GroupRecord]:
        if cluster is None:
            rows = await self._fetchall("SELECT body FROM instance_groups ORDER BY cluster, name")
        else:
            rows = await self._fetchall(
                "SELECT body FROM instance_groups WHERE cluster = ? ORDER BY name", (cluster,)
            )
        return [GroupRecord.model_validate_json(r["body"]) for r in rows]

    async def put_group(self, record: GroupRecord) -> GroupRecord:
        async with self._lock:
            existing = await self.get_group(record.cluster, record.name)
            merged = apply_group(existing, record)
            if merged is None:
                return existing
            await self._write(
                """
                INSERT INTO instance_groups (cluster, name, resource_version, body) VALUES (?, ?, ?, ?)
                ON CONFLICT(cluster, name) DO UPDATE SET
                    resource_version = excluded.resource_version,
                    body = excluded.body,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (merged.cluster, merged.name, merged.resource_version, merged.model_dump_json()),
            )
            logger.info("Applied group %s (generation %d)", merged.key, merged.generation)
            return merged

    async def update_group_status(self, record: GroupRecord) -> GroupRecord:
        async with self._lock:
            current = await self.get_group(record.cluster, record.name)
            if current is None:
                raise NotFoundError(record.key)
            if current.resource_version != record.resource_version:
                raise ConflictError(record.key, record.resource_version, current.resource_version)
            saved = current.model_copy(
                update={
                    "status": record.status,
                    "resource_version": current.resource_version + 1,
                }
            )
            rows = await self._write(
                """
                UPDATE instance_groups SET resource_version = ?, body = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE cluster = ? AND name = ? AND resource_version = ?
                """,
                (
                    saved.resource_version,
                    saved.model_dump_json(),
                    saved.cluster,
                    saved.name,
                    record.resource_version,
                ),
            )
            if rows == 0:
                raise ConflictError(record.key, record.resource_version, None)
            return saved

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    async def list_instances(self, cluster: str, group: str) -> list[InstanceRecord]:
        rows = await self._fetchall(
            "SELECT body FROM instances WHERE cluster = ? AND grp = ? ORDER BY idx",
            (cluster, group),
        )
        return [InstanceRecord.model_validate_json(r["body"]) for r in rows]

    async def create_instance(self, record: InstanceRecord) -> InstanceRecord:
        saved = record.model_copy(update={"resource_version": 1})
        try:
            await self._write(
                """
                INSERT INTO instances (cluster, grp, idx, resource_version, state, body)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    saved.cluster,
                    saved.group,
                    saved.index,
                    saved.resource_version,
                    saved.state.value,
                    saved.model_dump_json(),
                ),
            )
        except aiosqlite.IntegrityError as e:
            raise AlreadyExistsError(record.key) from e
        return saved

    async def update_instance(self, record: InstanceRecord) -> InstanceRecord:
        saved = record.model_copy(update={"resource_version": record.resource_version + 1})
        rows = await self._write(
            """
            UPDATE instances SET resource_version = ?, state = ?, body = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE cluster = ? AND grp = ? AND idx = ? AND resource_version = ?
            """,
            (
                saved.resource_version,
                saved.state.value,
                saved.model_dump_json(),
                record.cluster,
                record.group,
                record.index,
                record.resource_version,
            ),
        )
        if rows == 0:
            raise ConflictError(
                record.key, record.resource_version, await self._instance_version(record)
            )
        return saved

    async def delete_instance(self, record: InstanceRecord) -> None:
        rows = await self._write(
            """
            DELETE FROM instances
            WHERE cluster = ? AND grp = ? AND idx = ? AND resource_version = ?
            """,
            (record.cluster, record.group, record.index, record.resource_version),
        )
        if rows == 0:
            raise ConflictError(
                record.key, record.resource_version, await self._instance_version(record)
            )

    async def _instance_version(self, record: InstanceRecord) -> int | None:
        row = await self._fetchone(
            "SELECT resource_version FROM instances WHERE cluster = ? AND grp = ? AND idx = ?",
            (record.cluster, record.group, record.index),
        )
        return row["resource_version"] if row else None
