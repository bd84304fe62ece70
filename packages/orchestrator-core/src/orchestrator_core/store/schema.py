"""
SQLite schema for desired-state persistence.

Records are stored as JSON bodies next to the columns needed for lookups
and compare-and-set:
- clusters keyed by name
- instance_groups keyed by (cluster, name)
- instances keyed by (cluster, group, idx)

``resource_version`` is duplicated out of the body so a conditional write
is a single ``UPDATE ... WHERE resource_version = ?``.
"""

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS clusters (
    name TEXT PRIMARY KEY,
    resource_version INTEGER NOT NULL,
    body TEXT NOT NULL,                    -- ClusterRecord JSON
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS instance_groups (
    cluster TEXT NOT NULL,
    name TEXT NOT NULL,
    resource_version INTEGER NOT NULL,
    body TEXT NOT NULL,                    -- GroupRecord JSON
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (cluster, name)
);

CREATE TABLE IF NOT EXISTS instances (
    cluster TEXT NOT NULL,
    grp TEXT NOT NULL,
    idx INTEGER NOT NULL,
    resource_version INTEGER NOT NULL,
    state TEXT NOT NULL,                   -- LifecycleState, for ad hoc queries
    body TEXT NOT NULL,                    -- InstanceRecord JSON
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (cluster, grp, idx)
);
"""
