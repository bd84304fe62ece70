"""
Desired-state persistence.

Exports:
    DesiredStateStore: Protocol every store implements
    MemoryStateStore: In-process store
    SqliteStateStore: aiosqlite-backed store
"""

from orchestrator_core.store.base import DesiredStateStore
from orchestrator_core.store.memory import MemoryStateStore
from orchestrator_core.store.sqlite import SqliteStateStore

__all__ = ["DesiredStateStore", "MemoryStateStore", "SqliteStateStore"]
