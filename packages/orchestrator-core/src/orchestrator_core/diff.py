"""
Desired-state diff engine.

Compares the desired replica count with the observed set of stable indices
and produces an ordered action list:

- Create(index) for missing indices in 0..desired-1, lowest index first
- Remove(index) for indices >= desired, highest index first

A pass never mixes the two. While any index above the desired range still
exists, only removals are emitted, so a lower index is never re-created
while a higher peer is still waiting to be removed. Creates follow once
scale-in has finished.

The engine is a pure function: running it again on the same inputs gives
the same plan, and a converged set gives an empty plan.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from orchestrator_core.types import InstanceRecord


class ActionKind(str, Enum):
    """Kinds of diff actions."""

    CREATE = "create"
    REMOVE = "remove"


@dataclass(frozen=True)
class DiffAction:
    """One planned change to the instance set."""

    kind: ActionKind
    index: int

    def __str__(self) -> str:
        return f"{self.kind.value.capitalize()}({self.index})"


@dataclass(frozen=True)
class DiffPlan:
    """
    Result of a diff.

    Attributes:
        creates: Indices to create, ascending
        removes: Indices to remove, descending
    """

    creates: list[int] = field(default_factory=list)
    removes: list[int] = field(default_factory=list)

    @property
    def actions(self) -> list[DiffAction]:
        """All actions in execution order."""
        return [DiffAction(ActionKind.REMOVE, i) for i in self.removes] + [
            DiffAction(ActionKind.CREATE, i) for i in self.creates
        ]

    @property
    def empty(self) -> bool:
        return not self.creates and not self.removes


def _indices(observed: Iterable[InstanceRecord | int]) -> set[int]:
    indices: set[int] = set()
    for item in observed:
        index = item if isinstance(item, int) else item.index
        if index < 0:
            raise ValueError(f"Stable index must be >= 0, got {index}")
        indices.add(index)
    return indices


def compute_diff(
    desired_replicas: int, observed: Iterable[InstanceRecord | int]
) -> DiffPlan:
    """
    Plan creates and removes that bring ``observed`` to ``desired_replicas``.

    Args:
        desired_replicas: Desired instance count (>= 0)
        observed: Instance records or bare stable indices

    Returns:
        DiffPlan; empty when the observed set is exactly 0..desired-1

    Raises:
        ValueError: If desired_replicas or any index is negative

    Example:
        compute_diff(3, []).actions          # [Create(0), Create(1), Create(2)]
        compute_diff(1, [0, 1, 2]).actions   # [Remove(2), Remove(1)]
    """
    if desired_replicas < 0:
        raise ValueError(f"Desired replicas must be >= 0, got {desired_replicas}")

    indices = _indices(observed)
    removes = sorted((i for i in indices if i >= desired_replicas), reverse=True)
    if removes:
        return DiffPlan(removes=removes)

    creates = [i for i in range(desired_replicas) if i not in indices]
    return DiffPlan(creates=creates)
