"""Tests for the desired-state diff engine."""

import pytest

from orchestrator_core.diff import ActionKind, DiffAction, compute_diff
from orchestrator_core.types import InstanceRecord, InstanceTemplate, Role


def record(index: int) -> InstanceRecord:
    return InstanceRecord(
        cluster="basic",
        group="pd",
        index=index,
        role=Role.COORDINATOR,
        template=InstanceTemplate(version="v8.5.0"),
        revision="r",
    )


class TestComputeDiff:
    def test_scale_from_zero_creates_ascending(self):
        plan = compute_diff(3, [])

        assert plan.creates == [0, 1, 2]
        assert plan.removes == []
        assert [str(a) for a in plan.actions] == ["Create(0)", "Create(1)", "Create(2)"]

    def test_scale_in_removes_descending(self):
        plan = compute_diff(1, [0, 1, 2])

        assert plan.removes == [2, 1]
        assert plan.actions == [
            DiffAction(ActionKind.REMOVE, 2),
            DiffAction(ActionKind.REMOVE, 1),
        ]

    def test_converged_set_is_empty(self):
        plan = compute_diff(3, [record(0), record(1), record(2)])

        assert plan.empty
        assert plan.actions == []

    def test_fills_gaps(self):
        plan = compute_diff(4, [0, 2])

        assert plan.creates == [1, 3]

    def test_never_mixes_creates_and_removes(self):
        # Index 1 is missing while index 5 still has to go.
        plan = compute_diff(3, [0, 2, 5])

        assert plan.removes == [5]
        assert plan.creates == []

        follow_up = compute_diff(3, [0, 2])
        assert follow_up.creates == [1]

    def test_scale_to_zero(self):
        plan = compute_diff(0, [0, 1])

        assert plan.removes == [1, 0]

    def test_idempotent(self):
        observed = [record(0), record(3)]

        assert compute_diff(2, observed) == compute_diff(2, observed)

    def test_duplicate_indices_counted_once(self):
        plan = compute_diff(2, [0, 0, 1])

        assert plan.empty

    def test_negative_replicas_rejected(self):
        with pytest.raises(ValueError, match="Desired replicas"):
            compute_diff(-1, [])

    def test_negative_index_rejected(self):
        with pytest.raises(ValueError, match="Stable index"):
            compute_diff(1, [-1])
