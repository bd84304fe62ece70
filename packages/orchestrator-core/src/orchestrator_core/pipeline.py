"""
Step pipeline for lifecycle transitions.

A pipeline is an explicit ordered list of named steps. Each step looks at an
immutable snapshot of one instance and returns a StepResult:

- advance: the step produced a new record; the runner persists it with
  compare-and-set and may run the next applicable step
- wait: a guard is not satisfied yet; stop and re-check later
- fail: the step cannot make progress until someone intervenes; stop and
  surface the reason

Steps never sleep or block on other instances. The runner picks the first
step whose predicate matches the current snapshot, so steps are
independently testable and the control flow stays flat.
"""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from orchestrator_core.types import InstanceRecord

C = TypeVar("C")


class Outcome(str, Enum):
    """Result kinds a step can return."""

    ADVANCE = "advance"
    WAIT = "wait"
    FAIL = "fail"


@dataclass(frozen=True)
class StepResult:
    """
    What a step decided.

    Attributes:
        outcome: advance, wait or fail
        record: New record to persist (advance only)
        deleted: True when the step removed the record for good
        reason: Machine-readable reason (wait/fail)
        message: Human-readable detail
        requeue_after: Suggested delay before the next check, seconds
    """

    outcome: Outcome
    record: InstanceRecord | None = None
    deleted: bool = False
    reason: str = ""
    message: str = ""
    requeue_after: float | None = None

    @classmethod
    def advance(cls, record: InstanceRecord, reason: str = "") -> "StepResult":
        return cls(Outcome.ADVANCE, record=record, reason=reason)

    @classmethod
    def removed(cls) -> "StepResult":
        return cls(Outcome.ADVANCE, deleted=True, reason="Removed")

    @classmethod
    def wait(
        cls,
        reason: str,
        message: str = "",
        requeue_after: float | None = None,
        record: InstanceRecord | None = None,
    ) -> "StepResult":
        """A guard is not satisfied. ``record`` may carry bookkeeping to save."""
        return cls(
            Outcome.WAIT,
            record=record,
            reason=reason,
            message=message,
            requeue_after=requeue_after,
        )

    @classmethod
    def fail(cls, reason: str, message: str = "") -> "StepResult":
        return cls(Outcome.FAIL, reason=reason, message=message)


@dataclass(frozen=True)
class Step(Generic[C]):
    """
    A named transition function.

    Attributes:
        name: Stable name used in logs and tests
        applies: Predicate over the context snapshot
        run: Coroutine producing the StepResult
    """

    name: str
    applies: Callable[[C], bool]
    run: Callable[[C], Awaitable[StepResult]]


def select_step(steps: Sequence[Step[C]], ctx: C) -> Step[C] | None:
    """Return the first step whose predicate matches ``ctx``."""
    for step in steps:
        if step.applies(ctx):
            return step
    return None
