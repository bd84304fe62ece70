"""
Exception classes for the orchestration core.

The taxonomy follows how each failure is handled:

- TransientError (and subclasses): a collaborator could not be reached.
  Retried with backoff; recorded state is never regressed.
- ConflictError: a compare-and-set write lost against a concurrent writer.
  The reconciliation restarts from fresh reads.
- NoTransferTargetError: no healthy peer can take leadership. Callers turn
  this into a "wait" outcome and do not proceed (fail closed).
- NotFoundError: a record that should exist does not.

Guards that are not yet satisfied are not errors at all; they are
StepResult.wait outcomes (see orchestrator_core.pipeline).

Per project patterns:
- Inherit from Exception for base exception type
- Store context data in attributes for error handling
- Include descriptive message with relevant details
"""


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class TransientError(OrchestratorError):
    """
    Raised when a collaborator is temporarily unreachable.

    Attributes:
        operation: Name of the collaborator call that failed
    """

    def __init__(self, operation: str, detail: str = "") -> None:
        self.operation = operation
        self.detail = detail
        message = f"{operation} failed transiently"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class RuntimeUnavailableError(TransientError):
    """Raised when the workload runtime cannot be reached."""


class ConsensusUnavailableError(TransientError):
    """Raised when the consensus (PD) API cannot be reached."""


class ConflictError(OrchestratorError):
    """
    Raised when a compare-and-set write is rejected.

    The writer held a stale resource_version; another reconciliation
    updated the record first.

    Attributes:
        key: Record key that conflicted
        expected: resource_version the writer read
        actual: resource_version found in the store (None if deleted)
    """

    def __init__(self, key: str, expected: int, actual: int | None) -> None:
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Stale write to {key}: expected resource_version {expected}, "
            f"found {actual if actual is not None else 'no record'}. "
            f"Re-read and retry."
        )


class AlreadyExistsError(OrchestratorError):
    """Raised when creating a record whose key is already taken."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Record {key} already exists")


class NotFoundError(OrchestratorError):
    """Raised when a record that should exist is missing."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Record {key} not found")


class NoTransferTargetError(OrchestratorError):
    """
    Raised when leadership cannot be handed to any peer.

    Attributes:
        instance: Name of the instance holding leadership
    """

    def __init__(self, instance: str) -> None:
        self.instance = instance
        super().__init__(
            f"No healthy non-leader peer can take leadership from {instance}"
        )
