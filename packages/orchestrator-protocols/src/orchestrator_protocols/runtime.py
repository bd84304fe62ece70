"""
Workload runtime protocol.

The WorkloadRuntime creates, deletes and observes running instances. It owns
network identity and storage; the orchestrator only relies on "stable
identity per name, readiness is observable".
"""

from typing import Protocol, runtime_checkable

from orchestrator_protocols.types import InstanceObservation, InstanceSpec


@runtime_checkable
class WorkloadRuntime(Protocol):
    """
    Protocol for the subsystem that runs instances.

    Implementations must be idempotent: calling ensure_instance_running
    twice with the same spec leaves one instance running, and deleting a
    missing instance succeeds.

    Implementations raise orchestrator_core.errors.RuntimeUnavailableError
    (or any TransientError) when the runtime cannot be reached.
    """

    async def ensure_instance_running(
        self, spec: InstanceSpec
    ) -> InstanceObservation:
        """
        Make sure an instance matching ``spec`` is running.

        If an instance exists with a different revision it is replaced
        (restart-required change), unless ``spec.hot_reload`` is set and
        only the configuration differs, in which case the new config is
        applied in place.

        Args:
            spec: Desired instance spec.

        Returns:
            Observation taken after the call.
        """
        ...

    async def delete_instance(self, name: str) -> None:
        """
        Delete an instance and release its runtime resources.

        Args:
            name: Instance name. Missing instances are ignored.
        """
        ...

    async def observe_instance(self, name: str) -> InstanceObservation:
        """
        Observe one instance without changing it.

        Args:
            name: Instance name.

        Returns:
            InstanceObservation. ``exists`` is False if unknown.
        """
        ...
