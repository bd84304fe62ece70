"""
Generic types exchanged with the orchestrator's collaborators.

This module defines the data structures that cross the boundary between the
orchestration core and the subsystems it drives:

- Member: a coordinator member or store as reported by the consensus service
- InstanceSpec: what the workload runtime should run for one stable index
- InstanceObservation: what the workload runtime currently sees for an index

All types use @dataclass for simplicity. They carry no behaviour beyond
small convenience properties.
"""

from dataclasses import dataclass, field


MemberId = str
"""Identifier assigned by the consensus service (member ID or store ID)."""


@dataclass
class Member:
    """
    A participant in the consensus cluster.

    Used for both coordinator members (Raft peers of the metadata service)
    and stores (data-holding nodes registered with the metadata service).

    Attributes:
        id: Identifier assigned by the consensus service.
        name: Member name. For coordinators this equals the instance name;
            stores usually have no name and are matched by address.
        address: Advertised address ("host:port" or URL).
        healthy: Whether the consensus service considers it live.
        is_leader: True for the coordinator leader. Always False for stores.
        leader_count: Number of shard leaders hosted (stores only).
        state: Consensus-level state. Stores use "Up", "Offline", "Down",
            "Tombstone"; coordinators use "Up" or "Down".
    """

    id: MemberId
    address: str
    healthy: bool
    name: str = ""
    is_leader: bool = False
    leader_count: int = 0
    state: str = "Up"

    @property
    def is_tombstone(self) -> bool:
        """True once the consensus service has finished removing the member."""
        return self.state == "Tombstone"


@dataclass
class InstanceSpec:
    """
    Everything the workload runtime needs to run one instance.

    Attributes:
        name: Stable instance name, e.g. "basic-pd-0".
        cluster: Owning cluster name.
        group: Owning group name.
        role: "coordinator" or "store".
        index: Stable index within the group.
        image: Container image reference.
        version: Version the image is expected to report.
        config: Configuration file contents (TOML).
        config_hash: Hash of ``config``.
        revision: Template revision hash the instance was rendered from.
        hot_reload: If True a config-only change may be applied in place.
        cpu: Optional CPU limit (e.g. "2").
        memory: Optional memory limit (e.g. "4Gi").
        peers: Addresses the instance should use to join the cluster.
    """

    name: str
    cluster: str
    group: str
    role: str
    index: int
    image: str
    version: str
    config: str = ""
    config_hash: str = ""
    revision: str = ""
    hot_reload: bool = False
    cpu: str | None = None
    memory: str | None = None
    peers: list[str] = field(default_factory=list)


@dataclass
class InstanceObservation:
    """
    Runtime-level view of one instance.

    Attributes:
        name: Instance name the observation belongs to.
        exists: Whether the runtime has an instance under this name.
        running: Whether its process is running.
        ready: Whether the runtime readiness signal is passing.
        version_observed: Version reported by the running instance.
        config_hash_observed: Hash of the configuration it runs with.
        revision_observed: Template revision it was started from.
        address: Address peers and the consensus service see it under.
        restart_count: Restarts since creation.
        crash_looping: True when the runtime sees repeated failed restarts.
    """

    name: str
    exists: bool = False
    running: bool = False
    ready: bool = False
    version_observed: str = ""
    config_hash_observed: str = ""
    revision_observed: str = ""
    address: str = ""
    restart_count: int = 0
    crash_looping: bool = False

    @classmethod
    def missing(cls, name: str) -> "InstanceObservation":
        """Observation for an instance the runtime does not know about."""
        return cls(name=name)
