"""
Orchestrator Core Library

Control-loop orchestration for coordinator (PD) and store (TiKV) groups.
This package provides:

- Records: ClusterRecord, GroupRecord, InstanceRecord and their specs
- Diff engine: create/remove plans from desired vs observed indices
- Instance lifecycle: guarded per-instance state machine
- Leadership coordinator: quorum checks, leader transfer, leader eviction
- Rolling upgrade sequencer: one disruptive change at a time
- Status aggregator: group and cluster conditions
- Reconcilers, desired-state stores, the control loop and the CLI
"""

__version__ = "0.1.0"

from orchestrator_core.diff import DiffPlan, compute_diff
from orchestrator_core.errors import (
    AlreadyExistsError,
    ConflictError,
    ConsensusUnavailableError,
    NoTransferTargetError,
    NotFoundError,
    OrchestratorError,
    RuntimeUnavailableError,
    TransientError,
)
from orchestrator_core.lifecycle import InstanceContext, InstanceLifecycle, Intent
from orchestrator_core.quorum import LeadershipCoordinator, QuorumCheck, quorum_size
from orchestrator_core.reconciler import (
    ClusterReconciler,
    GroupReconciler,
    ReconcileResult,
)
from orchestrator_core.types import (
    ClusterRecord,
    ClusterSpec,
    Condition,
    DesiredSpec,
    GroupPolicy,
    GroupRecord,
    GroupSpec,
    InstanceRecord,
    LifecycleState,
    Role,
    UpdateStrategy,
)
from orchestrator_core.upgrade import RollingUpgradeSequencer, UpgradePlan

__all__ = [
    "__version__",
    # Records
    "ClusterRecord",
    "ClusterSpec",
    "Condition",
    "DesiredSpec",
    "GroupPolicy",
    "GroupRecord",
    "GroupSpec",
    "InstanceRecord",
    "LifecycleState",
    "Role",
    "UpdateStrategy",
    # Engine
    "DiffPlan",
    "compute_diff",
    "InstanceContext",
    "InstanceLifecycle",
    "Intent",
    "LeadershipCoordinator",
    "QuorumCheck",
    "quorum_size",
    "RollingUpgradeSequencer",
    "UpgradePlan",
    "ClusterReconciler",
    "GroupReconciler",
    "ReconcileResult",
    # Errors
    "OrchestratorError",
    "TransientError",
    "RuntimeUnavailableError",
    "ConsensusUnavailableError",
    "ConflictError",
    "AlreadyExistsError",
    "NotFoundError",
    "NoTransferTargetError",
]
