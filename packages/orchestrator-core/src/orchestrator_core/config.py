"""Environment-based configuration for the orchestrator."""

from pathlib import Path

from pydantic_settings import BaseSettings

from orchestrator_core.retry import RetryConfig
from orchestrator_core.types import GroupPolicy

DEFAULT_DB_PATH = Path.home() / ".orchestrator" / "orchestrator.db"


class OrchestratorSettings(BaseSettings):
    """Orchestrator configuration.

    All settings can be overridden via environment variables with
    ORCHESTRATOR_ prefix. For example:
        ORCHESTRATOR_PD_ENDPOINT=http://basic-pd-0:2379
        ORCHESTRATOR_RESYNC_INTERVAL_S=60

    Policy fields set here apply to every group applied afterwards,
    unless the manifest declares the field itself.
    """

    # Collaborators
    pd_endpoint: str = "http://localhost:2379"
    http_timeout_s: float = 10.0
    network: str = "orchestrator"
    data_dir: Path = Path.home() / ".orchestrator" / "data"

    # Persistence
    db_path: Path = DEFAULT_DB_PATH

    # Control loop
    resync_interval_s: float = 30.0
    max_concurrent_reconciles: int = 8
    backoff_base_s: float = 1.0
    backoff_max_s: float = 300.0

    # Retry per collaborator call
    retry_max_attempts: int = 3
    retry_min_wait_s: float = 0.5
    retry_max_wait_s: float = 10.0

    # Global policy overrides
    leader_transfer_timeout_s: float | None = None
    evict_leader_timeout_s: float | None = None
    store_offline_timeout_s: float | None = None
    stall_after_reconciles: int | None = None
    recheck_interval_s: float | None = None

    model_config = {"env_prefix": "ORCHESTRATOR_"}

    def retry_config(self) -> RetryConfig:
        """Retry policy for collaborator calls."""
        return RetryConfig(
            max_attempts=self.retry_max_attempts,
            min_wait_seconds=self.retry_min_wait_s,
            max_wait_seconds=self.retry_max_wait_s,
        )

    def policy_overrides(self) -> dict[str, float | int]:
        """Policy fields set globally."""
        fields = (
            "leader_transfer_timeout_s",
            "evict_leader_timeout_s",
            "store_offline_timeout_s",
            "stall_after_reconciles",
            "recheck_interval_s",
        )
        return {
            name: getattr(self, name)
            for name in fields
            if getattr(self, name) is not None
        }

    def build_policy(self, declared: dict | None = None) -> GroupPolicy:
        """Group policy for a manifest: declared fields win over overrides."""
        return GroupPolicy.model_validate({**self.policy_overrides(), **(declared or {})})
