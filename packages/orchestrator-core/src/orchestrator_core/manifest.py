"""
YAML manifests for desired state.

A manifest declares one cluster and its groups:

    cluster: basic
    paused: false
    groups:
      - name: pd
        role: coordinator
        replicas: 3
        version: v8.5.0
      - name: tikv
        role: store
        replicas: 3
        version: v8.5.0
        update_strategy: HotReload
        config: |
          [server]
          grpc-concurrency = 8
        policy:
          evict_leader_timeout_s: 900
"""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from orchestrator_core.config import OrchestratorSettings
from orchestrator_core.types import (
    ClusterRecord,
    ClusterSpec,
    DesiredSpec,
    GroupRecord,
    GroupSpec,
    ResourceRequirements,
    Role,
    UpdateStrategy,
)


class GroupManifest(BaseModel):
    """One group as written in a manifest."""

    name: str
    role: Role
    replicas: int = Field(ge=0)
    version: str
    image: str | None = None
    config: str = ""
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    update_strategy: UpdateStrategy = UpdateStrategy.RESTART
    policy: dict = Field(default_factory=dict)


class ClusterManifest(BaseModel):
    """A cluster manifest."""

    cluster: str
    paused: bool = False
    groups: list[GroupManifest] = Field(default_factory=list)


def parse_manifest(
    text: str, settings: OrchestratorSettings | None = None
) -> tuple[ClusterRecord, list[GroupRecord]]:
    """
    Parse a YAML manifest into records ready to apply.

    Args:
        text: YAML document
        settings: Source of global policy overrides

    Returns:
        Tuple of (cluster, groups)

    Raises:
        ValueError: If the YAML is not a mapping or group names repeat
        pydantic.ValidationError: If a field is invalid
    """
    settings = settings or OrchestratorSettings()
    raw = yaml.safe_load(text)
    if not isinstance(raw, dict):
        raise ValueError("Manifest must be a YAML mapping")
    manifest = ClusterManifest.model_validate(raw)

    names = [g.name for g in manifest.groups]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"Duplicate group names: {', '.join(duplicates)}")

    cluster = ClusterRecord(
        name=manifest.cluster, spec=ClusterSpec(paused=manifest.paused)
    )
    groups = [
        GroupRecord(
            cluster=manifest.cluster,
            name=g.name,
            spec=GroupSpec(
                role=g.role,
                desired=DesiredSpec(
                    replicas=g.replicas,
                    version=g.version,
                    image=g.image,
                    config=g.config,
                    resources=g.resources,
                    update_strategy=g.update_strategy,
                ),
                policy=settings.build_policy(g.policy),
            ),
        )
        for g in manifest.groups
    ]
    return cluster, groups


def load_manifest(
    path: Path, settings: OrchestratorSettings | None = None
) -> tuple[ClusterRecord, list[GroupRecord]]:
    """Read and parse a manifest file."""
    return parse_manifest(path.read_text(), settings)
