"""Tests for settings and manifest parsing."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from orchestrator_core.config import OrchestratorSettings
from orchestrator_core.manifest import load_manifest, parse_manifest
from orchestrator_core.types import Role, UpdateStrategy

MANIFEST = """
cluster: basic
groups:
  - name: pd
    role: coordinator
    replicas: 3
    version: v8.5.0
  - name: tikv
    role: store
    replicas: 4
    version: v8.5.0
    update_strategy: HotReload
    resources:
      cpu: "2"
      memory: 4Gi
    config: |
      [server]
      grpc-concurrency = 8
    policy:
      evict_leader_timeout_s: 900
"""


class TestSettings:
    def test_defaults(self):
        settings = OrchestratorSettings()

        assert settings.pd_endpoint == "http://localhost:2379"
        assert settings.policy_overrides() == {}

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("ORCHESTRATOR_PD_ENDPOINT", "http://basic-pd-0:2379")
        monkeypatch.setenv("ORCHESTRATOR_RESYNC_INTERVAL_S", "60")
        monkeypatch.setenv("ORCHESTRATOR_LEADER_TRANSFER_TIMEOUT_S", "120")

        settings = OrchestratorSettings()

        assert settings.pd_endpoint == "http://basic-pd-0:2379"
        assert settings.resync_interval_s == 60.0
        assert settings.policy_overrides() == {"leader_transfer_timeout_s": 120.0}

    def test_retry_config(self):
        settings = OrchestratorSettings(retry_max_attempts=5, retry_min_wait_s=1.0)

        config = settings.retry_config()

        assert config.max_attempts == 5
        assert config.min_wait_seconds == 1.0

    def test_declared_policy_wins_over_override(self):
        settings = OrchestratorSettings(evict_leader_timeout_s=100, stall_after_reconciles=10)

        policy = settings.build_policy({"evict_leader_timeout_s": 900})

        assert policy.evict_leader_timeout_s == 900
        assert policy.stall_after_reconciles == 10
        assert policy.leader_transfer_timeout_s == 300.0


class TestParseManifest:
    def test_parses_cluster_and_groups(self):
        cluster, groups = parse_manifest(MANIFEST, OrchestratorSettings())

        assert cluster.name == "basic"
        assert cluster.spec.paused is False
        assert [(g.name, g.role) for g in groups] == [
            ("pd", Role.COORDINATOR),
            ("tikv", Role.STORE),
        ]
        tikv = groups[1]
        assert tikv.cluster == "basic"
        assert tikv.spec.desired.replicas == 4
        assert tikv.spec.desired.update_strategy is UpdateStrategy.HOT_RELOAD
        assert tikv.spec.desired.resources.memory == "4Gi"
        assert "grpc-concurrency = 8" in tikv.spec.desired.config
        assert tikv.spec.policy.evict_leader_timeout_s == 900

    def test_settings_overrides_apply_to_undeclared_fields(self):
        settings = OrchestratorSettings(recheck_interval_s=1.0)

        _, groups = parse_manifest(MANIFEST, settings)

        assert all(g.spec.policy.recheck_interval_s == 1.0 for g in groups)

    def test_duplicate_group_names_rejected(self):
        text = """
cluster: basic
groups:
  - {name: pd, role: coordinator, replicas: 3, version: v8.5.0}
  - {name: pd, role: coordinator, replicas: 1, version: v8.5.0}
"""
        with pytest.raises(ValueError, match="Duplicate group names: pd"):
            parse_manifest(text, OrchestratorSettings())

    def test_negative_replicas_rejected(self):
        text = """
cluster: basic
groups:
  - {name: pd, role: coordinator, replicas: -1, version: v8.5.0}
"""
        with pytest.raises(ValidationError):
            parse_manifest(text, OrchestratorSettings())

    def test_unknown_role_rejected(self):
        text = """
cluster: basic
groups:
  - {name: tidb, role: sql, replicas: 1, version: v8.5.0}
"""
        with pytest.raises(ValidationError):
            parse_manifest(text, OrchestratorSettings())

    def test_non_mapping_rejected(self):
        with pytest.raises(ValueError, match="YAML mapping"):
            parse_manifest("- just a list", OrchestratorSettings())

    def test_load_from_file(self, tmp_path: Path):
        path = tmp_path / "basic.yaml"
        path.write_text(MANIFEST)

        cluster, groups = load_manifest(path, OrchestratorSettings())

        assert cluster.name == "basic"
        assert len(groups) == 2
