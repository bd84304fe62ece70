"""Tests for the desired-state CLI commands."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from orchestrator_core.cli.backend_factory import create_backend, get_available_backends
from orchestrator_core.cli.main import app

runner = CliRunner()

MANIFEST = """
cluster: basic
groups:
  - {name: pd, role: coordinator, replicas: 3, version: v8.5.0}
  - {name: tikv, role: store, replicas: 3, version: v8.5.0}
"""


@pytest.fixture
def db(tmp_path: Path) -> str:
    return str(tmp_path / "state.db")


@pytest.fixture
def manifest(tmp_path: Path) -> Path:
    path = tmp_path / "basic.yaml"
    path.write_text(MANIFEST)
    return path


def invoke(*args: str):
    return runner.invoke(app, list(args))


class TestApply:
    def test_creates_cluster_and_groups(self, db, manifest):
        result = invoke("apply", str(manifest), "--db", db)

        assert result.exit_code == 0, result.output
        assert "basic created" in result.output
        assert "basic/pd created" in result.output
        assert "basic/tikv created" in result.output

    def test_reapply_is_unchanged(self, db, manifest):
        invoke("apply", str(manifest), "--db", db)

        result = invoke("apply", str(manifest), "--db", db)

        assert result.exit_code == 0
        assert "basic/pd unchanged" in result.output

    def test_edit_bumps_generation(self, db, manifest):
        invoke("apply", str(manifest), "--db", db)
        manifest.write_text(MANIFEST.replace("pd, role: coordinator, replicas: 3", "pd, role: coordinator, replicas: 5"))

        result = invoke("apply", str(manifest), "--db", db)

        assert "basic/pd configured (generation 2)" in result.output
        assert "basic/tikv unchanged" in result.output

    def test_role_change_rejected(self, db, manifest, tmp_path):
        invoke("apply", str(manifest), "--db", db)
        changed = tmp_path / "changed.yaml"
        changed.write_text(MANIFEST.replace("role: store", "role: coordinator"))

        result = invoke("apply", str(changed), "--db", db)

        assert result.exit_code == 1
        assert "role cannot change" in result.output

    def test_invalid_manifest(self, db, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("cluster: basic\ngroups:\n  - {name: pd, role: sql, replicas: 1, version: x}\n")

        result = invoke("apply", str(bad), "--db", db)

        assert result.exit_code == 1
        assert "Invalid manifest" in result.output


class TestStatus:
    def test_empty(self, db):
        result = invoke("status", "--db", db)

        assert result.exit_code == 0
        assert "No clusters found" in result.output

    def test_json(self, db, manifest):
        invoke("apply", str(manifest), "--db", db)

        result = invoke("status", "--json", "--db", db)

        data = json.loads(result.output)
        assert [c["name"] for c in data] == ["basic"]
        assert [g["name"] for g in data[0]["groups"]] == ["pd", "tikv"]
        assert data[0]["groups"][0]["instances"] == []

    def test_tables(self, db, manifest):
        invoke("apply", str(manifest), "--db", db)

        result = invoke("status", "basic", "--db", db)

        assert result.exit_code == 0
        assert "Groups in basic" in result.output
        assert "tikv" in result.output

    def test_filter_by_cluster(self, db, manifest):
        invoke("apply", str(manifest), "--db", db)

        result = invoke("status", "other", "--json", "--db", db)

        assert json.loads(result.output) == []


class TestPause:
    def test_pause_and_resume(self, db, manifest):
        invoke("apply", str(manifest), "--db", db)

        paused = invoke("pause", "basic", "--db", db)
        again = invoke("pause", "basic", "--db", db)
        resumed = invoke("resume", "basic", "--db", db)

        assert "Cluster basic paused" in paused.output
        assert "already paused" in again.output
        assert "Cluster basic resumed" in resumed.output

    def test_unknown_cluster(self, db):
        result = invoke("pause", "missing", "--db", db)

        assert result.exit_code == 1
        assert "not found" in result.output


class TestBackendFactory:
    def test_available_backends(self):
        assert get_available_backends() == ["tikv"]

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            create_backend("etcd")
