"""Tests for DockerRuntime container lifecycle."""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest
from python_on_whales.exceptions import DockerException, NoSuchContainer

from orchestrator_core.errors import RuntimeUnavailableError
from orchestrator_protocols import InstanceSpec
from orchestrator_tikv.docker_runtime import (
    LABEL_REVISION,
    LABEL_ROLE,
    LABEL_VERSION,
    DockerRuntime,
    docker_memory,
    flatten_config,
    pd_command,
    tikv_command,
)


def make_spec(name="basic-pd-1", role="coordinator", index=1, **kwargs) -> InstanceSpec:
    defaults = {
        "cluster": "basic",
        "group": "basic",
        "image": "pingcap/pd:v8.5.0",
        "version": "v8.5.0",
        "config": "[log]\nlevel = \"info\"\n",
        "config_hash": "c1",
        "revision": "r1",
    }
    defaults.update(kwargs)
    return InstanceSpec(name=name, role=role, index=index, **defaults)


def make_container(
    revision="r1",
    role="coordinator",
    running=True,
    restarting=False,
    restart_count=0,
    image="pingcap/pd:v8.5.0",
):
    container = MagicMock()
    container.config.image = image
    container.config.labels = {
        LABEL_REVISION: revision,
        LABEL_ROLE: role,
        LABEL_VERSION: "v8.5.0",
    }
    container.state.running = running
    container.state.restarting = restarting
    container.state.health = None
    container.restart_count = restart_count
    return container


def missing(name="basic-pd-1"):
    return NoSuchContainer(name, "container")


def config_client(status=200, error=None) -> tuple[httpx.Client, list[httpx.Request]]:
    """Client for online-config pushes that records what was sent."""
    sent: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        if error is not None:
            raise error
        return httpx.Response(status, text="" if status < 400 else "not online-changeable")

    return httpx.Client(transport=httpx.MockTransport(handler)), sent


class TestEnsureInstanceRunning:
    @pytest.mark.asyncio
    async def test_creates_missing_container(self, tmp_path):
        """A new instance gets its config written and a labelled container."""
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.side_effect = [missing(), make_container()]
            mock_docker.network.exists.return_value = True
            runtime = DockerRuntime("orchestrator", "http://basic-pd-0:2379", tmp_path)

            observation = await runtime.ensure_instance_running(make_spec())

            mock_docker.run.assert_called_once()
            kwargs = mock_docker.run.call_args.kwargs
            assert kwargs["name"] == "basic-pd-1"
            assert kwargs["networks"] == ["orchestrator"]
            assert kwargs["labels"][LABEL_REVISION] == "r1"
            assert kwargs["detach"] is True

        assert (tmp_path / "basic-pd-1" / "config.toml").read_text().startswith("[log]")
        applied = json.loads((tmp_path / "basic-pd-1" / "applied.json").read_text())
        assert applied == {"revision": "r1", "config_hash": "c1"}
        assert observation.exists and observation.ready
        assert observation.address == "basic-pd-1:2379"

    @pytest.mark.asyncio
    async def test_creates_network_when_missing(self, tmp_path):
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.side_effect = [missing(), make_container()]
            mock_docker.network.exists.return_value = False
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            await runtime.ensure_instance_running(make_spec())

            mock_docker.network.create.assert_called_once_with("orchestrator")

    @pytest.mark.asyncio
    async def test_same_revision_is_left_alone(self, tmp_path):
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.return_value = make_container()
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            await runtime.ensure_instance_running(make_spec())

            mock_docker.run.assert_not_called()
            mock_docker.container.start.assert_not_called()
            mock_docker.container.remove.assert_not_called()

    @pytest.mark.asyncio
    async def test_stopped_container_is_started(self, tmp_path):
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.return_value = make_container(running=False)
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            await runtime.ensure_instance_running(make_spec())

            mock_docker.container.start.assert_called_once_with("basic-pd-1")
            mock_docker.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_new_revision_replaces_container(self, tmp_path):
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.side_effect = [
                make_container(revision="r0"),
                make_container(revision="r1"),
            ]
            mock_docker.network.exists.return_value = True
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            await runtime.ensure_instance_running(
                make_spec(image="pingcap/pd:v8.5.1", version="v8.5.1")
            )

            mock_docker.container.remove.assert_called_once_with("basic-pd-1", force=True)
            assert mock_docker.run.call_args.args[0] == "pingcap/pd:v8.5.1"

    @pytest.mark.asyncio
    async def test_hot_reload_pushes_config_without_restart(self, tmp_path):
        """The running process gets the change before applied.json records it."""
        http, sent = config_client()
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.return_value = make_container(revision="r0")
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path, http=http)

            observation = await runtime.ensure_instance_running(
                make_spec(
                    revision="r2",
                    config_hash="c2",
                    config='[log]\nlevel = "warn"\n',
                    hot_reload=True,
                )
            )

            mock_docker.run.assert_not_called()
            mock_docker.container.remove.assert_not_called()
            mock_docker.container.restart.assert_not_called()

        assert len(sent) == 1
        assert str(sent[0].url) == "http://basic-pd-1:2379/pd/api/v1/config"
        assert json.loads(sent[0].content) == {"log.level": "warn"}
        assert "warn" in (tmp_path / "basic-pd-1" / "config.toml").read_text()
        assert observation.revision_observed == "r2"
        assert observation.config_hash_observed == "c2"

    @pytest.mark.asyncio
    async def test_store_hot_reload_uses_status_port(self, tmp_path):
        http, sent = config_client()
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.return_value = make_container(
                revision="r0", role="store", image="pingcap/tikv:v8.5.0"
            )
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path, http=http)

            await runtime.ensure_instance_running(
                make_spec(
                    name="basic-tikv-0",
                    role="store",
                    index=0,
                    image="pingcap/tikv:v8.5.0",
                    revision="r2",
                    config="[server]\ngrpc-concurrency = 8\n",
                    hot_reload=True,
                )
            )

        assert str(sent[0].url) == "http://basic-tikv-0:20180/config"
        assert json.loads(sent[0].content) == {"server.grpc-concurrency": 8}

    @pytest.mark.asyncio
    async def test_rejected_hot_reload_keeps_observed_config(self, tmp_path):
        """A change the process refused is not reported as applied."""
        http, _ = config_client(status=400)
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.return_value = make_container(revision="r0")
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path, http=http)

            observation = await runtime.ensure_instance_running(
                make_spec(revision="r2", config_hash="c2", hot_reload=True)
            )

        assert not (tmp_path / "basic-pd-1" / "applied.json").exists()
        assert observation.revision_observed == "r0"
        assert observation.config_hash_observed != "c2"

    @pytest.mark.asyncio
    async def test_unreachable_process_is_transient(self, tmp_path):
        http, _ = config_client(error=httpx.ConnectError("connection refused"))
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.return_value = make_container(revision="r0")
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path, http=http)

            with pytest.raises(RuntimeUnavailableError):
                await runtime.ensure_instance_running(
                    make_spec(revision="r2", config_hash="c2", hot_reload=True)
                )

        assert not (tmp_path / "basic-pd-1" / "applied.json").exists()

    @pytest.mark.asyncio
    async def test_hot_reload_with_new_image_restarts(self, tmp_path):
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.side_effect = [
                make_container(revision="r0", image="pingcap/pd:v8.5.0"),
                make_container(revision="r2"),
            ]
            mock_docker.network.exists.return_value = True
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            await runtime.ensure_instance_running(
                make_spec(revision="r2", image="pingcap/pd:v9.0.0", hot_reload=True)
            )

            mock_docker.run.assert_called_once()

    @pytest.mark.asyncio
    async def test_docker_failure_is_transient(self, tmp_path):
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.side_effect = DockerException(
                ["docker", "container", "inspect"], 1
            )
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            with pytest.raises(RuntimeUnavailableError):
                await runtime.ensure_instance_running(make_spec())


class TestObserveInstance:
    @pytest.mark.asyncio
    async def test_missing_container(self, tmp_path):
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.side_effect = missing()
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            observation = await runtime.observe_instance("basic-pd-1")

        assert observation.exists is False
        assert observation.ready is False

    @pytest.mark.asyncio
    async def test_store_address_uses_tikv_port(self, tmp_path):
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.return_value = make_container(role="store")
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            observation = await runtime.observe_instance("basic-tikv-0")

        assert observation.address == "basic-tikv-0:20160"
        assert observation.version_observed == "v8.5.0"
        assert observation.revision_observed == "r1"

    @pytest.mark.asyncio
    async def test_restarting_container_is_crash_looping(self, tmp_path):
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.return_value = make_container(
                running=True, restarting=True, restart_count=4
            )
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            observation = await runtime.observe_instance("basic-pd-1")

        assert observation.crash_looping is True
        assert observation.ready is False
        assert observation.restart_count == 4

    @pytest.mark.asyncio
    async def test_exited_after_restarts_is_crash_looping(self, tmp_path):
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.return_value = make_container(
                running=False, restart_count=3
            )
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            observation = await runtime.observe_instance("basic-pd-1")

        assert observation.crash_looping is True

    @pytest.mark.asyncio
    async def test_single_restart_is_not_crash_looping(self, tmp_path):
        """One on-failure restart is a recovery, not a loop."""
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.side_effect = [
                make_container(running=True, restarting=True, restart_count=1),
                make_container(running=False, restart_count=1),
            ]
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            restarting = await runtime.observe_instance("basic-pd-1")
            exited = await runtime.observe_instance("basic-pd-1")

        assert restarting.crash_looping is False
        assert restarting.ready is False
        assert exited.crash_looping is False

    @pytest.mark.asyncio
    async def test_unhealthy_container_is_not_ready(self, tmp_path):
        container = make_container()
        container.state.health = MagicMock(status="unhealthy")
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.inspect.return_value = container
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            observation = await runtime.observe_instance("basic-pd-1")

        assert observation.running is True
        assert observation.ready is False


class TestDeleteInstance:
    @pytest.mark.asyncio
    async def test_removes_container_and_directory(self, tmp_path):
        (tmp_path / "basic-pd-1" / "data").mkdir(parents=True)
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            await runtime.delete_instance("basic-pd-1")

            mock_docker.container.remove.assert_called_once_with(
                "basic-pd-1", force=True, volumes=True
            )
        assert not (tmp_path / "basic-pd-1").exists()

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, tmp_path):
        with patch("orchestrator_tikv.docker_runtime.docker") as mock_docker:
            mock_docker.container.remove.side_effect = missing()
            runtime = DockerRuntime("orchestrator", "basic-pd-0:2379", tmp_path)

            await runtime.delete_instance("basic-pd-1")
            await runtime.delete_instance("basic-pd-1")


class TestCommands:
    def test_docker_memory(self):
        assert docker_memory("4Gi") == "4g"
        assert docker_memory("512Mi") == "512m"
        assert docker_memory("1g") == "1g"

    def test_first_pd_bootstraps(self):
        command = pd_command(make_spec(name="basic-pd-0", index=0))

        assert "--initial-cluster=basic-pd-0=http://basic-pd-0:2380" in command
        assert not any(arg.startswith("--join") for arg in command)

    def test_later_pd_joins_through_peers(self):
        command = pd_command(make_spec(peers=["basic-pd-0", "basic-pd-2"]))

        assert "--join=http://basic-pd-0:2379,http://basic-pd-2:2379" in command

    def test_pd_without_peers_joins_index_zero(self):
        command = pd_command(make_spec())

        assert "--join=http://basic-pd-0:2379" in command

    def test_tikv_registers_with_pd(self):
        spec = make_spec(name="basic-tikv-0", role="store", index=0)

        command = tikv_command(spec, "basic-pd-0:2379")

        assert "--pd=basic-pd-0:2379" in command
        assert "--advertise-addr=basic-tikv-0:20160" in command

    def test_flatten_config_uses_dotted_keys(self):
        config = '[log]\nlevel = "warn"\n\n[raftstore.sync]\nenabled = true\n'

        assert flatten_config(config) == {
            "log.level": "warn",
            "raftstore.sync.enabled": True,
        }

    def test_empty_config_flattens_to_nothing(self):
        assert flatten_config("") == {}
