"""Docker workload runtime for PD and TiKV instances.

Implements the WorkloadRuntime protocol with python-on-whales. Each stable
index is one container named after the instance ("basic-pd-0"), attached to
a shared network so the name doubles as its DNS name.

Per instance the runtime keeps a host directory:

    <data_dir>/<name>/config.toml   configuration mounted into the container
    <data_dir>/<name>/applied.json  revision and config hash last applied
    <data_dir>/<name>/data/         component data directory

A container is replaced when the requested revision differs from the one it
was started with. A hot-reload spec is pushed to the running process through
its online-config endpoint (PD: /pd/api/v1/config, TiKV: /config on the
status port); config.toml and applied.json are rewritten only once the
process accepted it, so the observed config hash is the one it runs with.
The container keeps running.

All Docker calls are blocking and run in the default executor.
"""

import asyncio
import json
import logging
import shutil
from pathlib import Path

import httpx
import toml
from python_on_whales import docker
from python_on_whales.exceptions import DockerException, NoSuchContainer

from orchestrator_core.errors import RuntimeUnavailableError
from orchestrator_protocols import InstanceObservation, InstanceSpec

logger = logging.getLogger(__name__)

LABEL_PREFIX = "orchestrator.tikv.io"
LABEL_CLUSTER = f"{LABEL_PREFIX}/cluster"
LABEL_GROUP = f"{LABEL_PREFIX}/group"
LABEL_INDEX = f"{LABEL_PREFIX}/index"
LABEL_ROLE = f"{LABEL_PREFIX}/role"
LABEL_REVISION = f"{LABEL_PREFIX}/revision"
LABEL_VERSION = f"{LABEL_PREFIX}/version"
LABEL_CONFIG_HASH = f"{LABEL_PREFIX}/config-hash"

PD_CLIENT_PORT = 2379
PD_PEER_PORT = 2380
TIKV_PORT = 20160
TIKV_STATUS_PORT = 20180

# Restarts after which a container counts as crash looping
CRASH_LOOP_RESTARTS = 3

_MEMORY_UNITS = {"Ki": "k", "Mi": "m", "Gi": "g", "Ti": "t"}


def docker_memory(quantity: str) -> str:
    """Convert a "4Gi"-style quantity to Docker's "4g" form."""
    for suffix, unit in _MEMORY_UNITS.items():
        if quantity.endswith(suffix):
            return f"{quantity[: -len(suffix)]}{unit}"
    return quantity


def flatten_config(config: str) -> dict:
    """
    Flatten a TOML config into the dotted keys online-config endpoints take.

    A "grpc-concurrency = 8" line under "[server]" becomes
    {"server.grpc-concurrency": 8}.
    """
    items = {}

    def walk(table: dict, prefix: str) -> None:
        for key, value in table.items():
            if isinstance(value, dict):
                walk(value, f"{prefix}{key}.")
            else:
                items[f"{prefix}{key}"] = value

    walk(toml.loads(config), "")
    return items


def online_config_url(spec: InstanceSpec) -> str:
    """Endpoint that applies config changes to the running process."""
    if spec.role == "coordinator":
        return f"http://{spec.name}:{PD_CLIENT_PORT}/pd/api/v1/config"
    return f"http://{spec.name}:{TIKV_STATUS_PORT}/config"


def pd_command(spec: InstanceSpec) -> list[str]:
    """
    pd-server command line for ``spec``.

    Index 0 bootstraps a new cluster when it has no running peers; every
    other instance joins through its running peers, or through index 0.
    """
    name = spec.name
    command = [
        "/pd-server",
        f"--name={name}",
        "--data-dir=/data",
        f"--client-urls=http://0.0.0.0:{PD_CLIENT_PORT}",
        f"--advertise-client-urls=http://{name}:{PD_CLIENT_PORT}",
        f"--peer-urls=http://0.0.0.0:{PD_PEER_PORT}",
        f"--advertise-peer-urls=http://{name}:{PD_PEER_PORT}",
        "--config=/etc/pd/pd.toml",
    ]
    if not spec.peers and spec.index == 0:
        command.append(f"--initial-cluster={name}=http://{name}:{PD_PEER_PORT}")
    else:
        peers = spec.peers or [f"{spec.group}-pd-0"]
        join = ",".join(f"http://{p}:{PD_CLIENT_PORT}" for p in peers)
        command.append(f"--join={join}")
    return command


def tikv_command(spec: InstanceSpec, pd_address: str) -> list[str]:
    """tikv-server command line for ``spec``."""
    name = spec.name
    return [
        "/tikv-server",
        f"--addr=0.0.0.0:{TIKV_PORT}",
        f"--advertise-addr={name}:{TIKV_PORT}",
        f"--status-addr=0.0.0.0:{TIKV_STATUS_PORT}",
        f"--advertise-status-addr={name}:{TIKV_STATUS_PORT}",
        "--data-dir=/data",
        f"--pd={pd_address}",
        "--config=/etc/tikv/tikv.toml",
    ]


class DockerRuntime:
    """
    WorkloadRuntime backed by local Docker containers.

    Example:
        runtime = DockerRuntime(
            network="orchestrator",
            pd_address="basic-pd-0:2379",
            data_dir=Path("~/.orchestrator/data").expanduser(),
        )
        observation = await runtime.ensure_instance_running(spec)
    """

    def __init__(
        self,
        network: str,
        pd_address: str,
        data_dir: Path,
        http: httpx.Client | None = None,
    ) -> None:
        """
        Initialize the runtime.

        Args:
            network: Docker network every instance joins
            pd_address: PD client address stores register with
            data_dir: Host directory for per-instance config and data
            http: Client for online-config pushes. If None, a new client
                is created.
        """
        self.network = network
        self.pd_address = pd_address.split("://", 1)[-1]
        self.data_dir = data_dir
        self.http = http or httpx.Client(timeout=10.0)
        self._docker = docker

    # -------------------------------------------------------------------------
    # WorkloadRuntime
    # -------------------------------------------------------------------------

    async def ensure_instance_running(self, spec: InstanceSpec) -> InstanceObservation:
        """
        Make the container for ``spec`` run the requested revision.

        Idempotent: a container already on ``spec.revision`` is left alone
        (and started if stopped).

        Raises:
            RuntimeUnavailableError: If Docker cannot be reached
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._blocking_ensure, spec)

    async def delete_instance(self, name: str) -> None:
        """
        Remove the container and its host directory. Safe to repeat.

        Raises:
            RuntimeUnavailableError: If Docker cannot be reached
        """
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._blocking_delete, name)

    async def observe_instance(self, name: str) -> InstanceObservation:
        """
        Read the container state without changing anything.

        Raises:
            RuntimeUnavailableError: If Docker cannot be reached
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._blocking_observe, name)

    # -------------------------------------------------------------------------
    # Blocking helpers
    # -------------------------------------------------------------------------

    def _instance_dir(self, name: str) -> Path:
        return self.data_dir / name

    def _read_applied(self, name: str) -> dict:
        path = self._instance_dir(name) / "applied.json"
        if not path.exists():
            return {}
        return json.loads(path.read_text())

    def _write_config(self, spec: InstanceSpec) -> None:
        directory = self._instance_dir(spec.name)
        (directory / "data").mkdir(parents=True, exist_ok=True)
        (directory / "config.toml").write_text(spec.config)
        (directory / "applied.json").write_text(
            json.dumps({"revision": spec.revision, "config_hash": spec.config_hash})
        )

    def _blocking_ensure(self, spec: InstanceSpec) -> InstanceObservation:
        try:
            try:
                container = self._docker.container.inspect(spec.name)
            except NoSuchContainer:
                container = None

            if container is not None:
                labels = container.config.labels or {}
                same_image = container.config.image == spec.image
                if labels.get(LABEL_REVISION) == spec.revision:
                    if not container.state.running:
                        self._docker.container.start(spec.name)
                    return self._blocking_observe(spec.name)
                if spec.hot_reload and same_image:
                    if self._read_applied(spec.name).get("revision") != spec.revision:
                        if self._push_config(spec):
                            self._write_config(spec)
                            logger.info("Hot reloaded config for %s", spec.name)
                    return self._blocking_observe(spec.name)

                logger.info(
                    "Replacing %s: revision %s -> %s",
                    spec.name,
                    labels.get(LABEL_REVISION),
                    spec.revision,
                )
                self._docker.container.remove(spec.name, force=True)

            self._ensure_network()
            self._write_config(spec)
            self._run(spec)
            return self._blocking_observe(spec.name)
        except DockerException as e:
            raise RuntimeUnavailableError(f"ensure {spec.name}", str(e)) from e

    def _push_config(self, spec: InstanceSpec) -> bool:
        """
        Apply ``spec.config`` to the running process.

        Returns False when the process rejects the change; the next pass
        pushes it again.

        Raises:
            RuntimeUnavailableError: If the process cannot be reached
        """
        try:
            items = flatten_config(spec.config)
        except toml.TomlDecodeError as e:
            logger.warning("Config for %s is not valid TOML: %s", spec.name, e)
            return False
        if not items:
            return True

        url = online_config_url(spec)
        try:
            response = self.http.post(url, json=items)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "%s rejected config change: %s %s",
                spec.name,
                e.response.status_code,
                e.response.text,
            )
            return False
        except httpx.HTTPError as e:
            raise RuntimeUnavailableError(
                f"push config to {spec.name}", str(e)
            ) from e
        return True

    def _ensure_network(self) -> None:
        if not self._docker.network.exists(self.network):
            self._docker.network.create(self.network)

    def _run(self, spec: InstanceSpec) -> None:
        directory = self._instance_dir(spec.name)
        if spec.role == "coordinator":
            command = pd_command(spec)
            config_path = "/etc/pd/pd.toml"
        else:
            command = tikv_command(spec, self.pd_address)
            config_path = "/etc/tikv/tikv.toml"

        self._docker.run(
            spec.image,
            command,
            name=spec.name,
            hostname=spec.name,
            detach=True,
            networks=[self.network],
            restart="on-failure",
            cpus=float(spec.cpu) if spec.cpu else None,
            memory=docker_memory(spec.memory) if spec.memory else None,
            volumes=[
                (str(directory / "config.toml"), config_path, "ro"),
                (str(directory / "data"), "/data"),
            ],
            labels={
                LABEL_CLUSTER: spec.cluster,
                LABEL_GROUP: spec.group,
                LABEL_INDEX: str(spec.index),
                LABEL_ROLE: spec.role,
                LABEL_REVISION: spec.revision,
                LABEL_VERSION: spec.version,
                LABEL_CONFIG_HASH: spec.config_hash,
            },
        )
        logger.info("Started %s (%s)", spec.name, spec.image)

    def _blocking_observe(self, name: str) -> InstanceObservation:
        try:
            container = self._docker.container.inspect(name)
        except NoSuchContainer:
            return InstanceObservation.missing(name)
        except DockerException as e:
            raise RuntimeUnavailableError(f"observe {name}", str(e)) from e

        labels = container.config.labels or {}
        applied = self._read_applied(name)
        state = container.state
        health = getattr(state, "health", None)
        healthy = health is None or health.status in (None, "healthy")
        restart_count = container.restart_count or 0
        port = PD_CLIENT_PORT if labels.get(LABEL_ROLE) == "coordinator" else TIKV_PORT

        return InstanceObservation(
            name=name,
            exists=True,
            running=bool(state.running),
            ready=bool(state.running) and not state.restarting and healthy,
            version_observed=labels.get(LABEL_VERSION, ""),
            config_hash_observed=applied.get(
                "config_hash", labels.get(LABEL_CONFIG_HASH, "")
            ),
            revision_observed=applied.get("revision", labels.get(LABEL_REVISION, "")),
            address=f"{name}:{port}",
            restart_count=restart_count,
            crash_looping=restart_count >= CRASH_LOOP_RESTARTS
            and (bool(state.restarting) or not state.running),
        )

    def _blocking_delete(self, name: str) -> None:
        try:
            self._docker.container.remove(name, force=True, volumes=True)
            logger.info("Removed container %s", name)
        except NoSuchContainer:
            logger.debug("Container %s already gone", name)
        except DockerException as e:
            raise RuntimeUnavailableError(f"delete {name}", str(e)) from e
        shutil.rmtree(self._instance_dir(name), ignore_errors=True)
