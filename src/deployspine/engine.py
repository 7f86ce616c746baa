"""Container engine interface for deploy-spine.

The orchestrator never reimplements container runtime behaviour; it calls
an engine through the small ``ContainerEngine`` protocol below. Each call
is an opaque, possibly slow remote operation that either succeeds or
raises ``EngineError`` carrying the engine's diagnostic text.

``DockerEngine`` implements the protocol over the ``docker`` CLI via
subprocess. No ``docker-py`` dependency: the CLI works the same against
Docker Desktop, Podman's docker shim, Colima and CI runners.

Key Concepts:
    ContainerEngine: build / login / push, network and volume
        create-if-absent primitives, service start / stop / status,
        health status, exec and logs.
    ServiceLaunch: everything ``start_service`` needs, already resolved
        (container name, image, networks, env, mounts, labels).
    ContainerStatus: what the engine reports about an existing container,
        including the ``deployspine.config-hash`` label used for drift
        detection.
    EngineError.transient: set for registry/network hiccups so callers
        (the pusher) know a retry can help.

Architecture Decisions:
    - subprocess, not docker-py: avoids a heavy dependency and version pins.
    - Label-based tracking: every container carries ``deployspine.*``
      labels so status checks and teardown can find it.
    - Cancellation-aware execution: the child process is polled and killed
      as soon as the run's ``CancellationToken`` fires.
    - Secrets are bind-mounted read-only, never passed as ``--env``.

Tags:
    container, docker, engine, subprocess, protocol, lifecycle
"""

from __future__ import annotations

import json
import re
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from deployspine.cancellation import CancellationToken
from deployspine.core.errors import EngineError, OperationCancelled
from deployspine.core.logging import get_logger

logger = get_logger(__name__)

LABEL_PREFIX = "deployspine"
CONFIG_HASH_LABEL = f"{LABEL_PREFIX}.config-hash"

_TRANSIENT_PATTERNS = re.compile(
    r"timeout|timed out|connection reset|connection refused|tls handshake|"
    r"temporary failure|unexpected eof|too many requests|\b429\b|\b50[234]\b|"
    r"no such host|network is unreachable",
    re.IGNORECASE,
)


def is_transient_failure(detail: str) -> bool:
    """Heuristic: does engine output describe a retryable network failure?"""
    return bool(_TRANSIENT_PATTERNS.search(detail or ""))


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegistryCredentials:
    """Registry login. The password never appears in ``repr``."""

    username: str
    password: str = field(repr=False)
    registry: str | None = None


@dataclass(frozen=True)
class ServiceLaunch:
    """Fully resolved request to run one service container."""

    container_name: str
    image: str
    networks: tuple[str, ...] = ()
    environment: dict[str, str] = field(default_factory=dict, hash=False)
    volumes: dict[str, str] = field(default_factory=dict, hash=False)
    """Named volume -> mount path."""

    secret_mounts: tuple[tuple[str, str], ...] = ()
    """(host source path, container mount path) pairs, mounted read-only."""

    ports: tuple[str, ...] = ()
    command: tuple[str, ...] | None = None
    aliases: tuple[str, ...] = ()
    """DNS names the container answers to on every attached network."""

    labels: dict[str, str] = field(default_factory=dict, hash=False)


@dataclass
class ContainerStatus:
    """Engine view of an existing container."""

    name: str
    state: str = "not_found"
    """running, exited, created, restarting, paused, dead or not_found."""

    container_id: str | None = None
    config_hash: str | None = None
    health: str | None = None

    @property
    def exists(self) -> bool:
        return self.state != "not_found"

    @property
    def running(self) -> bool:
        return self.state == "running"


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ContainerEngine(Protocol):
    """Capabilities the orchestrator needs from a container engine."""

    def build(self, context: Path, tag: str, dockerfile: str | None = None) -> str:
        """Build ``context`` tagged ``tag``; returns the image id."""
        ...

    def login(self, credentials: RegistryCredentials) -> None: ...

    def push(self, tag: str) -> None: ...

    def network_exists(self, name: str) -> bool: ...

    def create_network(self, name: str) -> None: ...

    def volume_exists(self, name: str) -> bool: ...

    def create_volume(self, name: str) -> None: ...

    def service_status(self, container_name: str) -> ContainerStatus: ...

    def start_service(self, launch: ServiceLaunch) -> str:
        """Run the container; returns its id once the engine acknowledges it."""
        ...

    def stop_service(self, container_name: str) -> None: ...

    def health_status(self, container_name: str, timeout: float | None = None) -> str:
        """``healthy``/``unhealthy``/``starting``, or the plain state if no HEALTHCHECK.

        ``timeout`` bounds the engine call; exceeding it raises ``EngineError``.
        """
        ...

    def exec(
        self, container_name: str, command: tuple[str, ...], timeout: float | None = None
    ) -> int: ...

    def logs(self, container_name: str, tail: int = 200) -> str: ...


# ---------------------------------------------------------------------------
# Docker CLI implementation
# ---------------------------------------------------------------------------


class DockerEngine:
    """``ContainerEngine`` over the ``docker`` CLI.

    Parameters
    ----------
    cancel
        Run-level cancellation token; in-flight CLI calls are killed when
        it fires.
    command_timeout
        Default timeout for quick CLI calls (inspect, network, run).
    build_timeout
        Timeout for ``docker build`` and ``docker push``.

    Example::

        engine = DockerEngine()
        if not engine.network_exists("backend-net"):
            engine.create_network("backend-net")
    """

    def __init__(
        self,
        cancel: CancellationToken | None = None,
        command_timeout: int = 60,
        build_timeout: int = 3600,
    ) -> None:
        self.cancel = cancel or CancellationToken()
        self.command_timeout = command_timeout
        self.build_timeout = build_timeout
        self._docker_cmd = self._find_docker()

    # ------------------------------------------------------------------
    # Docker CLI discovery
    # ------------------------------------------------------------------

    @staticmethod
    def _find_docker() -> str:
        docker = shutil.which("docker")
        if docker is None:
            raise EngineError(
                "Docker CLI not found on PATH. Install Docker or add it to PATH.",
                detail="https://docs.docker.com/engine/install/",
            )
        return docker

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def build(self, context: Path, tag: str, dockerfile: str | None = None) -> str:
        cmd = ["build", "--tag", tag]
        if dockerfile:
            cmd.extend(["--file", str(Path(context) / dockerfile)])
        cmd.append(str(context))
        self._run_docker(cmd, timeout=self.build_timeout)
        logger.info("image.built", image=tag)
        result = self._run_docker(["image", "inspect", "--format", "{{.Id}}", tag], check=False)
        return result.stdout.strip() if result.returncode == 0 else ""

    def login(self, credentials: RegistryCredentials) -> None:
        cmd = ["login", "--username", credentials.username, "--password-stdin"]
        if credentials.registry:
            cmd.append(credentials.registry)
        self._run_docker(cmd, input_text=credentials.password)
        logger.info("registry.login", registry=credentials.registry or "docker.io")

    def push(self, tag: str) -> None:
        self._run_docker(["push", tag], timeout=self.build_timeout)
        logger.info("image.pushed", image=tag)

    # ------------------------------------------------------------------
    # Networks / volumes
    # ------------------------------------------------------------------

    def network_exists(self, name: str) -> bool:
        return self._run_docker(["network", "inspect", name], check=False).returncode == 0

    def create_network(self, name: str) -> None:
        result = self._run_docker(
            [
                "network", "create", "--driver", "bridge",
                "--label", f"{LABEL_PREFIX}.managed=true", name,
            ],
            check=False,
        )
        if result.returncode != 0 and "already exists" not in result.stderr:
            raise self._error(["network", "create", name], result)
        logger.info("network.created", network=name)

    def volume_exists(self, name: str) -> bool:
        return self._run_docker(["volume", "inspect", name], check=False).returncode == 0

    def create_volume(self, name: str) -> None:
        self._run_docker(["volume", "create", "--label", f"{LABEL_PREFIX}.managed=true", name])
        logger.info("volume.created", volume=name)

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def service_status(
        self, container_name: str, timeout: float | None = None
    ) -> ContainerStatus:
        result = self._run_docker(
            ["inspect", "--format", "{{json .}}", container_name], check=False, timeout=timeout
        )
        if result.returncode != 0 or not result.stdout.strip():
            return ContainerStatus(name=container_name)
        try:
            data = json.loads(result.stdout.strip().splitlines()[0])
        except json.JSONDecodeError:
            return ContainerStatus(name=container_name)
        state = data.get("State") or {}
        labels = (data.get("Config") or {}).get("Labels") or {}
        health = (state.get("Health") or {}).get("Status")
        return ContainerStatus(
            name=container_name,
            state=state.get("Status", "not_found"),
            container_id=(data.get("Id") or "")[:12] or None,
            config_hash=labels.get(CONFIG_HASH_LABEL),
            health=health,
        )

    def start_service(self, launch: ServiceLaunch) -> str:
        cmd = ["run", "--detach", "--name", launch.container_name, "--restart", "unless-stopped"]
        if launch.networks:
            cmd.extend(["--network", launch.networks[0]])
            for alias in launch.aliases:
                cmd.extend(["--network-alias", alias])
        for key, value in launch.labels.items():
            cmd.extend(["--label", f"{key}={value}"])
        for key, value in launch.environment.items():
            cmd.extend(["--env", f"{key}={value}"])
        for volume, mount_path in launch.volumes.items():
            cmd.extend(["--volume", f"{volume}:{mount_path}"])
        for source, target in launch.secret_mounts:
            cmd.extend(["--mount", f"type=bind,source={source},target={target},readonly"])
        for port in launch.ports:
            cmd.extend(["--publish", port])
        cmd.append(launch.image)
        if launch.command:
            cmd.extend(launch.command)

        result = self._run_docker(cmd)
        container_id = result.stdout.strip()[:12]

        try:
            for network in launch.networks[1:]:
                connect = ["network", "connect"]
                for alias in launch.aliases:
                    connect.extend(["--alias", alias])
                self._run_docker([*connect, network, launch.container_name])
        except (EngineError, OperationCancelled):
            # a labelled container missing a network must not look up to date
            self._run_docker(
                ["rm", "--force", launch.container_name], check=False, cancellable=False
            )
            logger.warning("container.removed_partial", container=launch.container_name)
            raise

        logger.info(
            "container.started",
            container=launch.container_name,
            image=launch.image,
            networks=list(launch.networks),
        )
        return container_id

    def stop_service(self, container_name: str) -> None:
        self._run_docker(["stop", "--time", "10", container_name], check=False)
        self._run_docker(["rm", "--force", container_name], check=False)
        logger.info("container.stopped", container=container_name)

    def health_status(self, container_name: str, timeout: float | None = None) -> str:
        status = self.service_status(container_name, timeout=timeout)
        return status.health or status.state

    def exec(
        self, container_name: str, command: tuple[str, ...], timeout: float | None = None
    ) -> int:
        result = self._run_docker(
            ["exec", container_name, *command], check=False, timeout=timeout
        )
        return result.returncode

    def logs(self, container_name: str, tail: int = 200) -> str:
        result = self._run_docker(
            ["logs", "--timestamps", "--tail", str(tail), container_name], check=False
        )
        return result.stdout + result.stderr

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _run_docker(
        self,
        args: list[str],
        check: bool = True,
        timeout: float | None = None,
        input_text: str | None = None,
        cancellable: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run a docker CLI command, killing it if the run is cancelled or times out.

        ``cancellable=False`` is for cleanup that must run after a cancel.
        """
        if cancellable:
            self.cancel.raise_if_cancelled()
        if timeout is None:
            timeout = self.command_timeout
        cmd = [self._docker_cmd, *args]
        logger.debug("docker.exec", cmd=" ".join(args[:3]))

        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        deadline = time.monotonic() + timeout
        pending_input = input_text
        while True:
            try:
                step = max(0.01, min(0.25, deadline - time.monotonic()))
                stdout, stderr = proc.communicate(input=pending_input, timeout=step)
                break
            except subprocess.TimeoutExpired:
                pending_input = None
                if cancellable and self.cancel.cancelled:
                    proc.kill()
                    proc.communicate()
                    raise OperationCancelled(
                        f"docker {' '.join(args[:2])} cancelled: {self.cancel.reason}"
                    ) from None
                if time.monotonic() >= deadline:
                    proc.kill()
                    proc.communicate()
                    raise EngineError(
                        f"Docker command timed out after {timeout:g}s: {' '.join(args[:3])}",
                        transient=True,
                    ) from None

        result = subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)
        if check and result.returncode != 0:
            raise self._error(args, result)
        return result

    @staticmethod
    def _error(args: list[str], result: subprocess.CompletedProcess[str]) -> EngineError:
        detail = (result.stderr or result.stdout or "").strip()
        return EngineError(
            f"Docker command failed (exit {result.returncode}): {' '.join(args[:3])}",
            detail=detail,
            transient=is_transient_failure(detail),
            exit_code=result.returncode,
        )


__all__ = [
    "CONFIG_HASH_LABEL",
    "LABEL_PREFIX",
    "ContainerEngine",
    "ContainerStatus",
    "DockerEngine",
    "RegistryCredentials",
    "ServiceLaunch",
    "is_transient_failure",
]
