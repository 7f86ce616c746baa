"""
Shared pytest fixtures for deploy-spine tests.

This module provides:
- ``FakeEngine``: an in-memory ``ContainerEngine`` that records every call,
  so tests can assert ordering and idempotence without Docker
- Spec builders for the three-tier topology (database <- backend <- frontend)
- Secret fixtures rooted in ``tmp_path``

Usage:
    def test_something(fake_engine, three_tier, db_secret):
        driver = DeploymentDriver(fake_engine, ...)
"""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest
import structlog

from deployspine.core.errors import EngineError
from deployspine.engine import (
    CONFIG_HASH_LABEL,
    ContainerStatus,
    RegistryCredentials,
    ServiceLaunch,
)
from deployspine.models import (
    HealthCheckSpec,
    ImageSpec,
    NetworkRef,
    SecretEnv,
    SecretRef,
    ServiceSpec,
)


# =============================================================================
# Fake engine
# =============================================================================


class FakeEngine:
    """In-memory container engine.

    Knobs:
        fail_build / fail_start / fail_network: refs or names that raise
        push_errors: per-tag queue of errors raised by successive pushes
        health: container -> status returned by ``health_status``
        exec_codes: container -> exit code returned by ``exec``
        start_delay: seconds each ``start_service`` call takes
        check_delay: seconds each ``exec``/``health_status`` call takes; a
            call whose ``timeout`` is shorter raises ``EngineError`` at the
            timeout, as the Docker engine does
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.networks: set[str] = set()
        self.volumes: set[str] = set()
        self.containers: dict[str, dict] = {}
        self.events: list[tuple[str, str]] = []

        self.fail_build: set[str] = set()
        self.fail_start: set[str] = set()
        self.fail_network: set[str] = set()
        self.push_errors: dict[str, list[EngineError]] = {}
        self.login_error: EngineError | None = None
        self.health: dict[str, str] = {}
        self.exec_codes: dict[str, int] = {}
        self.start_delay = 0.0
        self.check_delay = 0.0
        self.check_timeouts: list[float | None] = []
        self._next_id = 0

    # -- helpers ---------------------------------------------------------

    def _record(self, op: str, target: str) -> None:
        with self.lock:
            self.events.append((op, target))

    def calls(self, op: str) -> list[str]:
        with self.lock:
            return [target for name, target in self.events if name == op]

    # -- images ----------------------------------------------------------

    def build(self, context: Path, tag: str, dockerfile: str | None = None) -> str:
        self._record("build", tag)
        if tag in self.fail_build:
            raise EngineError(f"build failed: {tag}", detail="COPY failed: no such file")
        return f"sha256:{tag.replace(':', '-')}"

    def login(self, credentials: RegistryCredentials) -> None:
        self._record("login", credentials.registry or "docker.io")
        if self.login_error is not None:
            raise self.login_error

    def push(self, tag: str) -> None:
        self._record("push", tag)
        with self.lock:
            queue = self.push_errors.get(tag)
            error = queue.pop(0) if queue else None
        if error is not None:
            raise error

    # -- networks / volumes ----------------------------------------------

    def network_exists(self, name: str) -> bool:
        return name in self.networks

    def create_network(self, name: str) -> None:
        self._record("create_network", name)
        if name in self.fail_network:
            raise EngineError(f"network create {name}", detail="permission denied")
        self.networks.add(name)

    def volume_exists(self, name: str) -> bool:
        return name in self.volumes

    def create_volume(self, name: str) -> None:
        self._record("create_volume", name)
        self.volumes.add(name)

    # -- services --------------------------------------------------------

    def service_status(
        self, container_name: str, timeout: float | None = None
    ) -> ContainerStatus:
        with self.lock:
            c = self.containers.get(container_name)
        if c is None:
            return ContainerStatus(name=container_name)
        return ContainerStatus(
            name=container_name,
            state=c["state"],
            container_id=c["id"],
            config_hash=c["launch"].labels.get(CONFIG_HASH_LABEL),
            health=self.health.get(container_name),
        )

    def start_service(self, launch: ServiceLaunch) -> str:
        if self.start_delay:
            time.sleep(self.start_delay)
        self._record("start", launch.container_name)
        if launch.container_name in self.fail_start:
            raise EngineError(f"run {launch.container_name}", detail="port is already allocated")
        with self.lock:
            self._next_id += 1
            container_id = f"c{self._next_id:04d}"
            self.containers[launch.container_name] = {
                "id": container_id,
                "state": "running",
                "launch": launch,
            }
        return container_id

    def stop_service(self, container_name: str) -> None:
        self._record("stop", container_name)
        with self.lock:
            self.containers.pop(container_name, None)

    def _slow_check(self, op: str, container_name: str, timeout: float | None) -> None:
        with self.lock:
            self.check_timeouts.append(timeout)
        if not self.check_delay:
            return
        if timeout is not None and timeout < self.check_delay:
            time.sleep(timeout)
            raise EngineError(f"{op} {container_name}", detail=f"timed out after {timeout:g}s")
        time.sleep(self.check_delay)

    def health_status(self, container_name: str, timeout: float | None = None) -> str:
        self._slow_check("inspect", container_name, timeout)
        if container_name in self.health:
            return self.health[container_name]
        with self.lock:
            c = self.containers.get(container_name)
        return c["state"] if c else "not_found"

    def exec(
        self, container_name: str, command: tuple[str, ...], timeout: float | None = None
    ) -> int:
        self._record("exec", container_name)
        self._slow_check("exec", container_name, timeout)
        return self.exec_codes.get(container_name, 0)

    def logs(self, container_name: str, tail: int = 200) -> str:
        return f"last {tail} lines of {container_name}\n"


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


# =============================================================================
# Topology fixtures
# =============================================================================


@pytest.fixture
def db_secret(tmp_path: Path) -> SecretRef:
    return SecretRef(
        name="db_password",
        source_path=tmp_path / "secrets" / "db_password.txt",
        mount_path="/run/secrets/db_password",
        value_env="DB_PASSWORD",
    )


def make_three_tier(interval: float = 0.01) -> list[ServiceSpec]:
    """database <- backend <- frontend, with the default networks and secret."""
    check = HealthCheckSpec(kind="container", interval=interval)
    database = ServiceSpec(
        name="database",
        image="postgres:16-alpine",
        networks=frozenset({NetworkRef("backend-net")}),
        environment={"POSTGRES_PASSWORD_FILE": SecretEnv("db_password")},
        volumes={"db-data": "/var/lib/postgresql/data"},
        health_check=check,
    )
    backend = ServiceSpec(
        name="backend",
        image=ImageSpec(name="acme/backend", build_context=Path("backend")),
        networks=frozenset({NetworkRef("frontend-net"), NetworkRef("backend-net")}),
        environment={"DB_HOST": "database", "DB_PASSWORD_FILE": SecretEnv("db_password")},
        depends_on=frozenset({"database"}),
        health_check=check,
    )
    frontend = ServiceSpec(
        name="frontend",
        image=ImageSpec(name="acme/frontend", build_context=Path("frontend")),
        networks=frozenset({NetworkRef("frontend-net")}),
        depends_on=frozenset({"backend"}),
        ports=("8080:80",),
        health_check=check,
    )
    return [database, backend, frontend]


@pytest.fixture
def three_tier() -> list[ServiceSpec]:
    return make_three_tier()


@pytest.fixture
def secret_values() -> dict[str, str]:
    return {"db_password": "correct-horse-battery-staple"}


@pytest.fixture(autouse=True)
def reset_structlog():
    """CLI tests configure structlog against a captured stream; undo it."""
    yield
    structlog.reset_defaults()
