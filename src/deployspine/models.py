"""Declarative specifications for deploy-spine.

Immutable value types describing *what* to deploy: images to build,
services to run, the networks and volumes they attach to, and the
secrets they mount. All of them are frozen dataclasses: specs are read
from configuration once and never mutated afterwards, so the planner and
the driver can share them freely across worker threads.

Key Concepts:
    ImageSpec: ``name:tag`` built from a build context.
    ServiceSpec: one container in the topology, with its dependencies,
        networks, environment, volumes, secrets and optional health check.
    SecretRef: a sensitive value materialized as a file and mounted
        read-only into consumers.
    SecretEnv: an environment value that resolves to a secret's *mount
        path*, never to the secret value itself.
    HealthCheckSpec: readiness probe (HTTP, in-container command, or the
        engine's native container health).

Tags:
    models, specs, dataclasses, topology, secrets, health-check
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

# ---------------------------------------------------------------------------
# Networks / volumes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class NetworkRef:
    """A private network services attach to. Identity is the name."""

    name: str


@dataclass(frozen=True, order=True)
class VolumeRef:
    """A named volume. Identity is the name."""

    name: str


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageSpec:
    """An image to build from a local context and optionally publish."""

    name: str
    """Registry-qualified repository (e.g., ``docker.io/acme/backend``)."""

    tag: str = "latest"

    build_context: Path = Path(".")
    """Directory handed to the engine's build operation."""

    dockerfile: str | None = None
    """Dockerfile path relative to the build context (engine default if None)."""

    push: bool = True
    """Whether ``build_all(push=True)`` publishes this image."""

    @property
    def ref(self) -> str:
        return f"{self.name}:{self.tag}"


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SecretRef:
    """A secret materialized on disk and mounted read-only into services."""

    name: str
    source_path: Path
    """Host path the provisioner writes the value to."""

    mount_path: str
    """Path inside consuming containers."""

    value_env: str = ""
    """Environment variable the value is read from (defaults to NAME upper-cased)."""

    def __post_init__(self) -> None:
        if not self.value_env:
            object.__setattr__(self, "value_env", self.name.upper())


@dataclass(frozen=True)
class SecretEnv:
    """Environment value that resolves to the mount path of ``secret``."""

    secret: str


EnvValue = str | SecretEnv


# ---------------------------------------------------------------------------
# Health checks
# ---------------------------------------------------------------------------


HealthCheckKind = Literal["http", "command", "container"]


@dataclass(frozen=True)
class HealthCheckSpec:
    """Readiness probe polled by the health verifier.

    ``http``: GET ``target`` (a URL), success on any 2xx.
    ``command``: run ``command`` inside the container, success on exit 0.
    ``container``: engine-native health status ``healthy`` (or ``running``
    for images without a HEALTHCHECK).
    """

    kind: HealthCheckKind = "container"
    target: str = ""
    command: tuple[str, ...] = ()
    interval: float = 2.0
    """Seconds between polls."""

    timeout: float | None = None
    """Per-service timeout; falls back to the run's ``health_timeout``."""


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServiceSpec:
    """Specification for one service of the topology."""

    name: str
    """Unique within the deployment; also the container name suffix."""

    image: ImageSpec | str
    """Image to build, or a reference to a pre-built image."""

    networks: frozenset[NetworkRef] = frozenset()
    environment: dict[str, EnvValue] = field(default_factory=dict, hash=False)
    depends_on: frozenset[str] = frozenset()
    health_check: HealthCheckSpec | None = None
    volumes: dict[str, str] = field(default_factory=dict, hash=False)
    """Named volume -> mount path."""

    secrets: frozenset[str] = frozenset()
    """Secrets mounted explicitly, in addition to those referenced by SecretEnv."""

    ports: tuple[str, ...] = ()
    """Published ports in engine syntax (``"8080:80"``)."""

    command: tuple[str, ...] | None = None

    @property
    def image_ref(self) -> str:
        if isinstance(self.image, ImageSpec):
            return self.image.ref
        return self.image

    @property
    def built_image(self) -> ImageSpec | None:
        return self.image if isinstance(self.image, ImageSpec) else None

    def referenced_secrets(self) -> frozenset[str]:
        """Every secret this service mounts, explicit or via SecretEnv."""
        from_env = {v.secret for v in self.environment.values() if isinstance(v, SecretEnv)}
        return self.secrets | from_env

    def resolved_environment(self, secrets: dict[str, SecretRef]) -> dict[str, str]:
        """Environment with SecretEnv values replaced by mount paths."""
        resolved: dict[str, str] = {}
        for key, value in sorted(self.environment.items()):
            if isinstance(value, SecretEnv):
                resolved[key] = secrets[value.secret].mount_path
            else:
                resolved[key] = value
        return resolved

    def desired_state(self, secrets: dict[str, SecretRef]) -> dict[str, Any]:
        """Runtime configuration the engine is asked to realize."""
        return {
            "image": self.image_ref,
            "networks": sorted(n.name for n in self.networks),
            "environment": self.resolved_environment(secrets),
            "volumes": dict(sorted(self.volumes.items())),
            "secrets": sorted(
                (secrets[s].mount_path, str(secrets[s].source_path))
                for s in self.referenced_secrets()
            ),
            "ports": list(self.ports),
            "command": list(self.command) if self.command else None,
        }

    def config_hash(self, secrets: dict[str, SecretRef], image_id: str | None = None) -> str:
        """Stable digest of :meth:`desired_state`, stored as a container label.

        ``image_id`` is folded in when known so a rebuilt image under the
        same tag counts as drift.
        """
        state = self.desired_state(secrets)
        if image_id:
            state["image_id"] = image_id
        payload = json.dumps(state, sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


__all__ = [
    "EnvValue",
    "HealthCheckKind",
    "HealthCheckSpec",
    "ImageSpec",
    "NetworkRef",
    "SecretEnv",
    "SecretRef",
    "ServiceSpec",
    "VolumeRef",
]
