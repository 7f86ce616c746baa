"""Docker Compose rendering for deploy-spine.

Renders a ``DeploymentPlan`` as a ``docker-compose.yml`` document: the
same topology the driver applies, in a form operators can inspect
(``deploy-spine render``, ``deploy --dry-run``) or hand to
``docker compose up`` directly.

Key Concepts:
    generate_compose: one compose service per ``ServiceSpec`` with its
        networks, volumes, ports, health check, ``depends_on`` and
        secrets; top-level ``networks``/``volumes``/``secrets`` sections
        from the plan's creation sets.
    write_compose_file: persists the YAML string to disk.

Architecture Decisions:
    - YAML string output (not dict): callers get a ready-to-write string
      with a human-readable header comment.
    - Secrets use compose's file-backed ``secrets`` section, which mounts
      them read-only; environment entries that reference a secret carry
      its mount path, never its value.
    - ``depends_on`` uses ``service_started``: later waves need their
      dependencies attached to the network, not healthy.

Tags:
    compose, docker, yaml, generation, deployment
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from deployspine.core.logging import get_logger
from deployspine.engine import LABEL_PREFIX
from deployspine.models import HealthCheckSpec, SecretRef, ServiceSpec
from deployspine.planner import DeploymentPlan

logger = get_logger(__name__)


def _yaml_dumps(data: dict[str, Any]) -> str:
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True)


def _healthcheck(check: HealthCheckSpec) -> dict[str, Any] | None:
    if check.kind == "command":
        test: list[str] = ["CMD", *check.command]
    elif check.kind == "http":
        test = ["CMD-SHELL", f"curl -fsS {check.target} || exit 1"]
    else:
        # engine-native: the image's own HEALTHCHECK applies
        return None
    return {"test": test, "interval": f"{check.interval:g}s", "timeout": "5s", "retries": 5}


def _service(
    spec: ServiceSpec,
    project: str,
    secrets: dict[str, SecretRef],
) -> dict[str, Any]:
    service: dict[str, Any] = {
        "container_name": f"{project}-{spec.name}",
        "image": spec.image_ref,
    }

    image = spec.built_image
    if image is not None:
        service["build"] = {"context": str(image.build_context)}
        if image.dockerfile:
            service["build"]["dockerfile"] = image.dockerfile

    if spec.command:
        service["command"] = list(spec.command)

    if spec.networks:
        service["networks"] = sorted(n.name for n in spec.networks)

    env = spec.resolved_environment(secrets)
    if env:
        service["environment"] = env

    referenced = sorted(spec.referenced_secrets())
    if referenced:
        service["secrets"] = [
            {"source": name, "target": secrets[name].mount_path} for name in referenced
        ]

    if spec.volumes:
        service["volumes"] = [f"{vol}:{path}" for vol, path in sorted(spec.volumes.items())]

    if spec.ports:
        service["ports"] = list(spec.ports)

    if spec.depends_on:
        service["depends_on"] = {
            dep: {"condition": "service_started"} for dep in sorted(spec.depends_on)
        }

    if spec.health_check is not None:
        healthcheck = _healthcheck(spec.health_check)
        if healthcheck is not None:
            service["healthcheck"] = healthcheck

    service["labels"] = [
        f"{LABEL_PREFIX}.project={project}",
        f"{LABEL_PREFIX}.service={spec.name}",
    ]
    service["restart"] = "unless-stopped"
    return service


def generate_compose(plan: DeploymentPlan, project: str) -> str:
    """Render ``plan`` as a docker-compose YAML string.

    Parameters
    ----------
    plan
        Planned topology (services in wave order).
    project
        Compose project name and container name prefix.

    Returns
    -------
    str
        YAML string ready to write to a file.
    """
    secrets = plan.secret_map
    compose: dict[str, Any] = {"name": project, "services": {}}

    for spec in plan.services:
        compose["services"][spec.name] = _service(spec, project, secrets)

    if plan.networks:
        compose["networks"] = {
            n.name: {"name": n.name, "driver": "bridge"} for n in plan.networks
        }
    if plan.volumes:
        compose["volumes"] = {v.name: {"name": v.name} for v in plan.volumes}
    if plan.secrets:
        compose["secrets"] = {s.name: {"file": str(s.source_path)} for s in plan.secrets}

    waves = " -> ".join(
        "[" + ", ".join(s.name for s in wave) + "]" for wave in plan.waves
    )
    header = (
        f"# Generated by deploy-spine\n"
        f"# Project: {project}\n"
        f"# Waves: {waves}\n\n"
    )
    return header + _yaml_dumps(compose)


def write_compose_file(content: str, output_path: str | Path) -> Path:
    """Write compose YAML to ``output_path``; returns the path."""
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    logger.info("compose.written", path=str(path))
    return path


__all__ = ["generate_compose", "write_compose_file"]
