"""Topology planning: dependency waves from ``depends_on`` edges.

``TopologyPlanner.plan`` is pure. It validates the declared services,
layers them into *waves* with Kahn's algorithm (a wave holds every
service whose dependencies all sit in earlier waves, so its members can
start concurrently) and collects the networks, volumes and secrets that
must exist before wave 1.

The plan is recomputed on every run and never persisted, so it cannot
drift from the declared intent.

Example::

    plan = TopologyPlanner().plan([db, backend, frontend])
    [[s.name for s in wave] for wave in plan.waves]
    # [['database'], ['backend'], ['frontend']]
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from deployspine.core.errors import ConfigError, CycleError
from deployspine.core.logging import get_logger
from deployspine.models import NetworkRef, SecretRef, ServiceSpec, VolumeRef

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeploymentPlan:
    """Ordered realization of a topology. Derived, never mutated."""

    waves: tuple[tuple[ServiceSpec, ...], ...]
    networks: tuple[NetworkRef, ...] = ()
    volumes: tuple[VolumeRef, ...] = ()
    secrets: tuple[SecretRef, ...] = ()

    @property
    def services(self) -> list[ServiceSpec]:
        """All services in wave order."""
        return [s for wave in self.waves for s in wave]

    @property
    def secret_map(self) -> dict[str, SecretRef]:
        return {s.name: s for s in self.secrets}

    def wave_of(self, service: str) -> int:
        """1-based wave index of ``service``."""
        for index, wave in enumerate(self.waves, start=1):
            if any(s.name == service for s in wave):
                return index
        raise KeyError(service)

    def to_dict(self) -> dict[str, Any]:
        return {
            "waves": [[s.name for s in wave] for wave in self.waves],
            "networks": [n.name for n in self.networks],
            "volumes": [v.name for v in self.volumes],
            "secrets": [s.name for s in self.secrets],
        }


class TopologyPlanner:
    """Turns a set of ``ServiceSpec`` into a ``DeploymentPlan``."""

    def plan(
        self,
        services: Iterable[ServiceSpec],
        secrets: Mapping[str, SecretRef] | None = None,
    ) -> DeploymentPlan:
        """Validate and order ``services``.

        Raises:
            ConfigError: duplicate service names, unknown dependencies or
                references to undeclared secrets.
            CycleError: the dependency graph has a cycle; ``services`` on
                the error names every participant.
        """
        services = list(services)
        secrets = dict(secrets or {})
        by_name = self._index(services)
        self._validate_references(services, by_name, secrets)

        waves = self._layer(by_name)

        networks = sorted({n for s in services for n in s.networks})
        volumes = sorted({VolumeRef(v) for s in services for v in s.volumes})
        used_secrets: list[SecretRef] = []
        seen: set[str] = set()
        for wave in waves:
            for spec in wave:
                for name in sorted(spec.referenced_secrets()):
                    if name not in seen:
                        seen.add(name)
                        used_secrets.append(secrets[name])

        plan = DeploymentPlan(
            waves=waves,
            networks=tuple(networks),
            volumes=tuple(volumes),
            secrets=tuple(used_secrets),
        )
        logger.debug("plan.computed", **plan.to_dict())
        return plan

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _index(services: list[ServiceSpec]) -> dict[str, ServiceSpec]:
        by_name: dict[str, ServiceSpec] = {}
        for spec in services:
            if spec.name in by_name:
                raise ConfigError(
                    f"Duplicate service name: {spec.name!r}",
                    context={"service": spec.name},
                )
            by_name[spec.name] = spec
        return by_name

    @staticmethod
    def _validate_references(
        services: list[ServiceSpec],
        by_name: dict[str, ServiceSpec],
        secrets: dict[str, SecretRef],
    ) -> None:
        for spec in services:
            for dep in sorted(spec.depends_on):
                if dep not in by_name:
                    raise ConfigError(
                        f"Service {spec.name!r} depends on unknown service {dep!r}",
                        context={"service": spec.name, "dependency": dep},
                    )
            for secret in sorted(spec.referenced_secrets()):
                if secret not in secrets:
                    raise ConfigError(
                        f"Service {spec.name!r} references undeclared secret {secret!r}",
                        context={"service": spec.name, "secret": secret},
                    )

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    @staticmethod
    def _layer(by_name: dict[str, ServiceSpec]) -> tuple[tuple[ServiceSpec, ...], ...]:
        """Kahn's algorithm, one wave per dependency depth."""
        dependents: dict[str, list[str]] = defaultdict(list)
        in_degree: dict[str, int] = {name: 0 for name in by_name}
        for spec in by_name.values():
            for dep in spec.depends_on:
                dependents[dep].append(spec.name)
                in_degree[spec.name] += 1

        waves: list[tuple[ServiceSpec, ...]] = []
        ready = sorted(name for name, deg in in_degree.items() if deg == 0)
        placed = 0
        while ready:
            waves.append(tuple(by_name[name] for name in ready))
            placed += len(ready)
            next_ready: list[str] = []
            for name in ready:
                for child in dependents[name]:
                    in_degree[child] -= 1
                    if in_degree[child] == 0:
                        next_ready.append(child)
            ready = sorted(next_ready)

        if placed != len(by_name):
            remaining = {name for name, deg in in_degree.items() if deg > 0}
            raise CycleError(_cycle_members(remaining, by_name))
        return tuple(waves)


def _cycle_members(remaining: set[str], by_name: dict[str, ServiceSpec]) -> set[str]:
    """Nodes of ``remaining`` that can reach themselves.

    Kahn leaves behind both cycle members and services that merely depend
    on a cycle; only the former are reported.
    """
    on_cycle: set[str] = set()
    for start in remaining:
        stack = [d for d in by_name[start].depends_on if d in remaining]
        visited: set[str] = set()
        while stack:
            node = stack.pop()
            if node == start:
                on_cycle.add(start)
                break
            if node in visited:
                continue
            visited.add(node)
            stack.extend(d for d in by_name[node].depends_on if d in remaining)
    return on_cycle


__all__ = ["DeploymentPlan", "TopologyPlanner"]
