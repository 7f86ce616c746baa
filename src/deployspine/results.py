"""Result models for deploy-spine.

Pydantic v2 models that capture structured outcomes of a deployment
run: one ``ServiceResult`` per service, one ``ImageResult`` per image,
rolled up into a ``DeploymentRun`` whose ``verdict`` is the single answer
an operator (or CI) acts on.

Key Concepts:
    ServiceState: per-service state machine
        Pending -> Starting -> {Healthy | Unhealthy} -> Stopped,
        with Failed/Cancelled reachable before health is known.
    Verdict: Success iff every service is Healthy; PartialFailure when some
        but not all are; Failed when the run could not proceed or nothing
        became Healthy. ``Verdict.exit_code`` maps to 0/1/2 for the CLI.
    BuildReport: per-image outcomes of ``ImageBuilder.build_all()``; partial
        success is representable via ``failed`` / ``succeeded``.

Architecture Decisions:
    - ``mark_complete()`` pattern: the driver calls it once, it stamps the
      completion time, duration, verdict and summary line.
    - ``advance()`` enforces the state machine so an Unhealthy service can
      never be silently flipped back to Healthy.

Tags:
    results, models, pydantic, deployment, verdict, reporting
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ServiceState(str, Enum):
    """Lifecycle state of a single service within one run."""

    PENDING = "Pending"
    STARTING = "Starting"
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    STOPPED = "Stopped"


class HealthState(str, Enum):
    """Outcome of ``HealthVerifier.verify``."""

    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    CANCELLED = "Cancelled"


class Verdict(str, Enum):
    """Overall outcome of a run."""

    SUCCESS = "Success"
    PARTIAL_FAILURE = "PartialFailure"
    FAILED = "Failed"

    @property
    def exit_code(self) -> int:
        return {Verdict.SUCCESS: 0, Verdict.PARTIAL_FAILURE: 1, Verdict.FAILED: 2}[self]


class ImageStatus(str, Enum):
    """Outcome of building (and optionally pushing) one image."""

    BUILT = "Built"
    PUSHED = "Pushed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


_TRANSITIONS: dict[ServiceState, frozenset[ServiceState]] = {
    ServiceState.PENDING: frozenset(
        {
            ServiceState.STARTING,
            ServiceState.FAILED,
            ServiceState.CANCELLED,
            ServiceState.STOPPED,
        }
    ),
    ServiceState.STARTING: frozenset(
        {
            ServiceState.HEALTHY,
            ServiceState.UNHEALTHY,
            ServiceState.FAILED,
            ServiceState.CANCELLED,
        }
    ),
    ServiceState.HEALTHY: frozenset({ServiceState.STOPPED}),
    ServiceState.UNHEALTHY: frozenset({ServiceState.STOPPED}),
    ServiceState.FAILED: frozenset({ServiceState.STOPPED}),
    ServiceState.CANCELLED: frozenset({ServiceState.STOPPED}),
    ServiceState.STOPPED: frozenset(),
}


class InvalidTransition(ValueError):
    """Raised when a service state change violates the state machine."""


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


class ImageResult(BaseModel):
    """Build/push outcome of one image."""

    image: str
    status: ImageStatus
    image_id: str | None = None
    push_attempts: int = 0
    duration_seconds: float = 0.0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in (ImageStatus.BUILT, ImageStatus.PUSHED)


class BuildReport(BaseModel):
    """Outcomes of a ``build_all`` call."""

    images: list[ImageResult] = Field(default_factory=list)

    @property
    def failed(self) -> set[str]:
        return {r.image for r in self.images if not r.ok}

    @property
    def succeeded(self) -> set[str]:
        return {r.image for r in self.images if r.ok}

    @property
    def all_ok(self) -> bool:
        return not self.failed

    def get(self, image: str) -> ImageResult | None:
        for r in self.images:
            if r.image == image:
                return r
        return None


# ---------------------------------------------------------------------------
# Services / runs
# ---------------------------------------------------------------------------


class ServiceResult(BaseModel):
    """Outcome of one service within a run."""

    service: str
    state: ServiceState = ServiceState.PENDING
    wave: int | None = None
    image: str | None = None
    container_id: str | None = None
    changed: bool = False
    """True when the engine was asked to (re)create the container this run."""

    error: str | None = None
    logs_path: str | None = None

    def advance(self, state: ServiceState, error: str | None = None) -> None:
        """Move to ``state``, enforcing the lifecycle state machine."""
        if state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"{self.service}: {self.state.value} -> {state.value} is not allowed"
            )
        self.state = state
        if error is not None:
            self.error = error


class DeploymentRun(BaseModel):
    """Aggregated result of one deploy / check-health / down run."""

    run_id: str
    mode: str = "deploy"
    """deploy, check-health or down."""

    started_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    completed_at: str | None = None
    duration_seconds: float = 0.0
    services: list[ServiceResult] = Field(default_factory=list)
    build: BuildReport | None = None
    networks: list[str] = Field(default_factory=list)
    volumes: list[str] = Field(default_factory=list)
    secrets: list[str] = Field(default_factory=list)
    """Names of secrets provisioned by this run (never values)."""

    verdict: Verdict | None = None
    cancelled: bool = False
    error: str | None = None
    """Set for fatal errors; forces verdict Failed."""

    summary: str = ""

    def service(self, name: str) -> ServiceResult | None:
        for s in self.services:
            if s.service == name:
                return s
        return None

    def compute_verdict(self) -> Verdict:
        """Derive the verdict from the fatal error and per-service states."""
        if self.error:
            return Verdict.FAILED
        target = ServiceState.STOPPED if self.mode == "down" else ServiceState.HEALTHY
        reached = sum(1 for s in self.services if s.state == target)
        if reached == len(self.services):
            return Verdict.SUCCESS
        if reached > 0:
            return Verdict.PARTIAL_FAILURE
        return Verdict.FAILED

    def mark_complete(self) -> None:
        """Finalize run: compute duration, verdict and summary."""
        self.completed_at = datetime.now(UTC).isoformat()
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_seconds = (end - start).total_seconds()
        self.verdict = self.compute_verdict()

        target = ServiceState.STOPPED if self.mode == "down" else ServiceState.HEALTHY
        reached = sum(1 for s in self.services if s.state == target)
        label = "stopped" if self.mode == "down" else "healthy"
        self.summary = (
            f"{reached}/{len(self.services)} services {label} "
            f"in {self.duration_seconds:.1f}s"
        )
        if self.cancelled:
            self.summary += " (cancelled)"


__all__ = [
    "BuildReport",
    "DeploymentRun",
    "HealthState",
    "ImageResult",
    "ImageStatus",
    "InvalidTransition",
    "ServiceResult",
    "ServiceState",
    "Verdict",
]
