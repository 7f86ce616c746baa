"""
Structured error types for deploy-spine.

Every failure the orchestrator can report is a ``DeploySpineError``
subclass carrying a category, a retryable flag, structured context and
the chained cause. The driver uses the type to decide whether an error
ends the run (fatal) or is recorded against a single image or service
(isolated).

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                     DeploySpineError                          │
        │       (category, retryable, context, cause)                   │
        ├──────────────────────────────────────────────────────────────┤
        │  Fatal (abort the run)      │  Isolated (collected)           │
        │  ─────────────────────      │  ────────────────────           │
        │  ConfigError                │  BuildError    (per image)      │
        │  CycleError                 │  PushError     (per image)      │
        │  SecretIOError (provision)  │  StartError    (per service)    │
        │  InfrastructureError        │  HealthTimeoutError             │
        ├──────────────────────────────────────────────────────────────┤
        │  EngineError      container engine call failed (transient?)   │
        │  OperationCancelled   run-level cancellation observed         │
        └──────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Put secret values into ``context``
    ✅ DO: Reference secrets by name only

    ❌ DON'T: Swallow the engine's diagnostic text
    ✅ DO: Pass it through as ``detail`` so operators see why

Tags:
    errors, exception-hierarchy, retry-logic, deploy-spine
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONFIG = "CONFIG"  # Missing or malformed input
    TOPOLOGY = "TOPOLOGY"  # Invalid dependency graph
    BUILD = "BUILD"  # Image build/publish
    RUNTIME = "RUNTIME"  # Service start/stop
    HEALTH = "HEALTH"  # Readiness probes
    STORAGE = "STORAGE"  # Secret files, disk
    ENGINE = "ENGINE"  # Container engine transport
    CANCELLED = "CANCELLED"  # Operator-initiated abort
    INTERNAL = "INTERNAL"  # Bugs, unexpected state


class DeploySpineError(Exception):
    """Base exception for all deploy-spine errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    may override both per instance.

    Examples:
        >>> err = DeploySpineError("boom")
        >>> err.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> err.with_context(service="db").context
        {'service': 'db'}
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context: dict[str, Any] = dict(context or {})
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DeploySpineError:
        """Add context to this error (fluent API)."""
        self.context.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logging and JSON results."""
        result: dict[str, Any] = {
            "error_type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.context:
            result["context"] = dict(self.context)
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


# =============================================================================
# FATAL ERRORS
# =============================================================================


class ConfigError(DeploySpineError):
    """Malformed or missing required input. No partial apply."""

    default_category = ErrorCategory.CONFIG


class CycleError(DeploySpineError):
    """The ``depends_on`` graph contains a cycle.

    ``services`` holds the name of every service participating in a cycle.
    """

    default_category = ErrorCategory.TOPOLOGY

    def __init__(self, services: set[str] | frozenset[str], **kwargs: Any) -> None:
        self.services = frozenset(services)
        names = ", ".join(sorted(self.services))
        super().__init__(f"Dependency cycle detected among services: {names}", **kwargs)
        self.context.setdefault("services", sorted(self.services))


class InfrastructureError(DeploySpineError):
    """A network or volume could not be created. Fatal for the run."""

    default_category = ErrorCategory.RUNTIME


class SecretIOError(DeploySpineError):
    """A secret file could not be written or removed."""

    default_category = ErrorCategory.STORAGE

    def __init__(self, secret: str, message: str, **kwargs: Any) -> None:
        self.secret = secret
        super().__init__(f"Secret {secret!r}: {message}", **kwargs)
        self.context.setdefault("secret", secret)


# =============================================================================
# ISOLATED ERRORS
# =============================================================================


class BuildError(DeploySpineError):
    """An image failed to build. Never retried."""

    default_category = ErrorCategory.BUILD

    def __init__(self, image: str, detail: str = "", **kwargs: Any) -> None:
        self.image = image
        self.detail = detail
        message = f"Build failed for {image}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, **kwargs)
        self.context.setdefault("image", image)


class PushError(DeploySpineError):
    """An image failed to publish after the bounded retries."""

    default_category = ErrorCategory.BUILD

    def __init__(self, image: str, detail: str = "", attempts: int = 1, **kwargs: Any) -> None:
        self.image = image
        self.detail = detail
        self.attempts = attempts
        message = f"Push failed for {image} after {attempts} attempt(s)"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, **kwargs)
        self.context.setdefault("image", image)


class StartError(DeploySpineError):
    """A service failed to start. Isolated to the service and its dependents."""

    default_category = ErrorCategory.RUNTIME

    def __init__(self, service: str, detail: str = "", **kwargs: Any) -> None:
        self.service = service
        self.detail = detail
        message = f"Service {service!r} failed to start"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, **kwargs)
        self.context.setdefault("service", service)


class HealthTimeoutError(DeploySpineError):
    """A service did not pass its health check within the timeout.

    Downgrades the service to Unhealthy; never aborts the run.
    """

    default_category = ErrorCategory.HEALTH

    def __init__(self, service: str, timeout: float, **kwargs: Any) -> None:
        self.service = service
        self.timeout = timeout
        super().__init__(
            f"Service {service!r} did not become healthy within {timeout:g}s", **kwargs
        )
        self.context.setdefault("service", service)


# =============================================================================
# ENGINE / CONTROL FLOW
# =============================================================================


class EngineError(DeploySpineError):
    """A container engine operation failed.

    ``transient`` marks failures worth retrying (registry timeouts,
    connection resets). ``detail`` carries the engine's diagnostic text.
    """

    default_category = ErrorCategory.ENGINE

    def __init__(
        self,
        message: str,
        *,
        detail: str = "",
        transient: bool = False,
        exit_code: int | None = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("retryable", transient)
        super().__init__(message, **kwargs)
        self.detail = detail
        self.transient = transient
        self.exit_code = exit_code


class OperationCancelled(DeploySpineError):
    """Raised inside an operation that observed the run's cancellation signal."""

    default_category = ErrorCategory.CANCELLED


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, DeploySpineError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def error_detail(error: Exception) -> str:
    """Best human-readable one-liner for a result's ``error`` field."""
    if isinstance(error, DeploySpineError):
        return error.message
    return f"{type(error).__name__}: {error}"


__all__ = [
    "BuildError",
    "ConfigError",
    "CycleError",
    "DeploySpineError",
    "EngineError",
    "ErrorCategory",
    "HealthTimeoutError",
    "InfrastructureError",
    "OperationCancelled",
    "PushError",
    "SecretIOError",
    "StartError",
    "error_detail",
    "is_retryable",
]
