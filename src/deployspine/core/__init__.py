"""deploy-spine core -- errors and structured logging shared by every module."""

from deployspine.core.errors import (
    BuildError,
    ConfigError,
    CycleError,
    DeploySpineError,
    EngineError,
    HealthTimeoutError,
    InfrastructureError,
    OperationCancelled,
    PushError,
    SecretIOError,
    StartError,
)
from deployspine.core.logging import LogContext, configure_logging, get_logger

__all__ = [
    "BuildError",
    "ConfigError",
    "CycleError",
    "DeploySpineError",
    "EngineError",
    "HealthTimeoutError",
    "InfrastructureError",
    "LogContext",
    "OperationCancelled",
    "PushError",
    "SecretIOError",
    "StartError",
    "configure_logging",
    "get_logger",
]
