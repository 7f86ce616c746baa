"""
deploy-spine - idempotent, ordered deployment of multi-tier container stacks.

- deployspine.secrets: Secret Provisioner
- deployspine.images: Image Builder/Pusher
- deployspine.planner: Topology Planner
- deployspine.driver: Deployment Driver
- deployspine.health: Health Verifier
"""

__version__ = "0.1.0"

from deployspine.driver import DeploymentDriver
from deployspine.health import HealthVerifier
from deployspine.images import ImageBuilder
from deployspine.models import (
    HealthCheckSpec,
    ImageSpec,
    NetworkRef,
    SecretEnv,
    SecretRef,
    ServiceSpec,
    VolumeRef,
)
from deployspine.planner import DeploymentPlan, TopologyPlanner
from deployspine.results import DeploymentRun, ServiceState, Verdict
from deployspine.secrets import SecretProvisioner

__all__ = [
    "DeploymentDriver",
    "DeploymentPlan",
    "DeploymentRun",
    "HealthCheckSpec",
    "HealthVerifier",
    "ImageBuilder",
    "ImageSpec",
    "NetworkRef",
    "SecretEnv",
    "SecretProvisioner",
    "SecretRef",
    "ServiceSpec",
    "ServiceState",
    "TopologyPlanner",
    "Verdict",
    "VolumeRef",
]
