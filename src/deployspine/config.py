"""Configuration for deploy-spine.

Two layers:

``DeploymentDocument``
    The declarative topology, read from ``deploy-spine.yml`` with PyYAML
    and validated with pydantic. Converts into the frozen specs of
    :mod:`deployspine.models`.

``DeploySettings``
    Runtime knobs from the environment (pydantic-settings, ``.env``
    support): timeouts, worker bound, cleanup policy, registry
    credentials and secret values. Prefix ``DEPLOY_SPINE_``, plus the bare
    names ``DB_PASSWORD``, ``DOCKER_USERNAME`` and ``DOCKER_PASSWORD``.

Precedence, highest first: CLI flags, environment, the document's
``options`` block, defaults.

Example YAML::

    project: shop
    images:
      backend:
        name: docker.io/acme/backend
        context: ./backend
    services:
      database:
        image: postgres:16-alpine
        networks: [backend-net]
        environment:
          POSTGRES_PASSWORD_FILE: {secret: db_password}
      backend:
        build: backend
        networks: [frontend-net, backend-net]
        depends_on: [database]
        health_check: {kind: http, target: "http://localhost:8080/health"}
    secrets:
      db_password:
        source: ./secrets/db_password.txt

Any malformed or missing input raises ``ConfigError`` before anything
is applied.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from deployspine.core.errors import ConfigError
from deployspine.engine import RegistryCredentials
from deployspine.models import (
    EnvValue,
    HealthCheckSpec,
    ImageSpec,
    NetworkRef,
    SecretEnv,
    SecretRef,
    ServiceSpec,
)

DEFAULT_CONFIG_FILE = "deploy-spine.yml"
DEFAULT_SECRET_MOUNT_DIR = "/run/secrets"


# ---------------------------------------------------------------------------
# Document models
# ---------------------------------------------------------------------------


class ImageModel(BaseModel):
    """An image built from a local context."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Registry-qualified repository")
    tag: str = Field(default="latest", min_length=1)
    context: str = Field(default=".", description="Build context, relative to the document")
    dockerfile: str | None = Field(default=None, description="Dockerfile relative to context")
    push: bool = Field(default=True, description="Publish when deploying with --push")


class HealthCheckModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["http", "command", "container"] = "container"
    target: str = Field(default="", description="URL for http checks")
    command: list[str] = Field(default_factory=list, description="argv for command checks")
    interval: float = Field(default=2.0, gt=0)
    timeout: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_kind_fields(self) -> HealthCheckModel:
        if self.kind == "http" and not self.target:
            raise ValueError("http health checks need a target URL")
        if self.kind == "command" and not self.command:
            raise ValueError("command health checks need a command")
        return self


class SecretEnvModel(BaseModel):
    """``{secret: name}``: resolves to the secret's mount path."""

    model_config = ConfigDict(extra="forbid")

    secret: str = Field(..., min_length=1)


class ServiceModel(BaseModel):
    """One service. Exactly one of ``image`` or ``build``."""

    model_config = ConfigDict(extra="forbid")

    image: str | None = Field(default=None, description="Pre-built image reference")
    build: str | None = Field(default=None, description="Key into the images section")
    networks: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    environment: dict[str, str | int | float | bool | SecretEnvModel] = Field(default_factory=dict)
    secrets: list[str] = Field(default_factory=list)
    volumes: dict[str, str] = Field(default_factory=dict, description="volume -> mount path")
    ports: list[str] = Field(default_factory=list)
    command: list[str] | None = None
    health_check: HealthCheckModel | None = None

    @model_validator(mode="after")
    def validate_image_source(self) -> ServiceModel:
        if (self.image is None) == (self.build is None):
            raise ValueError("exactly one of 'image' or 'build' is required")
        return self


class SecretModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source: str = Field(..., min_length=1, description="Host file the value is written to")
    mount_path: str | None = Field(default=None, description="Defaults to /run/secrets/<name>")
    env: str | None = Field(default=None, description="Variable holding the value")


class OptionsModel(BaseModel):
    """Document-level defaults for ``DeploySettings`` fields."""

    model_config = ConfigDict(extra="forbid")

    cleanup_secrets: bool | None = None
    health_timeout: float | None = Field(default=None, gt=0)
    deploy_timeout: float | None = Field(default=None, gt=0)
    max_workers: int | None = Field(default=None, ge=1)
    push_retries: int | None = Field(default=None, ge=0)
    registry: str | None = None


class DeploymentDocument(BaseModel):
    """Root of ``deploy-spine.yml``."""

    model_config = ConfigDict(extra="forbid")

    project: str = Field(default="deployspine", pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
    images: dict[str, ImageModel] = Field(default_factory=dict)
    services: dict[str, ServiceModel] = Field(..., min_length=1)
    secrets: dict[str, SecretModel] = Field(default_factory=dict)
    options: OptionsModel = Field(default_factory=OptionsModel)

    @model_validator(mode="after")
    def validate_image_keys(self) -> DeploymentDocument:
        for name, service in self.services.items():
            if service.build is not None and service.build not in self.images:
                raise ValueError(f"Service '{name}' builds unknown image '{service.build}'")
        return self

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_yaml(cls, yaml_content: str) -> DeploymentDocument:
        """Parse and validate YAML content.

        Raises:
            ConfigError: invalid YAML or schema violation.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", cause=e) from e
        if not isinstance(data, dict):
            raise ConfigError("Deployment document must be a mapping")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid deployment document: {_format_errors(e)}", cause=e) from e

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> DeploymentDocument:
        """Load and validate from a YAML file."""
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e.strerror or e}", cause=e) from e
        return cls.from_yaml(content)

    # ------------------------------------------------------------------
    # Conversion to specs
    # ------------------------------------------------------------------

    def to_images(self, base_dir: Path = Path(".")) -> dict[str, ImageSpec]:
        return {
            key: ImageSpec(
                name=image.name,
                tag=image.tag,
                build_context=(base_dir / image.context),
                dockerfile=image.dockerfile,
                push=image.push,
            )
            for key, image in self.images.items()
        }

    def to_secrets(self, base_dir: Path = Path(".")) -> dict[str, SecretRef]:
        return {
            name: SecretRef(
                name=name,
                source_path=base_dir / secret.source,
                mount_path=secret.mount_path or f"{DEFAULT_SECRET_MOUNT_DIR}/{name}",
                value_env=secret.env or "",
            )
            for name, secret in self.secrets.items()
        }

    def to_services(self, base_dir: Path = Path(".")) -> list[ServiceSpec]:
        images = self.to_images(base_dir)
        services: list[ServiceSpec] = []
        for name, svc in self.services.items():
            environment: dict[str, EnvValue] = {}
            for key, value in svc.environment.items():
                if isinstance(value, SecretEnvModel):
                    environment[key] = SecretEnv(value.secret)
                elif isinstance(value, bool):
                    environment[key] = "true" if value else "false"
                else:
                    environment[key] = str(value)

            health = None
            if svc.health_check is not None:
                hc = svc.health_check
                health = HealthCheckSpec(
                    kind=hc.kind,
                    target=hc.target,
                    command=tuple(hc.command),
                    interval=hc.interval,
                    timeout=hc.timeout,
                )

            services.append(
                ServiceSpec(
                    name=name,
                    image=images[svc.build] if svc.build is not None else svc.image,
                    networks=frozenset(NetworkRef(n) for n in svc.networks),
                    environment=environment,
                    depends_on=frozenset(svc.depends_on),
                    health_check=health,
                    volumes=dict(svc.volumes),
                    secrets=frozenset(svc.secrets),
                    ports=tuple(svc.ports),
                    command=tuple(svc.command) if svc.command is not None else None,
                )
            )
        return services


def _format_errors(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"])
        parts.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(parts)


DEFAULT_DOCUMENT_YAML = """\
project: deployspine
images:
  backend:
    name: deployspine/backend
    context: ./backend
  frontend:
    name: deployspine/frontend
    context: ./frontend
services:
  database:
    image: postgres:16-alpine
    networks: [backend-net]
    environment:
      POSTGRES_DB: app
      POSTGRES_USER: app
      POSTGRES_PASSWORD_FILE: {secret: db_password}
    volumes:
      db-data: /var/lib/postgresql/data
    health_check:
      kind: command
      command: [pg_isready, -U, app]
  backend:
    build: backend
    networks: [frontend-net, backend-net]
    depends_on: [database]
    environment:
      DB_HOST: database
      DB_NAME: app
      DB_USER: app
      DB_PASSWORD_FILE: {secret: db_password}
    health_check:
      kind: container
  frontend:
    build: frontend
    networks: [frontend-net]
    depends_on: [backend]
    ports: ["80:80"]
    health_check:
      kind: container
secrets:
  db_password:
    source: ./secrets/db_password.txt
    env: DB_PASSWORD
"""


def default_document() -> DeploymentDocument:
    """The built-in three-tier topology: database <- backend <- frontend."""
    return DeploymentDocument.from_yaml(DEFAULT_DOCUMENT_YAML)


def load_document(path: str | Path | None = None) -> tuple[DeploymentDocument, Path]:
    """Load the deployment document and the directory relative paths resolve against.

    With no ``path``, ``deploy-spine.yml`` in the working directory is used
    when present, else the built-in default. An explicit ``path`` must exist.
    """
    if path is None:
        candidate = Path(DEFAULT_CONFIG_FILE)
        if not candidate.is_file():
            return default_document(), Path.cwd()
        path = candidate
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Deployment document not found: {path}")
    return DeploymentDocument.from_yaml_file(path), path.resolve().parent


# ---------------------------------------------------------------------------
# Environment settings
# ---------------------------------------------------------------------------


class DeploySettings(BaseSettings):
    """Environment-driven runtime settings.

    Fields
    ──────
    cleanup_secrets : revoke secret files after verification, whatever the outcome
    max_workers     : worker bound for builds, starts and health checks
    deploy_timeout  : overall deadline for one run (seconds)
    health_timeout  : default per-service health timeout (seconds)
    push_retries    : extra push attempts on transient registry errors
    artifacts_dir   : where run summaries and captured logs are written
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPLOY_SPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ── Policy ───────────────────────────────────────────────────
    cleanup_secrets: bool = False
    max_workers: int | None = Field(default=None, ge=1)
    deploy_timeout: float = Field(default=900.0, gt=0)
    health_timeout: float = Field(default=60.0, gt=0)
    push_retries: int = Field(default=3, ge=0)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None
    artifacts_dir: Path = Path(".deploy-spine/runs")

    # ── Registry ─────────────────────────────────────────────────
    registry: str | None = None
    docker_username: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DEPLOY_SPINE_DOCKER_USERNAME", "DOCKER_USERNAME"),
    )
    docker_password: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("DEPLOY_SPINE_DOCKER_PASSWORD", "DOCKER_PASSWORD"),
    )

    # ── Secret values ────────────────────────────────────────────
    db_password: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("DEPLOY_SPINE_DB_PASSWORD", "DB_PASSWORD"),
    )

    def with_document_options(self, options: OptionsModel) -> DeploySettings:
        """Fill fields not set in the environment from the document's ``options``."""
        update = {
            key: value
            for key, value in options.model_dump().items()
            if value is not None and key not in self.model_fields_set
        }
        return self.model_copy(update=update) if update else self

    def registry_credentials(self) -> RegistryCredentials:
        """Credentials for pushing.

        Raises:
            ConfigError: ``DOCKER_USERNAME`` or ``DOCKER_PASSWORD`` is missing.
        """
        if not self.docker_username or self.docker_password is None:
            raise ConfigError(
                "Pushing images requires DOCKER_USERNAME and DOCKER_PASSWORD",
                context={"registry": self.registry or "docker.io"},
            )
        return RegistryCredentials(
            username=self.docker_username,
            password=self.docker_password.get_secret_value(),
            registry=self.registry,
        )


def resolve_secret_values(
    secrets: Mapping[str, SecretRef],
    settings: DeploySettings,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Read each secret's value from ``secret.value_env``.

    ``DB_PASSWORD`` may also come from the settings' ``.env`` file.

    Raises:
        ConfigError: a declared secret has no value.
    """
    environ = os.environ if environ is None else environ
    known: dict[str, Any] = {}
    if settings.db_password is not None:
        known["DB_PASSWORD"] = settings.db_password.get_secret_value()

    values: dict[str, str] = {}
    missing: list[str] = []
    for name, secret in secrets.items():
        value = environ.get(secret.value_env, known.get(secret.value_env))
        if value is None or value == "":
            missing.append(f"{name} ({secret.value_env})")
        else:
            values[name] = value
    if missing:
        raise ConfigError(
            f"Missing secret values: {', '.join(missing)}",
            context={"secrets": sorted(secrets)},
        )
    return values


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_DOCUMENT_YAML",
    "DeploySettings",
    "DeploymentDocument",
    "OptionsModel",
    "default_document",
    "load_document",
    "resolve_secret_values",
]
