"""
Root Typer application for deploy-spine.

Usage::

    deploy-spine deploy                       # plan, build, apply, verify
    deploy-spine deploy --push                # also publish images
    deploy-spine deploy --dry-run             # plan + compose, no side effects
    deploy-spine deploy --check-health-only   # verify running services only
    deploy-spine plan                         # show dependency waves
    deploy-spine render -o docker-compose.yml # write the compose document
    deploy-spine down                         # stop services, reverse waves
    deploy-spine revoke                       # delete provisioned secret files

Exit codes: 0 Success, 1 PartialFailure, 2 Failed (and invalid input).
"""

from __future__ import annotations

import json
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import typer
from pydantic import ValidationError

from deployspine.cancellation import CancellationToken
from deployspine.cli.utils import console, fatal_errors, print_plan, print_run
from deployspine.compose import generate_compose, write_compose_file
from deployspine.config import (
    DeploySettings,
    DeploymentDocument,
    load_document,
    resolve_secret_values,
)
from deployspine.core.errors import ConfigError
from deployspine.core.logging import configure_logging, get_logger
from deployspine.driver import DeploymentDriver, new_run_id
from deployspine.engine import ContainerEngine, DockerEngine
from deployspine.log_collector import LogCollector
from deployspine.models import SecretRef, ServiceSpec
from deployspine.planner import DeploymentPlan, TopologyPlanner
from deployspine.results import DeploymentRun
from deployspine.secrets import SecretProvisioner

app = typer.Typer(
    name="deploy-spine",
    help="deploy-spine: idempotent, ordered deployment of multi-tier container stacks.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

logger = get_logger(__name__)

CONFIG_OPTION = typer.Option(
    None, "--config", "-c", help="Deployment document (default: ./deploy-spine.yml or built-in)."
)
JSON_OPTION = typer.Option(False, "--json", help="Output results as JSON.")


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("deploy-spine")
        except PackageNotFoundError:
            v = "0.1.0"
        typer.echo(f"deploy-spine {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """deploy-spine CLI: plan, deploy, verify and tear down service topologies."""


# ── Shared plumbing ──────────────────────────────────────────────────────


@dataclass
class _Context:
    settings: DeploySettings
    document: DeploymentDocument
    services: list[ServiceSpec]
    secrets: dict[str, SecretRef]
    plan: DeploymentPlan


def make_engine(cancel: CancellationToken) -> ContainerEngine:
    """Engine factory (patched in tests)."""
    return DockerEngine(cancel=cancel)


def _load(config: Path | None, cleanup_secrets: bool | None = None) -> _Context:
    try:
        settings = DeploySettings()
    except ValidationError as e:
        raise ConfigError(f"Invalid environment settings: {e}", cause=e) from e
    configure_logging(settings.log_level, json_format=settings.log_json)

    document, base_dir = load_document(config)
    settings = settings.with_document_options(document.options)
    if cleanup_secrets is not None:
        settings = settings.model_copy(update={"cleanup_secrets": cleanup_secrets})

    services = document.to_services(base_dir)
    secrets = document.to_secrets(base_dir)
    plan = TopologyPlanner().plan(services, secrets)
    return _Context(settings, document, services, secrets, plan)


def _driver(ctx: _Context, cancel: CancellationToken, run_id: str) -> DeploymentDriver:
    settings = ctx.settings
    return DeploymentDriver(
        make_engine(cancel),
        project=ctx.document.project,
        cleanup_secrets=settings.cleanup_secrets,
        max_workers=settings.max_workers,
        health_timeout=settings.health_timeout,
        deploy_timeout=settings.deploy_timeout,
        push_retries=settings.push_retries,
        cancel=cancel,
        log_collector=LogCollector(settings.artifacts_dir, run_id),
    )


@contextmanager
def _cancel_on_signals(cancel: CancellationToken) -> Iterator[None]:
    """SIGINT/SIGTERM trip ``cancel`` instead of killing the process."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: object) -> None:
        name = signal.Signals(signum).name
        logger.warning("run.cancel_requested", signal=name)
        cancel.cancel(f"cancelled by {name}")

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _report(run: DeploymentRun, json_out: bool) -> None:
    if json_out:
        typer.echo(run.model_dump_json(indent=2))
    else:
        print_run(run)
    raise typer.Exit(code=run.verdict.exit_code if run.verdict else 2)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command()
def deploy(
    config: Path | None = CONFIG_OPTION,
    dry_run: bool = typer.Option(False, "--dry-run", help="Plan and render only; touch nothing."),
    check_health_only: bool = typer.Option(
        False, "--check-health-only", help="Verify health of running services only."
    ),
    push: bool = typer.Option(False, "--push", help="Publish built images to the registry."),
    build: bool = typer.Option(True, "--build/--no-build", help="Build images before starting."),
    cleanup_secrets: bool | None = typer.Option(  # noqa: UP007
        None,
        "--cleanup-secrets/--keep-secrets",
        help="Revoke secret files after verification (default from settings).",
    ),
    json_out: bool = JSON_OPTION,
) -> None:
    """Deploy the topology: networks, secrets, waves of services, health checks."""
    with fatal_errors():
        ctx = _load(config, cleanup_secrets)

        if dry_run:
            if json_out:
                payload = {"project": ctx.document.project, **ctx.plan.to_dict()}
                typer.echo(json.dumps(payload, indent=2))
            else:
                print_plan(ctx.plan, ctx.document.project)
                console.print()
                console.print(generate_compose(ctx.plan, ctx.document.project), markup=False)
            raise typer.Exit(code=0)

        cancel = CancellationToken()
        run_id = new_run_id()
        driver = _driver(ctx, cancel, run_id)

        if not json_out:
            mode = "check-health" if check_health_only else "deploy"
            console.print(
                f"[bold green]▲ {mode}[/] project: {ctx.document.project}, run_id: {run_id}"
            )

        with driver, _cancel_on_signals(cancel):
            if check_health_only:
                run = driver.check_health(ctx.services, ctx.secrets, run_id=run_id)
            else:
                secret_values = resolve_secret_values(ctx.plan.secret_map, ctx.settings)
                credentials = ctx.settings.registry_credentials() if push else None
                run = driver.run(
                    ctx.services,
                    ctx.secrets,
                    secret_values,
                    build=build,
                    push=push,
                    credentials=credentials,
                    run_id=run_id,
                )

    _report(run, json_out)


@app.command("plan")
def plan_cmd(
    config: Path | None = CONFIG_OPTION,
    json_out: bool = JSON_OPTION,
) -> None:
    """Show the dependency waves and the resources created before wave 1."""
    with fatal_errors():
        ctx = _load(config)
    if json_out:
        typer.echo(json.dumps({"project": ctx.document.project, **ctx.plan.to_dict()}, indent=2))
    else:
        print_plan(ctx.plan, ctx.document.project)


@app.command()
def render(
    config: Path | None = CONFIG_OPTION,
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Write to file instead of stdout."
    ),
) -> None:
    """Render the topology as a docker-compose document."""
    with fatal_errors():
        ctx = _load(config)
    content = generate_compose(ctx.plan, ctx.document.project)
    if output is None:
        typer.echo(content)
    else:
        path = write_compose_file(content, output)
        console.print(f"[green]✓ Wrote {path}[/]")


@app.command()
def down(
    config: Path | None = CONFIG_OPTION,
    json_out: bool = JSON_OPTION,
) -> None:
    """Stop services in reverse wave order."""
    with fatal_errors():
        ctx = _load(config)
        cancel = CancellationToken()
        run_id = new_run_id()
        driver = _driver(ctx, cancel, run_id)
        if not json_out:
            console.print(f"[bold red]▼ down[/] project: {ctx.document.project}")
        with driver, _cancel_on_signals(cancel):
            run = driver.teardown(ctx.services, ctx.secrets, run_id=run_id)
    _report(run, json_out)


@app.command()
def revoke(
    config: Path | None = CONFIG_OPTION,
) -> None:
    """Delete every declared secret file. Already-absent files are fine."""
    with fatal_errors():
        ctx = _load(config)
        provisioner = SecretProvisioner()
        for secret in ctx.secrets.values():
            removed = provisioner.revoke(secret)
            status = "[green]removed[/]" if removed else "[dim]already absent[/]"
            console.print(f"  {secret.name}: {status} ({secret.source_path})")
