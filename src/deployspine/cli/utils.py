"""
CLI utility helpers: output formatting and fatal-error handling.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

import typer
from rich.console import Console
from rich.table import Table

from deployspine.core.errors import DeploySpineError
from deployspine.planner import DeploymentPlan
from deployspine.results import DeploymentRun, Verdict

console = Console()
err_console = Console(stderr=True)

FATAL_EXIT_CODE = Verdict.FAILED.exit_code

_STATE_STYLES = {
    "Healthy": "green bold",
    "Stopped": "green",
    "Starting": "yellow",
    "Pending": "dim",
    "Unhealthy": "red",
    "Failed": "red bold",
    "Cancelled": "magenta",
}

_VERDICT_STYLES = {
    Verdict.SUCCESS: "green",
    Verdict.PARTIAL_FAILURE: "yellow",
    Verdict.FAILED: "red",
}


@contextmanager
def fatal_errors() -> Iterator[None]:
    """Turn ``DeploySpineError`` into a red message and exit code 2."""
    try:
        yield
    except DeploySpineError as e:
        err_console.print(f"[bold red]Error[/bold red] ({e.category.value}): {e.message}")
        raise typer.Exit(code=FATAL_EXIT_CODE) from e


# ── Output helpers ───────────────────────────────────────────────────────


def print_plan(plan: DeploymentPlan, project: str) -> None:
    """Pretty-print a DeploymentPlan."""
    table = Table(title=f"Deployment plan: {project}")
    table.add_column("Wave", justify="right")
    table.add_column("Service", style="bold")
    table.add_column("Image")
    table.add_column("Depends on")
    table.add_column("Networks")
    table.add_column("Secrets")

    for index, wave in enumerate(plan.waves, start=1):
        for spec in wave:
            table.add_row(
                str(index),
                spec.name,
                spec.image_ref,
                ", ".join(sorted(spec.depends_on)) or "—",
                ", ".join(sorted(n.name for n in spec.networks)) or "—",
                ", ".join(sorted(spec.referenced_secrets())) or "—",
            )

    console.print(table)
    if plan.networks:
        console.print(f"  networks: {', '.join(n.name for n in plan.networks)}")
    if plan.volumes:
        console.print(f"  volumes:  {', '.join(v.name for v in plan.volumes)}")


def print_run(run: DeploymentRun) -> None:
    """Pretty-print a DeploymentRun."""
    if run.build is not None and run.build.images:
        images = Table(title="Images")
        images.add_column("Image", style="bold")
        images.add_column("Status")
        images.add_column("Attempts", justify="right")
        images.add_column("Error", overflow="fold")
        for image in run.build.images:
            style = "green" if image.ok else "red"
            images.add_row(
                image.image,
                f"[{style}]{image.status.value}[/{style}]",
                str(image.push_attempts or "—"),
                image.error or "",
            )
        console.print(images)

    table = Table(title="Service Status")
    table.add_column("Wave", justify="right")
    table.add_column("Service", style="bold")
    table.add_column("State")
    table.add_column("Changed")
    table.add_column("Container")
    table.add_column("Error", overflow="fold")

    for svc in run.services:
        style = _STATE_STYLES.get(svc.state.value, "white")
        table.add_row(
            str(svc.wave) if svc.wave is not None else "—",
            svc.service,
            f"[{style}]{svc.state.value}[/{style}]",
            "yes" if svc.changed else "—",
            svc.container_id or "—",
            svc.error or "",
        )

    console.print(table)

    if run.verdict is not None:
        style = _VERDICT_STYLES[run.verdict]
        console.print(f"\n[bold {style}]{run.verdict.value}[/] {run.summary}")
    if run.error:
        err_console.print(f"[red]Error: {run.error}[/]")
