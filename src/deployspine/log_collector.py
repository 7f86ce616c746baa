"""Run artifacts: captured container logs, JSON summary and HTML report.

Each run writes into its own directory so CI can archive it as-is::

    {artifacts_dir}/{run_id}/
        summary.json          DeploymentRun as JSON
        report.html           single file, inline CSS
        services/{name}.log   tail of every Failed/Unhealthy container

Log capture goes through the ``ContainerEngine`` protocol, so the fake
engine used in tests produces artifacts too.
"""

from __future__ import annotations

import html
from datetime import UTC, datetime
from itertools import groupby
from pathlib import Path

from deployspine.core.errors import EngineError, OperationCancelled
from deployspine.core.logging import get_logger
from deployspine.engine import ContainerEngine
from deployspine.results import BuildReport, DeploymentRun, ServiceResult

logger = get_logger(__name__)

DEFAULT_TAIL = 200

_GOOD, _WARN, _BAD, _IDLE = "good", "warn", "bad", "idle"

_TONE = {
    "Success": _GOOD,
    "Healthy": _GOOD,
    "Stopped": _GOOD,
    "Built": _GOOD,
    "Pushed": _GOOD,
    "PartialFailure": _WARN,
    "Starting": _WARN,
    "Unhealthy": _BAD,
    "Failed": _BAD,
}

_CSS = """
body { font: 14px/1.5 system-ui, sans-serif; margin: 2rem auto; max-width: 72rem; color: #1f2933; }
header { border-left: 6px solid var(--tone); padding: .5rem 1rem; margin-bottom: 1.5rem; }
h2 { font-size: 1rem; margin: 1.5rem 0 .5rem; color: #52606d; }
table { border-collapse: collapse; width: 100%; }
th, td { text-align: left; padding: .35rem .6rem; border-bottom: 1px solid #e4e7eb; }
th { font-weight: 600; color: #52606d; }
code { font-size: 12px; }
.good { --tone: #2f9e44; color: #2f9e44; }
.warn { --tone: #e8590c; color: #e8590c; }
.bad { --tone: #c92a2a; color: #c92a2a; }
.idle { --tone: #868e96; color: #868e96; }
header.good, header.warn, header.bad, header.idle { color: inherit; }
footer { margin-top: 2rem; color: #868e96; font-size: 12px; }
"""


def _tone(value: str) -> str:
    return _TONE.get(value, _IDLE)


def _esc(value: object) -> str:
    return html.escape("" if value is None else str(value))


class LogCollector:
    """Writes the artifacts of one run under ``output_dir/run_id``."""

    def __init__(self, output_dir: Path, run_id: str) -> None:
        self.run_id = run_id
        self.run_dir = Path(output_dir) / run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)

    def capture_service_logs(
        self,
        engine: ContainerEngine,
        container_name: str,
        service_name: str,
        tail: int = DEFAULT_TAIL,
    ) -> Path:
        """Save the last ``tail`` log lines of a container to ``services/{service}.log``.

        Engine failures are written into the file instead of raised; a
        missing log never changes the run's verdict.
        """
        try:
            text = engine.logs(container_name, tail=tail)
        except (EngineError, OperationCancelled) as e:
            text = f"Failed to collect logs from {container_name}: {e}\n"

        services_dir = self.run_dir / "services"
        services_dir.mkdir(exist_ok=True)
        path = services_dir / f"{service_name}.log"
        path.write_text(text, encoding="utf-8")
        logger.debug("logs.captured", service=service_name, path=str(path))
        return path

    def write_summary(self, run: DeploymentRun) -> Path:
        path = self.run_dir / "summary.json"
        path.write_text(run.model_dump_json(indent=2), encoding="utf-8")
        logger.info("summary.written", path=str(path))
        return path

    def write_html_report(self, run: DeploymentRun) -> Path:
        path = self.run_dir / "report.html"
        path.write_text(render_report(run), encoding="utf-8")
        logger.info("report.written", path=str(path))
        return path


def render_report(run: DeploymentRun) -> str:
    """Render ``run`` as a self-contained HTML page. All values are escaped."""
    verdict = run.verdict.value if run.verdict else "Pending"
    sections = [_services_section(run.services)]
    if run.build is not None and run.build.images:
        sections.append(_images_section(run.build))
    resources = [
        ("Networks", run.networks),
        ("Volumes", run.volumes),
        ("Secrets", run.secrets),
    ]
    listed = [f"<li>{label}: {_esc(', '.join(names))}</li>" for label, names in resources if names]
    if listed:
        sections.append("<h2>Resources</h2><ul>" + "".join(listed) + "</ul>")

    error = f"<p class='bad'>{_esc(run.error)}</p>" if run.error else ""
    return (
        "<!DOCTYPE html>\n"
        "<html lang='en'><head><meta charset='utf-8'>"
        f"<title>deploy-spine {_esc(run.mode)} {_esc(run.run_id)}</title>"
        f"<style>{_CSS}</style></head><body>"
        f"<header class='{_tone(verdict)}'>"
        f"<h1 class='{_tone(verdict)}'>{_esc(verdict)}</h1>"
        f"<p>{_esc(run.summary)}</p>{error}"
        f"<p><code>run {_esc(run.run_id)}</code> &middot; mode {_esc(run.mode)}"
        f" &middot; started {_esc(run.started_at)} &middot; {run.duration_seconds:.1f}s</p>"
        "</header>"
        + "".join(sections)
        + f"<footer>generated {datetime.now(UTC).isoformat()}</footer>"
        "</body></html>\n"
    )


def _services_section(services: list[ServiceResult]) -> str:
    rows = []
    ordered = sorted(services, key=lambda s: (s.wave is None, s.wave or 0, s.service))
    for wave, members in groupby(ordered, key=lambda s: s.wave):
        label = "no wave" if wave is None else f"wave {wave}"
        rows.append(f"<tr><th colspan='5'>{label}</th></tr>")
        for s in members:
            logs = ""
            if s.logs_path:
                logs = f"<a href='services/{_esc(Path(s.logs_path).name)}'>logs</a>"
            rows.append(
                "<tr>"
                f"<td>{_esc(s.service)}</td>"
                f"<td class='{_tone(s.state.value)}'>{_esc(s.state.value)}</td>"
                f"<td><code>{_esc(s.image)}</code></td>"
                f"<td>{'changed' if s.changed else ''}</td>"
                f"<td>{_esc(s.error)} {logs}</td>"
                "</tr>"
            )
    return "<h2>Services</h2><table>" + "".join(rows) + "</table>"


def _images_section(report: BuildReport) -> str:
    rows = [
        "<tr>"
        f"<td><code>{_esc(i.image)}</code></td>"
        f"<td class='{_tone(i.status.value)}'>{_esc(i.status.value)}</td>"
        f"<td>{i.push_attempts or ''}</td>"
        f"<td>{i.duration_seconds:.1f}s</td>"
        f"<td>{_esc(i.error)}</td>"
        "</tr>"
        for i in report.images
    ]
    head = "<tr><th>image</th><th>status</th><th>push attempts</th><th>time</th><th>error</th></tr>"
    return "<h2>Images</h2><table>" + head + "".join(rows) + "</table>"


__all__ = ["LogCollector", "render_report"]
