"""Health verification for started services.

Polling *is* the retry mechanism: ``HealthVerifier.verify`` probes the
service's declared check at its fixed interval until the first success
(``Healthy``) or until the timeout elapses (``Unhealthy``). The wait
before the final poll is shortened so the verdict is returned when the
deadline passes, never an interval later. Probe exceptions count as
failed polls. Every probe is bounded by the time left before the
deadline, so a hanging probe cannot delay the verdict.

Probe kinds:

- ``http``: ``GET target`` with httpx, success on any 2xx
- ``command``: ``engine.exec(container, command)``, success on exit 0
- ``container``: ``engine.health_status(container)`` is ``healthy``
  (``running`` when the image declares no HEALTHCHECK)
"""

from __future__ import annotations

import contextvars
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, as_completed

import httpx

from deployspine.cancellation import CancellationToken
from deployspine.core.errors import OperationCancelled
from deployspine.core.logging import get_logger
from deployspine.engine import ContainerEngine
from deployspine.models import HealthCheckSpec, ServiceSpec
from deployspine.results import HealthState

logger = get_logger(__name__)

PROBE_TIMEOUT = 5.0
MIN_PROBE_TIMEOUT = 0.1
_READY_STATES = frozenset({"healthy", "running"})


class HealthVerifier:
    """Polls readiness probes against an engine and over HTTP."""

    def __init__(
        self,
        engine: ContainerEngine,
        cancel: CancellationToken | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.cancel = cancel or CancellationToken()
        self._owns_http = http_client is None
        self._http: httpx.Client | None = http_client or httpx.Client()
        self._clock = clock

    def __enter__(self) -> HealthVerifier:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_http and self._http is not None:
            self._http.close()
            self._http = None

    def verify(
        self,
        service: ServiceSpec,
        timeout: float,
        container_name: str | None = None,
    ) -> HealthState:
        """Poll ``service``'s health check until success or ``timeout``."""
        check = service.health_check
        if check is None:
            return HealthState.HEALTHY

        container = container_name or service.name
        deadline = self._clock() + timeout
        polls = 0
        while True:
            if self.cancel.cancelled:
                return HealthState.CANCELLED
            polls += 1
            try:
                ok = self._probe(check, container, deadline)
            except OperationCancelled:
                return HealthState.CANCELLED

            if ok:
                logger.info("health.healthy", service=service.name, polls=polls)
                return HealthState.HEALTHY

            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.warning(
                    "health.timeout", service=service.name, timeout=timeout, polls=polls
                )
                return HealthState.UNHEALTHY
            if self.cancel.wait(min(check.interval, remaining)):
                return HealthState.CANCELLED

    def verify_all(
        self,
        services: Iterable[ServiceSpec],
        timeout: float,
        container_names: Mapping[str, str] | None = None,
        max_workers: int | None = None,
    ) -> dict[str, HealthState]:
        """Verify many services concurrently.

        A service's own ``health_check.timeout`` overrides ``timeout``.
        """
        services = list(services)
        if not services:
            return {}
        names = dict(container_names or {})
        states: dict[str, HealthState] = {}
        workers = max_workers or len(services)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="health") as executor:
            futures: dict[Future[HealthState], str] = {}
            for spec in services:
                per_service = timeout
                if spec.health_check is not None and spec.health_check.timeout is not None:
                    per_service = spec.health_check.timeout
                ctx = contextvars.copy_context()
                future = executor.submit(
                    ctx.run, self.verify, spec, per_service, names.get(spec.name)
                )
                futures[future] = spec.name
            for future in as_completed(futures):
                states[futures[future]] = future.result()
        return states

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    def _probe(self, check: HealthCheckSpec, container: str, deadline: float) -> bool:
        budget = self._budget(deadline)
        try:
            if check.kind == "http":
                return self._probe_http(check.target, budget)
            if check.kind == "command":
                return self.engine.exec(container, check.command, timeout=budget) == 0
            return self.engine.health_status(container, timeout=budget) in _READY_STATES
        except OperationCancelled:
            raise
        except Exception as e:
            logger.debug("health.probe_failed", container=container, kind=check.kind, error=str(e))
            return False

    def _budget(self, deadline: float) -> float:
        """Time one probe may take: never past the health deadline."""
        return max(MIN_PROBE_TIMEOUT, min(PROBE_TIMEOUT, deadline - self._clock()))

    def _probe_http(self, url: str, budget: float) -> bool:
        if self._http is None:
            raise RuntimeError("HealthVerifier is closed")
        response = self._http.get(url, timeout=budget)
        return response.is_success


__all__ = ["HealthVerifier"]
