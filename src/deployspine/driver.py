"""Deployment driver: realizes a plan against a live container engine.

``DeploymentDriver`` ties the components together for one run::

    plan (TopologyPlanner)
      -> build/push images (ImageBuilder)           [optional]
      -> ensure networks + volumes                   fatal on failure
      -> provision secrets in wave order             fatal on failure
      -> start each wave concurrently, wave by wave  isolated per service
      -> verify health of started services           isolated per service
      -> revoke secrets when cleanup_secrets         always, even on failure
      -> verdict

Re-running against unchanged input is a no-op: networks and volumes are
only created when absent, secret files are rewritten only when their
content or mode differ, and a running container whose
``deployspine.config-hash`` label matches the desired configuration is
left alone (``ServiceResult.changed is False``).

A service is never started before all of its dependencies reached
``Starting``; a service whose image failed, or any of whose dependencies
did not start, is marked ``Failed`` without touching the engine.
Independent services in the same wave are still attempted.

The overall ``deploy_timeout`` trips the run's ``CancellationToken``;
in-flight work stops and the run's verdict is ``Failed``. An operator
cancel (SIGINT/SIGTERM in the CLI) trips the same token and marks
unfinished services ``Cancelled``.

Example::

    with DeploymentDriver(DockerEngine(), project="shop", cleanup_secrets=True) as driver:
        run = driver.run(services, secrets, {"db_password": "s3cr3t"})
    sys.exit(run.verdict.exit_code)
"""

from __future__ import annotations

import contextvars
import threading
import uuid
from collections.abc import Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait

from deployspine.cancellation import CancellationToken
from deployspine.core.errors import (
    ConfigError,
    EngineError,
    HealthTimeoutError,
    InfrastructureError,
    OperationCancelled,
    SecretIOError,
    StartError,
    error_detail,
)
from deployspine.core.logging import LogContext, get_logger
from deployspine.engine import (
    CONFIG_HASH_LABEL,
    LABEL_PREFIX,
    ContainerEngine,
    RegistryCredentials,
    ServiceLaunch,
)
from deployspine.health import HealthVerifier
from deployspine.images import ImageBuilder, RetryPolicy, default_max_workers
from deployspine.log_collector import LogCollector
from deployspine.models import SecretRef, ServiceSpec
from deployspine.planner import DeploymentPlan, TopologyPlanner
from deployspine.results import (
    BuildReport,
    DeploymentRun,
    HealthState,
    ImageStatus,
    ServiceResult,
    ServiceState,
)
from deployspine.secrets import SecretProvisioner

logger = get_logger(__name__)

DEADLINE_REASON = "deployment timed out"


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class DeploymentDriver:
    """Drives services to a running, verified state.

    Parameters
    ----------
    engine
        Container engine collaborator.
    project
        Prefix for container names (``{project}-{service}``) and the
        ``deployspine.project`` label.
    cleanup_secrets
        Revoke every secret provisioned by the run once verification
        completes, regardless of outcome.
    max_workers
        Bound for the build, start and health worker pools.
    health_timeout
        Default per-service health timeout in seconds.
    deploy_timeout
        Overall deadline for one run in seconds.
    log_collector
        When given, logs of Failed/Unhealthy services and the run summary
        are written under its run directory.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        *,
        project: str = "deployspine",
        cleanup_secrets: bool = False,
        max_workers: int | None = None,
        health_timeout: float = 60.0,
        deploy_timeout: float = 900.0,
        push_retries: int = 3,
        cancel: CancellationToken | None = None,
        provisioner: SecretProvisioner | None = None,
        planner: TopologyPlanner | None = None,
        builder: ImageBuilder | None = None,
        verifier: HealthVerifier | None = None,
        log_collector: LogCollector | None = None,
    ) -> None:
        self.engine = engine
        self.project = project
        self.cleanup_secrets = cleanup_secrets
        self.max_workers = max_workers or default_max_workers()
        self.health_timeout = health_timeout
        self.deploy_timeout = deploy_timeout
        self.cancel = cancel or CancellationToken()
        self.provisioner = provisioner or SecretProvisioner()
        self.planner = planner or TopologyPlanner()
        self.builder = builder or ImageBuilder(
            engine,
            max_workers=self.max_workers,
            retry_policy=RetryPolicy(max_retries=push_retries),
            cancel=self.cancel,
        )
        self._owns_verifier = verifier is None
        self.verifier = verifier or HealthVerifier(engine, cancel=self.cancel)
        self.log_collector = log_collector
        self._lock = threading.Lock()

    def __enter__(self) -> DeploymentDriver:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        """Release the HTTP client of a verifier this driver created."""
        if self._owns_verifier:
            self.verifier.close()

    def container_name(self, service: str) -> str:
        return f"{self.project}-{service}"

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def run(
        self,
        services: Iterable[ServiceSpec],
        secrets: Mapping[str, SecretRef],
        secret_values: Mapping[str, str],
        *,
        build: bool = True,
        push: bool = False,
        credentials: RegistryCredentials | None = None,
        run_id: str | None = None,
    ) -> DeploymentRun:
        """Plan, build and apply ``services``; returns the finished run.

        Raises:
            ConfigError: invalid topology (unknown dependency, duplicate
                name, undeclared secret). Nothing is applied.
            CycleError: the dependency graph has a cycle. Nothing is applied.
        """
        plan = self.planner.plan(services, secrets)
        run = DeploymentRun(run_id=run_id or new_run_id(), mode="deploy")

        with LogContext(run_id=run.run_id), self._deadline():
            logger.info(
                "deploy.started",
                project=self.project,
                waves=len(plan.waves),
                services=len(plan.services),
            )
            report: BuildReport | None = None
            if build:
                images = [s.built_image for s in plan.services if s.built_image is not None]
                if images:
                    report = self.builder.build_all(images, push=push, credentials=credentials)
                    run.build = report
            self._apply(plan, secret_values, report, run)
            self._finish(run)
        return run

    def apply(
        self,
        plan: DeploymentPlan,
        secret_values: Mapping[str, str],
        build_report: BuildReport | None = None,
        run_id: str | None = None,
    ) -> DeploymentRun:
        """Apply an already computed plan (images assumed built)."""
        run = DeploymentRun(run_id=run_id or new_run_id(), mode="deploy", build=build_report)
        with LogContext(run_id=run.run_id), self._deadline():
            logger.info("deploy.started", project=self.project, waves=len(plan.waves))
            self._apply(plan, secret_values, build_report, run)
            self._finish(run)
        return run

    def check_health(
        self,
        services: Iterable[ServiceSpec],
        secrets: Mapping[str, SecretRef] | None = None,
        run_id: str | None = None,
    ) -> DeploymentRun:
        """Verify health of already running services without changing anything."""
        plan = self.planner.plan(services, secrets)
        run = DeploymentRun(run_id=run_id or new_run_id(), mode="check-health")
        for index, wave in enumerate(plan.waves, start=1):
            for spec in wave:
                run.services.append(
                    ServiceResult(service=spec.name, wave=index, image=spec.image_ref)
                )

        with LogContext(run_id=run.run_id), self._deadline():
            logger.info("health.check_started", services=len(run.services))
            for spec in plan.services:
                result = run.service(spec.name)
                try:
                    status = self.engine.service_status(self.container_name(spec.name))
                except (EngineError, OperationCancelled) as e:
                    result.advance(ServiceState.FAILED, error=error_detail(e))
                    continue
                if not status.running:
                    result.advance(
                        ServiceState.FAILED,
                        error=f"container {self.container_name(spec.name)} is {status.state}",
                    )
                    continue
                result.container_id = status.container_id
                result.advance(ServiceState.STARTING)
            self._verify(plan, run)
            self._finish(run)
        return run

    def teardown(
        self,
        services: Iterable[ServiceSpec],
        secrets: Mapping[str, SecretRef] | None = None,
        run_id: str | None = None,
    ) -> DeploymentRun:
        """Stop services in reverse wave order (dependents before dependencies)."""
        plan = self.planner.plan(services, secrets)
        run = DeploymentRun(run_id=run_id or new_run_id(), mode="down")
        for index, wave in enumerate(plan.waves, start=1):
            for spec in wave:
                run.services.append(
                    ServiceResult(service=spec.name, wave=index, image=spec.image_ref)
                )

        with LogContext(run_id=run.run_id), self._deadline():
            logger.info("teardown.started", services=len(run.services))
            with self._pool() as executor:
                for wave in reversed(plan.waves):
                    if self.cancel.cancelled:
                        break
                    futures = [
                        self._submit(executor, self._stop_one, spec, run.service(spec.name))
                        for spec in wave
                    ]
                    wait(futures)
                    for future in futures:
                        future.result()
            for result in run.services:
                if result.state == ServiceState.PENDING:
                    result.advance(self._interrupted_state(), error=self._interrupted_reason())
            self._finish(run)
        return run

    # ------------------------------------------------------------------
    # Apply steps
    # ------------------------------------------------------------------

    def _apply(
        self,
        plan: DeploymentPlan,
        secret_values: Mapping[str, str],
        report: BuildReport | None,
        run: DeploymentRun,
    ) -> None:
        for index, wave in enumerate(plan.waves, start=1):
            for spec in wave:
                run.services.append(
                    ServiceResult(service=spec.name, wave=index, image=spec.image_ref)
                )

        try:
            self._ensure_infrastructure(plan, run)
            self._provision_secrets(plan, secret_values, run)
        except (InfrastructureError, SecretIOError, ConfigError) as e:
            logger.error("deploy.aborted", error=e.message, category=e.category.value)
            run.error = e.message
            self._fail_pending(run, f"not started: {e.message}")
            self._cleanup_secrets(plan, run)
            return
        except OperationCancelled:
            self._mark_interrupted(run)
            self._cleanup_secrets(plan, run)
            return

        try:
            self._start_waves(plan, report, run)
            self._verify(plan, run)
        finally:
            self._cleanup_secrets(plan, run)

    def _ensure_infrastructure(self, plan: DeploymentPlan, run: DeploymentRun) -> None:
        """Create missing networks and volumes. Existing ones are success."""
        for network in plan.networks:
            self.cancel.raise_if_cancelled()
            try:
                if not self.engine.network_exists(network.name):
                    self.engine.create_network(network.name)
                    logger.info("network.created", network=network.name)
                else:
                    logger.debug("network.exists", network=network.name)
            except EngineError as e:
                raise InfrastructureError(
                    f"Network {network.name!r} could not be created: {e.detail or e.message}",
                    context={"network": network.name},
                    cause=e,
                ) from e
            run.networks.append(network.name)

        for volume in plan.volumes:
            self.cancel.raise_if_cancelled()
            try:
                if not self.engine.volume_exists(volume.name):
                    self.engine.create_volume(volume.name)
                    logger.info("volume.created", volume=volume.name)
                else:
                    logger.debug("volume.exists", volume=volume.name)
            except EngineError as e:
                raise InfrastructureError(
                    f"Volume {volume.name!r} could not be created: {e.detail or e.message}",
                    context={"volume": volume.name},
                    cause=e,
                ) from e
            run.volumes.append(volume.name)

    def _provision_secrets(
        self,
        plan: DeploymentPlan,
        secret_values: Mapping[str, str],
        run: DeploymentRun,
    ) -> None:
        for secret in plan.secrets:
            self.cancel.raise_if_cancelled()
            value = secret_values.get(secret.name)
            if value is None:
                raise ConfigError(
                    f"No value for secret {secret.name!r} (set {secret.value_env})",
                    context={"secret": secret.name},
                )
            self.provisioner.provision(secret, value)
            run.secrets.append(secret.name)

    def _start_waves(
        self,
        plan: DeploymentPlan,
        report: BuildReport | None,
        run: DeploymentRun,
    ) -> None:
        secret_map = plan.secret_map
        with self._pool() as executor:
            for index, wave in enumerate(plan.waves, start=1):
                if self.cancel.cancelled:
                    break

                futures: list[Future[None]] = []
                for spec in wave:
                    result = run.service(spec.name)
                    blocked = self._blocked_reason(spec, report, run)
                    if blocked is not None:
                        state, reason = blocked
                        result.advance(state, error=reason)
                        logger.warning("service.skipped", service=spec.name, reason=reason)
                        continue
                    image_id = None
                    if report is not None and spec.built_image is not None:
                        image_result = report.get(spec.image_ref)
                        image_id = image_result.image_id if image_result else None
                    futures.append(
                        self._submit(
                            executor, self._start_one, spec, result, secret_map, image_id
                        )
                    )

                # the next wave may depend on this one's network attachment
                wait(futures)
                for future in futures:
                    future.result()
                logger.info(
                    "wave.started",
                    wave=index,
                    services=[s.name for s in wave],
                    started=[
                        s.name for s in wave if run.service(s.name).state == ServiceState.STARTING
                    ],
                )

        self._mark_interrupted(run)

    def _blocked_reason(
        self,
        spec: ServiceSpec,
        report: BuildReport | None,
        run: DeploymentRun,
    ) -> tuple[ServiceState, str] | None:
        if self.cancel.cancelled:
            return self._interrupted_state(), self._interrupted_reason()

        if report is not None and spec.built_image is not None:
            image = report.get(spec.image_ref)
            if image is not None and not image.ok:
                if image.status == ImageStatus.CANCELLED:
                    return self._interrupted_state(), self._interrupted_reason()
                return ServiceState.FAILED, f"image {spec.image_ref} failed: {image.error}"

        for dep in sorted(spec.depends_on):
            dep_result = run.service(dep)
            if dep_result is None or dep_result.state != ServiceState.STARTING:
                return ServiceState.FAILED, f"dependency {dep!r} failed"
        return None

    def _start_one(
        self,
        spec: ServiceSpec,
        result: ServiceResult,
        secret_map: dict[str, SecretRef],
        image_id: str | None,
    ) -> None:
        name = self.container_name(spec.name)
        config_hash = spec.config_hash(secret_map, image_id=image_id)
        try:
            self.cancel.raise_if_cancelled()
            status = self.engine.service_status(name)
            if status.running and status.config_hash == config_hash:
                result.container_id = status.container_id
                result.changed = False
                logger.info("service.unchanged", service=spec.name, container=name)
            else:
                if status.exists:
                    logger.info(
                        "service.replacing",
                        service=spec.name,
                        state=status.state,
                        drifted=status.config_hash != config_hash,
                    )
                    self.engine.stop_service(name)
                result.container_id = self.engine.start_service(
                    self._launch(spec, secret_map, config_hash)
                )
                result.changed = True
                logger.info("service.started", service=spec.name, container=name)
        except OperationCancelled:
            with self._lock:
                result.advance(self._interrupted_state(), error=self._interrupted_reason())
            return
        except EngineError as e:
            error = StartError(spec.name, e.detail or e.message, cause=e)
            logger.error("service.start_failed", service=spec.name, error=error.detail)
            with self._lock:
                result.advance(ServiceState.FAILED, error=error.message)
            self._capture_logs(spec.name, result)
            return

        with self._lock:
            result.advance(ServiceState.STARTING)

    def _launch(
        self,
        spec: ServiceSpec,
        secret_map: dict[str, SecretRef],
        config_hash: str,
    ) -> ServiceLaunch:
        mounts = tuple(
            sorted(
                (str(secret_map[s].source_path), secret_map[s].mount_path)
                for s in spec.referenced_secrets()
            )
        )
        return ServiceLaunch(
            container_name=self.container_name(spec.name),
            image=spec.image_ref,
            networks=tuple(sorted(n.name for n in spec.networks)),
            environment=spec.resolved_environment(secret_map),
            volumes=dict(sorted(spec.volumes.items())),
            secret_mounts=mounts,
            ports=spec.ports,
            command=spec.command,
            aliases=(spec.name,),
            labels={
                f"{LABEL_PREFIX}.project": self.project,
                f"{LABEL_PREFIX}.service": spec.name,
                CONFIG_HASH_LABEL: config_hash,
            },
        )

    def _verify(self, plan: DeploymentPlan, run: DeploymentRun) -> None:
        started = [
            spec
            for spec in plan.services
            if run.service(spec.name).state == ServiceState.STARTING
        ]
        if not started:
            return

        states = self.verifier.verify_all(
            started,
            self.health_timeout,
            container_names={s.name: self.container_name(s.name) for s in started},
            max_workers=self.max_workers,
        )
        for spec in started:
            result = run.service(spec.name)
            state = states[spec.name]
            if state == HealthState.HEALTHY:
                result.advance(ServiceState.HEALTHY)
            elif state == HealthState.UNHEALTHY:
                timeout = self.health_timeout
                if spec.health_check is not None and spec.health_check.timeout is not None:
                    timeout = spec.health_check.timeout
                result.advance(
                    ServiceState.UNHEALTHY,
                    error=HealthTimeoutError(spec.name, timeout).message,
                )
                self._capture_logs(spec.name, result)
            else:
                result.advance(self._interrupted_state(), error=self._interrupted_reason())

    def _stop_one(self, spec: ServiceSpec, result: ServiceResult) -> None:
        name = self.container_name(spec.name)
        try:
            self.cancel.raise_if_cancelled()
            self.engine.stop_service(name)
        except OperationCancelled:
            with self._lock:
                result.advance(self._interrupted_state(), error=self._interrupted_reason())
            return
        except EngineError as e:
            logger.error("service.stop_failed", service=spec.name, error=e.detail or e.message)
            with self._lock:
                result.advance(ServiceState.FAILED, error=error_detail(e))
            return
        logger.info("service.stopped", service=spec.name, container=name)
        with self._lock:
            result.advance(ServiceState.STOPPED)

    def _cleanup_secrets(self, plan: DeploymentPlan, run: DeploymentRun) -> None:
        if not self.cleanup_secrets:
            return
        secret_map = plan.secret_map
        for handle in self.provisioner.provisioned:
            secret = secret_map.get(handle.name)
            if secret is None:
                continue
            try:
                self.provisioner.revoke(secret)
            except SecretIOError as e:
                logger.error("secret.revoke_failed", secret=handle.name, error=e.message)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="driver")

    @staticmethod
    def _submit(executor: ThreadPoolExecutor, fn, *args) -> Future:
        ctx = contextvars.copy_context()
        return executor.submit(ctx.run, fn, *args)

    def _deadline(self) -> _Deadline:
        return _Deadline(self.cancel, self.deploy_timeout)

    @property
    def _timed_out(self) -> bool:
        return self.cancel.cancelled and self.cancel.reason == DEADLINE_REASON

    def _interrupted_state(self) -> ServiceState:
        return ServiceState.FAILED if self._timed_out else ServiceState.CANCELLED

    def _interrupted_reason(self) -> str:
        return self.cancel.reason or "cancelled"

    def _fail_pending(self, run: DeploymentRun, reason: str) -> None:
        for result in run.services:
            if result.state == ServiceState.PENDING:
                result.advance(ServiceState.FAILED, error=reason)

    def _mark_interrupted(self, run: DeploymentRun) -> None:
        if not self.cancel.cancelled:
            return
        for result in run.services:
            if result.state == ServiceState.PENDING:
                result.advance(self._interrupted_state(), error=self._interrupted_reason())

    def _capture_logs(self, service: str, result: ServiceResult) -> None:
        if self.log_collector is None:
            return
        path = self.log_collector.capture_service_logs(
            self.engine, self.container_name(service), service
        )
        result.logs_path = str(path)

    def _finish(self, run: DeploymentRun) -> None:
        if self.cancel.cancelled:
            if self._timed_out:
                run.error = run.error or f"{DEADLINE_REASON} after {self.deploy_timeout:g}s"
            else:
                run.cancelled = True
        run.mark_complete()
        if self.log_collector is not None:
            self.log_collector.write_summary(run)
            self.log_collector.write_html_report(run)
        log = logger.info if run.verdict and run.verdict.exit_code == 0 else logger.warning
        log(
            f"{run.mode}.completed",
            verdict=run.verdict.value if run.verdict else None,
            summary=run.summary,
            error=run.error,
        )


class _Deadline:
    """Trips ``token`` with ``DEADLINE_REASON`` after ``seconds``."""

    def __init__(self, token: CancellationToken, seconds: float) -> None:
        self._token = token
        self._seconds = seconds
        self._timer: threading.Timer | None = None

    def __enter__(self) -> _Deadline:
        if self._seconds and self._seconds > 0:
            self._timer = threading.Timer(self._seconds, self._expire)
            self._timer.daemon = True
            self._timer.start()
        return self

    def __exit__(self, *args: object) -> None:
        if self._timer is not None:
            self._timer.cancel()

    def _expire(self) -> None:
        logger.error("deploy.deadline_exceeded", timeout=self._seconds)
        self._token.cancel(DEADLINE_REASON)


__all__ = ["DEADLINE_REASON", "DeploymentDriver", "new_run_id"]
