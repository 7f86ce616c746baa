"""Image building and publishing.

``ImageBuilder`` wraps the engine's build and push operations with the
policies a deployment needs:

- builds of independent images run concurrently on a bounded
  ``ThreadPoolExecutor``;
- one image failing never aborts its siblings; ``build_all`` returns a
  ``BuildReport`` where partial success is representable;
- builds are never retried (deterministic given their inputs);
- pushes are retried on transient engine errors with exponential backoff.

Example::

    builder = ImageBuilder(engine, max_workers=4)
    report = builder.build_all(specs, push=True, credentials=creds)
    if report.failed:
        print("failed:", sorted(report.failed))
"""

from __future__ import annotations

import contextvars
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass

from deployspine.cancellation import CancellationToken
from deployspine.core.errors import (
    BuildError,
    EngineError,
    OperationCancelled,
    PushError,
    error_detail,
    is_retryable,
)
from deployspine.core.logging import get_logger
from deployspine.engine import ContainerEngine, RegistryCredentials
from deployspine.models import ImageSpec
from deployspine.results import BuildReport, ImageResult, ImageStatus

logger = get_logger(__name__)


def default_max_workers() -> int:
    return min(32, (os.cpu_count() or 1) + 4)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule for pushes.

    ``max_retries`` counts *extra* attempts after the first one.
    """

    max_retries: int = 3
    initial_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 30.0

    def delay(self, retry: int) -> float:
        """Seconds to wait before retry number ``retry`` (1-based)."""
        raw = self.initial_delay_seconds * (self.backoff_multiplier ** (retry - 1))
        return min(raw, self.max_delay_seconds)


@dataclass(frozen=True)
class ImageHandle:
    """A successfully built image."""

    spec: ImageSpec
    image_id: str = ""

    @property
    def ref(self) -> str:
        return self.spec.ref


class ImageBuilder:
    """Builds and pushes images through a ``ContainerEngine``."""

    def __init__(
        self,
        engine: ContainerEngine,
        max_workers: int | None = None,
        retry_policy: RetryPolicy | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.engine = engine
        self.max_workers = max_workers or default_max_workers()
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel = cancel or CancellationToken()

    def build(self, spec: ImageSpec) -> ImageHandle:
        """Build one image. Raises ``BuildError``; never retried."""
        self.cancel.raise_if_cancelled()
        logger.info("image.build_started", image=spec.ref, context=str(spec.build_context))
        try:
            image_id = self.engine.build(spec.build_context, spec.ref, spec.dockerfile)
        except EngineError as e:
            raise BuildError(spec.ref, e.detail or e.message, cause=e) from e
        return ImageHandle(spec=spec, image_id=image_id or "")

    def push(self, handle: ImageHandle, credentials: RegistryCredentials | None = None) -> int:
        """Publish ``handle``; returns the number of attempts it took.

        Logs in first when ``credentials`` are given. Transient engine errors
        are retried per ``retry_policy``; anything else fails immediately.

        Raises:
            PushError: login failed, a permanent error occurred, or retries
                were exhausted.
        """
        if credentials is not None:
            self._login(credentials, handle.ref)

        policy = self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            self.cancel.raise_if_cancelled()
            try:
                self.engine.push(handle.ref)
                return attempt
            except EngineError as e:
                retries_used = attempt - 1
                if not is_retryable(e) or retries_used >= policy.max_retries:
                    raise PushError(
                        handle.ref, e.detail or e.message, attempts=attempt, cause=e
                    ) from e
                delay = policy.delay(attempt)
                logger.warning(
                    "image.push_retry",
                    image=handle.ref,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=e.detail or e.message,
                )
                if self.cancel.wait(delay):
                    raise OperationCancelled(self.cancel.reason) from e

    def build_all(
        self,
        specs: list[ImageSpec],
        push: bool = False,
        credentials: RegistryCredentials | None = None,
    ) -> BuildReport:
        """Build (and optionally push) every image concurrently.

        Returns a ``BuildReport`` in the order of ``specs``; duplicate refs
        are built once.
        """
        unique: dict[str, ImageSpec] = {}
        for spec in specs:
            unique.setdefault(spec.ref, spec)
        if not unique:
            return BuildReport()

        login_error: str | None = None
        if push and credentials is not None and any(s.push for s in unique.values()):
            try:
                self._login(credentials, None)
            except PushError as e:
                login_error = e.detail or e.message

        logger.info(
            "build.started",
            images=len(unique),
            push=push,
            max_workers=self.max_workers,
        )

        results: dict[str, ImageResult] = {}
        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="build"
        ) as executor:
            futures: dict[Future[ImageResult], str] = {}
            for ref, spec in unique.items():
                ctx = contextvars.copy_context()
                future = executor.submit(ctx.run, self._build_one, spec, push, login_error)
                futures[future] = ref
            for future in as_completed(futures):
                results[futures[future]] = future.result()

        report = BuildReport(images=[results[ref] for ref in unique])
        logger.info(
            "build.completed",
            succeeded=len(report.succeeded),
            failed=sorted(report.failed),
        )
        return report

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _login(self, credentials: RegistryCredentials, ref: str | None) -> None:
        try:
            self.engine.login(credentials)
        except EngineError as e:
            raise PushError(
                ref or credentials.registry or "registry",
                f"registry login failed: {e.detail or e.message}",
                attempts=0,
                cause=e,
            ) from e

    def _build_one(self, spec: ImageSpec, push: bool, login_error: str | None) -> ImageResult:
        started = time.monotonic()
        if self.cancel.cancelled:
            return ImageResult(image=spec.ref, status=ImageStatus.CANCELLED, error="cancelled")

        try:
            handle = self.build(spec)
        except OperationCancelled:
            return self._result(spec, ImageStatus.CANCELLED, started, error="cancelled")
        except BuildError as e:
            logger.error("image.build_failed", image=spec.ref, error=e.detail)
            return self._result(spec, ImageStatus.FAILED, started, error=e.message)

        if not (push and spec.push):
            return self._result(spec, ImageStatus.BUILT, started, image_id=handle.image_id)

        if login_error:
            logger.error("image.push_failed", image=spec.ref, error=login_error)
            return self._result(
                spec,
                ImageStatus.FAILED,
                started,
                image_id=handle.image_id,
                error=f"Push failed for {spec.ref}: {login_error}",
            )

        try:
            attempts = self.push(handle)
        except OperationCancelled:
            return self._result(
                spec, ImageStatus.CANCELLED, started, image_id=handle.image_id, error="cancelled"
            )
        except PushError as e:
            logger.error("image.push_failed", image=spec.ref, attempts=e.attempts, error=e.detail)
            return self._result(
                spec,
                ImageStatus.FAILED,
                started,
                image_id=handle.image_id,
                push_attempts=e.attempts,
                error=error_detail(e),
            )
        return self._result(
            spec, ImageStatus.PUSHED, started, image_id=handle.image_id, push_attempts=attempts
        )

    @staticmethod
    def _result(
        spec: ImageSpec,
        status: ImageStatus,
        started: float,
        image_id: str | None = None,
        push_attempts: int = 0,
        error: str | None = None,
    ) -> ImageResult:
        return ImageResult(
            image=spec.ref,
            status=status,
            image_id=image_id or None,
            push_attempts=push_attempts,
            duration_seconds=round(time.monotonic() - started, 3),
            error=error,
        )


__all__ = ["ImageBuilder", "ImageHandle", "RetryPolicy", "default_max_workers"]
