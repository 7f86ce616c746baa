"""Run-level cancellation shared by every in-flight operation.

A single ``CancellationToken`` is created per run and handed to the image
builder, the driver's start workers, the health verifier and the Docker
CLI wrapper. Operations poll ``cancelled`` between units of work and use
``wait()`` instead of ``time.sleep()`` so a cancel wakes them at once.
"""

from __future__ import annotations

import threading

from deployspine.core.errors import OperationCancelled


class CancellationToken:
    """Thread-safe, one-way cancellation flag with a reason."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""

    def cancel(self, reason: str = "cancelled by operator") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        if timeout <= 0:
            return self._event.is_set()
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self._reason or "cancelled")


__all__ = ["CancellationToken"]
