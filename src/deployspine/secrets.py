"""Secret provisioning: plaintext files with a strict provision/revoke contract.

Docker-style secrets are a single plaintext file on the host, bind-mounted
read-only into consumers at ``SecretRef.mount_path``. Consumers learn the
*path* through an environment variable (``DB_PASSWORD_FILE``); the value
itself never travels through the environment, the engine's command line,
or the logs.

Manifesto:
    A secrets directory touched by several unrelated steps is global
    mutable state. ``SecretProvisioner`` owns the file for the whole run:
    - **provision** writes atomically with mode ``0600``
    - **revoke** deletes, and is idempotent (absent file is success)
    - **provisioned** records what this run wrote, so cleanup is an
      explicit operation rather than a side effect of task ordering

Examples:
    >>> provisioner = SecretProvisioner()
    >>> handle = provisioner.provision(ref, "s3cr3t")
    >>> handle.changed
    True
    >>> provisioner.provision(ref, "s3cr3t").changed
    False
    >>> provisioner.revoke(ref)
    True
    >>> provisioner.revoke(ref)
    False

Tags:
    secrets, file-permissions, idempotent, provisioning, cleanup
"""

from __future__ import annotations

import os
import stat
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path

from deployspine.core.errors import SecretIOError
from deployspine.core.logging import get_logger
from deployspine.models import SecretRef

logger = get_logger(__name__)

SECRET_FILE_MODE = 0o600
SECRET_DIR_MODE = 0o700


@dataclass(frozen=True)
class SecretHandle:
    """Proof that a secret file exists on disk. Holds no value."""

    name: str
    path: Path
    mount_path: str
    changed: bool = True
    """False when an identical file with restrictive mode was already present."""


class SecretProvisioner:
    """Writes and deletes secret files.

    Thread-safe: the driver may provision from its main thread while
    worker threads read ``provisioned``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._provisioned: dict[str, SecretHandle] = {}

    @property
    def provisioned(self) -> list[SecretHandle]:
        with self._lock:
            return list(self._provisioned.values())

    def provision(self, secret: SecretRef, value: str) -> SecretHandle:
        """Materialize ``value`` at ``secret.source_path`` with mode 0600.

        Raises:
            SecretIOError: the path (or its parent) is not writable.
        """
        path = Path(secret.source_path)
        data = value.encode("utf-8")

        try:
            if self._is_current(path, data):
                handle = SecretHandle(secret.name, path, secret.mount_path, changed=False)
                logger.debug("secret.unchanged", secret=secret.name, path=str(path))
            else:
                self._write(path, data)
                handle = SecretHandle(secret.name, path, secret.mount_path, changed=True)
                logger.info("secret.provisioned", secret=secret.name, path=str(path))
        except OSError as e:
            raise SecretIOError(
                secret.name, f"cannot write {path}: {e.strerror or e}", cause=e
            ) from e

        with self._lock:
            self._provisioned[secret.name] = handle
        return handle

    def revoke(self, secret: SecretRef) -> bool:
        """Delete the secret file.

        Returns True if a file was removed, False if it was already absent.
        Absence is success.

        Raises:
            SecretIOError: the file exists but could not be removed.
        """
        path = Path(secret.source_path)
        try:
            path.unlink()
            removed = True
        except FileNotFoundError:
            removed = False
        except OSError as e:
            raise SecretIOError(
                secret.name, f"cannot remove {path}: {e.strerror or e}", cause=e
            ) from e

        with self._lock:
            self._provisioned.pop(secret.name, None)

        if removed:
            logger.info("secret.revoked", secret=secret.name, path=str(path))
        else:
            logger.debug("secret.already_absent", secret=secret.name, path=str(path))
        return removed

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_current(path: Path, data: bytes) -> bool:
        try:
            st = path.stat()
        except FileNotFoundError:
            return False
        if not stat.S_ISREG(st.st_mode) or stat.S_IMODE(st.st_mode) != SECRET_FILE_MODE:
            return False
        return path.read_bytes() == data

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        parent = path.parent
        if not parent.exists():
            parent.mkdir(parents=True, mode=SECRET_DIR_MODE)
            os.chmod(parent, SECRET_DIR_MODE)

        # mkstemp creates the file 0600 regardless of umask
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=parent)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, SECRET_FILE_MODE)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


__all__ = ["SECRET_FILE_MODE", "SecretHandle", "SecretProvisioner"]
