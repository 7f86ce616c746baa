"""Tests for the secret provisioner: permissions, idempotence, revoke."""

from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from deployspine.core.errors import SecretIOError
from deployspine.models import SecretRef
from deployspine.secrets import SecretProvisioner


def mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


class TestProvision:
    def test_writes_value_with_restrictive_mode(self, db_secret):
        handle = SecretProvisioner().provision(db_secret, "s3cr3t")

        assert handle.changed is True
        assert handle.path == db_secret.source_path
        assert db_secret.source_path.read_text() == "s3cr3t"
        assert mode(db_secret.source_path) == 0o600

    def test_creates_parent_directory_private(self, db_secret):
        SecretProvisioner().provision(db_secret, "s3cr3t")
        assert mode(db_secret.source_path.parent) == 0o700

    def test_identical_content_is_unchanged(self, db_secret):
        provisioner = SecretProvisioner()
        provisioner.provision(db_secret, "s3cr3t")
        before = db_secret.source_path.stat().st_mtime_ns

        handle = provisioner.provision(db_secret, "s3cr3t")

        assert handle.changed is False
        assert db_secret.source_path.stat().st_mtime_ns == before

    def test_new_value_is_rewritten(self, db_secret):
        provisioner = SecretProvisioner()
        provisioner.provision(db_secret, "old")
        handle = provisioner.provision(db_secret, "new")

        assert handle.changed is True
        assert db_secret.source_path.read_text() == "new"

    def test_loose_permissions_are_tightened(self, db_secret):
        provisioner = SecretProvisioner()
        provisioner.provision(db_secret, "s3cr3t")
        os.chmod(db_secret.source_path, 0o644)

        handle = provisioner.provision(db_secret, "s3cr3t")

        assert handle.changed is True
        assert mode(db_secret.source_path) == 0o600

    def test_no_temp_files_left_behind(self, db_secret):
        SecretProvisioner().provision(db_secret, "s3cr3t")
        assert sorted(p.name for p in db_secret.source_path.parent.iterdir()) == [
            "db_password.txt"
        ]

    def test_unwritable_path_raises(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        secret = SecretRef("api_key", blocker / "api_key", "/run/secrets/api_key")

        with pytest.raises(SecretIOError) as exc_info:
            SecretProvisioner().provision(secret, "value")
        assert exc_info.value.secret == "api_key"

    def test_tracks_provisioned_handles(self, db_secret, tmp_path):
        other = SecretRef("api_key", tmp_path / "secrets" / "api_key", "/run/secrets/api_key")
        provisioner = SecretProvisioner()
        provisioner.provision(db_secret, "a")
        provisioner.provision(other, "b")

        assert sorted(h.name for h in provisioner.provisioned) == ["api_key", "db_password"]

    def test_value_never_logged(self, db_secret):
        with capture_logs() as logs:
            provisioner = SecretProvisioner()
            provisioner.provision(db_secret, "hunter2-value")
            provisioner.revoke(db_secret)

        assert logs
        assert "hunter2-value" not in repr(logs)


class TestRevoke:
    def test_removes_file(self, db_secret):
        provisioner = SecretProvisioner()
        provisioner.provision(db_secret, "s3cr3t")

        assert provisioner.revoke(db_secret) is True
        assert not db_secret.source_path.exists()
        assert provisioner.provisioned == []

    def test_absent_file_is_success(self, db_secret):
        assert not db_secret.source_path.exists()
        assert SecretProvisioner().revoke(db_secret) is False

    def test_revoke_twice(self, db_secret):
        provisioner = SecretProvisioner()
        provisioner.provision(db_secret, "s3cr3t")
        provisioner.revoke(db_secret)
        assert provisioner.revoke(db_secret) is False

    def test_directory_in_place_of_file_raises(self, tmp_path):
        target = tmp_path / "secret-dir"
        target.mkdir()
        (target / "child").write_text("x")
        secret = SecretRef("weird", target, "/run/secrets/weird")

        with pytest.raises(SecretIOError):
            SecretProvisioner().revoke(secret)
