"""
Tests for lifecycle/installer.py — validated, atomic handoff to the proxy.

The key property: the runtime location only ever holds a pair that
validates.  Every rejected pair, and every failure between staging and
commit, must leave the previous runtime files byte-identical.
"""
from __future__ import annotations

import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from lifecycle.errors import InstallError, KeyMismatch, Malformed, ValidationFailure
from lifecycle.installer import Installer, RuntimeTarget, make_installer, make_runtime_target
from lifecycle.models import CertificateMaterial


@pytest.fixture()
def target(tmp_path) -> RuntimeTarget:
    return RuntimeTarget(cert_path=tmp_path / "ssl" / "fullchain.pem", key_path=tmp_path / "ssl" / "privkey.pem")


@pytest.fixture()
def installer(validator) -> Installer:
    return Installer(validator)


def _runtime(target: RuntimeTarget) -> tuple[bytes, bytes]:
    return Path(target.cert_path).read_bytes(), Path(target.key_path).read_bytes()


class TestInstall:
    def test_fresh_install(self, installer, target, certs):
        material = certs.public()
        result = installer.install(material, target)

        assert result.installable
        assert _runtime(target) == (material.full_chain, material.private_key)
        assert stat.S_IMODE(os.stat(target.key_path).st_mode) == 0o600
        assert stat.S_IMODE(os.stat(target.cert_path).st_mode) == 0o644

    def test_replaces_previous_pair(self, installer, target, certs):
        installer.install(certs.self_signed(), target)
        material = certs.public()
        installer.install(material, target)
        assert _runtime(target) == (material.full_chain, material.private_key)

    def test_no_temp_files_left(self, installer, target, certs):
        installer.install(certs.public(), target)
        assert sorted(p.name for p in Path(target.cert_path).parent.iterdir()) == ["fullchain.pem", "privkey.pem"]


class TestRejectedMaterial:
    """Nothing that fails validation reaches the runtime location."""

    @pytest.fixture()
    def previous(self, installer, target, certs) -> tuple[bytes, bytes]:
        installer.install(certs.self_signed(), target)
        return _runtime(target)

    def test_mismatched_rsa_pair(self, installer, target, certs, previous):
        with pytest.raises(KeyMismatch):
            installer.install(certs.mismatched(), target)
        assert _runtime(target) == previous

    def test_mismatched_ec_pair(self, installer, target, certs, previous):
        with pytest.raises(KeyMismatch):
            installer.install(certs.mismatched(ec_keys=True), target)
        assert _runtime(target) == previous

    def test_empty_key(self, installer, target, certs, previous):
        good = certs.public()
        with pytest.raises(ValidationFailure):
            installer.install(CertificateMaterial(full_chain=good.full_chain, private_key=b""), target)
        assert _runtime(target) == previous

    def test_garbage_certificate(self, installer, target, certs, previous):
        good = certs.public()
        with pytest.raises(Malformed):
            installer.install(CertificateMaterial(full_chain=b"garbage", private_key=good.private_key), target)
        assert _runtime(target) == previous

    def test_swapped_files(self, installer, target, certs, previous):
        good = certs.public()
        with pytest.raises(Malformed):
            installer.install(CertificateMaterial(full_chain=good.private_key, private_key=good.full_chain), target)
        assert _runtime(target) == previous


class TestAtomicity:
    def test_corrupted_staged_copy_is_discarded(self, installer, target, certs):
        """A write that lands truncated never replaces the runtime pair."""
        previous_material = certs.self_signed()
        installer.install(previous_material, target)
        original_stage = Installer._stage_file

        def truncating_stage(self, path, content, mode):
            return original_stage(self, path, content[: len(content) // 2], mode)

        with patch.object(Installer, "_stage_file", truncating_stage):
            with pytest.raises(InstallError, match="written copy failed validation"):
                installer.install(certs.public(), target)

        assert _runtime(target) == (previous_material.full_chain, previous_material.private_key)
        assert sorted(p.name for p in Path(target.cert_path).parent.iterdir()) == ["fullchain.pem", "privkey.pem"]

    def test_stage_failure_is_install_error(self, installer, target, certs):
        with patch.object(Installer, "_stage_file", side_effect=OSError("read-only file system")):
            with pytest.raises(InstallError, match="cannot write"):
                installer.install(certs.public(), target)
        assert not Path(target.cert_path).exists()

    def test_failed_second_rename_restores_previous_pair(self, installer, target, certs):
        previous_material = certs.self_signed()
        installer.install(previous_material, target)

        from storage import atomic

        real_commit = atomic.commit
        calls = []

        def flaky_commit(temp, path):
            calls.append(path)
            if len(calls) == 2:
                raise OSError("rename failed")
            real_commit(temp, path)

        with patch("lifecycle.installer.commit", side_effect=flaky_commit):
            with pytest.raises(InstallError, match="cannot move"):
                installer.install(certs.public(), target)

        assert _runtime(target) == (previous_material.full_chain, previous_material.private_key)

    def test_unknown_owner_rejected(self, installer, tmp_path, certs):
        target = RuntimeTarget(
            cert_path=tmp_path / "fullchain.pem",
            key_path=tmp_path / "privkey.pem",
            owner="no-such-user-xyz",
        )
        with pytest.raises(InstallError, match="unknown runtime owner"):
            installer.install(certs.public(), target)
        assert not target.cert_path.exists()


class TestInSync:
    def test_identical_copy_in_sync(self, installer, target, certs):
        material = certs.public()
        installer.install(material, target)
        assert installer.is_in_sync(material, target)

    def test_different_copy_not_in_sync(self, installer, target, certs):
        installer.install(certs.self_signed(), target)
        assert not installer.is_in_sync(certs.public(), target)

    def test_missing_copy_not_in_sync(self, installer, target, certs):
        assert not installer.is_in_sync(certs.public(), target)

    def test_identical_but_invalid_copy_not_in_sync(self, installer, target, certs):
        bad = certs.mismatched()
        Path(target.cert_path).parent.mkdir(parents=True)
        Path(target.cert_path).write_bytes(bad.full_chain)
        Path(target.key_path).write_bytes(bad.private_key)
        assert not installer.is_in_sync(bad, target)


def test_factories_read_settings(lifecycle_settings):
    target = make_runtime_target()
    assert str(target.cert_path) == lifecycle_settings.RUNTIME_CERT_PATH
    assert str(target.key_path) == lifecycle_settings.RUNTIME_KEY_PATH
    assert make_installer().validator.public_ca_organization == "Let's Encrypt"
