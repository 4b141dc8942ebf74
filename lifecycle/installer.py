"""
Installer — ship a validated pair to the location the proxy reads.

install() steps, each a precondition for the next:
  (a) validate the material; refuse anything that is not installable
  (b) stage cert and key as temp files beside their targets
      (cert 0o644, key 0o600, optional chown to the proxy user)
  (c) re-read the staged copies and validate them again
  (d) rename both into place, then validate the installed paths

A failure at (c) removes the temp files and leaves the previous runtime
pair untouched.  A failure at (d) restores the previous bytes.  The runtime
copy is always derived from the store; nothing reads it back as a source.
"""
from __future__ import annotations

import grp
import logging
import os
import pwd
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from lifecycle.errors import InstallError, validation_error
from lifecycle.models import CertificateMaterial, ValidationResult
from lifecycle.validator import PairValidator
from storage.atomic import commit, discard, stage_bytes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuntimeTarget:
    cert_path: Path
    key_path: Path
    owner: Optional[str] = None     # "user" or "user:group"
    cert_mode: int = 0o644
    key_mode: int = 0o600


def _resolve_owner(owner: str) -> Tuple[int, int]:
    user, _, group = owner.partition(":")
    try:
        pw = pwd.getpwnam(user)
        gid = grp.getgrnam(group).gr_gid if group else pw.pw_gid
    except KeyError as exc:
        raise InstallError(f"unknown runtime owner {owner!r}") from exc
    return pw.pw_uid, gid


class Installer:
    def __init__(self, validator: PairValidator) -> None:
        self.validator = validator

    def install(self, material: CertificateMaterial, target: RuntimeTarget) -> ValidationResult:
        # (a)
        result = self.validator.validate(material)
        if not result.installable:
            raise validation_error(result.failure, f"refusing to install: {result.detail}")

        ids = _resolve_owner(target.owner) if target.owner else None

        # (b)
        staged: list[Path] = []
        try:
            cert_tmp = self._stage_file(Path(target.cert_path), material.full_chain, target.cert_mode)
            staged.append(cert_tmp)
            key_tmp = self._stage_file(Path(target.key_path), material.private_key, target.key_mode)
            staged.append(key_tmp)
            if ids is not None:
                for path in staged:
                    os.chown(path, *ids)
        except OSError as exc:
            for path in staged:
                discard(path)
            raise InstallError(f"cannot write runtime material: {exc}") from exc

        # (c)
        staged_result = self.validator.validate_files(cert_tmp, key_tmp)
        if not staged_result.installable:
            for path in staged:
                discard(path)
            raise InstallError(
                f"written copy failed validation ({staged_result.summary()}): {staged_result.detail}"
            )

        # (d) Two renames, so between them the runtime pair is new cert + old
        # key.  A running proxy never reads that state (it only rereads on the
        # reload sent after install returns); a proxy cold start inside the
        # window can.  A failed second rename restores both files.
        backup = self._snapshot(target)
        try:
            commit(cert_tmp, Path(target.cert_path))
            commit(key_tmp, Path(target.key_path))
        except OSError as exc:
            for path in staged:
                discard(path)
            self._restore(target, backup)
            raise InstallError(f"cannot move runtime material into place: {exc}") from exc

        installed = self.validator.validate_files(Path(target.cert_path), Path(target.key_path))
        if not installed.installable:
            self._restore(target, backup)
            raise InstallError(f"installed copy failed validation ({installed.summary()}): {installed.detail}")

        logger.info("Installed certificate to %s and key to %s", target.cert_path, target.key_path)
        return installed

    def is_in_sync(self, material: CertificateMaterial, target: RuntimeTarget) -> bool:
        """True when the runtime copy is byte-identical to *material* and still installable."""
        try:
            cert = Path(target.cert_path).read_bytes()
            key = Path(target.key_path).read_bytes()
        except OSError:
            return False
        if cert != material.full_chain or key != material.private_key:
            return False
        return self.validator.validate(CertificateMaterial(full_chain=cert, private_key=key)).installable

    def _stage_file(self, path: Path, content: bytes, mode: int) -> Path:
        return stage_bytes(path, content, mode)

    @staticmethod
    def _snapshot(target: RuntimeTarget) -> dict:
        backup = {}
        for path in (Path(target.cert_path), Path(target.key_path)):
            try:
                backup[path] = (path.read_bytes(), os.stat(path))
            except OSError:
                backup[path] = None
        return backup

    def _restore(self, target: RuntimeTarget, backup: dict) -> None:
        for path, saved in backup.items():
            try:
                if saved is None:
                    if path.exists():
                        path.unlink()
                    continue
                content, st = saved
                commit(stage_bytes(path, content, st.st_mode & 0o777), path)
                try:
                    os.chown(path, st.st_uid, st.st_gid)
                except PermissionError:
                    pass
            except OSError as exc:
                logger.error("Could not restore previous runtime file %s: %s", path, exc)
        logger.warning("Restored previous runtime material at %s", target.cert_path)


def make_runtime_target() -> RuntimeTarget:
    from config import settings  # noqa: PLC0415

    return RuntimeTarget(
        cert_path=Path(settings.RUNTIME_CERT_PATH),
        key_path=Path(settings.RUNTIME_KEY_PATH),
        owner=settings.RUNTIME_OWNER,
    )


def make_installer() -> Installer:
    from lifecycle.validator import make_validator  # noqa: PLC0415

    return Installer(make_validator())
