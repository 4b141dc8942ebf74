"""
MaterialStore — durable, per-DomainSet certificate material.

Filesystem layout (all paths under CERT_STORE_PATH):

  archive/<primary>/<n>/
      fullchain.pem   — leaf + intermediates (what the Installer ships)
      privkey.pem     — private key only (mode 0o600)
      cert.pem        — leaf only
      chain.pem       — intermediates only (absent for self-signed)
      metadata.json   — source, installed_at, domain, sans, version
  live/<primary>      — symlink to ../archive/<primary>/<n>

Saving writes a complete new version directory, re-reads it through the
caller's verify callback, and only then repoints live/<primary> with an
atomic rename.  A reader therefore sees either the old pair or the new one.
Superseded versions stay until an operator prunes them.

Read-only compatibility:
  live/<primary>/ as a real directory   (certbot-style, "live" layout)
  fullchain.pem / privkey.pem at the root (legacy "flat" layout)
"""
from __future__ import annotations

import json
import logging
import os
import shutil
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from acme.crypto import split_pem_chain
from lifecycle.errors import Unreadable, validation_error
from lifecycle.models import (
    CertificateMaterial,
    DomainSet,
    MaterialSource,
    StoreEntry,
    ValidationResult,
)
from storage.atomic import atomic_write_bytes, atomic_write_text, fsync_dir
from storage.lock import DomainLock

logger = logging.getLogger(__name__)

FULLCHAIN = "fullchain.pem"
PRIVKEY = "privkey.pem"
CERT = "cert.pem"
CHAIN = "chain.pem"
METADATA = "metadata.json"

Verifier = Callable[[CertificateMaterial], ValidationResult]


class MaterialStore(ABC):
    """Exclusive owner of StoreEntry persistence."""

    @abstractmethod
    def load(self, primary: str) -> Optional[StoreEntry]:
        """Return the current entry, None when absent; raise Unreadable on I/O failure."""

    @abstractmethod
    def save(
        self,
        domain_set: DomainSet,
        material: CertificateMaterial,
        source: MaterialSource,
        verify: Optional[Verifier] = None,
    ) -> StoreEntry:
        """Persist *material* as the new current entry once *verify* accepts the stored copy."""

    @abstractmethod
    def lock(self, primary: str, timeout: float = 0.0) -> DomainLock:
        """Return (unacquired) the writer lock for *primary*."""

    @abstractmethod
    def list_domains(self) -> List[str]:
        ...

    @abstractmethod
    def prune(self, primary: str, keep: int = 1) -> List[int]:
        """Delete superseded versions, keeping the newest *keep* (current always kept)."""

    @abstractmethod
    def remove(self, primary: str) -> bool:
        """Delete the entry and its history.  Operator-triggered only."""


class FilesystemMaterialStore(MaterialStore):
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    # ── Paths ─────────────────────────────────────────────────────────────

    def live_path(self, primary: str) -> Path:
        return self.root / "live" / primary

    def archive_path(self, primary: str) -> Path:
        return self.root / "archive" / primary

    def versions(self, primary: str) -> List[int]:
        archive = self.archive_path(primary)
        if not archive.is_dir():
            return []
        return sorted(int(p.name) for p in archive.iterdir() if p.is_dir() and p.name.isdigit())

    def current_version(self, primary: str) -> Optional[int]:
        live = self.live_path(primary)
        if not live.is_symlink():
            return None
        target = Path(os.readlink(live)).name
        return int(target) if target.isdigit() else None

    # ── Read ──────────────────────────────────────────────────────────────

    def load(self, primary: str) -> Optional[StoreEntry]:
        live = self.live_path(primary)
        if live.is_symlink() or live.is_dir():
            layout = "versioned" if live.is_symlink() else "live"
            return self._read_entry(live, primary, layout, self.current_version(primary))

        if (self.root / FULLCHAIN).exists() or (self.root / PRIVKEY).exists():
            return self._read_entry(self.root, primary, "flat", None)

        return None

    def _read_entry(self, directory: Path, primary: str, layout: str, version: Optional[int]) -> StoreEntry:
        try:
            full_chain = (directory / FULLCHAIN).read_bytes()
            private_key = (directory / PRIVKEY).read_bytes()
            chain = (directory / CHAIN).read_bytes() if (directory / CHAIN).exists() else None
        except OSError as exc:
            raise Unreadable(f"{directory}: {exc}", domain=primary) from exc

        meta = self._read_metadata(directory)
        try:
            domain_set = DomainSet.of(meta.get("domain", primary), meta.get("sans", []))
        except ValueError:
            domain_set = DomainSet.of(primary)

        source = None
        if meta.get("source") in {s.value for s in MaterialSource}:
            source = MaterialSource(meta["source"])
        installed_at = None
        if meta.get("installed_at"):
            try:
                installed_at = datetime.fromisoformat(meta["installed_at"])
            except ValueError:
                logger.warning("Ignoring bad installed_at in %s", directory / METADATA)

        return StoreEntry(
            domain_set=domain_set,
            material=CertificateMaterial(full_chain=full_chain, private_key=private_key, chain=chain),
            source=source,
            installed_at=installed_at,
            layout=layout,
            version=version,
        )

    @staticmethod
    def _read_metadata(directory: Path) -> dict:
        path = directory / METADATA
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable metadata %s: %s", path, exc)
            return {}

    # ── Write ─────────────────────────────────────────────────────────────

    def save(
        self,
        domain_set: DomainSet,
        material: CertificateMaterial,
        source: MaterialSource,
        verify: Optional[Verifier] = None,
    ) -> StoreEntry:
        primary = domain_set.primary
        archive = self.archive_path(primary)
        archive.mkdir(parents=True, exist_ok=True, mode=0o700)

        existing = self.versions(primary)
        version = (existing[-1] + 1) if existing else 1
        staging = archive / f".staging-{version}-{os.getpid()}"
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(mode=0o700)

        installed_at = datetime.now(tz=timezone.utc)
        try:
            self._write_files(staging, domain_set, material, source, installed_at, version)
            version_dir = archive / str(version)
            os.rename(staging, version_dir)
        except Exception:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        fsync_dir(archive)

        entry = self._read_entry(version_dir, primary, "versioned", version)
        if verify is not None:
            result = verify(entry.material)
            if not result.installable:
                shutil.rmtree(version_dir, ignore_errors=True)
                raise validation_error(result.failure, f"stored copy rejected: {result.detail}", domain=primary)

        self._point_live(primary, version)
        logger.info("Stored %s material for %s as version %d", source.value, domain_set, version)
        return entry

    def _write_files(self, directory, domain_set, material, source, installed_at, version) -> None:
        leaf, intermediates = split_pem_chain(material.full_chain)
        chain = material.chain if material.chain is not None else intermediates

        atomic_write_bytes(directory / FULLCHAIN, material.full_chain, mode=0o644)
        atomic_write_bytes(directory / PRIVKEY, material.private_key, mode=0o600)
        atomic_write_bytes(directory / CERT, leaf, mode=0o644)
        if chain:
            atomic_write_bytes(directory / CHAIN, chain, mode=0o644)

        metadata = {
            "domain": domain_set.primary,
            "sans": sorted(domain_set.sans),
            "source": source.value,
            "installed_at": installed_at.isoformat(),
            "version": version,
        }
        atomic_write_text(directory / METADATA, json.dumps(metadata, indent=2))

    def _point_live(self, primary: str, version: int) -> None:
        live = self.live_path(primary)
        live.parent.mkdir(parents=True, exist_ok=True)

        if live.is_dir() and not live.is_symlink():
            # certbot-style live directory: keep it, out of the way, in the archive
            legacy = self.archive_path(primary) / f"legacy-live-{datetime.now(tz=timezone.utc):%Y%m%d%H%M%S}"
            os.rename(live, legacy)
            logger.info("Moved legacy live directory for %s to %s", primary, legacy)

        tmp_link = live.parent / f".{primary}.tmp"
        if tmp_link.is_symlink() or tmp_link.exists():
            tmp_link.unlink()
        os.symlink(os.path.join("..", "archive", primary, str(version)), tmp_link)
        os.replace(tmp_link, live)
        fsync_dir(live.parent)

    # ── Operator actions ──────────────────────────────────────────────────

    def lock(self, primary: str, timeout: float = 0.0) -> DomainLock:
        return DomainLock(self.root / ".locks", primary, timeout=timeout)

    def list_domains(self) -> List[str]:
        live_root = self.root / "live"
        if not live_root.is_dir():
            return []
        return sorted(
            p.name for p in live_root.iterdir()
            if not p.name.startswith(".") and (p.is_symlink() or p.is_dir())
        )

    def prune(self, primary: str, keep: int = 1) -> List[int]:
        keep = max(keep, 1)
        current = self.current_version(primary)
        candidates = [v for v in self.versions(primary) if v != current]
        # the current version counts toward keep
        surplus = len(candidates) - (keep - (1 if current is not None else 0))
        removed = candidates[:max(surplus, 0)]
        for version in removed:
            shutil.rmtree(self.archive_path(primary) / str(version))
            logger.info("Pruned %s version %d", primary, version)
        return removed

    def remove(self, primary: str) -> bool:
        live = self.live_path(primary)
        archive = self.archive_path(primary)
        found = False
        if live.is_symlink():
            live.unlink()
            found = True
        elif live.is_dir():
            shutil.rmtree(live)
            found = True
        if archive.is_dir():
            shutil.rmtree(archive)
            found = True
        if found:
            logger.info("Removed store entry for %s", primary)
        return found


def make_store() -> FilesystemMaterialStore:
    from config import settings  # noqa: PLC0415

    return FilesystemMaterialStore(settings.CERT_STORE_PATH)
