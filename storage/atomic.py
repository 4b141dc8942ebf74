"""
Atomic file writing with fsync so a reader never sees a half-written PEM.

Pattern:
  1. Write to a temporary file in the same directory
  2. fsync it to disk
  3. Rename over the destination (atomic on POSIX filesystems)

A crash at any point leaves either the old file or the new one, never a mix.
Callers that must inspect the bytes before they become visible (the
Installer re-validates staged key/cert pairs) use stage_bytes + commit
directly instead of atomic_write_bytes.
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional


def stage_bytes(path: Path, content: bytes, mode: Optional[int] = None) -> Path:
    """
    Write *content* to a fsynced temp file next to *path* and return it.

    The destination is not touched; pass the result to commit() or discard().
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory as the target so the later rename stays on one filesystem
    fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    try:
        if mode is not None:
            os.fchmod(fd, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
    except Exception:
        discard(Path(temp_path))
        raise
    return Path(temp_path)


def commit(temp_path: Path, path: Path) -> None:
    """Rename a staged temp file over *path* and fsync the directory entry."""
    os.replace(temp_path, path)
    fsync_dir(path.parent)


def discard(temp_path: Path) -> None:
    try:
        os.unlink(temp_path)
    except OSError:
        pass


def fsync_dir(directory: Path) -> None:
    """Persist a rename by fsyncing its directory (no-op where unsupported)."""
    try:
        fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_bytes(path: Path, content: bytes, mode: Optional[int] = None) -> None:
    """Atomically replace *path* with *content* (optionally chmod'ed to *mode*)."""
    temp_path = stage_bytes(path, content, mode)
    try:
        commit(temp_path, path)
    except Exception:
        discard(temp_path)
        raise


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8") -> None:
    """Text wrapper around atomic_write_bytes (used for metadata.json)."""
    atomic_write_bytes(path, content.encode(encoding))
