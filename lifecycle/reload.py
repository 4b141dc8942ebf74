"""
ReloadSignal — ask the running proxy to pick up newly installed material.

Always a graceful reload (SIGHUP / `nginx -s reload`), never a restart, so
connections on the old certificate finish normally.  When the proxy is not
running there is nothing to tell: notify() returns False and the next cold
start reads the installed files directly.

Modes (RELOAD_MODE):
  none     — do nothing (another component owns reloads)
  pidfile  — config test (optional), then SIGHUP the pid in PROXY_PID_FILE
  docker   — `docker exec <container> nginx -t`, then `nginx -s reload`
  command  — run RELOAD_COMMAND as-is
"""
from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from lifecycle.errors import ReloadError

logger = logging.getLogger(__name__)

_COMMAND_TIMEOUT = 30


@dataclass(frozen=True)
class ProxyHandle:
    mode: str = "none"
    pid_file: Path = Path("/run/nginx.pid")
    container: str = "nginx"
    command: str = ""
    config_test_command: str = ""


def _read_pid(pid_file: Path) -> Optional[int]:
    try:
        text = Path(pid_file).read_text().strip()
    except OSError:
        return None
    return int(text) if text.isdigit() else None


def _pid_is_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    return True


class ReloadSignal:
    def __init__(self, runner: Callable[..., subprocess.CompletedProcess] = subprocess.run) -> None:
        self._run = runner

    def notify(self, handle: ProxyHandle) -> bool:
        """Return True when a reload was delivered, False when there was no proxy to notify."""
        if handle.mode == "none":
            logger.debug("Reload mode is 'none' — not notifying the proxy")
            return False
        if handle.mode == "pidfile":
            return self._notify_pid(handle)
        if handle.mode == "docker":
            return self._notify_docker(handle)
        if handle.mode == "command":
            self._check(shlex.split(handle.command), "reload command")
            logger.info("Reload command succeeded: %s", handle.command)
            return True
        raise ReloadError(f"unknown reload mode {handle.mode!r}")

    def _notify_pid(self, handle: ProxyHandle) -> bool:
        pid = _read_pid(handle.pid_file)
        if pid is None or not _pid_is_running(pid):
            logger.info("Proxy not running (pid file %s) — nothing to reload", handle.pid_file)
            return False

        # A broken config would take the proxy down on reload
        if handle.config_test_command:
            self._check(shlex.split(handle.config_test_command), "proxy config test")

        try:
            os.kill(pid, signal.SIGHUP)
        except ProcessLookupError:
            logger.info("Proxy (pid=%d) exited before reload — nothing to reload", pid)
            return False
        except PermissionError as exc:
            raise ReloadError(f"not allowed to signal pid {pid}: {exc}") from exc
        logger.info("Sent SIGHUP to proxy (pid=%d)", pid)
        return True

    def _notify_docker(self, handle: ProxyHandle) -> bool:
        ps = self._check(
            ["docker", "ps", "--filter", f"name=^{handle.container}$", "--format", "{{.Names}}"],
            "docker ps",
        )
        if handle.container not in ps.stdout.split():
            logger.info("Container %s not running — nothing to reload", handle.container)
            return False

        test = shlex.split(handle.config_test_command) if handle.config_test_command else ["nginx", "-t"]
        self._check(["docker", "exec", handle.container, *test], "proxy config test")
        self._check(["docker", "exec", handle.container, "nginx", "-s", "reload"], "proxy reload")
        logger.info("Reloaded proxy in container %s", handle.container)
        return True

    def _check(self, argv: list[str], what: str) -> subprocess.CompletedProcess:
        try:
            proc = self._run(argv, capture_output=True, text=True, timeout=_COMMAND_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ReloadError(f"{what} could not run: {exc}") from exc
        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip().splitlines()
            raise ReloadError(f"{what} failed ({proc.returncode}): {stderr[-1] if stderr else 'no output'}")
        return proc


def make_proxy_handle() -> ProxyHandle:
    from config import settings  # noqa: PLC0415

    return ProxyHandle(
        mode=settings.RELOAD_MODE,
        pid_file=Path(settings.PROXY_PID_FILE),
        container=settings.PROXY_CONTAINER,
        command=settings.RELOAD_COMMAND,
        config_test_command=settings.PROXY_CONFIG_TEST_COMMAND,
    )
