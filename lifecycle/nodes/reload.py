"""
reload_signaller node — tell the proxy about newly installed material.
"""
from __future__ import annotations

import structlog

from lifecycle.errors import ReloadError
from lifecycle.reload import ReloadSignal, make_proxy_handle
from lifecycle.state import CycleState, record_error

log = structlog.get_logger(__name__)


def reload_signaller(state: CycleState) -> dict:
    handle = make_proxy_handle()
    try:
        reloaded = ReloadSignal().notify(handle)
    except ReloadError as exc:
        log.error("reload failed", domain=state["primary_domain"], mode=handle.mode, detail=str(exc))
        return {"reloaded": False, **record_error(state, exc)}

    log.info("proxy notified" if reloaded else "proxy not notified", domain=state["primary_domain"], mode=handle.mode)
    return {"reloaded": reloaded}
