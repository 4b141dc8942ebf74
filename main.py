"""
TLS Certificate Lifecycle Manager — CLI entry point.

Usage:
  python main.py --once                  # One lifecycle cycle (issue / renew / skip / fallback)
  python main.py --once --force          # Renew even if the certificate is not due
  python main.py --install               # Startup: re-derive the runtime copy from the store (no CA traffic)
  python main.py --check                 # Print the decision without acting
  python main.py --status                # Store entry vs runtime copy report
  python main.py --schedule              # Run at every SCHEDULE_TIMES entry
  python main.py --cleanup --keep 2      # Prune superseded store versions
  python main.py --remove-entry          # Delete the store entry (operator only)

Exit codes: 0 on success (including fallback), otherwise the code of the
failure kind (see lifecycle/errors.py).
"""
from __future__ import annotations

import argparse
import logging
import sys

import structlog
from pydantic import ValidationError

log = logging.getLogger(__name__)


# ── Logging setup ─────────────────────────────────────────────────────────────


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings():
    """Import the settings singleton, turning a bad environment into exit 2."""
    try:
        from config import settings
    except ValidationError as exc:
        log.error("Invalid configuration:\n%s", exc)
        sys.exit(2)
    return settings


def _domain_set(settings, domain: str | None = None, sans: list[str] | None = None):
    from lifecycle.models import DomainSet

    primary = domain or settings.PRIMARY_DOMAIN
    if not primary:
        log.error("No domain configured. Set PRIMARY_DOMAIN in .env or pass --domain.")
        sys.exit(2)
    try:
        return DomainSet.of(primary, settings.SAN_DOMAINS if sans is None else sans)
    except ValueError as exc:
        log.error("Invalid domain set: %s", exc)
        sys.exit(2)


# ── Runners ───────────────────────────────────────────────────────────────────


def run_once(
    domain: str | None = None,
    sans: list[str] | None = None,
    force: bool | None = None,
    install_only: bool = False,
) -> dict:
    """Execute one full lifecycle cycle and return the final state."""
    from lifecycle.graph import run_cycle, state_from_settings

    settings = _load_settings()
    domain_set = _domain_set(settings, domain, sans)

    if not install_only and not settings.public_ca_configured:
        log.warning(
            "Public CA path not configured (CONTACT_EMAIL and Cloudflare credentials) — "
            "only self-signed fallback material can be produced"
        )

    log.info("Starting %s for %s", "startup install" if install_only else "lifecycle cycle", domain_set)
    state = state_from_settings(
        force_renew=force,
        install_only=install_only,
        primary_domain=domain_set.primary,
        san_domains=sorted(domain_set.sans),
    )
    final_state = run_cycle(state)

    log.info(
        "Run complete — decision: %s | outcome: %s | exit code: %d",
        final_state.get("decision"), final_state.get("outcome"), final_state.get("exit_code", 0),
    )
    return final_state


def run_check(domain: str | None = None, sans: list[str] | None = None, force: bool | None = None) -> int:
    """Print what the next cycle would decide, without taking the lock or writing."""
    from lifecycle.decider import LifecycleDecider
    from lifecycle.errors import Unreadable
    from lifecycle.models import LifecycleDecision
    from lifecycle.validator import make_validator
    from storage.store import make_store

    settings = _load_settings()
    domain_set = _domain_set(settings, domain, sans)
    try:
        entry = make_store().load(domain_set.primary)
        existing = make_validator().validate(entry.material) if entry else None
    except Unreadable as exc:
        print(f"{domain_set}: store entry unreadable ({exc}) → Issue")
        return 0

    decider = LifecycleDecider(
        settings.RENEWAL_THRESHOLD_DAYS,
        settings.public_ca_configured,
        allow_fallback=settings.ALLOW_SELF_SIGNED_FALLBACK,
    )
    decision, reason = decider.decide_with_reason(
        existing,
        force_renew=settings.FORCE_RENEW if force is None else force,
        domain_set=domain_set,
    )
    if decision == LifecycleDecision.FALLBACK and not settings.ALLOW_SELF_SIGNED_FALLBACK:
        reason += "; refused, ALLOW_SELF_SIGNED_FALLBACK is off"
    print(f"{domain_set}: {decision.value} ({reason})")
    return 0


def run_status(domain: str | None = None, sans: list[str] | None = None) -> int:
    from lifecycle.diagnostics import build_status_report, format_report
    from lifecycle.installer import make_runtime_target
    from lifecycle.validator import make_validator
    from storage.store import make_store

    settings = _load_settings()
    domain_set = _domain_set(settings, domain, sans)
    target = make_runtime_target()
    report = build_status_report(domain_set, make_store(), target, make_validator())
    print(format_report(report, target))
    return 0 if report.healthy else 1


def run_cleanup(domain: str | None = None, keep: int = 1, remove: bool = False) -> int:
    """Operator-triggered store maintenance; holds the writer lock throughout."""
    from lifecycle.errors import LockHeldError
    from storage.store import make_store

    settings = _load_settings()
    domain_set = _domain_set(settings, domain)
    store = make_store()
    try:
        with store.lock(domain_set.primary, timeout=settings.LOCK_TIMEOUT_SECONDS):
            if remove:
                found = store.remove(domain_set.primary)
                log.info("Store entry for %s %s", domain_set.primary, "removed" if found else "not found")
            else:
                removed = store.prune(domain_set.primary, keep=keep)
                log.info("Pruned %d version(s) of %s: %s", len(removed), domain_set.primary, removed or "none")
    except LockHeldError as exc:
        log.error("%s", exc)
        return exc.exit_code
    return 0


def run_scheduled(domain: str | None = None, sans: list[str] | None = None) -> None:
    """Run the lifecycle on a recurring schedule (twice daily by default)."""
    import schedule
    import time

    settings = _load_settings()
    log.info("Scheduling certificate checks at %s (local time)", ", ".join(settings.SCHEDULE_TIMES))

    def job() -> None:
        log.info("Scheduled run triggered")
        try:
            run_once(domain=domain, sans=sans)
        except Exception as exc:
            log.exception("Scheduled run failed: %s", exc)

    for at in settings.SCHEDULE_TIMES:
        schedule.every().day.at(at).do(job)

    log.info("Running initial check immediately...")
    job()

    log.info("Entering schedule loop — press Ctrl+C to stop")
    while True:
        schedule.run_pending()
        time.sleep(60)


# ── CLI ───────────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="TLS Certificate Lifecycle Manager",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --once
  python main.py --once --force
  python main.py --once --domain example.com --san '*.example.com'
  python main.py --install
  python main.py --status
  python main.py --cleanup --keep 3
        """,
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run one lifecycle cycle and exit")
    mode.add_argument("--schedule", action="store_true", help="Run at every SCHEDULE_TIMES entry")
    mode.add_argument(
        "--install",
        action="store_true",
        help="Startup install: re-derive the runtime copy from the store, fallback if none (no CA traffic)",
    )
    mode.add_argument("--check", action="store_true", help="Print the lifecycle decision without acting")
    mode.add_argument("--status", action="store_true", help="Report store entry vs runtime copy")
    mode.add_argument("--cleanup", action="store_true", help="Prune superseded store versions")
    mode.add_argument("--remove-entry", action="store_true", help="Delete the store entry for the domain")

    parser.add_argument("--force", action="store_true", default=None, help="Renew even if not due")
    parser.add_argument("--domain", metavar="DOMAIN", help="Override PRIMARY_DOMAIN for this run")
    parser.add_argument("--san", nargs="+", metavar="NAME", help="Override SAN_DOMAINS for this run")
    parser.add_argument("--keep", type=int, default=1, metavar="N", help="Versions kept by --cleanup (default: 1)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.once:
        return run_once(domain=args.domain, sans=args.san, force=args.force).get("exit_code", 0)
    if args.install:
        return run_once(domain=args.domain, sans=args.san, install_only=True).get("exit_code", 0)
    if args.check:
        return run_check(domain=args.domain, sans=args.san, force=args.force)
    if args.status:
        return run_status(domain=args.domain, sans=args.san)
    if args.cleanup or args.remove_entry:
        return run_cleanup(domain=args.domain, keep=args.keep, remove=args.remove_entry)
    if args.schedule:
        run_scheduled(domain=args.domain, sans=args.san)
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
