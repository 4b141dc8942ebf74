"""
Status report for one DomainSet: the store entry versus the runtime copy.

Read-only.  Nothing here takes the writer lock or changes a file; it only
runs the same PairValidator the lifecycle uses on both locations.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from lifecycle.errors import Unreadable
from lifecycle.installer import RuntimeTarget
from lifecycle.models import DomainSet, ValidationResult
from lifecycle.validator import PairValidator
from storage.store import MaterialStore


@dataclass
class StatusReport:
    domain_set: DomainSet
    store_layout: Optional[str] = None
    store_source: Optional[str] = None
    store_version: Optional[int] = None
    store_result: Optional[ValidationResult] = None
    runtime_result: Optional[ValidationResult] = None
    runtime_matches_store: bool = False
    notes: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return bool(
            self.store_result and self.store_result.installable
            and self.runtime_result and self.runtime_result.installable
        )


def build_status_report(
    domain_set: DomainSet,
    store: MaterialStore,
    target: RuntimeTarget,
    validator: PairValidator,
) -> StatusReport:
    report = StatusReport(domain_set=domain_set)
    entry = None
    try:
        entry = store.load(domain_set.primary)
    except Unreadable as exc:
        report.notes.append(str(exc))

    if entry is not None:
        report.store_layout = entry.layout
        report.store_source = entry.source.value if entry.source else None
        report.store_version = entry.version
        report.store_result = validator.validate(entry.material)
        if not report.store_result.covers(domain_set):
            report.notes.append("store certificate does not cover every configured name")
    elif not report.notes:
        report.notes.append("no store entry")

    report.runtime_result = validator.validate_files(Path(target.cert_path), Path(target.key_path))
    if entry is not None:
        try:
            report.runtime_matches_store = (
                Path(target.cert_path).read_bytes() == entry.material.full_chain
                and Path(target.key_path).read_bytes() == entry.material.private_key
            )
        except OSError:
            report.runtime_matches_store = False
        if not report.runtime_matches_store:
            report.notes.append("runtime copy differs from the store entry")
    return report


def _describe(result: Optional[ValidationResult], now: datetime) -> List[str]:
    if result is None:
        return ["  status:       absent"]
    lines = [
        f"  status:       {result.summary()}" + (f" ({result.detail})" if result.detail else ""),
        f"  key matches:  {'yes' if result.matches_key else 'no'}",
        f"  issuer:       {result.issuer or '-'} [{result.issuer_class.value}]",
        f"  names:        {', '.join(result.names) or '-'}",
    ]
    if result.not_after:
        lines.append(f"  not after:    {result.not_after:%Y-%m-%d %H:%M} UTC ({result.days_remaining(now)} days)")
    return lines


def format_report(report: StatusReport, target: RuntimeTarget, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(tz=timezone.utc)
    lines = [f"Certificate status for {report.domain_set}", "", "Store entry:"]
    if report.store_layout:
        version = f" v{report.store_version}" if report.store_version else ""
        lines.append(f"  layout:       {report.store_layout}{version}")
        lines.append(f"  source:       {report.store_source or 'unknown'}")
    lines += _describe(report.store_result, now)
    lines += ["", f"Runtime copy ({target.cert_path}):"]
    lines += _describe(report.runtime_result, now)
    lines.append(f"  same as store: {'yes' if report.runtime_matches_store else 'no'}")
    if report.notes:
        lines += ["", "Notes:"] + [f"  - {n}" for n in report.notes]
    lines += ["", "Overall: " + ("OK" if report.healthy else "ATTENTION NEEDED")]
    return "\n".join(lines)
