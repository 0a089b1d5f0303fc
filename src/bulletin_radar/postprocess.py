"""Deduplication, recency filtering and ordering of findings."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Iterable, List, Optional, Union

from .models import DateRange

if TYPE_CHECKING:
    from .models import Finding


def dedupe_key(case_number: Optional[str], address: Optional[str], title: Optional[str]) -> str:
    return f"{case_number or ''}|{address or ''}|{title or ''}"


def finding_dedupe_key(finding: "Finding") -> str:
    return dedupe_key(finding.case_number, finding.address, finding.title)


def deduplicate(findings: Iterable["Finding"]) -> List["Finding"]:
    """Collapse findings sharing a dedupe key, keeping the first one seen."""
    seen = set()
    unique: List["Finding"] = []
    for finding in findings:
        key = finding_dedupe_key(finding)
        if key in seen:
            continue
        seen.add(key)
        unique.append(finding)
    return unique


def resolve_date_range(date_range: Union[DateRange, str]) -> DateRange:
    if isinstance(date_range, DateRange):
        return date_range
    try:
        return DateRange(str(date_range).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in DateRange)
        raise ValueError(f"Unknown date range {date_range!r}; expected one of: {allowed}") from exc


def filter_by_date_range(
    findings: Iterable["Finding"],
    date_range: Union[DateRange, str],
    *,
    now: Optional[datetime] = None,
) -> List["Finding"]:
    """Keep findings filed within the window. The cutoff itself is included."""
    window = resolve_date_range(date_range)
    reference = now or datetime.now(timezone.utc)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    cutoff = reference - timedelta(days=window.days)
    return [finding for finding in findings if finding.filing_date >= cutoff]


def sort_findings(findings: Iterable["Finding"]) -> List["Finding"]:
    """Order by priority (high first), then accuracy descending. Stable."""
    return sorted(findings, key=lambda finding: (-finding.priority.rank, -finding.accuracy))


def post_process(
    findings: Iterable["Finding"],
    date_range: Union[DateRange, str],
    *,
    now: Optional[datetime] = None,
) -> List["Finding"]:
    unique = deduplicate(findings)
    recent = filter_by_date_range(unique, date_range, now=now)
    return sort_findings(recent)
