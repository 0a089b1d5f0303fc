"""Data models for the bulletin radar pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class SourceStrategy(str, Enum):
    """How a source is retrieved and parsed."""

    RSS = "rss"
    WEBPAGE = "webpage"


class FilingType(str, Enum):
    POWER_OF_SALE = "power_of_sale"
    FORECLOSURE = "foreclosure"
    BANKRUPTCY = "bankruptcy"
    ESTATE_SALE = "estate_sale"
    TAX_SALE = "tax_sale"
    LIEN_PROCEEDING = "lien_proceeding"
    OTHER_LEGAL = "other_legal"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


class DateRange(str, Enum):
    """Recency windows accepted by a run."""

    TODAY = "today"
    WEEK = "week"
    MONTH = "month"

    @property
    def days(self) -> int:
        return {"today": 1, "week": 7, "month": 30}[self.value]


class RunStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"


class RunState(str, Enum):
    """Stages a pipeline run moves through."""

    IDLE = "idle"
    FETCHING_SOURCES = "fetching_sources"
    EXTRACTING = "extracting"
    POST_PROCESSING = "post_processing"
    PERSISTING = "persisting"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Source:
    """A named upstream feed defined in the source registry."""

    source_id: str
    name: str
    jurisdiction: str
    fetch_url: str
    strategy: SourceStrategy = SourceStrategy.RSS
    permitted: bool = True
    regions: Tuple[str, ...] = ()
    selectors: Dict[str, str] = field(default_factory=dict)


@dataclass
class RawItem:
    """One unit fetched from a source before extraction."""

    title: str
    description: str
    link: str
    source_name: str
    published_at: Optional[str] = None
    guid: Optional[str] = None

    @property
    def text(self) -> str:
        return f"{self.title} {self.description}".strip()


@dataclass(frozen=True)
class ExtractedFields:
    """Structured candidate fields pulled out of a raw item."""

    text: str
    filing_date: datetime
    case_number: Optional[str] = None
    address: Optional[str] = None
    amount: Optional[float] = None
    estate_contact: Optional[Dict[str, Optional[str]]] = None


@dataclass(frozen=True)
class Finding:
    """An extracted, classified and scored opportunity record."""

    id: str
    title: str
    filing_type: FilingType
    filing_date: datetime
    priority: Priority
    accuracy: int
    opportunity_score: int
    source: str
    link: str
    raw_content: str
    natural_key: str
    case_number: Optional[str] = None
    address: Optional[str] = None
    amount: Optional[float] = None
    jurisdiction: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "filing_type": self.filing_type.value,
            "case_number": self.case_number,
            "address": self.address,
            "amount": self.amount,
            "filing_date": self.filing_date.isoformat(),
            "priority": self.priority.value,
            "accuracy": self.accuracy,
            "opportunity_score": self.opportunity_score,
            "source": self.source,
            "jurisdiction": self.jurisdiction,
            "link": self.link,
            "raw_content": self.raw_content,
            "natural_key": self.natural_key,
            "metadata": self.metadata,
        }


@dataclass
class DevelopmentApplication:
    """A municipal development application."""

    application_id: str
    address: Optional[str]
    municipality: str
    application_type: str = "other"
    status: str = "unknown"
    submission_date: Optional[datetime] = None
    description: Optional[str] = None
    opportunity_score: Optional[int] = None
    impact_radius: Optional[str] = None

    @property
    def guid(self) -> str:
        return str(self.application_id)


@dataclass
class SourceOutcome:
    """Per-source result of a fetch pass."""

    source_id: str
    name: str
    status: str  # "succeeded", "failed", "skipped"
    items_fetched: int = 0
    findings: int = 0
    attempts: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "name": self.name,
            "status": self.status,
            "items_fetched": self.items_fetched,
            "findings": self.findings,
            "attempts": self.attempts,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass
class WriteOutcome:
    """Result of persisting a single record."""

    key: str
    status: str  # "inserted", "updated", "skipped", "failed"
    record_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class PersistenceReport:
    """Aggregate of all writes issued for one batch."""

    outcomes: List[WriteOutcome] = field(default_factory=list)
    first_error: Optional[str] = None

    def _count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def inserted(self) -> int:
        return self._count("inserted")

    @property
    def updated(self) -> int:
        return self._count("updated")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    @property
    def failed(self) -> int:
        return self._count("failed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "first_error": self.first_error,
        }


@dataclass
class RunResult:
    """Structured outcome of one scraping run."""

    success: bool
    status: RunStatus
    region: str
    date_range: str
    timestamp: str
    total_findings: int = 0
    high_priority_count: int = 0
    findings: List[Finding] = field(default_factory=list)
    sources_processed: List[SourceOutcome] = field(default_factory=list)
    accuracy: float = 0.0
    processing_time_ms: int = 0
    test_mode: bool = False
    error: Optional[str] = None
    persistence: Optional[PersistenceReport] = None

    def exit_code(self) -> int:
        if self.status is RunStatus.FAILED:
            return 1
        if self.status is RunStatus.DEGRADED:
            return 2
        return 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "region": self.region,
            "date_range": self.date_range,
            "timestamp": self.timestamp,
            "total_findings": self.total_findings,
            "high_priority_count": self.high_priority_count,
            "findings": [finding.to_dict() for finding in self.findings],
            "sources_processed": [outcome.to_dict() for outcome in self.sources_processed],
            "accuracy": self.accuracy,
            "processing_time_ms": self.processing_time_ms,
            "test_mode": self.test_mode,
            "error": self.error,
            "persistence": self.persistence.to_dict() if self.persistence else None,
            "exit_code": self.exit_code(),
        }
