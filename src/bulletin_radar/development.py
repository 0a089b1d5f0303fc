"""Municipal development application feed."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .config import PipelineConfig
from .errors import ParseError, PersistenceError
from .http_client import HTTPClient
from .logging_config import get_logger
from .models import DevelopmentApplication, PersistenceReport, WriteOutcome
from .parser_utils import parse_filing_date, utc_now
from .writer import bounded_gather

logger = get_logger("development")

APPLICATION_TYPES: Dict[str, str] = {
    "rezoning": "rezoning",
    "zoning by-law amendment": "rezoning",
    "subdivision": "subdivision",
    "plan of subdivision": "subdivision",
    "demolition": "demolition",
    "conversion": "conversion",
    "condominium conversion": "conversion",
    "variance": "variance",
    "minor variance": "variance",
}

TYPE_BONUSES: Dict[str, int] = {
    "rezoning": 20,
    "subdivision": 25,
    "demolition": 15,
    "conversion": 18,
    "variance": 10,
}

STATUS_BONUSES: Dict[str, int] = {
    "approved": 15,
    "under_review": 10,
    "pending": 5,
}

IMPACT_RADII: Dict[str, str] = {
    "subdivision": "1km",
    "rezoning": "500m",
    "demolition": "300m",
    "conversion": "400m",
    "variance": "200m",
}
DEFAULT_IMPACT_RADIUS = "250m"

DEVELOPMENT_TYPES = ("rezoning", "subdivision", "demolition")
HIGH_OPPORTUNITY_SCORE = 80


def normalize_application_type(value: Optional[str]) -> str:
    text = (value or "").strip().lower()
    if not text:
        return "other"
    for pattern, canonical in APPLICATION_TYPES.items():
        if pattern in text:
            return canonical
    return "other"


def normalize_application_status(value: Optional[str]) -> str:
    text = (value or "").strip().lower()
    if "approv" in text:
        return "approved"
    if "reject" in text or "deny" in text or "denied" in text:
        return "rejected"
    if "review" in text or "process" in text:
        return "under_review"
    if "pending" in text:
        return "pending"
    if "complete" in text:
        return "completed"
    return "unknown"


def score_application(application: DevelopmentApplication, *, now: Optional[datetime] = None) -> int:
    score = 50
    score += TYPE_BONUSES.get(application.application_type, 5)
    score += STATUS_BONUSES.get(application.status, 0)

    if application.submission_date is not None:
        reference = now or utc_now()
        age_days = (reference - application.submission_date).total_seconds() / 86400
        if age_days < 30:
            score += 10
        elif age_days < 90:
            score += 5

    return max(0, min(100, score))


def estimate_impact_radius(application_type: str) -> str:
    return IMPACT_RADII.get(application_type, DEFAULT_IMPACT_RADIUS)


def opportunity_indicators(applications: Sequence[DevelopmentApplication]) -> Dict[str, Any]:
    """Summary counts used to rank a municipality's development activity."""
    scores = [app.opportunity_score if app.opportunity_score is not None else 50 for app in applications]
    return {
        "high_opportunity_applications": sum(
            1 for app in applications if (app.opportunity_score or 0) > HIGH_OPPORTUNITY_SCORE
        ),
        "development_potential": sum(1 for app in applications if app.application_type in DEVELOPMENT_TYPES),
        "land_assembly_opportunities": sum(1 for app in applications if app.application_type == "subdivision"),
        "conversion_opportunities": sum(1 for app in applications if app.application_type == "conversion"),
        "average_opportunity_score": round(sum(scores) / len(scores), 1) if scores else 0.0,
    }


def _wanted(application_type: str, types: Optional[Iterable[str]]) -> bool:
    wanted = {value.lower() for value in (types or ())}
    return not wanted or "all" in wanted or application_type in wanted


def parse_applications(
    payload: Any,
    municipality: str,
    types: Optional[Iterable[str]] = None,
) -> List[DevelopmentApplication]:
    """Map a registry payload's ``applications`` array to records.

    ``types`` limits the result to those normalized application types;
    ``None`` or ``"all"`` keeps everything.
    """
    if not isinstance(payload, dict):
        raise ParseError("Development application payload must be a JSON object")
    entries = payload.get("applications")
    if not isinstance(entries, list):
        return []

    applications: List[DevelopmentApplication] = []
    for entry in entries:
        if not isinstance(entry, dict) or entry.get("id") in (None, ""):
            continue
        submitted = entry.get("submissionDate") or entry.get("submission_date")
        application_type = normalize_application_type(entry.get("type") or entry.get("applicationType"))
        if not _wanted(application_type, types):
            continue
        application = DevelopmentApplication(
            application_id=str(entry["id"]),
            address=entry.get("address"),
            municipality=municipality,
            application_type=application_type,
            status=normalize_application_status(entry.get("status")),
            submission_date=parse_filing_date(submitted) if submitted else None,
            description=entry.get("description"),
            impact_radius=estimate_impact_radius(application_type),
        )
        applications.append(replace(application, opportunity_score=score_application(application)))
    return applications


async def fetch_development_applications(
    config: PipelineConfig,
    http_client: Optional[HTTPClient] = None,
    types: Optional[Iterable[str]] = None,
) -> List[DevelopmentApplication]:
    """Fetch the municipal development application registry.

    ``types`` defaults to ``config.dev_apps_types``.
    """
    client = http_client or HTTPClient(config)
    try:
        response = await client.get(config.dev_apps_url, timeout_seconds=config.dev_apps_timeout_seconds)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ParseError(f"Development application feed is not JSON: {config.dev_apps_url}") from exc
    finally:
        if http_client is None:
            await client.aclose()

    applications = parse_applications(
        payload,
        config.dev_apps_municipality,
        config.dev_apps_types if types is None else types,
    )
    logger.info("Fetched %s development applications from %s", len(applications), config.dev_apps_url)
    return applications


async def save_development_applications(
    applications: List[DevelopmentApplication],
    store: Any,
    *,
    concurrency: int = 5,
    now: Optional[datetime] = None,
) -> PersistenceReport:
    """Upsert applications keyed by guid. The batch shares one publish time."""
    publish_date = now or utc_now()

    async def _save(application: DevelopmentApplication) -> WriteOutcome:
        values = {
            "application_id": application.application_id,
            "address": application.address,
            "municipality": application.municipality,
            "application_type": application.application_type,
            "status": application.status,
            "submission_date": application.submission_date,
            "description": application.description,
            "opportunity_score": application.opportunity_score,
            "impact_radius": application.impact_radius,
            "publish_date": publish_date,
        }
        try:
            result = await asyncio.to_thread(
                store.upsert_development_application,
                application.guid,
                create=values,
                update=values,
            )
        except PersistenceError as exc:
            logger.error("Failed to persist development application %s: %s", application.guid, exc)
            return WriteOutcome(key=application.guid, status="failed", error=str(exc))
        except Exception as exc:
            logger.exception("Unexpected error persisting development application %s", application.guid)
            return WriteOutcome(key=application.guid, status="failed", error=f"{type(exc).__name__}: {exc}")
        return WriteOutcome(key=application.guid, status=result.status, record_id=result.record_id)

    outcomes = await bounded_gather(applications, _save, concurrency)
    report = PersistenceReport(outcomes=list(outcomes))
    first_failure = next((outcome for outcome in outcomes if outcome.status == "failed"), None)
    if first_failure:
        report.first_error = first_failure.error
    return report
