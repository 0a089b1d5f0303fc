"""Bulletin radar pipeline runner.

Orchestrates a full scraping pass for a region: source fetching with
per-source retries, relevance filtering, extraction and scoring,
post-processing and bounded persistence. A failing source never aborts the
run; the result reports success, degraded or failed.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from datetime import timedelta
from email.utils import format_datetime
from pathlib import Path
from string import Template
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import httpx

from .classification import FindingClassifier
from .config import PACKAGE_DATA_DIR, PipelineConfig, SourceRegistry
from .database import FindingStore
from .development import fetch_development_applications, opportunity_indicators, save_development_applications
from .errors import ConfigurationError, FetchError, HttpError, ParseError, PersistenceError, RegistryError
from .extraction import Extractor
from .fetcher import Fetcher
from .http_client import HTTPClient
from .logging_config import get_logger, setup_logging
from .models import (
    DateRange,
    Finding,
    Priority,
    RawItem,
    RunResult,
    RunState,
    RunStatus,
    Source,
    SourceOutcome,
    SourceStrategy,
)
from .parser_utils import utc_now
from .postprocess import post_process, resolve_date_range
from .relevance import is_relevant
from .writer import PersistenceWriter

logger = get_logger("runner")

SAMPLE_FEED_FILE = "sample_bulletin.xml"
SAMPLE_PAGE_FILE = "sample_notices.html"


def _should_retry_status(status_code: int) -> bool:
    if status_code >= 500:
        return True
    return status_code in {408, 409, 425, 429}


def _calculate_retry_delay(config: PipelineConfig, retry_number: int) -> float:
    delay = config.retry_base_delay * (config.retry_exponential_base ** (retry_number - 1))
    return min(delay, config.retry_max_delay)


def _render_sample(name: str, now: Any) -> str:
    template = Template((PACKAGE_DATA_DIR / name).read_text(encoding="utf-8"))
    return template.safe_substitute(
        today_rfc822=format_datetime(now - timedelta(hours=2)),
        yesterday_rfc822=format_datetime(now - timedelta(days=1)),
        stale_rfc822=format_datetime(now - timedelta(days=60)),
        today_iso=(now - timedelta(hours=3)).isoformat(),
        yesterday_iso=(now - timedelta(days=1)).isoformat(),
    )


def build_sample_transport(sources: List[Source]) -> httpx.MockTransport:
    """Serve bundled sample payloads for every source URL."""
    now = utc_now()
    payloads = {
        SourceStrategy.RSS: (_render_sample(SAMPLE_FEED_FILE, now), "application/rss+xml"),
        SourceStrategy.WEBPAGE: (_render_sample(SAMPLE_PAGE_FILE, now), "text/html"),
    }
    by_url = {source.fetch_url: payloads[source.strategy] for source in sources}

    def handler(request: httpx.Request) -> httpx.Response:
        body, content_type = by_url.get(str(request.url), payloads[SourceStrategy.RSS])
        return httpx.Response(200, text=body, headers={"Content-Type": content_type})

    return httpx.MockTransport(handler)


def failed_result(
    region: str,
    date_range: Union[DateRange, str],
    error: str,
    *,
    test_mode: bool = False,
    processing_time_ms: int = 0,
) -> RunResult:
    """An empty failed result for runs that could not start."""
    window = date_range.value if isinstance(date_range, DateRange) else str(date_range)
    return RunResult(
        success=False,
        status=RunStatus.FAILED,
        region=region,
        date_range=window,
        timestamp=utc_now().isoformat(),
        processing_time_ms=processing_time_ms,
        test_mode=test_mode,
        error=error,
    )


class PipelineRunner:
    """Runs one region through the full extraction pipeline."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        *,
        store: Optional[FindingStore] = None,
        registry: Optional[SourceRegistry] = None,
        http_client: Optional[HTTPClient] = None,
        classifier: Optional[FindingClassifier] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or PipelineConfig()
        self.store = store
        self._registry = registry
        self._http_client = http_client
        self.extractor = Extractor()
        self.classifier = classifier or FindingClassifier()
        self._sleep = sleep
        self.state = RunState.IDLE

    def _transition(self, state: RunState) -> None:
        logger.debug("Run state %s -> %s", self.state.value, state.value)
        self.state = state

    @property
    def registry(self) -> SourceRegistry:
        if self._registry is None:
            self._registry = SourceRegistry.from_config(self.config)
        return self._registry

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    async def run(
        self,
        region: str = "gta",
        date_range: Union[DateRange, str] = DateRange.WEEK,
        test_mode: bool = False,
    ) -> RunResult:
        window = resolve_date_range(date_range)
        started = time.perf_counter()
        timestamp = utc_now().isoformat()
        self.state = RunState.IDLE

        try:
            sources = self.registry.sources_for(region)
        except (RegistryError, ConfigurationError) as exc:
            logger.error("Cannot start run for region %s: %s", region, exc)
            self._transition(RunState.COMPLETED)
            return failed_result(
                region,
                window,
                str(exc),
                test_mode=test_mode,
                processing_time_ms=self._elapsed_ms(started),
            )

        logger.info(
            "Starting %srun for region=%s date_range=%s with %s sources",
            "test " if test_mode else "",
            region,
            window.value,
            len(sources),
        )

        run_id = None
        bookkeeping_error: Optional[str] = None
        if self.store is not None and not test_mode:
            try:
                run_id = self.store.start_ingestion_run(region=region, date_range=window.value)
            except PersistenceError as exc:
                logger.error("Could not record ingestion run start: %s", exc)
                bookkeeping_error = str(exc)

        http_client = self._http_client
        owns_client = http_client is None or test_mode
        if test_mode:
            http_client = HTTPClient(self.config, transport=build_sample_transport(sources))
        elif http_client is None:
            http_client = HTTPClient(self.config)

        try:
            findings, outcomes = await self._collect(sources, Fetcher(http_client, self.config), test_mode)
        finally:
            if owns_client:
                await http_client.aclose()

        attempted = [outcome for outcome in outcomes if outcome.status != "skipped"]
        failed = [outcome for outcome in attempted if outcome.status == "failed"]

        error: Optional[str] = None
        if not attempted:
            status = RunStatus.FAILED
            error = f"No permitted sources for region {region!r}"
        elif len(failed) == len(attempted):
            status = RunStatus.FAILED
            error = "All sources failed"
        elif failed:
            status = RunStatus.DEGRADED
        else:
            status = RunStatus.SUCCESS

        persistence = None
        if status is RunStatus.FAILED:
            findings = []
        else:
            self._transition(RunState.POST_PROCESSING)
            findings = post_process(findings, window)

            if self.store is not None and not test_mode and findings:
                self._transition(RunState.PERSISTING)
                persistence = await PersistenceWriter(self.store, self.config).write_all(findings)
                if persistence.failed:
                    if status is RunStatus.SUCCESS:
                        status = RunStatus.DEGRADED
                    error = error or persistence.first_error

        if run_id is not None:
            try:
                self.store.complete_ingestion_run(
                    run_id,
                    status=status.value,
                    total=len(findings),
                    inserted=persistence.inserted if persistence else 0,
                    updated=persistence.updated if persistence else 0,
                    failed=persistence.failed if persistence else 0,
                    metadata={"failed_sources": [outcome.source_id for outcome in failed]},
                )
            except PersistenceError as exc:
                logger.error("Could not record ingestion run %s completion: %s", run_id, exc)
                bookkeeping_error = str(exc)

        if bookkeeping_error:
            if status is RunStatus.SUCCESS:
                status = RunStatus.DEGRADED
            error = error or bookkeeping_error

        self._transition(RunState.COMPLETED)

        result = RunResult(
            success=status is not RunStatus.FAILED,
            status=status,
            region=region,
            date_range=window.value,
            timestamp=timestamp,
            total_findings=len(findings),
            high_priority_count=sum(1 for finding in findings if finding.priority is Priority.HIGH),
            findings=findings,
            sources_processed=outcomes,
            accuracy=self._average_accuracy(findings),
            processing_time_ms=self._elapsed_ms(started),
            test_mode=test_mode,
            error=error,
            persistence=persistence,
        )

        log = logger.warning if status is not RunStatus.SUCCESS else logger.info
        log(
            "Run %s: %s findings (%s high priority) from %s/%s sources in %sms",
            status.value,
            result.total_findings,
            result.high_priority_count,
            len(attempted) - len(failed),
            len(attempted),
            result.processing_time_ms,
        )
        return result

    async def _collect(
        self,
        sources: List[Source],
        fetcher: Fetcher,
        test_mode: bool,
    ) -> Tuple[List[Finding], List[SourceOutcome]]:
        findings: List[Finding] = []
        outcomes: List[SourceOutcome] = []
        fetched_any = False

        for source in sources:
            if not source.permitted:
                logger.info("Skipping %s: source is not permitted for automated access", source.name)
                outcomes.append(SourceOutcome(source.source_id, source.name, status="skipped"))
                continue

            if fetched_any and not test_mode and self.config.source_delay_ms > 0:
                await self._sleep(self.config.source_delay_seconds)
            fetched_any = True

            self._transition(RunState.FETCHING_SOURCES)
            outcome, items = await self._fetch_with_retry(fetcher, source)
            outcomes.append(outcome)
            if outcome.status != "succeeded":
                continue

            self._transition(RunState.EXTRACTING)
            source_findings = self._extract_findings(source, items)
            outcome.findings = len(source_findings)
            findings.extend(source_findings)

        return findings, outcomes

    async def _fetch_with_retry(self, fetcher: Fetcher, source: Source) -> Tuple[SourceOutcome, List[RawItem]]:
        outcome = SourceOutcome(source.source_id, source.name, status="failed")
        max_attempts = max(1, self.config.retry_attempts)

        for attempt in range(1, max_attempts + 1):
            outcome.attempts = attempt
            try:
                items = await fetcher.fetch(source)
            except HttpError as exc:
                retryable = _should_retry_status(exc.status_code)
                last_error: Exception = exc
            except ParseError as exc:
                retryable = False
                last_error = exc
            except FetchError as exc:
                retryable = True
                last_error = exc
            else:
                outcome.status = "succeeded"
                outcome.items_fetched = len(items)
                return outcome, items

            if retryable and attempt < max_attempts:
                delay = _calculate_retry_delay(self.config, attempt)
                logger.warning(
                    "Fetching %s failed (%s). Retrying in %.2fs (attempt %s/%s)",
                    source.name,
                    last_error,
                    delay,
                    attempt,
                    max_attempts,
                )
                await self._sleep(delay)
                continue

            logger.error("Source %s failed after %s attempt(s): %s", source.name, attempt, last_error)
            outcome.error = str(last_error)
            outcome.error_type = type(last_error).__name__
            break

        return outcome, []

    def _extract_findings(self, source: Source, items: List[RawItem]) -> List[Finding]:
        findings: List[Finding] = []
        for item in items:
            if not is_relevant(item.title, item.description):
                continue
            fields = self.extractor.extract(item)
            findings.append(self.classifier.build_finding(item, fields, source))
        logger.info("Extracted %s findings from %s relevant items of %s", len(findings), len(items), source.name)
        return findings

    @staticmethod
    def _average_accuracy(findings: List[Finding]) -> float:
        if not findings:
            return 0.0
        return round(sum(finding.accuracy for finding in findings) / len(findings), 1)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)


def run(
    region: str = "gta",
    date_range: Union[DateRange, str] = DateRange.WEEK,
    test_mode: bool = False,
    *,
    config: Optional[PipelineConfig] = None,
    store: Optional[FindingStore] = None,
    http_client: Optional[HTTPClient] = None,
) -> RunResult:
    """Synchronous entry point around :meth:`PipelineRunner.run`.

    Non-test runs persist to ``config.db_path`` unless a store is given.
    Configuration and store setup errors come back as a failed result.
    """
    window = resolve_date_range(date_range)
    try:
        config = config or PipelineConfig.from_env()
        if store is None and not test_mode:
            store = FindingStore(db_path=config.db_path)
    except (ConfigurationError, PersistenceError) as exc:
        logger.error("Cannot start run for region %s: %s", region, exc)
        return failed_result(region, window, str(exc), test_mode=test_mode)

    runner = PipelineRunner(config, store=store, http_client=http_client)
    return asyncio.run(runner.run(region, window, test_mode))


def to_legacy_filings(result: RunResult) -> Dict[str, List[Dict[str, str]]]:
    """Simplified ``{"filings": [{"title", "url"}]}`` shape for older consumers."""
    return {"filings": [{"title": finding.title, "url": finding.link} for finding in result.findings]}


async def run_development_applications(
    config: PipelineConfig,
    store: FindingStore,
    *,
    http_client: Optional[HTTPClient] = None,
    types: Optional[List[str]] = None,
) -> Dict[str, Any]:
    applications = await fetch_development_applications(config, http_client, types)
    report = await save_development_applications(
        applications,
        store,
        concurrency=config.persist_concurrency,
    )
    return {
        "applications": len(applications),
        "municipality": config.dev_apps_municipality,
        "types": list(config.dev_apps_types if types is None else types),
        "opportunity_indicators": opportunity_indicators(applications),
        "persistence": report.to_dict(),
        "exit_code": 1 if report.failed else 0,
    }


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for the bulletin radar runner."""
    parser = argparse.ArgumentParser(
        description="Bulletin radar runner - scans legal notice feeds for real-estate opportunities"
    )
    parser.add_argument("--region", default="gta", help="Region to scan (default: gta)")
    parser.add_argument(
        "--date-range",
        choices=[member.value for member in DateRange],
        default=DateRange.WEEK.value,
        help="Recency window (default: week)",
    )
    parser.add_argument(
        "--test-mode",
        action="store_true",
        help="Run offline against bundled sample payloads without persisting",
    )
    parser.add_argument(
        "--db-path",
        type=Path,
        help="Path to the findings database (default: database/bulletin_radar.db)",
    )
    parser.add_argument(
        "--sources",
        type=Path,
        help="Path to a source registry YAML file",
    )
    parser.add_argument(
        "--development-applications",
        action="store_true",
        help="Fetch and store municipal development applications instead of scanning notices",
    )
    parser.add_argument(
        "--application-types",
        help="Comma-separated development application types to keep (default: all)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output the run result as JSON",
    )
    parser.add_argument(
        "--legacy",
        action="store_true",
        help="With --json, output the legacy {filings: [{title, url}]} shape",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Write logs to this file (default: logs/bulletin_radar.log)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    root_logger = setup_logging(
        log_file=args.log_file,
        level=logging.DEBUG if args.verbose else logging.INFO,
        console=not args.json,
    )

    try:
        config = PipelineConfig.from_env()
    except ConfigurationError as exc:
        root_logger.error(f"Invalid configuration: {exc}")
        return 1

    overrides: Dict[str, Any] = {}
    if args.db_path:
        overrides["db_path"] = args.db_path
    if args.sources:
        overrides["sources_path"] = args.sources
    if args.application_types:
        overrides["dev_apps_types"] = tuple(
            part.strip().lower() for part in args.application_types.split(",") if part.strip()
        )
    if overrides:
        config = config.with_overrides(**overrides)

    if args.development_applications:
        try:
            store = FindingStore(db_path=config.db_path)
            summary = asyncio.run(run_development_applications(config, store))
        except (FetchError, ParseError, PersistenceError) as exc:
            root_logger.error(f"Development application fetch failed: {exc}")
            return 1
        if args.json:
            print(json.dumps(summary, indent=2))
        else:
            root_logger.info(
                f"Stored {summary['applications']} development applications for {summary['municipality']}"
            )
            indicators = summary["opportunity_indicators"]
            root_logger.info(
                f"High-opportunity applications: {indicators['high_opportunity_applications']}, "
                f"average score {indicators['average_opportunity_score']}"
            )
        return summary["exit_code"]

    try:
        store = None if args.test_mode else FindingStore(db_path=config.db_path)
    except PersistenceError as exc:
        root_logger.error(f"Cannot open findings database: {exc}")
        return 1
    runner = PipelineRunner(config, store=store)
    result = asyncio.run(runner.run(args.region, args.date_range, args.test_mode))

    if args.json:
        payload = to_legacy_filings(result) if args.legacy else result.to_dict()
        print(json.dumps(payload, indent=2, default=str))
    else:
        root_logger.info(
            f"Run {result.status.value}: {result.total_findings} findings, "
            f"{result.high_priority_count} high priority, average accuracy {result.accuracy}"
        )
        failed_sources = [outcome.name for outcome in result.sources_processed if outcome.status == "failed"]
        if failed_sources:
            root_logger.warning(f"Failed sources: {', '.join(failed_sources)}")
        if result.error:
            root_logger.error(f"Error: {result.error}")

    return result.exit_code()


if __name__ == "__main__":
    sys.exit(main())
