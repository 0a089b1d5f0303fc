"""Tests for the pipeline runner: retries, run status and test mode."""

import asyncio
import json
import logging
from pathlib import Path

import httpx
import pytest

from bulletin_radar.config import PipelineConfig, SourceRegistry
from bulletin_radar.database import FindingStore
from bulletin_radar.errors import PersistenceError
from bulletin_radar.http_client import HTTPClient
from bulletin_radar.logging_config import ROOT_LOGGER_NAME
from bulletin_radar.models import DateRange, Priority, RunState, RunStatus
from bulletin_radar.runner import (
    PipelineRunner,
    _calculate_retry_delay,
    _should_retry_status,
    main,
    run,
    run_development_applications,
    to_legacy_filings,
)

DATA_DIR = Path(__file__).parent.parent / "data" / "bulletins"

ALPHA_URL = "https://alpha.example.test/rss"
BETA_URL = "https://beta.example.test/rss"
HIDDEN_URL = "https://hidden.example.test/notices"


@pytest.fixture
def feed_body():
    return (DATA_DIR / "ontario_notices.xml").read_text(encoding="utf-8")


@pytest.fixture
def write_registry(tmp_path):
    def _write(*sources):
        lines = ["regions: [gta, york]", "sources:"]
        for source_id, url, permitted in sources:
            lines.extend(
                [
                    f"  {source_id}:",
                    f"    name: {source_id.title()}",
                    "    jurisdiction: ONSC",
                    f"    url: {url}",
                    "    strategy: rss",
                    f"    permitted: {'true' if permitted else 'false'}",
                    "    regions: [gta]",
                ]
            )
        path = tmp_path / "sources.yaml"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return SourceRegistry(path)

    return _write


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_runner(registry, handler, sleep=None, **config_kwargs):
    config_kwargs.setdefault("source_delay_ms", 0)
    config = PipelineConfig(**config_kwargs)
    client = HTTPClient(config, transport=httpx.MockTransport(handler))
    return PipelineRunner(config, registry=registry, http_client=client, sleep=sleep or RecordingSleep())


def test_should_retry_status():
    assert _should_retry_status(503)
    assert _should_retry_status(429)
    assert _should_retry_status(408)
    assert not _should_retry_status(404)
    assert not _should_retry_status(403)


def test_retry_delay_grows_and_is_capped():
    config = PipelineConfig(retry_base_delay=1.0, retry_exponential_base=2.0, retry_max_delay=3.0)
    assert [_calculate_retry_delay(config, n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]


@pytest.mark.asyncio
async def test_successful_run_deduplicates_across_sources(write_registry, feed_body):
    registry = write_registry(("alpha", ALPHA_URL, True), ("beta", BETA_URL, True))
    runner = make_runner(registry, lambda request: httpx.Response(200, text=feed_body))

    result = await runner.run("gta", DateRange.WEEK)

    assert result.status is RunStatus.SUCCESS
    assert result.success is True
    assert result.exit_code() == 0
    assert result.total_findings == 1
    assert result.high_priority_count == 1
    finding = result.findings[0]
    assert finding.case_number == "CV-24-00012345"
    assert finding.priority is Priority.HIGH
    assert [outcome.status for outcome in result.sources_processed] == ["succeeded", "succeeded"]
    assert result.sources_processed[0].items_fetched == 3
    assert runner.state is RunState.COMPLETED


@pytest.mark.asyncio
async def test_client_error_is_not_retried_and_run_is_degraded(write_registry, feed_body):
    registry = write_registry(("alpha", ALPHA_URL, True), ("beta", BETA_URL, True))
    calls = []

    def handler(request):
        calls.append(str(request.url))
        if str(request.url) == ALPHA_URL:
            return httpx.Response(404)
        return httpx.Response(200, text=feed_body)

    sleep = RecordingSleep()
    result = await make_runner(registry, handler, sleep).run("gta")

    assert result.status is RunStatus.DEGRADED
    assert result.success is True
    assert result.exit_code() == 2
    assert result.total_findings == 1
    assert calls.count(ALPHA_URL) == 1
    alpha = result.sources_processed[0]
    assert alpha.status == "failed"
    assert alpha.attempts == 1
    assert alpha.error_type == "HttpError"
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_server_error_is_retried_with_backoff(write_registry, feed_body):
    registry = write_registry(("alpha", ALPHA_URL, True))
    attempts = {"count": 0}

    def handler(request):
        attempts["count"] += 1
        if attempts["count"] < 3:
            return httpx.Response(503)
        return httpx.Response(200, text=feed_body)

    sleep = RecordingSleep()
    result = await make_runner(registry, handler, sleep, retry_base_delay=1.0).run("gta")

    assert result.status is RunStatus.SUCCESS
    assert result.sources_processed[0].attempts == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_timeouts_are_retried_until_attempts_run_out(write_registry):
    registry = write_registry(("alpha", ALPHA_URL, True))

    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    sleep = RecordingSleep()
    result = await make_runner(registry, handler, sleep, retry_attempts=2).run("gta")

    assert result.status is RunStatus.FAILED
    assert result.success is False
    assert result.findings == []
    assert result.error == "All sources failed"
    outcome = result.sources_processed[0]
    assert outcome.attempts == 2
    assert outcome.error_type == "FetchTimeoutError"
    assert len(sleep.delays) == 1


@pytest.mark.asyncio
async def test_malformed_feed_is_not_retried(write_registry, feed_body):
    registry = write_registry(("alpha", ALPHA_URL, True), ("beta", BETA_URL, True))

    def handler(request):
        if str(request.url) == ALPHA_URL:
            return httpx.Response(200, text="garbage, not xml")
        return httpx.Response(200, text=feed_body)

    result = await make_runner(registry, handler).run("gta")

    alpha = result.sources_processed[0]
    assert alpha.attempts == 1
    assert alpha.error_type == "ParseError"
    assert result.status is RunStatus.DEGRADED


@pytest.mark.asyncio
async def test_unpermitted_source_is_skipped(write_registry, feed_body):
    registry = write_registry(("alpha", ALPHA_URL, True), ("hidden", HIDDEN_URL, False))
    calls = []

    def handler(request):
        calls.append(str(request.url))
        return httpx.Response(200, text=feed_body)

    result = await make_runner(registry, handler).run("gta")

    assert HIDDEN_URL not in calls
    assert result.status is RunStatus.SUCCESS
    assert [outcome.status for outcome in result.sources_processed] == ["succeeded", "skipped"]


@pytest.mark.asyncio
async def test_region_without_permitted_sources_fails(write_registry):
    registry = write_registry(("hidden", HIDDEN_URL, False))

    result = await make_runner(registry, lambda request: httpx.Response(200)).run("gta")

    assert result.status is RunStatus.FAILED
    assert "No permitted sources" in result.error


@pytest.mark.asyncio
async def test_unknown_region_returns_empty_failed_result(write_registry):
    registry = write_registry(("alpha", ALPHA_URL, True))

    result = await make_runner(registry, lambda request: httpx.Response(200)).run("atlantis")

    assert result.status is RunStatus.FAILED
    assert result.findings == []
    assert result.sources_processed == []
    assert "atlantis" in result.error
    assert result.exit_code() == 1


@pytest.mark.asyncio
async def test_invalid_date_range_raises(write_registry):
    registry = write_registry(("alpha", ALPHA_URL, True))

    with pytest.raises(ValueError):
        await make_runner(registry, lambda request: httpx.Response(200)).run("gta", "fortnight")


@pytest.mark.asyncio
async def test_inter_source_delay_between_fetches(write_registry, feed_body):
    registry = write_registry(
        ("alpha", ALPHA_URL, True),
        ("hidden", HIDDEN_URL, False),
        ("beta", BETA_URL, True),
    )
    sleep = RecordingSleep()

    await make_runner(registry, lambda request: httpx.Response(200, text=feed_body), sleep, source_delay_ms=500).run("gta")

    assert sleep.delays == [0.5]


@pytest.mark.asyncio
async def test_test_mode_uses_bundled_samples():
    sleep = RecordingSleep()
    runner = PipelineRunner(PipelineConfig(source_delay_ms=2000), registry=SourceRegistry(), sleep=sleep)

    result = await runner.run("gta", "week", test_mode=True)

    assert result.test_mode is True
    assert result.status is RunStatus.SUCCESS
    assert sleep.delays == []
    titles = [finding.title for finding in result.findings]
    assert "Notice of Sale under Mortgage" in titles
    assert "Foreclosure Hearing - Urgent" in titles
    assert "Power of Sale - Archived" not in titles
    assert "Residential market commentary" not in titles
    assert len(titles) == len(set(titles))
    ranks = [finding.priority.rank for finding in result.findings]
    assert ranks == sorted(ranks, reverse=True)
    skipped = {outcome.source_id for outcome in result.sources_processed if outcome.status == "skipped"}
    assert skipped == {"ontario_gazette", "toronto_sheriff_sales"}


def test_to_legacy_filings(write_registry, feed_body):
    registry = write_registry(("alpha", ALPHA_URL, True))
    result = asyncio.run(make_runner(registry, lambda request: httpx.Response(200, text=feed_body)).run("gta"))

    assert to_legacy_filings(result) == {
        "filings": [
            {
                "title": "Notice of Sale under Mortgage",
                "url": "https://notices.example.test/onsc/cv-24-00012345",
            }
        ]
    }


def test_main_test_mode_prints_json(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    for name in ("RADAR_SOURCES_FILE", "RADAR_FETCH_TIMEOUT_MS", "RADAR_SOURCE_DELAY_MS"):
        monkeypatch.delenv(name, raising=False)

    try:
        exit_code = main(["--test-mode", "--json", "--region", "toronto"])
    finally:
        root = logging.getLogger(ROOT_LOGGER_NAME)
        for handler in list(root.handlers):
            handler.close()
        root.handlers.clear()
        root.propagate = True

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert payload["status"] == "success"
    assert payload["test_mode"] is True
    assert payload["region"] == "toronto"
    assert payload["exit_code"] == 0
    assert payload["total_findings"] >= 2
    assert (tmp_path / "logs" / "bulletin_radar.log").exists()
    assert not (tmp_path / "database").exists()


class FailingUpsertStore(FindingStore):
    def upsert(self, key, *, create, update):
        raise PersistenceError("database is locked", key=key)


class FailingBookkeepingStore(FindingStore):
    def __init__(self, *args, fail_on=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_on = set(fail_on)

    def start_ingestion_run(self, *args, **kwargs):
        if "start" in self.fail_on:
            raise PersistenceError("Failed to record ingestion run start: disk I/O error")
        return super().start_ingestion_run(*args, **kwargs)

    def complete_ingestion_run(self, *args, **kwargs):
        if "complete" in self.fail_on:
            raise PersistenceError("Failed to record ingestion run completion: disk I/O error")
        return super().complete_ingestion_run(*args, **kwargs)


@pytest.mark.asyncio
async def test_persistence_failure_degrades_successful_run(tmp_path, write_registry, feed_body):
    registry = write_registry(("alpha", ALPHA_URL, True))
    runner = make_runner(registry, lambda request: httpx.Response(200, text=feed_body))
    runner.store = FailingUpsertStore(db_path=tmp_path / "radar.db")

    result = await runner.run("gta")

    assert result.status is RunStatus.DEGRADED
    assert result.success is True
    assert result.exit_code() == 2
    assert result.persistence.failed == 1
    assert result.persistence.inserted == 0
    assert "database is locked" in result.error
    metrics = runner.store.get_ingestion_metrics()
    assert metrics["runs_by_status"] == {"degraded": 1}
    assert metrics["failed_records"] == 1


@pytest.mark.asyncio
async def test_persistence_failure_sets_error_on_already_degraded_run(tmp_path, write_registry, feed_body):
    registry = write_registry(("alpha", ALPHA_URL, True), ("beta", BETA_URL, True))

    def handler(request):
        if str(request.url) == ALPHA_URL:
            return httpx.Response(404)
        return httpx.Response(200, text=feed_body)

    runner = make_runner(registry, handler)
    runner.store = FailingUpsertStore(db_path=tmp_path / "radar.db")

    result = await runner.run("gta")

    assert result.status is RunStatus.DEGRADED
    assert result.persistence.failed == 1
    assert result.error is not None
    assert "database is locked" in result.error


@pytest.mark.asyncio
async def test_successful_run_persists_findings(tmp_path, write_registry, feed_body):
    registry = write_registry(("alpha", ALPHA_URL, True))
    runner = make_runner(registry, lambda request: httpx.Response(200, text=feed_body))
    runner.store = FindingStore(db_path=tmp_path / "radar.db")

    result = await runner.run("gta")

    assert result.status is RunStatus.SUCCESS
    assert result.error is None
    assert result.persistence.inserted == 1
    assert len(runner.store.get_findings()) == 1
    assert runner.store.get_ingestion_metrics()["runs_by_status"] == {"success": 1}


@pytest.mark.asyncio
@pytest.mark.parametrize("fail_on", ["start", "complete"])
async def test_ingestion_run_bookkeeping_failure_degrades_run(tmp_path, write_registry, feed_body, fail_on):
    registry = write_registry(("alpha", ALPHA_URL, True))
    runner = make_runner(registry, lambda request: httpx.Response(200, text=feed_body))
    runner.store = FailingBookkeepingStore(db_path=tmp_path / "radar.db", fail_on=[fail_on])

    result = await runner.run("gta")

    assert result.status is RunStatus.DEGRADED
    assert result.exit_code() == 2
    assert result.total_findings == 1
    assert result.persistence.inserted == 1
    assert "disk I/O error" in result.error
    assert runner.state is RunState.COMPLETED


def test_run_defaults_to_store_at_configured_db_path(tmp_path, write_registry, feed_body):
    registry = write_registry(("alpha", ALPHA_URL, True))
    db_path = tmp_path / "db" / "radar.db"
    config = PipelineConfig(source_delay_ms=0, sources_path=registry.config_path, db_path=db_path)
    client = HTTPClient(config, transport=httpx.MockTransport(lambda request: httpx.Response(200, text=feed_body)))

    result = run("gta", "week", config=config, http_client=client)

    assert result.status is RunStatus.SUCCESS
    assert result.persistence is not None
    assert result.persistence.inserted == 1
    assert db_path.exists()
    stored = FindingStore(db_path=db_path)
    assert len(stored.get_findings()) == 1
    assert stored.get_ingestion_metrics()["total_runs"] == 1


def test_run_returns_failed_result_for_bad_environment(monkeypatch):
    monkeypatch.setenv("RADAR_PERSIST_CONCURRENCY", "abc")

    result = run("gta", "week")

    assert result.status is RunStatus.FAILED
    assert result.success is False
    assert result.exit_code() == 1
    assert result.date_range == "week"
    assert "RADAR_PERSIST_CONCURRENCY" in result.error


def test_run_returns_failed_result_when_store_cannot_open(tmp_path):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("", encoding="utf-8")
    config = PipelineConfig(db_path=blocker / "radar.db")

    result = run("gta", DateRange.TODAY, config=config)

    assert result.status is RunStatus.FAILED
    assert result.error.startswith("Cannot initialise database")
    assert result.total_findings == 0


@pytest.mark.asyncio
async def test_development_summary_includes_opportunity_indicators(tmp_path):
    body = {
        "applications": [
            {"id": "A-1", "type": "Plan of Subdivision", "status": "Approved", "submissionDate": "2000-01-01"},
            {"id": "A-2", "type": "Rezoning", "status": "Pending"},
            {"id": "A-3", "type": "Minor Variance", "status": "Pending"},
        ]
    }
    config = PipelineConfig(
        dev_apps_url="https://devapps.example.test/projects.json",
        dev_apps_types=("subdivision", "variance"),
    )
    store = FindingStore(db_path=tmp_path / "radar.db")
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text=json.dumps(body)))

    async with HTTPClient(config, transport=transport) as client:
        summary = await run_development_applications(config, store, http_client=client)

    assert summary["applications"] == 2
    assert summary["types"] == ["subdivision", "variance"]
    assert summary["exit_code"] == 0
    assert summary["persistence"]["inserted"] == 2
    indicators = summary["opportunity_indicators"]
    assert indicators["land_assembly_opportunities"] == 1
    assert indicators["development_potential"] == 1
    assert indicators["high_opportunity_applications"] == 1
    radii = {row["guid"]: row["impact_radius"] for row in store.get_development_applications()}
    assert radii == {"A-1": "1km", "A-3": "200m"}


@pytest.mark.asyncio
async def test_extraction_errors_are_not_swallowed(write_registry, feed_body):
    registry = write_registry(("alpha", ALPHA_URL, True))
    runner = make_runner(registry, lambda request: httpx.Response(200, text=feed_body))

    class BrokenClassifier:
        def build_finding(self, item, fields, source):
            raise ValueError("unsupported filing layout")

    runner.classifier = BrokenClassifier()

    with pytest.raises(ValueError, match="unsupported filing layout"):
        await runner.run("gta")
