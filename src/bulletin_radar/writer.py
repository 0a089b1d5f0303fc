"""Bounded-concurrency persistence of findings."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional, Protocol, Sequence, TypeVar

from .config import PipelineConfig
from .database import finding_to_row, finding_update_values
from .errors import PersistenceError
from .logging_config import get_logger
from .models import Finding, PersistenceReport, WriteOutcome

logger = get_logger("writer")

T = TypeVar("T")
R = TypeVar("R")


class FindingSink(Protocol):
    """Anything that can atomically upsert a record by natural key."""

    def upsert(self, key: str, *, create: Mapping[str, Any], update: Mapping[str, Any]) -> Any:
        ...


async def bounded_gather(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int,
) -> List[R]:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight.

    Tasks are created in input order and results come back in input order,
    though completion order is not guaranteed.
    """
    if limit < 1:
        raise ValueError("limit must be at least 1")
    semaphore = asyncio.Semaphore(limit)

    async def _run(item: T) -> R:
        async with semaphore:
            return await worker(item)

    return await asyncio.gather(*(_run(item) for item in items))


class PersistenceWriter:
    """Upsert findings into a sink, at most ``persist_concurrency`` at a time."""

    def __init__(self, sink: FindingSink, config: Optional[PipelineConfig] = None) -> None:
        self.sink = sink
        self.config = config or PipelineConfig()

    async def _write_one(self, finding: Finding) -> WriteOutcome:
        key = finding.natural_key
        try:
            result = await asyncio.to_thread(
                self.sink.upsert,
                key,
                create=finding_to_row(finding),
                update=finding_update_values(finding),
            )
        except PersistenceError as exc:
            logger.error("Failed to persist finding %s: %s", key, exc)
            return WriteOutcome(key=key, status="failed", error=str(exc))
        except Exception as exc:
            logger.exception("Unexpected error persisting finding %s", key)
            return WriteOutcome(key=key, status="failed", error=f"{type(exc).__name__}: {exc}")

        return WriteOutcome(
            key=key,
            status=getattr(result, "status", "inserted"),
            record_id=getattr(result, "record_id", None),
        )

    async def write_all(self, findings: Sequence[Finding]) -> PersistenceReport:
        """Persist ``findings`` and report every outcome.

        A natural key that repeats within the batch is written once; later
        repeats are reported as skipped.
        """
        seen = set()
        to_write: List[Finding] = []
        skipped: List[WriteOutcome] = []
        for finding in findings:
            if finding.natural_key in seen:
                skipped.append(WriteOutcome(key=finding.natural_key, status="skipped"))
                continue
            seen.add(finding.natural_key)
            to_write.append(finding)

        outcomes = await bounded_gather(to_write, self._write_one, self.config.persist_concurrency)

        report = PersistenceReport(outcomes=[*outcomes, *skipped])
        first_failure = next((outcome for outcome in outcomes if outcome.status == "failed"), None)
        if first_failure:
            report.first_error = first_failure.error

        logger.info(
            "Persisted %s findings: %s inserted, %s updated, %s skipped, %s failed",
            len(findings),
            report.inserted,
            report.updated,
            report.skipped,
            report.failed,
        )
        return report
