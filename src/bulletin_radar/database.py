"""SQLite store for bulletin radar findings.

Provides schema management, idempotent upserts keyed by a natural key, run
bookkeeping and the query helpers read by the API layer.
"""

from __future__ import annotations

import argparse
import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from .errors import PersistenceError
from .logging_config import get_logger

logger = get_logger("database")

ISO_TIMESTAMP_SUFFIX = "Z"

FINDING_COLUMNS = (
    "finding_id",
    "title",
    "filing_type",
    "case_number",
    "address",
    "amount",
    "filing_date",
    "priority",
    "accuracy",
    "opportunity_score",
    "source",
    "jurisdiction",
    "link",
    "raw_content",
    "metadata",
)

DEVELOPMENT_COLUMNS = (
    "application_id",
    "address",
    "municipality",
    "application_type",
    "status",
    "submission_date",
    "description",
    "opportunity_score",
    "impact_radius",
    "publish_date",
    "metadata",
)


def _utc_now() -> str:
    """Return a UTC timestamp string with second precision."""
    return datetime.now(timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + ISO_TIMESTAMP_SUFFIX


@dataclass
class UpsertResult:
    """Outcome of an upsert: ``inserted`` or ``updated``."""

    status: str
    record_id: int


class FindingStore:
    """High-level helper for the bulletin radar SQLite database."""

    DEFAULT_DB_PATH = Path("database/bulletin_radar.db")

    def __init__(self, db_path: Optional[Union[str, Path]] = None, auto_initialize: bool = True) -> None:
        path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        if not path.is_absolute():
            path = Path.cwd() / path
        self.db_path = path
        if auto_initialize:
            self.initialize()

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        """Create the database directory and schema."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                self._apply_pragmas(conn)
                self._create_schema(conn)
                conn.commit()
        except (sqlite3.Error, OSError) as exc:
            raise PersistenceError(f"Cannot initialise database at {self.db_path}: {exc}") from exc

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _apply_pragmas(conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA temp_store=MEMORY")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS findings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                natural_key TEXT NOT NULL UNIQUE,
                finding_id TEXT NOT NULL,
                title TEXT NOT NULL,
                filing_type TEXT NOT NULL,
                case_number TEXT,
                address TEXT,
                amount REAL,
                filing_date TEXT NOT NULL,
                priority TEXT NOT NULL,
                accuracy INTEGER NOT NULL,
                opportunity_score INTEGER NOT NULL,
                source TEXT NOT NULL,
                jurisdiction TEXT,
                link TEXT,
                raw_content TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS ingestion_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                region TEXT,
                date_range TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                status TEXT NOT NULL DEFAULT 'running',
                total_findings INTEGER NOT NULL DEFAULT 0,
                inserted_records INTEGER NOT NULL DEFAULT 0,
                updated_records INTEGER NOT NULL DEFAULT 0,
                failed_records INTEGER NOT NULL DEFAULT 0,
                metadata TEXT
            );

            CREATE TABLE IF NOT EXISTS development_applications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                guid TEXT NOT NULL UNIQUE,
                application_id TEXT,
                address TEXT,
                municipality TEXT,
                application_type TEXT,
                status TEXT,
                submission_date TEXT,
                description TEXT,
                opportunity_score INTEGER,
                impact_radius TEXT,
                publish_date TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE VIRTUAL TABLE IF NOT EXISTS findings_fts USING fts5(
                title,
                address,
                raw_content,
                content='findings',
                content_rowid='id'
            );

            CREATE TRIGGER IF NOT EXISTS findings_ai AFTER INSERT ON findings BEGIN
                INSERT INTO findings_fts(rowid, title, address, raw_content)
                VALUES (new.id, new.title, new.address, new.raw_content);
            END;

            CREATE TRIGGER IF NOT EXISTS findings_ad AFTER DELETE ON findings BEGIN
                INSERT INTO findings_fts(findings_fts, rowid, title, address, raw_content)
                VALUES('delete', old.id, old.title, old.address, old.raw_content);
            END;

            CREATE TRIGGER IF NOT EXISTS findings_au AFTER UPDATE ON findings BEGIN
                INSERT INTO findings_fts(findings_fts, rowid, title, address, raw_content)
                VALUES('delete', old.id, old.title, old.address, old.raw_content);
                INSERT INTO findings_fts(rowid, title, address, raw_content)
                VALUES (new.id, new.title, new.address, new.raw_content);
            END;

            CREATE INDEX IF NOT EXISTS idx_findings_filing_date ON findings(filing_date);
            CREATE INDEX IF NOT EXISTS idx_findings_filing_type ON findings(filing_type);
            CREATE INDEX IF NOT EXISTS idx_findings_priority ON findings(priority);
            CREATE INDEX IF NOT EXISTS idx_findings_source ON findings(source);
            CREATE INDEX IF NOT EXISTS idx_runs_started_at ON ingestion_runs(started_at);
            CREATE INDEX IF NOT EXISTS idx_runs_status ON ingestion_runs(status);
            """
        )

    # ------------------------------------------------------------------
    # Upserts
    # ------------------------------------------------------------------
    def _upsert_row(
        self,
        table: str,
        key_column: str,
        key: str,
        columns: Sequence[str],
        create: Mapping[str, Any],
        update: Mapping[str, Any],
    ) -> UpsertResult:
        if not key:
            raise PersistenceError("natural key is required", key=key)

        now = _utc_now()
        try:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    existing = conn.execute(
                        f"SELECT id FROM {table} WHERE {key_column} = ?",
                        (key,),
                    ).fetchone()

                    if existing:
                        record_id = int(existing["id"])
                        values = self._prepare_values(update, columns)
                        if values:
                            assignments = ", ".join(f"{column} = :{column}" for column in values)
                            conn.execute(
                                f"UPDATE {table} SET {assignments}, updated_at = :updated_at WHERE id = :id",
                                {**values, "updated_at": now, "id": record_id},
                            )
                        status = "updated"
                    else:
                        values = self._prepare_values(create, columns)
                        names = [key_column, *values, "updated_at"]
                        placeholders = ", ".join(f":{name}" for name in names)
                        cur = conn.execute(
                            f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
                            {**values, key_column: key, "updated_at": now},
                        )
                        record_id = int(cur.lastrowid)
                        status = "inserted"
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to upsert {table} row {key!r}: {exc}", key=key) from exc

        logger.debug("%s %s row %s (id=%s)", status.capitalize(), table, key, record_id)
        return UpsertResult(status=status, record_id=record_id)

    def upsert(
        self,
        key: str,
        *,
        create: Mapping[str, Any],
        update: Mapping[str, Any],
    ) -> UpsertResult:
        """Insert ``create`` under ``key`` or apply ``update`` to the existing row."""
        return self._upsert_row("findings", "natural_key", key, FINDING_COLUMNS, create, update)

    def upsert_development_application(
        self,
        guid: str,
        *,
        create: Mapping[str, Any],
        update: Mapping[str, Any],
    ) -> UpsertResult:
        return self._upsert_row("development_applications", "guid", guid, DEVELOPMENT_COLUMNS, create, update)

    def _prepare_values(self, data: Mapping[str, Any], columns: Sequence[str]) -> Dict[str, Any]:
        unknown = set(data) - set(columns)
        if unknown:
            raise PersistenceError(f"Unknown columns: {', '.join(sorted(unknown))}")
        values: Dict[str, Any] = {}
        for column, value in data.items():
            if column == "metadata":
                value = self._to_json(value)
            elif isinstance(value, (datetime, date)):
                value = self._normalize_timestamp(value)
            values[column] = value
        return values

    # ------------------------------------------------------------------
    # Ingestion run helpers
    # ------------------------------------------------------------------
    def start_ingestion_run(
        self,
        region: Optional[str] = None,
        date_range: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        payload = {
            "region": region,
            "date_range": date_range,
            "started_at": _utc_now(),
            "metadata": self._to_json(metadata),
        }
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO ingestion_runs (region, date_range, started_at, metadata)
                    VALUES (:region, :date_range, :started_at, :metadata)
                    """,
                    payload,
                )
                run_id = cur.lastrowid
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to record ingestion run start: {exc}") from exc
        return run_id

    def complete_ingestion_run(
        self,
        run_id: int,
        *,
        status: str = "success",
        total: int = 0,
        inserted: int = 0,
        updated: int = 0,
        failed: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE ingestion_runs
                       SET status = ?,
                           completed_at = ?,
                           total_findings = ?,
                           inserted_records = ?,
                           updated_records = ?,
                           failed_records = ?,
                           metadata = COALESCE(?, metadata)
                     WHERE id = ?
                    """,
                    (
                        status,
                        _utc_now(),
                        total,
                        inserted,
                        updated,
                        failed,
                        self._to_json(metadata),
                        run_id,
                    ),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to record ingestion run {run_id} completion: {exc}") from exc

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------
    def get_finding(self, natural_key: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM findings WHERE natural_key = ?", (natural_key,)).fetchone()
        return self._row_to_dict(row) if row else None

    def get_findings(
        self,
        *,
        filing_type: Optional[str] = None,
        priority: Optional[str] = None,
        start_date: Optional[Union[str, date, datetime]] = None,
        end_date: Optional[Union[str, date, datetime]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        query = ["SELECT * FROM findings"]
        params: List[Any] = []
        filters: List[str] = []
        if filing_type:
            filters.append("filing_type = ?")
            params.append(filing_type)
        if priority:
            filters.append("priority = ?")
            params.append(priority)
        if start_date:
            filters.append("date(filing_date) >= ?")
            params.append(self._extract_date(start_date))
        if end_date:
            filters.append("date(filing_date) <= ?")
            params.append(self._extract_date(end_date))
        if filters:
            query.append("WHERE " + " AND ".join(filters))
        query.append("ORDER BY filing_date DESC, id DESC")
        if limit:
            query.append("LIMIT ?")
            params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(" ".join(query), params).fetchall()
        return [self._row_to_dict(row) for row in rows]

    def search_findings(self, query: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Full-text search across title, address and raw content."""
        sql = (
            "SELECT findings.* FROM findings "
            "JOIN findings_fts ON findings_fts.rowid = findings.id "
            "WHERE findings_fts MATCH ? ORDER BY findings.filing_date DESC LIMIT ?"
        )
        with self._connect() as conn:
            rows = conn.execute(sql, (query, limit)).fetchall()
        return [self._row_to_dict(row) for row in rows]

    def get_development_applications(self, *, municipality: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM development_applications"
        params: List[Any] = []
        if municipality:
            query += " WHERE municipality = ?"
            params.append(municipality)
        query += " ORDER BY id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_dict(row) for row in rows]

    def get_ingestion_metrics(
        self,
        *,
        start_date: Optional[Union[str, date, datetime]] = None,
        end_date: Optional[Union[str, date, datetime]] = None,
    ) -> Dict[str, Any]:
        query = ["SELECT * FROM ingestion_runs"]
        params: List[Any] = []
        filters: List[str] = []
        if start_date:
            filters.append("date(started_at) >= ?")
            params.append(self._extract_date(start_date))
        if end_date:
            filters.append("date(started_at) <= ?")
            params.append(self._extract_date(end_date))
        if filters:
            query.append("WHERE " + " AND ".join(filters))

        with self._connect() as conn:
            rows = conn.execute(" ".join(query), params).fetchall()

        totals: Dict[str, Any] = {
            "total_runs": len(rows),
            "findings_processed": 0,
            "inserted_records": 0,
            "updated_records": 0,
            "failed_records": 0,
            "runs_by_status": {},
        }
        for row in rows:
            totals["findings_processed"] += row["total_findings"] or 0
            totals["inserted_records"] += row["inserted_records"] or 0
            totals["updated_records"] += row["updated_records"] or 0
            totals["failed_records"] += row["failed_records"] or 0
            status = row["status"]
            totals["runs_by_status"][status] = totals["runs_by_status"].get(status, 0) + 1
        return totals

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        if "metadata" in data:
            data["metadata"] = self._from_json(data.get("metadata"), default={})
        return data

    @staticmethod
    def _to_json(value: Optional[Any]) -> Optional[str]:
        if value is None:
            return None
        return json.dumps(value, sort_keys=True, default=str)

    @staticmethod
    def _from_json(value: Optional[str], default: Any) -> Any:
        if not value:
            return default
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default

    @staticmethod
    def _normalize_timestamp(value: Union[date, datetime]) -> str:
        if isinstance(value, datetime):
            if value.tzinfo:
                value = value.astimezone(timezone.utc).replace(tzinfo=None)
            return value.replace(microsecond=0).isoformat() + ISO_TIMESTAMP_SUFFIX
        return datetime.combine(value, datetime.min.time()).isoformat() + ISO_TIMESTAMP_SUFFIX

    @staticmethod
    def _extract_date(value: Union[str, date, datetime]) -> str:
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        if "T" in value:
            return value.split("T")[0]
        return value


def finding_to_row(finding: Any) -> Dict[str, Any]:
    """Column values for a :class:`~bulletin_radar.models.Finding`."""
    return {
        "finding_id": finding.id,
        "title": finding.title,
        "filing_type": finding.filing_type.value,
        "case_number": finding.case_number,
        "address": finding.address,
        "amount": finding.amount,
        "filing_date": finding.filing_date,
        "priority": finding.priority.value,
        "accuracy": finding.accuracy,
        "opportunity_score": finding.opportunity_score,
        "source": finding.source,
        "jurisdiction": finding.jurisdiction,
        "link": finding.link,
        "raw_content": finding.raw_content,
        "metadata": finding.metadata or None,
    }


MUTABLE_FINDING_FIELDS = (
    "title",
    "filing_date",
    "priority",
    "accuracy",
    "opportunity_score",
    "amount",
    "address",
    "raw_content",
    "metadata",
)


def finding_update_values(finding: Any) -> Dict[str, Any]:
    row = finding_to_row(finding)
    return {column: row[column] for column in MUTABLE_FINDING_FIELDS}


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Bulletin radar database helper")
    parser.add_argument("--init", action="store_true", help="Initialise the database schema")
    parser.add_argument("--db-path", help="Override database path", default=None)
    args = parser.parse_args(argv)

    store = FindingStore(db_path=args.db_path, auto_initialize=False)
    if args.init:
        store.initialize()
        print(f"Initialised bulletin radar database at {store.db_path}")
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
