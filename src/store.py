import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from errors import ErrorCode, StateError
from models import (
    AnomalyRecord,
    Category,
    Chunk,
    ChunkStatus,
    Confidence,
    Match,
    RunStatus,
    RunSummary,
)

logger = logging.getLogger(__name__)

RUN_FIELDS = {
    "status", "schema", "total_anomalies", "annual_revenue_at_risk_minor", "period_start",
    "period_end", "chunks_total", "chunks_completed", "error_message", "summary_text",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    # fixed width so stored timestamps compare correctly as text
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


class ReconStore:
    def __init__(self, db_path: str = "outputs/recon_state.db"):
        self.db_path = db_path
        self._initialized = False

    @contextmanager
    def connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        if self._initialized:
            return
        folder = os.path.dirname(self.db_path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("""
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    schema TEXT,
                    ledger_path TEXT,
                    processor_path TEXT,
                    rules TEXT,
                    total_anomalies INTEGER DEFAULT 0,
                    annual_revenue_at_risk_minor INTEGER DEFAULT 0,
                    period_start TEXT,
                    period_end TEXT,
                    chunks_total INTEGER DEFAULT 0,
                    chunks_completed INTEGER DEFAULT 0,
                    error_message TEXT,
                    summary_text TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS chunks (
                    run_id TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    total_chunks INTEGER NOT NULL,
                    start_row INTEGER NOT NULL,
                    end_row INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    anomalies_found INTEGER DEFAULT 0,
                    attempts INTEGER DEFAULT 0,
                    error_message TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    PRIMARY KEY (run_id, chunk_index)
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS consumption (
                    run_id TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    ledger_row INTEGER NOT NULL,
                    ledger_id TEXT,
                    tier TEXT NOT NULL,
                    gap_seconds REAL,
                    chunk_index INTEGER,
                    PRIMARY KEY (run_id, external_id)
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS anomalies (
                    run_id TEXT NOT NULL,
                    anomaly_id TEXT NOT NULL,
                    category TEXT NOT NULL,
                    customer_key TEXT,
                    confidence TEXT NOT NULL,
                    monthly_impact_minor INTEGER NOT NULL,
                    annual_impact_minor INTEGER NOT NULL,
                    description TEXT,
                    root_cause TEXT,
                    recommendation TEXT,
                    reference TEXT NOT NULL,
                    evidence TEXT,
                    detected_at TEXT,
                    chunk_index INTEGER,
                    PRIMARY KEY (run_id, anomaly_id)
                )
            """)
            cur.execute("CREATE INDEX IF NOT EXISTS idx_anomalies_category ON anomalies(run_id, category)")
            conn.commit()
        self._initialized = True

    def reset_run(self, run_id: str, ledger_path: str, processor_path: str,
                  rules: Dict[str, Any], now: Optional[datetime] = None) -> None:
        """Drop every trace of a previous attempt of this run and start over in `chunking`."""
        self.initialize()
        stamp = to_iso(now or utcnow())
        with self.connect() as conn:
            with conn:
                conn.execute("DELETE FROM chunks WHERE run_id = ?", (run_id,))
                conn.execute("DELETE FROM anomalies WHERE run_id = ?", (run_id,))
                conn.execute("DELETE FROM consumption WHERE run_id = ?", (run_id,))
                conn.execute("DELETE FROM runs WHERE run_id = ?", (run_id,))
                conn.execute(
                    """
                    INSERT INTO runs (run_id, status, ledger_path, processor_path, rules, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, RunStatus.CHUNKING.value, ledger_path, processor_path,
                     json.dumps(rules, sort_keys=True), stamp, stamp),
                )

    def update_run(self, run_id: str, **fields: Any) -> None:
        unknown = set(fields) - RUN_FIELDS
        if unknown:
            raise ValueError(f"Unknown run fields: {sorted(unknown)}")
        if not fields:
            return
        values = {k: (v.value if isinstance(v, RunStatus) else v) for k, v in fields.items()}
        assignments = ", ".join(f"{k} = ?" for k in values)
        with self.connect() as conn:
            with conn:
                conn.execute(
                    f"UPDATE runs SET {assignments}, updated_at = ? WHERE run_id = ?",
                    (*values.values(), to_iso(utcnow()), run_id),
                )

    def _run_row(self, conn, run_id: str):
        return conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()

    def get_run(self, run_id: str) -> Optional[RunSummary]:
        self.initialize()
        with self.connect() as conn:
            row = self._run_row(conn, run_id)
        if row is None:
            return None
        return RunSummary(
            run_id=row["run_id"],
            status=RunStatus(row["status"]),
            schema=row["schema"],
            total_anomalies=row["total_anomalies"] or 0,
            annual_revenue_at_risk_minor=row["annual_revenue_at_risk_minor"] or 0,
            period_start=row["period_start"],
            period_end=row["period_end"],
            chunks_total=row["chunks_total"] or 0,
            chunks_completed=row["chunks_completed"] or 0,
            error_message=row["error_message"],
            summary_text=row["summary_text"],
        )

    def get_run_inputs(self, run_id: str) -> Tuple[str, str, Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            row = self._run_row(conn, run_id)
        if row is None:
            raise StateError(f"Run {run_id} not found", run_id, code=ErrorCode.RUN_NOT_FOUND)
        return row["ledger_path"], row["processor_path"], json.loads(row["rules"] or "{}")

    def fail_run(self, run_id: str, message: str) -> None:
        logger.error("Run %s failed: %s", run_id, message)
        self.update_run(run_id, status=RunStatus.FAILED, error_message=message)

    def abort_run(self, run_id: str, reason: str) -> None:
        """Remaining chunks become `error`; completed chunks and their rows stay as they are."""
        with self.connect() as conn:
            with conn:
                conn.execute(
                    """
                    UPDATE chunks SET status = ?, error_message = ?
                    WHERE run_id = ? AND status IN (?, ?)
                    """,
                    (ChunkStatus.ERROR.value, reason, run_id,
                     ChunkStatus.PENDING.value, ChunkStatus.PROCESSING.value),
                )
                conn.execute(
                    "UPDATE runs SET status = ?, error_message = ?, updated_at = ? WHERE run_id = ?",
                    (RunStatus.FAILED.value, reason, to_iso(utcnow()), run_id),
                )

    def create_chunks(self, run_id: str, ranges: List[Tuple[int, int]]) -> List[Chunk]:
        total = len(ranges)
        with self.connect() as conn:
            with conn:
                conn.executemany(
                    """
                    INSERT INTO chunks (run_id, chunk_index, total_chunks, start_row, end_row, status)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [(run_id, i, total, start, end, ChunkStatus.PENDING.value)
                     for i, (start, end) in enumerate(ranges)],
                )
                conn.execute(
                    """
                    UPDATE runs SET status = ?, chunks_total = ?, chunks_completed = 0, updated_at = ?
                    WHERE run_id = ?
                    """,
                    (RunStatus.PROCESSING.value, total, to_iso(utcnow()), run_id),
                )
        return self.get_chunks(run_id)

    @staticmethod
    def _chunk(row) -> Chunk:
        return Chunk(
            run_id=row["run_id"],
            index=row["chunk_index"],
            total_chunks=row["total_chunks"],
            start_row=row["start_row"],
            end_row=row["end_row"],
            status=ChunkStatus(row["status"]),
            anomalies_found=row["anomalies_found"] or 0,
            attempts=row["attempts"] or 0,
            error_message=row["error_message"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    def get_chunks(self, run_id: str) -> List[Chunk]:
        self.initialize()
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE run_id = ? ORDER BY chunk_index", (run_id,)
            ).fetchall()
        return [self._chunk(r) for r in rows]

    def claim_next_chunk(self, run_id: str, stale_after_seconds: float,
                         now: Optional[datetime] = None) -> Optional[Chunk]:
        """
        Claim the lowest-index non-completed chunk if it is pending, or processing
        but stale. Returns None when nothing is claimable, when the run is not
        processing, or when another worker won the race.
        """
        self.initialize()
        now = now or utcnow()
        with self.connect() as conn:
            run = self._run_row(conn, run_id)
            if run is None or run["status"] != RunStatus.PROCESSING.value:
                return None
            row = conn.execute(
                """
                SELECT * FROM chunks WHERE run_id = ? AND status != ?
                ORDER BY chunk_index LIMIT 1
                """,
                (run_id, ChunkStatus.COMPLETED.value),
            ).fetchone()
            if row is None:
                return None

            status = row["status"]
            if status == ChunkStatus.PROCESSING.value:
                started = from_iso(row["started_at"])
                if started is not None and started > now - timedelta(seconds=stale_after_seconds):
                    return None
                logger.warning("Re-claiming stale chunk %d of run %s", row["chunk_index"], run_id)
            elif status != ChunkStatus.PENDING.value:
                return None

            with conn:
                cur = conn.execute(
                    """
                    UPDATE chunks SET status = ?, started_at = ?, attempts = attempts + 1
                    WHERE run_id = ? AND chunk_index = ? AND status = ? AND COALESCE(started_at, '') = ?
                    """,
                    (ChunkStatus.PROCESSING.value, to_iso(now), run_id, row["chunk_index"],
                     status, row["started_at"] or ""),
                )
            if cur.rowcount != 1:
                logger.info("Lost claim race for chunk %d of run %s", row["chunk_index"], run_id)
                return None
            claimed = conn.execute(
                "SELECT * FROM chunks WHERE run_id = ? AND chunk_index = ?", (run_id, row["chunk_index"])
            ).fetchone()
        return self._chunk(claimed)

    def complete_chunk(self, chunk: Chunk, matches: Iterable[Match],
                       anomalies: Iterable[AnomalyRecord], now: Optional[datetime] = None) -> None:
        """
        Consumption rows, anomalies and the chunk's completion land together or
        not at all. Fails with StateError if the claim was lost to another worker.
        """
        anomalies = list(anomalies)
        with self.connect() as conn:
            with conn:
                cur = conn.execute(
                    """
                    UPDATE chunks SET status = ?, completed_at = ?, anomalies_found = ?, error_message = NULL
                    WHERE run_id = ? AND chunk_index = ? AND status = ? AND started_at = ?
                    """,
                    (ChunkStatus.COMPLETED.value, to_iso(now or utcnow()), len(anomalies),
                     chunk.run_id, chunk.index, ChunkStatus.PROCESSING.value, chunk.started_at),
                )
                if cur.rowcount != 1:
                    raise StateError(f"Chunk {chunk.index} is no longer owned by this worker", chunk.run_id)
                conn.executemany(
                    """
                    INSERT INTO consumption (run_id, external_id, ledger_row, ledger_id, tier, gap_seconds, chunk_index)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [(chunk.run_id, m.external_id, m.ledger_row, m.ledger_id, m.tier, m.gap_seconds, chunk.index)
                     for m in matches],
                )
                self._insert_anomalies(conn, chunk.run_id, anomalies, chunk.index)
                conn.execute(
                    """
                    UPDATE runs SET chunks_completed =
                        (SELECT COUNT(*) FROM chunks WHERE run_id = ? AND status = ?),
                        updated_at = ?
                    WHERE run_id = ?
                    """,
                    (chunk.run_id, ChunkStatus.COMPLETED.value, to_iso(utcnow()), chunk.run_id),
                )

    def release_chunk(self, chunk: Chunk, message: str, max_attempts: int) -> ChunkStatus:
        """Return a failed chunk to `pending`, or to `error` once its attempts are spent."""
        status = ChunkStatus.ERROR if chunk.attempts >= max_attempts else ChunkStatus.PENDING
        with self.connect() as conn:
            with conn:
                conn.execute(
                    """
                    UPDATE chunks SET status = ?, error_message = ?, started_at = NULL
                    WHERE run_id = ? AND chunk_index = ? AND status = ?
                    """,
                    (status.value, message, chunk.run_id, chunk.index, ChunkStatus.PROCESSING.value),
                )
        return status

    def fail_chunk(self, chunk: Chunk, message: str) -> None:
        with self.connect() as conn:
            with conn:
                conn.execute(
                    "UPDATE chunks SET status = ?, error_message = ? WHERE run_id = ? AND chunk_index = ?",
                    (ChunkStatus.ERROR.value, message, chunk.run_id, chunk.index),
                )

    def load_consumed(self, run_id: str) -> Set[str]:
        with self.connect() as conn:
            rows = conn.execute("SELECT external_id FROM consumption WHERE run_id = ?", (run_id,)).fetchall()
        return {r["external_id"] for r in rows}

    def load_matches(self, run_id: str) -> List[Match]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM consumption WHERE run_id = ? ORDER BY ledger_row", (run_id,)
            ).fetchall()
        return [
            Match(
                ledger_row=r["ledger_row"],
                ledger_id=r["ledger_id"],
                external_id=r["external_id"],
                tier=r["tier"],
                gap_seconds=r["gap_seconds"],
            )
            for r in rows
        ]

    def begin_finalize(self, run_id: str) -> bool:
        """processing -> finalizing, only once and only when every chunk completed."""
        with self.connect() as conn:
            with conn:
                cur = conn.execute(
                    """
                    UPDATE runs SET status = ?, updated_at = ?
                    WHERE run_id = ? AND status = ?
                      AND NOT EXISTS (SELECT 1 FROM chunks WHERE run_id = ? AND status != ?)
                    """,
                    (RunStatus.FINALIZING.value, to_iso(utcnow()), run_id, RunStatus.PROCESSING.value,
                     run_id, ChunkStatus.COMPLETED.value),
                )
        return cur.rowcount == 1

    def finish_run(self, run_id: str, insert: Iterable[AnomalyRecord], delete_ids: Iterable[str],
                   **summary: Any) -> None:
        """Apply the final anomaly set, clear the consumption ledger and mark the run done."""
        delete_ids = list(delete_ids)
        with self.connect() as conn:
            with conn:
                self._insert_anomalies(conn, run_id, list(insert), None)
                conn.executemany(
                    "DELETE FROM anomalies WHERE run_id = ? AND anomaly_id = ?",
                    [(run_id, anomaly_id) for anomaly_id in delete_ids],
                )
                conn.execute("DELETE FROM consumption WHERE run_id = ?", (run_id,))
                fields = dict(summary, status=RunStatus.DONE.value)
                unknown = set(fields) - RUN_FIELDS
                if unknown:
                    raise ValueError(f"Unknown run fields: {sorted(unknown)}")
                assignments = ", ".join(f"{k} = ?" for k in fields)
                conn.execute(
                    f"UPDATE runs SET {assignments}, updated_at = ? WHERE run_id = ?",
                    (*fields.values(), to_iso(utcnow()), run_id),
                )

    @staticmethod
    def _insert_anomalies(conn, run_id: str, anomalies: List[AnomalyRecord], chunk_index: Optional[int]) -> None:
        conn.executemany(
            """
            INSERT INTO anomalies (
                run_id, anomaly_id, category, customer_key, confidence, monthly_impact_minor,
                annual_impact_minor, description, root_cause, recommendation, reference,
                evidence, detected_at, chunk_index
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (run_id, a.anomaly_id(run_id), a.category.value, a.customer_key, a.confidence.value,
                 a.monthly_impact_minor, a.annual_impact_minor, a.description, a.root_cause,
                 a.recommendation, a.reference, json.dumps(a.evidence, sort_keys=True, default=str),
                 to_iso(a.detected_at), chunk_index)
                for a in anomalies
            ],
        )

    def list_anomalies(self, run_id: str) -> List[AnomalyRecord]:
        self.initialize()
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM anomalies WHERE run_id = ?
                ORDER BY annual_impact_minor DESC, monthly_impact_minor DESC, reference
                """,
                (run_id,),
            ).fetchall()
        return [
            AnomalyRecord(
                category=Category(r["category"]),
                customer_key=r["customer_key"],
                confidence=Confidence(r["confidence"]),
                monthly_impact_minor=r["monthly_impact_minor"],
                annual_impact_minor=r["annual_impact_minor"],
                description=r["description"],
                root_cause=r["root_cause"],
                recommendation=r["recommendation"],
                reference=r["reference"],
                evidence=json.loads(r["evidence"] or "{}"),
                detected_at=from_iso(r["detected_at"]),
            )
            for r in rows
        ]
