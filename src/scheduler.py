import logging
from datetime import datetime
from typing import List, Optional, Tuple

import pandas as pd

from caps import cap_and_rank
from classify import classify_slice, finalize
from config import ReconConfig
from errors import EmptyDatasetError, InputError, StateError
from ingest import SCHEMA_USAGE, SourceTable, load_ledger, load_processor
from match import MatchIndex, reconcile_slice
from models import AnomalyRecord, Chunk, ChunkStatus, Match, RunStatus, RunSummary
from rules import Rules, resolve_rules
from standardize import standardize_ledger, standardize_processor, standardize_usage
from store import ReconStore, utcnow
from usage import classify_usage
from utils import coerce_instant, day_key, format_minor

logger = logging.getLogger(__name__)

TERMINAL = {RunStatus.DONE, RunStatus.FAILED}

# canonical date field per source mapping, used for the reporting period
DATE_FIELDS = ("created_at", "timestamp", "created")


def plan_chunks(total_rows: int, schema: str, settings: ReconConfig) -> List[Tuple[int, int]]:
    """Half-open row ranges over the ledger. Small and usage inputs run as one chunk."""
    if schema == SCHEMA_USAGE or total_rows <= settings.direct_processing_limit:
        return [(0, total_rows)]
    size = max(1, settings.chunk_size)
    return [(start, min(start + size, total_rows)) for start in range(0, total_rows, size)]


def _load_inputs(ledger_path: str, processor_path: str) -> Tuple[SourceTable, str, SourceTable]:
    ledger, schema = load_ledger(ledger_path)
    processor = load_processor(processor_path)
    return ledger, schema, processor


def start_run(store: ReconStore, run_id: str, ledger_path: str, processor_path: str,
              rules: Rules, settings: ReconConfig) -> RunSummary:
    """Reset the run, validate both files and write the chunk plan."""
    store.reset_run(run_id, ledger_path, processor_path, rules.to_dict())
    try:
        ledger, schema, processor = _load_inputs(ledger_path, processor_path)
        if schema == SCHEMA_USAGE:
            usable, _ = standardize_usage(ledger)
        else:
            usable, _ = standardize_ledger(ledger)
        if not usable:
            raise EmptyDatasetError("ledger")
        external, _ = standardize_processor(processor)
        if not external:
            raise EmptyDatasetError("processor")
    except InputError as exc:
        store.fail_run(run_id, exc.message)
        return store.get_run(run_id)

    ranges = plan_chunks(len(ledger), schema, settings)
    store.update_run(run_id, schema=schema)
    store.create_chunks(run_id, ranges)
    logger.info("Run %s planned: schema=%s, %d ledger rows, %d chunk(s)", run_id, schema, len(ledger), len(ranges))
    return store.get_run(run_id)


def _process_chunk(store: ReconStore, chunk: Chunk,
                   now: Optional[datetime]) -> Tuple[List[AnomalyRecord], List[Match]]:
    now = now or utcnow()
    ledger_path, processor_path, rules_dict = store.get_run_inputs(chunk.run_id)
    rules = resolve_rules(rules_dict)
    ledger, schema, processor = _load_inputs(ledger_path, processor_path)
    external, _ = standardize_processor(processor)

    if schema == SCHEMA_USAGE:
        events, _ = standardize_usage(ledger)
        candidates = classify_usage(events, external, rules, now)
        matches: List[Match] = []
    else:
        records, _ = standardize_ledger(ledger, chunk.start_row, chunk.end_row)
        index = MatchIndex.build(external, store.load_consumed(chunk.run_id))
        result = reconcile_slice(records, index, rules)
        candidates = classify_slice(result, index, rules, now)
        matches = result.matches

    kept, _ = cap_and_rank(candidates, rules.caps)
    return kept, matches


def process_next_chunk(store: ReconStore, run_id: str, settings: ReconConfig,
                       now: Optional[datetime] = None) -> Optional[Chunk]:
    """Claim and process one chunk. Returns the claimed chunk, or None if nothing was claimable."""
    chunk = store.claim_next_chunk(run_id, settings.stale_after_seconds, now)
    if chunk is None:
        return None
    logger.info("Processing chunk %d/%d of run %s (rows %d-%d, attempt %d)",
                chunk.index + 1, chunk.total_chunks, run_id, chunk.start_row, chunk.end_row, chunk.attempts)
    try:
        anomalies, matches = _process_chunk(store, chunk, now)
        store.complete_chunk(chunk, matches, anomalies, now)
    except InputError as exc:
        store.fail_chunk(chunk, exc.message)
        store.fail_run(run_id, exc.message)
    except StateError as exc:
        logger.warning("Chunk %d of run %s: %s", chunk.index, run_id, exc.message)
    except Exception as exc:
        logger.exception("Chunk %d of run %s failed", chunk.index, run_id)
        status = store.release_chunk(chunk, str(exc), settings.max_attempts)
        if status == ChunkStatus.ERROR:
            store.fail_run(run_id, f"Chunk {chunk.index} failed after {chunk.attempts} attempts: {exc}")
    else:
        logger.info("Chunk %d of run %s completed: %d matches, %d anomalies",
                    chunk.index, run_id, len(matches), len(anomalies))
    return chunk


def reporting_period(*tables: SourceTable) -> Tuple[Optional[str], Optional[str]]:
    instants = []
    for table in tables:
        for name in DATE_FIELDS:
            column = table.mapping.get(name)
            if column:
                instants.append(coerce_instant(table.frame[column]).dropna())
    if not instants:
        return None, None
    combined = pd.concat(instants)
    if combined.empty:
        return None, None
    return day_key(combined.min()), day_key(combined.max())


def finalize_run(store: ReconStore, run_id: str, now: Optional[datetime] = None) -> Optional[RunSummary]:
    if not store.begin_finalize(run_id):
        return None
    logger.info("Finalizing run %s", run_id)
    now = now or utcnow()
    try:
        ledger_path, processor_path, rules_dict = store.get_run_inputs(run_id)
        rules = resolve_rules(rules_dict)
        ledger, schema, processor = _load_inputs(ledger_path, processor_path)

        new: List[AnomalyRecord] = []
        if schema != SCHEMA_USAGE:
            records, _ = standardize_ledger(ledger)
            external, _ = standardize_processor(processor)
            new = finalize(records, external, store.load_matches(run_id), rules, now)

        existing = store.list_anomalies(run_id)
        existing_ids = {a.anomaly_id(run_id) for a in existing}
        kept, dropped = cap_and_rank(existing + new, rules.caps)
        insert = [a for a in kept if a.anomaly_id(run_id) not in existing_ids]
        delete_ids = [a.anomaly_id(run_id) for a in dropped if a.anomaly_id(run_id) in existing_ids]

        annual = sum(a.annual_impact_minor for a in kept)
        period_start, period_end = reporting_period(ledger, processor)
        summary_text = (f"Analysis complete. Found {len(kept)} anomalies totaling "
                        f"{format_minor(annual, rules.currency_code)} at risk.")
        store.finish_run(
            run_id, insert, delete_ids,
            total_anomalies=len(kept),
            annual_revenue_at_risk_minor=annual,
            period_start=period_start,
            period_end=period_end,
            summary_text=summary_text,
            error_message=None,
        )
    except Exception as exc:
        store.fail_run(run_id, f"Finalization failed: {exc}")
        raise
    logger.info("Run %s done: %s", run_id, summary_text)
    return store.get_run(run_id)


def run_worker(store: ReconStore, run_id: str, settings: ReconConfig, chain: bool = True,
               now: Optional[datetime] = None) -> Optional[RunSummary]:
    while True:
        chunk = process_next_chunk(store, run_id, settings, now)
        finalize_run(store, run_id, now)
        run = store.get_run(run_id)
        if run is None or run.status in TERMINAL or chunk is None or not chain:
            return run


def abort_run(store: ReconStore, run_id: str, reason: str) -> Optional[RunSummary]:
    logger.warning("Aborting run %s: %s", run_id, reason)
    store.abort_run(run_id, reason)
    return store.get_run(run_id)


def reconcile_files(store: ReconStore, settings: ReconConfig, rules: Rules,
                    ledger_path: Optional[str] = None,
                    processor_path: Optional[str] = None,
                    run_id: Optional[str] = None) -> Optional[RunSummary]:
    """Start a run and drive it to completion in this process."""
    run_id = run_id or settings.run_id
    run = start_run(store, run_id, ledger_path or settings.ledger_path,
                    processor_path or settings.processor_path, rules, settings)
    if run.status == RunStatus.FAILED:
        return run
    return run_worker(store, run_id, settings, chain=True)
