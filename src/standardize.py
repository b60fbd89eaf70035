from typing import List, Optional

import pandas as pd

from ingest import SourceTable
from mapping import apply_mapping
from models import ExternalRecord, LedgerRecord, UsageEvent
from utils import MINOR, amount_unit, clean_cell, coerce_amount, normalize_status, parse_flag, parse_instant


def _exception(row_number: int, source: str, reason: str) -> dict:
    return {"row_number": row_number, "source": source, "exception_reason": reason}


def _exceptions_frame(rows: List[dict]) -> pd.DataFrame:
    return pd.DataFrame(rows, columns=["row_number", "source", "exception_reason"])


def _slice(table: SourceTable, start: Optional[int], end: Optional[int]) -> pd.DataFrame:
    frame = table.frame.iloc[start:end]
    return apply_mapping(frame, table.mapping)


def _money(table: SourceTable, frame: pd.DataFrame, field: str, bare_unit: Optional[str] = None) -> pd.Series:
    """Amounts of one mapped field, in the unit decided by the whole source column."""
    if field not in frame.columns:
        return pd.Series([None] * len(frame.index), index=frame.index, dtype=object)
    unit = amount_unit(table.frame[table.mapping[field]], bare_unit)
    return coerce_amount(frame[field], unit)


def standardize_ledger(table: SourceTable,
                       start: Optional[int] = None,
                       end: Optional[int] = None) -> tuple[List[LedgerRecord], pd.DataFrame]:
    """
    Typed ledger records for rows [start, end). Rows whose amount cannot be
    parsed are skipped and reported as exceptions; a missing timestamp is kept
    as None.
    """
    records = []
    exceptions = []
    frame = _slice(table, start, end)
    amounts = _money(table, frame, "amount")
    fees = _money(table, frame, "fee_amount")
    for row_number, row in frame.iterrows():
        amount = amounts[row_number]
        if amount is None:
            exceptions.append(_exception(row_number, table.source, "bad_amount;"))
            continue
        occurred_at = parse_instant(row.get("created_at"))
        if occurred_at is None:
            exceptions.append(_exception(row_number, table.source, "bad_date;"))
        records.append(LedgerRecord(
            id=clean_cell(row.get("transaction_id")) or f"row-{row_number}",
            customer_key=clean_cell(row.get("customer_id")) or "",
            amount_minor=amount,
            status=normalize_status(row.get("status")),
            occurred_at=occurred_at,
            fee_minor=fees[row_number],
            invoice_ref=clean_cell(row.get("invoice_id")),
            description=clean_cell(row.get("description")) or "",
            email=clean_cell(row.get("customer_email")),
            customer_name=clean_cell(row.get("customer_name")),
            row_number=int(row_number),
        ))
    return records, _exceptions_frame(exceptions)


def standardize_processor(table: SourceTable) -> tuple[List[ExternalRecord], pd.DataFrame]:
    records = []
    exceptions = []
    frame = _slice(table, None, None)
    # processor exports carry bare integers in cents
    amounts = _money(table, frame, "amount", MINOR)
    fees = _money(table, frame, "fee", MINOR)
    refunded = _money(table, frame, "refunded_amount", MINOR)
    captured = _money(table, frame, "amount_captured", MINOR)
    for row_number, row in frame.iterrows():
        amount = amounts[row_number]
        if amount is None:
            exceptions.append(_exception(row_number, table.source, "bad_amount;"))
            continue
        occurred_at = parse_instant(row.get("created"))
        if occurred_at is None:
            exceptions.append(_exception(row_number, table.source, "bad_date;"))
        kind = "refund" if normalize_status(row.get("object")) == "refund" else "charge"
        records.append(ExternalRecord(
            id=clean_cell(row.get("id")) or f"row-{row_number}",
            customer_key=clean_cell(row.get("customer")) or "",
            amount_minor=amount,
            status=normalize_status(row.get("status")),
            occurred_at=occurred_at,
            fee_minor=fees[row_number],
            disputed=parse_flag(row.get("disputed")),
            payout_ref=clean_cell(row.get("payout_id")),
            refunded_amount_minor=refunded[row_number],
            captured_amount_minor=captured[row_number],
            kind=kind,
            description=clean_cell(row.get("description")) or "",
            email=clean_cell(row.get("customer_email")),
            invoice_ref=clean_cell(row.get("invoice")),
            row_number=int(row_number),
        ))
    return records, _exceptions_frame(exceptions)


def standardize_usage(table: SourceTable) -> tuple[List[UsageEvent], pd.DataFrame]:
    events = []
    exceptions = []
    for row_number, row in _slice(table, None, None).iterrows():
        customer = clean_cell(row.get("customer_id"))
        if not customer:
            exceptions.append(_exception(row_number, table.source, "bad_customer;"))
            continue
        raw_quantity = clean_cell(row.get("quantity"))
        quantity = pd.to_numeric(raw_quantity, errors="coerce") if raw_quantity else None
        events.append(UsageEvent(
            customer_key=customer,
            occurred_at=parse_instant(row.get("timestamp")),
            quantity=0.0 if quantity is None or pd.isna(quantity) else float(quantity),
            event_type=clean_cell(row.get("event_type")) or "",
            row_number=int(row_number),
        ))
    return events, _exceptions_frame(exceptions)
