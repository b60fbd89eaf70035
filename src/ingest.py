import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

import pandas as pd

from errors import EmptyDatasetError, InputError, MissingColumnsError
from mapping import (
    LEDGER_HINTS,
    PROCESSOR_HINTS,
    USAGE_HINTS,
    is_transaction_ledger,
    missing_fields,
    resolve_columns,
)

logger = logging.getLogger(__name__)

SCHEMA_TRANSACTIONS = "transactions"
SCHEMA_USAGE = "usage"

REQUIRED_LEDGER = ["customer_id", "amount", "status"]
REQUIRED_USAGE = ["customer_id"]
REQUIRED_PROCESSOR = ["customer", "amount", "status"]


@dataclass
class SourceTable:
    """A raw table plus the column mapping resolved once for it."""
    source: str
    frame: pd.DataFrame
    mapping: Dict[str, Optional[str]]

    @property
    def headers(self) -> List[str]:
        return list(self.frame.columns)

    def __len__(self) -> int:
        return len(self.frame)


def load_csv(path: str, source: str) -> pd.DataFrame:
    """Read a delimited file as strings only; blank rows are dropped."""
    if not os.path.exists(path):
        raise InputError(f"File not found for {source}: {path}", source)
    try:
        df = pd.read_csv(path, dtype=str, keep_default_na=False, skip_blank_lines=True)
    except pd.errors.EmptyDataError:
        raise EmptyDatasetError(source)
    except (pd.errors.ParserError, UnicodeDecodeError) as exc:
        raise InputError(f"Could not parse {source} file: {exc}", source)

    df.columns = [str(c).strip() for c in df.columns]
    if len(df.columns) == 0:
        raise InputError(f"{source} file has no header row", source)
    df = df.loc[~(df == "").all(axis=1)].reset_index(drop=True)
    if df.empty:
        raise EmptyDatasetError(source)
    return df


def detect_schema(headers: List[str]) -> str:
    return SCHEMA_TRANSACTIONS if is_transaction_ledger(headers) else SCHEMA_USAGE


def load_ledger(path: str) -> tuple[SourceTable, str]:
    df = load_csv(path, "ledger")
    schema = detect_schema(list(df.columns))
    if schema == SCHEMA_TRANSACTIONS:
        mapping = resolve_columns(list(df.columns), LEDGER_HINTS)
        required = REQUIRED_LEDGER
    else:
        mapping = resolve_columns(list(df.columns), USAGE_HINTS)
        required = REQUIRED_USAGE
    missing = missing_fields(mapping, required)
    if missing:
        raise MissingColumnsError("ledger", missing)
    logger.info("Ledger %s: %d rows, schema=%s, mapping=%s", path, len(df), schema, mapping)
    return SourceTable("ledger", df, mapping), schema


def load_processor(path: str) -> SourceTable:
    df = load_csv(path, "processor")
    mapping = resolve_columns(list(df.columns), PROCESSOR_HINTS)
    missing = missing_fields(mapping, REQUIRED_PROCESSOR)
    if missing:
        raise MissingColumnsError("processor", missing)
    logger.info("Processor export %s: %d rows, mapping=%s", path, len(df), mapping)
    return SourceTable("processor", df, mapping)
