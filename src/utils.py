import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

import pandas as pd

SECONDS_LOW = 1e9
SECONDS_HIGH = 1e10
MILLIS_LOW = 1e12

_TRUE_FLAGS = {"true", "t", "yes", "y", "1"}


def normalize_text(s: str) -> str:
    if s is None:
        return ""
    s = str(s).lower().strip()
    s = re.sub(r"[^a-z0-9\s]", " ", s)
    s = re.sub(r"\s+", " ", s).strip()
    return s


def normalize_customer_key(s: Any) -> str:
    if s is None:
        return ""
    return re.sub(r"[^a-z0-9]", "", str(s).strip().lower())


def normalize_status(s: Any) -> str:
    if s is None:
        return ""
    return str(s).strip().lower()


def _blank(raw: Any) -> bool:
    if raw is None:
        return True
    if isinstance(raw, float) and raw != raw:  # NaN
        return True
    return str(raw).strip() == ""


MAJOR = "major"
MINOR = "minor"

_MONEY_MARKS = re.compile(r"[^\d.\-+()\s]")


def _is_money_text(text: str) -> bool:
    return "." in text or bool(_MONEY_MARKS.search(text))


def parse_amount(raw: Any, unit: Optional[str] = None) -> Optional[int]:
    """
    Parse a cell into integer minor units (cents).

    unit is the column's unit when known: MAJOR scales every value by 100 and
    MINOR leaves bare integers as they are. Without it the cell decides: text
    carrying a decimal point, currency symbol or thousands separator is in
    major units, bare integers under 1000 are major units, and bare integers
    of 1000 and above are taken to be minor units already.
    Returns None for blank or unparseable input.
    """
    if _blank(raw) or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        text = str(raw)
    elif isinstance(raw, float):
        text = format(raw, "f")
    else:
        text = str(raw).strip()

    negative = text.startswith("(") and text.endswith(")")
    money_text = _is_money_text(text)
    cleaned = re.sub(r"[^0-9.\-]", "", text)
    if not cleaned:
        return None
    try:
        num = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not num.is_finite():
        return None
    if negative:
        num = -abs(num)

    if unit == MAJOR or money_text or (unit is None and abs(num) < 1000):
        num = num * 100
    return int(num.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def amount_unit(series: pd.Series, bare_unit: Optional[str] = None) -> Optional[str]:
    """MAJOR when any cell of the column is written as money, else bare_unit."""
    for raw in series:
        if not _blank(raw) and _is_money_text(str(raw).strip()):
            return MAJOR
    return bare_unit


def parse_instant(raw: Any) -> Optional[datetime]:
    """
    Parse a cell into an aware UTC datetime.

    Numbers in (1e9, 1e10) are Unix seconds, numbers >= 1e12 are Unix
    milliseconds. Any other plain number is rejected unless it is an 8-digit
    YYYYMMDD date. Text goes through general date parsing with naive values
    read as UTC. Returns None for blank or unparseable input.
    """
    if _blank(raw) or isinstance(raw, bool):
        return None
    text = str(raw).strip()
    try:
        num = float(text)
    except ValueError:
        num = None

    if num is not None:
        if SECONDS_LOW < num < SECONDS_HIGH:
            return datetime.fromtimestamp(num, tz=timezone.utc)
        if num >= MILLIS_LOW:
            try:
                return datetime.fromtimestamp(num / 1000.0, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                return None
        # only compact YYYYMMDD digits go on to the date parser
        if not re.fullmatch(r"\d{8}", text):
            return None

    try:
        ts = pd.to_datetime(text, utc=True, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return None
    if ts is None or pd.isna(ts):
        return None
    return ts.to_pydatetime()


def parse_flag(raw: Any) -> bool:
    if _blank(raw):
        return False
    return str(raw).strip().lower() in _TRUE_FLAGS


def clean_cell(raw: Any) -> Optional[str]:
    if _blank(raw):
        return None
    return str(raw).strip()


def day_key(instant: Optional[datetime]) -> Optional[str]:
    return instant.strftime("%Y-%m-%d") if instant else None


def month_key(instant: Optional[datetime]) -> Optional[str]:
    return instant.strftime("%Y-%m") if instant else None


def format_minor(amount_minor: int, currency_code: str = "USD") -> str:
    return f"{currency_code} {amount_minor / 100:,.2f}"


def coerce_amount(series: pd.Series, unit: Optional[str] = None) -> pd.Series:
    return pd.Series([parse_amount(v, unit) for v in series], index=series.index, dtype=object)


def coerce_instant(series: pd.Series) -> pd.Series:
    return series.map(parse_instant)
