from datetime import datetime, timezone

import pandas as pd

from utils import (
    MAJOR,
    MINOR,
    amount_unit,
    coerce_amount,
    format_minor,
    normalize_customer_key,
    parse_amount,
    parse_flag,
    parse_instant,
)


def test_amount_encodings_agree():
    assert parse_amount("$1,234.00") == 123400
    assert parse_amount("1234.00") == 123400
    assert parse_amount(123400) == 123400


def test_amount_edge_cases():
    assert parse_amount("(12.50)") == -1250
    assert parse_amount("-3.5") == -350
    assert parse_amount("49") == 4900       # small bare integers are major units
    assert parse_amount("4900") == 4900     # larger bare integers are already minor units
    assert parse_amount(0.125) == 13        # half-up
    assert parse_amount("") is None
    assert parse_amount("n/a") is None
    assert parse_amount(None) is None


def test_instant_encodings_agree():
    expected = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert parse_instant("2024-05-01T12:00:00Z") == expected
    assert parse_instant("2024-05-01 12:00:00") == expected
    assert parse_instant(1714564800) == expected
    assert parse_instant("1714564800") == expected
    assert parse_instant(1714564800000) == expected


def test_instant_bad_values_are_none():
    assert parse_instant("") is None
    assert parse_instant("not a date") is None
    assert parse_instant(None) is None
    assert parse_instant(12345) is None
    assert parse_instant(50000000000) is None   # between the seconds and milliseconds ranges


def test_compact_date_digits():
    assert parse_instant("20240501") == datetime(2024, 5, 1, tzinfo=timezone.utc)


def test_customer_key_and_flags():
    assert normalize_customer_key("  CUS_A-100 ") == "cusa100"
    assert normalize_customer_key(None) == ""
    assert parse_flag("TRUE") is True
    assert parse_flag("yes") is True
    assert parse_flag("false") is False
    assert parse_flag("") is False


def test_series_helpers_and_format():
    amounts = coerce_amount(pd.Series(["$1.00", "", "2000"]))
    assert amounts.tolist() == [100, None, 2000]
    assert format_minor(123400) == "USD 1,234.00"
    assert format_minor(5, "EUR") == "EUR 0.05"


def test_column_unit_overrides_cell_heuristic():
    assert parse_amount("172", MINOR) == 172
    assert parse_amount("1.72", MINOR) == 172
    assert parse_amount("1500", MAJOR) == 150000
    assert parse_amount("172") == 17200


def test_amount_unit_is_decided_per_column():
    cents = pd.Series(["172", "607", "", "1477"])
    assert amount_unit(cents) is None
    assert amount_unit(cents, MINOR) == MINOR
    assert coerce_amount(cents, amount_unit(cents, MINOR)).tolist() == [172, 607, None, 1477]

    dollars = pd.Series(["1.72", "6", "1500"])
    assert amount_unit(dollars, MINOR) == MAJOR
    assert coerce_amount(dollars, MAJOR).tolist() == [172, 600, 150000]
