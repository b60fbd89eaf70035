import csv

import pytest

from config import ReconConfig
from store import ReconStore

LEDGER_HEADER = ["transaction_id", "customer_id", "amount", "fee_amount", "status", "created_at"]
PROCESSOR_HEADER = ["id", "customer", "amount", "fee", "status", "created"]


@pytest.fixture
def write_csv(tmp_path):
    def _write(name, header, rows):
        path = tmp_path / name
        with open(path, "w", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(header)
            writer.writerows(rows)
        return str(path)
    return _write


@pytest.fixture
def store(tmp_path):
    s = ReconStore(str(tmp_path / "state.db"))
    s.initialize()
    return s


@pytest.fixture
def settings(tmp_path):
    return ReconConfig(outputs_dir=str(tmp_path / "outputs"), db_path=str(tmp_path / "state.db"))
