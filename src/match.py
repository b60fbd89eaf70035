import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from errors import StateError
from models import ExternalRecord, LedgerRecord, Match
from rules import Rules
from utils import normalize_customer_key

logger = logging.getLogger(__name__)

TIER_PRIMARY = "primary"
TIER_FALLBACK = "fallback"

SECONDS_PER_DAY = 86400

# ledger status -> processor statuses it may be matched against
COMPATIBLE_STATUSES: Dict[str, Set[str]] = {
    "succeeded": {"succeeded", "paid"},
    "paid": {"succeeded", "paid"},
    "disputed": {"succeeded", "paid", "disputed"},
    "failed": {"failed"},
}


def _gap_seconds(a: Optional[datetime], b: Optional[datetime]) -> Optional[float]:
    if a is None or b is None:
        return None
    return abs((a - b).total_seconds())


class MatchIndex:
    """
    Processor records indexed by (normalized customer, amount) and by amount
    alone, plus the set of processor ids already consumed by a match.
    """

    def __init__(self, records: Iterable[ExternalRecord], consumed: Optional[Iterable[str]] = None):
        self.by_customer_amount: Dict[Tuple[str, int], List[ExternalRecord]] = defaultdict(list)
        self.by_amount: Dict[int, List[ExternalRecord]] = defaultdict(list)
        self.by_id: Dict[str, ExternalRecord] = {}
        self.consumed: Set[str] = set(consumed or ())
        for rec in records:
            self.by_customer_amount[(normalize_customer_key(rec.customer_key), rec.amount_minor)].append(rec)
            self.by_amount[rec.amount_minor].append(rec)
            self.by_id[rec.id] = rec

    @classmethod
    def build(cls, records: Iterable[ExternalRecord], consumed: Optional[Iterable[str]] = None) -> "MatchIndex":
        index = cls(records, consumed)
        logger.debug("Indexed %d processor records (%d already consumed)", len(index.by_id), len(index.consumed))
        return index

    def candidates(self, ledger: LedgerRecord) -> List[ExternalRecord]:
        return self.by_customer_amount.get((normalize_customer_key(ledger.customer_key), ledger.amount_minor), [])

    def is_consumed(self, external_id: str) -> bool:
        return external_id in self.consumed

    def consume(self, external_id: str) -> None:
        if external_id in self.consumed:
            raise StateError(f"Processor record {external_id} is already consumed", run_id="")
        self.consumed.add(external_id)


@dataclass
class LedgerOutcome:
    record: LedgerRecord
    match: Optional[Match] = None
    external: Optional[ExternalRecord] = None

    @property
    def matched(self) -> bool:
        return self.match is not None


@dataclass
class SliceResult:
    outcomes: List[LedgerOutcome] = field(default_factory=list)

    @property
    def matches(self) -> List[Match]:
        return [o.match for o in self.outcomes if o.match is not None]

    @property
    def unmatched(self) -> List[LedgerRecord]:
        return [o.record for o in self.outcomes if o.match is None]


def _best_candidate(ledger: LedgerRecord,
                    candidates: List[ExternalRecord],
                    index: MatchIndex,
                    allowed: Set[str],
                    window_days: float,
                    require_dates: bool) -> Tuple[Optional[ExternalRecord], Optional[float]]:
    """
    Closest unconsumed compatible candidate inside the window. Ties go to input
    order; candidates with an unknown gap rank after every known gap.
    """
    limit = window_days * SECONDS_PER_DAY
    best = None
    best_rank = None
    best_gap = None
    for position, cand in enumerate(candidates):
        if not cand.is_charge or cand.status not in allowed or index.is_consumed(cand.id):
            continue
        gap = _gap_seconds(ledger.occurred_at, cand.occurred_at)
        if gap is None:
            if require_dates:
                continue
            rank = (1, 0.0, position)
        else:
            if gap > limit:
                continue
            rank = (0, gap, position)
        if best_rank is None or rank < best_rank:
            best, best_rank, best_gap = cand, rank, gap
    return best, best_gap


def match_record(ledger: LedgerRecord, index: MatchIndex, rules: Rules) -> Optional[Tuple[Match, ExternalRecord]]:
    """Primary (customer + amount) then fallback (amount + tight window) match; consumes the winner."""
    allowed = COMPATIBLE_STATUSES.get(ledger.status)
    if not allowed or ledger.amount_minor <= 0:
        return None

    tier = TIER_PRIMARY
    cand, gap = _best_candidate(ledger, index.candidates(ledger), index, allowed,
                                rules.date_window_days, require_dates=False)
    if cand is None and ledger.occurred_at is not None:
        tier = TIER_FALLBACK
        cand, gap = _best_candidate(ledger, index.by_amount.get(ledger.amount_minor, []), index, allowed,
                                    rules.fallback_window_days, require_dates=True)
    if cand is None:
        return None

    index.consume(cand.id)
    return Match(
        ledger_row=ledger.row_number,
        ledger_id=ledger.id,
        external_id=cand.id,
        tier=tier,
        gap_seconds=gap,
    ), cand


def reconcile_slice(ledger_records: Iterable[LedgerRecord], index: MatchIndex, rules: Rules) -> SliceResult:
    result = SliceResult()
    for rec in ledger_records:
        found = match_record(rec, index, rules)
        if found:
            result.outcomes.append(LedgerOutcome(rec, found[0], found[1]))
        else:
            result.outcomes.append(LedgerOutcome(rec))

    fallback = sum(1 for m in result.matches if m.tier == TIER_FALLBACK)
    logger.info("Reconciled %d ledger rows: %d matched (%d fallback), %d unmatched",
                len(result.outcomes), len(result.matches), fallback, len(result.unmatched))
    return result
