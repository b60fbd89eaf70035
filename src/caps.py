import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

from models import AnomalyRecord, Category

logger = logging.getLogger(__name__)


def rank(candidates: Iterable[AnomalyRecord]) -> List[AnomalyRecord]:
    """Highest annual impact first, then period impact; ties broken by reference."""
    return sorted(candidates, key=lambda a: a.rank_key())


def cap_and_rank(candidates: Iterable[AnomalyRecord],
                 caps: Dict[str, int]) -> Tuple[List[AnomalyRecord], List[AnomalyRecord]]:
    """
    Split candidates into (kept, dropped). Each category is ranked in full before
    its cap is applied, so arrival order never decides what survives.
    Categories without a cap are kept whole.
    """
    by_category: Dict[Category, List[AnomalyRecord]] = defaultdict(list)
    for a in candidates:
        by_category[a.category].append(a)

    kept: List[AnomalyRecord] = []
    dropped: List[AnomalyRecord] = []
    for category in sorted(by_category, key=lambda c: c.value):
        ranked = rank(by_category[category])
        cap: Optional[int] = caps.get(category.value)
        if cap is None or len(ranked) <= cap:
            kept.extend(ranked)
            continue
        kept.extend(ranked[:cap])
        dropped.extend(ranked[cap:])
        logger.info("Capped %s at %d of %d candidates", category.value, cap, len(ranked))
    return kept, dropped
