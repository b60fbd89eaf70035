from caps import cap_and_rank, rank
from models import AnomalyRecord, Category, Confidence


def anomaly(category, reference, annual, monthly=0):
    return AnomalyRecord(category=category, customer_key="C1", confidence=Confidence.HIGH,
                         monthly_impact_minor=monthly, annual_impact_minor=annual,
                         description="", root_cause="", recommendation="", reference=reference)


def test_rank_orders_by_annual_then_monthly_then_reference():
    items = [
        anomaly(Category.OTHER, "b", 100, 5),
        anomaly(Category.OTHER, "a", 100, 5),
        anomaly(Category.OTHER, "c", 100, 9),
        anomaly(Category.OTHER, "d", 500),
    ]
    assert [a.reference for a in rank(items)] == ["d", "c", "a", "b"]


def test_cap_keeps_top_n_per_category():
    items = [anomaly(Category.DUPLICATE_CHARGE, f"dup:{i}", i * 10) for i in range(5)]
    items += [anomaly(Category.UNBILLED_REVENUE, f"ub:{i}", 1) for i in range(3)]
    kept, dropped = cap_and_rank(items, {"duplicate_charge": 2})
    dup_kept = [a.reference for a in kept if a.category == Category.DUPLICATE_CHARGE]
    assert dup_kept == ["dup:4", "dup:3"]
    assert len([a for a in kept if a.category == Category.UNBILLED_REVENUE]) == 3
    assert sorted(a.reference for a in dropped) == ["dup:0", "dup:1", "dup:2"]


def test_cap_is_independent_of_arrival_order():
    items = [anomaly(Category.FEE_DISCREPANCY, f"fee:{i}", 100) for i in range(6)]
    kept_a, _ = cap_and_rank(items, {"fee_discrepancy": 3})
    kept_b, _ = cap_and_rank(list(reversed(items)), {"fee_discrepancy": 3})
    assert [a.reference for a in kept_a] == [a.reference for a in kept_b] == ["fee:0", "fee:1", "fee:2"]
