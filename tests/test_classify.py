from datetime import datetime, timedelta, timezone

from classify import classify_slice, detect_plan, finalize
from match import MatchIndex, reconcile_slice
from models import Category, Confidence, ExternalRecord, LedgerRecord
from rules import Rules

T0 = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


def ledger(row, customer, amount, status="succeeded", at=T0, **kw):
    return LedgerRecord(id=f"txn_{row}", customer_key=customer, amount_minor=amount, status=status,
                        occurred_at=at, row_number=row, **kw)


def charge(id, customer, amount, status="succeeded", at=T0, **kw):
    return ExternalRecord(id=id, customer_key=customer, amount_minor=amount, status=status,
                          occurred_at=at, **kw)


def run_slice(records, external, rules=None):
    rules = rules or Rules()
    index = MatchIndex.build(external)
    result = reconcile_slice(records, index, rules)
    return result, classify_slice(result, index, rules, T0)


def of(anomalies, category):
    return [a for a in anomalies if a.category == category]


def test_unbilled_revenue():
    _, anomalies = run_slice([ledger(0, "C1", 5000)], [charge("ch_x", "C9", 1200, at=T0 + timedelta(days=40))])
    unbilled = of(anomalies, Category.UNBILLED_REVENUE)
    assert len(unbilled) == 1
    assert unbilled[0].customer_key == "C1"
    assert unbilled[0].monthly_impact_minor == 5000
    assert unbilled[0].annual_impact_minor == 60000
    assert unbilled[0].evidence["impact_type"] == "recurring"
    assert unbilled[0].reference == "ledger:0"


def test_failed_payment_variants():
    records = [ledger(0, "C1", 3000, status="failed"), ledger(1, "C2", 4000)]
    external = [charge("ch_f", "C2", 4000, status="failed")]
    _, anomalies = run_slice(records, external)
    failed = sorted(of(anomalies, Category.FAILED_PAYMENT), key=lambda a: a.reference)
    assert [a.confidence for a in failed] == [Confidence.HIGH, Confidence.MEDIUM]
    assert failed[1].evidence["processor_id"] == "ch_f"
    assert not of(anomalies, Category.UNBILLED_REVENUE)


def test_failed_ledger_row_with_processor_record_is_quiet():
    _, anomalies = run_slice([ledger(0, "C1", 3000, status="failed")],
                             [charge("ch_ok", "C1", 3000, at=T0 + timedelta(days=10))])
    assert anomalies == []


def test_disputed_charge_adds_chargeback_fee():
    _, anomalies = run_slice([ledger(0, "C3", 2900, status="disputed")], [charge("ch_1", "C3", 2900)])
    disputed = of(anomalies, Category.DISPUTED_CHARGE)
    assert len(disputed) == 1
    assert disputed[0].monthly_impact_minor == 2900 + 1500
    assert disputed[0].annual_impact_minor == 2900 + 1500


def test_duplicate_charges():
    records = [ledger(0, "C2", 2000)]
    external = [charge(f"ch_{i}", "C2", 2000, at=T0 + timedelta(minutes=5 * i)) for i in range(3)]
    result, _ = run_slice(records, external)
    anomalies = finalize(records, external, result.matches, Rules(), T0)
    dupes = of(anomalies, Category.DUPLICATE_CHARGE)
    assert len(dupes) == 1
    assert dupes[0].monthly_impact_minor == 4000
    assert dupes[0].annual_impact_minor == 4000
    assert dupes[0].evidence["count"] == 3
    assert not of(anomalies, Category.ZOMBIE_CHARGE)


def test_zombie_grouped_per_customer_month():
    external = [
        charge("ch_1", "C7", 1500, at=datetime(2024, 5, 3, tzinfo=timezone.utc)),
        charge("ch_2", "C7", 2500, at=datetime(2024, 5, 20, tzinfo=timezone.utc)),
        charge("ch_3", "C7", 1500, at=datetime(2024, 6, 3, tzinfo=timezone.utc)),
        charge("ch_4", "C7", 1500, at=datetime(2024, 6, 9, tzinfo=timezone.utc), refunded_amount_minor=1500),
    ]
    anomalies = finalize([ledger(0, "C1", 900)], external, [], Rules(), T0)
    zombies = sorted(of(anomalies, Category.ZOMBIE_CHARGE), key=lambda a: a.reference)
    assert [(z.reference, z.monthly_impact_minor) for z in zombies] == [
        ("zombie:c7:2024-05", 4000),
        ("zombie:c7:2024-06", 1500),
    ]
    assert zombies[0].annual_impact_minor == 48000


def test_fee_discrepancy_threshold():
    records = [ledger(0, "C3", 10000, fee_minor=145)]
    external = [charge("ch_a", "C3", 10000, fee_minor=200)]
    result, _ = run_slice(records, external)
    assert not of(finalize(records, external, result.matches, Rules(), T0), Category.FEE_DISCREPANCY)

    records = [ledger(0, "C3", 10000, fee_minor=40)]
    result, _ = run_slice(records, external)
    fees = of(finalize(records, external, result.matches, Rules(), T0), Category.FEE_DISCREPANCY)
    assert len(fees) == 1
    assert fees[0].monthly_impact_minor == 160
    assert fees[0].annual_impact_minor == 160
    assert fees[0].confidence == Confidence.LOW


def test_informational_checks():
    records = [
        ledger(0, "C1", 4900, description="Pro plan", email="a@x.io"),
        ledger(1, "C1", -4900, status="refunded"),
    ]
    external = [
        charge("ch_1", "C1", 4900, at=T0 + timedelta(days=1, hours=12), description="Enterprise plan",
               email="b@x.io", payout_ref=None),
        charge("ch_2", "C8", 900, at=T0 + timedelta(days=10), payout_ref="po_1"),
    ]
    result, _ = run_slice(records, external)
    others = {a.reference: a for a in of(finalize(records, external, result.matches, Rules(), T0), Category.OTHER)}
    assert set(others) == {"timing:ch_1", "refunds:unmatched", "payouts:pending",
                           "labels:mismatch", "emails:mismatch"}
    assert all(a.annual_impact_minor == 0 for a in others.values())
    assert others["labels:mismatch"].customer_key == "MULTIPLE"


def test_detect_plan():
    assert detect_plan("Pro plan monthly") == "premium"
    assert detect_plan("Team seats") == "business"
    assert detect_plan("consulting hours") is None


def test_zombie_when_customer_has_no_ledger_activity_that_month():
    records = [ledger(0, "C1", 2000, at=datetime(2024, 5, 10, tzinfo=timezone.utc))]
    external = [
        charge("ch_may", "C1", 2000, at=datetime(2024, 5, 10, tzinfo=timezone.utc)),
        charge("ch_jun", "C1", 2000, at=datetime(2024, 6, 10, tzinfo=timezone.utc)),
    ]
    result, _ = run_slice(records, external)
    assert [m.external_id for m in result.matches] == ["ch_may"]
    zombies = of(finalize(records, external, result.matches, Rules(), T0), Category.ZOMBIE_CHARGE)
    assert [(z.reference, z.monthly_impact_minor) for z in zombies] == [("zombie:c1:2024-06", 2000)]


def test_ledger_activity_in_the_month_covers_other_amounts():
    records = [ledger(0, "C1", 2000)]
    external = [charge("ch_1", "C1", 2000), charge("ch_2", "C1", 3500, at=T0 + timedelta(days=3))]
    result, _ = run_slice(records, external)
    assert not of(finalize(records, external, result.matches, Rules(), T0), Category.ZOMBIE_CHARGE)


def test_partial_capture_uses_captured_amount():
    external = [
        charge("ch_1", "C7", 5000, captured_amount_minor=3000),
        charge("ch_2", "C7", 5000, at=T0 + timedelta(minutes=5), captured_amount_minor=3000),
        charge("ch_3", "C8", 5000, captured_amount_minor=0),
    ]
    anomalies = finalize([ledger(0, "C1", 900)], external, [], Rules(), T0)
    zombies = of(anomalies, Category.ZOMBIE_CHARGE)
    assert [(z.reference, z.monthly_impact_minor) for z in zombies] == [("zombie:c7:2024-05", 6000)]
    dupes = of(anomalies, Category.DUPLICATE_CHARGE)
    assert [(d.reference, d.monthly_impact_minor) for d in dupes] == [("duplicate:c7:3000:2024-05-01", 3000)]
