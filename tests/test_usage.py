from datetime import datetime, timedelta, timezone

from models import Category, Confidence, ExternalRecord, UsageEvent
from rules import Rules
from usage import classify_usage

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def event(customer, quantity=1.0, at=T0):
    return UsageEvent(customer_key=customer, occurred_at=at, quantity=quantity)


def charge(id, customer, amount, status="succeeded", at=T0, **kw):
    return ExternalRecord(id=id, customer_key=customer, amount_minor=amount, status=status,
                          occurred_at=at, **kw)


def by_category(anomalies):
    out = {}
    for a in anomalies:
        out.setdefault(a.category, []).append(a)
    return out


def test_usage_rules_per_customer():
    events = [event("U1", 10), event("U1", 30), event("U2")]
    external = [
        charge("ch_1", "U3", 2000, at=T0),
        charge("ch_2", "U3", 2000, at=T0 + timedelta(days=31)),
        charge("ch_3", "U2", 1000, status="failed"),
        charge("ch_4", "U4", 5000, disputed=True),
        charge("ch_5", "U5", 3000, at=T0),
        charge("ch_6", "U5", 3000, at=T0 + timedelta(hours=2)),
    ]
    found = by_category(classify_usage(events, external, Rules(), T0))

    zombies = {a.customer_key: a for a in found[Category.ZOMBIE_CHARGE]}
    assert zombies["U3"].monthly_impact_minor == 4000
    assert zombies["U3"].confidence == Confidence.MEDIUM

    unbilled = {a.customer_key: a for a in found[Category.UNBILLED_REVENUE]}
    assert unbilled["U1"].monthly_impact_minor == 40 * 5
    assert unbilled["U1"].annual_impact_minor == 40 * 5 * 12
    assert unbilled["U2"].monthly_impact_minor == 5

    assert [a.customer_key for a in found[Category.FAILED_PAYMENT]] == ["U2"]

    disputed = found[Category.DISPUTED_CHARGE][0]
    assert disputed.monthly_impact_minor == 5000 + 1500
    assert disputed.annual_impact_minor == 6500

    dupes = found[Category.DUPLICATE_CHARGE]
    assert len(dupes) == 1
    assert dupes[0].customer_key == "U5"
    assert dupes[0].monthly_impact_minor == 3000


def test_refund_rate_flagged():
    events = [event("U1")]
    external = [
        charge("ch_1", "U1", 10000),
        charge("re_1", "U1", 2500, kind="refund"),
    ]
    found = by_category(classify_usage(events, external, Rules(), T0))
    other = found[Category.OTHER][0]
    assert other.reference == "usage:refunds:u1"
    assert other.annual_impact_minor == 0
    assert Category.ZOMBIE_CHARGE not in found
    assert Category.UNBILLED_REVENUE not in found


def test_partial_capture_counts_captured_amount():
    external = [
        charge("ch_1", "U7", 5000, captured_amount_minor=2000),
        charge("ch_2", "U7", 5000, at=T0 + timedelta(days=31)),
    ]
    found = by_category(classify_usage([], external, Rules(), T0))
    assert found[Category.ZOMBIE_CHARGE][0].monthly_impact_minor == 7000
