import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from classify import build_anomaly
from models import SUCCEEDED_STATUSES, AnomalyRecord, Category, Confidence, ExternalRecord, UsageEvent
from rules import Rules
from utils import day_key, format_minor, normalize_customer_key

logger = logging.getLogger(__name__)

REFUND_RATE_LIMIT = 0.1


@dataclass
class CustomerActivity:
    customer_key: str
    events: List[UsageEvent] = field(default_factory=list)
    succeeded: List[ExternalRecord] = field(default_factory=list)
    failed: List[ExternalRecord] = field(default_factory=list)
    disputed: List[ExternalRecord] = field(default_factory=list)
    refunded_minor: int = 0

    @property
    def units(self) -> float:
        return sum(e.quantity if e.quantity > 0 else 1 for e in self.events)

    @property
    def charged_minor(self) -> int:
        return sum(c.billed_minor for c in self.succeeded)


def group_activity(events: List[UsageEvent], external: List[ExternalRecord]) -> Dict[str, CustomerActivity]:
    customers: Dict[str, CustomerActivity] = {}

    def entry(raw_key: str) -> CustomerActivity:
        norm = normalize_customer_key(raw_key)
        if norm not in customers:
            customers[norm] = CustomerActivity(customer_key=raw_key)
        return customers[norm]

    for event in events:
        if normalize_customer_key(event.customer_key):
            entry(event.customer_key).events.append(event)

    for ext in external:
        if not normalize_customer_key(ext.customer_key):
            continue
        activity = entry(ext.customer_key)
        if not ext.is_charge:
            activity.refunded_minor += abs(ext.amount_minor)
            continue
        if ext.refunded_amount_minor:
            activity.refunded_minor += ext.refunded_amount_minor
        if ext.disputed or ext.status == "disputed":
            activity.disputed.append(ext)
        elif ext.status == "failed":
            activity.failed.append(ext)
        elif ext.status in SUCCEEDED_STATUSES:
            activity.succeeded.append(ext)
    return customers


def _confidence_by_count(count: int) -> Confidence:
    if count >= 3:
        return Confidence.HIGH
    if count == 2:
        return Confidence.MEDIUM
    return Confidence.LOW


def classify_usage(events: List[UsageEvent],
                   external: List[ExternalRecord],
                   rules: Rules,
                   now: Optional[datetime] = None) -> List[AnomalyRecord]:
    anomalies = []
    cur = rules.currency_code
    for norm, act in sorted(group_activity(events, external).items()):
        key = act.customer_key

        if act.succeeded and not act.events:
            total = act.charged_minor
            anomalies.append(build_anomaly(
                Category.ZOMBIE_CHARGE, key, _confidence_by_count(len(act.succeeded)), total, rules,
                description=f"Customer {key} was charged {format_minor(total, cur)} across "
                            f"{len(act.succeeded)} charge(s) with zero recorded usage.",
                root_cause="Subscription still billing after the customer stopped using the product.",
                recommendation="Confirm churn with the customer and cancel or refund the subscription.",
                reference=f"usage:zombie:{norm}",
                evidence={"processor_ids": [c.id for c in act.succeeded], "charge_count": len(act.succeeded),
                          "usage_events": 0, "detection_method": "charges_without_usage"},
                now=now,
            ))

        if act.events and not act.succeeded:
            units = act.units
            period = int(round(units * rules.usage_unit_price_minor))
            anomalies.append(build_anomaly(
                Category.UNBILLED_REVENUE, key, _confidence_by_count(len(act.events)), period, rules,
                description=f"Customer {key} recorded {len(act.events)} usage event(s) ({units:g} units) "
                            f"with no successful charge.",
                root_cause="Usage is not flowing into billing, or the customer has no active subscription.",
                recommendation="Verify the customer's plan and invoice the recorded usage.",
                reference=f"usage:unbilled:{norm}",
                evidence={"usage_events": len(act.events), "units": units,
                          "unit_price_minor": rules.usage_unit_price_minor,
                          "detection_method": "usage_without_charges"},
                now=now,
            ))

        if act.failed:
            total = sum(c.amount_minor for c in act.failed)
            anomalies.append(build_anomaly(
                Category.FAILED_PAYMENT, key, Confidence.HIGH, total, rules,
                description=f"{len(act.failed)} failed charge(s) for {key} totaling {format_minor(total, cur)}.",
                root_cause="Card declined or expired without successful dunning recovery.",
                recommendation="Retry the payment and contact the customer to update their payment method.",
                reference=f"usage:failed:{norm}",
                evidence={"processor_ids": [c.id for c in act.failed], "count": len(act.failed),
                          "detection_method": "processor_failed_charges"},
                now=now,
            ))

        if act.disputed:
            total = sum(c.amount_minor for c in act.disputed)
            fees = len(act.disputed) * rules.chargeback_fee_minor
            anomalies.append(build_anomaly(
                Category.DISPUTED_CHARGE, key, Confidence.HIGH, total + fees, rules,
                description=f"{len(act.disputed)} disputed charge(s) for {key} totaling "
                            f"{format_minor(total, cur)} plus chargeback fees.",
                root_cause="Customer contested the charge with their bank.",
                recommendation="Respond to the dispute with usage evidence before the deadline.",
                reference=f"usage:disputed:{norm}",
                evidence={"processor_ids": [c.id for c in act.disputed], "count": len(act.disputed),
                          "chargeback_fee_minor": rules.chargeback_fee_minor,
                          "detection_method": "processor_disputed_charges"},
                now=now,
            ))

        charged = act.charged_minor
        if charged > 0 and act.refunded_minor > charged * REFUND_RATE_LIMIT:
            rate = act.refunded_minor / charged
            anomalies.append(build_anomaly(
                Category.OTHER, key, Confidence.MEDIUM, 0, rules,
                description=f"Refunds for {key} are {rate:.0%} of the charged total.",
                root_cause="Service quality issue or billing confusion driving refunds.",
                recommendation="Review the customer's refund history and support tickets.",
                reference=f"usage:refunds:{norm}",
                evidence={"refunded_minor": act.refunded_minor, "charged_minor": charged,
                          "refund_rate": round(rate, 4), "detection_method": "refund_rate"},
                now=now,
            ))

        same_day: Dict[tuple, List[ExternalRecord]] = defaultdict(list)
        for c in act.succeeded:
            if c.occurred_at is not None:
                same_day[(c.billed_minor, day_key(c.occurred_at))].append(c)
        for (amount_minor, day), charges in same_day.items():
            if len(charges) < 2:
                continue
            anomalies.append(build_anomaly(
                Category.DUPLICATE_CHARGE, key, Confidence.HIGH, amount_minor * (len(charges) - 1), rules,
                description=f"{len(charges)} identical charges of {format_minor(amount_minor, cur)} "
                            f"for {key} on {day}.",
                root_cause="Retried or double-submitted charge without an idempotency key.",
                recommendation="Refund the duplicate charges.",
                reference=f"usage:duplicate:{norm}:{amount_minor}:{day}",
                evidence={"processor_ids": [c.id for c in charges], "count": len(charges),
                          "detection_method": "same_day_identical_charges"},
                now=now,
            ))

    logger.info("Usage rules produced %d candidate anomalies from %d events and %d processor rows",
                len(anomalies), len(events), len(external))
    return anomalies
