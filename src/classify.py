import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from rapidfuzz import fuzz

from match import LedgerOutcome, MatchIndex, SECONDS_PER_DAY, SliceResult
from models import (
    IMPACT_TYPES,
    MULTIPLE,
    SUCCEEDED_STATUSES,
    AnomalyRecord,
    Category,
    Confidence,
    ExternalRecord,
    ImpactType,
    LedgerRecord,
    Match,
)
from rules import Rules
from utils import day_key, format_minor, month_key, normalize_customer_key, normalize_text

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 5

PLAN_KEYWORDS: Dict[str, List[str]] = {
    "starter": ["starter", "basic", "lite", "free"],
    "premium": ["premium", "pro", "plus"],
    "business": ["business", "team", "growth"],
    "enterprise": ["enterprise", "custom", "unlimited"],
}


def build_anomaly(category: Category,
                  customer_key: Optional[str],
                  confidence: Confidence,
                  period_minor: int,
                  rules: Rules,
                  description: str,
                  root_cause: str,
                  recommendation: str,
                  reference: str,
                  evidence: dict,
                  now: Optional[datetime]) -> AnomalyRecord:
    """Attach period and annual impact according to the category's impact type."""
    impact_type = IMPACT_TYPES[category]
    if impact_type == ImpactType.RECURRING:
        monthly, annual = period_minor, period_minor * rules.annualization_factor
    elif impact_type == ImpactType.ONE_TIME:
        monthly, annual = period_minor, period_minor
    else:
        monthly, annual = 0, 0
    evidence = dict(evidence)
    evidence["impact_type"] = impact_type.value
    return AnomalyRecord(
        category=category,
        customer_key=customer_key or None,
        confidence=confidence,
        monthly_impact_minor=int(monthly),
        annual_impact_minor=int(annual),
        description=description,
        root_cause=root_cause,
        recommendation=recommendation,
        reference=reference,
        evidence=evidence,
        detected_at=now,
    )


def _has_any_charge(index: MatchIndex, rec: LedgerRecord) -> bool:
    return any(c.is_charge for c in index.candidates(rec))


def _failed_charge(index: MatchIndex, rec: LedgerRecord) -> Optional[ExternalRecord]:
    for c in index.candidates(rec):
        if c.is_charge and c.status == "failed":
            return c
    return None


def _classify_outcome(outcome: LedgerOutcome, index: MatchIndex, rules: Rules,
                      now: Optional[datetime]) -> Optional[AnomalyRecord]:
    rec = outcome.record
    if rec.amount_minor <= 0:
        return None
    amount = format_minor(rec.amount_minor, rules.currency_code)
    reference = f"ledger:{rec.row_number}"
    base = {"ledger_id": rec.id, "amount_minor": rec.amount_minor, "ledger_status": rec.status}

    if rec.status == "failed":
        if outcome.matched or _has_any_charge(index, rec):
            return None
        return build_anomaly(
            Category.FAILED_PAYMENT, rec.customer_key, Confidence.HIGH, rec.amount_minor, rules,
            description=f"Failed payment of {amount} for {rec.customer_name or rec.customer_key} "
                        f"is recorded internally but absent from the processor export.",
            root_cause="Webhook or sync gap: the payment attempt never reached the processor records.",
            recommendation="Review dunning workflow and webhook delivery for failed attempts.",
            reference=reference,
            evidence={**base, "processor_status": "not_found",
                      "detection_method": "ledger_failed_without_processor_record"},
            now=now,
        )

    if rec.status in SUCCEEDED_STATUSES:
        if outcome.matched:
            return None
        failed = _failed_charge(index, rec)
        if failed is not None:
            return build_anomaly(
                Category.FAILED_PAYMENT, rec.customer_key, Confidence.MEDIUM, rec.amount_minor, rules,
                description=f"Status mismatch: internal ledger shows success but the processor "
                            f"shows failure ({amount}).",
                root_cause="Internal status was set before the processor confirmed the charge.",
                recommendation="Investigate processor logs and reconcile the payment status.",
                reference=reference,
                evidence={**base, "processor_id": failed.id, "processor_status": failed.status,
                          "detection_method": "ledger_succeeded_processor_failed"},
                now=now,
            )
        return build_anomaly(
            Category.UNBILLED_REVENUE, rec.customer_key, Confidence.HIGH, rec.amount_minor, rules,
            description=f"Charge of {amount} for {rec.customer_name or rec.customer_key} exists in the "
                        f"internal ledger but is missing from the processor export.",
            root_cause="Charge never created at the processor, or captured outside of it.",
            recommendation="Verify charge creation at the processor and backfill missing charges.",
            reference=reference,
            evidence={**base, "invoice_ref": rec.invoice_ref,
                      "detection_method": "ledger_succeeded_without_processor_match"},
            now=now,
        )

    if rec.status == "disputed" and outcome.matched:
        ext = outcome.external
        if ext.status in SUCCEEDED_STATUSES and not ext.disputed:
            return build_anomaly(
                Category.DISPUTED_CHARGE, rec.customer_key, Confidence.MEDIUM,
                rec.amount_minor + rules.chargeback_fee_minor, rules,
                description=f"Dispute for {rec.customer_name or rec.customer_key}: internal ledger shows "
                            f"disputed but the processor still shows {ext.status} ({amount}).",
                root_cause="Dispute status not synchronized between the processor and internal records.",
                recommendation="Verify the dispute at the processor, update internal records and prepare evidence.",
                reference=reference,
                evidence={**base, "processor_id": ext.id, "processor_status": ext.status,
                          "processor_disputed": ext.disputed,
                          "chargeback_fee_minor": rules.chargeback_fee_minor,
                          "match_tier": outcome.match.tier,
                          "detection_method": "ledger_disputed_vs_processor_succeeded"},
                now=now,
            )
    return None


def classify_slice(result: SliceResult, index: MatchIndex, rules: Rules,
                   now: Optional[datetime] = None) -> List[AnomalyRecord]:
    """Per-chunk candidates: failed payments, unbilled revenue, disputed charges."""
    anomalies = []
    for outcome in result.outcomes:
        anomaly = _classify_outcome(outcome, index, rules, now)
        if anomaly is not None:
            anomalies.append(anomaly)
    return anomalies


def _is_live_charge(ext: ExternalRecord) -> bool:
    return (ext.is_charge
            and ext.status in SUCCEEDED_STATUSES
            and ext.billed_minor > 0
            and not (ext.refunded_amount_minor or 0) > 0)


def detect_zombies(ledger: List[LedgerRecord], external: List[ExternalRecord], consumed: Set[str],
                   rules: Rules, now: Optional[datetime]) -> List[AnomalyRecord]:
    """Unconsumed charges in a month where the customer has no succeeded ledger activity."""
    active = {
        (normalize_customer_key(r.customer_key), month_key(r.occurred_at))
        for r in ledger
        if r.status in SUCCEEDED_STATUSES and r.occurred_at is not None
    }
    groups: Dict[tuple, List[ExternalRecord]] = defaultdict(list)
    for ext in external:
        if not _is_live_charge(ext) or ext.id in consumed or ext.occurred_at is None:
            continue
        key = (normalize_customer_key(ext.customer_key), month_key(ext.occurred_at))
        if key in active:
            continue
        groups[key].append(ext)

    out = []
    for (norm, month), charges in groups.items():
        total = sum(c.billed_minor for c in charges)
        out.append(build_anomaly(
            Category.ZOMBIE_CHARGE, charges[0].customer_key, Confidence.MEDIUM, total, rules,
            description=f"Customer charged {format_minor(total, rules.currency_code)} in {month} "
                        f"({len(charges)} charge(s)) with no internal activity that month.",
            root_cause="Billing continues without product activity or an internal ledger entry.",
            recommendation="Verify subscription status and usage; cancel or refund if the customer churned.",
            reference=f"zombie:{norm}:{month}",
            evidence={"processor_ids": [c.id for c in charges], "billing_month": month,
                      "amount_minor": total, "detection_method": "processor_charge_without_ledger_record"},
            now=now,
        ))
    return out


def detect_duplicates(external: List[ExternalRecord], rules: Rules,
                      now: Optional[datetime]) -> List[AnomalyRecord]:
    groups: Dict[tuple, List[ExternalRecord]] = defaultdict(list)
    for ext in external:
        if not _is_live_charge(ext) or ext.occurred_at is None:
            continue
        norm = normalize_customer_key(ext.customer_key)
        groups[(norm, ext.billed_minor, day_key(ext.occurred_at))].append(ext)

    out = []
    for (norm, amount_minor, day), charges in groups.items():
        if len(charges) < 2:
            continue
        excess = amount_minor * (len(charges) - 1)
        out.append(build_anomaly(
            Category.DUPLICATE_CHARGE, charges[0].customer_key, Confidence.HIGH, excess, rules,
            description=f"{len(charges)} identical charges of {format_minor(amount_minor, rules.currency_code)} "
                        f"on {day}. Charge ids: {', '.join(c.id for c in charges)}",
            root_cause="Retried or double-submitted charge without an idempotency key.",
            recommendation="Refund confirmed duplicates and add idempotency keys to charge creation.",
            reference=f"duplicate:{norm}:{amount_minor}:{day}",
            evidence={"processor_ids": [c.id for c in charges], "count": len(charges),
                      "amount_minor": amount_minor, "date": day,
                      "detection_method": "processor_duplicate_customer_amount_day"},
            now=now,
        ))
    return out


def _pairs(matches: Iterable[Match], ledger_by_row: Dict[int, LedgerRecord],
           external_by_id: Dict[str, ExternalRecord]):
    for m in sorted(matches, key=lambda m: m.ledger_row):
        led = ledger_by_row.get(m.ledger_row)
        ext = external_by_id.get(m.external_id)
        if led is not None and ext is not None:
            yield m, led, ext


def detect_fee_discrepancies(pairs: List[tuple], rules: Rules,
                             now: Optional[datetime]) -> List[AnomalyRecord]:
    gaps = []
    for m, led, ext in pairs:
        if led.status not in SUCCEEDED_STATUSES or ext.status not in SUCCEEDED_STATUSES:
            continue
        if led.fee_minor is None or ext.fee_minor is None:
            continue
        diff = abs(led.fee_minor - ext.fee_minor)
        if diff > rules.fee_discrepancy_threshold_minor:
            gaps.append((m, led, ext, diff))

    if len(gaps) > 5:
        confidence = Confidence.HIGH
    elif len(gaps) > 1:
        confidence = Confidence.MEDIUM
    else:
        confidence = Confidence.LOW

    out = []
    for m, led, ext, diff in gaps:
        out.append(build_anomaly(
            Category.FEE_DISCREPANCY, led.customer_key, confidence, diff, rules,
            description=f"Fee mismatch: internal {format_minor(led.fee_minor, rules.currency_code)} vs "
                        f"processor {format_minor(ext.fee_minor, rules.currency_code)}.",
            root_cause="Internal fee calculation differs from the processor's actual fee.",
            recommendation="Audit fee logic and sync rates with current processor pricing.",
            reference=f"fee:{ext.id}",
            evidence={"ledger_id": led.id, "processor_id": ext.id, "ledger_fee_minor": led.fee_minor,
                      "processor_fee_minor": ext.fee_minor, "sample_count": len(gaps),
                      "match_tier": m.tier, "detection_method": "ledger_fee_vs_processor_fee"},
            now=now,
        ))
    return out


def detect_timing_skew(pairs: List[tuple], rules: Rules, now: Optional[datetime]) -> List[AnomalyRecord]:
    out = []
    limit = rules.timing_mismatch_days * SECONDS_PER_DAY
    for m, led, ext in pairs:
        if m.gap_seconds is None or m.gap_seconds <= limit:
            continue
        days = m.gap_seconds / SECONDS_PER_DAY
        out.append(build_anomaly(
            Category.OTHER, led.customer_key, Confidence.HIGH if days > 3 else Confidence.MEDIUM, 0, rules,
            description=f"Timing mismatch: internal {day_key(led.occurred_at)}, processor "
                        f"{day_key(ext.occurred_at)} ({days:.1f} days apart).",
            root_cause="Timezone handling, processing delay or manual entry.",
            recommendation="Standardize timestamp handling; treat the processor timestamp as source of truth.",
            reference=f"timing:{ext.id}",
            evidence={"ledger_id": led.id, "processor_id": ext.id, "diff_days": round(days, 3),
                      "match_tier": m.tier, "detection_method": "ledger_vs_processor_timestamp"},
            now=now,
        ))
    return out


def _refund_seen(led: LedgerRecord, amount: int, candidates: List[ExternalRecord], refunded: bool) -> bool:
    norm = normalize_customer_key(led.customer_key)
    for r in candidates:
        covered = (r.refunded_amount_minor or 0) >= amount if refunded else abs(r.amount_minor) == amount
        if led.invoice_ref and r.invoice_ref:
            if r.invoice_ref == led.invoice_ref and (covered or not refunded):
                return True
        elif norm and r.customer_key:
            if normalize_customer_key(r.customer_key) == norm and covered:
                return True
        elif covered:
            return True
    return False


def detect_unmatched_refunds(ledger: List[LedgerRecord], external: List[ExternalRecord], rules: Rules,
                             now: Optional[datetime]) -> List[AnomalyRecord]:
    refund_objects = [e for e in external if not e.is_charge]
    charges = [e for e in external if e.is_charge]
    unmatched = []
    for led in ledger:
        if led.status != "refunded" and led.amount_minor >= 0:
            continue
        amount = abs(led.amount_minor)
        if _refund_seen(led, amount, refund_objects, refunded=False):
            continue
        if _refund_seen(led, amount, charges, refunded=True):
            continue
        unmatched.append(led)

    if not unmatched:
        return []
    total = sum(abs(r.amount_minor) for r in unmatched)
    return [build_anomaly(
        Category.OTHER, MULTIPLE, Confidence.MEDIUM, 0, rules,
        description=f"{len(unmatched)} internal refund(s) totaling {format_minor(total, rules.currency_code)} "
                    f"have no processor refund record.",
        root_cause="Refunds recorded differently between systems, or issued outside the processor.",
        recommendation="Cross-reference refunds with processor refund events.",
        reference="refunds:unmatched",
        evidence={"count": len(unmatched), "total_amount_minor": total,
                  "ledger_ids": [r.id for r in unmatched][:SAMPLE_SIZE],
                  "detection_method": "ledger_refund_without_processor_refund"},
        now=now,
    )]


def detect_pending_payouts(external: List[ExternalRecord], rules: Rules,
                           now: Optional[datetime]) -> List[AnomalyRecord]:
    if not any(e.payout_ref for e in external):
        return []
    instants = [e.occurred_at for e in external if e.occurred_at is not None]
    cutoff = max(instants) - timedelta(days=rules.payout_grace_days) if instants else None
    pending = [
        e for e in external
        if e.is_charge and e.status in SUCCEEDED_STATUSES and not e.payout_ref
        and (cutoff is None or e.occurred_at is None or e.occurred_at <= cutoff)
    ]
    if not pending:
        return []
    total = sum(e.amount_minor for e in pending)
    return [build_anomaly(
        Category.OTHER, MULTIPLE, Confidence.MEDIUM, 0, rules,
        description=f"{len(pending)} charge(s) totaling {format_minor(total, rules.currency_code)} have no payout "
                    f"beyond the {rules.payout_grace_days:g}-day grace period.",
        root_cause="Payout schedule delay, account hold or bank transfer pending.",
        recommendation="Review the payout schedule and any holds on the processor account.",
        reference="payouts:pending",
        evidence={"count": len(pending), "total_amount_minor": total,
                  "processor_ids": [e.id for e in pending][:SAMPLE_SIZE],
                  "payout_cutoff": cutoff.isoformat() if cutoff else None,
                  "detection_method": "processor_succeeded_without_payout"},
        now=now,
    )]


def detect_plan(text: str) -> Optional[str]:
    lowered = normalize_text(text)
    if not lowered:
        return None
    words = set(lowered.split())
    for plan, keywords in PLAN_KEYWORDS.items():
        if any(kw in words for kw in keywords):
            return plan
    return None


def detect_label_mismatches(pairs: List[tuple], rules: Rules, now: Optional[datetime]) -> List[AnomalyRecord]:
    mismatches = []
    for m, led, ext in pairs:
        if not led.description or not ext.description:
            continue
        led_plan, ext_plan = detect_plan(led.description), detect_plan(ext.description)
        if led_plan and ext_plan:
            if led_plan != ext_plan:
                mismatches.append({"ledger_id": led.id, "processor_id": ext.id,
                                   "ledger_label": led_plan, "processor_label": ext_plan})
        elif not led_plan and not ext_plan:
            score = fuzz.token_set_ratio(normalize_text(led.description), normalize_text(ext.description))
            if score < rules.min_similarity:
                mismatches.append({"ledger_id": led.id, "processor_id": ext.id,
                                   "ledger_label": led.description, "processor_label": ext.description,
                                   "similarity": int(score)})
    if not mismatches:
        return []
    return [build_anomaly(
        Category.OTHER, MULTIPLE, Confidence.HIGH if len(mismatches) > 3 else Confidence.MEDIUM, 0, rules,
        description=f"{len(mismatches)} matched transaction(s) carry different product labels internally "
                    f"and at the processor.",
        root_cause="Product or plan metadata not synced with internal plan names.",
        recommendation="Standardize product naming across systems.",
        reference="labels:mismatch",
        evidence={"count": len(mismatches), "samples": mismatches[:SAMPLE_SIZE],
                  "detection_method": "product_label_mismatch"},
        now=now,
    )]


def detect_email_mismatches(pairs: List[tuple], rules: Rules, now: Optional[datetime]) -> List[AnomalyRecord]:
    mismatches = []
    for m, led, ext in pairs:
        a = (led.email or "").strip().lower()
        b = (ext.email or "").strip().lower()
        if a and b and a != b:
            mismatches.append({"customer": led.customer_key, "ledger_email": led.email,
                               "processor_email": ext.email})
    if not mismatches:
        return []
    return [build_anomaly(
        Category.OTHER, MULTIPLE, Confidence.HIGH if len(mismatches) > 5 else Confidence.MEDIUM, 0, rules,
        description=f"{len(mismatches)} customer(s) have different email addresses internally and at the processor.",
        root_cause="Customer email updated in one system but not synchronized.",
        recommendation="Sync customer profile changes in both directions.",
        reference="emails:mismatch",
        evidence={"count": len(mismatches), "samples": mismatches[:SAMPLE_SIZE],
                  "detection_method": "email_integrity_check"},
        now=now,
    )]


def finalize(ledger: List[LedgerRecord],
             external: List[ExternalRecord],
             matches: List[Match],
             rules: Rules,
             now: Optional[datetime] = None) -> List[AnomalyRecord]:
    """Global detections, run exactly once against every match of the run."""
    consumed = {m.external_id for m in matches}
    ledger_by_row = {r.row_number: r for r in ledger}
    external_by_id = {e.id: e for e in external}
    pairs = list(_pairs(matches, ledger_by_row, external_by_id))

    anomalies: List[AnomalyRecord] = []
    anomalies += detect_zombies(ledger, external, consumed, rules, now)
    anomalies += detect_duplicates(external, rules, now)
    anomalies += detect_fee_discrepancies(pairs, rules, now)
    anomalies += detect_timing_skew(pairs, rules, now)
    anomalies += detect_unmatched_refunds(ledger, external, rules, now)
    anomalies += detect_pending_payouts(external, rules, now)
    anomalies += detect_label_mismatches(pairs, rules, now)
    anomalies += detect_email_mismatches(pairs, rules, now)
    logger.info("Finalization produced %d candidate anomalies from %d matches", len(anomalies), len(matches))
    return anomalies
