import hashlib
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Category(str, Enum):
    UNBILLED_REVENUE = "unbilled_revenue"
    ZOMBIE_CHARGE = "zombie_charge"
    FAILED_PAYMENT = "failed_payment"
    DUPLICATE_CHARGE = "duplicate_charge"
    DISPUTED_CHARGE = "disputed_charge"
    FEE_DISCREPANCY = "fee_discrepancy"
    OTHER = "other"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ImpactType(str, Enum):
    RECURRING = "recurring"
    ONE_TIME = "one_time"
    INFORMATIONAL = "informational"


IMPACT_TYPES: Dict[Category, ImpactType] = {
    Category.UNBILLED_REVENUE: ImpactType.RECURRING,
    Category.ZOMBIE_CHARGE: ImpactType.RECURRING,
    Category.FAILED_PAYMENT: ImpactType.RECURRING,
    Category.DUPLICATE_CHARGE: ImpactType.ONE_TIME,
    Category.DISPUTED_CHARGE: ImpactType.ONE_TIME,
    Category.FEE_DISCREPANCY: ImpactType.ONE_TIME,
    Category.OTHER: ImpactType.INFORMATIONAL,
}

MULTIPLE = "MULTIPLE"

SUCCEEDED_STATUSES = frozenset({"succeeded", "paid"})


class RunStatus(str, Enum):
    NOT_STARTED = "not_started"
    CHUNKING = "chunking"
    PROCESSING = "processing"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


class ChunkStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class LedgerRecord:
    """One row of the business's own transaction log."""
    id: str
    customer_key: str
    amount_minor: int
    status: str
    occurred_at: Optional[datetime]
    fee_minor: Optional[int] = None
    invoice_ref: Optional[str] = None
    description: str = ""
    email: Optional[str] = None
    customer_name: Optional[str] = None
    row_number: int = 0


@dataclass(frozen=True)
class ExternalRecord:
    """One row of the payment processor's export."""
    id: str
    customer_key: str
    amount_minor: int
    status: str
    occurred_at: Optional[datetime]
    fee_minor: Optional[int] = None
    disputed: bool = False
    payout_ref: Optional[str] = None
    refunded_amount_minor: Optional[int] = None
    captured_amount_minor: Optional[int] = None
    kind: str = "charge"
    description: str = ""
    email: Optional[str] = None
    invoice_ref: Optional[str] = None
    row_number: int = 0

    @property
    def is_charge(self) -> bool:
        return self.kind == "charge"

    @property
    def billed_minor(self) -> int:
        """Captured amount when a partial capture took less than the authorized amount."""
        if self.captured_amount_minor is not None and self.captured_amount_minor < self.amount_minor:
            return self.captured_amount_minor
        return self.amount_minor


@dataclass(frozen=True)
class UsageEvent:
    customer_key: str
    occurred_at: Optional[datetime]
    quantity: float
    event_type: str = ""
    row_number: int = 0


@dataclass(frozen=True)
class Match:
    ledger_row: int
    ledger_id: str
    external_id: str
    tier: str
    gap_seconds: Optional[float] = None


@dataclass
class AnomalyRecord:
    category: Category
    customer_key: Optional[str]
    confidence: Confidence
    monthly_impact_minor: int
    annual_impact_minor: int
    description: str
    root_cause: str
    recommendation: str
    reference: str
    evidence: Dict[str, Any] = field(default_factory=dict)
    detected_at: Optional[datetime] = None

    def anomaly_id(self, run_id: str) -> str:
        digest = hashlib.sha1(f"{run_id}|{self.category.value}|{self.reference}".encode("utf-8"))
        return digest.hexdigest()[:24]

    def rank_key(self):
        return (-self.annual_impact_minor, -self.monthly_impact_minor, self.reference)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["category"] = self.category.value
        out["confidence"] = self.confidence.value
        out["detected_at"] = self.detected_at.isoformat() if self.detected_at else None
        return out


@dataclass(frozen=True)
class Chunk:
    run_id: str
    index: int
    total_chunks: int
    start_row: int
    end_row: int
    status: ChunkStatus = ChunkStatus.PENDING
    anomalies_found: int = 0
    attempts: int = 0
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass
class RunSummary:
    run_id: str
    status: RunStatus
    schema: Optional[str] = None
    total_anomalies: int = 0
    annual_revenue_at_risk_minor: int = 0
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    chunks_total: int = 0
    chunks_completed: int = 0
    error_message: Optional[str] = None
    summary_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["status"] = self.status.value
        return out
