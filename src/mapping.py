import pandas as pd
from typing import Dict, List, Mapping, Optional

# Ordered hint tokens per canonical field; earlier tokens win.
LEDGER_HINTS: Dict[str, List[str]] = {
    "transaction_id": ["transaction_id", "txn_id", "id", "internal_id", "record_id", "event_id"],
    "customer_id": ["customer_id", "customer", "cust_id", "user_id", "account_id", "client_id"],
    "amount": ["amount", "gross_amount", "total", "charge_amount", "price", "value"],
    "fee_amount": ["fee_amount", "fee", "fees", "stripe_fee", "processing_fee"],
    "status": ["status", "state", "payment_status", "transaction_status"],
    "created_at": ["created_at", "created", "timestamp", "date", "transaction_date"],
    "description": ["description", "memo", "note", "product", "plan", "plan_name"],
    "invoice_id": ["invoice_id", "invoice", "inv_id"],
    "customer_email": ["customer_email", "email", "user_email"],
    "customer_name": ["customer_name", "name", "full_name"],
}

PROCESSOR_HINTS: Dict[str, List[str]] = {
    "id": ["id", "charge_id", "payment_id", "transaction_id", "stripe_id"],
    "customer": ["customer", "customer_id", "cust_id", "stripe_customer_id"],
    "amount": ["amount", "total", "charge_amount", "price", "gross"],
    "fee": ["fee", "stripe_fee", "processing_fee", "application_fee"],
    "status": ["status", "state", "payment_status", "charge_status", "outcome"],
    "created": ["created", "date", "timestamp", "created_at", "payment_date"],
    "description": ["description", "memo", "note", "product", "plan", "statement_descriptor"],
    "customer_email": ["customer_email", "email", "receipt_email"],
    "refunded_amount": ["amount_refunded", "refunded", "refund_amount"],
    "amount_captured": ["amount_captured", "captured_amount"],
    "disputed": ["disputed", "dispute", "is_disputed"],
    "object": ["object", "type", "record_type"],
    "payout_id": ["payout_id", "payout", "transfer_id"],
    "invoice": ["invoice", "invoice_id", "inv_id"],
}

USAGE_HINTS: Dict[str, List[str]] = {
    "customer_id": ["customer_id", "customer", "cust_id", "user_id", "account_id"],
    "timestamp": ["timestamp", "date", "created_at", "event_date", "time", "created"],
    "quantity": ["quantity", "amount", "count", "units", "value", "usage", "qty"],
    "event_type": ["event_type", "type", "event", "action", "category", "plan"],
}

# Columns that only an internal transaction ledger carries.
LEDGER_MARKER_HINTS: List[str] = ["transaction_id", "txn_id", "net_amount", "fee_amount"]

def _norm(s: str) -> str:
    return str(s).strip().lower()

def find_column(headers: List[str], hints: List[str]) -> Optional[str]:
    """First header equal to, or containing, the current hint token wins."""
    lowered = [_norm(h) for h in headers]
    for hint in hints:
        token = _norm(hint)
        for header, low in zip(headers, lowered):
            if low == token or token in low:
                return header
    return None

def resolve_columns(headers: List[str], hint_table: Mapping[str, List[str]]) -> Dict[str, Optional[str]]:
    return {field: find_column(headers, hints) for field, hints in hint_table.items()}

def is_transaction_ledger(headers: List[str]) -> bool:
    return find_column(headers, LEDGER_MARKER_HINTS) is not None

def project_row(row: Mapping[str, str], mapping: Mapping[str, Optional[str]]) -> Dict[str, str]:
    """Project a raw row onto canonical field names; unresolved fields are left out."""
    out = {}
    for field, col in mapping.items():
        if col is not None and col in row:
            out[field] = row[col]
    return out

def apply_mapping(df: pd.DataFrame, mapping: Mapping[str, Optional[str]]) -> pd.DataFrame:
    """
    Returns a new DF with canonical column names, pulling from the resolved source
    headers. Fields without a resolved header are not present.
    """
    out = pd.DataFrame(index=df.index)
    for field, col in mapping.items():
        if col is not None and col in df.columns:
            out[field] = df[col]
    return out

def missing_fields(mapping: Mapping[str, Optional[str]], required: List[str]) -> List[str]:
    return [f for f in required if mapping.get(f) is None]
