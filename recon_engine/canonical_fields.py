"""
Canonical field definitions for the reconciliation engine.

This module is the single source of truth for the column names used by the
normalizer, match index, detectors and storage. Raw source header names should
NEVER be referenced outside of mappings.py.

Both enums inherit from str so members work directly as pandas column labels
and dictionary keys.
"""
from enum import Enum
from typing import FrozenSet


class LedgerField(str, Enum):
    """
    Canonical fields of the internal billing/usage ledger.
    """

    TRANSACTION_ID = "transaction_id"
    """Ledger-side identifier for the transaction"""

    CUSTOMER_ID = "customer_id"
    """Customer/account identifier as recorded in the ledger"""

    AMOUNT = "amount"
    """Gross amount in minor currency units"""

    NET_AMOUNT = "net_amount"
    """Amount after fees, minor units"""

    FEE_AMOUNT = "fee_amount"
    """Processing fee recorded by the ledger, minor units"""

    STATUS = "status"
    """Lower-cased transaction status (succeeded, paid, failed, ...)"""

    TIMESTAMP = "timestamp"
    """When the transaction was created (UTC)"""

    UPDATED_AT = "updated_at"
    """Last update time reported by the ledger"""

    DESCRIPTION = "description"
    """Free-text memo, product or plan name"""

    INVOICE_ID = "invoice_id"
    """Invoice reference"""

    SUBSCRIPTION_ID = "subscription_id"
    """Subscription reference"""

    CUSTOMER_EMAIL = "customer_email"
    """Customer email address"""

    CUSTOMER_NAME = "customer_name"
    """Customer display name"""

    CURRENCY = "currency"
    """ISO currency code"""

    DISPUTED = "disputed"
    """Whether the ledger flags the transaction as disputed"""


class ProcessorField(str, Enum):
    """
    Canonical fields of the payment-processor export.
    """

    ID = "id"
    """Processor charge/payment identifier"""

    CUSTOMER_ID = "customer_id"
    """Processor customer identifier"""

    AMOUNT = "amount"
    """Gross charged amount in minor currency units"""

    FEE = "fee"
    """Processor fee, minor units"""

    NET = "net"
    """Net settled amount, minor units"""

    STATUS = "status"
    """Lower-cased charge status"""

    TIMESTAMP = "timestamp"
    """Charge creation time (UTC)"""

    CURRENCY = "currency"
    """ISO currency code"""

    DESCRIPTION = "description"
    """Charge description, often the plan name"""

    CUSTOMER_EMAIL = "customer_email"
    """Customer email address"""

    AMOUNT_REFUNDED = "amount_refunded"
    """Refunded portion of the charge, minor units"""

    DISPUTED = "disputed"
    """Whether the processor reports an open dispute"""

    OBJECT = "object"
    """Record type (charge, refund, payout, ...)"""

    PAYOUT_ID = "payout_id"
    """Payout/transfer the charge settled in"""

    INVOICE = "invoice"
    """Invoice reference"""

    PAYMENT_INTENT = "payment_intent"
    """Payment intent reference"""


class DerivedField(str, Enum):
    """Columns added by the normalizer to both schemas."""

    ROW_NUMBER = "row_number"
    """0-based position of the record in its dataset"""

    CUSTOMER_KEY = "customer_key"
    """Customer id reduced to lower-case alphanumerics, used for matching"""

    DAY = "day"
    """Calendar day bucket (YYYY-MM-DD) of the timestamp"""

    MONTH = "month"
    """Calendar month bucket (YYYY-MM) of the timestamp"""


class AnomalyCategory(str, Enum):
    """Closed set of finding categories."""
    MISSING_IN_PROCESSOR = "missing_in_processor"
    MISSING_IN_LEDGER = "missing_in_ledger"
    AMOUNT_MISMATCH = "amount_mismatch"
    DUPLICATE_CHARGE = "duplicate_charge"
    ZOMBIE_SUBSCRIPTION = "zombie_subscription"
    UNBILLED_USAGE = "unbilled_usage"
    PRICING_MISMATCH = "pricing_mismatch"
    FAILED_PAYMENT = "failed_payment"
    DISPUTED_CHARGE = "disputed_charge"
    FEE_DISCREPANCY = "fee_discrepancy"
    OTHER = "other"


class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FindingStatus(str, Enum):
    OPEN = "open"
    DETECTED = "detected"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class ChunkStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class AuditStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    REVIEW = "review"
    PUBLISHED = "published"
    ERROR = "error"


# ==================== Field Groups ====================

AMOUNT_FIELDS: FrozenSet[str] = frozenset({
    LedgerField.AMOUNT.value,
    LedgerField.NET_AMOUNT.value,
    LedgerField.FEE_AMOUNT.value,
    ProcessorField.FEE.value,
    ProcessorField.NET.value,
    ProcessorField.AMOUNT_REFUNDED.value,
})
"""Columns parsed into integer minor units"""

OPTIONAL_AMOUNT_FIELDS: FrozenSet[str] = frozenset({
    LedgerField.FEE_AMOUNT.value,
    LedgerField.NET_AMOUNT.value,
    ProcessorField.FEE.value,
    ProcessorField.NET.value,
})
"""Amount columns where an empty cell means unknown rather than zero"""

TIMESTAMP_FIELDS: FrozenSet[str] = frozenset({
    LedgerField.TIMESTAMP.value,
    LedgerField.UPDATED_AT.value,
})

BOOLEAN_FIELDS: FrozenSet[str] = frozenset({
    LedgerField.DISPUTED.value,
})

RECURRING_CATEGORIES: FrozenSet[AnomalyCategory] = frozenset({
    AnomalyCategory.ZOMBIE_SUBSCRIPTION,
    AnomalyCategory.UNBILLED_USAGE,
    AnomalyCategory.PRICING_MISMATCH,
})
"""Categories whose monthly impact is projected to a yearly figure"""

SUCCEEDED_STATUSES: FrozenSet[str] = frozenset({
    "succeeded", "success", "successful", "paid", "complete", "completed", "captured", "settled",
})
FAILED_STATUS_MARKERS = ("failed", "incomplete", "canceled", "cancelled", "declined")
REFUND_STATUS_MARKERS = ("refund",)
DISPUTED_STATUS_MARKERS = ("disput", "chargeback")


def status_has(status: str, markers) -> bool:
    """Check whether a normalized status contains any of the given markers."""
    return bool(status) and any(marker in status for marker in markers)
