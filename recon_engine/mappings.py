"""
Header-to-canonical field mappings for the reconciliation engine.

This module is the ONLY place where raw source header names appear.
Inputs arrive with arbitrary headers, so each canonical field carries an
ordered list of hints; the column mapper resolves them against the headers
of one dataset and the rest of the engine works on canonical names only.
"""
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Type
import logging
import re

import pandas as pd

from .canonical_fields import LedgerField, ProcessorField

logger = logging.getLogger(__name__)


# ==================== Hint Tables ====================
# Order matters: earlier hints win over later ones.

LEDGER_COLUMN_HINTS: Dict[LedgerField, List[str]] = {
    LedgerField.TRANSACTION_ID: ["transaction_id", "txn_id", "id", "internal_id", "record_id", "event_id"],
    LedgerField.CUSTOMER_ID: ["customer_id", "customer", "cust_id", "user_id", "account_id", "client_id"],
    LedgerField.AMOUNT: ["amount", "gross_amount", "total", "charge_amount", "price", "value"],
    LedgerField.NET_AMOUNT: ["net_amount", "net", "amount_net"],
    LedgerField.FEE_AMOUNT: ["fee_amount", "fee", "fees", "stripe_fee", "processing_fee"],
    LedgerField.STATUS: ["status", "state", "payment_status", "transaction_status"],
    LedgerField.TIMESTAMP: ["created_at", "created", "timestamp", "date", "transaction_date"],
    LedgerField.UPDATED_AT: ["updated_at", "updated", "modified_at"],
    LedgerField.DESCRIPTION: ["description", "memo", "note", "product", "plan", "plan_name"],
    LedgerField.INVOICE_ID: ["invoice_id", "invoice", "inv_id"],
    LedgerField.SUBSCRIPTION_ID: ["subscription_id", "subscription", "sub_id"],
    LedgerField.CUSTOMER_EMAIL: ["customer_email", "email", "user_email"],
    LedgerField.CUSTOMER_NAME: ["customer_name", "name", "full_name"],
    LedgerField.CURRENCY: ["currency", "curr"],
    LedgerField.DISPUTED: ["disputed", "dispute", "is_disputed", "chargeback"],
}

PROCESSOR_COLUMN_HINTS: Dict[ProcessorField, List[str]] = {
    ProcessorField.ID: ["id", "charge_id", "payment_id", "transaction_id", "stripe_id"],
    ProcessorField.CUSTOMER_ID: ["customer", "customer_id", "cust_id", "stripe_customer_id"],
    ProcessorField.AMOUNT: ["amount", "total", "charge_amount", "price", "gross"],
    ProcessorField.FEE: ["fee", "stripe_fee", "processing_fee", "application_fee", "application_fee_amount"],
    ProcessorField.NET: ["net", "net_amount", "amount_net"],
    ProcessorField.STATUS: ["status", "state", "payment_status", "charge_status", "outcome"],
    ProcessorField.TIMESTAMP: ["created", "date", "timestamp", "created_at", "payment_date"],
    ProcessorField.CURRENCY: ["currency", "curr"],
    ProcessorField.DESCRIPTION: ["description", "statement_descriptor", "memo", "product", "plan"],
    ProcessorField.CUSTOMER_EMAIL: ["customer_email", "email", "receipt_email", "billing_email"],
    ProcessorField.AMOUNT_REFUNDED: ["amount_refunded", "refunded", "refund_amount"],
    ProcessorField.DISPUTED: ["disputed", "dispute", "is_disputed"],
    ProcessorField.OBJECT: ["object", "type", "record_type"],
    ProcessorField.PAYOUT_ID: ["payout_id", "payout", "transfer_id", "destination"],
    ProcessorField.INVOICE: ["invoice", "invoice_id"],
    ProcessorField.PAYMENT_INTENT: ["payment_intent", "payment_intent_id", "pi_id"],
}


# ==================== Column Mapping ====================

@dataclass(frozen=True)
class ColumnMapping:
    """
    Resolved canonical field -> source header mapping for one dataset.

    Fields with no matching header are simply absent.
    """

    name: str
    """Dataset name (e.g., 'ledger')"""

    columns: Mapping[str, str] = field(default_factory=dict)
    """Canonical field name -> matched source header"""

    def __post_init__(self):
        object.__setattr__(self, "columns", MappingProxyType(dict(self.columns)))

    def get(self, canonical_field) -> Optional[str]:
        return self.columns.get(_field_name(canonical_field))

    def has(self, canonical_field) -> bool:
        return _field_name(canonical_field) in self.columns

    def missing(self, canonical_fields: Iterable) -> List[str]:
        """Canonical fields from the given set that have no header."""
        return sorted(_field_name(f) for f in canonical_fields if not self.has(f))

    def to_dict(self) -> Dict[str, str]:
        return dict(self.columns)


def _field_name(canonical_field) -> str:
    return canonical_field.value if isinstance(canonical_field, Enum) else str(canonical_field)


def normalize_header(header) -> str:
    """Lower-case, trim and snake-case a header for comparison."""
    return re.sub(r"[\s\-]+", "_", str(header).strip().lower())


def find_column(
    headers: Sequence,
    hints: Sequence[str],
    claimed: Iterable[str] = (),
    allow_substring: bool = True,
) -> Optional[str]:
    """
    Find the header that best matches an ordered hint list.

    Exact matches are tried first for every hint in priority order, then
    substring containment in the same order. Within one hint the first
    header (in header order) wins.

    Args:
        headers: Source headers in file order
        hints: Ordered hints for one canonical field
        claimed: Headers already taken by other fields
        allow_substring: Whether to fall back to containment matching

    Returns:
        The original header string, or None
    """
    taken = set(claimed)
    candidates = [(h, normalize_header(h)) for h in headers if h not in taken]

    for hint in hints:
        for header, normalized in candidates:
            if normalized == hint:
                return header

    if not allow_substring:
        return None

    for hint in hints:
        for header, normalized in candidates:
            if hint in normalized:
                return header

    return None


def build_column_mapping(
    headers: Sequence,
    hint_table: Mapping,
    name: str = "dataset",
) -> ColumnMapping:
    """
    Resolve every canonical field of a hint table against a header list.

    All exact matches are assigned before any substring match, and a header
    is never assigned to two fields. The result depends only on the header
    list and the hint table.

    Args:
        headers: Source headers in file order
        hint_table: Canonical field -> ordered hints
        name: Dataset name for logging

    Returns:
        Immutable ColumnMapping
    """
    resolved: Dict[str, str] = {}
    claimed: List[str] = []

    for allow_substring in (False, True):
        for canonical_field, hints in hint_table.items():
            key = _field_name(canonical_field)
            if key in resolved:
                continue
            header = find_column(headers, hints, claimed=claimed, allow_substring=allow_substring)
            if header is not None:
                resolved[key] = header
                claimed.append(header)

    # Keep hint-table order so the mapping reads the same every time
    ordered = {
        _field_name(f): resolved[_field_name(f)]
        for f in hint_table
        if _field_name(f) in resolved
    }

    unmatched = [_field_name(f) for f in hint_table if _field_name(f) not in ordered]
    logger.info(f"[MAPPER] {name}: mapped {len(ordered)}/{len(hint_table)} fields {ordered}")
    if unmatched:
        logger.debug(f"[MAPPER] {name}: no header for {unmatched}")

    return ColumnMapping(name=name, columns=ordered)


def apply_column_mapping(df: pd.DataFrame, mapping: ColumnMapping, schema: Type[Enum]) -> pd.DataFrame:
    """
    Project a raw DataFrame onto the canonical columns of a schema.

    Every canonical column is present in the output; columns without a
    source header are filled with empty strings. Values stay untyped text.

    Args:
        df: Raw source DataFrame (all cells as strings)
        mapping: Resolved ColumnMapping for this dataset
        schema: LedgerField or ProcessorField

    Returns:
        DataFrame with canonical column names only
    """
    result_data = {}
    for member in schema:
        header = mapping.get(member)
        if header is not None and header in df.columns:
            result_data[member.value] = df[header].fillna("").astype(str)
        else:
            result_data[member.value] = pd.Series([""] * len(df), index=df.index, dtype=object)

    return pd.DataFrame(result_data, index=df.index)


def map_ledger_columns(headers: Sequence) -> ColumnMapping:
    return build_column_mapping(headers, LEDGER_COLUMN_HINTS, name="ledger")


def map_processor_columns(headers: Sequence) -> ColumnMapping:
    return build_column_mapping(headers, PROCESSOR_COLUMN_HINTS, name="processor")
