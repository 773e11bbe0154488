"""
Lookup structures shared by all detectors.

The index is always built over the FULL normalized datasets. Chunks only
restrict which rows a detector reports on, so a row's match status never
depends on how the input was partitioned.
"""
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

import pandas as pd

from .canonical_fields import (
    DerivedField,
    LedgerField,
    ProcessorField,
    FAILED_STATUS_MARKERS,
    REFUND_STATUS_MARKERS,
    SUCCEEDED_STATUSES,
)

logger = logging.getLogger(__name__)

ROW = DerivedField.ROW_NUMBER.value
CUSTOMER_KEY = DerivedField.CUSTOMER_KEY.value
DAY = DerivedField.DAY.value
MONTH = DerivedField.MONTH.value
AMOUNT = LedgerField.AMOUNT.value
STATUS = LedgerField.STATUS.value

MatchKey = Tuple[str, int]


def _contains_any(series: pd.Series, markers: Iterable[str]) -> pd.Series:
    pattern = "|".join(markers)
    return series.fillna("").str.contains(pattern, regex=True)


def ledger_payment_mask(ledger: pd.DataFrame) -> pd.Series:
    """Ledger rows that represent money the business expects to collect."""
    if ledger.empty:
        return pd.Series([], dtype=bool, index=ledger.index)
    status = ledger[STATUS]
    return (
        (ledger[CUSTOMER_KEY] != "")
        & (ledger[AMOUNT] > 0)
        & ~_contains_any(status, FAILED_STATUS_MARKERS)
        & ~_contains_any(status, REFUND_STATUS_MARKERS)
    )


def processor_charge_mask(processor: pd.DataFrame) -> pd.Series:
    """Processor rows that are settled charges (not refunds, not failures)."""
    if processor.empty:
        return pd.Series([], dtype=bool, index=processor.index)
    status = processor[STATUS].fillna("")
    settled = (status == "") | status.isin(SUCCEEDED_STATUSES)
    return (
        (processor[CUSTOMER_KEY] != "")
        & (processor[AMOUNT] > 0)
        & settled
        & ~_contains_any(processor[ProcessorField.OBJECT.value], REFUND_STATUS_MARKERS)
    )


def _plain(value: Any) -> Any:
    return value.item() if hasattr(value, "item") else value


def _group_rows(df: pd.DataFrame, columns: List[str]) -> Dict[tuple, List[int]]:
    """Group row numbers by the given columns, preserving row order."""
    groups: Dict[tuple, List[int]] = {}
    if df.empty:
        return groups
    for key, rows in df.groupby(columns, sort=False)[ROW]:
        key = key if isinstance(key, tuple) else (key,)
        groups[tuple(_plain(k) for k in key)] = sorted(int(r) for r in rows)
    return groups


def _ranks(groups: Dict[tuple, List[int]]) -> Dict[int, int]:
    return {row: rank for rows in groups.values() for rank, row in enumerate(rows)}


def _sum_by(df: pd.DataFrame, columns: List[str], value: str) -> Dict[tuple, int]:
    if df.empty:
        return {}
    sums = df.groupby(columns, sort=False)[value].sum()
    return {
        (tuple(_plain(k) for k in key) if isinstance(key, tuple) else (_plain(key),)): int(total)
        for key, total in sums.items()
    }


class MatchIndex:
    """
    Cross-ledger lookup tables.

    Pairing is occurrence based: the i-th ledger payment for a
    (customer, amount) key pairs with the i-th processor charge for the
    same key, in row order. A key seen n times on one side and m times on
    the other leaves |n - m| rows unpaired.
    """

    def __init__(self, ledger: pd.DataFrame, processor: pd.DataFrame):
        self.ledger = ledger
        self.processor = processor
        self.ledger_records: List[Dict[str, Any]] = ledger.to_dict("records")
        self.processor_records: List[Dict[str, Any]] = processor.to_dict("records")

        self.ledger_payments = ledger[ledger_payment_mask(ledger)]
        self.processor_charges = processor[processor_charge_mask(processor)]
        self._ledger_payment_rows = set(int(r) for r in self.ledger_payments[ROW]) if len(ledger) else set()
        self._processor_charge_rows = set(int(r) for r in self.processor_charges[ROW]) if len(processor) else set()

        # (customer, amount) pairing
        self._ledger_by_key = _group_rows(self.ledger_payments, [CUSTOMER_KEY, AMOUNT])
        self._processor_by_key = _group_rows(self.processor_charges, [CUSTOMER_KEY, AMOUNT])
        self._ledger_rank = _ranks(self._ledger_by_key)
        self._processor_rank = _ranks(self._processor_by_key)

        # customer-level views
        self._ledger_by_customer = _group_rows(self.ledger_payments, [CUSTOMER_KEY])
        self._processor_by_customer = _group_rows(self.processor_charges, [CUSTOMER_KEY])
        self._ledger_customers = set(k for k in ledger[CUSTOMER_KEY] if k) if len(ledger) else set()

        # same-day duplicates
        dated_charges = self.processor_charges[self.processor_charges[DAY] != ""] if len(processor) else processor
        self._processor_day_rank = _ranks(_group_rows(dated_charges, [CUSTOMER_KEY, AMOUNT, DAY]))

        # customer-month activity
        dated_ledger = ledger[(ledger[MONTH] != "") & (ledger[CUSTOMER_KEY] != "")] if len(ledger) else ledger
        self._ledger_active_months = set(zip(dated_ledger[CUSTOMER_KEY], dated_ledger[MONTH])) if len(ledger) else set()
        dated_payments = self.ledger_payments[self.ledger_payments[MONTH] != ""] if len(ledger) else ledger
        self._ledger_month_rows = _group_rows(dated_payments, [CUSTOMER_KEY, MONTH])
        self._ledger_month_totals = _sum_by(dated_payments, [CUSTOMER_KEY, MONTH], AMOUNT)
        monthly_charges = self.processor_charges[self.processor_charges[MONTH] != ""] if len(processor) else processor
        self._processor_month_rows = _group_rows(monthly_charges, [CUSTOMER_KEY, MONTH])
        self._processor_month_totals = _sum_by(monthly_charges, [CUSTOMER_KEY, MONTH], AMOUNT)

        timestamps = processor[ProcessorField.TIMESTAMP.value].dropna() if len(processor) else pd.Series([], dtype=object)
        self.latest_processor_timestamp: Optional[pd.Timestamp] = timestamps.max() if len(timestamps) else None

        logger.info(
            f"[INDEX] {len(self._ledger_by_key)} ledger keys, {len(self._processor_by_key)} processor keys, "
            f"{len(self._ledger_month_rows)} ledger customer-months, "
            f"{len(self._processor_month_rows)} processor customer-months"
        )

    # ==================== Record access ====================

    def ledger_record(self, row: int) -> Dict[str, Any]:
        return self.ledger_records[row]

    def processor_record(self, row: int) -> Dict[str, Any]:
        return self.processor_records[row]

    def is_ledger_payment(self, row: int) -> bool:
        return row in self._ledger_payment_rows

    def is_processor_charge(self, row: int) -> bool:
        return row in self._processor_charge_rows

    # ==================== Pairing ====================

    @staticmethod
    def key_of(record: Dict[str, Any]) -> MatchKey:
        return (record[CUSTOMER_KEY], int(record[AMOUNT]))

    def counterpart_in_processor(self, ledger_row: int) -> Optional[Dict[str, Any]]:
        """Processor charge paired with a ledger payment, if any."""
        rank = self._ledger_rank.get(ledger_row)
        if rank is None:
            return None
        rows = self._processor_by_key.get(self.key_of(self.ledger_records[ledger_row]), [])
        return self.processor_records[rows[rank]] if rank < len(rows) else None

    def counterpart_in_ledger(self, processor_row: int) -> Optional[Dict[str, Any]]:
        """Ledger payment paired with a processor charge, if any."""
        rank = self._processor_rank.get(processor_row)
        if rank is None:
            return None
        rows = self._ledger_by_key.get(self.key_of(self.processor_records[processor_row]), [])
        return self.ledger_records[rows[rank]] if rank < len(rows) else None

    def processor_charges_for_customer(self, customer_key: str) -> List[Dict[str, Any]]:
        return [self.processor_records[r] for r in self._processor_by_customer.get((customer_key,), [])]

    def ledger_payments_for_customer(self, customer_key: str) -> List[Dict[str, Any]]:
        return [self.ledger_records[r] for r in self._ledger_by_customer.get((customer_key,), [])]

    def customer_owner_row(self, customer_key: str) -> Optional[int]:
        """First ledger payment row of a customer; aggregate findings are emitted there."""
        rows = self._ledger_by_customer.get((customer_key,))
        return rows[0] if rows else None

    # ==================== Duplicates ====================

    def duplicate_rank(self, processor_row: int) -> Optional[int]:
        """Position of a charge among same-customer, same-amount, same-day charges."""
        return self._processor_day_rank.get(processor_row)

    def is_duplicate_excess(self, processor_row: int) -> bool:
        rank = self.duplicate_rank(processor_row)
        return rank is not None and rank >= 1

    # ==================== Customer-month activity ====================

    def customer_has_ledger_activity(self, customer_key: str, month: Optional[str] = None) -> bool:
        if month is None:
            return customer_key in self._ledger_customers
        return (customer_key, month) in self._ledger_active_months

    def ledger_month_total(self, customer_key: str, month: str) -> int:
        return self._ledger_month_totals.get((customer_key, month), 0)

    def ledger_month_paired_total(self, customer_key: str, month: str) -> int:
        """Month total over ledger payments that have a processor counterpart."""
        rows = self._ledger_month_rows.get((customer_key, month), [])
        return sum(
            int(self.ledger_records[r][AMOUNT]) for r in rows
            if self.counterpart_in_processor(r) is not None
        )

    def processor_month_total(self, customer_key: str, month: str) -> int:
        return self._processor_month_totals.get((customer_key, month), 0)

    def ledger_month_rows(self) -> Dict[tuple, List[int]]:
        return self._ledger_month_rows

    def processor_month_rows(self) -> Dict[tuple, List[int]]:
        return self._processor_month_rows
