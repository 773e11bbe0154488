"""
Detector implementations.

Every rule reads the shared MatchIndex and reports only on rows inside the
context's row ranges. Aggregate rules (per customer, per customer-month,
per payout) report from the group's first row, so each group is owned by
exactly one chunk.
"""
from typing import Any, Dict, List, Optional
import re

import pandas as pd

from .canonical_fields import (
    AnomalyCategory,
    Confidence,
    LedgerField,
    ProcessorField,
    DISPUTED_STATUS_MARKERS,
    FAILED_STATUS_MARKERS,
    REFUND_STATUS_MARKERS,
    status_has,
)
from .findings import Finding
from .index import CUSTOMER_KEY, MONTH, ROW
from .rules import DetectionContext, Rule, RuleRegistry
from .scoring import format_currency

# Amount mismatch fires only above this share of the ledger total
AMOUNT_MISMATCH_TOLERANCE_PCT = 0.05
# Ledger usage above billed * this factor counts as under-billing
UNBILLED_USAGE_FACTOR = 1.2
# Timing gaps longer than this many days raise confidence to medium
TIMING_MISMATCH_ESCALATION_DAYS = 3

PLAN_TIER_PATTERN = re.compile(r"\b(enterprise|business|premium|pro|growth|basic|starter|free)\b")


def _timestamp(record: Dict[str, Any]) -> Optional[pd.Timestamp]:
    value = record.get(LedgerField.TIMESTAMP.value)
    if value is None or pd.isna(value):
        return None
    return value


def _iso(value: Optional[pd.Timestamp]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _money(context: DetectionContext, amount: int, record: Optional[Dict[str, Any]] = None) -> str:
    code = context.config.currency_code or (record or {}).get(LedgerField.CURRENCY.value) or None
    return format_currency(amount, code)


def plan_tier(description: Any) -> Optional[str]:
    """Extract a plan tier keyword from a free-text description."""
    if not description or not isinstance(description, str):
        return None
    match = PLAN_TIER_PATTERN.search(description.lower())
    return match.group(1) if match else None


def _ledger_evidence(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "ledger_row": int(record[ROW]),
        "ledger_transaction_id": record.get(LedgerField.TRANSACTION_ID.value) or None,
        "ledger_amount": int(record[LedgerField.AMOUNT.value]),
        "ledger_status": record.get(LedgerField.STATUS.value) or None,
        "ledger_timestamp": _iso(_timestamp(record)),
    }


def _processor_evidence(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "processor_row": int(record[ROW]),
        "processor_id": record.get(ProcessorField.ID.value) or None,
        "processor_amount": int(record[ProcessorField.AMOUNT.value]),
        "processor_status": record.get(ProcessorField.STATUS.value) or None,
        "processor_timestamp": _iso(_timestamp(record)),
    }


class MissingInProcessorRule(Rule):
    """Ledger payments with no processor charge for the same (customer, amount)."""

    rule_id = "MISSING_IN_PROCESSOR"
    rule_name = "Ledger charge missing from processor"
    category = AnomalyCategory.MISSING_IN_PROCESSOR

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        index = context.index
        latest = index.latest_processor_timestamp
        grace = pd.Timedelta(days=context.config.payout_grace_days)

        findings = []
        for record in context.ledger_records():
            row = int(record[ROW])
            if not index.is_ledger_payment(row) or index.counterpart_in_processor(row) is not None:
                continue
            # Disputed rows never count as missing
            status = record.get(LedgerField.STATUS.value) or ""
            if record.get(LedgerField.DISPUTED.value) or status_has(status, DISPUTED_STATUS_MARKERS):
                continue

            # Records just past the end of the export may not have settled yet
            ts = _timestamp(record)
            if latest is not None and ts is not None and latest < ts <= latest + grace:
                continue

            amount = int(record[LedgerField.AMOUNT.value])
            customer = record[LedgerField.CUSTOMER_ID.value]
            findings.append(self.build_finding(
                context,
                evidence_key=f"ledger:{row}",
                customer_id=customer,
                base_amount=amount,
                certainty=Confidence.HIGH,
                description=(
                    f"Ledger charge of {_money(context, amount, record)} for customer {customer} "
                    f"has no matching processor record."
                ),
                root_cause="Charge recorded internally but never captured by the payment processor.",
                recommendation="Confirm the charge was submitted to the processor and re-bill the customer if it was not.",
                metadata={**_ledger_evidence(record), "match_key": list(index.key_of(record))},
            ))
        return findings


class MissingInLedgerRule(Rule):
    """Processor charges with no ledger payment for the same (customer, amount)."""

    rule_id = "MISSING_IN_LEDGER"
    rule_name = "Processor charge missing from ledger"
    category = AnomalyCategory.MISSING_IN_LEDGER

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        index = context.index
        findings = []
        for record in context.processor_records():
            row = int(record[ROW])
            if not index.is_processor_charge(row) or index.counterpart_in_ledger(row) is not None:
                continue
            if index.is_duplicate_excess(row):
                continue
            customer_key = record[CUSTOMER_KEY]
            month = record[MONTH]
            # No ledger activity that month at all is a zombie subscription
            if month and not index.customer_has_ledger_activity(customer_key, month):
                continue

            amount = int(record[ProcessorField.AMOUNT.value])
            customer = record[ProcessorField.CUSTOMER_ID.value]
            findings.append(self.build_finding(
                context,
                evidence_key=f"processor:{row}",
                customer_id=customer,
                base_amount=amount,
                certainty=Confidence.HIGH,
                description=(
                    f"Processor charge of {_money(context, amount, record)} for customer {customer} "
                    f"is not recorded in the ledger."
                ),
                root_cause="Payment collected by the processor without a matching internal record.",
                recommendation="Record the payment in the ledger or refund it if it was taken in error.",
                metadata=_processor_evidence(record),
                customer_active=index.customer_has_ledger_activity(customer_key),
            ))
        return findings


class AmountMismatchRule(Rule):
    """Customer totals that disagree between the two systems."""

    rule_id = "AMOUNT_MISMATCH"
    rule_name = "Customer total mismatch"
    category = AnomalyCategory.AMOUNT_MISMATCH

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        index = context.index
        threshold = context.config.gross_diff_threshold_cents
        findings = []
        for record in context.ledger_records():
            row = int(record[ROW])
            customer_key = record[CUSTOMER_KEY]
            if not index.is_ledger_payment(row) or index.customer_owner_row(customer_key) != row:
                continue

            # Same-day repeats are reported as duplicate charges
            charges = [
                r for r in index.processor_charges_for_customer(customer_key)
                if not index.is_duplicate_excess(int(r[ROW]))
            ]
            if not charges:
                continue
            ledger_total = sum(int(r[LedgerField.AMOUNT.value]) for r in index.ledger_payments_for_customer(customer_key))
            processor_total = sum(int(r[ProcessorField.AMOUNT.value]) for r in charges)
            diff = abs(ledger_total - processor_total)
            if diff <= threshold or diff <= ledger_total * AMOUNT_MISMATCH_TOLERANCE_PCT:
                continue

            customer = record[LedgerField.CUSTOMER_ID.value]
            direction = "under-collected" if ledger_total > processor_total else "over-collected"
            findings.append(self.build_finding(
                context,
                evidence_key=f"customer:{customer_key}",
                customer_id=customer,
                base_amount=diff,
                certainty=Confidence.MEDIUM,
                description=(
                    f"Customer {customer} ledger total {_money(context, ledger_total, record)} vs processor total "
                    f"{_money(context, processor_total, record)} ({direction} by {_money(context, diff, record)})."
                ),
                root_cause="Amounts billed internally differ from amounts charged by the processor.",
                recommendation="Review the customer's invoices and charges for pricing or proration errors.",
                metadata={
                    "ledger_total": ledger_total,
                    "processor_total": processor_total,
                    "difference": ledger_total - processor_total,
                    "ledger_count": len(index.ledger_payments_for_customer(customer_key)),
                    "processor_count": len(charges),
                },
            ))
        return findings


class DuplicateChargeRule(Rule):
    """Same customer charged the same amount more than once on one day."""

    rule_id = "DUPLICATE_CHARGE"
    rule_name = "Duplicate processor charge"
    category = AnomalyCategory.DUPLICATE_CHARGE
    applies_to = ["processor"]

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        index = context.index
        findings = []
        for record in context.processor_records():
            row = int(record[ROW])
            if not index.is_processor_charge(row) or not index.is_duplicate_excess(row):
                continue

            amount = int(record[ProcessorField.AMOUNT.value])
            customer = record[ProcessorField.CUSTOMER_ID.value]
            findings.append(self.build_finding(
                context,
                evidence_key=f"processor:{row}",
                customer_id=customer,
                base_amount=amount,
                certainty=Confidence.HIGH,
                description=(
                    f"Customer {customer} was charged {_money(context, amount, record)} more than once "
                    f"on {record[LedgerField.TIMESTAMP.value].strftime('%Y-%m-%d')}."
                ),
                root_cause="The same charge was submitted to the processor more than once.",
                recommendation="Refund the duplicate charge and check the retry logic that submitted it.",
                metadata={**_processor_evidence(record), "duplicate_rank": index.duplicate_rank(row)},
            ))
        return findings


class ZombieSubscriptionRule(Rule):
    """Processor keeps charging a customer the ledger shows no activity for."""

    rule_id = "ZOMBIE_SUBSCRIPTION"
    rule_name = "Charges without ledger activity"
    category = AnomalyCategory.ZOMBIE_SUBSCRIPTION

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        index = context.index
        findings = []
        for (customer_key, month), rows in index.processor_month_rows().items():
            if not context.owns_processor_row(rows[0]):
                continue
            if index.customer_has_ledger_activity(customer_key, month):
                continue

            record = index.processor_record(rows[0])
            total = index.processor_month_total(customer_key, month)
            known_customer = index.customer_has_ledger_activity(customer_key)
            customer = record[ProcessorField.CUSTOMER_ID.value]
            findings.append(self.build_finding(
                context,
                evidence_key=f"customer_month:{customer_key}:{month}",
                customer_id=customer,
                base_amount=total,
                certainty=Confidence.MEDIUM if known_customer else Confidence.HIGH,
                description=(
                    f"Customer {customer} was charged {_money(context, total, record)} in {month} "
                    f"with no matching ledger activity."
                ),
                root_cause=(
                    "Subscription still billing after the account went inactive internally."
                    if known_customer else
                    "Processor subscription for a customer unknown to the ledger."
                ),
                recommendation="Confirm the subscription is wanted; cancel it and refund if the customer churned.",
                metadata={
                    "month": month,
                    "processor_rows": rows,
                    "charge_count": len(rows),
                    "customer_known_to_ledger": known_customer,
                },
            ))
        return findings


class UnbilledUsageRule(Rule):
    """Ledger usage in a month that the processor billed too little for."""

    rule_id = "UNBILLED_USAGE"
    rule_name = "Usage not billed"
    category = AnomalyCategory.UNBILLED_USAGE

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        index = context.index
        if index.latest_processor_timestamp is None:
            # Without dated charges there are no monthly billing totals to compare
            return []

        findings = []
        for (customer_key, month), rows in index.ledger_month_rows().items():
            if not context.owns_ledger_row(rows[0]):
                continue

            # Unpaired ledger payments are already missing_in_processor findings
            usage = index.ledger_month_paired_total(customer_key, month)
            billed = index.processor_month_total(customer_key, month)
            if usage == 0:
                continue
            if billed == 0:
                certainty, gap = Confidence.HIGH, usage
            elif usage > billed * UNBILLED_USAGE_FACTOR:
                certainty, gap = Confidence.MEDIUM, usage - billed
            else:
                continue

            record = index.ledger_record(rows[0])
            customer = record[LedgerField.CUSTOMER_ID.value]
            findings.append(self.build_finding(
                context,
                evidence_key=f"customer_month:{customer_key}:{month}",
                customer_id=customer,
                base_amount=gap,
                certainty=certainty,
                description=(
                    f"Customer {customer} used {_money(context, usage, record)} in {month} but was billed "
                    f"{_money(context, billed, record)}."
                ),
                root_cause="Usage recorded internally was not (fully) invoiced through the processor.",
                recommendation="Invoice the outstanding usage and check the metering-to-billing sync.",
                metadata={
                    "month": month,
                    "ledger_rows": rows,
                    "usage_total": usage,
                    "ledger_month_total": index.ledger_month_total(customer_key, month),
                    "billed_total": billed,
                },
            ))
        return findings


class PricingMismatchRule(Rule):
    """Paired transactions that name different plan tiers."""

    rule_id = "PRICING_MISMATCH"
    rule_name = "Plan tier mismatch"
    category = AnomalyCategory.PRICING_MISMATCH

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        index = context.index
        findings = []
        for record in context.ledger_records():
            row = int(record[ROW])
            if not index.is_ledger_payment(row):
                continue
            counterpart = index.counterpart_in_processor(row)
            if counterpart is None:
                continue
            ledger_tier = plan_tier(record.get(LedgerField.DESCRIPTION.value))
            processor_tier = plan_tier(counterpart.get(ProcessorField.DESCRIPTION.value))
            if not ledger_tier or not processor_tier or ledger_tier == processor_tier:
                continue

            customer = record[LedgerField.CUSTOMER_ID.value]
            findings.append(self.build_finding(
                context,
                evidence_key=f"ledger:{row}",
                customer_id=customer,
                base_amount=0,
                certainty=Confidence.MEDIUM,
                description=(
                    f"Customer {customer} is on '{ledger_tier}' in the ledger but billed as "
                    f"'{processor_tier}' by the processor."
                ),
                root_cause="Plan changes were not propagated between billing and the processor.",
                recommendation="Align the customer's plan in both systems and re-price the next invoice.",
                metadata={
                    **_ledger_evidence(record),
                    **_processor_evidence(counterpart),
                    "ledger_plan": ledger_tier,
                    "processor_plan": processor_tier,
                },
            ))
        return findings


class FailedPaymentRule(Rule):
    """Processor charges that failed or never completed."""

    rule_id = "FAILED_PAYMENT"
    rule_name = "Failed or incomplete payment"
    category = AnomalyCategory.FAILED_PAYMENT
    applies_to = ["processor"]

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        index = context.index
        findings = []
        for record in context.processor_records():
            status = record.get(ProcessorField.STATUS.value) or ""
            amount = int(record[ProcessorField.AMOUNT.value])
            if amount <= 0 or not status_has(status, FAILED_STATUS_MARKERS):
                continue

            row = int(record[ROW])
            customer_key = record[CUSTOMER_KEY]
            customer = record[ProcessorField.CUSTOMER_ID.value]
            findings.append(self.build_finding(
                context,
                evidence_key=f"processor:{row}",
                customer_id=customer,
                base_amount=amount,
                certainty=Confidence.HIGH,
                description=(
                    f"Payment of {_money(context, amount, record)} from customer {customer or 'unknown'} "
                    f"ended with status '{status}'."
                ),
                root_cause="The processor could not complete the payment.",
                recommendation="Retry the payment or contact the customer to update their payment method.",
                metadata=_processor_evidence(record),
                complete=bool(customer_key),
                customer_active=index.customer_has_ledger_activity(customer_key) if customer_key else None,
            ))
        return findings


class DisputedChargeRule(Rule):
    """Ledger shows a dispute the processor does not."""

    rule_id = "DISPUTED_CHARGE"
    rule_name = "Dispute status inconsistency"
    category = AnomalyCategory.DISPUTED_CHARGE

    def _find_counterpart(self, context: DetectionContext, record: Dict[str, Any]):
        exact = context.index.counterpart_in_processor(int(record[ROW]))
        if exact is not None:
            return exact, True
        amount = int(record[LedgerField.AMOUNT.value])
        tolerance = context.config.gross_diff_threshold_cents
        for charge in context.index.processor_charges_for_customer(record[CUSTOMER_KEY]):
            if abs(int(charge[ProcessorField.AMOUNT.value]) - amount) <= tolerance:
                return charge, False
        return None, False

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        index = context.index
        chargeback_fee = int(round(context.config.chargeback_fee_amount * 100))
        findings = []
        for record in context.ledger_records():
            row = int(record[ROW])
            status = record.get(LedgerField.STATUS.value) or ""
            if not index.is_ledger_payment(row):
                continue
            if not (record.get(LedgerField.DISPUTED.value) or status_has(status, DISPUTED_STATUS_MARKERS)):
                continue

            counterpart, exact = self._find_counterpart(context, record)
            if counterpart is None:
                continue
            processor_status = counterpart.get(ProcessorField.STATUS.value) or ""
            if counterpart.get(ProcessorField.DISPUTED.value) or status_has(processor_status, DISPUTED_STATUS_MARKERS):
                continue

            amount = int(record[LedgerField.AMOUNT.value])
            customer = record[LedgerField.CUSTOMER_ID.value]
            findings.append(self.build_finding(
                context,
                evidence_key=f"ledger:{row}",
                customer_id=customer,
                base_amount=amount + chargeback_fee,
                certainty=Confidence.HIGH if exact else Confidence.MEDIUM,
                description=(
                    f"Ledger marks the {_money(context, amount, record)} charge for customer {customer} as disputed, "
                    f"but the processor shows it as '{processor_status or 'settled'}'."
                ),
                root_cause="Dispute status is out of sync between the ledger and the processor.",
                recommendation="Check the dispute in the processor dashboard and submit evidence before the deadline.",
                metadata={
                    **_ledger_evidence(record),
                    **_processor_evidence(counterpart),
                    "exact_match": exact,
                    "chargeback_fee": chargeback_fee,
                },
            ))
        return findings


class FeeDiscrepancyRule(Rule):
    """Processing fee recorded in the ledger differs from the fee actually taken."""

    rule_id = "FEE_DISCREPANCY"
    rule_name = "Processing fee discrepancy"
    category = AnomalyCategory.FEE_DISCREPANCY

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        index = context.index
        threshold = context.config.fee_discrepancy_threshold_cents
        findings = []
        for record in context.ledger_records():
            row = int(record[ROW])
            ledger_fee = record.get(LedgerField.FEE_AMOUNT.value)
            if ledger_fee is None or not index.is_ledger_payment(row):
                continue
            counterpart = index.counterpart_in_processor(row)
            if counterpart is None or counterpart.get(ProcessorField.FEE.value) is None:
                continue

            processor_fee = int(counterpart[ProcessorField.FEE.value])
            delta = abs(int(ledger_fee) - processor_fee)
            if delta <= threshold:
                continue

            customer = record[LedgerField.CUSTOMER_ID.value]
            findings.append(self.build_finding(
                context,
                evidence_key=f"ledger:{row}",
                customer_id=customer,
                base_amount=delta,
                certainty=Confidence.MEDIUM,
                description=(
                    f"Fee on customer {customer}'s charge is {_money(context, int(ledger_fee), record)} in the ledger "
                    f"but {_money(context, processor_fee, record)} at the processor."
                ),
                root_cause="Fee schedule in the ledger does not match the processor's pricing.",
                recommendation="Update the fee schedule or raise the difference with the processor.",
                metadata={
                    **_ledger_evidence(record),
                    **_processor_evidence(counterpart),
                    "ledger_fee": int(ledger_fee),
                    "processor_fee": processor_fee,
                    "fee_delta": delta,
                },
            ))
        return findings


def _is_ledger_refund(record: Dict[str, Any]) -> bool:
    amount = int(record[LedgerField.AMOUNT.value])
    status = record.get(LedgerField.STATUS.value) or ""
    return amount != 0 and (amount < 0 or status_has(status, REFUND_STATUS_MARKERS))


def _refund_linked(refund: Dict[str, Any], other: Dict[str, Any], amount_ok: bool) -> bool:
    """Invoice (or payment intent) match when both sides carry one, else customer and amount, else amount."""
    invoice = refund.get(LedgerField.INVOICE_ID.value)
    references = {other.get(ProcessorField.INVOICE.value), other.get(ProcessorField.PAYMENT_INTENT.value)} - {None, ""}
    if invoice and references:
        return invoice in references
    if refund[CUSTOMER_KEY] and other[CUSTOMER_KEY]:
        return refund[CUSTOMER_KEY] == other[CUSTOMER_KEY] and amount_ok
    return amount_ok


class RefundReconciliationRule(Rule):
    """
    Ledger refunds checked against the processor.

    A processor can record a refund as its own refund object, as the
    amount_refunded of the original charge, or both. A ledger refund with
    neither is missing at the processor. One with only a refund object left
    the charge's amount_refunded stale.
    """

    rule_id = "REFUND_RECONCILIATION"
    rule_name = "Refund not reconciled"
    category = AnomalyCategory.OTHER

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        refunds = [r for r in context.ledger_records() if _is_ledger_refund(r)]
        if not refunds:
            return []

        refund_objects, charges = [], []
        for record in context.index.processor_records:
            kind = record.get(ProcessorField.OBJECT.value) or ""
            (refund_objects if status_has(kind, REFUND_STATUS_MARKERS) else charges).append(record)

        findings = []
        for record in refunds:
            row = int(record[ROW])
            amount = abs(int(record[LedgerField.AMOUNT.value]))
            has_refund_object = any(
                _refund_linked(record, r, abs(int(r[ProcessorField.AMOUNT.value])) == amount)
                for r in refund_objects
            )
            charge_updated = any(
                int(c[ProcessorField.AMOUNT_REFUNDED.value]) >= amount
                and _refund_linked(record, c, True)
                for c in charges
            )
            if charge_updated:
                continue

            customer = record[LedgerField.CUSTOMER_ID.value]
            metadata = {
                **_ledger_evidence(record),
                "refund_amount": amount,
                "invoice_id": record.get(LedgerField.INVOICE_ID.value) or None,
                "processor_refund_object": has_refund_object,
            }
            if has_refund_object:
                findings.append(self.build_finding(
                    context,
                    evidence_key=f"refund:ledger:{row}",
                    customer_id=customer,
                    base_amount=0,
                    certainty=Confidence.MEDIUM,
                    description=(
                        f"Refund of {_money(context, amount, record)} for customer {customer or 'unknown'} has a "
                        f"processor refund record, but the original charge does not show it as refunded."
                    ),
                    root_cause="The processor recorded the refund separately without updating the charge.",
                    recommendation="Reconcile refund records to their charges so refunded amounts are counted once.",
                    metadata=metadata,
                    complete=bool(record[CUSTOMER_KEY]),
                ))
            else:
                findings.append(self.build_finding(
                    context,
                    evidence_key=f"refund:ledger:{row}",
                    customer_id=customer,
                    base_amount=amount,
                    certainty=Confidence.HIGH,
                    description=(
                        f"Refund of {_money(context, amount, record)} for customer {customer or 'unknown'} "
                        f"has no matching refund at the processor."
                    ),
                    root_cause="Refund recorded internally but never issued through the payment processor.",
                    recommendation="Confirm whether the refund was issued and correct the ledger or the processor.",
                    metadata=metadata,
                    complete=bool(record[CUSTOMER_KEY]),
                ))
        return findings


class TimingMismatchRule(Rule):
    """Paired transactions recorded on noticeably different dates."""

    rule_id = "TIMING_MISMATCH"
    rule_name = "Recording date mismatch"
    category = AnomalyCategory.OTHER

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        index = context.index
        window = context.config.timing_mismatch_days
        findings = []
        for record in context.ledger_records():
            row = int(record[ROW])
            if not index.is_ledger_payment(row):
                continue
            counterpart = index.counterpart_in_processor(row)
            ledger_ts = _timestamp(record)
            processor_ts = _timestamp(counterpart) if counterpart is not None else None
            if ledger_ts is None or processor_ts is None:
                continue

            gap_days = abs((ledger_ts - processor_ts).total_seconds()) / 86400
            if gap_days <= window:
                continue

            customer = record[LedgerField.CUSTOMER_ID.value]
            findings.append(self.build_finding(
                context,
                evidence_key=f"timing:ledger:{row}",
                customer_id=customer,
                base_amount=0,
                certainty=Confidence.MEDIUM if gap_days > TIMING_MISMATCH_ESCALATION_DAYS else Confidence.LOW,
                description=(
                    f"Charge for customer {customer} is dated {ledger_ts:%Y-%m-%d} in the ledger and "
                    f"{processor_ts:%Y-%m-%d} at the processor ({gap_days:.1f} days apart)."
                ),
                root_cause="Transactions are posted on different dates in the two systems.",
                recommendation="Check period-end cut-off rules so revenue lands in the right month.",
                metadata={**_ledger_evidence(record), **_processor_evidence(counterpart), "gap_days": round(gap_days, 2)},
            ))
        return findings


class UnreconciledPayoutRule(Rule):
    """Settled charges that never showed up in a payout."""

    rule_id = "UNRECONCILED_PAYOUT"
    rule_name = "Charge missing from payouts"
    category = AnomalyCategory.OTHER
    applies_to = ["processor"]

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        index = context.index
        processor = context.processor
        latest = index.latest_processor_timestamp
        if latest is None or processor.empty or not (processor[ProcessorField.PAYOUT_ID.value] != "").any():
            return []

        cutoff = latest - pd.Timedelta(days=context.config.payout_grace_days)
        risk_pct = context.config.unreconciled_risk_pct
        findings = []
        for record in context.processor_records():
            row = int(record[ROW])
            ts = _timestamp(record)
            if not index.is_processor_charge(row) or record.get(ProcessorField.PAYOUT_ID.value):
                continue
            if ts is None or ts >= cutoff:
                continue

            amount = int(record[ProcessorField.AMOUNT.value])
            customer = record[ProcessorField.CUSTOMER_ID.value]
            findings.append(self.build_finding(
                context,
                evidence_key=f"payout:processor:{row}",
                customer_id=customer,
                base_amount=amount * risk_pct,
                certainty=Confidence.MEDIUM,
                description=(
                    f"Charge of {_money(context, amount, record)} from {ts:%Y-%m-%d} is not part of any payout "
                    f"after {context.config.payout_grace_days:g} day(s)."
                ),
                root_cause="Funds captured by the processor have not been paid out.",
                recommendation="Check the processor balance for held or reversed funds.",
                metadata={**_processor_evidence(record), "risk_pct": risk_pct},
            ))
        return findings


class PayoutGroupingRule(Rule):
    """Payouts that bundle many charges, listed for reconciliation."""

    rule_id = "PAYOUT_GROUPING"
    rule_name = "Multi-charge payout"
    category = AnomalyCategory.OTHER
    applies_to = ["processor"]

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        charges = context.index.processor_charges
        payout_col = ProcessorField.PAYOUT_ID.value
        if charges.empty:
            return []
        grouped = charges[charges[payout_col] != ""].groupby(payout_col, sort=False)

        findings = []
        for payout_id, group in grouped:
            rows = sorted(int(r) for r in group[ROW])
            if len(rows) < context.config.payout_group_min_transactions or not context.owns_processor_row(rows[0]):
                continue

            total = int(group[ProcessorField.AMOUNT.value].sum())
            record = context.index.processor_record(rows[0])
            findings.append(self.build_finding(
                context,
                evidence_key=f"payout_group:{payout_id}",
                customer_id=None,
                base_amount=0,
                certainty=Confidence.LOW,
                description=(
                    f"Payout {payout_id} settles {len(rows)} charges totaling {_money(context, total, record)}."
                ),
                root_cause="Several charges settle in one bank deposit.",
                recommendation="Match the deposit against the listed charges when closing the books.",
                metadata={"payout_id": payout_id, "processor_rows": rows, "payout_total": total},
            ))
        return findings


def build_default_registry() -> RuleRegistry:
    registry = RuleRegistry()
    for rule in (
        MissingInProcessorRule(),
        MissingInLedgerRule(),
        AmountMismatchRule(),
        DuplicateChargeRule(),
        ZombieSubscriptionRule(),
        UnbilledUsageRule(),
        PricingMismatchRule(),
        FailedPaymentRule(),
        DisputedChargeRule(),
        FeeDiscrepancyRule(),
        RefundReconciliationRule(),
        TimingMismatchRule(),
        UnreconciledPayoutRule(),
        PayoutGroupingRule(),
    ):
        registry.register(rule)
    return registry


# Global registry with every built-in detector
default_registry = build_default_registry()
