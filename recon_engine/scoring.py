"""
Impact and confidence scoring for findings.

Impacts are integer minor currency units, like the amounts they derive from.
"""
from dataclasses import dataclass
from typing import Optional, Union

from .canonical_fields import AnomalyCategory, Confidence, RECURRING_CATEGORIES

CONFIDENCE_ORDER = [Confidence.LOW, Confidence.MEDIUM, Confidence.HIGH]

# Weighted confidence score components (sum to 1.0)
COMPLETENESS_WEIGHT = 0.30
CUSTOMER_STATUS_WEIGHT = 0.30
ROOT_CAUSE_WEIGHT = 0.25
RECENCY_WEIGHT = 0.15

CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "JPY": "¥", "CAD": "CA$", "AUD": "A$"}


@dataclass(frozen=True)
class Impact:
    """Revenue at risk for one finding."""
    monthly: int
    annual: int


def is_recurring(category: Union[AnomalyCategory, str], recurring: Optional[bool] = None) -> bool:
    """Recurring findings are annualized. An explicit flag overrides the category default."""
    if recurring is not None:
        return recurring
    return AnomalyCategory(category) in RECURRING_CATEGORIES


def compute_impact(category, base_amount, config, recurring: Optional[bool] = None) -> Impact:
    """
    Compute monthly and annual impact from a per-event base amount.

    Args:
        category: Finding category
        base_amount: Per-event amount in minor units; negatives clamp to 0
        config: ReconciliationConfig providing annualization_months
        recurring: Force (True) or suppress (False) annualization

    Returns:
        Impact with annual == monthly for one-off categories
    """
    monthly = max(0, int(round(base_amount or 0)))
    if is_recurring(category, recurring):
        return Impact(monthly=monthly, annual=monthly * int(config.annualization_months))
    return Impact(monthly=monthly, annual=monthly)


def _shift(tier: Confidence, steps: int) -> Confidence:
    position = CONFIDENCE_ORDER.index(tier) + steps
    return CONFIDENCE_ORDER[max(0, min(position, len(CONFIDENCE_ORDER) - 1))]


def derive_confidence(
    certainty: Union[Confidence, str],
    complete: bool = True,
    customer_active: Optional[bool] = None,
) -> Confidence:
    """
    Combine rule certainty with data quality signals.

    Missing supporting fields cost one tier, an inactive counterpart
    customer costs another. Unknown activity (None) changes nothing.
    """
    tier = Confidence(certainty)
    if not complete:
        tier = _shift(tier, -1)
    if customer_active is False:
        tier = _shift(tier, -1)
    return tier


def score_confidence_points(
    data_complete: bool,
    customer_active: bool,
    root_cause_identified: bool,
    days_since_detection: float = 0,
) -> float:
    """Weighted 0-100 confidence score reported alongside the tier."""
    completeness = 100 if data_complete else 60
    customer_status = 100 if customer_active else 40
    root_cause = 90 if root_cause_identified else 50
    recency = max(0.0, 100 - days_since_detection * 2)
    score = (
        completeness * COMPLETENESS_WEIGHT
        + customer_status * CUSTOMER_STATUS_WEIGHT
        + root_cause * ROOT_CAUSE_WEIGHT
        + recency * RECENCY_WEIGHT
    )
    return round(score, 1)


def format_currency(minor_units: int, currency_code: Optional[str] = None) -> str:
    """Format minor units for display, e.g. 123456 -> '$1,234.56'."""
    code = (currency_code or "USD").upper()
    symbol = CURRENCY_SYMBOLS.get(code)
    amount = (minor_units or 0) / 100
    sign = "-" if amount < 0 else ""
    if symbol:
        return f"{sign}{symbol}{abs(amount):,.2f}"
    return f"{sign}{abs(amount):,.2f} {code}"
