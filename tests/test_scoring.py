import pandas as pd
import pytest

from config import ReconciliationConfig
from recon_engine.canonical_fields import AnomalyCategory, Confidence
from recon_engine.findings import Finding, findings_to_frame, make_finding_id
from recon_engine.metrics import build_summary, calculate_kpis
from recon_engine.scoring import (
    compute_impact,
    derive_confidence,
    format_currency,
    score_confidence_points,
)


def test_one_off_impact_is_not_annualized() -> None:
    impact = compute_impact(AnomalyCategory.MISSING_IN_PROCESSOR, 500, ReconciliationConfig())
    assert impact.monthly == 500
    assert impact.annual == 500


def test_recurring_impact_is_annualized() -> None:
    config = ReconciliationConfig(annualization_months=6)
    impact = compute_impact(AnomalyCategory.ZOMBIE_SUBSCRIPTION, 1000, config)
    assert impact.annual == 6000
    assert compute_impact(AnomalyCategory.ZOMBIE_SUBSCRIPTION, 1000, config, recurring=False).annual == 1000


def test_negative_impact_clamps_to_zero() -> None:
    impact = compute_impact("amount_mismatch", -250, ReconciliationConfig())
    assert impact.monthly == 0
    assert impact.annual == 0


def test_confidence_downgrades() -> None:
    assert derive_confidence(Confidence.HIGH) == Confidence.HIGH
    assert derive_confidence(Confidence.HIGH, complete=False) == Confidence.MEDIUM
    assert derive_confidence(Confidence.HIGH, complete=False, customer_active=False) == Confidence.LOW
    assert derive_confidence(Confidence.LOW, customer_active=False) == Confidence.LOW
    assert derive_confidence("medium", customer_active=None) == Confidence.MEDIUM


def test_confidence_points() -> None:
    full = score_confidence_points(data_complete=True, customer_active=True, root_cause_identified=True)
    assert full == 97.5
    assert score_confidence_points(data_complete=False, customer_active=False, root_cause_identified=False) == 57.5


def test_format_currency() -> None:
    assert format_currency(123456) == "$1,234.56"
    assert format_currency(500, "eur") == "€5.00"
    assert format_currency(-250, "USD") == "-$2.50"
    assert format_currency(100000, "CHF") == "1,000.00 CHF"


def test_finding_ids_are_stable() -> None:
    first = make_finding_id("audit_1", "missing_in_processor", "ledger:3")
    assert first == make_finding_id("audit_1", "missing_in_processor", "ledger:3")
    assert first != make_finding_id("audit_2", "missing_in_processor", "ledger:3")


def _finding(category: str, confidence: str, monthly: int, annual: int) -> Finding:
    return Finding(
        finding_id=make_finding_id("a", category, str(monthly)),
        audit_id="a",
        category=category,
        customer_id="c1",
        confidence=confidence,
        monthly_impact=monthly,
        annual_impact=annual,
        description="d",
        root_cause="r",
        recommendation="x",
    )


def test_calculate_kpis() -> None:
    frame = findings_to_frame([
        _finding("missing_in_processor", "high", 500, 500),
        _finding("zombie_subscription", "medium", 100, 1200),
        _finding("zombie_subscription", "high", 200, 2400),
    ])
    kpis = calculate_kpis(frame)

    assert kpis["total_anomalies"] == 3
    assert kpis["annual_revenue_at_risk"] == 4100
    assert kpis["high_confidence_count"] == 2
    assert kpis["by_category"]["zombie_subscription"] == {"count": 2, "annual_impact": 3600}


def test_calculate_kpis_empty() -> None:
    kpis = calculate_kpis(findings_to_frame([]))
    assert kpis["total_anomalies"] == 0
    assert kpis["by_category"] == {}


def test_findings_frame_has_fixed_columns() -> None:
    frame = findings_to_frame([])
    assert isinstance(frame, pd.DataFrame)
    assert "finding_id" in frame.columns
    assert "annual_impact" in frame.columns


def test_build_summary() -> None:
    assert build_summary(3, 150000) == "Analysis complete. Found 3 anomalies totaling $1,500.00 at risk."
    assert "2 lower-impact finding(s)" in build_summary(30, 500, truncated=2)


def test_finding_status_change_returns_copy() -> None:
    finding = _finding("missing_in_processor", "high", 500, 500)
    resolved = finding.with_status("resolved")

    assert resolved.status == "resolved"
    assert finding.status == "detected"
    assert Finding.from_dict(resolved.to_dict()) == resolved
    with pytest.raises(ValueError):
        finding.with_status("archived")
