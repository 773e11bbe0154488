"""
KPI and summary calculation over findings.
"""
import pandas as pd
from typing import Dict, Any, Optional

from .canonical_fields import Confidence
from .scoring import format_currency


def calculate_kpis(findings: pd.DataFrame, category: Optional[str] = None) -> Dict[str, Any]:
    """
    Calculate KPIs from findings.

    Args:
        findings: Findings frame (see findings_to_frame)
        category: Optional category filter

    Returns:
        Dictionary with KPI values; impacts in minor currency units
    """
    if category is not None:
        findings = findings[findings["category"] == category]

    if len(findings) == 0:
        return {
            "total_anomalies": 0,
            "annual_revenue_at_risk": 0,
            "monthly_revenue_at_risk": 0,
            "high_confidence_count": 0,
            "medium_confidence_count": 0,
            "low_confidence_count": 0,
            "by_category": {},
        }

    by_category = {}
    for name, group in findings.groupby("category", sort=True):
        by_category[name] = {
            "count": int(len(group)),
            "annual_impact": int(group["annual_impact"].sum()),
        }

    confidence_counts = findings["confidence"].value_counts()

    return {
        "total_anomalies": int(len(findings)),
        "annual_revenue_at_risk": int(findings["annual_impact"].sum()),
        "monthly_revenue_at_risk": int(findings["monthly_impact"].sum()),
        "high_confidence_count": int(confidence_counts.get(Confidence.HIGH.value, 0)),
        "medium_confidence_count": int(confidence_counts.get(Confidence.MEDIUM.value, 0)),
        "low_confidence_count": int(confidence_counts.get(Confidence.LOW.value, 0)),
        "by_category": by_category,
    }


def build_summary(total_anomalies: int, annual_revenue_at_risk: int,
                  currency_code: Optional[str] = None, truncated: int = 0) -> str:
    """Human-readable one-liner shown when an audit reaches review."""
    summary = (
        f"Analysis complete. Found {total_anomalies} anomalies totaling "
        f"{format_currency(annual_revenue_at_risk, currency_code)} at risk."
    )
    if truncated:
        summary += f" {truncated} lower-impact finding(s) were not stored after reaching per-detector limits."
    return summary