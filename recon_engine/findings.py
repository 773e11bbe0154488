"""
Findings generation and management.
"""
from dataclasses import dataclass, asdict, field, replace
from typing import Any, Dict, Iterable, List, Optional
import uuid

import pandas as pd

from .canonical_fields import FindingStatus

# Stable namespace so the same evidence always yields the same finding id
FINDING_NAMESPACE = uuid.UUID("5f1d7a4e-2b7c-4c61-9a43-0d6f0c8a9e11")

FINDING_COLUMNS = [
    "finding_id",
    "audit_id",
    "category",
    "customer_id",
    "status",
    "confidence",
    "monthly_impact",
    "annual_impact",
    "description",
    "root_cause",
    "recommendation",
    "metadata",
    "detected_at",
    "rule_id",
    "chunk_index",
]


def make_finding_id(audit_id: str, category: str, evidence_key: str) -> str:
    """Deterministic id so a reprocessed chunk reproduces the same findings."""
    return str(uuid.uuid5(FINDING_NAMESPACE, f"{audit_id}|{category}|{evidence_key}"))


@dataclass(frozen=True)
class Finding:
    """Structured finding record."""
    finding_id: str
    audit_id: str
    category: str
    customer_id: Optional[str]
    confidence: str
    monthly_impact: int
    annual_impact: int
    description: str
    root_cause: str
    recommendation: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: str = FindingStatus.DETECTED.value
    detected_at: str = ""
    rule_id: str = ""
    chunk_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        known = {k: data[k] for k in FINDING_COLUMNS if k in data}
        return cls(**known)

    def with_status(self, status) -> "Finding":
        """Return a copy with a reviewer-driven status change."""
        return replace(self, status=FindingStatus(status).value)


def findings_to_frame(findings: Iterable) -> pd.DataFrame:
    """
    Convert findings to a DataFrame with a fixed column set.

    Args:
        findings: Finding objects or finding dicts

    Returns:
        DataFrame with FINDING_COLUMNS, empty if there are no findings
    """
    rows: List[Dict[str, Any]] = [
        f.to_dict() if isinstance(f, Finding) else dict(f) for f in findings
    ]
    if not rows:
        return pd.DataFrame(columns=FINDING_COLUMNS)
    return pd.DataFrame(rows, columns=FINDING_COLUMNS)
