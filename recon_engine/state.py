"""
Audit run state and its status machine.
"""
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime
from typing import Any, Dict, Optional

from .canonical_fields import AuditStatus


class AuditNotFoundError(ValueError):
    """No stored audit with the requested id."""


class InvalidTransitionError(ValueError):
    """Requested status change is not allowed from the audit's current status."""


# Allowed audit status transitions; published is terminal
AUDIT_TRANSITIONS = {
    AuditStatus.PENDING.value: {AuditStatus.PROCESSING.value, AuditStatus.ERROR.value},
    AuditStatus.PROCESSING.value: {AuditStatus.REVIEW.value, AuditStatus.ERROR.value},
    AuditStatus.REVIEW.value: {AuditStatus.PUBLISHED.value, AuditStatus.PROCESSING.value},
    AuditStatus.ERROR.value: {AuditStatus.PROCESSING.value},
    AuditStatus.PUBLISHED.value: set(),
}

_DATETIME_FIELDS = ("created_at", "processed_at", "last_progress_at", "published_at")


def check_transition(current: str, target: str):
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if target not in AUDIT_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot move audit from '{current}' to '{target}'")


@dataclass
class AuditRunState:
    """Progress and totals of one audit, persisted as audit.json."""
    audit_id: str
    organization_id: Optional[str] = None
    status: str = AuditStatus.PENDING.value
    chunks_completed: int = 0
    chunks_total: int = 0
    total_anomalies: int = 0
    annual_revenue_at_risk: int = 0
    truncated_findings: int = 0
    error_message: Optional[str] = None
    summary: Optional[str] = None
    is_chunked: bool = False
    ledger_path: Optional[str] = None
    processor_path: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    last_progress_at: Optional[datetime] = None
    published_at: Optional[datetime] = None

    @property
    def progress(self) -> int:
        """Percentage of chunks completed; a finished direct pass counts as 100."""
        if self.status in (AuditStatus.REVIEW.value, AuditStatus.PUBLISHED.value):
            return 100
        if self.chunks_total <= 0:
            return 0
        return min(100, int(self.chunks_completed * 100 / self.chunks_total))

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        for key in _DATETIME_FIELDS:
            d[key] = d[key].isoformat() if d[key] is not None else None
        d["progress"] = self.progress
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditRunState":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for key in _DATETIME_FIELDS:
            if values.get(key):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)
