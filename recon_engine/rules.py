"""
Rule framework for anomaly detection.
Extensible plugin-style architecture for detectors.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple
import logging

import pandas as pd

from config import ReconciliationConfig
from .canonical_fields import AnomalyCategory, Confidence
from .findings import Finding, make_finding_id
from .index import MatchIndex
from .scoring import compute_impact, derive_confidence, score_confidence_points

logger = logging.getLogger(__name__)

RowRange = Tuple[int, int]


@dataclass
class DetectionContext:
    """
    Everything a rule needs for one pipeline run.

    The index covers the full datasets; the row ranges say which rows this
    run reports on. A full pass uses ranges that cover every row.
    """
    audit_id: str
    config: ReconciliationConfig
    index: MatchIndex
    ledger_range: RowRange
    processor_range: RowRange
    chunk_index: int = 0
    detected_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def ledger(self) -> pd.DataFrame:
        return self.index.ledger

    @property
    def processor(self) -> pd.DataFrame:
        return self.index.processor

    def owns_ledger_row(self, row: Optional[int]) -> bool:
        return row is not None and self.ledger_range[0] <= row < self.ledger_range[1]

    def owns_processor_row(self, row: Optional[int]) -> bool:
        return row is not None and self.processor_range[0] <= row < self.processor_range[1]

    def ledger_records(self) -> Iterator[Dict[str, Any]]:
        """Ledger records inside this run's range, in row order."""
        start, end = self.ledger_range
        return iter(self.index.ledger_records[start:end])

    def processor_records(self) -> Iterator[Dict[str, Any]]:
        """Processor records inside this run's range, in row order."""
        start, end = self.processor_range
        return iter(self.index.processor_records[start:end])


class Rule(ABC):
    """
    Abstract base class for detectors.

    Each rule has a unique ID, a name and one finding category. Rules are
    deterministic: the same context always yields the same findings.
    """

    @property
    @abstractmethod
    def rule_id(self) -> str:
        """Unique identifier for this rule."""
        pass

    @property
    @abstractmethod
    def rule_name(self) -> str:
        """Human-readable name for this rule."""
        pass

    @property
    @abstractmethod
    def category(self) -> AnomalyCategory:
        """Category of the findings this rule emits."""
        pass

    @property
    def applies_to(self) -> List[str]:
        """Datasets this rule reads."""
        return ["ledger", "processor"]

    @abstractmethod
    def evaluate(self, context: DetectionContext) -> List[Finding]:
        """Evaluate rule against context and return findings in detection order."""
        pass

    def build_finding(
        self,
        context: DetectionContext,
        evidence_key: str,
        customer_id: Optional[str],
        base_amount: float,
        certainty: Confidence,
        description: str,
        root_cause: str,
        recommendation: str,
        metadata: Optional[Dict[str, Any]] = None,
        complete: bool = True,
        customer_active: Optional[bool] = None,
        recurring: Optional[bool] = None,
    ) -> Finding:
        """Score and assemble one finding for this rule's category."""
        impact = compute_impact(self.category, base_amount, context.config, recurring=recurring)
        confidence = derive_confidence(certainty, complete=complete, customer_active=customer_active)
        details = dict(metadata or {})
        details["confidence_score"] = score_confidence_points(
            data_complete=complete,
            customer_active=customer_active is not False,
            root_cause_identified=bool(root_cause),
        )
        if recurring is not None:
            details["recurring"] = recurring

        return Finding(
            finding_id=make_finding_id(context.audit_id, self.category.value, evidence_key),
            audit_id=context.audit_id,
            category=self.category.value,
            customer_id=customer_id or None,
            confidence=confidence.value,
            monthly_impact=impact.monthly,
            annual_impact=impact.annual,
            description=description,
            root_cause=root_cause,
            recommendation=recommendation,
            metadata=details,
            detected_at=context.detected_at,
            rule_id=self.rule_id,
            chunk_index=context.chunk_index,
        )


@dataclass
class RuleResult:
    """Findings kept for one rule plus how many the emission cap dropped."""
    rule_id: str
    findings: List[Finding]
    truncated: int = 0


def apply_emission_cap(findings: List[Finding], limit: Optional[int]) -> Tuple[List[Finding], int]:
    """
    Keep the highest-impact findings, at most ``limit`` of them.

    Ties keep detection order. A limit of None or below 1 disables the cap.
    """
    if limit is None or limit < 1 or len(findings) <= limit:
        return list(findings), 0
    ranked = sorted(findings, key=lambda f: -f.annual_impact)
    return ranked[:limit], len(findings) - limit


class RuleRegistry:
    """
    Central registry for detectors.

    Adding a new detector:
    1. Create a Rule subclass
    2. Register it here
    3. No other code changes needed
    """

    def __init__(self):
        self._rules: List[Rule] = []

    def register(self, rule: Rule):
        """Register a rule."""
        if self.get_rule(rule.rule_id) is not None:
            raise ValueError(f"Rule '{rule.rule_id}' is already registered")
        self._rules.append(rule)

    def get_all_rules(self) -> List[Rule]:
        """Get all registered rules."""
        return self._rules.copy()

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        """Get rule by ID."""
        for rule in self._rules:
            if rule.rule_id == rule_id:
                return rule
        return None

    def evaluate_all(self, context: DetectionContext, limit: Optional[int] = None) -> List[RuleResult]:
        """Evaluate all registered rules sequentially, capping each rule's output."""
        results = []
        for rule in self._rules:
            findings = rule.evaluate(context)
            kept, truncated = apply_emission_cap(findings, limit)
            if truncated:
                logger.warning(
                    f"[DETECT] {rule.rule_id}: emission cap {limit} reached, "
                    f"{truncated} finding(s) not persisted for chunk {context.chunk_index}"
                )
            logger.debug(f"[DETECT] {rule.rule_id}: {len(kept)} finding(s)")
            results.append(RuleResult(rule_id=rule.rule_id, findings=kept, truncated=truncated))
        return results
