"""
Single detection pipeline shared by the direct full pass and chunked runs.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
import logging

import pandas as pd

from config import ReconciliationConfig
from .detectors import default_registry
from .findings import Finding
from .index import MatchIndex
from .rules import DetectionContext, RuleRegistry

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Findings of one pipeline run."""
    findings: List[Finding] = field(default_factory=list)
    truncated: int = 0
    by_rule: Dict[str, int] = field(default_factory=dict)
    truncated_by_rule: Dict[str, int] = field(default_factory=dict)

    @property
    def annual_revenue_at_risk(self) -> int:
        return sum(f.annual_impact for f in self.findings)


def _clip(row_range: Optional[Tuple[int, int]], total: int) -> Tuple[int, int]:
    if row_range is None:
        return 0, total
    start, end = row_range
    start = max(0, min(start, total))
    return start, max(start, min(end, total))


def run_pipeline(
    ledger: pd.DataFrame,
    processor: pd.DataFrame,
    config: ReconciliationConfig,
    audit_id: str,
    ledger_range: Optional[Tuple[int, int]] = None,
    processor_range: Optional[Tuple[int, int]] = None,
    chunk_index: int = 0,
    registry: Optional[RuleRegistry] = None,
    max_findings_per_detector: Optional[int] = None,
    index: Optional[MatchIndex] = None,
    detected_at: Optional[str] = None,
) -> PipelineResult:
    """
    Run every detector over the given row ranges.

    Args:
        ledger: Normalized ledger records (full dataset)
        processor: Normalized processor records (full dataset)
        config: Resolved ReconciliationConfig
        audit_id: Owning audit
        ledger_range: [start, end) ledger rows to report on; None means all
        processor_range: [start, end) processor rows to report on; None means all
        chunk_index: Stamped on each finding
        registry: Rules to run; defaults to every built-in detector
        max_findings_per_detector: Emission cap per rule; None disables it
        index: Prebuilt MatchIndex for the same datasets
        detected_at: ISO timestamp stamped on each finding

    Returns:
        PipelineResult with findings de-duplicated by finding_id
    """
    registry = registry or default_registry
    index = index or MatchIndex(ledger, processor)
    context = DetectionContext(
        audit_id=audit_id,
        config=config,
        index=index,
        ledger_range=_clip(ledger_range, len(ledger)),
        processor_range=_clip(processor_range, len(processor)),
        chunk_index=chunk_index,
        detected_at=detected_at or datetime.now(timezone.utc).isoformat(),
    )

    result = PipelineResult()
    seen = set()
    for rule_result in registry.evaluate_all(context, limit=max_findings_per_detector):
        kept = [f for f in rule_result.findings if f.finding_id not in seen]
        seen.update(f.finding_id for f in kept)
        result.findings.extend(kept)
        result.by_rule[rule_result.rule_id] = len(kept)
        if rule_result.truncated:
            result.truncated += rule_result.truncated
            result.truncated_by_rule[rule_result.rule_id] = rule_result.truncated

    logger.info(
        f"[PIPELINE] audit={audit_id} chunk={chunk_index} ledger={context.ledger_range} "
        f"processor={context.processor_range}: {len(result.findings)} finding(s), "
        f"{result.truncated} truncated"
    )
    return result
