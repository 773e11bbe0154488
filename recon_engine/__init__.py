"""
Reconciliation Engine - ledger vs. processor anomaly detection.
"""
from .io import InputError, DataSourceLoader, CsvSourceLoader, ExcelSourceLoader, load_audit_inputs
from .mappings import ColumnMapping, build_column_mapping, map_ledger_columns, map_processor_columns
from .normalize import normalize_ledger, normalize_processor, parse_amount
from .index import MatchIndex
from .rules import DetectionContext, Rule, RuleRegistry
from .detectors import default_registry, build_default_registry
from .findings import Finding, findings_to_frame
from .scoring import compute_impact, derive_confidence, format_currency
from .metrics import calculate_kpis, build_summary
from .pipeline import PipelineResult, run_pipeline
from .work_queue import ChunkTask, ChunkQueue, InMemoryChunkQueue, StorageChunkQueue
from .state import AuditRunState, AuditNotFoundError, InvalidTransitionError
from .triggers import ChunkTrigger, QueueTrigger, HttpTrigger
from .scheduler import ChunkScheduler, plan_chunks
from .canonical_fields import LedgerField, ProcessorField, AnomalyCategory, Confidence

__all__ = [
    "InputError",
    "DataSourceLoader",
    "CsvSourceLoader",
    "ExcelSourceLoader",
    "load_audit_inputs",
    "ColumnMapping",
    "build_column_mapping",
    "map_ledger_columns",
    "map_processor_columns",
    "normalize_ledger",
    "normalize_processor",
    "parse_amount",
    "MatchIndex",
    "DetectionContext",
    "Rule",
    "RuleRegistry",
    "default_registry",
    "build_default_registry",
    "Finding",
    "findings_to_frame",
    "compute_impact",
    "derive_confidence",
    "format_currency",
    "calculate_kpis",
    "build_summary",
    "PipelineResult",
    "run_pipeline",
    "ChunkTask",
    "ChunkQueue",
    "InMemoryChunkQueue",
    "StorageChunkQueue",
    "AuditRunState",
    "AuditNotFoundError",
    "InvalidTransitionError",
    "ChunkTrigger",
    "QueueTrigger",
    "HttpTrigger",
    "ChunkScheduler",
    "plan_chunks",
    "LedgerField",
    "ProcessorField",
    "AnomalyCategory",
    "Confidence",
]
