"""
Chunk scheduler: drives an audit from its two input files to review.

Small audits run as one direct pass. Larger ones are split into row-range
chunks that are claimed one at a time from the work queue, processed with
the same pipeline, and chained through a trigger. Polling recovers chunks
whose worker disappeared and finalizes the audit once every chunk is done.
"""
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import logging
import math
import threading

from config import EngineLimits, ReconciliationConfig, resolve_config
from .canonical_fields import AuditStatus, ChunkStatus
from .index import MatchIndex
from .io import InputError, LoadedDataset, load_audit_inputs
from .metrics import build_summary
from .pipeline import PipelineResult, run_pipeline
from .rules import RuleRegistry
from .state import AuditNotFoundError, AuditRunState, check_transition
from .triggers import ChunkTrigger, NullTrigger
from .work_queue import ChunkQueue, ChunkTask

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def plan_chunks(audit_id: str, ledger_rows: int, processor_rows: int, chunk_size: int,
                now: Optional[datetime] = None) -> List[ChunkTask]:
    """
    Split both datasets into aligned row ranges.

    Chunk i covers ledger rows and processor rows [i*chunk_size, (i+1)*chunk_size),
    clipped to each dataset's length, so the longer dataset sets the chunk count.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    now = now or _utcnow()
    total_chunks = max(1, math.ceil(max(ledger_rows, processor_rows) / chunk_size))

    tasks = []
    for i in range(total_chunks):
        start = i * chunk_size
        tasks.append(ChunkTask(
            audit_id=audit_id,
            chunk_index=i,
            total_chunks=total_chunks,
            ledger_start=min(start, ledger_rows),
            ledger_end=min(start + chunk_size, ledger_rows),
            processor_start=min(start, processor_rows),
            processor_end=min(start + chunk_size, processor_rows),
            created_at=now,
        ))
    return tasks


class _LoadedInputs:
    """Datasets and match index of one audit, kept between chunks."""

    def __init__(self, datasets: Dict[str, LoadedDataset]):
        self.ledger = datasets["ledger"].records
        self.processor = datasets["processor"].records
        self.index = MatchIndex(self.ledger, self.processor)


class ChunkScheduler:
    """
    Runs audits through the detection pipeline.

    Args:
        storage: StorageService holding audit state, inputs and findings
        queue: ChunkQueue of chunk tasks
        trigger: Fired when another chunk is ready; defaults to a no-op
        limits: EngineLimits (direct pass threshold, chunk size, caps, timeouts)
        clock: Returns the current time; injectable for tests
        registry: Detectors to run; defaults to every built-in detector
    """

    def __init__(self, storage, queue: ChunkQueue, trigger: Optional[ChunkTrigger] = None,
                 limits: Optional[EngineLimits] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 registry: Optional[RuleRegistry] = None):
        self.storage = storage
        self.queue = queue
        self.trigger = trigger or NullTrigger()
        self.limits = limits or EngineLimits()
        self.clock = clock or _utcnow
        self.registry = registry
        self._inputs: Dict[str, _LoadedInputs] = {}
        self._lock = threading.RLock()

    # ==================== State helpers ====================

    def load_state(self, audit_id: str) -> AuditRunState:
        return AuditRunState.from_dict(self.storage.load_audit_state(audit_id))

    def save_state(self, state: AuditRunState):
        self.storage.save_audit_state(state.to_dict())

    def _inputs_for(self, state: AuditRunState) -> _LoadedInputs:
        with self._lock:
            cached = self._inputs.get(state.audit_id)
            if cached is None:
                datasets = load_audit_inputs(
                    Path(state.ledger_path) if state.ledger_path else None,
                    Path(state.processor_path) if state.processor_path else None,
                )
                cached = _LoadedInputs(datasets)
                self._inputs[state.audit_id] = cached
            return cached

    def _forget_inputs(self, audit_id: str):
        with self._lock:
            self._inputs.pop(audit_id, None)

    def _fail(self, state: AuditRunState, message: str):
        """End the audit in error and release its cached inputs."""
        state.status = AuditStatus.ERROR.value
        state.error_message = message
        self.save_state(state)
        self._forget_inputs(state.audit_id)
        logger.error(f"[SCHEDULER] {state.audit_id}: ended in error: {message}")

    def _refresh_totals(self, state: AuditRunState):
        findings = self.storage.load_findings(state.audit_id)
        state.total_anomalies = len(findings)
        state.annual_revenue_at_risk = int(sum(f.get("annual_impact") or 0 for f in findings))

    def _fire_trigger(self, audit_id: str):
        try:
            self.trigger.fire(audit_id)
        except Exception as e:
            # The chunk that just completed stays completed; polling re-triggers
            logger.warning(f"[SCHEDULER] Trigger for {audit_id} failed: {e}")

    # ==================== Audit lifecycle ====================

    def create_audit(self, ledger_path: Path, processor_path: Path,
                     organization_id: Optional[str] = None,
                     audit_id: Optional[str] = None) -> AuditRunState:
        """Store both input files under a new audit in pending status."""
        audit_id = audit_id or self.storage.generate_audit_id()
        stored_ledger = self.storage.save_input_file(audit_id, Path(ledger_path))
        stored_processor = self.storage.save_input_file(audit_id, Path(processor_path))

        state = AuditRunState(
            audit_id=audit_id,
            organization_id=organization_id,
            ledger_path=str(stored_ledger),
            processor_path=str(stored_processor),
            created_at=self.clock(),
        )
        self.save_state(state)
        logger.info(f"[SCHEDULER] Created audit {audit_id}")
        return state

    def start_audit(self, audit_id: str, overrides: Optional[Dict[str, Any]] = None,
                    preset: Optional[str] = None) -> AuditRunState:
        """
        Resolve configuration, load inputs and start analysis.

        Input errors end the run in error status with nothing persisted.
        Otherwise findings and chunks of any previous run are cleared, then the
        audit is either processed in one pass or split into queued chunks.

        Raises:
            AuditNotFoundError: Unknown audit
            InvalidTransitionError: Audit is already processing or published
            ValueError: Unknown preset name
        """
        state = self.load_state(audit_id)
        check_transition(state.status, AuditStatus.PROCESSING.value)

        org_settings = self.storage.load_org_settings(state.organization_id)
        recon_config = resolve_config(org_settings, overrides=overrides, preset=preset)
        now = self.clock()

        self._forget_inputs(audit_id)
        try:
            inputs = self._inputs_for(state)
        except InputError as e:
            state.last_progress_at = now
            self._fail(state, str(e))
            return state

        self.storage.delete_findings(audit_id)
        self.queue.delete_audit(audit_id)

        state.status = AuditStatus.PROCESSING.value
        state.config = recon_config.to_dict()
        state.chunks_completed = 0
        state.chunks_total = 0
        state.total_anomalies = 0
        state.annual_revenue_at_risk = 0
        state.truncated_findings = 0
        state.error_message = None
        state.summary = None
        state.processed_at = None
        state.published_at = None
        state.last_progress_at = now

        total_rows = len(inputs.ledger) + len(inputs.processor)
        if total_rows <= self.limits.direct_processing_limit:
            state.is_chunked = False
            self.save_state(state)
            logger.info(f"[SCHEDULER] {audit_id}: direct pass over {total_rows} rows")
            return self._run_direct(state, recon_config, inputs)

        tasks = plan_chunks(audit_id, len(inputs.ledger), len(inputs.processor),
                            self.limits.chunk_size, now=now)
        state.is_chunked = True
        state.chunks_total = len(tasks)
        self.save_state(state)
        self.queue.add_tasks(tasks)
        logger.info(f"[SCHEDULER] {audit_id}: {total_rows} rows split into {len(tasks)} chunk(s)")
        self._fire_trigger(audit_id)
        return state

    def _run_direct(self, state: AuditRunState, recon_config: ReconciliationConfig,
                    inputs: _LoadedInputs) -> AuditRunState:
        try:
            result = self._run(state.audit_id, recon_config, inputs)
            self.storage.insert_findings(state.audit_id, [f.to_dict() for f in result.findings])
        except Exception as e:
            logger.error(f"[SCHEDULER] {state.audit_id}: direct pass failed: {e}", exc_info=True)
            self._fail(state, f"Analysis failed: {e}")
            return state

        state.truncated_findings = result.truncated
        self.save_state(state)
        return self.finalize(state.audit_id)

    def _run(self, audit_id: str, recon_config: ReconciliationConfig, inputs: _LoadedInputs,
             task: Optional[ChunkTask] = None) -> PipelineResult:
        return run_pipeline(
            inputs.ledger,
            inputs.processor,
            recon_config,
            audit_id,
            ledger_range=task.ledger_range if task else None,
            processor_range=task.processor_range if task else None,
            chunk_index=task.chunk_index if task else 0,
            registry=self.registry,
            max_findings_per_detector=self.limits.max_findings_per_detector,
            index=inputs.index,
            detected_at=self.clock().isoformat(),
        )

    # ==================== Chunks ====================

    def _execute(self, task: ChunkTask) -> PipelineResult:
        """Run the pipeline over one chunk and store its findings."""
        state = self.load_state(task.audit_id)
        recon_config = ReconciliationConfig(**state.config)
        inputs = self._inputs_for(state)
        result = self._run(task.audit_id, recon_config, inputs, task=task)
        self.storage.insert_findings(task.audit_id, [f.to_dict() for f in result.findings])
        return result

    def process_next(self, audit_id: Optional[str] = None) -> Optional[ChunkTask]:
        """
        Claim and process one pending chunk.

        Args:
            audit_id: Restrict the claim to one audit; None takes the oldest pending chunk

        Returns:
            The claimed task, or None if nothing was pending
        """
        task = self.queue.claim_next(self.clock(), audit_id=audit_id)
        if task is None:
            return None

        label = f"{task.audit_id} chunk {task.chunk_index + 1}/{task.total_chunks}"
        logger.info(f"[SCHEDULER] Processing {label}")

        try:
            result = self._execute(task)
        except AuditNotFoundError:
            logger.warning(f"[SCHEDULER] {label}: audit no longer exists")
            self.queue.fail(task.task_id, "Audit not found", self.clock())
            return task
        except Exception as e:
            logger.error(f"[SCHEDULER] {label} failed: {e}", exc_info=True)
            self._record_chunk_failure(task, str(e))
            return task

        completed = self.queue.complete(task.task_id, len(result.findings), result.truncated, self.clock())
        if not completed:
            logger.warning(f"[SCHEDULER] {label} was already completed by another worker")
        self._after_chunk(task.audit_id)
        return task

    def _record_chunk_failure(self, task: ChunkTask, message: str):
        now = self.clock()
        self.queue.fail(task.task_id, message, now)
        try:
            state = self.load_state(task.audit_id)
        except AuditNotFoundError:
            return
        state.error_message = f"Chunk {task.chunk_index + 1} of {task.total_chunks} failed: {message}"
        self._settle(state)

    def _after_chunk(self, audit_id: str):
        try:
            state = self.load_state(audit_id)
        except AuditNotFoundError:
            return
        counts = self.queue.counts(audit_id)
        state.chunks_completed = counts[ChunkStatus.COMPLETED.value]
        state.last_progress_at = self.clock()
        self._refresh_totals(state)
        self.save_state(state)
        logger.info(f"[SCHEDULER] {audit_id}: {state.chunks_completed}/{state.chunks_total} chunk(s) completed")
        self._settle(state, counts)

    def _settle(self, state: AuditRunState, counts: Optional[Dict[str, int]] = None):
        """Finalize, chain, or fail the audit depending on where its chunks stand."""
        if state.status != AuditStatus.PROCESSING.value:
            self.save_state(state)
            return
        counts = counts or self.queue.counts(state.audit_id)
        in_flight = counts[ChunkStatus.PENDING.value] + counts[ChunkStatus.PROCESSING.value]

        if state.chunks_total and counts[ChunkStatus.COMPLETED.value] >= state.chunks_total:
            self.save_state(state)
            self.finalize(state.audit_id)
        elif counts[ChunkStatus.ERROR.value] and not in_flight:
            self._fail(state, state.error_message or "Chunk processing failed")
        else:
            self.save_state(state)
            if counts[ChunkStatus.PENDING.value]:
                self._fire_trigger(state.audit_id)

    # ==================== Finalization ====================

    def finalize(self, audit_id: str) -> AuditRunState:
        """
        Aggregate findings and move the audit to review.

        Runs once: an audit that is no longer processing is returned unchanged,
        so late or duplicate completions cannot finalize twice.
        """
        with self._lock:
            state = self.load_state(audit_id)
            if state.status != AuditStatus.PROCESSING.value:
                logger.debug(f"[SCHEDULER] {audit_id}: finalize skipped, status is {state.status}")
                return state

            self._refresh_totals(state)
            if state.is_chunked:
                tasks = self.queue.tasks_for(audit_id)
                state.truncated_findings = sum(t.truncated for t in tasks)
                state.chunks_completed = sum(1 for t in tasks if t.status == ChunkStatus.COMPLETED.value)

            currency = (state.config or {}).get("currency_code")
            state.summary = build_summary(
                state.total_anomalies, state.annual_revenue_at_risk, currency, state.truncated_findings
            )
            state.status = AuditStatus.REVIEW.value
            state.processed_at = self.clock()
            state.last_progress_at = state.processed_at
            state.error_message = None
            self.save_state(state)
            self.storage.export_findings_csv(audit_id)

        self._forget_inputs(audit_id)
        logger.info(f"[SCHEDULER] {audit_id}: {state.summary}")
        return state

    # ==================== Polling ====================

    def poll(self, audit_id: str) -> Dict[str, Any]:
        """
        Recover stalled work and report progress.

        Stale processing chunks go back to pending, an audit with no progress
        past the timeout ends in error, and pending work is re-triggered.
        """
        state = self.load_state(audit_id)
        if state.status == AuditStatus.PROCESSING.value and state.is_chunked:
            now = self.clock()
            stale_after = timedelta(seconds=self.limits.stale_after_seconds)
            reset = self.queue.reset_stale(now, stale_after, audit_id=audit_id)
            for task in reset:
                logger.warning(
                    f"[SCHEDULER] {audit_id}: chunk {task.chunk_index + 1}/{task.total_chunks} "
                    f"stale, returned to pending"
                )

            counts = self.queue.counts(audit_id)
            timeout = timedelta(seconds=self.limits.audit_timeout_seconds)
            in_flight = counts[ChunkStatus.PENDING.value] + counts[ChunkStatus.PROCESSING.value]

            if (in_flight and state.last_progress_at is not None
                    and now - state.last_progress_at > timeout):
                minutes = self.limits.audit_timeout_seconds // 60
                self._fail(state, f"Analysis timed out: no progress for {minutes} minutes")
            else:
                state.chunks_completed = counts[ChunkStatus.COMPLETED.value]
                self._settle(state, counts)
            state = self.load_state(audit_id)

        return progress_payload(state)

    # ==================== Review ====================

    def publish(self, audit_id: str) -> AuditRunState:
        state = self.load_state(audit_id)
        check_transition(state.status, AuditStatus.PUBLISHED.value)
        state.status = AuditStatus.PUBLISHED.value
        state.published_at = self.clock()
        self.save_state(state)
        logger.info(f"[SCHEDULER] Published audit {audit_id}")
        return state

    def delete_audit(self, audit_id: str) -> bool:
        """Delete an audit with its chunks and findings; False if it did not exist."""
        self._forget_inputs(audit_id)
        self.queue.delete_audit(audit_id)
        return self.storage.delete_audit(audit_id)


def progress_payload(state: AuditRunState) -> Dict[str, Any]:
    """Fields a polling client needs to render progress."""
    return {
        "audit_id": state.audit_id,
        "status": state.status,
        "progress": state.progress,
        "chunks_completed": state.chunks_completed,
        "chunks_total": state.chunks_total,
        "total_anomalies": state.total_anomalies,
        "annual_revenue_at_risk": state.annual_revenue_at_risk,
        "truncated_findings": state.truncated_findings,
        "error_message": state.error_message,
        "summary": state.summary,
    }
