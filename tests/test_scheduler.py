from typing import List

import pytest

from config import EngineLimits
from recon_engine.canonical_fields import AnomalyCategory
from recon_engine.detectors import MissingInProcessorRule
from recon_engine.findings import Finding
from recon_engine.rules import DetectionContext, Rule, RuleRegistry
from recon_engine.scheduler import ChunkScheduler, plan_chunks
from recon_engine.state import AuditNotFoundError, InvalidTransitionError
from recon_engine.triggers import QueueTrigger

SIX_UNMATCHED = [
    {"customer_id": f"c{i}", "amount": str((i + 1) * 100), "created_at": f"2024-03-0{i + 1}T10:00:00Z"}
    for i in range(6)
]


class ExplodingRule(Rule):
    """Fails on one chunk only."""

    rule_id = "EXPLODING"
    rule_name = "Fails on the second chunk"
    category = AnomalyCategory.OTHER

    def evaluate(self, context: DetectionContext) -> List[Finding]:
        if context.chunk_index == 1:
            raise RuntimeError("boom")
        return []


def _scheduler(storage, memory_queue, clock, limits=None, **kwargs) -> ChunkScheduler:
    return ChunkScheduler(storage, memory_queue, limits=limits, clock=clock, **kwargs)


def _drain(scheduler: ChunkScheduler, audit_id: str) -> int:
    processed = 0
    while scheduler.process_next(audit_id) is not None:
        processed += 1
    return processed


def test_plan_chunks_aligns_ranges() -> None:
    tasks = plan_chunks("a1", 5, 2, 2)

    assert [t.ledger_range for t in tasks] == [(0, 2), (2, 4), (4, 5)]
    assert [t.processor_range for t in tasks] == [(0, 2), (2, 2), (2, 2)]
    assert {t.total_chunks for t in tasks} == {3}
    assert len({t.created_at for t in tasks}) == 1


def test_plan_chunks_always_has_one_chunk() -> None:
    tasks = plan_chunks("a1", 0, 0, 10)
    assert len(tasks) == 1
    assert tasks[0].ledger_range == (0, 0)
    with pytest.raises(ValueError):
        plan_chunks("a1", 5, 5, 0)


def test_small_audit_runs_direct_pass(storage, memory_queue, clock, write_inputs, small_limits) -> None:
    ledger_path, processor_path = write_inputs(
        [{"customer_id": "c1", "amount": "5.00", "created_at": "2024-03-01T10:00:00Z"}], []
    )
    scheduler = _scheduler(storage, memory_queue, clock, small_limits)
    audit = scheduler.create_audit(ledger_path, processor_path)
    assert audit.status == "pending"

    state = scheduler.start_audit(audit.audit_id)

    assert state.status == "review"
    assert state.is_chunked is False
    assert state.progress == 100
    assert state.total_anomalies == 1
    assert state.annual_revenue_at_risk == 500
    assert state.summary == "Analysis complete. Found 1 anomalies totaling $5.00 at risk."
    assert memory_queue.tasks_for(audit.audit_id) == []
    assert (storage.base_dir / audit.audit_id / "outputs" / "findings.csv").exists()


def test_large_audit_is_chunked_and_matches_direct_pass(
    storage, memory_queue, clock, write_inputs, small_limits
) -> None:
    ledger_path, processor_path = write_inputs(SIX_UNMATCHED, [])

    chunked = _scheduler(storage, memory_queue, clock, small_limits)
    audit = chunked.create_audit(ledger_path, processor_path)
    state = chunked.start_audit(audit.audit_id)

    assert state.status == "processing"
    assert state.is_chunked is True
    assert state.chunks_total == 3
    assert state.progress == 0

    chunked.process_next(audit.audit_id)
    assert chunked.load_state(audit.audit_id).progress == 33
    assert _drain(chunked, audit.audit_id) == 2

    final = chunked.load_state(audit.audit_id)
    assert final.status == "review"
    assert final.chunks_completed == 3
    assert final.total_anomalies == 6

    direct = _scheduler(storage, memory_queue, clock, EngineLimits())
    other = direct.create_audit(ledger_path, processor_path, audit_id="audit_direct")
    direct_state = direct.start_audit(other.audit_id)

    assert direct_state.is_chunked is False
    assert direct_state.total_anomalies == final.total_anomalies
    assert direct_state.annual_revenue_at_risk == final.annual_revenue_at_risk == 2100


def test_queue_trigger_chains_every_chunk(storage, memory_queue, clock, write_inputs, small_limits) -> None:
    trigger = QueueTrigger()
    scheduler = _scheduler(storage, memory_queue, clock, small_limits, trigger=trigger)
    audit = scheduler.create_audit(*write_inputs(SIX_UNMATCHED, []))
    scheduler.start_audit(audit.audit_id)

    assert trigger.pending() == 1
    assert trigger.drain(scheduler) == 3
    assert scheduler.load_state(audit.audit_id).status == "review"


def test_stale_chunk_is_recovered_by_poll(storage, memory_queue, clock, write_inputs, small_limits) -> None:
    scheduler = _scheduler(storage, memory_queue, clock, small_limits)
    audit = scheduler.create_audit(*write_inputs(SIX_UNMATCHED, []))
    scheduler.start_audit(audit.audit_id)

    # A worker claims the first chunk and disappears
    abandoned = memory_queue.claim_next(clock.now, audit_id=audit.audit_id)
    clock.advance(180)

    payload = scheduler.poll(audit.audit_id)
    assert payload["status"] == "processing"
    assert memory_queue.counts(audit.audit_id)["pending"] == 3

    assert _drain(scheduler, audit.audit_id) == 3
    state = scheduler.load_state(audit.audit_id)
    assert state.status == "review"
    assert state.total_anomalies == 6

    retried = [t for t in memory_queue.tasks_for(audit.audit_id) if t.task_id == abandoned.task_id][0]
    assert retried.attempts == 2

    # A late duplicate finalize leaves the review untouched
    clock.advance(30)
    again = scheduler.finalize(audit.audit_id)
    assert again.processed_at == state.processed_at


def test_audit_without_progress_times_out(storage, memory_queue, clock, write_inputs, small_limits) -> None:
    scheduler = _scheduler(storage, memory_queue, clock, small_limits)
    audit = scheduler.create_audit(*write_inputs(SIX_UNMATCHED, []))
    scheduler.start_audit(audit.audit_id)

    clock.advance(200)
    assert scheduler.poll(audit.audit_id)["status"] == "processing"
    assert audit.audit_id in scheduler._inputs

    clock.advance(101)
    payload = scheduler.poll(audit.audit_id)
    assert payload["status"] == "error"
    assert payload["error_message"] == "Analysis timed out: no progress for 5 minutes"
    assert audit.audit_id not in scheduler._inputs


def test_failed_chunk_ends_audit_in_error(storage, memory_queue, clock, write_inputs, small_limits) -> None:
    registry = RuleRegistry()
    registry.register(MissingInProcessorRule())
    registry.register(ExplodingRule())
    scheduler = _scheduler(storage, memory_queue, clock, small_limits, registry=registry)
    audit = scheduler.create_audit(*write_inputs(SIX_UNMATCHED, []))
    scheduler.start_audit(audit.audit_id)

    assert _drain(scheduler, audit.audit_id) == 3

    state = scheduler.load_state(audit.audit_id)
    assert state.status == "error"
    assert "Chunk 2 of 3 failed" in state.error_message
    assert "boom" in state.error_message
    assert memory_queue.counts(audit.audit_id)["error"] == 1
    assert audit.audit_id not in scheduler._inputs


def test_unreadable_input_ends_in_error(storage, memory_queue, clock, write_inputs, tmp_path) -> None:
    ledger_path, _ = write_inputs(SIX_UNMATCHED, [])
    empty = tmp_path / "empty_processor.csv"
    empty.write_text("")

    scheduler = _scheduler(storage, memory_queue, clock)
    audit = scheduler.create_audit(ledger_path, empty)
    state = scheduler.start_audit(audit.audit_id)

    assert state.status == "error"
    assert "empty" in state.error_message
    assert storage.load_findings(audit.audit_id) == []


def test_failed_direct_pass_releases_inputs(storage, memory_queue, clock, write_inputs) -> None:
    class BrokenRule(ExplodingRule):
        def evaluate(self, context: DetectionContext) -> List[Finding]:
            raise RuntimeError("boom")

    registry = RuleRegistry()
    registry.register(BrokenRule())
    scheduler = _scheduler(storage, memory_queue, clock, registry=registry)
    audit = scheduler.create_audit(*write_inputs(SIX_UNMATCHED[:2], []))
    state = scheduler.start_audit(audit.audit_id)

    assert state.status == "error"
    assert state.error_message == "Analysis failed: boom"
    assert scheduler._inputs == {}


def test_publish_and_transitions(storage, memory_queue, clock, write_inputs) -> None:
    scheduler = _scheduler(storage, memory_queue, clock)
    audit = scheduler.create_audit(*write_inputs(SIX_UNMATCHED[:1], []))

    with pytest.raises(InvalidTransitionError):
        scheduler.publish(audit.audit_id)

    scheduler.start_audit(audit.audit_id)
    published = scheduler.publish(audit.audit_id)
    assert published.status == "published"
    assert published.published_at == clock.now

    with pytest.raises(InvalidTransitionError):
        scheduler.start_audit(audit.audit_id)
    with pytest.raises(InvalidTransitionError):
        scheduler.publish(audit.audit_id)


def test_rerun_from_review_replaces_findings(storage, memory_queue, clock, write_inputs) -> None:
    scheduler = _scheduler(storage, memory_queue, clock)
    audit = scheduler.create_audit(*write_inputs(SIX_UNMATCHED[:2], []))
    scheduler.start_audit(audit.audit_id)

    state = scheduler.start_audit(audit.audit_id, overrides={"currencyCode": "EUR"})

    assert state.status == "review"
    assert state.total_anomalies == 2
    assert state.config["currency_code"] == "EUR"
    assert state.summary == "Analysis complete. Found 2 anomalies totaling €3.00 at risk."


def test_unknown_audit(storage, memory_queue, clock) -> None:
    scheduler = _scheduler(storage, memory_queue, clock)
    with pytest.raises(AuditNotFoundError):
        scheduler.start_audit("audit_missing")
    assert scheduler.delete_audit("audit_missing") is False
