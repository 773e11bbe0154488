import pandas as pd
import pytest

from recon_engine.pipeline import run_pipeline
from recon_engine.state import AuditNotFoundError
from storage.service import StorageService


def _finding(finding_id: str, annual: int = 100, status: str = "detected") -> dict:
    return {
        "finding_id": finding_id,
        "audit_id": "a1",
        "category": "missing_in_processor",
        "customer_id": "c1",
        "status": status,
        "confidence": "high",
        "monthly_impact": annual,
        "annual_impact": annual,
        "description": "d",
        "root_cause": "r",
        "recommendation": "x",
        "metadata": {"ledger_row": 0},
        "detected_at": "2024-03-01T12:00:00+00:00",
        "rule_id": "MISSING_IN_PROCESSOR",
        "chunk_index": 0,
    }


def test_insert_findings_upserts_by_id(storage: StorageService) -> None:
    assert storage.insert_findings("a1", [_finding("f1"), _finding("f2")]) == 2
    assert storage.update_finding_status("a1", "f1", "resolved")["status"] == "resolved"

    # Reprocessing replaces content but keeps the reviewer's status
    assert storage.insert_findings("a1", [_finding("f1", annual=250), _finding("f3")]) == 1

    findings = {f["finding_id"]: f for f in storage.load_findings("a1")}
    assert sorted(findings) == ["f1", "f2", "f3"]
    assert findings["f1"]["annual_impact"] == 250
    assert findings["f1"]["status"] == "resolved"


def test_reprocessing_a_pipeline_run_adds_nothing(storage, ledger_frame, processor_frame, recon_config) -> None:
    ledger = ledger_frame([{"customer_id": "c1", "amount": "500"}, {"customer_id": "c2", "amount": "700"}])
    processor = processor_frame([])

    first = run_pipeline(ledger, processor, recon_config, "a1")
    again = run_pipeline(ledger, processor, recon_config, "a1")

    assert storage.insert_findings("a1", [f.to_dict() for f in first.findings]) == 2
    assert storage.insert_findings("a1", [f.to_dict() for f in again.findings]) == 0
    assert len(storage.load_findings("a1")) == 2


def test_update_unknown_finding(storage: StorageService) -> None:
    storage.insert_findings("a1", [_finding("f1")])
    assert storage.update_finding_status("a1", "nope", "resolved") is None


def test_audit_state_round_trip(storage: StorageService) -> None:
    with pytest.raises(AuditNotFoundError):
        storage.load_audit_state("audit_missing")

    storage.save_audit_state({"audit_id": "audit_1", "status": "pending"})
    assert storage.audit_exists("audit_1")
    assert storage.load_audit_state("audit_1")["status"] == "pending"


def test_invalid_audit_ids_are_rejected(storage: StorageService) -> None:
    for bad in ("", "../escape", ".hidden", "a/b"):
        with pytest.raises(ValueError):
            storage.load_audit_state(bad)


def test_list_audits_newest_first(storage: StorageService) -> None:
    for audit_id in ("audit_20240101", "audit_20240301", "audit_20240201"):
        storage.save_audit_state({"audit_id": audit_id})
    storage.save_org_settings("acme", {"preset": "scale"})

    assert storage.list_audit_ids() == ["audit_20240101", "audit_20240201", "audit_20240301"]
    assert [a["audit_id"] for a in storage.list_audits(limit=2)] == ["audit_20240301", "audit_20240201"]


def test_delete_audit_removes_everything(storage: StorageService, tmp_path) -> None:
    source = tmp_path / "ledger.csv"
    source.write_text("customer_id,amount\nc1,5.00\n")
    storage.save_audit_state({"audit_id": "a1"})
    stored = storage.save_input_file("a1", source)
    storage.insert_findings("a1", [_finding("f1")])
    storage.save_chunk_tasks("a1", [{"task_id": "t1"}])

    assert stored.read_text() == source.read_text()
    assert storage.delete_audit("a1") is True
    assert storage.delete_audit("a1") is False
    assert storage.load_findings("a1") == []
    assert storage.load_chunk_tasks("a1") == []
    assert not stored.exists()


def test_org_settings_round_trip(storage: StorageService) -> None:
    assert storage.load_org_settings(None) == {}
    assert storage.load_org_settings("acme") == {}

    storage.save_org_settings("acme", {"preset": "startup", "settings": {"payoutGraceDays": 3}})
    assert storage.load_org_settings("acme")["settings"] == {"payoutGraceDays": 3}

    with pytest.raises(ValueError):
        storage.save_org_settings("///", {})


def test_export_findings_csv(storage: StorageService) -> None:
    storage.save_audit_state({"audit_id": "a1"})
    storage.insert_findings("a1", [_finding("f1", annual=300)])

    path = storage.export_findings_csv("a1")
    exported = pd.read_csv(path)

    assert list(exported["finding_id"]) == ["f1"]
    assert int(exported.loc[0, "annual_impact"]) == 300
    assert exported.loc[0, "metadata"] == '{"ledger_row": 0}'
