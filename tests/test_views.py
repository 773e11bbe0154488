import io

import pytest

from app import create_app
from config import EngineLimits
from recon_engine.triggers import issue_trigger_token

LEDGER_CSV = (
    "customer_id,amount,created_at\n"
    "c1,5.00,2024-03-01T10:00:00Z\n"
    "c2,7.00,2024-03-02T10:00:00Z\n"
    "c3,9.00,2024-03-03T10:00:00Z\n"
)
PROCESSOR_CSV = "id,customer,amount,created\n"


@pytest.fixture
def app(tmp_path):
    return create_app({
        "TESTING": True,
        "RECON_STORAGE_DIR": tmp_path / "audits",
        "TRIGGER_SECRET": None,
    })


@pytest.fixture
def client(app):
    return app.test_client()


def _upload(client, ledger=LEDGER_CSV, processor=PROCESSOR_CSV, **form):
    data = {
        "ledger": (io.BytesIO(ledger.encode()), "ledger.csv"),
        "processor": (io.BytesIO(processor.encode()), "processor.csv"),
        **form,
    }
    return client.post("/api/audits", data=data, content_type="multipart/form-data")


def _analyzed_audit(client) -> str:
    audit_id = _upload(client).get_json()["audit_id"]
    response = client.post(f"/api/audits/{audit_id}/analyze", json={})
    assert response.status_code == 202
    return audit_id


def test_create_audit(client) -> None:
    response = _upload(client, organization_id="acme")

    assert response.status_code == 201
    body = response.get_json()
    assert body["status"] == "pending"
    assert body["organization_id"] == "acme"
    assert body["ledger_path"].endswith("ledger_ledger.csv")

    listed = client.get("/api/audits").get_json()["audits"]
    assert [a["audit_id"] for a in listed] == [body["audit_id"]]


def test_create_audit_rejects_bad_upload(client) -> None:
    response = client.post(
        "/api/audits",
        data={"ledger": (io.BytesIO(b"x"), "ledger.pdf")},
        content_type="multipart/form-data",
    )
    assert response.status_code == 400
    assert client.get("/api/audits").get_json()["audits"] == []


def test_analyze_and_list_findings(client) -> None:
    audit_id = _analyzed_audit(client)

    audit = client.get(f"/api/audits/{audit_id}").get_json()
    assert audit["status"] == "review"
    assert audit["progress"] == 100
    assert audit["kpis"]["total_anomalies"] == 3
    assert audit["kpis"]["annual_revenue_at_risk"] == 2100

    findings = client.get(f"/api/audits/{audit_id}/findings").get_json()
    assert findings["count"] == 3
    assert [f["annual_impact"] for f in findings["findings"]] == [900, 700, 500]

    filtered = client.get(f"/api/audits/{audit_id}/findings?category=missing_in_ledger").get_json()
    assert filtered["count"] == 0


def test_update_finding_status(client) -> None:
    audit_id = _analyzed_audit(client)
    finding_id = client.get(f"/api/audits/{audit_id}/findings").get_json()["findings"][0]["finding_id"]

    response = client.patch(f"/api/findings/{audit_id}/{finding_id}", json={"status": "resolved"})
    assert response.status_code == 200
    assert response.get_json()["status"] == "resolved"

    resolved = client.get(f"/api/audits/{audit_id}/findings?status=resolved").get_json()
    assert resolved["count"] == 1

    assert client.patch(f"/api/findings/{audit_id}/{finding_id}", json={"status": "bogus"}).status_code == 400
    assert client.patch(f"/api/findings/{audit_id}/missing", json={"status": "resolved"}).status_code == 404


def test_publish_makes_findings_read_only(client) -> None:
    audit_id = _analyzed_audit(client)
    finding_id = client.get(f"/api/audits/{audit_id}/findings").get_json()["findings"][0]["finding_id"]

    response = client.post(f"/api/audits/{audit_id}/publish")
    assert response.status_code == 200
    assert response.get_json()["status"] == "published"

    assert client.post(f"/api/audits/{audit_id}/publish").status_code == 409
    assert client.post(f"/api/audits/{audit_id}/analyze", json={}).status_code == 409
    assert client.patch(f"/api/findings/{audit_id}/{finding_id}", json={"status": "resolved"}).status_code == 409


def test_unknown_audit_is_404(client) -> None:
    assert client.get("/api/audits/audit_missing").status_code == 404
    assert client.post("/api/audits/audit_missing/analyze", json={}).status_code == 404
    assert client.delete("/api/audits/audit_missing").status_code == 404


def test_delete_audit(client) -> None:
    audit_id = _analyzed_audit(client)
    assert client.delete(f"/api/audits/{audit_id}").status_code == 200
    assert client.get(f"/api/audits/{audit_id}").status_code == 404


def test_unknown_preset_is_400(client) -> None:
    audit_id = _upload(client).get_json()["audit_id"]
    response = client.post(f"/api/audits/{audit_id}/analyze", json={"preset": "galactic"})
    assert response.status_code == 400


def test_poll_works_off_chunks(tmp_path) -> None:
    app = create_app({
        "TESTING": True,
        "RECON_STORAGE_DIR": tmp_path / "audits",
        "TRIGGER_SECRET": None,
        "RECON_LIMITS": EngineLimits(direct_processing_limit=2, chunk_size=1),
    })
    client = app.test_client()
    audit_id = _upload(client).get_json()["audit_id"]

    started = client.post(f"/api/audits/{audit_id}/analyze", json={}).get_json()
    assert started["status"] == "processing"
    assert started["chunks_total"] == 3

    statuses = [client.post(f"/api/audits/{audit_id}/poll").get_json()["status"] for _ in range(3)]
    assert statuses[-1] == "review"

    payload = client.post(f"/api/audits/{audit_id}/poll").get_json()
    assert payload["progress"] == 100
    assert payload["total_anomalies"] == 3


def test_process_chunk_requires_token(tmp_path) -> None:
    secret = "test-secret"
    app = create_app({
        "TESTING": True,
        "RECON_STORAGE_DIR": tmp_path / "audits",
        "TRIGGER_SECRET": secret,
        "RECON_LIMITS": EngineLimits(direct_processing_limit=2, chunk_size=1),
    })
    client = app.test_client()
    audit_id = _upload(client).get_json()["audit_id"]
    client.post(f"/api/audits/{audit_id}/analyze", json={})

    assert client.post("/api/chunks/process", json={"audit_id": audit_id}).status_code == 401
    bad = {"Authorization": "Bearer not-a-token"}
    assert client.post("/api/chunks/process", json={"audit_id": audit_id}, headers=bad).status_code == 401

    other = {"Authorization": f"Bearer {issue_trigger_token(secret, 'audit_other')}"}
    assert client.post("/api/chunks/process", json={"audit_id": audit_id}, headers=other).status_code == 403

    good = {"Authorization": f"Bearer {issue_trigger_token(secret, audit_id)}"}
    response = client.post("/api/chunks/process", json={"audit_id": audit_id}, headers=good)
    assert response.status_code == 200
    body = response.get_json()
    assert body["processed"] is True
    assert body["chunk_index"] == 0
    assert body["chunks_completed"] == 1


def test_reconciliation_settings(client) -> None:
    empty = client.get("/api/organizations/acme/reconciliation-settings").get_json()
    assert empty["preset"] is None
    assert empty["resolved"]["payoutGraceDays"] == 4
    assert set(empty["presets"]) == {"startup", "scale", "enterprise"}

    response = client.put(
        "/api/organizations/acme/reconciliation-settings",
        json={"preset": "startup", "settings": {"payoutGraceDays": 3, "unknown": 1}},
        headers={"X-MS-CLIENT-PRINCIPAL-NAME": "reviewer@example.com"},
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["settings"] == {"payoutGraceDays": 3}
    assert body["resolved"]["payoutGraceDays"] == 3
    assert body["resolved"]["feeDiscrepancyThresholdCents"] == 50

    stored = client.get("/api/organizations/acme/reconciliation-settings").get_json()
    assert stored["preset"] == "startup"
    assert stored["history"][0]["updated_by"] == "reviewer@example.com"

    rejected = client.put("/api/organizations/acme/reconciliation-settings", json={"preset": "galactic"})
    assert rejected.status_code == 400
    assert len(client.get("/api/organizations/acme/reconciliation-settings").get_json()["history"]) == 1


def test_org_settings_apply_to_analysis(client) -> None:
    client.put("/api/organizations/acme/reconciliation-settings", json={"settings": {"currencyCode": "EUR"}})
    audit_id = _upload(client, organization_id="acme").get_json()["audit_id"]

    started = client.post(f"/api/audits/{audit_id}/analyze", json={}).get_json()
    assert "€21.00" in started["summary"]
