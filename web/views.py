"""
JSON API for reconciliation audits.
"""
from datetime import datetime, timezone
from pathlib import Path
import logging

from flask import Blueprint, current_app, g, jsonify, request
from werkzeug.utils import secure_filename

from config import PRESETS, resolve_config, sanitize_overrides, FIELD_TO_EXTERNAL_KEY
from recon_engine.canonical_fields import AuditStatus, FindingStatus
from recon_engine.metrics import calculate_kpis
from recon_engine.scheduler import ChunkScheduler, progress_payload
from recon_engine.state import AuditNotFoundError, InvalidTransitionError
from recon_engine.triggers import QueueTrigger
from storage.service import StorageService
from web.auth import get_request_user, require_trigger_token

logger = logging.getLogger(__name__)
bp = Blueprint('api', __name__, url_prefix='/api')

ALLOWED_EXTENSIONS = {'.csv', '.xlsx', '.xls'}
FINDINGS_CACHE_TIMEOUT = 300


def get_scheduler() -> ChunkScheduler:
    return current_app.extensions['recon_scheduler']


def get_storage_service() -> StorageService:
    return get_scheduler().storage


def _cache():
    from app import cache
    return cache


def _findings_cache_key(audit_id: str) -> str:
    return f"findings:{audit_id}"


def invalidate_findings_cache(audit_id: str):
    _cache().delete(_findings_cache_key(audit_id))


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


# ==================== Error handlers ====================

@bp.errorhandler(AuditNotFoundError)
def handle_not_found(e):
    return jsonify({'error': str(e)}), 404


@bp.errorhandler(InvalidTransitionError)
def handle_conflict(e):
    return jsonify({'error': str(e)}), 409


@bp.errorhandler(ValueError)
def handle_bad_request(e):
    return jsonify({'error': str(e)}), 400


# ==================== Audits ====================

def _save_upload(storage: StorageService, audit_id: str, field_name: str) -> Path:
    upload = request.files.get(field_name)
    if upload is None or upload.filename == '':
        raise ValueError(f"Missing '{field_name}' file")

    filename = secure_filename(upload.filename)
    if Path(filename).suffix.lower() not in ALLOWED_EXTENSIONS:
        raise ValueError(f"'{field_name}' must be a CSV or Excel file")

    target = storage.get_inputs_dir(audit_id) / f"{field_name}_{filename}"
    upload.save(str(target))
    return target


@bp.route('/audits', methods=['POST'])
def create_audit():
    """Upload a ledger and a processor export; the audit starts in pending."""
    scheduler = get_scheduler()
    storage = scheduler.storage
    audit_id = storage.generate_audit_id()

    try:
        ledger_path = _save_upload(storage, audit_id, 'ledger')
        processor_path = _save_upload(storage, audit_id, 'processor')
    except ValueError:
        storage.delete_audit(audit_id)
        raise

    state = scheduler.create_audit(
        ledger_path,
        processor_path,
        organization_id=request.form.get('organization_id') or None,
        audit_id=audit_id,
    )
    logger.info(f"[API] {get_request_user()} created audit {audit_id}")
    return jsonify(state.to_dict()), 201


@bp.route('/audits', methods=['GET'])
def list_audits():
    limit = request.args.get('limit', default=20, type=int)
    return jsonify({'audits': get_storage_service().list_audits(limit=limit)})


@bp.route('/audits/<audit_id>', methods=['GET'])
def get_audit(audit_id: str):
    scheduler = get_scheduler()
    state = scheduler.load_state(audit_id)
    payload = state.to_dict()
    payload['kpis'] = calculate_kpis(scheduler.storage.load_findings_frame(audit_id))
    return jsonify(payload)


@bp.route('/audits/<audit_id>/analyze', methods=['POST'])
def analyze_audit(audit_id: str):
    """Start (or restart) analysis with optional config overrides or preset."""
    body = _json_body()
    scheduler = get_scheduler()
    state = scheduler.start_audit(audit_id, overrides=body.get('overrides'), preset=body.get('preset'))
    invalidate_findings_cache(audit_id)
    logger.info(f"[API] {get_request_user()} started analysis of {audit_id}: {state.status}")
    return jsonify(progress_payload(state)), 202


@bp.route('/audits/<audit_id>/poll', methods=['POST'])
def poll_audit(audit_id: str):
    """
    Report progress and keep a chunked audit moving.

    With the in-process trigger, each poll also works off one queued chunk.
    """
    scheduler = get_scheduler()
    payload = scheduler.poll(audit_id)
    if isinstance(scheduler.trigger, QueueTrigger) and payload['status'] == AuditStatus.PROCESSING.value:
        if scheduler.trigger.drain(scheduler, max_items=1):
            payload = progress_payload(scheduler.load_state(audit_id))
    invalidate_findings_cache(audit_id)
    return jsonify(payload)


@bp.route('/audits/<audit_id>/findings', methods=['GET'])
def list_findings(audit_id: str):
    """Findings ordered by annual impact, optionally filtered by category, status or confidence."""
    cache = _cache()
    key = _findings_cache_key(audit_id)
    findings = cache.get(key)
    if findings is None:
        get_scheduler().load_state(audit_id)
        findings = sorted(
            get_storage_service().load_findings(audit_id),
            key=lambda f: (-(f.get('annual_impact') or 0), f.get('finding_id')),
        )
        cache.set(key, findings, timeout=FINDINGS_CACHE_TIMEOUT)

    for field_name in ('category', 'status', 'confidence'):
        wanted = request.args.get(field_name)
        if wanted:
            findings = [f for f in findings if f.get(field_name) == wanted]

    return jsonify({'audit_id': audit_id, 'count': len(findings), 'findings': findings})


@bp.route('/audits/<audit_id>/publish', methods=['POST'])
def publish_audit(audit_id: str):
    state = get_scheduler().publish(audit_id)
    logger.info(f"[API] {get_request_user()} published {audit_id}")
    return jsonify(state.to_dict())


@bp.route('/audits/<audit_id>', methods=['DELETE'])
def delete_audit(audit_id: str):
    if not get_scheduler().delete_audit(audit_id):
        raise AuditNotFoundError(f"Audit {audit_id} not found")
    invalidate_findings_cache(audit_id)
    logger.info(f"[API] {get_request_user()} deleted {audit_id}")
    return jsonify({'deleted': audit_id})


# ==================== Findings ====================

@bp.route('/findings/<audit_id>/<finding_id>', methods=['PATCH'])
def update_finding(audit_id: str, finding_id: str):
    """Reviewer status change on one finding."""
    scheduler = get_scheduler()
    state = scheduler.load_state(audit_id)
    if state.status == AuditStatus.PUBLISHED.value:
        raise InvalidTransitionError(f"Audit {audit_id} is published; findings are read-only")

    status = FindingStatus(_json_body().get('status')).value
    finding = scheduler.storage.update_finding_status(audit_id, finding_id, status)
    if finding is None:
        return jsonify({'error': f"Finding {finding_id} not found"}), 404

    invalidate_findings_cache(audit_id)
    return jsonify(finding)


# ==================== Chunk trigger target ====================

@bp.route('/chunks/process', methods=['POST'])
@require_trigger_token
def process_chunk():
    """Process the next pending chunk of an audit (called by the HTTP trigger)."""
    audit_id = _json_body().get('audit_id') or None
    claims = getattr(g, 'trigger_claims', None)
    if claims is not None and audit_id is not None and claims.get('sub') != audit_id:
        return jsonify({'error': 'Trigger token does not match audit'}), 403

    scheduler = get_scheduler()
    task = scheduler.process_next(audit_id)
    if task is None:
        return jsonify({'processed': False, 'audit_id': audit_id})

    invalidate_findings_cache(task.audit_id)
    payload = progress_payload(scheduler.load_state(task.audit_id))
    payload.update({'processed': True, 'chunk_index': task.chunk_index})
    return jsonify(payload)


# ==================== Organization settings ====================

def _to_external(values: dict) -> dict:
    return {FIELD_TO_EXTERNAL_KEY[k]: v for k, v in values.items()}


@bp.route('/organizations/<org_id>/reconciliation-settings', methods=['GET'])
def get_reconciliation_settings(org_id: str):
    stored = get_storage_service().load_org_settings(org_id)
    return jsonify({
        'organization_id': org_id,
        'preset': stored.get('preset'),
        'settings': stored.get('settings', {}),
        'history': stored.get('history', []),
        'resolved': resolve_config(stored).to_external(),
        'presets': {name: preset.to_external() for name, preset in PRESETS.items()},
    })


@bp.route('/organizations/<org_id>/reconciliation-settings', methods=['PUT'])
def update_reconciliation_settings(org_id: str):
    """Replace an organization's preset and settings, keeping a change history."""
    body = _json_body()
    preset = body.get('preset') or None
    settings = _to_external(sanitize_overrides(body.get('settings') or {}))

    # Validates the preset name before anything is stored
    resolved = resolve_config({'preset': preset, 'settings': settings})

    storage = get_storage_service()
    stored = storage.load_org_settings(org_id)
    history = list(stored.get('history', []))
    history.append({
        'preset': preset,
        'settings': settings,
        'updated_at': datetime.now(timezone.utc).isoformat(),
        'updated_by': get_request_user(),
    })
    storage.save_org_settings(org_id, {'preset': preset, 'settings': settings, 'history': history})
    logger.info(f"[API] Updated reconciliation settings for organization {org_id}")

    return jsonify({
        'organization_id': org_id,
        'preset': preset,
        'settings': settings,
        'history': history,
        'resolved': resolved.to_external(),
    })
