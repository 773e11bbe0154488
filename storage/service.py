"""
Storage service for reconciliation audit persistence.
Keeps audit state, chunk tasks, findings and organization settings on the local filesystem.
"""
import json
import logging
import math
import os
import shutil
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Dict, Any, List, Optional
from datetime import datetime

import pandas as pd

from recon_engine.findings import FINDING_COLUMNS, findings_to_frame
from recon_engine.state import AuditNotFoundError

logger = logging.getLogger(__name__)

# Shared by every StorageService instance in the process
_FILE_LOCK = threading.RLock()


class StorageService:
    """
    Manage audit persistence on the local filesystem.

    Structure:
    instance/audits/<audit_id>/
        inputs/
            <ledger file>
            <processor file>
        outputs/
            findings.csv (export written at finalization)
        audit.json
        queue.json
        findings.json
    instance/audits/_organizations/<org_id>.json
    """

    ORGANIZATIONS_DIR = "_organizations"

    def __init__(self, base_dir: Path, inputs_dir: str = "inputs", audit_file: str = "audit.json",
                 queue_file: str = "queue.json", findings_file: str = "findings.json"):
        self.base_dir = Path(base_dir)
        self.inputs_dir = inputs_dir
        self.audit_file = audit_file
        self.queue_file = queue_file
        self.findings_file = findings_file
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"[STORAGE] Using local filesystem: {self.base_dir}")

    # ==================== Low-level helpers ====================

    def _normalize_for_json(self, value: Any) -> Any:
        """Normalize pandas/numpy values into JSON-serializable primitives."""
        if value is None:
            return None

        if isinstance(value, pd.Timestamp):
            return None if pd.isna(value) else value.isoformat()

        if isinstance(value, datetime):
            return value.isoformat()

        if isinstance(value, float):
            if math.isnan(value) or math.isinf(value):
                return None
            return value

        if hasattr(value, "item"):
            return self._normalize_for_json(value.item())

        if isinstance(value, (int, str, bool)):
            return value

        try:
            if pd.isna(value):
                return None
        except (TypeError, ValueError):
            pass

        return str(value)

    def _audit_dir(self, audit_id: str) -> Path:
        if not audit_id or "/" in audit_id or "\\" in audit_id or audit_id.startswith("."):
            raise ValueError(f"Invalid audit id: {audit_id!r}")
        return self.base_dir / audit_id

    def _save_json(self, data: Any, path: Path):
        """Write JSON atomically so readers never see a half-written file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with _FILE_LOCK:
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2, default=self._normalize_for_json)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise

    def _load_json(self, path: Path) -> Optional[Any]:
        with _FILE_LOCK:
            if not path.exists():
                return None
            with open(path, "r") as f:
                return json.load(f)

    def _save_dataframe(self, df: pd.DataFrame, audit_id: str, file_path: str):
        local_path = self._audit_dir(audit_id) / file_path
        local_path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(local_path, index=False)

    # ==================== Audits ====================

    @staticmethod
    def generate_audit_id() -> str:
        """Generate unique audit ID."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"audit_{timestamp}_{uuid.uuid4().hex[:6]}"

    def create_audit_dir(self, audit_id: str) -> Path:
        """Create directory structure for a new audit."""
        audit_dir = self._audit_dir(audit_id)
        audit_dir.mkdir(parents=True, exist_ok=True)
        (audit_dir / self.inputs_dir).mkdir(exist_ok=True)
        (audit_dir / "outputs").mkdir(exist_ok=True)
        return audit_dir

    def get_inputs_dir(self, audit_id: str) -> Path:
        return self.create_audit_dir(audit_id) / self.inputs_dir

    def save_input_file(self, audit_id: str, source_path: Path, filename: Optional[str] = None) -> Path:
        """Copy an input file into the audit's inputs folder and return its stored path."""
        source_path = Path(source_path)
        target = self.get_inputs_dir(audit_id) / (filename or source_path.name)
        if source_path.resolve() != target.resolve():
            shutil.copyfile(source_path, target)
        logger.info(f"[STORAGE] Stored input file {target.name} for {audit_id}")
        return target

    def audit_exists(self, audit_id: str) -> bool:
        return (self._audit_dir(audit_id) / self.audit_file).exists()

    def save_audit_state(self, state: Dict[str, Any]):
        audit_id = state["audit_id"]
        self.create_audit_dir(audit_id)
        self._save_json(state, self._audit_dir(audit_id) / self.audit_file)

    def load_audit_state(self, audit_id: str) -> Dict[str, Any]:
        """Load audit state; raises AuditNotFoundError if the audit does not exist."""
        state = self._load_json(self._audit_dir(audit_id) / self.audit_file)
        if state is None:
            raise AuditNotFoundError(f"Audit {audit_id} not found")
        return state

    def list_audit_ids(self) -> List[str]:
        """Audit ids with stored state, oldest first."""
        if not self.base_dir.exists():
            return []
        return sorted(
            d.name for d in self.base_dir.iterdir()
            if d.is_dir() and not d.name.startswith(("_", ".")) and (d / self.audit_file).exists()
        )

    def list_audits(self, limit: int = 10) -> List[Dict[str, Any]]:
        """List recent audits, newest first."""
        audits = []
        for audit_id in reversed(self.list_audit_ids()):
            state = self._load_json(self._audit_dir(audit_id) / self.audit_file)
            if state:
                audits.append(state)
            if len(audits) >= limit:
                break
        return audits

    def delete_audit(self, audit_id: str) -> bool:
        """Remove an audit and everything it owns (inputs, queue, findings)."""
        audit_dir = self._audit_dir(audit_id)
        with _FILE_LOCK:
            if not audit_dir.exists():
                return False
            shutil.rmtree(audit_dir)
        logger.info(f"[STORAGE] Deleted audit {audit_id}")
        return True

    # ==================== Chunk tasks ====================

    def save_chunk_tasks(self, audit_id: str, tasks: List[Dict[str, Any]]):
        self._save_json(tasks, self._audit_dir(audit_id) / self.queue_file)

    def load_chunk_tasks(self, audit_id: str) -> List[Dict[str, Any]]:
        return self._load_json(self._audit_dir(audit_id) / self.queue_file) or []

    def delete_chunk_tasks(self, audit_id: str):
        path = self._audit_dir(audit_id) / self.queue_file
        with _FILE_LOCK:
            if path.exists():
                path.unlink()

    # ==================== Findings ====================

    def insert_findings(self, audit_id: str, findings: List[Dict[str, Any]]) -> int:
        """
        Upsert findings by finding_id.

        Reprocessing a chunk produces the same ids, so repeated inserts keep
        one copy of each finding; reviewer status changes are preserved.

        Returns:
            Number of findings that were not stored before
        """
        path = self._audit_dir(audit_id) / self.findings_file
        with _FILE_LOCK:
            existing = {f["finding_id"]: f for f in (self._load_json(path) or [])}
            added = 0
            for finding in findings:
                previous = existing.get(finding["finding_id"])
                if previous is None:
                    added += 1
                    existing[finding["finding_id"]] = dict(finding)
                else:
                    existing[finding["finding_id"]] = {**finding, "status": previous.get("status", finding.get("status"))}
            self._save_json(list(existing.values()), path)

        logger.info(f"[STORAGE] {audit_id}: stored {len(findings)} finding(s), {added} new")
        return added

    def load_findings(self, audit_id: str) -> List[Dict[str, Any]]:
        return self._load_json(self._audit_dir(audit_id) / self.findings_file) or []

    def load_findings_frame(self, audit_id: str) -> pd.DataFrame:
        return findings_to_frame(self.load_findings(audit_id))

    def update_finding_status(self, audit_id: str, finding_id: str, status: str) -> Optional[Dict[str, Any]]:
        path = self._audit_dir(audit_id) / self.findings_file
        with _FILE_LOCK:
            findings = self._load_json(path) or []
            for finding in findings:
                if finding["finding_id"] == finding_id:
                    finding["status"] = status
                    self._save_json(findings, path)
                    return finding
        return None

    def delete_findings(self, audit_id: str):
        path = self._audit_dir(audit_id) / self.findings_file
        with _FILE_LOCK:
            if path.exists():
                path.unlink()

    def export_findings_csv(self, audit_id: str) -> Path:
        """Write findings.csv next to the audit for spreadsheet review."""
        df = self.load_findings_frame(audit_id)
        df["metadata"] = df["metadata"].map(lambda m: json.dumps(m, default=self._normalize_for_json))
        self._save_dataframe(df[FINDING_COLUMNS], audit_id, "outputs/findings.csv")
        return self._audit_dir(audit_id) / "outputs" / "findings.csv"

    # ==================== Organization settings ====================

    def _org_path(self, org_id: str) -> Path:
        safe = "".join(c for c in str(org_id) if c.isalnum() or c in "-_")
        if not safe:
            raise ValueError(f"Invalid organization id: {org_id!r}")
        return self.base_dir / self.ORGANIZATIONS_DIR / f"{safe}.json"

    def load_org_settings(self, org_id: Optional[str]) -> Dict[str, Any]:
        if not org_id:
            return {}
        return self._load_json(self._org_path(org_id)) or {}

    def save_org_settings(self, org_id: str, data: Dict[str, Any]):
        self._save_json(data, self._org_path(org_id))
