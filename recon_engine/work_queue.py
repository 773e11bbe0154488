"""
Work queue for chunked reconciliation.

Chunk tasks move through pending -> processing -> completed, or
processing -> error, or back to pending when a processing task goes stale.
The scheduler talks to the ChunkQueue interface only; the in-memory and
storage-backed queues keep the same claim-then-execute discipline.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set
import logging
import threading
import uuid

from .canonical_fields import ChunkStatus

logger = logging.getLogger(__name__)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class ChunkTask:
    """One row-range slice of an audit's two datasets."""
    audit_id: str
    chunk_index: int
    total_chunks: int
    ledger_start: int
    ledger_end: int
    processor_start: int
    processor_end: int
    created_at: datetime
    task_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = ChunkStatus.PENDING.value
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    anomalies_found: int = 0
    truncated: int = 0
    error_message: Optional[str] = None
    attempts: int = 0

    @property
    def ledger_range(self):
        return self.ledger_start, self.ledger_end

    @property
    def processor_range(self):
        return self.processor_start, self.processor_end

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        for key in ("created_at", "started_at", "completed_at"):
            d[key] = _to_iso(d[key])
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkTask":
        data = dict(data)
        for key in ("created_at", "started_at", "completed_at"):
            data[key] = _from_iso(data.get(key))
        return cls(**data)


# ==================== Transitions ====================

def _sort_key(task: ChunkTask):
    return (task.created_at, task.audit_id, task.chunk_index)


def select_next(tasks: Iterable[ChunkTask]) -> Optional[ChunkTask]:
    """Oldest pending task by creation time."""
    pending = [t for t in tasks if t.status == ChunkStatus.PENDING.value]
    return min(pending, key=_sort_key) if pending else None


def is_stale(task: ChunkTask, now: datetime, stale_after: timedelta) -> bool:
    return (
        task.status == ChunkStatus.PROCESSING.value
        and task.started_at is not None
        and now - task.started_at > stale_after
    )


def _mark_processing(task: ChunkTask, now: datetime):
    task.status = ChunkStatus.PROCESSING.value
    task.started_at = now
    task.completed_at = None
    task.attempts += 1


def _mark_completed(task: ChunkTask, anomalies_found: int, truncated: int, now: datetime) -> bool:
    # A task that was already completed by another worker stays untouched
    if task.status == ChunkStatus.COMPLETED.value:
        return False
    task.status = ChunkStatus.COMPLETED.value
    task.completed_at = now
    task.anomalies_found = anomalies_found
    task.truncated = truncated
    task.error_message = None
    return True


def _mark_error(task: ChunkTask, message: str, now: datetime) -> bool:
    if task.status == ChunkStatus.COMPLETED.value:
        return False
    task.status = ChunkStatus.ERROR.value
    task.completed_at = now
    task.error_message = message
    return True


def _reset(task: ChunkTask):
    task.status = ChunkStatus.PENDING.value
    task.started_at = None


class ChunkQueue(ABC):
    """Persisted chunk-state table seen through a work-queue interface."""

    @abstractmethod
    def add_tasks(self, tasks: List[ChunkTask]) -> None:
        pass

    @abstractmethod
    def claim_next(self, now: datetime, audit_id: Optional[str] = None) -> Optional[ChunkTask]:
        """Move the oldest pending task to processing and return a copy of it."""
        pass

    @abstractmethod
    def complete(self, task_id: str, anomalies_found: int, truncated: int, now: datetime) -> bool:
        """Mark a task completed. Returns False if it was already completed."""
        pass

    @abstractmethod
    def fail(self, task_id: str, message: str, now: datetime) -> bool:
        pass

    @abstractmethod
    def reset_stale(self, now: datetime, stale_after: timedelta, audit_id: Optional[str] = None) -> List[ChunkTask]:
        """Return processing tasks older than stale_after to pending."""
        pass

    @abstractmethod
    def tasks_for(self, audit_id: str) -> List[ChunkTask]:
        pass

    @abstractmethod
    def delete_audit(self, audit_id: str) -> int:
        pass

    def get(self, task_id: str) -> Optional[ChunkTask]:
        for task in self.all_tasks():
            if task.task_id == task_id:
                return task
        return None

    def all_tasks(self) -> List[ChunkTask]:
        return []

    def counts(self, audit_id: str) -> Dict[str, int]:
        counts = {status.value: 0 for status in ChunkStatus}
        for task in self.tasks_for(audit_id):
            counts[task.status] += 1
        return counts


class InMemoryChunkQueue(ChunkQueue):
    """
    Arena of tasks indexed by status.

    The lock makes pending -> processing atomic inside one process.
    """

    def __init__(self):
        self._tasks: Dict[str, ChunkTask] = {}
        self._by_status: Dict[str, Set[str]] = {status.value: set() for status in ChunkStatus}
        self._lock = threading.RLock()

    def _set_status(self, task: ChunkTask, previous: str):
        self._by_status[previous].discard(task.task_id)
        self._by_status[task.status].add(task.task_id)

    @staticmethod
    def _copy(task: ChunkTask) -> ChunkTask:
        return ChunkTask.from_dict(task.to_dict())

    def add_tasks(self, tasks: List[ChunkTask]) -> None:
        with self._lock:
            for task in tasks:
                self._tasks[task.task_id] = task
                self._by_status[task.status].add(task.task_id)

    def claim_next(self, now: datetime, audit_id: Optional[str] = None) -> Optional[ChunkTask]:
        with self._lock:
            candidates = (self._tasks[i] for i in self._by_status[ChunkStatus.PENDING.value])
            if audit_id is not None:
                candidates = (t for t in candidates if t.audit_id == audit_id)
            task = select_next(candidates)
            if task is None:
                return None
            previous = task.status
            _mark_processing(task, now)
            self._set_status(task, previous)
            return self._copy(task)

    def complete(self, task_id: str, anomalies_found: int, truncated: int, now: datetime) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return False
            previous = task.status
            changed = _mark_completed(task, anomalies_found, truncated, now)
            self._set_status(task, previous)
            return changed

    def fail(self, task_id: str, message: str, now: datetime) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return False
            previous = task.status
            changed = _mark_error(task, message, now)
            self._set_status(task, previous)
            return changed

    def reset_stale(self, now: datetime, stale_after: timedelta, audit_id: Optional[str] = None) -> List[ChunkTask]:
        with self._lock:
            reset = []
            for task_id in list(self._by_status[ChunkStatus.PROCESSING.value]):
                task = self._tasks[task_id]
                if audit_id is not None and task.audit_id != audit_id:
                    continue
                if is_stale(task, now, stale_after):
                    _reset(task)
                    self._set_status(task, ChunkStatus.PROCESSING.value)
                    reset.append(self._copy(task))
            return reset

    def tasks_for(self, audit_id: str) -> List[ChunkTask]:
        with self._lock:
            tasks = [self._copy(t) for t in self._tasks.values() if t.audit_id == audit_id]
        return sorted(tasks, key=lambda t: t.chunk_index)

    def all_tasks(self) -> List[ChunkTask]:
        with self._lock:
            return [self._copy(t) for t in self._tasks.values()]

    def delete_audit(self, audit_id: str) -> int:
        with self._lock:
            doomed = [t for t in self._tasks.values() if t.audit_id == audit_id]
            for task in doomed:
                del self._tasks[task.task_id]
                self._by_status[task.status].discard(task.task_id)
            return len(doomed)


class StorageChunkQueue(ChunkQueue):
    """
    Queue persisted per audit through StorageService.

    Every operation reads the audit's task file, applies the transition and
    writes it back, so separate worker processes see each other's progress.
    Claims are atomic only within one process; across processes a chunk may
    be claimed twice and findings are de-duplicated by id downstream.
    """

    def __init__(self, storage):
        self.storage = storage
        self._lock = threading.RLock()

    def _load(self, audit_id: str) -> List[ChunkTask]:
        return [ChunkTask.from_dict(d) for d in self.storage.load_chunk_tasks(audit_id)]

    def _save(self, audit_id: str, tasks: List[ChunkTask]):
        self.storage.save_chunk_tasks(audit_id, [t.to_dict() for t in sorted(tasks, key=lambda t: t.chunk_index)])

    def _find(self, task_id: str):
        for audit_id in self.storage.list_audit_ids():
            tasks = self._load(audit_id)
            for task in tasks:
                if task.task_id == task_id:
                    return audit_id, tasks, task
        return None, [], None

    def add_tasks(self, tasks: List[ChunkTask]) -> None:
        with self._lock:
            by_audit: Dict[str, List[ChunkTask]] = {}
            for task in tasks:
                by_audit.setdefault(task.audit_id, []).append(task)
            for audit_id, new_tasks in by_audit.items():
                self._save(audit_id, self._load(audit_id) + new_tasks)

    def claim_next(self, now: datetime, audit_id: Optional[str] = None) -> Optional[ChunkTask]:
        with self._lock:
            audit_ids = [audit_id] if audit_id is not None else self.storage.list_audit_ids()
            loaded = {a: self._load(a) for a in audit_ids}
            task = select_next(t for tasks in loaded.values() for t in tasks)
            if task is None:
                return None
            _mark_processing(task, now)
            self._save(task.audit_id, loaded[task.audit_id])
            return ChunkTask.from_dict(task.to_dict())

    def complete(self, task_id: str, anomalies_found: int, truncated: int, now: datetime) -> bool:
        with self._lock:
            audit_id, tasks, task = self._find(task_id)
            if task is None:
                return False
            changed = _mark_completed(task, anomalies_found, truncated, now)
            if changed:
                self._save(audit_id, tasks)
            return changed

    def fail(self, task_id: str, message: str, now: datetime) -> bool:
        with self._lock:
            audit_id, tasks, task = self._find(task_id)
            if task is None:
                return False
            changed = _mark_error(task, message, now)
            if changed:
                self._save(audit_id, tasks)
            return changed

    def reset_stale(self, now: datetime, stale_after: timedelta, audit_id: Optional[str] = None) -> List[ChunkTask]:
        with self._lock:
            reset = []
            audit_ids = [audit_id] if audit_id is not None else self.storage.list_audit_ids()
            for current in audit_ids:
                tasks = self._load(current)
                stale = [t for t in tasks if is_stale(t, now, stale_after)]
                for task in stale:
                    _reset(task)
                    reset.append(ChunkTask.from_dict(task.to_dict()))
                if stale:
                    self._save(current, tasks)
            return reset

    def tasks_for(self, audit_id: str) -> List[ChunkTask]:
        with self._lock:
            return sorted(self._load(audit_id), key=lambda t: t.chunk_index)

    def all_tasks(self) -> List[ChunkTask]:
        with self._lock:
            return [t for a in self.storage.list_audit_ids() for t in self._load(a)]

    def delete_audit(self, audit_id: str) -> int:
        with self._lock:
            count = len(self._load(audit_id))
            self.storage.delete_chunk_tasks(audit_id)
            return count
