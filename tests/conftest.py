"""Shared fixtures: normalized frames, temp storage and a controllable clock."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pandas as pd
import pytest

from config import EngineLimits, ReconciliationConfig
from recon_engine.mappings import map_ledger_columns, map_processor_columns
from recon_engine.normalize import normalize_ledger, normalize_processor
from recon_engine.work_queue import InMemoryChunkQueue
from storage.service import StorageService

LEDGER_HEADERS = [
    "transaction_id", "customer_id", "amount", "fee_amount", "status",
    "created_at", "description", "disputed", "invoice_id",
]
PROCESSOR_HEADERS = [
    "id", "customer", "amount", "fee", "status", "created",
    "description", "payout_id", "object", "amount_refunded", "invoice",
]


def _raw_frame(rows, headers) -> pd.DataFrame:
    return pd.DataFrame(
        [{h: str(row.get(h, "")) for h in headers} for row in rows],
        columns=headers,
    )


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def ledger_frame():
    def build(rows) -> pd.DataFrame:
        raw = _raw_frame(rows, LEDGER_HEADERS)
        return normalize_ledger(raw, map_ledger_columns(list(raw.columns)))
    return build


@pytest.fixture
def processor_frame():
    def build(rows) -> pd.DataFrame:
        raw = _raw_frame(rows, PROCESSOR_HEADERS)
        return normalize_processor(raw, map_processor_columns(list(raw.columns)))
    return build


@pytest.fixture
def write_inputs(tmp_path: Path):
    """Write a ledger and a processor CSV; returns their paths."""
    def write(ledger_rows, processor_rows, name: str = "inputs"):
        folder = tmp_path / name
        folder.mkdir(parents=True, exist_ok=True)
        ledger_path = folder / "ledger.csv"
        processor_path = folder / "processor.csv"
        _raw_frame(ledger_rows, LEDGER_HEADERS).to_csv(ledger_path, index=False)
        _raw_frame(processor_rows, PROCESSOR_HEADERS).to_csv(processor_path, index=False)
        return ledger_path, processor_path
    return write


@pytest.fixture
def recon_config() -> ReconciliationConfig:
    return ReconciliationConfig()


@pytest.fixture
def storage(tmp_path: Path) -> StorageService:
    return StorageService(base_dir=tmp_path / "audits")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def memory_queue() -> InMemoryChunkQueue:
    return InMemoryChunkQueue()


@pytest.fixture
def small_limits() -> EngineLimits:
    """Chunk anything above four rows, two rows per chunk."""
    return EngineLimits(direct_processing_limit=4, chunk_size=2)
