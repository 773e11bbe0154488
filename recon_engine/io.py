"""
Data source abstraction and file loading.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional, Type
import logging

import pandas as pd

from .canonical_fields import LedgerField, ProcessorField
from .mappings import (
    ColumnMapping,
    LEDGER_COLUMN_HINTS,
    PROCESSOR_COLUMN_HINTS,
    build_column_mapping,
)
from .normalize import normalize_records

logger = logging.getLogger(__name__)


class InputError(ValueError):
    """An input file is missing or cannot be read as a table."""


class DataSourceLoader(ABC):
    """Abstract base for data source loaders."""

    @abstractmethod
    def load(self, source_path: Path) -> pd.DataFrame:
        """Load data from source and return a DataFrame of untyped string cells."""
        pass


class CsvSourceLoader(DataSourceLoader):
    """Load a delimited text export."""

    def load(self, source_path: Path) -> pd.DataFrame:
        try:
            return pd.read_csv(
                source_path,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                encoding="utf-8-sig",
            )
        except pd.errors.EmptyDataError:
            raise InputError(f"File '{source_path.name}' is empty")
        except (pd.errors.ParserError, UnicodeDecodeError) as e:
            raise InputError(f"File '{source_path.name}' could not be parsed as CSV: {e}")


class ExcelSourceLoader(DataSourceLoader):
    """Load the first sheet of an Excel workbook."""

    def load(self, source_path: Path) -> pd.DataFrame:
        try:
            df = pd.read_excel(source_path, sheet_name=0, dtype=str)
        except (ValueError, OSError) as e:
            raise InputError(f"File '{source_path.name}' could not be read as Excel: {e}")
        return df.fillna("")


LOADERS_BY_SUFFIX: Dict[str, Type[DataSourceLoader]] = {
    ".csv": CsvSourceLoader,
    ".txt": CsvSourceLoader,
    ".xlsx": ExcelSourceLoader,
    ".xls": ExcelSourceLoader,
}


def load_source(source_path) -> pd.DataFrame:
    """
    Load one tabular input file.

    Raises:
        InputError: If the file is missing, empty, of an unsupported type
            or structurally unreadable
    """
    if source_path is None:
        raise InputError("Input file path is missing")

    source_path = Path(source_path)
    if not source_path.exists():
        raise InputError(f"Input file not found: {source_path.name}")

    loader_cls = LOADERS_BY_SUFFIX.get(source_path.suffix.lower())
    if loader_cls is None:
        raise InputError(
            f"Unsupported file type '{source_path.suffix}'. "
            f"Supported: {sorted(LOADERS_BY_SUFFIX)}"
        )

    df = loader_cls().load(source_path)
    if len(df.columns) == 0:
        raise InputError(f"File '{source_path.name}' has no header row")

    logger.info(f"[IO] Loaded {len(df)} rows, {len(df.columns)} columns from {source_path.name}")
    return df


@dataclass
class LoadedDataset:
    """One input after loading, mapping and normalization."""
    name: str
    raw: pd.DataFrame
    mapping: ColumnMapping
    records: pd.DataFrame

    def __len__(self) -> int:
        return len(self.records)


def prepare_dataset(raw: pd.DataFrame, hint_table: Mapping, schema: Type[Enum], name: str) -> LoadedDataset:
    """Map and normalize an already-loaded raw DataFrame."""
    mapping = build_column_mapping(list(raw.columns), hint_table, name=name)
    records = normalize_records(raw, mapping, schema, name=name)
    return LoadedDataset(name=name, raw=raw, mapping=mapping, records=records)


def load_dataset(source_path, hint_table: Mapping, schema: Type[Enum], name: str) -> LoadedDataset:
    return prepare_dataset(load_source(source_path), hint_table, schema, name)


def load_ledger(source_path) -> LoadedDataset:
    return load_dataset(source_path, LEDGER_COLUMN_HINTS, LedgerField, "ledger")


def load_processor(source_path) -> LoadedDataset:
    return load_dataset(source_path, PROCESSOR_COLUMN_HINTS, ProcessorField, "processor")


def load_audit_inputs(ledger_path: Optional[Path], processor_path: Optional[Path]) -> Dict[str, LoadedDataset]:
    """
    Load both inputs of an audit.

    Returns dict with keys: 'ledger', 'processor'
    """
    if ledger_path is None or processor_path is None:
        raise InputError("Both a ledger file and a processor export are required")

    return {
        "ledger": load_ledger(ledger_path),
        "processor": load_processor(processor_path),
    }
