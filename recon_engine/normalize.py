"""
Normalization logic for ledger and processor datasets.
Converts raw rows into canonical records.
"""
from enum import Enum
from typing import Any, Optional, Type
import logging
import math
import re
import warnings

import pandas as pd

from .canonical_fields import (
    LedgerField,
    ProcessorField,
    DerivedField,
    AMOUNT_FIELDS,
    BOOLEAN_FIELDS,
    OPTIONAL_AMOUNT_FIELDS,
    TIMESTAMP_FIELDS,
)
from .mappings import ColumnMapping, apply_column_mapping

logger = logging.getLogger(__name__)

TRUE_VALUES = frozenset({"true", "1", "yes", "y", "t"})
_NON_NUMERIC = re.compile(r"[^0-9.\-]")
# A decimal point, currency symbol or thousands separator means major units
_MAJOR_UNIT_MARKS = re.compile(r"[.,$€£¥]")
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return str(value).strip() == ""


def _parse_number(value: Any) -> Optional[float]:
    """Strip a cell down to digits, '.', '-' and parse it; None if unusable."""
    if _is_blank(value) or isinstance(value, bool):
        return None
    cleaned = _NON_NUMERIC.sub("", str(value))
    if not cleaned:
        return None
    try:
        number = float(cleaned)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_amount(value: Any) -> int:
    """
    Parse a monetary cell into integer minor currency units.

    Values written with a decimal point, a currency symbol or a thousands
    separator ("12.50", "$12", "1,299") are read as major units and scaled
    by 100. Bare integral values are already minor units. Empty or
    non-numeric cells become 0.
    """
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return 0
        return int(value) if value.is_integer() else int(round(value * 100))

    number = _parse_number(value)
    if number is None:
        return 0
    if _MAJOR_UNIT_MARKS.search(str(value)):
        return int(round(number * 100))
    return int(number)


def parse_optional_amount(value: Any) -> Optional[int]:
    """Like parse_amount, but an empty cell stays unknown."""
    if _is_blank(value):
        return None
    return parse_amount(value)


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if _is_blank(value):
        return False
    return str(value).strip().lower() in TRUE_VALUES


def parse_timestamp(value: Any) -> pd.Timestamp:
    """
    Parse a timestamp cell into a UTC Timestamp.

    Numbers in [1e9, 1e10) are epoch seconds, numbers >= 1e12 epoch
    milliseconds. Anything else is parsed as a date string. Returns NaT
    when the value cannot be read.
    """
    if isinstance(value, pd.Timestamp):
        return value.tz_localize("UTC") if value.tzinfo is None else value.tz_convert("UTC")
    if _is_blank(value):
        return pd.NaT

    text = str(value).strip()
    try:
        number = float(text)
    except ValueError:
        number = None

    if number is not None:
        if not math.isfinite(number):
            return pd.NaT
        if 1e9 <= number < 1e10:
            return pd.Timestamp(int(number), unit="s", tz="UTC")
        if number >= 1e12:
            return pd.Timestamp(int(number), unit="ms", tz="UTC")
        return pd.NaT

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        try:
            return pd.to_datetime(text, utc=True, errors="coerce")
        except (ValueError, TypeError, OverflowError):
            return pd.NaT


def normalize_customer_id(value: Any) -> str:
    """Reduce a customer id to lower-case alphanumerics for matching."""
    if _is_blank(value):
        return ""
    return _NON_ALNUM.sub("", str(value).strip().lower())


def _non_blank_rows(raw: pd.DataFrame) -> pd.Series:
    if raw.empty:
        return pd.Series([], dtype=bool, index=raw.index)
    text = raw.fillna("").astype(str)
    return text.apply(lambda col: col.str.strip() != "").any(axis=1)


def normalize_records(
    raw: pd.DataFrame,
    mapping: ColumnMapping,
    schema: Type[Enum],
    name: Optional[str] = None,
) -> pd.DataFrame:
    """
    Normalize a raw dataset to canonical format.

    Input: DataFrame with arbitrary source headers, untyped cells
    Output: DataFrame with every canonical column of the schema plus
            row_number, customer_key, day and month

    Fully blank rows are dropped. Bad cells never raise: amounts fall back
    to 0, timestamps to NaT.
    """
    name = name or mapping.name
    before_count = len(raw)
    raw = raw[_non_blank_rows(raw)]
    dropped = before_count - len(raw)
    if dropped:
        logger.info(f"[NORMALIZE] {name}: dropped {dropped} blank row(s)")

    df = apply_column_mapping(raw, mapping, schema).reset_index(drop=True)
    columns = set(df.columns)

    for col in AMOUNT_FIELDS & columns:
        if col in OPTIONAL_AMOUNT_FIELDS:
            # object dtype keeps None for unknown fees instead of NaN
            df[col] = pd.Series([parse_optional_amount(v) for v in df[col]], index=df.index, dtype=object)
        else:
            coerced = int(sum(1 for v in df[col] if not _is_blank(v) and _parse_number(v) is None))
            if coerced:
                logger.debug(f"[NORMALIZE] {name}: {coerced} unparseable '{col}' cell(s) coerced to 0")
            df[col] = df[col].map(parse_amount).astype("int64")

    for col in (TIMESTAMP_FIELDS | {ProcessorField.TIMESTAMP.value}) & columns:
        df[col] = pd.to_datetime(df[col].map(parse_timestamp), utc=True)

    df["status"] = df["status"].str.strip().str.lower()
    for col in BOOLEAN_FIELDS & columns:
        df[col] = df[col].map(parse_bool).astype(bool)
    df["currency"] = df["currency"].str.strip().str.upper()
    df["description"] = df["description"].str.strip()
    df["customer_id"] = df["customer_id"].str.strip()
    if ProcessorField.OBJECT.value in columns and schema is ProcessorField:
        df[ProcessorField.OBJECT.value] = df[ProcessorField.OBJECT.value].str.strip().str.lower()

    timestamps = df["timestamp"]
    df[DerivedField.ROW_NUMBER.value] = range(len(df))
    df[DerivedField.CUSTOMER_KEY.value] = df["customer_id"].map(normalize_customer_id)
    df[DerivedField.DAY.value] = timestamps.dt.strftime("%Y-%m-%d").fillna("")
    df[DerivedField.MONTH.value] = timestamps.dt.strftime("%Y-%m").fillna("")

    logger.info(
        f"[NORMALIZE] {name}: {len(df)} record(s), "
        f"{int((df[DerivedField.CUSTOMER_KEY.value] == '').sum())} without customer, "
        f"{int(timestamps.isna().sum())} without timestamp"
    )
    return df


def normalize_ledger(raw: pd.DataFrame, mapping: ColumnMapping) -> pd.DataFrame:
    """Normalize the internal ledger."""
    return normalize_records(raw, mapping, LedgerField, name="ledger")


def normalize_processor(raw: pd.DataFrame, mapping: ColumnMapping) -> pd.DataFrame:
    """Normalize the processor export."""
    return normalize_records(raw, mapping, ProcessorField, name="processor")
