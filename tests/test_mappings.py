from recon_engine.canonical_fields import LedgerField, ProcessorField
from recon_engine.mappings import (
    LEDGER_COLUMN_HINTS,
    apply_column_mapping,
    build_column_mapping,
    find_column,
    map_ledger_columns,
    map_processor_columns,
    normalize_header,
)

import pandas as pd


def test_normalize_header() -> None:
    assert normalize_header("  Customer ID ") == "customer_id"
    assert normalize_header("Created-At") == "created_at"


def test_mapping_is_deterministic() -> None:
    headers = ["Charge ID", "Customer", "Amount", "Fee", "Status", "Created (UTC)", "Payout"]
    first = map_processor_columns(headers)
    second = map_processor_columns(list(headers))
    assert first.to_dict() == second.to_dict()


def test_exact_match_wins_over_substring() -> None:
    mapping = map_ledger_columns(["Customer Name", "customer"])
    assert mapping.get(LedgerField.CUSTOMER_ID) == "customer"
    assert mapping.get(LedgerField.CUSTOMER_NAME) == "Customer Name"


def test_earlier_hint_wins() -> None:
    # "customer" precedes "customer_id" in the processor hints
    mapping = map_processor_columns(["customer_id", "customer"])
    assert mapping.get(ProcessorField.CUSTOMER_ID) == "customer"


def test_substring_fallback() -> None:
    mapping = map_ledger_columns(["Stripe Customer Ref", "Charge Total (USD)"])
    assert mapping.get(LedgerField.CUSTOMER_ID) == "Stripe Customer Ref"
    assert mapping.get(LedgerField.AMOUNT) == "Charge Total (USD)"


def test_header_is_never_claimed_twice() -> None:
    mapping = map_ledger_columns(["id", "customer", "amount", "net", "fee"])
    values = list(mapping.to_dict().values())
    assert len(values) == len(set(values))
    assert mapping.get(LedgerField.TRANSACTION_ID) == "id"
    assert mapping.get(LedgerField.NET_AMOUNT) == "net"
    assert mapping.get(LedgerField.FEE_AMOUNT) == "fee"


def test_unmatched_fields_are_absent() -> None:
    mapping = build_column_mapping(["customer_id", "amount"], LEDGER_COLUMN_HINTS, name="ledger")
    assert not mapping.has(LedgerField.INVOICE_ID)
    assert "invoice_id" in mapping.missing([LedgerField.INVOICE_ID, LedgerField.AMOUNT])
    assert "amount" not in mapping.missing([LedgerField.INVOICE_ID, LedgerField.AMOUNT])


def test_find_column_respects_claimed_headers() -> None:
    assert find_column(["amount", "total"], ["amount", "total"], claimed=["amount"]) == "total"
    assert find_column(["gross_amount_usd"], ["amount"], allow_substring=False) is None


def test_apply_mapping_fills_missing_columns() -> None:
    raw = pd.DataFrame({"Customer": ["c1"], "Amount": ["500"]})
    mapping = map_ledger_columns(list(raw.columns))
    df = apply_column_mapping(raw, mapping, LedgerField)
    assert list(df.columns) == [f.value for f in LedgerField]
    assert df.loc[0, "customer_id"] == "c1"
    assert df.loc[0, "invoice_id"] == ""
