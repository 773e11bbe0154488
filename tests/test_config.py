import pytest

from config import PRESETS, ReconciliationConfig, resolve_config, sanitize_overrides


def test_defaults() -> None:
    resolved = resolve_config()
    assert resolved == ReconciliationConfig()
    assert resolved.payout_grace_days == 4
    assert resolved.fee_discrepancy_threshold_cents == 100
    assert resolved.currency_code is None


def test_preset_applies() -> None:
    resolved = resolve_config(preset="enterprise")
    assert resolved == PRESETS["enterprise"]
    assert resolved.payout_grace_days == 7


def test_unknown_preset_is_rejected() -> None:
    with pytest.raises(ValueError):
        resolve_config(preset="galactic")


def test_precedence_preset_org_overrides() -> None:
    org = {"preset": "startup", "settings": {"payoutGraceDays": 5, "timingMismatchDays": 2}}
    resolved = resolve_config(org, overrides={"timingMismatchDays": 3})

    assert resolved.fee_discrepancy_threshold_cents == PRESETS["startup"].fee_discrepancy_threshold_cents
    assert resolved.payout_grace_days == 5
    assert resolved.timing_mismatch_days == 3


def test_flat_org_settings_and_snake_case_keys() -> None:
    resolved = resolve_config({"gross_diff_threshold_cents": 250})
    assert resolved.gross_diff_threshold_cents == 250


def test_values_are_clamped() -> None:
    clean = sanitize_overrides({
        "payoutGraceDays": -2,
        "payoutGroupMinTransactions": 0,
        "annualizationMonths": -1,
        "feeDiscrepancyThresholdCents": 99.6,
    })
    assert clean == {
        "payout_grace_days": 0,
        "payout_group_min_transactions": 1,
        "annualization_months": 1,
        "fee_discrepancy_threshold_cents": 100,
    }


def test_non_finite_and_unknown_values_are_ignored() -> None:
    clean = sanitize_overrides({
        "payoutGraceDays": float("nan"),
        "unreconciledRiskPct": "inf",
        "chargebackFeeAmount": "abc",
        "somethingElse": 3,
        "timingMismatchDays": True,
    })
    assert clean == {}


def test_currency_code_is_normalized() -> None:
    assert resolve_config(overrides={"currencyCode": " eur "}).currency_code == "EUR"
    assert resolve_config(overrides={"currencyCode": "  "}).currency_code is None


def test_external_round_trip() -> None:
    config = ReconciliationConfig(payout_grace_days=2, currency_code="GBP")
    assert resolve_config(overrides=config.to_external()) == config
