"""
Centralized configuration for the Ledger Reconciliation engine.
Tolerances, presets, engine limits, storage and trigger settings are defined here.
"""
from dataclasses import dataclass, field, fields, asdict, replace
from typing import Any, Dict, Optional
from pathlib import Path
import logging
import math
import os

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationConfig:
    """Resolved detection parameters for one reconciliation run."""
    payout_grace_days: float = 4
    unreconciled_risk_pct: float = 0.05
    fee_discrepancy_threshold_cents: int = 100
    timing_mismatch_days: float = 1
    payout_group_min_transactions: int = 3
    gross_diff_threshold_cents: int = 100
    annualization_months: int = 12
    chargeback_fee_amount: float = 15
    currency_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_external(self) -> Dict[str, Any]:
        """Serialize using the camelCase keys of the settings surface."""
        return {FIELD_TO_EXTERNAL_KEY[k]: v for k, v in asdict(self).items()}


# camelCase keys used by organization settings and request overrides
EXTERNAL_KEY_TO_FIELD: Dict[str, str] = {
    "payoutGraceDays": "payout_grace_days",
    "unreconciledRiskPct": "unreconciled_risk_pct",
    "feeDiscrepancyThresholdCents": "fee_discrepancy_threshold_cents",
    "timingMismatchDays": "timing_mismatch_days",
    "payoutGroupMinTransactions": "payout_group_min_transactions",
    "grossDiffThresholdCents": "gross_diff_threshold_cents",
    "annualizationMonths": "annualization_months",
    "chargebackFeeAmount": "chargeback_fee_amount",
    "currencyCode": "currency_code",
}
FIELD_TO_EXTERNAL_KEY: Dict[str, str] = {v: k for k, v in EXTERNAL_KEY_TO_FIELD.items()}

# Keys that must stay at or above 1; every other numeric key is clamped at 0
MIN_ONE_FIELDS = frozenset({"payout_group_min_transactions", "annualization_months"})
INTEGER_FIELDS = frozenset({
    "fee_discrepancy_threshold_cents",
    "payout_group_min_transactions",
    "gross_diff_threshold_cents",
    "annualization_months",
})


PRESETS: Dict[str, ReconciliationConfig] = {
    "startup": ReconciliationConfig(
        payout_grace_days=2,
        unreconciled_risk_pct=0.08,
        fee_discrepancy_threshold_cents=50,
        timing_mismatch_days=1,
        payout_group_min_transactions=2,
        gross_diff_threshold_cents=50,
        annualization_months=12,
        chargeback_fee_amount=15,
    ),
    "scale": ReconciliationConfig(
        payout_grace_days=4,
        unreconciled_risk_pct=0.05,
        fee_discrepancy_threshold_cents=100,
        timing_mismatch_days=2,
        payout_group_min_transactions=3,
        gross_diff_threshold_cents=100,
        annualization_months=12,
        chargeback_fee_amount=15,
    ),
    "enterprise": ReconciliationConfig(
        payout_grace_days=7,
        unreconciled_risk_pct=0.03,
        fee_discrepancy_threshold_cents=250,
        timing_mismatch_days=3,
        payout_group_min_transactions=5,
        gross_diff_threshold_cents=250,
        annualization_months=12,
        chargeback_fee_amount=15,
    ),
}


def _coerce_number(value: Any) -> Optional[float]:
    """Return a finite float, or None if the value is not usable."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def sanitize_overrides(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Normalize a settings dict into ReconciliationConfig field values.

    Accepts camelCase or snake_case keys. Unknown keys and non-finite
    numbers are dropped; numbers are clamped to their allowed floor.

    Args:
        raw: Settings as received from organization config or a request

    Returns:
        Dict keyed by ReconciliationConfig field name
    """
    if not raw:
        return {}

    known = {f.name for f in fields(ReconciliationConfig)}
    clean: Dict[str, Any] = {}

    for key, value in raw.items():
        name = EXTERNAL_KEY_TO_FIELD.get(key, key)
        if name not in known:
            continue

        if name == "currency_code":
            if value is None:
                clean[name] = None
            elif isinstance(value, str):
                code = value.strip().upper()
                clean[name] = code or None
            continue

        number = _coerce_number(value)
        if number is None:
            logger.debug(f"[CONFIG] Ignoring non-numeric value for {key}: {value!r}")
            continue

        floor = 1 if name in MIN_ONE_FIELDS else 0
        number = max(floor, number)
        clean[name] = int(round(number)) if name in INTEGER_FIELDS else number

    return clean


def resolve_config(
    org_settings: Optional[Dict[str, Any]] = None,
    overrides: Optional[Dict[str, Any]] = None,
    preset: Optional[str] = None,
) -> ReconciliationConfig:
    """
    Merge engine defaults, a named preset, organization settings and request overrides.

    Precedence (lowest to highest): defaults, preset, organization settings,
    request overrides. Organization settings may be flat or nest their values
    under a ``settings`` key next to an optional ``preset`` name.

    Args:
        org_settings: Stored organization-level settings
        overrides: Per-request overrides
        preset: Preset name; falls back to the organization's stored preset

    Returns:
        Immutable ReconciliationConfig
    """
    org_settings = org_settings or {}
    nested = org_settings.get("settings")
    org_values = nested if isinstance(nested, dict) else org_settings

    preset_name = preset or org_settings.get("preset")
    resolved = ReconciliationConfig()
    if preset_name:
        if preset_name not in PRESETS:
            raise ValueError(
                f"Unknown preset '{preset_name}'. Available presets: {sorted(PRESETS)}"
            )
        resolved = PRESETS[preset_name]

    resolved = replace(resolved, **sanitize_overrides(org_values))
    resolved = replace(resolved, **sanitize_overrides(overrides))
    return resolved


@dataclass
class EngineLimits:
    """Bounds for chunked execution."""
    direct_processing_limit: int = 3000  # total rows handled in a single pass
    chunk_size: int = 1000
    max_findings_per_detector: int = 30
    stale_after_seconds: int = 120
    audit_timeout_seconds: int = 300


@dataclass
class StorageConfig:
    """Configuration for audit persistence."""
    base_dir: Path = field(default_factory=lambda: Path(os.getenv('RECON_STORAGE_DIR', 'instance/audits')))
    inputs_dir: str = "inputs"
    audit_file: str = "audit.json"
    queue_file: str = "queue.json"
    findings_file: str = "findings.json"


@dataclass
class TriggerConfig:
    """How the next chunk gets triggered once one completes."""
    # "local" keeps work on an in-process channel, "http" calls the process-chunk endpoint
    mode: str = field(default_factory=lambda: os.getenv('RECON_TRIGGER_MODE', 'local'))
    endpoint_url: Optional[str] = field(default_factory=lambda: os.getenv('RECON_TRIGGER_URL'))
    signing_secret: Optional[str] = field(default_factory=lambda: os.getenv('RECON_TRIGGER_SECRET'))
    token_ttl_seconds: int = 300
    request_timeout_seconds: float = 10.0

    def is_http(self) -> bool:
        return self.mode == "http" and bool(self.endpoint_url)


@dataclass
class EngineConfig:
    """Main configuration container."""
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    limits: EngineLimits = field(default_factory=EngineLimits)
    storage: StorageConfig = field(default_factory=StorageConfig)
    trigger: TriggerConfig = field(default_factory=TriggerConfig)


# Global configuration instance
config = EngineConfig()
