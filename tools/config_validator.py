"""
Configuration Validation Module

Validates policy.yaml and app.yaml against Pydantic schemas, then runs
cross-field sanity checks. Every section is optional; a missing section
means the component defaults apply.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

from core.pre_trade_guard import VETO_RULES

logger = logging.getLogger(__name__)


# ===== Policy Schema =====
class CircuitBreakerConfig(BaseModel):
    """Entry gate thresholds"""
    enabled: bool = True
    daily_loss_limit_pct: float = Field(default=5.0, gt=0, le=100, description="Daily loss limit %")
    consecutive_losses_limit: int = Field(default=5, gt=0, description="Losing trades in a row before pause")
    api_error_rate_limit_pct: float = Field(default=50.0, gt=0, le=100, description="Rolling API error rate %")
    api_error_window_seconds: int = Field(default=600, gt=0, description="API error window (seconds)")
    min_api_samples: int = Field(default=10, ge=1, description="Calls before the error rate counts")
    margin_level_min_pct: Optional[float] = Field(default=None, gt=0, description="HALT below this margin level %")
    reset_timezone: str = Field(default="UTC", description="Timezone of the daily reset")

    @field_validator("reset_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v


class ReconciliationConfig(BaseModel):
    enabled: bool = True
    account_address: Optional[str] = None
    import_manual_opens: bool = False
    abs_tolerance: float = Field(default=0.001, ge=0)
    rel_tolerance_pct: float = Field(default=1.0, ge=0, le=100)


class StopLossConfig(BaseModel):
    enabled: bool = True
    default_stop_loss_pct: Optional[float] = Field(default=None, gt=0, le=100)


class TakeProfitConfig(BaseModel):
    enabled: bool = True
    levels_pct: List[float] = Field(default_factory=lambda: [2.0, 4.0, 6.0])
    sizes_pct: List[float] = Field(default_factory=lambda: [50.0, 30.0, 20.0])
    move_stop_to_breakeven: bool = True

    @field_validator("levels_pct", "sizes_pct")
    @classmethod
    def validate_positive(cls, v: List[float]) -> List[float]:
        """Tier values must be positive"""
        for pct in v:
            if pct <= 0:
                raise ValueError(f"take-profit tier values must be positive, got {pct}")
        return v


class TrailingStopConfig(BaseModel):
    enabled: bool = True
    distance_pct: float = Field(default=1.0, gt=0, le=100)
    activate_after_gain_pct: float = Field(default=1.0, ge=0)


class SignalReversalConfig(BaseModel):
    enabled: bool = True
    confidence_threshold: float = Field(default=0.6, ge=0, le=1)


class RankingDropConfig(BaseModel):
    enabled: bool = True
    top_n: int = Field(default=5, gt=0)
    buffer: int = Field(default=2, ge=0)
    confirmation_cycles: int = Field(default=2, ge=1)
    history_length: int = Field(default=10, ge=1)


class IndicatorExitConfig(BaseModel):
    enabled: bool = True
    rsi_threshold: float = Field(default=70.0, gt=50, lt=100)
    macd_crossover: bool = True
    ema_break: bool = True
    structure_break: bool = True
    atr_expansion: bool = True
    atr_expansion_multiplier: float = Field(default=2.5, gt=1)
    require_confirmation: bool = True


class ExitsConfig(BaseModel):
    stop_loss: StopLossConfig = Field(default_factory=StopLossConfig)
    take_profit: TakeProfitConfig = Field(default_factory=TakeProfitConfig)
    trailing_stop: TrailingStopConfig = Field(default_factory=TrailingStopConfig)
    signal_reversal: SignalReversalConfig = Field(default_factory=SignalReversalConfig)
    ranking_drop: RankingDropConfig = Field(default_factory=RankingDropConfig)
    indicator: IndicatorExitConfig = Field(default_factory=IndicatorExitConfig)


class GuardConfigSchema(BaseModel):
    """Pre-trade veto thresholds"""
    enabled: bool = True
    rules: Optional[List[str]] = None
    pump_m60_pct: float = Field(default=2.0, gt=0)
    pump_volume_ratio: float = Field(default=1.5, gt=0)
    rsi_overbought: float = Field(default=85.0, gt=50, le=100)
    rsi_oversold: float = Field(default=15.0, ge=0, lt=50)
    min_sr_distance_pct: float = Field(default=0.3, ge=0)
    resistance_band_below_pct: float = Field(default=0.5, ge=0)
    resistance_band_above_pct: float = Field(default=1.0, ge=0)
    exhaustion_m60_pct: float = Field(default=1.5, gt=0)
    volume_lookback: int = Field(default=20, ge=1)

    @field_validator("rules")
    @classmethod
    def validate_rule_names(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        known = {rule.name for rule in VETO_RULES}
        unknown = [name for name in v if name not in known]
        if unknown:
            raise ValueError(f"Unknown guard rules {unknown}; known: {sorted(known)}")
        return v


class EntriesConfig(BaseModel):
    min_confidence: float = Field(default=0.60, ge=0, le=1, description="Minimum signal confidence")
    max_open_positions: int = Field(default=10, gt=0, description="Max concurrently held symbols")
    default_leverage: float = Field(default=10.0, ge=1, le=100)


class SelectionConfig(BaseModel):
    top_k: int = Field(default=5, gt=0)
    policy: str = Field(default="top_n", pattern="^(top_n|action_filter)$")
    allowed_actions: List[str] = Field(default_factory=lambda: ["LONG", "SHORT"])
    include_open_positions: bool = True


class LedgerConfig(BaseModel):
    epsilon: float = Field(default=1e-4, gt=0)
    default_risk_pct: float = Field(default=2.0, gt=0, le=100)
    history_limit: int = Field(default=200, ge=0)


class MarketDataConfig(BaseModel):
    universe: List[str] = Field(default_factory=list)
    max_workers: int = Field(default=8, ge=1, le=64)


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    exits: ExitsConfig = Field(default_factory=ExitsConfig)
    guard: GuardConfigSchema = Field(default_factory=GuardConfigSchema)
    entries: EntriesConfig = Field(default_factory=EntriesConfig)
    selection: SelectionConfig = Field(default_factory=SelectionConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)


# ===== App Schema =====
class AppSection(BaseModel):
    name: str = "cycletrader"
    mode: str = Field(default="PAPER", pattern="^(PAPER|LIVE)$")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = "logs/cycletrader.log"


class LoopConfig(BaseModel):
    interval_seconds: float = Field(default=300.0, gt=0)
    jitter_pct: float = Field(default=10.0, ge=0, le=50)


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)


class CollaboratorsConfig(BaseModel):
    """module:Class import paths"""
    market_data: Optional[str] = None
    ranker: Optional[str] = None
    signal_generator: Optional[str] = None
    executor: Optional[str] = None  # required in LIVE mode

    @field_validator("market_data", "ranker", "signal_generator", "executor")
    @classmethod
    def validate_import_path(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and ":" not in v:
            raise ValueError(f"expected 'module:Class', got {v!r}")
        return v


class PaperConfig(BaseModel):
    capital: float = Field(default=10_000.0, gt=0)
    slippage_bps: float = Field(default=5.0, ge=0)
    position_size_pct: float = Field(default=10.0, gt=0, le=100)
    default_leverage: float = Field(default=10.0, ge=1)


class AppSchema(BaseModel):
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    state: Dict[str, Any] = Field(default_factory=dict)
    audit: Dict[str, Any] = Field(default_factory=dict)
    trades: Dict[str, Any] = Field(default_factory=dict)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    alerts: Dict[str, Any] = Field(default_factory=dict)
    collaborators: CollaboratorsConfig = Field(default_factory=CollaboratorsConfig)
    account: Dict[str, Any] = Field(default_factory=dict)
    paper: PaperConfig = Field(default_factory=PaperConfig)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    problem = getattr(error, "problem", str(error))
    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"

    snippet = "\n".join(
        f"{'▶' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(max(line - 2, 0), min(line + 3, len(raw_lines)))
    )
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict (empty file -> {}).

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _schema_errors(label: str, schema, data: Any) -> List[str]:
    if not isinstance(data, dict):
        return [f"{label}: expected a mapping at top level, got {type(data).__name__}"]
    try:
        schema(**data)
    except ValidationError as e:
        return [
            f"{label}: {' -> '.join(str(loc) for loc in error['loc'])}: {error['msg']}"
            for error in e.errors()
        ]
    return []


def policy_sanity_errors(policy: Dict[str, Any]) -> List[str]:
    """Cross-field checks the per-field schema cannot express."""
    errors = []
    exits = policy.get("exits", {}) or {}
    tp = exits.get("take_profit", {}) or {}
    levels = tp.get("levels_pct", [2.0, 4.0, 6.0])
    sizes = tp.get("sizes_pct", [50.0, 30.0, 20.0])
    if len(levels) != len(sizes):
        errors.append(
            f"exits.take_profit: levels_pct ({len(levels)}) and sizes_pct ({len(sizes)}) must have equal length"
        )
    if list(levels) != sorted(levels):
        errors.append("exits.take_profit.levels_pct must be ascending")
    if sum(sizes) > 100.0 + 1e-9:
        errors.append(f"exits.take_profit.sizes_pct sum to {sum(sizes)}% (max 100%)")

    guard = policy.get("guard", {}) or {}
    if guard.get("rsi_oversold", 15.0) >= guard.get("rsi_overbought", 85.0):
        errors.append("guard: rsi_oversold must be below rsi_overbought")

    selection = policy.get("selection", {}) or {}
    if selection.get("policy") == "action_filter" and not selection.get("allowed_actions", ["LONG", "SHORT"]):
        errors.append("selection.allowed_actions must not be empty with the action_filter policy")
    return errors


def validate_policy_dict(policy: Optional[Dict[str, Any]]) -> List[str]:
    """
    Validate an in-memory policy.

    Returns:
        List of error messages (empty if valid)
    """
    errors = _schema_errors("policy", PolicySchema, policy if policy is not None else {})
    if not errors:
        errors.extend(policy_sanity_errors(policy or {}))
    return errors


def _validate_file(config_dir: Path, name: str, schema) -> List[str]:
    try:
        data = load_yaml_file(config_dir / name)
    except FileNotFoundError as e:
        return [f"{name}: {e}"]
    except yaml.YAMLError as e:
        return [f"{name}: Invalid YAML - {e}"]
    errors = _schema_errors(name, schema, data)
    if not errors:
        logger.info(f"✅ {name} validation passed")
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks) of policy.yaml and app.yaml
    2. Sanity checks (logical consistency, LIVE-mode requirements)

    Args:
        config_dir: Path to config directory (string or Path)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(_validate_file(config_path, "policy.yaml", PolicySchema))
    all_errors.extend(_validate_file(config_path, "app.yaml", AppSchema))

    if not all_errors:
        policy = load_yaml_file(config_path / "policy.yaml")
        app = load_yaml_file(config_path / "app.yaml")
        all_errors.extend(f"policy.yaml: {e}" for e in policy_sanity_errors(policy))

        mode = str((app.get("app", {}) or {}).get("mode", "PAPER")).upper()
        recon = policy.get("reconciliation", {}) or {}
        if mode == "LIVE" and not recon.get("account_address"):
            all_errors.append("policy.yaml: reconciliation.account_address is required in LIVE mode")
        collaborators = app.get("collaborators", {}) or {}
        if mode == "LIVE" and not collaborators.get("executor"):
            all_errors.append("app.yaml: collaborators.executor is required in LIVE mode")

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
