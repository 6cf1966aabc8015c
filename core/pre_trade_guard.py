"""
cycletrader Core: Pre-Trade Guard

Heuristic vetoes for candidate entries. Every rule is an independent
(name, predicate) pair in VETO_RULES; all enabled rules are evaluated
and their reasons concatenated. Adding or removing a rule is a table
edit, not a control-flow change.

Fail-open: a predicate whose inputs are missing returns no veto, and a
predicate that raises is logged and skipped. Missing analytics must not
silently block all trading.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from core.models import CandidateSignal, MarketSnapshot, Side

logger = logging.getLogger(__name__)


@dataclass
class GuardConfig:
    pump_m60_pct: float = 2.0
    pump_volume_ratio: float = 1.5
    rsi_overbought: float = 85.0
    rsi_oversold: float = 15.0
    min_sr_distance_pct: float = 0.3
    resistance_band_below_pct: float = 0.5
    resistance_band_above_pct: float = 1.0
    exhaustion_m60_pct: float = 1.5
    volume_lookback: int = 20

    @classmethod
    def from_policy(cls, policy: Optional[Dict]) -> "GuardConfig":
        cfg = (policy or {}).get("guard", {}) or {}
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in cfg.items() if k in known})


@dataclass
class GuardResult:
    allowed: bool
    veto_reasons: List[str] = field(default_factory=list)
    skipped_rules: List[str] = field(default_factory=list)  # raised, failed open


def volume_ratio(snapshot: MarketSnapshot, lookback: int = 20) -> Optional[float]:
    """Supplied ratio, else last volume / mean of up to `lookback` previous volumes."""
    if snapshot.volume_ratio is not None:
        return float(snapshot.volume_ratio)
    volumes = snapshot.volumes or []
    if len(volumes) < 2:
        return None
    previous = volumes[-(lookback + 1):-1]
    average = sum(previous) / len(previous)
    if average <= 0:
        return None
    return volumes[-1] / average


def _momentum(snapshot: MarketSnapshot, key: str) -> Optional[float]:
    value = snapshot.momentum.get(key)
    return float(value) if value is not None else None


def _trend_alignment(side: Side, snap: MarketSnapshot, cfg: GuardConfig) -> Optional[str]:
    reasons = []
    trend = (snap.daily_trend or "").lower()
    if side == Side.LONG and trend == "downtrend":
        reasons.append("daily downtrend against LONG")
    elif side == Side.SHORT and trend == "uptrend":
        reasons.append("daily uptrend against SHORT")

    misaligned = [
        name for name, aligned in (("4h", snap.h4_aligned), ("1h", snap.h1_aligned))
        if aligned is False
    ]
    if misaligned:
        reasons.append(f"intraday timeframes not aligned ({', '.join(misaligned)})")
    return "; ".join(reasons) or None


def _momentum_contradiction(side: Side, snap: MarketSnapshot, cfg: GuardConfig) -> Optional[str]:
    against = []
    for key in ("m5", "m15"):
        value = _momentum(snap, key)
        if value is None:
            continue
        if (side == Side.LONG and value <= 0) or (side == Side.SHORT and value >= 0):
            against.append(f"{key} {value:+.2f}%")
    if not against:
        return None
    return f"short-term momentum against {side.value} ({', '.join(against)})"


def _chasing(side: Side, snap: MarketSnapshot, cfg: GuardConfig) -> Optional[str]:
    m5, m15, m60 = _momentum(snap, "m5"), _momentum(snap, "m15"), _momentum(snap, "m60")
    ratio = volume_ratio(snap, cfg.volume_lookback)
    if None in (m5, m15, m60, ratio):
        return None
    if side == Side.LONG:
        extended = m60 >= cfg.pump_m60_pct and m5 > 0 and m15 > 0
    else:
        extended = m60 <= -cfg.pump_m60_pct and m5 < 0 and m15 < 0
    if extended and ratio > cfg.pump_volume_ratio:
        return f"chasing: 1h move {m60:+.2f}% on {ratio:.2f}x volume"
    return None


def _sr_proximity(side: Side, snap: MarketSnapshot, cfg: GuardConfig) -> Optional[str]:
    levels = [("support", snap.support), ("resistance", snap.resistance)]
    distances = [
        (name, abs(snap.price - level) / snap.price * 100.0)
        for name, level in levels
        if level is not None and level > 0
    ]
    if not distances or snap.price <= 0:
        return None
    name, distance = min(distances, key=lambda item: item[1])
    if distance < cfg.min_sr_distance_pct:
        return f"{distance:.2f}% from {name} (min {cfg.min_sr_distance_pct:.2f}%)"
    return None


def _near_resistance(side: Side, snap: MarketSnapshot, cfg: GuardConfig) -> Optional[str]:
    if side != Side.LONG or snap.resistance is None or snap.resistance <= 0:
        return None
    lower = snap.resistance * (1 - cfg.resistance_band_below_pct / 100.0)
    upper = snap.resistance * (1 + cfg.resistance_band_above_pct / 100.0)
    if lower <= snap.price <= upper:
        return f"price {snap.price:.4f} inside resistance band {lower:.4f}-{upper:.4f}"
    return None


def _oscillator_extreme(side: Side, snap: MarketSnapshot, cfg: GuardConfig) -> Optional[str]:
    rsi = snap.indicator("rsi14")
    if rsi is None:
        return None
    if side == Side.LONG and rsi >= cfg.rsi_overbought:
        return f"RSI {rsi:.1f} >= {cfg.rsi_overbought:.0f}"
    if side == Side.SHORT and rsi <= cfg.rsi_oversold:
        return f"RSI {rsi:.1f} <= {cfg.rsi_oversold:.0f}"
    return None


def _momentum_exhaustion(side: Side, snap: MarketSnapshot, cfg: GuardConfig) -> Optional[str]:
    if side != Side.LONG:
        return None
    m5, m15, m60 = _momentum(snap, "m5"), _momentum(snap, "m15"), _momentum(snap, "m60")
    if None in (m5, m15, m60):
        return None
    if m5 > 0 and m15 > 0 and 0 < m60 < cfg.exhaustion_m60_pct:
        return f"momentum exhaustion: short-term push on weak 1h move ({m60:+.2f}%)"
    return None


@dataclass(frozen=True)
class VetoRule:
    name: str
    predicate: Callable[[Side, MarketSnapshot, GuardConfig], Optional[str]]


VETO_RULES: Sequence[VetoRule] = (
    VetoRule("trend_alignment", _trend_alignment),
    VetoRule("momentum_contradiction", _momentum_contradiction),
    VetoRule("chasing", _chasing),
    VetoRule("sr_proximity", _sr_proximity),
    VetoRule("near_resistance", _near_resistance),
    VetoRule("oscillator_extreme", _oscillator_extreme),
    VetoRule("momentum_exhaustion", _momentum_exhaustion),
)

DEFAULT_ENABLED_RULES = (
    "trend_alignment",
    "momentum_contradiction",
    "chasing",
    "sr_proximity",
    "near_resistance",
    "oscillator_extreme",
)


class PreTradeGuard:
    """Runs the enabled VETO_RULES against an entry candidate."""

    def __init__(self, policy: Optional[Dict] = None, rules: Optional[Sequence[VetoRule]] = None):
        guard_cfg = (policy or {}).get("guard", {}) or {}
        self.enabled = bool(guard_cfg.get("enabled", True))
        self.config = GuardConfig.from_policy(policy)

        table = list(rules) if rules is not None else list(VETO_RULES)
        enabled_names = guard_cfg.get("rules")
        if enabled_names is None and rules is None:
            enabled_names = DEFAULT_ENABLED_RULES
        if enabled_names is not None:
            unknown = set(enabled_names) - {rule.name for rule in table}
            if unknown:
                logger.warning(f"Unknown guard rules ignored: {sorted(unknown)}")
            table = [rule for rule in table if rule.name in enabled_names]
        self.rules: List[VetoRule] = table

        logger.info(f"PreTradeGuard initialized: enabled={self.enabled}, rules={[r.name for r in self.rules]}")

    def permits(
        self,
        signal: CandidateSignal,
        snapshot: Optional[MarketSnapshot],
        side: Optional[Side] = None,
    ) -> GuardResult:
        """
        Evaluate every enabled rule for an entry.

        Args:
            signal: Candidate entry signal
            snapshot: Market snapshot for the signal's symbol
            side: Entry side when the signal carries none (e.g. an add)

        Returns:
            GuardResult(allowed, veto_reasons)
        """
        side = side or signal.side
        if not self.enabled or side is None:
            return GuardResult(allowed=True)
        if snapshot is None:
            logger.debug(f"No snapshot for {signal.symbol}; guard fails open")
            return GuardResult(allowed=True)

        result = GuardResult(allowed=True)
        for rule in self.rules:
            try:
                reason = rule.predicate(side, snapshot, self.config)
            except Exception as e:
                logger.warning(f"Guard rule {rule.name} failed for {signal.symbol}, ignoring: {e}")
                result.skipped_rules.append(rule.name)
                continue
            if reason:
                result.veto_reasons.append(f"{rule.name}: {reason}")
                logger.info(f"🚫 GUARD VETO {signal.symbol} {side.value} [{rule.name}]: {reason}")

        result.allowed = not result.veto_reasons
        return result
