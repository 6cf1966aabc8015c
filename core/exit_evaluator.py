"""
Position Management: Exit Evaluation

Evaluates one open position against every configured exit condition and
returns at most one ExitDecision. Conditions are checked in the fixed
order of EXIT_PRIORITY and the first match wins, so capital protection
(stop loss) is never pre-empted by profit taking or discretionary exits.

Per-position exit bookkeeping (price extremes, ranking history,
take-profit tiers already taken) lives on the Position itself. The
evaluator only reads it; the orchestrator updates it after fills and
at the end of each cycle.
"""
import logging
from typing import Callable, Dict, List, Optional, Tuple

from core.models import (
    CandidateSignal,
    ExitDecision,
    ExitReason,
    MarketSnapshot,
    Position,
    Side,
)

logger = logging.getLogger(__name__)

# Fill fractions this close to 1 count as a complete tier
FILL_EPSILON = 1e-6

# Tie-break order when several conditions hold at once
EXIT_PRIORITY: Tuple[ExitReason, ...] = (
    ExitReason.STOP_LOSS,
    ExitReason.TAKE_PROFIT,
    ExitReason.TRAILING_STOP,
    ExitReason.SIGNAL_REVERSAL,
    ExitReason.RANKING_DROP,
    ExitReason.INDICATOR_BASED,
)


class ExitEvaluator:
    """
    Multi-criteria exit state machine.

    Responsibilities:
    - Stop loss (full exit at stop level)
    - Tiered take profit (partial scale-out, optional breakeven stop)
    - Trailing stop once a minimum gain is reached
    - Signal reversal from an opposing high-confidence candidate
    - Ranking drop confirmed over consecutive cycles
    - Indicator-based exits (RSI, MACD, EMA, structure, ATR)
    """

    def __init__(self, policy: Optional[Dict] = None):
        """
        Initialize ExitEvaluator.

        Args:
            policy: Policy config dict (reads the `exits` section)
        """
        self.policy = policy or {}
        self.exit_config = self.policy.get("exits", {}) or {}

        sl_cfg = self.exit_config.get("stop_loss", {}) or {}
        self.check_stop_loss = sl_cfg.get("enabled", True)

        tp_cfg = self.exit_config.get("take_profit", {}) or {}
        self.check_take_profit = tp_cfg.get("enabled", True)
        self.tp_levels: List[float] = [float(x) for x in tp_cfg.get("levels_pct", [2.0, 4.0, 6.0])]
        self.tp_sizes: List[float] = [float(x) for x in tp_cfg.get("sizes_pct", [50.0, 30.0, 20.0])]
        if len(self.tp_sizes) != len(self.tp_levels):
            raise ValueError("take_profit.levels_pct and take_profit.sizes_pct must have equal length")
        self.move_stop_to_breakeven = tp_cfg.get("move_stop_to_breakeven", True)

        trail_cfg = self.exit_config.get("trailing_stop", {}) or {}
        self.use_trailing_stop = trail_cfg.get("enabled", True)
        self.trailing_distance_pct = float(trail_cfg.get("distance_pct", 1.0))
        self.trailing_activate_pct = float(trail_cfg.get("activate_after_gain_pct", 1.0))

        rev_cfg = self.exit_config.get("signal_reversal", {}) or {}
        self.check_reversal = rev_cfg.get("enabled", True)
        self.reversal_threshold = float(rev_cfg.get("confidence_threshold", 0.6))

        rank_cfg = self.exit_config.get("ranking_drop", {}) or {}
        self.check_ranking = rank_cfg.get("enabled", True)
        self.ranking_top_n = int(rank_cfg.get("top_n", 5))
        self.ranking_buffer = int(rank_cfg.get("buffer", 2))
        self.ranking_confirmations = max(1, int(rank_cfg.get("confirmation_cycles", 2)))

        ind_cfg = self.exit_config.get("indicator", {}) or {}
        self.check_indicator = ind_cfg.get("enabled", True)
        self.rsi_threshold = float(ind_cfg.get("rsi_threshold", 70.0))
        self.macd_crossover = ind_cfg.get("macd_crossover", True)
        self.ema_break = ind_cfg.get("ema_break", True)
        self.structure_break = ind_cfg.get("structure_break", True)
        self.atr_expansion = ind_cfg.get("atr_expansion", True)
        self.atr_multiplier = float(ind_cfg.get("atr_expansion_multiplier", 2.5))
        self.require_confirmation = ind_cfg.get("require_confirmation", True)

        self._checks: Dict[ExitReason, Callable[..., Optional[ExitDecision]]] = {
            ExitReason.STOP_LOSS: self._check_stop_loss,
            ExitReason.TAKE_PROFIT: self._check_take_profit,
            ExitReason.TRAILING_STOP: self._check_trailing_stop,
            ExitReason.SIGNAL_REVERSAL: self._check_signal_reversal,
            ExitReason.RANKING_DROP: self._check_ranking_drop,
            ExitReason.INDICATOR_BASED: self._check_indicator_based,
        }

        logger.info(
            f"ExitEvaluator initialized: stop_loss={self.check_stop_loss}, "
            f"take_profit={self.check_take_profit} (tiers={self.tp_levels}), "
            f"trailing={self.use_trailing_stop}, reversal={self.check_reversal}, "
            f"ranking={self.check_ranking}, indicator={self.check_indicator}"
        )

    @property
    def ranking_threshold(self) -> int:
        return self.ranking_top_n + max(self.ranking_buffer, 0)

    def evaluate(
        self,
        position: Position,
        current_price: Optional[float],
        matching_signal: Optional[CandidateSignal] = None,
        current_ranking: Optional[int] = None,
        snapshot: Optional[MarketSnapshot] = None,
    ) -> Optional[ExitDecision]:
        """
        Return the highest-priority triggered exit for `position`, if any.

        Args:
            position: Open position
            current_price: Latest market price
            matching_signal: This cycle's candidate signal for the same symbol
            current_ranking: 1-based rank this cycle (None if not ranked)
            snapshot: Market snapshot with indicator/structure data

        Returns:
            ExitDecision or None
        """
        triggered = self.triggered_conditions(
            position, current_price, matching_signal, current_ranking, snapshot
        )
        if not triggered:
            return None

        decision = triggered[0]
        decision.metadata["conditions_triggered"] = len(triggered)
        if len(triggered) > 1:
            logger.debug(
                f"{position.symbol}: {len(triggered)} exit conditions true, "
                f"{decision.reason.value} wins ({[d.reason.value for d in triggered]})"
            )
        return decision

    def triggered_conditions(
        self,
        position: Position,
        current_price: Optional[float],
        matching_signal: Optional[CandidateSignal] = None,
        current_ranking: Optional[int] = None,
        snapshot: Optional[MarketSnapshot] = None,
    ) -> List[ExitDecision]:
        """All triggered exits, in priority order."""
        if not current_price or current_price <= 0:
            logger.warning(f"No valid current price for {position.symbol}, skipping exit check")
            return []

        context = {
            "matching_signal": matching_signal,
            "current_ranking": current_ranking,
            "snapshot": snapshot,
        }
        triggered = []
        for reason in EXIT_PRIORITY:
            decision = self._checks[reason](position, current_price, **context)
            if decision is not None:
                triggered.append(decision)
        return triggered

    def record_exit(self, position: Position, decision: ExitDecision, filled_fraction: float = 1.0) -> None:
        """
        Update take-profit bookkeeping after a TP fill left the position open.

        `filled_fraction` is the filled share of the requested exit size. A
        tier only counts as taken once its requested size fully filled; a
        partial fill credits just the filled share to take_profit_closed_pct
        so the next cycle closes the rest of the tier.
        """
        if decision.reason != ExitReason.TAKE_PROFIT:
            return
        tier_levels = decision.metadata.get("tier_levels")
        if not tier_levels:
            return

        cumulative = float(decision.metadata.get("cumulative_pct", 0.0))
        filled_fraction = min(max(filled_fraction, 0.0), 1.0)
        if filled_fraction < 1.0 - FILL_EPSILON:
            credited = (cumulative - position.take_profit_closed_pct) * filled_fraction
            position.take_profit_closed_pct += max(credited, 0.0)
            logger.info(
                f"{position.symbol}: take profit tier {decision.metadata.get('tier')} partially filled "
                f"({filled_fraction:.1%}), {position.take_profit_closed_pct:.2f}% of position closed so far"
            )
            return

        first_tier = not position.take_profit_levels_hit
        for level in tier_levels:
            if level not in position.take_profit_levels_hit:
                position.take_profit_levels_hit.append(level)
        position.take_profit_closed_pct = cumulative

        if first_tier and self.move_stop_to_breakeven:
            stop = position.stop_loss
            if position.side == Side.LONG and (stop is None or stop < position.entry_price):
                position.stop_loss = position.entry_price
            elif position.side == Side.SHORT and (stop is None or stop > position.entry_price):
                position.stop_loss = position.entry_price
            logger.info(f"{position.symbol}: stop moved to breakeven @ ${position.entry_price:.4f}")

    def _check_stop_loss(self, position: Position, price: float, **_) -> Optional[ExitDecision]:
        if not self.check_stop_loss or position.stop_loss is None:
            return None

        stop = position.stop_loss
        if position.side == Side.LONG:
            hit = price <= stop
            op = "<="
        else:
            hit = price >= stop
            op = ">="
        if not hit:
            return None

        return ExitDecision(
            position=position,
            exit_pct=100.0,
            reason=ExitReason.STOP_LOSS,
            target_price=stop,
            description=f"Stop loss hit: price {price:.4f} {op} stop {stop:.4f}",
        )

    def _check_take_profit(self, position: Position, price: float, **_) -> Optional[ExitDecision]:
        if not self.check_take_profit:
            return None

        target = position.take_profit
        if target is not None:
            hit = price >= target if position.side == Side.LONG else price <= target
            if hit:
                return ExitDecision(
                    position=position,
                    exit_pct=100.0,
                    reason=ExitReason.TAKE_PROFIT,
                    target_price=target,
                    description=f"Take profit target {target:.4f} reached (price {price:.4f})",
                )

        if not self.tp_levels:
            return None

        gain = position.gain_pct(price)
        hit_tier = None
        for idx, level in enumerate(self.tp_levels):
            if gain >= level and level not in position.take_profit_levels_hit:
                hit_tier = idx
        if hit_tier is None:
            return None

        cumulative = sum(self.tp_sizes[: hit_tier + 1])
        to_close = cumulative - position.take_profit_closed_pct
        if to_close <= 0:
            return None
        remaining = 100.0 - position.take_profit_closed_pct
        exit_pct = min(100.0, to_close / remaining * 100.0) if remaining > 0 else 100.0

        level = self.tp_levels[hit_tier]
        tier_price = position.entry_price * (1 + position.side.sign * level / 100.0)
        return ExitDecision(
            position=position,
            exit_pct=exit_pct,
            reason=ExitReason.TAKE_PROFIT,
            target_price=tier_price,
            description=(
                f"Take profit tier {hit_tier + 1} (+{level:.2f}%) reached: gain {gain:.2f}%, "
                f"closing {exit_pct:.1f}% of position"
            ),
            metadata={
                "tier": hit_tier + 1,
                "level_pct": level,
                "tier_levels": self.tp_levels[: hit_tier + 1],
                "cumulative_pct": cumulative,
            },
        )

    def _check_trailing_stop(self, position: Position, price: float, **_) -> Optional[ExitDecision]:
        if not self.use_trailing_stop:
            return None

        gain = position.gain_pct(price)
        if gain < self.trailing_activate_pct:
            return None

        distance = self.trailing_distance_pct / 100.0
        if position.side == Side.LONG:
            peak = max(position.highest_price or price, price)
            level = peak * (1 - distance)
            hit = price <= level
        else:
            peak = min(position.lowest_price or price, price)
            level = peak * (1 + distance)
            hit = price >= level
        if not hit:
            return None

        return ExitDecision(
            position=position,
            exit_pct=100.0,
            reason=ExitReason.TRAILING_STOP,
            target_price=level,
            description=(
                f"Trailing stop hit: price {price:.4f} vs trail {level:.4f} "
                f"({self.trailing_distance_pct:.2f}% from {peak:.4f}), gain {gain:.2f}%"
            ),
            metadata={"peak": peak},
        )

    def _check_signal_reversal(self, position: Position, price: float,
                               matching_signal: Optional[CandidateSignal] = None,
                               **_) -> Optional[ExitDecision]:
        if not self.check_reversal or matching_signal is None:
            return None
        if matching_signal.symbol != position.symbol:
            return None
        if matching_signal.side != position.side.opposite:
            return None
        if matching_signal.confidence < self.reversal_threshold:
            return None

        return ExitDecision(
            position=position,
            exit_pct=100.0,
            reason=ExitReason.SIGNAL_REVERSAL,
            target_price=price,
            description=(
                f"Signal reversal: {matching_signal.direction.value} at "
                f"{matching_signal.confidence * 100:.1f}% confidence against {position.side.value}"
            ),
        )

    def _check_ranking_drop(self, position: Position, price: float,
                            current_ranking: Optional[int] = None,
                            **_) -> Optional[ExitDecision]:
        if not self.check_ranking or current_ranking is None:
            return None

        # ranking_history holds previous cycles; the current rank completes the window
        needed = self.ranking_confirmations
        window = list(position.ranking_history[-(needed - 1):]) if needed > 1 else []
        window.append(int(current_ranking))
        if len(window) < needed:
            return None

        threshold = self.ranking_threshold
        if not all(rank > threshold for rank in window):
            return None

        return ExitDecision(
            position=position,
            exit_pct=100.0,
            reason=ExitReason.RANKING_DROP,
            target_price=price,
            description=(
                f"Ranking drop: #{current_ranking} outside top {threshold} "
                f"for {needed} consecutive cycles"
            ),
            metadata={"window": window, "threshold": threshold},
        )

    def _check_indicator_based(self, position: Position, price: float,
                               snapshot: Optional[MarketSnapshot] = None,
                               **_) -> Optional[ExitDecision]:
        if not self.check_indicator or snapshot is None:
            return None

        is_long = position.side == Side.LONG
        conditions: List[Tuple[str, str]] = []

        rsi = snapshot.indicator("rsi14")
        rsi_extreme = False
        if rsi is not None:
            if is_long and rsi >= self.rsi_threshold:
                rsi_extreme = True
                conditions.append(("RSI", f"RSI {rsi:.1f} >= {self.rsi_threshold:.0f} (overbought)"))
            elif not is_long and rsi <= 100 - self.rsi_threshold:
                rsi_extreme = True
                conditions.append(("RSI", f"RSI {rsi:.1f} <= {100 - self.rsi_threshold:.0f} (oversold)"))

        ema20 = snapshot.indicator("ema20")
        ema20_broken = ema20 is not None and (price < ema20 if is_long else price > ema20)

        if self.macd_crossover:
            macd = snapshot.indicator("macd")
            macd_signal = snapshot.indicator("macd_signal")
            if macd is not None and macd_signal is not None:
                crossed = macd < macd_signal if is_long else macd > macd_signal
                # Lagging: only counts when momentum or trend confirms
                if crossed and (rsi_extreme or ema20_broken):
                    conditions.append(("MACD", f"MACD {macd:.4f} crossed signal {macd_signal:.4f}"))

        if self.ema_break:
            if ema20_broken:
                conditions.append(("EMA20", f"Price {price:.4f} broke EMA20 {ema20:.4f}"))
            ema50 = snapshot.indicator("ema50")
            if ema50 is not None and (price < ema50 if is_long else price > ema50):
                conditions.append(("EMA50", f"Price {price:.4f} broke EMA50 {ema50:.4f}"))

        if self.structure_break and snapshot.structure_change:
            against = "bearish" if is_long else "bullish"
            if snapshot.structure_change.lower() == against:
                conditions.append(("STRUCTURE", f"{against} change of character"))

        if self.atr_expansion:
            atr = snapshot.indicator("atr")
            atr_avg = snapshot.indicator("atr_avg")
            if atr is not None and atr_avg:
                expansion = atr / atr_avg
                if expansion >= self.atr_multiplier:
                    conditions.append(("ATR", f"ATR expansion {expansion:.2f}x average"))

        required = 2 if self.require_confirmation else 1
        if len(conditions) < required:
            return None

        names = ", ".join(name for name, _ in conditions)
        reasons = "; ".join(text for _, text in conditions)
        logger.info(f"📊 Indicator exit for {position.symbol}: {names}")
        return ExitDecision(
            position=position,
            exit_pct=100.0,
            reason=ExitReason.INDICATOR_BASED,
            target_price=price,
            description=f"Indicator-based exit: {reasons}",
            metadata={"indicators": [name for name, _ in conditions]},
        )
