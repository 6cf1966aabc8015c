"""
Tests for ExitEvaluator - exit priority and individual exit conditions.
"""

import pytest

from core.exit_evaluator import EXIT_PRIORITY, ExitEvaluator
from core.models import CandidateSignal, ExitReason, MarketSnapshot, Position, Side


def make_position(side=Side.LONG, entry=100.0, stop=None, target=None, **kwargs):
    return Position(
        symbol="BTC", side=side, quantity=1.0, entry_price=entry,
        stop_loss=stop, take_profit=target, **kwargs,
    )


@pytest.fixture
def evaluator():
    return ExitEvaluator({})


class TestPriority:
    def test_priority_order(self):
        assert EXIT_PRIORITY == (
            ExitReason.STOP_LOSS,
            ExitReason.TAKE_PROFIT,
            ExitReason.TRAILING_STOP,
            ExitReason.SIGNAL_REVERSAL,
            ExitReason.RANKING_DROP,
            ExitReason.INDICATOR_BASED,
        )

    def test_stop_loss_wins_tie_with_take_profit(self, evaluator):
        position = make_position(stop=101.0, target=100.5)

        triggered = evaluator.triggered_conditions(position, 100.8)
        decision = evaluator.evaluate(position, 100.8)

        assert [d.reason for d in triggered] == [ExitReason.STOP_LOSS, ExitReason.TAKE_PROFIT]
        assert decision.reason == ExitReason.STOP_LOSS
        assert decision.exit_pct == 100.0
        assert decision.metadata["conditions_triggered"] == 2

    def test_stop_loss_beats_reversal(self, evaluator):
        position = make_position(stop=95.0)
        reversal = CandidateSignal(symbol="BTC", direction="sell_to_enter", confidence=0.9)

        decision = evaluator.evaluate(position, 94.0, matching_signal=reversal)

        assert decision.reason == ExitReason.STOP_LOSS

    def test_no_price_no_decision(self, evaluator):
        assert evaluator.evaluate(make_position(stop=95.0), None) is None
        assert evaluator.evaluate(make_position(stop=95.0), 0.0) is None


class TestStopLoss:
    def test_long_stop(self, evaluator):
        assert evaluator.evaluate(make_position(stop=95.0), 96.0) is None
        assert evaluator.evaluate(make_position(stop=95.0), 95.0).reason == ExitReason.STOP_LOSS

    def test_short_stop(self, evaluator):
        position = make_position(side=Side.SHORT, stop=105.0)

        assert evaluator.evaluate(position, 104.0) is None
        assert evaluator.evaluate(position, 105.5).reason == ExitReason.STOP_LOSS


class TestTakeProfit:
    def test_explicit_target_closes_fully(self, evaluator):
        decision = evaluator.evaluate(make_position(target=101.5), 101.6)

        assert decision.reason == ExitReason.TAKE_PROFIT
        assert decision.exit_pct == 100.0

    def test_first_tier_closes_half(self, evaluator):
        decision = evaluator.evaluate(make_position(), 102.5)

        assert decision.reason == ExitReason.TAKE_PROFIT
        assert decision.exit_pct == pytest.approx(50.0)
        assert decision.metadata["tier"] == 1

    def test_second_tier_accounts_for_already_closed(self, evaluator):
        position = make_position()
        first = evaluator.evaluate(position, 102.5)
        evaluator.record_exit(position, first)

        second = evaluator.evaluate(position, 104.5)

        # 30% of the original out of the 50% still open
        assert second.exit_pct == pytest.approx(60.0)
        assert second.metadata["cumulative_pct"] == pytest.approx(80.0)

    def test_gap_through_all_tiers_closes_everything(self, evaluator):
        decision = evaluator.evaluate(make_position(), 106.5)

        assert decision.exit_pct == pytest.approx(100.0)

    def test_record_exit_moves_stop_to_breakeven(self, evaluator):
        position = make_position(stop=95.0)
        evaluator.record_exit(position, evaluator.evaluate(position, 102.5))

        assert position.stop_loss == pytest.approx(100.0)
        assert position.take_profit_levels_hit == [2.0]
        assert position.take_profit_closed_pct == pytest.approx(50.0)

    def test_partial_fill_credits_only_filled_share(self, evaluator):
        position = make_position(stop=95.0)
        first = evaluator.evaluate(position, 102.5)

        # 10% of the position filled out of the 50% requested
        evaluator.record_exit(position, first, filled_fraction=0.2)

        assert position.take_profit_closed_pct == pytest.approx(10.0)
        assert position.take_profit_levels_hit == []
        assert position.stop_loss == pytest.approx(95.0)

    def test_tier_retried_after_partial_fill(self, evaluator):
        position = make_position()
        evaluator.record_exit(position, evaluator.evaluate(position, 102.5), filled_fraction=0.2)

        retry = evaluator.evaluate(position, 102.5)

        # the remaining 40% of the original out of the 90% still open
        assert retry.metadata["tier"] == 1
        assert retry.exit_pct == pytest.approx(40.0 / 90.0 * 100.0)

        evaluator.record_exit(position, retry)

        assert position.take_profit_levels_hit == [2.0]
        assert position.take_profit_closed_pct == pytest.approx(50.0)

    def test_tier_already_taken_does_not_retrigger(self, evaluator):
        position = make_position()
        evaluator.record_exit(position, evaluator.evaluate(position, 102.5))

        assert evaluator.evaluate(position, 102.6) is None

    def test_short_tiers_use_favourable_direction(self, evaluator):
        decision = evaluator.evaluate(make_position(side=Side.SHORT), 97.5)

        assert decision.reason == ExitReason.TAKE_PROFIT
        assert decision.target_price == pytest.approx(98.0)


class TestTrailingStop:
    @pytest.fixture
    def evaluator(self):
        return ExitEvaluator({"exits": {"take_profit": {"enabled": False}}})

    def test_trail_hit_after_activation(self, evaluator):
        position = make_position()
        position.refresh_price(110.0)

        decision = evaluator.evaluate(position, 108.5)

        assert decision.reason == ExitReason.TRAILING_STOP
        assert decision.target_price == pytest.approx(108.9)

    def test_trail_inactive_below_activation_gain(self, evaluator):
        position = make_position()
        position.refresh_price(100.8)

        assert evaluator.evaluate(position, 100.5) is None

    def test_short_trail(self, evaluator):
        position = make_position(side=Side.SHORT)
        position.refresh_price(90.0)

        decision = evaluator.evaluate(position, 91.0)

        assert decision.reason == ExitReason.TRAILING_STOP


class TestSignalReversal:
    def test_opposing_confident_signal(self, evaluator):
        signal = CandidateSignal(symbol="BTC", direction="sell_to_enter", confidence=0.7)

        decision = evaluator.evaluate(make_position(), 100.0, matching_signal=signal)

        assert decision.reason == ExitReason.SIGNAL_REVERSAL

    def test_weak_opposing_signal_ignored(self, evaluator):
        signal = CandidateSignal(symbol="BTC", direction="sell_to_enter", confidence=0.5)

        assert evaluator.evaluate(make_position(), 100.0, matching_signal=signal) is None

    def test_same_direction_signal_ignored(self, evaluator):
        signal = CandidateSignal(symbol="BTC", direction="buy_to_enter", confidence=0.9)

        assert evaluator.evaluate(make_position(), 100.0, matching_signal=signal) is None


class TestRankingDrop:
    def test_confirmed_drop(self, evaluator):
        position = make_position(ranking_history=[8])

        decision = evaluator.evaluate(position, 100.0, current_ranking=9)

        assert decision.reason == ExitReason.RANKING_DROP
        assert decision.metadata["threshold"] == 7

    def test_single_bad_cycle_is_not_enough(self, evaluator):
        assert evaluator.evaluate(make_position(), 100.0, current_ranking=9) is None

    def test_recovery_resets_confirmation(self, evaluator):
        position = make_position(ranking_history=[9, 3])

        assert evaluator.evaluate(position, 100.0, current_ranking=9) is None

    def test_rank_within_buffer_is_fine(self, evaluator):
        position = make_position(ranking_history=[7])

        assert evaluator.evaluate(position, 100.0, current_ranking=6) is None


class TestIndicatorExit:
    def test_requires_two_indicators(self, evaluator):
        snapshot = MarketSnapshot(symbol="BTC", price=100.0, indicators={"rsi14": 75.0})

        assert evaluator.evaluate(make_position(), 100.0, snapshot=snapshot) is None

    def test_rsi_and_ema_break(self, evaluator):
        snapshot = MarketSnapshot(
            symbol="BTC", price=100.0,
            indicators={"rsi14": 75.0, "ema20": 101.0, "macd": 0.5, "macd_signal": 0.7},
        )

        decision = evaluator.evaluate(make_position(), 100.0, snapshot=snapshot)

        assert decision.reason == ExitReason.INDICATOR_BASED
        assert decision.metadata["indicators"] == ["RSI", "MACD", "EMA20"]

    def test_single_indicator_when_confirmation_disabled(self):
        evaluator = ExitEvaluator({"exits": {"indicator": {"require_confirmation": False}}})
        snapshot = MarketSnapshot(symbol="BTC", price=100.0, structure_change="bearish")

        decision = evaluator.evaluate(make_position(), 100.0, snapshot=snapshot)

        assert decision.reason == ExitReason.INDICATOR_BASED

    def test_atr_expansion_and_structure(self, evaluator):
        snapshot = MarketSnapshot(
            symbol="BTC", price=100.0,
            indicators={"atr": 3.0, "atr_avg": 1.0},
            structure_change="bullish",
        )

        decision = evaluator.evaluate(make_position(side=Side.SHORT), 100.0, snapshot=snapshot)

        assert decision.reason == ExitReason.INDICATOR_BASED
        assert set(decision.metadata["indicators"]) == {"STRUCTURE", "ATR"}


class TestConfig:
    def test_mismatched_tiers_rejected(self):
        with pytest.raises(ValueError):
            ExitEvaluator({"exits": {"take_profit": {"levels_pct": [1, 2], "sizes_pct": [100]}}})
