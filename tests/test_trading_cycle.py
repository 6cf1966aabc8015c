"""
Tests for CycleOrchestrator - one full trading cycle end to end.

Collaborators are deterministic stubs (tests/helpers) and the paper
executor with zero slippage, so every fill price equals the market price.
"""

import copy
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from core.exceptions import ConfigurationError, ExecutionRejection
from core.interfaces import Executor
from core.models import (
    AccountState,
    CandidateSignal,
    CircuitBreakerState,
    CircuitBreakerStatus,
    CycleState,
    ExitReason,
    Fill,
    FillStatus,
    Position,
    RejectedSignal,
    RemotePosition,
    Side,
    SignalBatch,
)
from core.paper_executor import PaperExecutor
from core.trading_cycle import CycleOrchestrator
from infra.alerting import AlertSeverity
from infra.metrics import MetricsRecorder
from tests.helpers import (
    ListSink,
    StubAccountProvider,
    StubMarketData,
    StubRanker,
    StubSignalGenerator,
    long_signal,
    make_snapshot,
    make_trade,
    short_signal,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def base_policy(**overrides):
    policy = {
        "market_data": {"universe": ["BTC", "ETH"], "max_workers": 4},
        "selection": {"top_k": 5},
        "entries": {"min_confidence": 0.6, "max_open_positions": 10, "default_leverage": 5},
        "exits": {
            "take_profit": {"enabled": False},
            "trailing_stop": {"enabled": False},
            "ranking_drop": {"enabled": False},
            "indicator": {"enabled": False},
        },
        "circuit_breaker": {"consecutive_losses_limit": 3},
    }
    for key, value in overrides.items():
        policy[key] = value
    return policy


def open_long(symbol="BTC", quantity=2.0, entry=100.0, stop=None):
    return Position(
        symbol=symbol, side=Side.LONG, quantity=quantity, entry_price=entry,
        stop_loss=stop, leverage=5, entry_time=NOW - timedelta(hours=1),
    )


def state_with(*positions, **kwargs):
    kwargs.setdefault("circuit_breaker", CircuitBreakerState(last_reset_date="2024-03-01"))
    kwargs.setdefault("account_value", 100_000.0)
    return CycleState(positions={p.symbol: p for p in positions}, **kwargs)


@pytest.fixture
def market():
    return StubMarketData()


@pytest.fixture
def generator():
    return StubSignalGenerator()


@pytest.fixture
def sink():
    return ListSink()


@pytest.fixture
def executor():
    return PaperExecutor({"capital": 1_000_000, "slippage_bps": 0})


@pytest.fixture
def make_orchestrator(market, generator, sink, executor):
    def factory(policy=None, **kwargs):
        params = dict(
            market_data=market,
            ranker=StubRanker(order=["BTC", "ETH"]),
            signal_generator=generator,
            executor=executor,
            policy=policy or base_policy(),
            performance_sink=sink,
            clock=lambda: NOW,
        )
        params.update(kwargs)
        return CycleOrchestrator(**params)
    return factory


class TestEntries:
    def test_confident_signal_opens_position(self, make_orchestrator, generator):
        generator.output = [long_signal("BTC", confidence=0.8)]

        result = make_orchestrator().run_cycle(CycleState())

        assert result.success
        assert len(result.executed_entries) == 1
        pos = result.new_state.positions["BTC"]
        assert pos.side == Side.LONG
        assert pos.quantity == pytest.approx(1.0)
        assert pos.entry_price == pytest.approx(100.0)
        assert pos.leverage == 5
        assert result.new_state.cycle_count == 1
        assert result.new_state.last_cycle_at == NOW

    def test_low_confidence_rejected(self, make_orchestrator, generator):
        generator.output = [long_signal("BTC", confidence=0.55)]

        result = make_orchestrator().run_cycle(CycleState())

        assert result.executed_entries == []
        assert len(result.rejected_signals) == 1
        assert "confidence 55% < 60%" in result.rejected_signals[0].reason
        assert result.new_state.positions == {}
        assert result.diagnostics["rejections_by_category"] == {"confidence": 1}

    def test_confidence_just_below_floor_is_not_rounded_up(self, make_orchestrator, generator):
        generator.output = [long_signal("BTC", confidence=0.595)]

        result = make_orchestrator().run_cycle(CycleState())

        assert "confidence 59.5% < 60%" in result.rejected_signals[0].reason

    def test_guard_and_confidence_reasons_combined(self, make_orchestrator, market, generator):
        market.set_price("BTC", 100.0, indicators={"rsi14": 92.0})
        generator.output = [long_signal("BTC", confidence=0.5)]

        result = make_orchestrator().run_cycle(CycleState())

        reason = result.rejected_signals[0].reason
        assert "oscillator_extreme" in reason
        assert "confidence 50% < 60%" in reason
        assert result.diagnostics["rejections_by_category"] == {"guard": 1}

    def test_default_stop_applied_when_configured(self, make_orchestrator, generator):
        policy = base_policy()
        policy["exits"]["stop_loss"] = {"default_stop_loss_pct": 3.0}
        generator.output = [short_signal("ETH")]

        result = make_orchestrator(policy).run_cycle(CycleState())

        assert result.new_state.positions["ETH"].stop_loss == pytest.approx(2060.0)

    def test_signal_stop_wins_over_default(self, make_orchestrator, generator):
        generator.output = [long_signal("BTC", stop_loss=97.0)]

        result = make_orchestrator().run_cycle(CycleState())

        assert result.new_state.positions["BTC"].stop_loss == 97.0

    def test_capacity_limit(self, make_orchestrator, generator):
        policy = base_policy(entries={"min_confidence": 0.6, "max_open_positions": 1})
        generator.output = [long_signal("ETH")]

        result = make_orchestrator(policy).run_cycle(state_with(open_long()))

        assert result.executed_entries == []
        assert "max open positions" in result.rejected_signals[0].reason

    def test_executor_rejection_becomes_signal_rejection(self, make_orchestrator, generator):
        generator.output = [long_signal("BTC", quantity=1_000.0, leverage=1)]
        orchestrator = make_orchestrator(executor=PaperExecutor({"capital": 100, "slippage_bps": 0}))

        result = orchestrator.run_cycle(CycleState())

        assert result.success
        assert result.rejected_signals[0].reason.startswith("execution rejected: Insufficient virtual capital")
        assert result.new_state.positions == {}

    def test_generator_rejections_are_merged(self, make_orchestrator, generator):
        filtered = RejectedSignal(long_signal("ETH"), "generator: stale candles")
        generator.output = SignalBatch(signals=[long_signal("BTC")], rejected=[filtered])

        result = make_orchestrator().run_cycle(CycleState())

        assert filtered in result.rejected_signals
        assert len(result.executed_entries) == 1

    def test_dict_signals_are_normalized(self, make_orchestrator, generator):
        generator.output = [{"coin": "BTC", "signal": "buy_to_enter", "confidence": 75, "quantity": 1}]

        result = make_orchestrator().run_cycle(CycleState())

        assert result.executed_entries[0].symbol == "BTC"

    def test_generator_failure_means_no_entries(self, make_orchestrator, generator):
        generator.fail = True

        result = make_orchestrator().run_cycle(CycleState())

        assert result.success
        assert result.executed_entries == []
        assert "signal_error" in result.diagnostics


class TestSignalReclassification:
    def test_same_direction_becomes_hold(self, make_orchestrator, generator):
        generator.output = [long_signal("BTC")]

        result = make_orchestrator().run_cycle(state_with(open_long()))

        assert result.executed_entries == []
        assert result.diagnostics["converted_to_hold"] == ["BTC"]
        assert result.new_state.positions["BTC"].quantity == pytest.approx(2.0)

    def test_hold_without_position_rejected(self, make_orchestrator, generator):
        generator.output = [CandidateSignal(symbol="BTC", direction="hold", confidence=0.9)]

        result = make_orchestrator().run_cycle(CycleState())

        assert result.rejected_signals[0].reason == "hold signal without an open position"

    def test_add_extends_position_with_average_entry(self, make_orchestrator, market, generator):
        market.set_price("BTC", 110.0)
        generator.output = [CandidateSignal(symbol="BTC", direction="add", confidence=0.8, quantity=1.0)]

        result = make_orchestrator().run_cycle(state_with(open_long(quantity=1.0, entry=100.0)))

        pos = result.new_state.positions["BTC"]
        assert pos.quantity == pytest.approx(2.0)
        assert pos.entry_price == pytest.approx(105.0)

    def test_add_without_position_rejected(self, make_orchestrator, generator):
        generator.output = [CandidateSignal(symbol="BTC", direction="add", confidence=0.8, quantity=1.0)]

        result = make_orchestrator().run_cycle(CycleState())

        assert result.executed_entries == []
        assert result.rejected_signals[0].reason == "add signal without an open position"

    def test_duplicate_symbol_rejected(self, make_orchestrator, generator):
        generator.output = [long_signal("BTC"), long_signal("BTC", confidence=0.9)]

        result = make_orchestrator().run_cycle(CycleState())

        assert len(result.executed_entries) == 1
        assert "duplicate" in result.rejected_signals[0].reason

    def test_reversal_closes_then_enters_opposite(self, make_orchestrator, generator):
        generator.output = [short_signal("BTC", confidence=0.8)]

        result = make_orchestrator().run_cycle(state_with(open_long(quantity=1.0)))

        assert [o.reason for o in result.executed_exits] == [ExitReason.SIGNAL_REVERSAL.value]
        assert len(result.executed_entries) == 1
        assert result.new_state.positions["BTC"].side == Side.SHORT

    def test_opposing_entry_rejected_while_position_open(self, make_orchestrator, generator):
        policy = base_policy()
        policy["exits"]["signal_reversal"] = {"confidence_threshold": 0.9}
        generator.output = [short_signal("BTC", confidence=0.7)]

        result = make_orchestrator(policy).run_cycle(state_with(open_long()))

        assert result.executed_exits == []
        assert result.executed_entries == []
        assert result.rejected_signals[0].reason == "opposes open LONG position"
        assert result.new_state.positions["BTC"].side == Side.LONG

    def test_open_positions_included_in_signal_symbols(self, make_orchestrator, market, generator):
        market.set_price("SOL", 20.0)
        policy = base_policy(selection={"top_k": 1})

        make_orchestrator(policy).run_cycle(state_with(open_long("SOL", entry=20.0)))

        assert generator.calls == [["BTC", "SOL"]]


class TestExits:
    def test_stop_loss_exit_realizes_trade(self, make_orchestrator, market, sink):
        market.set_price("BTC", 90.0)
        previous = state_with(open_long(quantity=2.0, entry=100.0, stop=95.0))

        result = make_orchestrator().run_cycle(previous)

        assert [o.reason for o in result.executed_exits] == ["stop_loss"]
        assert "BTC" not in result.new_state.positions
        trade = result.realized_trades[0]
        assert trade.pnl == pytest.approx(-20.0)
        assert trade.cycle_id == result.cycle_id
        assert sink.trades == [trade]
        assert result.new_state.trade_history[-1] is trade

    def test_previous_state_is_not_mutated(self, make_orchestrator, market):
        market.set_price("BTC", 90.0)
        previous = state_with(open_long(stop=95.0))
        before = copy.deepcopy(previous.positions["BTC"].to_dict())

        make_orchestrator().run_cycle(previous)

        assert previous.positions["BTC"].to_dict() == before

    def test_partial_take_profit_keeps_position(self, make_orchestrator, market):
        policy = base_policy()
        policy["exits"]["take_profit"] = {"enabled": True}
        market.set_price("BTC", 102.5)

        result = make_orchestrator(policy).run_cycle(state_with(open_long(quantity=2.0, stop=95.0)))

        pos = result.new_state.positions["BTC"]
        assert pos.quantity == pytest.approx(1.0)
        assert pos.stop_loss == pytest.approx(100.0)
        assert pos.take_profit_levels_hit == [2.0]
        assert result.realized_trades[0].is_partial

    def test_partially_filled_take_profit_leaves_tier_open(self, make_orchestrator, market):
        policy = base_policy()
        policy["exits"]["take_profit"] = {"enabled": True}
        market.set_price("BTC", 102.5)
        executor = Mock(spec=Executor)
        executor.execute_exit.return_value = Fill(FillStatus.PARTIAL_FILLED, filled_qty=0.2, filled_price=102.5)

        result = make_orchestrator(policy, executor=executor).run_cycle(state_with(open_long(quantity=2.0)))

        pos = result.new_state.positions["BTC"]
        assert pos.quantity == pytest.approx(1.8)
        assert pos.take_profit_closed_pct == pytest.approx(10.0)
        assert pos.take_profit_levels_hit == []
        assert result.executed_exits[0].quantity == pytest.approx(0.2)

    def test_exit_rejection_is_reported(self, make_orchestrator, market):
        market.set_price("BTC", 90.0)
        executor = Mock(spec=Executor)
        executor.execute_exit.side_effect = ExecutionRejection("BTC", "reduce-only order rejected")

        result = make_orchestrator(executor=executor).run_cycle(state_with(open_long(stop=95.0)))

        assert result.success
        assert result.executed_exits == []
        assert result.diagnostics["exit_failures"][0]["symbol"] == "BTC"
        assert "BTC" in result.new_state.positions

    def test_position_without_fresh_data_skips_exit_checks(self, make_orchestrator, market):
        market.failing.add("BTC")

        result = make_orchestrator().run_cycle(state_with(open_long(stop=1_000.0)))

        assert result.executed_exits == []
        assert result.diagnostics["exit_failures"] == [{"symbol": "BTC", "reason": "no market data"}]

    def test_ranking_history_updated(self, make_orchestrator):
        result = make_orchestrator().run_cycle(state_with(open_long("ETH", entry=2000.0)))

        assert result.new_state.positions["ETH"].ranking_history == [2]


class TestCircuitBreaker:
    def test_consecutive_losses_block_entries_but_not_exits(self, make_orchestrator, market, generator):
        history = [make_trade(-1.0, NOW - timedelta(minutes=m)) for m in (30, 20, 10)]
        market.set_price("BTC", 90.0)
        generator.output = [long_signal("ETH")]
        previous = state_with(open_long(stop=95.0), trade_history=history)

        result = make_orchestrator().run_cycle(previous)

        assert result.executed_entries == []
        assert "circuit breaker PAUSED" in result.rejected_signals[0].reason
        assert [o.reason for o in result.executed_exits] == ["stop_loss"]
        assert result.new_state.circuit_breaker.status == CircuitBreakerStatus.PAUSED

    def test_halt_raises_alert(self, make_orchestrator):
        history = [make_trade(-8_000.0, NOW - timedelta(minutes=5))]
        alerts = Mock()
        previous = state_with(trade_history=history, account_value=92_000.0)

        result = make_orchestrator(alert_service=alerts).run_cycle(previous)

        assert result.new_state.circuit_breaker.status == CircuitBreakerStatus.HALTED
        alerts.notify.assert_called_once()
        assert alerts.notify.call_args[0][0] == AlertSeverity.CRITICAL

    def test_loss_in_this_cycle_trips_breaker_for_next(self, make_orchestrator, market):
        history = [make_trade(-1.0, NOW - timedelta(minutes=m)) for m in (20, 10)]
        market.set_price("BTC", 90.0)

        result = make_orchestrator().run_cycle(state_with(open_long(stop=95.0), trade_history=history))

        assert result.new_state.circuit_breaker.status == CircuitBreakerStatus.PAUSED
        assert result.new_state.circuit_breaker.consecutive_losses == 3


class TestMarketData:
    def test_one_failing_asset_is_excluded(self, make_orchestrator, market, generator):
        market.failing.add("ETH")
        generator.output = [long_signal("BTC")]

        result = make_orchestrator().run_cycle(CycleState())

        assert result.success
        assert "ETH" in result.diagnostics["market_data"]["failed"]
        assert len(result.executed_entries) == 1

    def test_all_assets_failing_aborts_but_keeps_state(self, make_orchestrator, market):
        market.failing.update({"BTC", "ETH"})

        result = make_orchestrator().run_cycle(state_with(open_long()))

        assert not result.success
        assert "market data unavailable" in result.error
        assert "BTC" in result.new_state.positions
        assert result.new_state.cycle_count == 1

    def test_ranker_failure_still_runs_exits(self, make_orchestrator, market):
        market.set_price("BTC", 90.0)

        result = make_orchestrator(ranker=StubRanker(fail=True)).run_cycle(state_with(open_long(stop=95.0)))

        assert result.success
        assert [o.reason for o in result.executed_exits] == ["stop_loss"]


class TestReconciliation:
    @pytest.fixture
    def recon_policy(self):
        return base_policy(reconciliation={"enabled": True, "account_address": "0xabc"})

    def test_external_close_emits_synthetic_trade(self, make_orchestrator, recon_policy, sink):
        provider = StubAccountProvider(AccountState(account_value=50_000.0))

        result = make_orchestrator(recon_policy, account_provider=provider).run_cycle(state_with(open_long()))

        assert provider.addresses == ["0xabc"]
        assert "BTC" not in result.new_state.positions
        synthetic = result.realized_trades[0]
        assert synthetic.exit_reason == ExitReason.MANUAL_CLOSE_DETECTED.value
        assert synthetic.cycle_id == result.cycle_id
        assert sink.trades == [synthetic]
        assert result.new_state.account_value == 50_000.0

    def test_reconciliation_is_idempotent_across_cycles(self, make_orchestrator, recon_policy):
        remote = RemotePosition(symbol="BTC", side=Side.LONG, quantity=1.5, entry_price=100.0)
        provider = StubAccountProvider(AccountState(account_value=50_000.0, open_positions={"BTC": remote}))
        orchestrator = make_orchestrator(recon_policy, account_provider=provider)

        first = orchestrator.run_cycle(state_with(open_long(quantity=2.0)))
        second = orchestrator.run_cycle(first.new_state)

        assert first.diagnostics["reconciliation"]["size_fixes"][0]["remote_quantity"] == 1.5
        assert second.diagnostics["reconciliation"]["size_fixes"] == []
        assert second.new_state.positions["BTC"].quantity == pytest.approx(1.5)

    def test_provider_failure_skips_reconciliation(self, make_orchestrator, recon_policy):
        provider = StubAccountProvider(error=TimeoutError("info endpoint timed out"))

        result = make_orchestrator(recon_policy, account_provider=provider).run_cycle(state_with(open_long()))

        assert result.success
        assert "skipped" in result.diagnostics["reconciliation"]
        assert "BTC" in result.new_state.positions

    def test_divergence_alerts(self, make_orchestrator, recon_policy):
        remote = RemotePosition(symbol="BTC", side=Side.SHORT, quantity=1.0, entry_price=101.0)
        provider = StubAccountProvider(AccountState(account_value=50_000.0, open_positions={"BTC": remote}))
        alerts = Mock()

        result = make_orchestrator(recon_policy, account_provider=provider, alert_service=alerts).run_cycle(
            state_with(open_long())
        )

        assert result.new_state.positions["BTC"].side == Side.SHORT
        alerts.notify.assert_called_once()
        assert alerts.notify.call_args[0][0] == AlertSeverity.WARNING

    def test_low_margin_level_blocks_entries_same_cycle(self, make_orchestrator, generator):
        policy = base_policy(
            reconciliation={"enabled": True, "account_address": "0xabc"},
            circuit_breaker={"consecutive_losses_limit": 3, "margin_level_min_pct": 150.0},
        )
        remote = RemotePosition(symbol="BTC", side=Side.LONG, quantity=2.0, entry_price=100.0)
        provider = StubAccountProvider(AccountState(
            account_value=1_200.0, margin_used=1_000.0, open_positions={"BTC": remote},
        ))
        generator.output = [long_signal("ETH")]
        alerts = Mock()

        result = make_orchestrator(policy, account_provider=provider, alert_service=alerts).run_cycle(
            state_with(open_long())
        )

        assert result.executed_entries == []
        assert "circuit breaker HALTED" in result.rejected_signals[0].reason
        assert result.new_state.circuit_breaker.status == CircuitBreakerStatus.HALTED
        assert "Margin level" in result.new_state.circuit_breaker.reason
        alerts.notify.assert_called_once()
        assert alerts.notify.call_args[0][0] == AlertSeverity.CRITICAL

    def test_missing_account_address_is_configuration_error(self, make_orchestrator):
        with pytest.raises(ConfigurationError):
            make_orchestrator(base_policy(), account_provider=StubAccountProvider())


class TestConfiguration:
    def test_invalid_cycle_config_aborts_without_mutation(self, make_orchestrator, generator):
        generator.output = [long_signal("BTC")]
        previous = state_with(open_long())

        result = make_orchestrator().run_cycle(previous, config={"selection": {"policy": "best_effort"}})

        assert not result.success
        assert result.new_state is previous
        assert result.diagnostics["config_errors"]
        assert generator.calls == []

    def test_valid_cycle_config_is_applied(self, make_orchestrator, generator):
        generator.output = [long_signal("BTC", confidence=0.7)]
        stricter = base_policy(entries={"min_confidence": 0.75})

        result = make_orchestrator().run_cycle(CycleState(), config=stricter)

        assert result.executed_entries == []
        assert "75%" in result.rejected_signals[0].reason


class TestObservability:
    def test_metrics_and_stage_timings(self, make_orchestrator, generator):
        metrics = MetricsRecorder(enabled=False)
        generator.output = [long_signal("BTC"), long_signal("ETH", confidence=0.1)]

        result = make_orchestrator(metrics=metrics).run_cycle(CycleState())

        assert set(result.diagnostics["stage_ms"]) >= {"circuit_breaker", "market_data", "exits", "entries"}
        assert metrics.last_cycle.status == "ok"
        assert metrics.last_cycle.entries == 1
        assert metrics.rejection_snapshot() == {"confidence": 1}

    def test_sink_failure_does_not_fail_cycle(self, make_orchestrator, market):
        market.set_price("BTC", 90.0)

        result = make_orchestrator(performance_sink=ListSink(fail=True)).run_cycle(
            state_with(open_long(stop=95.0))
        )

        assert result.success
        assert len(result.realized_trades) == 1
