"""
Trading Cycle Pipeline - Cycle Orchestrator

Composes every core component into one trading cycle:
1. Circuit breaker check (entries suspended unless NORMAL; exits always run)
2. Position reconciliation against the exchange (best effort)
3. Market data fetch for the universe (concurrent, per-asset failure isolation)
4. Ranking and top-K selection
5. Price refresh on every tracked position
6. Candidate signal generation
7. Signal reclassification against open positions
8. Exit evaluation and execution (ledger applies every exit fill)
9. Entry filtering and execution (guard, confidence, capacity)
10. Realized trades handed to the performance sink

Exits complete before entries so margin freed by a close is available to
a new entry in the same cycle. Every collaborator call is isolated: one
failing asset, position or signal becomes a diagnostic or a rejection,
never a cycle abort. CycleResult.error is reserved for configuration
errors and for market data being entirely unavailable.
"""

import dataclasses
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from core.circuit_breaker import ApiErrorTracker, CircuitBreaker, CircuitBreakerDecision
from core.exceptions import ConfigurationError, ExecutionRejection
from core.exit_evaluator import ExitEvaluator
from core.interfaces import (
    AccountStateProvider,
    AssetRanker,
    Executor,
    MarketDataProvider,
    PerformanceSink,
    SignalGenerator,
)
from core.models import (
    AccountState,
    CandidateSignal,
    CircuitBreakerState,
    CircuitBreakerStatus,
    CycleResult,
    CycleState,
    ExecutedOrder,
    MarketSnapshot,
    RankedAsset,
    RejectedSignal,
    SignalBatch,
    SignalDirection,
    Side,
    utc_now,
)
from core.order_ledger import OrderLedger, PositionBook
from core.pre_trade_guard import PreTradeGuard
from core.reconciler import PositionReconciler
from infra.alerting import AlertSeverity
from tools.config_validator import validate_policy_dict

logger = logging.getLogger(__name__)


class _CycleAbort(Exception):
    """Whole-cycle fatal condition; state gathered so far is still persisted."""


def _entry_direction(side: Side) -> SignalDirection:
    return SignalDirection.ENTER_LONG if side == Side.LONG else SignalDirection.ENTER_SHORT


class CycleOrchestrator:
    """
    Runs one trading cycle at a time over a caller-owned CycleState.

    The orchestrator holds no position state between cycles: the caller
    passes the previous CycleState in and persists CycleResult.new_state.
    The rolling API error window is the only thing it carries over.
    """

    def __init__(
        self,
        market_data: MarketDataProvider,
        ranker: AssetRanker,
        signal_generator: SignalGenerator,
        executor: Executor,
        policy: Optional[Dict] = None,
        account_provider: Optional[AccountStateProvider] = None,
        performance_sink: Optional[PerformanceSink] = None,
        alert_service=None,
        metrics=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize orchestrator.

        Args:
            market_data: Per-asset snapshot provider
            ranker: Orders fetched assets best-first
            signal_generator: Produces candidate signals for selected symbols
            executor: Order execution (paper or live)
            policy: Policy config dict (validated once here)
            account_provider: Exchange account state, enables reconciliation
            performance_sink: Receives every realized trade
            alert_service: Optional AlertService for halts and divergences
            metrics: Optional MetricsRecorder
            clock: Source of "now" (UTC)
        """
        self.market_data = market_data
        self.ranker = ranker
        self.signal_generator = signal_generator
        self.executor = executor
        self.account_provider = account_provider
        self.performance_sink = performance_sink
        self.alert_service = alert_service
        self.metrics = metrics
        self._clock = clock

        self.policy: Dict = {}
        self.configure(policy or {})
        self.error_tracker = ApiErrorTracker.from_policy(self.policy)

        logger.info(
            f"CycleOrchestrator initialized: universe={len(self.universe)} assets, "
            f"top_k={self.top_k} ({self.selection_policy}), min_confidence={self.min_confidence:.0%}, "
            f"reconciliation={'on' if self._reconciliation_active else 'off'}"
        )

    def configure(self, policy: Dict) -> None:
        """Validate `policy` and rebuild every policy-driven component."""
        errors = validate_policy_dict(policy)
        recon_cfg = policy.get("reconciliation", {}) or {}
        if (
            self.account_provider is not None
            and recon_cfg.get("enabled", True)
            and not recon_cfg.get("account_address")
        ):
            errors.append("reconciliation.account_address is required when an account provider is configured")
        if errors:
            raise ConfigurationError(errors)

        self.policy = policy
        self.ledger = OrderLedger(policy)
        self.circuit_breaker = CircuitBreaker(policy)
        self.reconciler = PositionReconciler(policy, ledger=self.ledger)
        self.exit_evaluator = ExitEvaluator(policy)
        self.guard = PreTradeGuard(policy)

        self.reconciliation_enabled = bool(recon_cfg.get("enabled", True))
        self.account_address = recon_cfg.get("account_address")

        entries_cfg = policy.get("entries", {}) or {}
        self.min_confidence = float(entries_cfg.get("min_confidence", 0.60))
        self.max_open_positions = int(entries_cfg.get("max_open_positions", 10))
        self.default_leverage = float(entries_cfg.get("default_leverage", 10))

        stop_cfg = (policy.get("exits", {}) or {}).get("stop_loss", {}) or {}
        self.default_stop_loss_pct = stop_cfg.get("default_stop_loss_pct")

        rank_cfg = (policy.get("exits", {}) or {}).get("ranking_drop", {}) or {}
        self.ranking_history_length = int(rank_cfg.get("history_length", 10))

        selection_cfg = policy.get("selection", {}) or {}
        self.top_k = int(selection_cfg.get("top_k", 5))
        self.selection_policy = selection_cfg.get("policy", "top_n")
        self.allowed_actions = [str(a).upper() for a in selection_cfg.get("allowed_actions", ["LONG", "SHORT"])]
        self.include_open_positions = bool(selection_cfg.get("include_open_positions", True))

        ledger_cfg = policy.get("ledger", {}) or {}
        self.history_limit = int(ledger_cfg.get("history_limit", 200))

        data_cfg = policy.get("market_data", {}) or {}
        self.universe: List[str] = list(data_cfg.get("universe", []) or [])
        self.max_workers = max(1, int(data_cfg.get("max_workers", 8)))

    @property
    def _reconciliation_active(self) -> bool:
        return self.reconciliation_enabled and self.account_provider is not None

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self, previous_state: Optional[CycleState] = None,
                  config: Optional[Dict] = None) -> CycleResult:
        """
        Execute one complete trading cycle.

        Args:
            previous_state: State returned by the previous cycle (None = fresh)
            config: Policy override for this and later cycles (validated first)

        Returns:
            CycleResult; new_state is always populated
        """
        cycle_id = uuid.uuid4().hex[:12]
        previous_state = previous_state or CycleState()
        started = time.perf_counter()

        if config is not None and config is not self.policy:
            try:
                self.configure(config)
            except ConfigurationError as e:
                logger.error(f"Cycle {cycle_id} aborted: {e}")
                result = CycleResult(success=False, new_state=previous_state, error=str(e), cycle_id=cycle_id)
                result.diagnostics["config_errors"] = list(e.errors)
                self._publish(result, time.perf_counter() - started)
                return result

        now = self._clock()
        book = PositionBook.from_positions(previous_state.positions)
        result = CycleResult(success=True, new_state=previous_state, cycle_id=cycle_id)
        result.diagnostics.update({"cycle_id": cycle_id, "stage_ms": {}, "rejections_by_category": {}})
        cb_state = previous_state.circuit_breaker
        account_state: Optional[AccountState] = None

        logger.info(f"===== Cycle {cycle_id} (#{previous_state.cycle_count + 1}) =====")

        try:
            # Step 1: circuit breaker
            with self._stage("circuit_breaker", result):
                cb_state, decision = self._check_circuit_breaker(previous_state, now)
                entries_allowed = decision.entries_allowed

            # Step 2: reconciliation
            with self._stage("reconciliation", result):
                account_state = self._reconcile(book, result, now)
                margin_level = account_state.margin_level_pct if account_state is not None else None
                if decision.status != CircuitBreakerStatus.HALTED and self.circuit_breaker.margin_breached(margin_level):
                    cb_state, decision = self._check_circuit_breaker(previous_state, now, margin_level)
                    entries_allowed = decision.entries_allowed

            # Step 3: market data
            with self._stage("market_data", result):
                requested = self._requested_symbols(book)
                snapshots = self._fetch_market_data(requested, result)
                if requested and not snapshots:
                    raise _CycleAbort(f"market data unavailable for all {len(requested)} assets")

            # Step 4: ranking and selection
            with self._stage("ranking", result):
                ranking = self._rank(snapshots, result)
                ranks = {asset.symbol: index + 1 for index, asset in enumerate(ranking)}
                selected = self._select(ranking, snapshots, book)

            # Step 5: price refresh
            for position in book:
                snapshot = snapshots.get(position.symbol)
                if snapshot is not None:
                    position.refresh_price(snapshot.price)

            # Step 6: signals
            with self._stage("signals", result):
                signals = self._generate_signals(selected, snapshots, account_state, ranking, result)

            # Step 7: reclassify
            actionable, matching = self._reclassify(signals, book, result)

            # Step 8: exits
            with self._stage("exits", result):
                self._process_exits(book, snapshots, ranks, matching, result, now)

            # Step 9: entries
            with self._stage("entries", result):
                if entries_allowed:
                    self._process_entries(actionable, book, snapshots, result, now)
                else:
                    suspended = f"entries suspended: circuit breaker {decision.status.value}"
                    if decision.reason:
                        suspended += f" ({decision.reason})"
                    for signal in actionable:
                        self._reject(result, signal, suspended, "circuit_breaker")

        except _CycleAbort as e:
            logger.error(f"Cycle {cycle_id} aborted: {e}")
            result.success = False
            result.error = str(e)
        except Exception as e:
            logger.error(f"Cycle {cycle_id} failed unexpectedly: {e}", exc_info=True)
            result.success = False
            result.error = f"unexpected cycle failure: {e}"

        # Step 10: persistence of outcomes and next state
        self._record_trades(result)
        result.new_state = self._next_state(previous_state, book, cb_state, account_state, result, now)
        if cb_state.status != CircuitBreakerStatus.HALTED and result.new_state.circuit_breaker.status == CircuitBreakerStatus.HALTED:
            self._alert_halt(result.new_state.circuit_breaker)

        elapsed = time.perf_counter() - started
        result.diagnostics["duration_ms"] = round(elapsed * 1000, 1)
        logger.info(
            f"Cycle {cycle_id} done in {elapsed:.2f}s: {len(result.executed_exits)} exits, "
            f"{len(result.executed_entries)} entries, {len(result.rejected_signals)} rejected, "
            f"{len(result.new_state.positions)} open, breaker={result.new_state.circuit_breaker.status.value}"
        )
        self._publish(result, elapsed)
        return result

    @contextmanager
    def _stage(self, name: str, result: CycleResult):
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start
            result.diagnostics["stage_ms"][name] = round(elapsed * 1000, 1)
            if self.metrics is not None:
                self.metrics.record_stage_duration(name, elapsed)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _check_circuit_breaker(
        self, state: CycleState, now: datetime, margin_level_pct: Optional[float] = None,
    ) -> Tuple[CircuitBreakerState, CircuitBreakerDecision]:
        cb_state = self.circuit_breaker.roll_day(state.circuit_breaker, now)
        decision = self.circuit_breaker.evaluate(
            state.trade_history,
            self.error_tracker.error_rate_pct(),
            state=cb_state,
            now=now,
            account_value=state.account_value,
            margin_level_pct=margin_level_pct,
        )
        if cb_state.status != CircuitBreakerStatus.HALTED and decision.status == CircuitBreakerStatus.HALTED:
            self._alert_halt(decision)
        cb_state = self.circuit_breaker.apply(cb_state, decision, now)
        if not decision.entries_allowed:
            logger.warning(f"Circuit breaker {decision.status.value}: new entries suspended ({decision.reason})")
        return cb_state, decision

    def _reconcile(self, book: PositionBook, result: CycleResult, now: datetime) -> Optional[AccountState]:
        if not self._reconciliation_active:
            return None

        try:
            account_state = self.account_provider.get_user_state(self.account_address)
            self.error_tracker.record_success()
        except Exception as e:
            self.error_tracker.record_error("account_state")
            logger.warning(f"Reconciliation skipped this cycle: account state unavailable ({e})")
            result.diagnostics["reconciliation"] = {"skipped": str(e)}
            return None

        try:
            outcome = self.reconciler.reconcile(book.snapshot(), account_state.open_positions, now)
        except Exception as e:
            logger.error(f"Reconciliation failed, local book left unchanged: {e}", exc_info=True)
            result.diagnostics["reconciliation"] = {"skipped": str(e)}
            return account_state

        book.replace(outcome.updated_positions)
        for trade in outcome.synthetic_closes:
            trade.cycle_id = result.cycle_id
            result.realized_trades.append(trade)
        result.diagnostics["reconciliation"] = outcome.summary()

        if outcome.divergences and self.alert_service is not None:
            self.alert_service.notify(
                AlertSeverity.WARNING,
                "Position divergence resolved from exchange",
                "; ".join(str(d) for d in outcome.divergences),
                {"symbols": [d.symbol for d in outcome.divergences]},
            )
        return account_state

    def _requested_symbols(self, book: PositionBook) -> List[str]:
        symbols = list(dict.fromkeys(self.universe))
        for symbol in book.symbols():
            if symbol not in symbols:
                symbols.append(symbol)
        return symbols

    def _fetch_one(self, symbol: str) -> Optional[MarketSnapshot]:
        return (self.market_data.fetch([symbol]) or {}).get(symbol)

    def _fetch_market_data(self, symbols: Sequence[str], result: CycleResult) -> Dict[str, MarketSnapshot]:
        """Fetch each asset independently; failed assets are excluded this cycle."""
        snapshots: Dict[str, MarketSnapshot] = {}
        failures: Dict[str, str] = {}
        if not symbols:
            logger.warning("Empty asset universe and no open positions; nothing to fetch")
            result.diagnostics["market_data"] = {"requested": 0, "fetched": 0, "failed": {}}
            return snapshots

        workers = min(self.max_workers, len(symbols))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="market-data") as pool:
            futures = {pool.submit(self._fetch_one, symbol): symbol for symbol in symbols}
            for future in as_completed(futures):
                symbol = futures[future]
                try:
                    snapshot = future.result()
                except Exception as e:
                    self.error_tracker.record_error(f"market_data:{symbol}")
                    failures[symbol] = str(e)
                    logger.warning(f"Market data fetch failed for {symbol}: {e}")
                    continue
                self.error_tracker.record_success()
                if snapshot is None or not snapshot.price or snapshot.price <= 0:
                    failures[symbol] = "no data"
                    logger.debug(f"No usable market data for {symbol}")
                    continue
                snapshots[symbol] = snapshot

        result.diagnostics["market_data"] = {
            "requested": len(symbols),
            "fetched": len(snapshots),
            "failed": failures,
        }
        if failures:
            logger.info(f"Market data: {len(snapshots)}/{len(symbols)} assets fetched, excluded {sorted(failures)}")
        return snapshots

    def _rank(self, snapshots: Dict[str, MarketSnapshot], result: CycleResult) -> List[RankedAsset]:
        if not snapshots:
            return []
        try:
            ranking = list(self.ranker.rank(snapshots) or [])
            self.error_tracker.record_success()
        except Exception as e:
            self.error_tracker.record_error("ranker")
            logger.warning(f"Asset ranking failed, no new candidates this cycle: {e}")
            result.diagnostics["ranking_error"] = str(e)
            return []
        ranking = [asset for asset in ranking if asset.symbol in snapshots]
        result.diagnostics["ranking"] = [
            {"symbol": a.symbol, "score": a.score, "quality": a.quality_label, "action": a.action}
            for a in ranking[: max(self.top_k * 2, 10)]
        ]
        return ranking

    def _select(self, ranking: List[RankedAsset], snapshots: Dict[str, MarketSnapshot],
                book: PositionBook) -> List[str]:
        if self.selection_policy == "action_filter":
            eligible = [a for a in ranking if str(a.action or "").upper() in self.allowed_actions]
        else:
            eligible = ranking
        selected = [asset.symbol for asset in eligible[: self.top_k]]

        if self.include_open_positions:
            for symbol in book.symbols():
                if symbol in snapshots and symbol not in selected:
                    selected.append(symbol)
        logger.info(f"Selected {len(selected)} symbols for signal generation: {selected}")
        return selected

    def _generate_signals(
        self,
        selected: List[str],
        snapshots: Dict[str, MarketSnapshot],
        account_state: Optional[AccountState],
        ranking: List[RankedAsset],
        result: CycleResult,
    ) -> List[CandidateSignal]:
        if not selected:
            return []
        try:
            output = self.signal_generator.generate(
                selected,
                {s: snapshots[s] for s in selected if s in snapshots},
                account_state,
                ranking,
            )
            self.error_tracker.record_success()
        except Exception as e:
            self.error_tracker.record_error("signal_generator")
            logger.warning(f"Signal generation failed, no candidates this cycle: {e}")
            result.diagnostics["signal_error"] = str(e)
            return []

        if isinstance(output, SignalBatch):
            raw, generator_rejected = output.signals, output.rejected
        else:
            raw, generator_rejected = list(output or []), []

        for rejected in generator_rejected:
            self._count_rejection(result, "generator")
            result.rejected_signals.append(rejected)

        signals: List[CandidateSignal] = []
        invalid = []
        for item in raw:
            if isinstance(item, CandidateSignal):
                signals.append(item)
                continue
            try:
                signals.append(CandidateSignal.from_dict(item))
            except (TypeError, ValueError, AttributeError) as e:
                invalid.append(str(e))
        if invalid:
            logger.warning(f"Dropped {len(invalid)} malformed signals: {invalid}")
            result.diagnostics["invalid_signals"] = invalid

        result.diagnostics["signals"] = {"generated": len(signals), "generator_rejected": len(generator_rejected)}
        return signals

    def _reclassify(self, signals: List[CandidateSignal], book: PositionBook,
                    result: CycleResult) -> Tuple[List[CandidateSignal], Dict[str, CandidateSignal]]:
        """
        Align signals with open positions.

        Returns:
            (actionable entry/add signals, symbol -> signal the exit evaluator should see)
        """
        actionable: List[CandidateSignal] = []
        matching: Dict[str, CandidateSignal] = {}
        converted = []
        seen = set()

        for signal in signals:
            if signal.symbol in seen:
                self._reject(result, signal, "duplicate signal for symbol in this cycle", "invalid")
                continue
            seen.add(signal.symbol)
            position = book.get(signal.symbol)

            if signal.direction == SignalDirection.HOLD:
                if position is None:
                    self._reject(result, signal, "hold signal without an open position", "invalid")
                else:
                    matching[signal.symbol] = signal
                continue

            if signal.direction == SignalDirection.ADD:
                if position is None:
                    self._reject(result, signal, "add signal without an open position", "invalid")
                    continue
                matching[signal.symbol] = signal
                actionable.append(dataclasses.replace(signal, direction=_entry_direction(position.side)))
                continue

            if position is None:
                actionable.append(signal)
            elif position.side == signal.side:
                matching[signal.symbol] = dataclasses.replace(signal, direction=SignalDirection.HOLD)
                converted.append(signal.symbol)
            else:
                # Reversal candidate: exit phase sees it first; entry only if the position is gone
                matching[signal.symbol] = signal
                actionable.append(signal)

        if converted:
            logger.info(f"Converted same-direction signals to hold: {converted}")
            result.diagnostics["converted_to_hold"] = converted
        return actionable, matching

    def _process_exits(
        self,
        book: PositionBook,
        snapshots: Dict[str, MarketSnapshot],
        ranks: Dict[str, int],
        matching: Dict[str, CandidateSignal],
        result: CycleResult,
        now: datetime,
    ) -> None:
        exit_failures = []
        for symbol in book.symbols():
            position = book.get(symbol)
            snapshot = snapshots.get(symbol)
            if position is None:
                continue
            if snapshot is None:
                logger.warning(f"No fresh price for {symbol}; exit checks skipped this cycle")
                exit_failures.append({"symbol": symbol, "reason": "no market data"})
                continue

            try:
                decision = self.exit_evaluator.evaluate(
                    position,
                    snapshot.price,
                    matching_signal=matching.get(symbol),
                    current_ranking=ranks.get(symbol),
                    snapshot=snapshot,
                )
                if decision is None:
                    continue

                logger.info(
                    f"🚪 EXIT {symbol} {position.side.value}: {decision.reason.value} "
                    f"{decision.exit_pct:.0f}% ({decision.description})"
                )
                try:
                    fill = self.executor.execute_exit(position, decision.exit_pct, decision.reason, snapshot.price)
                except ExecutionRejection as e:
                    fill = None
                    rejection = e.reason
                else:
                    rejection = fill.reason or fill.status.value
                self.error_tracker.record_success()

                if fill is None or not fill.is_filled:
                    logger.warning(f"Exit for {symbol} rejected: {rejection}")
                    exit_failures.append({"symbol": symbol, "reason": f"execution rejected: {rejection}"})
                    self._count_rejection(result, "exit_execution")
                    continue

                requested_qty = position.quantity * decision.exit_pct / 100.0
                exit_side = position.side.opposite
                applied = self.ledger.apply_fill(
                    book, symbol, exit_side, fill.filled_qty, fill.filled_price,
                    timestamp=now,
                    exit_reason=decision.reason,
                    exit_details=decision.description,
                )
                trade = applied.trade
                if trade is not None:
                    trade.cycle_id = result.cycle_id
                    result.realized_trades.append(trade)
                if applied.position is not None:
                    filled_fraction = fill.filled_qty / requested_qty if requested_qty > 0 else 1.0
                    self.exit_evaluator.record_exit(applied.position, decision, filled_fraction)

                result.executed_exits.append(ExecutedOrder(
                    symbol=symbol,
                    side=exit_side,
                    quantity=fill.filled_qty,
                    price=fill.filled_price,
                    reason=decision.reason.value,
                    fill=fill,
                    trade=trade,
                ))
            except Exception as e:
                self.error_tracker.record_error(f"exit:{symbol}")
                logger.error(f"Exit processing failed for {symbol}: {e}", exc_info=True)
                exit_failures.append({"symbol": symbol, "reason": f"error: {e}"})

        for position in book:
            position.record_ranking(ranks.get(position.symbol), self.ranking_history_length)

        if exit_failures:
            result.diagnostics["exit_failures"] = exit_failures

    def _default_stop(self, side: Side, price: float) -> Optional[float]:
        if not self.default_stop_loss_pct:
            return None
        distance = price * float(self.default_stop_loss_pct) / 100.0
        return price - distance if side == Side.LONG else price + distance

    def _process_entries(
        self,
        signals: List[CandidateSignal],
        book: PositionBook,
        snapshots: Dict[str, MarketSnapshot],
        result: CycleResult,
        now: datetime,
    ) -> None:
        for signal in signals:
            try:
                self._process_entry(signal, book, snapshots, result, now)
            except Exception as e:
                self.error_tracker.record_error(f"entry:{signal.symbol}")
                logger.error(f"Entry processing failed for {signal.symbol}: {e}", exc_info=True)
                self._reject(result, signal, f"entry error: {e}", "execution")

    def _process_entry(
        self,
        signal: CandidateSignal,
        book: PositionBook,
        snapshots: Dict[str, MarketSnapshot],
        result: CycleResult,
        now: datetime,
    ) -> None:
        symbol = signal.symbol
        side = signal.side
        position = book.get(symbol)

        if position is not None and position.side != side:
            self._reject(result, signal, f"opposes open {position.side.value} position", "position_conflict")
            return

        snapshot = snapshots.get(symbol)
        reasons = []
        guard = self.guard.permits(signal, snapshot, side=side)
        if not guard.allowed:
            reasons.extend(guard.veto_reasons)
        if signal.confidence < self.min_confidence:
            reasons.append(f"confidence {signal.confidence * 100:g}% < {self.min_confidence * 100:g}%")
        if reasons:
            category = "guard" if not guard.allowed else "confidence"
            self._reject(result, signal, "; ".join(reasons), category)
            return

        if snapshot is None:
            self._reject(result, signal, "no market price for symbol", "invalid")
            return
        if position is None and len(book) >= self.max_open_positions:
            self._reject(
                result, signal,
                f"max open positions reached ({len(book)}/{self.max_open_positions})",
                "capacity",
            )
            return

        order = signal if signal.leverage else dataclasses.replace(signal, leverage=self.default_leverage)
        try:
            fill = self.executor.execute_entry(order, snapshot.price)
        except ExecutionRejection as e:
            self.error_tracker.record_success()
            self._reject(result, signal, f"execution rejected: {e.reason}", "execution")
            return
        self.error_tracker.record_success()

        if not fill.is_filled:
            self._reject(result, signal, f"execution rejected: {fill.reason or fill.status.value}", "execution")
            return

        stop_loss = signal.stop_loss if signal.stop_loss is not None else self._default_stop(side, fill.filled_price)
        self.ledger.apply_fill(
            book, symbol, side, fill.filled_qty, fill.filled_price,
            timestamp=now,
            leverage=order.leverage,
            stop_loss=stop_loss,
            take_profit=signal.take_profit,
        )
        result.executed_entries.append(ExecutedOrder(
            symbol=symbol,
            side=side,
            quantity=fill.filled_qty,
            price=fill.filled_price,
            reason=f"{signal.direction.value} @ {signal.confidence:.0%} confidence",
            fill=fill,
        ))
        logger.info(
            f"✅ ENTRY {side.value} {symbol}: {fill.filled_qty:.6f} @ ${fill.filled_price:.4f} "
            f"({fill.status.value}, conf={signal.confidence:.0%})"
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _reject(self, result: CycleResult, signal: CandidateSignal, reason: str, category: str) -> None:
        logger.info(f"❌ Rejected {signal.symbol} {signal.direction.value}: {reason}")
        result.rejected_signals.append(RejectedSignal(signal=signal, reason=reason))
        self._count_rejection(result, category)

    def _count_rejection(self, result: CycleResult, category: str) -> None:
        counts = result.diagnostics.setdefault("rejections_by_category", {})
        counts[category] = counts.get(category, 0) + 1
        if self.metrics is not None:
            self.metrics.record_rejection(category)

    def _record_trades(self, result: CycleResult) -> None:
        if self.performance_sink is None:
            return
        for trade in result.realized_trades:
            try:
                self.performance_sink.record(trade)
            except Exception as e:
                logger.warning(f"Failed to record trade {trade.trade_id}: {e}")

    def _next_state(
        self,
        previous: CycleState,
        book: PositionBook,
        cb_state: CircuitBreakerState,
        account_state: Optional[AccountState],
        result: CycleResult,
        now: datetime,
    ) -> CycleState:
        history = list(previous.trade_history) + list(result.realized_trades)
        if self.history_limit > 0:
            history = history[-self.history_limit:]

        account_value = previous.account_value
        if account_state is not None and account_state.account_value is not None:
            account_value = account_state.account_value
        margin_level = account_state.margin_level_pct if account_state is not None else None

        decision = self.circuit_breaker.evaluate(
            history,
            self.error_tracker.error_rate_pct(),
            state=cb_state,
            now=now,
            account_value=account_value,
            margin_level_pct=margin_level,
        )
        cb_state = self.circuit_breaker.apply(cb_state, decision, now)

        return CycleState(
            positions=book.snapshot(),
            circuit_breaker=cb_state,
            trade_history=history,
            cycle_count=previous.cycle_count + 1,
            last_cycle_at=now,
            account_value=account_value,
        )

    def _alert_halt(self, status: Any) -> None:
        if self.alert_service is None:
            return
        self.alert_service.notify(
            AlertSeverity.CRITICAL,
            "Circuit breaker HALTED",
            str(getattr(status, "reason", None) or "trading halted"),
            {"status": CircuitBreakerStatus.HALTED.value},
        )

    def _publish(self, result: CycleResult, elapsed: float) -> None:
        if self.metrics is not None:
            self.metrics.record_cycle(result, elapsed)
