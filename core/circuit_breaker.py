"""
cycletrader Core: Circuit Breaker

Global gate for new entries. Trip conditions (all thresholds from policy):
- Daily realized loss beyond daily_loss_limit_pct     -> HALTED
- Consecutive losing trades >= consecutive_losses_limit -> PAUSED
- Rolling API error rate above api_error_rate_limit_pct -> HALTED
- Margin level below margin_level_min_pct              -> HALTED
  (skipped when unset or when no margin level is known)

PAUSED suspends new entries; HALTED also asks for operator attention.
Exits are never gated here.

A tripped status is sticky. It clears only on the daily roll (at midnight
in reset_timezone) or on an explicit operator reset. Only trades closed
after the last reset count toward the loss checks.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from core.models import CircuitBreakerState, CircuitBreakerStatus, TradeRecord, utc_now

logger = logging.getLogger(__name__)


class ApiErrorTracker:
    """
    Rolling window of collaborator call outcomes.

    The error rate reads 0% until min_samples calls have been seen, so one
    early timeout cannot halt trading on its own.
    """

    def __init__(
        self,
        window_seconds: float = 600.0,
        min_samples: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = float(window_seconds)
        self.min_samples = int(min_samples)
        self._clock = clock
        self._events: Deque[Tuple[float, bool]] = deque()
        self._lock = threading.Lock()

    @classmethod
    def from_policy(cls, policy: Optional[Dict]) -> "ApiErrorTracker":
        cfg = (policy or {}).get("circuit_breaker", {}) or {}
        return cls(
            window_seconds=float(cfg.get("api_error_window_seconds", 600)),
            min_samples=int(cfg.get("min_api_samples", 10)),
        )

    def record_success(self) -> None:
        self._record(True)

    def record_error(self, source: str = "") -> None:
        self._record(False)
        logger.debug(f"API error recorded ({source or 'unknown'})")

    def _record(self, ok: bool) -> None:
        with self._lock:
            now = self._clock()
            self._events.append((now, ok))
            self._prune(now)

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._events and self._events[0][0] < cutoff:
            self._events.popleft()

    def counts(self) -> Tuple[int, int]:
        """(errors, total) inside the window."""
        with self._lock:
            self._prune(self._clock())
            total = len(self._events)
            errors = sum(1 for _, ok in self._events if not ok)
        return errors, total

    def error_rate_pct(self) -> float:
        errors, total = self.counts()
        if total < self.min_samples or total == 0:
            return 0.0
        return errors / total * 100.0

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


@dataclass
class CircuitBreakerDecision:
    status: CircuitBreakerStatus
    reason: Optional[str] = None
    breached: List[str] = field(default_factory=list)
    daily_pnl: float = 0.0
    daily_pnl_pct: float = 0.0
    consecutive_losses: int = 0
    api_error_rate_pct: float = 0.0
    margin_level_pct: Optional[float] = None

    @property
    def entries_allowed(self) -> bool:
        return self.status == CircuitBreakerStatus.NORMAL


class CircuitBreaker:
    """Evaluates trade history and live error rate against configured limits."""

    def __init__(self, policy: Optional[Dict] = None):
        cfg = (policy or {}).get("circuit_breaker", {}) or {}
        self.enabled = bool(cfg.get("enabled", True))
        self.daily_loss_limit_pct = abs(float(cfg.get("daily_loss_limit_pct", 5.0)))
        self.consecutive_losses_limit = int(cfg.get("consecutive_losses_limit", 5))
        self.api_error_rate_limit_pct = float(cfg.get("api_error_rate_limit_pct", 50.0))
        margin_min = cfg.get("margin_level_min_pct")
        self.margin_level_min_pct = float(margin_min) if margin_min is not None else None
        self.reset_timezone = str(cfg.get("reset_timezone", "UTC"))
        self._tz = ZoneInfo(self.reset_timezone)

        logger.info(
            f"CircuitBreaker initialized: daily_loss={self.daily_loss_limit_pct}%, "
            f"consecutive_losses={self.consecutive_losses_limit}, "
            f"api_error_rate={self.api_error_rate_limit_pct}%, "
            f"margin_level_min={self.margin_level_min_pct}, tz={self.reset_timezone}"
        )

    def trading_day(self, now: datetime) -> str:
        return now.astimezone(self._tz).date().isoformat()

    def roll_day(self, state: CircuitBreakerState, now: Optional[datetime] = None) -> CircuitBreakerState:
        """Return a fresh state when the trading day changed, else `state` unchanged."""
        now = now or utc_now()
        today = self.trading_day(now)
        if state.last_reset_date == today:
            return state
        if state.last_reset_date is not None:
            logger.info(
                f"Resetting daily circuit breaker (last reset: {state.last_reset_date}, "
                f"previous status={state.status.value})"
            )
        return CircuitBreakerState(last_reset_date=today, reset_at=now)

    def operator_reset(self, state: CircuitBreakerState, now: Optional[datetime] = None,
                       operator: str = "operator") -> CircuitBreakerState:
        now = now or utc_now()
        logger.warning(
            f"Circuit breaker manually reset by {operator} "
            f"(was {state.status.value}: {state.reason})"
        )
        return CircuitBreakerState(last_reset_date=self.trading_day(now), reset_at=now)

    def _trades_since_reset(self, history: Sequence[TradeRecord], state: Optional[CircuitBreakerState],
                            now: datetime) -> List[TradeRecord]:
        today = self.trading_day(now)
        reset_at = state.reset_at if state else None
        relevant = []
        for trade in history:
            if trade.exit_time is None:
                continue
            if self.trading_day(trade.exit_time) != today:
                continue
            if reset_at is not None and trade.exit_time < reset_at:
                continue
            relevant.append(trade)
        relevant.sort(key=lambda t: t.exit_time)
        return relevant

    def margin_breached(self, margin_level_pct: Optional[float]) -> bool:
        if self.margin_level_min_pct is None or margin_level_pct is None:
            return False
        return margin_level_pct < self.margin_level_min_pct

    @staticmethod
    def _consecutive_losses(trades: Sequence[TradeRecord]) -> int:
        streak = 0
        for trade in reversed(trades):
            if trade.pnl < 0:
                streak += 1
            else:
                break
        return streak

    def evaluate(
        self,
        history: Sequence[TradeRecord],
        live_error_rate: float,
        state: Optional[CircuitBreakerState] = None,
        now: Optional[datetime] = None,
        account_value: Optional[float] = None,
        margin_level_pct: Optional[float] = None,
    ) -> CircuitBreakerDecision:
        """
        Pure evaluation; the caller decides how to honour the result.

        Args:
            history: Recent realized trades (any order)
            live_error_rate: Rolling collaborator error rate in percent
            state: Current breaker state (for stickiness and reset window)
            now: Evaluation time (default: now, UTC)
            account_value: Current equity, used to express daily PnL in percent
            margin_level_pct: Account value over margin in use, in percent

        Returns:
            CircuitBreakerDecision with status, reason and the measured values
        """
        now = now or utc_now()
        trades = self._trades_since_reset(history, state, now)

        daily_pnl = sum(t.pnl for t in trades)
        start_equity = (account_value - daily_pnl) if account_value else None
        if start_equity and start_equity > 0:
            daily_pnl_pct = daily_pnl / start_equity * 100.0
        else:
            daily_pnl_pct = sum(t.pnl_pct for t in trades)
        consecutive = self._consecutive_losses(trades)
        error_rate = float(live_error_rate or 0.0)

        breaches: List[Tuple[str, CircuitBreakerStatus, str]] = []
        if self.enabled:
            if daily_pnl_pct < -self.daily_loss_limit_pct:
                breaches.append((
                    "daily_loss",
                    CircuitBreakerStatus.HALTED,
                    f"Daily loss {daily_pnl_pct:.2f}% exceeds limit -{self.daily_loss_limit_pct:.2f}%",
                ))
            if consecutive >= self.consecutive_losses_limit:
                breaches.append((
                    "consecutive_losses",
                    CircuitBreakerStatus.PAUSED,
                    f"{consecutive} consecutive losses (limit {self.consecutive_losses_limit})",
                ))
            if error_rate > self.api_error_rate_limit_pct:
                breaches.append((
                    "api_error_rate",
                    CircuitBreakerStatus.HALTED,
                    f"API error rate {error_rate:.1f}% exceeds {self.api_error_rate_limit_pct:.1f}%",
                ))
            if self.margin_breached(margin_level_pct):
                breaches.append((
                    "margin_level",
                    CircuitBreakerStatus.HALTED,
                    f"Margin level {margin_level_pct:.2f}% below {self.margin_level_min_pct:.2f}%",
                ))

        status = CircuitBreakerStatus.NORMAL
        reasons = []
        for _, breach_status, message in breaches:
            reasons.append(message)
            if breach_status.severity > status.severity:
                status = breach_status

        reason = "; ".join(reasons) if reasons else None
        if state is not None and state.status.severity > status.severity:
            # Sticky until daily roll or operator reset
            status = state.status
            reason = state.reason

        if breaches:
            logger.warning(f"🚨 Circuit breaker {status.value}: {reason}")

        return CircuitBreakerDecision(
            status=status,
            reason=reason,
            breached=[name for name, _, _ in breaches],
            daily_pnl=daily_pnl,
            daily_pnl_pct=daily_pnl_pct,
            consecutive_losses=consecutive,
            api_error_rate_pct=error_rate,
            margin_level_pct=margin_level_pct,
        )

    def apply(self, state: CircuitBreakerState, decision: CircuitBreakerDecision,
              now: Optional[datetime] = None) -> CircuitBreakerState:
        """New state reflecting `decision` (trip time kept from the first trip)."""
        now = now or utc_now()
        tripped_at = state.tripped_at
        if decision.status != CircuitBreakerStatus.NORMAL and tripped_at is None:
            tripped_at = now
        if decision.status == CircuitBreakerStatus.NORMAL:
            tripped_at = None
        return CircuitBreakerState(
            status=decision.status,
            reason=decision.reason,
            daily_pnl=decision.daily_pnl,
            daily_pnl_pct=decision.daily_pnl_pct,
            consecutive_losses=decision.consecutive_losses,
            api_error_rate_pct=decision.api_error_rate_pct,
            tripped_at=tripped_at,
            last_reset_date=state.last_reset_date or self.trading_day(now),
            reset_at=state.reset_at,
        )
