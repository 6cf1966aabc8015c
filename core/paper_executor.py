"""
cycletrader Core: Paper Executor

Virtual order execution for PAPER mode. Fills immediately at the market
price, shifted against the trader by a fixed slippage in basis points,
and keeps a virtual margin balance so oversized entries are rejected the
way an exchange would reject them.

The virtual balance lives in memory only: a restart resets it to the
configured capital while open positions are restored from the state file.
"""

import logging
import threading
import uuid
from typing import Dict, Optional

from core.interfaces import Executor
from core.models import CandidateSignal, ExitReason, Fill, FillStatus, Position, Side

logger = logging.getLogger(__name__)


class PaperExecutor(Executor):
    """
    Simulated executor.

    Config (app.yaml `paper` section):
        capital: starting virtual balance (default 10000)
        slippage_bps: adverse slippage applied to every fill (default 5)
        position_size_pct: margin per entry as % of balance when the signal
            carries no quantity (default 10)
        default_leverage: leverage when the signal carries none (default 10)
    """

    def __init__(self, config: Optional[Dict] = None):
        config = config or {}
        self.balance = float(config.get("capital", 10_000.0))
        self.slippage_bps = float(config.get("slippage_bps", 5.0))
        self.position_size_pct = float(config.get("position_size_pct", 10.0))
        self.default_leverage = float(config.get("default_leverage", 10.0))
        self._lock = threading.Lock()

        logger.info(
            f"PaperExecutor initialized: capital=${self.balance:,.2f}, "
            f"slippage={self.slippage_bps}bps, size={self.position_size_pct}% x{self.default_leverage}"
        )

    def _slipped(self, price: float, buying: bool) -> float:
        shift = price * self.slippage_bps / 10_000.0
        filled = price + shift if buying else price - shift
        return max(filled, price * 0.001)

    def _order_id(self, prefix: str) -> str:
        return f"paper_{prefix}_{uuid.uuid4().hex[:10]}"

    def execute_entry(self, signal: CandidateSignal, current_price: float) -> Fill:
        side = signal.side
        if side is None:
            return Fill(FillStatus.REJECTED, reason=f"no entry side for direction {signal.direction.value}")
        if not current_price or current_price <= 0:
            return Fill(FillStatus.REJECTED, reason="no market price")

        leverage = float(signal.leverage or self.default_leverage)
        fill_price = self._slipped(current_price, buying=side == Side.LONG)

        with self._lock:
            if signal.quantity:
                quantity = float(signal.quantity)
            else:
                margin_budget = self.balance * self.position_size_pct / 100.0
                quantity = margin_budget * leverage / fill_price

            margin_required = quantity * fill_price / leverage
            if quantity <= 0:
                return Fill(FillStatus.REJECTED, reason="computed order size is zero")
            if margin_required > self.balance:
                reason = (
                    f"Insufficient virtual capital: need ${margin_required:,.2f}, "
                    f"have ${self.balance:,.2f}"
                )
                logger.info(f"Paper entry rejected for {signal.symbol}: {reason}")
                return Fill(FillStatus.REJECTED, reason=reason)

            self.balance -= margin_required

        logger.info(
            f"📝 PAPER ENTRY {side.value} {signal.symbol}: {quantity:.6f} @ ${fill_price:.4f} "
            f"(x{leverage:g}, margin ${margin_required:,.2f})"
        )
        return Fill(
            FillStatus.FILLED,
            filled_qty=quantity,
            filled_price=fill_price,
            order_id=self._order_id("entry"),
        )

    def execute_exit(self, position: Position, pct: float, reason: ExitReason, price: float) -> Fill:
        if not price or price <= 0:
            return Fill(FillStatus.REJECTED, reason="no market price")
        close_qty = position.quantity * min(max(pct, 0.0), 100.0) / 100.0
        if close_qty <= 0:
            return Fill(FillStatus.REJECTED, reason="nothing to close")

        fill_price = self._slipped(price, buying=position.side == Side.SHORT)
        pnl = (fill_price - position.entry_price) * close_qty * position.side.sign
        leverage = position.leverage if position.leverage and position.leverage > 0 else 1.0

        with self._lock:
            self.balance += close_qty * position.entry_price / leverage + pnl

        logger.info(
            f"📝 PAPER EXIT {position.side.value} {position.symbol}: {close_qty:.6f} @ ${fill_price:.4f} "
            f"({pct:.0f}%, {reason.value}), PnL=${pnl:.2f}"
        )
        return Fill(
            FillStatus.FILLED,
            filled_qty=close_qty,
            filled_price=fill_price,
            order_id=self._order_id("exit"),
        )
