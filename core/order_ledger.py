"""
cycletrader Core: Order Ledger

Applies fill events to the position book:
- First fill for a symbol opens a position
- Same-side fills re-average the entry price (Decimal math)
- Opposite-side fills reduce; a reduction below epsilon closes the position
- Every reduction yields a realized TradeRecord (PnL, margin %, R-multiple)

Opposite-side fills never flip a position. Any excess beyond the open
quantity is ignored and logged.
"""

import copy
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterator, List, Optional, Union

from core.models import ExitReason, Position, Side, TradeRecord, utc_now

logger = logging.getLogger(__name__)

DEFAULT_EPSILON = 1e-4
DEFAULT_RISK_PCT = 2.0


def _to_decimal(value) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0")


class PositionBook:
    """
    Positions keyed by symbol, with one re-entrant lock per symbol.

    Every mutation for a symbol happens under that symbol's lock, so fills
    for different symbols can be applied from different threads without
    contending with each other.
    """

    def __init__(self, positions: Optional[Dict[str, Position]] = None):
        self._positions: Dict[str, Position] = dict(positions or {})
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @classmethod
    def from_positions(cls, positions: Dict[str, Position]) -> "PositionBook":
        """Book over deep copies, leaving the caller's positions untouched."""
        return cls({symbol: copy.deepcopy(pos) for symbol, pos in positions.items()})

    def lock_for(self, symbol: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(symbol)
            if lock is None:
                lock = threading.RLock()
                self._locks[symbol] = lock
            return lock

    def get(self, symbol: str) -> Optional[Position]:
        return self._positions.get(symbol)

    def put(self, position: Position) -> None:
        with self.lock_for(position.symbol):
            self._positions[position.symbol] = position

    def remove(self, symbol: str) -> Optional[Position]:
        with self.lock_for(symbol):
            return self._positions.pop(symbol, None)

    def replace(self, positions: Dict[str, Position]) -> None:
        """Swap in a whole new set of positions (e.g. a reconciliation result)."""
        with self._locks_guard:
            self._positions = dict(positions)

    def symbols(self) -> List[str]:
        return sorted(self._positions.keys())

    def snapshot(self) -> Dict[str, Position]:
        return {symbol: copy.deepcopy(pos) for symbol, pos in self._positions.items()}

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._positions

    def __len__(self) -> int:
        return len(self._positions)

    def __iter__(self) -> Iterator[Position]:
        return iter([self._positions[s] for s in self.symbols()])


@dataclass
class LedgerResult:
    position: Optional[Position]  # position after the fill; None once closed
    trade: Optional[TradeRecord] = None
    opened: bool = False
    closed: bool = False


class OrderLedger:
    """
    Single place where fills turn into position changes.

    Callers apply each fill exactly once; the ledger has no idempotency key.
    """

    def __init__(self, policy: Optional[Dict] = None):
        ledger_cfg = (policy or {}).get("ledger", {}) or {}
        self.epsilon = float(ledger_cfg.get("epsilon", DEFAULT_EPSILON))
        self.default_risk_pct = float(ledger_cfg.get("default_risk_pct", DEFAULT_RISK_PCT))

    def apply_fill(
        self,
        book: PositionBook,
        symbol: str,
        side: Union[Side, str],
        fill_qty: float,
        fill_price: float,
        *,
        timestamp: Optional[datetime] = None,
        leverage: Optional[float] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        exit_reason: Optional[Union[ExitReason, str]] = None,
        exit_details: Optional[str] = None,
    ) -> LedgerResult:
        """
        Apply one fill to the book.

        Args:
            book: Position book (mutated in place under the symbol lock)
            symbol: Asset symbol
            side: Direction of the fill (LONG adds to longs / reduces shorts)
            fill_qty: Executed quantity (positive)
            fill_price: Executed price
            timestamp: Fill time (default: now, UTC)
            leverage/stop_loss/take_profit: Applied when opening or adding
            exit_reason/exit_details: Tagged onto the realized trade on reductions

        Returns:
            LedgerResult with the resulting position and any realized trade
        """
        side = Side(side)
        qty_dec = _to_decimal(fill_qty)
        price_dec = _to_decimal(fill_price)
        now = timestamp or utc_now()

        with book.lock_for(symbol):
            existing = book.get(symbol)

            if qty_dec <= 0 or price_dec <= 0:
                logger.debug(
                    "apply_fill skipped for %s: qty=%s price=%s", symbol, qty_dec, price_dec
                )
                return LedgerResult(position=existing)

            if existing is None:
                return self._open(book, symbol, side, qty_dec, price_dec, now, leverage, stop_loss, take_profit)

            if existing.side == side:
                return self._increase(existing, qty_dec, price_dec, stop_loss, take_profit)

            return self._reduce(book, existing, qty_dec, price_dec, now, exit_reason, exit_details)

    def _open(self, book, symbol, side, qty_dec, price_dec, now, leverage, stop_loss, take_profit) -> LedgerResult:
        if qty_dec < Decimal(str(self.epsilon)):
            logger.warning("Ignoring dust opening fill for %s: qty=%s", symbol, qty_dec)
            return LedgerResult(position=None)

        position = Position(
            symbol=symbol,
            side=side,
            quantity=float(qty_dec),
            entry_price=float(price_dec),
            leverage=float(leverage) if leverage else 1.0,
            stop_loss=stop_loss,
            take_profit=take_profit,
            entry_time=now,
            current_price=float(price_dec),
        )
        book.put(position)
        logger.info(
            "Opened %s %s position: %.8f @ $%.8f (lev=%.1fx, SL=%s, TP=%s)",
            side.value, symbol, position.quantity, position.entry_price,
            position.leverage, stop_loss, take_profit,
        )
        return LedgerResult(position=position, opened=True)

    def _increase(self, position: Position, qty_dec, price_dec, stop_loss, take_profit) -> LedgerResult:
        old_qty_dec = _to_decimal(position.quantity)
        old_price_dec = _to_decimal(position.entry_price)

        new_qty_dec = old_qty_dec + qty_dec
        new_entry_dec = ((old_qty_dec * old_price_dec) + (qty_dec * price_dec)) / new_qty_dec

        position.quantity = float(new_qty_dec)
        position.entry_price = float(new_entry_dec)
        if stop_loss is not None:
            position.stop_loss = stop_loss
            if position.initial_stop_loss is None:
                position.initial_stop_loss = stop_loss
        if take_profit is not None:
            position.take_profit = take_profit
        position.refresh_price(float(price_dec))

        logger.info(
            "Added to %s position: %.8f @ $%.8f, new avg entry: $%.8f, total qty: %.8f",
            position.symbol, float(qty_dec), float(price_dec),
            position.entry_price, position.quantity,
        )
        return LedgerResult(position=position)

    def _reduce(self, book, position: Position, qty_dec, price_dec, now, exit_reason, exit_details) -> LedgerResult:
        current_qty_dec = _to_decimal(position.quantity)
        if qty_dec > current_qty_dec:
            logger.warning(
                "Reducing fill %.8f > position size %.8f for %s; clamping at zero",
                float(qty_dec), float(current_qty_dec), position.symbol,
            )
            qty_dec = current_qty_dec

        remaining_dec = current_qty_dec - qty_dec
        closing = remaining_dec < Decimal(str(self.epsilon))

        trade = self.build_trade_record(
            position,
            exit_price=float(price_dec),
            quantity=float(qty_dec),
            reason=exit_reason,
            exit_time=now,
            details=exit_details,
            is_partial=not closing,
        )

        if closing:
            book.remove(position.symbol)
            logger.info(
                "Fully closed %s %s: entry=$%.4f exit=$%.4f PnL=$%.2f (%.2fR)",
                position.side.value, position.symbol, position.entry_price,
                trade.exit_price, trade.pnl, trade.r_multiple,
            )
            return LedgerResult(position=None, trade=trade, closed=True)

        position.quantity = float(remaining_dec)
        position.realized_pnl += trade.pnl
        position.refresh_price(float(price_dec))
        logger.info(
            "Reduced %s position by %.8f to %.8f units, PnL=$%.2f",
            position.symbol, trade.quantity, position.quantity, trade.pnl,
        )
        return LedgerResult(position=position, trade=trade)

    def planned_risk(self, position: Position, quantity: float) -> float:
        """Risk amount at open: stop distance x qty, else default_risk_pct of notional."""
        stop = position.initial_stop_loss if position.initial_stop_loss is not None else position.stop_loss
        if stop is not None and stop > 0 and stop != position.entry_price:
            return abs(position.entry_price - stop) * quantity
        return position.entry_price * quantity * self.default_risk_pct / 100.0

    def build_trade_record(
        self,
        position: Position,
        exit_price: float,
        quantity: float,
        reason: Optional[Union[ExitReason, str]] = None,
        exit_time: Optional[datetime] = None,
        details: Optional[str] = None,
        is_partial: bool = False,
    ) -> TradeRecord:
        """Realized outcome of closing `quantity` of `position` at `exit_price`."""
        exit_time = exit_time or utc_now()
        entry_dec = _to_decimal(position.entry_price)
        exit_dec = _to_decimal(exit_price)
        qty_dec = _to_decimal(quantity)

        pnl = float((exit_dec - entry_dec) * qty_dec * position.side.sign)
        leverage = position.leverage if position.leverage and position.leverage > 0 else 1.0
        margin = position.entry_price * quantity / leverage
        pnl_pct = pnl / margin * 100.0 if margin > 0 else 0.0
        risk = self.planned_risk(position, quantity)
        r_multiple = pnl / risk if risk > 0 else 0.0
        holding_minutes = max((exit_time - position.entry_time).total_seconds() / 60.0, 0.0)

        if isinstance(reason, ExitReason):
            reason_value = reason.value
        else:
            reason_value = reason or "manual"

        return TradeRecord(
            trade_id=f"{position.symbol}-{uuid.uuid4().hex[:12]}",
            symbol=position.symbol,
            side=position.side.value,
            quantity=float(qty_dec),
            entry_price=position.entry_price,
            exit_price=float(exit_dec),
            leverage=leverage,
            entry_time=position.entry_time,
            exit_time=exit_time,
            holding_minutes=holding_minutes,
            pnl=pnl,
            pnl_pct=pnl_pct,
            r_multiple=r_multiple,
            exit_reason=reason_value,
            exit_details=details,
            is_partial=is_partial,
            hit_stop_loss=reason_value == ExitReason.STOP_LOSS.value,
            hit_take_profit=reason_value == ExitReason.TAKE_PROFIT.value,
        )
