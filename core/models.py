"""
cycletrader Core: Data Model

Value types shared by every stage of the trading cycle:
positions, candidate signals, fills, exit decisions, circuit breaker
state, and the state/result containers passed between cycles.

Positions always carry a positive quantity; direction lives in `side`.
Anything that would leave a position at (or near) zero quantity must
remove it from the book instead.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO string / datetime into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> "Side":
        return Side.SHORT if self is Side.LONG else Side.LONG

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1


class SignalDirection(str, Enum):
    """Wire values match what signal generators emit."""
    ENTER_LONG = "buy_to_enter"
    ENTER_SHORT = "sell_to_enter"
    HOLD = "hold"
    ADD = "add"

    @property
    def side(self) -> Optional[Side]:
        if self is SignalDirection.ENTER_LONG:
            return Side.LONG
        if self is SignalDirection.ENTER_SHORT:
            return Side.SHORT
        return None

    @classmethod
    def parse(cls, value: Any) -> "SignalDirection":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        for member in cls:
            if member.value == normalized or member.name.lower() == normalized:
                return member
        aliases = {
            "long": cls.ENTER_LONG,
            "buy": cls.ENTER_LONG,
            "short": cls.ENTER_SHORT,
            "sell": cls.ENTER_SHORT,
        }
        if normalized in aliases:
            return aliases[normalized]
        raise ValueError(f"Unknown signal direction: {value!r}")


class ExitReason(str, Enum):
    """Closed set of reasons a position can be reduced or closed."""
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    SIGNAL_REVERSAL = "signal_reversal"
    RANKING_DROP = "ranking_drop"
    INDICATOR_BASED = "indicator_based"
    MANUAL_CLOSE_DETECTED = "manual_close_detected"


class FillStatus(str, Enum):
    FILLED = "FILLED"
    PARTIAL_FILLED = "PARTIAL_FILLED"
    REJECTED = "REJECTED"


class CircuitBreakerStatus(str, Enum):
    NORMAL = "NORMAL"
    PAUSED = "PAUSED"  # new entries suspended
    HALTED = "HALTED"  # entries suspended, operator attention required

    @property
    def severity(self) -> int:
        return {"NORMAL": 0, "PAUSED": 1, "HALTED": 2}[self.value]


@dataclass
class Position:
    """Open exposure to one symbol."""
    symbol: str
    side: Side
    quantity: float
    entry_price: float
    leverage: float = 1.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    entry_time: datetime = field(default_factory=utc_now)
    current_price: Optional[float] = None
    unrealized_pnl: float = 0.0

    # Stop distance at open, used for planned risk / R-multiple
    initial_stop_loss: Optional[float] = None

    # Exit bookkeeping carried across cycles
    highest_price: Optional[float] = None
    lowest_price: Optional[float] = None
    ranking_history: List[int] = field(default_factory=list)
    take_profit_levels_hit: List[float] = field(default_factory=list)
    take_profit_closed_pct: float = 0.0
    realized_pnl: float = 0.0

    def __post_init__(self):
        self.side = Side(self.side)
        if self.quantity <= 0:
            raise ValueError(f"{self.symbol}: position quantity must be positive, got {self.quantity}")
        if self.entry_price <= 0:
            raise ValueError(f"{self.symbol}: entry price must be positive, got {self.entry_price}")
        if self.entry_time.tzinfo is None:
            self.entry_time = self.entry_time.replace(tzinfo=timezone.utc)
        if self.initial_stop_loss is None:
            self.initial_stop_loss = self.stop_loss
        if self.highest_price is None:
            self.highest_price = self.entry_price
        if self.lowest_price is None:
            self.lowest_price = self.entry_price

    @property
    def last_price(self) -> float:
        return self.current_price if self.current_price else self.entry_price

    @property
    def margin(self) -> float:
        leverage = self.leverage if self.leverage and self.leverage > 0 else 1.0
        return self.entry_price * self.quantity / leverage

    def gain_pct(self, price: float) -> float:
        """Unlevered price move in the position's favour, in percent."""
        return (price - self.entry_price) / self.entry_price * 100.0 * self.side.sign

    def refresh_price(self, price: Optional[float]) -> None:
        if price is None or price <= 0:
            return
        self.current_price = float(price)
        self.unrealized_pnl = (self.current_price - self.entry_price) * self.quantity * self.side.sign
        self.highest_price = max(self.highest_price or self.current_price, self.current_price)
        self.lowest_price = min(self.lowest_price or self.current_price, self.current_price)

    def record_ranking(self, rank: Optional[int], max_length: int = 10) -> None:
        if rank is None:
            return
        self.ranking_history.append(int(rank))
        if len(self.ranking_history) > max_length:
            self.ranking_history = self.ranking_history[-max_length:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "leverage": self.leverage,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "entry_time": _iso(self.entry_time),
            "current_price": self.current_price,
            "unrealized_pnl": self.unrealized_pnl,
            "initial_stop_loss": self.initial_stop_loss,
            "highest_price": self.highest_price,
            "lowest_price": self.lowest_price,
            "ranking_history": list(self.ranking_history),
            "take_profit_levels_hit": list(self.take_profit_levels_hit),
            "take_profit_closed_pct": self.take_profit_closed_pct,
            "realized_pnl": self.realized_pnl,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        return cls(
            symbol=data["symbol"],
            side=Side(data["side"]),
            quantity=float(data["quantity"]),
            entry_price=float(data["entry_price"]),
            leverage=float(data.get("leverage") or 1.0),
            stop_loss=data.get("stop_loss"),
            take_profit=data.get("take_profit"),
            entry_time=parse_timestamp(data.get("entry_time")) or utc_now(),
            current_price=data.get("current_price"),
            unrealized_pnl=float(data.get("unrealized_pnl") or 0.0),
            initial_stop_loss=data.get("initial_stop_loss"),
            highest_price=data.get("highest_price"),
            lowest_price=data.get("lowest_price"),
            ranking_history=[int(r) for r in data.get("ranking_history") or []],
            take_profit_levels_hit=[float(x) for x in data.get("take_profit_levels_hit") or []],
            take_profit_closed_pct=float(data.get("take_profit_closed_pct") or 0.0),
            realized_pnl=float(data.get("realized_pnl") or 0.0),
        )


@dataclass
class RemotePosition:
    """Position as reported by the exchange account."""
    symbol: str
    side: Side
    quantity: float
    entry_price: float
    leverage: float = 1.0
    unrealized_pnl: float = 0.0


@dataclass
class AccountState:
    account_value: Optional[float] = None
    open_positions: Dict[str, RemotePosition] = field(default_factory=dict)
    margin_used: Optional[float] = None

    @property
    def margin_level_pct(self) -> Optional[float]:
        """Account value over margin in use, in percent. None with no margin in use."""
        if self.account_value is None or not self.margin_used or self.margin_used <= 0:
            return None
        return self.account_value / self.margin_used * 100.0


@dataclass
class MarketSnapshot:
    """
    Latest market view of one symbol, as produced by a MarketDataProvider.

    Every analytic field is optional. Consumers must treat a missing value
    as "unknown" rather than as a negative reading.

    indicators keys used by the core: rsi14, ema20, ema50, macd, macd_signal,
    atr, atr_avg.
    momentum keys: m5, m15, m60 (percent change over that many minutes).
    """
    symbol: str
    price: float
    timestamp: datetime = field(default_factory=utc_now)
    indicators: Dict[str, float] = field(default_factory=dict)
    momentum: Dict[str, float] = field(default_factory=dict)
    daily_trend: Optional[str] = None  # "uptrend" / "downtrend" / "neutral"
    h4_aligned: Optional[bool] = None
    h1_aligned: Optional[bool] = None
    volume_ratio: Optional[float] = None
    volumes: List[float] = field(default_factory=list)
    support: Optional[float] = None
    resistance: Optional[float] = None
    structure_change: Optional[str] = None  # "bullish" / "bearish"

    def indicator(self, name: str) -> Optional[float]:
        value = self.indicators.get(name)
        return float(value) if value is not None else None


@dataclass
class RankedAsset:
    symbol: str
    score: float
    quality_label: str = ""
    indicator_coverage: float = 0.0
    action: Optional[str] = None  # LONG / SHORT / WAIT


@dataclass
class CandidateSignal:
    """Externally generated suggestion to open, hold or add to an exposure."""
    symbol: str
    direction: SignalDirection
    confidence: float
    entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    leverage: Optional[float] = None
    quantity: Optional[float] = None
    justification: Optional[str] = None

    def __post_init__(self):
        self.direction = SignalDirection.parse(self.direction)
        if self.confidence is None or not 0.0 <= float(self.confidence) <= 1.0:
            raise ValueError(f"{self.symbol}: confidence must be within [0, 1], got {self.confidence}")
        self.confidence = float(self.confidence)

    @property
    def side(self) -> Optional[Side]:
        return self.direction.side

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CandidateSignal":
        """Build from a generator payload; confidences above 1 are read as percentages."""
        confidence = float(data.get("confidence") or 0.0)
        if confidence > 1.0:
            confidence = confidence / 100.0
        return cls(
            symbol=data.get("symbol") or data.get("coin") or "",
            direction=SignalDirection.parse(data.get("direction") or data.get("signal")),
            confidence=min(max(confidence, 0.0), 1.0),
            entry_price=data.get("entry_price"),
            stop_loss=data.get("stop_loss"),
            take_profit=data.get("take_profit") or data.get("profit_target"),
            leverage=data.get("leverage"),
            quantity=data.get("quantity"),
            justification=data.get("justification"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "direction": self.direction.value,
            "confidence": self.confidence,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "leverage": self.leverage,
            "quantity": self.quantity,
        }


@dataclass
class RejectedSignal:
    signal: CandidateSignal
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"signal": self.signal.to_dict(), "reason": self.reason}


@dataclass
class SignalBatch:
    """Signal generator output: accepted candidates plus its own rejections."""
    signals: List[CandidateSignal] = field(default_factory=list)
    rejected: List[RejectedSignal] = field(default_factory=list)


@dataclass
class Fill:
    status: FillStatus
    filled_qty: float = 0.0
    filled_price: float = 0.0
    order_id: Optional[str] = None
    reason: Optional[str] = None  # exchange-supplied rejection reason

    @property
    def is_filled(self) -> bool:
        return self.status != FillStatus.REJECTED and self.filled_qty > 0 and self.filled_price > 0


@dataclass
class ExitDecision:
    position: Position
    exit_pct: float  # of current quantity, (0, 100]
    reason: ExitReason
    description: str
    target_price: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not 0.0 < self.exit_pct <= 100.0:
            raise ValueError(f"exit_pct must be within (0, 100], got {self.exit_pct}")

    @property
    def is_full_exit(self) -> bool:
        return self.exit_pct >= 100.0


@dataclass
class TradeRecord:
    """Realized outcome of a (possibly partial) position reduction."""
    trade_id: str
    symbol: str
    side: str
    quantity: float
    entry_price: float
    exit_price: float
    leverage: float
    entry_time: datetime
    exit_time: datetime
    holding_minutes: float
    pnl: float
    pnl_pct: float  # on margin
    r_multiple: float
    exit_reason: str
    exit_details: Optional[str] = None
    is_partial: bool = False
    hit_stop_loss: bool = False
    hit_take_profit: bool = False
    cycle_id: Optional[str] = None

    @property
    def is_win(self) -> bool:
        return self.pnl > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "symbol": self.symbol,
            "side": self.side,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "leverage": self.leverage,
            "entry_time": _iso(self.entry_time),
            "exit_time": _iso(self.exit_time),
            "holding_minutes": self.holding_minutes,
            "pnl": self.pnl,
            "pnl_pct": self.pnl_pct,
            "r_multiple": self.r_multiple,
            "exit_reason": self.exit_reason,
            "exit_details": self.exit_details,
            "is_partial": self.is_partial,
            "hit_stop_loss": self.hit_stop_loss,
            "hit_take_profit": self.hit_take_profit,
            "cycle_id": self.cycle_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeRecord":
        payload = dict(data)
        payload["entry_time"] = parse_timestamp(payload.get("entry_time"))
        payload["exit_time"] = parse_timestamp(payload.get("exit_time"))
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in payload.items() if k in known})


@dataclass
class CircuitBreakerState:
    status: CircuitBreakerStatus = CircuitBreakerStatus.NORMAL
    reason: Optional[str] = None
    daily_pnl: float = 0.0
    daily_pnl_pct: float = 0.0
    consecutive_losses: int = 0
    api_error_rate_pct: float = 0.0
    tripped_at: Optional[datetime] = None
    last_reset_date: Optional[str] = None
    reset_at: Optional[datetime] = None  # only trades after this count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "daily_pnl": self.daily_pnl,
            "daily_pnl_pct": self.daily_pnl_pct,
            "consecutive_losses": self.consecutive_losses,
            "api_error_rate_pct": self.api_error_rate_pct,
            "tripped_at": _iso(self.tripped_at),
            "last_reset_date": self.last_reset_date,
            "reset_at": _iso(self.reset_at),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CircuitBreakerState":
        data = data or {}
        return cls(
            status=CircuitBreakerStatus(data.get("status", "NORMAL")),
            reason=data.get("reason"),
            daily_pnl=float(data.get("daily_pnl") or 0.0),
            daily_pnl_pct=float(data.get("daily_pnl_pct") or 0.0),
            consecutive_losses=int(data.get("consecutive_losses") or 0),
            api_error_rate_pct=float(data.get("api_error_rate_pct") or 0.0),
            tripped_at=parse_timestamp(data.get("tripped_at")),
            last_reset_date=data.get("last_reset_date"),
            reset_at=parse_timestamp(data.get("reset_at")),
        )


@dataclass
class CycleState:
    """Everything one cycle hands to the next."""
    positions: Dict[str, Position] = field(default_factory=dict)
    circuit_breaker: CircuitBreakerState = field(default_factory=CircuitBreakerState)
    trade_history: List[TradeRecord] = field(default_factory=list)
    cycle_count: int = 0
    last_cycle_at: Optional[datetime] = None
    account_value: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "positions": {symbol: pos.to_dict() for symbol, pos in self.positions.items()},
            "circuit_breaker": self.circuit_breaker.to_dict(),
            "trade_history": [t.to_dict() for t in self.trade_history],
            "cycle_count": self.cycle_count,
            "last_cycle_at": _iso(self.last_cycle_at),
            "account_value": self.account_value,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CycleState":
        data = data or {}
        raw_positions = data.get("positions") or {}
        if isinstance(raw_positions, list):
            raw_positions = {p["symbol"]: p for p in raw_positions}
        positions = {}
        for symbol, payload in raw_positions.items():
            try:
                positions[symbol] = Position.from_dict(payload)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping unreadable persisted position {symbol}: {e}")
        return cls(
            positions=positions,
            circuit_breaker=CircuitBreakerState.from_dict(data.get("circuit_breaker")),
            trade_history=[TradeRecord.from_dict(t) for t in data.get("trade_history") or []],
            cycle_count=int(data.get("cycle_count") or 0),
            last_cycle_at=parse_timestamp(data.get("last_cycle_at")),
            account_value=data.get("account_value"),
        )


@dataclass
class ExecutedOrder:
    """An entry or exit that reached the exchange and filled (fully or partially)."""
    symbol: str
    side: Side
    quantity: float
    price: float
    reason: str
    fill: Fill
    trade: Optional[TradeRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "price": self.price,
            "reason": self.reason,
            "status": self.fill.status.value,
            "order_id": self.fill.order_id,
            "pnl": self.trade.pnl if self.trade else None,
        }


@dataclass
class CycleResult:
    success: bool
    new_state: CycleState
    executed_entries: List[ExecutedOrder] = field(default_factory=list)
    executed_exits: List[ExecutedOrder] = field(default_factory=list)
    rejected_signals: List[RejectedSignal] = field(default_factory=list)
    realized_trades: List[TradeRecord] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    cycle_id: Optional[str] = None
