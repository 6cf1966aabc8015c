"""
Position Reconciliation: Local Book vs Exchange Truth

Diffs the locally tracked positions against what the exchange reports.
The exchange is authoritative:
- Tracked locally, gone remotely   -> synthetic close at last known local price
- Quantity differs beyond tolerance -> local quantity overwritten, flagged
- Side differs                     -> ConsistencyError logged, local closed, remote imported
- Open remotely, unknown locally   -> ignored unless import_manual_opens

reconcile() is pure. It builds the complete result before anything is
applied, so a failure can never leave one branch half-applied. Running it
again on the result against the same remote state yields no corrections.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from core.exceptions import ConsistencyError
from core.models import ExitReason, Position, RemotePosition, TradeRecord, utc_now
from core.order_ledger import OrderLedger

logger = logging.getLogger(__name__)


@dataclass
class SizeFix:
    symbol: str
    local_quantity: float
    remote_quantity: float

    def to_dict(self) -> Dict:
        return {
            "symbol": self.symbol,
            "local_quantity": self.local_quantity,
            "remote_quantity": self.remote_quantity,
        }


@dataclass
class ReconciliationResult:
    updated_positions: Dict[str, Position]
    synthetic_closes: List[TradeRecord] = field(default_factory=list)
    size_fixes: List[SizeFix] = field(default_factory=list)
    imported: List[str] = field(default_factory=list)
    divergences: List[ConsistencyError] = field(default_factory=list)

    @property
    def has_corrections(self) -> bool:
        return bool(self.synthetic_closes or self.size_fixes or self.imported or self.divergences)

    def summary(self) -> Dict:
        return {
            "synthetic_closes": [t.symbol for t in self.synthetic_closes],
            "size_fixes": [f.to_dict() for f in self.size_fixes],
            "imported": list(self.imported),
            "divergences": [str(d) for d in self.divergences],
        }


class PositionReconciler:
    """Aligns the local position book with the exchange-reported positions."""

    def __init__(self, policy: Optional[Dict] = None, ledger: Optional[OrderLedger] = None):
        cfg = (policy or {}).get("reconciliation", {}) or {}
        self.import_manual_opens = bool(cfg.get("import_manual_opens", False))
        self.abs_tolerance = float(cfg.get("abs_tolerance", 0.001))
        self.rel_tolerance_pct = float(cfg.get("rel_tolerance_pct", 1.0))
        self.ledger = ledger or OrderLedger(policy)

    def tolerance(self, tracked_quantity: float) -> float:
        return max(self.abs_tolerance, tracked_quantity * self.rel_tolerance_pct / 100.0)

    def reconcile(
        self,
        local_positions: Dict[str, Position],
        remote_positions: Dict[str, RemotePosition],
        now: Optional[datetime] = None,
    ) -> ReconciliationResult:
        """
        Compute corrections; inputs are not mutated.

        Args:
            local_positions: symbol -> locally tracked Position
            remote_positions: symbol -> exchange-reported RemotePosition
            now: Timestamp for synthetic closes / imports

        Returns:
            ReconciliationResult with the corrected position map
        """
        now = now or utc_now()
        updated: Dict[str, Position] = {s: copy.deepcopy(p) for s, p in local_positions.items()}
        result = ReconciliationResult(updated_positions=updated)

        for symbol in sorted(local_positions.keys()):
            local = updated[symbol]
            remote = remote_positions.get(symbol)

            if remote is None or remote.quantity < self.ledger.epsilon:
                self._close_missing(result, local, now)
                continue

            if remote.side != local.side:
                divergence = ConsistencyError(
                    symbol,
                    f"local {local.side.value} {local.quantity} vs remote "
                    f"{remote.side.value} {remote.quantity}; adopting remote",
                )
                logger.warning(f"⚠️ Reconciliation divergence: {divergence}")
                result.divergences.append(divergence)
                self._close_missing(result, local, now)
                self._import(result, remote, now)
                continue

            diff = abs(local.quantity - remote.quantity)
            if diff > self.tolerance(local.quantity):
                logger.warning(
                    f"Size mismatch for {symbol}: tracked={local.quantity:.8f} "
                    f"actual={remote.quantity:.8f}; adopting exchange quantity"
                )
                result.size_fixes.append(SizeFix(symbol, local.quantity, remote.quantity))
                local.quantity = remote.quantity
                local.refresh_price(local.current_price)

        if self.import_manual_opens:
            for symbol in sorted(remote_positions.keys()):
                if symbol in local_positions:
                    continue
                remote = remote_positions[symbol]
                if remote.quantity < self.ledger.epsilon:
                    continue
                self._import(result, remote, now)
        else:
            untracked = sorted(s for s in remote_positions if s not in local_positions)
            if untracked:
                logger.debug(f"Ignoring untracked exchange positions: {untracked}")

        if result.has_corrections:
            logger.info(
                f"Reconciliation: {len(result.synthetic_closes)} closes, "
                f"{len(result.size_fixes)} size fixes, {len(result.imported)} imports, "
                f"{len(result.divergences)} divergences"
            )
        return result

    def _close_missing(self, result: ReconciliationResult, local: Position, now: datetime) -> None:
        exit_price = local.last_price
        trade = self.ledger.build_trade_record(
            local,
            exit_price=exit_price,
            quantity=local.quantity,
            reason=ExitReason.MANUAL_CLOSE_DETECTED,
            exit_time=now,
            details="Position closed outside the bot (not reported by exchange)",
        )
        result.synthetic_closes.append(trade)
        result.updated_positions.pop(local.symbol, None)
        logger.info(
            f"Detected external close of {local.side.value} {local.symbol}: "
            f"{local.quantity:.8f} @ ${exit_price:.4f}, PnL=${trade.pnl:.2f}"
        )

    def _import(self, result: ReconciliationResult, remote: RemotePosition, now: datetime) -> None:
        if remote.entry_price <= 0:
            logger.warning(f"Cannot import {remote.symbol}: exchange reported no entry price")
            return
        position = Position(
            symbol=remote.symbol,
            side=remote.side,
            quantity=remote.quantity,
            entry_price=remote.entry_price,
            leverage=remote.leverage or 1.0,
            entry_time=now,
            current_price=remote.entry_price,
            unrealized_pnl=remote.unrealized_pnl,
        )
        result.updated_positions[remote.symbol] = position
        result.imported.append(remote.symbol)
        logger.info(
            f"Imported exchange position {remote.side.value} {remote.symbol}: "
            f"{remote.quantity:.8f} @ ${remote.entry_price:.4f}"
        )
