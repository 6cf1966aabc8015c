"""
cycletrader Analytics: Trade Log and Performance Summary

Persistent record of every realized trade (full closes, partial
scale-outs and synthetic closes detected by reconciliation).

Backends:
- CSV: Simple, portable, spreadsheet-friendly
- JSONL: One TradeRecord.to_dict() per line, easy to replay
- SQLite (optional): Queryable, good for ad-hoc analysis

summarize() turns a list of TradeRecords into the usual performance
statistics (win rate, profit factor, drawdown, streaks, per-symbol).
"""

import csv
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from core.interfaces import PerformanceSink
from core.models import TradeRecord

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "trade_id", "symbol", "side", "quantity", "entry_price", "exit_price",
    "leverage", "entry_time", "exit_time", "holding_minutes", "pnl", "pnl_pct",
    "r_multiple", "exit_reason", "exit_details", "is_partial",
    "hit_stop_loss", "hit_take_profit", "cycle_id",
]


class PerformanceRecorder(PerformanceSink):
    """
    Append-only trade log.

    record() never raises into the trading cycle: a failing backend is
    logged and the remaining backends still receive the trade.
    """

    def __init__(self, log_dir: str = "data/trades", enable_sqlite: bool = False):
        """
        Initialize trade log.

        Args:
            log_dir: Directory for trade logs
            enable_sqlite: Also maintain trades.db for queries
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.enable_sqlite = enable_sqlite

        self.csv_file = self.log_dir / "trades.csv"
        self.json_file = self.log_dir / "trades.jsonl"
        self.db_file = self.log_dir / "trades.db"
        self._lock = threading.Lock()

        self._init_csv()
        if enable_sqlite:
            self._init_sqlite()

        logger.info(f"PerformanceRecorder initialized: dir={log_dir}, sqlite={enable_sqlite}")

    def _init_csv(self):
        if not self.csv_file.exists():
            with open(self.csv_file, "w", newline="") as f:
                csv.writer(f).writerow(CSV_COLUMNS)

    def _init_sqlite(self):
        conn = sqlite3.connect(str(self.db_file))
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS trades (
                    trade_id TEXT PRIMARY KEY,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL,
                    quantity REAL NOT NULL,
                    entry_price REAL NOT NULL,
                    exit_price REAL NOT NULL,
                    leverage REAL,
                    entry_time TIMESTAMP,
                    exit_time TIMESTAMP,
                    holding_minutes REAL,
                    pnl REAL,
                    pnl_pct REAL,
                    r_multiple REAL,
                    exit_reason TEXT,
                    exit_details TEXT,
                    is_partial INTEGER,
                    hit_stop_loss INTEGER,
                    hit_take_profit INTEGER,
                    cycle_id TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_symbol ON trades(symbol)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_exit_time ON trades(exit_time)")
            conn.commit()
        finally:
            conn.close()

    def record(self, trade: TradeRecord) -> None:
        row = trade.to_dict()
        with self._lock:
            for name, writer in (("csv", self._append_csv), ("jsonl", self._append_json),
                                 ("sqlite", self._insert_sqlite if self.enable_sqlite else None)):
                if writer is None:
                    continue
                try:
                    writer(row)
                except (OSError, sqlite3.Error, ValueError) as e:
                    logger.warning(f"Trade log backend {name} failed for {trade.trade_id}: {e}")

        logger.info(
            f"Logged trade {trade.trade_id}: {trade.side} {trade.symbol} "
            f"PnL=${trade.pnl:.2f} ({trade.pnl_pct:+.2f}%, {trade.r_multiple:+.2f}R, {trade.exit_reason})"
        )

    def _append_csv(self, row: Dict[str, Any]):
        with open(self.csv_file, "a", newline="") as f:
            csv.writer(f).writerow([row.get(col) for col in CSV_COLUMNS])

    def _append_json(self, row: Dict[str, Any]):
        with open(self.json_file, "a") as f:
            f.write(json.dumps(row) + "\n")

    def _insert_sqlite(self, row: Dict[str, Any]):
        values = [row.get(col) for col in CSV_COLUMNS]
        for flag in ("is_partial", "hit_stop_loss", "hit_take_profit"):
            values[CSV_COLUMNS.index(flag)] = 1 if row.get(flag) else 0
        conn = sqlite3.connect(str(self.db_file))
        try:
            conn.execute(
                f"INSERT OR REPLACE INTO trades ({', '.join(CSV_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in CSV_COLUMNS)})",
                values,
            )
            conn.commit()
        finally:
            conn.close()

    def load_trades(self, limit: Optional[int] = None) -> List[TradeRecord]:
        """Read back trades from the JSONL log (oldest first)."""
        if not self.json_file.exists():
            return []
        trades = []
        with open(self.json_file, "r") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    trades.append(TradeRecord.from_dict(json.loads(line)))
                except (ValueError, TypeError) as e:
                    logger.warning(f"Skipping unreadable trade log line {line_no}: {e}")
        return trades[-limit:] if limit else trades

    def query(self, sql: str) -> List[Dict]:
        """Execute SQL query on the trade database."""
        if not self.enable_sqlite:
            raise ValueError("SQLite not enabled for this log")
        conn = sqlite3.connect(str(self.db_file))
        conn.row_factory = sqlite3.Row
        try:
            return [dict(row) for row in conn.execute(sql).fetchall()]
        finally:
            conn.close()


def _streaks(trades: Sequence[TradeRecord]) -> Dict[str, int]:
    longest_win = longest_loss = current_win = current_loss = 0
    for trade in trades:
        if trade.pnl > 0:
            current_win += 1
            current_loss = 0
        elif trade.pnl < 0:
            current_loss += 1
            current_win = 0
        else:
            current_win = current_loss = 0
        longest_win = max(longest_win, current_win)
        longest_loss = max(longest_loss, current_loss)
    return {"longest_win_streak": longest_win, "longest_loss_streak": longest_loss}


def _max_drawdown(trades: Sequence[TradeRecord]) -> float:
    """Largest peak-to-trough drop of cumulative realized PnL."""
    equity = peak = drawdown = 0.0
    for trade in trades:
        equity += trade.pnl
        peak = max(peak, equity)
        drawdown = max(drawdown, peak - equity)
    return drawdown


def summarize(trades: Sequence[TradeRecord]) -> Dict[str, Any]:
    """
    Performance statistics over realized trades.

    Trades are ordered by exit time before streaks and drawdown are
    computed. Break-even trades count as neither win nor loss.
    """
    ordered = sorted(trades, key=lambda t: (t.exit_time is None, t.exit_time))
    total = len(ordered)
    if total == 0:
        return {
            "total_trades": 0, "wins": 0, "losses": 0, "win_rate": 0.0,
            "total_pnl": 0.0, "avg_pnl": 0.0, "avg_r_multiple": 0.0,
            "avg_holding_minutes": 0.0, "profit_factor": 0.0, "max_drawdown": 0.0,
            "longest_win_streak": 0, "longest_loss_streak": 0, "by_symbol": {},
        }

    wins = [t for t in ordered if t.pnl > 0]
    losses = [t for t in ordered if t.pnl < 0]
    gross_profit = sum(t.pnl for t in wins)
    gross_loss = abs(sum(t.pnl for t in losses))
    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = float("inf") if gross_profit > 0 else 0.0

    by_symbol: Dict[str, Dict[str, Any]] = {}
    for trade in ordered:
        stats = by_symbol.setdefault(trade.symbol, {"trades": 0, "wins": 0, "pnl": 0.0})
        stats["trades"] += 1
        stats["wins"] += 1 if trade.pnl > 0 else 0
        stats["pnl"] += trade.pnl
    for stats in by_symbol.values():
        stats["win_rate"] = stats["wins"] / stats["trades"] * 100.0

    summary = {
        "total_trades": total,
        "wins": len(wins),
        "losses": len(losses),
        "win_rate": len(wins) / total * 100.0,
        "total_pnl": sum(t.pnl for t in ordered),
        "avg_pnl": sum(t.pnl for t in ordered) / total,
        "avg_r_multiple": sum(t.r_multiple for t in ordered) / total,
        "avg_holding_minutes": sum(t.holding_minutes for t in ordered) / total,
        "profit_factor": profit_factor,
        "max_drawdown": _max_drawdown(ordered),
        "by_symbol": by_symbol,
    }
    summary.update(_streaks(ordered))
    return summary
