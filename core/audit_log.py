"""
cycletrader Core: Audit Logger

Structured logging of every cycle outcome for debugging and analysis.
"""

import json
import logging
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.models import CycleResult, utc_now

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Logs every cycle including:
    - Circuit breaker status
    - Reconciliation corrections
    - Executed entries and exits
    - Rejected signals with reasons
    - Stage latencies
    - Failure reason on aborted cycles

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        if audit_file:
            self.audit_file = Path(audit_file)
        else:
            self.audit_file = Path("logs/audit.jsonl")

        self.audit_file.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_cycle(self,
                  result: CycleResult,
                  mode: str,
                  ts: Optional[datetime] = None,
                  config_hash: Optional[str] = None) -> None:
        """
        Log a complete trading cycle.

        Args:
            result: Outcome returned by CycleOrchestrator.run_cycle
            mode: Trading mode (PAPER, LIVE)
            ts: Cycle timestamp (default: now)
            config_hash: Optional fingerprint of the policy in force
        """
        try:
            state = result.new_state
            breaker = state.circuit_breaker
            entry: Dict[str, Any] = {
                "timestamp": (ts or utc_now()).isoformat(),
                "cycle_id": result.cycle_id,
                "mode": mode,
                "status": self._determine_status(result),
                "error": result.error,
                "config_hash": config_hash,
                "circuit_breaker": {
                    "status": breaker.status.value,
                    "reason": breaker.reason,
                    "daily_pnl": round(breaker.daily_pnl, 2),
                    "consecutive_losses": breaker.consecutive_losses,
                },
                "open_positions": sorted(state.positions),
                "account_value": state.account_value,
            }

            stage_ms = result.diagnostics.get("stage_ms")
            if stage_ms:
                entry["stage_latencies"] = stage_ms

            reconciliation = result.diagnostics.get("reconciliation")
            if reconciliation:
                entry["reconciliation"] = reconciliation

            entry["orders"] = {
                "entries": [order.to_dict() for order in result.executed_entries],
                "exits": [order.to_dict() for order in result.executed_exits],
            }

            if result.rejected_signals:
                entry["rejections"] = [
                    {"symbol": r.signal.symbol, "direction": r.signal.direction.value, "reason": r.reason}
                    for r in result.rejected_signals
                ]

            if result.realized_trades:
                entry["realized_pnl"] = round(sum(t.pnl for t in result.realized_trades), 2)

            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")

            logger.debug(f"Audited cycle: status={entry['status']}")

        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write audit log: {e}")

    def _determine_status(self, result: CycleResult) -> str:
        """Determine cycle status"""
        if not result.success:
            return "FAILED"
        elif result.executed_entries or result.executed_exits:
            return "EXECUTED"
        else:
            return "NO_TRADE"

    def get_recent_cycles(self, n: int = 10) -> List[Dict[str, Any]]:
        """
        Get the N most recent cycle logs.

        Args:
            n: Number of cycles to retrieve

        Returns:
            List of cycle log entries (most recent first)
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        cycles = []
        for line in lines[-n:]:
            try:
                cycles.append(json.loads(line))
            except json.JSONDecodeError:
                continue

        return list(reversed(cycles))
