"""
cycletrader Runner: Main Loop

Schedules the trading cycle.

Flow per tick:
1. Take the single-flight cycle lock (drop the tick if a cycle is running)
2. Run one CycleOrchestrator cycle over the persisted CycleState
3. Persist the new state and append the audit record
4. Sleep until the next interval (with jitter)

Shutdown is cooperative: SIGINT/SIGTERM let the running cycle finish and
prevent the next one from starting.
"""

import hashlib
import importlib
import logging
import random
import signal
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from analytics.trade_log import PerformanceRecorder
from core.audit_log import AuditLogger
from core.exceptions import ConfigurationError
from core.models import CycleResult, CycleState
from core.paper_executor import PaperExecutor
from core.trading_cycle import CycleOrchestrator
from infra.account_state import HyperliquidAccountProvider
from infra.alerting import AlertService
from infra.instance_lock import check_single_instance
from infra.metrics import MetricsRecorder
from infra.state_store import StateStore
from tools.config_validator import validate_all_configs

logger = logging.getLogger(__name__)


def load_collaborator(import_path: str, **kwargs) -> Any:
    """Instantiate a `module:Class` collaborator."""
    module_name, _, attr = import_path.partition(":")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError([f"cannot load collaborator {import_path!r}: {e}"])
    return factory(**kwargs)


class TradingLoop:
    """
    Main trading loop.

    Responsibilities:
    - Load and validate config
    - Wire collaborators into the orchestrator
    - Run single-flight cycles on an interval
    - Persist state and audit every cycle
    """

    def __init__(self, config_dir: str = "config", install_signal_handlers: bool = True):
        self.config_dir = Path(config_dir)
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                logger.error(f"{idx:>2}. {error}")
            logger.error("=" * 80)
            raise ConfigurationError(validation_errors)

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")
        self.config_hash = self._compute_config_hash()

        self.mode = str((self.app_config.get("app", {}) or {}).get("mode", "PAPER")).upper()

        loop_cfg = self.app_config.get("loop", {}) or {}
        self.loop_interval_seconds = float(loop_cfg.get("interval_seconds", 300.0))
        self.loop_jitter_pct = max(0.0, min(float(loop_cfg.get("jitter_pct", 10.0)), 50.0))

        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file", "logs/cycletrader.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

        logger.info(f"Starting cycletrader in mode={self.mode} (config hash {self.config_hash})")

        state_cfg = self.app_config.get("state", {}) or {}
        self.instance_lock = check_single_instance("cycletrader", lock_dir=state_cfg.get("lock_dir", "data"))
        if not self.instance_lock:
            logger.error("=" * 80)
            logger.error("ANOTHER INSTANCE IS ALREADY RUNNING")
            logger.error("=" * 80)
            logger.error("Only one orchestrator may own an account and its state file.")
            logger.error("If no other instance is running, remove the stale PID file in the lock directory.")
            raise RuntimeError("Another trading loop instance is already running")
        logger.info("✅ Single-instance lock acquired")

        monitoring_cfg = self.app_config.get("monitoring", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        self.metrics.start()

        alerts_cfg = self.app_config.get("alerts", {}) or {}
        self.alerts = AlertService.from_config(bool(alerts_cfg.get("enabled", False)), alerts_cfg)

        self.state_store = StateStore(state_cfg.get("file"))
        self.audit = AuditLogger((self.app_config.get("audit", {}) or {}).get("file"))
        trades_cfg = self.app_config.get("trades", {}) or {}
        self.performance = PerformanceRecorder(
            log_dir=trades_cfg.get("log_dir", "data/trades"),
            enable_sqlite=bool(trades_cfg.get("sqlite", False)),
        )

        try:
            self.orchestrator = self._build_orchestrator()
        except ConfigurationError:
            self.close()
            raise
        self.state: CycleState = self.state_store.load()
        logger.info(
            f"Loaded state: {len(self.state.positions)} open positions, "
            f"{self.state.cycle_count} cycles, breaker={self.state.circuit_breaker.status.value}"
        )

        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._running = True
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized TradingLoop in {self.mode} mode")

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _compute_config_hash(self) -> str:
        """First 16 hex chars of the SHA256 over policy.yaml and app.yaml."""
        hasher = hashlib.sha256()
        for filename in ("policy.yaml", "app.yaml"):
            with open(self.config_dir / filename, "rb") as f:
                hasher.update(f.read())
        return hasher.hexdigest()[:16]

    def _build_orchestrator(self) -> CycleOrchestrator:
        collaborators = self.app_config.get("collaborators", {}) or {}
        missing = [
            name for name in ("market_data", "ranker", "signal_generator")
            if not collaborators.get(name)
        ]
        if missing:
            raise ConfigurationError([f"collaborators.{name} is required" for name in missing])

        if self.mode == "LIVE":
            executor = load_collaborator(collaborators["executor"])
        else:
            executor = PaperExecutor(self.app_config.get("paper", {}) or {})

        # Paper positions never exist on the exchange; reconcile only live books.
        account_provider = None
        recon_cfg = self.policy_config.get("reconciliation", {}) or {}
        if self.mode == "LIVE" and recon_cfg.get("enabled", True) and recon_cfg.get("account_address"):
            account_provider = HyperliquidAccountProvider.from_config(self.app_config.get("account"))

        return CycleOrchestrator(
            market_data=load_collaborator(collaborators["market_data"]),
            ranker=load_collaborator(collaborators["ranker"]),
            signal_generator=load_collaborator(collaborators["signal_generator"]),
            executor=executor,
            policy=self.policy_config,
            account_provider=account_provider,
            performance_sink=self.performance,
            alert_service=self.alerts,
            metrics=self.metrics,
        )

    def _handle_stop(self, *_):
        """Stop after the current cycle; never interrupts one in flight."""
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - finishing current cycle")
        logger.warning("=" * 80)
        self._running = False
        self._stop_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    def run_once(self) -> Optional[CycleResult]:
        """
        Run one cycle unless one is already in progress.

        Returns:
            The CycleResult, or None when the tick was dropped
        """
        if not self._cycle_lock.acquire(blocking=False):
            self.metrics.record_dropped_tick()
            logger.warning(f"Cycle still running; dropping tick ({self.metrics.dropped_ticks} dropped so far)")
            return None

        try:
            result = self.orchestrator.run_cycle(self.state)
            self.state = result.new_state
            self.state_store.save(self.state)
            self.audit.log_cycle(result, mode=self.mode, config_hash=self.config_hash)
            if not result.success:
                logger.error(f"Cycle {result.cycle_id} failed: {result.error}")
            return result
        finally:
            self._cycle_lock.release()

    def _next_sleep(self, elapsed: float, interval: float) -> float:
        jitter = random.uniform(0, self.loop_jitter_pct / 100.0) * interval
        sleep_for = max(1.0, interval - elapsed + jitter)

        utilization = elapsed / interval
        if utilization > 0.7:
            logger.warning(f"High cycle utilization ({utilization:.1%}) with interval {interval:.0f}s")

        logger.info(
            f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s "
            f"(util: {utilization:.1%}, jitter: +{jitter / interval * 100.0:.1f}%)"
        )
        return sleep_for

    def run_forever(self, interval_seconds: Optional[float] = None):
        """
        Run trading loop continuously with time-aware sleep.

        Args:
            interval_seconds: Seconds between cycle starts
        """
        interval = max(float(interval_seconds or self.loop_interval_seconds), 1.0)
        logger.info(f"Starting continuous loop (interval={interval}s, jitter={self.loop_jitter_pct:.1f}%)")

        try:
            while self._running:
                start = time.monotonic()
                self.run_once()
                if not self._running:
                    break
                self._stop_event.wait(self._next_sleep(time.monotonic() - start, interval))
        finally:
            self.close()

        logger.info("Trading loop stopped cleanly.")

    def close(self) -> None:
        if self.instance_lock:
            self.instance_lock.release()


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="cycletrader trading loop")
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles (default: app.yaml)")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    loop = TradingLoop(config_dir=args.config_dir)

    if args.once:
        try:
            loop.run_once()
        finally:
            loop.close()
    else:
        loop.run_forever(interval_seconds=args.interval)


if __name__ == "__main__":
    main()
