"""Prometheus-backed metrics hooks for the trading cycle and scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "cycletrader_"

_BREAKER_LEVEL = {"NORMAL": 0, "PAUSED": 1, "HALTED": 2}


@dataclass
class CycleStats:
    status: str
    entries: int
    exits: int
    rejected: int
    open_positions: int
    circuit_breaker: str
    duration_seconds: float
    rejections_by_category: Dict[str, int] = field(default_factory=dict)


class MetricsRecorder:
    """
    Expose trading cycle stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    When disabled, the last-cycle snapshots are still kept in memory.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        if self.__class__._initialized:
            return
        self.__class__._initialized = True

        self._enabled = bool(enabled)
        self._port = port
        self._started = False

        self._last_cycle_stats: Optional[CycleStats] = None
        self._last_stage_durations: Dict[str, float] = {}
        self._rejection_counts: Dict[str, int] = {}
        self._dropped_ticks = 0

        if not self._enabled:
            return

        self._cycle_summary = Summary(
            f"{METRIC_PREFIX}cycle_duration_seconds",
            "Duration of a full trading cycle",
        )
        self._cycle_counter = Counter(
            f"{METRIC_PREFIX}cycles_total",
            "Trading cycles by outcome",
            labelnames=("status",),
        )
        self._stage_summary = Summary(
            f"{METRIC_PREFIX}stage_duration_seconds",
            "Duration of cycle stages",
            labelnames=("stage",),
        )
        self._orders_counter = Counter(
            f"{METRIC_PREFIX}orders_total",
            "Executed entries and exits",
            labelnames=("kind", "reason"),
        )
        self._rejections_counter = Counter(
            f"{METRIC_PREFIX}rejections_total",
            "Rejected signals and orders by category",
            labelnames=("category",),
        )
        self._positions_gauge = Gauge(
            f"{METRIC_PREFIX}open_positions",
            "Number of currently open positions",
        )
        self._circuit_breaker_gauge = Gauge(
            f"{METRIC_PREFIX}circuit_breaker_state",
            "Circuit breaker state (0=NORMAL, 1=PAUSED, 2=HALTED)",
        )
        self._dropped_ticks_counter = Counter(
            f"{METRIC_PREFIX}dropped_ticks_total",
            "Scheduler ticks dropped because a cycle was still running",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        for collector in list(REGISTRY._collector_to_names):
            names = REGISTRY._collector_to_names.get(collector, set())
            if any(name.startswith(METRIC_PREFIX) for name in names):
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_cycle(self, result, duration: float) -> None:
        """Publish a CycleResult."""
        if result.success:
            status = "ok" if (result.executed_entries or result.executed_exits) else "no_trade"
        else:
            status = "error"
        breaker = result.new_state.circuit_breaker.status.value
        stats = CycleStats(
            status=status,
            entries=len(result.executed_entries),
            exits=len(result.executed_exits),
            rejected=len(result.rejected_signals),
            open_positions=len(result.new_state.positions),
            circuit_breaker=breaker,
            duration_seconds=duration,
            rejections_by_category=dict(result.diagnostics.get("rejections_by_category", {})),
        )
        self._last_cycle_stats = stats

        if not self._enabled:
            return
        self._cycle_summary.observe(duration)
        self._cycle_counter.labels(status=status).inc()
        for order in result.executed_entries:
            self._orders_counter.labels(kind="entry", reason=order.side.value).inc()
        for order in result.executed_exits:
            self._orders_counter.labels(kind="exit", reason=order.reason).inc()
        self._positions_gauge.set(stats.open_positions)
        self._circuit_breaker_gauge.set(_BREAKER_LEVEL.get(breaker, 0))

    def record_stage_duration(self, stage: str, duration: float) -> None:
        self._last_stage_durations[stage] = duration
        if self._enabled:
            self._stage_summary.labels(stage=stage).observe(duration)

    def record_rejection(self, category: str) -> None:
        self._rejection_counts[category] = self._rejection_counts.get(category, 0) + 1
        if self._enabled:
            self._rejections_counter.labels(category=category).inc()

    def record_dropped_tick(self) -> None:
        self._dropped_ticks += 1
        if self._enabled:
            self._dropped_ticks_counter.inc()

    @property
    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def stage_snapshot(self) -> Dict[str, float]:
        return dict(self._last_stage_durations)

    def rejection_snapshot(self) -> Dict[str, int]:
        return dict(self._rejection_counts)

    @property
    def dropped_ticks(self) -> int:
        return self._dropped_ticks
