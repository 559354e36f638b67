"""Prometheus-backed metrics hooks for the trading cycle, risk checks and collaborators."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "swingtrader_"


@dataclass
class CycleStats:
    status: str
    buy_signals: int = 0
    sell_signals: int = 0
    exits: int = 0
    trades_executed: int = 0
    errors: int = 0
    duration_seconds: float = 0.0


class MetricsRecorder:
    """
    Expose trading cycle stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    In-memory snapshots (last cycle, phase durations, failures) are kept
    whether or not the exporter is enabled so the health endpoint can
    report them.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_cycle_stats: Optional[CycleStats] = None
        self._last_phase_durations: Dict[str, float] = {}
        self._failure_counts: Dict[str, int] = {}
        self._risk_outcomes: Dict[str, int] = {}
        self._last_cycle_at: Optional[datetime] = None

        if not self._enabled:
            self._cycle_summary = None
            self._cycle_counter = None
            self._cycle_gauge = None
            self._phase_summary = None
            self._signal_counter = None
            self._risk_counter = None
            self._exit_counter = None
            self._collaborator_counter = None
            self._portfolio_value_gauge = None
            self._positions_gauge = None
            self._cash_pct_gauge = None
            self._advisory_latency_summary = None
            return

        self._cycle_summary = Summary(
            "swingtrader_cycle_duration_seconds",
            "Duration of a full trading cycle",
        )
        self._cycle_counter = Counter(
            "swingtrader_cycle_total",
            "Total trading cycles by status",
            labelnames=("status",),
        )
        self._cycle_gauge = Gauge(
            "swingtrader_cycle_stage_count",
            "Per-cycle counts (buy signals, sell signals, exits, executions, errors)",
            labelnames=("stage",),
        )
        self._phase_summary = Summary(
            "swingtrader_phase_duration_seconds",
            "Duration of cycle phases",
            labelnames=("phase",),
        )
        self._signal_counter = Counter(
            "swingtrader_signals_total",
            "Signals produced, by action and source",
            labelnames=("action", "source"),
        )
        self._risk_counter = Counter(
            "swingtrader_risk_check_outcomes_total",
            "Risk check outcomes that altered a trade",
            labelnames=("check", "outcome"),
        )
        self._exit_counter = Counter(
            "swingtrader_exit_triggers_total",
            "Exit criteria that fired, by type",
            labelnames=("criterion",),
        )
        self._collaborator_counter = Counter(
            "swingtrader_collaborator_failures_total",
            "Failures talking to collaborators",
            labelnames=("collaborator", "kind"),
        )
        self._portfolio_value_gauge = Gauge(
            "swingtrader_portfolio_value",
            "Total portfolio value (cash + positions)",
        )
        self._positions_gauge = Gauge(
            "swingtrader_open_positions",
            "Number of currently open positions",
        )
        self._cash_pct_gauge = Gauge(
            "swingtrader_cash_pct",
            "Cash as a percentage of total portfolio value",
        )
        self._advisory_latency_summary = Summary(
            "swingtrader_advisory_latency_seconds",
            "Latency of advisory model calls",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            from prometheus_client import REGISTRY

            collectors_to_remove = []
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)

            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    pass  # Already unregistered

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                continue

        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_cycle(self, stats: CycleStats) -> None:
        self._last_cycle_stats = stats
        self._last_cycle_at = datetime.now(timezone.utc)
        if not self._enabled:
            return
        self._cycle_summary.observe(stats.duration_seconds)
        self._cycle_counter.labels(status=stats.status).inc()
        self._cycle_gauge.labels(stage="buy_signals").set(stats.buy_signals)
        self._cycle_gauge.labels(stage="sell_signals").set(stats.sell_signals)
        self._cycle_gauge.labels(stage="exits").set(stats.exits)
        self._cycle_gauge.labels(stage="executed").set(stats.trades_executed)
        self._cycle_gauge.labels(stage="errors").set(stats.errors)

    def record_phase_duration(self, phase: str, duration: float) -> None:
        self._last_phase_durations[phase] = duration
        if self._enabled:
            self._phase_summary.labels(phase=phase).observe(duration)

    def record_signal(self, action: str, source: str) -> None:
        if self._enabled:
            self._signal_counter.labels(action=action, source=source).inc()

    def record_risk_outcome(self, check: str, outcome: str) -> None:
        key = f"{check}:{outcome}"
        self._risk_outcomes[key] = self._risk_outcomes.get(key, 0) + 1
        if self._enabled:
            self._risk_counter.labels(check=check, outcome=outcome).inc()

    def record_exit_trigger(self, criterion: str) -> None:
        if self._enabled:
            self._exit_counter.labels(criterion=criterion).inc()

    def record_collaborator_failure(self, collaborator: str, kind: str) -> None:
        key = f"{collaborator}:{kind}"
        self._failure_counts[key] = self._failure_counts.get(key, 0) + 1
        if self._enabled:
            self._collaborator_counter.labels(collaborator=collaborator, kind=kind).inc()

    def record_portfolio(self, total_value: float, open_positions: int, cash_pct: float) -> None:
        if not self._enabled:
            return
        self._portfolio_value_gauge.set(total_value)
        self._positions_gauge.set(open_positions)
        self._cash_pct_gauge.set(cash_pct)

    def record_advisory_latency(self, latency_ms: float) -> None:
        if self._enabled:
            self._advisory_latency_summary.observe(latency_ms / 1000.0)

    def last_cycle(self) -> Optional[CycleStats]:
        return self._last_cycle_stats

    def last_cycle_at(self) -> Optional[datetime]:
        return self._last_cycle_at

    def phase_snapshot(self) -> Dict[str, float]:
        return dict(self._last_phase_durations)

    def failure_snapshot(self) -> Dict[str, int]:
        return dict(self._failure_counts)

    def risk_outcome_snapshot(self) -> Dict[str, int]:
        return dict(self._risk_outcomes)
