"""
swingtrader Core: Cycle Orchestrator

Owns the engine lifecycle and runs the trading cycle:

1. Buy:     generate entry signals -> risk validation -> execute -> arm exits
2. Sell:    advisory exit review of open positions -> execute
3. Exit:    refresh prices, ratchet trailing stops, fire triggered criteria
4. Metrics: portfolio snapshot, gauges, audit

Phases always run in order. Errors inside a phase are collected on the
CycleResult and never raised; lifecycle misuse raises EngineStateError.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Sequence
from uuid import uuid4

from core.exceptions import CriticalDataUnavailable, EngineStateError, ExecutionError, PortfolioError
from core.exit_criteria import ExitCriteriaEngine
from core.portfolio_state import TRADE_FAILED, Portfolio, PortfolioState, Position, Trade
from core.risk import RiskValidator
from core.rules import RuleSet, ValidationResult
from infra.market_data import MarketDataProvider, MarketSnapshot, Quote, is_fresh
from infra.metrics import CycleStats
from strategy.signals import Signal

logger = logging.getLogger(__name__)

RECENT_CYCLE_WINDOW = 10


class EngineState(str, Enum):
    IDLE = "IDLE"
    INITIALIZING = "INITIALIZING"
    TRADING_CYCLE = "TRADING_CYCLE"
    PAUSED = "PAUSED"
    ERROR = "ERROR"


class HealthStatus(str, Enum):
    HEALTHY = "HEALTHY"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    OFFLINE = "OFFLINE"


@dataclass
class CycleResult:
    """Outcome of one execute_cycle() call"""
    cycle_id: str
    timestamp: datetime
    buy_signals_processed: int = 0
    sell_signals_processed: int = 0
    exit_criteria_checked: int = 0
    exit_signals: int = 0
    risk_rejections: int = 0
    trades_executed: List[Trade] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    phase_durations: Dict[str, float] = field(default_factory=dict)
    execution_time_ms: float = 0.0

    @property
    def status(self) -> str:
        if self.errors:
            return "completed_with_errors"
        return "executed" if self.trades_executed else "no_trade"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "timestamp": self.timestamp.isoformat(),
            "status": self.status,
            "buy_signals_processed": self.buy_signals_processed,
            "sell_signals_processed": self.sell_signals_processed,
            "exit_criteria_checked": self.exit_criteria_checked,
            "exit_signals": self.exit_signals,
            "risk_rejections": self.risk_rejections,
            "trades_executed": [t.to_dict() for t in self.trades_executed],
            "errors": list(self.errors),
            "phase_durations": {k: round(v, 4) for k, v in self.phase_durations.items()},
            "execution_time_ms": round(self.execution_time_ms, 1),
        }


@dataclass
class EngineStatus:
    is_running: bool
    is_paused: bool
    state: EngineState
    current_phase: str
    uptime_seconds: float
    cycles_completed: int
    error_count: int
    average_cycle_time_ms: float
    success_rate: float  # percent
    last_error: Optional[str] = None
    last_cycle_time: Optional[datetime] = None
    next_cycle_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "is_paused": self.is_paused,
            "state": self.state.value,
            "current_phase": self.current_phase,
            "uptime_seconds": round(self.uptime_seconds, 1),
            "cycles_completed": self.cycles_completed,
            "error_count": self.error_count,
            "average_cycle_time_ms": round(self.average_cycle_time_ms, 1),
            "success_rate": round(self.success_rate, 1),
            "last_error": self.last_error,
            "last_cycle_time": self.last_cycle_time.isoformat() if self.last_cycle_time else None,
            "next_cycle_time": self.next_cycle_time.isoformat() if self.next_cycle_time else None,
        }


@dataclass
class ComponentHealth:
    status: HealthStatus
    message: str
    last_check: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "last_check": self.last_check.isoformat(),
        }


@dataclass
class SystemHealth:
    overall: HealthStatus
    components: Dict[str, ComponentHealth]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.overall.value,
            "components": {name: c.to_dict() for name, c in self.components.items()},
            "timestamp": self.timestamp.isoformat(),
        }


class CycleOrchestrator:
    """
    Trading engine: lifecycle state machine plus the four-phase cycle.

    State transitions and the "one cycle at a time" guard are serialized
    by locks; all portfolio writes go through PortfolioState.
    """

    def __init__(
        self,
        guidelines,
        signal_generator,
        risk_validator: RiskValidator,
        exit_engine: ExitCriteriaEngine,
        portfolio: PortfolioState,
        market_data: MarketDataProvider,
        broker,
        advisory=None,
        repository=None,
        audit=None,
        metrics=None,
        symbols: Optional[Sequence[str]] = None,
        cycle_interval_s: float = 300.0,
        call_timeout_s: float = 15.0,
        watch_guidelines: bool = False,
        watch_interval_s: float = 2.0,
    ):
        self.guidelines = guidelines
        self.signal_generator = signal_generator
        self.risk_validator = risk_validator
        self.exit_engine = exit_engine
        self.portfolio = portfolio
        self.market_data = market_data
        self.broker = broker
        self.advisory = advisory
        self.repository = repository
        self.audit = audit
        self.metrics = metrics
        self.symbols = list(symbols) if symbols else None
        self.cycle_interval_s = cycle_interval_s
        self.call_timeout_s = call_timeout_s
        self.watch_guidelines = watch_guidelines
        self.watch_interval_s = watch_interval_s

        self._state_lock = threading.RLock()
        self._cycle_lock = threading.Lock()
        self._state = EngineState.IDLE
        self._running = False
        self._paused = False
        self._current_phase = "IDLE"
        self._start_time: Optional[datetime] = None
        self._executor: Optional[ThreadPoolExecutor] = None

        self._cycles_completed = 0
        self._successful_cycles = 0
        self._total_cycle_ms = 0.0
        self._error_count = 0
        self._last_error: Optional[str] = None
        self._last_cycle_time: Optional[datetime] = None
        self._recent_cycle_errors: Deque[int] = deque(maxlen=RECENT_CYCLE_WINDOW)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    def start(self) -> None:
        """
        Load guidelines, restore the portfolio and mark the engine running.

        Raises:
            EngineStateError: ALREADY_RUNNING
            RuleLoadError: guidelines could not be loaded (state left at ERROR)
        """
        with self._state_lock:
            if self._running:
                raise EngineStateError(EngineStateError.ALREADY_RUNNING, "Trading engine is already running")

            logger.info("Starting trading engine")
            self._state = EngineState.INITIALIZING
            self._current_phase = "INITIALIZING"
            try:
                rule_set = self.guidelines.load()
                logger.info(f"Guidelines v{rule_set.version} loaded from {rule_set.source_path}")
                self.portfolio.restore()
                self.guidelines.add_listener(self._on_rules_reloaded)
                if self.watch_guidelines:
                    self.guidelines.start_watching(self.watch_interval_s)
            except Exception as e:
                self._state = EngineState.ERROR
                self._current_phase = "ERROR"
                self._record_error(f"start failed: {e}")
                logger.error(f"Failed to start trading engine: {e}", exc_info=True)
                raise

            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="orchestrator")
            self._running = True
            self._paused = False
            self._start_time = datetime.now(timezone.utc)
            self._state = EngineState.IDLE
            self._current_phase = "IDLE"
            self._audit_event("engine_started", {"rules_version": rule_set.version})
            logger.info("Trading engine started")

    def stop(self) -> None:
        with self._state_lock:
            if not self._running:
                raise EngineStateError(EngineStateError.NOT_RUNNING, "Trading engine is not running")

            logger.info("Stopping trading engine")
            self.guidelines.stop_watching()
            self.guidelines.remove_listener(self._on_rules_reloaded)
            if self._executor is not None:
                self._executor.shutdown(wait=False, cancel_futures=True)
                self._executor = None
            self._running = False
            self._paused = False
            self._state = EngineState.IDLE
            self._current_phase = "IDLE"
            self._audit_event("engine_stopped", {"cycles_completed": self._cycles_completed})
            logger.info(
                f"Trading engine stopped after {self._cycles_completed} cycle(s), "
                f"uptime {self._uptime():.0f}s"
            )

    def pause(self) -> None:
        with self._state_lock:
            if not self._running:
                raise EngineStateError(EngineStateError.NOT_RUNNING, "Trading engine is not running")
            if self._paused:
                raise EngineStateError(EngineStateError.ALREADY_PAUSED, "Trading engine is already paused")
            self._paused = True
            if self._state != EngineState.TRADING_CYCLE:
                self._state = EngineState.PAUSED
            logger.info("Trading engine paused")

    def resume(self) -> None:
        with self._state_lock:
            if not self._running:
                raise EngineStateError(EngineStateError.NOT_RUNNING, "Trading engine is not running")
            if not self._paused:
                raise EngineStateError(EngineStateError.NOT_PAUSED, "Trading engine is not paused")
            self._paused = False
            if self._state == EngineState.PAUSED:
                self._state = EngineState.IDLE
            logger.info("Trading engine resumed")

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def execute_cycle(self) -> CycleResult:
        """
        Run buy, sell, exit and metrics phases once.

        Raises:
            EngineStateError: NOT_RUNNING, PAUSED, or CYCLE_IN_PROGRESS
        """
        with self._state_lock:
            if not self._running:
                raise EngineStateError(EngineStateError.NOT_RUNNING, "Trading engine is not running")
            if self._paused:
                raise EngineStateError(EngineStateError.PAUSED, "Trading engine is paused")
            if not self._cycle_lock.acquire(blocking=False):
                raise EngineStateError(EngineStateError.CYCLE_IN_PROGRESS, "A trading cycle is already in progress")
            self._state = EngineState.TRADING_CYCLE

        result = CycleResult(cycle_id=uuid4().hex, timestamp=datetime.now(timezone.utc))
        start = time.perf_counter()
        logger.info(f"Starting trading cycle {result.cycle_id}")

        try:
            # Daily limits must measure against today's start value
            self.portfolio.reset_daily()
            rule_set = self.guidelines.get_current()
            logger.info(f"Using guidelines v{rule_set.version}" + (" (stale)" if self.guidelines.stale else ""))

            with self._phase("buy", result):
                self._process_buy_signals(rule_set, result)
            with self._phase("sell", result):
                self._process_sell_signals(rule_set, result)
            with self._phase("exit", result):
                self._process_exit_criteria(rule_set, result)
            with self._phase("metrics", result):
                self._update_portfolio_metrics(result)
            failed = False
        except Exception as e:
            failed = True
            result.errors.append(f"cycle: {e}")
            logger.error(f"Trading cycle {result.cycle_id} failed: {e}", exc_info=True)
        finally:
            result.execution_time_ms = (time.perf_counter() - start) * 1000
            self._finish_cycle(result, failed)
            self._cycle_lock.release()

        return result

    @contextmanager
    def _phase(self, name: str, result: CycleResult):
        self._current_phase = name.upper()
        start = time.perf_counter()
        try:
            yield
        except Exception as e:
            result.errors.append(f"{name}: {e}")
            logger.error(f"Error in {name} phase: {e}", exc_info=True)
        finally:
            duration = max(time.perf_counter() - start, 0.0)
            result.phase_durations[name] = duration
            if self.metrics is not None:
                self.metrics.record_phase_duration(name, duration)

    def _finish_cycle(self, result: CycleResult, failed: bool) -> None:
        with self._state_lock:
            self._cycles_completed += 1
            self._total_cycle_ms += result.execution_time_ms
            self._last_cycle_time = datetime.now(timezone.utc)
            self._recent_cycle_errors.append(len(result.errors))
            if result.errors:
                for error in result.errors:
                    self._record_error(error)
            else:
                self._successful_cycles += 1
            self._current_phase = "IDLE"
            if failed:
                self._state = EngineState.ERROR
            elif self._paused:
                self._state = EngineState.PAUSED
            else:
                self._state = EngineState.IDLE

        if self.metrics is not None:
            self.metrics.observe_cycle(CycleStats(
                status=result.status,
                buy_signals=result.buy_signals_processed,
                sell_signals=result.sell_signals_processed,
                exits=result.exit_signals,
                trades_executed=len(result.trades_executed),
                errors=len(result.errors),
                duration_seconds=result.execution_time_ms / 1000.0,
            ))
        if self.audit is not None:
            self.audit.log_cycle(result)

        logger.info(
            f"Trading cycle {result.cycle_id} done in {result.execution_time_ms:.0f}ms: "
            f"buy={result.buy_signals_processed} sell={result.sell_signals_processed} "
            f"exits={result.exit_signals}/{result.exit_criteria_checked} "
            f"rejected={result.risk_rejections} trades={len(result.trades_executed)} "
            f"errors={len(result.errors)}"
        )

    def _process_buy_signals(self, rule_set: RuleSet, result: CycleResult) -> None:
        portfolio = self.portfolio.snapshot()
        held = {p.symbol for p in portfolio.positions}
        signals = self.signal_generator.generate_buy_signals(
            symbols=self.symbols,
            rule_set=rule_set,
            portfolio_value=portfolio.total_value,
            exclude=held,
        )
        result.buy_signals_processed = len(signals)

        for signal in signals:
            try:
                # Fresh snapshot: earlier fills in this loop changed cash and positions
                validation = self.risk_validator.validate_trade(signal, self.portfolio.snapshot(), rule_set)
                self._record_validation(signal, validation)
                if not validation.approved:
                    result.risk_rejections += 1
                    logger.warning(f"BUY {signal.symbol} rejected by risk: {'; '.join(validation.reasons)}")
                    continue

                quantity = validation.final_size(signal.recommended_size)
                trade = self._execute(signal, quantity, result)
                if trade is not None:
                    self._arm_exit_criteria(signal, trade, rule_set)
            except Exception as e:
                result.errors.append(f"buy {signal.symbol}: {e}")
                logger.error(f"Error processing buy signal for {signal.symbol}: {e}", exc_info=True)

    def _process_sell_signals(self, rule_set: RuleSet, result: CycleResult) -> None:
        positions = self.portfolio.get_positions()
        signals = self.signal_generator.generate_sell_signals(positions, rule_set=rule_set)
        result.sell_signals_processed = len(signals)

        for signal in signals:
            try:
                self._execute_full_exit(signal, result)
            except Exception as e:
                result.errors.append(f"sell {signal.symbol}: {e}")
                logger.error(f"Error processing sell signal for {signal.symbol}: {e}", exc_info=True)

    def _process_exit_criteria(self, rule_set: RuleSet, result: CycleResult) -> None:
        positions = self.portfolio.get_positions()
        result.exit_criteria_checked = len(positions)
        if not positions:
            return

        snapshots = self._fetch_snapshots([p.symbol for p in positions])
        prices = {symbol: snap.price for symbol, snap in snapshots.items()}
        self.portfolio.update_prices(prices)

        for symbol, criteria in self.exit_engine.update_trailing_stops(positions, prices, rule_set).items():
            self.portfolio.set_exit_criteria(symbol, criteria)

        signals = self.exit_engine.evaluate(self.portfolio.get_positions(), snapshots)
        result.exit_signals = len(signals)
        for signal in signals:
            if self.metrics is not None:
                self.metrics.record_exit_trigger(signal.exit_type or "UNKNOWN")
                self.metrics.record_signal(signal.action, signal.source)
            self._audit_event("exit_trigger", signal.to_dict())
            try:
                self._execute_full_exit(signal, result)
            except Exception as e:
                result.errors.append(f"exit {signal.symbol}: {e}")
                logger.error(f"Error processing exit for {signal.symbol}: {e}", exc_info=True)

    def _update_portfolio_metrics(self, result: CycleResult) -> None:
        self.portfolio.snapshot_if_due()
        metrics = self.portfolio.get_metrics()
        if self.metrics is not None:
            self.metrics.record_portfolio(metrics.total_value, metrics.position_count, metrics.cash_pct)
        logger.info(
            f"Portfolio: value=${metrics.total_value:,.2f} cash=${metrics.cash_balance:,.2f} "
            f"positions={metrics.position_count} daily=${metrics.daily_pnl:+,.2f} "
            f"total=${metrics.total_pnl:+,.2f}"
        )

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    def _execute(self, signal: Signal, quantity: int, result: CycleResult) -> Optional[Trade]:
        """Submit to the broker and apply the fill; failures are recorded, not raised."""
        trade = Trade(
            symbol=signal.symbol,
            action=signal.action,
            quantity=quantity,
            price=signal.entry_price,
            reasoning=signal.reasoning,
            signal_id=signal.id,
        )
        try:
            future = self._executor.submit(self.broker.submit, trade)
            filled = future.result(timeout=self.call_timeout_s)
        except FuturesTimeout:
            self._record_failed_trade(trade, "execution timed out", result)
            return None
        except ExecutionError as e:
            self._record_failed_trade(trade, str(e), result)
            return None

        try:
            self.portfolio.apply_fill(filled)
        except PortfolioError as e:
            # Broker-side fill the book refused: keep it on record for reconciliation
            self._record_failed_trade(replace(filled), f"fill not applied: {e}", result, collaborator="portfolio",
                                      kind="rejected_fill")
            return None

        result.trades_executed.append(filled)
        logger.info(
            f"{filled.action} executed: {filled.quantity} {filled.symbol} @ ${filled.price:.2f}"
            + (f" realized ${filled.realized_pnl:+.2f}" if filled.realized_pnl is not None else "")
        )
        return filled

    def _execute_full_exit(self, signal: Signal, result: CycleResult) -> Optional[Trade]:
        position = self.portfolio.get_position(signal.symbol)
        if position is None or position.quantity <= 0:
            logger.info(f"Skipping SELL {signal.symbol}: no open position")
            return None
        quantity = min(signal.recommended_size, position.quantity)
        return self._execute(signal, quantity, result)

    def _record_failed_trade(self, trade: Trade, reason: str, result: CycleResult,
                             collaborator: str = "broker", kind: Optional[str] = None) -> None:
        trade.status = TRADE_FAILED
        trade.error = reason
        result.errors.append(f"execute {trade.action} {trade.symbol}: {reason}")
        logger.error(f"Failed to execute {trade.action} {trade.quantity} {trade.symbol}: {reason}")
        if kind is None:
            kind = "timeout" if "timed out" in reason else "error"
        self._count_failure(collaborator, kind)
        if self.repository is not None:
            try:
                self.repository.create_trade(self.portfolio.portfolio_id, trade)
            except Exception as e:
                logger.error(f"Failed to persist failed trade {trade.id}: {e}")

    def _arm_exit_criteria(self, signal: Signal, trade: Trade, rule_set: RuleSet) -> None:
        position = self.portfolio.get_position(trade.symbol)
        if position is None:
            return
        snapshot = None
        if signal.technicals is not None:
            snapshot = MarketSnapshot(
                quote=Quote(
                    symbol=trade.symbol,
                    price=trade.price,
                    volume=0.0,
                    bid=trade.price,
                    ask=trade.price,
                    timestamp=trade.timestamp,
                ),
                technicals=signal.technicals,
                sector=position.sector,
            )
        criteria = self.exit_engine.establish(position, position.entry_price, snapshot, rule_set)
        self.portfolio.set_exit_criteria(trade.symbol, criteria)

    def _fetch_snapshots(self, symbols: Sequence[str]) -> Dict[str, MarketSnapshot]:
        futures = {s: self._executor.submit(self.market_data.snapshot, s) for s in symbols}
        snapshots: Dict[str, MarketSnapshot] = {}
        for symbol, future in futures.items():
            try:
                snapshot = future.result(timeout=self.call_timeout_s)
            except FuturesTimeout:
                future.cancel()
                logger.warning(f"Market data timed out for {symbol}")
                self._count_failure("market_data", "timeout")
                continue
            except CriticalDataUnavailable as e:
                logger.warning(f"Market data unavailable for {symbol}: {e}")
                self._count_failure("market_data", "unavailable")
                continue
            if not is_fresh(snapshot.timestamp):
                logger.warning(f"Stale market data for {symbol}, skipping exit check")
                self._count_failure("market_data", "stale")
                continue
            snapshots[symbol] = snapshot
        return snapshots

    def _record_validation(self, signal: Signal, validation) -> None:
        if self.audit is not None:
            self.audit.log_risk_validation(signal, validation)
        if self.metrics is not None:
            for check in validation.checks:
                if check.severity is not None:
                    outcome = "rejected" if not check.passed else "resized"
                    self.metrics.record_risk_outcome(check.name, outcome)

    def _count_failure(self, collaborator: str, kind: str) -> None:
        if self.metrics is not None:
            self.metrics.record_collaborator_failure(collaborator, kind)

    def _record_error(self, message: str) -> None:
        self._error_count += 1
        self._last_error = message

    def _audit_event(self, kind: str, payload: Dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.log_event(kind, payload)

    def _on_rules_reloaded(self, rule_set: RuleSet) -> None:
        logger.info(f"Guidelines updated during runtime: v{rule_set.version}")
        self._audit_event("rules_reloaded", {"version": rule_set.version, "source": rule_set.source_path})

    # ------------------------------------------------------------------
    # Status and health
    # ------------------------------------------------------------------

    def _uptime(self) -> float:
        if not self._running or self._start_time is None:
            return 0.0
        return (datetime.now(timezone.utc) - self._start_time).total_seconds()

    def get_status(self) -> EngineStatus:
        with self._state_lock:
            cycles = self._cycles_completed
            next_cycle = None
            if self._running and not self._paused:
                base = self._last_cycle_time or self._start_time
                if base is not None:
                    next_cycle = base + timedelta(seconds=self.cycle_interval_s)
            return EngineStatus(
                is_running=self._running,
                is_paused=self._paused,
                state=self._state,
                current_phase=self._current_phase,
                uptime_seconds=self._uptime(),
                cycles_completed=cycles,
                error_count=self._error_count,
                average_cycle_time_ms=self._total_cycle_ms / cycles if cycles else 0.0,
                success_rate=self._successful_cycles / cycles * 100 if cycles else 100.0,
                last_error=self._last_error,
                last_cycle_time=self._last_cycle_time,
                next_cycle_time=next_cycle,
            )

    def get_health(self) -> SystemHealth:
        components = {
            "engine": self._engine_health(),
            "guidelines": self._guard(self._guidelines_health),
            "market_data": self._guard(self._market_data_health),
            "advisory": self._guard(self._advisory_health),
            "broker": self._guard(self._broker_health),
            "persistence": self._guard(self._persistence_health),
            "risk": self._guard(self._risk_health),
        }
        statuses = [c.status for c in components.values()]
        if HealthStatus.CRITICAL in statuses:
            overall = HealthStatus.CRITICAL
        elif HealthStatus.WARNING in statuses or HealthStatus.OFFLINE in statuses:
            overall = HealthStatus.WARNING
        else:
            overall = HealthStatus.HEALTHY
        return SystemHealth(overall=overall, components=components)

    @staticmethod
    def _guard(check) -> ComponentHealth:
        try:
            return check()
        except Exception as e:
            logger.warning(f"Health check {check.__name__} failed: {e}")
            return ComponentHealth(HealthStatus.CRITICAL, f"Health check failed: {e}")

    def _engine_health(self) -> ComponentHealth:
        if not self._running:
            return ComponentHealth(HealthStatus.OFFLINE, "Trading engine is not running")
        recent = sum(self._recent_cycle_errors)
        if recent > 5:
            return ComponentHealth(HealthStatus.CRITICAL, f"{recent} errors in the last {len(self._recent_cycle_errors)} cycles")
        if recent > 0:
            return ComponentHealth(HealthStatus.WARNING, f"{recent} errors in the last {len(self._recent_cycle_errors)} cycles")
        if self._paused:
            return ComponentHealth(HealthStatus.HEALTHY, "Trading engine paused")
        return ComponentHealth(HealthStatus.HEALTHY, "Trading engine operational")

    def _guidelines_health(self) -> ComponentHealth:
        if not self.guidelines.is_loaded:
            return ComponentHealth(HealthStatus.CRITICAL, "No guidelines loaded")
        rule_set = self.guidelines.get_current()
        if self.guidelines.stale:
            return ComponentHealth(
                HealthStatus.WARNING,
                f"Using last valid guidelines v{rule_set.version}; latest file failed validation",
            )
        return ComponentHealth(HealthStatus.HEALTHY, f"Guidelines v{rule_set.version} loaded")

    def _market_data_health(self) -> ComponentHealth:
        if self.market_data.is_healthy():
            return ComponentHealth(HealthStatus.HEALTHY, "Market data operational")
        return ComponentHealth(HealthStatus.WARNING, "Market data degraded")

    def _advisory_health(self) -> ComponentHealth:
        if self.advisory is None or not self.advisory.enabled:
            return ComponentHealth(HealthStatus.WARNING, "Advisory disabled; no entries will be proposed")
        if self.advisory.is_healthy():
            return ComponentHealth(HealthStatus.HEALTHY, "Advisory operational")
        return ComponentHealth(
            HealthStatus.WARNING,
            f"{self.advisory.consecutive_failures} consecutive advisory failures",
        )

    def _broker_health(self) -> ComponentHealth:
        if self.broker.is_healthy():
            return ComponentHealth(HealthStatus.HEALTHY, "Execution provider operational")
        return ComponentHealth(HealthStatus.CRITICAL, "Execution provider unavailable")

    def _persistence_health(self) -> ComponentHealth:
        if self.repository is None:
            return ComponentHealth(HealthStatus.HEALTHY, "No repository configured; state kept in memory")
        if self.repository.is_healthy():
            return ComponentHealth(HealthStatus.HEALTHY, "Database connection healthy")
        return ComponentHealth(HealthStatus.CRITICAL, "Database connection failed")

    def _risk_health(self) -> ComponentHealth:
        if not self.guidelines.is_loaded:
            return ComponentHealth(HealthStatus.OFFLINE, "No guidelines; risk limits unknown")
        limit = self.guidelines.get_current().risk_management.max_risk_events_per_day
        events = self.risk_validator.events_today
        if events >= limit:
            return ComponentHealth(HealthStatus.WARNING, f"Daily risk event limit reached ({events}/{limit}); trading halted")
        return ComponentHealth(HealthStatus.HEALTHY, f"{events}/{limit} risk events today")

    # ------------------------------------------------------------------
    # Read-side API
    # ------------------------------------------------------------------

    def get_portfolio(self) -> Portfolio:
        return self.portfolio.snapshot()

    def get_positions(self) -> List[Position]:
        return self.portfolio.get_positions()

    def get_current_rule_set(self) -> RuleSet:
        return self.guidelines.get_current()

    def reload_guidelines(self) -> RuleSet:
        return self.guidelines.reload()

    def validate_guidelines(self, document: Any) -> ValidationResult:
        return self.guidelines.validate(document)
