"""
swingtrader Runner: Main Loop

Wires the collaborators from config and drives the cycle orchestrator.

Flow per cycle (see core.trading_cycle):
1. Buy signals  -> risk validation -> paper execution -> exit criteria armed
2. Sell signals (advisory exit review of open positions)
3. Exit criteria (stops, targets, trailing stops, time exits)
4. Portfolio metrics and snapshots

Only PAPER mode exists: fills come from the simulated broker.
"""

import logging
import os
import signal
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional

from ai.advisor import AdvisoryService
from ai.model_client import create_model_client
from core.audit_log import AuditLogger
from core.exceptions import EngineStateError
from core.exit_criteria import ExitCriteriaEngine
from core.guidelines import GuidelinesStore
from core.portfolio_state import PortfolioState
from core.risk import RiskValidator
from core.trading_cycle import CycleOrchestrator, CycleResult
from infra.broker import PaperBroker
from infra.healthcheck import HealthServer
from infra.market_data import SimulatedMarketData
from infra.metrics import MetricsRecorder
from infra.repository import SqliteRepository
from strategy.signal_generator import SignalGenerator
from tools.config_validator import API_KEY_ENV, AppConfig, load_app_config

logger = logging.getLogger(__name__)


class TradingLoop:
    """
    Main trading loop.

    Responsibilities:
    - Validate and load config
    - Build the collaborators and the orchestrator
    - Run periodic cycles until a stop signal arrives
    - Serve health/status over HTTP when enabled
    """

    def __init__(self, config_dir: str = "config", install_signal_handlers: bool = True):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.config: AppConfig = load_app_config(config_dir)
        self.mode = self.config.app.mode
        self._setup_logging()
        logger.info(f"Starting swingtrader in mode={self.mode}")

        self.metrics = MetricsRecorder(
            enabled=self.config.monitoring.metrics_enabled,
            port=self.config.monitoring.metrics_port,
        )
        self.metrics.start()
        self.audit = AuditLogger(audit_file=self.config.logging.audit_file)

        self.repository = SqliteRepository(self._prepare_path(self.config.persistence.db_path))
        self.market_data = SimulatedMarketData(
            symbols=self.config.universe.symbols,
            seed=self.config.market_data.seed,
            volatility=self.config.market_data.volatility,
        )
        self.advisory = self._build_advisory()

        engine_cfg = self.config.engine
        guidelines_path = Path(self.config.guidelines.file)
        if not guidelines_path.is_absolute():
            guidelines_path = self.config_dir / guidelines_path
        self.guidelines = GuidelinesStore(guidelines_path, backup_dir=self.config.guidelines.backup_dir)

        self.portfolio = PortfolioState(
            initial_cash=engine_cfg.initial_cash,
            portfolio_id=engine_cfg.portfolio_id,
            repository=self.repository,
            snapshot_interval_minutes=engine_cfg.snapshot_interval_minutes,
            sector_lookup=self.market_data.sector,
        )
        self.signal_generator = SignalGenerator(
            market_data=self.market_data,
            advisory=self.advisory,
            guidelines=self.guidelines,
            max_workers=engine_cfg.max_workers,
            call_timeout=engine_cfg.call_timeout_seconds,
            max_signals_per_cycle=engine_cfg.max_signals_per_cycle,
            min_confidence=engine_cfg.min_confidence,
            metrics=self.metrics,
        )
        broker_cfg = self.config.broker
        self.broker = PaperBroker(
            slippage_pct=broker_cfg.slippage_pct,
            fee=broker_cfg.fee,
            latency_ms=broker_cfg.latency_ms,
            failure_rate=broker_cfg.failure_rate,
            seed=broker_cfg.seed,
        )

        self.orchestrator = CycleOrchestrator(
            guidelines=self.guidelines,
            signal_generator=self.signal_generator,
            risk_validator=RiskValidator(
                sector_lookup=self.market_data.sector,
                fee_per_trade=broker_cfg.fee,
                slippage_buffer_pct=broker_cfg.slippage_pct,
            ),
            exit_engine=ExitCriteriaEngine(),
            portfolio=self.portfolio,
            market_data=self.market_data,
            broker=self.broker,
            advisory=self.advisory,
            repository=self.repository,
            audit=self.audit,
            metrics=self.metrics,
            symbols=self.config.universe.symbols,
            cycle_interval_s=engine_cfg.cycle_interval_seconds,
            call_timeout_s=engine_cfg.call_timeout_seconds,
            watch_guidelines=engine_cfg.watch_guidelines,
        )
        self.orchestrator.start()

        self.health_server: Optional[HealthServer] = None
        self._start_health_server()

        self._running = True
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(
            f"Initialized TradingLoop: {len(self.config.universe.symbols)} symbols, "
            f"advisory={self.config.advisory.provider if self.config.advisory.enabled else 'disabled'}"
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _setup_logging(self) -> None:
        log_file = self.config.logging.file
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, self.config.logging.level),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

    @staticmethod
    def _prepare_path(db_path: str) -> str:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return db_path

    def _build_advisory(self) -> AdvisoryService:
        cfg = self.config.advisory
        # A disabled service never calls its client, so no key is required
        provider = cfg.provider if cfg.enabled else "mock"
        api_key = os.getenv(API_KEY_ENV[provider]) if provider in API_KEY_ENV else None
        client = create_model_client(provider, api_key=api_key, model=cfg.model)
        return AdvisoryService(
            client,
            enabled=cfg.enabled,
            timeout_s=cfg.timeout_seconds,
            max_workers=self.config.engine.max_workers,
            audit=self.audit,
            metrics=self.metrics,
        )

    def _start_health_server(self) -> None:
        cfg = self.config.monitoring
        if not cfg.healthcheck_enabled or self.health_server is not None:
            return

        server = HealthServer(
            cfg.healthcheck_port,
            self._health_snapshot,
            status_provider=self._status_snapshot,
        )
        try:
            server.start()
        except OSError as exc:
            logger.error("Failed to start health server on port %s: %s", cfg.healthcheck_port, exc)
            return
        self.health_server = server

    def _health_snapshot(self) -> Dict[str, Any]:
        return self.orchestrator.get_health().to_dict()

    def _status_snapshot(self) -> Dict[str, Any]:
        payload = self.orchestrator.get_status().to_dict()
        last = self.metrics.last_cycle()
        payload["last_cycle"] = asdict(last) if last else None
        payload["portfolio"] = self.portfolio.get_metrics().to_dict()
        return payload

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def _handle_stop(self, *_):
        """Stop after the current cycle; the engine itself is stopped in shutdown()."""
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - stopping after current cycle")
        logger.warning("=" * 80)
        self._running = False

    def _stop_health_server(self) -> None:
        server = self.health_server
        if not server:
            return
        try:
            server.stop()
        except OSError as exc:
            logger.warning("Health server stop failed: %s", exc)
        finally:
            self.health_server = None

    def shutdown(self) -> None:
        """Stop the engine and release resources. Safe to call twice."""
        self._running = False
        if self.orchestrator.is_running:
            self.orchestrator.stop()
        self._stop_health_server()
        self.advisory.shutdown()
        self.repository.close()
        logger.info("Shutdown complete")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run_cycle(self) -> Optional[CycleResult]:
        """Run one cycle; returns None when the engine refused to run it."""
        try:
            result = self.orchestrator.execute_cycle()
        except EngineStateError as e:
            logger.warning(f"Cycle skipped: {e}")
            return None

        for error in result.errors:
            logger.warning(f"Cycle {result.cycle_id} error: {error}")
        return result

    def run_forever(self, interval_seconds: Optional[float] = None):
        """
        Run trading loop continuously with time-aware sleep.

        Args:
            interval_seconds: Seconds between cycle starts (config value when None)
        """
        configured_interval = float(interval_seconds) if interval_seconds else self.config.engine.cycle_interval_seconds
        configured_interval = max(configured_interval, 1.0)

        logger.info(f"Starting continuous loop (interval={configured_interval}s)")

        try:
            while self._running:
                start = time.monotonic()
                self.run_cycle()
                elapsed = time.monotonic() - start

                sleep_for = max(1.0, configured_interval - elapsed)
                logger.info(f"Cycle took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")

                # Sleep in short slices so a stop signal is honored promptly
                deadline = time.monotonic() + sleep_for
                while self._running and time.monotonic() < deadline:
                    time.sleep(min(1.0, deadline - time.monotonic()))
        finally:
            self.shutdown()

        logger.info("Trading loop stopped cleanly.")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="swingtrader paper trading engine")
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    parser.add_argument("--interval", type=float, default=None,
                        help="Seconds between cycles (default: engine.cycle_interval_seconds)")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    # Create loop (logging configured in __init__)
    loop = TradingLoop(config_dir=args.config_dir)

    if args.once:
        try:
            loop.run_cycle()
        finally:
            loop.shutdown()
    else:
        loop.run_forever(interval_seconds=args.interval)


if __name__ == "__main__":
    main()
