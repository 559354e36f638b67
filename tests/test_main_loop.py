"""
Tests for the TradingLoop runner wired from a temporary config directory.
"""

import shutil
from pathlib import Path

import pytest
import yaml

from runner.main_loop import TradingLoop

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def config_dir(tmp_path):
    target = tmp_path / "config"
    target.mkdir()
    shutil.copy(CONFIG_DIR / "guidelines.yaml", target / "guidelines.yaml")
    with open(CONFIG_DIR / "app.yaml") as f:
        app = yaml.safe_load(f)

    app["logging"].update(file=str(tmp_path / "logs" / "run.log"), audit_file=str(tmp_path / "logs" / "audit.jsonl"))
    app["monitoring"].update(metrics_enabled=False, healthcheck_enabled=False)
    app["engine"].update(watch_guidelines=False)
    app["broker"].update(latency_ms=0)
    app["market_data"].update(seed=11)
    app["persistence"].update(db_path=":memory:")
    app["guidelines"].update(backup_dir=str(tmp_path / "backup"))
    app["universe"].update(symbols=["AAPL", "MSFT"])

    with open(target / "app.yaml", "w") as f:
        yaml.safe_dump(app, f)
    return target


@pytest.fixture
def loop(config_dir):
    trading_loop = TradingLoop(config_dir=str(config_dir), install_signal_handlers=False)
    yield trading_loop
    trading_loop.shutdown()


def test_invalid_config_refuses_to_start(config_dir):
    (config_dir / "guidelines.yaml").write_text("version: 1\n")

    with pytest.raises(ValueError, match="Invalid configuration"):
        TradingLoop(config_dir=str(config_dir), install_signal_handlers=False)


def test_loop_wires_a_running_engine(loop):
    assert loop.mode == "PAPER"
    assert loop.orchestrator.is_running
    assert loop.health_server is None
    assert loop.guidelines.get_current().version == "1.2"


def test_run_cycle_returns_result(loop):
    result = loop.run_cycle()

    assert result is not None
    assert isinstance(result.errors, list)
    assert loop.orchestrator.get_status().cycles_completed == 1


def test_run_cycle_while_paused_is_skipped(loop):
    loop.orchestrator.pause()

    assert loop.run_cycle() is None


def test_status_snapshot_is_json_ready(loop):
    loop.run_cycle()

    status = loop._status_snapshot()

    assert status["cycles_completed"] == 1
    assert status["last_cycle"]["status"] in ("executed", "no_trade", "completed_with_errors")
    assert "total_value" in status["portfolio"]
    assert loop._health_snapshot()["status"] in ("HEALTHY", "WARNING", "CRITICAL")


def test_stop_signal_ends_run_forever(loop, monkeypatch):
    def stop_after_cycle():
        result = loop.orchestrator.execute_cycle()
        loop._handle_stop()
        return result

    monkeypatch.setattr(loop, "run_cycle", stop_after_cycle)

    loop.run_forever(interval_seconds=1)

    assert not loop.orchestrator.is_running


def test_shutdown_is_idempotent(loop):
    loop.shutdown()
    loop.shutdown()

    assert not loop.orchestrator.is_running
