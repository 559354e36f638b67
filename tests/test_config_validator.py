"""
Tests for config validation: app.yaml schema, guidelines rules and
cross-file sanity checks.
"""

import shutil
from pathlib import Path

import pytest
import yaml

from tools.config_validator import (
    AppConfig,
    load_app_config,
    validate_all_configs,
    validate_app,
    validate_guidelines,
    validate_sanity_checks,
)

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def config_dir(tmp_path):
    target = tmp_path / "config"
    target.mkdir()
    for name in ("app.yaml", "guidelines.yaml"):
        shutil.copy(CONFIG_DIR / name, target / name)
    return target


def _edit(path, mutate):
    with open(path) as f:
        data = yaml.safe_load(f)
    mutate(data)
    with open(path, "w") as f:
        yaml.safe_dump(data, f)


def test_shipped_configs_are_valid(config_dir):
    assert validate_all_configs(str(config_dir)) == []


def test_load_app_config(config_dir):
    config = load_app_config(str(config_dir))

    assert config.app.mode == "PAPER"
    assert config.universe.symbols[0] == "AAPL"
    assert config.advisory.provider == "mock"


def test_missing_app_yaml(tmp_path):
    errors = validate_app(tmp_path)

    assert len(errors) == 1
    assert errors[0].startswith("app.yaml")


def test_malformed_yaml_reports_location(config_dir):
    (config_dir / "app.yaml").write_text("app:\n  name: [unclosed\n")

    errors = validate_app(config_dir)

    assert errors
    assert "Invalid YAML" in errors[0]


def test_live_mode_is_rejected(config_dir):
    _edit(config_dir / "app.yaml", lambda d: d["app"].update(mode="LIVE"))

    errors = validate_app(config_dir)

    assert any("app -> mode" in e for e in errors)


def test_port_collision_rejected(config_dir):
    def collide(d):
        d["monitoring"].update(metrics_enabled=True, healthcheck_enabled=True, metrics_port=8080, healthcheck_port=8080)

    _edit(config_dir / "app.yaml", collide)

    assert validate_app(config_dir)


def test_universe_symbols_are_normalized():
    config = AppConfig(universe={"symbols": ["aapl", " msft "]})

    assert config.universe.symbols == ["AAPL", "MSFT"]


def test_duplicate_symbols_rejected(config_dir):
    _edit(config_dir / "app.yaml", lambda d: d["universe"].update(symbols=["AAPL", "aapl"]))

    assert any("universe" in e for e in validate_app(config_dir))


def test_missing_universe_rejected(config_dir):
    _edit(config_dir / "app.yaml", lambda d: d.pop("universe"))

    assert any("universe" in e for e in validate_app(config_dir))


def test_invalid_log_level(config_dir):
    _edit(config_dir / "app.yaml", lambda d: d["logging"].update(level="LOUD"))

    assert any("logging -> level" in e for e in validate_app(config_dir))


def test_invalid_guidelines(config_dir):
    _edit(config_dir / "guidelines.yaml", lambda d: d.pop("exit_criteria"))

    errors = validate_guidelines(config_dir)

    assert errors
    assert all(e.startswith("guidelines.yaml") for e in errors)


def test_guidelines_file_follows_app_config(config_dir):
    (config_dir / "guidelines.yaml").rename(config_dir / "rules.yaml")
    _edit(config_dir / "app.yaml", lambda d: d["guidelines"].update(file="rules.yaml"))

    assert validate_guidelines(config_dir) == []


def test_risk_per_trade_above_position_cap(config_dir):
    def widen(d):
        d["risk_management"]["portfolio"]["risk_per_trade_pct"] = 12
        d["risk_management"]["portfolio"]["max_position_size_pct"] = 10

    _edit(config_dir / "guidelines.yaml", widen)

    errors = validate_sanity_checks(config_dir)

    assert any("risk_per_trade_pct" in e for e in errors)


def test_daily_loss_above_drawdown(config_dir):
    def loosen(d):
        d["risk_management"]["portfolio"]["max_daily_loss_pct"] = 9
        d["risk_management"]["portfolio"]["max_drawdown_pct"] = 8

    _edit(config_dir / "guidelines.yaml", loosen)

    assert any("max_daily_loss_pct" in e for e in validate_sanity_checks(config_dir))


def test_real_provider_needs_api_key(config_dir, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    _edit(config_dir / "app.yaml", lambda d: d["advisory"].update(provider="openai"))

    errors = validate_all_configs(str(config_dir))

    assert any("OPENAI_API_KEY" in e for e in errors)

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert validate_all_configs(str(config_dir)) == []


def test_disabled_advisory_needs_no_key(config_dir, monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    _edit(config_dir / "app.yaml", lambda d: d["advisory"].update(provider="anthropic", enabled=False))

    assert validate_all_configs(str(config_dir)) == []
