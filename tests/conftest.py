"""
Pytest configuration and fixtures for swingtrader tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import copy
from pathlib import Path

import pytest
import yaml

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture(scope="session")
def _guidelines_document():
    with open(CONFIG_DIR / "guidelines.yaml", "r") as f:
        return yaml.safe_load(f)


@pytest.fixture
def guidelines_doc(_guidelines_document):
    """Fresh deep copy of config/guidelines.yaml, safe to mutate."""
    return copy.deepcopy(_guidelines_document)


@pytest.fixture
def rule_set(guidelines_doc):
    from core.rules import validate_rule_set

    result = validate_rule_set(guidelines_doc)
    assert result.is_valid, result.errors
    return result.rule_set


@pytest.fixture
def guidelines_file(tmp_path, guidelines_doc):
    path = tmp_path / "guidelines.yaml"
    path.write_text(yaml.safe_dump(guidelines_doc))
    return path


@pytest.fixture
def market_data():
    from infra.market_data import SimulatedMarketData

    return SimulatedMarketData(symbols=["AAPL", "MSFT", "NVDA"], seed=7)


@pytest.fixture
def metrics():
    from infra.metrics import MetricsRecorder

    return MetricsRecorder(enabled=False)
