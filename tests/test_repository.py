"""
Tests for SqliteRepository: portfolios, positions with exit criteria,
trades and snapshots.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.exit_criteria import CriterionType, ExitCriterion
from core.portfolio_state import TRADE_EXECUTED, TRADE_FAILED, PortfolioSnapshot, Trade
from infra.repository import SqliteRepository
from tests.helpers import make_position


@pytest.fixture
def repo():
    repository = SqliteRepository()
    repository.create_portfolio("p1", {"cash_balance": 10_000.0})
    yield repository
    repository.close()


def test_portfolio_round_trip(repo):
    record = repo.get_portfolio("p1")
    assert record["cash_balance"] == 10_000.0
    assert record["initial_cash"] == 10_000.0

    repo.update_portfolio("p1", {"cash_balance": 9_000.0, "total_value": 10_500.0, "daily_pnl": 500.0})

    record = repo.get_portfolio("p1")
    assert record["cash_balance"] == 9_000.0
    assert record["total_value"] == 10_500.0
    assert repo.get_portfolio("nope") is None


def test_position_upsert_keeps_exit_criteria(repo):
    position = make_position("AAPL", quantity=10, entry=100.0)
    position.exit_criteria = [
        ExitCriterion(CriterionType.STOP_LOSS, 95.0, priority=1, label="pct"),
        ExitCriterion(CriterionType.TECHNICAL, 97.0, priority=30, indicator="sma50"),
    ]
    repo.upsert_position("p1", position)

    position.quantity = 4
    repo.upsert_position("p1", position)

    (stored,) = repo.list_positions_by_portfolio("p1")
    assert stored.id == position.id
    assert stored.quantity == 4
    assert stored.stop_loss == 95.0
    assert stored.exit_criteria[1].indicator == "sma50"
    assert stored.entry_date.tzinfo is not None


def test_open_only_filters_closed_positions(repo):
    held = make_position("AAPL", quantity=5)
    closed = make_position("MSFT", quantity=0)
    closed.closed_at = datetime.now(timezone.utc)
    repo.upsert_position("p1", held)
    repo.upsert_position("p1", closed)

    assert {p.symbol for p in repo.list_positions_by_portfolio("p1")} == {"AAPL", "MSFT"}
    assert [p.symbol for p in repo.list_positions_by_portfolio("p1", open_only=True)] == ["AAPL"]
    assert repo.get_position(closed.id).closed_at is not None


def test_trades_ordered_and_limited(repo):
    base = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
    for i in range(5):
        repo.create_trade(
            "p1",
            Trade(symbol="AAPL", action="BUY", quantity=i + 1, price=100.0, timestamp=base + timedelta(minutes=i),
                  status=TRADE_EXECUTED),
        )

    assert [t.quantity for t in repo.list_trades_by_portfolio("p1")] == [1, 2, 3, 4, 5]
    assert [t.quantity for t in repo.list_trades_by_portfolio("p1", limit=2)] == [4, 5]

    window = repo.list_trades_between("p1", base + timedelta(minutes=1), base + timedelta(minutes=3))
    assert [t.quantity for t in window] == [2, 3, 4]


def test_failed_trade_keeps_error(repo):
    trade = Trade(symbol="AAPL", action="BUY", quantity=1, price=100.0, status=TRADE_FAILED, error="broker down")
    repo.create_trade("p1", trade)

    stored = repo.get_trade(trade.id)

    assert stored.status == TRADE_FAILED
    assert stored.error == "broker down"
    assert stored.realized_pnl is None


def test_snapshots(repo):
    base = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
    for i, value in enumerate([10_000.0, 10_100.0, 9_950.0]):
        repo.create_snapshot(PortfolioSnapshot(
            portfolio_id="p1",
            timestamp=base + timedelta(hours=i),
            total_value=value,
            cash_balance=value,
            position_count=0,
            daily_pnl=0.0,
            total_pnl=value - 10_000.0,
            positions=[{"symbol": "AAPL", "quantity": 1}],
        ))

    latest = repo.get_latest_snapshot("p1")
    assert latest.total_value == 9_950.0
    assert latest.positions == [{"symbol": "AAPL", "quantity": 1}]

    between = repo.list_snapshots_between("p1", base, base + timedelta(hours=1))
    assert [s.total_value for s in between] == [10_000.0, 10_100.0]
    assert repo.get_latest_snapshot("other") is None


def test_file_backed_repository_creates_parent(tmp_path):
    path = tmp_path / "nested" / "db.sqlite"

    repository = SqliteRepository(str(path))
    try:
        assert path.exists()
        assert repository.is_healthy()
    finally:
        repository.close()


def test_closed_connection_is_unhealthy():
    repository = SqliteRepository()
    repository.close()

    assert repository.is_healthy() is False
