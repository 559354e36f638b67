"""
Tests for PortfolioState: fill accounting, stop protection, snapshots,
metrics and persistence through the repository.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from core.exceptions import InsufficientFundsError, PortfolioError
from core.exit_criteria import CriterionType, ExitCriterion
from core.portfolio_state import TRADE_FAILED, PortfolioState, Trade
from infra.repository import SqliteRepository
from tests.helpers import make_fill


@pytest.fixture
def state():
    return PortfolioState(initial_cash=100_000.0, sector_lookup=lambda s: "Technology")


def test_rejects_non_positive_cash():
    with pytest.raises(ValueError):
        PortfolioState(initial_cash=0)


def test_buy_opens_position_with_fallback_stop(state):
    position = state.apply_fill(make_fill("AAPL", "BUY", 10, 100.0, fees=1.0))

    assert state.cash_balance == pytest.approx(100_000.0 - 1_001.0)
    assert position.quantity == 10
    assert position.entry_price == 100.0
    assert position.sector == "Technology"
    assert position.stop_loss == 95.0


def test_second_buy_averages_entry(state):
    state.apply_fill(make_fill("AAPL", "BUY", 10, 100.0))
    position = state.apply_fill(make_fill("AAPL", "BUY", 10, 110.0))

    assert position.quantity == 20
    assert position.entry_price == pytest.approx(105.0)


def test_partial_sell_realizes_pnl(state):
    state.apply_fill(make_fill("AAPL", "BUY", 10, 100.0, fees=1.0))
    sell = make_fill("AAPL", "SELL", 4, 110.0, fees=1.0)

    position = state.apply_fill(sell)

    assert position.quantity == 6
    assert sell.realized_pnl == pytest.approx(39.0)
    assert position.realized_pnl == pytest.approx(39.0)


def test_full_sell_closes_position(state):
    state.apply_fill(make_fill("AAPL", "BUY", 10, 100.0, fees=0.0))
    state.apply_fill(make_fill("AAPL", "SELL", 10, 90.0, fees=0.0))

    assert state.get_position("AAPL") is None
    assert state.cash_balance == pytest.approx(99_900.0)
    (closed,) = state.get_closed_positions()
    assert closed.closed_at is not None
    assert all(not c.is_active for c in closed.exit_criteria)
    assert state.realized_pnl() == pytest.approx(-100.0)


def test_insufficient_funds(state):
    with pytest.raises(InsufficientFundsError) as exc:
        state.apply_fill(make_fill("AAPL", "BUY", 1000, 200.0))

    assert exc.value.available == pytest.approx(100_000.0)
    assert state.cash_balance == pytest.approx(100_000.0)


def test_oversell_rejected(state):
    state.apply_fill(make_fill("AAPL", "BUY", 5, 100.0))

    with pytest.raises(PortfolioError):
        state.apply_fill(make_fill("AAPL", "SELL", 6, 100.0))


def test_sell_without_position_rejected(state):
    with pytest.raises(PortfolioError):
        state.apply_fill(make_fill("AAPL", "SELL", 1, 100.0))


def test_only_executed_trades_apply(state):
    trade = Trade(symbol="AAPL", action="BUY", quantity=1, price=100.0, status=TRADE_FAILED)

    with pytest.raises(PortfolioError):
        state.apply_fill(trade)


def test_snapshot_is_isolated_copy(state):
    state.apply_fill(make_fill("AAPL", "BUY", 10, 100.0))
    snapshot = state.snapshot()

    snapshot.positions[0].quantity = 999

    assert state.get_position("AAPL").quantity == 10


def test_set_exit_criteria_keeps_a_stop(state):
    state.apply_fill(make_fill("AAPL", "BUY", 10, 100.0))

    state.set_exit_criteria("AAPL", [ExitCriterion(CriterionType.PROFIT_TARGET, 120.0, priority=10)])

    position = state.get_position("AAPL")
    assert position.profit_targets == [120.0]
    assert position.stop_loss == 95.0


def test_set_exit_criteria_for_unknown_symbol(state):
    with pytest.raises(PortfolioError):
        state.set_exit_criteria("NOPE", [])


def test_update_prices_moves_metrics(state):
    state.apply_fill(make_fill("AAPL", "BUY", 100, 100.0, fees=0.0))

    state.update_prices({"AAPL": 110.0, "MSFT": 50.0})
    metrics = state.get_metrics()

    assert metrics.total_value == pytest.approx(101_000.0)
    assert metrics.unrealized_pnl == pytest.approx(1_000.0)
    assert metrics.position_count == 1
    assert metrics.largest_position == ("AAPL", pytest.approx(11_000.0))
    assert metrics.sector_exposure["Technology"] == pytest.approx(11_000.0 / 101_000.0 * 100)


def test_new_day_resets_day_start_value(state):
    state.apply_fill(make_fill("AAPL", "BUY", 100, 100.0, fees=0.0))
    state.update_prices({"AAPL": 90.0})
    assert state.snapshot().daily_pnl == pytest.approx(-1_000.0)

    state.reset_daily(datetime.now(timezone.utc) + timedelta(days=1))

    assert state.snapshot().daily_pnl == pytest.approx(0.0)


def test_snapshot_if_due_respects_interval(state):
    now = datetime.now(timezone.utc)

    first = state.snapshot_if_due(now)
    second = state.snapshot_if_due(now + timedelta(minutes=5))
    third = state.snapshot_if_due(now + timedelta(minutes=61))

    assert first is not None
    assert second is None
    assert third is not None


def test_performance_stats_from_trades(state):
    state.apply_fill(make_fill("AAPL", "BUY", 10, 100.0, fees=0.0))
    state.apply_fill(make_fill("AAPL", "SELL", 10, 110.0, fees=0.0))

    stats = state.get_performance_stats()

    assert stats.round_trips == 1
    assert stats.winning_trades == 1
    assert stats.total_realized_pnl == pytest.approx(100.0)


def test_concurrent_fills_keep_cash_consistent(state):
    def buy():
        for _ in range(20):
            state.apply_fill(make_fill("AAPL", "BUY", 1, 10.0, fees=0.0))

    threads = [threading.Thread(target=buy) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert state.get_position("AAPL").quantity == 100
    assert state.cash_balance == pytest.approx(99_000.0)


class TestPersistence:
    def test_fills_are_persisted_and_restored(self):
        repo = SqliteRepository()
        state = PortfolioState(initial_cash=50_000.0, portfolio_id="p1", repository=repo)
        assert state.restore() is False

        state.apply_fill(make_fill("AAPL", "BUY", 10, 100.0, fees=1.0))
        state.set_exit_criteria("AAPL", [ExitCriterion(CriterionType.STOP_LOSS, 97.0, priority=1)])

        restored = PortfolioState(initial_cash=50_000.0, portfolio_id="p1", repository=repo)
        assert restored.restore() is True

        assert restored.cash_balance == pytest.approx(48_999.0)
        position = restored.get_position("AAPL")
        assert position.quantity == 10
        assert position.stop_loss == 97.0
        assert len(repo.list_trades_by_portfolio("p1")) == 1

    def test_snapshots_are_persisted(self):
        repo = SqliteRepository()
        state = PortfolioState(initial_cash=50_000.0, portfolio_id="p1", repository=repo)
        state.restore()

        state.snapshot_if_due(force=True)

        latest = repo.get_latest_snapshot("p1")
        assert latest is not None
        assert latest.total_value == pytest.approx(50_000.0)
