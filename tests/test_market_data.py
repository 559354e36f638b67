"""
Tests for the simulated market data provider and freshness checks.
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.exceptions import CriticalDataUnavailable
from infra.market_data import MAX_DATA_AGE, SimulatedMarketData, is_fresh


def test_universe_and_sectors():
    data = SimulatedMarketData(symbols=["AAPL", "XYZ"], sectors={"XYZ": "Utilities"})

    assert data.symbols() == ["AAPL", "XYZ"]
    assert data.sector("AAPL") == "Technology"
    assert data.sector("XYZ") == "Utilities"


def test_default_universe_uses_base_prices():
    data = SimulatedMarketData(seed=1)

    assert set(data.symbols()) == set(SimulatedMarketData.BASE_PRICES)


def test_seeded_random_walk_is_reproducible():
    a = SimulatedMarketData(symbols=["AAPL"], seed=42)
    b = SimulatedMarketData(symbols=["AAPL"], seed=42)

    assert [a.quote("AAPL").price for _ in range(5)] == [b.quote("AAPL").price for _ in range(5)]


def test_pinned_price_does_not_move():
    data = SimulatedMarketData(symbols=["AAPL"], seed=1)
    data.set_price("AAPL", 123.45)

    assert {data.quote("AAPL").price for _ in range(3)} == {123.45}


def test_quote_spread_and_volume():
    data = SimulatedMarketData(symbols=["AAPL"], seed=1)
    data.set_volume("AAPL", 1_234_567)

    quote = data.quote("AAPL")

    assert quote.volume == 1_234_567
    assert quote.bid < quote.price < quote.ask
    assert quote.spread_pct == pytest.approx(SimulatedMarketData.SPREAD_PCT, rel=0.05)


def test_pinned_technicals_get_fresh_timestamps():
    data = SimulatedMarketData(symbols=["AAPL"], seed=1)
    data.set_technicals("AAPL", rsi=72.0, atr=4.0)

    technicals = data.technicals("AAPL")

    assert technicals.rsi == 72.0
    assert technicals.atr == 4.0
    assert is_fresh(technicals.timestamp)


def test_snapshot_combines_quote_technicals_and_sector():
    data = SimulatedMarketData(symbols=["NVDA"], seed=1)

    snapshot = data.snapshot("NVDA")

    assert snapshot.symbol == "NVDA"
    assert snapshot.sector == "Semiconductors"
    assert snapshot.timestamp <= snapshot.quote.timestamp


def test_failures_and_unknown_symbols():
    data = SimulatedMarketData(symbols=["AAPL"], seed=1)
    data.fail_symbols.add("AAPL")

    with pytest.raises(CriticalDataUnavailable):
        data.quote("AAPL")
    with pytest.raises(CriticalDataUnavailable):
        data.technicals("MSFT")


class TestFreshness:
    def test_recent_is_fresh(self):
        assert is_fresh(datetime.now(timezone.utc) - timedelta(minutes=1))

    def test_max_age_is_stale(self):
        now = datetime.now(timezone.utc)

        assert not is_fresh(now - MAX_DATA_AGE, now=now)

    def test_naive_timestamps_are_treated_as_utc(self):
        naive = datetime.now(timezone.utc).replace(tzinfo=None)

        assert is_fresh(naive)
