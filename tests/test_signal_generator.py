"""
Tests for the signal generator: screening, feasibility, advisory gating,
deterministic levels and sizing.
"""

import pytest

from ai.advisor import AdvisoryService
from ai.model_client import MockClient
from core.portfolio_state import Position
from infra.market_data import SimulatedMarketData
from strategy.signal_generator import (
    SignalGenerator,
    assess_feasibility,
    classify_trend,
    size_position,
)
from tests.helpers import make_position, make_snapshot


def _market(symbols=("AAPL",), price=150.0, **technicals):
    data = SimulatedMarketData(symbols=list(symbols), seed=1)
    values = dict(rsi=55.0, sma20=149.0, sma50=140.0, atr=3.0)
    values.update(technicals)
    for symbol in symbols:
        data.set_price(symbol, price)
        data.set_volume(symbol, 5_000_000)
        data.set_technicals(symbol, **values)
    return data


def _generator(market, client=None, **kwargs):
    advisory = AdvisoryService(client or MockClient(), timeout_s=kwargs.pop("advisory_timeout", 2.0))
    return SignalGenerator(market, advisory, **kwargs), advisory


class TestBuySignals:
    def test_clean_setup_produces_sized_signal(self, rule_set):
        generator, _ = _generator(_market())

        (signal,) = generator.generate_buy_signals(rule_set=rule_set, portfolio_value=100_000.0)

        assert signal.symbol == "AAPL"
        assert signal.action == "BUY"
        assert signal.confidence == pytest.approx(0.75)
        assert signal.entry_price == 150.0
        # Tightest of the 1.25 ATR stop (146.25) and the 5% stop (142.5)
        assert signal.stop_loss == pytest.approx(146.25)
        assert signal.profit_targets == [154.5, 157.5, 162.0]
        # Capped by the 10% position limit, not by the 2% risk budget
        assert signal.recommended_size == 66
        assert signal.technicals is not None

    def test_held_symbols_are_excluded(self, rule_set):
        generator, advisory = _generator(_market(("AAPL", "MSFT")))

        signals = generator.generate_buy_signals(rule_set=rule_set, portfolio_value=100_000.0, exclude={"AAPL"})

        assert [s.symbol for s in signals] == ["MSFT"]
        assert advisory.calls == 1

    def test_advisory_pass_yields_no_signal(self, rule_set):
        generator, _ = _generator(_market(rsi=80.0))

        assert generator.generate_buy_signals(rule_set=rule_set, portfolio_value=100_000.0) == []

    def test_low_confidence_is_dropped(self, rule_set):
        client = MockClient(fixed_response={"content": '{"action": "BUY", "confidence": 0.5, "reasoning": "meh"}'})
        generator, _ = _generator(_market(), client)

        assert generator.generate_buy_signals(rule_set=rule_set, portfolio_value=100_000.0) == []

    def test_infeasible_candidate_never_reaches_advisory(self, rule_set):
        client = MockClient()
        # ATR 0.2% of price is below the 0.5% minimum
        generator, _ = _generator(_market(atr=0.3), client)

        assert generator.generate_buy_signals(rule_set=rule_set, portfolio_value=100_000.0) == []
        assert client.calls == 0

    def test_price_outside_range_is_screened_out(self, rule_set):
        client = MockClient()
        generator, _ = _generator(_market(price=5.0, sma20=5.0, sma50=4.8, atr=0.1), client)

        assert generator.generate_buy_signals(rule_set=rule_set, portfolio_value=100_000.0) == []
        assert client.calls == 0

    def test_unavailable_symbol_is_skipped(self, rule_set, metrics):
        market = _market(("AAPL", "MSFT"))
        market.fail_symbols.add("AAPL")
        advisory = AdvisoryService(MockClient())
        generator = SignalGenerator(market, advisory, metrics=metrics)

        signals = generator.generate_buy_signals(rule_set=rule_set, portfolio_value=100_000.0)

        assert [s.symbol for s in signals] == ["MSFT"]
        assert metrics.failure_snapshot()["market_data:unavailable"] == 1

    def test_stale_quotes_yield_no_buy_signal(self, rule_set, metrics):
        market = _market(("AAPL", "MSFT"))
        market.set_data_age("AAPL", 16 * 60)
        client = MockClient()
        generator = SignalGenerator(market, AdvisoryService(client), metrics=metrics)

        signals = generator.generate_buy_signals(rule_set=rule_set, portfolio_value=100_000.0)

        assert [s.symbol for s in signals] == ["MSFT"]
        assert client.calls == 1
        assert metrics.failure_snapshot()["market_data:stale"] == 1

    def test_data_just_inside_freshness_window_is_used(self, rule_set):
        market = _market()
        market.set_data_age("AAPL", 14 * 60)
        generator, _ = _generator(market)

        assert len(generator.generate_buy_signals(rule_set=rule_set, portfolio_value=100_000.0)) == 1

    def test_advisory_timeout_degrades_to_no_signal(self, rule_set):
        generator, advisory = _generator(_market(), MockClient(delay_s=0.5), advisory_timeout=0.05)

        assert generator.generate_buy_signals(rule_set=rule_set, portfolio_value=100_000.0) == []
        assert advisory.failures == 1

    def test_candidate_cap(self, rule_set):
        client = MockClient()
        generator, _ = _generator(_market(("AAPL", "MSFT", "NVDA")), client, max_signals_per_cycle=2)

        signals = generator.generate_buy_signals(rule_set=rule_set, portfolio_value=100_000.0)

        assert len(signals) == 2
        assert client.calls == 2

    def test_cap_is_applied_before_feasibility(self, rule_set):
        market = _market(("AAPL", "MSFT"))
        # 10 ATRs above SMA20: AAPL takes the only slot and then fails feasibility
        market.set_technicals("AAPL", rsi=55.0, sma20=120.0, sma50=110.0, atr=3.0)
        client = MockClient()
        generator, _ = _generator(market, client, max_signals_per_cycle=1)

        assert generator.generate_buy_signals(rule_set=rule_set, portfolio_value=100_000.0) == []
        assert client.calls == 0

    def test_portfolio_value_is_required(self, rule_set):
        generator, _ = _generator(_market())

        with pytest.raises(ValueError):
            generator.generate_buy_signals(rule_set=rule_set)

    def test_no_long_entries_means_no_signals(self, guidelines_doc):
        from core.rules import validate_rule_set

        guidelines_doc["entry_signals"]["long_entries"] = []
        rules = validate_rule_set(guidelines_doc).rule_set
        client = MockClient()
        generator, _ = _generator(_market(), client)

        assert generator.generate_buy_signals(rule_set=rules, portfolio_value=100_000.0) == []
        assert client.calls == 0

    def test_rule_set_from_guidelines_store(self, rule_set):
        class Store:
            def get_current(self):
                return rule_set

        generator, _ = _generator(_market(), guidelines=Store())

        assert len(generator.generate_buy_signals(portfolio_value=100_000.0)) == 1


class TestSellSignals:
    def test_overbought_position_gets_full_size_sell(self, rule_set):
        generator, _ = _generator(_market(rsi=80.0))
        position = make_position("AAPL", quantity=25, entry=140.0)

        (signal,) = generator.generate_sell_signals([position], rule_set=rule_set)

        assert signal.action == "SELL"
        assert signal.recommended_size == 25
        assert signal.confidence == pytest.approx(0.8)
        assert signal.source == "generator"

    def test_stale_quotes_yield_no_sell_signal(self, rule_set):
        market = _market(rsi=80.0)
        market.set_data_age("AAPL", 20 * 60)
        client = MockClient()
        generator, _ = _generator(market, client)

        assert generator.generate_sell_signals([make_position("AAPL", quantity=25)], rule_set=rule_set) == []
        assert client.calls == 0

    def test_intact_trend_holds(self, rule_set):
        generator, _ = _generator(_market())

        assert generator.generate_sell_signals([make_position("AAPL", quantity=5)], rule_set=rule_set) == []

    def test_closed_positions_are_ignored(self, rule_set):
        client = MockClient()
        generator, _ = _generator(_market(rsi=80.0), client)
        closed = Position(symbol="AAPL", quantity=0, entry_price=100.0, current_price=100.0)

        assert generator.generate_sell_signals([closed], rule_set=rule_set) == []
        assert client.calls == 0


class TestHelpers:
    @pytest.mark.parametrize(
        "sma20,sma50,expected",
        [(105.0, 100.0, "UP"), (95.0, 100.0, "DOWN"), (101.0, 100.0, "SIDEWAYS"), (10.0, 0.0, "SIDEWAYS")],
    )
    def test_classify_trend(self, sma20, sma50, expected):
        assert classify_trend(sma20, sma50) == expected

    def test_size_position_takes_smaller_of_risk_and_cap(self, rule_set):
        # risk: 2000 / 10 = 200 shares; cap: 10000 / 100 = 100 shares
        assert size_position(100_000.0, 100.0, 90.0, rule_set) == 100
        # risk: 2000 / 50 = 40 shares
        assert size_position(100_000.0, 100.0, 50.0, rule_set) == 40

    def test_compute_levels_matches_exit_engine(self, rule_set):
        generator, _ = _generator(_market())

        stop, targets = generator.compute_levels("AAPL", 150.0, make_snapshot(price=150.0, atr=3.0), rule_set)

        assert stop == pytest.approx(146.25)
        assert targets == [154.5, 157.5, 162.0]

    def test_size_position_invalid_stop(self, rule_set):
        assert size_position(100_000.0, 100.0, 100.0, rule_set) == 0
        assert size_position(100_000.0, 100.0, 110.0, rule_set) == 0

    def test_feasibility_passes_clean_setup(self, rule_set):
        assessment = assess_feasibility(make_snapshot(price=100.0), rule_set)

        assert assessment.passed
        assert assessment.trend == "UP"
        assert assessment.reasons == []

    def test_feasibility_flags_overextension(self, rule_set):
        # 3 ATRs above SMA20
        assessment = assess_feasibility(make_snapshot(price=100.0, sma20=94.0, atr=2.0), rule_set)

        assert not assessment.passed
        assert not assessment.checks["extension"]

    def test_clear_trend_requirement(self, guidelines_doc):
        from core.rules import validate_rule_set

        guidelines_doc["stock_selection"]["technical_setup"]["require_clear_trend"] = True
        rules = validate_rule_set(guidelines_doc).rule_set

        assessment = assess_feasibility(make_snapshot(price=100.0, sma20=100.0, sma50=100.5), rules)

        assert assessment.trend == "SIDEWAYS"
        assert not assessment.checks["trend"]
