import pytest

from core.exceptions import ExecutionError
from core.portfolio_state import TRADE_EXECUTED, TRADE_PENDING, Trade
from infra.broker import PaperBroker


def _trade(action="BUY", quantity=10, price=100.0):
    return Trade(symbol="AAPL", action=action, quantity=quantity, price=price)


def test_buy_fills_above_requested_price():
    broker = PaperBroker(slippage_pct=0.1, fee=2.5)
    trade = _trade()

    filled = broker.submit(trade)

    assert filled.status == TRADE_EXECUTED
    assert filled.price == pytest.approx(100.1)
    assert filled.fees == 2.5
    assert filled.id == trade.id
    assert trade.status == TRADE_PENDING
    assert broker.fills == [filled]


def test_sell_fills_below_requested_price():
    filled = PaperBroker(slippage_pct=0.1).submit(_trade("SELL"))

    assert filled.price == pytest.approx(99.9)


@pytest.mark.parametrize(
    "trade",
    [_trade(quantity=0), _trade(price=0.0), _trade(action="HOLD")],
)
def test_invalid_orders_are_rejected(trade):
    with pytest.raises(ExecutionError):
        PaperBroker().submit(trade)


def test_simulated_failures():
    broker = PaperBroker(failure_rate=1.0)

    with pytest.raises(ExecutionError, match="simulated broker failure"):
        broker.submit(_trade())

    assert broker.failures == 1
    assert not broker.is_healthy()


def test_failure_rate_bounds():
    with pytest.raises(ValueError):
        PaperBroker(failure_rate=1.5)
