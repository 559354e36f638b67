"""
Test helpers for swingtrader tests.

Factories for the real market, signal and portfolio dataclasses. Use these
instead of Mock(spec=...) so tests catch API contract changes.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from core.portfolio_state import TRADE_EXECUTED, Portfolio, Position, Trade
from infra.market_data import MarketSnapshot, Quote, Technicals
from strategy.signals import Signal


def make_quote(
    symbol: str = "AAPL",
    price: float = 150.0,
    volume: float = 5_000_000,
    spread_pct: float = 0.1,
    age_seconds: int = 0,
) -> Quote:
    """
    Factory for quotes.

    Example:
        >>> fresh = make_quote(price=150)
        >>> stale = make_quote(age_seconds=600)
    """
    half = price * spread_pct / 100 / 2
    return Quote(
        symbol=symbol,
        price=price,
        volume=volume,
        bid=price - half,
        ask=price + half,
        timestamp=datetime.now(timezone.utc) - timedelta(seconds=age_seconds),
    )


def make_technicals(symbol: str = "AAPL", price: float = 150.0, age_seconds: int = 0, **overrides) -> Technicals:
    """Uptrending, moderately volatile defaults (ATR 2% of price, RSI 55)."""
    values = dict(
        rsi=55.0,
        macd=0.5,
        macd_signal=0.3,
        sma20=price * 0.99,
        sma50=price * 0.95,
        ema20=price * 0.995,
        atr=price * 0.02,
        vwap=price,
    )
    values.update(overrides)
    return Technicals(
        symbol=symbol,
        timestamp=datetime.now(timezone.utc) - timedelta(seconds=age_seconds),
        **values,
    )


def make_snapshot(
    symbol: str = "AAPL",
    price: float = 150.0,
    sector: Optional[str] = "Technology",
    age_seconds: int = 0,
    volume: float = 5_000_000,
    **technicals,
) -> MarketSnapshot:
    return MarketSnapshot(
        quote=make_quote(symbol, price, volume=volume, age_seconds=age_seconds),
        technicals=make_technicals(symbol, price, age_seconds=age_seconds, **technicals),
        sector=sector,
    )


def make_signal(
    symbol: str = "AAPL",
    action: str = "BUY",
    size: int = 50,
    price: float = 150.0,
    stop: float = 145.0,
    targets: Optional[List[float]] = None,
    confidence: float = 0.75,
) -> Signal:
    if targets is None:
        targets = [160.0, 170.0] if action == "BUY" else []
    return Signal(
        symbol=symbol,
        action=action,
        confidence=confidence,
        recommended_size=size,
        entry_price=price,
        stop_loss=stop,
        profit_targets=targets,
        reasoning="test signal",
    )


def make_position(
    symbol: str = "AAPL",
    quantity: int = 10,
    entry: float = 100.0,
    current: Optional[float] = None,
    sector: Optional[str] = None,
    entry_date: Optional[datetime] = None,
) -> Position:
    return Position(
        symbol=symbol,
        quantity=quantity,
        entry_price=entry,
        current_price=entry if current is None else current,
        sector=sector,
        entry_date=entry_date,
    )


def make_portfolio(
    cash: float = 100_000.0,
    positions: Optional[List[Position]] = None,
    initial_value: float = 100_000.0,
    day_start_value: Optional[float] = None,
) -> Portfolio:
    """Portfolio view; day_start_value defaults to the current total value."""
    positions = positions or []
    total = cash + sum(p.market_value for p in positions)
    return Portfolio(
        id="test",
        cash_balance=cash,
        initial_value=initial_value,
        day_start_value=total if day_start_value is None else day_start_value,
        positions=positions,
        timestamp=datetime.now(timezone.utc),
    )


def make_fill(
    symbol: str = "AAPL",
    action: str = "BUY",
    quantity: int = 10,
    price: float = 100.0,
    fees: float = 1.0,
    timestamp: Optional[datetime] = None,
) -> Trade:
    """Executed trade as returned by a broker."""
    return Trade(
        symbol=symbol,
        action=action,
        quantity=quantity,
        price=price,
        fees=fees,
        timestamp=timestamp,
        status=TRADE_EXECUTED,
    )


def quotes_by_symbol(snapshots: List[MarketSnapshot]) -> Dict[str, MarketSnapshot]:
    return {s.symbol: s for s in snapshots}
