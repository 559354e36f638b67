"""Test helpers for the swingtrader test suite"""

from tests.helpers.market_stubs import (
    make_quote,
    make_technicals,
    make_snapshot,
    make_signal,
    make_position,
    make_portfolio,
    make_fill,
    quotes_by_symbol,
)

__all__ = [
    "make_quote",
    "make_technicals",
    "make_snapshot",
    "make_signal",
    "make_position",
    "make_portfolio",
    "make_fill",
    "quotes_by_symbol",
]
