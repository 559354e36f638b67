"""
Market data provider contract and a simulated provider.

The core only needs quotes, technical indicators and a sector lookup per
symbol; every payload carries a timestamp so stale data can be rejected.
"""

from __future__ import annotations

import logging
import random
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

from core.exceptions import CriticalDataUnavailable

logger = logging.getLogger(__name__)

MAX_DATA_AGE = timedelta(minutes=15)

DEFAULT_SECTORS: Dict[str, str] = {
    "AAPL": "Technology",
    "MSFT": "Technology",
    "GOOGL": "Technology",
    "AMZN": "Consumer Discretionary",
    "TSLA": "Consumer Discretionary",
    "JPM": "Financials",
    "BAC": "Financials",
    "JNJ": "Healthcare",
    "PFE": "Healthcare",
    "META": "Communication Services",
    "NFLX": "Communication Services",
    "NVDA": "Semiconductors",
    "AMD": "Semiconductors",
    "INTC": "Semiconductors",
    "MU": "Semiconductors",
    "QCOM": "Semiconductors",
    "TXN": "Semiconductors",
    "AVGO": "Semiconductors",
    "CRM": "Software",
    "ADBE": "Software",
    "ORCL": "Software",
    "IBM": "Software",
    "CSCO": "Networking",
    "PYPL": "Financials",
}


@dataclass
class Quote:
    symbol: str
    price: float
    volume: float
    bid: float
    ask: float
    timestamp: datetime

    @property
    def spread_pct(self) -> float:
        if self.price <= 0:
            return 0.0
        return (self.ask - self.bid) / self.price * 100


@dataclass
class Technicals:
    """Indicator snapshot for one symbol"""
    symbol: str
    rsi: float
    macd: float
    macd_signal: float
    sma20: float
    sma50: float
    ema20: float
    atr: float
    vwap: float
    timestamp: datetime

    def to_dict(self) -> Dict[str, float]:
        return {
            "rsi": round(self.rsi, 2),
            "macd": round(self.macd, 4),
            "macd_signal": round(self.macd_signal, 4),
            "sma20": round(self.sma20, 2),
            "sma50": round(self.sma50, 2),
            "ema20": round(self.ema20, 2),
            "atr": round(self.atr, 4),
            "vwap": round(self.vwap, 2),
        }


@dataclass
class MarketSnapshot:
    quote: Quote
    technicals: Technicals
    sector: Optional[str] = None

    @property
    def symbol(self) -> str:
        return self.quote.symbol

    @property
    def price(self) -> float:
        return self.quote.price

    @property
    def timestamp(self) -> datetime:
        return min(self.quote.timestamp, self.technicals.timestamp)


def is_fresh(timestamp: datetime, now: Optional[datetime] = None, max_age: timedelta = MAX_DATA_AGE) -> bool:
    """Data is stale once it is max_age old or older."""
    now = now or datetime.now(timezone.utc)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return (now - timestamp) < max_age


class MarketDataProvider(ABC):
    """Market data collaborator; implementations may be slow or fail."""

    @abstractmethod
    def quote(self, symbol: str) -> Quote:
        ...

    @abstractmethod
    def technicals(self, symbol: str) -> Technicals:
        ...

    def sector(self, symbol: str) -> Optional[str]:
        return DEFAULT_SECTORS.get(symbol)

    def symbols(self) -> List[str]:
        return []

    def snapshot(self, symbol: str) -> MarketSnapshot:
        return MarketSnapshot(
            quote=self.quote(symbol),
            technicals=self.technicals(symbol),
            sector=self.sector(symbol),
        )

    def is_healthy(self) -> bool:
        return True


class SimulatedMarketData(MarketDataProvider):
    """
    Random-walk quotes around fixed base prices.

    Used for paper trading and tests. Prices and indicators can be pinned
    per symbol with set_price() / set_technicals(), set_data_age() backdates
    a symbol to simulate a lagging feed, and symbols listed in fail_symbols
    raise CriticalDataUnavailable.
    """

    BASE_PRICES: Dict[str, float] = {
        "AAPL": 175.0,
        "MSFT": 380.0,
        "GOOGL": 140.0,
        "AMZN": 155.0,
        "TSLA": 250.0,
        "META": 320.0,
        "NVDA": 480.0,
        "NFLX": 450.0,
        "AMD": 110.0,
        "CRM": 220.0,
        "ADBE": 580.0,
        "PYPL": 65.0,
        "INTC": 45.0,
        "CSCO": 50.0,
        "ORCL": 115.0,
        "IBM": 140.0,
        "QCOM": 160.0,
        "TXN": 180.0,
        "AVGO": 920.0,
        "MU": 85.0,
    }
    SPREAD_PCT = 0.1

    def __init__(
        self,
        symbols: Optional[Iterable[str]] = None,
        seed: Optional[int] = None,
        volatility: float = 0.005,
        sectors: Optional[Dict[str, str]] = None,
    ):
        self._rng = random.Random(seed)
        self._lock = threading.Lock()
        self._volatility = volatility
        self._sectors = dict(DEFAULT_SECTORS)
        if sectors:
            self._sectors.update(sectors)

        universe = list(symbols) if symbols else list(self.BASE_PRICES)
        self._prices: Dict[str, float] = {
            s: self.BASE_PRICES.get(s, 100.0) for s in universe
        }
        self._pinned: Set[str] = set()
        self._technicals: Dict[str, Technicals] = {}
        self._volumes: Dict[str, float] = {}
        self._ages: Dict[str, timedelta] = {}
        self.fail_symbols: Set[str] = set()
        self.call_count = 0

    def symbols(self) -> List[str]:
        return list(self._prices)

    def sector(self, symbol: str) -> Optional[str]:
        return self._sectors.get(symbol)

    def set_price(self, symbol: str, price: float) -> None:
        with self._lock:
            self._prices[symbol] = float(price)
            self._pinned.add(symbol)

    def set_volume(self, symbol: str, volume: float) -> None:
        with self._lock:
            self._volumes[symbol] = float(volume)

    def set_technicals(self, symbol: str, **values: float) -> Technicals:
        """Pin indicator values for a symbol; unspecified fields keep their generated value."""
        base = self._generate_technicals(symbol)
        pinned = replace(base, **values)
        with self._lock:
            self._technicals[symbol] = pinned
        return pinned

    def set_data_age(self, symbol: str, seconds: float) -> None:
        """Backdate quotes and indicators for a symbol, as a lagging feed would."""
        with self._lock:
            self._ages[symbol] = timedelta(seconds=seconds)

    def _stamp(self, symbol: str) -> datetime:
        with self._lock:
            age = self._ages.get(symbol, timedelta(0))
        return datetime.now(timezone.utc) - age

    def _check_available(self, symbol: str) -> None:
        if symbol in self.fail_symbols:
            raise CriticalDataUnavailable(f"market_data:{symbol}")
        if symbol not in self._prices:
            raise CriticalDataUnavailable(f"market_data:{symbol}:unknown_symbol")

    def _next_price(self, symbol: str) -> float:
        with self._lock:
            price = self._prices[symbol]
            if symbol not in self._pinned:
                price = max(0.01, price * (1 + self._rng.gauss(0, self._volatility)))
                self._prices[symbol] = price
            return price

    def quote(self, symbol: str) -> Quote:
        self.call_count += 1
        self._check_available(symbol)
        price = self._next_price(symbol)
        half_spread = price * self.SPREAD_PCT / 100 / 2
        with self._lock:
            volume = self._volumes.get(symbol)
            if volume is None:
                volume = float(self._rng.randint(2_000_000, 50_000_000))
        return Quote(
            symbol=symbol,
            price=round(price, 2),
            volume=volume,
            bid=round(price - half_spread, 4),
            ask=round(price + half_spread, 4),
            timestamp=self._stamp(symbol),
        )

    def technicals(self, symbol: str) -> Technicals:
        self.call_count += 1
        self._check_available(symbol)
        with self._lock:
            pinned = self._technicals.get(symbol)
        if pinned is not None:
            return replace(pinned, timestamp=self._stamp(symbol))
        return replace(self._generate_technicals(symbol), timestamp=self._stamp(symbol))

    def _generate_technicals(self, symbol: str) -> Technicals:
        with self._lock:
            price = self._prices.get(symbol, 100.0)
            base = self.BASE_PRICES.get(symbol, price)
            rng = self._rng
            macd = rng.uniform(-2.0, 2.0)
            return Technicals(
                symbol=symbol,
                rsi=rng.uniform(30, 70),
                macd=macd,
                macd_signal=macd + rng.uniform(-0.5, 0.5),
                sma20=price * (1 + rng.uniform(-0.02, 0.02)),
                sma50=price * (1 + rng.uniform(-0.05, 0.05)),
                ema20=price * (1 + rng.uniform(-0.015, 0.015)),
                atr=base * rng.uniform(0.01, 0.03),
                vwap=price * (1 + rng.uniform(-0.005, 0.005)),
                timestamp=datetime.now(timezone.utc),
            )


__all__ = [
    "Quote",
    "Technicals",
    "MarketSnapshot",
    "MarketDataProvider",
    "SimulatedMarketData",
    "is_fresh",
    "MAX_DATA_AGE",
    "DEFAULT_SECTORS",
]
