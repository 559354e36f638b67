"""
Execution providers.

The orchestrator hands a PENDING Trade to submit() and gets the same trade
back filled (EXECUTED, with fill price and fees) or an ExecutionError.
"""

import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional

from core.exceptions import ExecutionError
from core.portfolio_state import TRADE_EXECUTED, Trade

logger = logging.getLogger(__name__)


class ExecutionProvider(ABC):
    """Anything that can fill a trade."""

    @abstractmethod
    def submit(self, trade: Trade) -> Trade:
        """
        Execute a trade.

        Returns:
            Filled copy of the trade (status EXECUTED)

        Raises:
            ExecutionError: If the provider could not fill it
        """

    def is_healthy(self) -> bool:
        return True


class PaperBroker(ExecutionProvider):
    """
    Simulated broker for paper trading.

    Fills at the requested price moved against the trader by slippage_pct
    (buys higher, sells lower), charges a flat fee per fill, sleeps for
    latency_ms and fails randomly at failure_rate.
    """

    def __init__(
        self,
        slippage_pct: float = 0.01,
        fee: float = 1.0,
        latency_ms: float = 0.0,
        failure_rate: float = 0.0,
        seed: Optional[int] = None,
    ):
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError(f"failure_rate must be in [0, 1], got {failure_rate}")
        self.slippage_pct = slippage_pct
        self.fee = fee
        self.latency_ms = latency_ms
        self.failure_rate = failure_rate
        self._rng = random.Random(seed)
        self._lock = threading.Lock()
        self.fills: List[Trade] = []
        self.failures = 0

    def submit(self, trade: Trade) -> Trade:
        if trade.quantity <= 0:
            raise ExecutionError(trade.symbol, f"invalid quantity {trade.quantity}")
        if trade.price <= 0:
            raise ExecutionError(trade.symbol, f"invalid price {trade.price}")
        if trade.action not in ("BUY", "SELL"):
            raise ExecutionError(trade.symbol, f"invalid action {trade.action}")

        if self.latency_ms:
            time.sleep(self.latency_ms / 1000.0)

        with self._lock:
            roll = self._rng.random()
        if roll < self.failure_rate:
            self.failures += 1
            logger.warning(f"Paper broker rejected {trade.action} {trade.quantity} {trade.symbol}")
            raise ExecutionError(trade.symbol, "simulated broker failure")

        slip = trade.price * self.slippage_pct / 100.0
        fill_price = trade.price + slip if trade.action == "BUY" else trade.price - slip

        filled = replace(
            trade,
            price=round(fill_price, 4),
            fees=self.fee,
            status=TRADE_EXECUTED,
            timestamp=datetime.now(timezone.utc),
        )
        with self._lock:
            self.fills.append(filled)

        logger.info(
            f"PAPER FILL: {filled.action} {filled.quantity} {filled.symbol} @ ${filled.price:.2f} "
            f"(requested ${trade.price:.2f}, fee ${filled.fees:.2f})"
        )
        return filled

    def is_healthy(self) -> bool:
        return self.failure_rate < 1.0
