"""
swingtrader Core: Portfolio State

Authoritative record of cash, positions and P&L for one engine instance.

All mutations go through PortfolioState under a single lock; every other
component works on Portfolio snapshots. Metrics are a pure projection over
cash and positions, so they can always be re-derived from that state.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from core.exceptions import InsufficientFundsError, PortfolioError
from core.exit_criteria import CriterionType, ExitCriterion, fallback_stop

logger = logging.getLogger(__name__)

TRADE_PENDING = "PENDING"
TRADE_EXECUTED = "EXECUTED"
TRADE_FAILED = "FAILED"


@dataclass
class Trade:
    """Order sent to (or returned by) the execution provider"""
    symbol: str
    action: str  # BUY / SELL
    quantity: int
    price: float
    fees: float = 0.0
    timestamp: Optional[datetime] = None
    reasoning: str = ""
    signal_id: Optional[str] = None
    status: str = TRADE_PENDING
    realized_pnl: Optional[float] = None
    error: Optional[str] = None
    id: Optional[str] = None

    def __post_init__(self):
        if self.id is None:
            self.id = uuid4().hex
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)

    @property
    def notional(self) -> float:
        return self.quantity * self.price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "action": self.action,
            "quantity": self.quantity,
            "price": round(self.price, 4),
            "fees": round(self.fees, 4),
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "status": self.status,
            "signal_id": self.signal_id,
            "realized_pnl": self.realized_pnl,
            "reasoning": self.reasoning,
            "error": self.error,
        }


@dataclass
class Position:
    """Holding in one symbol; entry_price is the volume-weighted average"""
    symbol: str
    quantity: int
    entry_price: float
    current_price: float
    entry_date: Optional[datetime] = None
    sector: Optional[str] = None
    realized_pnl: float = 0.0
    exit_criteria: List[ExitCriterion] = field(default_factory=list)
    closed_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    id: Optional[str] = None

    def __post_init__(self):
        if self.id is None:
            self.id = uuid4().hex
        if self.entry_date is None:
            self.entry_date = datetime.now(timezone.utc)
        if self.last_updated is None:
            self.last_updated = self.entry_date

    @property
    def is_open(self) -> bool:
        return self.quantity > 0

    @property
    def market_value(self) -> float:
        return self.quantity * self.current_price

    @property
    def cost_basis(self) -> float:
        return self.quantity * self.entry_price

    @property
    def unrealized_pnl(self) -> float:
        return (self.current_price - self.entry_price) * self.quantity

    @property
    def unrealized_pnl_pct(self) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (self.current_price - self.entry_price) / self.entry_price * 100

    @property
    def stop_loss(self) -> Optional[float]:
        """Tightest active stop"""
        stops = [c.value for c in self.exit_criteria if c.is_active and c.type == CriterionType.STOP_LOSS]
        return max(stops) if stops else None

    @property
    def profit_targets(self) -> List[float]:
        return sorted(
            c.value for c in self.exit_criteria
            if c.is_active and c.type == CriterionType.PROFIT_TARGET
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "quantity": self.quantity,
            "entry_price": round(self.entry_price, 4),
            "current_price": round(self.current_price, 4),
            "market_value": round(self.market_value, 2),
            "unrealized_pnl": round(self.unrealized_pnl, 2),
            "realized_pnl": round(self.realized_pnl, 2),
            "sector": self.sector,
            "entry_date": self.entry_date.isoformat() if self.entry_date else None,
            "stop_loss": self.stop_loss,
            "profit_targets": self.profit_targets,
            "exit_criteria": [c.to_dict() for c in self.exit_criteria],
        }


@dataclass
class Portfolio:
    """Read-only point-in-time view handed to risk and exit checks"""
    id: str
    cash_balance: float
    initial_value: float
    day_start_value: float
    positions: List[Position]
    timestamp: datetime

    @property
    def positions_value(self) -> float:
        return sum(p.market_value for p in self.positions)

    @property
    def total_value(self) -> float:
        return self.cash_balance + self.positions_value

    @property
    def daily_pnl(self) -> float:
        return self.total_value - self.day_start_value

    @property
    def total_pnl(self) -> float:
        return self.total_value - self.initial_value

    @property
    def open_position_count(self) -> int:
        return sum(1 for p in self.positions if p.is_open)

    def position(self, symbol: str) -> Optional[Position]:
        for p in self.positions:
            if p.symbol == symbol and p.is_open:
                return p
        return None

    def sector_exposure(self) -> Dict[str, float]:
        """Market value per sector as % of total value"""
        total = self.total_value
        exposure: Dict[str, float] = {}
        if total <= 0:
            return exposure
        for p in self.positions:
            if not p.is_open:
                continue
            sector = p.sector or "Unknown"
            exposure[sector] = exposure.get(sector, 0.0) + p.market_value / total * 100
        return exposure


@dataclass
class PortfolioMetrics:
    total_value: float
    cash_balance: float
    cash_pct: float
    positions_value: float
    position_count: int
    unrealized_pnl: float
    realized_pnl: float
    total_pnl: float
    total_pnl_pct: float
    daily_pnl: float
    daily_pnl_pct: float
    sector_exposure: Dict[str, float]
    largest_position: Optional[Tuple[str, float]] = None
    largest_position_pct: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_value": round(self.total_value, 2),
            "cash_balance": round(self.cash_balance, 2),
            "cash_pct": round(self.cash_pct, 2),
            "positions_value": round(self.positions_value, 2),
            "position_count": self.position_count,
            "unrealized_pnl": round(self.unrealized_pnl, 2),
            "realized_pnl": round(self.realized_pnl, 2),
            "total_pnl": round(self.total_pnl, 2),
            "total_pnl_pct": round(self.total_pnl_pct, 3),
            "daily_pnl": round(self.daily_pnl, 2),
            "daily_pnl_pct": round(self.daily_pnl_pct, 3),
            "sector_exposure": {k: round(v, 2) for k, v in self.sector_exposure.items()},
            "largest_position": (
                {"symbol": self.largest_position[0], "value": round(self.largest_position[1], 2)}
                if self.largest_position else None
            ),
            "largest_position_pct": round(self.largest_position_pct, 2),
        }


@dataclass
class PortfolioSnapshot:
    portfolio_id: str
    timestamp: datetime
    total_value: float
    cash_balance: float
    position_count: int
    daily_pnl: float
    total_pnl: float
    positions: List[Dict[str, Any]] = field(default_factory=list)
    id: Optional[str] = None

    def __post_init__(self):
        if self.id is None:
            self.id = uuid4().hex


def compute_metrics(portfolio: Portfolio, realized_pnl: float = 0.0) -> PortfolioMetrics:
    """Pure projection over a portfolio snapshot"""
    total = portfolio.total_value
    open_positions = [p for p in portfolio.positions if p.is_open]

    largest = None
    if open_positions:
        top = max(open_positions, key=lambda p: p.market_value)
        largest = (top.symbol, top.market_value)

    def pct(value: float, base: float) -> float:
        return value / base * 100 if base > 0 else 0.0

    return PortfolioMetrics(
        total_value=total,
        cash_balance=portfolio.cash_balance,
        cash_pct=pct(portfolio.cash_balance, total),
        positions_value=portfolio.positions_value,
        position_count=len(open_positions),
        unrealized_pnl=sum(p.unrealized_pnl for p in open_positions),
        realized_pnl=realized_pnl,
        total_pnl=portfolio.total_pnl,
        total_pnl_pct=pct(portfolio.total_pnl, portfolio.initial_value),
        daily_pnl=portfolio.daily_pnl,
        daily_pnl_pct=pct(portfolio.daily_pnl, portfolio.day_start_value),
        sector_exposure=portfolio.sector_exposure(),
        largest_position=largest,
        largest_position_pct=pct(largest[1], total) if largest else 0.0,
    )


class PortfolioState:
    """
    Single writer for cash and positions.

    Responsibilities:
    - Apply executed fills (average-cost BUY, realized-P&L SELL)
    - Keep every open position protected by at least one stop
    - Hand out deep-copied snapshots to readers
    - Persist trades/positions and interval snapshots via the repository
    """

    def __init__(
        self,
        initial_cash: float = 100_000.0,
        portfolio_id: str = "default",
        repository=None,
        snapshot_interval_minutes: float = 60.0,
        sector_lookup: Optional[Callable[[str], Optional[str]]] = None,
    ):
        if initial_cash <= 0:
            raise ValueError(f"initial_cash must be positive, got {initial_cash}")

        self.portfolio_id = portfolio_id
        self.initial_cash = float(initial_cash)
        self.repository = repository
        self.snapshot_interval = timedelta(minutes=snapshot_interval_minutes)
        self.sector_lookup = sector_lookup

        self._lock = threading.RLock()
        self._cash = float(initial_cash)
        self._positions: Dict[str, Position] = {}
        self._closed: List[Position] = []
        self._trades: List[Trade] = []
        self._day: date = datetime.now().date()
        self._day_start_value = float(initial_cash)
        self._last_snapshot_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def restore(self) -> bool:
        """
        Load cash and open positions from the repository.

        Returns:
            True if a stored portfolio was found, False if a new one was created
        """
        if self.repository is None:
            return False
        with self._lock:
            record = self.repository.get_portfolio(self.portfolio_id)
            if record is None:
                self.repository.create_portfolio(self.portfolio_id, self._portfolio_record())
                logger.info(f"Created portfolio '{self.portfolio_id}' with ${self.initial_cash:,.2f}")
                return False

            self._cash = float(record["cash_balance"])
            self.initial_cash = float(record.get("initial_cash") or self.initial_cash)
            self._positions = {
                p.symbol: p
                for p in self.repository.list_positions_by_portfolio(self.portfolio_id, open_only=True)
            }
            for position in self._positions.values():
                self._ensure_stop(position)
            self._day_start_value = self._total_value()
            logger.info(
                f"Restored portfolio '{self.portfolio_id}': cash=${self._cash:,.2f}, "
                f"{len(self._positions)} open position(s)"
            )
            return True

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    @property
    def cash_balance(self) -> float:
        with self._lock:
            return self._cash

    def snapshot(self) -> Portfolio:
        with self._lock:
            return Portfolio(
                id=self.portfolio_id,
                cash_balance=self._cash,
                initial_value=self.initial_cash,
                day_start_value=self._day_start_value,
                positions=[copy.deepcopy(p) for p in self._positions.values()],
                timestamp=datetime.now(timezone.utc),
            )

    def get_positions(self) -> List[Position]:
        return self.snapshot().positions

    def get_position(self, symbol: str) -> Optional[Position]:
        with self._lock:
            position = self._positions.get(symbol)
            return copy.deepcopy(position) if position else None

    def get_closed_positions(self) -> List[Position]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._closed]

    def get_trades(self) -> List[Trade]:
        with self._lock:
            return list(self._trades)

    def realized_pnl(self) -> float:
        with self._lock:
            return sum(p.realized_pnl for p in self._positions.values()) + sum(
                p.realized_pnl for p in self._closed
            )

    def get_metrics(self) -> PortfolioMetrics:
        with self._lock:
            return compute_metrics(self.snapshot(), realized_pnl=self.realized_pnl())

    def get_performance_stats(self):
        from analytics.performance_report import compute_performance_stats

        return compute_performance_stats(self.get_trades())

    def _total_value(self) -> float:
        return self._cash + sum(p.market_value for p in self._positions.values())

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def apply_fill(self, trade: Trade) -> Position:
        """
        Apply an executed trade.

        Args:
            trade: Trade with status EXECUTED, fill price and fees

        Returns:
            Copy of the affected position after the fill

        Raises:
            InsufficientFundsError: BUY cost exceeds available cash
            PortfolioError: trade not executed, bad quantity, or SELL larger
                than the position
        """
        if trade.status != TRADE_EXECUTED:
            raise PortfolioError(f"Cannot apply {trade.status} trade {trade.id} for {trade.symbol}")
        if trade.quantity <= 0 or trade.price <= 0:
            raise PortfolioError(f"Invalid fill for {trade.symbol}: qty={trade.quantity} price={trade.price}")

        with self._lock:
            self._roll_day(trade.timestamp)
            if trade.action == "BUY":
                position = self._apply_buy(trade)
            elif trade.action == "SELL":
                position = self._apply_sell(trade)
            else:
                raise PortfolioError(f"Unknown trade action: {trade.action}")

            self._trades.append(trade)
            self._persist_fill(trade, position)
            return copy.deepcopy(position)

    def _apply_buy(self, trade: Trade) -> Position:
        cost = trade.quantity * trade.price + trade.fees
        if cost > self._cash + 1e-9:
            raise InsufficientFundsError(trade.symbol, cost, self._cash)

        self._cash -= cost
        position = self._positions.get(trade.symbol)
        if position is None:
            sector = self.sector_lookup(trade.symbol) if self.sector_lookup else None
            position = Position(
                symbol=trade.symbol,
                quantity=trade.quantity,
                entry_price=trade.price,
                current_price=trade.price,
                entry_date=trade.timestamp,
                sector=sector,
            )
            self._positions[trade.symbol] = position
            logger.info(f"Opened {trade.symbol}: {trade.quantity} @ ${trade.price:.2f} (fees ${trade.fees:.2f})")
        else:
            new_quantity = position.quantity + trade.quantity
            position.entry_price = (
                position.quantity * position.entry_price + trade.quantity * trade.price
            ) / new_quantity
            position.quantity = new_quantity
            position.current_price = trade.price
            logger.info(
                f"Added to {trade.symbol}: +{trade.quantity} @ ${trade.price:.2f}, "
                f"now {new_quantity} @ avg ${position.entry_price:.2f}"
            )

        position.last_updated = trade.timestamp
        self._ensure_stop(position)
        return position

    def _apply_sell(self, trade: Trade) -> Position:
        position = self._positions.get(trade.symbol)
        if position is None:
            raise PortfolioError(f"No open position in {trade.symbol} to sell")
        if trade.quantity > position.quantity:
            raise PortfolioError(
                f"Cannot sell {trade.quantity} {trade.symbol}, only {position.quantity} held"
            )

        realized = (trade.price - position.entry_price) * trade.quantity - trade.fees
        self._cash += trade.quantity * trade.price - trade.fees
        position.quantity -= trade.quantity
        position.realized_pnl += realized
        position.current_price = trade.price
        position.last_updated = trade.timestamp
        trade.realized_pnl = realized

        if position.quantity == 0:
            for criterion in position.exit_criteria:
                criterion.is_active = False
            position.closed_at = trade.timestamp
            self._closed.append(position)
            del self._positions[trade.symbol]
            logger.info(f"Closed {trade.symbol} @ ${trade.price:.2f}, realized ${realized:+.2f}")
        else:
            logger.info(
                f"Reduced {trade.symbol} by {trade.quantity} @ ${trade.price:.2f}, "
                f"realized ${realized:+.2f}, {position.quantity} remaining"
            )
        return position

    def _ensure_stop(self, position: Position) -> None:
        if position.quantity > 0 and position.stop_loss is None:
            position.exit_criteria.append(fallback_stop(position.entry_price))

    def set_exit_criteria(self, symbol: str, criteria: List[ExitCriterion]) -> None:
        """Replace a position's criteria; a fallback stop is added if none is present."""
        with self._lock:
            position = self._positions.get(symbol)
            if position is None:
                raise PortfolioError(f"No open position in {symbol}")
            position.exit_criteria = list(criteria)
            self._ensure_stop(position)
            self._persist_position(position)

    def update_prices(self, prices: Dict[str, float]) -> None:
        with self._lock:
            now = datetime.now(timezone.utc)
            for symbol, price in prices.items():
                position = self._positions.get(symbol)
                if position is not None and price and price > 0:
                    position.current_price = float(price)
                    position.last_updated = now

    def _roll_day(self, now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        today = now.astimezone().date()
        if today != self._day:
            self._day = today
            self._day_start_value = self._total_value()
            logger.info(f"New trading day {today}: day start value ${self._day_start_value:,.2f}")

    def reset_daily(self, now: Optional[datetime] = None) -> None:
        with self._lock:
            self._roll_day(now)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _portfolio_record(self) -> Dict[str, Any]:
        with self._lock:
            total = self._total_value()
            return {
                "cash_balance": self._cash,
                "initial_cash": self.initial_cash,
                "total_value": total,
                "daily_pnl": total - self._day_start_value,
                "total_pnl": total - self.initial_cash,
            }

    def _persist_fill(self, trade: Trade, position: Position) -> None:
        if self.repository is None:
            return
        try:
            self.repository.create_trade(self.portfolio_id, trade)
            self.repository.upsert_position(self.portfolio_id, position)
            self.repository.update_portfolio(self.portfolio_id, self._portfolio_record())
        except Exception as e:
            logger.error(f"Failed to persist fill {trade.id} ({trade.symbol}): {e}", exc_info=True)

    def _persist_position(self, position: Position) -> None:
        if self.repository is None:
            return
        try:
            self.repository.upsert_position(self.portfolio_id, position)
        except Exception as e:
            logger.error(f"Failed to persist position {position.symbol}: {e}")

    def snapshot_if_due(self, now: Optional[datetime] = None, force: bool = False) -> Optional[PortfolioSnapshot]:
        """Persist a point-in-time snapshot when the interval has elapsed."""
        now = now or datetime.now(timezone.utc)
        with self._lock:
            if not force and self._last_snapshot_at is not None:
                if now - self._last_snapshot_at < self.snapshot_interval:
                    return None

            portfolio = self.snapshot()
            snap = PortfolioSnapshot(
                portfolio_id=self.portfolio_id,
                timestamp=now,
                total_value=portfolio.total_value,
                cash_balance=portfolio.cash_balance,
                position_count=portfolio.open_position_count,
                daily_pnl=portfolio.daily_pnl,
                total_pnl=portfolio.total_pnl,
                positions=[p.to_dict() for p in portfolio.positions],
            )
            self._last_snapshot_at = now

        if self.repository is not None:
            try:
                self.repository.create_snapshot(snap)
                self.repository.update_portfolio(self.portfolio_id, self._portfolio_record())
            except Exception as e:
                logger.error(f"Failed to persist portfolio snapshot: {e}")
        logger.debug(f"Portfolio snapshot: value=${snap.total_value:,.2f}, positions={snap.position_count}")
        return snap


__all__ = [
    "Trade",
    "Position",
    "Portfolio",
    "PortfolioMetrics",
    "PortfolioSnapshot",
    "PortfolioState",
    "compute_metrics",
    "TRADE_PENDING",
    "TRADE_EXECUTED",
    "TRADE_FAILED",
]
