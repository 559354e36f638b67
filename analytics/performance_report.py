"""
swingtrader Analytics: Performance Stats & Reports

Round-trip performance computed from the executed trade history.

Buys and sells are paired FIFO per symbol: every SELL consumes the oldest
open BUY lots first and closes one round trip whose P&L is

    sum((sell_price - lot_price) * lot_qty) - sell_fees - consumed share of buy fees

A round trip with P&L > 0 is a win; anything else counts as a loss.
"""

import logging
from collections import defaultdict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class RoundTrip:
    symbol: str
    quantity: int
    entry_price: float  # quantity-weighted over the consumed lots
    exit_price: float
    fees: float
    pnl: float
    opened_at: Optional[datetime]
    closed_at: Optional[datetime]


@dataclass
class PerformanceStats:
    """Summary of closed round trips"""
    total_trades: int = 0          # executed fills, buys and sells
    round_trips: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0          # percent
    average_win: float = 0.0
    average_loss: float = 0.0      # positive magnitude
    profit_factor: float = 0.0     # gross wins / gross losses (0 without losses)
    largest_win: float = 0.0
    largest_loss: float = 0.0      # most negative round trip
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    total_fees: float = 0.0
    total_realized_pnl: float = 0.0
    pnl_by_symbol: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class _Lot:
    quantity: int
    price: float
    fee_per_share: float
    opened_at: Optional[datetime]


def pair_round_trips(trades: Iterable) -> List[RoundTrip]:
    """FIFO-pair executed trades into closed round trips, ordered by close time."""
    executed = [t for t in trades if getattr(t, "status", "EXECUTED") == "EXECUTED"]
    executed.sort(key=lambda t: t.timestamp or datetime.min)

    lots: Dict[str, Deque[_Lot]] = defaultdict(deque)
    trips: List[RoundTrip] = []

    for trade in executed:
        if trade.quantity <= 0:
            continue
        if trade.action == "BUY":
            lots[trade.symbol].append(_Lot(
                quantity=trade.quantity,
                price=trade.price,
                fee_per_share=trade.fees / trade.quantity,
                opened_at=trade.timestamp,
            ))
            continue

        queue = lots[trade.symbol]
        remaining = trade.quantity
        matched = 0
        cost = 0.0
        buy_fees = 0.0
        opened_at = queue[0].opened_at if queue else None
        while remaining > 0 and queue:
            lot = queue[0]
            take = min(remaining, lot.quantity)
            cost += take * lot.price
            buy_fees += take * lot.fee_per_share
            matched += take
            remaining -= take
            lot.quantity -= take
            if lot.quantity == 0:
                queue.popleft()

        if matched == 0:
            logger.warning(f"SELL {trade.quantity} {trade.symbol} has no matching BUY lots, ignored")
            continue
        if remaining > 0:
            logger.warning(f"SELL {trade.symbol} exceeds open lots by {remaining} shares; pairing {matched}")

        sell_fees = trade.fees * matched / trade.quantity
        fees = buy_fees + sell_fees
        trips.append(RoundTrip(
            symbol=trade.symbol,
            quantity=matched,
            entry_price=cost / matched,
            exit_price=trade.price,
            fees=fees,
            pnl=trade.price * matched - cost - fees,
            opened_at=opened_at,
            closed_at=trade.timestamp,
        ))

    return trips


def _max_streak(pnls: List[float], winning: bool) -> int:
    best = current = 0
    for pnl in pnls:
        if (pnl > 0) == winning:
            current += 1
            best = max(best, current)
        else:
            current = 0
    return best


def compute_performance_stats(trades: Iterable) -> PerformanceStats:
    """Build PerformanceStats from a trade history (Trade objects)."""
    trades = list(trades)
    executed = [t for t in trades if getattr(t, "status", "EXECUTED") == "EXECUTED"]
    trips = pair_round_trips(executed)

    pnls = [t.pnl for t in trips]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p <= 0]
    gross_win = sum(wins)
    gross_loss = abs(sum(losses))

    by_symbol: Dict[str, float] = defaultdict(float)
    for trip in trips:
        by_symbol[trip.symbol] += trip.pnl

    return PerformanceStats(
        total_trades=len(executed),
        round_trips=len(trips),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / len(trips) * 100 if trips else 0.0,
        average_win=gross_win / len(wins) if wins else 0.0,
        average_loss=gross_loss / len(losses) if losses else 0.0,
        profit_factor=gross_win / gross_loss if gross_loss > 0 else 0.0,
        largest_win=max(wins) if wins else 0.0,
        largest_loss=min(losses) if losses else 0.0,
        max_consecutive_wins=_max_streak(pnls, winning=True),
        max_consecutive_losses=_max_streak(pnls, winning=False),
        total_fees=sum(t.fees for t in executed),
        total_realized_pnl=sum(pnls),
        pnl_by_symbol=dict(by_symbol),
    )


def format_report(stats: PerformanceStats, title: str = "Performance Report") -> str:
    """Format stats as a Markdown summary"""
    md = f"# {title}\n\n"

    md += "## Returns\n\n"
    md += f"- **Realized PnL:** ${stats.total_realized_pnl:.2f}\n"
    md += f"- **Total Fees:** ${stats.total_fees:.2f}\n"
    md += f"- **Fills:** {stats.total_trades} ({stats.round_trips} round trips)\n\n"

    md += "## Win/Loss Analysis\n\n"
    md += f"- **Win Rate:** {stats.win_rate:.1f}% ({stats.winning_trades}W / {stats.losing_trades}L)\n"
    md += f"- **Avg Win:** ${stats.average_win:.2f}\n"
    md += f"- **Avg Loss:** ${stats.average_loss:.2f}\n"
    md += f"- **Profit Factor:** {stats.profit_factor:.2f}\n"
    md += f"- **Largest Win:** ${stats.largest_win:.2f}\n"
    md += f"- **Largest Loss:** ${stats.largest_loss:.2f}\n"
    md += f"- **Max Consecutive Wins:** {stats.max_consecutive_wins}\n"
    md += f"- **Max Consecutive Losses:** {stats.max_consecutive_losses}\n\n"

    if stats.pnl_by_symbol:
        md += "## PnL by Symbol (Top 10)\n\n"
        top = sorted(stats.pnl_by_symbol.items(), key=lambda x: x[1], reverse=True)[:10]
        for symbol, pnl in top:
            md += f"- **{symbol}:** ${pnl:.2f}\n"
        md += "\n"

    return md


if __name__ == "__main__":
    import argparse

    from infra.repository import SqliteRepository

    parser = argparse.ArgumentParser(description="Print a performance report from the trade database")
    parser.add_argument("--db", default="data/swingtrader.db", help="SQLite database path")
    parser.add_argument("--portfolio", default="default", help="Portfolio id")
    args = parser.parse_args()

    repo = SqliteRepository(args.db)
    print(format_report(compute_performance_stats(repo.list_trades_by_portfolio(args.portfolio))))
