"""
SQLite persistence for portfolios, positions, trades and snapshots.

One connection per repository, guarded by a lock, so ":memory:" databases
work and writer threads never interleave statements. Timestamps are
stored as UTC ISO-8601 strings, which sort lexically in time order.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.exit_criteria import ExitCriterion
from core.portfolio_state import Position, PortfolioSnapshot, Trade

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS portfolios (
    id TEXT PRIMARY KEY,
    cash_balance REAL NOT NULL,
    initial_cash REAL NOT NULL,
    total_value REAL,
    daily_pnl REAL,
    total_pnl REAL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS positions (
    id TEXT PRIMARY KEY,
    portfolio_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    entry_price REAL NOT NULL,
    current_price REAL NOT NULL,
    entry_date TEXT,
    sector TEXT,
    realized_pnl REAL NOT NULL DEFAULT 0,
    exit_criteria TEXT NOT NULL DEFAULT '[]',
    closed_at TEXT,
    last_updated TEXT
);

CREATE TABLE IF NOT EXISTS trades (
    id TEXT PRIMARY KEY,
    portfolio_id TEXT NOT NULL,
    symbol TEXT NOT NULL,
    action TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    price REAL NOT NULL,
    fees REAL NOT NULL DEFAULT 0,
    timestamp TEXT NOT NULL,
    reasoning TEXT,
    signal_id TEXT,
    status TEXT NOT NULL,
    realized_pnl REAL,
    error TEXT
);

CREATE TABLE IF NOT EXISTS snapshots (
    id TEXT PRIMARY KEY,
    portfolio_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    total_value REAL NOT NULL,
    cash_balance REAL NOT NULL,
    position_count INTEGER NOT NULL,
    daily_pnl REAL,
    total_pnl REAL,
    positions TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_positions_portfolio ON positions(portfolio_id);
CREATE INDEX IF NOT EXISTS idx_trades_portfolio_ts ON trades(portfolio_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(symbol);
CREATE INDEX IF NOT EXISTS idx_snapshots_portfolio_ts ON snapshots(portfolio_id, timestamp);
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SqliteRepository:
    """Repository over a SQLite file (or ":memory:")."""

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        logger.info(f"SQLite repository ready at {db_path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def is_healthy(self) -> bool:
        try:
            with self._lock:
                self._conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.warning(f"Repository health check failed: {e}")
            return False

    def _execute(self, sql: str, params: tuple = ()) -> None:
        with self._lock:
            self._conn.execute(sql, params)
            self._conn.commit()

    def _fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    # ------------------------------------------------------------------
    # Portfolios
    # ------------------------------------------------------------------

    def create_portfolio(self, portfolio_id: str, record: Dict[str, Any]) -> None:
        now = _ts(datetime.now(timezone.utc))
        self._execute(
            """
            INSERT INTO portfolios (id, cash_balance, initial_cash, total_value, daily_pnl, total_pnl,
                                    created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                portfolio_id,
                record["cash_balance"],
                record.get("initial_cash", record["cash_balance"]),
                record.get("total_value"),
                record.get("daily_pnl"),
                record.get("total_pnl"),
                now,
                now,
            ),
        )

    def get_portfolio(self, portfolio_id: str) -> Optional[Dict[str, Any]]:
        row = self._fetchone("SELECT * FROM portfolios WHERE id = ?", (portfolio_id,))
        return dict(row) if row else None

    def update_portfolio(self, portfolio_id: str, record: Dict[str, Any]) -> None:
        self._execute(
            """
            UPDATE portfolios
               SET cash_balance = ?, total_value = ?, daily_pnl = ?, total_pnl = ?, updated_at = ?
             WHERE id = ?
            """,
            (
                record["cash_balance"],
                record.get("total_value"),
                record.get("daily_pnl"),
                record.get("total_pnl"),
                _ts(datetime.now(timezone.utc)),
                portfolio_id,
            ),
        )

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def upsert_position(self, portfolio_id: str, position: Position) -> None:
        self._execute(
            """
            INSERT OR REPLACE INTO positions
                (id, portfolio_id, symbol, quantity, entry_price, current_price, entry_date, sector,
                 realized_pnl, exit_criteria, closed_at, last_updated)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                position.id,
                portfolio_id,
                position.symbol,
                position.quantity,
                position.entry_price,
                position.current_price,
                _ts(position.entry_date),
                position.sector,
                position.realized_pnl,
                json.dumps([c.to_dict() for c in position.exit_criteria]),
                _ts(position.closed_at),
                _ts(position.last_updated),
            ),
        )

    def get_position(self, position_id: str) -> Optional[Position]:
        row = self._fetchone("SELECT * FROM positions WHERE id = ?", (position_id,))
        return self._row_to_position(row) if row else None

    def list_positions_by_portfolio(self, portfolio_id: str, open_only: bool = False) -> List[Position]:
        sql = "SELECT * FROM positions WHERE portfolio_id = ?"
        if open_only:
            sql += " AND quantity > 0"
        rows = self._fetchall(sql + " ORDER BY entry_date", (portfolio_id,))
        return [self._row_to_position(r) for r in rows]

    @staticmethod
    def _row_to_position(row: sqlite3.Row) -> Position:
        return Position(
            symbol=row["symbol"],
            quantity=int(row["quantity"]),
            entry_price=float(row["entry_price"]),
            current_price=float(row["current_price"]),
            entry_date=_dt(row["entry_date"]),
            sector=row["sector"],
            realized_pnl=float(row["realized_pnl"] or 0.0),
            exit_criteria=[ExitCriterion.from_dict(c) for c in json.loads(row["exit_criteria"] or "[]")],
            closed_at=_dt(row["closed_at"]),
            last_updated=_dt(row["last_updated"]),
            id=row["id"],
        )

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def create_trade(self, portfolio_id: str, trade: Trade) -> None:
        self._execute(
            """
            INSERT INTO trades (id, portfolio_id, symbol, action, quantity, price, fees, timestamp,
                                reasoning, signal_id, status, realized_pnl, error)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                trade.id,
                portfolio_id,
                trade.symbol,
                trade.action,
                trade.quantity,
                trade.price,
                trade.fees,
                _ts(trade.timestamp),
                trade.reasoning,
                trade.signal_id,
                trade.status,
                trade.realized_pnl,
                trade.error,
            ),
        )

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        row = self._fetchone("SELECT * FROM trades WHERE id = ?", (trade_id,))
        return self._row_to_trade(row) if row else None

    def list_trades_by_portfolio(self, portfolio_id: str, limit: Optional[int] = None) -> List[Trade]:
        sql = "SELECT * FROM trades WHERE portfolio_id = ? ORDER BY timestamp"
        params: tuple = (portfolio_id,)
        if limit is not None:
            sql = "SELECT * FROM (SELECT * FROM trades WHERE portfolio_id = ? ORDER BY timestamp DESC LIMIT ?) ORDER BY timestamp"
            params = (portfolio_id, int(limit))
        return [self._row_to_trade(r) for r in self._fetchall(sql, params)]

    def list_trades_between(self, portfolio_id: str, start: datetime, end: datetime) -> List[Trade]:
        rows = self._fetchall(
            "SELECT * FROM trades WHERE portfolio_id = ? AND timestamp >= ? AND timestamp <= ? ORDER BY timestamp",
            (portfolio_id, _ts(start), _ts(end)),
        )
        return [self._row_to_trade(r) for r in rows]

    @staticmethod
    def _row_to_trade(row: sqlite3.Row) -> Trade:
        return Trade(
            symbol=row["symbol"],
            action=row["action"],
            quantity=int(row["quantity"]),
            price=float(row["price"]),
            fees=float(row["fees"] or 0.0),
            timestamp=_dt(row["timestamp"]),
            reasoning=row["reasoning"] or "",
            signal_id=row["signal_id"],
            status=row["status"],
            realized_pnl=row["realized_pnl"],
            error=row["error"],
            id=row["id"],
        )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def create_snapshot(self, snapshot: PortfolioSnapshot) -> None:
        self._execute(
            """
            INSERT INTO snapshots (id, portfolio_id, timestamp, total_value, cash_balance, position_count,
                                   daily_pnl, total_pnl, positions)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                snapshot.id,
                snapshot.portfolio_id,
                _ts(snapshot.timestamp),
                snapshot.total_value,
                snapshot.cash_balance,
                snapshot.position_count,
                snapshot.daily_pnl,
                snapshot.total_pnl,
                json.dumps(snapshot.positions, default=str),
            ),
        )

    def get_latest_snapshot(self, portfolio_id: str) -> Optional[PortfolioSnapshot]:
        row = self._fetchone(
            "SELECT * FROM snapshots WHERE portfolio_id = ? ORDER BY timestamp DESC LIMIT 1",
            (portfolio_id,),
        )
        return self._row_to_snapshot(row) if row else None

    def list_snapshots_between(self, portfolio_id: str, start: datetime, end: datetime) -> List[PortfolioSnapshot]:
        rows = self._fetchall(
            "SELECT * FROM snapshots WHERE portfolio_id = ? AND timestamp >= ? AND timestamp <= ? ORDER BY timestamp",
            (portfolio_id, _ts(start), _ts(end)),
        )
        return [self._row_to_snapshot(r) for r in rows]

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> PortfolioSnapshot:
        return PortfolioSnapshot(
            portfolio_id=row["portfolio_id"],
            timestamp=_dt(row["timestamp"]),
            total_value=float(row["total_value"]),
            cash_balance=float(row["cash_balance"]),
            position_count=int(row["position_count"]),
            daily_pnl=row["daily_pnl"],
            total_pnl=row["total_pnl"],
            positions=json.loads(row["positions"] or "[]"),
            id=row["id"],
        )
