"""
swingtrader Core: Risk Validator

Hard constraints from the guidelines' risk_management section.

Every proposed trade runs through the same ordered battery of checks. Checks
may shrink the size; rejections are returned as values together with the
full list of checks that ran, never raised.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional
from uuid import uuid4
import logging
import math
import threading

from core.portfolio_state import Portfolio
from core.rules import PortfolioRiskRules, RuleSet
from strategy.signals import Signal

logger = logging.getLogger(__name__)

DEFAULT_STOP_PCT = 5.0
DRAWDOWN_SIZE_FACTOR = 0.5

CHECK_DAILY_EVENTS = "Daily Risk Events"
CHECK_POSITION_SIZE = "Position Size Limit"
CHECK_DAILY_LOSS = "Daily Loss Limit"
CHECK_DRAWDOWN = "Drawdown Limit"
CHECK_SECTOR = "Sector Concentration"
CHECK_RISK_PER_TRADE = "Risk Per Trade"
CHECK_MAX_POSITIONS = "Maximum Open Positions"

_EVENT_TYPES = {
    CHECK_POSITION_SIZE: "POSITION_LIMIT",
    CHECK_DAILY_LOSS: "DAILY_LOSS",
    CHECK_DRAWDOWN: "DRAWDOWN",
    CHECK_SECTOR: "SECTOR_CONCENTRATION",
    CHECK_RISK_PER_TRADE: "RISK_PER_TRADE",
    CHECK_MAX_POSITIONS: "MAX_POSITIONS",
}


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2, RiskLevel.CRITICAL: 3}


@dataclass
class RiskCheck:
    """One named rule evaluated against a proposed trade"""
    name: str
    passed: bool
    value: float
    limit: float
    message: str
    # Set when the check resized or rejected the trade
    severity: Optional[RiskLevel] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "value": round(self.value, 4),
            "limit": round(self.limit, 4),
            "message": self.message,
            "severity": self.severity.value if self.severity else None,
        }


@dataclass
class RiskValidation:
    """Result of validate_trade(); checks is the complete audit trail"""
    approved: bool
    risk_level: RiskLevel
    checks: List[RiskCheck]
    adjusted_size: Optional[int] = None
    reasons: List[str] = field(default_factory=list)

    @property
    def failed_checks(self) -> List[RiskCheck]:
        return [c for c in self.checks if not c.passed]

    def check(self, name: str) -> Optional[RiskCheck]:
        for c in self.checks:
            if c.name == name:
                return c
        return None

    def final_size(self, recommended_size: int) -> int:
        if not self.approved:
            return 0
        return self.adjusted_size if self.adjusted_size is not None else recommended_size

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "risk_level": self.risk_level.value,
            "adjusted_size": self.adjusted_size,
            "reasons": list(self.reasons),
            "checks": [c.to_dict() for c in self.checks],
        }


@dataclass
class RiskEvent:
    type: str
    severity: RiskLevel
    symbol: str
    action_taken: str
    description: str
    timestamp: Optional[datetime] = None
    id: Optional[str] = None

    def __post_init__(self):
        if self.id is None:
            self.id = uuid4().hex
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity.value,
            "symbol": self.symbol,
            "action_taken": self.action_taken,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
        }


class _Battery:
    """Mutable working state threaded through the ordered checks"""

    def __init__(self, size: int):
        self.size = size
        self.rejected = False
        self.checks: List[RiskCheck] = []

    def record(self, check: RiskCheck) -> None:
        self.checks.append(check)

    def resize(self, new_size: int) -> None:
        self.size = new_size

    def reject(self) -> None:
        self.rejected = True
        self.size = 0


class RiskValidator:
    """
    Validates proposed trades against portfolio risk limits.

    Check order matters (later checks use the size left by earlier ones):
    1. Position size % of portfolio and, for BUY, cash on hand after fee and
       slippage (shrink to the largest allowed size, else reject)
    2. Daily loss limit (hard reject, CRITICAL)
    3. Drawdown limit (halve size; reject only if that leaves 0)
    4. Sector concentration (reject when already at/above the limit)
    5. Risk per trade (shrink to max size within the limit, else reject)
    6. Max open positions (BUY only)

    Trades that are resized or rejected emit a RiskEvent into a bounded
    per-day log. Once the daily event budget is used up every further trade
    is rejected until the local date rolls over.
    """

    def __init__(
        self,
        sector_lookup: Optional[Callable[[str], Optional[str]]] = None,
        max_event_log: int = 500,
        clock: Optional[Callable[[], datetime]] = None,
        fee_per_trade: float = 0.0,
        slippage_buffer_pct: float = 0.0,
    ):
        """
        Args:
            sector_lookup: symbol -> sector name (None when unknown)
            max_event_log: Max events kept for the current day
            clock: Time source, for tests
            fee_per_trade: Flat fee reserved from cash when sizing a BUY
            slippage_buffer_pct: Adverse fill allowance when sizing a BUY
        """
        self.sector_lookup = sector_lookup
        self.fee_per_trade = fee_per_trade
        self.slippage_buffer_pct = slippage_buffer_pct
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._events: Deque[RiskEvent] = deque(maxlen=max_event_log)
        self._events_today = 0
        self._events_day: Optional[date] = None

    # ------------------------------------------------------------------
    # Daily event log
    # ------------------------------------------------------------------

    def _roll_day(self) -> None:
        today = self._clock().astimezone().date()
        if self._events_day != today:
            if self._events_day is not None:
                logger.info(f"Risk event counter reset for {today} ({self._events_today} events yesterday)")
            self._events_day = today
            self._events_today = 0
            self._events.clear()

    @property
    def events_today(self) -> int:
        with self._lock:
            self._roll_day()
            return self._events_today

    def get_risk_events(self) -> List[RiskEvent]:
        with self._lock:
            self._roll_day()
            return list(self._events)

    def _emit(self, event: RiskEvent) -> None:
        with self._lock:
            self._roll_day()
            self._events.append(event)
            self._events_today += 1
        logger.warning(
            f"Risk event {event.type} [{event.severity.value}] {event.symbol}: "
            f"{event.action_taken} - {event.description}"
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_trade(self, signal: Signal, portfolio: Portfolio, rule_set: RuleSet) -> RiskValidation:
        """
        Run the ordered check battery for one proposed trade.

        Args:
            signal: Proposed trade
            portfolio: Snapshot of the portfolio the trade would apply to
            rule_set: Active guidelines

        Returns:
            RiskValidation with every check that ran
        """
        limits = rule_set.limits
        max_events = rule_set.risk_management.max_risk_events_per_day

        events_today = self.events_today
        if events_today >= max_events:
            message = (
                f"Daily risk event limit reached ({events_today}/{max_events}); "
                f"trading halted for the rest of the day"
            )
            logger.warning(f"Rejecting {signal.action} {signal.symbol}: {message}")
            return RiskValidation(
                approved=False,
                risk_level=RiskLevel.HIGH,
                checks=[RiskCheck(
                    name=CHECK_DAILY_EVENTS,
                    passed=False,
                    value=events_today,
                    limit=max_events,
                    message=message,
                    severity=RiskLevel.HIGH,
                )],
                reasons=[message],
            )

        battery = _Battery(signal.recommended_size)
        total_value = portfolio.total_value

        if total_value <= 0 or signal.entry_price <= 0 or signal.recommended_size <= 0:
            message = (
                f"Invalid trade inputs: portfolio=${total_value:.2f}, "
                f"price=${signal.entry_price:.2f}, size={signal.recommended_size}"
            )
            return RiskValidation(
                approved=False,
                risk_level=RiskLevel.HIGH,
                checks=[RiskCheck("Trade Inputs", False, 0.0, 0.0, message, RiskLevel.HIGH)],
                reasons=[message],
            )

        self._check_position_size(battery, signal, portfolio, limits)
        self._check_daily_loss(battery, portfolio, limits)
        self._check_drawdown(battery, portfolio, limits)
        self._check_sector(battery, signal, portfolio, limits)
        self._check_risk_per_trade(battery, signal, portfolio, limits)
        self._check_max_positions(battery, signal, portfolio, limits)

        altering = [c for c in battery.checks if c.severity is not None]
        risk_level = max(
            (c.severity for c in altering),
            key=lambda level: level.severity,
            default=RiskLevel.LOW,
        )
        approved = not battery.rejected and battery.size > 0
        adjusted = battery.size if battery.size != signal.recommended_size else None

        result = RiskValidation(
            approved=approved,
            risk_level=risk_level,
            checks=battery.checks,
            adjusted_size=adjusted,
            reasons=[c.message for c in battery.checks if not c.passed],
        )

        if altering:
            first = altering[0]
            self._emit(RiskEvent(
                type=_EVENT_TYPES.get(first.name, "POSITION_LIMIT"),
                severity=risk_level,
                symbol=signal.symbol,
                action_taken=(
                    f"Position size adjusted from {signal.recommended_size} to {battery.size}"
                    if approved else "Trade rejected"
                ),
                description="; ".join(result.reasons) or first.message,
            ))

        logger.info(
            f"Risk {signal.action} {signal.symbol} x{signal.recommended_size}: "
            f"approved={approved}, level={risk_level.value}"
            + (f", adjusted_size={adjusted}" if adjusted is not None else "")
        )
        return result

    def _affordable_size(self, price: float, portfolio: Portfolio) -> int:
        """Largest BUY quantity the cash balance covers after fee and slippage."""
        fill_price = price * (1 + self.slippage_buffer_pct / 100)
        spendable = portfolio.cash_balance - self.fee_per_trade
        if fill_price <= 0 or spendable <= 0:
            return 0
        return math.floor(spendable / fill_price)

    def _check_position_size(self, battery: _Battery, signal: Signal, portfolio: Portfolio,
                             limits: PortfolioRiskRules) -> None:
        price = signal.entry_price
        total = portfolio.total_value
        limit = limits.max_position_size_pct
        position_pct = battery.size * price / total * 100

        max_size = math.floor(total * limit / 100 / price)
        affordable = self._affordable_size(price, portfolio) if signal.is_buy else None
        if affordable is not None:
            max_size = min(max_size, affordable)
        max_size = max(0, max_size)

        if battery.size <= max_size:
            battery.record(RiskCheck(
                CHECK_POSITION_SIZE, True, position_pct, limit,
                f"Position size {position_pct:.2f}% within {limit:.2f}% limit",
            ))
            return

        if position_pct > limit:
            cause = f"Position size {position_pct:.2f}% exceeds {limit:.2f}% limit"
        else:
            cause = f"Cost of {battery.size} shares exceeds cash ${portfolio.cash_balance:,.2f}"

        if max_size > 0:
            message = f"{cause}; reduced from {battery.size} to {max_size} shares"
            battery.resize(max_size)
            severity = RiskLevel.MEDIUM
        else:
            message = f"{cause} and no affordable size remains"
            battery.reject()
            severity = RiskLevel.HIGH
        battery.record(RiskCheck(CHECK_POSITION_SIZE, False, position_pct, limit, message, severity))

    def _check_daily_loss(self, battery: _Battery, portfolio: Portfolio, limits: PortfolioRiskRules) -> None:
        daily_pnl = portfolio.daily_pnl
        loss_pct = abs(daily_pnl) / portfolio.total_value * 100 if daily_pnl < 0 else 0.0
        limit = limits.max_daily_loss_pct

        if loss_pct <= limit:
            battery.record(RiskCheck(
                CHECK_DAILY_LOSS, True, loss_pct, limit,
                f"Daily loss {loss_pct:.2f}% within {limit:.2f}% limit",
            ))
            return

        battery.reject()
        battery.record(RiskCheck(
            CHECK_DAILY_LOSS, False, loss_pct, limit,
            f"Daily loss {loss_pct:.2f}% exceeds {limit:.2f}% limit; no new trades today",
            RiskLevel.CRITICAL,
        ))

    def _check_drawdown(self, battery: _Battery, portfolio: Portfolio, limits: PortfolioRiskRules) -> None:
        initial = portfolio.initial_value
        drawdown = max(0.0, (initial - portfolio.total_value) / initial * 100) if initial > 0 else 0.0
        limit = limits.max_drawdown_pct

        if drawdown <= limit:
            battery.record(RiskCheck(
                CHECK_DRAWDOWN, True, drawdown, limit,
                f"Drawdown {drawdown:.2f}% within {limit:.2f}% limit",
            ))
            return

        reduced = math.floor(battery.size * DRAWDOWN_SIZE_FACTOR)
        if battery.rejected:
            message = f"Drawdown {drawdown:.2f}% exceeds {limit:.2f}% limit"
            severity = RiskLevel.HIGH
        elif reduced > 0:
            message = (
                f"Drawdown {drawdown:.2f}% exceeds {limit:.2f}% limit; "
                f"size halved from {battery.size} to {reduced} shares"
            )
            battery.resize(reduced)
            severity = RiskLevel.MEDIUM
        else:
            message = f"Drawdown {drawdown:.2f}% exceeds {limit:.2f}% limit; reduced size is 0"
            battery.reject()
            severity = RiskLevel.HIGH
        battery.record(RiskCheck(CHECK_DRAWDOWN, False, drawdown, limit, message, severity))

    def _check_sector(self, battery: _Battery, signal: Signal, portfolio: Portfolio,
                      limits: PortfolioRiskRules) -> None:
        limit = limits.max_sector_exposure_pct
        sector = self._sector_for(signal.symbol, portfolio)
        if sector is None:
            battery.record(RiskCheck(CHECK_SECTOR, True, 0.0, limit, "Sector unknown, check passed"))
            return

        exposure = portfolio.sector_exposure().get(sector, 0.0)
        # Strict comparison: exposure sitting exactly at the limit is rejected
        if exposure < limit:
            battery.record(RiskCheck(
                CHECK_SECTOR, True, exposure, limit,
                f"{sector} exposure {exposure:.2f}% below {limit:.2f}% limit",
            ))
            return

        battery.reject()
        battery.record(RiskCheck(
            CHECK_SECTOR, False, exposure, limit,
            f"{sector} exposure {exposure:.2f}% at or above {limit:.2f}% limit",
            RiskLevel.HIGH,
        ))

    def _check_risk_per_trade(self, battery: _Battery, signal: Signal, portfolio: Portfolio,
                              limits: PortfolioRiskRules) -> None:
        price = signal.entry_price
        total = portfolio.total_value
        limit = limits.risk_per_trade_pct
        stop = signal.stop_loss if signal.stop_loss and signal.stop_loss > 0 else price * (1 - DEFAULT_STOP_PCT / 100)
        risk_per_share = abs(price - stop)
        risk_pct = risk_per_share * battery.size / total * 100

        if risk_pct <= limit:
            battery.record(RiskCheck(
                CHECK_RISK_PER_TRADE, True, risk_pct, limit,
                f"Trade risk {risk_pct:.2f}% within {limit:.2f}% limit",
            ))
            return

        max_size = math.floor(total * limit / 100 / risk_per_share) if risk_per_share > 0 else 0
        if 0 < max_size < battery.size:
            message = (
                f"Trade risk {risk_pct:.2f}% exceeds {limit:.2f}% limit; "
                f"reduced from {battery.size} to {max_size} shares"
            )
            battery.resize(max_size)
            severity = RiskLevel.MEDIUM
        else:
            message = f"Trade risk {risk_pct:.2f}% exceeds {limit:.2f}% limit"
            battery.reject()
            severity = RiskLevel.HIGH
        battery.record(RiskCheck(CHECK_RISK_PER_TRADE, False, risk_pct, limit, message, severity))

    def _check_max_positions(self, battery: _Battery, signal: Signal, portfolio: Portfolio,
                             limits: PortfolioRiskRules) -> None:
        open_count = portfolio.open_position_count
        limit = limits.max_open_positions

        if not signal.is_buy:
            battery.record(RiskCheck(
                CHECK_MAX_POSITIONS, True, open_count, limit, "Not applicable to SELL",
            ))
            return

        if portfolio.position(signal.symbol) is not None:
            battery.record(RiskCheck(
                CHECK_MAX_POSITIONS, True, open_count, limit,
                f"Adding to existing {signal.symbol} position",
            ))
            return

        if open_count < limit:
            battery.record(RiskCheck(
                CHECK_MAX_POSITIONS, True, open_count, limit,
                f"{open_count} open positions, limit {limit}",
            ))
            return

        battery.reject()
        battery.record(RiskCheck(
            CHECK_MAX_POSITIONS, False, open_count, limit,
            f"Maximum open positions reached ({open_count}/{limit})",
            RiskLevel.MEDIUM,
        ))

    def _sector_for(self, symbol: str, portfolio: Portfolio) -> Optional[str]:
        held = portfolio.position(symbol)
        if held is not None and held.sector:
            return held.sector
        if self.sector_lookup is None:
            return None
        return self.sector_lookup(symbol)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_risk_metrics(self, portfolio: Portfolio, rule_set: RuleSet) -> Dict[str, Any]:
        """Current exposure versus limits (read-only)"""
        limits = rule_set.limits
        total = portfolio.total_value
        initial = portfolio.initial_value
        daily_pnl = portfolio.daily_pnl

        largest_pct = 0.0
        largest_symbol = None
        for p in portfolio.positions:
            if p.is_open and total > 0:
                pct = p.market_value / total * 100
                if pct > largest_pct:
                    largest_pct, largest_symbol = pct, p.symbol

        return {
            "total_value": round(total, 2),
            "drawdown_pct": round(max(0.0, (initial - total) / initial * 100) if initial > 0 else 0.0, 3),
            "max_drawdown_pct": limits.max_drawdown_pct,
            "daily_loss_pct": round(abs(daily_pnl) / total * 100 if daily_pnl < 0 and total > 0 else 0.0, 3),
            "max_daily_loss_pct": limits.max_daily_loss_pct,
            "sector_exposure": {k: round(v, 2) for k, v in portfolio.sector_exposure().items()},
            "max_sector_exposure_pct": limits.max_sector_exposure_pct,
            "largest_position": largest_symbol,
            "largest_position_pct": round(largest_pct, 2),
            "open_positions": portfolio.open_position_count,
            "max_open_positions": limits.max_open_positions,
            "risk_events_today": self.events_today,
            "max_risk_events_per_day": rule_set.risk_management.max_risk_events_per_day,
        }


__all__ = [
    "RiskLevel",
    "RiskCheck",
    "RiskValidation",
    "RiskEvent",
    "RiskValidator",
]
