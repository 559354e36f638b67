"""
Position Management: Exit Criteria

Derives stop-loss, profit-target, time-based and technical exit thresholds for
open positions and evaluates them against current prices.

Precedence is by priority number (lower wins): stop-loss < profit-target <
time-based < technical. When a stop and a target trigger in the same pass the
stop is always the exit that gets reported.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from core.rules import RuleSet
from infra.market_data import MarketSnapshot
from strategy.signals import Signal

if TYPE_CHECKING:
    from core.portfolio_state import Position

logger = logging.getLogger(__name__)

FALLBACK_STOP_PCT = 5.0


class CriterionType(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    PROFIT_TARGET = "PROFIT_TARGET"
    TIME_BASED = "TIME_BASED"
    TECHNICAL = "TECHNICAL"


BASE_PRIORITY: Dict[CriterionType, int] = {
    CriterionType.STOP_LOSS: 1,
    CriterionType.PROFIT_TARGET: 10,
    CriterionType.TIME_BASED: 20,
    CriterionType.TECHNICAL: 30,
}

# Deep ladders share the last slot rather than reaching time-based precedence
_TARGET_PRIORITY_SPAN = BASE_PRIORITY[CriterionType.TIME_BASED] - BASE_PRIORITY[CriterionType.PROFIT_TARGET] - 1


def _target_priority(index: int) -> int:
    return BASE_PRIORITY[CriterionType.PROFIT_TARGET] + min(index, _TARGET_PRIORITY_SPAN)


@dataclass
class ExitCriterion:
    """
    Stored exit threshold attached to a position.

    value is a price for STOP_LOSS / PROFIT_TARGET, a POSIX timestamp for
    TIME_BASED, and the indicator level at creation for TECHNICAL (the live
    indicator is used when evaluating).
    """
    type: CriterionType
    value: float
    priority: int
    is_active: bool = True
    indicator: Optional[str] = None
    label: str = ""
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.type = CriterionType(self.type)
        if self.id is None:
            self.id = uuid4().hex
        if self.created_at is None:
            self.created_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "value": self.value,
            "priority": self.priority,
            "is_active": self.is_active,
            "indicator": self.indicator,
            "label": self.label,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExitCriterion":
        created = data.get("created_at")
        return cls(
            type=CriterionType(data["type"]),
            value=float(data["value"]),
            priority=int(data["priority"]),
            is_active=bool(data.get("is_active", True)),
            indicator=data.get("indicator"),
            label=data.get("label", ""),
            id=data.get("id"),
            created_at=datetime.fromisoformat(created) if created else None,
        )


def fallback_stop(entry_price: float) -> ExitCriterion:
    return ExitCriterion(
        type=CriterionType.STOP_LOSS,
        value=round(entry_price * (1 - FALLBACK_STOP_PCT / 100), 4),
        priority=BASE_PRIORITY[CriterionType.STOP_LOSS] + 1,
        label="fallback_pct",
    )


# ---------------------------------------------------------------------------
# Evaluators: one per criterion type
# ---------------------------------------------------------------------------

Evaluator = Callable[[ExitCriterion, MarketSnapshot, datetime], bool]


def _stop_loss_hit(criterion: ExitCriterion, snapshot: MarketSnapshot, now: datetime) -> bool:
    return snapshot.price <= criterion.value


def _profit_target_hit(criterion: ExitCriterion, snapshot: MarketSnapshot, now: datetime) -> bool:
    return snapshot.price >= criterion.value


def _time_limit_hit(criterion: ExitCriterion, snapshot: MarketSnapshot, now: datetime) -> bool:
    return now.timestamp() >= criterion.value


def _technical_hit(criterion: ExitCriterion, snapshot: MarketSnapshot, now: datetime) -> bool:
    level = getattr(snapshot.technicals, criterion.indicator or "sma50", None)
    return level is not None and snapshot.price < level


_EVALUATORS: Dict[CriterionType, Evaluator] = {
    CriterionType.STOP_LOSS: _stop_loss_hit,
    CriterionType.PROFIT_TARGET: _profit_target_hit,
    CriterionType.TIME_BASED: _time_limit_hit,
    CriterionType.TECHNICAL: _technical_hit,
}


def _pnl_text(pnl: float, pnl_pct: float) -> str:
    word = "loss" if pnl < 0 else "gain"
    return f"{word} of {abs(pnl_pct):.2f}% (${abs(pnl):.2f})"


def _describe_stop(c: ExitCriterion, pos: "Position", price: float, now: datetime) -> str:
    pnl, pnl_pct = _pnl(pos, price)
    return (
        f"Stop loss triggered at ${price:.2f} (stop ${c.value:.2f}). "
        f"Entry was ${pos.entry_price:.2f}, {_pnl_text(pnl, pnl_pct)}. "
        f"Exiting full position of {pos.quantity} shares."
    )


def _describe_target(c: ExitCriterion, pos: "Position", price: float, now: datetime) -> str:
    pnl, pnl_pct = _pnl(pos, price)
    return (
        f"Profit target reached at ${price:.2f} (target ${c.value:.2f}). "
        f"Entry was ${pos.entry_price:.2f}, {_pnl_text(pnl, pnl_pct)}. "
        f"Exiting full position of {pos.quantity} shares."
    )


def _describe_time(c: ExitCriterion, pos: "Position", price: float, now: datetime) -> str:
    pnl, pnl_pct = _pnl(pos, price)
    held_days = (now - pos.entry_date).days if pos.entry_date else 0
    return (
        f"Time-based exit triggered after {held_days} days (max holding period reached). "
        f"Entry was ${pos.entry_price:.2f}, current ${price:.2f}, expected {_pnl_text(pnl, pnl_pct)}."
    )


def _describe_technical(c: ExitCriterion, pos: "Position", price: float, now: datetime) -> str:
    pnl, pnl_pct = _pnl(pos, price)
    return (
        f"Technical exit: price ${price:.2f} broke below {(c.indicator or 'sma50').upper()}. "
        f"Entry was ${pos.entry_price:.2f}, expected {_pnl_text(pnl, pnl_pct)}."
    )


_DESCRIBERS: Dict[CriterionType, Callable[[ExitCriterion, "Position", float, datetime], str]] = {
    CriterionType.STOP_LOSS: _describe_stop,
    CriterionType.PROFIT_TARGET: _describe_target,
    CriterionType.TIME_BASED: _describe_time,
    CriterionType.TECHNICAL: _describe_technical,
}

assert set(_EVALUATORS) == set(CriterionType), "missing exit evaluator"
assert set(_DESCRIBERS) == set(CriterionType), "missing exit description"


def _pnl(position: "Position", price: float):
    pnl = (price - position.entry_price) * position.quantity
    pnl_pct = (price - position.entry_price) / position.entry_price * 100 if position.entry_price else 0.0
    return pnl, pnl_pct


class ExitCriteriaEngine:
    """
    Establishes and evaluates exit thresholds for open positions.

    Responsibilities:
    - Derive criteria from the rule set when a position is opened or added to
    - Emit one full-size SELL signal per triggered position per pass
    - Ratchet stops upward when the trailing stop is armed
    """

    def establish(
        self,
        position: "Position",
        entry_price: float,
        snapshot: Optional[MarketSnapshot],
        rule_set: RuleSet,
        now: Optional[datetime] = None,
    ) -> List[ExitCriterion]:
        """
        Build a fresh criteria set for a position.

        Args:
            position: Position the criteria belong to (entry_date is used for
                the time-based exit)
            entry_price: Average entry price
            snapshot: Market snapshot for ATR and indicator levels; without it
                only non-ATR methods apply
            rule_set: Active guidelines

        Returns:
            New list of criteria; always contains at least one STOP_LOSS
        """
        now = now or datetime.now(timezone.utc)
        exits = rule_set.exit_criteria
        atr = snapshot.technicals.atr if snapshot else None
        criteria: List[ExitCriterion] = []

        # Stop losses
        stop_priority = BASE_PRIORITY[CriterionType.STOP_LOSS]
        for method in exits.stop_loss.methods:
            if method.type == "ATR_BASED":
                if not atr:
                    logger.debug(f"{position.symbol}: no ATR available, skipping ATR stop")
                    continue
                value = entry_price - method.atr_multiple * atr
                priority = stop_priority
            else:
                value = entry_price * (1 - method.buffer_pct / 100)
                priority = stop_priority + 1
            if value <= 0:
                logger.warning(f"{position.symbol}: {method.name} stop computed at {value:.2f}, skipping")
                continue
            criteria.append(ExitCriterion(
                type=CriterionType.STOP_LOSS,
                value=round(value, 4),
                priority=priority,
                label=method.name,
            ))

        if not any(c.type == CriterionType.STOP_LOSS for c in criteria):
            criteria.append(fallback_stop(entry_price))

        # Profit targets
        tightest_stop = max(c.value for c in criteria if c.type == CriterionType.STOP_LOSS)
        risk_per_share = entry_price - tightest_stop
        index = 0
        for ladder in exits.profit_targets:
            for level in ladder.levels:
                if ladder.method == "ATR_BASED":
                    if not atr:
                        continue
                    value = entry_price + level * atr
                elif ladder.method == "PERCENTAGE":
                    value = entry_price * (1 + level / 100)
                else:
                    value = entry_price + level * risk_per_share
                criteria.append(ExitCriterion(
                    type=CriterionType.PROFIT_TARGET,
                    value=round(value, 4),
                    priority=_target_priority(index),
                    label=f"{ladder.name}#{index + 1}",
                ))
                index += 1

        # Time-based
        if exits.time_based is not None:
            entry_date = position.entry_date or now
            deadline = entry_date + timedelta(days=exits.time_based.max_holding_days)
            criteria.append(ExitCriterion(
                type=CriterionType.TIME_BASED,
                value=deadline.timestamp(),
                priority=BASE_PRIORITY[CriterionType.TIME_BASED],
                label=f"max_hold_{exits.time_based.max_holding_days}d",
            ))

        # Technical
        if exits.technical.enabled and snapshot is not None:
            indicator = exits.technical.indicator
            level = getattr(snapshot.technicals, indicator)
            if entry_price >= level:
                criteria.append(ExitCriterion(
                    type=CriterionType.TECHNICAL,
                    value=round(level, 4),
                    priority=BASE_PRIORITY[CriterionType.TECHNICAL],
                    indicator=indicator,
                    label=f"below_{indicator}",
                ))
            else:
                logger.debug(
                    f"{position.symbol}: entry below {indicator} ({level:.2f}), no technical exit armed"
                )

        logger.info(
            f"Established {len(criteria)} exit criteria for {position.symbol} "
            f"(entry=${entry_price:.2f}, stop=${tightest_stop:.2f})"
        )
        return criteria

    def find_triggered(
        self,
        position: "Position",
        snapshot: MarketSnapshot,
        now: Optional[datetime] = None,
    ) -> Optional[ExitCriterion]:
        """Return the winning triggered criterion (lowest priority number), if any."""
        now = now or datetime.now(timezone.utc)
        triggered = [
            c for c in position.exit_criteria
            if c.is_active and _EVALUATORS[c.type](c, snapshot, now)
        ]
        if not triggered:
            return None
        return min(triggered, key=lambda c: c.priority)

    def evaluate(
        self,
        positions: Iterable["Position"],
        snapshots: Dict[str, MarketSnapshot],
        now: Optional[datetime] = None,
    ) -> List[Signal]:
        """
        Check all active criteria for every open position.

        Args:
            positions: Open positions
            snapshots: Current market snapshot per symbol
            now: Evaluation time (default: current UTC time)

        Returns:
            One full-size SELL signal per position with a triggered criterion
        """
        now = now or datetime.now(timezone.utc)
        signals: List[Signal] = []

        for position in positions:
            if position.quantity <= 0:
                continue
            snapshot = snapshots.get(position.symbol)
            if snapshot is None or snapshot.price <= 0:
                logger.warning(f"No valid market data for {position.symbol}, skipping exit check")
                continue

            winner = self.find_triggered(position, snapshot, now)
            if winner is None:
                continue

            price = snapshot.price
            reasoning = _DESCRIBERS[winner.type](winner, position, price, now)
            logger.info(f"EXIT {position.symbol}: {winner.type.value} ({winner.label}) - {reasoning}")

            signals.append(Signal(
                symbol=position.symbol,
                action="SELL",
                confidence=1.0,
                recommended_size=int(position.quantity),
                entry_price=price,
                stop_loss=position.stop_loss or 0.0,
                profit_targets=[],
                reasoning=reasoning,
                technicals=snapshot.technicals,
                source="exit",
                exit_type=winner.type.value,
            ))

        return signals

    def update_trailing_stops(
        self,
        positions: Iterable["Position"],
        prices: Dict[str, float],
        rule_set: RuleSet,
    ) -> Dict[str, List[ExitCriterion]]:
        """
        Raise stops behind price once the trailing stop is armed.

        Stops are only ever raised. Returns the new criteria list for every
        position whose stops moved.
        """
        trailing = rule_set.exit_criteria.trailing_stop
        if not trailing.enabled:
            return {}

        updated: Dict[str, List[ExitCriterion]] = {}
        for position in positions:
            price = prices.get(position.symbol)
            if not price or position.quantity <= 0 or position.entry_price <= 0:
                continue
            gain_pct = (price - position.entry_price) / position.entry_price * 100
            if gain_pct < trailing.activation_pct:
                continue

            new_stop = round(price * (1 - trailing.trail_pct / 100), 4)
            changed = False
            criteria = []
            for c in position.exit_criteria:
                if c.type == CriterionType.STOP_LOSS and c.is_active and c.value < new_stop:
                    criteria.append(replace(c, value=new_stop, label=f"{c.label}+trail"))
                    changed = True
                else:
                    criteria.append(c)

            if changed:
                logger.info(
                    f"Trailing stop for {position.symbol} raised to ${new_stop:.2f} "
                    f"(gain {gain_pct:.1f}%)"
                )
                updated[position.symbol] = criteria

        return updated


__all__ = [
    "CriterionType",
    "ExitCriterion",
    "ExitCriteriaEngine",
    "BASE_PRIORITY",
    "fallback_stop",
]
