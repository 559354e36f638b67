"""
swingtrader Core: Rule Set Schema

Pydantic models for the guidelines document (config/guidelines.yaml) and the
pure validation entry point used by the guidelines store, the config CLI and
external callers.

A RuleSet instance is only ever produced by a successful validation, so
holding one means holding a valid rule set.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

REQUIRED_SECTIONS = ("stock_selection", "entry_signals", "exit_criteria", "risk_management")


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class NumericRange(_Frozen):
    """Closed numeric interval; min must be strictly below max"""
    min: float
    max: float

    @model_validator(mode="after")
    def check_order(self) -> "NumericRange":
        if self.min >= self.max:
            raise ValueError(f"min ({self.min}) must be less than max ({self.max})")
        return self

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max


# ===== Stock selection =====
class LiquidityRules(_Frozen):
    """Liquidity requirements"""
    min_average_daily_volume: float = Field(gt=0, description="Minimum average daily volume (shares)")
    min_market_cap: float = Field(gt=0, description="Minimum market cap USD")
    max_bid_ask_spread_pct: float = Field(gt=0, le=100, description="Max spread as % of price")


class VolatilityRules(_Frozen):
    """Volatility bands"""
    atr_pct: NumericRange = Field(description="ATR as % of price")
    beta: NumericRange = Field(description="Beta versus the index")
    historical_volatility: Optional[NumericRange] = None


class PriceRange(_Frozen):
    min_price: float = Field(gt=0, description="Minimum share price")
    max_price: float = Field(gt=0, description="Maximum share price")

    @model_validator(mode="after")
    def check_order(self) -> "PriceRange":
        if self.min_price >= self.max_price:
            raise ValueError(
                f"min_price ({self.min_price}) must be less than max_price ({self.max_price})"
            )
        return self


class TechnicalSetupRules(_Frozen):
    require_clear_trend: bool = False
    require_support_resistance: bool = False
    require_volume_confirmation: bool = False
    max_atr_extension: float = Field(default=2.0, gt=0, description="Max distance from SMA20 in ATRs")


class StockSelection(_Frozen):
    liquidity: LiquidityRules
    volatility: VolatilityRules
    price_range: PriceRange
    technical_setup: TechnicalSetupRules = Field(default_factory=TechnicalSetupRules)


# ===== Entry signals =====
class EntrySignalRule(_Frozen):
    """Named entry pattern"""
    name: str = Field(min_length=1)
    type: Literal["BREAKOUT", "PULLBACK", "MOVING_AVERAGE_BOUNCE", "MOMENTUM"]
    conditions: Tuple[str, ...] = ()
    volume_multiplier: float = Field(gt=0, description="Required volume vs average")
    confirmation_required: bool = False
    min_risk_reward: float = Field(gt=0, description="Minimum reward/risk ratio")


class EntrySignals(_Frozen):
    long_entries: Tuple[EntrySignalRule, ...] = ()
    short_entries: Tuple[EntrySignalRule, ...] = ()


# ===== Exit criteria =====
class ProfitTargetLadder(_Frozen):
    """
    Ascending profit-target ladder.

    levels are ATR multiples (ATR_BASED), percent gains (PERCENTAGE)
    or reward/risk multiples of the initial stop distance (RISK_REWARD).
    """
    name: str = "default"
    method: Literal["ATR_BASED", "PERCENTAGE", "RISK_REWARD"] = "ATR_BASED"
    levels: Tuple[float, ...]

    @field_validator("levels")
    @classmethod
    def validate_levels(cls, v: Tuple[float, ...]) -> Tuple[float, ...]:
        if not v:
            raise ValueError("profit target ladder needs at least one level")
        if any(level <= 0 for level in v):
            raise ValueError(f"profit target levels must be positive, got {list(v)}")
        if any(b <= a for a, b in zip(v, v[1:])):
            raise ValueError(f"profit target levels must be strictly ascending, got {list(v)}")
        return v


class StopLossMethod(_Frozen):
    name: str = "default"
    type: Literal["ATR_BASED", "PERCENTAGE"]
    atr_multiple: float = Field(default=1.25, gt=0)
    buffer_pct: float = Field(default=5.0, gt=0, le=100)


class StopLossRules(_Frozen):
    methods: Tuple[StopLossMethod, ...] = ()
    max_risk_pct: float = Field(default=2.0, gt=0, le=100)


class TrailingStopRules(_Frozen):
    enabled: bool = False
    activation_pct: float = Field(default=5.0, gt=0, le=100, description="Gain % that arms the trail")
    trail_pct: float = Field(default=3.0, gt=0, le=100, description="Distance below price %")


class TimeBasedExitRules(_Frozen):
    max_holding_days: int = Field(gt=0)


class TechnicalExitRules(_Frozen):
    enabled: bool = False
    indicator: Literal["sma20", "sma50", "ema20", "vwap"] = "sma50"


class ExitCriteriaRules(_Frozen):
    profit_targets: Tuple[ProfitTargetLadder, ...] = ()
    stop_loss: StopLossRules = Field(default_factory=StopLossRules)
    trailing_stop: TrailingStopRules = Field(default_factory=TrailingStopRules)
    time_based: Optional[TimeBasedExitRules] = None
    technical: TechnicalExitRules = Field(default_factory=TechnicalExitRules)


# ===== Risk management =====
class PortfolioRiskRules(_Frozen):
    """Portfolio-level hard limits"""
    max_daily_loss_pct: float = Field(gt=0, le=100, description="Max daily loss %")
    max_weekly_loss_pct: float = Field(gt=0, le=100, description="Max weekly loss %")
    max_drawdown_pct: float = Field(gt=0, le=100, description="Max drawdown %")
    max_open_positions: int = Field(gt=0, description="Max concurrently held symbols")
    max_sector_exposure_pct: float = Field(gt=0, le=100, description="Max exposure per sector %")
    max_position_size_pct: float = Field(gt=0, le=100, description="Max single position %")
    risk_per_trade_pct: float = Field(gt=0, le=100, description="Max capital at risk per trade %")


class RiskManagementRules(_Frozen):
    portfolio: PortfolioRiskRules
    max_risk_events_per_day: int = Field(default=10, gt=0)


class RuleSet(_Frozen):
    """Immutable, validated guidelines snapshot"""
    version: str = "1.0"
    stock_selection: StockSelection
    entry_signals: EntrySignals
    exit_criteria: ExitCriteriaRules
    risk_management: RiskManagementRules

    # Load metadata
    source_path: Optional[str] = None
    loaded_at: Optional[datetime] = None

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> str:
        return str(v)

    @property
    def limits(self) -> PortfolioRiskRules:
        return self.risk_management.portfolio


@dataclass
class ValidationResult:
    """Outcome of validate_rule_set(); never raises"""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    missing_sections: List[str] = field(default_factory=list)
    rule_set: Optional[RuleSet] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "missing_sections": list(self.missing_sections),
        }


def _format_error(err: Dict[str, Any]) -> str:
    loc = ".".join(str(part) for part in err.get("loc", ()))
    msg = err.get("msg", "invalid value")
    return f"{loc}: {msg}" if loc else msg


def _collect_warnings(rule_set: RuleSet) -> List[str]:
    warnings = []
    if not rule_set.entry_signals.long_entries:
        warnings.append("No long entry signals defined")
    if not rule_set.entry_signals.short_entries:
        warnings.append("No short entry signals defined")
    if not rule_set.exit_criteria.trailing_stop.enabled:
        warnings.append("Trailing stops are disabled")
    if not rule_set.exit_criteria.profit_targets:
        warnings.append("No profit targets defined")
    if not rule_set.exit_criteria.stop_loss.methods:
        warnings.append("No stop loss methods defined; 5% fallback stop will be used")
    return warnings


def validate_rule_set(document: Union[Dict[str, Any], RuleSet, None]) -> ValidationResult:
    """
    Validate a guidelines document.

    Pure and idempotent: the input is never mutated and nothing is logged
    above DEBUG.

    Args:
        document: Parsed YAML mapping, or an existing RuleSet to re-check

    Returns:
        ValidationResult with errors, warnings and missing sections. On
        success rule_set holds the frozen RuleSet.
    """
    if isinstance(document, RuleSet):
        document = document.model_dump(mode="python")

    if not isinstance(document, dict):
        return ValidationResult(
            is_valid=False,
            errors=["Guidelines document must be a mapping"],
            missing_sections=list(REQUIRED_SECTIONS),
        )

    missing = [name for name in REQUIRED_SECTIONS if document.get(name) is None]
    if missing:
        return ValidationResult(
            is_valid=False,
            errors=[f"Missing required section: {name}" for name in missing],
            missing_sections=missing,
        )

    try:
        rule_set = RuleSet.model_validate(document)
    except ValidationError as e:
        errors = [_format_error(err) for err in e.errors()]
        logger.debug(f"Rule set rejected with {len(errors)} error(s)")
        return ValidationResult(is_valid=False, errors=errors)

    return ValidationResult(
        is_valid=True,
        warnings=_collect_warnings(rule_set),
        rule_set=rule_set,
    )


__all__ = [
    "NumericRange",
    "RuleSet",
    "ValidationResult",
    "validate_rule_set",
    "REQUIRED_SECTIONS",
]
