"""
swingtrader Strategy: Signal Generator

Turns market data plus the active rule set into BUY signals for new
positions and SELL signals for held ones.

Pipeline for entries:
1. Screen: fresh quote + technicals, price range, volume, spread
2. Feasibility: liquidity, volatility, trend, extension from SMA20
3. Advisory opinion (BUY / PASS with confidence)
4. Deterministic levels (stop, targets) and risk-based sizing

The model never sets prices or size. Per-symbol work runs on a thread pool
and every future is awaited with a timeout; a slow or failing symbol simply
yields no signal.
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ai.advisor import AdvisoryService, build_entry_prompt, build_exit_prompt
from ai.schemas import AdvisoryContext
from core.exceptions import CriticalDataUnavailable
from core.exit_criteria import CriterionType, ExitCriteriaEngine
from core.portfolio_state import Position
from core.rules import RuleSet
from infra.market_data import MarketDataProvider, MarketSnapshot, is_fresh
from strategy.signals import Signal

logger = logging.getLogger(__name__)

TREND_BAND_PCT = 2.0


@dataclass
class FeasibilityAssessment:
    """Pre-advisory checks for one candidate"""
    symbol: str
    passed: bool
    trend: str  # UP / DOWN / SIDEWAYS
    checks: Dict[str, bool] = field(default_factory=dict)
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trend": self.trend,
            **{f"{name}_ok": ok for name, ok in self.checks.items()},
            "issues": "; ".join(self.reasons) if self.reasons else "none",
        }


def classify_trend(sma20: float, sma50: float) -> str:
    if sma50 <= 0:
        return "SIDEWAYS"
    if sma20 > sma50 * (1 + TREND_BAND_PCT / 100):
        return "UP"
    if sma20 < sma50 * (1 - TREND_BAND_PCT / 100):
        return "DOWN"
    return "SIDEWAYS"


def assess_feasibility(snapshot: MarketSnapshot, rule_set: RuleSet) -> FeasibilityAssessment:
    """Liquidity, volatility, trend and extension checks against the rule set."""
    selection = rule_set.stock_selection
    quote, tech = snapshot.quote, snapshot.technicals
    price = quote.price
    reasons: List[str] = []

    liquidity_ok = (
        quote.volume >= selection.liquidity.min_average_daily_volume
        and quote.spread_pct <= selection.liquidity.max_bid_ask_spread_pct
    )
    if not liquidity_ok:
        reasons.append(f"liquidity: volume {quote.volume:,.0f}, spread {quote.spread_pct:.2f}%")

    atr_pct = tech.atr / price * 100 if price > 0 else 0.0
    volatility_ok = selection.volatility.atr_pct.contains(atr_pct)
    if not volatility_ok:
        reasons.append(f"volatility: ATR {atr_pct:.2f}% outside {selection.volatility.atr_pct.min}-{selection.volatility.atr_pct.max}%")

    trend = classify_trend(tech.sma20, tech.sma50)
    trend_ok = not (selection.technical_setup.require_clear_trend and trend == "SIDEWAYS")
    if not trend_ok:
        reasons.append("trend: no clear trend")

    extension = abs(price - tech.sma20) / tech.atr if tech.atr > 0 else math.inf
    extension_ok = extension < selection.technical_setup.max_atr_extension
    if not extension_ok:
        reasons.append(f"extension: {extension:.2f} ATR from SMA20")

    checks = {
        "liquidity": liquidity_ok,
        "volatility": volatility_ok,
        "trend": trend_ok,
        "extension": extension_ok,
    }
    return FeasibilityAssessment(
        symbol=snapshot.symbol,
        passed=all(checks.values()),
        trend=trend,
        checks=checks,
        reasons=reasons,
    )


def size_position(
    portfolio_value: float,
    entry_price: float,
    stop_loss: float,
    rule_set: RuleSet,
) -> int:
    """
    Shares such that hitting the stop loses risk_per_trade_pct of the
    portfolio, capped at max_position_size_pct of the portfolio.
    """
    risk_per_share = entry_price - stop_loss
    if portfolio_value <= 0 or entry_price <= 0 or risk_per_share <= 0:
        return 0
    limits = rule_set.limits
    by_risk = math.floor(portfolio_value * limits.risk_per_trade_pct / 100 / risk_per_share)
    by_cap = math.floor(portfolio_value * limits.max_position_size_pct / 100 / entry_price)
    return max(0, min(by_risk, by_cap))


class SignalGenerator:
    """
    Screens the universe and asks the advisory layer about survivors.

    Args:
        market_data: Quote/technicals provider
        advisory: AdvisoryService wrapping the model client
        guidelines: GuidelinesStore used when no rule set is passed in
        max_workers: Thread pool size for per-symbol work
        call_timeout: Seconds to wait on each per-symbol future
        max_signals_per_cycle: Cap on candidates sent to the advisory layer
        min_confidence: Advisory confidence needed to act
    """

    def __init__(
        self,
        market_data: MarketDataProvider,
        advisory: AdvisoryService,
        guidelines=None,
        max_workers: int = 4,
        call_timeout: float = 15.0,
        max_signals_per_cycle: int = 10,
        min_confidence: float = 0.6,
        metrics=None,
    ):
        self.market_data = market_data
        self.advisory = advisory
        self.guidelines = guidelines
        self.max_workers = max_workers
        self.call_timeout = call_timeout
        self.max_signals_per_cycle = max_signals_per_cycle
        self.min_confidence = min_confidence
        self.metrics = metrics
        self._levels = ExitCriteriaEngine()

        logger.info(
            f"SignalGenerator initialized: max_signals={max_signals_per_cycle}, "
            f"min_confidence={min_confidence}, workers={max_workers}"
        )

    def _rule_set(self, rule_set: Optional[RuleSet]) -> RuleSet:
        if rule_set is not None:
            return rule_set
        if self.guidelines is None:
            raise ValueError("No rule set given and no guidelines store configured")
        return self.guidelines.get_current()

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def generate_buy_signals(
        self,
        symbols: Optional[Sequence[str]] = None,
        rule_set: Optional[RuleSet] = None,
        portfolio_value: Optional[float] = None,
        exclude: Iterable[str] = (),
    ) -> List[Signal]:
        """
        Produce BUY signals for the universe.

        Args:
            symbols: Universe to screen (default: provider's symbols)
            rule_set: Rules to apply (default: guidelines store current set)
            portfolio_value: Total portfolio value used for sizing
            exclude: Symbols to skip (e.g. already held)
        """
        if portfolio_value is None:
            raise ValueError("portfolio_value is required to size buy signals")
        rules = self._rule_set(rule_set)
        if not rules.entry_signals.long_entries:
            logger.info("No long entry rules configured, skipping buy signal generation")
            return []

        skip = set(exclude)
        universe = [s for s in (symbols or self.market_data.symbols()) if s not in skip]
        snapshots = self._screen(universe, rules)
        logger.info(f"Screened {len(snapshots)}/{len(universe)} candidate stocks")
        if not snapshots:
            return []

        # Cap applies to screened candidates, before any feasibility work
        candidates = []
        for snapshot in snapshots[: self.max_signals_per_cycle]:
            assessment = assess_feasibility(snapshot, rules)
            if assessment.passed:
                candidates.append((snapshot, assessment))
            else:
                logger.debug(f"{snapshot.symbol} failed feasibility: {'; '.join(assessment.reasons)}")

        results = self._map(
            lambda item: self._analyze_entry(item[0], item[1], rules, portfolio_value),
            candidates,
            key=lambda item: item[0].symbol,
        )
        signals = [s for s in results if s is not None]
        for s in signals:
            self._record_signal(s)
        logger.info(f"Generated {len(signals)} buy signal(s) from {len(candidates)} feasible candidate(s)")
        return signals

    def _screen(self, symbols: Sequence[str], rules: RuleSet) -> List[MarketSnapshot]:
        snapshots = self._map(self._fetch_snapshot, symbols, key=lambda s: s)
        selection = rules.stock_selection
        passed = []
        for snapshot in snapshots:
            if snapshot is None:
                continue
            quote = snapshot.quote
            if not (selection.price_range.min_price <= quote.price <= selection.price_range.max_price):
                continue
            if quote.volume < selection.liquidity.min_average_daily_volume:
                continue
            if quote.spread_pct > selection.liquidity.max_bid_ask_spread_pct:
                continue
            passed.append(snapshot)
        return passed

    def _fetch_snapshot(self, symbol: str) -> Optional[MarketSnapshot]:
        try:
            snapshot = self.market_data.snapshot(symbol)
        except CriticalDataUnavailable as e:
            logger.warning(f"Market data unavailable for {symbol}: {e}")
            self._record_failure("market_data", "unavailable")
            return None
        if not is_fresh(snapshot.timestamp):
            logger.warning(f"Stale market data for {symbol} (as of {snapshot.timestamp.isoformat()}), skipping")
            self._record_failure("market_data", "stale")
            return None
        return snapshot

    def _analyze_entry(
        self,
        snapshot: MarketSnapshot,
        assessment: FeasibilityAssessment,
        rules: RuleSet,
        portfolio_value: float,
    ) -> Optional[Signal]:
        symbol = snapshot.symbol
        context_notes = assessment.to_dict()
        context_notes["min_risk_reward"] = min(e.min_risk_reward for e in rules.entry_signals.long_entries)
        context = AdvisoryContext(
            symbol=symbol,
            purpose="entry",
            price=snapshot.price,
            technicals=snapshot.technicals.to_dict(),
            assessment=context_notes,
        )
        opinion = self.advisory.advise(build_entry_prompt(context), context)
        if opinion.action != "BUY":
            logger.debug(f"{symbol}: advisory {opinion.action} ({opinion.error or opinion.reasoning})")
            return None
        if opinion.confidence < self.min_confidence:
            logger.info(f"{symbol}: BUY confidence {opinion.confidence:.2f} below {self.min_confidence:.2f}, dropped")
            return None

        entry = snapshot.price
        stop, targets = self.compute_levels(symbol, entry, snapshot, rules)
        size = size_position(portfolio_value, entry, stop, rules)
        if size <= 0:
            logger.info(f"{symbol}: computed size is zero (entry ${entry:.2f}, stop ${stop:.2f}), dropped")
            return None

        return Signal(
            symbol=symbol,
            action="BUY",
            confidence=opinion.confidence,
            recommended_size=size,
            entry_price=entry,
            stop_loss=stop,
            profit_targets=targets,
            reasoning=opinion.reasoning,
            technicals=snapshot.technicals,
        )

    def compute_levels(self, symbol: str, entry: float, snapshot: MarketSnapshot, rules: RuleSet):
        """
        Stop (tightest) and ascending profit targets for a prospective entry.

        Uses the same derivation the exit engine applies once the position
        is open, so signal levels and armed criteria agree.
        """
        provisional = Position(symbol=symbol, quantity=0, entry_price=entry, current_price=entry)
        criteria = self._levels.establish(provisional, entry, snapshot, rules)
        stop = max(c.value for c in criteria if c.type == CriterionType.STOP_LOSS)
        targets = sorted({c.value for c in criteria if c.type == CriterionType.PROFIT_TARGET})
        return stop, targets

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    def generate_sell_signals(
        self,
        positions: Iterable[Position],
        rule_set: Optional[RuleSet] = None,
    ) -> List[Signal]:
        """Ask the advisory layer whether each open position should be closed."""
        self._rule_set(rule_set)
        open_positions = [p for p in positions if p.quantity > 0]
        if not open_positions:
            return []

        results = self._map(self._analyze_exit, open_positions, key=lambda p: p.symbol)
        signals = [s for s in results if s is not None]
        for s in signals:
            self._record_signal(s)
        logger.info(f"Generated {len(signals)} sell signal(s) for {len(open_positions)} position(s)")
        return signals

    def _analyze_exit(self, position: Position) -> Optional[Signal]:
        snapshot = self._fetch_snapshot(position.symbol)
        if snapshot is None:
            return None

        price = snapshot.price
        unrealized_pct = (price - position.entry_price) / position.entry_price * 100 if position.entry_price else 0.0
        context = AdvisoryContext(
            symbol=position.symbol,
            purpose="exit",
            price=price,
            technicals=snapshot.technicals.to_dict(),
            position={
                "quantity": position.quantity,
                "entry_price": position.entry_price,
                "unrealized_pnl_pct": unrealized_pct,
                "stop_loss": position.stop_loss,
            },
        )
        opinion = self.advisory.advise(build_exit_prompt(context), context)
        if opinion.action != "SELL" or opinion.confidence < self.min_confidence:
            return None

        return Signal(
            symbol=position.symbol,
            action="SELL",
            confidence=opinion.confidence,
            recommended_size=int(position.quantity),
            entry_price=price,
            stop_loss=position.stop_loss or 0.0,
            profit_targets=[],
            reasoning=opinion.reasoning,
            technicals=snapshot.technicals,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _map(self, fn, items, key) -> List[Any]:
        """Run fn over items on the pool; timed-out or failed items yield None."""
        items = list(items)
        if not items:
            return []
        results: List[Any] = []
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="signals")
        try:
            futures = [(key(item), pool.submit(fn, item)) for item in items]
            for name, future in futures:
                try:
                    results.append(future.result(timeout=self.call_timeout))
                except FuturesTimeout:
                    future.cancel()
                    logger.warning(f"Timed out after {self.call_timeout}s processing {name}")
                    self._record_failure("signal_generation", "timeout")
                    results.append(None)
                except Exception as e:
                    logger.error(f"Error processing {name}: {e}", exc_info=True)
                    self._record_failure("signal_generation", "error")
                    results.append(None)
        finally:
            # Do not block on stragglers that already timed out
            pool.shutdown(wait=False, cancel_futures=True)
        return results

    def _record_signal(self, signal: Signal) -> None:
        if self.metrics is not None:
            self.metrics.record_signal(signal.action, signal.source)

    def _record_failure(self, collaborator: str, kind: str) -> None:
        if self.metrics is not None:
            self.metrics.record_collaborator_failure(collaborator, kind)
