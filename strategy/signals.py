"""
swingtrader Strategy: Signal types

A Signal is a proposed BUY/SELL with confidence and computed trade levels.
It is produced by the signal generator or the exit-criteria engine and is
consumed once by the cycle orchestrator; trades derived from it are what
gets persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from infra.market_data import Technicals

SignalAction = Literal["BUY", "SELL"]
SignalSource = Literal["generator", "exit"]


@dataclass
class Signal:
    """Trade proposal, not yet risk-checked or executed"""
    symbol: str
    action: SignalAction
    confidence: float
    recommended_size: int
    entry_price: float
    stop_loss: float
    profit_targets: List[float] = field(default_factory=list)
    reasoning: str = ""
    technicals: Optional[Technicals] = None
    timestamp: Optional[datetime] = None
    source: SignalSource = "generator"
    exit_type: Optional[str] = None  # criterion type for exit signals
    id: Optional[str] = None

    def __post_init__(self):
        if self.action not in ("BUY", "SELL"):
            raise ValueError(f"Invalid signal action: {self.action}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        if self.recommended_size < 0:
            raise ValueError(f"recommended_size must be >= 0, got {self.recommended_size}")
        if self.action == "BUY":
            targets = self.profit_targets
            if any(b <= a for a, b in zip(targets, targets[1:])):
                raise ValueError(f"BUY profit targets must be strictly increasing: {targets}")
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)
        if self.id is None:
            self.id = uuid4().hex

    @property
    def is_buy(self) -> bool:
        return self.action == "BUY"

    @property
    def notional(self) -> float:
        return self.recommended_size * self.entry_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "action": self.action,
            "confidence": round(self.confidence, 3),
            "recommended_size": self.recommended_size,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "profit_targets": list(self.profit_targets),
            "reasoning": self.reasoning,
            "technicals": self.technicals.to_dict() if self.technicals else None,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "source": self.source,
            "exit_type": self.exit_type,
        }
