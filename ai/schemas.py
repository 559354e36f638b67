"""
Advisory schemas and data structures.

Defines the contract between the signal generator and the language-model
advisory layer. The model only ever contributes an action, a confidence and
free-text reasoning; trade levels are computed elsewhere.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional

AdvisoryAction = Literal["BUY", "SELL", "PASS"]
AdvisoryPurpose = Literal["entry", "exit"]


@dataclass
class AdvisoryContext:
    """Structured context sent alongside the prompt."""
    symbol: str
    purpose: AdvisoryPurpose
    price: float
    technicals: Dict[str, float] = field(default_factory=dict)
    assessment: Dict[str, Any] = field(default_factory=dict)   # feasibility checks (entry)
    position: Optional[Dict[str, Any]] = None                  # held position (exit)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "purpose": self.purpose,
            "price": self.price,
            "technicals": dict(self.technicals),
            "assessment": dict(self.assessment),
            "position": dict(self.position) if self.position else None,
        }


@dataclass
class AdvisoryOpinion:
    """Parsed, sanitized advisory outcome."""
    action: AdvisoryAction
    confidence: float          # 0.0-1.0
    reasoning: str = ""

    # Metadata for observability
    latency_ms: Optional[float] = None
    model_used: Optional[str] = None
    error: Optional[str] = None  # Set when the PASS came from a fallback

    @property
    def is_fallback(self) -> bool:
        return self.error is not None

    @classmethod
    def passed(cls, reason: str) -> "AdvisoryOpinion":
        return cls(action="PASS", confidence=0.0, reasoning="", error=reason)
