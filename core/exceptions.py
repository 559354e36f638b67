"""Shared exception types for core trading logic."""

from typing import List, Optional


class RuleLoadError(RuntimeError):
    """Raised when the guidelines document cannot be turned into a valid rule set."""

    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    PARSE_FAILED = "PARSE_FAILED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    NOT_LOADED = "NOT_LOADED"

    def __init__(self, reason: str, message: str, errors: Optional[List[str]] = None):
        super().__init__(f"{reason}: {message}")
        self.reason = reason
        self.errors = list(errors or [])


class EngineStateError(RuntimeError):
    """Raised on lifecycle misuse (start while running, cycle while paused, ...)."""

    ALREADY_RUNNING = "ALREADY_RUNNING"
    NOT_RUNNING = "NOT_RUNNING"
    PAUSED = "PAUSED"
    ALREADY_PAUSED = "ALREADY_PAUSED"
    NOT_PAUSED = "NOT_PAUSED"
    CYCLE_IN_PROGRESS = "CYCLE_IN_PROGRESS"

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


class PortfolioError(RuntimeError):
    """Raised when a fill cannot be applied to the portfolio."""


class InsufficientFundsError(PortfolioError):
    """Raised when a BUY fill would leave the cash balance negative."""

    def __init__(self, symbol: str, required: float, available: float):
        super().__init__(
            f"Insufficient cash for {symbol}: need ${required:.2f}, have ${available:.2f}"
        )
        self.symbol = symbol
        self.required = required
        self.available = available


class ExecutionError(RuntimeError):
    """Raised by an execution provider when an order cannot be filled."""

    def __init__(self, symbol: str, message: str):
        super().__init__(f"{symbol}: {message}")
        self.symbol = symbol


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original
