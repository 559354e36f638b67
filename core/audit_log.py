"""
swingtrader Core: Audit Logger

Structured logging of trading decisions for debugging and analysis.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Records:
    - Cycle summaries (signals, approvals, trades, errors)
    - Risk validations for every checked signal
    - Advisory interactions (prompt, reply, parsed opinion)
    - Engine lifecycle events

    Output format: JSONL (one JSON object per line). Writers on several
    threads share one lock so lines never interleave.
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        if audit_file:
            self.audit_file = Path(audit_file)
        else:
            self.audit_file = Path("logs/audit.jsonl")

        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_event(self, kind: str, payload: Dict[str, Any]) -> None:
        """Append one event of the given kind."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "kind": kind,
            **payload,
        }
        self._write(entry)

    def log_cycle(self, result: Any) -> None:
        """
        Log a completed (or failed) trading cycle.

        Args:
            result: CycleResult (anything with to_dict) or a plain dict
        """
        data = result.to_dict() if hasattr(result, "to_dict") else dict(result)
        self.log_event("cycle", data)
        logger.debug(f"Audited cycle: status={data.get('status')}")

    def log_risk_validation(self, signal: Any, validation: Any) -> None:
        """Log the outcome of a risk validation for one signal."""
        self.log_event(
            "risk_validation",
            {
                "symbol": getattr(signal, "symbol", None),
                "action": getattr(signal, "action", None),
                "signal_id": getattr(signal, "id", None),
                "recommended_size": getattr(signal, "recommended_size", None),
                "validation": validation.to_dict() if hasattr(validation, "to_dict") else validation,
            },
        )

    def get_recent(self, n: int = 10, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get the N most recent entries, optionally filtered by kind.

        Returns:
            List of entries (most recent first)
        """
        if not self.audit_file.exists():
            return []

        with self._lock:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()

        entries = []
        for line in reversed(lines):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if kind is None or entry.get("kind") == kind:
                entries.append(entry)
            if len(entries) >= n:
                break
        return entries

    def _write(self, entry: Dict[str, Any]) -> None:
        try:
            line = json.dumps(entry, default=str)
            with self._lock:
                with open(self.audit_file, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write audit log: {e}")
