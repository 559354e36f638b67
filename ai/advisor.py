"""
Advisory Service - language-model opinion layer.

Single entry point for asking a model whether a screened setup (or a held
position) deserves action. Handles the timed call, reply parsing, clamping
and fallback.

Core principles:
- The model contributes an action, a confidence and reasoning. Nothing else.
- Any timeout, error or malformed reply degrades to PASS.
- Never raises into the caller.
"""

import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Any, Dict, Optional

from .model_client import ModelClient
from .schemas import AdvisoryContext, AdvisoryOpinion

log = logging.getLogger(__name__)

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)
_VALID_ACTIONS = ("BUY", "SELL", "PASS")


class AdvisoryService:
    """
    Timed, fail-safe wrapper around a ModelClient.

    The call runs on a small private executor so the timeout holds even
    when the client ignores its own timeout argument.
    """

    def __init__(
        self,
        client: ModelClient,
        enabled: bool = True,
        timeout_s: float = 10.0,
        max_workers: int = 4,
        audit=None,
        metrics=None,
    ):
        self.client = client
        self.enabled = enabled
        self.timeout_s = timeout_s
        self.audit = audit
        self.metrics = metrics
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="advisory")

        self.calls = 0
        self.failures = 0
        self.consecutive_failures = 0
        self.last_latency_ms: Optional[float] = None

    def advise(self, prompt: str, context: AdvisoryContext) -> AdvisoryOpinion:
        """
        Ask the model for an opinion on one symbol.

        Returns:
            AdvisoryOpinion; PASS with error set on any failure
        """
        if not self.enabled:
            log.debug("Advisory disabled, passing")
            return AdvisoryOpinion.passed("disabled")

        self.calls += 1
        payload = context.to_dict()
        start = time.perf_counter()
        try:
            future = self._executor.submit(self.client.advise, prompt, payload, self.timeout_s)
            reply = future.result(timeout=self.timeout_s)
        except FuturesTimeout:
            future.cancel()
            return self._fail(context, "timeout", start, prompt)
        except Exception as e:
            log.error(f"Advisory call failed for {context.symbol}: {e}", exc_info=True)
            return self._fail(context, f"error: {str(e)[:100]}", start, prompt)

        latency = (time.perf_counter() - start) * 1000
        opinion = self.parse_reply(reply)
        opinion.latency_ms = latency
        opinion.model_used = getattr(self.client, "model", "unknown")
        self.last_latency_ms = latency

        if opinion.is_fallback:
            self._count_failure(opinion.error)
        else:
            self.consecutive_failures = 0

        log.info(
            f"Advisory {context.purpose} {context.symbol}: {opinion.action} "
            f"conf={opinion.confidence:.2f} in {latency:.1f}ms"
        )
        self._record(prompt, context, reply, opinion)
        return opinion

    @staticmethod
    def parse_reply(reply: Any) -> AdvisoryOpinion:
        """
        Turn a raw client reply into a sanitized opinion.

        The reply's "content" may wrap the JSON object in prose or code
        fences; the first {...} block is extracted. Unknown actions become
        PASS and confidence is clamped to [0, 1].
        """
        if not isinstance(reply, dict):
            return AdvisoryOpinion.passed("malformed: reply is not a mapping")

        content = reply.get("content")
        if not isinstance(content, str) or not content.strip():
            return AdvisoryOpinion.passed("malformed: empty content")

        match = _JSON_BLOCK.search(content)
        if not match:
            return AdvisoryOpinion.passed("malformed: no JSON object in content")
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            return AdvisoryOpinion.passed(f"malformed: {e.msg}")
        if not isinstance(data, dict):
            return AdvisoryOpinion.passed("malformed: JSON is not an object")

        action = str(data.get("action", "")).strip().upper()
        if action not in _VALID_ACTIONS:
            log.warning(f"Unknown advisory action '{action}', treating as PASS")
            action = "PASS"

        raw_conf = data.get("confidence", reply.get("confidence"))
        try:
            confidence = float(raw_conf)
        except (TypeError, ValueError):
            confidence = 0.0
        confidence = max(0.0, min(1.0, confidence))

        reasoning = data.get("reasoning") or reply.get("reasoning") or ""
        return AdvisoryOpinion(action=action, confidence=confidence, reasoning=str(reasoning)[:500])

    def is_healthy(self) -> bool:
        return self.consecutive_failures < 3

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _fail(self, context: AdvisoryContext, reason: str, start: float, prompt: str) -> AdvisoryOpinion:
        latency = (time.perf_counter() - start) * 1000
        log.warning(f"Advisory {context.symbol} degraded to PASS after {latency:.1f}ms ({reason})")
        opinion = AdvisoryOpinion.passed(reason)
        opinion.latency_ms = latency
        opinion.model_used = getattr(self.client, "model", "unknown")
        self._count_failure(reason)
        self._record(prompt, context, None, opinion)
        return opinion

    def _count_failure(self, reason: Optional[str]) -> None:
        self.failures += 1
        self.consecutive_failures += 1
        if self.metrics is not None:
            kind = "timeout" if reason == "timeout" else "error"
            self.metrics.record_collaborator_failure("advisory", kind)

    def _record(self, prompt: str, context: AdvisoryContext, reply: Any, opinion: AdvisoryOpinion) -> None:
        if self.audit is None:
            return
        self.audit.log_event(
            "advisory",
            {
                "symbol": context.symbol,
                "purpose": context.purpose,
                "prompt": prompt,
                "reply": reply,
                "action": opinion.action,
                "confidence": opinion.confidence,
                "reasoning": opinion.reasoning,
                "latency_ms": opinion.latency_ms,
                "model": opinion.model_used,
                "error": opinion.error,
            },
        )


def build_entry_prompt(context: AdvisoryContext) -> str:
    """Prompt for a screened candidate that passed feasibility."""
    t = context.technicals
    lines = [
        f"Evaluate a potential swing-trade LONG entry in {context.symbol} at ${context.price:.2f}.",
        "",
        "Technicals:",
    ]
    for key in ("rsi", "macd", "macd_signal", "sma20", "sma50", "ema20", "atr", "vwap"):
        if key in t:
            lines.append(f"- {key.upper()}: {t[key]:.2f}")
    if context.assessment:
        lines.append("")
        lines.append("Screening notes:")
        for key, value in context.assessment.items():
            lines.append(f"- {key}: {value}")
    lines.append("")
    lines.append("Answer BUY only if the setup is clean; otherwise PASS.")
    return "\n".join(lines)


def build_exit_prompt(context: AdvisoryContext) -> str:
    """Prompt for a held position under review."""
    pos = context.position or {}
    t = context.technicals
    lines = [
        f"Review an open swing-trade position in {context.symbol}.",
        f"- Entry: ${float(pos.get('entry_price', 0.0)):.2f}",
        f"- Current: ${context.price:.2f}",
        f"- Unrealized P&L: {float(pos.get('unrealized_pnl_pct', 0.0)):.2f}%",
        f"- Shares: {pos.get('quantity', 0)}",
        "",
        "Technicals:",
    ]
    for key in ("rsi", "sma20", "sma50", "atr"):
        if key in t:
            lines.append(f"- {key.upper()}: {t[key]:.2f}")
    lines.append("")
    lines.append("Answer SELL if the trade thesis has broken down; otherwise PASS.")
    return "\n".join(lines)
