"""
Model client abstraction for advisory providers (OpenAI, Anthropic, mock).

Every client implements advise(prompt, context, timeout) and returns a dict
with "content" (raw model text), "confidence" and "reasoning". Parsing and
sanitizing the content is the advisor's job, not the client's.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

log = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a swing-trading analyst reviewing one US equity at a time.

Your role:
- Judge whether the setup described is worth acting on now
- Favor capital preservation when the evidence is mixed
- You do not choose position size, stop loss or targets; those are fixed by rules

Response format (valid JSON, nothing else):
{
  "action": "BUY|SELL|PASS",
  "confidence": 0.0-1.0,
  "reasoning": "one or two sentences"
}
"""


class ModelClient(ABC):
    """Abstract base class for advisory model clients."""

    model: str = "unknown"

    @abstractmethod
    def advise(self, prompt: str, context: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """
        Ask the model for an opinion.

        Args:
            prompt: Human-readable prompt
            context: Structured context (symbol, technicals, position, ...)
            timeout: Max time in seconds

        Returns:
            Dict with content, confidence and reasoning

        Raises:
            TimeoutError: If call exceeds timeout
            Exception: On API errors
        """
        pass


class OpenAIClient(ModelClient):
    """OpenAI chat completions client."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", base_url: Optional[str] = None):
        from openai import OpenAI

        self.model = model
        self.base_url = base_url or "https://api.openai.com/v1"
        self.client = OpenAI(api_key=api_key, base_url=self.base_url, timeout=10.0)

    def advise(self, prompt: str, context: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": f"{prompt}\n\nContext:\n{json.dumps(context, default=str)}"},
                ],
                response_format={"type": "json_object"},
                temperature=0.2,
                timeout=timeout,
            )
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"OpenAI call failed after {elapsed*1000:.1f}ms: {e}")
            raise

        elapsed = time.perf_counter() - start
        log.info(f"OpenAI call completed in {elapsed*1000:.1f}ms")
        content = response.choices[0].message.content or ""
        return {"content": content, "confidence": None, "reasoning": ""}


class AnthropicClient(ModelClient):
    """Anthropic messages API client."""

    def __init__(self, api_key: str, model: str = "claude-3-5-sonnet-20241022"):
        from anthropic import Anthropic

        self.model = model
        self.client = Anthropic(api_key=api_key, timeout=10.0)

    def advise(self, prompt: str, context: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=512,
                temperature=0.2,
                system=SYSTEM_PROMPT,
                messages=[
                    {"role": "user", "content": f"{prompt}\n\nContext:\n{json.dumps(context, default=str)}"}
                ],
                timeout=timeout,
            )
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"Anthropic call failed after {elapsed*1000:.1f}ms: {e}")
            raise

        elapsed = time.perf_counter() - start
        log.info(f"Anthropic call completed in {elapsed*1000:.1f}ms")
        content = response.content[0].text if response.content else ""
        return {"content": content, "confidence": None, "reasoning": ""}


class MockClient(ModelClient):
    """
    Deterministic rule-of-thumb client for paper trading and tests.

    Entry: BUY when RSI is not overbought and the short average is above the
    long one. Exit: SELL when RSI is overbought or the short average has
    crossed below the long one. Everything else is PASS.
    """

    model = "mock"

    def __init__(
        self,
        fixed_response: Optional[Dict[str, Any]] = None,
        delay_s: float = 0.0,
        error: Optional[Exception] = None,
    ):
        """
        Args:
            fixed_response: Returned verbatim for every call
            delay_s: Artificial latency (exercise timeouts)
            error: Raised on every call (exercise failure handling)
        """
        self.fixed_response = fixed_response
        self.delay_s = delay_s
        self.error = error
        self.calls = 0

    def advise(self, prompt: str, context: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        self.calls += 1
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        if self.fixed_response is not None:
            return self.fixed_response

        tech = context.get("technicals") or {}
        rsi = float(tech.get("rsi", 50.0))
        sma20 = float(tech.get("sma20", 0.0))
        sma50 = float(tech.get("sma50", 0.0))

        if context.get("purpose") == "exit":
            if rsi >= 75:
                action, confidence, reasoning = "SELL", 0.8, f"RSI {rsi:.0f} is overbought; lock in gains."
            elif sma20 and sma50 and sma20 < sma50 * 0.98:
                action, confidence, reasoning = "SELL", 0.7, "Short-term average broke below the long-term trend."
            else:
                action, confidence, reasoning = "PASS", 0.5, "Trend intact; hold."
        else:
            if rsi < 70 and sma20 > sma50:
                action, confidence, reasoning = "BUY", 0.75, f"Uptrend with RSI {rsi:.0f} leaves room to run."
            elif rsi < 35:
                action, confidence, reasoning = "BUY", 0.62, f"Oversold at RSI {rsi:.0f}; mean-reversion setup."
            else:
                action, confidence, reasoning = "PASS", 0.4, "No clear edge."

        content = json.dumps({"action": action, "confidence": confidence, "reasoning": reasoning})
        return {"content": content, "confidence": confidence, "reasoning": reasoning}


def create_model_client(
    provider: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs
) -> ModelClient:
    """
    Factory function to create appropriate model client.

    Args:
        provider: "openai", "anthropic", or "mock"
        api_key: API key for the provider
        model: Model name (provider-specific)

    Raises:
        ValueError: If provider is unknown or a key is missing
    """
    provider = provider.lower()

    if provider == "openai":
        if not api_key:
            raise ValueError("OpenAI requires api_key")
        return OpenAIClient(api_key=api_key, model=model or "gpt-4o-mini", **kwargs)

    elif provider == "anthropic":
        if not api_key:
            raise ValueError("Anthropic requires api_key")
        return AnthropicClient(api_key=api_key, model=model or "claude-3-5-sonnet-20241022")

    elif provider == "mock":
        return MockClient(fixed_response=kwargs.get("fixed_response"))

    else:
        raise ValueError(f"Unknown provider: {provider}. Use 'openai', 'anthropic', or 'mock'")
