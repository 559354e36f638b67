"""
Tests for the model client factory and the deterministic mock client.
"""

import json

import pytest

from ai.model_client import MockClient, create_model_client


def _advise(client, purpose="entry", **technicals):
    reply = client.advise("prompt", {"purpose": purpose, "technicals": technicals}, timeout=1.0)
    return json.loads(reply["content"])


class TestMockClient:
    def test_uptrend_buys(self):
        assert _advise(MockClient(), rsi=55, sma20=105, sma50=100)["action"] == "BUY"

    def test_oversold_buys_with_lower_confidence(self):
        data = _advise(MockClient(), rsi=30, sma20=95, sma50=100)

        assert data["action"] == "BUY"
        assert data["confidence"] == pytest.approx(0.62)

    def test_overbought_entry_passes(self):
        assert _advise(MockClient(), rsi=75, sma20=105, sma50=100)["action"] == "PASS"

    def test_exit_on_overbought(self):
        assert _advise(MockClient(), purpose="exit", rsi=78, sma20=105, sma50=100)["action"] == "SELL"

    def test_exit_on_broken_trend(self):
        data = _advise(MockClient(), purpose="exit", rsi=50, sma20=95, sma50=100)

        assert data["action"] == "SELL"
        assert data["confidence"] == pytest.approx(0.7)

    def test_exit_holds_intact_trend(self):
        assert _advise(MockClient(), purpose="exit", rsi=50, sma20=105, sma50=100)["action"] == "PASS"

    def test_fixed_response_and_call_count(self):
        client = MockClient(fixed_response={"content": "x"})

        assert client.advise("p", {}, 1.0) == {"content": "x"}
        assert client.calls == 1

    def test_configured_error_is_raised(self):
        client = MockClient(error=ConnectionError("boom"))

        with pytest.raises(ConnectionError):
            client.advise("p", {}, 1.0)


class TestFactory:
    def test_mock_provider(self):
        client = create_model_client("MOCK")

        assert isinstance(client, MockClient)
        assert client.model == "mock"

    @pytest.mark.parametrize("provider", ["openai", "anthropic"])
    def test_real_providers_require_key(self, provider):
        with pytest.raises(ValueError, match="api_key"):
            create_model_client(provider)

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            create_model_client("llama")
