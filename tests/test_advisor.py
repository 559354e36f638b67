"""
Tests for AdvisoryService: reply parsing, timeouts and fail-safe degradation.
"""

from unittest.mock import Mock

import pytest

from ai.advisor import AdvisoryService, build_entry_prompt, build_exit_prompt
from ai.model_client import MockClient
from ai.schemas import AdvisoryContext


def _context(purpose="entry", **technicals):
    values = {"rsi": 55.0, "sma20": 101.0, "sma50": 95.0, "atr": 2.0}
    values.update(technicals)
    position = {"quantity": 10, "entry_price": 90.0, "unrealized_pnl_pct": 11.1} if purpose == "exit" else None
    return AdvisoryContext(symbol="AAPL", purpose=purpose, price=100.0, technicals=values, position=position)


@pytest.fixture
def service():
    svc = AdvisoryService(MockClient(), timeout_s=1.0)
    yield svc
    svc.shutdown()


class TestParseReply:
    def test_plain_json(self):
        opinion = AdvisoryService.parse_reply(
            {"content": '{"action": "buy", "confidence": 0.8, "reasoning": "clean base"}'}
        )

        assert opinion.action == "BUY"
        assert opinion.confidence == pytest.approx(0.8)
        assert opinion.reasoning == "clean base"
        assert not opinion.is_fallback

    def test_json_wrapped_in_prose(self):
        content = 'Sure, here you go:\n```json\n{"action": "SELL", "confidence": 0.7}\n```'

        opinion = AdvisoryService.parse_reply({"content": content, "reasoning": "from envelope"})

        assert opinion.action == "SELL"
        assert opinion.reasoning == "from envelope"

    def test_confidence_is_clamped(self):
        high = AdvisoryService.parse_reply({"content": '{"action": "BUY", "confidence": 1.7}'})
        low = AdvisoryService.parse_reply({"content": '{"action": "BUY", "confidence": -3}'})

        assert high.confidence == 1.0
        assert low.confidence == 0.0

    def test_unknown_action_becomes_pass(self):
        opinion = AdvisoryService.parse_reply({"content": '{"action": "SHORT", "confidence": 0.9}'})

        assert opinion.action == "PASS"

    def test_non_numeric_confidence_is_zero(self):
        opinion = AdvisoryService.parse_reply({"content": '{"action": "BUY", "confidence": "high"}'})

        assert opinion.confidence == 0.0

    @pytest.mark.parametrize(
        "reply",
        [
            None,
            "BUY",
            {"content": ""},
            {"content": "no json here"},
            {"content": "{not valid json}"},
        ],
    )
    def test_malformed_replies_fall_back_to_pass(self, reply):
        opinion = AdvisoryService.parse_reply(reply)

        assert opinion.action == "PASS"
        assert opinion.confidence == 0.0
        assert opinion.is_fallback
        assert opinion.error.startswith("malformed")


class TestAdvise:
    def test_entry_opinion_from_mock(self, service):
        opinion = service.advise("prompt", _context())

        assert opinion.action == "BUY"
        assert opinion.model_used == "mock"
        assert opinion.latency_ms is not None
        assert service.calls == 1
        assert service.consecutive_failures == 0

    def test_exit_opinion_from_mock(self, service):
        opinion = service.advise("prompt", _context("exit", rsi=80.0))

        assert opinion.action == "SELL"

    def test_disabled_service_never_calls_client(self):
        client = MockClient()
        svc = AdvisoryService(client, enabled=False)

        opinion = svc.advise("prompt", _context())

        assert opinion.action == "PASS"
        assert opinion.error == "disabled"
        assert client.calls == 0
        svc.shutdown()

    def test_timeout_degrades_to_pass(self):
        svc = AdvisoryService(MockClient(delay_s=0.5), timeout_s=0.05)

        opinion = svc.advise("prompt", _context())

        assert opinion.action == "PASS"
        assert opinion.error == "timeout"
        assert svc.failures == 1
        svc.shutdown()

    def test_client_error_degrades_to_pass(self, metrics):
        svc = AdvisoryService(MockClient(error=RuntimeError("rate limited")), metrics=metrics)

        opinion = svc.advise("prompt", _context())

        assert opinion.action == "PASS"
        assert "rate limited" in opinion.error
        assert metrics.failure_snapshot()["advisory:error"] == 1
        svc.shutdown()

    def test_consecutive_failures_mark_unhealthy(self):
        svc = AdvisoryService(MockClient(error=RuntimeError("down")))

        for _ in range(3):
            svc.advise("prompt", _context())

        assert not svc.is_healthy()
        svc.shutdown()

    def test_success_resets_consecutive_failures(self):
        client = MockClient(error=RuntimeError("down"))
        svc = AdvisoryService(client)
        svc.advise("prompt", _context())
        svc.advise("prompt", _context())

        client.error = None
        svc.advise("prompt", _context())

        assert svc.consecutive_failures == 0
        assert svc.failures == 2
        assert svc.is_healthy()
        svc.shutdown()

    def test_malformed_reply_counts_as_failure(self):
        svc = AdvisoryService(MockClient(fixed_response={"content": "I think you should buy"}))

        opinion = svc.advise("prompt", _context())

        assert opinion.action == "PASS"
        assert svc.consecutive_failures == 1
        svc.shutdown()

    def test_exchange_is_audited(self):
        audit = Mock()
        svc = AdvisoryService(MockClient(), audit=audit)

        svc.advise("the prompt", _context())

        audit.log_event.assert_called_once()
        kind, payload = audit.log_event.call_args[0]
        assert kind == "advisory"
        assert payload["prompt"] == "the prompt"
        assert payload["action"] == "BUY"
        assert payload["reply"]["confidence"] == pytest.approx(0.75)
        svc.shutdown()


def test_entry_prompt_lists_technicals_and_notes():
    context = _context()
    context.assessment = {"trend": "UP", "issues": "none"}

    prompt = build_entry_prompt(context)

    assert "AAPL" in prompt
    assert "RSI: 55.00" in prompt
    assert "- trend: UP" in prompt


def test_exit_prompt_includes_position():
    prompt = build_exit_prompt(_context("exit"))

    assert "Entry: $90.00" in prompt
    assert "Shares: 10" in prompt
