"""Tests for LLM wrapper and JSON parsing."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import anthropic
import pytest

from autofix.errors import ProviderError, ProviderTimeout
from autofix.llm import LLMResponse, call_llm, parse_json_response
from autofix.models import ProviderProposal

PROPOSAL = '{"root_cause": "typo", "confidence": 0.8, "edits": [{"path": "a.py", "search": "x", "replace": "y"}]}'


class TestParseJsonResponse:
    def test_clean_json(self):
        result = parse_json_response(PROPOSAL, ProviderProposal)
        assert result.root_cause == "typo"
        assert result.edits[0].path == "a.py"

    def test_markdown_fenced_json(self):
        result = parse_json_response(f"```json\n{PROPOSAL}\n```", ProviderProposal)
        assert result.confidence == 0.8

    def test_json_with_preamble(self):
        result = parse_json_response(f"Here is the fix:\n{PROPOSAL}\nGood luck.", ProviderProposal)
        assert result.root_cause == "typo"

    def test_no_json_raises(self):
        with pytest.raises(ValueError, match="No JSON found"):
            parse_json_response("no json here at all", ProviderProposal)

    def test_invalid_json_raises(self):
        with pytest.raises(ValueError, match="Failed to parse"):
            parse_json_response('{"bad": "data"}', ProviderProposal)

    def test_confidence_out_of_range_raises(self):
        with pytest.raises(ValueError):
            parse_json_response('{"root_cause": "x", "confidence": 3}', ProviderProposal)


def _response(text="Hello", blocks=None):
    text_block = MagicMock()
    text_block.type = "text"
    text_block.text = text
    response = MagicMock()
    response.content = blocks or [text_block]
    response.usage.input_tokens = 50
    response.usage.output_tokens = 100
    return response


class TestCallLLM:
    @patch("autofix.llm.anthropic.Anthropic")
    def test_successful_call(self, mock_anthropic_cls):
        mock_client = MagicMock()
        mock_anthropic_cls.return_value = mock_client
        mock_client.messages.create.return_value = _response()

        result = call_llm("system", "user", api_key="sk-ant-test")
        assert isinstance(result, LLMResponse)
        assert result.text == "Hello"
        assert result.input_tokens == 50
        assert result.thinking == ""
        kwargs = mock_client.messages.create.call_args.kwargs
        assert kwargs["system"] == "system"

    @patch("autofix.llm.anthropic.Anthropic")
    def test_client_does_not_retry_itself(self, mock_anthropic_cls):
        mock_anthropic_cls.return_value.messages.create.return_value = _response()
        call_llm("system", "user", api_key="sk-ant-test", timeout=30)
        assert mock_anthropic_cls.call_args.kwargs["max_retries"] == 0
        assert mock_anthropic_cls.call_args.kwargs["timeout"] == 30

    @patch("autofix.llm.anthropic.Anthropic")
    def test_rate_limit_becomes_provider_error(self, mock_anthropic_cls):
        mock_client = MagicMock()
        mock_anthropic_cls.return_value = mock_client
        mock_client.messages.create.side_effect = anthropic.RateLimitError(
            message="rate limited",
            response=MagicMock(status_code=429, headers={}),
            body=None,
        )

        with pytest.raises(ProviderError, match="rate limited") as exc:
            call_llm("system", "user", api_key="sk-ant-test")
        assert exc.value.provider == "anthropic"
        assert mock_client.messages.create.call_count == 1

    @patch("autofix.llm.anthropic.Anthropic")
    def test_timeout_becomes_provider_timeout(self, mock_anthropic_cls):
        mock_client = MagicMock()
        mock_anthropic_cls.return_value = mock_client
        mock_client.messages.create.side_effect = anthropic.APITimeoutError(request=MagicMock())

        with pytest.raises(ProviderTimeout):
            call_llm("system", "user", api_key="sk-ant-test")

    @patch("autofix.llm.anthropic.Anthropic")
    def test_extended_thinking_streams(self, mock_anthropic_cls):
        mock_client = MagicMock()
        mock_anthropic_cls.return_value = mock_client

        thinking_block = MagicMock()
        thinking_block.type = "thinking"
        thinking_block.thinking = "Let me look at the log."
        text_block = MagicMock()
        text_block.type = "text"
        text_block.text = "{}"
        stream = MagicMock()
        stream.get_final_message.return_value = _response(blocks=[thinking_block, text_block])
        mock_client.messages.stream.return_value.__enter__.return_value = stream

        result = call_llm("system", "user", api_key="sk-ant-test", max_tokens=1000, thinking_budget=500)
        assert result.thinking == "Let me look at the log."
        assert result.text == "{}"
        kwargs = mock_client.messages.stream.call_args.kwargs
        assert kwargs["max_tokens"] == 1500
        assert "system" not in kwargs
        assert "<system>" in kwargs["messages"][0]["content"]
