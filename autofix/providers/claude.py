"""Anthropic Claude backend."""

from __future__ import annotations

from autofix.llm import LLMResponse, call_llm
from autofix.providers.base import Provider


class ClaudeProvider(Provider):
    name = "anthropic"

    def __init__(self, model: str = "claude-sonnet-4-5-20250929", thinking_budget: int = 0, **kwargs):
        super().__init__(model, **kwargs)
        self.thinking_budget = thinking_budget

    def complete(self, system_prompt: str, user_message: str) -> LLMResponse:
        return call_llm(
            system_prompt=system_prompt,
            user_message=user_message,
            model=self.model,
            max_tokens=self.max_tokens,
            api_key=self.api_key,
            timeout=self.timeout,
            thinking_budget=self.thinking_budget,
        )
