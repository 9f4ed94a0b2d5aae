"""Backends speaking the OpenAI chat-completions protocol (OpenAI, DeepSeek, LiteLLM proxy)."""

from __future__ import annotations

import logging

import requests

from autofix.errors import ProviderError, ProviderTimeout
from autofix.llm import LLMResponse
from autofix.providers.base import Provider

logger = logging.getLogger("autofix.providers.openai")

BASE_URLS = {
    "openai": "https://api.openai.com",
    "deepseek": "https://api.deepseek.com",
    "litellm": "http://localhost:4000",
}


class OpenAICompatibleProvider(Provider):
    def __init__(self, name: str = "openai", model: str = "gpt-4o", base_url: str = "", **kwargs):
        super().__init__(model, **kwargs)
        self.name = name
        self.base_url = (base_url or BASE_URLS.get(name, BASE_URLS["openai"])).rstrip("/")

    def complete(self, system_prompt: str, user_message: str) -> LLMResponse:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            resp = requests.post(
                f"{self.base_url}/v1/chat/completions",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise ProviderTimeout(self.name, f"request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise ProviderError(self.name, f"request failed: {e}") from e

        if resp.status_code >= 400:
            raise ProviderError(self.name, f"HTTP {resp.status_code}: {resp.text[:300]}")

        try:
            data = resp.json()
            text = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(self.name, f"unexpected response shape: {e}") from e

        usage = data.get("usage") or {}
        return LLMResponse(
            text=text,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            model=data.get("model", self.model),
        )
