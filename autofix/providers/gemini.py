"""Google Gemini backend (generateContent REST endpoint)."""

from __future__ import annotations

import requests

from autofix.errors import ProviderError, ProviderTimeout
from autofix.llm import LLMResponse
from autofix.providers.base import Provider

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"


class GeminiProvider(Provider):
    name = "gemini"

    def __init__(self, model: str = "gemini-2.0-flash", base_url: str = GEMINI_BASE_URL, **kwargs):
        super().__init__(model, **kwargs)
        self.base_url = base_url.rstrip("/")

    def complete(self, system_prompt: str, user_message: str) -> LLMResponse:
        payload = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"role": "user", "parts": [{"text": user_message}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_tokens,
                "responseMimeType": "application/json",
            },
        }
        try:
            resp = requests.post(
                f"{self.base_url}/v1beta/models/{self.model}:generateContent",
                params={"key": self.api_key},
                json=payload,
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
            parts = data["candidates"][0]["content"]["parts"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(self.name, f"unexpected response shape: {e}") from e

        usage = data.get("usageMetadata") or {}
        return LLMResponse(
            text="".join(p.get("text", "") for p in parts),
            input_tokens=usage.get("promptTokenCount", 0),
            output_tokens=usage.get("candidatesTokenCount", 0),
            model=self.model,
        )
