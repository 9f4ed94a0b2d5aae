"""Language-model backends, selected by priority list rather than by branching."""

from __future__ import annotations

from typing import TYPE_CHECKING

from autofix.providers.base import PromptContext, Provider
from autofix.providers.claude import ClaudeProvider
from autofix.providers.gemini import GeminiProvider
from autofix.providers.openai_compat import OpenAICompatibleProvider

if TYPE_CHECKING:
    from autofix.config import Settings

__all__ = [
    "ClaudeProvider",
    "GeminiProvider",
    "OpenAICompatibleProvider",
    "PromptContext",
    "Provider",
    "build_providers",
]


def build_providers(settings: Settings) -> list[Provider]:
    """Instantiate the configured backends in priority order."""
    common = {
        "max_tokens": settings.llm_max_tokens,
        "temperature": settings.llm_temperature,
        "timeout": settings.provider_timeout_seconds,
    }
    factories = {
        "anthropic": lambda: ClaudeProvider(
            model=settings.anthropic_model,
            api_key=settings.anthropic_api_key,
            thinking_budget=settings.thinking_budget,
            **common,
        ),
        "openai": lambda: OpenAICompatibleProvider(
            name="openai", model=settings.openai_model, api_key=settings.openai_api_key, **common
        ),
        "deepseek": lambda: OpenAICompatibleProvider(
            name="deepseek", model=settings.deepseek_model, api_key=settings.deepseek_api_key, **common
        ),
        "litellm": lambda: OpenAICompatibleProvider(
            name="litellm",
            model=settings.litellm_model,
            api_key=settings.litellm_api_key,
            base_url=settings.litellm_base_url,
            **common,
        ),
        "gemini": lambda: GeminiProvider(model=settings.gemini_model, api_key=settings.gemini_api_key, **common),
    }

    providers: list[Provider] = []
    for name in settings.providers:
        if name not in factories:
            raise ValueError(f"Unknown provider: {name}")
        providers.append(factories[name]())
    return providers
