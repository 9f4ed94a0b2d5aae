"""Claude API wrapper and JSON extraction shared by the language-model backends."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import anthropic

from autofix.errors import ProviderError, ProviderTimeout

logger = logging.getLogger("autofix.llm")


@dataclass
class LLMResponse:
    text: str
    input_tokens: int
    output_tokens: int
    model: str
    thinking: str = ""


def call_llm(
    system_prompt: str,
    user_message: str,
    model: str = "claude-sonnet-4-5-20250929",
    max_tokens: int = 4096,
    api_key: str = "",
    timeout: float = 120.0,
    thinking_budget: int = 0,
) -> LLMResponse:
    """Call Claude once and return the response with token usage.

    Retries are the orchestrator's job, so every SDK failure is surfaced as a
    ProviderError (ProviderTimeout for timeouts) on the first occurrence.
    When thinking_budget > 0, enables extended thinking.
    """
    client = anthropic.Anthropic(api_key=api_key, timeout=timeout, max_retries=0)

    kwargs: dict = {
        "model": model,
        "max_tokens": max_tokens + thinking_budget if thinking_budget else max_tokens,
        "messages": [{"role": "user", "content": user_message}],
    }

    if thinking_budget > 0:
        kwargs["thinking"] = {
            "type": "enabled",
            "budget_tokens": thinking_budget,
        }
        # Extended thinking doesn't support system parameter; prepend to user message
        if system_prompt:
            kwargs["messages"] = [
                {"role": "user", "content": f"<system>\n{system_prompt}\n</system>\n\n{user_message}"},
            ]
    else:
        kwargs["system"] = system_prompt

    try:
        if thinking_budget > 0:
            with client.messages.stream(**kwargs) as stream:
                response = stream.get_final_message()
        else:
            response = client.messages.create(**kwargs)
    except anthropic.APITimeoutError as e:
        raise ProviderTimeout("anthropic", f"request timed out after {timeout}s") from e
    except anthropic.RateLimitError as e:
        raise ProviderError("anthropic", f"rate limited: {e}") from e
    except anthropic.APIError as e:
        raise ProviderError("anthropic", f"API error: {e}") from e

    text_parts = []
    thinking_parts = []
    for block in response.content:
        if block.type == "text":
            text_parts.append(block.text)
        elif block.type == "thinking":
            thinking_parts.append(block.thinking)

    return LLMResponse(
        text="\n".join(text_parts),
        input_tokens=response.usage.input_tokens,
        output_tokens=response.usage.output_tokens,
        model=model,
        thinking="\n".join(thinking_parts),
    )


def parse_json_response(text: str, model_class):
    """Extract JSON from LLM response and parse into a Pydantic model."""
    cleaned = text.strip()

    # Strip markdown code fences
    if "```json" in cleaned:
        cleaned = cleaned.split("```json", 1)[1].split("```", 1)[0].strip()
    elif cleaned.startswith("```"):
        cleaned = cleaned.split("```", 1)[1].split("```", 1)[0].strip()

    # Fallback: find JSON object boundaries if there's extra text
    if cleaned and cleaned[0] != "{":
        start = cleaned.find("{")
        if start == -1:
            raise ValueError(f"No JSON found in LLM response. First 300 chars: {text[:300]}")
        end = cleaned.rfind("}") + 1
        if end <= start:
            raise ValueError(f"Incomplete JSON in LLM response. First 300 chars: {text[:300]}")
        cleaned = cleaned[start:end]

    try:
        return model_class.model_validate_json(cleaned)
    except Exception as e:
        raise ValueError(
            f"Failed to parse LLM response as {model_class.__name__}: {e}\n"
            f"Cleaned text (first 300 chars): {cleaned[:300]}"
        ) from e
