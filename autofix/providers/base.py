"""Abstract language-model backend."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from autofix.errors import UnparsablePatch
from autofix.llm import LLMResponse, parse_json_response
from autofix.models import AnalysisResult, ProviderProposal

logger = logging.getLogger("autofix.providers")


@dataclass(frozen=True)
class PromptContext:
    system_prompt: str
    user_message: str
    run_id: int = 0
    round: int = 1


class Provider(ABC):
    """One backend, one capability: given context, return a root cause plus proposed edits.

    Subclasses only decide how to send the request and read the reply text;
    turning that text into an AnalysisResult is shared.
    """

    name: str = "base"

    def __init__(
        self,
        model: str,
        api_key: str = "",
        max_tokens: int = 8192,
        temperature: float = 0.1,
        timeout: float = 120.0,
    ):
        self.model = model
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, model={self.model!r})"

    @abstractmethod
    def complete(self, system_prompt: str, user_message: str) -> LLMResponse:
        """Send one request. Raises ProviderError / ProviderTimeout on failure."""
        ...

    def propose(self, context: PromptContext) -> AnalysisResult:
        response = self.complete(context.system_prompt, context.user_message)
        try:
            proposal = parse_json_response(response.text, ProviderProposal)
        except ValueError as e:
            raise UnparsablePatch(f"{self.name} returned a malformed proposal: {e}") from e

        logger.info(
            f"[{self.name}] run {context.run_id} round {context.round}: "
            f"{len(proposal.edits)} edits, confidence {proposal.confidence:.2f}"
        )
        return AnalysisResult(
            provider=self.name,
            model=response.model,
            root_cause=proposal.root_cause,
            confidence=proposal.confidence,
            remediation_steps=proposal.remediation_steps,
            rationale=proposal.rationale,
            proposed_edits=proposal.edits,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )
