"""Abstract base class for LLM providers backing the agent hub."""

from __future__ import annotations

import abc
import json
import re
from dataclasses import dataclass

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

JSON_INSTRUCTION = "You MUST respond with valid JSON only. No markdown fences, no extra text."


@dataclass
class LLMResponse:
    """One completion from a provider."""

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def parse_json_reply(text: str) -> dict:
    """Parse a JSON object from model output, tolerating fences and chatter.

    Raises ValueError when no object can be recovered.
    """
    cleaned = _FENCE_RE.sub("", text.strip()).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start < 0 or end <= start:
            raise ValueError("No JSON object found in model reply") from None
        try:
            data = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed JSON in model reply: {e}") from None
    if not isinstance(data, dict):
        raise ValueError("Model reply is JSON but not an object")
    return data


class BaseLLMProvider(abc.ABC):
    """Interface that every LLM provider must implement."""

    def __init__(self, api_key: str | None = None, default_model: str | None = None):
        self.api_key = api_key
        self.default_model = default_model

    @abc.abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        system: str | None = None,
        model: str | None = None,
        temperature: float = 0.4,
        max_tokens: int = 4096,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Send a single-turn request and return the response."""
        ...

    async def complete_json(
        self,
        prompt: str,
        *,
        system: str | None = None,
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 4096,
    ) -> tuple[dict, LLMResponse]:
        """Request a JSON object. Returns the parsed object and the raw response."""
        json_system = f"{system or ''}\n\n{JSON_INSTRUCTION}".strip()
        response = await self.complete(
            prompt,
            system=json_system,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=True,
        )
        return parse_json_reply(response.content), response

    def _resolve_model(self, model: str | None) -> str:
        if model:
            return model
        if self.default_model:
            return self.default_model
        raise ValueError("No model specified and no default_model configured.")
