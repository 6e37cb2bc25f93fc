"""Claude models through the Anthropic Messages API."""

from __future__ import annotations

import os
from typing import Any

from anthropic import AsyncAnthropic

from control_tower.llm.base import BaseLLMProvider, LLMResponse

DEFAULT_MODEL = "claude-sonnet-4-20250514"


def _text_of(message: Any) -> str:
    return "".join(block.text for block in message.content if block.type == "text")


class AnthropicProvider(BaseLLMProvider):
    def __init__(self, api_key: str | None = None, default_model: str | None = None):
        key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        super().__init__(api_key=key, default_model=default_model or DEFAULT_MODEL)
        self._client = AsyncAnthropic(api_key=key)

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
        # No native JSON switch; callers put the JSON instruction in the system prompt.
        request: dict[str, Any] = dict(
            model=self._resolve_model(model),
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        if system:
            request["system"] = system

        message = await self._client.messages.create(**request)
        usage = message.usage
        return LLMResponse(
            content=_text_of(message),
            model=message.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
