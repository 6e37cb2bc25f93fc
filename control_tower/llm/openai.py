"""GPT models through the OpenAI chat completions API."""

from __future__ import annotations

import os
from typing import Any

from openai import AsyncOpenAI

from control_tower.llm.base import BaseLLMProvider, LLMResponse

DEFAULT_MODEL = "gpt-4o"


class OpenAIProvider(BaseLLMProvider):
    def __init__(self, api_key: str | None = None, default_model: str | None = None):
        key = api_key or os.environ.get("OPENAI_API_KEY")
        super().__init__(api_key=key, default_model=default_model or DEFAULT_MODEL)
        self._client = AsyncOpenAI(api_key=key)

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
        conversation = [{"role": "system", "content": system}] if system else []
        conversation.append({"role": "user", "content": prompt})

        request: dict[str, Any] = dict(
            model=self._resolve_model(model),
            messages=conversation,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        completion = await self._client.chat.completions.create(**request)
        usage = completion.usage
        return LLMResponse(
            content=completion.choices[0].message.content or "",
            model=completion.model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )
