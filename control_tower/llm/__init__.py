"""LLM providers the agent hub can talk to, keyed by config name."""

from control_tower.llm.base import BaseLLMProvider, LLMResponse, parse_json_reply
from control_tower.llm.anthropic import AnthropicProvider
from control_tower.llm.openai import OpenAIProvider

PROVIDERS: dict[str, type[BaseLLMProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
}


def get_provider(name: str, **kwargs) -> BaseLLMProvider:
    """Instantiate the provider registered as ``name``."""
    provider_cls = PROVIDERS.get(name)
    if provider_cls is None:
        known = ", ".join(sorted(PROVIDERS))
        raise ValueError(f"Unknown LLM provider '{name}' (known: {known})")
    return provider_cls(**kwargs)


__all__ = [
    "PROVIDERS",
    "AnthropicProvider",
    "BaseLLMProvider",
    "LLMResponse",
    "OpenAIProvider",
    "get_provider",
    "parse_json_reply",
]
