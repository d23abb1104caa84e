from __future__ import annotations

from stepflow.agent.providers.anthropic_provider import AnthropicProvider
from stepflow.agent.providers.base import ModelAdapter
from stepflow.agent.providers.openai_provider import OpenAIProvider
from stepflow.config import ModelSettings

OPENAI_COMPATIBLE_PROVIDERS = {
    "zhipu",
    "hunyuan",
    "deepseek",
    "qwen",
    "doubao",
    "openai",
    "custom",
}


def build_provider(provider: str, api_key: str, base_url: str | None = None) -> ModelAdapter:
    if provider in OPENAI_COMPATIBLE_PROVIDERS:
        return OpenAIProvider(api_key=api_key, base_url=base_url)
    if provider == "anthropic":
        return AnthropicProvider(api_key=api_key, base_url=base_url)
    raise ValueError(f"Unsupported provider: {provider}")


def build_provider_from_settings(model: ModelSettings) -> ModelAdapter:
    return build_provider(model.provider, model.api_key, model.base_url)
