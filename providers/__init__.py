"""Language-model provider adapters."""

from typing import Optional

import aiohttp

from models import ProviderConfig

from .anthropic import AnthropicProvider
from .base import ProviderAdapter
from .custom import CustomProvider
from .gemini import GeminiProvider
from .openai_compat import OpenAICompatibleProvider

_OPENAI_FAMILY = frozenset({"openai", "grok", "xai", "local", "openrouter", "deepseek"})


def build_provider(
    config: ProviderConfig,
    session: Optional[aiohttp.ClientSession] = None,
) -> ProviderAdapter:
    """Select the adapter implementation for a provider row."""
    kind = (config.provider_type or "").lower()
    if kind in _OPENAI_FAMILY:
        return OpenAICompatibleProvider(config, session=session)
    if kind in ("gemini", "google"):
        return GeminiProvider(config, session=session)
    if kind in ("anthropic", "claude"):
        return AnthropicProvider(config, session=session)
    if kind == "custom":
        return CustomProvider(config, session=session)
    raise ValueError(f"Unknown provider type: {config.provider_type!r}")


__all__ = [
    "ProviderAdapter",
    "OpenAICompatibleProvider",
    "GeminiProvider",
    "AnthropicProvider",
    "CustomProvider",
    "build_provider",
]
