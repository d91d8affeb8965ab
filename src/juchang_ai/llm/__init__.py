"""LLM provider implementations.

The orchestration engine only talks to ``LLMProvider``; concrete
providers are chosen by configuration.

Usage:
    from juchang_ai.llm import create_provider

    provider = create_provider(provider_type="openai", api_key="sk-xxx")
    response = provider.generate_text(messages=[...], tools=[...])
"""

import logging
import threading
from typing import Literal, Optional

from juchang_ai.config import settings
from juchang_ai.llm.base import LLMProvider, LLMResponse, ToolCall, parse_json_object

logger = logging.getLogger(__name__)

ProviderType = Literal["openai", "anthropic"]

_default_provider: Optional[LLMProvider] = None
_provider_lock = threading.Lock()


def create_provider(
    provider_type: ProviderType,
    api_key: str,
    model: str | None = None,
) -> LLMProvider:
    """Factory function to create LLM providers.

    Args:
        provider_type: The provider to use ("openai" or "anthropic")
        api_key: API key for the provider
        model: Optional model override (uses provider default if not specified)

    Returns:
        Configured LLMProvider instance

    Raises:
        ValueError: If provider_type is unknown or api_key is missing
    """
    if not api_key:
        raise ValueError(f"API key is required for {provider_type} provider")

    if provider_type == "openai":
        from juchang_ai.llm.openai_provider import OpenAIProvider

        return OpenAIProvider(
            api_key=api_key,
            model=model or "gpt-4o-mini",
            embedding_model=settings.embedding_model,
        )

    elif provider_type == "anthropic":
        from juchang_ai.llm.anthropic_provider import AnthropicProvider

        return AnthropicProvider(api_key=api_key, model=model or "claude-sonnet-4-5")

    else:
        raise ValueError(
            f"Unknown provider type: {provider_type}. "
            f"Supported providers: openai, anthropic"
        )


def get_default_provider() -> Optional[LLMProvider]:
    """Provider built from settings, created once. None when no key is configured."""
    global _default_provider

    with _provider_lock:
        if _default_provider is None:
            api_key = (
                settings.anthropic_api_key
                if settings.llm_provider == "anthropic"
                else settings.openai_api_key
            )
            if not api_key:
                logger.warning(
                    f"No API key configured for {settings.llm_provider} - "
                    f"model calls disabled"
                )
                return None
            _default_provider = create_provider(
                provider_type=settings.llm_provider,  # type: ignore[arg-type]
                api_key=api_key,
                model=settings.chat_model or None,
            )
        return _default_provider


__all__ = [
    "LLMProvider",
    "LLMResponse",
    "ProviderType",
    "ToolCall",
    "create_provider",
    "get_default_provider",
    "parse_json_object",
]
