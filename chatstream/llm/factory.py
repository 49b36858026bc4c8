"""Factory for creating LLM provider instances."""

from typing import TYPE_CHECKING

from chatstream.core.config import settings
from chatstream.core.errors import ConfigurationError
from chatstream.core.logging import get_logger

if TYPE_CHECKING:
    from chatstream.llm.base import BaseLLMProvider

logger = get_logger(__name__)

# One instance per provider name, shared by all worker slots
_provider_instances: "dict[str, BaseLLMProvider]" = {}


def get_llm_provider(name: str | None = None) -> "BaseLLMProvider":
    """
    Get the LLM provider instance for a provider name.

    Args:
        name: Provider name; defaults to ``settings.default_provider``

    Returns:
        Configured LLM provider instance

    Raises:
        ConfigurationError: If the provider is unknown or not configured
    """
    name = (name or settings.default_provider).lower()

    if name in _provider_instances:
        return _provider_instances[name]

    try:
        config = settings.get_provider_config(name)
    except ValueError as e:
        logger.error(f"LLM provider configuration error: {e}")
        raise ConfigurationError(f"Configuration error: {e}", {"provider": name}) from e

    logger.info(f"Initializing LLM provider: {name} with model: {config['model']}")

    if name == "openai":
        from chatstream.llm.openai_provider import OpenAIProvider

        provider = OpenAIProvider(
            model=config["model"], api_key=config["api_key"], timeout=config["timeout"]
        )
    elif name == "anthropic":
        from chatstream.llm.anthropic_provider import AnthropicProvider

        provider = AnthropicProvider(
            model=config["model"], api_key=config["api_key"], timeout=config["timeout"]
        )
    elif name == "zhipu":
        from chatstream.llm.zhipu_provider import ZhipuProvider

        provider = ZhipuProvider(
            model=config["model"], api_key=config["api_key"], timeout=config["timeout"]
        )
    else:
        from chatstream.llm.vertex_provider import VertexProvider

        provider = VertexProvider(
            model=config["model"],
            api_key=config["api_key"],
            project_id=config["project_id"],
            location=config["location"],
            timeout=config["timeout"],
        )

    _provider_instances[name] = provider
    logger.info(f"LLM provider {name} initialized successfully")
    return provider


def register_provider(name: str, provider: "BaseLLMProvider") -> None:
    """Install a provider instance under a name (custom backends, tests)."""
    _provider_instances[name.lower()] = provider


async def close_providers() -> None:
    for provider in _provider_instances.values():
        await provider.close()
    _provider_instances.clear()


def reset_providers() -> None:
    """Forget cached provider instances (useful for testing)."""
    _provider_instances.clear()
