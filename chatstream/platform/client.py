"""Client for the platform API that owns chatbot configuration."""

from typing import Optional

import httpx
from pydantic import ValidationError

from chatstream.core.logging import get_logger
from chatstream.domain.pricing import default_model_config
from chatstream.models.job import ModelConfig

logger = get_logger(__name__)


class PlatformClient:
    """Reads chatbot configuration from the platform's public embed endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        default_provider: Optional[str] = None,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize platform client.

        Args:
            base_url: Platform API root (defaults to settings.chatbot_api_url)
            timeout: Request timeout in seconds
            default_provider: Provider used when a chatbot names none
            client: Preconfigured HTTP client (tests)
        """
        from chatstream.core.config import settings

        self.base_url = (base_url or settings.chatbot_api_url).rstrip("/")
        self.default_provider = default_provider or settings.default_provider
        self.client = client or httpx.AsyncClient(
            timeout=timeout or settings.chatbot_api_timeout
        )

    async def get_chatbot_config(self, chatbot_id: str) -> ModelConfig:
        """
        Resolve a chatbot's model configuration.

        Lookup failures and invalid settings are logged and answered with
        default configuration so the visitor still gets a reply.

        Raises:
            ConfigurationError: If the chatbot names a provider we do not know
        """
        url = f"{self.base_url}/chatbots/embed/{chatbot_id}"
        try:
            response = await self.client.get(url)
            response.raise_for_status()
            chatbot = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                f"Failed to fetch chatbot config: {e}",
                chatbot_id=chatbot_id,
            )
            return default_model_config(self.default_provider)

        if not isinstance(chatbot, dict):
            logger.warning("Chatbot config is not an object", chatbot_id=chatbot_id)
            return default_model_config(self.default_provider)

        config = default_model_config(chatbot.get("provider") or self.default_provider)
        overrides = {
            "model": chatbot.get("model"),
            "temperature": chatbot.get("temperature"),
            "max_tokens": chatbot.get("maxTokens"),
            "system_prompt": chatbot.get("systemPrompt"),
        }
        try:
            return ModelConfig.model_validate(
                {
                    **config.model_dump(),
                    **{key: value for key, value in overrides.items() if value is not None},
                }
            )
        except ValidationError as e:
            logger.error(
                f"Invalid chatbot config, using provider defaults: {e}",
                chatbot_id=chatbot_id,
            )
            return config

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
