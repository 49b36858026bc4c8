"""Application configuration."""

import base64
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_PROVIDERS = ("openai", "anthropic", "zhipu", "google")


class Settings(BaseSettings):
    """Application settings."""

    # Redis (queue, broadcast channel, rate-limit counters)
    redis_url: str = "redis://localhost:6379/0"
    broadcast_channel: str = "chat:messages"

    # Job queue
    queue_prefix: str = "chatstream"
    worker_concurrency: int = 5
    visibility_timeout_seconds: int = 120
    block_time_ms: int = 1000  # Idle poll interval when queues are empty
    keep_completed: int = 100
    keep_failed: int = 500

    # Platform API (chatbot configuration lookup)
    chatbot_api_url: str = "http://localhost:3000"
    chatbot_api_timeout: float = 5.0

    # LLM Provider Selection (fallback when a chatbot names none)
    default_provider: str = "openai"

    # OpenAI
    openai_api_key: str = ""
    openai_model: str = "gpt-3.5-turbo"
    openai_timeout: float = 30.0

    # Anthropic (Claude)
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-haiku"
    anthropic_timeout: float = 30.0

    # Zhipu (GLM-4)
    zhipu_api_key: str = ""
    zhipu_model: str = "glm-4"
    zhipu_timeout: float = 60.0

    # Google Vertex AI
    vertex_project_id: str = ""
    vertex_location: str = "us-central1"
    vertex_api_key: str = ""
    vertex_api_key_base64: Optional[str] = None  # For container deployments
    vertex_model: str = "gemini-pro"
    vertex_timeout: float = 30.0

    # Default per-tenant limits
    requests_per_minute: int = 60
    tokens_per_minute: int = 40000
    cost_per_day: float = 10.0

    # Live connection join tokens
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"

    # Optional JSON file replacing the built-in price/priority tables
    price_table_path: str = ""

    # App Settings
    log_level: str = "INFO"
    environment: str = "development"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def get_provider_config(self, provider: str) -> dict:
        """
        Get configuration for one LLM provider.

        Args:
            provider: Provider name (openai, anthropic, zhipu, google)

        Returns:
            Dictionary with provider, model, api_key and timeout
            (plus project_id/location for google)

        Raises:
            ValueError: If provider is invalid or its credentials are missing
        """
        provider = provider.lower()

        if provider == "openai":
            if not self.openai_api_key:
                raise ValueError("OPENAI_API_KEY is required for provider openai")
            return {
                "provider": "openai",
                "model": self.openai_model,
                "api_key": self.openai_api_key,
                "timeout": self.openai_timeout,
            }
        elif provider == "anthropic":
            if not self.anthropic_api_key:
                raise ValueError("ANTHROPIC_API_KEY is required for provider anthropic")
            return {
                "provider": "anthropic",
                "model": self.anthropic_model,
                "api_key": self.anthropic_api_key,
                "timeout": self.anthropic_timeout,
            }
        elif provider == "zhipu":
            if not self.zhipu_api_key:
                raise ValueError("ZHIPU_API_KEY is required for provider zhipu")
            return {
                "provider": "zhipu",
                "model": self.zhipu_model,
                "api_key": self.zhipu_api_key,
                "timeout": self.zhipu_timeout,
            }
        elif provider == "google":
            if not self.vertex_project_id:
                raise ValueError("VERTEX_PROJECT_ID is required for provider google")
            return {
                "provider": "google",
                "model": self.vertex_model,
                "api_key": self.get_vertex_api_key(),
                "timeout": self.vertex_timeout,
                "project_id": self.vertex_project_id,
                "location": self.vertex_location,
            }
        else:
            raise ValueError(
                f"Invalid provider: {provider}. "
                f"Must be one of: {', '.join(SUPPORTED_PROVIDERS)}"
            )

    def get_vertex_api_key(self) -> str:
        """
        Get the Vertex AI bearer token, handling the base64 env var.

        Returns:
            Token string, empty when Vertex is reached without a token
            (e.g. behind a workload-identity proxy)

        Raises:
            ValueError: If the base64 value cannot be decoded
        """
        if self.vertex_api_key_base64:
            try:
                return base64.b64decode(self.vertex_api_key_base64).decode("utf-8").strip()
            except Exception as e:
                raise ValueError(f"Failed to decode base64 Vertex API key: {e}")
        return self.vertex_api_key

    def get_price_table_path(self) -> Path | None:
        """Resolve ``price_table_path`` relative to the project root."""
        if not self.price_table_path:
            return None
        path = Path(self.price_table_path)
        if not path.is_absolute():
            project_root = Path(__file__).parent.parent.parent
            path = project_root / path
        if not path.exists():
            raise FileNotFoundError(
                f"Price table not found: {path}. Check PRICE_TABLE_PATH setting."
            )
        return path


settings = Settings()
