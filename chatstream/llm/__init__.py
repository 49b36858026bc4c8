"""LLM provider abstraction."""

from chatstream.llm.base import BaseLLMProvider
from chatstream.llm.errors import (
    APIError,
    CapabilityError,
    InvalidResponseError,
    LLMProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    QuotaExceededError,
)
from chatstream.llm.factory import get_llm_provider, register_provider, reset_providers
from chatstream.llm.models import Completion, GenerateOptions, StreamChunk, Usage

__all__ = [
    "APIError",
    "BaseLLMProvider",
    "CapabilityError",
    "Completion",
    "GenerateOptions",
    "InvalidResponseError",
    "LLMProviderError",
    "ProviderRateLimitError",
    "ProviderTimeoutError",
    "QuotaExceededError",
    "StreamChunk",
    "Usage",
    "get_llm_provider",
    "register_provider",
    "reset_providers",
]
