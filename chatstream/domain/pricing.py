"""Cost and priority model.

Price and priority tables are plain configuration data. The defaults below
are wrapped in an immutable ``PricingConfig`` at startup; tests and
deployments can build their own and pass it in.
"""

import json
import math
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from chatstream.core.errors import ConfigurationError
from chatstream.models.job import JobType, ModelConfig

DEFAULT_PRIORITY = 5
COST_PRECISION = Decimal("0.000001")

# USD per 1000 tokens
DEFAULT_PRICES = {
    "anthropic": {
        "claude-3-haiku": {"input": 0.00025, "output": 0.00125},
        "claude-3-opus": {"input": 0.015, "output": 0.075},
        "claude-3-sonnet": {"input": 0.003, "output": 0.015},
    },
    "azure": {
        "gpt-4": {"input": 0.03, "output": 0.06},
        "gpt-35-turbo": {"input": 0.0005, "output": 0.0015},
    },
    "google": {
        "gemini-pro": {"input": 0.00025, "output": 0.0005},
        "gemini-pro-vision": {"input": 0.00025, "output": 0.0005},
        "gemini-1.5-pro": {"input": 0.00125, "output": 0.005},
        "text-embedding-004": {"input": 0.000025, "output": 0.0},
    },
    "local": {
        "llama2": {"input": 0.0, "output": 0.0},
        "mistral": {"input": 0.0, "output": 0.0},
    },
    "openai": {
        "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
        "gpt-4": {"input": 0.03, "output": 0.06},
        "gpt-4-turbo": {"input": 0.01, "output": 0.03},
        "gpt-4-turbo-preview": {"input": 0.01, "output": 0.03},
        "text-embedding-ada-002": {"input": 0.0001, "output": 0.0},
    },
    "zhipu": {
        "glm-4": {"input": 0.0001, "output": 0.0004},
        "embedding-2": {"input": 0.00005, "output": 0.0},
    },
}

DEFAULT_PRIORITIES = {
    JobType.CHAT_RESPONSE: 10,
    JobType.SENTIMENT_ANALYSIS: 8,
    JobType.INTENT_CLASSIFICATION: 8,
    JobType.ENTITY_EXTRACTION: 6,
    JobType.SUMMARIZATION: 4,
    JobType.EMBEDDING_GENERATION: 3,
    JobType.BATCH_PROCESSING: 2,
}

# Fallback model configuration per provider, used when a chatbot has none
DEFAULT_MODEL_CONFIGS = {
    "anthropic": {"model": "claude-3-haiku", "max_tokens": 1024, "temperature": 0.7},
    "azure": {"model": "gpt-35-turbo", "max_tokens": 1024, "temperature": 0.7},
    "google": {"model": "gemini-pro", "max_tokens": 1024, "temperature": 0.7},
    "local": {"model": "llama2", "max_tokens": 2048, "temperature": 0.7},
    "openai": {"model": "gpt-3.5-turbo", "max_tokens": 1024, "temperature": 0.7},
    "zhipu": {"model": "glm-4", "max_tokens": 1024, "temperature": 0.7},
}


@dataclass(frozen=True)
class ModelPrice:
    input: Decimal
    output: Decimal


def _freeze_prices(prices: Mapping) -> Mapping[str, Mapping[str, ModelPrice]]:
    return MappingProxyType(
        {
            provider: MappingProxyType(
                {
                    model: ModelPrice(
                        input=Decimal(str(p["input"])),
                        output=Decimal(str(p["output"])),
                    )
                    for model, p in models.items()
                }
            )
            for provider, models in prices.items()
        }
    )


@dataclass(frozen=True)
class PricingConfig:
    """Immutable price and priority tables."""

    prices: Mapping[str, Mapping[str, ModelPrice]] = field(
        default_factory=lambda: _freeze_prices(DEFAULT_PRICES)
    )
    priorities: Mapping[str, int] = field(
        default_factory=lambda: MappingProxyType(
            {job_type.value: p for job_type, p in DEFAULT_PRIORITIES.items()}
        )
    )

    @classmethod
    def from_tables(cls, prices: Mapping, priorities: Mapping | None = None) -> "PricingConfig":
        if priorities is None:
            priorities = {job_type.value: p for job_type, p in DEFAULT_PRIORITIES.items()}
        for job_type, value in priorities.items():
            if not 1 <= int(value) <= 10:
                raise ConfigurationError(
                    f"Priority for {job_type} must be between 1 and 10, got {value}"
                )
        return cls(
            prices=_freeze_prices(prices),
            priorities=MappingProxyType(
                {_type_key(k): int(v) for k, v in priorities.items()}
            ),
        )

    @classmethod
    def from_file(cls, path: Path) -> "PricingConfig":
        """
        Load tables from JSON of the form
        ``{"prices": {provider: {model: {input, output}}}, "priorities": {...}}``.
        """
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_tables(data.get("prices", DEFAULT_PRICES), data.get("priorities"))


def _type_key(job_type: JobType | str) -> str:
    return job_type.value if isinstance(job_type, JobType) else str(job_type)


_default_config = PricingConfig()


def load_pricing_config() -> PricingConfig:
    """Build the pricing config for this process from settings."""
    from chatstream.core.config import settings

    path = settings.get_price_table_path()
    if path is None:
        return _default_config
    return PricingConfig.from_file(path)


def priority_of(
    job_type: JobType | str, priorities: Mapping[str, int] | None = None
) -> int:
    """Queue priority for a job type (higher is served first, unknown is 5)."""
    table = _default_config.priorities if priorities is None else priorities
    return table.get(_type_key(job_type), DEFAULT_PRIORITY)


def estimate_cost(
    provider: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
    prices: Mapping[str, Mapping[str, ModelPrice]] | None = None,
) -> Decimal:
    """
    Cost in USD of a call, rounded to 6 decimal places.

    Raises:
        ConfigurationError: If the provider/model pair has no price entry
    """
    table = _default_config.prices if prices is None else prices
    price = table.get(provider, {}).get(model)
    if price is None:
        raise ConfigurationError(
            f"Unknown model {model} for provider {provider}",
            {"provider": provider, "model": model},
        )

    input_cost = Decimal(input_tokens) / 1000 * price.input
    output_cost = Decimal(output_tokens) / 1000 * price.output
    return (input_cost + output_cost).quantize(COST_PRECISION, rounding=ROUND_HALF_UP)


def estimate_tokens(text: str) -> int:
    # ~4 characters per token; pre-flight checks only, billing uses provider usage
    return math.ceil(len(text) / 4)


def default_model_config(provider: str) -> ModelConfig:
    """
    Fallback model configuration for a provider.

    Raises:
        ConfigurationError: If the provider is unknown
    """
    defaults = DEFAULT_MODEL_CONFIGS.get(provider)
    if defaults is None:
        raise ConfigurationError(f"Unknown provider {provider}", {"provider": provider})
    return ModelConfig(provider=provider, **defaults)
