"""Data models for LLM providers."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chatstream.models.job import ChatMessage, TokenUsage


class Usage(TokenUsage):
    """Token usage; accepts both provider snake_case and client camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StreamChunk(BaseModel):
    """One incremental fragment of a streamed completion."""

    content: str = ""
    is_complete: bool = False
    usage: Optional[Usage] = None


class Completion(str):
    """Complete response text; a ``str`` that also carries provider usage."""

    usage: Optional[Usage]

    def __new__(cls, text: str, usage: Optional[Usage] = None):
        obj = super().__new__(cls, text)
        obj.usage = usage
        return obj


class GenerateOptions(BaseModel):
    """Options recognised by every provider's ``generate``."""

    model: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, gt=0)
    stream: bool = False

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "model": "gpt-4-turbo",
                "temperature": 0.7,
                "max_tokens": 500,
                "stream": True,
            }
        }
    )


Messages = List[ChatMessage]
