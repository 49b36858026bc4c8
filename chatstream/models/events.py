"""Events carried on the broadcast channel and streamed to clients."""

import uuid
from datetime import UTC, datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from chatstream.llm.models import Usage


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


class _WireModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class MessageEvent(_WireModel):
    """Raw visitor message; the sole trigger for a chat-response job."""

    type: Literal["message"] = "message"
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    conversation_id: str
    chatbot_id: str
    tenant_id: str = "default"
    message: str
    session_id: Optional[str] = None
    timestamp: str = Field(default_factory=_timestamp)


class StreamEvent(_WireModel):
    type: Literal["stream"] = "stream"
    conversation_id: str
    content: str
    timestamp: str = Field(default_factory=_timestamp)


class CompleteEvent(_WireModel):
    type: Literal["complete"] = "complete"
    conversation_id: str
    content: str
    usage: Optional[Usage] = None
    timestamp: str = Field(default_factory=_timestamp)


class ErrorEvent(_WireModel):
    type: Literal["error"] = "error"
    conversation_id: str
    error: str
    timestamp: str = Field(default_factory=_timestamp)


BroadcastEvent = Annotated[
    Union[MessageEvent, StreamEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]

_event_adapter = TypeAdapter(BroadcastEvent)

# Broadcast event type -> client-facing event name
CLIENT_EVENT_NAMES = {
    "stream": "message:stream",
    "complete": "message:complete",
    "error": "message:error",
}


def parse_event(raw: str | bytes) -> BroadcastEvent:
    """Decode one JSON event from the channel.

    Raises:
        pydantic.ValidationError: If the payload is not a known event
    """
    return _event_adapter.validate_json(raw)


def encode_event(event: BroadcastEvent) -> str:
    return _event_adapter.dump_json(event, by_alias=True, exclude_none=True).decode("utf-8")
