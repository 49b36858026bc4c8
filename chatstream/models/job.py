"""AI job data models for the queue system."""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from chatstream.core.errors import InvalidJobTransition

MAX_RETRIES = 3


class JobType(str, Enum):
    """Closed set of AI job kinds."""

    CHAT_RESPONSE = "chat_response"
    SENTIMENT_ANALYSIS = "sentiment_analysis"
    INTENT_CLASSIFICATION = "intent_classification"
    ENTITY_EXTRACTION = "entity_extraction"
    SUMMARIZATION = "summarization"
    BATCH_PROCESSING = "batch_processing"
    EMBEDDING_GENERATION = "embedding_generation"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.FAILED: {JobStatus.RETRYING},
    JobStatus.RETRYING: {JobStatus.PROCESSING, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}


class ChatMessage(BaseModel):
    """A single conversation turn."""

    role: Literal["system", "user", "assistant"]
    content: str


class ModelConfig(BaseModel):
    """Per-chatbot model configuration."""

    provider: str = Field(default="openai", description="LLM provider name")
    model: str = Field(..., description="Model identifier")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, gt=0)
    system_prompt: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "provider": "openai",
                "model": "gpt-4-turbo",
                "temperature": 0.7,
                "max_tokens": 500,
                "system_prompt": "You are a helpful assistant.",
            }
        }
    )


# Payload variants, keyed by job type


class ChatResponsePayload(BaseModel):
    type: Literal["chat_response"] = "chat_response"
    chatbot_id: str
    session_id: Optional[str] = None
    content: str
    context: List[ChatMessage] = Field(default_factory=list)
    chatbot_config: Optional[ModelConfig] = None
    stream: bool = True


class AnalysisPayload(BaseModel):
    """Sentiment, intent and entity jobs share a shape."""

    type: Literal[
        "sentiment_analysis",
        "intent_classification",
        "entity_extraction",
    ]
    content: str
    chatbot_config: Optional[ModelConfig] = None


class SummarizationPayload(BaseModel):
    type: Literal["summarization"] = "summarization"
    context: List[ChatMessage]
    chatbot_config: Optional[ModelConfig] = None

    @property
    def content(self) -> str:
        return "\n".join(f"{m.role}: {m.content}" for m in self.context)


class BatchPayload(BaseModel):
    type: Literal["batch_processing"] = "batch_processing"
    items: List[str] = Field(..., min_length=1)
    instruction: str = "Respond to the following input."
    chatbot_config: Optional[ModelConfig] = None

    @property
    def content(self) -> str:
        return "\n".join(self.items)


class EmbeddingPayload(BaseModel):
    type: Literal["embedding_generation"] = "embedding_generation"
    content: str
    provider: str = "openai"


JobPayload = Annotated[
    Union[
        ChatResponsePayload,
        AnalysisPayload,
        SummarizationPayload,
        BatchPayload,
        EmbeddingPayload,
    ],
    Field(discriminator="type"),
]


class TokenUsage(BaseModel):
    """Token counts reported by a provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class JobResult(BaseModel):
    content: Optional[str] = None
    embedding: Optional[List[float]] = None
    items: Optional[List[str]] = None
    usage: Optional[TokenUsage] = None


class JobError(BaseModel):
    code: str
    message: str
    provider: Optional[str] = None
    retryable: bool = False
    retry_after: Optional[int] = None


class JobMetadata(BaseModel):
    retry_count: int = 0
    cost_estimate: Optional[float] = None
    actual_cost: Optional[float] = None
    processing_time: Optional[float] = None
    model: Optional[str] = None
    provider: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AIJob(BaseModel):
    """A unit of asynchronous AI work tied to a tenant and conversation."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str
    conversation_id: Optional[str] = None
    type: JobType
    status: JobStatus = JobStatus.PENDING
    priority: int = Field(default=5, ge=1, le=10)
    payload: JobPayload
    result: Optional[JobResult] = None
    error: Optional[JobError] = None
    metadata: JobMetadata = Field(default_factory=JobMetadata)
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "550e8400-e29b-41d4-a716-446655440000",
                "tenant_id": "tenant-1",
                "conversation_id": "conv-123",
                "type": "chat_response",
                "status": "pending",
                "priority": 10,
                "payload": {
                    "type": "chat_response",
                    "chatbot_id": "bot-123",
                    "session_id": "session-123",
                    "content": "Hello, how can I help?",
                },
                "metadata": {"retry_count": 0},
            }
        }
    )

    @model_validator(mode="after")
    def _payload_matches_type(self) -> "AIJob":
        if self.payload.type != self.type:
            raise ValueError(
                f"Payload type {self.payload.type} does not match job type {self.type.value}"
            )
        return self

    @classmethod
    def create(
        cls,
        tenant_id: str,
        payload: JobPayload,
        conversation_id: str | None = None,
        priorities: dict | None = None,
        job_id: str | None = None,
    ) -> "AIJob":
        """Build a pending job, deriving type and priority from the payload."""
        from chatstream.domain.pricing import priority_of

        kwargs = {} if priorities is None else {"priorities": priorities}
        return cls(
            id=job_id or str(uuid.uuid4()),
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            type=payload.type,
            priority=priority_of(payload.type, **kwargs),
            payload=payload,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _transition(self, target: JobStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidJobTransition(
                f"Job {self.id} cannot move from {self.status.value} to {target.value}",
                {"job_id": self.id, "from": self.status.value, "to": target.value},
            )
        self.status = target

    def mark_processing(self) -> None:
        """Start an attempt; a retried job may run at most MAX_RETRIES times more.

        mark_retrying bumps retry_count only while should_retry's
        ``retry_count < MAX_RETRIES`` holds, so a retried job starts here with
        ``retry_count <= MAX_RETRIES``.
        """
        if self.status == JobStatus.RETRYING and self.metadata.retry_count > MAX_RETRIES:
            raise InvalidJobTransition(
                f"Job {self.id} exhausted its {MAX_RETRIES} retries",
                {"job_id": self.id, "retry_count": self.metadata.retry_count},
            )
        self._transition(JobStatus.PROCESSING)
        self.started_at = _utcnow()
        self.error = None

    def mark_completed(self, result: JobResult) -> None:
        self._transition(JobStatus.COMPLETED)
        self.result = result
        self.completed_at = _utcnow()

    def mark_failed(self, error: JobError) -> None:
        self._transition(JobStatus.FAILED)
        self.error = error
        self.completed_at = _utcnow()

    def mark_retrying(self) -> None:
        if self.metadata.retry_count >= MAX_RETRIES:
            raise InvalidJobTransition(
                f"Job {self.id} exhausted its {MAX_RETRIES} retries",
                {"job_id": self.id, "retry_count": self.metadata.retry_count},
            )
        self._transition(JobStatus.RETRYING)
        self.metadata.retry_count += 1
        self.completed_at = None

    def mark_cancelled(self) -> None:
        self._transition(JobStatus.CANCELLED)
        self.completed_at = _utcnow()
