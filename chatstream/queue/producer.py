"""Job producer - turn visitor messages into queued chat-response jobs."""

import uuid
from typing import Mapping, Optional

from chatstream.core.logging import get_logger
from chatstream.models.events import MessageEvent
from chatstream.models.job import AIJob, ChatResponsePayload
from chatstream.queue.backend import JobQueue
from chatstream.realtime.channel import BroadcastChannel, Subscription

logger = get_logger(__name__)

# Job ids for visitor messages are derived from the message id, so every
# intake that sees the same message builds the same job.
MESSAGE_JOB_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "chatstream:message")


def build_chat_job(
    event: MessageEvent, priorities: Optional[Mapping[str, int]] = None
) -> AIJob:
    """Build the pending chat-response job for a visitor message."""
    payload = ChatResponsePayload(
        chatbot_id=event.chatbot_id,
        session_id=event.session_id,
        content=event.message,
    )
    return AIJob.create(
        tenant_id=event.tenant_id,
        payload=payload,
        conversation_id=event.conversation_id,
        priorities=priorities,
        job_id=str(uuid.uuid5(MESSAGE_JOB_NAMESPACE, event.id)),
    )


async def enqueue_chat_job(
    queue: JobQueue,
    event: MessageEvent,
    priorities: Optional[Mapping[str, int]] = None,
) -> Optional[str]:
    """
    Enqueue a chat-response job for a visitor message.

    Every worker process listens to the same channel, so the same message
    arrives once per process; only the first offer is enqueued.

    Returns:
        Job ID (UUID string), or None if the message was already enqueued
    """
    job = build_chat_job(event, priorities)
    try:
        enqueued = await queue.enqueue_once(job)
    except Exception as e:
        logger.error(
            f"Failed to enqueue job for conversation {event.conversation_id}: {e}",
            exc_info=True,
        )
        raise

    if not enqueued:
        return None

    logger.info(
        f"Enqueued job {job.id} for conversation {event.conversation_id}",
        job_id=job.id,
        message_id=event.id,
        chatbot_id=event.chatbot_id,
        tenant_id=event.tenant_id,
    )
    return job.id


class MessageIntake:
    """
    Listens on the broadcast channel and enqueues a job per ``message`` event.

    Run it as a task and cancel the task to stop.
    """

    def __init__(
        self,
        channel: BroadcastChannel,
        queue: JobQueue,
        priorities: Optional[Mapping[str, int]] = None,
    ):
        self.channel = channel
        self.queue = queue
        self.priorities = priorities
        self._subscription: Subscription | None = None

    async def start(self) -> None:
        """Subscribe now so no message published afterwards is missed."""
        if self._subscription is None:
            self._subscription = await self.channel.subscribe()

    async def run(self) -> None:
        await self.start()
        logger.info("Message intake listening")
        try:
            async for event in self._subscription:
                if not isinstance(event, MessageEvent):
                    continue
                try:
                    await enqueue_chat_job(self.queue, event, self.priorities)
                except Exception:
                    # Already logged; one bad enqueue must not stop intake
                    continue
        finally:
            await self._subscription.close()
            self._subscription = None
            logger.info("Message intake stopped")
