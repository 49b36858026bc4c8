"""Live connection server: rooms per conversation over websockets."""

import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Optional

import jwt
from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError

from chatstream.core.logging import get_logger
from chatstream.models.events import CLIENT_EVENT_NAMES, BroadcastEvent, MessageEvent
from chatstream.realtime.channel import BroadcastChannel, Subscription

logger = get_logger(__name__)

RESUBSCRIBE_DELAY = 1.0
MAX_RESUBSCRIBE_DELAY = 30.0

# (token, conversation_id) -> claims for an accepted join, None to refuse
JoinValidator = Callable[[Optional[str], str], Awaitable[Optional[dict]]]


def room_for(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class JWTJoinValidator:
    """Accepts join tokens signed with the platform's shared secret.

    A token that names a conversation may only join that conversation.
    """

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    @classmethod
    def from_settings(cls) -> "JWTJoinValidator":
        from chatstream.core.config import settings

        return cls(settings.jwt_secret, settings.jwt_algorithm)

    async def __call__(self, token: Optional[str], conversation_id: str) -> Optional[dict]:
        if not token:
            return None
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected join token: {e}", conversation_id=conversation_id)
            return None

        allowed = claims.get("conversationId") or claims.get("conversation_id")
        if allowed and allowed != conversation_id:
            logger.info("Join token is for another conversation", conversation_id=conversation_id)
            return None
        return claims


class RoomRegistry:
    """Connection <-> room membership."""

    def __init__(self):
        self._members: dict[str, set[str]] = defaultdict(set)
        self._rooms: dict[str, set[str]] = defaultdict(set)

    def join(self, connection_id: str, room: str) -> None:
        self._members[room].add(connection_id)
        self._rooms[connection_id].add(room)

    def leave_all(self, connection_id: str) -> None:
        for room in self._rooms.pop(connection_id, set()):
            members = self._members.get(room)
            if members is None:
                continue
            members.discard(connection_id)
            if not members:
                del self._members[room]

    def members(self, room: str) -> set[str]:
        return set(self._members.get(room, ()))

    def is_member(self, connection_id: str, room: str) -> bool:
        return room in self._rooms.get(connection_id, ())


class ClientFrame(BaseModel):
    event: str
    data: dict[str, Any] = {}


class Session(BaseModel):
    """What a connection learned from its join tokens."""

    tenant_id: str = "default"
    chatbot_id: Optional[str] = None


class LiveConnectionServer:
    """
    Holds client connections and their room membership.

    Client frames are ``{"event": name, "data": {...}}`` in both directions.
    Channel events are delivered only to members of the event's
    conversation room; there is no other authorization at this layer.
    """

    def __init__(self, channel: BroadcastChannel, validator: Optional[JoinValidator] = None):
        self.channel = channel
        self.validator = validator or JWTJoinValidator.from_settings()
        self.rooms = RoomRegistry()
        self.connections: dict[str, WebSocket] = {}
        self.sessions: dict[str, Session] = {}
        self.resubscribe_delay = RESUBSCRIBE_DELAY
        self._handlers = {
            "join:conversation": self._join,
            "message:send": self._send_message,
            "typing:start": self._typing,
            "typing:stop": self._typing,
        }

    async def handle(self, websocket: WebSocket) -> None:
        """Serve one websocket until it disconnects."""
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self.connections[connection_id] = websocket
        self.sessions[connection_id] = Session()
        logger.info("Client connected", connection_id=connection_id)

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = ClientFrame.model_validate_json(raw)
                except ValidationError:
                    await self._send(connection_id, "error", {"message": "Malformed frame"})
                    continue
                await self.dispatch(connection_id, frame)
        except WebSocketDisconnect:
            pass
        finally:
            self.disconnect(connection_id)

    def disconnect(self, connection_id: str) -> None:
        self.rooms.leave_all(connection_id)
        self.connections.pop(connection_id, None)
        self.sessions.pop(connection_id, None)
        logger.info("Client disconnected", connection_id=connection_id)

    async def dispatch(self, connection_id: str, frame: ClientFrame) -> None:
        handler = self._handlers.get(frame.event)
        if handler is None:
            await self._send(connection_id, "error", {"message": f"Unknown event {frame.event}"})
            return
        conversation_id = frame.data.get("conversationId")
        if not isinstance(conversation_id, str) or not conversation_id:
            await self._send(connection_id, "error", {"message": "conversationId is required"})
            return
        await handler(connection_id, frame.event, conversation_id, frame.data)

    async def _join(self, connection_id: str, event: str, conversation_id: str, data: dict) -> None:
        claims = await self.validator(data.get("token"), conversation_id)
        if claims is None:
            await self._send(connection_id, "error", {"message": "Not allowed to join conversation"})
            return

        session = self.sessions[connection_id]
        session.tenant_id = claims.get("tenantId") or claims.get("tenant_id") or session.tenant_id
        session.chatbot_id = (
            claims.get("chatbotId") or claims.get("chatbot_id") or data.get("chatbotId") or session.chatbot_id
        )
        self.rooms.join(connection_id, room_for(conversation_id))
        logger.info(
            "Socket joined conversation",
            connection_id=connection_id,
            conversation_id=conversation_id,
        )
        await self._send(connection_id, "joined:conversation", {"conversationId": conversation_id})

    async def _send_message(
        self, connection_id: str, event: str, conversation_id: str, data: dict
    ) -> None:
        room = room_for(conversation_id)
        if not self.rooms.is_member(connection_id, room):
            await self._send(connection_id, "error", {"message": "Join the conversation first"})
            return

        message = data.get("message")
        session = self.sessions[connection_id]
        chatbot_id = data.get("chatbotId") or session.chatbot_id
        if not isinstance(message, str) or not message or not chatbot_id:
            await self._send(connection_id, "error", {"message": "message and chatbotId are required"})
            return

        message_id = uuid.uuid4().hex
        now = datetime.now(UTC).isoformat()
        await self._emit(
            room,
            "message:received",
            {
                "id": message_id,
                "conversationId": conversation_id,
                "message": message,
                "timestamp": now,
            },
        )
        await self.channel.publish(
            MessageEvent(
                id=message_id,
                conversation_id=conversation_id,
                chatbot_id=chatbot_id,
                tenant_id=session.tenant_id,
                message=message,
                session_id=data.get("sessionId"),
                timestamp=now,
            )
        )

    async def _typing(self, connection_id: str, event: str, conversation_id: str, data: dict) -> None:
        room = room_for(conversation_id)
        if not self.rooms.is_member(connection_id, room):
            return
        await self._emit(
            room,
            event,
            {"conversationId": conversation_id, "connectionId": connection_id},
            exclude=connection_id,
        )

    # Outbound

    async def _send(self, connection_id: str, event: str, data: dict) -> None:
        websocket = self.connections.get(connection_id)
        if websocket is None:
            return
        try:
            await websocket.send_json({"event": event, "data": data})
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.info(f"Dropping connection after failed send: {e}", connection_id=connection_id)
            self.disconnect(connection_id)

    async def _emit(self, room: str, event: str, data: dict, exclude: str | None = None) -> None:
        targets = [cid for cid in self.rooms.members(room) if cid != exclude]
        await asyncio.gather(*(self._send(cid, event, data) for cid in targets))

    async def deliver(self, event: BroadcastEvent) -> None:
        """Forward one worker event to its conversation room."""
        name = CLIENT_EVENT_NAMES.get(event.type)
        if name is None:
            return
        data = event.to_wire()
        data.pop("type", None)
        await self._emit(room_for(event.conversation_id), name, data)

    async def start_relay(self) -> asyncio.Task:
        """Subscribe, then forward channel events to rooms until the task is cancelled."""
        subscription = await self.channel.subscribe()
        logger.info("Relaying broadcast events to rooms")
        return asyncio.create_task(self._relay(subscription))

    async def _relay(self, subscription: Subscription) -> None:
        while True:
            try:
                async for event in subscription:
                    await self._deliver_safely(event)
                return
            except (RedisError, OSError) as e:
                logger.warning(f"Broadcast subscription lost: {e}")
            finally:
                await self._close_subscription(subscription)
            subscription = await self._resubscribe()

    async def _deliver_safely(self, event: BroadcastEvent) -> None:
        # One bad event or socket must not stop delivery to every other room
        try:
            await self.deliver(event)
        except Exception:
            logger.exception(
                f"Failed to deliver {event.type} event",
                conversation_id=event.conversation_id,
            )

    async def _resubscribe(self) -> Subscription:
        delay = self.resubscribe_delay
        while True:
            await asyncio.sleep(delay)
            try:
                subscription = await self.channel.subscribe()
            except (RedisError, OSError) as e:
                delay = min(delay * 2, MAX_RESUBSCRIBE_DELAY)
                logger.warning(f"Resubscribe failed: {e}", retry_in=delay)
                continue
            logger.info("Resubscribed to broadcast channel")
            return subscription

    async def _close_subscription(self, subscription: Subscription) -> None:
        try:
            await subscription.close()
        except (RedisError, OSError) as e:
            logger.warning(f"Error closing broadcast subscription: {e}")
