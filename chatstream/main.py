"""FastAPI application entry point for the live connection server."""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from chatstream.core.config import settings
from chatstream.core.logging import get_logger, setup_logging
from chatstream.queue.backend import JobQueue, QueueName
from chatstream.realtime.channel import BroadcastChannel
from chatstream.realtime.server import JoinValidator, LiveConnectionServer

# Setup logging
setup_logging()
logger = get_logger(__name__)


def create_app(
    channel: Optional[BroadcastChannel] = None,
    queues: Optional[dict[str, JobQueue]] = None,
    validator: Optional[JoinValidator] = None,
) -> FastAPI:
    """
    Build the application.

    With no channel or queues given, the Redis-backed ones are created at
    startup from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting application...")
        owns_redis = channel is None or queues is None
        if owns_redis:
            from chatstream.db.redis_client import get_redis
            from chatstream.queue.backend import RedisJobQueue
            from chatstream.realtime.channel import RedisBroadcastChannel

            redis = await get_redis()

        app.state.channel = channel or RedisBroadcastChannel(redis, settings.broadcast_channel)
        app.state.queues = queues if queues is not None else {
            name.value: RedisJobQueue.from_settings(redis, name.value) for name in QueueName
        }
        app.state.server = LiveConnectionServer(app.state.channel, validator)
        relay = await app.state.server.start_relay()
        logger.info("Application started")
        yield

        logger.info("Shutting down application...")
        relay.cancel()
        try:
            await relay
        except asyncio.CancelledError:
            pass
        if owns_redis:
            from chatstream.db.redis_client import close_redis

            await close_redis()
        logger.info("Application shut down")

    app = FastAPI(
        title="chatstream",
        description="AI job processing and streaming-response pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        server: LiveConnectionServer = app.state.server
        return {"status": "healthy", "connections": len(server.connections)}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await app.state.server.handle(websocket)

    from chatstream.api import admin

    app.include_router(admin.router, prefix="/api", tags=["admin"])
    return app


app = create_app()
