"""
Fire-and-forget booking notifications.

The controller hands events to ``NotificationDispatcher`` *after* the
transition has committed.  Delivery runs on its own asyncio task, so a slow
or broken sink can neither block nor roll back a booking decision; failures
are logged and dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class LoggingNotificationSink:
    """Writes events to the application log (``NOTIFICATION_SINK=log``)."""

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("Booking event %s: %s", event, payload)


class RedisNotificationSink:
    """Publishes events as JSON on a Redis pub/sub channel."""

    def __init__(self, client: aioredis.Redis, channel: str):
        self.redis = client
        self.channel = channel

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        message = json.dumps({"event": event, "payload": payload}, default=str)
        await self.redis.publish(self.channel, message)


class NotificationDispatcher:
    def __init__(self, sink):
        self.sink = sink
        self._pending: set[asyncio.Task] = set()

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        """Schedule delivery and return immediately."""
        task = asyncio.create_task(self._deliver(event, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: str, payload: dict[str, Any]) -> None:
        try:
            await self.sink.notify(event, payload)
        except Exception:
            logger.exception("Failed to deliver %s notification", event)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def build_notification_sink(config, client: aioredis.Redis):
    """Pick the sink named by ``config.notification_sink``."""
    if config.notification_sink == "log":
        return LoggingNotificationSink()
    return RedisNotificationSink(client, config.notification_channel)
