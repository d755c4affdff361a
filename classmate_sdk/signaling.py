"""
classmate_sdk/signaling.py - Signaling Relay subscriber/publisher over Redis pub/sub.

Delivery is at most once per currently subscribed listener, with no
persistence: a participant that subscribes late misses earlier messages and
relies on the `join` announcement protocol to catch up.
"""
import asyncio
import logging
import os
from collections.abc import AsyncIterator

import redis.asyncio as redis
from pydantic import ValidationError

from .errors import SignalingError
from .signals import DEFAULT_CHANNEL_PREFIX, Signal, channel_name, encode_signal, parse_signal

logger = logging.getLogger(__name__)


class RedisSignalingChannel:
    """Pub/sub channel `session:<sessionId>` for one session."""

    def __init__(
        self,
        session_id: str,
        redis_url: str | None = None,
        client: redis.Redis | None = None,
        prefix: str = DEFAULT_CHANNEL_PREFIX,
        subscribe_timeout: float = 10.0,
    ):
        self.session_id = session_id
        self.channel = channel_name(session_id, prefix)
        self.subscribe_timeout = subscribe_timeout
        self._owns_client = client is None
        self._client = client or redis.Redis.from_url(
            redis_url or os.getenv("CLASSMATE_REDIS_URL", "redis://localhost:6379"),
            decode_responses=True,
            socket_connect_timeout=5,
        )
        self._pubsub = None

    @property
    def subscribed(self) -> bool:
        return self._pubsub is not None

    async def subscribe(self) -> None:
        """
        Subscribe and wait for the server's acknowledgment.

        Raises:
            SignalingError: Relay unreachable or no acknowledgment in time.
        """
        pubsub = self._client.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            await asyncio.wait_for(self._await_ack(pubsub), self.subscribe_timeout)
        except (redis.RedisError, OSError, asyncio.TimeoutError) as e:
            await pubsub.aclose()
            raise SignalingError(f"Could not subscribe to {self.channel}: {e}") from e
        self._pubsub = pubsub
        logger.info("Subscribed to %s", self.channel)

    async def _await_ack(self, pubsub) -> None:
        while True:
            message = await pubsub.get_message(ignore_subscribe_messages=False, timeout=1.0)
            if message and message.get("type") == "subscribe":
                return

    async def publish(self, signal: Signal) -> int:
        """Broadcast to every current subscriber (including ourselves)."""
        try:
            return await self._client.publish(self.channel, encode_signal(signal))
        except (redis.RedisError, OSError) as e:
            raise SignalingError(f"Could not publish to {self.channel}: {e}") from e

    async def listen(self) -> AsyncIterator[Signal]:
        """Yield decoded signals until the channel is closed. Malformed messages are skipped."""
        if self._pubsub is None:
            raise SignalingError(f"Not subscribed to {self.channel}")
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield parse_signal(message["data"])
                except ValidationError:
                    logger.warning("Dropping malformed signal on %s", self.channel)
        except (redis.RedisError, OSError) as e:
            raise SignalingError(f"Lost subscription to {self.channel}: {e}") from e

    async def close(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        try:
            if pubsub is not None:
                await pubsub.unsubscribe(self.channel)
                await pubsub.aclose()
        finally:
            if self._owns_client:
                await self._client.aclose()
        logger.info("Unsubscribed from %s", self.channel)
