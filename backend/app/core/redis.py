"""
redis.py - Redis client for the Signaling Relay.

Redis pub/sub carries peer handshake messages between the participants of a
session. Nothing is persisted: a message reaches only the listeners that are
subscribed when it is published.
"""

import logging
from functools import lru_cache

import redis

from app.config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_redis_client() -> redis.Redis:
    """
    Get singleton Redis client.

    Returns:
        redis.Redis: Connected Redis client.

    Raises:
        redis.ConnectionError: If Redis is unreachable.
    """
    client = redis.Redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
    )
    # Verify connection on first use
    client.ping()
    logger.info("Redis client connected to %s", settings.REDIS_URL)
    return client
