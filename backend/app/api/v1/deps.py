"""
deps.py - FastAPI dependencies shared by the v1 endpoints.

Tests override `get_clock` to move time and `get_relay` to capture publishes.
"""

from app.core.clock import Clock, utc_now
from app.core.redis import get_redis_client
from app.services.lifecycle import LifecyclePolicy
from app.services.relay import SignalingRelay


def get_clock() -> Clock:
    return utc_now


def get_policy() -> LifecyclePolicy:
    return LifecyclePolicy.from_settings()


def get_relay() -> SignalingRelay:
    return SignalingRelay(get_redis_client)
