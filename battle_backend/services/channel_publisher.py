"""
Pub/sub publishers for battle notifications.

A publisher delivers a JSON payload to a named channel, at most once and
without ordering guarantees. Two backends are available:

- WebSocketChannelPublisher: in-process fan-out through WebSocketManager
- RedisChannelPublisher: Redis PUBLISH, for multi-process deployments
"""

import json
import logging
from typing import Any, Dict, Optional, Protocol

from battle_backend.services.redis_service import redis_publish
from battle_backend.services.websocket_manager import get_websocket_manager
from battle_backend.utils.constants import CHANNEL_BACKEND

logger = logging.getLogger(__name__)


class ChannelPublisher(Protocol):
    async def publish(self, channel: str, payload: Dict[str, Any]) -> bool:
        ...


class WebSocketChannelPublisher:
    """Publishes to sockets subscribed on this process."""

    async def publish(self, channel: str, payload: Dict[str, Any]) -> bool:
        delivered = await get_websocket_manager().send_to_channel(channel, payload)
        return delivered > 0


class RedisChannelPublisher:
    """Publishes through Redis pub/sub."""

    async def publish(self, channel: str, payload: Dict[str, Any]) -> bool:
        receivers = await redis_publish(channel, json.dumps(payload))
        return receivers > 0


_publisher: Optional[ChannelPublisher] = None


def get_channel_publisher() -> ChannelPublisher:
    """
    Get the process-wide publisher selected by BATTLE_CHANNEL_BACKEND.

    Returns:
        ChannelPublisher instance
    """
    global _publisher
    if _publisher is None:
        if CHANNEL_BACKEND == "redis":
            _publisher = RedisChannelPublisher()
        else:
            if CHANNEL_BACKEND != "websocket":
                logger.warning(f"Unknown channel backend {CHANNEL_BACKEND!r}, using websocket")
            _publisher = WebSocketChannelPublisher()
        logger.info(f"Battle channel publisher: {type(_publisher).__name__}")
    return _publisher
