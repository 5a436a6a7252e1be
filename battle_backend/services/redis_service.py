"""
Redis service providing a centralized Redis client singleton.

Used as the cross-process pub/sub backend for battle notifications when
BATTLE_CHANNEL_BACKEND=redis. Redis connections are stateless with built-in
connection pooling, so a singleton is appropriate (unlike SQLAlchemy
sessions, which are transactional and request-scoped).

Usage:
    from battle_backend.services.redis_service import redis_publish

    delivered = await redis_publish("user:abc:invitations", '{"type": "..."}')
"""

import logging
import os
from typing import Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

# Redis configuration from environment
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Connection settings
SOCKET_CONNECT_TIMEOUT = 2
SOCKET_TIMEOUT = 5
RETRY_ON_TIMEOUT = True

# Global Redis client (singleton)
_redis_client: Optional[Redis] = None
_connection_tested: bool = False


async def get_redis_client() -> Optional[Redis]:
    """
    Get or create the Redis client singleton.

    Returns a shared Redis client instance. The client is created on first call
    and reused for subsequent calls. Connection is tested on first use.

    Returns:
        Redis client or None if the connection fails
    """
    global _redis_client, _connection_tested

    # Return existing client if connection was already tested
    if _redis_client is not None and _connection_tested:
        try:
            await _redis_client.ping()
            return _redis_client
        except Exception as e:
            logger.warning(f"Redis connection lost, recreating client: {e}")
            await close_redis_connection()

    try:
        client_kwargs = {
            "host": REDIS_HOST,
            "port": REDIS_PORT,
            "db": REDIS_DB,
            "decode_responses": True,
            "socket_connect_timeout": SOCKET_CONNECT_TIMEOUT,
            "socket_timeout": SOCKET_TIMEOUT,
            "retry_on_timeout": RETRY_ON_TIMEOUT,
        }

        if REDIS_PASSWORD:
            client_kwargs["password"] = REDIS_PASSWORD

        _redis_client = Redis(**client_kwargs)

        # Test connection
        await _redis_client.ping()
        _connection_tested = True
        logger.info(f"Connected to Redis at {REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}")
        return _redis_client

    except Exception as e:
        logger.warning(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}: {e}")
        _redis_client = None
        _connection_tested = False
        return None


async def close_redis_connection() -> None:
    """
    Close the Redis connection.

    Should be called during application shutdown to cleanly close the connection.
    """
    global _redis_client, _connection_tested

    if _redis_client is not None:
        try:
            await _redis_client.close()
            logger.info("Closed Redis connection")
        except Exception as e:
            logger.warning(f"Error closing Redis connection: {e}")
        finally:
            _redis_client = None
            _connection_tested = False


async def redis_publish(channel: str, message: str) -> int:
    """
    Publish a message on a Redis pub/sub channel.

    Args:
        channel: Channel name
        message: Serialized message

    Returns:
        Number of subscribers that received it (0 if Redis is unavailable)
    """
    try:
        client = await get_redis_client()
        if client:
            return await client.publish(channel, message)
    except Exception as e:
        logger.warning(f"Redis PUBLISH error for channel {channel}: {e}")
    return 0
