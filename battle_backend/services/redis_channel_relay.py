"""
Redis -> WebSocket relay for multi-process deployments.

With BATTLE_CHANNEL_BACKEND=redis, battle events are PUBLISHed to Redis
instead of being written to sockets directly. Every API process runs one
relay: it pattern-subscribes to the user channels and hands each message to
the local WebSocketManager, so a socket receives events no matter which
process produced them.
"""

import asyncio
import json
import logging
from typing import Dict, Optional

from battle_backend.services.redis_service import get_redis_client
from battle_backend.services.websocket_manager import WebSocketManager, get_websocket_manager

logger = logging.getLogger(__name__)

# Matches user:<id>:invitations and user:<id>:battles
RELAY_PATTERN = "user:*"
POLL_TIMEOUT_SECONDS = 1.0
RECONNECT_DELAY_SECONDS = 5.0


class RedisChannelRelay:
    """Background worker forwarding Redis pub/sub messages to local sockets."""

    def __init__(
        self,
        manager: Optional[WebSocketManager] = None,
        pattern: str = RELAY_PATTERN,
        poll_timeout: float = POLL_TIMEOUT_SECONDS,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
    ):
        self.manager = manager
        self.pattern = pattern
        self.poll_timeout = poll_timeout
        self.reconnect_delay = reconnect_delay
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        """Start relaying."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info(f"Redis channel relay started ({self.pattern})")

    def stop(self) -> None:
        """Stop relaying."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Redis channel relay stopped")

    async def relay(self, message: Dict) -> int:
        """
        Forward one pub/sub message to the sockets on its channel.

        Returns:
            Number of local sockets reached
        """
        channel = message["channel"]
        try:
            payload = json.loads(message["data"])
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping undecodable message on {channel}: {e}")
            return 0

        manager = self.manager or get_websocket_manager()
        return await manager.send_to_channel(channel, payload)

    async def _wait_before_retry(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.reconnect_delay)
        except asyncio.TimeoutError:
            pass

    async def _poll_loop(self) -> None:
        """Subscribe and forward until stopped; resubscribe after Redis errors."""
        while not self._stop_event.is_set():
            client = await get_redis_client()
            if client is None:
                await self._wait_before_retry()
                continue

            pubsub = client.pubsub()
            try:
                await pubsub.psubscribe(self.pattern)
                while not self._stop_event.is_set():
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=self.poll_timeout
                    )
                    if message is not None:
                        await self.relay(message)
            except Exception as e:
                logger.error(f"Redis channel relay error: {e}", exc_info=True)
                await self._wait_before_retry()
            finally:
                try:
                    await pubsub.aclose()
                except Exception as e:
                    logger.warning(f"Error closing Redis pub/sub: {e}")


# Global singleton
_relay = RedisChannelRelay()


def get_redis_channel_relay() -> RedisChannelRelay:
    """Get the global relay instance."""
    return _relay
