"""
WebSocket subscription registry for real-time battle notifications.

A socket subscribes to one or more named channels (``user:<id>:invitations``,
``user:<id>:battles``). The registry keeps both directions of that relation:
channel -> sockets for fan-out and socket -> channels so a socket can be
dropped everywhere at once when it closes, errors or goes quiet.
"""

import asyncio
import json
import logging
from typing import Dict, Iterable, List, Optional, Set
from datetime import datetime, timedelta
from fastapi import WebSocket

from battle_backend.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# Timeout for WebSocket connections (30 seconds of inactivity)
WEBSOCKET_TIMEOUT_SECONDS = 30

# Close code sent to sockets dropped for inactivity ("going away")
STALE_CLOSE_CODE = 1001


class WebSocketManager:
    """Channel subscriptions of the sockets connected to this process."""

    def __init__(self):
        self.channels: Dict[str, Set[WebSocket]] = {}
        self.subscriptions: Dict[WebSocket, Set[str]] = {}
        self.last_seen: Dict[WebSocket, datetime] = {}
        self._lock = asyncio.Lock()

    def _forget(self, websocket: WebSocket) -> Set[str]:
        """Remove a socket from every channel. Caller holds the lock."""
        channels = self.subscriptions.pop(websocket, set())
        self.last_seen.pop(websocket, None)
        for channel in channels:
            members = self.channels.get(channel)
            if members is None:
                continue
            members.discard(websocket)
            if not members:
                del self.channels[channel]
        return channels

    async def subscribe(self, websocket: WebSocket, channels: Iterable[str]) -> Set[str]:
        """
        Add channels to a socket's subscriptions.

        Args:
            websocket: Accepted WebSocket connection
            channels: Channel names; already subscribed ones are ignored

        Returns:
            Every channel the socket is now subscribed to
        """
        async with self._lock:
            current = self.subscriptions.setdefault(websocket, set())
            for channel in channels:
                self.channels.setdefault(channel, set()).add(websocket)
                current.add(channel)
            self.last_seen[websocket] = utcnow()
            subscribed = set(current)

        logger.info(f"WebSocket subscribed to {sorted(subscribed)}")
        return subscribed

    async def unsubscribe(self, websocket: WebSocket, channel: str) -> None:
        """Drop one channel; a socket left with none is forgotten entirely."""
        async with self._lock:
            current = self.subscriptions.get(websocket)
            if not current or channel not in current:
                return
            current.discard(channel)
            members = self.channels.get(channel, set())
            members.discard(websocket)
            if not members:
                self.channels.pop(channel, None)
            if not current:
                self._forget(websocket)

    async def disconnect(self, websocket: WebSocket) -> Set[str]:
        """
        Forget a socket and all of its subscriptions.

        Returns:
            The channels the socket was subscribed to
        """
        async with self._lock:
            channels = self._forget(websocket)
        if channels:
            logger.info(f"WebSocket left {sorted(channels)}")
        return channels

    def get_channels(self, websocket: WebSocket) -> Set[str]:
        return set(self.subscriptions.get(websocket, ()))

    async def get_connection_count(self, channel: str) -> int:
        async with self._lock:
            return len(self.channels.get(channel, ()))

    async def touch(self, websocket: WebSocket) -> None:
        """Record activity (a ping or any client message) on a known socket."""
        async with self._lock:
            if websocket in self.subscriptions:
                self.last_seen[websocket] = utcnow()

    async def send_to_channel(self, channel: str, message: dict) -> int:
        """
        Deliver a message to every socket on a channel.

        Sockets whose send fails are dropped from all their channels.

        Args:
            channel: Channel name
            message: JSON-serializable message

        Returns:
            Number of sockets the message reached
        """
        async with self._lock:
            targets: List[WebSocket] = list(self.channels.get(channel, ()))
        if not targets:
            return 0

        message_json = json.dumps(message)
        # Sent outside the lock; one slow socket does not hold up the rest
        results = await asyncio.gather(
            *(ws.send_text(message_json) for ws in targets), return_exceptions=True
        )

        failed = []
        for ws, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"Error sending WebSocket message on {channel}: {result}")
                failed.append(ws)

        now = utcnow()
        async with self._lock:
            for ws in failed:
                self._forget(ws)
            for ws in targets:
                if ws in self.subscriptions:
                    self.last_seen[ws] = now

        return len(targets) - len(failed)

    async def cleanup_stale_connections(self) -> int:
        """
        Close and forget sockets idle for longer than WEBSOCKET_TIMEOUT_SECONDS.

        Called periodically by the battle cleanup worker.

        Returns:
            Number of sockets dropped
        """
        threshold = utcnow() - timedelta(seconds=WEBSOCKET_TIMEOUT_SECONDS)

        async with self._lock:
            stale = [ws for ws, seen in self.last_seen.items() if seen < threshold]
            dropped = {ws: self._forget(ws) for ws in stale}

        for websocket, channels in dropped.items():
            logger.info(f"Dropping idle WebSocket on {sorted(channels)}")
            try:
                await websocket.close(code=STALE_CLOSE_CODE)
            except Exception as e:
                logger.warning(f"Error closing stale WebSocket: {e}")

        return len(dropped)


# Global WebSocket manager instance
_websocket_manager: Optional[WebSocketManager] = None


def get_websocket_manager() -> WebSocketManager:
    """
    Get the global WebSocket manager instance.

    Returns:
        WebSocketManager instance
    """
    global _websocket_manager
    if _websocket_manager is None:
        _websocket_manager = WebSocketManager()
    return _websocket_manager
