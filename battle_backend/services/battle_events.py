"""
Outbox of side effects produced by battle operations.

Service functions never publish or requeue directly. They append events to
an Outbox; BattleService hands the outbox to an EventDispatcher once the
operation's transaction has committed.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from battle_backend.services.channel_publisher import ChannelPublisher

logger = logging.getLogger(__name__)


class BattleEventType(str, enum.Enum):
    """Battle event type enum."""

    BATTLE_INVITATION = "battle_invitation"
    INVITATION_ACCEPTED = "invitation_accepted"
    LOBBY_CANCELLED = "lobby_cancelled"
    MATCH_FOUND = "match_found"
    MATCH_LIVE = "match_live"
    MATCH_CANCELLED = "match_cancelled"
    DURATION_AGREED = "duration_agreed"
    MATCH_ENDED = "match_ended"
    REMATCH_REQUESTED = "rematch_requested"
    REMATCH_STARTED = "rematch_started"
    # Internal: put a lobby back into matchmaking
    LOBBY_REQUEUE = "lobby_requeue"


def invitations_channel(user_id: str) -> str:
    return f"user:{user_id}:invitations"


def battles_channel(user_id: str) -> str:
    return f"user:{user_id}:battles"


@dataclass
class BattleEvent:
    type: BattleEventType
    payload: Dict[str, Any]
    channel: Optional[str] = None


@dataclass
class Outbox:
    """Ordered list of events recorded during one operation."""

    events: List[BattleEvent] = field(default_factory=list)

    def publish(self, channel: str, type: BattleEventType, payload: Dict[str, Any]) -> None:
        self.events.append(BattleEvent(type=type, payload=payload, channel=channel))

    def notify_users(
        self, user_ids: Iterable[str], type: BattleEventType, payload: Dict[str, Any]
    ) -> None:
        """Queue the same event on each user's battle channel (deduplicated)."""
        seen = set()
        for user_id in user_ids:
            if user_id in seen:
                continue
            seen.add(user_id)
            self.publish(battles_channel(user_id), type, payload)

    def requeue_lobby(self, lobby_id: str) -> None:
        self.events.append(
            BattleEvent(type=BattleEventType.LOBBY_REQUEUE, payload={"lobby_id": lobby_id})
        )

    def __len__(self) -> int:
        return len(self.events)


RequeueHandler = Callable[[str], Awaitable[Dict[str, Any]]]


class EventDispatcher:
    """Delivers outbox events after commit."""

    def __init__(self, publisher: Optional[ChannelPublisher], requeue: RequeueHandler):
        self._publisher = publisher
        self._requeue = requeue

    async def dispatch(self, outbox: Outbox) -> List[Dict[str, Any]]:
        """
        Process events in the order they were recorded.

        Publish failures are logged and dropped (at-most-once delivery).
        Requeue results are collected so callers can see them.

        Args:
            outbox: Events from a committed operation

        Returns:
            List of requeue results, one per LOBBY_REQUEUE event
        """
        requeue_results = []
        for event in outbox.events:
            if event.type == BattleEventType.LOBBY_REQUEUE:
                result = await self._requeue(event.payload["lobby_id"])
                if not result.get("success"):
                    logger.warning(
                        f"Requeue of lobby {event.payload['lobby_id']} failed: {result.get('error')}"
                    )
                requeue_results.append(result)
                continue

            if self._publisher is None or event.channel is None:
                continue
            message = {"type": event.type.value, "payload": event.payload}
            try:
                await self._publisher.publish(event.channel, message)
            except Exception as e:
                logger.warning(f"Failed to publish {event.type.value} on {event.channel}: {e}")
        return requeue_results
