"""
Matchmaking service.

Lobbies wait in a per-format FIFO queue. When a lobby enters, it is paired
with the oldest queued lobby of the same format and a pending_accept match
is created for both.
"""

from datetime import timedelta
from typing import Dict, Optional, Set

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from battle_backend.database.models import (
    BattleLobby,
    BattleMatch,
    LobbyStatus,
    MatchmakingQueueEntry,
    MatchStatus,
)
from battle_backend.services.battle_events import BattleEventType, Outbox
from battle_backend.services.battle_records import format_match, load_lobby
from battle_backend.services.battle_state import transition_lobby
from battle_backend.utils.constants import DECLINE_BLOCK_MINUTES
from battle_backend.utils.datetime_utils import utcnow
import logging

logger = logging.getLogger(__name__)


async def enter_matchmaking(session: AsyncSession, lobby_id: str, outbox: Outbox) -> Dict:
    """
    Put a lobby into the matchmaking queue and try to pair it right away.

    The queue is keyed on lobby_id: re-entering refreshes players_count but
    keeps the original position.

    Args:
        session: Database session
        lobby_id: Lobby to queue
        outbox: Collects match_found notifications

    Returns:
        Dict with "lobby_id", "status" and "match" (None while waiting)

    Raises:
        NotFoundError: If the lobby does not exist
        InvalidTransitionError: If the lobby cannot search from its current status
    """
    lobby = await load_lobby(session, lobby_id)
    transition_lobby(lobby, LobbyStatus.SEARCHING)

    result = await session.execute(
        select(MatchmakingQueueEntry).where(MatchmakingQueueEntry.lobby_id == lobby_id)
    )
    entry = result.scalar_one_or_none()
    if entry is None:
        entry = MatchmakingQueueEntry(
            lobby_id=lobby_id,
            format=lobby.format,
            players_count=lobby.current_players_count,
        )
        session.add(entry)
    else:
        entry.players_count = lobby.current_players_count
    await session.flush()

    logger.info(f"Lobby {lobby_id} entered matchmaking ({lobby.format})")

    match = await find_match(session, lobby_id, lobby.format, outbox)
    return {
        "lobby_id": lobby_id,
        "status": lobby.status,
        "match": match,
    }


async def leave_matchmaking(session: AsyncSession, lobby_id: str) -> Dict:
    """
    Take a searching lobby out of the queue and back to waiting.

    Raises:
        NotFoundError: If the lobby does not exist
        InvalidTransitionError: If the lobby is not searching
    """
    lobby = await load_lobby(session, lobby_id)
    transition_lobby(lobby, LobbyStatus.WAITING)
    await session.execute(
        delete(MatchmakingQueueEntry).where(MatchmakingQueueEntry.lobby_id == lobby_id)
    )
    await session.flush()
    logger.info(f"Lobby {lobby_id} left matchmaking")
    return {"lobby_id": lobby_id, "status": lobby.status}


async def _recently_declined_opponents(session: AsyncSession, lobby_id: str) -> Set[str]:
    """
    Lobbies whose match with this lobby was cancelled inside the decline-block
    window. They are skipped so a requeued pair doesn't re-match instantly.
    """
    since = utcnow() - timedelta(minutes=DECLINE_BLOCK_MINUTES)
    result = await session.execute(
        select(BattleMatch.lobby_a_id, BattleMatch.lobby_b_id).where(
            and_(
                BattleMatch.status == MatchStatus.CANCELLED.value,
                BattleMatch.updated_at >= since,
                or_(BattleMatch.lobby_a_id == lobby_id, BattleMatch.lobby_b_id == lobby_id),
            )
        )
    )
    opponents = set()
    for row in result.all():
        opponents.add(row.lobby_b_id if row.lobby_a_id == lobby_id else row.lobby_a_id)
    return opponents


async def find_match(
    session: AsyncSession, lobby_id: str, battle_format: str, outbox: Outbox
) -> Optional[Dict]:
    """
    Pair a queued lobby with the oldest other queued lobby of the same format.

    Ties on created_at fall back to queue insertion order. When no candidate
    exists the lobby simply stays queued.

    Args:
        session: Database session
        lobby_id: The lobby looking for an opponent
        battle_format: Its format
        outbox: Collects match_found notifications for both rosters

    Returns:
        Match dict, or None if still waiting
    """
    excluded = await _recently_declined_opponents(session, lobby_id)
    excluded.add(lobby_id)

    result = await session.execute(
        select(MatchmakingQueueEntry)
        .where(
            and_(
                MatchmakingQueueEntry.format == battle_format,
                MatchmakingQueueEntry.lobby_id.notin_(excluded),
            )
        )
        .order_by(MatchmakingQueueEntry.created_at.asc(), MatchmakingQueueEntry.id.asc())
    )
    candidates = result.scalars().all()

    opponent = None
    for entry in candidates:
        candidate = await load_lobby(session, entry.lobby_id)
        if candidate.status == LobbyStatus.SEARCHING.value:
            opponent = candidate
            break
        # Stale row left behind by a lobby that moved on
        logger.warning(f"Dropping stale queue entry for lobby {candidate.id} ({candidate.status})")
        await session.delete(entry)

    if opponent is None:
        await session.flush()
        logger.info(f"No match found yet for lobby {lobby_id}, waiting in queue")
        return None

    lobby = await load_lobby(session, lobby_id)

    match = BattleMatch(
        lobby_a_id=lobby.id,
        lobby_b_id=opponent.id,
        format=battle_format,
        status=MatchStatus.PENDING_ACCEPT.value,
        team_a_accepted=[],
        team_b_accepted=[],
    )
    session.add(match)

    now = utcnow()
    for matched_lobby in (lobby, opponent):
        transition_lobby(matched_lobby, LobbyStatus.MATCHED)
        matched_lobby.match_found_at = now

    await session.execute(
        delete(MatchmakingQueueEntry).where(
            MatchmakingQueueEntry.lobby_id.in_([lobby.id, opponent.id])
        )
    )
    await session.flush()

    match_dict = format_match(match)
    outbox.notify_users(
        [*lobby.team_a_players, *opponent.team_a_players],
        BattleEventType.MATCH_FOUND,
        {"match": match_dict},
    )

    logger.info(f"Match {match.id} found: {lobby.id} vs {opponent.id} ({battle_format})")
    return match_dict


async def get_queue_position(session: AsyncSession, lobby_id: str) -> Optional[int]:
    """
    1-based position of a lobby among queued lobbies of its format, or None
    if it isn't queued.
    """
    result = await session.execute(
        select(MatchmakingQueueEntry).where(MatchmakingQueueEntry.lobby_id == lobby_id)
    )
    entry = result.scalar_one_or_none()
    if not entry:
        return None

    ahead = await session.execute(
        select(MatchmakingQueueEntry.lobby_id)
        .where(MatchmakingQueueEntry.format == entry.format)
        .order_by(MatchmakingQueueEntry.created_at.asc(), MatchmakingQueueEntry.id.asc())
    )
    queued_ids = list(ahead.scalars().all())
    return queued_ids.index(lobby_id) + 1
