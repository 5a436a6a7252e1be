"""
Match acceptance service.

A freshly paired match waits in pending_accept until every player of both
lobbies accepts it. Accepting the last slot elects a battle leader per team
and takes the match live. Any decline cancels it, blocks the decliner from
matchmaking for a few minutes and sends both lobbies back to the queue.
"""

import random
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from battle_backend.database.models import (
    BattleLobby,
    BattleMatch,
    LobbyStatus,
    MatchmakingBlock,
    MatchStatus,
    Profile,
)
from battle_backend.services.battle_errors import InvalidTransitionError, PolicyViolationError
from battle_backend.services.battle_events import BattleEventType, Outbox
from battle_backend.services.battle_records import format_match, load_match, load_match_lobbies
from battle_backend.services.battle_state import transition_lobby, transition_match
from battle_backend.utils.constants import (
    ACCEPT_TIMEOUT_SECONDS,
    DECLINE_BLOCK_MINUTES,
    DECLINE_BLOCK_REASON,
)
from battle_backend.utils.datetime_utils import isoformat_or_none, utcnow
import logging

logger = logging.getLogger(__name__)


async def select_battle_leader(
    session: AsyncSession, player_ids: Sequence[str], rng: random.Random
) -> Optional[str]:
    """
    Pick the battle leader for a team.

    Premium members are preferred; the pick is uniform among them, or
    uniform among the whole roster when nobody is premium.

    Args:
        session: Database session
        player_ids: Team roster
        rng: Random source

    Returns:
        Leader user id, or None for an empty roster
    """
    if not player_ids:
        return None

    result = await session.execute(
        select(Profile.id).where(
            and_(Profile.id.in_(list(player_ids)), Profile.premium_active.is_(True))
        )
    )
    premium_ids = set(result.scalars().all())
    # Keep roster order so a seeded rng is reproducible
    premium_players = [p for p in player_ids if p in premium_ids]

    candidates = premium_players or list(player_ids)
    return rng.choice(candidates)


def _all_accepted(accepted: List[str], players: List[str]) -> bool:
    return bool(players) and set(players).issubset(set(accepted or []))


async def check_all_players_accepted(
    session: AsyncSession, match_id: str, outbox: Outbox, rng: random.Random
) -> bool:
    """
    Take the match live once both rosters have fully accepted.

    Safe to call repeatedly: a match that already left pending_accept is not
    transitioned again.

    Returns:
        True if the match is live
    """
    match = await load_match(session, match_id)
    if match.status != MatchStatus.PENDING_ACCEPT.value:
        return match.status == MatchStatus.LIVE.value

    lobby_a, lobby_b = await load_match_lobbies(session, match)
    team_a_done = _all_accepted(match.team_a_accepted, lobby_a.team_a_players)
    team_b_done = _all_accepted(match.team_b_accepted, lobby_b.team_a_players)

    if not (team_a_done and team_b_done):
        return False

    logger.info(f"All players accepted match {match_id}, starting battle")

    now = utcnow()
    match.team_a_leader_id = await select_battle_leader(session, lobby_a.team_a_players, rng)
    match.team_b_leader_id = await select_battle_leader(session, lobby_b.team_a_players, rng)
    transition_match(match, MatchStatus.LIVE)
    match.started_at = now

    for lobby in (lobby_a, lobby_b):
        transition_lobby(lobby, LobbyStatus.IN_BATTLE)
        lobby.battle_started_at = now

    await session.flush()

    outbox.notify_users(
        [*lobby_a.team_a_players, *lobby_b.team_a_players],
        BattleEventType.MATCH_LIVE,
        {"match": format_match(match)},
    )
    return True


async def accept_match(
    session: AsyncSession,
    match_id: str,
    user_id: str,
    lobby_id: str,
    outbox: Outbox,
    rng: random.Random,
) -> Dict:
    """
    Record a player's acceptance of a found match.

    Args:
        session: Database session
        match_id: Match id
        user_id: Accepting player
        lobby_id: The player's lobby, decides the team
        outbox: Collects the match_live notification
        rng: Random source for leader election

    Returns:
        Dict with "match" and "all_accepted"

    Raises:
        NotFoundError: If the match or lobby does not exist
        InvalidTransitionError: If the match is not awaiting acceptance
        PolicyViolationError: If the lobby isn't in the match or the user isn't in the lobby
    """
    match = await load_match(session, match_id)
    if match.status != MatchStatus.PENDING_ACCEPT.value:
        raise InvalidTransitionError("Match is no longer awaiting acceptance")

    if lobby_id not in (match.lobby_a_id, match.lobby_b_id):
        raise PolicyViolationError("Lobby is not part of this match")

    lobby_a, lobby_b = await load_match_lobbies(session, match)
    is_team_a = lobby_id == match.lobby_a_id
    lobby = lobby_a if is_team_a else lobby_b
    if user_id not in (lobby.team_a_players or []):
        raise PolicyViolationError("User is not in this lobby")

    current_accepted = list((match.team_a_accepted if is_team_a else match.team_b_accepted) or [])
    if user_id not in current_accepted:
        updated_accepted = [*current_accepted, user_id]
        if is_team_a:
            match.team_a_accepted = updated_accepted
        else:
            match.team_b_accepted = updated_accepted
        await session.flush()

    all_accepted = await check_all_players_accepted(session, match_id, outbox, rng)

    logger.info(f"User {user_id} accepted match {match_id} (team {'a' if is_team_a else 'b'})")
    return {"match": format_match(match), "all_accepted": all_accepted}


async def cancel_pending_match(
    session: AsyncSession, match: BattleMatch, outbox: Outbox, reason: str
) -> List[BattleLobby]:
    """Cancel a pending match and send still-matched lobbies back to searching."""
    transition_match(match, MatchStatus.CANCELLED)

    lobby_a, lobby_b = await load_match_lobbies(session, match)
    requeued = []
    for lobby in (lobby_a, lobby_b):
        # A lobby whose host left meanwhile is cancelled and stays out
        if lobby.status == LobbyStatus.MATCHED.value:
            transition_lobby(lobby, LobbyStatus.SEARCHING)
            requeued.append(lobby)
    await session.flush()

    outbox.notify_users(
        [*lobby_a.team_a_players, *lobby_b.team_a_players],
        BattleEventType.MATCH_CANCELLED,
        {"match_id": match.id, "reason": reason},
    )
    for lobby in requeued:
        outbox.requeue_lobby(lobby.id)
    return requeued


async def find_pending_match_for_lobby(session: AsyncSession, lobby_id: str) -> Optional[BattleMatch]:
    """The match still awaiting acceptance that this lobby is part of, if any."""
    result = await session.execute(
        select(BattleMatch)
        .where(
            and_(
                BattleMatch.status == MatchStatus.PENDING_ACCEPT.value,
                or_(BattleMatch.lobby_a_id == lobby_id, BattleMatch.lobby_b_id == lobby_id),
            )
        )
        .order_by(BattleMatch.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def decline_match(
    session: AsyncSession, match_id: str, user_id: str, outbox: Outbox
) -> Dict:
    """
    Decline a found match.

    The decliner is blocked from matchmaking for DECLINE_BLOCK_MINUTES, the
    match is cancelled and both lobbies go back to searching. The actual
    re-entry into the queue happens when the outbox is dispatched.

    Returns:
        Dict with "match" and "blocked_until"

    Raises:
        NotFoundError: If the match does not exist
        InvalidTransitionError: If the match is not awaiting acceptance
        PolicyViolationError: If the user is in neither lobby
    """
    match = await load_match(session, match_id)
    lobby_a, lobby_b = await load_match_lobbies(session, match)
    if user_id not in (lobby_a.team_a_players or []) and user_id not in (lobby_b.team_a_players or []):
        raise PolicyViolationError("User is not part of this match")

    blocked_until = utcnow() + timedelta(minutes=DECLINE_BLOCK_MINUTES)
    session.add(
        MatchmakingBlock(
            user_id=user_id,
            reason=DECLINE_BLOCK_REASON,
            blocked_until=blocked_until,
        )
    )

    await cancel_pending_match(session, match, outbox, reason="declined")

    logger.info(f"User {user_id} declined match {match_id}, blocked until {blocked_until.isoformat()}")
    return {"match": format_match(match), "blocked_until": isoformat_or_none(blocked_until)}


async def is_user_blocked(session: AsyncSession, user_id: str) -> bool:
    """True if the user has an unexpired matchmaking block."""
    result = await session.execute(
        select(MatchmakingBlock.id)
        .where(
            and_(
                MatchmakingBlock.user_id == user_id,
                MatchmakingBlock.blocked_until > utcnow(),
            )
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def expire_stale_matches(
    session: AsyncSession,
    outbox: Outbox,
    now: Optional[datetime] = None,
    timeout_seconds: int = ACCEPT_TIMEOUT_SECONDS,
) -> int:
    """
    Cancel matches left in pending_accept past the acceptance timeout and
    requeue their lobbies. Nobody is blocked.

    Returns:
        Number of matches cancelled
    """
    cutoff = (now or utcnow()) - timedelta(seconds=timeout_seconds)
    result = await session.execute(
        select(BattleMatch).where(
            and_(
                BattleMatch.status == MatchStatus.PENDING_ACCEPT.value,
                BattleMatch.created_at <= cutoff,
            )
        )
    )
    stale_matches = result.scalars().all()

    for match in stale_matches:
        await cancel_pending_match(session, match, outbox, reason="accept_timeout")
        logger.info(f"Match {match.id} expired waiting for acceptance")

    return len(stale_matches)


async def purge_expired_blocks(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Delete matchmaking blocks that have run out."""
    result = await session.execute(
        delete(MatchmakingBlock)
        .where(MatchmakingBlock.blocked_until <= (now or utcnow()))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
