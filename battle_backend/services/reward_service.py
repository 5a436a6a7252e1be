"""
Match completion, reward payout and rematch.

Ending a match decides the winner, splits each team's gift total evenly
among its players (integer SEK, remainder dropped) and credits the shares
to their wallets. After a match, the two leaders either end the session or
mutually agree on a rematch between the same lobbies.
"""

from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from battle_backend.database.models import (
    BattleMatch,
    BattleReward,
    LobbyStatus,
    MatchStatus,
    PostMatchAction,
    WalletTransactionType,
)
from battle_backend.services import wallet_service
from battle_backend.services.battle_errors import InvalidTransitionError, PolicyViolationError
from battle_backend.services.battle_events import BattleEventType, Outbox
from battle_backend.services.battle_records import (
    format_match,
    format_rewards,
    load_match,
    load_match_lobbies,
    other_team,
    team_of_leader,
)
from battle_backend.services.battle_state import transition_lobby, transition_match
from battle_backend.utils.constants import BOTH_TEAMS, DRAW, TEAM_A, TEAM_B
from battle_backend.utils.datetime_utils import utcnow
import logging

logger = logging.getLogger(__name__)


def determine_winner(team_a_score: int, team_b_score: int) -> str:
    """Strictly higher score wins, anything else is a draw."""
    if team_a_score > team_b_score:
        return TEAM_A
    if team_b_score > team_a_score:
        return TEAM_B
    return DRAW


async def distribute_rewards(
    session: AsyncSession,
    match_id: str,
    team_a_players: List[str],
    team_b_players: List[str],
    team_a_total: int,
    team_b_total: int,
    winner_team: str,
) -> List[Dict]:
    """
    Split each team's gift total among its players and pay them out.

    Every player gets a reward row, including zero shares. Positive shares are
    credited to the wallet and recorded as a battle_reward wallet transaction.
    All rows of the match are then stamped with one distributed_at.

    Args:
        session: Database session
        match_id: Completed match
        team_a_players: Lobby A roster
        team_b_players: Lobby B roster
        team_a_total: Team A gift total in SEK
        team_b_total: Team B gift total in SEK
        winner_team: "team_a", "team_b" or "draw"

    Returns:
        List of reward dicts
    """
    teams = (
        (TEAM_A, team_a_players or [], team_a_total or 0),
        (TEAM_B, team_b_players or [], team_b_total or 0),
    )

    for team, players, total in teams:
        if not players:
            continue
        per_player = total // len(players)
        is_winner = team == winner_team

        for player_id in players:
            session.add(
                BattleReward(
                    match_id=match_id,
                    player_id=player_id,
                    team=team,
                    reward_amount_sek=per_player,
                    is_winner=is_winner,
                )
            )
            if per_player > 0:
                await wallet_service.credit_balance(session, player_id, per_player)
                await wallet_service.add_transaction(
                    session,
                    player_id,
                    per_player,
                    WalletTransactionType.BATTLE_REWARD.value,
                    description=f"Battle reward ({'win' if is_winner else 'share'})",
                    reference_id=match_id,
                )

        logger.info(
            f"Match {match_id}: {team} total {total} SEK -> {per_player} SEK each "
            f"for {len(players)} player(s)"
        )

    await session.flush()

    await session.execute(
        update(BattleReward)
        .where(BattleReward.match_id == match_id)
        .values(distributed_at=utcnow())
    )
    await session.flush()

    return await get_match_rewards(session, match_id)


async def end_battle_match(session: AsyncSession, match_id: str, outbox: Outbox) -> Dict:
    """
    Complete a live match, pay out rewards and close both lobbies.

    Returns:
        Dict with "match", "winner_team" and "rewards"

    Raises:
        NotFoundError: If the match does not exist
        InvalidTransitionError: If the match is not live
    """
    match = await load_match(session, match_id)
    # Scores are bumped with SQL expressions; read the current values
    await session.refresh(match)
    transition_match(match, MatchStatus.COMPLETED)

    now = utcnow()
    winner_team = determine_winner(match.team_a_score, match.team_b_score)
    match.winner_team = winner_team
    match.ended_at = now
    await session.flush()

    lobby_a, lobby_b = await load_match_lobbies(session, match)
    rewards = await distribute_rewards(
        session,
        match.id,
        list(lobby_a.team_a_players or []),
        list(lobby_b.team_a_players or []),
        match.team_a_total_gifts_sek,
        match.team_b_total_gifts_sek,
        winner_team,
    )

    for lobby in (lobby_a, lobby_b):
        transition_lobby(lobby, LobbyStatus.COMPLETED)
        lobby.battle_ended_at = now
    await session.flush()

    match_dict = format_match(match)
    outbox.notify_users(
        [*lobby_a.team_a_players, *lobby_b.team_a_players],
        BattleEventType.MATCH_ENDED,
        {"match": match_dict, "winner_team": winner_team, "rewards": rewards},
    )

    logger.info(
        f"Match {match_id} ended {match.team_a_score}-{match.team_b_score}, winner: {winner_team}"
    )
    return {"match": match_dict, "winner_team": winner_team, "rewards": rewards}


def _ensure_post_match_open(match: BattleMatch) -> None:
    if match.status != MatchStatus.COMPLETED.value:
        raise InvalidTransitionError("Match has not been completed")
    if match.post_match_action is not None:
        raise InvalidTransitionError(f"Post-match action already chosen: {match.post_match_action}")


async def request_rematch(
    session: AsyncSession, match_id: str, user_id: str, outbox: Outbox
) -> Dict:
    """
    Register a leader's request for a rematch.

    The request only escalates to "both" when the other team's leader asks
    too; at that point the rematch is created right away.

    Returns:
        Dict with "rematch_requested_by", "match" and "rematch" (new match or None)

    Raises:
        NotFoundError: If the match does not exist
        InvalidTransitionError: If the match is not completed or already settled
        PolicyViolationError: If the user is not a battle leader
    """
    match = await load_match(session, match_id)
    _ensure_post_match_open(match)

    team = team_of_leader(match, user_id)
    if team is None:
        raise PolicyViolationError("Only battle leaders can request a rematch")

    current = match.rematch_requested_by
    if current == other_team(team):
        match.rematch_requested_by = BOTH_TEAMS
    elif current is None:
        match.rematch_requested_by = team
    await session.flush()

    if match.rematch_requested_by == BOTH_TEAMS:
        logger.info(f"Both leaders want a rematch of match {match_id}")
        rematch = await create_rematch(session, match_id, outbox)
        return {
            "rematch_requested_by": BOTH_TEAMS,
            "match": format_match(match),
            "rematch": rematch,
        }

    lobby_a, lobby_b = await load_match_lobbies(session, match)
    outbox.notify_users(
        [*lobby_a.team_a_players, *lobby_b.team_a_players],
        BattleEventType.REMATCH_REQUESTED,
        {"match_id": match.id, "requested_by": match.rematch_requested_by},
    )
    logger.info(f"Leader {user_id} ({team}) requested a rematch of match {match_id}")
    return {
        "rematch_requested_by": match.rematch_requested_by,
        "match": format_match(match),
        "rematch": None,
    }


async def create_rematch(session: AsyncSession, match_id: str, outbox: Outbox) -> Dict:
    """
    Start a new live match between the same lobbies with the same leaders.

    Everyone is considered to have accepted already; the previous match is
    marked with post_match_action "rematch".

    Raises:
        NotFoundError: If the match does not exist
        InvalidTransitionError: If the match is not completed or already settled
    """
    previous = await load_match(session, match_id)
    _ensure_post_match_open(previous)

    lobby_a, lobby_b = await load_match_lobbies(session, previous)
    now = utcnow()

    rematch = BattleMatch(
        lobby_a_id=previous.lobby_a_id,
        lobby_b_id=previous.lobby_b_id,
        format=previous.format,
        status=MatchStatus.LIVE.value,
        team_a_accepted=list(lobby_a.team_a_players or []),
        team_b_accepted=list(lobby_b.team_a_players or []),
        team_a_leader_id=previous.team_a_leader_id,
        team_b_leader_id=previous.team_b_leader_id,
        started_at=now,
        rematch_of_match_id=previous.id,
    )
    session.add(rematch)
    previous.post_match_action = PostMatchAction.REMATCH.value

    for lobby in (lobby_a, lobby_b):
        transition_lobby(lobby, LobbyStatus.IN_BATTLE)
        lobby.battle_started_at = now
        lobby.battle_ended_at = None
    await session.flush()

    rematch_dict = format_match(rematch)
    outbox.notify_users(
        [*lobby_a.team_a_players, *lobby_b.team_a_players],
        BattleEventType.REMATCH_STARTED,
        {"match": rematch_dict, "previous_match_id": previous.id},
    )

    logger.info(f"Rematch {rematch.id} started from match {previous.id}")
    return rematch_dict


async def end_battle(session: AsyncSession, match_id: str) -> Dict:
    """
    Record that the leaders are done after a completed match.

    Raises:
        NotFoundError: If the match does not exist
        InvalidTransitionError: If the match is not completed or already settled
    """
    match = await load_match(session, match_id)
    _ensure_post_match_open(match)
    match.post_match_action = PostMatchAction.END.value
    await session.flush()
    logger.info(f"Match {match_id} closed without rematch")
    return {"match": format_match(match)}


async def get_match_rewards(session: AsyncSession, match_id: str) -> List[Dict]:
    """Reward rows of a match, team A first."""
    result = await session.execute(
        select(BattleReward)
        .where(BattleReward.match_id == match_id)
        .order_by(BattleReward.team.asc(), BattleReward.id.asc())
        .execution_options(populate_existing=True)
    )
    return format_rewards(result.scalars().all())


async def get_user_battle_history(
    session: AsyncSession, user_id: str, limit: Optional[int] = 20
) -> List[Dict]:
    """
    Completed matches the user was paid for, newest first.

    Returns:
        List of dicts with "match" and "reward"
    """
    query = (
        select(BattleReward, BattleMatch)
        .join(BattleMatch, BattleMatch.id == BattleReward.match_id)
        .where(BattleReward.player_id == user_id)
        .order_by(BattleMatch.ended_at.desc(), BattleReward.id.desc())
    )
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)

    history = []
    for reward, match in result.all():
        history.append({
            "match": format_match(match),
            "reward": format_rewards([reward])[0],
        })
    return history
