"""
Loaders and response formatters shared by the battle services.
"""

from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from battle_backend.database.models import (
    BattleGiftTransaction,
    BattleInvitation,
    BattleLobby,
    BattleMatch,
    BattleReward,
)
from battle_backend.services.battle_errors import NotFoundError
from battle_backend.utils.constants import TEAM_A, TEAM_B
from battle_backend.utils.datetime_utils import isoformat_or_none


async def load_lobby(session: AsyncSession, lobby_id: str) -> BattleLobby:
    """
    Fetch a lobby by id.

    Raises:
        NotFoundError: If the lobby does not exist
    """
    result = await session.execute(select(BattleLobby).where(BattleLobby.id == lobby_id))
    lobby = result.scalar_one_or_none()
    if not lobby:
        raise NotFoundError("Lobby not found")
    return lobby


async def load_match(session: AsyncSession, match_id: str) -> BattleMatch:
    """
    Fetch a match by id.

    Raises:
        NotFoundError: If the match does not exist
    """
    result = await session.execute(select(BattleMatch).where(BattleMatch.id == match_id))
    match = result.scalar_one_or_none()
    if not match:
        raise NotFoundError("Match not found")
    return match


async def load_match_lobbies(session: AsyncSession, match: BattleMatch):
    """Return (lobby_a, lobby_b) for a match."""
    lobby_a = await load_lobby(session, match.lobby_a_id)
    lobby_b = await load_lobby(session, match.lobby_b_id)
    return lobby_a, lobby_b


def team_of_leader(match: BattleMatch, user_id: str) -> Optional[str]:
    """Which team the user leads in this match, if any."""
    if user_id and match.team_a_leader_id == user_id:
        return TEAM_A
    if user_id and match.team_b_leader_id == user_id:
        return TEAM_B
    return None


def other_team(team: str) -> str:
    return TEAM_B if team == TEAM_A else TEAM_A


def format_lobby(lobby: BattleLobby) -> Dict:
    return {
        "id": lobby.id,
        "host_id": lobby.host_id,
        "format": lobby.format,
        "status": lobby.status,
        "team_a_players": list(lobby.team_a_players or []),
        "max_players_per_team": lobby.max_players_per_team,
        "current_players_count": lobby.current_players_count,
        "match_found_at": isoformat_or_none(lobby.match_found_at),
        "battle_started_at": isoformat_or_none(lobby.battle_started_at),
        "battle_ended_at": isoformat_or_none(lobby.battle_ended_at),
        "return_to_solo_stream": lobby.return_to_solo_stream,
        "original_stream_id": lobby.original_stream_id,
        "created_at": isoformat_or_none(lobby.created_at),
    }


def format_invitation(invitation: BattleInvitation) -> Dict:
    return {
        "id": invitation.id,
        "lobby_id": invitation.lobby_id,
        "inviter_id": invitation.inviter_id,
        "invitee_id": invitation.invitee_id,
        "status": invitation.status,
        "created_at": isoformat_or_none(invitation.created_at),
        "responded_at": isoformat_or_none(invitation.responded_at),
        "expires_at": isoformat_or_none(invitation.expires_at),
    }


def format_match(match: BattleMatch) -> Dict:
    return {
        "id": match.id,
        "lobby_a_id": match.lobby_a_id,
        "lobby_b_id": match.lobby_b_id,
        "format": match.format,
        "stream_id": match.stream_id,
        "status": match.status,
        "team_a_score": match.team_a_score,
        "team_b_score": match.team_b_score,
        "winner_team": match.winner_team,
        "team_a_accepted": list(match.team_a_accepted or []),
        "team_b_accepted": list(match.team_b_accepted or []),
        "started_at": isoformat_or_none(match.started_at),
        "ended_at": isoformat_or_none(match.ended_at),
        "duration_minutes": match.duration_minutes,
        "selected_duration_a": match.selected_duration_a,
        "selected_duration_b": match.selected_duration_b,
        "duration_selected_by_a": match.duration_selected_by_a,
        "duration_selected_by_b": match.duration_selected_by_b,
        "team_a_leader_id": match.team_a_leader_id,
        "team_b_leader_id": match.team_b_leader_id,
        "team_a_total_gifts_sek": match.team_a_total_gifts_sek,
        "team_b_total_gifts_sek": match.team_b_total_gifts_sek,
        "rematch_requested_by": match.rematch_requested_by,
        "post_match_action": match.post_match_action,
        "rematch_of_match_id": match.rematch_of_match_id,
        "created_at": isoformat_or_none(match.created_at),
    }


def format_gift(gift: BattleGiftTransaction) -> Dict:
    return {
        "id": gift.id,
        "match_id": gift.match_id,
        "sender_id": gift.sender_id,
        "receiver_team": gift.receiver_team,
        "gift_id": gift.gift_id,
        "amount_sek": gift.amount_sek,
        "created_at": isoformat_or_none(gift.created_at),
    }


def format_rewards(rewards: List[BattleReward]) -> List[Dict]:
    return [
        {
            "id": reward.id,
            "match_id": reward.match_id,
            "player_id": reward.player_id,
            "team": reward.team,
            "reward_amount_sek": reward.reward_amount_sek,
            "is_winner": reward.is_winner,
            "distributed_at": isoformat_or_none(reward.distributed_at),
        }
        for reward in rewards
    ]
