"""
Lobby service for forming battle teams.

Handles lobby creation, invitations (send/accept/decline), leaving a lobby
and the read helpers the clients poll (active lobby, pending invitations).
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import String, and_, cast, delete, or_, select, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

from battle_backend.database.models import (
    BattleInvitation,
    BattleLobby,
    InvitationStatus,
    LobbyStatus,
    MatchmakingQueueEntry,
)
from battle_backend.services import match_acceptance_service
from battle_backend.services.battle_errors import (
    InvalidTransitionError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from battle_backend.services.battle_events import BattleEventType, Outbox, invitations_channel
from battle_backend.services.battle_records import format_invitation, format_lobby, load_lobby
from battle_backend.services.battle_state import ACTIVE_LOBBY_STATUSES, transition_lobby
from battle_backend.utils.constants import BATTLE_FORMATS, INVITATION_TTL_SECONDS
from battle_backend.utils.datetime_utils import ensure_utc, utcnow
import logging

logger = logging.getLogger(__name__)


def parse_team_size(battle_format: str) -> int:
    """
    Team size encoded in a format string ("3v3" -> 3).

    Raises:
        ValidationError: If the format is not supported
    """
    if battle_format not in BATTLE_FORMATS:
        raise ValidationError(f"Unsupported battle format: {battle_format}")
    return int(battle_format[0])


def _lobby_member_clause(session: AsyncSession, user_id: str):
    """SQL predicate: user_id is in team_a_players."""
    if session.get_bind().dialect.name == "postgresql":
        return cast(BattleLobby.team_a_players, JSONB).contains([user_id])
    # JSON is stored as text elsewhere; ids are quoted inside the array
    return cast(BattleLobby.team_a_players, String).like(f'%"{user_id}"%')


async def create_lobby(
    session: AsyncSession,
    user_id: str,
    battle_format: str,
    return_to_solo_stream: bool = False,
    original_stream_id: Optional[str] = None,
) -> Dict:
    """
    Create a lobby with the user as host and only member.

    Args:
        session: Database session
        user_id: Host user id
        battle_format: "1v1".."5v5"
        return_to_solo_stream: Whether the host goes back to their solo stream after the battle
        original_stream_id: The solo stream to return to

    Returns:
        Dict with lobby data

    Raises:
        ValidationError: If the format is not supported
    """
    max_players = parse_team_size(battle_format)

    lobby = BattleLobby(
        host_id=user_id,
        format=battle_format,
        status=LobbyStatus.WAITING.value,
        team_a_players=[user_id],
        max_players_per_team=max_players,
        current_players_count=1,
        return_to_solo_stream=return_to_solo_stream,
        original_stream_id=original_stream_id,
    )
    session.add(lobby)
    await session.flush()

    logger.info(f"Lobby {lobby.id} created by {user_id} ({battle_format})")
    return format_lobby(lobby)


async def send_invitation(
    session: AsyncSession,
    lobby_id: str,
    inviter_id: str,
    invitee_id: str,
    outbox: Outbox,
) -> Dict:
    """
    Invite a user into a lobby and notify them on their invitation channel.

    Repeated invites to the same user are not deduplicated; each one is a
    separate row and the first accepted one wins.

    Args:
        session: Database session
        lobby_id: Target lobby
        inviter_id: Lobby member sending the invite
        invitee_id: User being invited
        outbox: Collects the invitation notification

    Returns:
        Dict with invitation data

    Raises:
        NotFoundError: If the lobby does not exist
        PolicyViolationError: If the inviter is not in the lobby
        InvalidTransitionError: If the lobby is no longer forming
        ValidationError: If the invitee is the inviter, already a member, or the lobby is full
    """
    lobby = await load_lobby(session, lobby_id)

    if inviter_id not in (lobby.team_a_players or []):
        raise PolicyViolationError("Only lobby members can send invitations")
    if lobby.status != LobbyStatus.WAITING.value:
        raise InvalidTransitionError("Lobby is no longer accepting players")
    if invitee_id == inviter_id:
        raise ValidationError("Cannot invite yourself")
    if invitee_id in lobby.team_a_players:
        raise ValidationError("User is already in this lobby")
    if lobby.current_players_count >= lobby.max_players_per_team:
        raise ValidationError("Lobby is full")

    now = utcnow()
    invitation = BattleInvitation(
        lobby_id=lobby_id,
        inviter_id=inviter_id,
        invitee_id=invitee_id,
        status=InvitationStatus.PENDING.value,
        created_at=now,
        expires_at=now + timedelta(seconds=INVITATION_TTL_SECONDS),
    )
    session.add(invitation)
    await session.flush()

    invitation_dict = format_invitation(invitation)
    outbox.publish(
        invitations_channel(invitee_id),
        BattleEventType.BATTLE_INVITATION,
        {**invitation_dict, "format": lobby.format, "host_id": lobby.host_id},
    )

    logger.info(f"Invitation {invitation.id}: {inviter_id} -> {invitee_id} for lobby {lobby_id}")
    return invitation_dict


async def _get_pending_invitation_for_invitee(
    session: AsyncSession, invitation_id: str, user_id: str
) -> BattleInvitation:
    result = await session.execute(
        select(BattleInvitation).where(
            and_(
                BattleInvitation.id == invitation_id,
                BattleInvitation.invitee_id == user_id,
            )
        )
    )
    invitation = result.scalar_one_or_none()
    if not invitation:
        raise NotFoundError("Invitation not found")
    if invitation.status != InvitationStatus.PENDING.value:
        raise InvalidTransitionError(f"Invitation already {invitation.status}")
    return invitation


async def accept_invitation(
    session: AsyncSession, invitation_id: str, user_id: str, outbox: Outbox
) -> Dict:
    """
    Accept an invitation and join the lobby.

    Args:
        session: Database session
        invitation_id: Invitation id
        user_id: Must be the invitee
        outbox: Collects the "player joined" notification

    Returns:
        Dict with invitation and lobby data

    Raises:
        NotFoundError: If the invitation (for this invitee) or lobby does not exist
        InvalidTransitionError: If the invitation was already answered or expired,
            or the lobby stopped forming
        ValidationError: If the lobby is full or the user is already in it
    """
    invitation = await _get_pending_invitation_for_invitee(session, invitation_id, user_id)

    now = utcnow()
    if ensure_utc(invitation.expires_at) <= now:
        raise InvalidTransitionError("Invitation has expired")

    lobby = await load_lobby(session, invitation.lobby_id)
    if lobby.status != LobbyStatus.WAITING.value:
        raise InvalidTransitionError("Lobby is no longer accepting players")
    if user_id in lobby.team_a_players:
        raise ValidationError("User is already in this lobby")
    if lobby.current_players_count >= lobby.max_players_per_team:
        raise ValidationError("Lobby is full")

    # Assign a new list so the JSON column is flagged dirty
    updated_players = [*lobby.team_a_players, user_id]
    lobby.team_a_players = updated_players
    lobby.current_players_count = len(updated_players)

    invitation.status = InvitationStatus.ACCEPTED.value
    invitation.responded_at = now
    await session.flush()

    lobby_dict = format_lobby(lobby)
    outbox.notify_users(
        [p for p in updated_players if p != user_id],
        BattleEventType.INVITATION_ACCEPTED,
        {"lobby_id": lobby.id, "user_id": user_id, "lobby": lobby_dict},
    )

    logger.info(f"User {user_id} joined lobby {lobby.id} ({lobby.current_players_count}/{lobby.max_players_per_team})")
    return {"invitation": format_invitation(invitation), "lobby": lobby_dict}


async def decline_invitation(session: AsyncSession, invitation_id: str, user_id: str) -> Dict:
    """
    Decline a pending invitation.

    Raises:
        NotFoundError: If the invitation (for this invitee) does not exist
        InvalidTransitionError: If the invitation was already answered
    """
    invitation = await _get_pending_invitation_for_invitee(session, invitation_id, user_id)
    invitation.status = InvitationStatus.DECLINED.value
    invitation.responded_at = utcnow()
    await session.flush()

    logger.info(f"Invitation {invitation_id} declined by {user_id}")
    return format_invitation(invitation)


async def leave_lobby(session: AsyncSession, lobby_id: str, user_id: str, outbox: Outbox) -> Dict:
    """
    Leave a lobby.

    If the host leaves, the lobby is cancelled and dropped from the queue; a
    match still awaiting acceptance is cancelled with it and the opponent goes
    back to searching. Otherwise the user is removed from the roster. A lobby
    emptied this way stays around until its host acts. Nobody can leave
    during a live battle.

    Args:
        session: Database session
        lobby_id: Lobby id
        user_id: Leaving user
        outbox: Collects the cancellation notifications and the opponent requeue

    Returns:
        Dict with lobby data

    Raises:
        NotFoundError: If the lobby does not exist
        PolicyViolationError: If the user is not in the lobby
        InvalidTransitionError: If the lobby is in a battle or already finished
    """
    lobby = await load_lobby(session, lobby_id)

    is_host = lobby.host_id == user_id
    if not is_host and user_id not in (lobby.team_a_players or []):
        raise PolicyViolationError("User is not in this lobby")
    if lobby.status == LobbyStatus.IN_BATTLE.value:
        raise InvalidTransitionError("Cannot leave a lobby during a live battle")

    if is_host:
        was_matched = lobby.status == LobbyStatus.MATCHED.value
        transition_lobby(lobby, LobbyStatus.CANCELLED)
        await session.execute(
            delete(MatchmakingQueueEntry).where(MatchmakingQueueEntry.lobby_id == lobby_id)
        )
        await session.flush()

        outbox.notify_users(
            [p for p in lobby.team_a_players if p != user_id],
            BattleEventType.LOBBY_CANCELLED,
            {"lobby_id": lobby_id, "reason": "host_left"},
        )

        if was_matched:
            match = await match_acceptance_service.find_pending_match_for_lobby(session, lobby_id)
            if match is not None:
                await match_acceptance_service.cancel_pending_match(
                    session, match, outbox, reason="host_left"
                )
                logger.info(f"Match {match.id} cancelled, host of lobby {lobby_id} left")

        logger.info(f"Lobby {lobby_id} cancelled (host left)")
        return format_lobby(lobby)

    if lobby.status not in ACTIVE_LOBBY_STATUSES:
        raise InvalidTransitionError(f"Lobby is already {lobby.status}")

    updated_players = [p for p in lobby.team_a_players if p != user_id]
    lobby.team_a_players = updated_players
    lobby.current_players_count = len(updated_players)

    # Keep the queued size in step with the roster
    await session.execute(
        update(MatchmakingQueueEntry)
        .where(MatchmakingQueueEntry.lobby_id == lobby_id)
        .values(players_count=len(updated_players))
        .execution_options(synchronize_session=False)
    )
    await session.flush()

    logger.info(f"User {user_id} left lobby {lobby_id}")
    return format_lobby(lobby)


async def get_lobby(session: AsyncSession, lobby_id: str) -> Dict:
    """Get a lobby by id (NotFoundError if missing)."""
    return format_lobby(await load_lobby(session, lobby_id))


async def get_user_active_lobby(session: AsyncSession, user_id: str) -> Optional[Dict]:
    """
    Get the most recent lobby the user hosts or plays in that is still active.

    Returns:
        Lobby dict or None
    """
    result = await session.execute(
        select(BattleLobby)
        .where(
            and_(
                or_(BattleLobby.host_id == user_id, _lobby_member_clause(session, user_id)),
                BattleLobby.status.in_(ACTIVE_LOBBY_STATUSES),
            )
        )
        .order_by(BattleLobby.created_at.desc())
        .limit(1)
    )
    lobby = result.scalar_one_or_none()
    return format_lobby(lobby) if lobby else None


async def get_pending_invitations(session: AsyncSession, user_id: str) -> List[Dict]:
    """
    Get unexpired pending invitations for a user, newest first.
    """
    result = await session.execute(
        select(BattleInvitation)
        .where(
            and_(
                BattleInvitation.invitee_id == user_id,
                BattleInvitation.status == InvitationStatus.PENDING.value,
                BattleInvitation.expires_at > utcnow(),
            )
        )
        .order_by(BattleInvitation.created_at.desc())
    )
    return [format_invitation(inv) for inv in result.scalars().all()]


async def expire_invitations(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Mark pending invitations past their expiry as expired.

    Args:
        session: Database session
        now: Reference time (defaults to utcnow)

    Returns:
        Number of invitations expired
    """
    now = now or utcnow()
    result = await session.execute(
        update(BattleInvitation)
        .where(
            and_(
                BattleInvitation.status == InvitationStatus.PENDING.value,
                BattleInvitation.expires_at <= now,
            )
        )
        .values(status=InvitationStatus.EXPIRED.value)
        .execution_options(synchronize_session="fetch")
    )
    expired = result.rowcount or 0
    if expired:
        logger.info(f"Expired {expired} battle invitation(s)")
    return expired
