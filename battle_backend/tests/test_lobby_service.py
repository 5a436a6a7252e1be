"""
Unit tests for lobby service.

Tests lobby creation, the invitation lifecycle, leaving and the read helpers.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from battle_backend.database.models import (
    BattleInvitation,
    BattleLobby,
    BattleMatch,
    MatchmakingQueueEntry,
)
from battle_backend.services import lobby_service, matchmaking_service
from battle_backend.services.battle_errors import (
    InvalidTransitionError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from battle_backend.services.battle_events import BattleEventType
from battle_backend.utils.datetime_utils import utcnow


# ──────────────────────────────────────────────────────────────
# Create lobby
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_lobby(db_session):
    """Test a new lobby has the host as only member and is waiting."""
    lobby = await lobby_service.create_lobby(db_session, "host-1", "3v3", True, "stream-9")

    assert lobby["host_id"] == "host-1"
    assert lobby["format"] == "3v3"
    assert lobby["status"] == "waiting"
    assert lobby["team_a_players"] == ["host-1"]
    assert lobby["current_players_count"] == 1
    assert lobby["max_players_per_team"] == 3
    assert lobby["return_to_solo_stream"] is True
    assert lobby["original_stream_id"] == "stream-9"


@pytest.mark.asyncio
async def test_create_lobby_team_size_from_format(db_session):
    """Test max players per team follows the leading digit of the format."""
    for battle_format, size in [("1v1", 1), ("2v2", 2), ("5v5", 5)]:
        lobby = await lobby_service.create_lobby(db_session, f"host-{size}", battle_format)
        assert lobby["max_players_per_team"] == size


@pytest.mark.asyncio
async def test_create_lobby_rejects_unknown_format(db_session):
    """Test formats outside 1v1..5v5 are rejected."""
    with pytest.raises(ValidationError, match="Unsupported battle format"):
        await lobby_service.create_lobby(db_session, "host-1", "6v6")

    with pytest.raises(ValidationError):
        await lobby_service.create_lobby(db_session, "host-1", "2v3")


# ──────────────────────────────────────────────────────────────
# Invitations
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_send_invitation_publishes_on_invitee_channel(db_session, outbox):
    """Test an invitation is pending, expires later and notifies the invitee."""
    lobby = await lobby_service.create_lobby(db_session, "host-1", "2v2")

    invitation = await lobby_service.send_invitation(
        db_session, lobby["id"], "host-1", "friend-1", outbox
    )

    assert invitation["status"] == "pending"
    assert invitation["inviter_id"] == "host-1"
    assert invitation["invitee_id"] == "friend-1"
    assert invitation["expires_at"] > invitation["created_at"]

    assert len(outbox) == 1
    event = outbox.events[0]
    assert event.type == BattleEventType.BATTLE_INVITATION
    assert event.channel == "user:friend-1:invitations"
    assert event.payload["id"] == invitation["id"]
    assert event.payload["format"] == "2v2"


@pytest.mark.asyncio
async def test_send_invitation_missing_lobby(db_session, outbox):
    with pytest.raises(NotFoundError):
        await lobby_service.send_invitation(db_session, "no-such-lobby", "a", "b", outbox)


@pytest.mark.asyncio
async def test_send_invitation_requires_member(db_session, outbox):
    """Test only lobby members can invite."""
    lobby = await lobby_service.create_lobby(db_session, "host-1", "2v2")
    with pytest.raises(PolicyViolationError):
        await lobby_service.send_invitation(db_session, lobby["id"], "stranger", "friend-1", outbox)


@pytest.mark.asyncio
async def test_send_invitation_rejects_self_and_members(db_session, outbox, make_lobby):
    lobby_id = await make_lobby(["host-1", "member-1"], "3v3")

    with pytest.raises(ValidationError, match="yourself"):
        await lobby_service.send_invitation(db_session, lobby_id, "host-1", "host-1", outbox)
    with pytest.raises(ValidationError, match="already in this lobby"):
        await lobby_service.send_invitation(db_session, lobby_id, "host-1", "member-1", outbox)


@pytest.mark.asyncio
async def test_send_invitation_lobby_not_waiting(db_session, outbox):
    """Test a searching lobby no longer takes invitations."""
    lobby = await lobby_service.create_lobby(db_session, "host-1", "2v2")
    await matchmaking_service.enter_matchmaking(db_session, lobby["id"], outbox)

    with pytest.raises(InvalidTransitionError):
        await lobby_service.send_invitation(db_session, lobby["id"], "host-1", "friend-1", outbox)


@pytest.mark.asyncio
async def test_duplicate_invitations_are_kept(db_session, outbox):
    """Test inviting the same user twice creates two rows."""
    lobby = await lobby_service.create_lobby(db_session, "host-1", "2v2")
    first = await lobby_service.send_invitation(db_session, lobby["id"], "host-1", "friend-1", outbox)
    second = await lobby_service.send_invitation(db_session, lobby["id"], "host-1", "friend-1", outbox)
    assert first["id"] != second["id"]


@pytest.mark.asyncio
async def test_accept_invitation_joins_lobby(db_session, outbox):
    """Test accepting appends the user and updates the count."""
    lobby = await lobby_service.create_lobby(db_session, "host-1", "3v3")
    invitation = await lobby_service.send_invitation(
        db_session, lobby["id"], "host-1", "friend-1", outbox
    )

    result = await lobby_service.accept_invitation(db_session, invitation["id"], "friend-1", outbox)

    assert result["invitation"]["status"] == "accepted"
    assert result["invitation"]["responded_at"] is not None
    assert result["lobby"]["team_a_players"] == ["host-1", "friend-1"]
    assert result["lobby"]["current_players_count"] == 2

    joined_events = [e for e in outbox.events if e.type == BattleEventType.INVITATION_ACCEPTED]
    assert [e.channel for e in joined_events] == ["user:host-1:battles"]


@pytest.mark.asyncio
async def test_accept_invitation_wrong_user(db_session, outbox):
    """Test only the invitee can accept."""
    lobby = await lobby_service.create_lobby(db_session, "host-1", "2v2")
    invitation = await lobby_service.send_invitation(
        db_session, lobby["id"], "host-1", "friend-1", outbox
    )
    with pytest.raises(NotFoundError):
        await lobby_service.accept_invitation(db_session, invitation["id"], "someone-else", outbox)


@pytest.mark.asyncio
async def test_accept_invitation_full_lobby(db_session, outbox):
    """Test the second of two outstanding invites cannot overfill a 2v2 lobby."""
    lobby = await lobby_service.create_lobby(db_session, "host-1", "2v2")
    first = await lobby_service.send_invitation(db_session, lobby["id"], "host-1", "friend-1", outbox)
    second = await lobby_service.send_invitation(db_session, lobby["id"], "host-1", "friend-2", outbox)

    await lobby_service.accept_invitation(db_session, first["id"], "friend-1", outbox)
    with pytest.raises(ValidationError, match="full"):
        await lobby_service.accept_invitation(db_session, second["id"], "friend-2", outbox)

    stored = await db_session.get(BattleLobby, lobby["id"])
    assert stored.current_players_count == 2
    assert stored.team_a_players == ["host-1", "friend-1"]


@pytest.mark.asyncio
async def test_accept_expired_invitation(db_session, outbox):
    """Test an invitation past expires_at cannot be accepted."""
    lobby = await lobby_service.create_lobby(db_session, "host-1", "2v2")
    invitation = await lobby_service.send_invitation(
        db_session, lobby["id"], "host-1", "friend-1", outbox
    )
    stored = await db_session.get(BattleInvitation, invitation["id"])
    stored.expires_at = utcnow() - timedelta(seconds=1)
    await db_session.flush()

    with pytest.raises(InvalidTransitionError, match="expired"):
        await lobby_service.accept_invitation(db_session, invitation["id"], "friend-1", outbox)


@pytest.mark.asyncio
async def test_accept_invitation_twice(db_session, outbox):
    """Test an answered invitation cannot be answered again."""
    lobby = await lobby_service.create_lobby(db_session, "host-1", "3v3")
    invitation = await lobby_service.send_invitation(
        db_session, lobby["id"], "host-1", "friend-1", outbox
    )
    await lobby_service.accept_invitation(db_session, invitation["id"], "friend-1", outbox)

    with pytest.raises(InvalidTransitionError):
        await lobby_service.accept_invitation(db_session, invitation["id"], "friend-1", outbox)
    with pytest.raises(InvalidTransitionError):
        await lobby_service.decline_invitation(db_session, invitation["id"], "friend-1")


@pytest.mark.asyncio
async def test_decline_invitation(db_session, outbox):
    lobby = await lobby_service.create_lobby(db_session, "host-1", "2v2")
    invitation = await lobby_service.send_invitation(
        db_session, lobby["id"], "host-1", "friend-1", outbox
    )

    result = await lobby_service.decline_invitation(db_session, invitation["id"], "friend-1")

    assert result["status"] == "declined"
    stored = await db_session.get(BattleLobby, lobby["id"])
    assert stored.team_a_players == ["host-1"]


@pytest.mark.asyncio
async def test_get_pending_invitations_skips_expired_and_answered(db_session, outbox):
    lobby = await lobby_service.create_lobby(db_session, "host-1", "5v5")
    live = await lobby_service.send_invitation(db_session, lobby["id"], "host-1", "friend-1", outbox)
    expired = await lobby_service.send_invitation(db_session, lobby["id"], "host-1", "friend-1", outbox)
    declined = await lobby_service.send_invitation(db_session, lobby["id"], "host-1", "friend-1", outbox)

    stored = await db_session.get(BattleInvitation, expired["id"])
    stored.expires_at = utcnow() - timedelta(minutes=1)
    await db_session.flush()
    await lobby_service.decline_invitation(db_session, declined["id"], "friend-1")

    pending = await lobby_service.get_pending_invitations(db_session, "friend-1")
    assert [inv["id"] for inv in pending] == [live["id"]]


@pytest.mark.asyncio
async def test_expire_invitations(db_session, outbox):
    """Test the sweep marks only overdue pending invitations as expired."""
    lobby = await lobby_service.create_lobby(db_session, "host-1", "3v3")
    fresh = await lobby_service.send_invitation(db_session, lobby["id"], "host-1", "friend-1", outbox)
    stale = await lobby_service.send_invitation(db_session, lobby["id"], "host-1", "friend-2", outbox)

    stored = await db_session.get(BattleInvitation, stale["id"])
    stored.expires_at = utcnow() - timedelta(seconds=5)
    await db_session.flush()

    expired_count = await lobby_service.expire_invitations(db_session)

    assert expired_count == 1
    result = await db_session.execute(
        select(BattleInvitation.id, BattleInvitation.status).order_by(BattleInvitation.created_at)
    )
    statuses = {row.id: row.status for row in result.all()}
    assert statuses[fresh["id"]] == "pending"
    assert statuses[stale["id"]] == "expired"


# ──────────────────────────────────────────────────────────────
# Leave lobby
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_member_leaves_lobby(db_session, outbox, make_lobby):
    lobby_id = await make_lobby(["host-1", "member-1", "member-2"], "3v3")

    lobby = await lobby_service.leave_lobby(db_session, lobby_id, "member-1", outbox)

    assert lobby["status"] == "waiting"
    assert lobby["team_a_players"] == ["host-1", "member-2"]
    assert lobby["current_players_count"] == 2


@pytest.mark.asyncio
async def test_host_leaving_cancels_and_dequeues(db_session, outbox, make_lobby):
    """Test the host leaving cancels the lobby and removes its queue entry."""
    lobby_id = await make_lobby(["host-1", "member-1"], "2v2")
    await matchmaking_service.enter_matchmaking(db_session, lobby_id, outbox)

    lobby = await lobby_service.leave_lobby(db_session, lobby_id, "host-1", outbox)

    assert lobby["status"] == "cancelled"
    result = await db_session.execute(
        select(MatchmakingQueueEntry).where(MatchmakingQueueEntry.lobby_id == lobby_id)
    )
    assert result.scalar_one_or_none() is None

    cancelled = [e for e in outbox.events if e.type == BattleEventType.LOBBY_CANCELLED]
    assert [e.channel for e in cancelled] == ["user:member-1:battles"]


@pytest.mark.asyncio
async def test_non_member_cannot_leave(db_session, outbox):
    lobby = await lobby_service.create_lobby(db_session, "host-1", "2v2")
    with pytest.raises(PolicyViolationError):
        await lobby_service.leave_lobby(db_session, lobby["id"], "stranger", outbox)


@pytest.mark.asyncio
async def test_cancelled_lobby_cannot_be_cancelled_again(db_session, outbox):
    lobby = await lobby_service.create_lobby(db_session, "host-1", "2v2")
    await lobby_service.leave_lobby(db_session, lobby["id"], "host-1", outbox)

    with pytest.raises(InvalidTransitionError):
        await lobby_service.leave_lobby(db_session, lobby["id"], "host-1", outbox)


@pytest.mark.asyncio
async def test_host_leaving_matched_lobby_cancels_pending_match(db_session, outbox, make_lobby):
    """Test the host leaving while matched cancels the match and requeues the opponent."""
    leaving = await make_lobby(["host-1", "member-1"], "2v2")
    opponent = await make_lobby(["host-2", "member-2"], "2v2")
    await matchmaking_service.enter_matchmaking(db_session, opponent, outbox)
    match = (await matchmaking_service.enter_matchmaking(db_session, leaving, outbox))["match"]
    outbox.events.clear()

    lobby = await lobby_service.leave_lobby(db_session, leaving, "host-1", outbox)

    assert lobby["status"] == "cancelled"
    stored_match = await db_session.get(BattleMatch, match["id"])
    assert stored_match.status == "cancelled"
    stored_opponent = await db_session.get(BattleLobby, opponent)
    assert stored_opponent.status == "searching"

    requeues = [e.payload["lobby_id"] for e in outbox.events if e.type == BattleEventType.LOBBY_REQUEUE]
    assert requeues == [opponent]
    cancelled = [e for e in outbox.events if e.type == BattleEventType.MATCH_CANCELLED]
    assert {e.payload["reason"] for e in cancelled} == {"host_left"}
    assert "user:host-2:battles" in {e.channel for e in cancelled}


@pytest.mark.asyncio
@pytest.mark.parametrize("as_host", [True, False])
async def test_cannot_leave_during_live_battle(db_session, outbox, make_live_match, as_host):
    """Test neither host nor member can leave while the battle is live."""
    match, rosters = await make_live_match(team_a=("a1", "a2"), team_b=("b1", "b2"))
    leaver = rosters["a"][0] if as_host else rosters["a"][1]

    with pytest.raises(InvalidTransitionError, match="live battle"):
        await lobby_service.leave_lobby(db_session, match["lobby_a_id"], leaver, outbox)

    lobby = await db_session.get(BattleLobby, match["lobby_a_id"])
    assert lobby.status == "in_battle"
    assert lobby.team_a_players == rosters["a"]
    stored_match = await db_session.get(BattleMatch, match["id"])
    assert stored_match.status == "live"


# ──────────────────────────────────────────────────────────────
# Read helpers
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_get_user_active_lobby_for_host_and_member(db_session, outbox, make_lobby):
    lobby_id = await make_lobby(["host-1", "member-1"], "2v2")

    as_host = await lobby_service.get_user_active_lobby(db_session, "host-1")
    as_member = await lobby_service.get_user_active_lobby(db_session, "member-1")

    assert as_host["id"] == lobby_id
    assert as_member["id"] == lobby_id
    assert await lobby_service.get_user_active_lobby(db_session, "stranger") is None


@pytest.mark.asyncio
async def test_get_user_active_lobby_ignores_cancelled(db_session, outbox):
    lobby = await lobby_service.create_lobby(db_session, "host-1", "2v2")
    await lobby_service.leave_lobby(db_session, lobby["id"], "host-1", outbox)

    assert await lobby_service.get_user_active_lobby(db_session, "host-1") is None


@pytest.mark.asyncio
async def test_get_lobby_not_found(db_session):
    with pytest.raises(NotFoundError, match="Lobby not found"):
        await lobby_service.get_lobby(db_session, "missing")
