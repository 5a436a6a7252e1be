"""
Unit tests for matchmaking service.

Tests queueing, FIFO pairing per format and the queue bookkeeping around it.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from battle_backend.database.models import BattleLobby, MatchmakingQueueEntry
from battle_backend.services import lobby_service, matchmaking_service
from battle_backend.services.battle_errors import InvalidTransitionError, NotFoundError
from battle_backend.services.battle_events import BattleEventType
from battle_backend.utils.datetime_utils import utcnow


async def _queue_entries(db_session):
    result = await db_session.execute(select(MatchmakingQueueEntry))
    return result.scalars().all()


async def _backdate_queue_entry(db_session, lobby_id, seconds):
    await db_session.execute(
        update(MatchmakingQueueEntry)
        .where(MatchmakingQueueEntry.lobby_id == lobby_id)
        .values(created_at=utcnow() - timedelta(seconds=seconds))
        .execution_options(synchronize_session=False)
    )
    await db_session.flush()


@pytest.mark.asyncio
async def test_enter_matchmaking_without_opponent_waits(db_session, outbox, make_lobby):
    """Test a lone lobby stays queued and searching."""
    lobby_id = await make_lobby(["a1", "a2"], "2v2")

    result = await matchmaking_service.enter_matchmaking(db_session, lobby_id, outbox)

    assert result["status"] == "searching"
    assert result["match"] is None
    entries = await _queue_entries(db_session)
    assert [e.lobby_id for e in entries] == [lobby_id]
    assert entries[0].players_count == 2
    assert entries[0].format == "2v2"
    assert len(outbox) == 0


@pytest.mark.asyncio
async def test_two_lobbies_same_format_are_paired(db_session, outbox, make_lobby):
    """Test the second lobby in pairs with the first and both become matched."""
    lobby_a = await make_lobby(["a1", "a2"], "2v2")
    lobby_b = await make_lobby(["b1", "b2"], "2v2")

    await matchmaking_service.enter_matchmaking(db_session, lobby_a, outbox)
    result = await matchmaking_service.enter_matchmaking(db_session, lobby_b, outbox)

    match = result["match"]
    assert match is not None
    assert match["status"] == "pending_accept"
    assert match["format"] == "2v2"
    assert {match["lobby_a_id"], match["lobby_b_id"]} == {lobby_a, lobby_b}
    assert match["team_a_accepted"] == []
    assert match["team_b_accepted"] == []

    for lobby_id in (lobby_a, lobby_b):
        lobby = await db_session.get(BattleLobby, lobby_id)
        assert lobby.status == "matched"
        assert lobby.match_found_at is not None

    assert await _queue_entries(db_session) == []

    found = [e for e in outbox.events if e.type == BattleEventType.MATCH_FOUND]
    assert sorted(e.channel for e in found) == [
        "user:a1:battles",
        "user:a2:battles",
        "user:b1:battles",
        "user:b2:battles",
    ]


@pytest.mark.asyncio
async def test_different_formats_never_pair(db_session, outbox, make_lobby):
    lobby_2v2 = await make_lobby(["a1", "a2"], "2v2")
    lobby_3v3 = await make_lobby(["b1", "b2", "b3"], "3v3")

    await matchmaking_service.enter_matchmaking(db_session, lobby_2v2, outbox)
    result = await matchmaking_service.enter_matchmaking(db_session, lobby_3v3, outbox)

    assert result["match"] is None
    assert len(await _queue_entries(db_session)) == 2


@pytest.mark.asyncio
async def test_fifo_order_by_queue_time(db_session, outbox, make_lobby):
    """Test the entry with the earliest created_at wins over later ones."""
    first = await make_lobby(["f1"], "1v1")
    second = await make_lobby(["s1"], "1v1")
    incoming = await make_lobby(["i1"], "1v1")

    # Seed the queue directly so the first two don't pair with each other
    for lobby_id, age in ((first, 120), (second, 60)):
        lobby = await db_session.get(BattleLobby, lobby_id)
        lobby.status = "searching"
        db_session.add(MatchmakingQueueEntry(lobby_id=lobby_id, format="1v1", players_count=1))
        await db_session.flush()
        await _backdate_queue_entry(db_session, lobby_id, age)

    result = await matchmaking_service.enter_matchmaking(db_session, incoming, outbox)

    assert result["match"]["lobby_a_id"] == incoming
    assert result["match"]["lobby_b_id"] == first
    remaining = await _queue_entries(db_session)
    assert [e.lobby_id for e in remaining] == [second]


@pytest.mark.asyncio
async def test_reentering_keeps_single_queue_entry(db_session, outbox, make_lobby):
    """Test the queue is keyed on lobby id (upsert, not duplicate)."""
    lobby_id = await make_lobby(["a1"], "1v1")

    await matchmaking_service.enter_matchmaking(db_session, lobby_id, outbox)
    await matchmaking_service.enter_matchmaking(db_session, lobby_id, outbox)

    entries = await _queue_entries(db_session)
    assert len(entries) == 1


@pytest.mark.asyncio
async def test_stale_queue_entry_is_dropped(db_session, outbox, make_lobby):
    """Test an entry whose lobby stopped searching is skipped and removed."""
    gone = await make_lobby(["g1"], "1v1")
    incoming = await make_lobby(["i1"], "1v1")

    lobby = await db_session.get(BattleLobby, gone)
    lobby.status = "cancelled"
    db_session.add(MatchmakingQueueEntry(lobby_id=gone, format="1v1", players_count=1))
    await db_session.flush()

    result = await matchmaking_service.enter_matchmaking(db_session, incoming, outbox)

    assert result["match"] is None
    entries = await _queue_entries(db_session)
    assert [e.lobby_id for e in entries] == [incoming]


@pytest.mark.asyncio
async def test_enter_matchmaking_rejects_cancelled_lobby(db_session, outbox):
    lobby = await lobby_service.create_lobby(db_session, "host-1", "1v1")
    await lobby_service.leave_lobby(db_session, lobby["id"], "host-1", outbox)

    with pytest.raises(InvalidTransitionError):
        await matchmaking_service.enter_matchmaking(db_session, lobby["id"], outbox)


@pytest.mark.asyncio
async def test_enter_matchmaking_missing_lobby(db_session, outbox):
    with pytest.raises(NotFoundError):
        await matchmaking_service.enter_matchmaking(db_session, "missing", outbox)


@pytest.mark.asyncio
async def test_leave_matchmaking(db_session, outbox, make_lobby):
    """Test leaving the queue returns the lobby to waiting."""
    lobby_id = await make_lobby(["a1"], "1v1")
    await matchmaking_service.enter_matchmaking(db_session, lobby_id, outbox)

    result = await matchmaking_service.leave_matchmaking(db_session, lobby_id)

    assert result["status"] == "waiting"
    assert await _queue_entries(db_session) == []
    assert await matchmaking_service.get_queue_position(db_session, lobby_id) is None


@pytest.mark.asyncio
async def test_leave_matchmaking_when_not_searching(db_session, outbox, make_lobby):
    lobby_id = await make_lobby(["a1"], "1v1")
    with pytest.raises(InvalidTransitionError):
        await matchmaking_service.leave_matchmaking(db_session, lobby_id)


@pytest.mark.asyncio
async def test_queue_position(db_session, outbox, make_lobby):
    first = await make_lobby(["a1", "a2"], "2v2")
    other_format = await make_lobby(["b1"], "1v1")

    await matchmaking_service.enter_matchmaking(db_session, first, outbox)
    await matchmaking_service.enter_matchmaking(db_session, other_format, outbox)

    assert await matchmaking_service.get_queue_position(db_session, first) == 1
    assert await matchmaking_service.get_queue_position(db_session, other_format) == 1
