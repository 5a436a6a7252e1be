"""
Unit tests for match completion, reward distribution and rematch.
"""

import pytest
from sqlalchemy import select

from battle_backend.database.models import BattleLobby, BattleMatch, BattleReward, WalletTransaction
from battle_backend.services import gift_service, reward_service, wallet_service
from battle_backend.services.battle_errors import InvalidTransitionError, PolicyViolationError
from battle_backend.services.battle_events import BattleEventType


async def _gift(db_session, match_id, team, amount):
    await gift_service.send_battle_gift(db_session, match_id, "viewer", team, "rose", amount)


# ──────────────────────────────────────────────────────────────
# Winner and payout
# ──────────────────────────────────────────────────────────────


def test_determine_winner():
    assert reward_service.determine_winner(10, 3) == "team_a"
    assert reward_service.determine_winner(3, 10) == "team_b"
    assert reward_service.determine_winner(4, 4) == "draw"
    assert reward_service.determine_winner(0, 0) == "draw"


@pytest.mark.asyncio
async def test_end_battle_match_pays_out(db_session, outbox, make_live_match):
    """Test the higher score wins and each team total is split evenly."""
    match, rosters = await make_live_match()
    await _gift(db_session, match["id"], "team_a", 100)
    await _gift(db_session, match["id"], "team_b", 7)

    result = await reward_service.end_battle_match(db_session, match["id"], outbox)

    assert result["winner_team"] == "team_a"
    assert result["match"]["status"] == "completed"
    assert result["match"]["ended_at"] is not None

    by_player = {r["player_id"]: r for r in result["rewards"]}
    assert set(by_player) == set(rosters["a"] + rosters["b"])
    for player in rosters["a"]:
        assert by_player[player]["reward_amount_sek"] == 50
        assert by_player[player]["is_winner"] is True
        assert by_player[player]["team"] == "team_a"
        assert await wallet_service.get_balance(db_session, player) == 50
    for player in rosters["b"]:
        # 7 // 2, remainder dropped
        assert by_player[player]["reward_amount_sek"] == 3
        assert by_player[player]["is_winner"] is False
        assert await wallet_service.get_balance(db_session, player) == 3

    stamps = {r["distributed_at"] for r in result["rewards"]}
    assert len(stamps) == 1 and None not in stamps

    for lobby_id in (match["lobby_a_id"], match["lobby_b_id"]):
        lobby = await db_session.get(BattleLobby, lobby_id)
        assert lobby.status == "completed"
        assert lobby.battle_ended_at is not None

    ended = [e for e in outbox.events if e.type == BattleEventType.MATCH_ENDED]
    assert len(ended) == 4
    assert ended[0].payload["winner_team"] == "team_a"


@pytest.mark.asyncio
async def test_reward_wallet_transactions(db_session, outbox, make_live_match):
    match, rosters = await make_live_match()
    await _gift(db_session, match["id"], "team_b", 40)

    await reward_service.end_battle_match(db_session, match["id"], outbox)

    result = await db_session.execute(select(WalletTransaction))
    transactions = result.scalars().all()
    assert sorted(t.user_id for t in transactions) == sorted(rosters["b"])
    for transaction in transactions:
        assert transaction.type == "battle_reward"
        assert transaction.amount_sek == 20
        assert transaction.reference_id == match["id"]


@pytest.mark.asyncio
async def test_draw_has_no_winners(db_session, outbox, make_live_match):
    match, _ = await make_live_match()
    await _gift(db_session, match["id"], "team_a", 10)
    await _gift(db_session, match["id"], "team_b", 10)

    result = await reward_service.end_battle_match(db_session, match["id"], outbox)

    assert result["winner_team"] == "draw"
    assert all(r["is_winner"] is False for r in result["rewards"])
    assert all(r["reward_amount_sek"] == 5 for r in result["rewards"])


@pytest.mark.asyncio
async def test_no_gifts_creates_zero_rewards_without_wallet_entries(db_session, outbox, make_live_match):
    match, _ = await make_live_match()

    result = await reward_service.end_battle_match(db_session, match["id"], outbox)

    assert result["winner_team"] == "draw"
    assert len(result["rewards"]) == 4
    assert all(r["reward_amount_sek"] == 0 for r in result["rewards"])
    transactions = await db_session.execute(select(WalletTransaction))
    assert transactions.scalars().all() == []


@pytest.mark.asyncio
async def test_remainder_is_dropped(db_session, outbox, make_live_match):
    """Test 10 SEK over three players pays 3 each."""
    match, rosters = await make_live_match(("a1", "a2", "a3"), ("b1", "b2", "b3"))
    await _gift(db_session, match["id"], "team_a", 10)

    result = await reward_service.end_battle_match(db_session, match["id"], outbox)

    team_a_rewards = [r for r in result["rewards"] if r["team"] == "team_a"]
    assert [r["reward_amount_sek"] for r in team_a_rewards] == [3, 3, 3]
    assert sum(r["reward_amount_sek"] for r in team_a_rewards) <= 10


@pytest.mark.asyncio
async def test_end_match_twice_rejected(db_session, outbox, make_live_match):
    match, _ = await make_live_match()
    await reward_service.end_battle_match(db_session, match["id"], outbox)

    with pytest.raises(InvalidTransitionError):
        await reward_service.end_battle_match(db_session, match["id"], outbox)

    rewards = await db_session.execute(select(BattleReward))
    assert len(rewards.scalars().all()) == 4


# ──────────────────────────────────────────────────────────────
# Rematch and end
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_single_rematch_request_waits(db_session, outbox, make_live_match):
    match, _ = await make_live_match()
    await reward_service.end_battle_match(db_session, match["id"], outbox)

    result = await reward_service.request_rematch(
        db_session, match["id"], match["team_a_leader_id"], outbox
    )
    again = await reward_service.request_rematch(
        db_session, match["id"], match["team_a_leader_id"], outbox
    )

    assert result["rematch_requested_by"] == "team_a"
    assert result["rematch"] is None
    assert again["rematch_requested_by"] == "team_a"
    assert again["rematch"] is None


@pytest.mark.asyncio
async def test_mutual_rematch_starts_new_match(db_session, outbox, make_live_match):
    """Test both leaders asking creates a live rematch between the same lobbies."""
    match, rosters = await make_live_match()
    await reward_service.end_battle_match(db_session, match["id"], outbox)

    await reward_service.request_rematch(db_session, match["id"], match["team_b_leader_id"], outbox)
    result = await reward_service.request_rematch(
        db_session, match["id"], match["team_a_leader_id"], outbox
    )

    assert result["rematch_requested_by"] == "both"
    rematch = result["rematch"]
    assert rematch["id"] != match["id"]
    assert rematch["status"] == "live"
    assert rematch["lobby_a_id"] == match["lobby_a_id"]
    assert rematch["lobby_b_id"] == match["lobby_b_id"]
    assert rematch["format"] == match["format"]
    assert rematch["team_a_leader_id"] == match["team_a_leader_id"]
    assert rematch["team_b_leader_id"] == match["team_b_leader_id"]
    assert rematch["team_a_accepted"] == rosters["a"]
    assert rematch["team_b_accepted"] == rosters["b"]
    assert rematch["rematch_of_match_id"] == match["id"]
    assert rematch["team_a_score"] == 0

    previous = await db_session.get(BattleMatch, match["id"])
    assert previous.post_match_action == "rematch"
    for lobby_id in (match["lobby_a_id"], match["lobby_b_id"]):
        lobby = await db_session.get(BattleLobby, lobby_id)
        assert lobby.status == "in_battle"

    started = [e for e in outbox.events if e.type == BattleEventType.REMATCH_STARTED]
    assert len(started) == 4


@pytest.mark.asyncio
async def test_rematch_can_be_played_and_ended(db_session, outbox, make_live_match):
    match, _ = await make_live_match()
    await reward_service.end_battle_match(db_session, match["id"], outbox)
    await reward_service.request_rematch(db_session, match["id"], match["team_a_leader_id"], outbox)
    result = await reward_service.request_rematch(
        db_session, match["id"], match["team_b_leader_id"], outbox
    )
    rematch_id = result["rematch"]["id"]

    await _gift(db_session, rematch_id, "team_b", 8)
    ended = await reward_service.end_battle_match(db_session, rematch_id, outbox)

    assert ended["winner_team"] == "team_b"


@pytest.mark.asyncio
async def test_rematch_request_requires_leader(db_session, outbox, make_live_match):
    match, rosters = await make_live_match()
    await reward_service.end_battle_match(db_session, match["id"], outbox)
    non_leader = next(p for p in rosters["a"] if p != match["team_a_leader_id"])

    with pytest.raises(PolicyViolationError):
        await reward_service.request_rematch(db_session, match["id"], non_leader, outbox)


@pytest.mark.asyncio
async def test_rematch_request_requires_completed_match(db_session, outbox, make_live_match):
    match, _ = await make_live_match()

    with pytest.raises(InvalidTransitionError):
        await reward_service.request_rematch(db_session, match["id"], match["team_a_leader_id"], outbox)


@pytest.mark.asyncio
async def test_end_battle_closes_post_match(db_session, outbox, make_live_match):
    match, _ = await make_live_match()
    await reward_service.end_battle_match(db_session, match["id"], outbox)

    result = await reward_service.end_battle(db_session, match["id"])

    assert result["match"]["post_match_action"] == "end"
    assert result["match"]["status"] == "completed"
    with pytest.raises(InvalidTransitionError):
        await reward_service.request_rematch(db_session, match["id"], match["team_a_leader_id"], outbox)


# ──────────────────────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_get_user_battle_history(db_session, outbox, make_live_match):
    match, rosters = await make_live_match()
    await _gift(db_session, match["id"], "team_a", 30)
    await reward_service.end_battle_match(db_session, match["id"], outbox)

    history = await reward_service.get_user_battle_history(db_session, rosters["a"][0])

    assert len(history) == 1
    assert history[0]["match"]["id"] == match["id"]
    assert history[0]["reward"]["reward_amount_sek"] == 15
    assert await reward_service.get_user_battle_history(db_session, "stranger") == []
