"""
Gift ledger and live scoring for battle matches.

Every gift is one ledger row plus one atomic increment of the receiving
team's score and gift total. Both happen in the caller's transaction.
"""

from typing import Dict, List

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from battle_backend.database.models import BattleGiftTransaction, BattleMatch, MatchStatus
from battle_backend.services.battle_errors import InvalidTransitionError, ValidationError
from battle_backend.services.battle_records import format_gift, format_match, load_match
from battle_backend.utils.constants import TEAM_A, TEAM_B
import logging

logger = logging.getLogger(__name__)


async def send_battle_gift(
    session: AsyncSession,
    match_id: str,
    sender_id: str,
    receiver_team: str,
    gift_id: str,
    amount_sek: int,
) -> Dict:
    """
    Record a gift sent to one team of a live match.

    Args:
        session: Database session
        match_id: Match id
        sender_id: Gifting user
        receiver_team: "team_a" or "team_b"
        gift_id: Catalog id of the gift
        amount_sek: Gift value, positive

    Returns:
        Dict with "gift" and the refreshed "match"

    Raises:
        ValidationError: If the team or amount is invalid
        NotFoundError: If the match does not exist
        InvalidTransitionError: If the match is not live
    """
    if receiver_team not in (TEAM_A, TEAM_B):
        raise ValidationError(f"Invalid receiver team: {receiver_team}")
    if not isinstance(amount_sek, int) or amount_sek <= 0:
        raise ValidationError("Gift amount must be a positive number of SEK")

    match = await load_match(session, match_id)
    if match.status != MatchStatus.LIVE.value:
        raise InvalidTransitionError("Gifts can only be sent during a live match")

    if receiver_team == TEAM_A:
        values = {
            "team_a_score": BattleMatch.team_a_score + amount_sek,
            "team_a_total_gifts_sek": BattleMatch.team_a_total_gifts_sek + amount_sek,
        }
    else:
        values = {
            "team_b_score": BattleMatch.team_b_score + amount_sek,
            "team_b_total_gifts_sek": BattleMatch.team_b_total_gifts_sek + amount_sek,
        }

    # Bumping the version makes a concurrent writer holding the old row fail
    result = await session.execute(
        update(BattleMatch)
        .where(
            and_(
                BattleMatch.id == match_id,
                BattleMatch.status == MatchStatus.LIVE.value,
            )
        )
        .values(**values, version=BattleMatch.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidTransitionError("Gifts can only be sent during a live match")

    gift = BattleGiftTransaction(
        match_id=match_id,
        sender_id=sender_id,
        receiver_team=receiver_team,
        gift_id=gift_id,
        amount_sek=amount_sek,
    )
    session.add(gift)
    await session.flush()
    await session.refresh(match)

    logger.info(f"Gift {gift_id} ({amount_sek} SEK) from {sender_id} to {receiver_team} in match {match_id}")
    return {"gift": format_gift(gift), "match": format_match(match)}


async def get_match_gifts(session: AsyncSession, match_id: str) -> List[Dict]:
    """
    Gift ledger of a match in the order the gifts were sent.

    Raises:
        NotFoundError: If the match does not exist
    """
    await load_match(session, match_id)
    result = await session.execute(
        select(BattleGiftTransaction)
        .where(BattleGiftTransaction.match_id == match_id)
        .order_by(BattleGiftTransaction.id.asc())
    )
    return [format_gift(g) for g in result.scalars().all()]
