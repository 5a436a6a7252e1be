"""
Duration negotiation between the two battle leaders.
"""

from typing import Dict

from sqlalchemy.ext.asyncio import AsyncSession

from battle_backend.database.models import MatchStatus
from battle_backend.services.battle_errors import (
    InvalidTransitionError,
    PolicyViolationError,
    ValidationError,
)
from battle_backend.services.battle_events import BattleEventType, Outbox
from battle_backend.services.battle_records import (
    format_match,
    load_match,
    load_match_lobbies,
    team_of_leader,
)
from battle_backend.utils.constants import ALLOWED_MATCH_DURATIONS, TEAM_A
import logging

logger = logging.getLogger(__name__)

DURATION_MISMATCH_ERROR = "Battle leaders picked different durations, please choose again"


async def submit_duration_selection(
    session: AsyncSession, match_id: str, user_id: str, duration: int, outbox: Outbox
) -> Dict:
    """
    Record a leader's proposed match duration.

    When both leaders have proposed the same value it becomes the match
    duration. Different values clear both proposals so the leaders pick
    again; that reset is persisted even though it is reported as an error.

    Args:
        session: Database session
        match_id: Match id
        user_id: Submitting user, must be one of the two leaders
        duration: Minutes, one of ALLOWED_MATCH_DURATIONS
        outbox: Collects the duration_agreed notification

    Returns:
        Dict with "both_agreed", "duration_minutes", "error" (mismatch message or None)
        and "match"

    Raises:
        ValidationError: If the duration is not offered
        NotFoundError: If the match does not exist
        InvalidTransitionError: If the match is not live
        PolicyViolationError: If the user is not a battle leader
    """
    if duration not in ALLOWED_MATCH_DURATIONS:
        raise ValidationError(
            f"Duration must be one of {', '.join(str(d) for d in ALLOWED_MATCH_DURATIONS)} minutes"
        )

    match = await load_match(session, match_id)
    if match.status != MatchStatus.LIVE.value:
        raise InvalidTransitionError("Duration can only be chosen for a live match")

    team = team_of_leader(match, user_id)
    if team is None:
        raise PolicyViolationError("Only battle leaders can select the duration")

    if team == TEAM_A:
        match.selected_duration_a = duration
        match.duration_selected_by_a = user_id
    else:
        match.selected_duration_b = duration
        match.duration_selected_by_b = user_id
    await session.flush()
    # The other leader may have written in the meantime
    await session.refresh(match)

    if match.selected_duration_a is None or match.selected_duration_b is None:
        logger.info(f"Leader {user_id} proposed {duration} min for match {match_id}, waiting for opponent")
        return {
            "both_agreed": False,
            "duration_minutes": None,
            "error": None,
            "match": format_match(match),
        }

    if match.selected_duration_a != match.selected_duration_b:
        logger.info(
            f"Duration mismatch on match {match_id}: "
            f"{match.selected_duration_a} vs {match.selected_duration_b}, resetting"
        )
        match.selected_duration_a = None
        match.selected_duration_b = None
        match.duration_selected_by_a = None
        match.duration_selected_by_b = None
        await session.flush()
        return {
            "both_agreed": False,
            "duration_minutes": None,
            "error": DURATION_MISMATCH_ERROR,
            "match": format_match(match),
        }

    match.duration_minutes = match.selected_duration_a
    await session.flush()

    lobby_a, lobby_b = await load_match_lobbies(session, match)
    outbox.notify_users(
        [*lobby_a.team_a_players, *lobby_b.team_a_players],
        BattleEventType.DURATION_AGREED,
        {"match_id": match.id, "duration_minutes": match.duration_minutes},
    )

    logger.info(f"Match {match_id} duration agreed: {match.duration_minutes} min")
    return {
        "both_agreed": True,
        "duration_minutes": match.duration_minutes,
        "error": None,
        "match": format_match(match),
    }
