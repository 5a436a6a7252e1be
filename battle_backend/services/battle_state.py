"""
Lobby and match state machines.

Every status change goes through transition_lobby / transition_match so the
allowed edges live in one place.
"""

import logging
from typing import Dict, FrozenSet

from battle_backend.database.models import (
    BattleLobby,
    BattleMatch,
    LobbyStatus,
    MatchStatus,
)
from battle_backend.services.battle_errors import InvalidTransitionError

logger = logging.getLogger(__name__)


LOBBY_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    LobbyStatus.WAITING.value: frozenset({
        LobbyStatus.SEARCHING.value,
        LobbyStatus.CANCELLED.value,
    }),
    LobbyStatus.SEARCHING.value: frozenset({
        LobbyStatus.SEARCHING.value,  # re-entering the queue
        LobbyStatus.WAITING.value,  # left the queue
        LobbyStatus.MATCHED.value,
        LobbyStatus.CANCELLED.value,
    }),
    LobbyStatus.MATCHED.value: frozenset({
        LobbyStatus.IN_BATTLE.value,
        LobbyStatus.SEARCHING.value,  # match declined or expired
        LobbyStatus.CANCELLED.value,
    }),
    LobbyStatus.IN_BATTLE.value: frozenset({
        LobbyStatus.COMPLETED.value,
        LobbyStatus.CANCELLED.value,
    }),
    # Only a mutually agreed rematch reopens a completed lobby
    LobbyStatus.COMPLETED.value: frozenset({LobbyStatus.IN_BATTLE.value}),
    LobbyStatus.CANCELLED.value: frozenset(),
}

MATCH_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    MatchStatus.PENDING_ACCEPT.value: frozenset({
        MatchStatus.LIVE.value,
        MatchStatus.CANCELLED.value,
    }),
    MatchStatus.LIVE.value: frozenset({MatchStatus.COMPLETED.value}),
    MatchStatus.COMPLETED.value: frozenset(),
    MatchStatus.CANCELLED.value: frozenset(),
}

# Lobbies a user can still act in
ACTIVE_LOBBY_STATUSES = (
    LobbyStatus.WAITING.value,
    LobbyStatus.SEARCHING.value,
    LobbyStatus.MATCHED.value,
    LobbyStatus.IN_BATTLE.value,
)


def can_transition_lobby(current: str, target: str) -> bool:
    return target in LOBBY_TRANSITIONS.get(current, frozenset())


def can_transition_match(current: str, target: str) -> bool:
    return target in MATCH_TRANSITIONS.get(current, frozenset())


def transition_lobby(lobby: BattleLobby, target: LobbyStatus) -> None:
    """
    Move a lobby to a new status.

    Args:
        lobby: Lobby ORM object (mutated in place, not flushed)
        target: Desired status

    Raises:
        InvalidTransitionError: If the edge is not allowed
    """
    if not can_transition_lobby(lobby.status, target.value):
        raise InvalidTransitionError(
            f"Lobby {lobby.id} cannot go from {lobby.status} to {target.value}"
        )
    if lobby.status != target.value:
        logger.debug(f"Lobby {lobby.id}: {lobby.status} -> {target.value}")
    lobby.status = target.value


def transition_match(match: BattleMatch, target: MatchStatus) -> None:
    """
    Move a match to a new status.

    Args:
        match: Match ORM object (mutated in place, not flushed)
        target: Desired status

    Raises:
        InvalidTransitionError: If the edge is not allowed
    """
    if not can_transition_match(match.status, target.value):
        raise InvalidTransitionError(
            f"Match {match.id} cannot go from {match.status} to {target.value}"
        )
    logger.debug(f"Match {match.id}: {match.status} -> {target.value}")
    match.status = target.value
