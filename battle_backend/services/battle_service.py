"""
BattleService: the public entry point of the battle workflow.

Each method runs one operation in its own transaction on the injected
session, turns expected failures into result dicts and, after a successful
commit, dispatches the operation's outbox (notifications and lobby requeues).

Result shape:
    {"success": True, ...operation data...}
    {"success": False, "error": "<message>", "error_code": "<code>"}
"""

import random
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from battle_backend.services import (
    duration_service,
    gift_service,
    lobby_service,
    match_acceptance_service,
    matchmaking_service,
    reward_service,
    wallet_service,
)
from battle_backend.services.battle_errors import BattleError, PolicyViolationError
from battle_backend.services.battle_events import EventDispatcher, Outbox
from battle_backend.services.battle_records import format_match, load_lobby, load_match
from battle_backend.services.channel_publisher import ChannelPublisher
import logging

logger = logging.getLogger(__name__)

CONFLICT_ERROR = "The battle was changed by someone else, please try again"
STORE_ERROR = "Battle data could not be saved"

Operation = Callable[[Outbox], Awaitable[Any]]


class BattleService:
    """Transactional facade over the battle services."""

    def __init__(
        self,
        session: AsyncSession,
        publisher: Optional[ChannelPublisher] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            session: Session owned by the caller; committed or rolled back per operation
            publisher: Where notifications go (None drops them)
            rng: Random source for battle leader election
        """
        self.session = session
        self.publisher = publisher
        self.rng = rng or random.Random()
        self._dispatcher = EventDispatcher(publisher, requeue=self.enter_matchmaking)

    async def _run(self, name: str, operation: Operation, key: Optional[str] = None) -> Dict:
        """
        Execute one operation in a transaction.

        Args:
            name: Operation name for logs
            operation: Coroutine factory receiving a fresh Outbox
            key: Wrap the operation's return value under this key; otherwise
                it must be a dict and is merged into the result

        Returns:
            Result dict
        """
        outbox = Outbox()
        try:
            data = await operation(outbox)
            await self.session.commit()
        except BattleError as e:
            await self.session.rollback()
            logger.info(f"{name} rejected ({e.code}): {e}")
            return self._failure(str(e), e.code)
        except (StaleDataError, IntegrityError) as e:
            await self.session.rollback()
            logger.warning(f"{name} lost a concurrent update: {e}")
            return self._failure(CONFLICT_ERROR, "conflict")
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"{name} failed: {e}", exc_info=True)
            return self._failure(STORE_ERROR, "store_error")

        result = {"success": True}
        if key is not None:
            result[key] = data
        else:
            result.update(data)

        if len(outbox):
            requeued = await self._dispatcher.dispatch(outbox)
            if requeued:
                result["requeued"] = requeued
        return result

    async def _require_lobby_member(self, lobby_id: str, user_id: str) -> None:
        lobby = await load_lobby(self.session, lobby_id)
        if user_id not in (lobby.team_a_players or []):
            raise PolicyViolationError("User is not in this lobby")

    @staticmethod
    def _failure(message: str, code: str) -> Dict:
        return {"success": False, "error": message, "error_code": code}

    # ------------------------------------------------------------------
    # Lobbies and invitations
    # ------------------------------------------------------------------

    async def create_lobby(
        self,
        user_id: str,
        battle_format: str,
        return_to_solo_stream: bool = False,
        original_stream_id: Optional[str] = None,
    ) -> Dict:
        return await self._run(
            "create_lobby",
            lambda outbox: lobby_service.create_lobby(
                self.session, user_id, battle_format, return_to_solo_stream, original_stream_id
            ),
            key="lobby",
        )

    async def send_invitation(self, lobby_id: str, inviter_id: str, invitee_id: str) -> Dict:
        return await self._run(
            "send_invitation",
            lambda outbox: lobby_service.send_invitation(
                self.session, lobby_id, inviter_id, invitee_id, outbox
            ),
            key="invitation",
        )

    async def accept_invitation(self, invitation_id: str, user_id: str) -> Dict:
        return await self._run(
            "accept_invitation",
            lambda outbox: lobby_service.accept_invitation(
                self.session, invitation_id, user_id, outbox
            ),
        )

    async def decline_invitation(self, invitation_id: str, user_id: str) -> Dict:
        return await self._run(
            "decline_invitation",
            lambda outbox: lobby_service.decline_invitation(self.session, invitation_id, user_id),
            key="invitation",
        )

    async def leave_lobby(self, lobby_id: str, user_id: str) -> Dict:
        return await self._run(
            "leave_lobby",
            lambda outbox: lobby_service.leave_lobby(self.session, lobby_id, user_id, outbox),
            key="lobby",
        )

    async def get_lobby(self, lobby_id: str) -> Dict:
        return await self._run(
            "get_lobby",
            lambda outbox: lobby_service.get_lobby(self.session, lobby_id),
            key="lobby",
        )

    async def get_user_active_lobby(self, user_id: str) -> Dict:
        return await self._run(
            "get_user_active_lobby",
            lambda outbox: lobby_service.get_user_active_lobby(self.session, user_id),
            key="lobby",
        )

    async def get_pending_invitations(self, user_id: str) -> Dict:
        return await self._run(
            "get_pending_invitations",
            lambda outbox: lobby_service.get_pending_invitations(self.session, user_id),
            key="invitations",
        )

    # ------------------------------------------------------------------
    # Matchmaking and acceptance
    # ------------------------------------------------------------------

    async def enter_matchmaking(self, lobby_id: str, user_id: Optional[str] = None) -> Dict:
        """
        Queue a lobby and try to pair it.

        A user-initiated call passes user_id: the user must be in the lobby
        and must not be serving a decline block. Requeues after a cancelled
        match call this without a user.
        """

        async def operation(outbox: Outbox):
            if user_id is not None:
                await self._require_lobby_member(lobby_id, user_id)
                if await match_acceptance_service.is_user_blocked(self.session, user_id):
                    raise PolicyViolationError("You are temporarily blocked from matchmaking")
            return await matchmaking_service.enter_matchmaking(self.session, lobby_id, outbox)

        return await self._run("enter_matchmaking", operation)

    async def leave_matchmaking(self, lobby_id: str, user_id: Optional[str] = None) -> Dict:
        async def operation(outbox: Outbox):
            if user_id is not None:
                await self._require_lobby_member(lobby_id, user_id)
            return await matchmaking_service.leave_matchmaking(self.session, lobby_id)

        return await self._run("leave_matchmaking", operation)

    async def get_queue_position(self, lobby_id: str) -> Dict:
        return await self._run(
            "get_queue_position",
            lambda outbox: matchmaking_service.get_queue_position(self.session, lobby_id),
            key="position",
        )

    async def accept_match(self, match_id: str, user_id: str, lobby_id: str) -> Dict:
        return await self._run(
            "accept_match",
            lambda outbox: match_acceptance_service.accept_match(
                self.session, match_id, user_id, lobby_id, outbox, self.rng
            ),
        )

    async def decline_match(self, match_id: str, user_id: str) -> Dict:
        return await self._run(
            "decline_match",
            lambda outbox: match_acceptance_service.decline_match(
                self.session, match_id, user_id, outbox
            ),
        )

    async def is_user_blocked(self, user_id: str) -> Dict:
        return await self._run(
            "is_user_blocked",
            lambda outbox: match_acceptance_service.is_user_blocked(self.session, user_id),
            key="blocked",
        )

    async def get_match(self, match_id: str) -> Dict:
        async def operation(outbox: Outbox):
            return format_match(await load_match(self.session, match_id))

        return await self._run("get_match", operation, key="match")

    # ------------------------------------------------------------------
    # Live battle
    # ------------------------------------------------------------------

    async def submit_duration_selection(self, match_id: str, user_id: str, duration: int) -> Dict:
        """
        Propose a duration. A mismatch is committed (selections are cleared)
        but reported as a failure with error_code "duration_mismatch".
        """
        result = await self._run(
            "submit_duration_selection",
            lambda outbox: duration_service.submit_duration_selection(
                self.session, match_id, user_id, duration, outbox
            ),
        )
        if result["success"] and result.get("error"):
            result["success"] = False
            result["error_code"] = "duration_mismatch"
        elif result["success"]:
            result.pop("error", None)
        return result

    async def send_battle_gift(
        self, match_id: str, sender_id: str, receiver_team: str, gift_id: str, amount_sek: int
    ) -> Dict:
        return await self._run(
            "send_battle_gift",
            lambda outbox: gift_service.send_battle_gift(
                self.session, match_id, sender_id, receiver_team, gift_id, amount_sek
            ),
        )

    async def get_match_gifts(self, match_id: str) -> Dict:
        return await self._run(
            "get_match_gifts",
            lambda outbox: gift_service.get_match_gifts(self.session, match_id),
            key="gifts",
        )

    # ------------------------------------------------------------------
    # Completion, rewards and rematch
    # ------------------------------------------------------------------

    async def end_battle_match(self, match_id: str) -> Dict:
        return await self._run(
            "end_battle_match",
            lambda outbox: reward_service.end_battle_match(self.session, match_id, outbox),
        )

    async def request_rematch(self, match_id: str, user_id: str) -> Dict:
        return await self._run(
            "request_rematch",
            lambda outbox: reward_service.request_rematch(self.session, match_id, user_id, outbox),
        )

    async def end_battle(self, match_id: str) -> Dict:
        return await self._run(
            "end_battle",
            lambda outbox: reward_service.end_battle(self.session, match_id),
        )

    async def get_match_rewards(self, match_id: str) -> Dict:
        return await self._run(
            "get_match_rewards",
            lambda outbox: reward_service.get_match_rewards(self.session, match_id),
            key="rewards",
        )

    async def get_user_battle_history(self, user_id: str, limit: int = 20) -> Dict:
        return await self._run(
            "get_user_battle_history",
            lambda outbox: reward_service.get_user_battle_history(self.session, user_id, limit),
            key="history",
        )

    async def get_wallet(self, user_id: str, limit: int = 50) -> Dict:
        async def operation(outbox: Outbox):
            return {
                "balance_sek": await wallet_service.get_balance(self.session, user_id),
                "transactions": await wallet_service.get_transactions(self.session, user_id, limit),
            }

        return await self._run("get_wallet", operation, key="wallet")

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def run_cleanup(self, now: Optional[datetime] = None) -> Dict:
        """
        Expire invitations, cancel matches nobody finished accepting and
        purge spent matchmaking blocks.

        Returns:
            Result dict with per-task counts
        """

        async def operation(outbox: Outbox):
            return {
                "expired_invitations": await lobby_service.expire_invitations(self.session, now),
                "expired_matches": await match_acceptance_service.expire_stale_matches(
                    self.session, outbox, now
                ),
                "purged_blocks": await match_acceptance_service.purge_expired_blocks(
                    self.session, now
                ),
            }

        return await self._run("run_cleanup", operation)
