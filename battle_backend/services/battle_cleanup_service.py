"""
Battle cleanup service: background housekeeping for the battle workflow.

Every CLEANUP_INTERVAL_SECONDS the worker expires unanswered invitations,
cancels matches nobody finished accepting (their lobbies go back to the
queue), purges spent matchmaking blocks and drops idle WebSocket
subscriptions.
"""

import asyncio
import logging
from typing import Dict, Optional

from battle_backend.database import db
from battle_backend.services.battle_service import BattleService
from battle_backend.services.channel_publisher import get_channel_publisher
from battle_backend.services.websocket_manager import get_websocket_manager
from battle_backend.utils.constants import CLEANUP_INTERVAL_SECONDS

logger = logging.getLogger(__name__)


class BattleCleanupService:
    """Background worker that enforces battle timeouts."""

    def __init__(self, interval_seconds: int = CLEANUP_INTERVAL_SECONDS):
        self.interval_seconds = interval_seconds
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        """Start the background cleanup worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._poll_loop())
            logger.info("Battle cleanup worker started")

    def stop(self) -> None:
        """Stop the background cleanup worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            logger.info("Battle cleanup worker stopped")

    async def _poll_loop(self) -> None:
        """Main loop: run one sweep, then wait. Repeats until stopped."""
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in battle cleanup worker: {e}", exc_info=True)

            # Wait for the interval or until stop is signalled
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> Dict:
        """
        Run a single sweep.

        Returns:
            The BattleService result with per-task counts
        """
        async with db.AsyncSessionLocal() as session:
            service = BattleService(session, publisher=get_channel_publisher())
            result = await service.run_cleanup()

        if not result["success"]:
            logger.warning(f"Battle cleanup sweep failed: {result['error']}")
        elif result["expired_invitations"] or result["expired_matches"] or result["purged_blocks"]:
            logger.info(
                f"Battle cleanup: {result['expired_invitations']} invitation(s) expired, "
                f"{result['expired_matches']} match(es) cancelled, "
                f"{result['purged_blocks']} block(s) purged"
            )

        result["dropped_sockets"] = await get_websocket_manager().cleanup_stale_connections()
        return result


# Global singleton
_cleanup_service = BattleCleanupService()


def get_battle_cleanup_service() -> BattleCleanupService:
    """Get the global battle cleanup service instance."""
    return _cleanup_service
