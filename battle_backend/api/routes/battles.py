"""Battle route handlers: lobbies, matchmaking, live matches and rewards."""

import asyncio
import logging

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from battle_backend.api.routes import get_current_user_id, limiter, unwrap_result
from battle_backend.database.db import get_db_session
from battle_backend.models.schemas import (
    DurationSelection,
    GiftCreate,
    InvitationCreate,
    LobbyCreate,
    MatchAccept,
)
from battle_backend.services.battle_events import battles_channel, invitations_channel
from battle_backend.services.battle_service import BattleService
from battle_backend.services.channel_publisher import get_channel_publisher
from battle_backend.services.websocket_manager import WEBSOCKET_TIMEOUT_SECONDS, get_websocket_manager

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/battles")


def get_battle_service(session: AsyncSession = Depends(get_db_session)) -> BattleService:
    """BattleService bound to the request's database session."""
    return BattleService(session, publisher=get_channel_publisher())


# ---------------------------------------------------------------------------
# Lobbies
# ---------------------------------------------------------------------------


@router.post("/lobbies")
async def create_lobby(
    payload: LobbyCreate,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    """Create a lobby hosted by the caller."""
    return unwrap_result(
        await service.create_lobby(
            user_id, payload.format, payload.return_to_solo_stream, payload.original_stream_id
        )
    )


@router.get("/lobbies/active")
async def get_active_lobby(
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    """The caller's current lobby, if any (lobby is null otherwise)."""
    return unwrap_result(await service.get_user_active_lobby(user_id))


@router.get("/lobbies/{lobby_id}")
async def get_lobby(
    lobby_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    return unwrap_result(await service.get_lobby(lobby_id))


@router.post("/lobbies/{lobby_id}/invitations")
@limiter.limit("30/minute")
async def send_invitation(
    request: Request,
    lobby_id: str,
    payload: InvitationCreate,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    """Invite another user into the lobby."""
    return unwrap_result(await service.send_invitation(lobby_id, user_id, payload.invitee_id))


@router.post("/lobbies/{lobby_id}/leave")
async def leave_lobby(
    lobby_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    """Leave the lobby; the host leaving cancels it."""
    return unwrap_result(await service.leave_lobby(lobby_id, user_id))


@router.post("/lobbies/{lobby_id}/matchmaking")
async def enter_matchmaking(
    lobby_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    """Queue the lobby. Rejected while the caller serves a decline block."""
    return unwrap_result(await service.enter_matchmaking(lobby_id, user_id=user_id))


@router.delete("/lobbies/{lobby_id}/matchmaking")
async def leave_matchmaking(
    lobby_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    return unwrap_result(await service.leave_matchmaking(lobby_id, user_id=user_id))


@router.get("/lobbies/{lobby_id}/queue-position")
async def get_queue_position(
    lobby_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    return unwrap_result(await service.get_queue_position(lobby_id))


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


@router.get("/invitations")
async def get_pending_invitations(
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    """Unexpired pending invitations for the caller."""
    return unwrap_result(await service.get_pending_invitations(user_id))


@router.post("/invitations/{invitation_id}/accept")
async def accept_invitation(
    invitation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    return unwrap_result(await service.accept_invitation(invitation_id, user_id))


@router.post("/invitations/{invitation_id}/decline")
async def decline_invitation(
    invitation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    return unwrap_result(await service.decline_invitation(invitation_id, user_id))


# ---------------------------------------------------------------------------
# Matches
# ---------------------------------------------------------------------------


@router.get("/matches/{match_id}")
async def get_match(
    match_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    return unwrap_result(await service.get_match(match_id))


@router.post("/matches/{match_id}/accept")
async def accept_match(
    match_id: str,
    payload: MatchAccept,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    """Accept a found match for the caller's lobby."""
    return unwrap_result(await service.accept_match(match_id, user_id, payload.lobby_id))


@router.post("/matches/{match_id}/decline")
async def decline_match(
    match_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    """Decline a found match. The caller is blocked from matchmaking for a few minutes."""
    return unwrap_result(await service.decline_match(match_id, user_id))


@router.post("/matches/{match_id}/duration")
async def submit_duration(
    match_id: str,
    payload: DurationSelection,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    """Battle leader proposes a duration; 409 when the two proposals differ."""
    return unwrap_result(
        await service.submit_duration_selection(match_id, user_id, payload.duration)
    )


@router.post("/matches/{match_id}/gifts")
@limiter.limit("120/minute")
async def send_gift(
    request: Request,
    match_id: str,
    payload: GiftCreate,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    """Send a gift to one team of a live match."""
    return unwrap_result(
        await service.send_battle_gift(
            match_id, user_id, payload.receiver_team, payload.gift_id, payload.amount_sek
        )
    )


@router.get("/matches/{match_id}/gifts")
async def get_match_gifts(
    match_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    return unwrap_result(await service.get_match_gifts(match_id))


@router.post("/matches/{match_id}/end")
async def end_match(
    match_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    """Finish a live match and pay out rewards."""
    return unwrap_result(await service.end_battle_match(match_id))


@router.post("/matches/{match_id}/rematch")
async def request_rematch(
    match_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    return unwrap_result(await service.request_rematch(match_id, user_id))


@router.post("/matches/{match_id}/close")
async def close_match(
    match_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    """End the session after a completed match instead of a rematch."""
    return unwrap_result(await service.end_battle(match_id))


@router.get("/matches/{match_id}/rewards")
async def get_match_rewards(
    match_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    return unwrap_result(await service.get_match_rewards(match_id))


# ---------------------------------------------------------------------------
# Caller
# ---------------------------------------------------------------------------


@router.get("/me/history")
async def get_battle_history(
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    return unwrap_result(await service.get_user_battle_history(user_id, limit))


@router.get("/me/blocked")
async def get_block_status(
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    return unwrap_result(await service.is_user_blocked(user_id))


@router.get("/me/wallet")
async def get_wallet(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    service: BattleService = Depends(get_battle_service),
):
    return unwrap_result(await service.get_wallet(user_id, limit))


# ---------------------------------------------------------------------------
# Real-time channel subscriptions
# ---------------------------------------------------------------------------


@router.websocket("/ws")
async def battle_channel_websocket(websocket: WebSocket):
    """
    Subscribe to the caller's battle channels.

    Requires the X-User-Id header. Without a ?channel parameter the socket
    joins both user:<id>:invitations and user:<id>:battles; one or more
    ?channel= values narrow that to the listed channels of the same user.
    """
    await websocket.accept()

    user_id = websocket.headers.get("x-user-id")
    if not user_id:
        await websocket.close(code=1008, reason="Missing X-User-Id header")
        return

    allowed = [invitations_channel(user_id), battles_channel(user_id)]
    requested = websocket.query_params.getlist("channel") or allowed
    if any(channel not in allowed for channel in requested):
        await websocket.close(code=1008, reason="Channel not allowed")
        return

    manager = get_websocket_manager()
    await manager.subscribe(websocket, requested)

    try:
        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_text(), timeout=WEBSOCKET_TIMEOUT_SECONDS
                )
                await manager.touch(websocket)

                # Client sends "ping", server responds "pong"
                if data == "ping":
                    await websocket.send_text("pong")
            except asyncio.TimeoutError:
                try:
                    await websocket.send_text("ping")
                except Exception:
                    break
    except WebSocketDisconnect:
        logger.info(f"WebSocket for {user_id} disconnected")
    except Exception as e:
        logger.error(f"WebSocket error for {user_id}: {e}")
    finally:
        await manager.disconnect(websocket)
