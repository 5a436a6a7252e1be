"""
Pydantic models for API request validation.
"""

from typing import Optional
from pydantic import BaseModel, Field

from battle_backend.utils.constants import BATTLE_FORMATS


class LobbyCreate(BaseModel):
    """Request to create a battle lobby."""

    format: str = Field(pattern=f"^({'|'.join(BATTLE_FORMATS)})$")
    return_to_solo_stream: bool = False
    original_stream_id: Optional[str] = None


class InvitationCreate(BaseModel):
    """Request to invite a user into a lobby."""

    invitee_id: str = Field(min_length=1)


class MatchAccept(BaseModel):
    """Acceptance of a found match on behalf of the caller's lobby."""

    lobby_id: str = Field(min_length=1)


class DurationSelection(BaseModel):
    """A battle leader's proposed match duration in minutes."""

    duration: int


class GiftCreate(BaseModel):
    """Gift sent to one team during a live match."""

    receiver_team: str = Field(pattern="^(team_a|team_b)$")
    gift_id: str = Field(min_length=1)
    amount_sek: int = Field(gt=0)
