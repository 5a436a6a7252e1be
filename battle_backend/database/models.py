"""
SQLAlchemy ORM models for the battle system.
"""

import enum
import uuid
from sqlalchemy import (
    JSON,
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from battle_backend.database.db import Base
from battle_backend.utils.datetime_utils import utcnow


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONList = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


class LobbyStatus(str, enum.Enum):
    """Battle lobby status enum."""

    WAITING = "waiting"
    SEARCHING = "searching"
    MATCHED = "matched"
    IN_BATTLE = "in_battle"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InvitationStatus(str, enum.Enum):
    """Battle invitation status enum."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class MatchStatus(str, enum.Enum):
    """Battle match status enum."""

    PENDING_ACCEPT = "pending_accept"
    LIVE = "live"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PostMatchAction(str, enum.Enum):
    """What the leaders chose after a completed match."""

    END = "end"
    REMATCH = "rematch"


class WalletTransactionType(str, enum.Enum):
    """Wallet transaction type enum."""

    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    GIFT_RECEIVED = "gift_received"
    GIFT_SENT = "gift_sent"
    BATTLE_REWARD = "battle_reward"


class Profile(Base):
    """User profile as seen by the battle system (owned by the auth provider)."""

    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True)  # auth user id
    display_name = Column(String(100), nullable=True)
    premium_active = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class BattleLobby(Base):
    """Team-in-formation container before matchmaking."""

    __tablename__ = "battle_lobbies"

    id = Column(String(36), primary_key=True, default=_new_id)
    host_id = Column(String(36), nullable=False)
    format = Column(String(3), nullable=False)  # "1v1".."5v5"
    status = Column(String(20), default=LobbyStatus.WAITING.value, nullable=False)
    team_a_players = Column(JSONList, nullable=False, default=list)  # host first
    max_players_per_team = Column(Integer, nullable=False)
    current_players_count = Column(Integer, nullable=False, default=1)
    match_found_at = Column(DateTime(timezone=True), nullable=True)
    battle_started_at = Column(DateTime(timezone=True), nullable=True)
    battle_ended_at = Column(DateTime(timezone=True), nullable=True)
    return_to_solo_stream = Column(Boolean, default=False, nullable=False)
    original_stream_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "current_players_count <= max_players_per_team",
            name="ck_battle_lobbies_capacity",
        ),
        Index("idx_battle_lobbies_host_status", "host_id", "status"),
        Index("idx_battle_lobbies_status", "status"),
    )


class BattleInvitation(Base):
    """Invitation for a user to join a lobby."""

    __tablename__ = "battle_invitations"

    id = Column(String(36), primary_key=True, default=_new_id)
    lobby_id = Column(String(36), ForeignKey("battle_lobbies.id"), nullable=False)
    inviter_id = Column(String(36), nullable=False)
    invitee_id = Column(String(36), nullable=False)
    status = Column(String(20), default=InvitationStatus.PENDING.value, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    responded_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_battle_invitations_invitee_status", "invitee_id", "status"),
        Index("idx_battle_invitations_lobby", "lobby_id"),
    )


class BattleMatch(Base):
    """A paired confrontation between two lobbies."""

    __tablename__ = "battle_matches"

    id = Column(String(36), primary_key=True, default=_new_id)
    lobby_a_id = Column(String(36), ForeignKey("battle_lobbies.id"), nullable=False)
    lobby_b_id = Column(String(36), ForeignKey("battle_lobbies.id"), nullable=False)
    format = Column(String(3), nullable=False)
    stream_id = Column(String(64), nullable=True)
    team_a_score = Column(Integer, default=0, nullable=False)
    team_b_score = Column(Integer, default=0, nullable=False)
    winner_team = Column(String(10), nullable=True)  # team_a, team_b, draw
    status = Column(String(20), default=MatchStatus.PENDING_ACCEPT.value, nullable=False)
    team_a_accepted = Column(JSONList, nullable=False, default=list)
    team_b_accepted = Column(JSONList, nullable=False, default=list)
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    selected_duration_a = Column(Integer, nullable=True)
    selected_duration_b = Column(Integer, nullable=True)
    duration_selected_by_a = Column(String(36), nullable=True)
    duration_selected_by_b = Column(String(36), nullable=True)
    team_a_leader_id = Column(String(36), nullable=True)
    team_b_leader_id = Column(String(36), nullable=True)
    team_a_total_gifts_sek = Column(Integer, default=0, nullable=False)
    team_b_total_gifts_sek = Column(Integer, default=0, nullable=False)
    rematch_requested_by = Column(String(10), nullable=True)  # team_a, team_b, both
    post_match_action = Column(String(20), nullable=True)  # end, rematch
    rematch_of_match_id = Column(String(36), ForeignKey("battle_matches.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_battle_matches_status_created", "status", "created_at"),
        Index("idx_battle_matches_lobby_a", "lobby_a_id"),
        Index("idx_battle_matches_lobby_b", "lobby_b_id"),
    )


class BattleGiftTransaction(Base):
    """Append-only ledger of gifts sent during a match."""

    __tablename__ = "battle_gift_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(String(36), ForeignKey("battle_matches.id"), nullable=False)
    sender_id = Column(String(36), nullable=False)
    receiver_team = Column(String(10), nullable=False)
    gift_id = Column(String(64), nullable=False)
    amount_sek = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        CheckConstraint("amount_sek > 0", name="ck_battle_gift_amount_positive"),
        Index("idx_battle_gifts_match", "match_id"),
    )


class BattleReward(Base):
    """Per-player payout computed at match end."""

    __tablename__ = "battle_rewards"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(String(36), ForeignKey("battle_matches.id"), nullable=False)
    player_id = Column(String(36), nullable=False)
    team = Column(String(10), nullable=False)
    reward_amount_sek = Column(Integer, nullable=False, default=0)
    is_winner = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    distributed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("match_id", "player_id", name="uq_battle_reward_match_player"),
        Index("idx_battle_rewards_player", "player_id"),
    )


class MatchmakingQueueEntry(Base):
    """A lobby waiting for an opponent."""

    __tablename__ = "battle_matchmaking_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lobby_id = Column(String(36), ForeignKey("battle_lobbies.id"), nullable=False, unique=True)
    format = Column(String(3), nullable=False)
    players_count = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("idx_battle_queue_format_created", "format", "created_at"),
    )


class MatchmakingBlock(Base):
    """Temporary matchmaking penalty."""

    __tablename__ = "battle_matchmaking_blocks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False)
    reason = Column(String(50), nullable=False)
    blocked_until = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("idx_battle_blocks_user_until", "user_id", "blocked_until"),
    )


class Wallet(Base):
    """Spendable SEK balance per user."""

    __tablename__ = "wallets"

    user_id = Column(String(36), primary_key=True)
    balance_sek = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class WalletTransaction(Base):
    """Wallet ledger entry."""

    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False)
    amount_sek = Column(Integer, nullable=False)
    type = Column(String(20), nullable=False)  # WalletTransactionType enum value
    description = Column(String(255), nullable=True)
    reference_id = Column(String(36), nullable=True)  # e.g. battle match id
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("idx_wallet_transactions_user_created", "user_id", "created_at"),
    )
