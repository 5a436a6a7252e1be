"""battle_schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

Battle lobbies, invitations, matches, gift ledger, rewards, matchmaking
queue and blocks, plus the profile and wallet tables they read and write.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=True,
    )


def upgrade() -> None:
    """Create the battle tables with indexes and constraints."""
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("premium_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "battle_lobbies",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("host_id", sa.String(36), nullable=False),
        sa.Column("format", sa.String(3), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="waiting"),
        sa.Column("team_a_players", postgresql.JSONB(), nullable=False),
        sa.Column("max_players_per_team", sa.Integer(), nullable=False),
        sa.Column("current_players_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("match_found_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("battle_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("battle_ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("return_to_solo_stream", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("original_stream_id", sa.String(64), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "current_players_count <= max_players_per_team",
            name="ck_battle_lobbies_capacity",
        ),
    )
    op.create_index("idx_battle_lobbies_host_status", "battle_lobbies", ["host_id", "status"])
    op.create_index("idx_battle_lobbies_status", "battle_lobbies", ["status"])

    op.create_table(
        "battle_invitations",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("lobby_id", sa.String(36), nullable=False),
        sa.Column("inviter_id", sa.String(36), nullable=False),
        sa.Column("invitee_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        _created_at(),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lobby_id"], ["battle_lobbies.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_battle_invitations_invitee_status", "battle_invitations", ["invitee_id", "status"]
    )
    op.create_index("idx_battle_invitations_lobby", "battle_invitations", ["lobby_id"])

    op.create_table(
        "battle_matches",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("lobby_a_id", sa.String(36), nullable=False),
        sa.Column("lobby_b_id", sa.String(36), nullable=False),
        sa.Column("format", sa.String(3), nullable=False),
        sa.Column("stream_id", sa.String(64), nullable=True),
        sa.Column("team_a_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("team_b_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("winner_team", sa.String(10), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending_accept"),
        sa.Column("team_a_accepted", postgresql.JSONB(), nullable=False),
        sa.Column("team_b_accepted", postgresql.JSONB(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("selected_duration_a", sa.Integer(), nullable=True),
        sa.Column("selected_duration_b", sa.Integer(), nullable=True),
        sa.Column("duration_selected_by_a", sa.String(36), nullable=True),
        sa.Column("duration_selected_by_b", sa.String(36), nullable=True),
        sa.Column("team_a_leader_id", sa.String(36), nullable=True),
        sa.Column("team_b_leader_id", sa.String(36), nullable=True),
        sa.Column("team_a_total_gifts_sek", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("team_b_total_gifts_sek", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rematch_requested_by", sa.String(10), nullable=True),
        sa.Column("post_match_action", sa.String(20), nullable=True),
        sa.Column("rematch_of_match_id", sa.String(36), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["lobby_a_id"], ["battle_lobbies.id"]),
        sa.ForeignKeyConstraint(["lobby_b_id"], ["battle_lobbies.id"]),
        sa.ForeignKeyConstraint(["rematch_of_match_id"], ["battle_matches.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_battle_matches_status_created", "battle_matches", ["status", "created_at"]
    )
    op.create_index("idx_battle_matches_lobby_a", "battle_matches", ["lobby_a_id"])
    op.create_index("idx_battle_matches_lobby_b", "battle_matches", ["lobby_b_id"])

    op.create_table(
        "battle_gift_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("match_id", sa.String(36), nullable=False),
        sa.Column("sender_id", sa.String(36), nullable=False),
        sa.Column("receiver_team", sa.String(10), nullable=False),
        sa.Column("gift_id", sa.String(64), nullable=False),
        sa.Column("amount_sek", sa.Integer(), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(["match_id"], ["battle_matches.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("amount_sek > 0", name="ck_battle_gift_amount_positive"),
    )
    op.create_index("idx_battle_gifts_match", "battle_gift_transactions", ["match_id"])

    op.create_table(
        "battle_rewards",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("match_id", sa.String(36), nullable=False),
        sa.Column("player_id", sa.String(36), nullable=False),
        sa.Column("team", sa.String(10), nullable=False),
        sa.Column("reward_amount_sek", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_winner", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.Column("distributed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["match_id"], ["battle_matches.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("match_id", "player_id", name="uq_battle_reward_match_player"),
    )
    op.create_index("idx_battle_rewards_player", "battle_rewards", ["player_id"])

    op.create_table(
        "battle_matchmaking_queue",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("lobby_id", sa.String(36), nullable=False),
        sa.Column("format", sa.String(3), nullable=False),
        sa.Column("players_count", sa.Integer(), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(["lobby_id"], ["battle_lobbies.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lobby_id"),
    )
    op.create_index(
        "idx_battle_queue_format_created", "battle_matchmaking_queue", ["format", "created_at"]
    )

    op.create_table(
        "battle_matchmaking_blocks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("reason", sa.String(50), nullable=False),
        sa.Column("blocked_until", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_battle_blocks_user_until", "battle_matchmaking_blocks", ["user_id", "blocked_until"]
    )

    op.create_table(
        "wallets",
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("balance_sek", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("amount_sek", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("reference_id", sa.String(36), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_wallet_transactions_user_created", "wallet_transactions", ["user_id", "created_at"]
    )


def downgrade() -> None:
    """Drop the battle tables."""
    op.drop_index("idx_wallet_transactions_user_created", table_name="wallet_transactions")
    op.drop_table("wallet_transactions")
    op.drop_table("wallets")
    op.drop_index("idx_battle_blocks_user_until", table_name="battle_matchmaking_blocks")
    op.drop_table("battle_matchmaking_blocks")
    op.drop_index("idx_battle_queue_format_created", table_name="battle_matchmaking_queue")
    op.drop_table("battle_matchmaking_queue")
    op.drop_index("idx_battle_rewards_player", table_name="battle_rewards")
    op.drop_table("battle_rewards")
    op.drop_index("idx_battle_gifts_match", table_name="battle_gift_transactions")
    op.drop_table("battle_gift_transactions")
    op.drop_index("idx_battle_matches_lobby_b", table_name="battle_matches")
    op.drop_index("idx_battle_matches_lobby_a", table_name="battle_matches")
    op.drop_index("idx_battle_matches_status_created", table_name="battle_matches")
    op.drop_table("battle_matches")
    op.drop_index("idx_battle_invitations_lobby", table_name="battle_invitations")
    op.drop_index("idx_battle_invitations_invitee_status", table_name="battle_invitations")
    op.drop_table("battle_invitations")
    op.drop_index("idx_battle_lobbies_status", table_name="battle_lobbies")
    op.drop_index("idx_battle_lobbies_host_status", table_name="battle_lobbies")
    op.drop_table("battle_lobbies")
    op.drop_table("profiles")
