"""
Shared pytest configuration for battle backend tests.

Service tests run against an in-memory SQLite database (aiosqlite); every
test gets a fresh schema.
"""

import os
import random

# Rate limits are no-ops in test mode; must be set before the routes import
os.environ.setdefault("ENV", "test")

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from battle_backend.database.db import Base
from battle_backend.database.models import BattleLobby, Profile
from battle_backend.services import lobby_service, match_acceptance_service, matchmaking_service
from battle_backend.services.battle_events import Outbox


@pytest_asyncio.fixture
async def db_session():
    """Create a test database session."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async_session_maker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_maker() as session:
        yield session

    # Cleanup
    await engine.dispose()


@pytest_asyncio.fixture
def outbox():
    """Fresh outbox per test."""
    return Outbox()


@pytest_asyncio.fixture
def rng():
    """Seeded random source so leader election is reproducible."""
    return random.Random(1234)


@pytest_asyncio.fixture
def make_profile(db_session):
    """Factory: insert a profile row."""

    async def _make(user_id, premium=False, display_name=None):
        profile = Profile(id=user_id, display_name=display_name or user_id, premium_active=premium)
        db_session.add(profile)
        await db_session.flush()
        return profile

    return _make


@pytest_asyncio.fixture
def make_lobby(db_session):
    """
    Factory: create a waiting lobby hosted by the first user with the rest
    already joined. Returns the lobby id.
    """

    async def _make(players, battle_format="2v2"):
        lobby_dict = await lobby_service.create_lobby(db_session, players[0], battle_format)
        lobby = await db_session.get(BattleLobby, lobby_dict["id"])
        lobby.team_a_players = list(players)
        lobby.current_players_count = len(players)
        await db_session.flush()
        return lobby.id

    return _make


@pytest_asyncio.fixture
def make_live_match(db_session, make_lobby, rng):
    """
    Factory: pair two lobbies and have everyone accept.

    Returns (match dict, {"a": team_a, "b": team_b}); team_a plays as the
    match's team A.
    """

    async def _make(team_a=("a1", "a2"), team_b=("b1", "b2")):
        battle_format = f"{len(team_a)}v{len(team_b)}"
        first = await make_lobby(list(team_a), battle_format)
        second = await make_lobby(list(team_b), battle_format)
        setup_outbox = Outbox()
        # The lobby that enters last becomes lobby A
        await matchmaking_service.enter_matchmaking(db_session, second, setup_outbox)
        result = await matchmaking_service.enter_matchmaking(db_session, first, setup_outbox)
        match = result["match"]

        rosters = {first: list(team_a), second: list(team_b)}
        for lobby_id in (match["lobby_a_id"], match["lobby_b_id"]):
            for user_id in rosters[lobby_id]:
                accepted = await match_acceptance_service.accept_match(
                    db_session, match["id"], user_id, lobby_id, setup_outbox, rng
                )
        return accepted["match"], {
            "a": rosters[match["lobby_a_id"]],
            "b": rosters[match["lobby_b_id"]],
        }

    return _make
