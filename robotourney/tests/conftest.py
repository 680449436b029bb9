"""
Shared pytest configuration for robotourney tests.

Database tests run against an in-memory SQLite database (aiosqlite) with the
full schema created from the models.
"""

import os

os.environ.setdefault("ENV", "test")

import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from robotourney.database.db import Base  # noqa: E402
from robotourney.database.models import (  # noqa: E402
    Tournament, Team, Field, Stage, StageType,
)
from robotourney.models.schemas import AllianceScoreInput  # noqa: E402
from robotourney.services import match_score_service  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


async def create_tournament(
    session: AsyncSession,
    team_count: int = 4,
    field_count: int = 1,
    stage_type: StageType = StageType.SWISS,
):
    """
    Create a tournament with teams, fields, and one stage.

    Returns:
        (tournament, stage, teams, fields)
    """
    tournament = Tournament(name="Regional Qualifier")
    session.add(tournament)
    await session.flush()

    teams = [
        Team(tournament_id=tournament.id, team_number=str(1000 + i), name=f"Team {i}")
        for i in range(1, team_count + 1)
    ]
    fields = [
        Field(tournament_id=tournament.id, name=f"Field {i}", number=i)
        for i in range(1, field_count + 1)
    ]
    stage = Stage(tournament_id=tournament.id, name="Qualification", type=stage_type, current_round=0)
    session.add_all(teams + fields + [stage])
    await session.commit()
    return tournament, stage, teams, fields


async def add_team(session: AsyncSession, tournament, number: int) -> Team:
    team = Team(tournament_id=tournament.id, team_number=str(number), name=f"Late Team {number}")
    session.add(team)
    await session.commit()
    return team


async def play_match(session: AsyncSession, match, red_points: int, blue_points: int):
    """Finalize a match with the given alliance totals (team count 0 keeps the multiplier at 1)."""
    return await match_score_service.submit_match_scores(
        session,
        match.id,
        AllianceScoreInput(auto_score=red_points),
        AllianceScoreInput(auto_score=blue_points),
        finalize=True,
    )
