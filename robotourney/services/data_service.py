"""
Data service layer for database operations.

Persistence collaborator of the ranking calculator and the pairing engine:
every read and write of stages, team stats, and matches goes through here.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from robotourney.database.models import (
    Stage, Tournament, Field, TeamStats, Match, Alliance, TeamAlliance, MatchScore,
    AllianceColor, MatchStatus,
)
from robotourney.utils.exceptions import ConcurrentModificationError

logger = logging.getLogger(__name__)

# Stats columns that ranking updates are allowed to write
TEAM_STATS_FIELDS = (
    "wins",
    "losses",
    "ties",
    "points_scored",
    "points_conceded",
    "matches_played",
    "ranking_points",
    "opponent_win_percentage",
    "point_differential",
)


def _match_load_options():
    """Eager-load options for a match with its alliances, team links, and scores."""
    return (
        selectinload(Match.alliances).selectinload(Alliance.team_alliances),
        selectinload(Match.alliances).selectinload(Alliance.match_scores),
        selectinload(Match.match_scores),
    )


async def find_stage(
    session: AsyncSession, stage_id: int, with_tournament_teams: bool = True
) -> Optional[Stage]:
    """
    Get a stage, optionally with its tournament's teams and fields loaded.

    Returns:
        Stage or None if it does not exist
    """
    query = select(Stage).where(Stage.id == stage_id)
    if with_tournament_teams:
        query = query.options(
            selectinload(Stage.tournament).selectinload(Tournament.teams),
            selectinload(Stage.tournament).selectinload(Tournament.fields),
        ).execution_options(populate_existing=True)
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def find_team_stats(session: AsyncSession, stage_id: int) -> List[TeamStats]:
    """Get all team stats rows of a stage in creation order."""
    result = await session.execute(
        select(TeamStats)
        .where(TeamStats.stage_id == stage_id)
        .options(selectinload(TeamStats.team))
        .order_by(TeamStats.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def upsert_team_stats(
    session: AsyncSession,
    stage_id: int,
    team_id: int,
    fields: Dict,
    tournament_id: Optional[int] = None,
) -> TeamStats:
    """
    Create or update the stats row for (team, stage).

    Does not commit; callers batch several upserts into one commit.

    Args:
        session: Database session
        stage_id: Stage ID
        team_id: Team ID
        fields: Stats columns to write (see TEAM_STATS_FIELDS)
        tournament_id: Required when the row does not exist yet

    Returns:
        The TeamStats row
    """
    unknown = set(fields) - set(TEAM_STATS_FIELDS)
    if unknown:
        raise ValueError(f"Unknown team stats fields: {sorted(unknown)}")

    result = await session.execute(
        select(TeamStats).where(TeamStats.stage_id == stage_id, TeamStats.team_id == team_id)
    )
    stats = result.scalar_one_or_none()
    if stats is None:
        if tournament_id is None:
            raise ValueError("tournament_id is required when creating team stats")
        stats = TeamStats(team_id=team_id, tournament_id=tournament_id, stage_id=stage_id)
        session.add(stats)

    for name, value in fields.items():
        setattr(stats, name, value)
    return stats


async def find_matches(
    session: AsyncSession, stage_id: int, with_alliances_and_scores: bool = True
) -> List[Match]:
    """Get every match of a stage ordered by match number."""
    query = select(Match).where(Match.stage_id == stage_id).order_by(Match.match_number)
    if with_alliances_and_scores:
        query = query.options(*_match_load_options()).execution_options(populate_existing=True)
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_match(session: AsyncSession, match_id: int) -> Optional[Match]:
    """Get a match with alliances, team links, and scores loaded."""
    result = await session.execute(
        select(Match)
        .where(Match.id == match_id)
        .options(selectinload(Match.stage), *_match_load_options())
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def next_match_number(session: AsyncSession, stage_id: int) -> int:
    """Next free match number in a stage: 1 + max(existing), or 1."""
    result = await session.execute(
        select(func.max(Match.match_number)).where(Match.stage_id == stage_id)
    )
    current_max = result.scalar()
    return (current_max or 0) + 1


async def count_matches_per_field(session: AsyncSession, field_ids: List[int]) -> Dict[int, int]:
    """How many matches are already assigned to each field."""
    counts = {field_id: 0 for field_id in field_ids}
    if not field_ids:
        return counts
    result = await session.execute(
        select(Match.field_id, func.count(Match.id))
        .where(Match.field_id.in_(field_ids))
        .group_by(Match.field_id)
    )
    for field_id, count in result.all():
        counts[field_id] = count
    return counts


async def create_match(
    session: AsyncSession,
    stage_id: int,
    round_number: int,
    match_number: int,
    alliances: Dict[AllianceColor, List[int]],
    field: Optional[Field] = None,
    scheduled_time: Optional[datetime] = None,
) -> Match:
    """
    Create a match with its alliances, team links, and zeroed score sheets
    in a single commit.

    Args:
        session: Database session
        stage_id: Stage ID
        round_number: Round the match belongs to
        match_number: Match number, unique within the stage
        alliances: Team IDs per alliance color, in station order
        field: Optional field assignment
        scheduled_time: Optional scheduled start

    Returns:
        The created match with relationships loaded

    Raises:
        ConcurrentModificationError: If the match number was taken concurrently
    """
    match = Match(
        stage_id=stage_id,
        match_number=match_number,
        round_number=round_number,
        status=MatchStatus.PENDING,
        field_id=field.id if field is not None else None,
        scheduled_time=scheduled_time,
    )
    for color in (AllianceColor.RED, AllianceColor.BLUE):
        alliance = Alliance(color=color, score=0)
        alliance.team_alliances = [
            TeamAlliance(team_id=team_id, station_position=position)
            for position, team_id in enumerate(alliances.get(color, []), start=1)
        ]
        match.alliances.append(alliance)
        match.match_scores.append(
            MatchScore(
                alliance=alliance,
                team_count=0,
                multiplier=1.0,
                game_elements={},
            )
        )
    session.add(match)

    try:
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        logger.warning(f"Match number {match_number} already taken in stage {stage_id}: {e}")
        raise ConcurrentModificationError(
            f"Match number {match_number} in stage {stage_id} was created concurrently"
        ) from e

    return await get_match(session, match.id)


async def find_current_match(
    session: AsyncSession, tournament_id: int, field_id: Optional[int] = None
) -> Optional[Match]:
    """
    Match currently shown for a tournament (or one of its fields).

    The most recently started in-progress match wins; without one, the
    next pending match by scheduled time.
    """
    base = (
        select(Match)
        .join(Stage, Match.stage_id == Stage.id)
        .where(Stage.tournament_id == tournament_id)
        .options(selectinload(Match.stage), *_match_load_options())
        .execution_options(populate_existing=True)
    )
    if field_id is not None:
        base = base.where(Match.field_id == field_id)

    result = await session.execute(
        base.where(Match.status == MatchStatus.IN_PROGRESS)
        .order_by(Match.start_time.desc(), Match.id.desc())
        .limit(1)
    )
    match = result.scalar_one_or_none()
    if match is not None:
        return match

    result = await session.execute(
        base.where(Match.status == MatchStatus.PENDING)
        .order_by(Match.scheduled_time, Match.match_number, Match.id)
        .limit(1)
    )
    return result.scalar_one_or_none()
