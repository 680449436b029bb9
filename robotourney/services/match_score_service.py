"""
Match score submission and match status transitions.

Scores are written once per alliance; totals always come from the score
aggregator, never from the caller.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from robotourney.database.models import (
    AllianceColor, Match, MatchScore, MatchStatus, StageType,
)
from robotourney.models.schemas import AllianceScoreInput
from robotourney.services import data_service, ranking_service
from robotourney.services.score_calculator import (
    aggregate_score, calculate_multiplier, calculate_winner,
)
from robotourney.utils.datetime_utils import utcnow
from robotourney.utils.exceptions import NotFoundError

logger = logging.getLogger(__name__)


def _apply_alliance_score(match: Match, color: AllianceColor, data: AllianceScoreInput) -> int:
    """Write one alliance's score sheet and return its total."""
    alliance = match.alliance(color)
    if alliance is None:
        raise ValueError(f"Match {match.id} has no {color.value} alliance")

    score: Optional[MatchScore] = alliance.match_scores[0] if alliance.match_scores else None
    if score is None:
        score = MatchScore(match=match, alliance=alliance)

    total = aggregate_score(
        data.auto_score,
        data.drive_score,
        data.endgame_bonus,
        data.penalties,
        data.team_count,
    )
    score.auto_score = data.auto_score
    score.drive_score = data.drive_score
    score.endgame_bonus = data.endgame_bonus
    score.penalties = data.penalties
    score.team_count = data.team_count
    score.multiplier = calculate_multiplier(data.team_count)
    score.game_elements = dict(data.game_elements)
    score.total_points = total
    alliance.score = total
    return total


async def submit_match_scores(
    session: AsyncSession,
    match_id: int,
    red: AllianceScoreInput,
    blue: AllianceScoreInput,
    finalize: bool = True,
) -> Match:
    """
    Save both alliances' scores for a match.

    When finalizing, the match is marked completed with its winning alliance
    and the stage's Swiss rankings are recomputed.

    Args:
        session: Database session
        match_id: Match ID
        red: Red alliance sub-scores
        blue: Blue alliance sub-scores
        finalize: Complete the match after saving

    Returns:
        The updated match with scores loaded

    Raises:
        NotFoundError: If the match does not exist
    """
    match = await data_service.get_match(session, match_id)
    if match is None:
        raise NotFoundError("Match", match_id)

    red_total = _apply_alliance_score(match, AllianceColor.RED, red)
    blue_total = _apply_alliance_score(match, AllianceColor.BLUE, blue)

    if finalize:
        match.winning_alliance = calculate_winner(red_total, blue_total)
        match.status = MatchStatus.COMPLETED
        match.end_time = utcnow()

    await session.commit()
    logger.info(f"Saved scores for match {match_id}: red {red_total} - blue {blue_total}")

    if finalize and match.stage is not None and match.stage.type == StageType.SWISS:
        await ranking_service.update_swiss_rankings(session, match.stage_id)

    return await data_service.get_match(session, match_id)


async def update_match_status(session: AsyncSession, match_id: int, status: MatchStatus) -> Match:
    """
    Move a match to a new status, stamping start and end times.

    Raises:
        NotFoundError: If the match does not exist
    """
    match = await data_service.get_match(session, match_id)
    if match is None:
        raise NotFoundError("Match", match_id)

    match.status = status
    if status == MatchStatus.IN_PROGRESS and match.start_time is None:
        match.start_time = utcnow()
    elif status == MatchStatus.COMPLETED:
        red = match.alliance(AllianceColor.RED)
        blue = match.alliance(AllianceColor.BLUE)
        match.winning_alliance = calculate_winner(
            red.total_points if red is not None else 0,
            blue.total_points if blue is not None else 0,
        )
        match.end_time = utcnow()
    await session.commit()
    logger.info(f"Match {match_id} is now {status.value}")

    if status == MatchStatus.COMPLETED and match.stage is not None and match.stage.type == StageType.SWISS:
        await ranking_service.update_swiss_rankings(session, match.stage_id)
    return match
