"""Match scoring and status route handlers."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from robotourney.api.dependencies import get_broadcast_service
from robotourney.api.routes import service_error_response
from robotourney.database.db import get_db_session
from robotourney.database.models import AllianceColor, Match
from robotourney.models.schemas import (
    EventType,
    MatchResponse,
    MatchStateChangePayload,
    MatchStatusRequest,
    ScoreUpdatePayload,
    SubmitScoresRequest,
)
from robotourney.services import match_score_service
from robotourney.services.broadcast_service import BroadcastService

logger = logging.getLogger(__name__)
router = APIRouter()


def score_update_for(match: Match) -> ScoreUpdatePayload:
    """Full score patch for a persisted match."""
    values = {
        "tournament_id": match.stage.tournament_id,
        "field_id": match.field_id,
        "match_id": match.id,
    }
    for color in (AllianceColor.RED, AllianceColor.BLUE):
        alliance = match.alliance(color)
        if alliance is None or not alliance.match_scores:
            continue
        prefix = color.value.lower()
        sheet = alliance.match_scores[0]
        values[f"{prefix}_auto_score"] = sheet.auto_score
        values[f"{prefix}_drive_score"] = sheet.drive_score
        values[f"{prefix}_endgame_bonus"] = sheet.endgame_bonus
        values[f"{prefix}_penalties"] = sheet.penalties
        values[f"{prefix}_team_count"] = sheet.team_count
        values[f"{prefix}_total_score"] = sheet.total_points
    return ScoreUpdatePayload(**values)


def state_change_for(match: Match) -> MatchStateChangePayload:
    return MatchStateChangePayload(
        tournament_id=match.stage.tournament_id,
        field_id=match.field_id,
        match_id=match.id,
        status=match.status,
    )


@router.put("/api/matches/{match_id}/scores", response_model=MatchResponse)
async def submit_match_scores(
    match_id: int,
    request: SubmitScoresRequest,
    session: AsyncSession = Depends(get_db_session),
    broadcast: BroadcastService = Depends(get_broadcast_service),
):
    """
    Save both alliances' scores and push them to live displays.

    Request body:
        {
            "red": {"auto_score": 10, "drive_score": 5, "team_count": 3},
            "blue": {"auto_score": 8, "drive_score": 4, "team_count": 2},
            "finalize": true   // Optional, completes the match (default true)
        }

    Returns:
        dict: Updated match
    """
    try:
        match = await match_score_service.submit_match_scores(
            session, match_id, request.red, request.blue, finalize=request.finalize
        )
    except HTTPException:
        raise
    except Exception as e:
        raise service_error_response(e, "submitting match scores")

    await broadcast.publish(EventType.SCORE_UPDATE, score_update_for(match))
    if request.finalize:
        await broadcast.publish(EventType.MATCH_STATE_CHANGE, state_change_for(match))
    return MatchResponse.model_validate(match)


@router.patch("/api/matches/{match_id}/status", response_model=MatchResponse)
async def update_match_status(
    match_id: int,
    request: MatchStatusRequest,
    session: AsyncSession = Depends(get_db_session),
    broadcast: BroadcastService = Depends(get_broadcast_service),
):
    """
    Change a match's status.

    Request body:
        {
            "status": "IN_PROGRESS"   // PENDING, IN_PROGRESS, or COMPLETED
        }
    """
    try:
        match = await match_score_service.update_match_status(session, match_id, request.status)
    except HTTPException:
        raise
    except Exception as e:
        raise service_error_response(e, "updating match status")

    await broadcast.publish(EventType.MATCH_STATE_CHANGE, state_change_for(match))
    return MatchResponse.model_validate(match)
