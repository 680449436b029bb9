"""Swiss ranking and round generation route handlers."""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from robotourney.api.dependencies import get_swiss_scheduler
from robotourney.api.routes import service_error_response
from robotourney.database.db import get_db_session
from robotourney.models.schemas import GenerateRoundRequest, MatchResponse, TeamStatsResponse
from robotourney.services import ranking_service
from robotourney.services.swiss_scheduler import SwissScheduler

logger = logging.getLogger(__name__)
router = APIRouter()


def _ranked(rows) -> List[TeamStatsResponse]:
    return [TeamStatsResponse.from_stats(stats, rank) for rank, stats in enumerate(rows, start=1)]


@router.post("/api/stages/{stage_id}/swiss/rankings", response_model=List[TeamStatsResponse])
async def update_swiss_rankings(stage_id: int, session: AsyncSession = Depends(get_db_session)):
    """
    Recompute a Swiss stage's standings from its completed matches.

    Returns:
        list: Standings, best first
    """
    try:
        await ranking_service.update_swiss_rankings(session, stage_id)
        return _ranked(await ranking_service.get_swiss_rankings(session, stage_id))
    except HTTPException:
        raise
    except Exception as e:
        raise service_error_response(e, "updating Swiss rankings")


@router.get("/api/stages/{stage_id}/swiss/rankings", response_model=List[TeamStatsResponse])
async def get_swiss_rankings(stage_id: int, session: AsyncSession = Depends(get_db_session)):
    """Current standings of a Swiss stage, best first."""
    try:
        return _ranked(await ranking_service.get_swiss_rankings(session, stage_id))
    except Exception as e:
        raise service_error_response(e, "getting Swiss rankings")


@router.post("/api/stages/{stage_id}/swiss/rounds", response_model=List[MatchResponse])
async def generate_swiss_round(
    stage_id: int,
    request: GenerateRoundRequest,
    session: AsyncSession = Depends(get_db_session),
    scheduler: SwissScheduler = Depends(get_swiss_scheduler),
):
    """
    Pair the next Swiss round.

    Request body:
        {
            "current_round_number": 0   // last completed round
        }

    Returns:
        list: Created matches; empty when fewer than four teams can be paired
    """
    try:
        matches = await scheduler.generate_swiss_round(session, stage_id, request.current_round_number)
        return [MatchResponse.model_validate(match) for match in matches]
    except HTTPException:
        raise
    except Exception as e:
        raise service_error_response(e, "generating Swiss round")
