"""Live broadcast route handlers: WebSocket channel and state re-pull."""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from robotourney.api.dependencies import get_broadcast_service, get_timer_service
from robotourney.api.routes import service_error_response
from robotourney.database.db import get_db_session
from robotourney.models.schemas import (
    EventType,
    JoinFieldMessage,
    JoinTournamentMessage,
    LeaveFieldMessage,
    LeaveTournamentMessage,
    LiveStateResponse,
    MatchResponse,
    PauseTimerMessage,
    ResetTimerMessage,
    StartTimerMessage,
    parse_client_message,
)
from robotourney.services import data_service
from robotourney.services.broadcast_service import BroadcastService
from robotourney.services.match_timer import MatchTimerService
from robotourney.utils.constants import WEBSOCKET_TIMEOUT_SECONDS
from robotourney.utils.datetime_utils import utcnow
from robotourney.utils.exceptions import EventValidationError, TransientDeliveryError

logger = logging.getLogger(__name__)
router = APIRouter()


def _as_int(value: Optional[str]) -> Optional[int]:
    if value is None or not str(value).isdigit():
        return None
    return int(value)


@router.get("/api/tournaments/{tournament_id}/live-state", response_model=LiveStateResponse)
async def get_live_state(
    tournament_id: int,
    field_id: Optional[int] = None,
    session: AsyncSession = Depends(get_db_session),
    broadcast: BroadcastService = Depends(get_broadcast_service),
    timers: MatchTimerService = Depends(get_timer_service),
):
    """
    Authoritative live state for a display that just (re)connected.

    The broadcast channel keeps no history, so clients call this after every
    reconnect and then resume listening.
    """
    try:
        settings = broadcast.get_display_settings(tournament_id, field_id)
        timer = timers.get_state(tournament_id, field_id)
        if timer is None and field_id is not None:
            timer = timers.get_state(tournament_id)

        match = None
        match_id = _as_int(settings.match_id) if settings is not None else None
        if match_id is not None:
            match = await data_service.get_match(session, match_id)
        if match is None:
            match = await data_service.find_current_match(session, tournament_id, field_id)

        return LiveStateResponse(
            tournament_id=str(tournament_id),
            field_id=str(field_id) if field_id is not None else None,
            display_settings=settings,
            timer=timer,
            match=MatchResponse.model_validate(match) if match is not None else None,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise service_error_response(e, "getting live state")


async def _handle_message(
    websocket: WebSocket,
    raw: str,
    broadcast: BroadcastService,
    timers: MatchTimerService,
) -> None:
    try:
        message = parse_client_message(raw)
    except EventValidationError as e:
        logger.warning(f"Rejected malformed live event: {e}")
        await broadcast.send_error(websocket, f"Invalid event: {e}")
        return

    data = message.data
    if isinstance(message, JoinTournamentMessage):
        await broadcast.join_tournament(websocket, data.tournament_id)
    elif isinstance(message, LeaveTournamentMessage):
        await broadcast.leave_tournament(websocket, data.tournament_id)
    elif isinstance(message, JoinFieldMessage):
        await broadcast.join_field(websocket, data.field_id)
    elif isinstance(message, LeaveFieldMessage):
        await broadcast.leave_field(websocket, data.field_id)
    elif isinstance(message, StartTimerMessage):
        await timers.start(data.tournament_id, data.field_id, data.duration, data.remaining)
    elif isinstance(message, PauseTimerMessage):
        await timers.pause(data.tournament_id, data.field_id)
    elif isinstance(message, ResetTimerMessage):
        await timers.reset(data.tournament_id, data.field_id, data.duration)
    else:
        try:
            await broadcast.publish(EventType(message.event), data, sender=websocket)
        except TransientDeliveryError as e:
            logger.warning(f"Could not deliver {message.event}: {e}")
            await broadcast.send_error(websocket, str(e))


@router.websocket("/api/ws/live")
async def websocket_live(websocket: WebSocket):
    """
    WebSocket endpoint for the live broadcast channel.

    Clients send JSON frames ``{"event": ..., "data": {...}}`` to join rooms,
    publish patches, and drive timers. A plain "ping" is answered with "pong".
    """
    await websocket.accept()

    broadcast: BroadcastService = websocket.app.state.broadcast
    timers: MatchTimerService = websocket.app.state.timers
    await broadcast.connect(websocket)

    try:
        last_activity = utcnow()
        while True:
            try:
                raw = await asyncio.wait_for(websocket.receive_text(), timeout=WEBSOCKET_TIMEOUT_SECONDS)
                last_activity = utcnow()
                await broadcast.update_activity(websocket)

                if raw == "ping":
                    await websocket.send_text("pong")
                    continue
                if raw == "pong":
                    continue
                await _handle_message(websocket, raw, broadcast, timers)
            except asyncio.TimeoutError:
                if utcnow() - last_activity > timedelta(seconds=WEBSOCKET_TIMEOUT_SECONDS):
                    logger.info("Live connection timed out, closing")
                    await websocket.close(code=1000, reason="Connection timeout")
                    break
                # Check the connection is still alive
                try:
                    await websocket.send_text("ping")
                except Exception:
                    break
    except WebSocketDisconnect:
        logger.info("Live connection disconnected")
    except Exception as e:
        logger.error(f"Live connection error: {e}", exc_info=True)
    finally:
        await broadcast.disconnect(websocket)
