"""
Service dependencies for FastAPI routes.

Long-lived services are built once in the app lifespan and kept on
``app.state``; routes reach them through these dependencies.
"""

from fastapi import Request

from robotourney.services.broadcast_service import BroadcastService
from robotourney.services.match_timer import MatchTimerService
from robotourney.services.swiss_scheduler import SwissScheduler


def get_broadcast_service(request: Request) -> BroadcastService:
    return request.app.state.broadcast


def get_timer_service(request: Request) -> MatchTimerService:
    return request.app.state.timers


def get_swiss_scheduler(request: Request) -> SwissScheduler:
    return request.app.state.swiss_scheduler
