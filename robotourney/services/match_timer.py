"""
Authoritative match timers, one per (tournament, field).

Each running timer owns a single asyncio task that pushes a timer_update
every tick. Starting, pausing, or resetting a timer holds that timer's
lock and always cancels the previous task first.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Tuple

from robotourney.models.schemas import EventType, TimerPayload
from robotourney.services.broadcast_service import BroadcastService
from robotourney.utils.constants import TIMER_TICK_SECONDS
from robotourney.utils.datetime_utils import now_ms

logger = logging.getLogger(__name__)

TimerKey = Tuple[str, Optional[str]]


class MatchTimer:
    """State of one timer. All times in milliseconds."""

    def __init__(self, tournament_id: str, field_id: Optional[str], duration: int):
        self.tournament_id = tournament_id
        self.field_id = field_id
        self.duration = duration
        self.remaining = duration
        self.is_running = False
        self.started_at: Optional[int] = None
        self.paused_at: Optional[int] = None
        self.task: Optional[asyncio.Task] = None
        # Held across cancel -> push -> create_task by every command
        self.lock = asyncio.Lock()

    def remaining_at(self, now: int) -> int:
        """Remaining time, counting only whole elapsed seconds."""
        if not self.is_running or self.started_at is None:
            return self.remaining
        elapsed = ((now - self.started_at) // 1000) * 1000
        return max(0, self.duration - elapsed)

    def to_payload(self) -> TimerPayload:
        return TimerPayload(
            tournament_id=self.tournament_id,
            field_id=self.field_id,
            duration=self.duration,
            remaining=self.remaining,
            is_running=self.is_running,
            started_at=self.started_at,
            paused_at=self.paused_at,
        )


class MatchTimerService:
    """Runs match timers and broadcasts their state."""

    def __init__(
        self,
        broadcast: BroadcastService,
        tick_seconds: float = TIMER_TICK_SECONDS,
        clock: Callable[[], int] = now_ms,
    ):
        self.broadcast = broadcast
        self.tick_seconds = tick_seconds
        self.clock = clock
        self.timers: Dict[TimerKey, MatchTimer] = {}

    @staticmethod
    def _key(tournament_id, field_id) -> TimerKey:
        return str(tournament_id), str(field_id) if field_id is not None else None

    async def _cancel(self, timer: MatchTimer) -> None:
        task = timer.task
        timer.task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _push(self, timer: MatchTimer) -> None:
        await self.broadcast.publish(EventType.TIMER_UPDATE, timer.to_payload())

    async def _acquire(self, key: TimerKey, duration: int) -> MatchTimer:
        """Lock the current timer for a key, creating it when missing."""
        while True:
            timer = self.timers.get(key)
            if timer is None:
                timer = MatchTimer(key[0], key[1], duration)
                self.timers[key] = timer
            await timer.lock.acquire()
            if self.timers.get(key) is timer:
                return timer
            # Reset forgot this timer while we waited
            timer.lock.release()

    async def start(self, tournament_id, field_id, duration: int, remaining: Optional[int] = None) -> TimerPayload:
        """
        Start (or resume) a timer.

        Args:
            tournament_id: Tournament room
            field_id: Field the timer belongs to, or None for tournament-wide
            duration: Full match duration in ms
            remaining: Time left in ms when resuming; defaults to duration

        Returns:
            The timer state that was broadcast
        """
        key = self._key(tournament_id, field_id)
        timer = await self._acquire(key, duration)
        try:
            await self._cancel(timer)

            if remaining is None:
                remaining = duration
            remaining = max(0, min(remaining, duration))
            now = self.clock()
            timer.duration = duration
            timer.remaining = remaining
            # Back-date the start so elapsed time matches what already ran
            timer.started_at = now - (duration - remaining)
            timer.paused_at = None
            timer.is_running = remaining > 0

            await self._push(timer)
            if timer.is_running:
                timer.task = asyncio.create_task(self._run(timer))
            logger.info(f"Timer started for tournament {key[0]} field {key[1]}: {remaining}ms left")
            return timer.to_payload()
        finally:
            timer.lock.release()

    async def _run(self, timer: MatchTimer) -> None:
        while timer.is_running:
            await asyncio.sleep(self.tick_seconds)
            timer.remaining = timer.remaining_at(self.clock())
            if timer.remaining == 0:
                timer.is_running = False
                timer.task = None
            try:
                await self._push(timer)
            except Exception as e:
                logger.warning(f"Failed to push timer update for tournament {timer.tournament_id}: {e}")
        logger.info(f"Timer finished for tournament {timer.tournament_id} field {timer.field_id}")

    async def pause(self, tournament_id, field_id) -> Optional[TimerPayload]:
        """Stop a timer, keeping its remaining time. Returns None for an unknown timer."""
        key = self._key(tournament_id, field_id)
        timer = self.timers.get(key)
        if timer is None:
            logger.info(f"No timer to pause for tournament {tournament_id} field {field_id}")
            return None
        async with timer.lock:
            if self.timers.get(key) is not timer:
                return None
            await self._cancel(timer)
            now = self.clock()
            timer.remaining = timer.remaining_at(now)
            timer.is_running = False
            timer.paused_at = now
            await self._push(timer)
            return timer.to_payload()

    async def reset(self, tournament_id, field_id, duration: int) -> TimerPayload:
        """
        Stop a timer and push it back at its full duration.

        The timer is forgotten afterwards; the next start creates a fresh one.
        """
        key = self._key(tournament_id, field_id)
        timer = await self._acquire(key, duration)
        try:
            await self._cancel(timer)
            timer.duration = duration
            timer.remaining = duration
            timer.is_running = False
            timer.started_at = None
            timer.paused_at = None
            await self._push(timer)
            del self.timers[key]
            return timer.to_payload()
        finally:
            timer.lock.release()

    def get_state(self, tournament_id, field_id=None) -> Optional[TimerPayload]:
        """Current timer state for a live-state pull."""
        timer = self.timers.get(self._key(tournament_id, field_id))
        if timer is None:
            return None
        timer.remaining = timer.remaining_at(self.clock())
        return timer.to_payload()

    def is_ticking(self, tournament_id, field_id=None) -> bool:
        timer = self.timers.get(self._key(tournament_id, field_id))
        return timer is not None and timer.task is not None and not timer.task.done()

    async def shutdown(self) -> None:
        """Cancel every running timer task."""
        for timer in list(self.timers.values()):
            async with timer.lock:
                await self._cancel(timer)
                timer.is_running = False
        logger.info("Match timers stopped")
