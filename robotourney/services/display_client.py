"""
Client-side reconciliation of live broadcast events.

DisplayState is what an audience display holds: the last display settings,
the current match merged from partial patches, live scores, a local timer
countdown between server pushes, and the current announcement overlay.

ScoringFormReconciler sits behind a scoring control panel and decides
whether a remote update may overwrite what the operator is typing.
"""

import asyncio
import enum
import logging
import time
from typing import Any, Callable, Dict, Optional, Union

from robotourney.models.schemas import (
    AllianceScoreInput,
    AnnouncementMessage,
    DisplayModeChangeMessage,
    DisplaySettingsPayload,
    LiveStateResponse,
    MatchStateChangeMessage,
    MatchStateChangePayload,
    MatchUpdateMessage,
    ScoreFormData,
    ScoreUpdateMessage,
    ScoreUpdatePayload,
    TimerUpdateMessage,
    parse_broadcast_message,
)
from robotourney.services.broadcast_service import accepts_event
from robotourney.services.score_calculator import aggregate_score
from robotourney.utils.constants import (
    DEFAULT_ANNOUNCEMENT_DURATION_MS,
    ECHO_SUPPRESSION_SECONDS,
    TIMER_TICK_SECONDS,
    USER_ACTIVITY_WINDOW_SECONDS,
)
from robotourney.utils.exceptions import EventValidationError

logger = logging.getLogger(__name__)

ALLIANCE_PREFIXES = ("red", "blue")
SUB_SCORE_FIELDS = ("auto_score", "drive_score", "endgame_bonus", "penalties", "team_count")

# Fields of a match patch that describe routing, not the match itself
_ROUTING_FIELDS = {"tournament_id", "field_id"}


async def _cancel_task(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


# ============================================================================
# Audience display
# ============================================================================

class DisplayState:
    """Live state of one audience display."""

    def __init__(
        self,
        tournament_id,
        field_id=None,
        tick_seconds: float = TIMER_TICK_SECONDS,
    ):
        self.tournament_id = str(tournament_id)
        self.field_id = str(field_id) if field_id is not None else None
        self.tick_seconds = tick_seconds

        self.display_settings: Optional[DisplaySettingsPayload] = None
        self.match: Dict[str, Any] = {}
        self.scores: Dict[str, int] = {}
        self.timer: Optional[Dict[str, Any]] = None
        self.announcement: Optional[str] = None

        self._countdown_task: Optional[asyncio.Task] = None
        self._dismiss_task: Optional[asyncio.Task] = None

    def accepts(self, payload) -> bool:
        if str(payload.tournament_id) != self.tournament_id:
            return False
        return accepts_event(payload.field_id, self.field_id)

    async def handle_message(self, raw: Union[str, bytes, dict]) -> bool:
        """
        Apply one broadcast frame.

        Malformed frames and frames for other rooms are logged and ignored.

        Returns:
            True if the event changed the held state
        """
        try:
            message = parse_broadcast_message(raw)
        except EventValidationError as e:
            logger.warning(f"Discarding malformed broadcast event: {e}")
            return False

        if not self.accepts(message.data):
            logger.debug(f"Ignoring {message.event} for field {message.data.field_id}")
            return False

        if isinstance(message, DisplayModeChangeMessage):
            self.display_settings = message.data
        elif isinstance(message, MatchStateChangeMessage):
            if not self._holds_match(message.data.match_id):
                logger.debug(f"Ignoring state change for match {message.data.match_id}, not on display")
                return False
            self._merge_match(message.data)
        elif isinstance(message, MatchUpdateMessage):
            self._merge_match(message.data)
        elif isinstance(message, ScoreUpdateMessage):
            self._merge_scores(message.data)
        elif isinstance(message, TimerUpdateMessage):
            await self._sync_timer(
                message.data.duration, message.data.remaining, message.data.is_running
            )
        elif isinstance(message, AnnouncementMessage):
            await self._show_announcement(message.data.message, message.data.duration)
        return True

    # ------------------------------------------------------------------
    # Match and scores
    # ------------------------------------------------------------------

    def _holds_match(self, match_id: str) -> bool:
        """True when no match is held yet or the held match is match_id."""
        held = self.match.get("match_id")
        return held is None or held == match_id

    def _switch_match(self, match_id: str) -> None:
        if self.match.get("match_id") != match_id:
            self.match = {"match_id": match_id}
            self.scores = {}

    def _merge_match(self, payload) -> None:
        self._switch_match(payload.match_id)
        patch = payload.model_dump(exclude_none=True, exclude=_ROUTING_FIELDS)
        self.match.update(patch)

    def _merge_scores(self, payload: ScoreUpdatePayload) -> None:
        self._switch_match(payload.match_id)
        patch = payload.model_dump(exclude_none=True, exclude=_ROUTING_FIELDS | {"match_id"})
        self.scores.update(patch)
        for prefix in ALLIANCE_PREFIXES:
            self._recompute_total(prefix)

    def _recompute_total(self, prefix: str) -> None:
        """Derive an alliance total from its sub-scores whenever any is known."""
        keys = [f"{prefix}_{name}" for name in SUB_SCORE_FIELDS]
        if not any(key in self.scores for key in keys):
            return
        values = [self.scores.get(key, 0) for key in keys]
        self.scores[f"{prefix}_total_score"] = aggregate_score(*values)

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    async def _sync_timer(self, duration: int, remaining: int, is_running: bool) -> None:
        # Server push is authoritative; drop whatever the local countdown had
        await _cancel_task(self._countdown_task)
        self._countdown_task = None
        self.timer = {"duration": duration, "remaining": remaining, "is_running": is_running}
        if is_running and remaining > 0:
            self._countdown_task = asyncio.create_task(self._countdown())

    async def _countdown(self) -> None:
        while self.timer and self.timer["is_running"] and self.timer["remaining"] > 0:
            await asyncio.sleep(self.tick_seconds)
            self.timer["remaining"] = max(0, self.timer["remaining"] - 1000)
        if self.timer:
            self.timer["is_running"] = False

    # ------------------------------------------------------------------
    # Announcements
    # ------------------------------------------------------------------

    async def _show_announcement(self, message: str, duration: Optional[int]) -> None:
        await _cancel_task(self._dismiss_task)
        self.announcement = message
        if duration is None:
            duration = DEFAULT_ANNOUNCEMENT_DURATION_MS
        self._dismiss_task = asyncio.create_task(self._dismiss_after(duration / 1000))

    async def _dismiss_after(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        self.announcement = None
        self._dismiss_task = None

    # ------------------------------------------------------------------
    # Snapshot / lifecycle
    # ------------------------------------------------------------------

    async def apply_snapshot(self, snapshot: LiveStateResponse) -> None:
        """Replace everything with the authoritative state pulled after a reconnect."""
        await _cancel_task(self._dismiss_task)
        self._dismiss_task = None
        self.announcement = None
        self.display_settings = snapshot.display_settings

        self.match = {}
        self.scores = {}
        if snapshot.match is not None:
            match = snapshot.match
            self.match = {
                "match_id": str(match.id),
                "match_number": match.match_number,
                "round_number": match.round_number,
                "status": match.status,
            }
            for alliance in match.alliances:
                prefix = alliance.color.value.lower()
                self.match[f"{prefix}_team_ids"] = [str(link.team_id) for link in alliance.team_alliances]
                if alliance.match_scores:
                    sheet = alliance.match_scores[0]
                    for name in SUB_SCORE_FIELDS:
                        self.scores[f"{prefix}_{name}"] = getattr(sheet, name)
                    self.scores[f"{prefix}_total_score"] = sheet.total_points

        if snapshot.timer is not None:
            await self._sync_timer(
                snapshot.timer.duration, snapshot.timer.remaining, snapshot.timer.is_running
            )
        else:
            await _cancel_task(self._countdown_task)
            self._countdown_task = None
            self.timer = None

    async def close(self) -> None:
        await _cancel_task(self._countdown_task)
        await _cancel_task(self._dismiss_task)
        self._countdown_task = None
        self._dismiss_task = None


# ============================================================================
# Scoring control panel
# ============================================================================

class UpdateOutcome(str, enum.Enum):
    """What the reconciler did with an incoming update."""

    APPLIED = "applied"
    DROPPED_ACTIVE = "dropped_active"
    DROPPED_ECHO = "dropped_echo"
    DROPPED_SCOPE = "dropped_scope"
    DROPPED_OTHER_MATCH = "dropped_other_match"


class ScoringFormReconciler:
    """
    Guards a scoring form against remote overwrites.

    While the operator has typed within the activity window, score and
    match-state updates for the active match are dropped. The operator's own
    update coming back from the server is recognised and consumed without a
    refetch.
    """

    def __init__(
        self,
        tournament_id,
        match_id,
        field_id=None,
        activity_window: float = USER_ACTIVITY_WINDOW_SECONDS,
        echo_window: float = ECHO_SUPPRESSION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        on_refetch: Optional[Callable[[], Any]] = None,
    ):
        if not 2 <= activity_window <= 5:
            raise ValueError(f"Activity window must be between 2 and 5 seconds, got {activity_window}")
        self.tournament_id = str(tournament_id)
        self.match_id = str(match_id)
        self.field_id = str(field_id) if field_id is not None else None
        self.activity_window = activity_window
        self.echo_window = echo_window
        self.clock = clock
        self.on_refetch = on_refetch

        self.form_data = ScoreFormData()
        self.last_saved_scores = ScoreFormData()
        self.match_status = None
        self._last_edit_at: Optional[float] = None
        self._pending_echo: Optional[Dict[str, Any]] = None
        self._echo_deadline = 0.0

    @property
    def is_user_active(self) -> bool:
        if self._last_edit_at is None:
            return False
        return self.clock() - self._last_edit_at < self.activity_window

    @property
    def has_unsaved_changes(self) -> bool:
        return self.form_data != self.last_saved_scores

    def load(self, scores: ScoreFormData) -> None:
        """Initialise the form from persisted scores."""
        self.form_data = scores.model_copy(deep=True)
        self.last_saved_scores = scores.model_copy(deep=True)
        self._last_edit_at = None

    def record_edit(self, color: str, **fields) -> None:
        """Apply an operator keystroke to one alliance's sub-scores."""
        current: AllianceScoreInput = getattr(self.form_data, color)
        updated = AllianceScoreInput.model_validate({**current.model_dump(), **fields})
        setattr(self.form_data, color, updated)
        self._last_edit_at = self.clock()

    def mark_saved(self) -> None:
        """Persist succeeded: snapshot the form and end the activity window."""
        self.last_saved_scores = self.form_data.model_copy(deep=True)
        self._last_edit_at = None

    def build_score_update(self) -> ScoreUpdatePayload:
        """
        Realtime patch for the current form, totals included.

        The patch is remembered so its echo from the server can be ignored.
        """
        values = {"tournament_id": self.tournament_id, "field_id": self.field_id, "match_id": self.match_id}
        for prefix in ALLIANCE_PREFIXES:
            alliance: AllianceScoreInput = getattr(self.form_data, prefix)
            for name in SUB_SCORE_FIELDS:
                values[f"{prefix}_{name}"] = getattr(alliance, name)
            values[f"{prefix}_total_score"] = aggregate_score(
                *(getattr(alliance, name) for name in SUB_SCORE_FIELDS)
            )
        payload = ScoreUpdatePayload(**values)
        self._pending_echo = self._fingerprint(payload)
        self._echo_deadline = self.clock() + self.echo_window
        return payload

    @staticmethod
    def _fingerprint(payload: ScoreUpdatePayload) -> Dict[str, Any]:
        return payload.model_dump(exclude_none=True, exclude=_ROUTING_FIELDS)

    def _consume_echo(self, payload: ScoreUpdatePayload) -> bool:
        if self._pending_echo is None:
            return False
        if self.clock() > self._echo_deadline:
            self._pending_echo = None
            return False
        if self._fingerprint(payload) != self._pending_echo:
            return False
        self._pending_echo = None
        return True

    def handle_update(self, payload: Union[ScoreUpdatePayload, MatchStateChangePayload]) -> UpdateOutcome:
        """Decide whether an incoming update reaches the form."""
        if str(payload.tournament_id) != self.tournament_id or not accepts_event(payload.field_id, self.field_id):
            return UpdateOutcome.DROPPED_SCOPE
        if str(payload.match_id) != self.match_id:
            return UpdateOutcome.DROPPED_OTHER_MATCH
        if isinstance(payload, ScoreUpdatePayload) and self._consume_echo(payload):
            logger.debug(f"Ignoring echo of own score update for match {self.match_id}")
            return UpdateOutcome.DROPPED_ECHO
        if self.is_user_active:
            logger.debug(f"Skipping remote update for match {self.match_id} (user actively typing)")
            return UpdateOutcome.DROPPED_ACTIVE

        if isinstance(payload, ScoreUpdatePayload):
            for prefix in ALLIANCE_PREFIXES:
                current: AllianceScoreInput = getattr(self.form_data, prefix)
                patch = {
                    name: getattr(payload, f"{prefix}_{name}")
                    for name in SUB_SCORE_FIELDS
                    if getattr(payload, f"{prefix}_{name}") is not None
                }
                if patch:
                    setattr(self.form_data, prefix, current.model_copy(update=patch))
            # Remote state is the saved state
            self.last_saved_scores = self.form_data.model_copy(deep=True)
        elif payload.status is not None:
            self.match_status = payload.status

        if self.on_refetch is not None:
            self.on_refetch()
        return UpdateOutcome.APPLIED
