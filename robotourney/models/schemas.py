"""
Pydantic models for API request/response validation and for the live
broadcast wire protocol.

Every broadcast event is a tagged variant: ``{"event": <name>, "data": {...}}``
with a fixed, camelCase payload schema. Unknown events and unknown payload
fields are rejected.
"""

import enum
import json
from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
)
from pydantic.alias_generators import to_camel

from robotourney.database.models import AllianceColor, MatchResult, MatchStatus, StageType
from robotourney.utils.datetime_utils import now_ms
from robotourney.utils.exceptions import EventValidationError


def _id_to_str(value):
    """Room and entity IDs travel as strings; integer IDs are accepted."""
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


RoomId = Annotated[str, BeforeValidator(_id_to_str)]


# ============================================================================
# REST: requests
# ============================================================================

class AllianceScoreInput(BaseModel):
    """Sub-scores of one alliance as entered by the scoring operator."""

    auto_score: int = Field(default=0, ge=0)
    drive_score: int = Field(default=0, ge=0)
    endgame_bonus: int = Field(default=0, ge=0)
    penalties: int = Field(default=0, ge=0)
    team_count: int = Field(default=0, ge=0)
    game_elements: Dict[str, int] = Field(default_factory=dict)


class SubmitScoresRequest(BaseModel):
    """Request to save a match's scores."""

    red: AllianceScoreInput
    blue: AllianceScoreInput
    finalize: bool = True


class MatchStatusRequest(BaseModel):
    """Request to change a match's status."""

    status: MatchStatus


class GenerateRoundRequest(BaseModel):
    """Request to generate the next Swiss round."""

    current_round_number: int = Field(ge=0)


# ============================================================================
# REST: responses
# ============================================================================

class TeamStatsResponse(BaseModel):
    """One team's standing in a stage."""

    model_config = ConfigDict(from_attributes=True)

    rank: int
    team_id: int
    team_number: Optional[str] = None
    team_name: Optional[str] = None
    wins: int
    losses: int
    ties: int
    points_scored: int
    points_conceded: int
    matches_played: int
    ranking_points: int
    opponent_win_percentage: float
    point_differential: int

    @classmethod
    def from_stats(cls, stats, rank: int) -> "TeamStatsResponse":
        team = stats.team
        return cls(
            rank=rank,
            team_id=stats.team_id,
            team_number=team.team_number if team is not None else None,
            team_name=team.name if team is not None else None,
            wins=stats.wins,
            losses=stats.losses,
            ties=stats.ties,
            points_scored=stats.points_scored,
            points_conceded=stats.points_conceded,
            matches_played=stats.matches_played,
            ranking_points=stats.ranking_points,
            opponent_win_percentage=stats.opponent_win_percentage,
            point_differential=stats.point_differential,
        )


class MatchScoreResponse(BaseModel):
    """Score sheet of one alliance."""

    model_config = ConfigDict(from_attributes=True)

    auto_score: int
    drive_score: int
    endgame_bonus: int
    penalties: int
    team_count: int
    multiplier: float
    game_elements: Optional[Dict[str, int]] = None
    total_points: int


class TeamAllianceResponse(BaseModel):
    """A team's station on an alliance."""

    model_config = ConfigDict(from_attributes=True)

    team_id: int
    station_position: int
    is_surrogate: bool


class AllianceResponse(BaseModel):
    """One alliance of a match."""

    model_config = ConfigDict(from_attributes=True)

    color: AllianceColor
    score: int
    team_alliances: List[TeamAllianceResponse]
    match_scores: List[MatchScoreResponse]


class MatchResponse(BaseModel):
    """A match with both alliances."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    stage_id: int
    field_id: Optional[int] = None
    match_number: int
    round_number: int
    status: MatchStatus
    winning_alliance: Optional[MatchResult] = None
    scheduled_time: Optional[datetime] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    alliances: List[AllianceResponse]


class StageResponse(BaseModel):
    """Minimal stage info returned alongside generated rounds."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    tournament_id: int
    name: str
    type: StageType
    current_round: int


# ============================================================================
# Broadcast payloads
# ============================================================================

class EventType(str, enum.Enum):
    """Closed set of broadcast and command event names."""

    JOIN_TOURNAMENT = "join_tournament"
    LEAVE_TOURNAMENT = "leave_tournament"
    JOIN_FIELD = "join_field"
    LEAVE_FIELD = "leave_field"
    DISPLAY_MODE_CHANGE = "display_mode_change"
    MATCH_UPDATE = "match_update"
    MATCH_STATE_CHANGE = "match_state_change"
    SCORE_UPDATE = "score_update"
    TIMER_UPDATE = "timer_update"
    START_TIMER = "start_timer"
    PAUSE_TIMER = "pause_timer"
    RESET_TIMER = "reset_timer"
    ANNOUNCEMENT = "announcement"
    ERROR = "error"


class WirePayload(BaseModel):
    """Base for all wire payloads: camelCase on the wire, unknown fields rejected."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ScopedPayload(WirePayload):
    """Payload addressed to a tournament room, optionally narrowed to one field."""

    tournament_id: RoomId
    field_id: Optional[RoomId] = None


class JoinTournamentPayload(WirePayload):
    tournament_id: RoomId


class JoinFieldPayload(WirePayload):
    field_id: RoomId


DisplayMode = Literal["match", "teams", "schedule", "rankings", "announcement", "blank"]
MatchPeriod = Literal["auto", "teleop", "endgame"]


class DisplaySettingsPayload(ScopedPayload):
    """Audience display settings. Replaced wholesale on every change."""

    display_mode: DisplayMode
    match_id: Optional[RoomId] = None
    message: Optional[str] = None
    duration: Optional[int] = Field(default=None, ge=0)
    show_timer: Optional[bool] = None
    show_scores: Optional[bool] = None
    show_teams: Optional[bool] = None
    updated_at: int = Field(default_factory=now_ms)


class MatchUpdatePayload(ScopedPayload):
    """Partial match patch; absent fields keep their held values."""

    match_id: RoomId
    match_number: Optional[int] = None
    round_number: Optional[int] = None
    status: Optional[MatchStatus] = None
    red_team_ids: Optional[List[RoomId]] = None
    blue_team_ids: Optional[List[RoomId]] = None
    scheduled_time: Optional[datetime] = None


class MatchStateChangePayload(ScopedPayload):
    """Match status / period change."""

    match_id: RoomId
    status: Optional[MatchStatus] = None
    current_period: Optional[MatchPeriod] = None


class ScoreUpdatePayload(ScopedPayload):
    """Partial live score patch for both alliances."""

    match_id: RoomId
    red_auto_score: Optional[int] = None
    red_drive_score: Optional[int] = None
    red_endgame_bonus: Optional[int] = None
    red_penalties: Optional[int] = None
    red_team_count: Optional[int] = None
    red_total_score: Optional[int] = None
    blue_auto_score: Optional[int] = None
    blue_drive_score: Optional[int] = None
    blue_endgame_bonus: Optional[int] = None
    blue_penalties: Optional[int] = None
    blue_team_count: Optional[int] = None
    blue_total_score: Optional[int] = None


class TimerPayload(ScopedPayload):
    """Authoritative timer state pushed by the server. Times in milliseconds."""

    duration: int = Field(ge=0)
    remaining: int = Field(ge=0)
    is_running: bool
    started_at: Optional[int] = None
    paused_at: Optional[int] = None


class TimerCommandPayload(ScopedPayload):
    """start/reset command from a control panel. Times in milliseconds."""

    duration: int = Field(ge=0)
    remaining: Optional[int] = Field(default=None, ge=0)


class PauseTimerPayload(ScopedPayload):
    """pause command; the server keeps the remaining time."""


class AnnouncementPayload(ScopedPayload):
    """Timed overlay message. Duration in milliseconds."""

    message: str
    duration: Optional[int] = Field(default=None, ge=0)


class ErrorPayload(WirePayload):
    message: str


# ============================================================================
# Broadcast messages (tagged variants)
# ============================================================================

class JoinTournamentMessage(BaseModel):
    event: Literal["join_tournament"]
    data: JoinTournamentPayload


class LeaveTournamentMessage(BaseModel):
    event: Literal["leave_tournament"]
    data: JoinTournamentPayload


class JoinFieldMessage(BaseModel):
    event: Literal["join_field"]
    data: JoinFieldPayload


class LeaveFieldMessage(BaseModel):
    event: Literal["leave_field"]
    data: JoinFieldPayload


class DisplayModeChangeMessage(BaseModel):
    event: Literal["display_mode_change"]
    data: DisplaySettingsPayload


class MatchUpdateMessage(BaseModel):
    event: Literal["match_update"]
    data: MatchUpdatePayload


class MatchStateChangeMessage(BaseModel):
    event: Literal["match_state_change"]
    data: MatchStateChangePayload


class ScoreUpdateMessage(BaseModel):
    event: Literal["score_update"]
    data: ScoreUpdatePayload


class TimerUpdateMessage(BaseModel):
    event: Literal["timer_update"]
    data: TimerPayload


class StartTimerMessage(BaseModel):
    event: Literal["start_timer"]
    data: TimerCommandPayload


class PauseTimerMessage(BaseModel):
    event: Literal["pause_timer"]
    data: PauseTimerPayload


class ResetTimerMessage(BaseModel):
    event: Literal["reset_timer"]
    data: TimerCommandPayload


class AnnouncementMessage(BaseModel):
    event: Literal["announcement"]
    data: AnnouncementPayload


# What a connected client may send to the server
ClientMessage = Annotated[
    Union[
        JoinTournamentMessage,
        LeaveTournamentMessage,
        JoinFieldMessage,
        LeaveFieldMessage,
        DisplayModeChangeMessage,
        MatchUpdateMessage,
        MatchStateChangeMessage,
        ScoreUpdateMessage,
        StartTimerMessage,
        PauseTimerMessage,
        ResetTimerMessage,
        AnnouncementMessage,
    ],
    Field(discriminator="event"),
]

# What the server fans out to subscribed clients
BroadcastMessage = Annotated[
    Union[
        DisplayModeChangeMessage,
        MatchUpdateMessage,
        MatchStateChangeMessage,
        ScoreUpdateMessage,
        TimerUpdateMessage,
        AnnouncementMessage,
    ],
    Field(discriminator="event"),
]

_client_message_adapter = TypeAdapter(ClientMessage)
_broadcast_message_adapter = TypeAdapter(BroadcastMessage)


def _load(raw: Union[str, bytes, dict]) -> dict:
    if isinstance(raw, dict):
        return raw
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EventValidationError(f"Message is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise EventValidationError("Message must be a JSON object")
    return data


def parse_client_message(raw: Union[str, bytes, dict]):
    """
    Validate a message received from a client.

    Raises:
        EventValidationError: Unknown event name, missing or unknown fields
    """
    try:
        return _client_message_adapter.validate_python(_load(raw))
    except ValidationError as e:
        raise EventValidationError(str(e)) from e


def parse_broadcast_message(raw: Union[str, bytes, dict]):
    """
    Validate a message received from the server.

    Raises:
        EventValidationError: Unknown event name, missing or unknown fields
    """
    try:
        return _broadcast_message_adapter.validate_python(_load(raw))
    except ValidationError as e:
        raise EventValidationError(str(e)) from e


def make_message(event: Union[EventType, str], payload: WirePayload) -> dict:
    """Build a wire message dict for an event and its payload."""
    name = event.value if isinstance(event, EventType) else event
    return {"event": name, "data": payload.to_wire()}


# ============================================================================
# Live state snapshot (re-pull after reconnect)
# ============================================================================

class LiveStateResponse(BaseModel):
    """Authoritative live state of a tournament room, optionally one field."""

    tournament_id: str
    field_id: Optional[str] = None
    display_settings: Optional[DisplaySettingsPayload] = None
    timer: Optional[TimerPayload] = None
    match: Optional[MatchResponse] = None


class ScoreFormData(BaseModel):
    """Locally edited score form of a control panel."""

    red: AllianceScoreInput = Field(default_factory=AllianceScoreInput)
    blue: AllianceScoreInput = Field(default_factory=AllianceScoreInput)
