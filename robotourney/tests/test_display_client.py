"""
Tests for client-side reconciliation: audience display state and the
scoring form guard.
"""

import asyncio
import json

import pytest
import pytest_asyncio

from robotourney.database.models import MatchStatus
from robotourney.models.schemas import (
    AllianceResponse,
    LiveStateResponse,
    MatchResponse,
    MatchScoreResponse,
    MatchStateChangePayload,
    ScoreFormData,
    ScoreUpdatePayload,
    TeamAllianceResponse,
    TimerPayload,
)
from robotourney.services.display_client import DisplayState, ScoringFormReconciler, UpdateOutcome


def frame(event, **data):
    data.setdefault("tournamentId", "T")
    return json.dumps({"event": event, "data": data})


@pytest_asyncio.fixture
async def display():
    state = DisplayState("T", "F1", tick_seconds=0.005)
    yield state
    await state.close()


# ============================================================================
# DisplayState
# ============================================================================

@pytest.mark.asyncio
async def test_display_ignores_other_fields_and_tournaments(display):
    assert await display.handle_message(frame("match_update", matchId="M1", fieldId="F2", matchNumber=4)) is False
    assert await display.handle_message(frame("match_update", matchId="M1", tournamentId="U")) is False
    assert display.match == {}


@pytest.mark.asyncio
async def test_display_without_field_ignores_field_scoped_events():
    state = DisplayState("T")
    assert await state.handle_message(frame("score_update", matchId="M1", fieldId="F1", redAutoScore=3)) is False
    assert await state.handle_message(frame("score_update", matchId="M1", redAutoScore=3)) is True


@pytest.mark.asyncio
async def test_display_mode_change_replaces_settings(display):
    await display.handle_message(frame("display_mode_change", displayMode="match", message="hello", updatedAt=1))
    await display.handle_message(frame("display_mode_change", displayMode="rankings", updatedAt=2))

    assert display.display_settings.display_mode == "rankings"
    assert display.display_settings.message is None


@pytest.mark.asyncio
async def test_match_update_merges_partial_patches(display):
    await display.handle_message(frame("match_update", matchId="M1", matchNumber=7, roundNumber=2, status="PENDING"))
    await display.handle_message(frame("match_state_change", matchId="M1", status="IN_PROGRESS"))
    await display.handle_message(frame("match_update", matchId="M1", roundNumber=None))

    assert display.match["match_number"] == 7
    assert display.match["round_number"] == 2
    assert display.match["status"] == MatchStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_new_match_resets_held_state(display):
    await display.handle_message(frame("score_update", matchId="M1", redAutoScore=10))
    await display.handle_message(frame("match_update", matchId="M2", matchNumber=8))

    assert display.match == {"match_id": "M2", "match_number": 8}
    assert display.scores == {}


@pytest.mark.asyncio
async def test_state_change_for_previous_match_keeps_held_match(display):
    await display.handle_message(frame("match_update", matchId="M2", matchNumber=8, status="PENDING"))
    await display.handle_message(frame("score_update", matchId="M2", redAutoScore=4))

    # The previous match is finalized after the display moved on
    assert await display.handle_message(frame("match_state_change", matchId="M1", status="COMPLETED")) is False

    assert display.match == {"match_id": "M2", "match_number": 8, "status": MatchStatus.PENDING}
    assert display.scores["red_auto_score"] == 4


@pytest.mark.asyncio
async def test_state_change_adopted_when_no_match_held(display):
    assert await display.handle_message(frame("match_state_change", matchId="M3", status="IN_PROGRESS")) is True
    assert display.match == {"match_id": "M3", "status": MatchStatus.IN_PROGRESS}


@pytest.mark.asyncio
async def test_score_update_recomputes_totals_from_sub_scores(display):
    await display.handle_message(frame("score_update", matchId="M1", redAutoScore=10, redTeamCount=3))
    await display.handle_message(
        frame("score_update", matchId="M1", redDriveScore=5, redTotalScore=999, blueTotalScore=12)
    )

    # (10 + 5) * 1.75 rounds to 26; the stale pushed total is ignored
    assert display.scores["red_total_score"] == 26
    assert display.scores["red_auto_score"] == 10
    # No blue sub-scores known, the pushed total stands
    assert display.scores["blue_total_score"] == 12


@pytest.mark.asyncio
async def test_malformed_events_are_discarded(display):
    assert await display.handle_message("not json") is False
    assert await display.handle_message(frame("confetti", amount=3)) is False
    assert await display.handle_message(frame("match_update")) is False
    assert await display.handle_message(frame("match_update", matchId="M1", surprise=True)) is False
    assert display.match == {}


@pytest.mark.asyncio
async def test_timer_update_runs_local_countdown(display):
    await display.handle_message(frame("timer_update", fieldId="F1", duration=5000, remaining=5000, isRunning=True))
    await asyncio.sleep(0.05)

    assert display.timer["remaining"] < 5000
    assert display.timer["remaining"] % 1000 == 0


@pytest.mark.asyncio
async def test_timer_push_discards_local_countdown(display):
    await display.handle_message(frame("timer_update", duration=5000, remaining=5000, isRunning=True))
    first_task = display._countdown_task
    await display.handle_message(frame("timer_update", duration=5000, remaining=4000, isRunning=False))

    assert first_task.cancelled()
    assert display._countdown_task is None
    assert display.timer == {"duration": 5000, "remaining": 4000, "is_running": False}


@pytest.mark.asyncio
async def test_countdown_stops_at_zero(display):
    await display.handle_message(frame("timer_update", duration=2000, remaining=2000, isRunning=True))
    await asyncio.sleep(0.1)

    assert display.timer["remaining"] == 0
    assert display.timer["is_running"] is False


@pytest.mark.asyncio
async def test_announcement_dismisses_after_duration(display):
    await display.handle_message(frame("announcement", message="Lunch", duration=20))
    assert display.announcement == "Lunch"

    await asyncio.sleep(0.06)
    assert display.announcement is None


@pytest.mark.asyncio
async def test_new_announcement_replaces_pending_dismissal(display):
    await display.handle_message(frame("announcement", message="First", duration=30))
    first_dismissal = display._dismiss_task
    await display.handle_message(frame("announcement", message="Second", duration=5000))

    assert first_dismissal.cancelled()
    await asyncio.sleep(0.06)
    assert display.announcement == "Second"


@pytest.mark.asyncio
async def test_apply_snapshot_replaces_state(display):
    await display.handle_message(frame("announcement", message="Old"))
    await display.handle_message(frame("score_update", matchId="M9", redAutoScore=1))

    snapshot = LiveStateResponse(
        tournament_id="T",
        field_id="F1",
        timer=TimerPayload(tournament_id="T", field_id="F1", duration=9000, remaining=4000, is_running=False),
        match=MatchResponse(
            id=12,
            stage_id=1,
            field_id=1,
            match_number=3,
            round_number=1,
            status=MatchStatus.IN_PROGRESS,
            alliances=[
                AllianceResponse(
                    color="RED",
                    score=26,
                    team_alliances=[TeamAllianceResponse(team_id=5, station_position=1, is_surrogate=False)],
                    match_scores=[MatchScoreResponse(
                        auto_score=10, drive_score=5, endgame_bonus=0, penalties=0,
                        team_count=3, multiplier=1.75, total_points=26,
                    )],
                ),
            ],
        ),
    )
    await display.apply_snapshot(snapshot)

    assert display.announcement is None
    assert display.match["match_id"] == "12"
    assert display.match["red_team_ids"] == ["5"]
    assert display.scores["red_total_score"] == 26
    assert display.timer == {"duration": 9000, "remaining": 4000, "is_running": False}
    assert display.display_settings is None


# ============================================================================
# ScoringFormReconciler
# ============================================================================

class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def refetches():
    return []


@pytest.fixture
def reconciler(clock, refetches):
    return ScoringFormReconciler(
        "T", "M1", field_id="F1", activity_window=2, clock=clock,
        on_refetch=lambda: refetches.append(1),
    )


def remote_scores(**values):
    values.setdefault("tournament_id", "T")
    values.setdefault("field_id", "F1")
    values.setdefault("match_id", "M1")
    return ScoreUpdatePayload(**values)


def test_remote_update_dropped_while_user_active(reconciler, clock, refetches):
    reconciler.record_edit("red", auto_score=7)

    clock.now += 1
    outcome = reconciler.handle_update(remote_scores(red_auto_score=3))

    assert outcome == UpdateOutcome.DROPPED_ACTIVE
    assert reconciler.form_data.red.auto_score == 7
    assert refetches == []


def test_remote_update_applied_once_inactive(reconciler, clock, refetches):
    reconciler.record_edit("red", auto_score=7)

    clock.now += 2.5
    assert reconciler.is_user_active is False
    outcome = reconciler.handle_update(remote_scores(red_auto_score=3, blue_drive_score=4))

    assert outcome == UpdateOutcome.APPLIED
    assert reconciler.form_data.red.auto_score == 3
    assert reconciler.form_data.blue.drive_score == 4
    assert reconciler.has_unsaved_changes is False
    assert refetches == [1]


def test_match_state_change_dropped_while_active(reconciler, clock):
    reconciler.record_edit("blue", penalties=1)
    outcome = reconciler.handle_update(
        MatchStateChangePayload(tournament_id="T", field_id="F1", match_id="M1", status="COMPLETED")
    )
    assert outcome == UpdateOutcome.DROPPED_ACTIVE
    assert reconciler.match_status is None

    clock.now += 3
    reconciler.handle_update(
        MatchStateChangePayload(tournament_id="T", field_id="F1", match_id="M1", status="COMPLETED")
    )
    assert reconciler.match_status == MatchStatus.COMPLETED


def test_updates_for_other_match_or_field_are_ignored(reconciler):
    assert reconciler.handle_update(remote_scores(match_id="M2")) == UpdateOutcome.DROPPED_OTHER_MATCH
    assert reconciler.handle_update(remote_scores(field_id="F2")) == UpdateOutcome.DROPPED_SCOPE
    assert reconciler.handle_update(remote_scores(tournament_id="U")) == UpdateOutcome.DROPPED_SCOPE


def test_own_echo_does_not_trigger_refetch(reconciler, clock, refetches):
    reconciler.record_edit("red", auto_score=10, drive_score=5, team_count=3)
    sent = reconciler.build_score_update()
    assert sent.red_total_score == 26

    clock.now += 2.5
    echo = ScoreUpdatePayload(**sent.model_dump())
    assert reconciler.handle_update(echo) == UpdateOutcome.DROPPED_ECHO
    assert refetches == []

    # The echo is consumed once; a repeat is a real update
    assert reconciler.handle_update(echo) == UpdateOutcome.APPLIED
    assert refetches == [1]


def test_echo_suppression_expires(reconciler, clock, refetches):
    reconciler.record_edit("red", auto_score=10)
    sent = reconciler.build_score_update()

    clock.now += 10
    assert reconciler.handle_update(ScoreUpdatePayload(**sent.model_dump())) == UpdateOutcome.APPLIED


def test_has_unsaved_changes_tracks_saves(reconciler):
    reconciler.load(ScoreFormData())
    assert reconciler.has_unsaved_changes is False

    reconciler.record_edit("blue", game_elements={"cones": 2})
    assert reconciler.has_unsaved_changes is True
    assert reconciler.is_user_active is True

    reconciler.mark_saved()
    assert reconciler.has_unsaved_changes is False
    assert reconciler.is_user_active is False
    assert reconciler.last_saved_scores.blue.game_elements == {"cones": 2}


def test_activity_window_bounds():
    with pytest.raises(ValueError):
        ScoringFormReconciler("T", "M1", activity_window=1)
    with pytest.raises(ValueError):
        ScoringFormReconciler("T", "M1", activity_window=6)
