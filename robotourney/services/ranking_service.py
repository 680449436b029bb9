"""
Swiss ranking calculation.

Standings are never updated incrementally: every call rebuilds the whole
stats table of a stage from its match history, so repeated calls with the
same matches produce identical rows.
"""

import logging
from typing import Dict, Iterable, List, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from robotourney.database.models import (
    Alliance, AllianceColor, Match, MatchStatus, TeamStats,
)
from robotourney.services import data_service
from robotourney.utils.constants import POINTS_PER_WIN, POINTS_PER_TIE
from robotourney.utils.exceptions import NotFoundError

logger = logging.getLogger(__name__)


# ============================================================================
# Ordering
# ============================================================================

def ranking_sort_key(stats) -> Tuple[int, float, int, int]:
    """
    Sort key shared by the rankings display and the pairing engine.

    Ranking points desc, then opponent win percentage desc, then point
    differential desc, then matches played desc.
    """
    return (
        -(stats.ranking_points or 0),
        -(stats.opponent_win_percentage or 0.0),
        -(stats.point_differential or 0),
        -(stats.matches_played or 0),
    )


def sort_rankings(stats_rows: Iterable) -> List:
    """Stable sort of stats rows by ranking_sort_key."""
    return sorted(stats_rows, key=ranking_sort_key)


# ============================================================================
# TeamRecord Class
# ============================================================================

class TeamRecord:
    """Accumulated results of one team within a stage."""

    def __init__(self, team_id: int):
        self.team_id = team_id
        self.wins = 0
        self.losses = 0
        self.ties = 0
        self.points_scored = 0
        self.points_conceded = 0
        self.opponents: Set[int] = set()  # distinct opponents ever faced

    @property
    def matches_played(self) -> int:
        return self.wins + self.losses + self.ties

    @property
    def win_percentage(self) -> float:
        """Raw win percentage; 0 when no matches were played."""
        if self.matches_played == 0:
            return 0.0
        return self.wins / self.matches_played

    @property
    def ranking_points(self) -> int:
        return self.wins * POINTS_PER_WIN + self.ties * POINTS_PER_TIE

    @property
    def point_differential(self) -> int:
        return self.points_scored - self.points_conceded

    def record_result(self, own_total: int, opponent_total: int, opponent_ids: Iterable[int]) -> None:
        """Record one match from this team's side."""
        self.points_scored += own_total
        self.points_conceded += opponent_total
        self.opponents.update(opponent_ids)
        if own_total > opponent_total:
            self.wins += 1
        elif own_total < opponent_total:
            self.losses += 1
        else:
            self.ties += 1


# ============================================================================
# StandingsTracker Class
# ============================================================================

class StandingsTracker:
    """Tracks records for every ranked team of a stage across its matches."""

    def __init__(self, team_ids: Iterable[int]):
        self.teams: Dict[int, TeamRecord] = {team_id: TeamRecord(team_id) for team_id in team_ids}

    def process_match(self, match: Match) -> None:
        """
        Fold one match into the standings.

        Matches that are not completed, or that lack one of the two
        alliances, do not count.
        """
        if match.status != MatchStatus.COMPLETED:
            return
        red = match.alliance(AllianceColor.RED)
        blue = match.alliance(AllianceColor.BLUE)
        if red is None or blue is None:
            return

        red_total = red.total_points
        blue_total = blue.total_points
        self._record_alliance(red, blue, red_total, blue_total)
        self._record_alliance(blue, red, blue_total, red_total)

    def _record_alliance(
        self, alliance: Alliance, opponent: Alliance, own_total: int, opponent_total: int
    ) -> None:
        opponent_ids = opponent.team_ids
        for link in alliance.team_alliances:
            # Surrogates play but their own record is untouched
            if link.is_surrogate:
                continue
            record = self.teams.get(link.team_id)
            if record is None:
                continue
            record.record_result(own_total, opponent_total, opponent_ids)

    def opponent_win_percentage(self, team_id: int) -> float:
        """
        Mean raw win percentage of the team's distinct opponents.

        Single pass: opponents' percentages are their raw ones over the same
        matches, not themselves adjusted for strength of schedule.
        """
        record = self.teams[team_id]
        if not record.opponents:
            return 0.0
        total = 0.0
        for opponent_id in record.opponents:
            opponent = self.teams.get(opponent_id)
            total += opponent.win_percentage if opponent is not None else 0.0
        return total / len(record.opponents)

    def stats_fields(self, team_id: int) -> Dict:
        """Column values for the team's TeamStats row."""
        record = self.teams[team_id]
        return {
            "wins": record.wins,
            "losses": record.losses,
            "ties": record.ties,
            "points_scored": record.points_scored,
            "points_conceded": record.points_conceded,
            "matches_played": record.matches_played,
            "ranking_points": record.ranking_points,
            "opponent_win_percentage": self.opponent_win_percentage(team_id),
            "point_differential": record.point_differential,
        }


def compute_standings(team_ids: Iterable[int], matches: Iterable[Match]) -> StandingsTracker:
    """Build standings for the given teams from a set of matches."""
    tracker = StandingsTracker(team_ids)
    for match in matches:
        tracker.process_match(match)
    return tracker


# ============================================================================
# Persistence
# ============================================================================

async def seed_team_stats(session: AsyncSession, stage) -> int:
    """
    Create zeroed stats rows for tournament teams that have none in the stage.

    Runs on every ranking update, so teams registered after the first round
    join the standings on the next update.

    Returns:
        Number of rows created
    """
    existing = await data_service.find_team_stats(session, stage.id)
    existing_team_ids = {stats.team_id for stats in existing}

    created = 0
    for team in stage.tournament.teams:
        if team.id in existing_team_ids:
            continue
        session.add(TeamStats(team_id=team.id, tournament_id=stage.tournament_id, stage_id=stage.id))
        created += 1

    if created:
        await session.flush()
        logger.info(f"Seeded {created} team stats rows for stage {stage.id}")
    return created


async def update_swiss_rankings(session: AsyncSession, stage_id: int) -> None:
    """
    Recompute every team's standings in a stage from its matches.

    Args:
        session: Database session
        stage_id: Stage ID

    Raises:
        NotFoundError: If the stage does not exist
    """
    stage = await data_service.find_stage(session, stage_id, with_tournament_teams=True)
    if stage is None:
        raise NotFoundError("Stage", stage_id)

    await seed_team_stats(session, stage)
    team_stats = await data_service.find_team_stats(session, stage_id)
    if not team_stats:
        logger.info(f"No teams to rank in stage {stage_id}")
        await session.commit()
        return

    matches = await data_service.find_matches(session, stage_id, with_alliances_and_scores=True)
    tracker = compute_standings([stats.team_id for stats in team_stats], matches)

    for stats in team_stats:
        await data_service.upsert_team_stats(
            session, stage_id, stats.team_id, tracker.stats_fields(stats.team_id)
        )
    await session.commit()
    logger.info(
        f"Updated Swiss rankings for stage {stage_id}: "
        f"{len(team_stats)} teams, {len(matches)} matches"
    )


async def get_swiss_rankings(session: AsyncSession, stage_id: int) -> List[TeamStats]:
    """Current standings of a stage, best first."""
    team_stats = await data_service.find_team_stats(session, stage_id)
    return sort_rankings(team_stats)
