"""
Swiss-style round generation.

Teams are paired with others of similar standing: the ranked list is consumed
four teams at a time, the first two forming the red alliance and the next two
the blue alliance.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from robotourney.database.models import AllianceColor, Field, Match, StageType
from robotourney.services import data_service, ranking_service
from robotourney.utils.constants import MATCH_SPACING_MINUTES, TEAMS_PER_ALLIANCE, TEAMS_PER_MATCH
from robotourney.utils.datetime_utils import utcnow
from robotourney.utils.exceptions import InvalidStageError, NotFoundError

logger = logging.getLogger(__name__)


def group_teams(ranked_team_ids: Sequence[int], teams_per_match: int = TEAMS_PER_MATCH) -> List[List[int]]:
    """
    Split a ranked list of team IDs into full match groups.

    A team appearing more than once is only used the first time. Leftover
    teams that cannot fill a whole group are not paired.
    """
    used = set()
    available = []
    for team_id in ranked_team_ids:
        if team_id in used:
            continue
        used.add(team_id)
        available.append(team_id)

    groups = []
    for i in range(0, len(available), teams_per_match):
        group = available[i:i + teams_per_match]
        if len(group) < teams_per_match:
            logger.info(f"Not enough teams for a complete match, skipping remaining {len(group)} teams")
            break
        groups.append(group)
    return groups


class FieldRotation:
    """Hands out fields least-used first, ties broken by field order."""

    def __init__(self, fields: Sequence[Field], initial_counts: Optional[Dict[int, int]] = None):
        self.fields = list(fields)
        self.counts = {field.id: 0 for field in self.fields}
        if initial_counts:
            self.counts.update(initial_counts)

    def next_field(self) -> Optional[Field]:
        if not self.fields:
            return None
        field = min(self.fields, key=lambda f: self.counts[f.id])
        self.counts[field.id] += 1
        return field


class SwissScheduler:
    """
    Generates Swiss rounds.

    Round generation for a stage is serialised by a per-stage lock so two
    requests can never interleave "fetch rankings -> pair -> persist".
    """

    def __init__(self):
        self._stage_locks: Dict[int, asyncio.Lock] = {}
        # stage id -> requests holding or waiting on its lock
        self._stage_users: Dict[int, int] = {}
        self._registry_lock = asyncio.Lock()

    async def _get_stage_lock(self, stage_id: int) -> asyncio.Lock:
        async with self._registry_lock:
            lock = self._stage_locks.get(stage_id)
            if lock is None:
                lock = asyncio.Lock()
                self._stage_locks[stage_id] = lock
            self._stage_users[stage_id] = self._stage_users.get(stage_id, 0) + 1
            return lock

    async def _release_stage_lock(self, stage_id: int) -> None:
        """Forget a stage's lock once nobody holds or waits on it."""
        async with self._registry_lock:
            users = self._stage_users.get(stage_id, 0) - 1
            if users > 0:
                self._stage_users[stage_id] = users
            else:
                self._stage_users.pop(stage_id, None)
                self._stage_locks.pop(stage_id, None)

    def is_generating(self, stage_id: int) -> bool:
        """Whether a round is currently being generated for the stage."""
        lock = self._stage_locks.get(stage_id)
        return lock is not None and lock.locked()

    async def generate_swiss_round(
        self, session: AsyncSession, stage_id: int, current_round_number: int
    ) -> List[Match]:
        """
        Generate the next Swiss round for a stage.

        Args:
            session: Database session
            stage_id: Stage ID
            current_round_number: Last completed round; created matches get this + 1

        Returns:
            Created matches in match number order

        Raises:
            NotFoundError: If the stage does not exist
            InvalidStageError: If the stage is not a Swiss stage
            ConcurrentModificationError: If another process took a match number first
        """
        lock = await self._get_stage_lock(stage_id)
        try:
            async with lock:
                return await self._generate_round(session, stage_id, current_round_number)
        finally:
            await self._release_stage_lock(stage_id)

    async def _generate_round(
        self, session: AsyncSession, stage_id: int, current_round_number: int
    ) -> List[Match]:
        stage = await data_service.find_stage(session, stage_id, with_tournament_teams=True)
        if stage is None:
            raise NotFoundError("Stage", stage_id)
        if stage.type != StageType.SWISS:
            raise InvalidStageError(f"Stage {stage_id} is not a SWISS stage")

        rankings = await ranking_service.get_swiss_rankings(session, stage_id)
        if not rankings:
            logger.info(f"No team stats found for stage {stage_id}, computing initial rankings")
            await ranking_service.update_swiss_rankings(session, stage_id)
            rankings = await ranking_service.get_swiss_rankings(session, stage_id)

        ranked_team_ids = [stats.team_id for stats in ranking_service.sort_rankings(rankings)]
        groups = group_teams(ranked_team_ids)
        if not groups:
            logger.info(f"Fewer than {TEAMS_PER_MATCH} teams available in stage {stage_id}, no matches created")
            return []

        round_number = current_round_number + 1
        match_number = await data_service.next_match_number(session, stage_id)
        fields = list(stage.tournament.fields)
        rotation = FieldRotation(
            fields, await data_service.count_matches_per_field(session, [f.id for f in fields])
        )
        first_start = utcnow()

        created: List[Match] = []
        for index, group in enumerate(groups):
            alliances = {
                AllianceColor.RED: group[:TEAMS_PER_ALLIANCE],
                AllianceColor.BLUE: group[TEAMS_PER_ALLIANCE:],
            }
            match = await data_service.create_match(
                session,
                stage_id,
                round_number=round_number,
                match_number=match_number,
                alliances=alliances,
                field=rotation.next_field(),
                scheduled_time=first_start + timedelta(minutes=index * MATCH_SPACING_MINUTES),
            )
            created.append(match)
            logger.info(
                f"Created match {match_number} (round {round_number}): "
                f"{alliances[AllianceColor.RED]} vs {alliances[AllianceColor.BLUE]}"
            )
            match_number += 1

        if stage.current_round < round_number:
            stage.current_round = round_number
            await session.commit()

        logger.info(f"Generated {len(created)} Swiss matches for stage {stage_id} round {round_number}")
        return created
