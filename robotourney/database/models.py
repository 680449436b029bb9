"""
SQLAlchemy ORM models for the robotics tournament Swiss engine.
"""

from typing import List
import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    Float,
    DateTime,
    Enum,
    ForeignKey,
    JSON,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from robotourney.database.db import Base


class StageType(str, enum.Enum):
    """Tournament stage type."""

    SWISS = "SWISS"
    PLAYOFF = "PLAYOFF"
    FINAL = "FINAL"


class MatchStatus(str, enum.Enum):
    """Match lifecycle status."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class AllianceColor(str, enum.Enum):
    """Alliance color. Every match has exactly one of each."""

    RED = "RED"
    BLUE = "BLUE"


class MatchResult(str, enum.Enum):
    """Winning alliance of a completed match."""

    RED = "RED"
    BLUE = "BLUE"
    TIE = "TIE"


class Tournament(Base):
    """Tournaments."""

    __tablename__ = "tournaments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    teams = relationship("Team", back_populates="tournament", order_by="Team.id")
    fields = relationship("Field", back_populates="tournament", order_by="Field.number")
    stages = relationship("Stage", back_populates="tournament")


class Team(Base):
    """Teams registered in a tournament."""

    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tournament_id = Column(Integer, ForeignKey("tournaments.id"), nullable=False)
    team_number = Column(String, nullable=False)  # Public team number (e.g., "1234")
    name = Column(String, nullable=True)

    # Relationships
    tournament = relationship("Tournament", back_populates="teams")

    __table_args__ = (
        UniqueConstraint("tournament_id", "team_number", name="uq_teams_tournament_number"),
        Index("idx_teams_tournament", "tournament_id"),
    )


class Field(Base):
    """Playing fields of a tournament. Field-scoped broadcast rooms are keyed by field id."""

    __tablename__ = "fields"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tournament_id = Column(Integer, ForeignKey("tournaments.id"), nullable=False)
    name = Column(String, nullable=False)
    number = Column(Integer, nullable=False, default=1)

    # Relationships
    tournament = relationship("Tournament", back_populates="fields")

    __table_args__ = (Index("idx_fields_tournament", "tournament_id"),)


class Stage(Base):
    """Tournament stages (Swiss, playoff, final)."""

    __tablename__ = "stages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tournament_id = Column(Integer, ForeignKey("tournaments.id"), nullable=False)
    name = Column(String, nullable=False)
    type = Column(Enum(StageType), default=StageType.SWISS, nullable=False)
    current_round = Column(Integer, default=0, nullable=False)  # Last generated round number

    # Relationships
    tournament = relationship("Tournament", back_populates="stages")
    matches = relationship("Match", back_populates="stage")
    team_stats = relationship("TeamStats", back_populates="stage")

    __table_args__ = (Index("idx_stages_tournament", "tournament_id"),)


class TeamStats(Base):
    """
    Per (team, stage) standings. Derived in full from the stage's match
    history on every ranking update.
    """

    __tablename__ = "team_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=False)
    tournament_id = Column(Integer, ForeignKey("tournaments.id"), nullable=False)
    stage_id = Column(Integer, ForeignKey("stages.id"), nullable=False)
    wins = Column(Integer, default=0, nullable=False)
    losses = Column(Integer, default=0, nullable=False)
    ties = Column(Integer, default=0, nullable=False)
    points_scored = Column(Integer, default=0, nullable=False)
    points_conceded = Column(Integer, default=0, nullable=False)
    matches_played = Column(Integer, default=0, nullable=False)
    ranking_points = Column(Integer, default=0, nullable=False)
    opponent_win_percentage = Column(Float, default=0.0, nullable=False)
    point_differential = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    team = relationship("Team")
    stage = relationship("Stage", back_populates="team_stats")

    __table_args__ = (
        UniqueConstraint("team_id", "stage_id", name="uq_team_stats_team_stage"),
        Index("idx_team_stats_stage", "stage_id"),
    )


class Match(Base):
    """Scheduled and played matches."""

    __tablename__ = "matches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stage_id = Column(Integer, ForeignKey("stages.id"), nullable=False)
    field_id = Column(Integer, ForeignKey("fields.id"), nullable=True)
    match_number = Column(Integer, nullable=False)  # Monotonic per stage
    round_number = Column(Integer, nullable=False, default=1)
    status = Column(Enum(MatchStatus), default=MatchStatus.PENDING, nullable=False)
    winning_alliance = Column(Enum(MatchResult), nullable=True)
    scheduled_time = Column(DateTime(timezone=True), nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=True)
    end_time = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    stage = relationship("Stage", back_populates="matches")
    field = relationship("Field")
    alliances = relationship(
        "Alliance", back_populates="match", order_by="Alliance.id", cascade="all, delete-orphan"
    )
    match_scores = relationship("MatchScore", back_populates="match", cascade="all, delete-orphan")

    def alliance(self, color: AllianceColor):
        """Get the alliance of the given color, or None."""
        for alliance in self.alliances:
            if alliance.color == color:
                return alliance
        return None

    @property
    def team_ids(self) -> List[int]:
        """All team IDs in the match, red alliance first."""
        ids = []
        for color in (AllianceColor.RED, AllianceColor.BLUE):
            alliance = self.alliance(color)
            if alliance is not None:
                ids.extend(alliance.team_ids)
        return ids

    __table_args__ = (
        UniqueConstraint("stage_id", "match_number", name="uq_matches_stage_number"),
        Index("idx_matches_stage", "stage_id"),
        Index("idx_matches_field", "field_id"),
    )


class Alliance(Base):
    """One side of a match."""

    __tablename__ = "alliances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=False)
    color = Column(Enum(AllianceColor), nullable=False)
    score = Column(Integer, default=0, nullable=False)  # Mirrors the alliance's total points

    # Relationships
    match = relationship("Match", back_populates="alliances")
    team_alliances = relationship(
        "TeamAlliance",
        back_populates="alliance",
        order_by="TeamAlliance.station_position",
        cascade="all, delete-orphan",
    )
    match_scores = relationship("MatchScore", back_populates="alliance")

    @property
    def team_ids(self) -> List[int]:
        """Team IDs in station order."""
        return [link.team_id for link in self.team_alliances]

    @property
    def total_points(self) -> int:
        """Sum of this alliance's score rows."""
        return sum(score.total_points or 0 for score in self.match_scores)

    __table_args__ = (
        UniqueConstraint("match_id", "color", name="uq_alliances_match_color"),
        Index("idx_alliances_match", "match_id"),
    )


class TeamAlliance(Base):
    """Pins a team to a station position within an alliance."""

    __tablename__ = "team_alliances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alliance_id = Column(Integer, ForeignKey("alliances.id"), nullable=False)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=False)
    station_position = Column(Integer, nullable=False)  # 1..n
    is_surrogate = Column(Boolean, default=False, nullable=False)  # Result does not count for this team

    # Relationships
    alliance = relationship("Alliance", back_populates="team_alliances")
    team = relationship("Team")

    __table_args__ = (
        UniqueConstraint("alliance_id", "station_position", name="uq_team_alliances_station"),
        Index("idx_team_alliances_team", "team_id"),
    )


class MatchScore(Base):
    """Score sheet of one alliance in one match. Mutated while live, final once completed."""

    __tablename__ = "match_scores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=False)
    alliance_id = Column(Integer, ForeignKey("alliances.id"), nullable=False)
    auto_score = Column(Integer, default=0, nullable=False)
    drive_score = Column(Integer, default=0, nullable=False)
    endgame_bonus = Column(Integer, default=0, nullable=False)
    penalties = Column(Integer, default=0, nullable=False)
    team_count = Column(Integer, default=0, nullable=False)
    multiplier = Column(Float, default=1.0, nullable=False)
    game_elements = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)  # Per-element breakdown
    total_points = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    match = relationship("Match", back_populates="match_scores")
    alliance = relationship("Alliance", back_populates="match_scores")

    __table_args__ = (
        UniqueConstraint("alliance_id", name="uq_match_scores_alliance"),
        Index("idx_match_scores_match", "match_id"),
    )
