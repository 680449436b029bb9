"""
Alliance score aggregation.

Pure functions shared by the server (persisting match scores) and the
display clients (recomputing totals from sub-scores).
"""

from decimal import Decimal, ROUND_FLOOR

from robotourney.database.models import MatchResult
from robotourney.utils.constants import TEAM_COUNT_MULTIPLIERS, DEFAULT_MULTIPLIER


def calculate_multiplier(team_count: int) -> float:
    """
    Multiplier applied to an alliance's raw points.

    1 team -> 1.25, 2 -> 1.5, 3 -> 1.75, 4 -> 2.0, anything else -> 1.0.
    """
    return TEAM_COUNT_MULTIPLIERS.get(team_count, DEFAULT_MULTIPLIER)


def _round_half_up(value: Decimal) -> int:
    """Round to the nearest integer, halves toward positive infinity."""
    return int((value + Decimal("0.5")).to_integral_value(rounding=ROUND_FLOOR))


def aggregate_score(
    auto_score: float,
    drive_score: float,
    endgame_bonus: float = 0,
    penalties: float = 0,
    team_count: int = 0,
) -> int:
    """
    Compute an alliance's total score.

    Rounding happens once, on the final product, never on the sub-scores.

    Args:
        auto_score: Autonomous period points
        drive_score: Driver-controlled period points
        endgame_bonus: Endgame bonus points
        penalties: Penalty points (subtracted)
        team_count: Number of teams on the alliance, selects the multiplier

    Returns:
        Rounded total
    """
    raw = (
        Decimal(str(auto_score))
        + Decimal(str(drive_score))
        + Decimal(str(endgame_bonus))
        - Decimal(str(penalties))
    )
    product = raw * Decimal(str(calculate_multiplier(team_count)))
    return _round_half_up(product)


def calculate_winner(red_total: int, blue_total: int) -> MatchResult:
    """Determine the winning alliance from the two totals."""
    if red_total > blue_total:
        return MatchResult.RED
    elif blue_total > red_total:
        return MatchResult.BLUE
    else:
        return MatchResult.TIE
