"""
Constants used across the Swiss engine and the live broadcast service.
"""

import os

from dotenv import load_dotenv

load_dotenv()

# Alliance score multipliers keyed by number of teams on the alliance.
# Any team count not listed scores with a multiplier of 1.0.
TEAM_COUNT_MULTIPLIERS = {
    1: 1.25,
    2: 1.5,
    3: 1.75,
    4: 2.0,
}
DEFAULT_MULTIPLIER = 1.0

# Swiss pairing
TEAMS_PER_ALLIANCE = 2
TEAMS_PER_MATCH = TEAMS_PER_ALLIANCE * 2
MATCH_SPACING_MINUTES = int(os.getenv("MATCH_SPACING_MINUTES", "6"))

# Ranking points
POINTS_PER_WIN = 2
POINTS_PER_TIE = 1

# Live broadcast
TIMER_TICK_SECONDS = 1.0
DEFAULT_ANNOUNCEMENT_DURATION_MS = 10000
ADMIN_RETRY_DELAY_SECONDS = 0.5
WEBSOCKET_TIMEOUT_SECONDS = 30

# Client reconciliation (seconds of inactivity before remote updates apply again)
USER_ACTIVITY_WINDOW_SECONDS = float(os.getenv("USER_ACTIVITY_WINDOW_SECONDS", "2"))
ECHO_SUPPRESSION_SECONDS = 3.0

# Reconnect backoff
MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_INITIAL_DELAY_SECONDS = 0.1
RECONNECT_MAX_DELAY_SECONDS = 10.0
