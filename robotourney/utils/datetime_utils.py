"""
Datetime utility functions.
Provides replacements for deprecated datetime functions.
"""

from datetime import datetime
import pytz


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def now_ms() -> int:
    """Current UTC time as epoch milliseconds (wire format for updatedAt/startedAt)."""
    return int(utcnow().timestamp() * 1000)
