"""
Follow-up delay policy.

Maps the follow-up delay selector stored in campaign settings to a
duration. The short intervals exist for testing a campaign end to end.
"""

from typing import Optional

MINUTE_MS = 60 * 1000
DAY_MS = 24 * 60 * MINUTE_MS


class FollowUpDelay:
    ONE_MINUTE = "ONE_MINUTE"
    THREE_MINUTES = "THREE_MINUTES"
    FIVE_MINUTES = "FIVE_MINUTES"
    TWO_DAYS = "TWO_DAYS"
    SEVEN_DAYS = "SEVEN_DAYS"
    FOURTEEN_DAYS = "FOURTEEN_DAYS"
    ONE_MONTH = "ONE_MONTH"


DEFAULT_FOLLOW_UP_DELAY = FollowUpDelay.TWO_DAYS

_DELAYS_MS = {
    FollowUpDelay.ONE_MINUTE: MINUTE_MS,
    FollowUpDelay.THREE_MINUTES: 3 * MINUTE_MS,
    FollowUpDelay.FIVE_MINUTES: 5 * MINUTE_MS,
    FollowUpDelay.TWO_DAYS: 2 * DAY_MS,
    FollowUpDelay.SEVEN_DAYS: 7 * DAY_MS,
    FollowUpDelay.FOURTEEN_DAYS: 14 * DAY_MS,
    FollowUpDelay.ONE_MONTH: 30 * DAY_MS,
}

VALID_DELAYS = frozenset(_DELAYS_MS)


def follow_up_delay_ms(selector: Optional[str]) -> int:
    """Delay in milliseconds. Unknown or missing selectors fall back to two days."""
    return _DELAYS_MS.get(selector, _DELAYS_MS[DEFAULT_FOLLOW_UP_DELAY])


def follow_up_delay_seconds(selector: Optional[str]) -> float:
    return follow_up_delay_ms(selector) / 1000
