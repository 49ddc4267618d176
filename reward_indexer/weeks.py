"""
Week bucketing.

Weeks are fixed 7 day windows counted from the week 1 anchor, not calendar
weeks. A week is identified by the UTC date of its first day (``YYYY-MM-DD``).
"""

from datetime import date, datetime, timedelta, timezone

from .errors import WeekOutOfRangeError

WEEK_SECONDS = 7 * 24 * 60 * 60
DEFAULT_WEEK_1_START = datetime(2025, 7, 23, tzinfo=timezone.utc)
DEFAULT_ANCHOR_TS = int(DEFAULT_WEEK_1_START.timestamp())


def _parse_week_key(week_key: str) -> date:
    try:
        return date.fromisoformat(week_key)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid week key: {week_key!r}")


def week_index_for(timestamp: int, anchor_ts: int = DEFAULT_ANCHOR_TS) -> int:
    """0-based week index of a Unix timestamp"""
    timestamp = int(timestamp)
    if timestamp < anchor_ts:
        raise WeekOutOfRangeError(f"Timestamp {timestamp} is before the week 1 anchor {anchor_ts}")
    return (timestamp - anchor_ts) // WEEK_SECONDS


def week_key_for(timestamp: int, anchor_ts: int = DEFAULT_ANCHOR_TS) -> str:
    """Week key (start date, UTC) containing ``timestamp``"""
    week_start = anchor_ts + week_index_for(timestamp, anchor_ts) * WEEK_SECONDS
    return datetime.fromtimestamp(week_start, tz=timezone.utc).date().isoformat()


def week_number_for(week_key: str, anchor_ts: int = DEFAULT_ANCHOR_TS) -> int:
    """1-based week number of a week key, counted in days from the anchor's date"""
    anchor_date = datetime.fromtimestamp(anchor_ts, tz=timezone.utc).date()
    diff_days = (_parse_week_key(week_key) - anchor_date).days
    if diff_days < 0:
        raise WeekOutOfRangeError(f"Week {week_key} starts before the week 1 anchor")
    return diff_days // 7 + 1


def week_label_for(week_number: int, week_key: str) -> str:
    """Display label, e.g. ``Week 3 – 06 Aug 2025``"""
    d = _parse_week_key(week_key)
    return f"Week {week_number} – {d.strftime('%d %b %Y')}"


def week_end_for(week_key: str) -> str:
    """Date the week ends (exclusive), i.e. the next week's key"""
    return (_parse_week_key(week_key) + timedelta(days=7)).isoformat()
