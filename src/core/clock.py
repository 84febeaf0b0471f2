"""Wall-clock helpers.

All stored times are naive wall-clock values in the configured zone,
floored to whole minutes so repeated reads of a record are stable.
"""

from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo


def floor_to_minute(moment: datetime) -> datetime:
    """Drop seconds and sub-second parts."""
    return moment.replace(second=0, microsecond=0)


def local_now() -> datetime:
    """Current wall-clock time in settings.TIMEZONE, floored to the minute."""
    from src.config import settings

    now = datetime.now(ZoneInfo(settings.TIMEZONE)).replace(tzinfo=None)
    return floor_to_minute(now)


def local_today() -> date:
    return local_now().date()
