"""
Team Presence Bot — Time/Name Parser.

Turns free-form chat text such as "Petrov 14:30" or
"Petrov сейчас встреча с клиентом" into a time of day plus the
segments around the time marker, which the conversation uses as the
person search key and the activity description.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from src.core.clock import floor_to_minute

logger = logging.getLogger(__name__)

# The "now" keyword in the casings seen in practice. Detection is
# case-insensitive; stripping removes exactly these variants.
NOW_KEYWORDS: dict[str, tuple[str, ...]] = {
    "сейчас": ("сейчас", "Сейчас", "СЕЙЧАС"),
    "now": ("now", "Now", "NOW"),
}

_TIME_RE = re.compile(r"(\d{1,2}):(\d{2})")
_NOW_DETECT_RE = re.compile(
    r"\b(?:" + "|".join(NOW_KEYWORDS) + r")\b", re.IGNORECASE,
)
_NOW_STRIP_RE = re.compile(
    r"\b(?:" + "|".join(v for variants in NOW_KEYWORDS.values() for v in variants) + r")\b",
)

_DATE_FORMATS = ("%d.%m.%Y", "%d.%m.%y", "%Y-%m-%d", "%d/%m/%Y")
_TODAY_WORDS = {"today", "сегодня"}
_YESTERDAY_WORDS = {"yesterday", "вчера"}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TimeParseError(ValueError):
    """Base class for input that can't be turned into a time + search key."""


class NoTimeFound(TimeParseError):
    """Neither an H:MM/HH:MM pattern nor the "now" keyword is present."""


class InvalidTimeValue(TimeParseError):
    """An H:MM pattern was found but the hour or minute is out of range."""


class EmptySearchTerm(TimeParseError):
    """Nothing is left to search for once the time marker is removed."""


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeExpression:
    """A parsed time marker and its position in the original text.

    `marker_start`/`marker_end` delimit the marker, so `before` is the
    text preceding it (the surname for activity input) and `after` the
    text following it (the activity description).
    """

    text: str
    time: datetime
    marker_start: int
    marker_end: int
    is_now: bool
    residual: str

    @property
    def before(self) -> str:
        return self.text[: self.marker_start].strip()

    @property
    def after(self) -> str:
        return self.text[self.marker_end :].strip()

    @property
    def search_key(self) -> str:
        """The whole residual, trimmed — the key for leave input."""
        return self.residual


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def contains_time_marker(text: str) -> bool:
    """True if the text holds an H:MM pattern or the "now" keyword."""
    return bool(_TIME_RE.search(text) or _NOW_DETECT_RE.search(text))


def parse_time_expression(text: str, now: datetime | None = None) -> TimeExpression:
    """Extract the time of day and the residual search text.

    The "now" keyword takes precedence over an explicit time. Explicit
    times are placed on the current calendar date. The returned time is
    always floored to the minute.

    Raises:
        NoTimeFound: no marker at all.
        InvalidTimeValue: hour not in 0..23 or minute not in 0..59.
        EmptySearchTerm: only the marker itself was typed.
    """
    now = floor_to_minute(now or datetime.now())

    now_match = _NOW_DETECT_RE.search(text)
    if now_match:
        residual = " ".join(_NOW_STRIP_RE.sub(" ", text).split())
        if not residual:
            raise EmptySearchTerm("Nothing left to search for after removing the time marker")
        return TimeExpression(
            text=text,
            time=now,
            marker_start=now_match.start(),
            marker_end=now_match.end(),
            is_now=True,
            residual=residual,
        )

    time_match = _TIME_RE.search(text)
    if time_match is None:
        raise NoTimeFound(f"No time found in '{text}'")

    hour, minute = int(time_match.group(1)), int(time_match.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise InvalidTimeValue(f"Invalid time: {hour:02d}:{minute:02d}")

    residual = " ".join((text[: time_match.start()] + " " + text[time_match.end() :]).split())
    if not residual:
        raise EmptySearchTerm("Nothing left to search for after removing the time marker")
    return TimeExpression(
        text=text,
        time=now.replace(hour=hour, minute=minute),
        marker_start=time_match.start(),
        marker_end=time_match.end(),
        is_now=False,
        residual=residual,
    )


def split_search_key(key: str) -> tuple[str, str | None]:
    """Split a search key into (surname, given name).

    Raises EmptySearchTerm if the key has no words.
    """
    words = key.split()
    if not words:
        raise EmptySearchTerm("Search term is empty")
    if len(words) == 1:
        return words[0], None
    return words[0], words[1]


def parse_date_argument(arg: str, today: date) -> date:
    """Parse a statistics period: today/yesterday words or a calendar date.

    Raises ValueError for anything else.
    """
    word = arg.strip().lower()
    if word in _TODAY_WORDS:
        return today
    if word in _YESTERDAY_WORDS:
        return today - timedelta(days=1)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(arg.strip(), fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognized date: '{arg}'")
