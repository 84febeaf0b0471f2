"""
Team Presence Bot — Data Models.

The roster and the daily status records persist in SQLite across days,
surviving bot restarts. Conversation sessions do not; they live in
src.core.sessions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime


@dataclass
class Person:
    """A tracked subordinate.

    Created only by the administrative roster import. The
    (last_name, first_name, middle_name) tuple is unique.
    """

    id: int
    last_name: str
    first_name: str
    middle_name: str = ""

    @property
    def short_name(self) -> str:
        return f"{self.last_name} {self.first_name}"

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.last_name, self.first_name, self.middle_name) if p)


@dataclass
class LeaveRecord:
    """The person left for the day at `time`. At most one per (person, day)."""

    person_id: int
    day: date
    time: datetime


@dataclass
class ActivityRecord:
    """The person is busy with an unplanned task. At most one per (person, day)."""

    person_id: int
    day: date
    time: datetime
    description: str


@dataclass
class LeaveEntry:
    """A leave joined with the person's identity, for statistics."""

    person: Person
    time: datetime


@dataclass
class ActivityEntry:
    """An activity joined with the person's identity, for statistics."""

    person: Person
    time: datetime
    description: str


@dataclass
class ExportRow:
    """One (person, day) line of the statistics export."""

    day: date
    person: Person
    leave_time: datetime | None = None
    activity_time: datetime | None = None
    activity_description: str | None = None
