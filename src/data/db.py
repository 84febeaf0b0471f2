"""
Team Presence Bot — SQLite storage.

PersonDB is the directory of subordinates (filled by the roster import).
StatusDB holds at most one leave and one activity per person per day;
writing one kind removes the other kind for that day in the same
transaction.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, time
from pathlib import Path
from typing import Iterator

from src.core.clock import floor_to_minute, local_today
from src.data.models import (
    ActivityEntry,
    ActivityRecord,
    ExportRow,
    LeaveEntry,
    LeaveRecord,
    Person,
)

logger = logging.getLogger(__name__)

DESCRIPTION_MAX_LENGTH = 1000

_SCHEMA = """
CREATE TABLE IF NOT EXISTS people (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    last_name        TEXT NOT NULL,
    first_name       TEXT NOT NULL,
    middle_name      TEXT NOT NULL DEFAULT '',
    last_name_norm   TEXT NOT NULL,
    first_name_norm  TEXT NOT NULL,
    created_at       TEXT NOT NULL,
    UNIQUE (last_name, first_name, middle_name)
);

CREATE TABLE IF NOT EXISTS leaves (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    person_id   INTEGER NOT NULL REFERENCES people (id),
    day         TEXT    NOT NULL,
    time        TEXT    NOT NULL,
    created_at  TEXT    NOT NULL,
    UNIQUE (person_id, day)
);

CREATE TABLE IF NOT EXISTS activities (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    person_id    INTEGER NOT NULL REFERENCES people (id),
    day          TEXT    NOT NULL,
    time         TEXT    NOT NULL,
    description  TEXT    NOT NULL,
    created_at   TEXT    NOT NULL,
    UNIQUE (person_id, day)
);
"""


class StorageError(Exception):
    """Raised when any SQLite operation fails. The cause is chained."""


def normalize_name(value: str) -> str:
    """Case-folded form used for case-insensitive name matching.

    SQLite's LOWER() only folds ASCII, so Cyrillic names are matched
    against these pre-computed columns instead.
    """
    return value.strip().casefold()


def _combine(day: str, hhmm: str) -> datetime:
    return datetime.combine(date.fromisoformat(day), time.fromisoformat(hhmm))


class _SQLiteStore:
    """Shared connection handling for the SQLite-backed stores."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success, and always close it.

        Any sqlite3.Error is re-raised as StorageError.
        """
        try:
            conn = sqlite3.connect(self._db_path, timeout=10)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open database {self._db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            logger.error("SQLite error on %s: %s", self._db_path, exc)
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("Schema initialized at %s", self._db_path)

    @staticmethod
    def _row_to_person(row: sqlite3.Row) -> Person:
        return Person(
            id=row["id"],
            last_name=row["last_name"],
            first_name=row["first_name"],
            middle_name=row["middle_name"] or "",
        )


class PersonDB(_SQLiteStore):
    """The directory of subordinates."""

    _SELECT = "SELECT id, last_name, first_name, middle_name FROM people"
    _ORDER = " ORDER BY last_name, first_name"

    def add_person(
        self, last_name: str, first_name: str, middle_name: str = "",
    ) -> Person | None:
        """Insert a person. Returns None if the same full name already exists."""
        last_name, first_name, middle_name = (
            last_name.strip(), first_name.strip(), middle_name.strip(),
        )
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO people
                    (last_name, first_name, middle_name,
                     last_name_norm, first_name_norm, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    last_name, first_name, middle_name,
                    normalize_name(last_name), normalize_name(first_name),
                    datetime.now().isoformat(),
                ),
            )
            if cursor.rowcount == 0:
                return None
            person_id = cursor.lastrowid

        logger.info("Person added: #%d %s %s %s", person_id, last_name, first_name, middle_name)
        return Person(
            id=person_id, last_name=last_name,
            first_name=first_name, middle_name=middle_name,
        )

    def get_person(self, person_id: int) -> Person | None:
        with self._connect() as conn:
            row = conn.execute(self._SELECT + " WHERE id = ?", (person_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_person(row)

    def list_all(self) -> list[Person]:
        """All people ordered by (last name, first name)."""
        with self._connect() as conn:
            rows = conn.execute(self._SELECT + self._ORDER).fetchall()
        return [self._row_to_person(r) for r in rows]

    def search_single_term(self, term: str) -> list[Person]:
        """Exact, case-insensitive match of `term` on last OR first name."""
        norm = normalize_name(term)
        with self._connect() as conn:
            rows = conn.execute(
                self._SELECT
                + " WHERE last_name_norm = ? OR first_name_norm = ?"
                + self._ORDER,
                (norm, norm),
            ).fetchall()
        logger.debug("Single-term search '%s': %d found", term, len(rows))
        return [self._row_to_person(r) for r in rows]

    def search_full_name(self, surname: str, given_name: str) -> list[Person]:
        """Surname + given name, at least one of the two matching exactly.

        Matches both exactly, or surname exactly and given name as a
        substring, or surname as a substring and given name exactly.
        """
        last, first = normalize_name(surname), normalize_name(given_name)
        with self._connect() as conn:
            rows = conn.execute(
                self._SELECT
                + """
                WHERE (last_name_norm = ? AND first_name_norm = ?)
                   OR (last_name_norm = ? AND instr(first_name_norm, ?) > 0)
                   OR (instr(last_name_norm, ?) > 0 AND first_name_norm = ?)
                """
                + self._ORDER,
                (last, first, last, first, last, first),
            ).fetchall()
        logger.debug("Full-name search '%s %s': %d found", surname, given_name, len(rows))
        return [self._row_to_person(r) for r in rows]

    def search_partial(self, surname: str, given_name: str | None = None) -> list[Person]:
        """Substring match on last name OR first name.

        With one term the same term is tried against both columns.
        """
        last = normalize_name(surname)
        first = normalize_name(given_name) if given_name else last
        if not last or not first:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                self._SELECT
                + " WHERE instr(last_name_norm, ?) > 0 OR instr(first_name_norm, ?) > 0"
                + self._ORDER,
                (last, first),
            ).fetchall()
        logger.debug("Partial search '%s'/'%s': %d found", surname, given_name, len(rows))
        return [self._row_to_person(r) for r in rows]


class StatusDB(_SQLiteStore):
    """Daily leave/activity records, one of each kind per person per day at most."""

    def upsert_leave(self, person_id: int, when: datetime) -> LeaveRecord:
        """Record that the person left at `when`; replaces any record of that day."""
        when = floor_to_minute(when)
        day = when.date()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "DELETE FROM activities WHERE person_id = ? AND day = ?",
                (person_id, day.isoformat()),
            )
            conn.execute(
                """
                INSERT INTO leaves (person_id, day, time, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (person_id, day) DO UPDATE SET time = excluded.time
                """,
                (person_id, day.isoformat(), when.strftime("%H:%M"), datetime.now().isoformat()),
            )
        logger.info("Leave recorded: person #%d on %s at %s", person_id, day, when.strftime("%H:%M"))
        return LeaveRecord(person_id=person_id, day=day, time=when)

    def upsert_activity(
        self, person_id: int, when: datetime, description: str,
    ) -> ActivityRecord:
        """Record an unplanned activity; replaces any record of that day."""
        when = floor_to_minute(when)
        day = when.date()
        description = description[:DESCRIPTION_MAX_LENGTH]
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "DELETE FROM leaves WHERE person_id = ? AND day = ?",
                (person_id, day.isoformat()),
            )
            conn.execute(
                """
                INSERT INTO activities (person_id, day, time, description, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (person_id, day) DO UPDATE
                    SET time = excluded.time, description = excluded.description
                """,
                (
                    person_id, day.isoformat(), when.strftime("%H:%M"),
                    description, datetime.now().isoformat(),
                ),
            )
        logger.info(
            "Activity recorded: person #%d on %s at %s", person_id, day, when.strftime("%H:%M"),
        )
        return ActivityRecord(person_id=person_id, day=day, time=when, description=description)

    def remove_conflicting(self, person_id: int, day: date) -> None:
        """Delete both the leave and the activity of the person for `day`."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "DELETE FROM leaves WHERE person_id = ? AND day = ?",
                (person_id, day.isoformat()),
            )
            conn.execute(
                "DELETE FROM activities WHERE person_id = ? AND day = ?",
                (person_id, day.isoformat()),
            )

    def existing_for_day(
        self, person_id: int, day: date,
    ) -> LeaveRecord | ActivityRecord | None:
        """The record a new write for (person, day) would replace. Activity wins."""
        with self._connect() as conn:
            act = conn.execute(
                "SELECT time, description FROM activities WHERE person_id = ? AND day = ?",
                (person_id, day.isoformat()),
            ).fetchone()
            leave = conn.execute(
                "SELECT time FROM leaves WHERE person_id = ? AND day = ?",
                (person_id, day.isoformat()),
            ).fetchone()
        if act is not None:
            return ActivityRecord(
                person_id=person_id, day=day,
                time=_combine(day.isoformat(), act["time"]),
                description=act["description"],
            )
        if leave is not None:
            return LeaveRecord(
                person_id=person_id, day=day,
                time=_combine(day.isoformat(), leave["time"]),
            )
        return None

    def today_leaves(self, today: date | None = None) -> dict[int, datetime]:
        """person_id → leave time for today."""
        day = (today or local_today()).isoformat()
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT person_id, day, time FROM leaves WHERE day = ?", (day,),
            ).fetchall()
        return {r["person_id"]: _combine(r["day"], r["time"]) for r in rows}

    def today_activities(self, today: date | None = None) -> dict[int, ActivityRecord]:
        """person_id → activity record for today."""
        day = (today or local_today()).isoformat()
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT person_id, day, time, description FROM activities WHERE day = ?",
                (day,),
            ).fetchall()
        return {
            r["person_id"]: ActivityRecord(
                person_id=r["person_id"],
                day=date.fromisoformat(r["day"]),
                time=_combine(r["day"], r["time"]),
                description=r["description"],
            )
            for r in rows
        }

    def leaves_on(self, day: date) -> list[LeaveEntry]:
        """Leaves of `day` joined with the person, ordered by time."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.id, p.last_name, p.first_name, p.middle_name, l.day, l.time
                FROM leaves l
                JOIN people p ON l.person_id = p.id
                WHERE l.day = ?
                ORDER BY l.time, p.last_name, p.first_name
                """,
                (day.isoformat(),),
            ).fetchall()
        return [
            LeaveEntry(person=self._row_to_person(r), time=_combine(r["day"], r["time"]))
            for r in rows
        ]

    def activities_on(self, day: date) -> list[ActivityEntry]:
        """Activities of `day` joined with the person, ordered by time."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.id, p.last_name, p.first_name, p.middle_name,
                       a.day, a.time, a.description
                FROM activities a
                JOIN people p ON a.person_id = p.id
                WHERE a.day = ?
                ORDER BY a.time, p.last_name, p.first_name
                """,
                (day.isoformat(),),
            ).fetchall()
        return [
            ActivityEntry(
                person=self._row_to_person(r),
                time=_combine(r["day"], r["time"]),
                description=r["description"],
            )
            for r in rows
        ]

    def export_rows(self) -> list[ExportRow]:
        """Every (person, day) with a record, ordered by day then name."""
        with self._connect() as conn:
            leave_rows = conn.execute(
                """
                SELECT p.id, p.last_name, p.first_name, p.middle_name, l.day, l.time
                FROM leaves l JOIN people p ON l.person_id = p.id
                """
            ).fetchall()
            activity_rows = conn.execute(
                """
                SELECT p.id, p.last_name, p.first_name, p.middle_name,
                       a.day, a.time, a.description
                FROM activities a JOIN people p ON a.person_id = p.id
                """
            ).fetchall()

        merged: dict[tuple[int, str], ExportRow] = {}
        for r in leave_rows:
            row = merged.setdefault(
                (r["id"], r["day"]),
                ExportRow(day=date.fromisoformat(r["day"]), person=self._row_to_person(r)),
            )
            row.leave_time = _combine(r["day"], r["time"])
        for r in activity_rows:
            row = merged.setdefault(
                (r["id"], r["day"]),
                ExportRow(day=date.fromisoformat(r["day"]), person=self._row_to_person(r)),
            )
            row.activity_time = _combine(r["day"], r["time"])
            row.activity_description = r["description"]

        return sorted(
            merged.values(),
            key=lambda x: (x.day, x.person.last_name, x.person.first_name),
        )
