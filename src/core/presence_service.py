"""
Team Presence Bot — UI-Agnostic Presence Service.

The conversation state machine. Each inbound event (free text, a person
selection, a yes/no confirmation) is handled to completion under the
chat's exclusive section: parse → search the directory → commit to the
status store, or move the chat's session to the next awaiting state.

Returns structured response objects — never sends messages directly.
Each UI adapter renders them in its own way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from src.core.clock import local_now
from src.core.roster_io import RosterFileError, read_roster, write_statistics
from src.core.sessions import (
    PendingAction,
    PendingActivity,
    PendingLeave,
    Session,
    SessionStore,
    State,
)
from src.core.time_parser import (
    EmptySearchTerm,
    InvalidTimeValue,
    NoTimeFound,
    contains_time_marker,
    parse_date_argument,
    parse_time_expression,
    split_search_key,
)
from src.data.db import DESCRIPTION_MAX_LENGTH, StorageError
from src.data.models import ActivityRecord, LeaveRecord, Person

if TYPE_CHECKING:
    from src.data.db import PersonDB, StatusDB

logger = logging.getLogger(__name__)

# Telegram rejects messages over 4096 characters
_MESSAGE_SOFT_LIMIT = 3500
_BOARD_DESCRIPTION_LIMIT = 50

USAGE_HINT = (
    "Send a surname with a time, e.g. 'Petrov 14:30' or 'Petrov now', "
    "to record that someone left. Add a description after the time, e.g. "
    "'Petrov now meeting a client', to record an unplanned activity."
)


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------


class ResponseKind(Enum):
    SUCCESS = "success"
    ERROR = "error"
    SELECTION_PROMPT = "selection_prompt"
    TEXT_PROMPT = "text_prompt"
    CONFIRMATION_PROMPT = "confirmation_prompt"
    CANCELLED = "cancelled"
    STATUS_BOARD = "status_board"
    STATISTICS = "statistics"
    EXPORT = "export"
    IMPORT_REPORT = "import_report"


class ErrorKind(Enum):
    NO_TIME_FOUND = "no_time_found"
    INVALID_TIME_VALUE = "invalid_time_value"
    EMPTY_SEARCH_TERM = "empty_search_term"
    EMPTY_DESCRIPTION = "empty_description"
    PERSON_NOT_FOUND = "person_not_found"
    NO_PEOPLE_REGISTERED = "no_people_registered"
    SESSION_EXPIRED = "session_expired"
    STORAGE = "storage"
    NOT_PRIVILEGED = "not_privileged"
    INVALID_DATE = "invalid_date"
    INVALID_FILE = "invalid_file"
    UNKNOWN_COMMAND = "unknown_command"


@dataclass
class Choice:
    label: str
    token: str   # person id, or "yes"/"no" for confirmations


@dataclass
class StatusRow:
    person: Person
    status: str                 # "present" | "left" | "activity"
    time: datetime | None = None
    description: str = ""


@dataclass
class ServiceResponse:
    kind: ResponseKind
    message: str


@dataclass
class SuccessResponse(ServiceResponse):
    record: LeaveRecord | ActivityRecord | None = None


@dataclass
class ErrorResponse(ServiceResponse):
    error: ErrorKind | None = None


@dataclass
class SelectionPromptResponse(ServiceResponse):
    choices: list[Choice] = field(default_factory=list)


@dataclass
class ConfirmationPromptResponse(ServiceResponse):
    choices: list[Choice] = field(default_factory=list)


@dataclass
class StatusBoardResponse(ServiceResponse):
    rows: list[StatusRow] = field(default_factory=list)


@dataclass
class StatisticsResponse(ServiceResponse):
    day: date | None = None


@dataclass
class ExportResponse(ServiceResponse):
    path: Path | None = None
    row_count: int = 0


@dataclass
class ImportReportResponse(ServiceResponse):
    added: list[Person] = field(default_factory=list)
    roster_message: str = ""


_ERROR_MESSAGES = {
    ErrorKind.NO_TIME_FOUND: "I didn't recognize that. " + USAGE_HINT,
    ErrorKind.INVALID_TIME_VALUE: "Invalid time. Use HH:MM with hours 0-23 and minutes 0-59.",
    ErrorKind.EMPTY_SEARCH_TERM: "Please specify the person's surname.",
    ErrorKind.EMPTY_DESCRIPTION: "The description can't be empty. Please type what they are doing.",
    ErrorKind.PERSON_NOT_FOUND: "Person not found.",
    ErrorKind.NO_PEOPLE_REGISTERED: "No people registered yet. An admin has to import the roster first.",
    ErrorKind.SESSION_EXPIRED: "This session has expired. Please start again.",
    ErrorKind.STORAGE: "Something went wrong while saving. Please try again later.",
    ErrorKind.NOT_PRIVILEGED: "You don't have permission to do that.",
    ErrorKind.INVALID_DATE: "Invalid date. Use today, yesterday or DD.MM.YYYY.",
    ErrorKind.INVALID_FILE: "Couldn't read the spreadsheet. Please send an .xlsx file.",
    ErrorKind.UNKNOWN_COMMAND: "Please pick one of the buttons above, or /cancel.",
}


def _error(kind: ErrorKind, message: str | None = None) -> ErrorResponse:
    return ErrorResponse(
        kind=ResponseKind.ERROR,
        message="❌ " + (message or _ERROR_MESSAGES[kind]),
        error=kind,
    )


def _person_choices(people: list[Person]) -> list[Choice]:
    return [Choice(label=p.short_name, token=str(p.id)) for p in people]


# ---------------------------------------------------------------------------
# PresenceService
# ---------------------------------------------------------------------------


class PresenceService:
    """Conversation state machine over the person directory and status store."""

    def __init__(
        self,
        person_db: PersonDB,
        status_db: StatusDB,
        sessions: SessionStore | None = None,
        clock: Callable[[], datetime] = local_now,
        admin_ids: list[int] | None = None,
        confirm_overwrites: bool | None = None,
    ) -> None:
        if admin_ids is None or confirm_overwrites is None or sessions is None:
            from src.config import settings

            if admin_ids is None:
                admin_ids = settings.ADMIN_USER_IDS
            if confirm_overwrites is None:
                confirm_overwrites = settings.CONFIRM_OVERWRITES
            if sessions is None:
                sessions = SessionStore(ttl=timedelta(minutes=settings.SESSION_TTL_MINUTES))

        self._people = person_db
        self._status = status_db
        self._sessions = sessions
        self._clock = clock
        self._admin_ids = set(admin_ids)
        self._confirm_overwrites = confirm_overwrites

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    def state_of(self, chat_id: int) -> State:
        session = self._sessions.get(chat_id)
        return session.state if session else State.IDLE

    def is_privileged(self, identity: int) -> bool:
        return identity in self._admin_ids

    # ------------------------------------------------------------------
    # Public: explicit intents
    # ------------------------------------------------------------------

    def start_leave(self, chat_id: int) -> ServiceResponse:
        """Record leave: offer every person, await a selection."""
        with self._sessions.lock(chat_id):
            return self._start_selection(
                chat_id, State.AWAITING_LEAVE_SELECTION,
                "\U0001f465 Who is leaving?",
            )

    def start_activity(self, chat_id: int) -> ServiceResponse:
        """Record activity: offer every person, then ask for a description."""
        with self._sessions.lock(chat_id):
            return self._start_selection(
                chat_id, State.AWAITING_ACTIVITY_PERSON_SELECTION,
                "\U0001f465 Who is busy with an unplanned activity?",
            )

    def cancel(self, chat_id: int) -> ServiceResponse:
        with self._sessions.lock(chat_id):
            self._sessions.clear(chat_id)
        return ServiceResponse(kind=ResponseKind.CANCELLED, message="Action cancelled.")

    def _start_selection(self, chat_id: int, state: State, prompt: str) -> ServiceResponse:
        # A new intent abandons whatever was in progress
        self._sessions.clear(chat_id)
        try:
            people = self._people.list_all()
        except StorageError as exc:
            logger.error("Listing people failed: %s", exc)
            return _error(ErrorKind.STORAGE)

        if not people:
            return _error(ErrorKind.NO_PEOPLE_REGISTERED)

        self._sessions.put(
            chat_id, Session(state=state, candidates=[p.id for p in people]),
        )
        return SelectionPromptResponse(
            kind=ResponseKind.SELECTION_PROMPT,
            message=prompt,
            choices=_person_choices(people),
        )

    # ------------------------------------------------------------------
    # Public: inbound events
    # ------------------------------------------------------------------

    def handle_text(self, chat_id: int, text: str) -> ServiceResponse:
        """Route a free-text message according to the chat's session state."""
        with self._sessions.lock(chat_id):
            session = self._sessions.get(chat_id)

            if session is None:
                expired_state = self._sessions.pop_expired(chat_id)
                if expired_state is not None and (
                    expired_state is State.AWAITING_ACTIVITY_DESCRIPTION
                    or not contains_time_marker(text)
                ):
                    return _error(ErrorKind.SESSION_EXPIRED)
                return self._handle_free_text(chat_id, text)

            if session.state is State.AWAITING_ACTIVITY_DESCRIPTION:
                return self._handle_description(chat_id, session, text)

            # A new time-marked request while a prompt is open replaces it
            if contains_time_marker(text):
                self._sessions.clear(chat_id)
                return self._handle_free_text(chat_id, text)

            return _error(ErrorKind.UNKNOWN_COMMAND)

    def handle_selection(self, chat_id: int, token: str | int) -> ServiceResponse:
        """A person was picked from a selection prompt."""
        with self._sessions.lock(chat_id):
            session = self._sessions.get(chat_id)
            if session is None:
                self._sessions.pop_expired(chat_id)
                return _error(ErrorKind.SESSION_EXPIRED)

            try:
                person_id = int(token)
            except (TypeError, ValueError):
                return _error(ErrorKind.PERSON_NOT_FOUND)

            if session.state not in (
                State.AWAITING_LEAVE_SELECTION,
                State.AWAITING_ACTIVITY_PERSON_SELECTION,
                State.AWAITING_DISAMBIGUATION,
            ):
                self._sessions.clear(chat_id)
                return _error(ErrorKind.SESSION_EXPIRED)

            if person_id not in session.candidates:
                return _error(ErrorKind.PERSON_NOT_FOUND)

            try:
                person = self._people.get_person(person_id)
            except StorageError as exc:
                logger.error("Person lookup failed: %s", exc)
                self._sessions.clear(chat_id)
                return _error(ErrorKind.STORAGE)
            if person is None:
                self._sessions.clear(chat_id)
                return _error(ErrorKind.PERSON_NOT_FOUND)

            if session.state is State.AWAITING_LEAVE_SELECTION:
                return self._commit_or_confirm(chat_id, person, PendingLeave(time=self._clock()))

            if session.state is State.AWAITING_ACTIVITY_PERSON_SELECTION:
                self._sessions.put(chat_id, Session(
                    state=State.AWAITING_ACTIVITY_DESCRIPTION,
                    pending=PendingActivity(time=self._clock()),
                    person_id=person.id,
                ))
                return ServiceResponse(
                    kind=ResponseKind.TEXT_PROMPT,
                    message=f"\U0001f4dd Describe the unplanned activity of *{person.short_name}*:",
                )

            if session.pending is None:
                self._sessions.clear(chat_id)
                return _error(ErrorKind.SESSION_EXPIRED)
            return self._commit_or_confirm(chat_id, person, session.pending)

    def handle_confirmation(self, chat_id: int, confirmed: bool) -> ServiceResponse:
        """Yes/no answer to an overwrite confirmation."""
        with self._sessions.lock(chat_id):
            session = self._sessions.get(chat_id)
            self._sessions.clear(chat_id)

            if (
                session is None
                or session.state is not State.AWAITING_CONFIRMATION
                or session.pending is None
                or session.person_id is None
            ):
                return _error(ErrorKind.SESSION_EXPIRED)

            if not confirmed:
                return ServiceResponse(kind=ResponseKind.CANCELLED, message="❌ Action cancelled.")

            try:
                person = self._people.get_person(session.person_id)
            except StorageError as exc:
                logger.error("Person lookup failed: %s", exc)
                return _error(ErrorKind.STORAGE)
            if person is None:
                return _error(ErrorKind.PERSON_NOT_FOUND)
            return self._commit(chat_id, person, session.pending)

    def purge_expired_sessions(self) -> int:
        return self._sessions.purge_expired()

    # ------------------------------------------------------------------
    # Free text and description input
    # ------------------------------------------------------------------

    def _handle_free_text(self, chat_id: int, text: str) -> ServiceResponse:
        """Idle + text with a time marker → search and commit in one step.

        Text before and after the marker → activity (surname, description).
        Otherwise → leave, keyed on everything but the marker.
        """
        try:
            expr = parse_time_expression(text, now=self._clock())
        except NoTimeFound:
            return _error(ErrorKind.NO_TIME_FOUND)
        except InvalidTimeValue as exc:
            return _error(ErrorKind.INVALID_TIME_VALUE, f"{exc}. Use HH:MM.")
        except EmptySearchTerm:
            return _error(ErrorKind.EMPTY_SEARCH_TERM)

        pending: PendingAction
        if expr.before and expr.after:
            search_key = expr.before
            pending = PendingActivity(
                time=expr.time, description=expr.after[:DESCRIPTION_MAX_LENGTH],
            )
        else:
            search_key = expr.search_key
            pending = PendingLeave(time=expr.time)

        logger.info("Free-text %s for '%s' at %s%s",
                    "activity" if isinstance(pending, PendingActivity) else "leave",
                    search_key, expr.time.strftime("%H:%M"),
                    " (now)" if expr.is_now else "")

        try:
            people = self._search_people(search_key)
        except EmptySearchTerm:
            return _error(ErrorKind.EMPTY_SEARCH_TERM)
        except StorageError as exc:
            logger.error("Person search failed: %s", exc)
            return _error(ErrorKind.STORAGE)

        if not people:
            return _error(ErrorKind.PERSON_NOT_FOUND)

        if len(people) == 1:
            return self._commit_or_confirm(chat_id, people[0], pending)

        self._sessions.put(chat_id, Session(
            state=State.AWAITING_DISAMBIGUATION,
            pending=pending,
            candidates=[p.id for p in people],
        ))
        return SelectionPromptResponse(
            kind=ResponseKind.SELECTION_PROMPT,
            message="Several people match. Please choose:",
            choices=_person_choices(people),
        )

    def _handle_description(self, chat_id: int, session: Session, text: str) -> ServiceResponse:
        if session.person_id is None or not isinstance(session.pending, PendingActivity):
            self._sessions.clear(chat_id)
            return _error(ErrorKind.SESSION_EXPIRED)

        description = text.strip()
        if not description:
            return _error(ErrorKind.EMPTY_DESCRIPTION)

        try:
            person = self._people.get_person(session.person_id)
        except StorageError as exc:
            logger.error("Person lookup failed: %s", exc)
            self._sessions.clear(chat_id)
            return _error(ErrorKind.STORAGE)
        if person is None:
            self._sessions.clear(chat_id)
            return _error(ErrorKind.PERSON_NOT_FOUND)

        pending = replace(session.pending, description=description[:DESCRIPTION_MAX_LENGTH])
        return self._commit_or_confirm(chat_id, person, pending)

    def _search_people(self, search_key: str) -> list[Person]:
        """Exact single-term or full-name match first, substring match as fallback."""
        surname, given_name = split_search_key(search_key)
        if given_name is None:
            people = self._people.search_single_term(surname)
        else:
            people = self._people.search_full_name(surname, given_name)
        if not people:
            people = self._people.search_partial(surname, given_name)
        return people

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _commit_or_confirm(
        self, chat_id: int, person: Person, pending: PendingAction,
    ) -> ServiceResponse:
        """Commit, unless that would replace today's record and confirmation is on."""
        if self._confirm_overwrites:
            try:
                existing = self._status.existing_for_day(person.id, pending.time.date())
            except StorageError as exc:
                logger.error("Existing record lookup failed: %s", exc)
                self._sessions.clear(chat_id)
                return _error(ErrorKind.STORAGE)

            if existing is not None:
                self._sessions.put(chat_id, Session(
                    state=State.AWAITING_CONFIRMATION,
                    pending=pending,
                    person_id=person.id,
                ))
                return ConfirmationPromptResponse(
                    kind=ResponseKind.CONFIRMATION_PROMPT,
                    message=(
                        f"⚠️ *{person.short_name}* already has a record for today: "
                        f"{_describe_record(existing)}.\n"
                        f"Replace it with: {_describe_pending(pending)}?"
                    ),
                    choices=[Choice("Yes, replace", "yes"), Choice("No", "no")],
                )

        return self._commit(chat_id, person, pending)

    def _commit(self, chat_id: int, person: Person, pending: PendingAction) -> ServiceResponse:
        self._sessions.clear(chat_id)
        try:
            if isinstance(pending, PendingLeave):
                record = self._status.upsert_leave(person.id, pending.time)
                message = f"✅ *{person.short_name}* left at {record.time:%H:%M}"
            else:
                record = self._status.upsert_activity(person.id, pending.time, pending.description)
                message = (
                    f"✅ Activity recorded for *{person.short_name}* "
                    f"at {record.time:%H:%M}: {record.description}"
                )
        except StorageError as exc:
            logger.error("Commit for person #%d failed: %s", person.id, exc)
            return _error(ErrorKind.STORAGE)

        return SuccessResponse(kind=ResponseKind.SUCCESS, message=message, record=record)

    # ------------------------------------------------------------------
    # Public: read-only views
    # ------------------------------------------------------------------

    def status_board(self) -> ServiceResponse:
        """Everyone's status for today; an activity outranks a leave."""
        today = self._clock().date()
        try:
            people = self._people.list_all()
            leaves = self._status.today_leaves(today)
            activities = self._status.today_activities(today)
        except StorageError as exc:
            logger.error("Status board failed: %s", exc)
            return _error(ErrorKind.STORAGE)

        rows: list[StatusRow] = []
        lines = ["\U0001f4ca *Status for today:*\n"]
        for person in people:
            if person.id in activities:
                act = activities[person.id]
                row = StatusRow(person, "activity", act.time, act.description)
                short = act.description
                if len(short) > _BOARD_DESCRIPTION_LIMIT:
                    short = short[: _BOARD_DESCRIPTION_LIMIT - 3] + "..."
                status = f"\U0001f4cb Activity ({act.time:%H:%M}) - {short}"
            elif person.id in leaves:
                row = StatusRow(person, "left", leaves[person.id])
                status = f"\U0001f6aa Left at {leaves[person.id]:%H:%M}"
            else:
                row = StatusRow(person, "present")
                status = "\U0001f4cd Present"
            rows.append(row)
            lines.append(f"*{person.full_name}* - {status}")

        left = sum(1 for r in rows if r.status == "left")
        busy = sum(1 for r in rows if r.status == "activity")
        lines.append(
            f"\n\U0001f4c8 *Totals:* all {len(rows)}, present {len(rows) - left - busy}, "
            f"left {left}, activity {busy}"
        )
        return StatusBoardResponse(
            kind=ResponseKind.STATUS_BOARD, message="\n".join(lines), rows=rows,
        )

    def statistics(self, period: str) -> ServiceResponse:
        """Leaves and activities of one day given as today/yesterday/a date."""
        try:
            day = parse_date_argument(period, today=self._clock().date())
        except ValueError:
            return _error(ErrorKind.INVALID_DATE)

        try:
            leaves = self._status.leaves_on(day)
            activities = self._status.activities_on(day)
        except StorageError as exc:
            logger.error("Statistics for %s failed: %s", day, exc)
            return _error(ErrorKind.STORAGE)

        lines = [f"\U0001f4c8 *Statistics for {day:%d.%m.%Y}:*\n"]
        if not leaves and not activities:
            lines.append("No records for this day.")
        for entry in leaves:
            lines.append(f"*{entry.person.full_name}* - left at {entry.time:%H:%M}")
        if activities:
            lines.append("\n*Unplanned activities:*")
            for act in activities:
                lines.append(f"*{act.person.full_name}* - {act.time:%H:%M} {act.description}")

        return StatisticsResponse(
            kind=ResponseKind.STATISTICS, message="\n".join(lines), day=day,
        )

    # ------------------------------------------------------------------
    # Public: privileged operations
    # ------------------------------------------------------------------

    def export_statistics(
        self, identity: int, directory: str | Path | None = None,
    ) -> ServiceResponse:
        """Write all records to a workbook. Admins only."""
        if not self.is_privileged(identity):
            logger.warning("Export refused for user_id=%s", identity)
            return _error(ErrorKind.NOT_PRIVILEGED)

        try:
            rows = self._status.export_rows()
            path = write_statistics(rows, directory)
        except StorageError as exc:
            logger.error("Export failed: %s", exc)
            return _error(ErrorKind.STORAGE)
        except OSError as exc:
            logger.error("Writing export workbook failed: %s", exc)
            return _error(ErrorKind.STORAGE, "Couldn't create the export file. Please try again.")

        return ExportResponse(
            kind=ResponseKind.EXPORT,
            message="\U0001f4ca Full statistics",
            path=path,
            row_count=len(rows),
        )

    def import_roster(self, identity: int, path: str | Path) -> ServiceResponse:
        """Add the people of a roster workbook, skipping those already known. Admins only."""
        if not self.is_privileged(identity):
            logger.warning("Roster import refused for user_id=%s", identity)
            return _error(ErrorKind.NOT_PRIVILEGED)

        try:
            rows = read_roster(path)
        except RosterFileError as exc:
            logger.error("Roster import failed: %s", exc)
            return _error(ErrorKind.INVALID_FILE)

        added: list[Person] = []
        try:
            for row in rows:
                person = self._people.add_person(row.last_name, row.first_name, row.middle_name)
                if person is not None:
                    added.append(person)
            roster = self._people.list_all()
        except StorageError as exc:
            logger.error("Roster import failed after %d new people: %s", len(added), exc)
            return _error(ErrorKind.STORAGE)

        logger.info("Roster import: %d new, %d total", len(added), len(roster))

        if added:
            message = _numbered(f"✅ Added {len(added)} new people:\n", added)
        else:
            message = "✅ No new people found. Everyone is already on the roster."

        return ImportReportResponse(
            kind=ResponseKind.IMPORT_REPORT,
            message=message,
            added=added,
            roster_message=_numbered(f"\U0001f4cb Total people: {len(roster)}\n", roster),
        )


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _numbered(header: str, people: list[Person]) -> str:
    message = header + "\n"
    for i, person in enumerate(people, start=1):
        message += f"{i}. {person.full_name}\n"
        if len(message) > _MESSAGE_SOFT_LIMIT and i < len(people):
            message += "\n... and others"
            break
    return message.rstrip("\n")


def _describe_record(record: LeaveRecord | ActivityRecord) -> str:
    if isinstance(record, ActivityRecord):
        return f"activity at {record.time:%H:%M} ({record.description})"
    return f"left at {record.time:%H:%M}"


def _describe_pending(pending: PendingAction) -> str:
    if isinstance(pending, PendingActivity):
        return f"activity at {pending.time:%H:%M} ({pending.description})"
    return f"left at {pending.time:%H:%M}"
