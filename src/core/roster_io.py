"""
Team Presence Bot — Spreadsheet import/export.

Roster import reads the first sheet of an .xlsx workbook: a header row,
then one person per row as last name / first name / middle name.
Statistics export writes one row per (person, day) with a record.
"""

from __future__ import annotations

import logging
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Alignment, Font
from openpyxl.utils.exceptions import InvalidFileException

from src.data.models import ExportRow

logger = logging.getLogger(__name__)

SPREADSHEET_EXTENSIONS = (".xlsx", ".xlsm")

EXPORT_HEADERS = (
    "Date", "Last name", "First name", "Middle name",
    "Leave time", "Activity time", "Activity description",
)


class RosterFileError(Exception):
    """Raised when a roster workbook can't be opened or has no sheets."""


@dataclass(frozen=True)
class RosterRow:
    last_name: str
    first_name: str
    middle_name: str = ""


def is_spreadsheet(filename: str | None) -> bool:
    return bool(filename) and Path(filename).suffix.lower() in SPREADSHEET_EXTENSIONS


def _cell_text(value: object) -> str:
    return "" if value is None else str(value).strip()


def read_roster(path: str | Path) -> list[RosterRow]:
    """Read roster rows from the first sheet, skipping the header row.

    Rows with neither name are ignored; rows missing one of the two
    leading names are skipped with a warning.
    """
    try:
        wb = load_workbook(path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as exc:
        raise RosterFileError(f"Failed to open workbook: {exc}") from exc

    try:
        if not wb.worksheets:
            raise RosterFileError("No sheets found in workbook")
        sheet = wb.worksheets[0]

        rows: list[RosterRow] = []
        for index, values in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
            cells = [_cell_text(v) for v in (values or ())]
            cells += [""] * (3 - len(cells))
            last_name, first_name, middle_name = cells[:3]
            if not last_name and not first_name:
                continue
            if not last_name or not first_name:
                logger.warning("Skipping row %d: last and first name are required", index)
                continue
            rows.append(RosterRow(last_name, first_name, middle_name))
    finally:
        wb.close()

    logger.info("Read %d roster row(s) from %s", len(rows), path)
    return rows


def write_statistics(rows: list[ExportRow], directory: str | Path | None = None) -> Path:
    """Write the statistics workbook and return its path.

    The caller owns the file and should delete it once sent.
    """
    wb = Workbook()
    sheet = wb.active
    sheet.title = "Statistics"

    sheet.append(list(EXPORT_HEADERS))
    for cell in sheet[1]:
        cell.font = Font(bold=True)

    for row in rows:
        sheet.append([
            row.day.strftime("%d.%m.%Y"),
            row.person.last_name,
            row.person.first_name,
            row.person.middle_name,
            row.leave_time.strftime("%H:%M") if row.leave_time else "",
            row.activity_time.strftime("%H:%M") if row.activity_time else "",
            row.activity_description or "",
        ])

    widths = (12, 18, 16, 18, 11, 13, 60)
    for column, width in zip("ABCDEFG", widths):
        sheet.column_dimensions[column].width = width
    for (cell,) in sheet.iter_rows(min_row=2, min_col=7, max_col=7):
        cell.alignment = Alignment(wrap_text=True, vertical="top")

    target_dir = Path(directory) if directory else Path(tempfile.gettempdir())
    target_dir.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        prefix=f"statistics_export_{datetime.now():%Y%m%d_%H%M%S}_",
        suffix=".xlsx",
        dir=target_dir,
        delete=False,
    ) as tmp:
        path = Path(tmp.name)
    wb.save(path)

    logger.info("Statistics exported: %d row(s) to %s", len(rows), path)
    return path
