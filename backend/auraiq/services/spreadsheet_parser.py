"""
Spreadsheet rendering for model context.

Converts an .xlsx workbook into plain text, one block per sheet:

    Sheet: <name>

    header,row
    1,2

Sheets longer than MAX_SPREADSHEET_ROWS are cut to their first rows and a note
with the full row count is appended, so one huge sheet cannot swamp the token
budget before truncation even runs.

Public API:
  render_workbook(file_content, max_rows) -> RenderedWorkbook
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time

from auraiq import config
from auraiq.errors import ExtractionError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class RenderedSheet:
    name: str
    total_rows: int                   # non-empty rows in the sheet
    rendered_rows: int                # rows included in ``text``
    text: str

    @property
    def truncated(self) -> bool:
        return self.rendered_rows < self.total_rows


@dataclass
class RenderedWorkbook:
    sheets: list[RenderedSheet] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(sheet.text for sheet in self.sheets).rstrip()


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _row_is_all_empty(row_cells) -> bool:
    """Return True if all cells in the row are None or empty string."""
    return all(
        cell is None or str(cell).strip() == ""
        for cell in row_cells
    )


def _cell_to_str(value) -> str:
    """Convert a cell value to its CSV representation."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)


def _rows_to_csv(rows: list[list]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    for row in rows:
        writer.writerow([_cell_to_str(cell) for cell in row])
    return buf.getvalue().rstrip("\n")


def _trim_trailing_empty_cells(row: tuple) -> list:
    cells = list(row)
    while cells and (cells[-1] is None or str(cells[-1]).strip() == ""):
        cells.pop()
    return cells


def render_sheet(name: str, rows: list[list], max_rows: int) -> RenderedSheet:
    """Render one sheet's non-empty rows, keeping at most ``max_rows``."""
    total_rows = len(rows)
    kept = rows[:max_rows]

    text = f"Sheet: {name}\n\n{_rows_to_csv(kept)}"
    if total_rows > max_rows:
        text += f"\n\n[... Showing first {max_rows} rows out of {total_rows} total rows]"
    text += "\n\n"

    return RenderedSheet(name=name, total_rows=total_rows, rendered_rows=len(kept), text=text)


# ---------------------------------------------------------------------------
# xlsx parsing
# ---------------------------------------------------------------------------

def render_workbook(file_content: bytes, max_rows: int = config.MAX_SPREADSHEET_ROWS) -> RenderedWorkbook:
    """
    Render every sheet of an xlsx workbook as text.

    Raises:
        ExtractionError: if the bytes are not a readable workbook
    """
    import openpyxl

    try:
        wb = openpyxl.load_workbook(
            io.BytesIO(file_content),
            read_only=True,
            data_only=True,
        )
    except Exception as e:
        raise ExtractionError(f"Could not parse xlsx file: {e}")

    rendered = RenderedWorkbook()
    try:
        for ws in wb.worksheets:
            rows = []
            for row in ws.iter_rows(values_only=True):
                if _row_is_all_empty(row):
                    continue
                rows.append(_trim_trailing_empty_cells(row))

            sheet = render_sheet(ws.title, rows, max_rows)
            if sheet.truncated:
                logger.info(
                    f"Sheet {ws.title!r} truncated to {sheet.rendered_rows} of {sheet.total_rows} rows"
                )
            rendered.sheets.append(sheet)
    finally:
        wb.close()

    return rendered
