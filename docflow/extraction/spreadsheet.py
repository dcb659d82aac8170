"""
Spreadsheet extraction.

Template fields point at cells (``CellRef``); values are read with
openpyxl using cached formula results. Unless a field names a sheet,
the last sheet of the workbook is read, since multi-sheet exports put
the current page last.
"""

from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from openpyxl import load_workbook
from openpyxl.utils import column_index_from_string
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from docflow.extraction.fields import map_to_standard_name
from docflow.extraction.transforms import apply_transforms
from docflow.models import CellRef, Template
from docflow.utils.errors import DocumentError, ExtractionError
from docflow.utils.logger import get_logger

logger = get_logger(__name__)

PROCESSING_METHOD = "local_spreadsheet"


def cell_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    text = str(value).strip()
    return text or None


def open_workbook(path: Union[str, Path]) -> Workbook:
    try:
        return load_workbook(filename=str(path), data_only=True, read_only=False)
    except (InvalidFileException, OSError, KeyError, ValueError) as e:
        raise DocumentError(f"Cannot open spreadsheet {Path(path).name}: {e}") from e


def pick_sheet(workbook: Workbook, ref: CellRef) -> Worksheet:
    sheets = workbook.worksheets
    if not sheets:
        raise ExtractionError("Spreadsheet has no sheets")
    if ref.sheet is not None and ref.sheet < len(sheets):
        return sheets[ref.sheet]
    return sheets[-1]


def read_cell(sheet: Worksheet, ref: CellRef) -> Optional[str]:
    """A single cell, or a range joined with tabs across and newlines down."""
    column = column_index_from_string(ref.column)
    if not ref.is_range:
        return cell_text(sheet.cell(row=ref.row, column=column).value)

    end_column = column_index_from_string(ref.end_column)
    rows: List[str] = []
    for row in sheet.iter_rows(
        min_row=ref.row, max_row=ref.end_row,
        min_col=column, max_col=end_column,
        values_only=True,
    ):
        values = [t for t in (cell_text(v) for v in row) if t is not None]
        if values:
            rows.append("\t".join(values))
    return "\n".join(rows) or None


def workbook_text(workbook: Workbook) -> str:
    """Every non-empty row of every sheet, cells separated by spaces."""
    lines = []
    for sheet in workbook.worksheets:
        for row in sheet.iter_rows(values_only=True):
            values = [t for t in (cell_text(v) for v in row) if t is not None]
            if values:
                lines.append(" ".join(values))
    return "\n".join(lines)


def read_spreadsheet_text(path: Union[str, Path]) -> str:
    workbook = open_workbook(path)
    try:
        return workbook_text(workbook)
    finally:
        workbook.close()


class SpreadsheetExtractor:
    """Applies a template's cell references to a workbook."""

    def extract(self, path: Union[str, Path], template: Template) -> Dict[str, Any]:
        cells = {name: d for name, d in template.fields.items() if d.cell is not None}
        if not cells:
            raise ExtractionError(
                "Template has no spreadsheet cell mappings",
                context={"template_id": template.id},
            )

        workbook = open_workbook(path)
        try:
            fields: Dict[str, Any] = {}
            for name, definition in cells.items():
                sheet = pick_sheet(workbook, definition.cell)
                raw = read_cell(sheet, definition.cell)
                key = map_to_standard_name(name, template.code) or name
                fields[key] = apply_transforms(raw, definition.transform)
        finally:
            workbook.close()

        logger.debug("spreadsheet_fields_extracted", template_id=template.id, fields=len(fields))
        return fields
