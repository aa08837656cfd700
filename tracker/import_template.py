from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from io import BytesIO

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from tracker.import_fields import DEFAULT_SCHEMA, ImportSchema

TEMPLATE_BASENAME = "institutions-import-template"
TEMPLATE_SHEET_TITLE = "Institutions"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_MEDIA_TYPE = "text/csv"
TEXT_COLUMNS = ("contact_phone", "institution_code", "national_number")
TEXT_FORMAT_ROWS = 500


@dataclass(frozen=True)
class TemplateFile:
    content: bytes
    filename: str
    media_type: str


def _xlsx_template(schema: ImportSchema) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = TEMPLATE_SHEET_TITLE
    sheet.append(list(schema.template_headers))
    sheet.append(list(schema.template_sample))
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for col_idx, header in enumerate(schema.template_headers, start=1):
        sheet.column_dimensions[get_column_letter(col_idx)].width = max(14, len(header) + 2)
        if header in TEXT_COLUMNS:
            # Text cells keep leading zeros on the first TEXT_FORMAT_ROWS data rows.
            for row_idx in range(2, TEXT_FORMAT_ROWS + 2):
                sheet.cell(row=row_idx, column=col_idx).number_format = "@"

    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _csv_template(schema: ImportSchema) -> bytes:
    buffer = io.StringIO(newline="")
    writer = csv.writer(buffer)
    writer.writerow(schema.template_headers)
    writer.writerow(schema.template_sample)
    return buffer.getvalue().encode("utf-8")


def build_template(fmt: str = "xlsx", schema: ImportSchema = DEFAULT_SCHEMA) -> TemplateFile:
    resolved = (fmt or "xlsx").strip().lower()
    if resolved == "xlsx":
        return TemplateFile(_xlsx_template(schema), f"{TEMPLATE_BASENAME}.xlsx", XLSX_MEDIA_TYPE)
    if resolved == "csv":
        return TemplateFile(_csv_template(schema), f"{TEMPLATE_BASENAME}.csv", CSV_MEDIA_TYPE)
    raise ValueError(f"Invalid template format '{fmt}'. Allowed: csv, xlsx.")
