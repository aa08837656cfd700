from __future__ import annotations

import csv
import io
import logging
from io import BytesIO
from typing import Any

from fastapi import HTTPException
from openpyxl import load_workbook

from tracker.normalizers import clean_text

logger = logging.getLogger(__name__)

WORKBOOK_EXTENSIONS = (".xlsx",)
TEXT_EXTENSIONS = (".csv",)
ACCEPTED_EXTENSIONS = WORKBOOK_EXTENSIONS + TEXT_EXTENSIONS


class ImportFileError(HTTPException):
    """File-level failure: the batch never starts."""

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=400, detail=detail)


class UnsupportedFileType(ImportFileError):
    pass


class UnreadableFile(ImportFileError):
    pass


def _read_workbook(content: bytes) -> list[list[Any]]:
    try:
        workbook = load_workbook(BytesIO(content), data_only=True, read_only=False)
    except Exception as exc:
        raise UnreadableFile(f"Could not read workbook: {exc}") from exc

    if not workbook.sheetnames:
        raise UnreadableFile("Workbook has no sheets.")
    sheet = workbook[workbook.sheetnames[0]]
    # The reader already returns date-formatted cells as datetime objects.
    return [list(row) for row in sheet.iter_rows(values_only=True)]


def _read_delimited(content: bytes) -> list[list[Any]]:
    try:
        decoded = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.info("CSV upload is not UTF-8; decoding as Latin-1")
        decoded = content.decode("latin-1")
    try:
        return [list(row) for row in csv.reader(io.StringIO(decoded, newline=""))]
    except csv.Error as exc:
        raise UnreadableFile(f"Could not read CSV file: {exc}") from exc


def _is_blank_row(row: list[Any]) -> bool:
    return not any(clean_text(v) for v in row)


def check_extension(filename: str) -> str:
    lowered = clean_text(filename).lower()
    for extension in ACCEPTED_EXTENSIONS:
        if lowered.endswith(extension):
            return extension
    allowed = ", ".join(ACCEPTED_EXTENSIONS)
    raise UnsupportedFileType(f"Unsupported file type. Upload one of: {allowed}.")


def header_index(rows: list[list[Any]]) -> int:
    """Index of the header row: the first row with any content.

    Blank rows above it stay in the grid so indexes keep matching file rows.
    """
    for index, row in enumerate(rows):
        if not _is_blank_row(row):
            return index
    return len(rows)


def decode_tabular(content: bytes, filename: str) -> list[list[Any]]:
    """Return the first sheet of ``content`` as a rectangular grid.

    ``grid[i]`` is file row ``i + 1``; the header is ``grid[header_index(grid)]``.
    """
    extension = check_extension(filename)
    if not content:
        raise UnreadableFile("Uploaded file is empty.")

    if extension in WORKBOOK_EXTENSIONS:
        rows = _read_workbook(content)
    else:
        rows = _read_delimited(content)

    while rows and _is_blank_row(rows[-1]):
        rows.pop()
    if header_index(rows) >= len(rows) - 1:
        raise UnreadableFile("File contains no data rows.")

    width = max(len(row) for row in rows)
    return [row + [None] * (width - len(row)) for row in rows]
