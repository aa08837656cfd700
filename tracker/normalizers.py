from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Iterable

from openpyxl.utils.datetime import from_excel

DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%Y/%m/%d",
    "%d.%m.%Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
)
TRUE_TOKENS = {"yes", "ya", "y", "true", "1"}
FALSE_TOKENS = {"no", "n", "false", "0"}

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_SERIAL = re.compile(r"\d+(?:\.\d+)?")


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    text_value = str(value).replace("\xa0", " ").strip()
    return text_value


def clean_code(value: Any) -> str:
    raw = clean_text(value)
    if not raw:
        return ""
    if raw.endswith(".0") and raw.replace(".", "", 1).isdigit():
        return raw[:-2]
    return raw


def normalize_header(value: Any) -> str:
    """Lowercase, trim and collapse every non-alphanumeric run to one underscore."""
    lowered = clean_text(value).lower()
    return _NON_ALNUM.sub("_", lowered).strip("_")


def _token(value: Any) -> str:
    return normalize_header(value).replace("_", "")


def _serial_to_iso(serial: float) -> str | None:
    try:
        converted = from_excel(serial)
    except (OverflowError, TypeError, ValueError):
        return None
    if isinstance(converted, datetime):
        return converted.date().isoformat()
    return None


def normalize_date(value: Any) -> str | None:
    """Return ``value`` as ``YYYY-MM-DD``.

    Accepts date objects, spreadsheet date serials (as numbers or as the digits
    a CSV export writes) and free text. Text that matches none of
    ``DATE_FORMATS`` comes back trimmed but otherwise untouched, so this never
    raises.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _serial_to_iso(value) or clean_text(value) or None

    raw = clean_text(value)
    if not raw:
        return None
    if _SERIAL.fullmatch(raw):
        return _serial_to_iso(float(raw)) or raw
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date().isoformat()
        except ValueError:
            continue
    return raw


def pick_option(value: Any, options: Iterable[str]) -> str | None:
    wanted = _token(value)
    if not wanted:
        return None
    for option in options:
        if _token(option) == wanted:
            return option
    return None


def parse_boolean(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
        return None
    token = _token(value)
    if token in TRUE_TOKENS:
        return True
    if token in FALSE_TOKENS:
        return False
    return None
