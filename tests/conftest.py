import csv
import io
from io import BytesIO
from pathlib import Path
import sys

import pytest
from openpyxl import Workbook

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from tracker.store import StoreError


class FakeStore:
    """In-memory record store; names listed in ``fail_*`` make that create fail."""

    def __init__(self, fail_institutions=(), fail_contacts=()):
        self.fail_institutions = set(fail_institutions)
        self.fail_contacts = set(fail_contacts)
        self.institutions = []
        self.contacts = []
        self.calls = []

    def create_institution(self, draft):
        self.calls.append(("institution", draft.name))
        if draft.name in self.fail_institutions:
            raise StoreError("duplicate key value violates unique constraint")
        self.institutions.append(draft)
        return f"inst-{len(self.institutions)}"

    def create_contact(self, draft, institution_id):
        self.calls.append(("contact", draft.name))
        if draft.name in self.fail_contacts:
            raise StoreError("email is invalid")
        self.contacts.append((institution_id, draft))
        return f"contact-{len(self.contacts)}"


def build_csv_bytes(rows) -> bytes:
    buffer = io.StringIO(newline="")
    csv.writer(buffer).writerows(rows)
    return buffer.getvalue().encode("utf-8")


def build_xlsx_bytes(rows, *, number_formats=None) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Institutions"
    for row in rows:
        sheet.append(list(row))
    for coordinate, number_format in (number_formats or {}).items():
        sheet[coordinate].number_format = number_format
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


@pytest.fixture()
def fake_store():
    return FakeStore()
