from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Sequence

from tracker.import_fields import DEFAULT_SCHEMA, HeaderMap, ImportSchema
from tracker.normalizers import clean_code, clean_text, normalize_date, parse_boolean, pick_option

NAME_REQUIRED = "name required"
CONTACT_NAME_REQUIRED = "contact name required when other contact columns are filled"


@dataclass(frozen=True)
class InstitutionDraft:
    name: str
    code: str | None = None
    national_number: str | None = None
    type: str | None = None
    status: str | None = None
    city: str | None = None
    address: str | None = None
    website: str | None = None
    first_buy_date: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ContactDraft:
    name: str
    position: str | None = None
    phone: str | None = None
    email: str | None = None
    status: str | None = None
    is_primary: bool | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ValidatedRow:
    institution: InstitutionDraft
    contact: ContactDraft | None = None
    contact_error: str | None = None


@dataclass(frozen=True)
class RowRejected:
    message: str
    institution_name: str | None = None


def _optional(value: str) -> str | None:
    return value or None


def _build_contact(
    row: Sequence[Any], header_map: HeaderMap, schema: ImportSchema
) -> tuple[ContactDraft | None, str | None]:
    raw = {name: header_map.value(row, name) for name in schema.contact_fields}
    if not any(clean_text(v) for v in raw.values()):
        return None, None

    name = clean_text(raw.get("contact_name"))
    if not name:
        return None, CONTACT_NAME_REQUIRED

    status_text = clean_text(raw.get("contact_status"))
    status = pick_option(status_text, schema.contact_statuses) if status_text else None
    if status_text and status is None:
        return None, f'contact status not valid: "{status_text}"'

    contact = ContactDraft(
        name=name,
        position=_optional(clean_text(raw.get("contact_position"))),
        phone=_optional(clean_code(raw.get("contact_phone"))),
        email=_optional(clean_text(raw.get("contact_email"))),
        status=status,
        is_primary=parse_boolean(raw.get("contact_is_primary")),
    )
    return contact, None


def validate_row(
    row: Sequence[Any],
    header_map: HeaderMap,
    schema: ImportSchema = DEFAULT_SCHEMA,
) -> ValidatedRow | RowRejected:
    """Turn one raw row into drafts, or reject it before anything is persisted.

    Contact problems do not reject the row: they are carried on
    ``ValidatedRow.contact_error`` because the institution is still created and
    the row is reported as a partial success.
    """
    name = clean_text(header_map.value(row, "institution_name"))
    if not name:
        return RowRejected(NAME_REQUIRED)

    type_text = clean_text(header_map.value(row, "type"))
    institution_type = pick_option(type_text, schema.institution_types) if type_text else None
    if type_text and institution_type is None:
        return RowRejected(f'type not valid: "{type_text}"', name)

    status_text = clean_text(header_map.value(row, "status"))
    status = pick_option(status_text, schema.institution_statuses) if status_text else None
    if status_text and status is None:
        return RowRejected(f'status not valid: "{status_text}"', name)

    institution = InstitutionDraft(
        name=name,
        code=_optional(clean_code(header_map.value(row, "institution_code"))),
        national_number=_optional(clean_code(header_map.value(row, "national_number"))),
        type=institution_type,
        status=status,
        city=_optional(clean_text(header_map.value(row, "city"))),
        address=_optional(clean_text(header_map.value(row, "address"))),
        website=_optional(clean_text(header_map.value(row, "website"))),
        first_buy_date=normalize_date(header_map.value(row, "first_buy_date")),
    )
    contact, contact_error = _build_contact(row, header_map, schema)
    return ValidatedRow(institution=institution, contact=contact, contact_error=contact_error)
