"""Canonical columns for the institution bulk import.

``ImportSchema.fields`` is the single source of truth for both the header
resolver and the downloadable template: the template header of every field is
its ``name``, which is also the first alias the resolver accepts. Adding,
renaming or re-aliasing a column therefore only ever happens here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Sequence

from tracker.normalizers import normalize_header

INSTITUTION_TYPES = ("Yayasan", "CSR", "Pemerintah", "Sekolah", "Other")
INSTITUTION_STATUSES = ("New", "Existing Customer", "Blacklist")
CONTACT_STATUSES = ("Active", "Non Active")


@dataclass(frozen=True)
class CanonicalField:
    name: str
    aliases: tuple[str, ...] = ()
    sample: str = ""
    contact: bool = False

    def headers(self) -> tuple[str, ...]:
        return (self.name, *self.aliases)


CANONICAL_FIELDS: tuple[CanonicalField, ...] = (
    CanonicalField("institution_name", ("name", "institution"), "PT Contoh Sukses"),
    CanonicalField("institution_code", ("code",), "INST-001"),
    CanonicalField("national_number", ("npwp", "npsn", "nib"), "123456789"),
    CanonicalField("type", (), "CSR"),
    CanonicalField("status", (), "New"),
    CanonicalField("city", (), "Jakarta"),
    CanonicalField("address", (), "Jl. Sudirman No. 1"),
    CanonicalField("website", ("url",), "https://contoh.co.id"),
    CanonicalField("first_buy_date", ("first_buy", "first_buying_date"), "2025-01-31"),
    CanonicalField("contact_name", ("contact", "pic_name"), "Budi Santoso", contact=True),
    CanonicalField("contact_position", ("position", "job_title"), "Head of CSR", contact=True),
    CanonicalField("contact_phone", ("phone", "contact_phone_number"), "08123456789", contact=True),
    CanonicalField("contact_email", ("contact_mail",), "budi@contoh.co.id", contact=True),
    CanonicalField("contact_status", (), "Active", contact=True),
    CanonicalField("contact_is_primary", ("is_primary", "primary"), "yes", contact=True),
)


@dataclass(frozen=True)
class ImportSchema:
    fields: tuple[CanonicalField, ...] = CANONICAL_FIELDS
    institution_types: tuple[str, ...] = INSTITUTION_TYPES
    institution_statuses: tuple[str, ...] = INSTITUTION_STATUSES
    contact_statuses: tuple[str, ...] = CONTACT_STATUSES

    def __post_init__(self) -> None:
        owners: dict[str, str] = {}
        for column in self.fields:
            for alias in column.headers():
                key = normalize_header(alias)
                owner = owners.setdefault(key, column.name)
                if owner != column.name:
                    raise ValueError(f"Header alias '{alias}' is claimed by both '{owner}' and '{column.name}'.")

    @property
    def template_headers(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.fields)

    @property
    def template_sample(self) -> tuple[str, ...]:
        return tuple(column.sample for column in self.fields)

    @property
    def contact_fields(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.fields if column.contact)


DEFAULT_SCHEMA = ImportSchema()


@dataclass(frozen=True)
class HeaderMap:
    """Canonical field name -> column index for one uploaded file."""

    columns: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", MappingProxyType(dict(self.columns)))

    def __contains__(self, field_name: str) -> bool:
        return field_name in self.columns

    def value(self, row: Sequence[Any], field_name: str) -> Any:
        index = self.columns.get(field_name)
        if index is None or index >= len(row):
            return None
        return row[index]


def resolve_headers(header_row: Sequence[Any], schema: ImportSchema = DEFAULT_SCHEMA) -> HeaderMap:
    positions: dict[str, int] = {}
    for index, cell in enumerate(header_row):
        header = normalize_header(cell)
        if header:
            # A repeated header resolves to its right-most column.
            positions[header] = index

    columns: dict[str, int] = {}
    for column in schema.fields:
        for alias in column.headers():
            index = positions.get(normalize_header(alias))
            if index is not None:
                columns[column.name] = index
                break
    return HeaderMap(columns)
