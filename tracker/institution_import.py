"""Bulk import of institutions, each with an optional contact person.

Rows are processed one at a time in file order. Every data row ends in exactly
one outcome:

* ``Created``: the institution (and its contact, if the row had one) exists.
* ``PartialFailure``: the institution exists, its contact does not.
* ``Failed``: nothing was created for the row.

Row numbers are 1-based file rows: the header is row 1 and the first data row
is row 2, unless blank rows sit above the header, which shifts both down. Only
file-level problems (see ``tracker.tabular``) raise; everything row-scoped is
recorded on the ``ImportReport`` and the batch carries on. A created
institution is never rolled back when its contact fails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union

from tracker.import_fields import DEFAULT_SCHEMA, HeaderMap, ImportSchema, resolve_headers
from tracker.normalizers import clean_text
from tracker.row_validator import RowRejected, validate_row
from tracker.store import RecordStore, StoreError
from tracker.tabular import decode_tabular, header_index

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Created:
    row: int
    institution_id: Any
    institution_name: str
    contact_created: bool = False


@dataclass(frozen=True)
class PartialFailure:
    row: int
    institution_id: Any
    institution_name: str
    message: str


@dataclass(frozen=True)
class Failed:
    row: int
    message: str
    institution_name: str | None = None


RowOutcome = Union[Created, PartialFailure, Failed]


@dataclass(frozen=True)
class RowError:
    row: int
    message: str
    institution_name: str | None = None
    kind: str = "failed"

    def describe(self) -> str:
        label = f"Row {self.row}"
        if self.institution_name:
            label = f"{label} ({self.institution_name})"
        return f"{label}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"row": self.row}
        if self.institution_name:
            payload["institutionName"] = self.institution_name
        payload["message"] = self.message
        payload["kind"] = self.kind
        return payload


@dataclass
class ImportReport:
    filename: str = ""
    dry_run: bool = False
    institutions_created: int = 0
    contacts_created: int = 0
    errors: list[RowError] = field(default_factory=list)
    outcomes: list[RowOutcome] = field(default_factory=list)

    @property
    def rows_processed(self) -> int:
        return len(self.outcomes)

    @property
    def rows_failed(self) -> int:
        return sum(1 for o in self.outcomes if isinstance(o, Failed))

    @property
    def partial_failures(self) -> int:
        return sum(1 for o in self.outcomes if isinstance(o, PartialFailure))

    def record(self, outcome: RowOutcome) -> None:
        self.outcomes.append(outcome)
        if isinstance(outcome, Created):
            self.institutions_created += 1
            if outcome.contact_created:
                self.contacts_created += 1
        elif isinstance(outcome, PartialFailure):
            self.institutions_created += 1
            self.errors.append(
                RowError(outcome.row, outcome.message, outcome.institution_name, kind="partial")
            )
        else:
            self.errors.append(RowError(outcome.row, outcome.message, outcome.institution_name))

    def to_dict(self) -> dict[str, Any]:
        return {
            "institutionsCreated": self.institutions_created,
            "contactsCreated": self.contacts_created,
            "errors": [e.to_dict() for e in self.errors],
            "rowsProcessed": self.rows_processed,
            "dryRun": self.dry_run,
        }


def _is_row_populated(row: list[Any]) -> bool:
    return any(clean_text(v) for v in row)


def _import_row(
    store: RecordStore,
    row_num: int,
    row: list[Any],
    header_map: HeaderMap,
    schema: ImportSchema,
    dry_run: bool,
) -> RowOutcome:
    validated = validate_row(row, header_map, schema)
    if isinstance(validated, RowRejected):
        logger.info("Row %s rejected: %s", row_num, validated.message)
        return Failed(row_num, validated.message, validated.institution_name)

    name = validated.institution.name
    if dry_run:
        institution_id = None
    else:
        try:
            institution_id = store.create_institution(validated.institution)
        except StoreError as exc:
            logger.warning("Row %s: institution '%s' was not created: %s", row_num, name, exc)
            return Failed(row_num, f"institution creation failed: {exc}", name)

    if validated.contact_error:
        return PartialFailure(row_num, institution_id, name, validated.contact_error)
    if validated.contact is None:
        return Created(row_num, institution_id, name)

    if not dry_run:
        try:
            store.create_contact(validated.contact, institution_id)
        except StoreError as exc:
            logger.warning("Row %s: contact for institution %s was not created: %s", row_num, institution_id, exc)
            return PartialFailure(
                row_num,
                institution_id,
                name,
                f"institution created, but contact creation failed: {exc}",
            )
    return Created(row_num, institution_id, name, contact_created=True)


def import_institution_file(
    store: RecordStore,
    content: bytes,
    filename: str,
    *,
    schema: ImportSchema = DEFAULT_SCHEMA,
    dry_run: bool = False,
) -> ImportReport:
    grid = decode_tabular(content, filename)
    header_at = header_index(grid)
    header_map = resolve_headers(grid[header_at], schema)
    missing = [name for name in schema.template_headers if name not in header_map]
    if missing:
        logger.debug("Import file %s has no column for: %s", filename, ", ".join(missing))

    report = ImportReport(filename=filename, dry_run=dry_run)
    logger.info(
        "Importing institutions from %s (%s data rows, dry_run=%s)",
        filename,
        len(grid) - header_at - 1,
        dry_run,
    )
    for row_num, row in enumerate(grid[header_at + 1 :], start=header_at + 2):
        if not _is_row_populated(row):
            continue
        report.record(_import_row(store, row_num, row, header_map, schema, dry_run))

    logger.info(
        "Import of %s finished: %s institutions, %s contacts, %s errors",
        filename,
        report.institutions_created,
        report.contacts_created,
        len(report.errors),
    )
    return report
