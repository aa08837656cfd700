from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tracker.row_validator import ContactDraft, InstitutionDraft

logger = logging.getLogger(__name__)

COLLECTION_COLUMNS: dict[str, tuple[str, ...]] = {
    "institutions": (
        "name",
        "code",
        "national_number",
        "type",
        "status",
        "city",
        "address",
        "website",
        "first_buy_date",
    ),
    "contacts": (
        "institution_id",
        "name",
        "position",
        "phone",
        "email",
        "status",
        "is_primary",
    ),
}
LIST_LIMIT = 1000


class StoreError(RuntimeError):
    """A single create/query call against the record store failed."""


class RecordStore(Protocol):
    def create_institution(self, draft: InstitutionDraft) -> Any: ...

    def create_contact(self, draft: ContactDraft, institution_id: Any) -> Any: ...


def _columns_for(collection: str) -> tuple[str, ...]:
    try:
        return COLLECTION_COLUMNS[collection]
    except KeyError:
        raise StoreError(f"Unknown collection '{collection}'") from None


class SqlRecordStore:
    """Record store backed by the application database.

    Every create is committed on its own, so a failure only ever undoes the
    call that failed.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(self, collection: str, payload: Mapping[str, Any]) -> int:
        columns = [c for c in _columns_for(collection) if c in payload]
        if not columns:
            raise StoreError(f"Nothing to insert into {collection}")
        column_sql = ", ".join(columns)
        value_sql = ", ".join(f":{c}" for c in columns)
        try:
            record_id = self.db.execute(
                text(f"INSERT INTO {collection} ({column_sql}) VALUES ({value_sql}) RETURNING id"),
                {c: payload[c] for c in columns},
            ).scalar_one()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Insert into %s failed: %s", collection, exc)
            raise StoreError(str(getattr(exc, "orig", None) or exc)) from exc
        return int(record_id)

    def list(
        self,
        collection: str,
        *,
        filters: Mapping[str, Any] | None = None,
        limit: int = LIST_LIMIT,
    ) -> list[dict[str, Any]]:
        allowed = _columns_for(collection)
        params: dict[str, Any] = {"limit": limit}
        where_clauses: list[str] = []
        for column, value in (filters or {}).items():
            if column not in allowed:
                raise StoreError(f"Cannot filter {collection} by '{column}'")
            where_clauses.append(f"{column} = :{column}")
            params[column] = value

        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
        try:
            rows = self.db.execute(
                text(
                    f"""
                    SELECT id, {", ".join(allowed)}
                    FROM {collection}
                    {where_sql}
                    ORDER BY id
                    LIMIT :limit
                    """
                ),
                params,
            ).mappings().all()
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc
        return [dict(r) for r in rows]

    def create_institution(self, draft: InstitutionDraft) -> int:
        return self.create("institutions", draft.to_payload())

    def create_contact(self, draft: ContactDraft, institution_id: Any) -> int:
        return self.create("contacts", {**draft.to_payload(), "institution_id": institution_id})
