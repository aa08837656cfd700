from datetime import datetime
from io import BytesIO

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker

from conftest import build_csv_bytes, build_xlsx_bytes
from tracker import main
from tracker.database import Base
from tracker.import_fields import DEFAULT_SCHEMA
from tracker.row_validator import ContactDraft, InstitutionDraft
from tracker.store import SqlRecordStore, StoreError

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@pytest.fixture()
def session_factory(tmp_path):
    db_path = tmp_path / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def register_now(dbapi_conn, _):
        dbapi_conn.create_function("NOW", 0, lambda: datetime.utcnow().isoformat(sep=" "))

    Base.metadata.create_all(bind=engine)
    SessionTesting = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    try:
        yield SessionTesting, engine
    finally:
        engine.dispose()


@pytest.fixture()
def client_and_engine(session_factory):
    SessionTesting, engine = session_factory

    def override_get_db():
        db = SessionTesting()
        try:
            yield db
        finally:
            db.close()

    original_startup = list(main.app.router.on_startup)
    original_shutdown = list(main.app.router.on_shutdown)
    original_lifespan = main.app.router.lifespan_context

    async def _noop_lifespan(_app):
        yield

    main.app.router.on_startup = []
    main.app.router.on_shutdown = []
    main.app.router.lifespan_context = _noop_lifespan
    main.app.dependency_overrides[main.get_db] = override_get_db

    client = TestClient(main.app)
    try:
        yield client, engine
    finally:
        client.close()
        main.app.dependency_overrides.clear()
        main.app.router.on_startup = original_startup
        main.app.router.on_shutdown = original_shutdown
        main.app.router.lifespan_context = original_lifespan


def _scenario_workbook() -> bytes:
    return build_xlsx_bytes(
        [
            ["Institution Name", "Type", "Status", "City", "First Buy Date", "PIC Name", "Phone", "Is Primary"],
            ["PT Contoh", "csr", "new", "Jakarta", 45688, "Budi", "0812", "ya"],
            ["", "CSR", "", "", "", "", "", ""],
            ["Yayasan Cerdas", "Yayasan", "Prospek", "Bandung", "", "", "", ""],
            ["Sekolah Maju", "Sekolah", "", "Medan", "31/01/2025", "", "0813", ""],
        ]
    )


def _upload(content: bytes, filename: str):
    media_type = XLSX_MEDIA_TYPE if filename.endswith(".xlsx") else "text/csv"
    return {"import_file": (filename, content, media_type)}


def test_health(client_and_engine):
    client, _ = client_and_engine

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_import_page_renders(client_and_engine):
    client, _ = client_and_engine

    response = client.get("/institutions/import")

    assert response.status_code == 200
    assert "Bulk Import Institutions" in response.text
    assert "institution_name" in response.text


def test_import_workbook_persists_institutions_and_contacts(client_and_engine):
    client, engine = client_and_engine

    response = client.post("/institutions/import", files=_upload(_scenario_workbook(), "institutions.xlsx"))

    assert response.status_code == 200
    assert "Import Summary" in response.text
    assert "Row 3: name required" in response.text
    assert "Row 4 (Yayasan Cerdas): status not valid" in response.text
    assert "Row 5 (Sekolah Maju): contact name required" in response.text

    with engine.begin() as conn:
        institutions = conn.execute(
            text("SELECT id, name, type, status, city, first_buy_date FROM institutions ORDER BY id")
        ).mappings().all()
        contacts = conn.execute(
            text("SELECT institution_id, name, phone, is_primary FROM contacts")
        ).mappings().all()

    assert [(r["name"], r["type"], r["status"], r["first_buy_date"]) for r in institutions] == [
        ("PT Contoh", "CSR", "New", "2025-01-31"),
        ("Sekolah Maju", "Sekolah", None, "2025-01-31"),
    ]
    assert len(contacts) == 1
    assert contacts[0]["institution_id"] == institutions[0]["id"]
    assert contacts[0]["name"] == "Budi"
    assert contacts[0]["phone"] == "0812"
    assert bool(contacts[0]["is_primary"]) is True


def test_import_preview_does_not_persist(client_and_engine):
    client, engine = client_and_engine

    response = client.post(
        "/institutions/import",
        data={"import_mode": "preview"},
        files=_upload(_scenario_workbook(), "institutions.xlsx"),
    )

    assert response.status_code == 200
    assert "Preview only" in response.text
    with engine.begin() as conn:
        assert conn.execute(text("SELECT COUNT(*) FROM institutions")).scalar_one() == 0


def test_import_rejects_unsupported_file_type(client_and_engine):
    client, _ = client_and_engine

    response = client.post("/institutions/import", files=_upload(b"name\nPT A\n", "institutions.txt"))

    assert response.status_code == 400
    assert "Unsupported file type" in response.text


def test_import_rejects_invalid_mode(client_and_engine):
    client, _ = client_and_engine

    response = client.post(
        "/institutions/import",
        data={"import_mode": "merge"},
        files=_upload(_scenario_workbook(), "institutions.xlsx"),
    )

    assert response.status_code == 400
    assert "Invalid import mode" in response.text


def test_import_rejects_oversized_upload(client_and_engine, monkeypatch):
    client, engine = client_and_engine
    monkeypatch.setattr(main.settings, "import_max_upload_mb", 0)

    response = client.post("/institutions/import", files=_upload(_scenario_workbook(), "institutions.xlsx"))

    assert response.status_code == 400
    assert "larger than 0 MB" in response.text
    with engine.begin() as conn:
        assert conn.execute(text("SELECT COUNT(*) FROM institutions")).scalar_one() == 0


def test_api_import_returns_report(client_and_engine):
    client, _ = client_and_engine
    content = build_csv_bytes(
        [
            ["name", "type", "contact_name", "contact_phone"],
            ["PT Contoh", "CSR", "Budi", "0812"],
            ["", "CSR", "", ""],
        ]
    )

    response = client.post("/api/institutions/import", files=_upload(content, "institutions.csv"))

    assert response.status_code == 200
    assert response.json() == {
        "institutionsCreated": 1,
        "contactsCreated": 1,
        "errors": [{"row": 3, "message": "name required", "kind": "failed"}],
        "rowsProcessed": 2,
        "dryRun": False,
    }


def test_api_import_unreadable_file(client_and_engine):
    client, _ = client_and_engine

    response = client.post(
        "/api/institutions/import",
        files=_upload(build_csv_bytes([["institution_name"]]), "institutions.csv"),
    )

    assert response.status_code == 400
    assert response.json() == {"detail": "File contains no data rows."}


def test_contact_table_failure_leaves_institution_created(client_and_engine):
    client, engine = client_and_engine
    with engine.begin() as conn:
        conn.execute(text("DROP TABLE contacts"))
    content = build_csv_bytes([["institution_name", "contact_name"], ["PT A", "Budi"]])

    response = client.post("/api/institutions/import", files=_upload(content, "institutions.csv"))

    body = response.json()
    assert response.status_code == 200
    assert body["institutionsCreated"] == 1
    assert body["contactsCreated"] == 0
    assert body["errors"][0]["kind"] == "partial"
    assert body["errors"][0]["institutionName"] == "PT A"
    assert body["errors"][0]["message"].startswith("institution created, but contact creation failed")
    with engine.begin() as conn:
        assert conn.execute(text("SELECT name FROM institutions")).scalars().all() == ["PT A"]


@pytest.mark.parametrize(("fmt", "media_type"), [("xlsx", XLSX_MEDIA_TYPE), ("csv", "text/csv")])
def test_template_download(client_and_engine, fmt, media_type):
    client, _ = client_and_engine

    response = client.get("/institutions/import/template", params={"format": fmt})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith(media_type)
    assert f"institutions-import-template.{fmt}" in response.headers["content-disposition"]
    if fmt == "xlsx":
        sheet = load_workbook(BytesIO(response.content)).active
        assert tuple(c.value for c in sheet[1]) == DEFAULT_SCHEMA.template_headers


def test_template_download_rejects_unknown_format(client_and_engine):
    client, _ = client_and_engine

    response = client.get("/institutions/import/template", params={"format": "pdf"})

    assert response.status_code == 400


def test_list_endpoints_return_imported_records(client_and_engine):
    client, _ = client_and_engine
    client.post("/institutions/import", files=_upload(_scenario_workbook(), "institutions.xlsx"))

    institutions = client.get("/api/institutions", params={"city": "Jakarta"}).json()["items"]
    assert [i["name"] for i in institutions] == ["PT Contoh"]

    contacts = client.get(f"/api/institutions/{institutions[0]['id']}/contacts").json()["items"]
    assert [c["name"] for c in contacts] == ["Budi"]


def test_sql_store_create_and_list(session_factory):
    SessionTesting, _ = session_factory
    db = SessionTesting()
    try:
        store = SqlRecordStore(db)
        institution_id = store.create_institution(InstitutionDraft(name="PT A", type="CSR"))
        contact_id = store.create_contact(ContactDraft(name="Budi", is_primary=False), institution_id)

        assert isinstance(institution_id, int)
        assert isinstance(contact_id, int)
        assert store.list("institutions")[0]["type"] == "CSR"
        assert store.list("contacts", filters={"institution_id": institution_id})[0]["name"] == "Budi"
        assert store.list("contacts", filters={"institution_id": institution_id + 1}) == []
    finally:
        db.close()


def test_sql_store_rejects_unknown_collection_and_filter(session_factory):
    SessionTesting, _ = session_factory
    db = SessionTesting()
    try:
        store = SqlRecordStore(db)
        with pytest.raises(StoreError):
            store.create("forecasts", {"name": "x"})
        with pytest.raises(StoreError):
            store.list("institutions", filters={"1=1; DROP TABLE institutions": 1})
    finally:
        db.close()


def test_sql_store_constraint_violation_raises_store_error(session_factory):
    SessionTesting, engine = session_factory
    db = SessionTesting()
    try:
        store = SqlRecordStore(db)
        with pytest.raises(StoreError):
            store.create("institutions", {"name": "PT A", "type": "Swasta"})
        # The failed insert does not poison the session for the next call.
        assert store.create("institutions", {"name": "PT B"}) > 0
    finally:
        db.close()
    with engine.begin() as conn:
        assert conn.execute(text("SELECT name FROM institutions")).scalars().all() == ["PT B"]
