import logging
from pathlib import Path

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import Response
from fastapi.templating import Jinja2Templates
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tracker import models  # noqa: F401  registers tables on Base.metadata
from tracker.config import settings
from tracker.database import Base, SessionLocal, engine
from tracker.import_fields import DEFAULT_SCHEMA
from tracker.import_template import build_template
from tracker.institution_import import ImportReport, import_institution_file
from tracker.store import SqlRecordStore, StoreError
from tracker.tabular import ACCEPTED_EXTENSIONS

logging.basicConfig(level=settings.log_level)

app = FastAPI(title="Sales Tracker")
templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))
logger = logging.getLogger(__name__)

IMPORT_MODES = {"preview", "apply"}


@app.on_event("startup")
def ensure_tables():
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_store(db: Session = Depends(get_db)) -> SqlRecordStore:
    return SqlRecordStore(db)


async def read_upload(upload: UploadFile) -> bytes:
    payload = await upload.read(settings.import_max_upload_bytes + 1)
    if len(payload) > settings.import_max_upload_bytes:
        raise HTTPException(
            status_code=400,
            detail=f"Uploaded file is larger than {settings.import_max_upload_mb} MB.",
        )
    return payload


def render_import_page(
    request: Request,
    *,
    result: ImportReport | None = None,
    error: str = "",
    uploaded_name: str = "",
    import_mode: str = "apply",
    status_code: int = 200,
):
    return templates.TemplateResponse(
        request,
        "institution_import.html",
        {
            "result": result,
            "error": error,
            "uploaded_name": uploaded_name,
            "import_mode": import_mode,
            "accepted_extensions": ", ".join(ACCEPTED_EXTENSIONS),
            "required_column": DEFAULT_SCHEMA.template_headers[0],
        },
        status_code=status_code,
    )


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"ok": True}


@app.get("/institutions/import")
def import_page(request: Request):
    return render_import_page(request)


@app.get("/institutions/import/template")
def import_template(format: str = Query(default="xlsx")):
    try:
        template = build_template(format)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return Response(
        content=template.content,
        media_type=template.media_type,
        headers={"Content-Disposition": f'attachment; filename="{template.filename}"'},
    )


@app.post("/institutions/import")
async def import_institutions_page(
    request: Request,
    import_file: UploadFile = File(...),
    import_mode: str = Form("apply"),
    store: SqlRecordStore = Depends(get_store),
):
    filename = import_file.filename or ""
    mode = import_mode.strip().lower() or "apply"
    if mode not in IMPORT_MODES:
        return render_import_page(
            request,
            error="Invalid import mode. Use preview or apply.",
            uploaded_name=filename,
            import_mode=mode,
            status_code=400,
        )

    try:
        payload = await read_upload(import_file)
        result = import_institution_file(store, payload, filename, dry_run=(mode == "preview"))
    except HTTPException as exc:
        return render_import_page(
            request,
            error=str(exc.detail),
            uploaded_name=filename,
            import_mode=mode,
            status_code=exc.status_code,
        )
    except SQLAlchemyError:
        store.db.rollback()
        logger.exception("Unexpected database error during institution import")
        return render_import_page(
            request,
            error="Unexpected import database error.",
            uploaded_name=filename,
            import_mode=mode,
            status_code=500,
        )

    return render_import_page(request, result=result, uploaded_name=filename, import_mode=mode)


@app.post("/api/institutions/import")
async def import_institutions_api(
    import_file: UploadFile = File(...),
    dry_run: bool = Form(False),
    store: SqlRecordStore = Depends(get_store),
):
    payload = await read_upload(import_file)
    try:
        result = import_institution_file(store, payload, import_file.filename or "", dry_run=dry_run)
    except SQLAlchemyError as exc:
        store.db.rollback()
        logger.exception("Unexpected database error during institution import")
        raise HTTPException(status_code=500, detail="Unexpected import database error.") from exc
    return result.to_dict()


@app.get("/api/institutions")
def list_institutions(
    city: str = Query(default=""),
    status: str = Query(default=""),
    store: SqlRecordStore = Depends(get_store),
):
    filters = {k: v.strip() for k, v in {"city": city, "status": status}.items() if v.strip()}
    try:
        items = store.list("institutions", filters=filters)
    except StoreError as exc:
        logger.exception("Could not list institutions")
        raise HTTPException(status_code=500, detail="Unexpected server error while listing institutions.") from exc
    return {"items": items}


@app.get("/api/institutions/{institution_id}/contacts")
def list_institution_contacts(institution_id: int, store: SqlRecordStore = Depends(get_store)):
    try:
        items = store.list("contacts", filters={"institution_id": institution_id})
    except StoreError as exc:
        logger.exception("Could not list contacts")
        raise HTTPException(status_code=500, detail="Unexpected server error while listing contacts.") from exc
    return {"items": items}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tracker.main:app", host=settings.app_host, port=settings.app_port)
