from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.requests import Request
from starlette.responses import JSONResponse

from ...deps import get_db_session
from ....core.errors import SchemaError
from ....db import check_database_health, get_engine
from ....services.schema_migrator import SchemaMigrator

router = APIRouter(tags=["ops"])


def _schema_status() -> dict:
    migrator = SchemaMigrator(get_engine())
    try:
        current = migrator.current_version()
    except SchemaError as exc:
        return {"ok": False, "version": None, "required": migrator.latest_version, "details": str(exc)}
    return {
        "ok": current == migrator.latest_version,
        "version": current,
        "required": migrator.latest_version,
    }


@router.get("/health")
def health(_: Request, session: Session = Depends(get_db_session)) -> JSONResponse:
    # Touch the session to ensure ORM roundtrip is functional
    try:
        session.execute(text("SELECT 1"))
        orm_ok = True
    except Exception as exc:  # noqa: BLE001
        orm_ok = False
        orm_details = str(exc)
    else:
        orm_details = "ok"

    db = check_database_health()
    schema = _schema_status() if db["ok"] else {"ok": False, "version": None}
    overall_ok = db["ok"] and orm_ok and schema["ok"]
    status_code = 200 if overall_ok else 503
    return JSONResponse(
        {
            "status": "ok" if overall_ok else "degraded",
            "db": db,
            "orm": {"ok": orm_ok, "details": orm_details},
            "schema": schema,
        },
        status_code=status_code,
    )
