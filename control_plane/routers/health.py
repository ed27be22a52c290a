from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from control_plane.deps import ControlPlane, get_control_plane

router = APIRouter()


@router.get("/health")
def health(cp: ControlPlane = Depends(get_control_plane)):
    try:
        with cp.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError:
        db_ok = False
    return {"ok": db_ok, "db": "up" if db_ok else "down", "audit_buffered": len(cp.audit)}
