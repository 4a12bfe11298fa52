from datetime import datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from core.database import Database, get_database

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
def health(database: Database = Depends(get_database)):
    """Liveness plus database reachability"""
    db_ok = database.ping()
    body = {
        "status": "ok" if db_ok else "degraded",
        "database": "connected" if db_ok else "unreachable",
        "timestamp": datetime.utcnow().isoformat() + "Z",
    }
    return JSONResponse(body, status_code=200 if db_ok else 503)
