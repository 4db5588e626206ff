"""Liveness and readiness probes."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from plangate.core.database import check_connection, get_engine

logger = logging.getLogger("plangate")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["subscriptions", "billing_events"]


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "unavailable", "db": False})

    present = set(inspect(get_engine()).get_table_names())
    missing = [t for t in REQUIRED_TABLES if t not in present]
    if missing:
        logger.warning("readyz.missing_tables", extra={"missing_tables": ",".join(missing)})
        return JSONResponse(status_code=503, content={"status": "unavailable", "db": True, "missing_tables": missing})
    return {"status": "ok", "db": True}
