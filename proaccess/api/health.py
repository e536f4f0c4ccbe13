"""
Health endpoints.

Liveness and readiness probes; no secrets, no stack traces.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from proaccess.core.database import check_connection, get_engine

logger = logging.getLogger("proaccess")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "app_users",
    "idempotency_ledger",
    "payment_log",
]


def _unavailable(detail: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return _unavailable("database unreachable")

    inspector = inspect(get_engine())
    missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return _unavailable(detail)

    return {"status": "ok"}
