import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from the package directory before settings are read
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from proaccess.core.config import settings, validate_config
from proaccess.core.database import create_all_tables, get_database_url
from proaccess.core.logging import configure_logging
from proaccess.core.middleware.request_id import RequestIdMiddleware
from proaccess.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from proaccess.api import billing, health, metrics


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("proaccess")
    logger.info("Starting ProAccess entitlement service...")
    if get_database_url():
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("proaccess").info("Stopping ProAccess entitlement service...")


def create_app() -> FastAPI:
    app = FastAPI(title="ProAccess - Entitlements", lifespan=lifespan)

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(billing.router, prefix="/api", tags=["payment"])
    app.include_router(health.router, tags=["health"])
    app.include_router(metrics.router, tags=["metrics"])
    return app


configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("proaccess.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
