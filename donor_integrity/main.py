import logging
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from donor_integrity.api.router import api_router
from donor_integrity.config import settings
from donor_integrity.core.observability import (
    global_exception_handler,
    request_logging_middleware,
)

api_prefix = (
    settings.api_prefix
    if settings.api_prefix.startswith("/")
    else f"/{settings.api_prefix}"
    if settings.api_prefix
    else ""
)

logger = logging.getLogger("donor_integrity")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

app = FastAPI(
    title=settings.app_name,
    docs_url="/docs" if settings.enable_docs else None,
    redoc_url="/redoc" if settings.enable_docs else None,
    openapi_url=(f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
    if settings.enable_docs
    else None,
)

# Expose logger for middleware without creating circular imports.
app.state.logger = logger

app.add_exception_handler(Exception, global_exception_handler)

# Request-level logging + request correlation id.
app.middleware("http")(request_logging_middleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=api_prefix)


def _run_migrations_if_configured() -> None:
    if not bool(getattr(settings, "run_migrations_on_start", False)):
        return

    # Avoid running migrations during tests.
    if (settings.environment or "").lower() == "test":
        return

    # Import lazily to keep import graph light for non-migration startups.
    from alembic import command
    from alembic.config import Config
    from sqlalchemy import create_engine
    from sqlalchemy.engine.url import make_url

    project_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(project_root / "alembic.ini"))

    url_obj = make_url(str(settings.database_url))
    logger.info(
        "migrations_db_target",
        extra={"driver": url_obj.drivername, "host": url_obj.host, "db": url_obj.database},
    )

    try:
        db_engine = create_engine(settings.database_url, future=True)
        with db_engine.connect() as connection:
            # Reuse this connection inside Alembic env.py (config.attributes['connection']).
            alembic_cfg.attributes["connection"] = connection
            command.upgrade(alembic_cfg, "head")
            connection.commit()
        logger.info("migrations_applied")
    except Exception as e:
        # Don't crash the API if migrations fail; preflight turns missing tables into 503s.
        logger.error("migrations_failed", extra={"error": str(e)})


@app.on_event("startup")
def _startup():
    _run_migrations_if_configured()
    logger.info("app_started", extra={"environment": settings.environment, "api_prefix": api_prefix})


@app.get("/", tags=["meta"])
def root():
    docs_path = (
        (f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
        if settings.enable_docs
        else None
    )
    return {"message": settings.app_name, "docs": docs_path}
