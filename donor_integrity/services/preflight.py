from __future__ import annotations

import logging

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from donor_integrity.services.errors import DatabaseUnavailableError, MissingTablesError

logger = logging.getLogger("donor_integrity.preflight")

REQUIRED_TABLES = (
    "pledge",
    "payment",
    "contact",
    "payment_plan",
    "installment_schedule",
    "payment_allocations",
    "exchange_rate",
)


def check_database_connection(db: Session) -> None:
    try:
        db.execute(text("SELECT 1")).scalar()
    except SQLAlchemyError as exc:
        logger.error("database_connection_failed", extra={"error": str(exc)})
        raise DatabaseUnavailableError(
            "Database connection failed. Check DATABASE_URL and that the database is reachable."
        ) from exc
    logger.info("database_connection_ok")


def check_tables_exist(db: Session) -> tuple[bool, list[str]]:
    """Return (all_present, missing) for the tables the engine reads and writes."""
    bind = db.get_bind()
    try:
        present = {name.lower() for name in inspect(bind).get_table_names()}
    except SQLAlchemyError as exc:
        logger.error("table_inspection_failed", extra={"error": str(exc)})
        return False, list(REQUIRED_TABLES)

    missing = [t for t in REQUIRED_TABLES if t not in present]
    for name in REQUIRED_TABLES:
        if name in missing:
            logger.warning("required_table_missing", extra={"table": name})
    return not missing, missing


def run_preflight(db: Session) -> None:
    check_database_connection(db)
    exists, missing = check_tables_exist(db)
    if not exists:
        raise MissingTablesError(missing)
