# src/dpr/reporting/core/healthcheck.py
from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from dpr.reporting.db.engine import get_engine

logger = logging.getLogger(__name__)


def is_healthy() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database connectivity: OK")
    except SQLAlchemyError as e:
        logger.error("Database connectivity failed: %s", e)
        return False
    return True
