# src/dpr/reporting/db/engine.py
from __future__ import annotations

from typing import Optional

from sqlalchemy import Engine, create_engine

from dpr.reporting.core.config import settings

_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Process-wide engine for inline queries and materialized table reads."""
    global _engine
    if _engine is None:
        _engine = create_engine(
            settings.database_url,
            future=True,
            pool_pre_ping=True,
            echo=settings.env == "dev",
        )
    return _engine
