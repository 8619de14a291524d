# src/dpr/reporting/routes/health.py
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from dpr.reporting.core.healthcheck import is_healthy

logger = logging.getLogger(__name__)

router = APIRouter()
tags = ["health"]


@router.get("/health")
def healthcheck():
    if not is_healthy():
        raise HTTPException(status_code=503, detail="Unhealthy")
    return {"status": "ready"}
