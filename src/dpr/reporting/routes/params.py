# src/dpr/reporting/routes/params.py
from __future__ import annotations

from typing import Dict

from fastapi import Request

FILTERS_PREFIX = "filters."


def get_filters(request: Request) -> Dict[str, str]:
    """Collect ``filters.<name>`` query parameters, prefix removed."""
    return {
        key[len(FILTERS_PREFIX):]: value
        for key, value in request.query_params.items()
        if key.startswith(FILTERS_PREFIX) and len(key) > len(FILTERS_PREFIX)
    }
