# src/dpr/reporting/routes/reports.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from dpr.reporting.execution.models import Count
from dpr.reporting.routes.params import get_filters
from dpr.reporting.security.auth import get_optional_user
from dpr.reporting.security.models import UserContext
from dpr.reporting.services.sync_data_api import (
    SyncDataApiService,
    get_sync_data_api_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reports")
tags = ["reports"]


@router.get(
    "/{report_id}/{variant_id}",
    description="Returns one page of a report variant, filtered and sorted.",
    name="Report data",
)
def report_data(
    report_id: str,
    variant_id: str,
    selected_page: int = Query(1, alias="selectedPage", ge=1),
    page_size: int = Query(10, alias="pageSize", ge=1),
    sort_column: Optional[str] = Query(None, alias="sortColumn"),
    sorted_asc: Optional[bool] = Query(None, alias="sortedAsc"),
    filters: Dict[str, str] = Depends(get_filters),
    user: Optional[UserContext] = Depends(get_optional_user),
    service: SyncDataApiService = Depends(get_sync_data_api_service),
) -> List[Dict[str, Any]]:
    return service.validate_and_fetch_data(
        report_id,
        variant_id,
        filters,
        selected_page,
        page_size,
        sort_column,
        sorted_asc,
        user,
    )


@router.get(
    "/{report_id}/{variant_id}/count",
    response_model=Count,
    name="Report row count",
)
def report_count(
    report_id: str,
    variant_id: str,
    filters: Dict[str, str] = Depends(get_filters),
    user: Optional[UserContext] = Depends(get_optional_user),
    service: SyncDataApiService = Depends(get_sync_data_api_service),
):
    return service.validate_and_count(report_id, variant_id, filters, user)


@router.get(
    "/{report_id}/{variant_id}/{field_id}",
    description="Returns the distinct values of a field starting with a prefix.",
    name="Dynamic filter values",
)
def dynamic_values(
    report_id: str,
    variant_id: str,
    field_id: str,
    prefix: str = Query(...),
    filters: Dict[str, str] = Depends(get_filters),
    user: Optional[UserContext] = Depends(get_optional_user),
    service: SyncDataApiService = Depends(get_sync_data_api_service),
) -> List[Any]:
    return service.validate_and_fetch_dynamic_values(
        report_id, variant_id, field_id, prefix, filters, user
    )
