# src/dpr/reporting/routes/async_reports.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from dpr.reporting.execution.models import (
    Count,
    PollResult,
    StatementCancellationResponse,
    StatementExecutionResponse,
    StatementExecutionStatus,
)
from dpr.reporting.routes.params import get_filters
from dpr.reporting.security.auth import get_optional_user
from dpr.reporting.security.models import UserContext
from dpr.reporting.services.async_data_api import (
    AsyncDataApiService,
    get_async_data_api_service,
)

logger = logging.getLogger(__name__)

router = APIRouter()
tags = ["async-reports"]


@router.get(
    "/async/reports/{report_id}/{variant_id}",
    response_model=StatementExecutionResponse,
    description="Submits a report statement; poll its status with the returned ids.",
    name="Execute report statement",
)
def execute_statement(
    report_id: str,
    variant_id: str,
    sort_column: Optional[str] = Query(None, alias="sortColumn"),
    sorted_asc: Optional[bool] = Query(None, alias="sortedAsc"),
    filters: Dict[str, str] = Depends(get_filters),
    user: Optional[UserContext] = Depends(get_optional_user),
    service: AsyncDataApiService = Depends(get_async_data_api_service),
):
    return service.validate_and_execute_statement_async(
        report_id, variant_id, filters, sort_column, sorted_asc, user
    )


@router.get(
    "/reports/{report_id}/{variant_id}/statements/{statement_id}/status",
    response_model=StatementExecutionStatus,
    name="Statement status",
)
def statement_status(
    report_id: str,
    variant_id: str,
    statement_id: str,
    table_id: Optional[str] = Query(None, alias="tableId"),
    user: Optional[UserContext] = Depends(get_optional_user),
    service: AsyncDataApiService = Depends(get_async_data_api_service),
):
    return service.get_statement_status(
        report_id, variant_id, statement_id, user, table_id=table_id
    )


@router.get(
    "/reports/{report_id}/{variant_id}/statements/{statement_id}/poll",
    response_model=PollResult,
    description="Single non-blocking status check with a suggested retry delay.",
    name="Poll statement",
)
def poll_statement(
    report_id: str,
    variant_id: str,
    statement_id: str,
    user: Optional[UserContext] = Depends(get_optional_user),
    service: AsyncDataApiService = Depends(get_async_data_api_service),
):
    return service.poll_statement(report_id, variant_id, statement_id, user)


@router.delete(
    "/reports/{report_id}/{variant_id}/statements/{statement_id}",
    response_model=StatementCancellationResponse,
    name="Cancel statement",
)
def cancel_statement(
    report_id: str,
    variant_id: str,
    statement_id: str,
    user: Optional[UserContext] = Depends(get_optional_user),
    service: AsyncDataApiService = Depends(get_async_data_api_service),
):
    return service.cancel_statement_execution(
        report_id, variant_id, statement_id, user
    )


@router.get(
    "/reports/{report_id}/{variant_id}/tables/{table_id}/result",
    name="Statement result page",
)
def statement_result(
    report_id: str,
    variant_id: str,
    table_id: str,
    selected_page: int = Query(1, alias="selectedPage", ge=1),
    page_size: int = Query(10, alias="pageSize", ge=1),
    sort_column: Optional[str] = Query(None, alias="sortColumn"),
    sorted_asc: Optional[bool] = Query(None, alias="sortedAsc"),
    filters: Dict[str, str] = Depends(get_filters),
    user: Optional[UserContext] = Depends(get_optional_user),
    service: AsyncDataApiService = Depends(get_async_data_api_service),
) -> List[Dict[str, Any]]:
    return service.get_statement_result(
        table_id,
        report_id,
        variant_id,
        selected_page,
        page_size,
        filters,
        sort_column,
        sorted_asc,
        user,
    )


@router.get(
    "/reports/{report_id}/{variant_id}/tables/{table_id}/count",
    response_model=Count,
    name="Statement result count",
)
def statement_count(
    report_id: str,
    variant_id: str,
    table_id: str,
    filters: Dict[str, str] = Depends(get_filters),
    user: Optional[UserContext] = Depends(get_optional_user),
    service: AsyncDataApiService = Depends(get_async_data_api_service),
):
    return service.count(table_id, report_id, variant_id, filters, user)


@router.get(
    "/reports/{report_id}/{variant_id}/tables/{table_id}/result/summary/{summary_id}",
    name="Statement summary",
)
def statement_summary(
    report_id: str,
    variant_id: str,
    table_id: str,
    summary_id: str,
    user: Optional[UserContext] = Depends(get_optional_user),
    service: AsyncDataApiService = Depends(get_async_data_api_service),
) -> List[Dict[str, Any]]:
    return service.get_summary_result(
        table_id, summary_id, report_id, variant_id, user
    )
