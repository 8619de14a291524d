# src/dpr/reporting/execution/sync.py
"""Inline (synchronous) report queries executed through SQLAlchemy."""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import Engine, text

from dpr.reporting.definitions.models import SingleReportProductDefinition
from dpr.reporting.execution.base import normalise_row
from dpr.reporting.query.composer import Prompt, compose_count_query, compose_query
from dpr.reporting.query.filters import Filter, build_query_params, underscore_keys
from dpr.reporting.security.models import UserContext

logger = logging.getLogger(__name__)


class ConfiguredApiRepository:
    def __init__(self, engine: Engine):
        self.engine = engine

    def _report_filter(self, definition: SingleReportProductDefinition) -> Optional[str]:
        return definition.report.filter.query if definition.report.filter else None

    def _execute(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        started = time.monotonic()
        with self.engine.connect() as conn:
            rows = conn.execute(text(sql), params).mappings().all()
        logger.debug(
            "Query execution time in ms: %d", (time.monotonic() - started) * 1000
        )
        return [normalise_row(r) for r in rows]

    def execute_query(
        self,
        definition: SingleReportProductDefinition,
        filters: Sequence[Filter],
        policy_engine_result: str,
        *,
        page: int,
        page_size: int,
        sort_column: Optional[str] = None,
        sorted_asc: bool = True,
        dynamic_filter_field_id: Optional[str] = None,
        prompts: Optional[Sequence[Prompt]] = None,
        user: Optional[UserContext] = None,
    ) -> List[Dict[str, Any]]:
        sql = compose_query(
            definition.report_dataset.query,
            policy_engine_result,
            filters,
            report_filter=self._report_filter(definition),
            prompts=prompts,
            user=user,
            selected_field=dynamic_filter_field_id,
            sort_column=sort_column,
            sort_asc=sorted_asc,
            page=page,
            page_size=page_size,
            key_transformer=underscore_keys,
        )
        return self._execute(sql, build_query_params(filters, underscore_keys))

    def count(
        self,
        definition: SingleReportProductDefinition,
        filters: Sequence[Filter],
        policy_engine_result: str,
        *,
        prompts: Optional[Sequence[Prompt]] = None,
        user: Optional[UserContext] = None,
    ) -> int:
        sql = compose_count_query(
            definition.report_dataset.query,
            policy_engine_result,
            filters,
            report_filter=self._report_filter(definition),
            prompts=prompts,
            user=user,
            key_transformer=underscore_keys,
        )
        rows = self._execute(sql, build_query_params(filters, underscore_keys))
        return int(rows[0]["total"])
