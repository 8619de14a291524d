# src/dpr/reporting/services/sync_data_api.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from dpr.reporting.db.engine import get_engine
from dpr.reporting.definitions.models import SingleReportProductDefinition
from dpr.reporting.definitions.repository import (
    ProductDefinitionRepository,
    get_definition_repository,
)
from dpr.reporting.execution.models import Count
from dpr.reporting.execution.sync import ConfiguredApiRepository
from dpr.reporting.query.validation import (
    build_dynamic_filter,
    find_filter_definition,
    partition_prompts_and_filters,
    resolve_sort,
    validate_and_map_filters,
)
from dpr.reporting.security.models import UserContext
from dpr.reporting.services.common import (
    check_auth,
    format_column_names,
    format_columns_and_apply_formulas,
    row_level_predicate,
)

logger = logging.getLogger(__name__)

DEFAULT_DYNAMIC_OPTIONS = 50


class SyncDataApiService:
    """Inline report queries, answered in the request."""

    def __init__(
        self,
        definitions: ProductDefinitionRepository,
        repository: ConfiguredApiRepository,
    ):
        self.definitions = definitions
        self.repository = repository

    def _definition(
        self, report_id: str, variant_id: str, user: Optional[UserContext]
    ) -> SingleReportProductDefinition:
        definition = self.definitions.get_single_report_product_definition(
            report_id, variant_id
        )
        check_auth(definition, user)
        return definition

    def validate_and_fetch_data(
        self,
        report_id: str,
        variant_id: str,
        filters: Mapping[str, str],
        page: int,
        page_size: int,
        sort_column: Optional[str],
        sorted_asc: Optional[bool],
        user: Optional[UserContext],
    ) -> List[Dict[str, Any]]:
        definition = self._definition(report_id, variant_id, user)
        prompts, raw_filters = partition_prompts_and_filters(definition, filters)
        validated = validate_and_map_filters(definition, raw_filters)
        column, asc = resolve_sort(definition, sort_column, sorted_asc)

        rows = self.repository.execute_query(
            definition,
            validated,
            row_level_predicate(definition, user),
            page=page,
            page_size=page_size,
            sort_column=column,
            sorted_asc=asc,
            prompts=prompts,
            user=user,
        )
        return format_columns_and_apply_formulas(rows, definition)

    def validate_and_count(
        self,
        report_id: str,
        variant_id: str,
        filters: Mapping[str, str],
        user: Optional[UserContext],
    ) -> Count:
        definition = self._definition(report_id, variant_id, user)
        prompts, raw_filters = partition_prompts_and_filters(definition, filters)
        total = self.repository.count(
            definition,
            validate_and_map_filters(definition, raw_filters),
            row_level_predicate(definition, user),
            prompts=prompts,
            user=user,
        )
        return Count(count=total)

    def validate_and_fetch_dynamic_values(
        self,
        report_id: str,
        variant_id: str,
        field_id: str,
        prefix: str,
        filters: Mapping[str, str],
        user: Optional[UserContext],
    ) -> List[Any]:
        """Distinct values of a field starting with ``prefix`` (typeahead)."""
        definition = self._definition(report_id, variant_id, user)
        prompts, raw_filters = partition_prompts_and_filters(definition, filters)
        dynamic = build_dynamic_filter(definition, field_id, prefix)
        validated = validate_and_map_filters(
            definition, raw_filters, dynamic_field_ids={field_id}
        )

        dynamic_options = find_filter_definition(definition, field_id).dynamic_options

        rows = self.repository.execute_query(
            definition,
            [*validated, dynamic],
            row_level_predicate(definition, user),
            page=1,
            page_size=dynamic_options.maximum_options or DEFAULT_DYNAMIC_OPTIONS,
            sort_column=field_id,
            sorted_asc=True,
            dynamic_filter_field_id=field_id,
            prompts=prompts,
            user=user,
        )
        return [format_column_names(r, definition.report_dataset)[field_id] for r in rows]


_service: Optional[SyncDataApiService] = None


def get_sync_data_api_service() -> SyncDataApiService:
    global _service
    if _service is None:
        _service = SyncDataApiService(
            get_definition_repository(), ConfiguredApiRepository(get_engine())
        )
    return _service
