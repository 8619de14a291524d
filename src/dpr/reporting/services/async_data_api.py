# src/dpr/reporting/services/async_data_api.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import boto3

from dpr.reporting.core.config import settings
from dpr.reporting.core.errors import MissingTableError
from dpr.reporting.db.engine import get_engine
from dpr.reporting.definitions.models import (
    DatasourceConnection,
    SingleReportProductDefinition,
)
from dpr.reporting.definitions.repository import (
    ProductDefinitionRepository,
    get_definition_repository,
)
from dpr.reporting.execution.athena import AthenaApiRepository
from dpr.reporting.execution.base import AthenaAndRedshiftCommonRepository
from dpr.reporting.execution.models import (
    Count,
    PollResult,
    StatementCancellationResponse,
    StatementExecutionResponse,
    StatementExecutionStatus,
    StatementStatus,
)
from dpr.reporting.execution.redshift import RedshiftDataApiRepository
from dpr.reporting.execution.tables import validate_table_id
from dpr.reporting.query.validation import (
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


class AsyncDataApiService:
    """Fire-and-poll report execution.

    Statements run on Redshift for ``datawarehouse`` datasources and on Athena
    otherwise. Statement results are materialized into the reports schema and
    read back page by page.
    """

    def __init__(
        self,
        definitions: ProductDefinitionRepository,
        athena: AthenaAndRedshiftCommonRepository,
        redshift: AthenaAndRedshiftCommonRepository,
    ):
        self.definitions = definitions
        self.athena = athena
        self.redshift = redshift

    def _definition(
        self, report_id: str, variant_id: str, user: Optional[UserContext]
    ) -> SingleReportProductDefinition:
        definition = self.definitions.get_single_report_product_definition(
            report_id, variant_id
        )
        check_auth(definition, user)
        return definition

    def repository_for(
        self, definition: SingleReportProductDefinition
    ) -> AthenaAndRedshiftCommonRepository:
        if definition.datasource.connection == DatasourceConnection.DATA_WAREHOUSE:
            return self.redshift
        return self.athena

    def validate_and_execute_statement_async(
        self,
        report_id: str,
        variant_id: str,
        filters: Mapping[str, str],
        sort_column: Optional[str],
        sorted_asc: Optional[bool],
        user: Optional[UserContext],
    ) -> StatementExecutionResponse:
        definition = self._definition(report_id, variant_id, user)
        prompts, raw_filters = partition_prompts_and_filters(definition, filters)
        validated = validate_and_map_filters(definition, raw_filters, interactive=False)
        column, asc = resolve_sort(definition, sort_column, sorted_asc)
        repository = self.repository_for(definition)

        return repository.execute_query_async(
            definition,
            validated,
            column,
            asc,
            row_level_predicate(definition, user),
            prompts=prompts,
            user=user,
            scheduled_dataset_id=self.check_for_scheduled_dataset(definition, repository),
        )

    def check_for_scheduled_dataset(
        self,
        definition: SingleReportProductDefinition,
        repository: AthenaAndRedshiftCommonRepository,
    ) -> Optional[str]:
        """Table holding the latest scheduled refresh of the report's dataset.

        ``None`` when the dataset is not scheduled or has not been refreshed
        yet. Federated queries run on the source database, which cannot read
        the reports schema, so they always run the dataset query.
        """
        dataset = definition.report_dataset
        connection = definition.datasource.connection or DatasourceConnection.FEDERATED
        if (
            not definition.scheduled
            or not dataset.schedule
            or connection == DatasourceConnection.FEDERATED
        ):
            return None

        table_id = repository.table_id_generator.generate_scheduled_dataset_id(
            definition.id, dataset.id
        ).lower()
        if repository.is_table_missing(table_id):
            logger.info(
                "Scheduled table %s for %s/%s not found, running the dataset query",
                table_id,
                definition.id,
                dataset.id,
            )
            return None
        logger.debug("Reading dataset %s from scheduled table %s", dataset.id, table_id)
        return table_id

    def get_statement_status(
        self,
        report_id: str,
        variant_id: str,
        statement_id: str,
        user: Optional[UserContext],
        table_id: Optional[str] = None,
    ) -> StatementExecutionStatus:
        definition = self._definition(report_id, variant_id, user)
        repository = self.repository_for(definition)
        status = repository.get_statement_status(statement_id)
        if (
            table_id is not None
            and status.status == StatementStatus.FINISHED
            and repository.is_table_missing(validate_table_id(table_id))
        ):
            raise MissingTableError(table_id, repository.reports_schema)
        return status

    def poll_statement(
        self,
        report_id: str,
        variant_id: str,
        statement_id: str,
        user: Optional[UserContext],
    ) -> PollResult:
        definition = self._definition(report_id, variant_id, user)
        return self.repository_for(definition).poll_statement(statement_id)

    def cancel_statement_execution(
        self,
        report_id: str,
        variant_id: str,
        statement_id: str,
        user: Optional[UserContext],
    ) -> StatementCancellationResponse:
        definition = self._definition(report_id, variant_id, user)
        return self.repository_for(definition).cancel_statement_execution(statement_id)

    def get_statement_result(
        self,
        table_id: str,
        report_id: str,
        variant_id: str,
        page: int,
        page_size: int,
        filters: Mapping[str, str],
        sort_column: Optional[str],
        sorted_asc: Optional[bool],
        user: Optional[UserContext],
    ) -> List[Dict[str, Any]]:
        definition = self._definition(report_id, variant_id, user)
        column, asc = resolve_sort(definition, sort_column, sorted_asc)
        rows = self.repository_for(definition).get_paginated_external_table_result(
            validate_table_id(table_id),
            page,
            page_size,
            filters=validate_and_map_filters(definition, filters, interactive=True),
            sort_column=column,
            sorted_asc=asc,
        )
        return format_columns_and_apply_formulas(rows, definition)

    def count(
        self,
        table_id: str,
        report_id: str,
        variant_id: str,
        filters: Mapping[str, str],
        user: Optional[UserContext],
    ) -> Count:
        definition = self._definition(report_id, variant_id, user)
        total = self.repository_for(definition).count(
            validate_table_id(table_id),
            validate_and_map_filters(definition, filters, interactive=True),
        )
        return Count(count=total)

    def get_summary_result(
        self,
        table_id: str,
        summary_id: str,
        report_id: str,
        variant_id: str,
        user: Optional[UserContext],
    ) -> List[Dict[str, Any]]:
        """Read a report summary, materializing it on first access."""
        definition = self._definition(report_id, variant_id, user)
        dataset = definition.find_summary_dataset(summary_id)
        repository = self.repository_for(definition)
        summary_table_id = repository.table_id_generator.get_table_summary_id(
            validate_table_id(table_id), summary_id
        )

        try:
            rows = repository.get_full_external_table_result(summary_table_id)
        except MissingTableError:
            logger.info(
                "Summary table %s missing, creating it from %s",
                summary_table_id,
                table_id,
            )
            repository.create_summary_table(definition, table_id, summary_id)
            rows = repository.get_full_external_table_result(summary_table_id)

        return [format_column_names(r, dataset) for r in rows]


_service: Optional[AsyncDataApiService] = None


def get_async_data_api_service() -> AsyncDataApiService:
    global _service
    if _service is None:
        engine = get_engine()
        _service = AsyncDataApiService(
            get_definition_repository(),
            athena=AthenaApiRepository(
                boto3.client("athena", region_name=settings.aws_region), engine
            ),
            redshift=RedshiftDataApiRepository(
                boto3.client("redshift-data", region_name=settings.aws_region),
                engine,
            ),
        )
    return _service
