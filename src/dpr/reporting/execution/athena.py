# src/dpr/reporting/execution/athena.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import Engine

from dpr.reporting.core.config import settings
from dpr.reporting.core.errors import ValidationError
from dpr.reporting.definitions.models import (
    Datasource,
    DatasourceConnection,
    SingleReportProductDefinition,
)
from dpr.reporting.execution.base import (
    AthenaAndRedshiftCommonRepository,
    translate_client_errors,
)
from dpr.reporting.execution.models import (
    StatementCancellationResponse,
    StatementExecutionResponse,
    StatementExecutionStatus,
    StatementResult,
    map_athena_status,
)
from dpr.reporting.execution.tables import TableIdGenerator

logger = logging.getLogger(__name__)

ATHENA_CATALOG = "AwsDataCatalog"


@dataclass(frozen=True)
class AthenaContext:
    workgroup: str

    @classmethod
    def from_settings(cls) -> "AthenaContext":
        return cls(workgroup=settings.athena_workgroup)


def _duration_ns(status: Dict[str, Any]) -> int:
    submitted = status.get("SubmissionDateTime")
    completed = status.get("CompletionDateTime")
    if submitted is None or completed is None:
        return 0
    millis = int((completed - submitted).total_seconds() * 1000)
    return millis * 1_000_000


class AthenaApiRepository(AthenaAndRedshiftCommonRepository):
    """Runs report statements through Athena.

    Filters are substituted as literals: Athena executes a single SQL string
    and federated queries are passed to the source engine as one quoted
    literal.
    """

    backend_name = "Athena"
    literal_filters = True

    def __init__(
        self,
        client: Any,
        engine: Engine,
        context: Optional[AthenaContext] = None,
        table_id_generator: Optional[TableIdGenerator] = None,
        **kwargs: Any,
    ):
        super().__init__(engine, table_id_generator, **kwargs)
        self.client = client
        self.context = context or AthenaContext.from_settings()

    def _header(self, definition: SingleReportProductDefinition) -> str:
        return (
            f"/* {definition.id} {definition.name} "
            f"{definition.report.id} {definition.report.name} */"
        )

    def _create_table(self, table_id: str, inner: str) -> str:
        return (
            f"CREATE TABLE {ATHENA_CATALOG}.{self.reports_schema}.{table_id}\n"
            "WITH (\n  format = 'PARQUET'\n)\n"
            f"AS (\n{inner}\n)"
        )

    def build_create_table_query(
        self,
        definition: SingleReportProductDefinition,
        table_id: str,
        query: str,
    ) -> str:
        connection = definition.datasource.connection or DatasourceConnection.FEDERATED
        if connection == DatasourceConnection.FEDERATED:
            escaped = query.replace("'", "''")
            inner = f"SELECT * FROM TABLE(system.query(query =>\n '{escaped}'\n))"
        elif connection == DatasourceConnection.AWS_DATA_CATALOG:
            inner = query
        else:
            raise ValidationError(
                f"Unsupported datasource connection for Athena: {connection.value}"
            )
        full = f"{self._header(definition)}\n{self._create_table(table_id, inner)}"
        logger.debug("Full query is: %s", full)
        return full

    def build_summary_query(
        self,
        definition: SingleReportProductDefinition,
        summary_table_id: str,
        query: str,
    ) -> str:
        return f"{self._header(definition)}\n{self._create_table(summary_table_id, query)}"

    def submit_statement(
        self,
        datasource: Datasource,
        table_id: str,
        statement: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> StatementExecutionResponse:
        execution_context: Dict[str, str] = {}
        if datasource.database:
            execution_context["Database"] = datasource.database
        if datasource.catalog:
            execution_context["Catalog"] = datasource.catalog

        logger.debug("Full async query: %s", statement)
        with translate_client_errors(self.backend_name):
            response = self.client.start_query_execution(
                QueryString=statement,
                QueryExecutionContext=execution_context,
                WorkGroup=self.context.workgroup,
            )
        return StatementExecutionResponse(
            table_id=table_id, execution_id=response["QueryExecutionId"]
        )

    def get_statement_status(self, execution_id: str) -> StatementExecutionStatus:
        with translate_client_errors(self.backend_name):
            response = self.client.get_query_execution(QueryExecutionId=execution_id)
        execution = response["QueryExecution"]
        status = execution["Status"]
        error = status.get("AthenaError") or {}
        return StatementExecutionStatus(
            status=map_athena_status(status["State"]),
            duration=_duration_ns(status),
            query_string=execution.get("Query", ""),
            result_rows=-1,
            result_size=-1,
            error=error.get("ErrorMessage"),
            error_category=error.get("ErrorCategory"),
            state_change_reason=status.get("StateChangeReason"),
        )

    def stop_statement(self, execution_id: str) -> StatementCancellationResponse:
        with translate_client_errors(self.backend_name):
            self.client.stop_query_execution(QueryExecutionId=execution_id)
        logger.info("Cancelled Athena statement %s", execution_id)
        return StatementCancellationResponse(cancellation_succeeded=True)

    def get_statement_result(
        self,
        execution_id: str,
        next_token: Optional[str] = None,
        max_results: int = 1000,
    ) -> StatementResult:
        """Read a finished statement's rows directly, by continuation token."""
        kwargs: Dict[str, Any] = {
            "QueryExecutionId": execution_id,
            "MaxResults": max_results,
        }
        if next_token:
            kwargs["NextToken"] = next_token
        with translate_client_errors(self.backend_name):
            response = self.client.get_query_results(**kwargs)

        result_set = response["ResultSet"]
        columns = [c["Name"] for c in result_set["ResultSetMetadata"]["ColumnInfo"]]
        rows = result_set.get("Rows", [])
        # the first page starts with the column header row
        if next_token is None and rows:
            rows = rows[1:]

        records: List[Dict[str, Any]] = [
            {
                column: datum.get("VarCharValue")
                for column, datum in zip(columns, row.get("Data", []))
            }
            for row in rows
        ]
        return StatementResult(records=records, next_token=response.get("NextToken"))
