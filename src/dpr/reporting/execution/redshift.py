# src/dpr/reporting/execution/redshift.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError
from sqlalchemy import Engine

from dpr.reporting.core.config import settings
from dpr.reporting.definitions.models import (
    Datasource,
    SingleReportProductDefinition,
    SqlDialect,
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
    map_redshift_status,
)
from dpr.reporting.execution.tables import TableIdGenerator
from dpr.reporting.query.filters import underscore_keys

logger = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class RedshiftContext:
    database: str
    s3_location: str
    cluster_id: Optional[str] = None
    workgroup_name: Optional[str] = None
    secret_arn: Optional[str] = None

    @classmethod
    def from_settings(cls) -> "RedshiftContext":
        return cls(
            database=settings.redshift_database,
            s3_location=settings.redshift_s3_location,
            cluster_id=settings.redshift_cluster_id,
            workgroup_name=settings.redshift_workgroup_name,
            secret_arn=settings.redshift_secret_arn,
        )

    def target(self) -> Dict[str, str]:
        target: Dict[str, str] = {"Database": self.database}
        if self.cluster_id:
            target["ClusterIdentifier"] = self.cluster_id
        elif self.workgroup_name:
            target["WorkgroupName"] = self.workgroup_name
        if self.secret_arn:
            target["SecretArn"] = self.secret_arn
        return target


def _parameter_value(value: Any) -> str:
    # the Data API only accepts string parameter values
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _field_value(field: Dict[str, Any], type_name: str) -> Any:
    if field.get("isNull"):
        return None
    if "longValue" in field:
        return field["longValue"]
    if "doubleValue" in field:
        return field["doubleValue"]
    if "booleanValue" in field:
        return field["booleanValue"]
    value = field.get("stringValue")
    if type_name == "timestamp" and value:
        return datetime.strptime(value[:19], _TIMESTAMP_FORMAT).isoformat()
    return value


class RedshiftDataApiRepository(AthenaAndRedshiftCommonRepository):
    """Runs report statements through the Redshift Data API.

    Filter values are sent as named parameters; parameter names may not
    contain dots, so ``field.start`` is sent as ``field_start``.
    """

    backend_name = "Redshift"
    dialect = SqlDialect.REDSHIFT4
    literal_filters = False
    key_transformer = staticmethod(underscore_keys)

    def __init__(
        self,
        client: Any,
        engine: Engine,
        context: Optional[RedshiftContext] = None,
        table_id_generator: Optional[TableIdGenerator] = None,
        **kwargs: Any,
    ):
        super().__init__(engine, table_id_generator, **kwargs)
        self.client = client
        self.context = context or RedshiftContext.from_settings()

    def _create_external_table(self, table_id: str, query: str) -> str:
        return (
            f"CREATE EXTERNAL TABLE {self.reports_schema}.{table_id}\n"
            "STORED AS parquet\n"
            f"LOCATION 's3://{self.context.s3_location}/{table_id}/'\n"
            f"AS (\n{query}\n);"
        )

    def build_create_table_query(
        self,
        definition: SingleReportProductDefinition,
        table_id: str,
        query: str,
    ) -> str:
        return self._create_external_table(table_id, query)

    def build_summary_query(
        self,
        definition: SingleReportProductDefinition,
        summary_table_id: str,
        query: str,
    ) -> str:
        return self._create_external_table(summary_table_id, query)

    def submit_statement(
        self,
        datasource: Datasource,
        table_id: str,
        statement: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> StatementExecutionResponse:
        request: Dict[str, Any] = {"Sql": statement, **self.context.target()}
        if parameters:
            request["Parameters"] = [
                {"name": name, "value": _parameter_value(value)}
                for name, value in parameters.items()
            ]
            logger.debug("SQL parameters: %s", request["Parameters"])

        with translate_client_errors(self.backend_name):
            response = self.client.execute_statement(**request)
        logger.debug("Execution ID: %s", response["Id"])
        logger.debug("External table ID: %s", table_id)
        return StatementExecutionResponse(table_id=table_id, execution_id=response["Id"])

    def get_statement_status(self, execution_id: str) -> StatementExecutionStatus:
        with translate_client_errors(self.backend_name):
            response = self.client.describe_statement(Id=execution_id)
        return StatementExecutionStatus(
            status=map_redshift_status(response["Status"]),
            duration=response.get("Duration", 0),
            query_string=response.get("QueryString", ""),
            result_rows=response.get("ResultRows", -1),
            result_size=response.get("ResultSize", -1),
            error=response.get("Error"),
            # the Data API reports no error category and no separate reason
            state_change_reason=response.get("Error"),
        )

    def stop_statement(self, execution_id: str) -> StatementCancellationResponse:
        try:
            with translate_client_errors(self.backend_name):
                response = self.client.cancel_statement(Id=execution_id)
        except ClientError as exc:
            # the statement reached a terminal state between describe and cancel
            if exc.response.get("Error", {}).get("Code") == "ValidationException":
                logger.info(
                    "Statement %s could not be cancelled, already terminal: %s",
                    execution_id,
                    exc,
                )
                return StatementCancellationResponse(cancellation_succeeded=True)
            raise
        return StatementCancellationResponse(
            cancellation_succeeded=bool(response.get("Status", False))
        )

    def get_statement_result(
        self, execution_id: str, next_token: Optional[str] = None
    ) -> StatementResult:
        kwargs: Dict[str, Any] = {"Id": execution_id}
        if next_token:
            kwargs["NextToken"] = next_token
        with translate_client_errors(self.backend_name):
            response = self.client.get_statement_result(**kwargs)

        metadata = response.get("ColumnMetadata", [])
        records: List[Dict[str, Any]] = [
            {
                column["name"]: _field_value(field, column.get("typeName", ""))
                for column, field in zip(metadata, record)
            }
            for record in response.get("Records", [])
        ]
        return StatementResult(records=records, next_token=response.get("NextToken"))
