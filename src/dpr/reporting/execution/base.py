# src/dpr/reporting/execution/base.py
"""
Shared lifecycle of asynchronous report statements.

A statement materializes the composed report query into a table of the
reports schema. Callers then poll its status, cancel it, and read the
materialized table page by page through SQLAlchemy.
"""
from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from botocore.exceptions import ClientError
from sqlalchemy import Engine, text
from sqlalchemy.exc import DBAPIError

from dpr.reporting.core.config import settings
from dpr.reporting.core.errors import (
    ActiveStatementsExceededError,
    MissingTableError,
    ReportingError,
    ValidationError,
)
from dpr.reporting.definitions.models import (
    Datasource,
    SingleReportProductDefinition,
    SqlDialect,
)
from dpr.reporting.execution.models import (
    PollResult,
    StatementCancellationResponse,
    StatementExecutionResponse,
    StatementExecutionStatus,
    StatementStatus,
)
from dpr.reporting.execution.tables import (
    TableIdGenerator,
    interpolate_table_id,
    scheduled_dataset_query,
    validate_table_id,
)
from dpr.reporting.query.composer import Prompt, check_identifier, compose_query
from dpr.reporting.query.filters import (
    Filter,
    KeyTransformer,
    build_conditions,
    build_query_params,
    underscore_keys,
)
from dpr.reporting.security.models import UserContext

logger = logging.getLogger(__name__)

# undefined_table
_UNDEFINED_TABLE_SQLSTATE = "42P01"

CONCURRENCY_LIMIT_ERROR_CODES = frozenset(
    {"ActiveStatementsExceededException", "TooManyRequestsException"}
)


@contextmanager
def translate_client_errors(backend: str) -> Iterator[None]:
    """Surface backend concurrency limits as a retryable error.

    Any other client error propagates unchanged.
    """
    try:
        yield
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code")
        if code in CONCURRENCY_LIMIT_ERROR_CODES:
            logger.warning("%s refused statement: %s", backend, code)
            raise ActiveStatementsExceededError(str(exc)) from exc
        raise


def is_missing_relation(exc: DBAPIError, table_id: str) -> bool:
    """Whether ``exc`` reports that ``table_id`` itself does not exist.

    Errors about columns, functions or other relations of a readable table
    are re-raised by the caller.
    """
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if sqlstate:
        return sqlstate == _UNDEFINED_TABLE_SQLSTATE

    table = re.escape(table_id.lower())
    message = str(exc.orig).lower()
    patterns = (
        rf"no such table: (\w+\.)?{table}\b",
        rf'relation "(\w+\.)?{table}" does not exist',
        rf"entity not found.*\b{table}\b",
    )
    return any(re.search(pattern, message) for pattern in patterns)


def normalise_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    item = dict(row)
    for col, val in list(item.items()):
        if isinstance(val, (datetime, date)):
            item[col] = val.isoformat()
    return item


class AthenaAndRedshiftCommonRepository(ABC):
    backend_name: str = ""
    # dialect of queries the backend runs itself
    dialect: SqlDialect = SqlDialect.ATHENA3

    # literal filters are substituted into the SQL, otherwise bound
    literal_filters: bool = False
    key_transformer: Optional[KeyTransformer] = None

    def __init__(
        self,
        engine: Engine,
        table_id_generator: Optional[TableIdGenerator] = None,
        *,
        reports_schema: Optional[str] = None,
        poll_interval_ms: Optional[int] = None,
        summary_wait_timeout_seconds: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.engine = engine
        self.table_id_generator = table_id_generator or TableIdGenerator()
        self.reports_schema = reports_schema or settings.reports_schema
        self.poll_interval_ms = (
            poll_interval_ms
            if poll_interval_ms is not None
            else settings.statement_poll_interval_ms
        )
        self.summary_wait_timeout_seconds = (
            summary_wait_timeout_seconds
            if summary_wait_timeout_seconds is not None
            else settings.summary_wait_timeout_seconds
        )
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Backend specifics
    # ------------------------------------------------------------------

    @abstractmethod
    def build_create_table_query(
        self,
        definition: SingleReportProductDefinition,
        table_id: str,
        query: str,
    ) -> str:
        """Wrap a composed query in the backend's CREATE TABLE AS form."""

    @abstractmethod
    def build_summary_query(
        self,
        definition: SingleReportProductDefinition,
        summary_table_id: str,
        query: str,
    ) -> str: ...

    @abstractmethod
    def submit_statement(
        self,
        datasource: Datasource,
        table_id: str,
        statement: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> StatementExecutionResponse: ...

    @abstractmethod
    def get_statement_status(self, execution_id: str) -> StatementExecutionStatus: ...

    @abstractmethod
    def stop_statement(self, execution_id: str) -> StatementCancellationResponse: ...

    # ------------------------------------------------------------------
    # Statement lifecycle
    # ------------------------------------------------------------------

    def execute_query_async(
        self,
        definition: SingleReportProductDefinition,
        filters: Sequence[Filter],
        sort_column: Optional[str],
        sorted_asc: bool,
        policy_engine_result: str,
        dynamic_filter_field_id: Optional[str] = None,
        prompts: Optional[Sequence[Prompt]] = None,
        user: Optional[UserContext] = None,
        scheduled_dataset_id: Optional[str] = None,
    ) -> StatementExecutionResponse:
        """Materialize a report into a new table of the reports schema.

        With ``scheduled_dataset_id`` the dataset stage reads the scheduled
        table instead of running the dataset query.
        """
        table_id = self.table_id_generator.generate_new_external_table_id()
        report_filter = definition.report.filter
        if scheduled_dataset_id is None:
            dataset_query = definition.report_dataset.query
            dialect = definition.datasource.effective_dialect
        else:
            dataset_query = scheduled_dataset_query(
                self.reports_schema, scheduled_dataset_id
            )
            dialect = self.dialect
        query = compose_query(
            dataset_query,
            policy_engine_result,
            filters,
            report_filter=report_filter.query if report_filter else None,
            prompts=prompts,
            user=user,
            selected_field=dynamic_filter_field_id,
            sort_column=sort_column,
            sort_asc=sorted_asc,
            key_transformer=self.key_transformer,
            literal=self.literal_filters,
            dialect=dialect,
        )
        statement = self.build_create_table_query(definition, table_id, query)
        parameters = (
            None
            if self.literal_filters
            else build_query_params(filters, self.key_transformer)
        )
        response = self.submit_statement(
            definition.datasource, table_id, statement, parameters or None
        )
        logger.info(
            "Submitted %s statement %s for %s/%s into %s.%s",
            self.backend_name,
            response.execution_id,
            definition.id,
            definition.report.id,
            self.reports_schema,
            table_id,
        )
        return response

    def poll_statement(self, execution_id: str) -> PollResult:
        """Describe a statement once and suggest when to ask again."""
        status = self.get_statement_status(execution_id).status
        terminal = status.is_terminal
        return PollResult(
            status=status,
            terminal=terminal,
            retry_after_ms=None if terminal else self.poll_interval_ms,
        )

    def cancel_statement_execution(
        self, execution_id: str
    ) -> StatementCancellationResponse:
        status = self.get_statement_status(execution_id).status
        if status.is_terminal:
            logger.debug(
                "Statement %s already %s, nothing to cancel", execution_id, status.value
            )
            return StatementCancellationResponse(cancellation_succeeded=True)
        return self.stop_statement(execution_id)

    def wait_for_statement(
        self, execution_id: str, timeout_seconds: Optional[float] = None
    ) -> StatementExecutionStatus:
        timeout = (
            self.summary_wait_timeout_seconds
            if timeout_seconds is None
            else timeout_seconds
        )
        deadline = time.monotonic() + timeout
        while True:
            status = self.get_statement_status(execution_id)
            if status.status.is_terminal:
                return status
            if time.monotonic() >= deadline:
                raise ReportingError(
                    f"Timed out after {timeout}s waiting for statement {execution_id}"
                )
            self._sleep(self.poll_interval_ms / 1000)

    def create_summary_table(
        self,
        definition: SingleReportProductDefinition,
        table_id: str,
        summary_id: str,
    ) -> str:
        """Materialize a summary of a report table and return its table id."""
        dataset = definition.find_summary_dataset(summary_id)
        summary_table_id = self.table_id_generator.get_table_summary_id(
            validate_table_id(table_id), summary_id
        )
        query = interpolate_table_id(dataset.query, self.reports_schema, table_id)
        statement = self.build_summary_query(definition, summary_table_id, query)

        started = time.monotonic()
        response = self.submit_statement(
            definition.datasource, summary_table_id, statement
        )
        status = self.wait_for_statement(response.execution_id)
        if status.status != StatementStatus.FINISHED:
            raise ReportingError(
                f"Summary {summary_id} for table {table_id} ended as "
                f"{status.status.value}: {status.error}"
            )
        logger.debug(
            "Create summary query execution time in ms: %d",
            (time.monotonic() - started) * 1000,
        )
        return summary_table_id

    # ------------------------------------------------------------------
    # Materialized table reads
    # ------------------------------------------------------------------

    def _qualified(self, table_id: str) -> str:
        return f"{self.reports_schema}.{validate_table_id(table_id)}"

    def _fetch(
        self, table_id: str, sql: str, params: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, Any]]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(text(sql), params or {}).mappings().all()
        except DBAPIError as exc:
            if is_missing_relation(exc, table_id):
                raise MissingTableError(table_id, self.reports_schema) from exc
            raise
        return [normalise_row(r) for r in rows]

    def _filtered(
        self, table_id: str, filters: Sequence[Filter]
    ) -> Tuple[str, Dict[str, Any]]:
        sql = f"FROM {self._qualified(table_id)}"
        if filters:
            where = " AND ".join(build_conditions(filters, underscore_keys))
            sql = f"{sql} WHERE {where}"
        return sql, build_query_params(filters, underscore_keys)

    def count(self, table_id: str, filters: Sequence[Filter] = ()) -> int:
        source, params = self._filtered(table_id, filters)
        rows = self._fetch(table_id, f"SELECT COUNT(1) AS total {source}", params)
        return int(rows[0]["total"])

    def get_paginated_external_table_result(
        self,
        table_id: str,
        page: int,
        page_size: int,
        filters: Sequence[Filter] = (),
        sort_column: Optional[str] = None,
        sorted_asc: bool = True,
    ) -> List[Dict[str, Any]]:
        """Read one page of a materialized table.

        ``filters`` are interactive filters applied on top of the rows that
        were materialized.
        """
        if page < 1 or page_size < 1:
            raise ValidationError(
                f"Invalid pagination: page={page}, pageSize={page_size}"
            )
        source, params = self._filtered(table_id, filters)
        sql = f"SELECT * {source}"
        if sort_column:
            direction = "asc" if sorted_asc else "desc"
            sql = f"{sql} ORDER BY {check_identifier(sort_column, 'sortColumn')} {direction}"
        sql = f"{sql} LIMIT :limit OFFSET :offset"
        params.update({"limit": page_size, "offset": (page - 1) * page_size})

        started = time.monotonic()
        rows = self._fetch(table_id, sql, params)
        logger.debug(
            "Query execution time in ms: %d", (time.monotonic() - started) * 1000
        )
        return rows

    def get_full_external_table_result(self, table_id: str) -> List[Dict[str, Any]]:
        return self._fetch(table_id, f"SELECT * FROM {self._qualified(table_id)}")

    def is_table_missing(self, table_id: str) -> bool:
        # the id is bound, never spliced, so scheduled dataset ids are accepted too
        rows = self._fetch(
            table_id,
            "SELECT COUNT(1) AS total FROM svv_external_tables "
            "WHERE schemaname = :schema AND tablename = :table",
            {"schema": self.reports_schema, "table": table_id.lower()},
        )
        return int(rows[0]["total"]) == 0
