# src/dpr/reporting/execution/models.py
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dpr.reporting.core.errors import UnknownStatementStatusError


class StatementStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    PICKED = "PICKED"
    STARTED = "STARTED"
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self in (
            StatementStatus.FINISHED,
            StatementStatus.FAILED,
            StatementStatus.ABORTED,
        )


ATHENA_STATUS_MAP: Dict[str, StatementStatus] = {
    "QUEUED": StatementStatus.SUBMITTED,
    "RUNNING": StatementStatus.STARTED,
    "SUCCEEDED": StatementStatus.FINISHED,
    "FAILED": StatementStatus.FAILED,
    "CANCELLED": StatementStatus.ABORTED,
}


def map_athena_status(native: str) -> StatementStatus:
    try:
        return ATHENA_STATUS_MAP[native]
    except KeyError:
        raise UnknownStatementStatusError("Athena", native) from None


def map_redshift_status(native: str) -> StatementStatus:
    # Redshift Data API states already use the canonical vocabulary
    try:
        return StatementStatus(native)
    except ValueError:
        raise UnknownStatementStatusError("Redshift", native) from None


class _Camel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StatementExecutionResponse(_Camel):
    table_id: str = Field(alias="tableId")
    execution_id: str = Field(alias="executionId")


class StatementExecutionStatus(_Camel):
    status: StatementStatus
    duration: int = 0
    query_string: str = Field(default="", alias="queryString")
    # -1 means unknown
    result_rows: int = Field(default=-1, alias="resultRows")
    result_size: int = Field(default=-1, alias="resultSize")
    error: Optional[str] = None
    error_category: Optional[int] = Field(default=None, alias="errorCategory")
    state_change_reason: Optional[str] = Field(
        default=None, alias="stateChangeReason"
    )


class StatementCancellationResponse(_Camel):
    cancellation_succeeded: bool = Field(alias="cancellationSucceeded")


class StatementResult(_Camel):
    records: List[Dict[str, Any]] = Field(default_factory=list)
    next_token: Optional[str] = Field(default=None, alias="nextToken")


class PollResult(_Camel):
    status: StatementStatus
    terminal: bool
    retry_after_ms: Optional[int] = Field(default=None, alias="retryAfterMs")


class Count(BaseModel):
    count: int
