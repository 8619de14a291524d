# src/dpr/reporting/core/errors.py
"""
Error taxonomy for report execution.

Client-facing categories are decided by the exception class, see
``dpr.reporting.core.exception_handlers`` for the HTTP mapping.
"""
from __future__ import annotations


class ReportingError(Exception):
    """Base class for all errors raised by the reporting core."""


class ValidationError(ReportingError):
    """Invalid caller input, raised before any backend call."""


class UserAuthorisationError(ReportingError):
    """The access policies of a product definition deny the user."""


class DefinitionError(ReportingError):
    """A product definition document is malformed."""


class MissingTableError(ReportingError):
    """A materialized table does not exist (expired, evicted or never created)."""

    def __init__(self, table_id: str, schema: str = "reports"):
        self.table_id = table_id
        super().__init__(f"Table {schema}.{table_id} not found.")


class ActiveStatementsExceededError(ReportingError):
    """The backend refused a statement because too many are running.

    Retryable by the caller; never retried internally.
    """


class UnknownStatementStatusError(ReportingError):
    def __init__(self, backend: str, native_status: str):
        self.backend = backend
        self.native_status = native_status
        super().__init__(f"Unknown {backend} statement status: {native_status}")
