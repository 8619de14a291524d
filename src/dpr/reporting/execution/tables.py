# src/dpr/reporting/execution/tables.py
"""Naming of materialized report tables."""
from __future__ import annotations

import base64
import re
import uuid

from dpr.reporting.core.errors import ValidationError

TABLE_ID_PLACEHOLDER = "${tableId}"

_TABLE_ID = re.compile(r"^_?[A-Za-z0-9_]+$")
# base64 alphabet, with padding turned into underscores
_SCHEDULED_TABLE_ID = re.compile(r"^_[A-Za-z0-9+/_]+$")


class TableIdGenerator:
    def generate_new_external_table_id(self) -> str:
        """A fresh table name: a leading underscore then a uuid4 with
        underscores, so it is a valid unquoted identifier."""
        return "_" + str(uuid.uuid4()).replace("-", "_")

    def get_table_summary_id(self, table_id: str, summary_id: str) -> str:
        return f"{table_id}_{summary_id.replace('-', '_')}"

    def generate_scheduled_dataset_id(self, definition_id: str, dataset_id: str) -> str:
        """The table a scheduler refreshes a dataset into.

        Derived from the ids alone, so every caller of the same dataset finds
        the same table.
        """
        encoded = base64.b64encode(f"{definition_id}:{dataset_id}".encode()).decode()
        return "_" + encoded.replace("=", "_")


def validate_table_id(table_id: str) -> str:
    if not _TABLE_ID.match(table_id):
        raise ValidationError(f"Invalid table id provided: {table_id}")
    return table_id


def interpolate_table_id(query: str, schema: str, table_id: str) -> str:
    """Point a summary dataset query at a materialized table."""
    return query.replace(TABLE_ID_PLACEHOLDER, f"{schema}.{validate_table_id(table_id)}")


def scheduled_dataset_query(schema: str, table_id: str) -> str:
    # quoted: base64 ids may hold "+" and "/"
    if not _SCHEDULED_TABLE_ID.match(table_id):
        raise ValidationError(f"Invalid scheduled dataset id: {table_id}")
    return f'SELECT * FROM {schema}."{table_id}"'
