# tests/conftest.py
import copy
from typing import Any, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError
from sqlalchemy import create_engine, event, text
from sqlalchemy.pool import StaticPool

from dpr.reporting.definitions.models import ProductDefinition
from dpr.reporting.security.models import UserContext


# ----------------------------------------------------------------------
# Product definition
# ----------------------------------------------------------------------

MOVEMENTS_QUERY = (
    "SELECT prisoner_number, name, movement_date, direction, origin, "
    "destination, is_closed FROM movements"
)

DEFINITION: Dict[str, Any] = {
    "id": "external-movements",
    "name": "External Movements",
    "description": "Reports about prisoner external movements",
    "metadata": {"author": "Adam", "version": "1.2.3", "owner": "Eve"},
    "datasource": [
        {
            "id": "redshift",
            "name": "redshift",
            "database": "datamart",
            "connection": "DATAWAREHOUSE",
        },
        {
            "id": "nomis",
            "name": "nomis",
            "database": "DIGITAL_PRISON_REPORTING",
            "catalog": "nomis",
            "connection": "federated",
        },
    ],
    "dataset": [
        {
            "id": "movements",
            "name": "All movements",
            "datasource": "$ref:redshift",
            "query": MOVEMENTS_QUERY,
            "schema": {
                "field": [
                    {"name": "prisoner_number", "type": "string", "display": "Prison Number"},
                    {
                        "name": "name",
                        "type": "string",
                        "display": "Name",
                        "filter": {
                            "type": "autocomplete",
                            "pattern": "[A-Z][a-z]+",
                            "dynamicOptions": {"minimumLength": 2, "maximumOptions": 5},
                        },
                    },
                    {
                        "name": "movement_date",
                        "type": "date",
                        "display": "Date",
                        "filter": {"type": "daterange"},
                    },
                    {
                        "name": "direction",
                        "type": "string",
                        "display": "Direction",
                        "filter": {
                            "type": "Radio",
                            "staticOptions": [
                                {"name": "in", "display": "In"},
                                {"name": "out", "display": "Out"},
                            ],
                        },
                    },
                    {
                        "name": "origin",
                        "type": "string",
                        "display": "From",
                        "filter": {"type": "text", "pattern": "[A-Z]{3}"},
                    },
                    {"name": "destination", "type": "string", "display": "To"},
                    {
                        "name": "is_closed",
                        "type": "boolean",
                        "display": "Closed",
                        "filter": {"type": "select"},
                    },
                ]
            },
        },
        {
            "id": "movements-summary",
            "name": "Movements summary",
            "datasource": "$ref:redshift",
            "query": "SELECT COUNT(1) AS total FROM ${tableId}",
            "schema": {"field": [{"name": "total", "type": "long", "display": "Total"}]},
        },
    ],
    "report": [
        {
            "id": "last-month",
            "name": "Last month",
            "description": "All movements in the past month",
            "version": "1.2.3",
            "dataset": "$ref:movements",
            "specification": {
                "template": "list",
                "field": [
                    {"name": "$ref:prisoner_number", "display": "Prison Number"},
                    {"name": "$ref:name", "display": "Name"},
                    {"name": "$ref:movement_date", "display": "Date", "defaultsort": True},
                    {"name": "$ref:direction", "display": "Direction"},
                    {"name": "$ref:origin", "display": "From"},
                    {"name": "$ref:destination", "display": "To"},
                    {"name": "$ref:is_closed", "display": "Closed"},
                ],
            },
            "summary": [
                {
                    "id": "summary-1",
                    "template": "page-header",
                    "dataset": "$ref:movements-summary",
                }
            ],
        }
    ],
    "policy": [
        {
            "id": "caseload",
            "type": "row-level",
            "action": ["origin IN ${caseloads}"],
            "rule": [{"effect": "permit", "condition": [{"exists": ["${caseload}"]}]}],
        }
    ],
}

MOVEMENT_ROWS: List[Dict[str, Any]] = [
    {"prisoner_number": "A1234AA", "name": "Smith", "movement_date": "2023-04-25",
     "direction": "In", "origin": "MDI", "destination": "LEI", "is_closed": False},
    {"prisoner_number": "B2345BB", "name": "Smart", "movement_date": "2023-05-01",
     "direction": "Out", "origin": "LEI", "destination": "MDI", "is_closed": True},
    {"prisoner_number": "C3456CC", "name": "Jones", "movement_date": "2023-05-10",
     "direction": "In", "origin": "MDI", "destination": "BXI", "is_closed": False},
    {"prisoner_number": "D4567DD", "name": "Brown", "movement_date": "2023-05-20",
     "direction": "Out", "origin": "BXI", "destination": "MDI", "is_closed": False},
    {"prisoner_number": "E5678EE", "name": "Green", "movement_date": "2023-05-30",
     "direction": "out", "origin": "LEI", "destination": "BXI", "is_closed": True},
]


@pytest.fixture
def definition_data() -> Dict[str, Any]:
    return copy.deepcopy(DEFINITION)


@pytest.fixture
def product_definition(definition_data) -> ProductDefinition:
    return ProductDefinition.model_validate(definition_data)


@pytest.fixture
def single_report(product_definition):
    return product_definition.single_report("last-month")


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------


@pytest.fixture
def user() -> UserContext:
    return UserContext(
        username="jsmith",
        roles=["ROLE_PRISONS_REPORTING_USER"],
        active_caseload="MDI",
        caseloads=["MDI", "LEI"],
        token="token-123",
    )


@pytest.fixture
def anon_user():
    return None


# ----------------------------------------------------------------------
# Database
# ----------------------------------------------------------------------


def make_sqlite_engine():
    """In-memory engine with a ``reports`` schema attached."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _attach_reports_schema(dbapi_connection, _record):
        dbapi_connection.execute("ATTACH DATABASE ':memory:' AS reports")

    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE movements (prisoner_number TEXT, name TEXT, "
                "movement_date TEXT, direction TEXT, origin TEXT, "
                "destination TEXT, is_closed BOOLEAN)"
            )
        )
        conn.execute(
            text(
                "INSERT INTO movements VALUES (:prisoner_number, :name, "
                ":movement_date, :direction, :origin, :destination, :is_closed)"
            ),
            MOVEMENT_ROWS,
        )
        conn.execute(
            text("CREATE TABLE svv_external_tables (schemaname TEXT, tablename TEXT)")
        )
    return engine


def create_report_table(engine, table_id: str, rows=MOVEMENT_ROWS) -> None:
    with engine.begin() as conn:
        conn.execute(
            text(
                f"CREATE TABLE reports.{table_id} AS "
                "SELECT * FROM movements WHERE 0"
            )
        )
        conn.execute(
            text(
                f"INSERT INTO reports.{table_id} VALUES (:prisoner_number, :name, "
                ":movement_date, :direction, :origin, :destination, :is_closed)"
            ),
            list(rows),
        )
        conn.execute(
            text("INSERT INTO svv_external_tables VALUES ('reports', :table)"),
            {"table": table_id.lower()},
        )


@pytest.fixture
def sqlite_engine():
    engine = make_sqlite_engine()
    yield engine
    engine.dispose()


# ----------------------------------------------------------------------
# AWS clients
# ----------------------------------------------------------------------


def client_error(code: str, operation: str = "ExecuteStatement") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeRedshiftDataClient:
    """Records Data API calls; statuses are served in order, the last one repeats."""

    def __init__(self, statuses: Optional[List[str]] = None, on_execute=None):
        self.statuses = list(statuses or ["FINISHED"])
        self.on_execute = on_execute
        self.executed: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.execute_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        # Error text of described statements
        self.statement_error: Optional[str] = None

    def _next_status(self) -> str:
        return self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]

    def execute_statement(self, **kwargs):
        if self.execute_error is not None:
            raise self.execute_error
        self.executed.append(kwargs)
        if self.on_execute is not None:
            self.on_execute(kwargs)
        return {"Id": f"stmt-{len(self.executed)}"}

    def describe_statement(self, Id):
        description = {
            "Id": Id,
            "Status": self._next_status(),
            "Duration": 1_500_000,
            "QueryString": "CREATE EXTERNAL TABLE ...",
            "ResultRows": 5,
            "ResultSize": 120,
        }
        if self.statement_error is not None:
            description["Error"] = self.statement_error
        return description

    def cancel_statement(self, Id):
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(Id)
        return {"Status": True}

    def get_statement_result(self, **kwargs):
        return {
            "ColumnMetadata": [
                {"name": "prisoner_number", "typeName": "varchar"},
                {"name": "movement_date", "typeName": "timestamp"},
                {"name": "is_closed", "typeName": "bool"},
            ],
            "Records": [
                [
                    {"stringValue": "A1234AA"},
                    {"stringValue": "2023-04-25 10:15:00.000"},
                    {"booleanValue": False},
                ],
                [{"stringValue": "B2345BB"}, {"isNull": True}, {"booleanValue": True}],
            ],
            "NextToken": "page-2" if "NextToken" not in kwargs else None,
        }


class FakeAthenaClient:
    def __init__(self, states: Optional[List[str]] = None):
        self.states = list(states or ["SUCCEEDED"])
        self.started: List[Dict[str, Any]] = []
        self.stopped: List[str] = []
        self.start_error: Optional[Exception] = None

    def start_query_execution(self, **kwargs):
        if self.start_error is not None:
            raise self.start_error
        self.started.append(kwargs)
        return {"QueryExecutionId": f"query-{len(self.started)}"}

    def get_query_execution(self, QueryExecutionId):
        state = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        status: Dict[str, Any] = {"State": state}
        if state == "FAILED":
            status["AthenaError"] = {"ErrorCategory": 2, "ErrorMessage": "SYNTAX_ERROR"}
            status["StateChangeReason"] = "line 1:8: mismatched input"
        return {
            "QueryExecution": {
                "QueryExecutionId": QueryExecutionId,
                "Query": "CREATE TABLE ...",
                "Status": status,
            }
        }

    def stop_query_execution(self, QueryExecutionId):
        self.stopped.append(QueryExecutionId)
        return {}

    def get_query_results(self, **kwargs):
        rows = [
            {"Data": [{"VarCharValue": "prisoner_number"}, {"VarCharValue": "origin"}]},
            {"Data": [{"VarCharValue": "A1234AA"}, {"VarCharValue": "MDI"}]},
            {"Data": [{"VarCharValue": "C3456CC"}, {}]},
        ]
        if "NextToken" in kwargs:
            rows = rows[1:2]
        return {
            "ResultSet": {
                "ResultSetMetadata": {
                    "ColumnInfo": [{"Name": "prisoner_number"}, {"Name": "origin"}]
                },
                "Rows": rows,
            },
            "NextToken": None if "NextToken" in kwargs else "token-2",
        }
