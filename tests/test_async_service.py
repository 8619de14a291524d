# tests/test_async_service.py
import pytest
from sqlalchemy import text

from dpr.reporting.core.errors import MissingTableError, ValidationError
from dpr.reporting.definitions.models import ProductDefinition
from dpr.reporting.definitions.repository import ProductDefinitionRepository
from dpr.reporting.execution.athena import AthenaApiRepository, AthenaContext
from dpr.reporting.execution.models import StatementStatus
from dpr.reporting.execution.redshift import RedshiftContext, RedshiftDataApiRepository
from dpr.reporting.services.async_data_api import AsyncDataApiService
from tests.conftest import FakeAthenaClient, FakeRedshiftDataClient, create_report_table

REPORT = ("external-movements", "last-month")


def make_service(definition, engine, redshift_client=None, athena_client=None):
    return AsyncDataApiService(
        ProductDefinitionRepository([definition]),
        athena=AthenaApiRepository(
            athena_client or FakeAthenaClient(),
            engine,
            AthenaContext("primary"),
            sleep=lambda _: None,
        ),
        redshift=RedshiftDataApiRepository(
            redshift_client or FakeRedshiftDataClient(),
            engine,
            RedshiftContext(database="datamart", s3_location="bucket"),
            sleep=lambda _: None,
        ),
    )


@pytest.fixture
def redshift_client():
    return FakeRedshiftDataClient(["STARTED", "FINISHED"])


@pytest.fixture
def athena_client():
    return FakeAthenaClient(["RUNNING"])


@pytest.fixture
def service(product_definition, sqlite_engine, redshift_client, athena_client):
    return make_service(product_definition, sqlite_engine, redshift_client, athena_client)


# ----------------------------------------------------------------------
# Backend dispatch
# ----------------------------------------------------------------------


def test_data_warehouse_reports_run_on_redshift(service, redshift_client, athena_client, user):
    response = service.validate_and_execute_statement_async(
        *REPORT, {"direction": "out"}, None, None, user
    )
    assert response.execution_id == "stmt-1"
    assert len(redshift_client.executed) == 1
    assert athena_client.started == []
    assert "ORDER BY movement_date asc" in redshift_client.executed[0]["Sql"]


def test_federated_reports_run_on_athena(definition_data, sqlite_engine, user):
    definition_data["dataset"][0]["datasource"] = "$ref:nomis"
    athena_client = FakeAthenaClient(["RUNNING"])
    redshift_client = FakeRedshiftDataClient()
    service = make_service(
        ProductDefinition.model_validate(definition_data),
        sqlite_engine,
        redshift_client,
        athena_client,
    )

    response = service.validate_and_execute_statement_async(*REPORT, {}, None, None, user)
    assert response.execution_id == "query-1"
    assert redshift_client.executed == []

    cancelled = service.cancel_statement_execution(*REPORT, "query-1", user)
    assert cancelled.cancellation_succeeded
    assert athena_client.stopped == ["query-1"]


def test_invalid_filters_are_rejected_before_submission(service, redshift_client, user):
    with pytest.raises(ValidationError):
        service.validate_and_execute_statement_async(
            *REPORT, {"direction": "sideways"}, None, None, user
        )
    assert redshift_client.executed == []


# ----------------------------------------------------------------------
# Scheduled datasets
# ----------------------------------------------------------------------

SCHEDULED_TABLE = "_zxh0zxjuywwtbw92zw1lbnrzom1vdmvtzw50cw__"


def _scheduled(definition_data):
    definition_data["scheduled"] = True
    definition_data["dataset"][0]["schedule"] = "0 6 * * *"
    return ProductDefinition.model_validate(definition_data)


def _register_scheduled_table(engine):
    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO svv_external_tables VALUES ('reports', :table)"),
            {"table": SCHEDULED_TABLE},
        )


def test_scheduled_dataset_is_read_from_its_table(definition_data, sqlite_engine, user):
    redshift_client = FakeRedshiftDataClient()
    service = make_service(_scheduled(definition_data), sqlite_engine, redshift_client)
    _register_scheduled_table(sqlite_engine)

    service.validate_and_execute_statement_async(*REPORT, {}, None, None, user)

    sql = redshift_client.executed[0]["Sql"]
    assert f'dataset_ AS (SELECT * FROM reports."{SCHEDULED_TABLE}")' in sql
    assert "FROM movements" not in sql


def test_scheduled_dataset_not_refreshed_yet(definition_data, sqlite_engine, user):
    redshift_client = FakeRedshiftDataClient()
    service = make_service(_scheduled(definition_data), sqlite_engine, redshift_client)

    service.validate_and_execute_statement_async(*REPORT, {}, None, None, user)

    sql = redshift_client.executed[0]["Sql"]
    assert "FROM movements" in sql
    assert SCHEDULED_TABLE not in sql


def test_unscheduled_report_runs_the_dataset_query(definition_data, sqlite_engine, user):
    definition_data["dataset"][0]["schedule"] = "0 6 * * *"
    redshift_client = FakeRedshiftDataClient()
    service = make_service(
        ProductDefinition.model_validate(definition_data), sqlite_engine, redshift_client
    )
    _register_scheduled_table(sqlite_engine)

    service.validate_and_execute_statement_async(*REPORT, {}, None, None, user)
    assert SCHEDULED_TABLE not in redshift_client.executed[0]["Sql"]


def test_federated_scheduled_dataset_runs_the_dataset_query(
    definition_data, sqlite_engine, user
):
    definition_data["dataset"][0]["datasource"] = "$ref:nomis"
    athena_client = FakeAthenaClient(["RUNNING"])
    service = make_service(
        _scheduled(definition_data), sqlite_engine, athena_client=athena_client
    )
    _register_scheduled_table(sqlite_engine)

    service.validate_and_execute_statement_async(*REPORT, {}, None, None, user)
    assert SCHEDULED_TABLE not in athena_client.started[0]["QueryString"]


# ----------------------------------------------------------------------
# Status
# ----------------------------------------------------------------------


def test_status_and_poll(service, user):
    polled = service.poll_statement(*REPORT, "stmt-1", user)
    assert polled.status == StatementStatus.STARTED
    assert polled.retry_after_ms is not None

    status = service.get_statement_status(*REPORT, "stmt-1", user)
    assert status.status == StatementStatus.FINISHED


def test_finished_statement_with_missing_table(service, user):
    service.get_statement_status(*REPORT, "stmt-1", user)
    with pytest.raises(MissingTableError):
        service.get_statement_status(*REPORT, "stmt-1", user, table_id="_never_created")


def test_finished_statement_with_table(service, sqlite_engine, user):
    create_report_table(sqlite_engine, "_t1")
    service.get_statement_status(*REPORT, "stmt-1", user)
    status = service.get_statement_status(*REPORT, "stmt-1", user, table_id="_t1")
    assert status.status == StatementStatus.FINISHED


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------


def test_result_pages_and_count(definition_data, sqlite_engine, user):
    fields = definition_data["dataset"][0]["schema"]["field"]
    next(f for f in fields if f["name"] == "direction")["filter"]["interactive"] = True
    service = make_service(ProductDefinition.model_validate(definition_data), sqlite_engine)
    create_report_table(sqlite_engine, "_t1")

    rows = service.get_statement_result(
        "_t1", *REPORT, 1, 2, {"direction": "out"}, "prisoner_number", None, user
    )
    assert [r["prisoner_number"] for r in rows] == ["B2345BB", "D4567DD"]

    count = service.count("_t1", *REPORT, {"direction": "out"}, user)
    assert count.count == 3


def test_result_applies_report_field_formulas(definition_data, sqlite_engine, user):
    fields = definition_data["report"][0]["specification"]["field"]
    fields[2]["formula"] = "format_date(${movement_date}, 'dd/MM/yyyy')"
    service = make_service(ProductDefinition.model_validate(definition_data), sqlite_engine)
    create_report_table(sqlite_engine, "_t1")

    rows = service.get_statement_result(
        "_t1", *REPORT, 1, 2, {}, "prisoner_number", True, user
    )
    assert [r["movement_date"] for r in rows] == ["25/04/2023", "01/05/2023"]


def test_result_rejects_invalid_table_id(service, user):
    with pytest.raises(ValidationError):
        service.get_statement_result("x;y", *REPORT, 1, 10, {}, None, None, user)


def test_summary_is_created_on_first_read(product_definition, sqlite_engine, user):
    create_report_table(sqlite_engine, "_t1")

    def materialize(request):
        with sqlite_engine.begin() as conn:
            conn.execute(
                text(
                    "CREATE TABLE reports._t1_summary_1 AS "
                    "SELECT COUNT(1) AS total FROM reports._t1"
                )
            )

    client = FakeRedshiftDataClient(["FINISHED"], on_execute=materialize)
    service = make_service(product_definition, sqlite_engine, redshift_client=client)

    assert service.get_summary_result("_t1", "summary-1", *REPORT, user) == [{"total": 5}]
    assert len(client.executed) == 1
    assert "FROM reports._t1\n" in client.executed[0]["Sql"]

    # second read finds the table
    assert service.get_summary_result("_t1", "summary-1", *REPORT, user) == [{"total": 5}]
    assert len(client.executed) == 1


def test_unknown_summary(service, user):
    with pytest.raises(ValidationError):
        service.get_summary_result("_t1", "summary-9", *REPORT, user)
