# tests/test_table_reads.py
import pytest
from hypothesis import given, settings as hypothesis_settings, strategies as st
from sqlalchemy import text
from sqlalchemy.exc import ProgrammingError

from dpr.reporting.core.errors import MissingTableError, ValidationError
from dpr.reporting.execution.redshift import RedshiftContext, RedshiftDataApiRepository
from dpr.reporting.query.filters import Filter, FilterKind
from tests.conftest import (
    MOVEMENT_ROWS,
    FakeRedshiftDataClient,
    create_report_table,
    make_sqlite_engine,
)

TABLE_ID = "_reads_1"

ORDERED_NUMBERS = sorted(r["prisoner_number"] for r in MOVEMENT_ROWS)


@pytest.fixture(scope="module")
def engine():
    engine = make_sqlite_engine()
    create_report_table(engine, TABLE_ID)
    yield engine
    engine.dispose()


@pytest.fixture(scope="module")
def repository(engine):
    return RedshiftDataApiRepository(
        FakeRedshiftDataClient(),
        engine,
        RedshiftContext(database="datamart", s3_location="bucket"),
    )


# ----------------------------------------------------------------------
# Pagination
# ----------------------------------------------------------------------


@hypothesis_settings(max_examples=50, deadline=None)
@given(page=st.integers(min_value=1, max_value=8), page_size=st.integers(min_value=1, max_value=7))
def test_pages_are_slices_of_the_sorted_table(repository, page, page_size):
    rows = repository.get_paginated_external_table_result(
        TABLE_ID, page, page_size, sort_column="prisoner_number", sorted_asc=True
    )
    start = (page - 1) * page_size
    assert [r["prisoner_number"] for r in rows] == ORDERED_NUMBERS[start : start + page_size]


def test_descending_sort(repository):
    rows = repository.get_paginated_external_table_result(
        TABLE_ID, 1, 2, sort_column="prisoner_number", sorted_asc=False
    )
    assert [r["prisoner_number"] for r in rows] == ORDERED_NUMBERS[::-1][:2]


@pytest.mark.parametrize("page, page_size", [(0, 10), (1, 0)])
def test_invalid_pages_are_rejected(repository, page, page_size):
    with pytest.raises(ValidationError):
        repository.get_paginated_external_table_result(TABLE_ID, page, page_size)


# ----------------------------------------------------------------------
# Interactive filters and counts
# ----------------------------------------------------------------------


def test_filters_narrow_the_page(repository):
    rows = repository.get_paginated_external_table_result(
        TABLE_ID,
        1,
        10,
        filters=[Filter("direction", "OUT")],
        sort_column="prisoner_number",
    )
    assert [r["prisoner_number"] for r in rows] == ["B2345BB", "D4567DD", "E5678EE"]


def test_count(repository):
    assert repository.count(TABLE_ID) == len(MOVEMENT_ROWS)
    assert repository.count(TABLE_ID, [Filter("origin", "mdi")]) == 2
    assert (
        repository.count(
            TABLE_ID,
            [
                Filter("origin", "LEI"),
                Filter("is_closed", "true", FilterKind.BOOLEAN),
            ],
        )
        == 2
    )


def test_full_result(repository):
    rows = repository.get_full_external_table_result(TABLE_ID)
    assert sorted(r["prisoner_number"] for r in rows) == ORDERED_NUMBERS


# ----------------------------------------------------------------------
# Missing tables
# ----------------------------------------------------------------------


def test_reading_a_missing_table(repository):
    with pytest.raises(MissingTableError, match="Table reports._gone not found."):
        repository.get_full_external_table_result("_gone")


def test_is_table_missing(repository):
    assert not repository.is_table_missing(TABLE_ID)
    assert repository.is_table_missing("_gone")


def test_table_ids_are_validated_before_reading(repository, engine):
    with pytest.raises(ValidationError):
        repository.count("movements; DROP TABLE movements")
    with engine.connect() as conn:
        assert conn.execute(text("SELECT COUNT(1) FROM movements")).scalar() == 5


class _DriverError(Exception):
    def __init__(self, message, sqlstate=None):
        super().__init__(message)
        self.sqlstate = sqlstate


class FailingEngine:
    def __init__(self, orig):
        self.orig = orig

    def connect(self):
        raise ProgrammingError("SELECT ...", {}, self.orig)


def _failing_repository(orig):
    return RedshiftDataApiRepository(
        FakeRedshiftDataClient(),
        FailingEngine(orig),
        RedshiftContext(database="datamart", s3_location="bucket"),
    )


@pytest.mark.parametrize(
    "orig",
    [
        _DriverError("function lower(bigint) does not exist"),
        _DriverError('column "x" does not exist', sqlstate="42703"),
        _DriverError('relation "reports._other" does not exist'),
    ],
)
def test_other_missing_objects_are_not_missing_tables(orig):
    repository = _failing_repository(orig)
    with pytest.raises(ProgrammingError):
        repository.count("_existing_table", [Filter("prisoner_number", "a")])


@pytest.mark.parametrize(
    "orig",
    [
        _DriverError('relation "reports._existing_table" does not exist'),
        _DriverError("undefined table", sqlstate="42P01"),
    ],
)
def test_undefined_table_is_a_missing_table(orig):
    repository = _failing_repository(orig)
    with pytest.raises(MissingTableError):
        repository.count("_existing_table")
