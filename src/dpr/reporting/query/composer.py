# src/dpr/reporting/query/composer.py
"""
Staged CTE query composition.

A report query is an ordered chain of named CTE stages:

    context_ -> prompt_ -> dataset_ -> report_ -> policy_ -> filter_ -> final

``context_`` and ``prompt_`` are only emitted when there is a user or a prompt
to expose, ``report_`` only when the report declares a filter. The policy
stage always precedes the filter stage, so caller filters can narrow but never
widen the rows a user is allowed to see.

Pipelines are only built through :func:`compose_query` and
:func:`compose_count_query`.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from dpr.reporting.core.errors import ValidationError
from dpr.reporting.definitions.models import SqlDialect
from dpr.reporting.query.filters import (
    Filter,
    KeyTransformer,
    build_conditions,
    quote_literal,
)
from dpr.reporting.security.models import UserContext

logger = logging.getLogger(__name__)

CONTEXT_ = "context_"
PROMPT_ = "prompt_"
DATASET_ = "dataset_"
REPORT_ = "report_"
POLICY_ = "policy_"
FILTER_ = "filter_"

TRUE_WHERE_CLAUSE = "TRUE"

_DATASET_DECLARED = re.compile(rf"\b{DATASET_}\s+AS\b", re.IGNORECASE)
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class Prompt:
    """A dataset parameter value exposed to the dataset query as ``prompt_.<name>``."""

    name: str
    value: str


@dataclass(frozen=True)
class CteStage:
    name: str
    body: str
    # raw stages are emitted verbatim, without the "<name> AS (...)" wrapper
    raw: bool = False

    def render(self) -> str:
        if self.raw:
            return self.body
        return f"{self.name} AS ({self.body})"


@dataclass
class QueryPipeline:
    stages: List[CteStage] = field(default_factory=list)
    final: str = ""

    @property
    def last_stage(self) -> str:
        return self.stages[-1].name

    def add(self, stage: CteStage) -> "QueryPipeline":
        self.stages.append(stage)
        return self

    def render(self) -> str:
        ctes = ",\n".join(stage.render() for stage in self.stages)
        return f"WITH {ctes}\n{self.final}"


def check_identifier(name: str, what: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValidationError(f"Invalid {what}: {name}")
    return name


def _from_dual(dialect: Optional[SqlDialect]) -> str:
    # Oracle rejects a SELECT without a FROM clause
    return " FROM DUAL" if dialect == SqlDialect.ORACLE11G else ""


def _context_stage(user: UserContext, dialect: Optional[SqlDialect]) -> CteStage:
    username = quote_literal(user.username or "")
    caseload = quote_literal(user.active_caseload or "")
    return CteStage(
        CONTEXT_,
        f"SELECT {username} AS username, {caseload} AS caseload, "
        f"'GENERAL' AS account_type{_from_dual(dialect)}",
    )


def _prompt_stage(
    prompts: Sequence[Prompt], dialect: Optional[SqlDialect]
) -> CteStage:
    columns = ", ".join(
        f"{quote_literal(p.value)} AS {check_identifier(p.name, 'prompt name')}"
        for p in prompts
    )
    return CteStage(PROMPT_, f"SELECT {columns}{_from_dual(dialect)}")


def _dataset_stage(query: str) -> CteStage:
    if _DATASET_DECLARED.search(query):
        return CteStage(DATASET_, query, raw=True)
    return CteStage(DATASET_, query)


def _base_pipeline(
    dataset_query: str,
    policy_predicate: str,
    filters: Sequence[Filter],
    *,
    report_filter: Optional[str],
    prompts: Optional[Sequence[Prompt]],
    user: Optional[UserContext],
    key_transformer: Optional[KeyTransformer],
    literal: bool,
    dialect: Optional[SqlDialect],
) -> QueryPipeline:
    pipeline = QueryPipeline()
    if user is not None:
        pipeline.add(_context_stage(user, dialect))
    if prompts:
        pipeline.add(_prompt_stage(prompts, dialect))
    pipeline.add(_dataset_stage(dataset_query))
    if report_filter:
        pipeline.add(CteStage(REPORT_, f"SELECT * FROM {DATASET_} WHERE {report_filter}"))

    pipeline.add(
        CteStage(
            POLICY_,
            f"SELECT * FROM {pipeline.last_stage} WHERE {policy_predicate}",
        )
    )

    conditions = build_conditions(filters, key_transformer, literal=literal)
    where = " AND ".join(conditions) or TRUE_WHERE_CLAUSE
    pipeline.add(CteStage(FILTER_, f"SELECT * FROM {POLICY_} WHERE {where}"))
    return pipeline


def _final_stage(
    *,
    selected_field: Optional[str],
    sort_column: Optional[str],
    sort_asc: bool,
    page: Optional[int],
    page_size: Optional[int],
) -> str:
    projection = "*"
    if selected_field is not None:
        projection = f"DISTINCT {check_identifier(selected_field, 'field')}"

    parts = [f"SELECT {projection} FROM {FILTER_}"]
    if sort_column:
        direction = "asc" if sort_asc else "desc"
        parts.append(f"ORDER BY {check_identifier(sort_column, 'sortColumn')} {direction}")

    if page is not None or page_size is not None:
        if page is None or page_size is None or page < 1 or page_size < 1:
            raise ValidationError(
                f"Invalid pagination: page={page}, pageSize={page_size}"
            )
        parts.append(f"LIMIT {page_size} OFFSET {(page - 1) * page_size}")

    return " ".join(parts)


def compose_query(
    dataset_query: str,
    policy_predicate: str,
    filters: Sequence[Filter] = (),
    *,
    report_filter: Optional[str] = None,
    prompts: Optional[Sequence[Prompt]] = None,
    user: Optional[UserContext] = None,
    selected_field: Optional[str] = None,
    sort_column: Optional[str] = None,
    sort_asc: bool = True,
    page: Optional[int] = None,
    page_size: Optional[int] = None,
    key_transformer: Optional[KeyTransformer] = None,
    literal: bool = False,
    dialect: Optional[SqlDialect] = None,
) -> str:
    """Compose the full report statement.

    ``selected_field`` switches the final projection to ``DISTINCT <field>``,
    used for dynamic filter values. ``page`` and ``page_size`` must be given
    together and be at least 1. An Oracle ``dialect`` selects the context and
    prompt values ``FROM DUAL``.
    """
    pipeline = _base_pipeline(
        dataset_query,
        policy_predicate,
        filters,
        report_filter=report_filter,
        prompts=prompts,
        user=user,
        key_transformer=key_transformer,
        literal=literal,
        dialect=dialect,
    )
    pipeline.final = _final_stage(
        selected_field=selected_field,
        sort_column=sort_column,
        sort_asc=sort_asc,
        page=page,
        page_size=page_size,
    )
    sql = pipeline.render()
    logger.debug("Composed query: %s", sql)
    return sql


def compose_count_query(
    dataset_query: str,
    policy_predicate: str,
    filters: Sequence[Filter] = (),
    *,
    report_filter: Optional[str] = None,
    prompts: Optional[Sequence[Prompt]] = None,
    user: Optional[UserContext] = None,
    key_transformer: Optional[KeyTransformer] = None,
    literal: bool = False,
    dialect: Optional[SqlDialect] = None,
) -> str:
    pipeline = _base_pipeline(
        dataset_query,
        policy_predicate,
        filters,
        report_filter=report_filter,
        prompts=prompts,
        user=user,
        key_transformer=key_transformer,
        literal=literal,
        dialect=dialect,
    )
    pipeline.final = f"SELECT COUNT(1) AS total FROM {FILTER_}"
    sql = pipeline.render()
    logger.debug("Composed count query: %s", sql)
    return sql
