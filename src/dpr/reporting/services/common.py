# src/dpr/reporting/services/common.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from dpr.reporting.core.config import settings
from dpr.reporting.core.errors import UserAuthorisationError, ValidationError
from dpr.reporting.definitions.models import Dataset, SingleReportProductDefinition
from dpr.reporting.security.models import UserContext
from dpr.reporting.security.policy import PolicyEngine
from dpr.reporting.services.formulas import FormulaEngine


def check_auth(
    definition: SingleReportProductDefinition, user: Optional[UserContext]
) -> None:
    if not PolicyEngine(definition.policies, user).is_permitted():
        raise UserAuthorisationError("User does not have correct authorisation")


def row_level_predicate(
    definition: SingleReportProductDefinition, user: Optional[UserContext]
) -> str:
    return PolicyEngine(definition.policies, user).execute()


def format_column_names(row: Mapping[str, Any], dataset: Dataset) -> Dict[str, Any]:
    """Restore the schema's column casing; engines may fold it."""
    names: List[str] = [f.name for f in dataset.schema_.field]
    by_lower = {n.lower(): n for n in names}
    formatted: Dict[str, Any] = {}
    for key, value in row.items():
        name = by_lower.get(key.lower())
        if name is None:
            raise ValidationError(f"The DPD is missing schema field: {key}.")
        formatted[name] = value
    return formatted


def format_columns_and_apply_formulas(
    rows: Iterable[Mapping[str, Any]], definition: SingleReportProductDefinition
) -> List[Dict[str, Any]]:
    specification = definition.report.specification
    engine = FormulaEngine(
        specification.field if specification else (), env=settings.formula_env
    )
    return [
        engine.apply_formulas(format_column_names(row, definition.report_dataset))
        for row in rows
    ]
