# src/dpr/reporting/query/validation.py
"""
Validation of caller-supplied filters, prompts and sort columns against a
report definition.

Raw filters arrive as a flat mapping of ``field``, ``field.start`` or
``field.end`` keys to string values. They are checked against the filter
definitions declared on the report specification or on the dataset schema
and mapped onto typed :class:`~dpr.reporting.query.filters.Filter` values.
"""
from __future__ import annotations

import logging
import re
from datetime import date
from typing import Dict, List, Mapping, Optional, Set, Tuple

from dpr.reporting.core.errors import ValidationError
from dpr.reporting.definitions.models import (
    Dataset,
    FilterDefinition,
    FilterType,
    ParameterType,
    SchemaField,
    SingleReportProductDefinition,
    strip_ref,
)
from dpr.reporting.query.composer import Prompt
from dpr.reporting.query.filters import (
    RANGE_END_SUFFIX,
    RANGE_START_SUFFIX,
    Filter,
    FilterKind,
)

logger = logging.getLogger(__name__)

INVALID_FILTERS_MESSAGE = "Invalid filters provided."
INVALID_STATIC_OPTIONS_MESSAGE = "Invalid static options provided."
INVALID_DYNAMIC_OPTIONS_MESSAGE = "Invalid dynamic options length provided."
INVALID_DYNAMIC_FILTER_MESSAGE = "Error. This filter is not a dynamic filter."
MISSING_MANDATORY_FILTER_MESSAGE = "Mandatory filter value not provided:"
FILTER_VALUE_DOES_NOT_MATCH_PATTERN_MESSAGE = "Filter value does not match pattern:"
MISSING_RANGE_SUFFIX_MESSAGE = "Range filters require a .start or .end suffix:"


def truncate_based_on_suffix(key: str) -> str:
    for suffix in (RANGE_START_SUFFIX, RANGE_END_SUFFIX):
        if key.endswith(suffix):
            return key[: -len(suffix)]
    return key


def _schema_field(dataset: Dataset, name: str) -> Optional[SchemaField]:
    return next((f for f in dataset.schema_.field if f.name == name), None)


def find_filter_definition(
    definition: SingleReportProductDefinition, name: str
) -> Optional[FilterDefinition]:
    """Report field filters take precedence over schema field filters."""
    spec = definition.report.specification
    if spec is not None:
        for report_field in spec.field:
            if report_field.column == name and report_field.filter is not None:
                return report_field.filter
    schema_field = _schema_field(definition.report_dataset, name)
    return schema_field.filter if schema_field is not None else None


def _filter_definitions(
    definition: SingleReportProductDefinition,
) -> Dict[str, FilterDefinition]:
    names: List[str] = []
    if definition.report.specification is not None:
        names.extend(f.column for f in definition.report.specification.field)
    names.extend(f.name for f in definition.report_dataset.schema_.field)

    definitions: Dict[str, FilterDefinition] = {}
    for name in names:
        if name in definitions:
            continue
        fd = find_filter_definition(definition, name)
        if fd is not None:
            definitions[name] = fd
    return definitions


def _at_stage(fd: FilterDefinition, interactive: Optional[bool]) -> bool:
    return interactive is None or bool(fd.interactive) == interactive


def check_mandatory_filters(
    definition: SingleReportProductDefinition,
    filters: Mapping[str, str],
    interactive: Optional[bool] = None,
) -> None:
    provided = {truncate_based_on_suffix(k) for k in filters}
    for name, fd in _filter_definitions(definition).items():
        if fd.mandatory and _at_stage(fd, interactive) and name not in provided:
            raise ValidationError(f"{MISSING_MANDATORY_FILTER_MESSAGE} {name}")
        if (
            interactive is not None
            and name in provided
            and bool(fd.interactive) != interactive
        ):
            raise ValidationError(
                "Filter provided for wrong stage. Expected stage: "
                f"interactive={interactive}, filter stage: "
                f"interactive={bool(fd.interactive)}, field name: {name}"
            )


def _validate_schema_type(dataset: Dataset, key: str, value: str) -> None:
    schema_field = _schema_field(dataset, key)
    if schema_field is None:
        return
    if schema_field.type in (ParameterType.LONG, ParameterType.INTEGER):
        try:
            int(value)
        except ValueError:
            raise ValidationError(
                f"Invalid value {value} for filter {key}. "
                "Cannot be parsed as a number."
            )
    elif schema_field.type == ParameterType.DATE:
        try:
            date.fromisoformat(value)
        except ValueError:
            raise ValidationError(
                f"Invalid value {value} for filter {key}. Cannot be parsed as a date."
            )
    elif schema_field.type == ParameterType.BOOLEAN:
        if value.lower() not in ("true", "false"):
            raise ValidationError(
                f"Invalid value {value} for filter {key}. "
                "Cannot be parsed as a boolean."
            )


def _validate_value(
    dataset: Dataset,
    fd: FilterDefinition,
    name: str,
    value: str,
    skip_pattern: bool = False,
) -> None:
    _validate_schema_type(dataset, name, value)
    if fd.static_options is not None and not any(
        o.name.lower() == value.lower() for o in fd.static_options
    ):
        raise ValidationError(INVALID_STATIC_OPTIONS_MESSAGE)
    if fd.pattern is not None and not skip_pattern:
        if re.fullmatch(fd.pattern, value) is None:
            raise ValidationError(
                f"{FILTER_VALUE_DOES_NOT_MATCH_PATTERN_MESSAGE} {value} {fd.pattern}"
            )


def _map_kind(
    fd: FilterDefinition, key: str, truncated_key: str, dataset: Dataset
) -> FilterKind:
    has_start = key.endswith(RANGE_START_SUFFIX)
    has_end = key.endswith(RANGE_END_SUFFIX)

    if fd.type == FilterType.DATE_RANGE:
        if has_start:
            return FilterKind.DATE_RANGE_START
        if has_end:
            return FilterKind.DATE_RANGE_END
        raise ValidationError(f"{MISSING_RANGE_SUFFIX_MESSAGE} {key}")

    if has_start:
        return FilterKind.RANGE_START
    if has_end:
        return FilterKind.RANGE_END

    schema_field = _schema_field(dataset, truncated_key)
    if schema_field is not None and schema_field.type == ParameterType.BOOLEAN:
        return FilterKind.BOOLEAN
    return FilterKind.STANDARD


def validate_and_map_filters(
    definition: SingleReportProductDefinition,
    filters: Mapping[str, str],
    interactive: Optional[bool] = None,
    dynamic_field_ids: Optional[Set[str]] = None,
) -> List[Filter]:
    """Map raw filters onto typed filters, rejecting anything undeclared.

    ``dynamic_field_ids`` names the fields being searched by a dynamic
    (typeahead) request; their pattern is not enforced and mandatory filters
    are not required.
    """
    if dynamic_field_ids is None:
        check_mandatory_filters(definition, filters, interactive)

    dataset = definition.report_dataset
    validated: List[Filter] = []
    for key, value in filters.items():
        truncated_key = truncate_based_on_suffix(key)
        fd = find_filter_definition(definition, truncated_key)
        if fd is None:
            logger.info("Rejecting undeclared filter %s", key)
            raise ValidationError(INVALID_FILTERS_MESSAGE)

        kind = _map_kind(fd, key, truncated_key, dataset)
        _validate_value(
            dataset,
            fd,
            truncated_key,
            value,
            skip_pattern=bool(dynamic_field_ids and truncated_key in dynamic_field_ids),
        )
        validated.append(Filter(field=truncated_key, value=value, kind=kind))
    return validated


def build_dynamic_filter(
    definition: SingleReportProductDefinition, field_id: str, prefix: str
) -> Filter:
    fd = find_filter_definition(definition, field_id)
    if fd is None:
        raise ValidationError(INVALID_FILTERS_MESSAGE)
    if fd.dynamic_options is None:
        raise ValidationError(INVALID_DYNAMIC_FILTER_MESSAGE)
    minimum = fd.dynamic_options.minimum_length
    if minimum is not None and len(prefix) < minimum:
        raise ValidationError(INVALID_DYNAMIC_OPTIONS_MESSAGE)
    return Filter(field=field_id, value=prefix, kind=FilterKind.DYNAMIC)


def partition_prompts_and_filters(
    definition: SingleReportProductDefinition, filters: Mapping[str, str]
) -> Tuple[List[Prompt], Dict[str, str]]:
    """Split raw entries into dataset parameter prompts and report filters."""
    parameter_names = {p.name for p in definition.report_dataset.parameters}
    prompts = [Prompt(name=k, value=v) for k, v in filters.items() if k in parameter_names]
    remaining = {k: v for k, v in filters.items() if k not in parameter_names}
    return prompts, remaining


def resolve_sort(
    definition: SingleReportProductDefinition,
    sort_column: Optional[str],
    sorted_asc: Optional[bool],
) -> Tuple[Optional[str], bool]:
    """Return the validated sort column and direction.

    Without an explicit column, the first report field flagged ``defaultsort``
    is used.
    """
    if sort_column is not None:
        if _schema_field(definition.report_dataset, sort_column) is None:
            raise ValidationError(f"Invalid sortColumn provided: {sort_column}")
        return sort_column, True if sorted_asc is None else sorted_asc

    spec = definition.report.specification
    default = None
    if spec is not None:
        default = next((f for f in spec.field if f.defaultsort), None)
    if default is None:
        return None, True if sorted_asc is None else sorted_asc
    return strip_ref(default.name), True if sorted_asc is None else sorted_asc
