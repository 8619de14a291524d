# src/dpr/reporting/query/filters.py
"""
Typed filter descriptors and their SQL predicates.

Every predicate is a pure function of ``(field, value, kind)``. Two renderings
exist:

- bound: values are referenced as ``:key`` named parameters and supplied
  separately through :func:`build_query_params`;
- literal: values are substituted as quoted SQL literals, for engines that
  take a single SQL string.

DYNAMIC (prefix) filters are always rendered inline.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlglot import exp

KeyTransformer = Callable[[str], str]

RANGE_START_SUFFIX = ".start"
RANGE_END_SUFFIX = ".end"


class FilterKind(Enum):
    STANDARD = "standard"
    RANGE_START = "range_start"
    RANGE_END = "range_end"
    DATE_RANGE_START = "date_range_start"
    DATE_RANGE_END = "date_range_end"
    DYNAMIC = "dynamic"
    BOOLEAN = "boolean"

    @property
    def suffix(self) -> str:
        if self in (FilterKind.RANGE_START, FilterKind.DATE_RANGE_START):
            return RANGE_START_SUFFIX
        if self in (FilterKind.RANGE_END, FilterKind.DATE_RANGE_END):
            return RANGE_END_SUFFIX
        return ""


@dataclass(frozen=True)
class Filter:
    field: str
    value: str
    kind: FilterKind = FilterKind.STANDARD

    @property
    def key(self) -> str:
        return (self.field + self.kind.suffix).lower()


def underscore_keys(key: str) -> str:
    """Parameter name transformer for drivers that reject dots in names."""
    return key.replace(".", "_")


def quote_literal(value: str) -> str:
    return exp.Literal.string(value).sql()


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


def _param_name(f: Filter, key_transformer: Optional[KeyTransformer]) -> str:
    return key_transformer(f.key) if key_transformer else f.key


def build_condition(
    f: Filter,
    key_transformer: Optional[KeyTransformer] = None,
    *,
    literal: bool = False,
) -> str:
    """Return the SQL predicate for one filter."""
    if f.kind is FilterKind.DYNAMIC:
        return f"{f.field} ILIKE {quote_literal(f.value + '%')}"

    if f.kind is FilterKind.BOOLEAN:
        if literal:
            return f"{f.field} = {'TRUE' if parse_bool(f.value) else 'FALSE'}"
        return f"{f.field} = :{_param_name(f, key_transformer)}"

    if literal:
        placeholder = quote_literal(f.value.lower())
    else:
        placeholder = f":{_param_name(f, key_transformer)}"

    if f.kind is FilterKind.STANDARD:
        return f"lower({f.field}) = {placeholder}"
    if f.kind is FilterKind.RANGE_START:
        return f"lower({f.field}) >= {placeholder}"
    if f.kind is FilterKind.RANGE_END:
        return f"lower({f.field}) <= {placeholder}"

    # date values are not lower-cased in literal form
    if literal:
        placeholder = quote_literal(f.value)
    if f.kind is FilterKind.DATE_RANGE_START:
        return f"{f.field} >= CAST({placeholder} AS timestamp)"
    if f.kind is FilterKind.DATE_RANGE_END:
        return f"{f.field} < CAST({placeholder} AS timestamp) + INTERVAL '1 day'"

    raise ValueError(f"Unsupported filter kind: {f.kind}")


def build_conditions(
    filters: Iterable[Filter],
    key_transformer: Optional[KeyTransformer] = None,
    *,
    literal: bool = False,
) -> List[str]:
    return [build_condition(f, key_transformer, literal=literal) for f in filters]


def build_query_params(
    filters: Iterable[Filter],
    key_transformer: Optional[KeyTransformer] = None,
) -> Dict[str, Any]:
    """Bound parameter values for the filters rendered in bound form."""
    params: Dict[str, Any] = {}
    for f in filters:
        if f.kind is FilterKind.DYNAMIC:
            continue
        name = _param_name(f, key_transformer)
        if f.kind is FilterKind.BOOLEAN:
            params[name] = parse_bool(f.value)
        elif f.kind in (FilterKind.DATE_RANGE_START, FilterKind.DATE_RANGE_END):
            params[name] = f.value
        else:
            params[name] = f.value.lower()
    return params
