# src/dpr/reporting/services/formulas.py
"""
Report field formulas, applied to every result row.

A report field may carry a ``formula`` computed from the other columns of the
row, which are referenced as ``${column}``:

    make_url(href, link text, new tab)
    format_date(${column}, 'dd/MM/yyyy')
    format_number(${column}, '#,##0.00')
    default_value(${column}, 'fallback')
    lower(...), upper(...), wordcap(...), proper(...)

Anything else is a plain template. Date and number patterns use the
``DecimalFormat`` / ``DateTimeFormatter`` notation the definitions are
written in.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from dpr.reporting.core.errors import DefinitionError
from dpr.reporting.definitions.models import ReportField

MAKE_URL = "make_url("
FORMAT_DATE = "format_date("
FORMAT_NUMBER = "format_number("
DEFAULT_VALUE = "default_value("
LOWER = "lower("
UPPER = "upper("
WORDCAP = "wordcap("
PROPER = "proper("

ENV_PLACEHOLDER = "${env}"

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")
_DATE_TOKEN = re.compile(r"'[^']*'|([A-Za-z])\1*|.")
_NUMBER_PATTERN = re.compile(r"^(.*?)([#0,]+(?:\.[#0]+)?)(.*)$")


def interpolate(template: str, row: Mapping[str, Any]) -> str:
    def _value(match: re.Match) -> str:
        name = match.group(1)
        if name not in row:
            return match.group(0)
        value = row[name]
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_value, template)


def _arguments(formula: str, prefix: str, maxsplit: int = -1) -> List[str]:
    return formula[len(prefix) : formula.index(")")].split(",", maxsplit)


def _unquote(value: str) -> str:
    value = value.strip()
    for quote in ("'", '"'):
        if len(value) >= 2 and value[0] == quote and value[-1] == quote:
            return value[1:-1]
    return value


def _column(placeholder: str) -> str:
    placeholder = placeholder.strip()
    match = _PLACEHOLDER.fullmatch(placeholder)
    return match.group(1) if match else placeholder


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    raise DefinitionError(f"Could not parse date: {value}, of type {type(value).__name__}")


def format_date(value: Any, pattern: str) -> str:
    """Format a date with a ``DateTimeFormatter`` style pattern."""
    moment = _as_datetime(value)
    out = []
    for match in _DATE_TOKEN.finditer(pattern):
        token = match.group(0)
        letter, width = token[0], len(token)
        if letter == "'":
            out.append(token[1:-1] or "'")
        elif letter in ("y", "u"):
            out.append(f"{moment.year % 100:02d}" if width == 2 else str(moment.year).zfill(width))
        elif letter in ("M", "L"):
            if width >= 4:
                out.append(moment.strftime("%B"))
            elif width == 3:
                out.append(moment.strftime("%b"))
            else:
                out.append(str(moment.month).zfill(width))
        elif letter == "d":
            out.append(str(moment.day).zfill(width))
        elif letter == "H":
            out.append(str(moment.hour).zfill(width))
        elif letter == "h":
            out.append(str(moment.hour % 12 or 12).zfill(width))
        elif letter == "m":
            out.append(str(moment.minute).zfill(width))
        elif letter == "s":
            out.append(str(moment.second).zfill(width))
        elif letter == "a":
            out.append(moment.strftime("%p"))
        elif letter == "E":
            out.append(moment.strftime("%A" if width >= 4 else "%a"))
        else:
            out.append(token)
    return "".join(out)


def format_number(value: Any, pattern: str) -> str:
    """Format a number with a ``DecimalFormat`` style pattern such as ``#,##0.00``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise DefinitionError(
                f"Could not parse number: {value}, of type {type(value).__name__}"
            ) from None

    match = _NUMBER_PATTERN.match(pattern)
    if match is None:
        return str(value)
    prefix, number, suffix = match.groups()
    integer_part, _, fraction = number.partition(".")
    grouping = "," if "," in integer_part else ""
    minimum = fraction.count("0")
    maximum = len(fraction)

    text = f"{value:{grouping}.{maximum}f}"
    if maximum > minimum:
        whole, _, decimals = text.partition(".")
        decimals = decimals.rstrip("0").ljust(minimum, "0")
        text = f"{whole}.{decimals}" if decimals else whole
    return f"{prefix}{text}{suffix}"


def _proper(text: str) -> str:
    return " ".join(word[:1].upper() + word[1:].lower() for word in text.split(" "))


class FormulaEngine:
    """Evaluates the formulas of a report's fields against result rows."""

    def __init__(self, report_fields: Iterable[ReportField], env: Optional[str] = None):
        self.env = env
        self.formulas: Dict[str, str] = {
            f.column: f.formula for f in report_fields if f.formula
        }
        self._handlers = (
            (MAKE_URL, self._make_url),
            (FORMAT_DATE, self._format_date),
            (FORMAT_NUMBER, self._format_number),
            (DEFAULT_VALUE, self._default_value),
            (LOWER, lambda f, row: interpolate(_arguments(f, LOWER, 0)[0], row).lower()),
            (UPPER, lambda f, row: interpolate(_arguments(f, UPPER, 0)[0], row).upper()),
            (WORDCAP, lambda f, row: _proper(interpolate(_arguments(f, WORDCAP, 0)[0], row))),
            (PROPER, lambda f, row: _proper(interpolate(_arguments(f, PROPER, 0)[0], row))),
        )

    def apply_formulas(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        if not self.formulas:
            return dict(row)
        return {
            key: self.evaluate(self.formulas[key], row) if key in self.formulas else value
            for key, value in row.items()
        }

    def evaluate(self, formula: str, row: Mapping[str, Any]) -> str:
        for prefix, handler in self._handlers:
            if formula.startswith(prefix):
                return handler(formula, row)
        return interpolate(formula, row)

    def _make_url(self, formula: str, row: Mapping[str, Any]) -> str:
        if self.env is not None:
            formula = formula.replace(ENV_PLACEHOLDER, self.env)
        else:
            formula = formula.replace("-" + ENV_PLACEHOLDER, "")
        href, link_text, new_tab = _arguments(formula, MAKE_URL, 2)
        target = 'target="_blank"' if new_tab.strip().upper() == "TRUE" else ""
        return (
            f"<a href={interpolate(href.strip(), row)} {target}>"
            f"{interpolate(link_text.strip(), row)}</a>"
        )

    def _format_date(self, formula: str, row: Mapping[str, Any]) -> str:
        column, pattern = _arguments(formula, FORMAT_DATE, 1)
        value = row.get(_column(column))
        if value is None:
            return ""
        return format_date(value, _unquote(pattern))

    def _format_number(self, formula: str, row: Mapping[str, Any]) -> str:
        column, pattern = _arguments(formula, FORMAT_NUMBER, 1)
        value = row.get(_column(column))
        if value is None:
            return ""
        return format_number(value, _unquote(pattern))

    def _default_value(self, formula: str, row: Mapping[str, Any]) -> str:
        checked, default = _arguments(formula, DEFAULT_VALUE, 1)
        value = interpolate(checked, row)
        return value if value.strip() else _unquote(default)
