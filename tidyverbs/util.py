from __future__ import annotations

import difflib
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from tidyverbs.errors import InvalidColumnReference


class _NAType:
    """The missing-value marker. There is exactly one instance, ``NA``."""

    __slots__ = ()
    _instance: Optional["_NAType"] = None

    def __new__(cls) -> "_NAType":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NA"

    def __reduce__(self):
        return (_NAType, ())

    def __copy__(self) -> "_NAType":
        return self

    def __deepcopy__(self, memo: Dict[int, Any]) -> "_NAType":
        return self


NA = _NAType()

DTYPES = ("numeric", "string", "categorical", "boolean", "date", "any")

# frictionless-ish names used by Table.schema()
_SCHEMA_TYPES = {
    "numeric": "number",
    "string": "string",
    "categorical": "string",
    "boolean": "boolean",
    "date": "date",
    "any": "any",
}


def to_na(v: Any) -> Any:
    """Map Python's None to NA; everything else is returned unchanged."""
    return NA if v is None else v


def from_na(v: Any) -> Any:
    return None if v is NA else v


def value_kind(v: Any) -> Optional[str]:
    """Return the dtype a single non-missing value belongs to (None for NA)."""
    if v is NA:
        return None
    if isinstance(v, bool):
        return "boolean"
    if isinstance(v, (int, float)):
        return "numeric"
    if isinstance(v, str):
        return "string"
    if isinstance(v, (date, datetime)):
        return "date"
    return "any"


def infer_dtype(values: Iterable[Any]) -> str:
    """Infer a column dtype from its values.

    Returns 'any' for an all-missing column and 'mixed' when non-missing values
    disagree; callers decide whether 'mixed' is an error.
    """
    seen: Optional[str] = None
    for v in values:
        k = value_kind(v)
        if k is None:
            continue
        if seen is None:
            seen = k
        elif seen != k:
            return "mixed"
    return seen or "any"


def schema_type(dtype: str) -> str:
    return _SCHEMA_TYPES.get(dtype, "any")


def comparable_kind(dtype: str) -> str:
    """Collapse dtypes into the families that can be compared with each other."""
    if dtype == "categorical":
        return "string"
    return dtype


def suggest_column(name: str, columns: Sequence[str], *, what: str = "columns") -> str:
    matches = difflib.get_close_matches(name, list(columns), n=3, cutoff=0.6)
    if matches:
        return f"Did you mean {matches[0]!r}?"
    return f"Available {what}: " + ", ".join(columns)


def check_columns(
    names: Iterable[str],
    columns: Sequence[str],
    *,
    verb: str,
    code: str = "E_UNKNOWN_COL",
) -> None:
    """Raise InvalidColumnReference for the first name not present in `columns`."""
    colset = set(columns)
    missing: List[str] = [n for n in names if n not in colset]
    if missing:
        raise InvalidColumnReference(
            code,
            f"{verb} refers to column(s) not present in the table: {missing}.",
            hint=suggest_column(missing[0], columns),
        )


def unique_name(name: str, taken: Iterable[str], suffix: str) -> str:
    """Append `suffix` to `name` until it no longer collides with `taken`."""
    taken = set(taken)
    out = name + suffix
    while out in taken:
        out += suffix
    return out


def format_value(v: Any) -> str:
    if v is NA:
        return "NA"
    if isinstance(v, float):
        if v.is_integer():
            return str(int(v)) if abs(v) < 1e15 else repr(v)
        return f"{v:.6g}"
    if isinstance(v, bool):
        return "TRUE" if v else "FALSE"
    if isinstance(v, (date, datetime)):
        return v.isoformat()
    return str(v)
