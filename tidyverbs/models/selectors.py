from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence, Union

from tidyverbs.errors import InvalidColumnReference, TidyUserError
from tidyverbs.util import suggest_column


class Selector:
    """Base class for column selection rules. `match` returns names in table order."""

    negated = False

    def match(self, columns: Sequence[str], *, verb: str) -> List[str]:
        raise NotImplementedError

    def __neg__(self) -> "Selector":
        return Exclude(self)

    def __invert__(self) -> "Selector":
        return Exclude(self)


@dataclass(frozen=True)
class Name(Selector):
    name: str

    def match(self, columns: Sequence[str], *, verb: str) -> List[str]:
        if self.name not in columns:
            raise InvalidColumnReference(
                f"E_{verb.upper()}_UNKNOWN_COL",
                f"{verb} refers to a column not present in the table: {self.name!r}.",
                hint=suggest_column(self.name, columns),
            )
        return [self.name]


@dataclass(frozen=True)
class Range(Selector):
    """Contiguous columns from `start` to `stop` (inclusive) in declared order."""

    start: str
    stop: str

    def match(self, columns: Sequence[str], *, verb: str) -> List[str]:
        cols = list(columns)
        for name in (self.start, self.stop):
            Name(name).match(cols, verb=verb)
        i, j = cols.index(self.start), cols.index(self.stop)
        if i <= j:
            return cols[i: j + 1]
        return cols[j: i + 1][::-1]


@dataclass(frozen=True)
class StartsWith(Selector):
    prefix: str

    def match(self, columns: Sequence[str], *, verb: str) -> List[str]:
        return [c for c in columns if c.startswith(self.prefix)]


@dataclass(frozen=True)
class EndsWith(Selector):
    suffix: str

    def match(self, columns: Sequence[str], *, verb: str) -> List[str]:
        return [c for c in columns if c.endswith(self.suffix)]


@dataclass(frozen=True)
class Contains(Selector):
    text: str

    def match(self, columns: Sequence[str], *, verb: str) -> List[str]:
        return [c for c in columns if self.text in c]


@dataclass(frozen=True)
class Matches(Selector):
    pattern: str

    def match(self, columns: Sequence[str], *, verb: str) -> List[str]:
        try:
            rx = re.compile(self.pattern)
        except re.error as e:
            raise TidyUserError(
                f"E_{verb.upper()}_PATTERN",
                f"Invalid regular expression {self.pattern!r}: {e}.",
                hint="Example: matches(r'^ph_\\d+$')",
            ) from e
        return [c for c in columns if rx.search(c)]


@dataclass(frozen=True)
class Everything(Selector):
    def match(self, columns: Sequence[str], *, verb: str) -> List[str]:
        return list(columns)


@dataclass(frozen=True)
class Exclude(Selector):
    inner: Selector
    negated = True

    def match(self, columns: Sequence[str], *, verb: str) -> List[str]:
        return self.inner.match(columns, verb=verb)


SelectSpec = Union[str, Selector, Sequence[Union[str, Selector]]]


def starts_with(prefix: str) -> Selector:
    return StartsWith(prefix)


def ends_with(suffix: str) -> Selector:
    return EndsWith(suffix)


def contains(text: str) -> Selector:
    return Contains(text)


def matches(pattern: str) -> Selector:
    return Matches(pattern)


def everything() -> Selector:
    return Everything()


def col_range(start: str, stop: str) -> Selector:
    return Range(start, stop)


def exclude(*specs: SelectSpec) -> List[Selector]:
    return [Exclude(s) for s in _flatten(specs, ())]


def _from_string(spec: str, columns: Sequence[str]) -> Selector:
    if spec in columns:
        return Name(spec)
    if spec.startswith("-") and len(spec) > 1:
        return Exclude(_from_string(spec[1:], columns))
    if ":" in spec:
        a, _, b = spec.partition(":")
        if a and b:
            return Range(a.strip(), b.strip())
    return Name(spec)


def _flatten(specs: Iterable[Any], columns: Sequence[str]) -> List[Selector]:
    out: List[Selector] = []
    for s in specs:
        if isinstance(s, Selector):
            out.append(s)
        elif isinstance(s, str):
            out.append(_from_string(s, columns))
        elif isinstance(s, (list, tuple)):
            out.extend(_flatten(s, columns))
        else:
            raise TidyUserError(
                "E_SELECT_SPEC",
                f"Unsupported column selection {s!r}.",
                hint="Use column names, 'a:c' ranges, '-name', or starts_with()/ends_with()/contains()/matches().",
            )
    return out


def resolve_columns(columns: Sequence[str], specs: Iterable[Any], *, verb: str = "select") -> List[str]:
    """Resolve selection specs to an ordered list of column names.

    Each rule adds its matches in table order unless already selected; negated
    rules remove. A leading negation starts from every column.
    """
    rules = _flatten(specs, columns)
    chosen: Dict[str, None] = {}
    for i, rule in enumerate(rules):
        names = rule.match(columns, verb=verb)
        if rule.negated:
            if i == 0:
                chosen = dict.fromkeys(columns)
            for n in names:
                chosen.pop(n, None)
        else:
            for n in names:
                chosen.setdefault(n, None)
    return list(chosen)


def single_column(columns: Sequence[str], spec: Any, *, verb: str) -> str:
    names = resolve_columns(columns, [spec], verb=verb)
    if len(names) != 1:
        raise TidyUserError(
            f"E_{verb.upper()}_PARAMS",
            f"{verb} expects exactly one column for {spec!r}, got {names}.",
            hint="Name a single column.",
        )
    return names[0]
