"""Row/column, derivation and ordering verbs.

Each verb takes a Table (or a GroupedTable, where grouping changes the
meaning) and returns a new one; inputs are never modified.
"""
from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from tidyverbs.config import VerbOptions, resolve_options
from tidyverbs.errors import DuplicateColumnName, InsufficientRows, InvalidColumnReference, TidyUserError
from tidyverbs.models.expr import ExprLike, compile_expr, evaluate
from tidyverbs.models.grouping import GroupedTable, TableLike, named_expressions, regroup
from tidyverbs.models.selectors import exclude, resolve_columns
from tidyverbs.models.table import Column, Table
from tidyverbs.util import NA, check_columns, suggest_column

logger = logging.getLogger(__name__)


def _split(table: TableLike) -> Tuple[Table, Optional[GroupedTable]]:
    if isinstance(table, GroupedTable):
        return table.table, table
    return table, None


def _index_groups(base: Table, grouped: Optional[GroupedTable]) -> List[Tuple[int, ...]]:
    if grouped is None:
        return [tuple(range(base.nrows))]
    return [idx for _, idx in grouped.groups]


def _rewrap(grouped: Optional[GroupedTable], table: Table) -> TableLike:
    if grouped is None:
        return table
    return regroup(grouped, table)


def _broadcast(vals: List[Any], n: int) -> List[Any]:
    return vals * n if len(vals) == 1 and n != 1 else vals


# ---------------- filter ----------------

def filter(table: TableLike, *predicates: ExprLike, options: Optional[VerbOptions] = None) -> TableLike:
    """Keep rows where every predicate is true; NA and false both drop the row.

    ``filter(t, "val > 15")``. On a GroupedTable, aggregates inside the
    predicate are computed per group, e.g. ``"depth == max(depth)"``.
    """
    if not predicates:
        raise TidyUserError(
            "E_FILTER_PARAMS",
            "filter requires at least one predicate expression.",
            hint="Example: filter(t, \"age >= 30 and country == 'KE'\")",
        )
    opts = resolve_options(options)
    base, grouped = _split(table)
    exprs = [compile_expr(p, base.columns, verb="filter") for p in predicates]
    needed = {c for e in exprs for c in e.referenced_columns()}

    keep: List[int] = []
    for idx in _index_groups(base, grouped):
        env = {c: base.column(c).take(idx) for c in needed}
        mask = [True] * len(idx)
        for e in exprs:
            vals = _broadcast(evaluate(e, env, len(idx), verb="filter", strict=opts.strict_expressions), len(idx))
            for j, v in enumerate(vals):
                if v is NA or v is False:
                    mask[j] = False
                elif v is not True:
                    if opts.strict_expressions:
                        raise TidyUserError(
                            "E_FILTER_TYPE",
                            f"filter predicate {e.source!r} produced a non-boolean value {v!r}.",
                            hint="Predicates must be comparisons or boolean columns, e.g. 'depth > 30'.",
                        )
                    mask[j] = False
        keep.extend(i for i, m in zip(idx, mask) if m)
    keep.sort()
    return _rewrap(grouped, base.take(keep))


# ---------------- select / drop / relocate ----------------

def select(table: TableLike, *specs: Any) -> TableLike:
    """Keep the columns matched by `specs`, in the order they are matched.

    Specs are names, ``"a:c"`` ranges, ``"-name"`` exclusions and selector
    helpers such as ``starts_with("ph_")``. Grouping columns are always kept.
    """
    base, grouped = _split(table)
    if not specs:
        raise TidyUserError(
            "E_SELECT_PARAMS",
            "select requires at least one column specification.",
            hint="Example: select(t, 'site', 'depth') or select(t, '-notes')",
        )
    names = resolve_columns(base.columns, specs, verb="select")
    if grouped is not None:
        missing = [k for k in grouped.keys if k not in names]
        if missing:
            logger.info("select: adding missing grouping columns %s", missing)
            names = missing + names
    out = Table(tuple(base.column(n) for n in names))
    if grouped is None:
        return out
    return GroupedTable(out, grouped.keys, grouped.groups)


def drop(table: TableLike, *specs: Any) -> TableLike:
    """Remove the columns matched by `specs` (complement of select)."""
    if not specs:
        raise TidyUserError(
            "E_DROP_PARAMS",
            "drop requires at least one column specification.",
            hint="Example: drop(t, 'debug_col')",
        )
    return select(table, exclude(*specs))


def relocate(table: TableLike, *specs: Any, before: Optional[str] = None, after: Optional[str] = None) -> TableLike:
    """Move the selected columns to the front, or next to `before` / `after`."""
    base, grouped = _split(table)
    if before is not None and after is not None:
        raise TidyUserError(
            "E_RELOCATE_PARAMS",
            "relocate accepts before= or after=, not both.",
        )
    moved = resolve_columns(base.columns, specs, verb="relocate")
    anchor = before if before is not None else after
    if anchor is not None:
        check_columns([anchor], base.columns, verb="relocate", code="E_RELOCATE_UNKNOWN_COL")
        if anchor in moved:
            raise TidyUserError(
                "E_RELOCATE_PARAMS",
                f"relocate cannot place columns relative to {anchor!r}, which is being moved.",
            )
    rest = [c for c in base.columns if c not in moved]
    if anchor is None:
        order = moved + rest
    else:
        pos = rest.index(anchor) + (1 if after is not None else 0)
        order = rest[:pos] + moved + rest[pos:]
    out = Table(tuple(base.column(n) for n in order))
    if grouped is None:
        return out
    return GroupedTable(out, grouped.keys, grouped.groups)


# ---------------- distinct / slice / head / tail ----------------

def distinct(table: TableLike, *key_columns: str, keep_all: bool = True) -> TableLike:
    """First row for each distinct tuple of `key_columns` (all columns when none given)."""
    base, grouped = _split(table)
    keys = list(key_columns) or base.columns
    check_columns(keys, base.columns, verb="distinct", code="E_DISTINCT_UNKNOWN_COL")
    cols = [base.column(k).values for k in keys]
    seen = set()
    keep: List[int] = []
    for i in range(base.nrows):
        k = tuple(c[i] for c in cols)
        if k not in seen:
            seen.add(k)
            keep.append(i)
    out = base.take(keep)
    if key_columns and not keep_all:
        names = list(keys)
        if grouped is not None:
            names = [g for g in grouped.keys if g not in names] + names
        out = Table(tuple(out.column(n) for n in names))
    return _rewrap(grouped, out)


def _positions(positions: Iterable[Any]) -> List[int]:
    out: List[int] = []
    for p in positions:
        if isinstance(p, bool):
            raise TidyUserError(
                "E_SLICE_POSITIONS",
                f"slice positions must be integers, got {p!r}.",
                hint="Example: slice(t, 1, 3) or slice(t, range(1, 11))",
            )
        if isinstance(p, int):
            out.append(p)
        elif isinstance(p, (range, list, tuple)):
            out.extend(_positions(p))
        else:
            raise TidyUserError(
                "E_SLICE_POSITIONS",
                f"slice positions must be integers, got {p!r}.",
                hint="Example: slice(t, 1, 3) or slice(t, range(1, 11))",
            )
    return out


def _slice_indices(idx: Sequence[int], positions: List[int], policy: str) -> List[int]:
    n = len(idx)
    if all(p > 0 for p in positions):
        out = []
        for p in positions:
            if p <= n:
                out.append(idx[p - 1])
            elif policy == "error":
                raise TidyUserError(
                    "E_SLICE_RANGE",
                    f"slice position {p} is out of range for {n} row(s).",
                    hint="Positions are 1-based. Use VerbOptions(slice_out_of_range='drop') to ignore them.",
                )
        return out
    dropped = set()
    for p in positions:
        if -p <= n:
            dropped.add(-p - 1)
        elif policy == "error":
            raise TidyUserError(
                "E_SLICE_RANGE",
                f"slice position {p} is out of range for {n} row(s).",
                hint="Positions are 1-based. Use VerbOptions(slice_out_of_range='drop') to ignore them.",
            )
    return [i for j, i in enumerate(idx) if j not in dropped]


def slice(table: TableLike, *positions: Any, options: Optional[VerbOptions] = None) -> TableLike:
    """Rows at 1-based `positions`, in the order given.

    Negative positions exclude rows instead. Positions past the end are
    dropped silently unless ``slice_out_of_range='error'``. On a GroupedTable
    positions count within each group.
    """
    opts = resolve_options(options)
    pos = _positions(positions)
    if not pos:
        raise TidyUserError(
            "E_SLICE_POSITIONS",
            "slice requires at least one position.",
            hint="Example: slice(t, 1, 2, 3)",
        )
    if 0 in pos or (any(p > 0 for p in pos) and any(p < 0 for p in pos)):
        raise TidyUserError(
            "E_SLICE_POSITIONS",
            "slice positions must be all positive or all negative, and never 0.",
            hint=f"Got {pos}.",
        )
    base, grouped = _split(table)
    keep: List[int] = []
    for idx in _index_groups(base, grouped):
        keep.extend(_slice_indices(idx, pos, opts.slice_out_of_range))
    return _rewrap(grouped, base.take(keep))


def _count_param(n: Any, verb: str, code: Optional[str] = None) -> int:
    if isinstance(n, bool) or not isinstance(n, int) or n < 0:
        raise TidyUserError(
            code or f"E_{verb.upper()}_PARAMS",
            f"{verb} n must be a non-negative integer, got {n!r}.",
            hint=f"Example: {verb}(t, 5)",
        )
    return n


def head(table: TableLike, n: int = 5) -> TableLike:
    n = _count_param(n, "head")
    base, grouped = _split(table)
    keep = [i for idx in _index_groups(base, grouped) for i in idx[:n]]
    return _rewrap(grouped, base.take(keep))


def tail(table: TableLike, n: int = 5) -> TableLike:
    n = _count_param(n, "tail")
    base, grouped = _split(table)
    keep = [i for idx in _index_groups(base, grouped) for i in (idx[len(idx) - n:] if n else ())]
    return _rewrap(grouped, base.take(keep))


# ---------------- sampling ----------------

def _rng(seed: Optional[int], opts: VerbOptions) -> random.Random:
    s = seed if seed is not None else opts.seed
    return random.Random(s)


def _draw(rng: random.Random, idx: Sequence[int], n: int, replace: bool, verb: str) -> List[int]:
    if replace:
        if n and not idx:
            raise InsufficientRows(
                "E_SAMPLE_INSUFFICIENT",
                f"{verb} cannot draw {n} row(s) from an empty table.",
            )
        return rng.choices(list(idx), k=n)
    if n > len(idx):
        raise InsufficientRows(
            "E_SAMPLE_INSUFFICIENT",
            f"{verb} cannot draw {n} row(s) without replacement from {len(idx)} row(s).",
            hint="Lower n, or pass replace=True.",
        )
    return rng.sample(list(idx), n)


def sample_n(
    table: TableLike,
    n: int,
    *,
    replace: bool = False,
    seed: Optional[int] = None,
    options: Optional[VerbOptions] = None,
) -> TableLike:
    """Draw `n` rows (per group on a GroupedTable), without replacement by default."""
    n = _count_param(n, "sample_n", "E_SAMPLE_PARAMS")
    opts = resolve_options(options)
    rng = _rng(seed, opts)
    base, grouped = _split(table)
    keep: List[int] = []
    for idx in _index_groups(base, grouped):
        keep.extend(_draw(rng, idx, n, replace, "sample_n"))
    return _rewrap(grouped, base.take(keep))


def sample_frac(
    table: TableLike,
    fraction: float,
    *,
    replace: bool = False,
    seed: Optional[int] = None,
    options: Optional[VerbOptions] = None,
) -> TableLike:
    """Draw ``round(fraction * rows)`` rows (halves round up)."""
    if isinstance(fraction, bool) or not isinstance(fraction, (int, float)) or fraction < 0 or math.isnan(fraction):
        raise TidyUserError(
            "E_SAMPLE_PARAMS",
            f"sample_frac fraction must be a non-negative number, got {fraction!r}.",
            hint="Example: sample_frac(t, 0.1)",
        )
    if fraction > 1 and not replace:
        raise InsufficientRows(
            "E_SAMPLE_INSUFFICIENT",
            f"sample_frac cannot draw a fraction of {fraction} without replacement.",
            hint="Use a fraction of at most 1, or pass replace=True.",
        )
    opts = resolve_options(options)
    rng = _rng(seed, opts)
    base, grouped = _split(table)
    keep: List[int] = []
    for idx in _index_groups(base, grouped):
        n = int(math.floor(fraction * len(idx) + 0.5))
        keep.extend(_draw(rng, idx, n, replace, "sample_frac"))
    return _rewrap(grouped, base.take(keep))


# ---------------- mutate / transmute / rename ----------------

def _assign(
    table: TableLike,
    specs: List[Tuple[Optional[str], ExprLike]],
    opts: VerbOptions,
    verb: str,
) -> Tuple[Table, Optional[GroupedTable], Dict[str, Column], List[str]]:
    base, grouped = _split(table)
    env: Dict[str, Column] = {c.name: c for c in base.data}
    assigned: List[str] = []
    groups = _index_groups(base, grouped)
    for name, x in specs:
        expr = compile_expr(x, list(env), verb=verb)
        name = name or expr.default_name()
        if not isinstance(name, str) or not name:
            raise TidyUserError(
                f"E_{verb.upper()}_PARAMS",
                f"{verb} column names must be non-empty strings, got {name!r}.",
            )
        if expr.is_column():
            col = env[expr.ast[1]].rename(name)
        else:
            needed = expr.referenced_columns()
            if grouped is None:
                vals = _broadcast(
                    evaluate(expr, env, base.nrows, verb=verb, strict=opts.strict_expressions), base.nrows
                )
            else:
                vals = [NA] * base.nrows
                for idx in groups:
                    genv = {c: env[c].take(idx) for c in needed}
                    part = _broadcast(
                        evaluate(expr, genv, len(idx), verb=verb, strict=opts.strict_expressions), len(idx)
                    )
                    for i, v in zip(idx, part):
                        vals[i] = v
            try:
                col = Column(name, tuple(vals))
            except TidyUserError as e:
                raise TidyUserError(
                    f"E_{verb.upper()}_TYPE",
                    f"{verb} expression {expr.source!r} produced values of different types.",
                    hint="Make every branch return the same type, e.g. as_string(...) on both sides of if_else.",
                ) from e
        env[name] = col
        if name not in assigned:
            assigned.append(name)
    return base, grouped, env, assigned


def mutate(table: TableLike, *assignments: Any, options: Optional[VerbOptions] = None, **named: ExprLike) -> TableLike:
    """Add or replace columns.

    Assignments run left to right, so later ones can use earlier results:
    ``mutate(t, ("ratio", "c / n"), ("pct", "ratio * 100"))``. Replaced columns
    keep their position; new ones are appended.
    """
    opts = resolve_options(options)
    specs = named_expressions(assignments, named, verb="mutate")
    base, grouped, env, _ = _assign(table, specs, opts, "mutate")
    return _rewrap(grouped, Table(tuple(env.values())))


def transmute(table: TableLike, *assignments: Any, options: Optional[VerbOptions] = None, **named: ExprLike) -> TableLike:
    """Like mutate, but keep only the assigned columns (and grouping columns)."""
    opts = resolve_options(options)
    specs = named_expressions(assignments, named, verb="transmute")
    base, grouped, env, assigned = _assign(table, specs, opts, "transmute")
    names = list(assigned)
    if grouped is not None:
        names = [k for k in grouped.keys if k not in names] + names
    return _rewrap(grouped, Table(tuple(env[n] for n in names)))


def rename(table: TableLike, mapping: Mapping[str, str]) -> TableLike:
    """Rename columns with an ``{old: new}`` mapping; positions are unchanged."""
    if not isinstance(mapping, Mapping) or not mapping:
        raise TidyUserError(
            "E_RENAME_PARAMS",
            "rename requires a non-empty mapping of {old_name: new_name}.",
            hint="Example: rename(t, {'SOC_pct': 'soc'})",
        )
    base, grouped = _split(table)
    for old, new in mapping.items():
        if old not in base:
            raise InvalidColumnReference(
                "E_RENAME_UNKNOWN_COL",
                f"rename refers to a column not present in the table: {old!r}.",
                hint=suggest_column(old, base.columns),
            )
        if not isinstance(new, str) or not new:
            raise TidyUserError(
                "E_RENAME_PARAMS",
                f"rename target for {old!r} must be a non-empty string, got {new!r}.",
            )
    names = [mapping.get(c, c) for c in base.columns]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise DuplicateColumnName(
            "E_RENAME_DUPLICATE_COL",
            f"rename would produce duplicate column name(s): {dupes}.",
            hint="Rename the existing column first, or pick a different name.",
        )
    out = Table(tuple(c.rename(n) for c, n in zip(base.data, names)))
    if grouped is None:
        return out
    keys = tuple(mapping.get(k, k) for k in grouped.keys)
    return GroupedTable(out, keys, grouped.groups)


# ---------------- arrange ----------------

@dataclass(frozen=True)
class SortKey:
    column: str
    descending: bool = False


def desc(column: str) -> SortKey:
    return SortKey(column, True)


def _sort_keys(keys: Sequence[Any], columns: Sequence[str]) -> List[SortKey]:
    out: List[SortKey] = []
    for k in keys:
        if isinstance(k, SortKey):
            out.append(k)
        elif isinstance(k, str):
            if k not in columns and k.startswith("-") and len(k) > 1:
                out.append(SortKey(k[1:], True))
            else:
                out.append(SortKey(k))
        elif isinstance(k, tuple) and len(k) == 2 and isinstance(k[0], str):
            direction = str(k[1]).lower()
            if direction not in {"asc", "desc"}:
                raise TidyUserError(
                    "E_ARRANGE_PARAMS",
                    f"arrange direction must be 'asc' or 'desc', got {k[1]!r}.",
                    hint="Example: arrange(t, ('depth', 'desc'))",
                )
            out.append(SortKey(k[0], direction == "desc"))
        else:
            raise TidyUserError(
                "E_ARRANGE_PARAMS",
                f"Unsupported arrange key {k!r}.",
                hint="Use a column name, '-name' or desc('name') for descending, or (name, 'asc'|'desc').",
            )
    return out


def sorted_indices(table: Table, keys: Sequence[SortKey], order: Optional[List[int]] = None) -> List[int]:
    """Stable multi-key ordering of row indices; NA sorts last in either direction."""
    order = list(range(table.nrows)) if order is None else list(order)
    for key in reversed(keys):
        col = table.column(key.column)
        vals = col.values
        sk = col.sort_key()
        present = [i for i in order if vals[i] is not NA]
        missing = [i for i in order if vals[i] is NA]
        try:
            present.sort(key=lambda i: sk(vals[i]), reverse=key.descending)
        except TypeError as e:
            raise TidyUserError(
                "E_ARRANGE_TYPE",
                f"arrange cannot order the values of column {key.column!r}: {e}.",
            ) from e
        order = present + missing
    return order


def arrange(table: TableLike, *keys: Any) -> TableLike:
    """Sort rows by one or more keys.

    ``arrange(t, "site", "-depth")`` sorts by site, then by depth descending.
    The sort is stable and missing values always come last.
    """
    if not keys:
        raise TidyUserError(
            "E_ARRANGE_PARAMS",
            "arrange requires at least one sort key.",
            hint="Example: arrange(t, 'site', desc('depth'))",
        )
    base, grouped = _split(table)
    sort_keys = _sort_keys(keys, base.columns)
    check_columns([k.column for k in sort_keys], base.columns, verb="arrange", code="E_ARRANGE_UNKNOWN_COL")
    return _rewrap(grouped, base.take(sorted_indices(base, sort_keys)))


