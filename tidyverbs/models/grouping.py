from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from tidyverbs.config import VerbOptions, resolve_options
from tidyverbs.errors import DuplicateColumnName, TidyUserError
from tidyverbs.models.expr import Expr, ExprLike, compile_expr, evaluate
from tidyverbs.models.table import Column, Table
from tidyverbs.util import check_columns

Group = Tuple[Tuple[Any, ...], Tuple[int, ...]]


@dataclass(frozen=True, eq=False)
class GroupedTable:
    """A table plus an explicit partition of its rows by key columns.

    `groups` holds ``(key_tuple, row_indices)`` pairs in first-appearance order
    of the key tuple. Two NA keys fall in the same group.
    """

    table: Table
    keys: Tuple[str, ...]
    groups: Tuple[Group, ...]

    @property
    def columns(self) -> List[str]:
        return self.table.columns

    @property
    def nrows(self) -> int:
        return self.table.nrows

    @property
    def ngroups(self) -> int:
        return len(self.groups)

    def ungroup(self) -> Table:
        return self.table

    def group_keys(self) -> Table:
        """One row per group holding the key values."""
        first = [idx[0] for _, idx in self.groups]
        return Table(tuple(self.table.column(k).take(first) for k in self.keys))

    def pipe(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return fn(self, *args, **kwargs)

    def __rshift__(self, fn: Callable[[Any], Any]) -> Any:
        if not callable(fn):
            return NotImplemented
        return fn(self)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GroupedTable):
            return NotImplemented
        return self.keys == other.keys and self.table == other.table

    __hash__ = None  # type: ignore[assignment]

    def __str__(self) -> str:
        return f"Groups: {', '.join(self.keys)} [{len(self.groups)}]\n" + str(self.table)

    def __repr__(self) -> str:
        return f"GroupedTable(keys={list(self.keys)!r}, ngroups={len(self.groups)}, nrows={self.table.nrows})"


TableLike = Union[Table, GroupedTable]


def partition(table: Table, keys: Sequence[str]) -> Tuple[Group, ...]:
    """Split row indices by the tuple of values in `keys`, in first-appearance order."""
    cols = [table.column(k).values for k in keys]
    buckets: Dict[Tuple[Any, ...], List[int]] = {}
    for i in range(table.nrows):
        buckets.setdefault(tuple(c[i] for c in cols), []).append(i)
    return tuple((k, tuple(v)) for k, v in buckets.items())


def _key_names(keys: Iterable[Any]) -> List[str]:
    out: List[str] = []
    for k in keys:
        if isinstance(k, (list, tuple)):
            out.extend(_key_names(k))
        elif isinstance(k, str):
            out.append(k)
        else:
            raise TidyUserError(
                "E_GROUP_BY_PARAMS",
                f"group_by keys must be column names, got {k!r}.",
                hint="Example: group_by(t, 'site', 'depth_class')",
            )
    return out


def group_by(table: TableLike, *keys: Any, add: bool = False) -> GroupedTable:
    """Partition `table` by the given key columns.

    With ``add=True`` the keys are appended to an existing grouping.
    """
    names = _key_names(keys)
    base = table.table if isinstance(table, GroupedTable) else table
    if add and isinstance(table, GroupedTable):
        names = list(table.keys) + [n for n in names if n not in table.keys]
    if not names:
        raise TidyUserError(
            "E_GROUP_BY_PARAMS",
            "group_by requires at least one key column.",
            hint="Example: group_by(t, 'site')",
        )
    if len(set(names)) != len(names):
        raise DuplicateColumnName(
            "E_GROUP_BY_PARAMS",
            f"group_by keys repeat a column: {names}.",
            hint="List each key column once.",
        )
    check_columns(names, base.columns, verb="group_by", code="E_GROUP_BY_UNKNOWN_COL")
    return GroupedTable(base, tuple(names), partition(base, names))


def ungroup(table: TableLike) -> Table:
    return table.table if isinstance(table, GroupedTable) else table


def regroup(grouped: GroupedTable, table: Table) -> GroupedTable:
    """Re-partition a derived table by the same keys."""
    return GroupedTable(table, grouped.keys, partition(table, grouped.keys))


def named_expressions(
    args: Sequence[Any],
    kwargs: Dict[str, ExprLike],
    *,
    verb: str,
) -> List[Tuple[Optional[str], ExprLike]]:
    """Normalise ``("name", expr)`` pairs, bare expressions and keyword assignments."""
    out: List[Tuple[Optional[str], ExprLike]] = []
    for a in args:
        if isinstance(a, tuple) and len(a) == 2 and isinstance(a[0], str):
            out.append((a[0], a[1]))
        elif isinstance(a, (list,)) and all(isinstance(p, tuple) and len(p) == 2 for p in a):
            out.extend((p[0], p[1]) for p in a)
        elif isinstance(a, dict):
            out.extend(a.items())
        elif isinstance(a, (str, Expr)):
            out.append((None, a))
        else:
            raise TidyUserError(
                f"E_{verb.upper()}_PARAMS",
                f"{verb} expects expressions, (name, expression) pairs or name=expression, got {a!r}.",
                hint=f"Example: {verb}(t, mean_v='mean(v)')",
            )
    out.extend(kwargs.items())
    if not out:
        raise TidyUserError(
            f"E_{verb.upper()}_PARAMS",
            f"{verb} requires at least one expression.",
            hint=f"Example: {verb}(t, mean_v='mean(v)')",
        )
    return out


def summarise(
    table: TableLike,
    *aggregations: Any,
    options: Optional[VerbOptions] = None,
    **named: ExprLike,
) -> Table:
    """Reduce each group to one row.

    Key columns come first, then one column per aggregation, e.g.
    ``summarise(group_by(t, "k"), "mean(v)")`` gives columns ``k, mean_v``.
    Aggregations propagate NA unless written with ``ignore_missing=true``.
    """
    opts = resolve_options(options)
    if isinstance(table, GroupedTable):
        base, keys, groups = table.table, table.keys, table.groups
    else:
        base, keys, groups = table, (), (((), tuple(range(table.nrows))),)

    specs = named_expressions(aggregations, named, verb="summarise")
    known = list(base.columns)
    compiled: List[Tuple[str, Expr]] = []
    for name, x in specs:
        expr = compile_expr(x, known, verb="summarise")
        out_name = name or expr.default_name()
        if out_name in keys:
            raise DuplicateColumnName(
                "E_SUMMARISE_DUPLICATE_COL",
                f"summarise output {out_name!r} would replace a grouping column.",
                hint="Choose a different name for the aggregation.",
            )
        compiled.append((out_name, expr))
        if out_name not in known:
            known.append(out_name)

    needed = set()
    for _, expr in compiled:
        needed.update(c for c in expr.referenced_columns() if c in base)

    results: Dict[str, List[Any]] = {name: [] for name, _ in compiled}
    for _, idx in groups:
        env: Dict[str, Column] = {c: base.column(c).take(idx) for c in needed}
        for out_name, expr in compiled:
            vals = evaluate(expr, env, len(idx), verb="summarise", strict=opts.strict_expressions)
            if len(vals) != 1:
                raise TidyUserError(
                    "E_SUMMARISE_SIZE",
                    f"summarise expression {expr.source!r} produced {len(vals)} values for one group.",
                    hint="Wrap the column in an aggregate such as mean(), sum(), n() or first().",
                )
            results[out_name].append(vals[0])
            env[out_name] = Column(out_name, (vals[0],))

    out_cols: List[Column] = []
    if keys:
        first_rows = [idx[0] for _, idx in groups]
        out_cols = [base.column(k).take(first_rows) for k in keys]
    for out_name in results:
        vals = results[out_name]
        try:
            out_cols.append(Column(out_name, tuple(vals)))
        except TidyUserError as e:
            raise TidyUserError(
                "E_SUMMARISE_TYPE",
                f"summarise column {out_name!r} produced values of different types across groups.",
                hint=getattr(e, "hint", None),
            ) from e
    return Table(tuple(out_cols))


summarize = summarise


def count(
    table: TableLike,
    *keys: Any,
    name: str = "n",
    sort: bool = False,
    options: Optional[VerbOptions] = None,
) -> Table:
    """Number of rows per key combination (per existing group when no keys are given)."""
    if keys:
        grouped: TableLike = group_by(table, *keys)
    else:
        grouped = table
    out = summarise(grouped, (name, "n()"), options=options)
    if sort:
        counts = out[name]
        order = sorted(range(out.nrows), key=lambda i: -counts[i])
        out = out.take(order)
    return out


def n_groups(table: TableLike) -> int:
    return table.ngroups if isinstance(table, GroupedTable) else 1
