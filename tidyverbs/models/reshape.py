"""Long/wide reshaping: gather (wide to long) and spread (long to wide)."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import petl as etl

from tidyverbs.config import VerbOptions, resolve_options
from tidyverbs.errors import DuplicateColumnName, DuplicateKeyError, TidyUserError
from tidyverbs.models.grouping import GroupedTable, TableLike, partition
from tidyverbs.models.selectors import resolve_columns, single_column
from tidyverbs.models.table import Column, Table
from tidyverbs.util import NA, format_value

logger = logging.getLogger(__name__)


def _regroup_kept(grouped: Optional[GroupedTable], out: Table) -> TableLike:
    if grouped is None:
        return out
    keys = tuple(k for k in grouped.keys if k in out)
    if not keys:
        return out
    return GroupedTable(out, keys, partition(out, keys))


def _stacked(name: str, values: List[Any], cols: List[Column], verb: str) -> Column:
    """Column of `values` drawn from `cols`, falling back to strings on dtype conflicts."""
    dtypes = {c.dtype for c in cols} - {"any"}
    if not dtypes:
        return Column(name, tuple(values))
    if len(dtypes) == 1:
        dtype = dtypes.pop()
        if dtype == "categorical":
            levels: Dict[str, None] = {}
            for c in cols:
                levels.update(dict.fromkeys(c.levels or ()))
            return Column(name, tuple(values), dtype="categorical", levels=tuple(levels))
        return Column(name, tuple(values), dtype=dtype)
    logger.warning(
        "%s: columns %s have different types %s; %r values were converted to strings",
        verb,
        [c.name for c in cols],
        sorted(dtypes),
        name,
    )
    return Column(name, tuple(NA if v is NA else format_value(v) for v in values), dtype="string")


def gather(
    table: TableLike,
    key_name: str = "key",
    value_name: str = "value",
    *columns: Any,
    drop_missing: bool = False,
) -> TableLike:
    """Turn columns into key/value rows.

    ``gather(t, "measure", "reading", "ph:soc")`` produces the untouched
    columns, then ``measure`` (the former column name) and ``reading``. Rows
    come out column by column: every input row for the first gathered column,
    then every input row for the next.
    """
    base = table.table if isinstance(table, GroupedTable) else table
    grouped = table if isinstance(table, GroupedTable) else None
    for n in (key_name, value_name):
        if not isinstance(n, str) or not n:
            raise TidyUserError(
                "E_GATHER_PARAMS",
                f"gather key and value names must be non-empty strings, got {n!r}.",
                hint="Example: gather(t, 'measure', 'reading', 'ph', 'soc')",
            )
    if key_name == value_name:
        raise DuplicateColumnName(
            "E_GATHER_DUPLICATE_COL",
            f"gather key and value columns cannot share the name {key_name!r}.",
        )
    gathered = resolve_columns(base.columns, columns, verb="gather") if columns else list(base.columns)
    if not gathered:
        raise TidyUserError(
            "E_GATHER_PARAMS",
            "gather selected no columns.",
            hint="Name the columns to gather, e.g. gather(t, 'key', 'value', 'a:c').",
        )
    ids = [c for c in base.columns if c not in gathered]
    clash = [n for n in (key_name, value_name) if n in ids]
    if clash:
        raise DuplicateColumnName(
            "E_GATHER_DUPLICATE_COL",
            f"gather output name(s) {clash} collide with columns that are kept.",
            hint="Choose different key/value names.",
        )

    # one petl field per gathered column, named by position so no name can collide
    n = base.nrows
    wide = etl.wrap(
        [("__row", *range(len(gathered)))]
        + [(i, *(base.column(c).values[i] for c in gathered)) for i in range(n)]
    )
    molten = etl.sort(etl.melt(wide, key="__row", variablefield="__var", valuefield="__value"), "__var")
    rows: List[int] = []
    names: List[str] = []
    values: List[Any] = []
    for i, var, v in etl.data(molten):
        rows.append(i)
        names.append(gathered[var])
        values.append(v)
    out_cols = [base.column(c).take(rows) for c in ids]
    out_cols.append(Column(key_name, tuple(names), dtype="string"))
    out_cols.append(_stacked(value_name, values, [base.column(c) for c in gathered], "gather"))
    out = Table(tuple(out_cols))
    if drop_missing:
        vals = out[value_name]
        out = out.take([i for i, v in enumerate(vals) if v is not NA])
    return _regroup_kept(grouped, out)


def _key_label(v: Any) -> str:
    return "NA" if v is NA else format_value(v)


def spread(
    table: TableLike,
    key_column: Any,
    value_column: Any,
    *,
    fill: Any = NA,
    options: Optional[VerbOptions] = None,
) -> TableLike:
    """Turn the distinct values of `key_column` into new columns filled from `value_column`.

    Every other column identifies a row. New columns are ordered by key value
    (categorical keys by level) and a missing key becomes a column named
    ``"NA"``. Cells without a value get `fill`.
    """
    opts = resolve_options(options)
    base = table.table if isinstance(table, GroupedTable) else table
    grouped = table if isinstance(table, GroupedTable) else None
    key = single_column(base.columns, key_column, verb="spread")
    value = single_column(base.columns, value_column, verb="spread")
    if key == value:
        raise TidyUserError(
            "E_SPREAD_PARAMS",
            "spread key and value must be different columns.",
            hint="Example: spread(t, 'measure', 'reading')",
        )
    ids = [c for c in base.columns if c not in (key, value)]
    kcol = base.column(key)
    vcol = base.column(value)

    present = list(dict.fromkeys(v for v in kcol.values if v is not NA))
    sk = kcol.sort_key()
    try:
        key_values: List[Any] = sorted(present, key=sk)
    except TypeError as e:
        raise TidyUserError(
            "E_SPREAD_TYPE",
            f"spread cannot order the values of key column {key!r}: {e}.",
        ) from e
    if NA in kcol.values:
        key_values.append(NA)
    labels = [_key_label(v) for v in key_values]
    dupes = sorted({lb for lb in labels if labels.count(lb) > 1})
    if dupes:
        raise DuplicateColumnName(
            "E_SPREAD_DUPLICATE_COL",
            f"spread key values map to the same column name(s): {dupes}.",
            hint="Make the key values distinct as text first, e.g. with mutate and as_string().",
        )
    clash = [lb for lb in labels if lb in ids]
    if clash:
        raise DuplicateColumnName(
            "E_SPREAD_DUPLICATE_COL",
            f"spread would create column(s) {clash} that already exist.",
            hint="Rename the identifying columns, or recode the key values first.",
        )

    slot = {kv: j for j, kv in enumerate(key_values)}
    id_groups = partition(base, ids) if ids else (((), tuple(range(base.nrows))),)
    if not ids and base.nrows == 0:
        id_groups = ()
    # recast row positions, not values: a cell holding a list means a repeated key
    molten: List[tuple] = [("__group", "__slot", "__row")]
    for g, (_, idx) in enumerate(id_groups):
        molten.extend((g, slot[kcol.values[i]], i) for i in idx)
    wide = etl.recast(
        etl.wrap(molten),
        key="__group",
        variablefield={"__slot": list(range(len(key_values)))},
        valuefield="__row",
    )
    cells: List[List[Any]] = [[fill] * len(id_groups) for _ in key_values]
    for g, *found in etl.data(wide):
        for j, hit in enumerate(found):
            if hit is None:
                continue
            if isinstance(hit, list):
                if opts.spread_duplicates == "error":
                    raise DuplicateKeyError(
                        "E_SPREAD_DUPLICATE_KEY",
                        f"spread found more than one {value!r} for key {labels[j]!r} "
                        f"in the row identified by {list(id_groups[g][0])}.",
                        hint="Summarise the duplicates first, or set VerbOptions(spread_duplicates='last').",
                    )
                hit = max(hit)
            cells[j][g] = vcol.values[hit]

    first_rows = [idx[0] for _, idx in id_groups]
    out_cols: List[Column] = [base.column(c).take(first_rows) for c in ids]
    for j, label in enumerate(labels):
        try:
            if vcol.dtype == "categorical":
                col = Column(label, tuple(cells[j]), dtype="categorical", levels=vcol.levels)
            else:
                col = Column(label, tuple(cells[j]))
        except TidyUserError as e:
            raise TidyUserError(
                "E_SPREAD_FILL",
                f"spread fill value {fill!r} does not match the type of {value!r} ({vcol.dtype}).",
                hint="Use a fill of the same type as the value column, or leave it as NA.",
            ) from e
        out_cols.append(col)
    return _regroup_kept(grouped, Table(tuple(out_cols)))

