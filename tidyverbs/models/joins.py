"""Relational joins between two tables.

Rows match when every key pair is equal by value. NA never matches anything,
NA included. Row multiplicity follows the usual relational rules: a left row
with k matches appears k times in inner/left/full output.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import petl as etl

from tidyverbs.config import VerbOptions, resolve_options
from tidyverbs.errors import JoinKeyMismatch, TidyUserError
from tidyverbs.models.grouping import GroupedTable, TableLike, regroup
from tidyverbs.models.table import Column, Table
from tidyverbs.util import NA, comparable_kind, format_value, infer_dtype, suggest_column, unique_name, value_kind

logger = logging.getLogger(__name__)

JOIN_KINDS = ("inner", "left", "right", "full", "semi", "anti")
_ALIASES = {"outer": "full"}

KeySpec = Union[None, str, Sequence[Any], Mapping[str, str]]


def _key_pairs(
    left: Table,
    right: Table,
    on: KeySpec,
    left_on: Optional[Sequence[str]],
    right_on: Optional[Sequence[str]],
) -> List[Tuple[str, str]]:
    if on is not None and (left_on is not None or right_on is not None):
        raise TidyUserError(
            "E_JOIN_PARAMS",
            "join accepts either on= OR left_on=/right_on=, not both.",
            hint="Use on= when the key names are the same on both sides.",
        )
    if left_on is not None or right_on is not None:
        if left_on is None or right_on is None:
            raise TidyUserError(
                "E_JOIN_PARAMS",
                "join requires both left_on= and right_on= when either is given.",
                hint="Example: join(a, b, left_on=['id'], right_on=['person_id'])",
            )
        lk = [left_on] if isinstance(left_on, str) else list(left_on)
        rk = [right_on] if isinstance(right_on, str) else list(right_on)
        if len(lk) != len(rk) or not lk:
            raise TidyUserError(
                "E_JOIN_PARAMS",
                "join left_on and right_on must be non-empty and the same length.",
                hint=f"Got left_on={lk} and right_on={rk}.",
            )
        return list(zip(lk, rk))

    if on is None:
        common = [c for c in left.columns if c in right]
        if not common:
            raise JoinKeyMismatch(
                "E_JOIN_UNKNOWN_COL",
                "join found no column names shared by both tables.",
                hint="Pass on= (or left_on=/right_on=) to name the key columns.",
            )
        logger.info("join: joining by common columns %s", common)
        return [(c, c) for c in common]
    if isinstance(on, str):
        return [(on, on)]
    if isinstance(on, Mapping):
        pairs = list(on.items())
    else:
        pairs = []
        for item in on:
            if isinstance(item, str):
                pairs.append((item, item))
            elif isinstance(item, (list, tuple)) and len(item) == 2:
                pairs.append((item[0], item[1]))
            else:
                raise TidyUserError(
                    "E_JOIN_PARAMS",
                    f"join key {item!r} must be a column name or a (left, right) pair.",
                    hint="Example: on=['site', ('year', 'sample_year')]",
                )
    if not pairs or not all(isinstance(a, str) and a and isinstance(b, str) and b for a, b in pairs):
        raise TidyUserError(
            "E_JOIN_PARAMS",
            "join on= must name at least one key column.",
            hint="Example: join(a, b, on='id')",
        )
    return pairs


def _check_keys(left: Table, right: Table, pairs: List[Tuple[str, str]], strict_types: bool) -> None:
    left_missing = [lk for lk, _ in pairs if lk not in left]
    right_missing = [rk for _, rk in pairs if rk not in right]
    if left_missing or right_missing:
        msg_parts = []
        if left_missing:
            msg_parts.append(f"missing on left: {left_missing}")
        if right_missing:
            msg_parts.append(f"missing on right: {right_missing}")
        if left_missing:
            hint = suggest_column(left_missing[0], left.columns)
        else:
            hint = suggest_column(right_missing[0], right.columns)
        raise JoinKeyMismatch(
            "E_JOIN_UNKNOWN_COL",
            "join key column(s) not found (" + "; ".join(msg_parts) + ").",
            hint=hint,
        )
    if not strict_types:
        return
    mismatches = []
    for lk, rk in pairs:
        lt, rt = left.column(lk).dtype, right.column(rk).dtype
        if "any" in (lt, rt):
            continue
        if comparable_kind(lt) != comparable_kind(rt):
            mismatches.append(f"{lk!r}->{rk!r}: left is {lt!r}, right is {rt!r}")
    if mismatches:
        raise JoinKeyMismatch(
            "E_JOIN_KEY_TYPE_MISMATCH",
            "join key type mismatch (this would silently produce no matches).",
            hint="; ".join(mismatches) + ". Convert one side first, or pass strict_types=False.",
        )


def _match_key(cols: Sequence[Tuple[Any, ...]], i: int) -> Optional[Tuple[Any, ...]]:
    key = []
    for c in cols:
        v = c[i]
        if v is NA:
            return None
        # kind-tagged so that True never matches 1
        key.append((value_kind(v), v))
    return tuple(key)


def _keyed(table: Table, names: Sequence[str], field: str) -> Any:
    """petl view of (match key, row position); a key holding NA is unique to its row."""
    cols = [table.column(n).values for n in names]
    rows: List[Tuple[Any, ...]] = [("__key", field)]
    for i in range(table.nrows):
        k = _match_key(cols, i)
        rows.append((k if k is not None else ("NA", field, i), i))
    return etl.wrap(rows)


def _positions(view: Any) -> Tuple[List[Optional[int]], List[Optional[int]]]:
    li: List[Optional[int]] = []
    ri: List[Optional[int]] = []
    for a, b in etl.data(etl.cut(view, "__left", "__right")):
        li.append(a)
        ri.append(b)
    return li, ri


def _merged_key(lcol: Column, rcol: Column, li: Sequence[Optional[int]], ri: Sequence[Optional[int]]) -> Column:
    """Key column taking the left value where a left row exists, else the right one."""
    vals = [lcol.values[a] if a is not None else rcol.values[b] for a, b in zip(li, ri)]
    if lcol.dtype == "categorical" and rcol.dtype in ("categorical", "string", "any"):
        levels = list(lcol.levels or ())
        if rcol.dtype == "categorical":
            levels += [lv for lv in rcol.levels or () if lv not in levels]
        else:
            levels += [v for v in dict.fromkeys(rcol.values) if v is not NA and v not in levels]
        return Column(lcol.name, tuple(vals), dtype="categorical", levels=tuple(levels))
    if infer_dtype(vals) == "mixed":
        logger.warning(
            "join: key columns %r and %r have different types %s; %r values were converted to strings",
            lcol.name,
            rcol.name,
            sorted({lcol.dtype, rcol.dtype}),
            lcol.name,
        )
        return Column(lcol.name, tuple(NA if v is NA else format_value(v) for v in vals), dtype="string")
    return Column(lcol.name, tuple(vals))


def _output_names(
    left: Table,
    right: Table,
    left_keys: Sequence[str],
    right_keys: Sequence[str],
    suffixes: Tuple[str, str],
) -> Tuple[Dict[str, str], Dict[str, str]]:
    right_rest = [c for c in right.columns if c not in right_keys]
    clash = {c for c in right_rest if c in left}
    taken = set(left.columns) | set(right_rest)
    lnames: Dict[str, str] = {}
    for c in left.columns:
        if c in clash and c not in left_keys:
            lnames[c] = unique_name(c, taken, suffixes[0])
            taken.add(lnames[c])
        else:
            lnames[c] = c
    rnames: Dict[str, str] = {}
    for c in right_rest:
        if c in clash:
            rnames[c] = unique_name(c, taken, suffixes[1])
            taken.add(rnames[c])
        else:
            rnames[c] = c
    return lnames, rnames


def join(
    left: TableLike,
    right: TableLike,
    on: KeySpec = None,
    how: str = "inner",
    *,
    left_on: Optional[Sequence[str]] = None,
    right_on: Optional[Sequence[str]] = None,
    suffixes: Optional[Tuple[str, str]] = None,
    strict_types: Optional[bool] = None,
    options: Optional[VerbOptions] = None,
) -> TableLike:
    """Combine `left` and `right` on key equality.

    ``how`` is one of inner, left, right, full (alias outer), semi or anti.
    Output columns are every left column followed by the right non-key columns;
    clashing non-key names are suffixed (``".x"`` / ``".y"`` by default).
    A grouped left table stays grouped by the same keys.
    """
    opts = resolve_options(options)
    kind = _ALIASES.get(how, how)
    if kind not in JOIN_KINDS:
        raise TidyUserError(
            "E_JOIN_PARAMS",
            f"join how must be one of: {', '.join(JOIN_KINDS)} (got {how!r}).",
            hint="Example: join(a, b, on='id', how='left')",
        )
    if suffixes is None:
        suffixes = opts.join_suffixes
    suffixes = tuple(suffixes)  # type: ignore[assignment]
    if len(suffixes) != 2 or not all(isinstance(s, str) and s for s in suffixes) or suffixes[0] == suffixes[1]:
        raise TidyUserError(
            "E_JOIN_PARAMS",
            f"join suffixes must be two different non-empty strings, got {suffixes!r}.",
            hint="Example: suffixes=('_left', '_right')",
        )
    if strict_types is None:
        strict_types = opts.strict_types

    grouped = left if isinstance(left, GroupedTable) else None
    lt = left.table if isinstance(left, GroupedTable) else left
    rt = right.table if isinstance(right, GroupedTable) else right
    if not isinstance(lt, Table) or not isinstance(rt, Table):
        raise TidyUserError(
            "E_JOIN_PARAMS",
            "join expects two Table values.",
            hint="Build tables with Table.from_columns(...) or Table.from_records(...).",
        )

    pairs = _key_pairs(lt, rt, on, left_on, right_on)
    _check_keys(lt, rt, pairs, strict_types)
    lkeys = [a for a, _ in pairs]
    rkeys = [b for _, b in pairs]

    lview = _keyed(lt, lkeys, "__left")
    rview = _keyed(rt, rkeys, "__right")

    if kind in ("semi", "anti"):
        unmatched = list(etl.values(etl.hashantijoin(lview, rview, key="__key"), "__left"))
        if kind == "anti":
            keep = unmatched
        else:
            dropped = set(unmatched)
            keep = [i for i in range(lt.nrows) if i not in dropped]
        logger.debug("%s_join: kept %d of %d left rows", kind, len(keep), lt.nrows)
        out = lt.take(keep)
        return regroup(grouped, out) if grouped is not None else out

    if kind == "inner":
        li, ri = _positions(etl.hashjoin(lview, rview, key="__key"))
    elif kind == "right":
        li, ri = _positions(etl.hashrightjoin(lview, rview, key="__key"))
    else:
        li, ri = _positions(etl.hashleftjoin(lview, rview, key="__key"))
        if kind == "full":
            for j in etl.values(etl.hashantijoin(rview, lview, key="__key"), "__right"):
                li.append(None)
                ri.append(j)
    logger.debug("%s_join: %d left x %d right rows -> %d rows", kind, lt.nrows, rt.nrows, len(li))

    lnames, rnames = _output_names(lt, rt, lkeys, rkeys, suffixes)  # type: ignore[arg-type]
    key_of = dict(pairs)
    fill_keys = kind in ("right", "full")
    out_cols: List[Column] = []
    for c in lt.data:
        if fill_keys and c.name in key_of:
            col = _merged_key(c, rt.column(key_of[c.name]), li, ri)
        else:
            col = c.take(li)
        out_cols.append(col.rename(lnames[c.name]))
    for c in rt.data:
        if c.name in rnames:
            out_cols.append(c.take(ri).rename(rnames[c.name]))
    out = Table(tuple(out_cols))
    return regroup(grouped, out) if grouped is not None else out


def inner_join(left: TableLike, right: TableLike, on: KeySpec = None, **kwargs: Any) -> TableLike:
    return join(left, right, on, "inner", **kwargs)


def left_join(left: TableLike, right: TableLike, on: KeySpec = None, **kwargs: Any) -> TableLike:
    return join(left, right, on, "left", **kwargs)


def right_join(left: TableLike, right: TableLike, on: KeySpec = None, **kwargs: Any) -> TableLike:
    return join(left, right, on, "right", **kwargs)


def full_join(left: TableLike, right: TableLike, on: KeySpec = None, **kwargs: Any) -> TableLike:
    return join(left, right, on, "full", **kwargs)


def semi_join(left: TableLike, right: TableLike, on: KeySpec = None, **kwargs: Any) -> TableLike:
    """Left rows with at least one match in `right` (left columns only)."""
    return join(left, right, on, "semi", **kwargs)


def anti_join(left: TableLike, right: TableLike, on: KeySpec = None, **kwargs: Any) -> TableLike:
    """Left rows with no match in `right` (left columns only)."""
    return join(left, right, on, "anti", **kwargs)
