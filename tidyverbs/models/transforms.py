from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Type

from tidyverbs.config import VerbOptions, resolve_options
from tidyverbs.errors import TidyUserError
from tidyverbs.models import grouping, joins, reshape, verbs
from tidyverbs.models.grouping import GroupedTable, TableLike
from tidyverbs.models.selectors import resolve_columns
from tidyverbs.models.table import Table
from tidyverbs.schema import TableSchema, _any_field, _schema_field_names, _schema_fields_by_name, _schema_from_fields
from tidyverbs.util import check_columns


class TransformImpl:
    """Internal implementation for a Transform op.

    Users interact with `Transform(op, params)`.
    Implementations are registered by op name and invoked by `Transform.apply`.
    """

    op: str = ""

    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        # default: no validation
        return

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        raise TidyUserError(
            "E_OP_NOT_IMPL",
            f"Transform op '{cls.op}' is not implemented.",
            hint="Implement it as a TransformImpl and register it.",
        )

    @classmethod
    def output_schema(cls, input_schema: Optional[TableSchema], params: Dict[str, Any]) -> Optional[TableSchema]:
        """Infer the output schema given an input schema.

        Return None if the schema cannot be determined statically.
        """
        return input_schema


TRANSFORM_REGISTRY: Dict[str, Type[TransformImpl]] = {}


def register_transform(op: str) -> Callable[[Type[TransformImpl]], Type[TransformImpl]]:
    """Decorator to register a TransformImpl under an op string."""

    def deco(cls: Type[TransformImpl]) -> Type[TransformImpl]:
        cls.op = op
        TRANSFORM_REGISTRY[op] = cls
        return cls

    return deco


# ---------------- param helpers ----------------

def _context_options(context: Any) -> VerbOptions:
    return resolve_options(getattr(context, "options", None))


def _spec_list(params: Dict[str, Any], key: str, op: str, example: str, *, required: bool = True) -> List[Any]:
    val = params.get(key)
    if val is None and not required:
        return []
    if isinstance(val, str) and val:
        return [val]
    if not isinstance(val, (list, tuple)) or (required and not val) or not all(
        isinstance(x, str) and x for x in val
    ):
        raise TidyUserError(
            f"E_{op.upper()}_PARAMS",
            f"{op} requires params.{key} as a non-empty list of column names or selection strings.",
            hint=f"Example: {example}",
        )
    return list(val)


def _bool_param(params: Dict[str, Any], key: str, op: str, default: bool) -> bool:
    val = params.get(key, default)
    if not isinstance(val, bool):
        raise TidyUserError(
            f"E_{op.upper()}_PARAMS",
            f"{op} params.{key} must be a boolean.",
            hint=f"Example: Transform('{op}', params={{..., '{key}': true}})",
        )
    return val


def _int_param(params: Dict[str, Any], key: str, op: str, *, required: bool, default: Optional[int] = None) -> Optional[int]:
    if key not in params or params[key] is None:
        if required:
            raise TidyUserError(
                f"E_{op.upper()}_PARAMS",
                f"{op} requires params.{key} as an integer.",
                hint=f"Example: Transform('{op}', params={{'{key}': 5}})",
            )
        return default
    val = params[key]
    if isinstance(val, bool) or not isinstance(val, int):
        raise TidyUserError(
            f"E_{op.upper()}_PARAMS",
            f"{op} params.{key} must be an integer, got {val!r}.",
            hint=f"Example: Transform('{op}', params={{'{key}': 5}})",
        )
    return val


def _assignments(params: Dict[str, Any], key: str, op: str, example: str) -> Dict[str, str]:
    val = params.get(key)
    if not isinstance(val, dict) or not val or not all(
        isinstance(k, str) and k and isinstance(v, str) and v.strip() for k, v in val.items()
    ):
        raise TidyUserError(
            f"E_{op.upper()}_PARAMS",
            f"{op} requires params.{key} as a non-empty mapping of new column name to expression string.",
            hint=f"Example: {example}",
        )
    return dict(val)


def _unknown_in_schema(names: List[str], input_schema: Optional[TableSchema], op: str) -> None:
    known = _schema_field_names(input_schema)
    if not known:
        return
    check_columns(names, known, verb=op, code=f"E_{op.upper()}_UNKNOWN_COL")


def _reorder(input_schema: Optional[TableSchema], names: List[str]) -> Optional[TableSchema]:
    by_name = _schema_fields_by_name(input_schema)
    if not by_name:
        return None
    return _schema_from_fields([by_name[n] if n in by_name else _any_field(n) for n in names])


def _selected(input_schema: Optional[TableSchema], specs: List[Any], verb: str) -> Optional[List[str]]:
    names = _schema_field_names(input_schema)
    if not names:
        return None
    return resolve_columns(names, specs, verb=verb)


# ---------------- row/column verbs ----------------

@register_transform("filter")
class FilterTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        where = params.get("where")
        items = where if isinstance(where, list) else [where]
        if not items or not all(isinstance(w, str) and w.strip() for w in items):
            raise TidyUserError(
                "E_FILTER_PARAMS",
                "filter requires params.where as a non-empty expression string (or a list of them).",
                hint="Example: Transform('filter', params={'where': \"depth >= 30 and site == 'A'\"})",
            )
        _bool_param(params, "strict", "filter", True)

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        where = params["where"]
        opts = _context_options(context)
        if "strict" in params:
            opts = replace(opts, strict_expressions=params["strict"])
        preds = where if isinstance(where, list) else [where]
        return verbs.filter(table, *preds, options=opts)


@register_transform("select")
class SelectTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        _spec_list(params, "columns", "select", "Transform('select', params={'columns': ['site', 'depth']})")

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        return verbs.select(table, *_spec_list(params, "columns", "select", ""))

    @classmethod
    def output_schema(cls, input_schema: Optional[TableSchema], params: Dict[str, Any]) -> Optional[TableSchema]:
        names = _selected(input_schema, _spec_list(params, "columns", "select", "", required=False), "select")
        return _reorder(input_schema, names) if names is not None else None


@register_transform("drop")
class DropTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        _spec_list(params, "columns", "drop", "Transform('drop', params={'columns': ['debug_col']})")

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        return verbs.drop(table, *_spec_list(params, "columns", "drop", ""))

    @classmethod
    def output_schema(cls, input_schema: Optional[TableSchema], params: Dict[str, Any]) -> Optional[TableSchema]:
        names = _schema_field_names(input_schema)
        if not names:
            return None
        dropped = set(resolve_columns(names, _spec_list(params, "columns", "drop", "", required=False), verb="drop"))
        return _reorder(input_schema, [n for n in names if n not in dropped])


@register_transform("distinct")
class DistinctTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        cols = _spec_list(params, "columns", "distinct", "Transform('distinct', params={'columns': ['site']})",
                          required=False)
        _bool_param(params, "keep_all", "distinct", True)
        _unknown_in_schema(cols, input_schema, "distinct")

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        cols = _spec_list(params, "columns", "distinct", "", required=False)
        return verbs.distinct(table, *cols, keep_all=params.get("keep_all", True))

    @classmethod
    def output_schema(cls, input_schema: Optional[TableSchema], params: Dict[str, Any]) -> Optional[TableSchema]:
        cols = _spec_list(params, "columns", "distinct", "", required=False)
        if cols and params.get("keep_all") is False:
            return _reorder(input_schema, cols)
        return input_schema


@register_transform("slice")
class SliceTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        pos = params.get("positions")
        if not isinstance(pos, list) or not pos or not all(isinstance(p, int) and not isinstance(p, bool) for p in pos):
            raise TidyUserError(
                "E_SLICE_PARAMS",
                "slice requires params.positions as a non-empty list of 1-based integer positions.",
                hint="Example: Transform('slice', params={'positions': [1, 2, 3]})",
            )

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        return verbs.slice(table, *params["positions"], options=_context_options(context))


@register_transform("head")
class HeadTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        _int_param(params, "n", "head", required=False, default=5)

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        return verbs.head(table, _int_param(params, "n", "head", required=False, default=5))


@register_transform("tail")
class TailTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        _int_param(params, "n", "tail", required=False, default=5)

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        return verbs.tail(table, _int_param(params, "n", "tail", required=False, default=5))


@register_transform("sample_n")
class SampleNTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        _int_param(params, "n", "sample_n", required=True)
        _int_param(params, "seed", "sample_n", required=False)
        _bool_param(params, "replace", "sample_n", False)

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        return verbs.sample_n(
            table,
            params["n"],
            replace=params.get("replace", False),
            seed=params.get("seed"),
            options=_context_options(context),
        )


@register_transform("sample_frac")
class SampleFracTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        frac = params.get("fraction")
        if isinstance(frac, bool) or not isinstance(frac, (int, float)):
            raise TidyUserError(
                "E_SAMPLE_FRAC_PARAMS",
                "sample_frac requires params.fraction as a number.",
                hint="Example: Transform('sample_frac', params={'fraction': 0.25, 'seed': 1})",
            )
        _int_param(params, "seed", "sample_frac", required=False)
        _bool_param(params, "replace", "sample_frac", False)

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        return verbs.sample_frac(
            table,
            params["fraction"],
            replace=params.get("replace", False),
            seed=params.get("seed"),
            options=_context_options(context),
        )


# ---------------- derivation ----------------

@register_transform("mutate")
class MutateTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        _assignments(params, "assign", "mutate", "Transform('mutate', params={'assign': {'depth_m': 'depth / 100'}})")

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        pairs = list(params["assign"].items())
        return verbs.mutate(table, pairs, options=_context_options(context))

    @classmethod
    def output_schema(cls, input_schema: Optional[TableSchema], params: Dict[str, Any]) -> Optional[TableSchema]:
        names = _schema_field_names(input_schema)
        if not names:
            return None
        by_name = _schema_fields_by_name(input_schema)
        for new in params.get("assign") or {}:
            by_name[new] = _any_field(new)
            if new not in names:
                names.append(new)
        return _schema_from_fields([by_name[n] for n in names])


@register_transform("transmute")
class TransmuteTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        _assignments(params, "assign", "transmute",
                     "Transform('transmute', params={'assign': {'depth_m': 'depth / 100'}})")

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        pairs = list(params["assign"].items())
        return verbs.transmute(table, pairs, options=_context_options(context))

    @classmethod
    def output_schema(cls, input_schema: Optional[TableSchema], params: Dict[str, Any]) -> Optional[TableSchema]:
        return _schema_from_fields([_any_field(n) for n in params.get("assign") or {}])


@register_transform("rename")
class RenameTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        mapping = params.get("mapping")
        if not isinstance(mapping, dict) or not mapping or not all(
            isinstance(k, str) and k and isinstance(v, str) and v for k, v in mapping.items()
        ):
            raise TidyUserError(
                "E_RENAME_PARAMS",
                "rename requires params.mapping as a non-empty {old_name: new_name} mapping.",
                hint="Example: Transform('rename', params={'mapping': {'SOC_pct': 'soc'}})",
            )
        _unknown_in_schema(list(mapping), input_schema, "rename")

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        return verbs.rename(table, params["mapping"])

    @classmethod
    def output_schema(cls, input_schema: Optional[TableSchema], params: Dict[str, Any]) -> Optional[TableSchema]:
        by_name = _schema_fields_by_name(input_schema)
        if not by_name:
            return None
        mapping = params.get("mapping") or {}
        fields = []
        for name, f in by_name.items():
            f["name"] = mapping.get(name, name)
            fields.append(f)
        return _schema_from_fields(fields)


@register_transform("relocate")
class RelocateTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        _spec_list(params, "columns", "relocate", "Transform('relocate', params={'columns': ['id'], 'after': 'site'})")
        for key in ("before", "after"):
            val = params.get(key)
            if val is not None and not (isinstance(val, str) and val):
                raise TidyUserError(
                    "E_RELOCATE_PARAMS",
                    f"relocate params.{key} must be a column name.",
                    hint="Example: Transform('relocate', params={'columns': ['id'], 'before': 'site'})",
                )

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        cols = _spec_list(params, "columns", "relocate", "")
        return verbs.relocate(table, *cols, before=params.get("before"), after=params.get("after"))


# ---------------- ordering ----------------

@register_transform("arrange")
class ArrangeTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        by = params.get("by")
        items = [by] if isinstance(by, str) else by
        ok = isinstance(items, list) and bool(items) and all(
            (isinstance(k, str) and k)
            or (isinstance(k, list) and len(k) == 2 and isinstance(k[0], str) and k[1] in ("asc", "desc"))
            for k in items
        )
        if not ok:
            raise TidyUserError(
                "E_ARRANGE_PARAMS",
                "arrange requires params.by as a list of column names ('-name' for descending) "
                "or [name, 'asc'|'desc'] pairs.",
                hint="Example: Transform('arrange', params={'by': ['site', '-depth']})",
            )

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        by = params["by"]
        items = [by] if isinstance(by, str) else by
        keys = [tuple(k) if isinstance(k, list) else k for k in items]
        return verbs.arrange(table, *keys)


# ---------------- aggregation ----------------

@register_transform("group_by")
class GroupByTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        by = _spec_list(params, "by", "group_by", "Transform('group_by', params={'by': ['site']})")
        _bool_param(params, "add", "group_by", False)
        _unknown_in_schema(by, input_schema, "group_by")

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        by = _spec_list(params, "by", "group_by", "")
        return grouping.group_by(table, *by, add=params.get("add", False))


@register_transform("ungroup")
class UngroupTransform(TransformImpl):
    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        return grouping.ungroup(table)


@register_transform("summarise")
class SummariseTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        _assignments(params, "aggregations", "summarise",
                     "Transform('summarise', params={'aggregations': {'mean_v': 'mean(v)'}})")

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        pairs = list(params["aggregations"].items())
        return grouping.summarise(table, pairs, options=_context_options(context))

    @classmethod
    def output_schema(cls, input_schema: Optional[TableSchema], params: Dict[str, Any]) -> Optional[TableSchema]:
        # grouping keys are not part of the schema
        return None


TRANSFORM_REGISTRY["summarize"] = SummariseTransform


@register_transform("count")
class CountTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        by = _spec_list(params, "by", "count", "Transform('count', params={'by': ['site']})", required=False)
        name = params.get("name", "n")
        if not isinstance(name, str) or not name:
            raise TidyUserError(
                "E_COUNT_PARAMS",
                "count params.name must be a non-empty string.",
                hint="Example: Transform('count', params={'by': ['site'], 'name': 'rows'})",
            )
        _bool_param(params, "sort", "count", False)
        _unknown_in_schema(by, input_schema, "count")

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        by = _spec_list(params, "by", "count", "", required=False)
        return grouping.count(
            table,
            *by,
            name=params.get("name", "n"),
            sort=params.get("sort", False),
            options=_context_options(context),
        )

    @classmethod
    def output_schema(cls, input_schema: Optional[TableSchema], params: Dict[str, Any]) -> Optional[TableSchema]:
        by = _spec_list(params, "by", "count", "", required=False)
        if not by:
            return None
        by_name = _schema_fields_by_name(input_schema)
        fields = [by_name.get(b, _any_field(b)) for b in by]
        fields.append(_any_field(params.get("name", "n"), "number"))
        return _schema_from_fields(fields)


# ---------------- joins ----------------

def _right_table(params: Dict[str, Any], context: Any, op: str) -> Table:
    right = params.get("right")
    if isinstance(right, Table):
        return right
    if isinstance(right, GroupedTable):
        return right.table
    tables = getattr(context, "tables", None) or {}
    if right not in tables:
        raise TidyUserError(
            "E_JOIN_RIGHT_UNKNOWN",
            f"{op} refers to a right-hand table named {right!r}, which was not provided.",
            hint="Pass it when running: pipeline.run(table, tables={" + repr(right) + ": other_table})"
            + (". Available: " + ", ".join(sorted(tables)) if tables else ""),
        )
    found = tables[right]
    return found.table if isinstance(found, GroupedTable) else found


def _key_list(val: Any) -> Any:
    if isinstance(val, list):
        return [tuple(v) if isinstance(v, list) else v for v in val]
    return val


class _JoinBase(TransformImpl):
    how: Optional[str] = None

    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        right = params.get("right")
        if not (isinstance(right, str) and right.strip()) and not isinstance(right, (Table, GroupedTable)):
            raise TidyUserError(
                "E_JOIN_PARAMS",
                f"{cls.op} requires params.right as the name of a table passed to run(tables=...).",
                hint=f"Example: Transform('{cls.op}', params={{'right': 'sites', 'on': ['site_id']}})",
            )
        on = params.get("on")
        left_on = params.get("left_on")
        right_on = params.get("right_on")
        if on is not None and (left_on is not None or right_on is not None):
            raise TidyUserError(
                "E_JOIN_PARAMS",
                f"{cls.op} accepts either params.on OR params.left_on/params.right_on, not both.",
                hint="Use params.on when the key names are the same on both sides.",
            )
        if (left_on is None) != (right_on is None):
            raise TidyUserError(
                "E_JOIN_PARAMS",
                f"{cls.op} requires both params.left_on and params.right_on.",
                hint="Example: params={'right': 'people', 'left_on': ['id'], 'right_on': ['person_id']}",
            )
        if cls.how is None:
            how = params.get("how", "inner")
            if how not in joins.JOIN_KINDS and how != "outer":
                raise TidyUserError(
                    "E_JOIN_PARAMS",
                    "join params.how must be one of: " + ", ".join(joins.JOIN_KINDS) + ".",
                    hint="Example: Transform('join', params={..., 'how': 'left'})",
                )
        strict_types = params.get("strict_types")
        if strict_types is not None and not isinstance(strict_types, bool):
            raise TidyUserError(
                "E_JOIN_PARAMS",
                f"{cls.op} params.strict_types must be a boolean.",
                hint=f"Example: Transform('{cls.op}', params={{..., 'strict_types': false}})",
            )
        suffixes = params.get("suffixes")
        if suffixes is not None and (not isinstance(suffixes, (list, tuple)) or len(suffixes) != 2):
            raise TidyUserError(
                "E_JOIN_PARAMS",
                f"{cls.op} params.suffixes must be a pair of strings.",
                hint="Example: suffixes: ['.left', '.right']",
            )

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        right = _right_table(params, context, cls.op)
        suffixes = params.get("suffixes")
        return joins.join(
            table,
            right,
            _key_list(params.get("on")),
            cls.how or params.get("how", "inner"),
            left_on=params.get("left_on"),
            right_on=params.get("right_on"),
            suffixes=tuple(suffixes) if suffixes is not None else None,
            strict_types=params.get("strict_types"),
            options=_context_options(context),
        )

    @classmethod
    def output_schema(cls, input_schema: Optional[TableSchema], params: Dict[str, Any]) -> Optional[TableSchema]:
        how = cls.how or params.get("how", "inner")
        if how in ("semi", "anti"):
            return input_schema
        # depends on the right-hand table, which is only known at run time
        return None


def _register_join(op: str, how: Optional[str]) -> None:
    cls = type(f"{op.title().replace('_', '')}Transform", (_JoinBase,), {"how": how})
    register_transform(op)(cls)


_register_join("join", None)
for _how in joins.JOIN_KINDS:
    _register_join(f"{_how}_join", _how)


# ---------------- reshape ----------------

@register_transform("gather")
class GatherTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        for key in ("key", "value"):
            val = params.get(key, key)
            if not isinstance(val, str) or not val:
                raise TidyUserError(
                    "E_GATHER_PARAMS",
                    f"gather params.{key} must be a non-empty column name.",
                    hint="Example: Transform('gather', params={'key': 'measure', 'value': 'reading', "
                         "'columns': ['ph', 'soc']})",
                )
        _spec_list(params, "columns", "gather", "Transform('gather', params={'columns': ['ph:soc']})", required=False)
        _bool_param(params, "drop_missing", "gather", False)

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        cols = _spec_list(params, "columns", "gather", "", required=False)
        return reshape.gather(
            table,
            params.get("key", "key"),
            params.get("value", "value"),
            *cols,
            drop_missing=params.get("drop_missing", False),
        )

    @classmethod
    def output_schema(cls, input_schema: Optional[TableSchema], params: Dict[str, Any]) -> Optional[TableSchema]:
        names = _schema_field_names(input_schema)
        if not names:
            return None
        cols = _spec_list(params, "columns", "gather", "", required=False)
        gathered = set(resolve_columns(names, cols, verb="gather")) if cols else set(names)
        by_name = _schema_fields_by_name(input_schema)
        fields = [by_name[n] for n in names if n not in gathered]
        fields.append(_any_field(params.get("key", "key"), "string"))
        fields.append(_any_field(params.get("value", "value")))
        return _schema_from_fields(fields)


@register_transform("spread")
class SpreadTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[TableSchema] = None) -> None:
        for key in ("key", "value"):
            val = params.get(key)
            if not isinstance(val, str) or not val:
                raise TidyUserError(
                    "E_SPREAD_PARAMS",
                    f"spread requires params.{key} as a column name.",
                    hint="Example: Transform('spread', params={'key': 'measure', 'value': 'reading'})",
                )
        _unknown_in_schema([params["key"], params["value"]], input_schema, "spread")

    @classmethod
    def apply(cls, table: TableLike, *, params: Dict[str, Any], context: Any) -> TableLike:
        return reshape.spread(
            table,
            params["key"],
            params["value"],
            fill=params.get("fill"),
            options=_context_options(context),
        )

    @classmethod
    def output_schema(cls, input_schema: Optional[TableSchema], params: Dict[str, Any]) -> Optional[TableSchema]:
        # new columns come from the data
        return None


# ---------------- user-facing step ----------------

@dataclass(frozen=True)
class Transform:
    """A declarative, serialisable verb step: ``Transform("filter", {"where": "val > 15"})``.

    Calling a Transform on a table applies it, so ``table >> Transform(...)``
    works the same as the plain verb call.
    """

    op: str
    params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.params, dict):
            raise TidyUserError(
                "E_TRANSFORM_PARAMS",
                f"Transform params must be a mapping, got {type(self.params).__name__}.",
                hint="Example: Transform('select', params={'columns': ['a', 'b']})",
            )

    @property
    def impl(self) -> Type[TransformImpl]:
        impl = TRANSFORM_REGISTRY.get(self.op)
        if impl is None:
            raise TidyUserError(
                "E_OP_NOT_IMPL",
                f"Transform op '{self.op}' is not implemented.",
                hint="Supported ops: " + ", ".join(sorted(TRANSFORM_REGISTRY.keys())),
            )
        return impl

    def validate(self, input_schema: Optional[TableSchema] = None) -> None:
        self.impl.validate_params(self.params, input_schema=input_schema)

    def apply(self, table: TableLike, *, context: Any = None) -> TableLike:
        impl = self.impl
        base = table.table if isinstance(table, GroupedTable) else table
        impl.validate_params(self.params, input_schema=base.schema())
        return impl.apply(table, params=self.params, context=context)

    def __call__(self, table: TableLike) -> TableLike:
        return self.apply(table)

    def output_schema(self, input_schema: Optional[TableSchema]) -> Optional[TableSchema]:
        impl = TRANSFORM_REGISTRY.get(self.op)
        if impl is None:
            return input_schema
        return impl.output_schema(input_schema, self.params)

    def __str__(self) -> str:
        return f"Transform(op={self.op}, params={self.params})"


def _transform_from_ir(d: Dict[str, Any]) -> Transform:
    if not isinstance(d, dict):
        raise TidyUserError(
            "E_IR_TRANSFORM",
            "IR transform must be a mapping.",
            hint="Example: {op: filter, params: {where: 'val > 15'}}",
        )
    op = d.get("op")
    if not isinstance(op, str) or not op:
        raise TidyUserError(
            "E_IR_TRANSFORM",
            "IR transform requires a non-empty 'op' string.",
            hint="Example: {op: select, params: {columns: [a, b]}}",
        )
    params = d.get("params") or {}
    if not isinstance(params, dict):
        raise TidyUserError(
            "E_IR_TRANSFORM",
            "IR transform 'params' must be a mapping.",
            hint="Example: params: {where: \"depth >= 30\"}",
        )
    t = Transform(op, params=dict(params))
    t.validate()
    return t
