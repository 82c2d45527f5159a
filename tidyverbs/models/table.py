from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import petl as etl

from tidyverbs.errors import DuplicateColumnName, InvalidColumnReference, TidyUserError
from tidyverbs.util import (
    DTYPES,
    NA,
    format_value,
    from_na,
    infer_dtype,
    schema_type,
    suggest_column,
    to_na,
)


@dataclass(frozen=True)
class Column:
    """A named, homogeneously typed sequence of values.

    `dtype` is inferred from the values when omitted. Categorical columns keep an
    ordered tuple of `levels`; sorting and spreading follow that order.
    """

    name: str
    values: Tuple[Any, ...] = ()
    dtype: Optional[str] = None
    levels: Optional[Tuple[str, ...]] = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise TidyUserError(
                "E_COLUMN_NAME",
                f"Column names must be non-empty strings, got {self.name!r}.",
                hint="Example: Column('depth', [10, 20, 30])",
            )
        values = tuple(to_na(v) for v in self.values)
        object.__setattr__(self, "values", values)

        inferred = infer_dtype(values)
        dtype = self.dtype
        if dtype is None:
            if self.levels is not None:
                dtype = "categorical"
            elif inferred == "mixed":
                raise TidyUserError(
                    "E_COLUMN_TYPE",
                    f"Column {self.name!r} mixes values of different types.",
                    hint="Every value in a column must share one type (numeric, string, boolean or date).",
                )
            else:
                dtype = inferred
        if dtype not in DTYPES:
            raise TidyUserError(
                "E_COLUMN_DTYPE",
                f"Unsupported dtype {dtype!r} for column {self.name!r}.",
                hint="Supported dtypes: " + ", ".join(DTYPES) + ".",
            )
        expected = "string" if dtype == "categorical" else dtype
        if inferred not in ("any", expected):
            raise TidyUserError(
                "E_COLUMN_TYPE",
                f"Column {self.name!r} is declared {dtype!r} but holds {inferred!r} values.",
                hint="Convert the values first, or leave dtype out to infer it.",
            )
        object.__setattr__(self, "dtype", dtype)

        if dtype == "categorical":
            levels = self.levels
            if levels is None:
                seen: Dict[Any, None] = {}
                for v in values:
                    if v is not NA:
                        seen.setdefault(v, None)
                levels = tuple(seen)
            levels = tuple(levels)
            if len(set(levels)) != len(levels):
                raise TidyUserError(
                    "E_COLUMN_LEVELS",
                    f"Categorical column {self.name!r} has repeated levels.",
                    hint=str(list(levels)),
                )
            allowed = set(levels)
            stray = [v for v in values if v is not NA and v not in allowed]
            if stray:
                raise TidyUserError(
                    "E_COLUMN_LEVELS",
                    f"Categorical column {self.name!r} holds values outside its levels: {stray[:3]}.",
                    hint="Add the values to levels, or leave levels out to infer them.",
                )
            object.__setattr__(self, "levels", levels)
        elif self.levels is not None:
            raise TidyUserError(
                "E_COLUMN_LEVELS",
                f"Only categorical columns take levels (column {self.name!r} is {dtype!r}).",
            )

    @classmethod
    def _trusted(cls, name: str, values: Sequence[Any], dtype: str, levels: Optional[Tuple[str, ...]] = None) -> "Column":
        """Build a column from values already known to satisfy `dtype` (skips validation)."""
        col = object.__new__(cls)
        object.__setattr__(col, "name", name)
        object.__setattr__(col, "values", tuple(values))
        object.__setattr__(col, "dtype", dtype)
        object.__setattr__(col, "levels", levels)
        return col

    def __len__(self) -> int:
        return len(self.values)

    def take(self, indices: Iterable[Optional[int]]) -> "Column":
        """Rows at `indices`; an index of None produces NA."""
        vals = self.values
        return Column._trusted(
            self.name,
            [NA if i is None else vals[i] for i in indices],
            self.dtype,
            self.levels,
        )

    def rename(self, name: str) -> "Column":
        if name == self.name:
            return self
        return Column._trusted(name, self.values, self.dtype, self.levels)

    def sort_key(self) -> Callable[[Any], Any]:
        """Key function ordering this column's non-missing values (categoricals by level)."""
        if self.dtype == "categorical":
            rank = {lv: i for i, lv in enumerate(self.levels or ())}
            return rank.__getitem__
        return lambda v: v

    def to_list(self) -> List[Any]:
        return [from_na(v) for v in self.values]


@dataclass(frozen=True, eq=False)
class Table:
    """An immutable table: ordered, uniquely named columns of equal length.

    Verbs never change a Table; they return a new one.
    """

    data: Tuple[Column, ...] = ()

    _index: Dict[str, int] = field(default=None, init=False, repr=False)  # type: ignore[assignment]
    _nrows: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        cols = tuple(self.data)
        for c in cols:
            if not isinstance(c, Column):
                raise TidyUserError(
                    "E_TABLE_COLUMNS",
                    f"Table expects Column objects, got {type(c).__name__}.",
                    hint="Use Table.from_columns({...}) to build a table from plain lists.",
                )
        index: Dict[str, int] = {}
        for i, c in enumerate(cols):
            if c.name in index:
                raise DuplicateColumnName(
                    "E_DUPLICATE_COL",
                    f"Column name {c.name!r} appears more than once.",
                    hint="Column names must be unique within a table.",
                )
            index[c.name] = i
        lengths = {len(c) for c in cols}
        if len(lengths) > 1:
            detail = ", ".join(f"{c.name}={len(c)}" for c in cols)
            raise TidyUserError(
                "E_TABLE_LENGTH",
                "All columns of a table must have the same length.",
                hint=f"Got lengths: {detail}.",
            )
        object.__setattr__(self, "data", cols)
        object.__setattr__(self, "_index", index)
        object.__setattr__(self, "_nrows", lengths.pop() if lengths else 0)

    # ---------- construction ----------
    @classmethod
    def from_columns(
        cls,
        mapping: Mapping[str, Iterable[Any]],
        *,
        dtypes: Optional[Mapping[str, str]] = None,
        levels: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> "Table":
        """Build a table from ``{name: values}``; None values become NA."""
        dtypes = dtypes or {}
        levels = levels or {}
        cols = []
        for name, values in mapping.items():
            lv = levels.get(name)
            cols.append(Column(name, tuple(values), dtypes.get(name), tuple(lv) if lv is not None else None))
        return cls(tuple(cols))

    @classmethod
    def from_records(
        cls,
        records: Iterable[Any],
        columns: Optional[Sequence[str]] = None,
        *,
        dtypes: Optional[Mapping[str, str]] = None,
    ) -> "Table":
        """Build a table from dict records, or from sequences plus `columns`."""
        records = list(records)
        if columns is None:
            names: Dict[str, None] = {}
            for r in records:
                if not isinstance(r, Mapping):
                    raise TidyUserError(
                        "E_TABLE_RECORDS",
                        "Records without column names must be mappings.",
                        hint="Pass columns=[...] when records are tuples or lists.",
                    )
                for k in r:
                    names.setdefault(k, None)
            columns = list(names)
        data: Dict[str, List[Any]] = {c: [] for c in columns}
        for i, r in enumerate(records):
            if isinstance(r, Mapping):
                for c in columns:
                    data[c].append(r.get(c))
            else:
                r = tuple(r)
                if len(r) != len(columns):
                    raise TidyUserError(
                        "E_TABLE_RECORDS",
                        f"Record #{i} has {len(r)} values but there are {len(columns)} columns.",
                        hint=str(r),
                    )
                for c, v in zip(columns, r):
                    data[c].append(v)
        return cls.from_columns(data, dtypes=dtypes)

    @classmethod
    def from_petl(cls, table: Any, *, dtypes: Optional[Mapping[str, str]] = None) -> "Table":
        """Materialize a petl table (header row + data rows)."""
        header = [str(h) for h in etl.header(table)]
        return cls.from_records(etl.data(table), columns=header, dtypes=dtypes)

    @classmethod
    def empty(cls, columns: Sequence[str] = (), *, dtypes: Optional[Mapping[str, str]] = None) -> "Table":
        dtypes = dtypes or {}
        return cls(tuple(Column(c, (), dtypes.get(c, "any")) for c in columns))

    # ---------- shape and access ----------
    @property
    def columns(self) -> List[str]:
        return [c.name for c in self.data]

    @property
    def nrows(self) -> int:
        return self._nrows

    @property
    def ncols(self) -> int:
        return len(self.data)

    @property
    def shape(self) -> Tuple[int, int]:
        return self._nrows, len(self.data)

    @property
    def dtypes(self) -> Dict[str, str]:
        return {c.name: c.dtype for c in self.data}

    def __len__(self) -> int:
        return self._nrows

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def column(self, name: str) -> Column:
        i = self._index.get(name)
        if i is None:
            raise InvalidColumnReference(
                "E_UNKNOWN_COL",
                f"Unknown column {name!r}.",
                hint=suggest_column(name, self.columns),
            )
        return self.data[i]

    def __getitem__(self, name: str) -> Tuple[Any, ...]:
        return self.column(name).values

    def row(self, i: int) -> Dict[str, Any]:
        return {c.name: c.values[i] for c in self.data}

    def rows(self) -> Iterator[Tuple[Any, ...]]:
        cols = [c.values for c in self.data]
        for i in range(self._nrows):
            yield tuple(v[i] for v in cols)

    # ---------- export ----------
    def to_columns(self) -> Dict[str, List[Any]]:
        """Plain ``{name: values}`` with NA mapped back to None."""
        return {c.name: c.to_list() for c in self.data}

    def to_records(self) -> List[Dict[str, Any]]:
        names = self.columns
        return [dict(zip(names, (from_na(v) for v in r))) for r in self.rows()]

    def to_petl(self):
        """Return an equivalent petl table (NA becomes None)."""
        header = tuple(self.columns)
        body = [tuple(from_na(v) for v in r) for r in self.rows()]
        return etl.wrap([header] + body)

    def schema(self) -> Dict[str, Any]:
        """A frictionless-style schema: ``{"fields": [{"name", "type"}, ...]}``."""
        fields: List[Dict[str, Any]] = []
        for c in self.data:
            f: Dict[str, Any] = {"name": c.name, "type": schema_type(c.dtype)}
            if c.dtype == "categorical":
                f["constraints"] = {"enum": list(c.levels or ())}
            fields.append(f)
        return {"fields": fields}

    # ---------- derivation helpers used by the verbs ----------
    def take(self, indices: Sequence[Optional[int]]) -> "Table":
        """Rows at `indices` (in that order); an index of None yields an all-NA row."""
        return Table(tuple(c.take(indices) for c in self.data))

    def with_data(self, columns: Iterable[Column]) -> "Table":
        return Table(tuple(columns))

    # ---------- composition ----------
    def pipe(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """``t.pipe(f, a)`` is ``f(t, a)``."""
        return fn(self, *args, **kwargs)

    def __rshift__(self, fn: Callable[[Any], Any]) -> Any:
        if not callable(fn):
            return NotImplemented
        return fn(self)

    # ---------- comparison and display ----------
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Table):
            return NotImplemented
        if self.columns != other.columns:
            return False
        for a, b in zip(self.data, other.data):
            if a.dtype != b.dtype or a.levels != b.levels or a.values != b.values:
                return False
        return True

    __hash__ = None  # type: ignore[assignment]

    def look(self, n: int = 5) -> str:
        """Bounded text preview rendered by petl."""
        header = tuple(self.columns)
        body = []
        for i, r in enumerate(self.rows()):
            if i >= n:
                break
            body.append(tuple(format_value(v) for v in r))
        return str(etl.look(etl.wrap([header] + body), limit=n))

    def __str__(self) -> str:
        types = ", ".join(f"{c.name}:{c.dtype}" for c in self.data)
        out = f"Table({self._nrows} x {len(self.data)})  {{{types}}}"
        if self.data:
            out += "\n" + self.look()
            if self._nrows > 5:
                out += f"… {self._nrows - 5} more row(s)"
        return out

    def __repr__(self) -> str:
        return f"Table(columns={self.columns!r}, nrows={self._nrows})"
