import copy
import pickle
from datetime import date

import petl as etl
import pytest

from tidyverbs import NA, Column, DuplicateColumnName, InvalidColumnReference, Table, TidyUserError


def _t():
    return Table.from_columns({"id": [1, 2, 3], "site": ["A", "B", None], "ok": [True, False, True]})


def test_na_is_a_distinct_singleton():
    """NA differs from None, False, 0 and the empty string, and survives copy/pickle."""
    assert NA is not None
    for other in (None, False, 0, "", float("nan")):
        assert NA != other
    assert copy.deepcopy(NA) is NA
    assert pickle.loads(pickle.dumps(NA)) is NA
    assert repr(NA) == "NA"


def test_column_infers_dtypes():
    """Column dtype is inferred from its non-missing values."""
    assert Column("a", [1, 2.5]).dtype == "numeric"
    assert Column("a", ["x", None]).dtype == "string"
    assert Column("a", [True, None]).dtype == "boolean"
    assert Column("a", [date(2020, 1, 1)]).dtype == "date"
    assert Column("a", [None, None]).dtype == "any"


def test_column_converts_none_to_na():
    """None values are stored as NA."""
    c = Column("a", [1, None])
    assert c.values == (1, NA)
    assert c.to_list() == [1, None]


def test_column_rejects_mixed_values():
    """A column cannot mix numbers and strings."""
    with pytest.raises(TidyUserError) as ex:
        Column("a", [1, "x"])
    assert getattr(ex.value, "code", None) == "E_COLUMN_TYPE"


def test_column_rejects_declared_dtype_mismatch_and_bad_dtype():
    """Declared dtypes must be known and agree with the values."""
    with pytest.raises(TidyUserError) as ex:
        Column("a", [1, 2], dtype="string")
    assert getattr(ex.value, "code", None) == "E_COLUMN_TYPE"

    with pytest.raises(TidyUserError) as ex:
        Column("a", [1], dtype="uuid")
    assert getattr(ex.value, "code", None) == "E_COLUMN_DTYPE"


def test_column_rejects_bad_name():
    """Column names must be non-empty strings."""
    with pytest.raises(TidyUserError) as ex:
        Column("", [1])
    assert getattr(ex.value, "code", None) == "E_COLUMN_NAME"


def test_categorical_levels_default_and_validation():
    """Categorical levels default to first appearance and must cover every value."""
    c = Column("grade", ["b", "a", "b"], dtype="categorical")
    assert c.levels == ("b", "a")

    with pytest.raises(TidyUserError) as ex:
        Column("grade", ["c"], dtype="categorical", levels=("a", "b"))
    assert getattr(ex.value, "code", None) == "E_COLUMN_LEVELS"

    with pytest.raises(TidyUserError) as ex:
        Column("n", [1], levels=("a",), dtype="numeric")
    assert getattr(ex.value, "code", None) == "E_COLUMN_LEVELS"


def test_table_rejects_duplicate_names_and_ragged_columns():
    """Table construction checks unique names and equal lengths."""
    with pytest.raises(DuplicateColumnName) as ex:
        Table((Column("a", [1]), Column("a", [2])))
    assert getattr(ex.value, "code", None) == "E_DUPLICATE_COL"

    with pytest.raises(TidyUserError) as ex:
        Table.from_columns({"a": [1, 2], "b": [1]})
    assert getattr(ex.value, "code", None) == "E_TABLE_LENGTH"


def test_table_shape_and_access():
    """Basic accessors report shape, dtypes and values."""
    t = _t()
    assert t.shape == (3, 3)
    assert t.columns == ["id", "site", "ok"]
    assert t.dtypes == {"id": "numeric", "site": "string", "ok": "boolean"}
    assert t["site"] == ("A", "B", NA)
    assert t.row(0) == {"id": 1, "site": "A", "ok": True}
    assert list(t.rows())[2] == (3, NA, True)
    assert "site" in t and "nope" not in t


def test_unknown_column_suggests_close_name():
    """column() raises InvalidColumnReference with a 'Did you mean' hint."""
    with pytest.raises(InvalidColumnReference) as ex:
        _t().column("sitee")
    assert getattr(ex.value, "code", None) == "E_UNKNOWN_COL"
    assert "site" in str(ex.value)


def test_from_records_with_dicts_and_tuples():
    """Records may be mappings or sequences with explicit column names."""
    a = Table.from_records([{"x": 1, "y": "a"}, {"x": 2}])
    assert a.to_columns() == {"x": [1, 2], "y": ["a", None]}

    b = Table.from_records([(1, "a"), (2, "b")], columns=["x", "y"])
    assert b.to_records() == [{"x": 1, "y": "a"}, {"x": 2, "y": "b"}]

    with pytest.raises(TidyUserError) as ex:
        Table.from_records([(1,)], columns=["x", "y"])
    assert getattr(ex.value, "code", None) == "E_TABLE_RECORDS"


def test_petl_round_trip():
    """Tables convert to and from petl tables; NA travels as None."""
    t = _t()
    ptbl = t.to_petl()
    assert list(etl.header(ptbl)) == ["id", "site", "ok"]
    assert list(etl.data(ptbl))[2] == (3, None, True)
    assert Table.from_petl(ptbl) == t


def test_empty_table_and_schema():
    """Table.empty builds zero-row columns; schema() lists frictionless-style fields."""
    e = Table.empty(["a", "b"], dtypes={"a": "numeric"})
    assert e.shape == (0, 2)
    assert e.schema() == {"fields": [{"name": "a", "type": "number"}, {"name": "b", "type": "any"}]}

    cat = Table((Column("g", ["x"], dtype="categorical", levels=("x", "y")),))
    assert cat.schema()["fields"][0]["constraints"] == {"enum": ["x", "y"]}


def test_equality_is_by_value():
    """Two tables with the same names, dtypes and values are equal."""
    assert _t() == _t()
    assert _t() != Table.from_columns({"id": [1, 2, 3]})


def test_str_renders_petl_look():
    """str() shows the dimensions, dtypes and a petl preview."""
    text = str(_t())
    assert text.startswith("Table(3 x 3)")
    assert "site:string" in text
    assert "'id'" in text or "id" in text
    assert "NA" in text


def test_pipe_and_rshift():
    """pipe() and >> apply ordinary functions left to right."""
    t = _t()
    assert t.pipe(lambda x, n: x.nrows + n, 1) == 4
    assert (t >> (lambda x: x.ncols)) == 3
