import pytest

from tidyverbs import (
    NA,
    DuplicateColumnName,
    GroupedTable,
    InvalidColumnReference,
    Table,
    TidyUserError,
    count,
    group_by,
    summarise,
    summarize,
    ungroup,
)
from tidyverbs.models.grouping import n_groups


def _t():
    return Table.from_columns({"k": ["A", "A", "B", None, None], "v": [1, 2, 3, 4, None]})


def test_group_by_partitions_in_first_appearance_order():
    """Groups follow the first appearance of each key; NA keys share a group."""
    g = group_by(_t(), "k")
    assert isinstance(g, GroupedTable)
    assert [key for key, _ in g.groups] == [("A",), ("B",), (NA,)]
    assert [idx for _, idx in g.groups] == [(0, 1), (2,), (3, 4)]
    assert g.ngroups == 3
    assert n_groups(g) == 3 and n_groups(_t()) == 1


def test_group_by_add_and_ungroup():
    """add=True extends the grouping; ungroup returns the plain table."""
    t = Table.from_columns({"a": [1, 1, 2], "b": ["x", "y", "x"]})
    g = group_by(group_by(t, "a"), "b", add=True)
    assert g.keys == ("a", "b")
    assert g.ngroups == 3
    assert group_by(g, "b").keys == ("b",)
    assert ungroup(g) == t
    assert ungroup(t) is t


def test_group_by_errors():
    """Keys must be given once and exist in the table."""
    with pytest.raises(TidyUserError) as ex:
        group_by(_t())
    assert getattr(ex.value, "code", None) == "E_GROUP_BY_PARAMS"

    with pytest.raises(DuplicateColumnName):
        group_by(_t(), "k", "k")

    with pytest.raises(InvalidColumnReference) as ex:
        group_by(_t(), "kk")
    assert getattr(ex.value, "code", None) == "E_GROUP_BY_UNKNOWN_COL"


def test_group_keys_table():
    """group_keys lists one row per group."""
    assert group_by(_t(), "k").group_keys().to_columns() == {"k": ["A", "B", None]}


def test_summarise_one_row_per_group():
    """summarise puts key columns first, then one column per aggregation."""
    out = summarise(group_by(_t(), "k"), "mean(v)", total="sum(v)", rows="n()")
    assert out.columns == ["k", "mean_v", "total", "rows"]
    assert out.to_columns() == {
        "k": ["A", "B", None],
        "mean_v": [1.5, 3, None],
        "total": [3, 3, None],
        "rows": [2, 1, 2],
    }


def test_summarise_ignore_missing():
    """ignore_missing=true skips NA inside a group."""
    out = summarise(group_by(_t(), "k"), m="mean(v, ignore_missing=true)")
    assert out["m"] == (1.5, 3, 4)


def test_summarise_ungrouped_gives_one_row():
    """An ungrouped table summarises to a single row."""
    out = summarize(_t(), "n()", "max(k)")
    assert out.to_records() == [{"n": 5, "max_k": None}]


def test_summarise_can_reference_earlier_results():
    """A later aggregation may use an earlier result in the same call."""
    out = summarise(group_by(_t(), "k"), ("s", "sum(v)"), ("twice", "s * 2"))
    assert out["twice"] == (6, 6, NA)


def test_summarise_rejects_non_scalar_and_key_clash():
    """Each expression must reduce to one value; keys cannot be overwritten."""
    with pytest.raises(TidyUserError) as ex:
        summarise(group_by(_t(), "k"), "v + 1")
    assert getattr(ex.value, "code", None) == "E_SUMMARISE_SIZE"

    with pytest.raises(DuplicateColumnName) as ex:
        summarise(group_by(_t(), "k"), k="n()")
    assert getattr(ex.value, "code", None) == "E_SUMMARISE_DUPLICATE_COL"

    with pytest.raises(TidyUserError) as ex:
        summarise(_t())
    assert getattr(ex.value, "code", None) == "E_SUMMARISE_PARAMS"


def test_summarise_empty_groups():
    """Grouping an empty table gives an empty summary with the right columns."""
    empty = Table.from_columns({"k": [], "v": []})
    out = summarise(group_by(empty, "k"), "n()")
    assert out.columns == ["k", "n"]
    assert out.nrows == 0


def test_count():
    """count tallies rows per key, optionally sorted by frequency."""
    t = Table.from_columns({"s": ["x", "y", "y", "z", "y", "z"]})
    assert count(t, "s").to_columns() == {"s": ["x", "y", "z"], "n": [1, 3, 2]}
    assert count(t, "s", sort=True)["s"] == ("y", "z", "x")
    assert count(t, name="rows").to_columns() == {"rows": [6]}
    assert count(group_by(t, "s"))["n"] == (1, 3, 2)


def test_grouped_table_repr_and_pipe():
    """GroupedTable shows its keys and supports pipe/>>."""
    g = group_by(_t(), "k")
    assert str(g).startswith("Groups: k [3]")
    assert (g >> ungroup) == _t()
