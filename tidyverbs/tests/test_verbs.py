import pytest

from tidyverbs import (
    NA,
    DuplicateColumnName,
    InsufficientRows,
    InvalidColumnReference,
    Table,
    TidyUserError,
    VerbOptions,
    arrange,
    desc,
    distinct,
    drop,
    filter,
    group_by,
    head,
    mutate,
    relocate,
    rename,
    sample_frac,
    sample_n,
    select,
    slice,
    starts_with,
    tail,
    transmute,
)


def _soil():
    return Table.from_columns(
        {
            "site": ["A", "A", "B", "B", "C"],
            "depth": [10, 30, 10, 40, 20],
            "ph": [6.1, 5.8, None, 7.2, 6.6],
        }
    )


def test_filter_keeps_matching_rows_in_order():
    """filter keeps rows where the predicate is true, preserving order."""
    out = filter(_soil(), "depth >= 20")
    assert out.to_columns()["depth"] == [30, 40, 20]


def test_filter_drops_na_predicates():
    """A predicate that evaluates to NA drops the row."""
    out = filter(_soil(), "ph > 6")
    assert out["ph"] == (6.1, 7.2, 6.6)


def test_filter_combines_predicates_with_and():
    """Several predicates must all hold."""
    out = filter(_soil(), "site == 'B'", "depth > 20")
    assert out.to_records() == [{"site": "B", "depth": 40, "ph": 7.2}]


def test_filter_requires_predicate_and_boolean_results():
    """No predicates, or a non-boolean predicate, is a user error."""
    with pytest.raises(TidyUserError) as ex:
        filter(_soil())
    assert getattr(ex.value, "code", None) == "E_FILTER_PARAMS"

    with pytest.raises(TidyUserError) as ex:
        filter(_soil(), "depth + 1")
    assert getattr(ex.value, "code", None) == "E_FILTER_TYPE"


def test_filter_unknown_column_is_reported():
    """Unknown columns in a predicate raise InvalidColumnReference."""
    with pytest.raises(InvalidColumnReference) as ex:
        filter(_soil(), "dept > 3")
    assert getattr(ex.value, "code", None) == "E_FILTER_UNKNOWN_COL"


def test_filter_grouped_uses_group_aggregates():
    """Aggregates inside a grouped filter are computed per group."""
    out = filter(group_by(_soil(), "site"), "depth == max(depth)")
    assert out.keys == ("site",)
    assert out.table.to_columns()["depth"] == [30, 40, 20]


def test_filter_does_not_modify_input():
    """Verbs return new tables."""
    t = _soil()
    before = t.to_columns()
    filter(t, "depth > 10")
    assert t.to_columns() == before


def test_select_and_drop():
    """select keeps matches in order; drop removes them."""
    assert select(_soil(), "ph", "site").columns == ["ph", "site"]
    assert select(_soil(), "-ph").columns == ["site", "depth"]
    assert drop(_soil(), "depth").columns == ["site", "ph"]
    assert drop(_soil(), starts_with("p")).columns == ["site", "depth"]


def test_select_errors():
    """select needs specs and known columns."""
    with pytest.raises(TidyUserError) as ex:
        select(_soil())
    assert getattr(ex.value, "code", None) == "E_SELECT_PARAMS"

    with pytest.raises(InvalidColumnReference) as ex:
        select(_soil(), "pH")
    assert getattr(ex.value, "code", None) == "E_SELECT_UNKNOWN_COL"

    with pytest.raises(TidyUserError) as ex:
        drop(_soil())
    assert getattr(ex.value, "code", None) == "E_DROP_PARAMS"


def test_select_keeps_grouping_columns():
    """Grouping columns are added back at the front of a grouped select."""
    out = select(group_by(_soil(), "site"), "ph")
    assert out.columns == ["site", "ph"]
    assert out.keys == ("site",)


def test_relocate():
    """relocate moves columns to the front or next to an anchor."""
    assert relocate(_soil(), "ph").columns == ["ph", "site", "depth"]
    assert relocate(_soil(), "site", after="ph").columns == ["depth", "ph", "site"]
    assert relocate(_soil(), "ph", before="depth").columns == ["site", "ph", "depth"]

    with pytest.raises(TidyUserError) as ex:
        relocate(_soil(), "ph", before="site", after="depth")
    assert getattr(ex.value, "code", None) == "E_RELOCATE_PARAMS"

    with pytest.raises(InvalidColumnReference) as ex:
        relocate(_soil(), "ph", after="nope")
    assert getattr(ex.value, "code", None) == "E_RELOCATE_UNKNOWN_COL"


def test_distinct_keeps_first_occurrence():
    """distinct keeps the first row of each key tuple."""
    t = Table.from_columns({"k": ["a", "b", "a", None, None], "v": [1, 2, 3, 4, 5]})
    assert distinct(t, "k").to_columns() == {"k": ["a", "b", None], "v": [1, 2, 4]}
    assert distinct(t, "k", keep_all=False).to_columns() == {"k": ["a", "b", None]}
    assert distinct(t).nrows == 5

    with pytest.raises(InvalidColumnReference) as ex:
        distinct(t, "kk")
    assert getattr(ex.value, "code", None) == "E_DISTINCT_UNKNOWN_COL"


def test_slice_positions_and_exclusions():
    """slice takes 1-based positions; negative positions exclude rows."""
    t = _soil()
    assert slice(t, 3, 1)["depth"] == (10, 10)
    assert slice(t, 2)["site"] == ("A",)
    assert slice(t, -1, -2)["depth"] == (10, 40, 20)
    assert slice(t, range(4, 10))["depth"] == (40, 20)


def test_slice_rejects_bad_positions():
    """Zero, mixed signs and non-integers are rejected."""
    for bad in ((0,), (1, -2), (True,), ("1",), ()):
        with pytest.raises(TidyUserError) as ex:
            slice(_soil(), *bad)
        assert getattr(ex.value, "code", None) == "E_SLICE_POSITIONS"


def test_slice_out_of_range_policy():
    """Out-of-range positions are dropped by default, or rejected on request."""
    assert slice(_soil(), 5, 6).nrows == 1
    with pytest.raises(TidyUserError) as ex:
        slice(_soil(), 6, options=VerbOptions(slice_out_of_range="error"))
    assert getattr(ex.value, "code", None) == "E_SLICE_RANGE"


def test_head_tail_and_grouped_head():
    """head/tail take leading/trailing rows, per group when grouped."""
    t = _soil()
    assert head(t, 2)["depth"] == (10, 30)
    assert tail(t, 2)["depth"] == (40, 20)
    assert tail(t, 0).nrows == 0
    assert head(t, 99).nrows == 5
    assert head(group_by(t, "site"), 1).table["depth"] == (10, 10, 20)

    with pytest.raises(TidyUserError) as ex:
        head(t, -1)
    assert getattr(ex.value, "code", None) == "E_HEAD_PARAMS"


def test_sample_n_is_reproducible_with_seed():
    """Same seed, same rows; sampled rows come from the input."""
    t = _soil()
    a = sample_n(t, 3, seed=7)
    b = sample_n(t, 3, seed=7)
    assert a == b
    assert a.nrows == 3
    assert set(a["depth"]) <= set(t["depth"])
    assert sample_n(t, 0, seed=1).nrows == 0


def test_sample_n_without_replacement_needs_enough_rows():
    """Drawing more rows than available without replacement raises InsufficientRows."""
    with pytest.raises(InsufficientRows) as ex:
        sample_n(_soil(), 6, seed=1)
    assert getattr(ex.value, "code", None) == "E_SAMPLE_INSUFFICIENT"
    assert sample_n(_soil(), 12, replace=True, seed=1).nrows == 12

    with pytest.raises(TidyUserError) as ex:
        sample_n(_soil(), -1)
    assert getattr(ex.value, "code", None) == "E_SAMPLE_PARAMS"


def test_sample_frac_rounds_half_up():
    """sample_frac draws round(fraction * rows) rows."""
    t = _soil()
    assert sample_frac(t, 0.5, seed=3).nrows == 3
    assert sample_frac(t, 0.2, seed=3).nrows == 1
    assert sample_frac(t, 2, replace=True, seed=3).nrows == 10

    with pytest.raises(InsufficientRows):
        sample_frac(t, 1.5)
    with pytest.raises(TidyUserError) as ex:
        sample_frac(t, -0.1)
    assert getattr(ex.value, "code", None) == "E_SAMPLE_PARAMS"


def test_sample_uses_default_seed_option():
    """The seed option applies when no explicit seed is passed."""
    t = _soil()
    opts = VerbOptions(seed=11)
    assert sample_n(t, 4, options=opts) == sample_n(t, 4, seed=11)


def test_mutate_adds_and_replaces_columns():
    """New columns are appended; replaced columns keep their place."""
    out = mutate(_soil(), ("depth", "depth / 10"), deep="depth > 2")
    assert out.columns == ["site", "depth", "ph", "deep"]
    assert out["depth"] == (1.0, 3.0, 1.0, 4.0, 2.0)
    assert out["deep"] == (False, True, False, True, False)


def test_mutate_sees_earlier_assignments():
    """Later assignments can reference earlier ones in the same call."""
    out = mutate(_soil(), ("d2", "depth * 2"), ("d4", "d2 * 2"))
    assert out["d4"] == (40, 120, 40, 160, 80)


def test_mutate_unnamed_expression_and_column_copy():
    """Unnamed expressions get a default name; a bare column is copied."""
    out = mutate(_soil(), "abs(depth)", ("d", "depth"))
    assert "abs_depth" in out.columns
    assert out["d"] == out["depth"]


def test_mutate_grouped_computes_per_group():
    """Aggregates inside a grouped mutate are per group."""
    out = mutate(group_by(_soil(), "site"), rel="depth - min(depth)")
    assert out.table["rel"] == (0, 20, 0, 30, 0)
    assert out.keys == ("site",)


def test_mutate_mixed_results_is_a_type_error():
    """An expression whose branches have different types is rejected."""
    with pytest.raises(TidyUserError) as ex:
        mutate(_soil(), x="if_else(depth > 20, 'deep', depth)")
    assert getattr(ex.value, "code", None) == "E_MUTATE_TYPE"


def test_mutate_requires_an_expression():
    """mutate with nothing to assign is an error."""
    with pytest.raises(TidyUserError) as ex:
        mutate(_soil())
    assert getattr(ex.value, "code", None) == "E_MUTATE_PARAMS"


def test_transmute_keeps_only_assigned_and_group_columns():
    """transmute returns the assigned columns (plus grouping columns)."""
    assert transmute(_soil(), d="depth * 2").columns == ["d"]
    out = transmute(group_by(_soil(), "site"), d="depth * 2")
    assert out.columns == ["site", "d"]


def test_rename():
    """rename changes names but not positions; grouped keys follow."""
    out = rename(_soil(), {"ph": "pH", "site": "plot"})
    assert out.columns == ["plot", "depth", "pH"]

    g = rename(group_by(_soil(), "site"), {"site": "plot"})
    assert g.keys == ("plot",)

    with pytest.raises(InvalidColumnReference) as ex:
        rename(_soil(), {"phh": "x"})
    assert getattr(ex.value, "code", None) == "E_RENAME_UNKNOWN_COL"

    with pytest.raises(DuplicateColumnName) as ex:
        rename(_soil(), {"ph": "depth"})
    assert getattr(ex.value, "code", None) == "E_RENAME_DUPLICATE_COL"

    with pytest.raises(TidyUserError) as ex:
        rename(_soil(), {})
    assert getattr(ex.value, "code", None) == "E_RENAME_PARAMS"


def test_rename_swap_is_allowed():
    """Swapping two names in one mapping does not collide."""
    out = rename(_soil(), {"depth": "ph", "ph": "depth"})
    assert out.columns == ["site", "ph", "depth"]


def test_arrange_multi_key_and_descending():
    """Keys apply left to right; '-name', desc() and tuples mean descending."""
    t = _soil()
    out = arrange(t, "site", "-depth")
    assert out["depth"] == (30, 10, 40, 10, 20)
    assert arrange(t, "site", desc("depth")) == out
    assert arrange(t, "site", ("depth", "desc")) == out


def test_arrange_puts_na_last_both_ways():
    """Missing values sort last ascending and descending."""
    t = _soil()
    assert arrange(t, "ph")["ph"][-1] is NA
    assert arrange(t, desc("ph"))["ph"] == (7.2, 6.6, 6.1, 5.8, NA)


def test_arrange_is_stable():
    """Rows with equal keys keep their input order."""
    t = Table.from_columns({"k": [2, 1, 2, 1], "i": [1, 2, 3, 4]})
    assert arrange(t, "k")["i"] == (2, 4, 1, 3)
    assert arrange(t, desc("k"))["i"] == (1, 3, 2, 4)


def test_arrange_categorical_by_levels():
    """Categorical columns sort by level order, not alphabetically."""
    t = Table.from_columns(
        {"grade": ["low", "high", "mid"]},
        dtypes={"grade": "categorical"},
        levels={"grade": ["low", "mid", "high"]},
    )
    assert arrange(t, "grade")["grade"] == ("low", "mid", "high")


def test_arrange_errors():
    """Missing keys, unknown columns and bad directions are reported."""
    with pytest.raises(TidyUserError) as ex:
        arrange(_soil())
    assert getattr(ex.value, "code", None) == "E_ARRANGE_PARAMS"

    with pytest.raises(InvalidColumnReference) as ex:
        arrange(_soil(), "dpth")
    assert getattr(ex.value, "code", None) == "E_ARRANGE_UNKNOWN_COL"

    with pytest.raises(TidyUserError) as ex:
        arrange(_soil(), ("depth", "down"))
    assert getattr(ex.value, "code", None) == "E_ARRANGE_PARAMS"


def test_arrange_grouped_stays_grouped():
    """Sorting a grouped table keeps its grouping."""
    out = arrange(group_by(_soil(), "site"), "-depth")
    assert out.keys == ("site",)
    assert out.table["depth"] == (40, 30, 20, 10, 10)
