import pytest

from tidyverbs import InvalidColumnReference, Table, TidyUserError, Transform, group_by
from tidyverbs.models.transforms import TRANSFORM_REGISTRY


def _t():
    return Table.from_columns(
        {"site": ["A", "A", "B"], "depth": [10, 30, 20], "ph": [6.0, 5.5, 7.0]}
    )


def test_registry_knows_every_verb():
    expected = {
        "filter", "select", "drop", "distinct", "slice", "head", "tail", "sample_n", "sample_frac",
        "mutate", "transmute", "rename", "relocate", "arrange", "group_by", "ungroup",
        "summarise", "summarize", "count", "gather", "spread", "join", "inner_join",
        "left_join", "right_join", "full_join", "semi_join", "anti_join",
    }
    assert expected <= set(TRANSFORM_REGISTRY)
    assert TRANSFORM_REGISTRY["summarize"] is TRANSFORM_REGISTRY["summarise"]


def test_unknown_op_lists_supported_ops():
    with pytest.raises(TidyUserError) as ex:
        Transform("explode").validate()
    assert getattr(ex.value, "code", None) == "E_OP_NOT_IMPL"
    assert "filter" in (ex.value.hint or "")


def test_params_must_be_a_mapping():
    with pytest.raises(TidyUserError) as ex:
        Transform("select", params=["a"])  # type: ignore[arg-type]
    assert getattr(ex.value, "code", None) == "E_TRANSFORM_PARAMS"


def test_transform_applies_like_the_verb():
    t = _t()
    assert Transform("filter", {"where": "depth > 15"})(t)["depth"] == (30, 20)
    assert Transform("filter", {"where": ["depth > 15", "site == 'A'"]})(t)["depth"] == (30,)
    assert Transform("select", {"columns": ["ph", "site"]})(t).columns == ["ph", "site"]
    assert Transform("drop", {"columns": "ph"})(t).columns == ["site", "depth"]
    assert Transform("slice", {"positions": [3]})(t)["depth"] == (20,)
    assert Transform("head", {})(t).nrows == 3
    assert Transform("tail", {"n": 1})(t)["depth"] == (20,)
    assert Transform("distinct", {"columns": ["site"], "keep_all": False})(t).to_columns() == {"site": ["A", "B"]}
    assert Transform("rename", {"mapping": {"ph": "pH"}})(t).columns == ["site", "depth", "pH"]
    assert Transform("relocate", {"columns": ["ph"], "after": "site"})(t).columns == ["site", "ph", "depth"]
    assert Transform("arrange", {"by": [["depth", "desc"]]})(t)["depth"] == (30, 20, 10)
    assert (t >> Transform("mutate", {"assign": {"d2": "depth * 2"}}))["d2"] == (20, 60, 40)
    assert Transform("transmute", {"assign": {"d2": "depth * 2"}})(t).columns == ["d2"]


def test_sampling_transforms_are_seeded():
    t = _t()
    a = Transform("sample_n", {"n": 2, "seed": 5})(t)
    assert a == Transform("sample_n", {"n": 2, "seed": 5})(t)
    assert Transform("sample_frac", {"fraction": 1, "seed": 2})(t).nrows == 3

    with pytest.raises(TidyUserError) as ex:
        Transform("sample_frac", {"fraction": "half"}).validate()
    assert getattr(ex.value, "code", None) == "E_SAMPLE_FRAC_PARAMS"


def test_grouping_transforms():
    t = _t()
    g = Transform("group_by", {"by": ["site"]})(t)
    assert g.keys == ("site",)
    out = Transform("summarise", {"aggregations": {"deepest": "max(depth)"}})(g)
    assert out.to_columns() == {"site": ["A", "B"], "deepest": [30, 20]}
    assert Transform("ungroup", {})(g) == t
    counted = Transform("count", {"by": ["site"], "name": "rows", "sort": True})(t)
    assert counted.to_columns() == {"site": ["A", "B"], "rows": [2, 1]}


def test_reshape_transforms():
    t = _t()
    long = Transform("gather", {"key": "measure", "value": "reading", "columns": ["depth", "ph"]})(
        Transform("select", {"columns": ["depth", "ph"]})(t)
    )
    assert long.columns == ["measure", "reading"]
    assert long.nrows == 6

    ids = Table.from_columns({"id": [1, 1, 2], "k": ["a", "b", "a"], "v": [1, 2, 3]})
    wide = Transform("spread", {"key": "k", "value": "v", "fill": 0})(ids)
    assert wide.to_columns() == {"id": [1, 2], "a": [1, 3], "b": [2, 0]}


def test_join_transform_with_inline_table_and_how():
    t = _t()
    sites = Table.from_columns({"site": ["A", "C"], "name": ["alpha", "gamma"]})
    out = Transform("join", {"right": sites, "on": "site", "how": "full"})(t)
    assert out["name"][-1] == "gamma"
    assert Transform("anti_join", {"right": sites, "on": ["site"]})(t)["site"] == ("B",)


def test_validate_checks_params():
    cases = [
        (Transform("filter", {"where": ""}), "E_FILTER_PARAMS"),
        (Transform("filter", {"where": "a > 1", "strict": "yes"}), "E_FILTER_PARAMS"),
        (Transform("select", {"columns": []}), "E_SELECT_PARAMS"),
        (Transform("slice", {"positions": [1.5]}), "E_SLICE_PARAMS"),
        (Transform("head", {"n": "5"}), "E_HEAD_PARAMS"),
        (Transform("sample_n", {}), "E_SAMPLE_N_PARAMS"),
        (Transform("mutate", {"assign": {"x": ""}}), "E_MUTATE_PARAMS"),
        (Transform("rename", {"mapping": {}}), "E_RENAME_PARAMS"),
        (Transform("relocate", {"columns": ["a"], "before": 3}), "E_RELOCATE_PARAMS"),
        (Transform("arrange", {"by": [["a", "down"]]}), "E_ARRANGE_PARAMS"),
        (Transform("group_by", {"by": []}), "E_GROUP_BY_PARAMS"),
        (Transform("summarise", {"aggregations": []}), "E_SUMMARISE_PARAMS"),
        (Transform("count", {"name": ""}), "E_COUNT_PARAMS"),
        (Transform("gather", {"key": ""}), "E_GATHER_PARAMS"),
        (Transform("spread", {"key": "k"}), "E_SPREAD_PARAMS"),
        (Transform("join", {"on": "id"}), "E_JOIN_PARAMS"),
        (Transform("join", {"right": "r", "how": "cross"}), "E_JOIN_PARAMS"),
        (Transform("join", {"right": "r", "on": "id", "left_on": ["id"]}), "E_JOIN_PARAMS"),
        (Transform("left_join", {"right": "r", "left_on": ["id"]}), "E_JOIN_PARAMS"),
        (Transform("left_join", {"right": "r", "suffixes": ["_a"]}), "E_JOIN_PARAMS"),
    ]
    for step, code in cases:
        with pytest.raises(TidyUserError) as ex:
            step.validate()
        assert getattr(ex.value, "code", None) == code, step.op


def test_validate_against_input_schema():
    schema = _t().schema()
    with pytest.raises(InvalidColumnReference) as ex:
        Transform("rename", {"mapping": {"pH": "acidity"}}).validate(schema)
    assert getattr(ex.value, "code", None) == "E_RENAME_UNKNOWN_COL"
    assert "ph" in str(ex.value)

    with pytest.raises(InvalidColumnReference) as ex:
        Transform("group_by", {"by": ["sites"]}).apply(_t())
    assert getattr(ex.value, "code", None) == "E_GROUP_BY_UNKNOWN_COL"


def test_apply_on_grouped_table_validates_against_base():
    g = group_by(_t(), "site")
    out = Transform("filter", {"where": "depth == min(depth)"}).apply(g)
    assert out.table["depth"] == (10, 20)


def test_output_schema():
    schema = _t().schema()
    sel = Transform("select", {"columns": ["ph", "site"]}).output_schema(schema)
    assert [f["name"] for f in sel["fields"]] == ["ph", "site"]
    assert sel["fields"][0]["type"] == "number"

    mut = Transform("mutate", {"assign": {"d2": "depth * 2", "ph": "ph + 1"}}).output_schema(schema)
    assert [f["name"] for f in mut["fields"]] == ["site", "depth", "ph", "d2"]

    gat = Transform("gather", {"key": "m", "value": "r", "columns": ["depth", "ph"]}).output_schema(schema)
    assert [f["name"] for f in gat["fields"]] == ["site", "m", "r"]

    assert Transform("spread", {"key": "site", "value": "ph"}).output_schema(schema) is None
    assert Transform("left_join", {"right": "x"}).output_schema(schema) is None
    assert Transform("semi_join", {"right": "x"}).output_schema(schema) == schema
    assert Transform("explode").output_schema(schema) == schema


def test_str():
    assert str(Transform("head", {"n": 1})) == "Transform(op=head, params={'n': 1})"
