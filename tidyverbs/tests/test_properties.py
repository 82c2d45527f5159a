import random

from tidyverbs import (
    NA,
    Table,
    anti_join,
    arrange,
    filter,
    gather,
    group_by,
    inner_join,
    left_join,
    select,
    spread,
    summarise,
)


def _random_table(seed, nrows=30):
    rng = random.Random(seed)
    return Table.from_columns(
        {
            "id": list(range(nrows)),
            "grp": [rng.choice(["a", "b", "c"]) for _ in range(nrows)],
            "val": [rng.choice([None, rng.randint(0, 50)]) for _ in range(nrows)],
            "w": [rng.randint(0, 3) for _ in range(nrows)],
        }
    )


def test_filter_scenario():
    """{id:[1,2,3], val:[10,20,30]} filtered by val > 15 keeps the last two rows."""
    t = Table.from_columns({"id": [1, 2, 3], "val": [10, 20, 30]})
    assert filter(t, "val > 15") == Table.from_columns({"id": [2, 3], "val": [20, 30]})


def test_join_scenarios():
    """left, inner and anti joins on a one-key example."""
    left = Table.from_columns({"id": [1, 2], "x": [10, 20]})
    right = Table.from_columns({"id": [2, 3], "y": [200, 300]})
    assert left_join(left, right, on="id").to_columns() == {"id": [1, 2], "x": [10, 20], "y": [None, 200]}
    assert inner_join(left, right, on="id").to_columns() == {"id": [2], "x": [20], "y": [200]}
    assert anti_join(left, right, on="id").to_columns() == {"id": [1], "x": [10]}


def test_summarise_scenario():
    """mean(v) by k over {A, A, B} gives 1.5 and 3."""
    t = Table.from_columns({"k": ["A", "A", "B"], "v": [1, 2, 3]})
    out = summarise(group_by(t, "k"), "mean(v)")
    assert out.to_columns() == {"k": ["A", "B"], "mean_v": [1.5, 3]}


def test_filter_is_idempotent():
    """Filtering twice by the same predicate changes nothing the second time."""
    for seed in range(5):
        t = _random_table(seed)
        for pred in ("val > 20", "grp == 'a' or w >= 2", "is_na(val)"):
            once = filter(t, pred)
            assert filter(once, pred) == once


def test_gather_spread_round_trip():
    """Spreading a gathered table restores every value (up to column order)."""
    for seed in range(5):
        t = select(_random_table(seed), "id", "val", "w")
        back = spread(gather(t, "key", "value", "val", "w"), "key", "value")
        assert select(back, "id", "val", "w").to_columns() == t.to_columns()


def test_arrange_is_stable():
    """Rows with equal keys keep their input order."""
    for seed in range(5):
        t = _random_table(seed)
        out = arrange(t, "w")
        for w in set(t["w"]):
            ids_in = [i for i, x in zip(t["id"], t["w"]) if x == w]
            ids_out = [i for i, x in zip(out["id"], out["w"]) if x == w]
            assert ids_in == ids_out
        ws = list(out["w"])
        assert ws == sorted(ws)


def test_left_join_with_no_matches_keeps_every_row():
    """A left join against an empty (or non-matching) table keeps all rows, right columns NA."""
    t = _random_table(1, nrows=8)
    empty = Table.from_columns({"id": [], "extra": []})
    out = left_join(t, empty, on="id")
    assert out.nrows == t.nrows
    assert all(v is NA for v in out["extra"])

    nomatch = Table.from_columns({"id": [100, 101], "extra": ["p", "q"]})
    out = left_join(t, nomatch, on="id")
    assert out.nrows == t.nrows
    assert all(v is NA for v in out["extra"])
