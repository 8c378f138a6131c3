from itertools import permutations

from aggregation import (
    First,
    Last,
    MaxWithPayload,
    aggregate,
    chronological,
    distinct,
    max_of,
    mean_of,
    sum_of,
    within_horizon,
    year_label,
)


def test_mean_is_none_when_no_value_parses():
    rows = [{"po_number": "PO1", "lead_time_days": "n/a"}]
    groups = aggregate(rows, "po_number", {"lead_time_days": mean_of("lead_time_days")})
    assert groups == {"PO1": {"lead_time_days": None}}


def test_parse_failure_only_drops_its_own_measure():
    rows = [
        {"po_number": "PO1", "total_cost": "12.5", "lead_time_days": "bad"},
        {"po_number": "PO1", "total_cost": "oops", "lead_time_days": 4},
    ]
    groups = aggregate(rows, "po_number", {
        "total_cost": sum_of("total_cost"),
        "lead_time_days": mean_of("lead_time_days"),
    })
    assert groups["PO1"]["total_cost"] == 12.5
    assert groups["PO1"]["lead_time_days"] == 4.0


def test_distinct_count_ignores_row_order():
    rows = [
        {"g": "x", "customer_id": "C1"},
        {"g": "x", "customer_id": "C2"},
        {"g": "x", "customer_id": "C1"},
        {"g": "x", "customer_id": "C3"},
        {"g": "x", "customer_id": "C2"},
    ]
    for order in permutations(rows):
        groups = aggregate(list(order), "g", {"customers": distinct("customer_id")})
        assert groups["x"]["customers"] == 3


def test_keep_best_is_order_independent():
    rows = [
        {"g": "x", "risk_score": 4, "risk_level": "Safe"},
        {"g": "x", "risk_score": "9.5", "risk_level": "High Risk"},
        {"g": "x", "risk_score": 7, "risk_level": "Medium Risk"},
        {"g": "x", "risk_score": None, "risk_level": "Unknown"},
        {"g": "x", "risk_score": "n/a", "risk_level": "Bogus"},
    ]
    for order in permutations(rows):
        groups = aggregate(list(order), "g", {"risk": max_of("risk_score", payload="risk_level")})
        assert groups["x"]["risk"] == (9.5, "High Risk")


def test_max_ties_keep_first_payload():
    acc = MaxWithPayload()
    acc.observe(5, payload="A")
    acc.observe("5.0", payload="B")
    assert acc.finalize() == (5.0, "A")


def test_null_keys_never_merge():
    rows = [
        {"id": None, "v": 1},
        {"id": "", "v": 2},
        {"id": "x", "v": 3},
        {"id": "x", "v": 4},
    ]
    groups = aggregate(rows, "id", {"v": sum_of("v")})
    assert list(groups) == ["row-0", "row-1", "x"]
    assert groups["x"]["v"] == 7.0


def test_null_keys_can_be_dropped():
    rows = [{"id": None, "v": 1}, {"id": "x", "v": 3}]
    groups = aggregate(rows, "id", {"v": sum_of("v")}, fallback_prefix=None)
    assert list(groups) == ["x"]


def test_positional_fallback_counts_each_null_once():
    rows = [
        {"g": "x", "po_number": None},
        {"g": "x", "po_number": None},
        {"g": "x", "po_number": "A"},
        {"g": "x", "po_number": "A"},
    ]
    groups = aggregate(rows, "g", {
        "strict": distinct("po_number"),
        "positional": distinct("po_number", positional_fallback=True),
    })
    assert groups["x"] == {"strict": 1, "positional": 3}


def test_where_predicate_filters_rows_per_measure():
    rows = [
        {"g": "x", "value": 10, "flag": True},
        {"g": "x", "value": 5, "flag": False},
    ]
    groups = aggregate(rows, "g", {
        "all": sum_of("value"),
        "flagged": sum_of("value", where=lambda r: r["flag"]),
    })
    assert groups["x"] == {"all": 15.0, "flagged": 10.0}


def test_tuple_key_with_missing_part_uses_fallback():
    rows = [
        {"region": "North", "year": 2024, "v": 1},
        {"region": "North", "year": None, "v": 2},
    ]
    groups = aggregate(rows, ("region", "year"), {"v": sum_of("v")})
    assert list(groups) == [("North", 2024), "row-1"]


def test_first_and_last_skip_missing_values():
    first, last = First(), Last()
    for value in [None, "", "a", "b", None]:
        first.observe(value)
        last.observe(value)
    assert first.finalize() == "a"
    assert last.finalize() == "b"


def test_within_horizon():
    assert within_horizon("2025-12-31")
    assert not within_horizon("2026-01-15")
    assert within_horizon(2024)
    assert within_horizon(None)


def test_chronological_puts_undated_last_and_is_stable():
    rows = [
        {"id": 1, "d": "2024-03-01"},
        {"id": 2, "d": None},
        {"id": 3, "d": "2024-01-01"},
        {"id": 4, "d": "garbage"},
        {"id": 5, "d": "2024-01-01"},
    ]
    assert [r["id"] for r in chronological(rows, "d")] == [3, 5, 1, 2, 4]


def test_year_label():
    assert year_label(2024.0) == "2024"
    assert year_label(" 2023 ") == "2023"
    assert year_label(None) == "Unknown"
