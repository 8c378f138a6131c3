"""
Grouping and aggregation engine shared by every dashboard.

Rows are grouped by a natural key; each group holds one accumulator per
measure. Accumulators coerce their own inputs, so a bad value only drops
out of the measure it was meant for.
"""
import math
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Iterable, Union

from data_loader import YEAR_HORIZON, extract_year, is_missing, to_number, to_timestamp


# ============================================================================
# Accumulators
# ============================================================================

class Accumulator:
    """Running state for one measure of one group."""

    def observe(self, value: Any) -> None:
        raise NotImplementedError

    def finalize(self) -> Any:
        raise NotImplementedError


class Sum(Accumulator):
    def __init__(self):
        self.total = 0.0

    def observe(self, value: Any) -> None:
        number = to_number(value)
        if number is not None:
            self.total += number

    def finalize(self) -> float:
        return self.total


class Mean(Accumulator):
    """Arithmetic mean; None until at least one value parses."""

    def __init__(self):
        self.total = 0.0
        self.count = 0

    def observe(self, value: Any) -> None:
        number = to_number(value)
        if number is not None:
            self.total += number
            self.count += 1

    def finalize(self) -> float | None:
        if self.count == 0:
            return None
        return self.total / self.count


class MaxWithPayload(Accumulator):
    """
    Highest value seen plus a label carried from the same row.

    Only a strictly greater value replaces the current best, so ties keep
    the first-seen payload.
    """

    def __init__(self):
        self.best: float | None = None
        self.payload: Any = None

    def observe(self, value: Any, payload: Any = None) -> None:
        number = to_number(value)
        if number is None:
            return
        if self.best is None or number > self.best:
            self.best = number
            self.payload = None if is_missing(payload) else payload

    def finalize(self) -> tuple[float | None, Any]:
        return self.best, self.payload


class DistinctCount(Accumulator):
    """Set-based count; a null value counts under its fallback key when one is given."""

    def __init__(self):
        self.values: set = set()

    def observe(self, value: Any, fallback: Hashable | None = None) -> None:
        if is_missing(value):
            if fallback is None:
                return
            value = fallback
        self.values.add(value)

    def finalize(self) -> int:
        return len(self.values)


class First(Accumulator):
    def __init__(self):
        self.value: Any = None

    def observe(self, value: Any) -> None:
        if self.value is None and not is_missing(value):
            self.value = value

    def finalize(self) -> Any:
        return self.value


class Last(Accumulator):
    def __init__(self):
        self.value: Any = None

    def observe(self, value: Any) -> None:
        if not is_missing(value):
            self.value = value

    def finalize(self) -> Any:
        return self.value


# ============================================================================
# Measures
# ============================================================================

@dataclass(frozen=True)
class Measure:
    """
    How one output column of a group is fed.

    Attributes:
        kind: Accumulator class
        column: Source column (ignored when getter is set)
        getter: Computes the input value from the whole row
        payload: Column carried alongside a MaxWithPayload value
        positional_fallback: DistinctCount only; null values count once per row
        where: Row predicate; rows failing it are not observed
    """
    kind: type[Accumulator]
    column: str | None = None
    getter: Callable[[dict], Any] | None = None
    payload: str | None = None
    positional_fallback: bool = False
    where: Callable[[dict], bool] | None = None

    def feed(self, accumulator: Accumulator, row: dict, index: int) -> None:
        if self.where is not None and not self.where(row):
            return
        value = self.getter(row) if self.getter is not None else row.get(self.column)
        if self.payload is not None:
            accumulator.observe(value, payload=row.get(self.payload))
        elif self.positional_fallback:
            accumulator.observe(value, fallback=f"row-{index}")
        else:
            accumulator.observe(value)


def sum_of(column: str | None = None, getter=None, where=None) -> Measure:
    return Measure(Sum, column=column, getter=getter, where=where)


def mean_of(column: str | None = None, getter=None, where=None) -> Measure:
    return Measure(Mean, column=column, getter=getter, where=where)


def max_of(column: str, payload: str | None = None) -> Measure:
    return Measure(MaxWithPayload, column=column, payload=payload)


def distinct(column: str, positional_fallback: bool = False, where=None) -> Measure:
    return Measure(DistinctCount, column=column, positional_fallback=positional_fallback, where=where)


def first_of(column: str) -> Measure:
    return Measure(First, column=column)


def last_of(column: str) -> Measure:
    return Measure(Last, column=column)


# ============================================================================
# Grouping
# ============================================================================

KeySpec = Union[str, tuple[str, ...], Callable[[dict], Hashable]]


def _group_key(row: dict, key: KeySpec) -> Hashable | None:
    if callable(key):
        return key(row)
    if isinstance(key, tuple):
        parts = tuple(row.get(col) for col in key)
        return None if any(is_missing(p) for p in parts) else parts
    value = row.get(key)
    return None if is_missing(value) else value


def aggregate(
    rows: Iterable[dict],
    key: KeySpec,
    measures: dict[str, Measure],
    fallback_prefix: str | None = "row",
) -> dict[Hashable, dict[str, Any]]:
    """
    Group rows and finalize every measure per group.

    Args:
        rows: Row mappings (already filtered)
        key: Column name, tuple of columns, or key function
        measures: Output name -> Measure
        fallback_prefix: Rows with a null key get their own group
            "<prefix>-<index>"; None drops such rows instead

    Returns:
        Ordered dict of group key -> {measure name: finalized value},
        in first-seen key order
    """
    groups: dict[Hashable, dict[str, Accumulator]] = {}

    for index, row in enumerate(rows):
        group_key = _group_key(row, key)
        if group_key is None:
            if fallback_prefix is None:
                continue
            group_key = f"{fallback_prefix}-{index}"

        group = groups.get(group_key)
        if group is None:
            group = {name: m.kind() for name, m in measures.items()}
            groups[group_key] = group

        for name, measure in measures.items():
            measure.feed(group[name], row, index)

    return {
        group_key: {name: acc.finalize() for name, acc in group.items()}
        for group_key, group in groups.items()
    }


# ============================================================================
# Finalization Helpers
# ============================================================================

def within_horizon(value: Any, horizon: int = YEAR_HORIZON) -> bool:
    """Keep records with no resolvable year or a year at or before the horizon."""
    year = extract_year(value)
    return year is None or year <= horizon


def chronological_key(value: Any) -> float:
    """Sort key for a date field; unparseable dates sort last."""
    ts = to_timestamp(value)
    return math.inf if ts is None else float(ts.value)


def chronological(rows: list[dict], field: str) -> list[dict]:
    """Stable ascending sort by a date field."""
    return sorted(rows, key=lambda r: chronological_key(r.get(field)))


def year_label(value: Any, default: str = "Unknown") -> str:
    """Display/grouping label for a year-ish field."""
    if is_missing(value):
        return default
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()
