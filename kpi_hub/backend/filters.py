"""
Cascading categorical filters.

Each level's options come from the rows left after applying every level
above it. Comparison is case-insensitive on trimmed text; null matches
nothing.
"""
from dataclasses import dataclass
from typing import Any, Optional

import pandas as pd

from data_loader import is_missing, to_number


# Unconstrained selection for an optional level
ALL = "All"


# ============================================================================
# Label Normalization
# ============================================================================

def normalize_label(value: Any) -> str | None:
    """Trimmed display text of a categorical value, or None when blank/null."""
    if is_missing(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def fold_label(value: Any) -> str | None:
    """Comparison form of a label (trimmed, case-folded)."""
    label = normalize_label(value)
    return label.casefold() if label is not None else None


def labels_equal(a: Any, b: Any) -> bool:
    """Case-insensitive, whitespace-trimmed equality; None never equals anything."""
    fa = fold_label(a)
    fb = fold_label(b)
    return fa is not None and fb is not None and fa == fb


def match_mask(df: pd.DataFrame, column: str, value: Any) -> pd.Series:
    """Boolean mask of rows whose column equals value under labels_equal."""
    target = fold_label(value)
    if target is None or column not in df.columns:
        return pd.Series(False, index=df.index)
    return df[column].map(fold_label).eq(target)


def option_values(df: pd.DataFrame, column: str, numeric: bool = False) -> list[str]:
    """
    Distinct trimmed labels of a column, sorted.

    Values differing only in case collapse onto the first-seen spelling.

    Args:
        df: Rows to draw options from
        column: Categorical column
        numeric: Sort numerically (years) instead of alphabetically

    Returns:
        Sorted list of labels (empty when df is empty)
    """
    if df is None or df.empty or column not in df.columns:
        return []

    seen: dict[str, str] = {}
    for value in df[column]:
        label = normalize_label(value)
        if label is not None:
            seen.setdefault(label.casefold(), label)

    labels = list(seen.values())
    if numeric:
        # Non-numeric labels keep alphabetical order after the numbers
        return sorted(labels, key=lambda s: (to_number(s) is None, to_number(s) or 0.0, s.casefold()))
    return sorted(labels, key=lambda s: (s.casefold(), s))


# ============================================================================
# Cascade
# ============================================================================

@dataclass(frozen=True)
class FilterLevel:
    """
    One dropdown in a cascade.

    Attributes:
        name: Selection key (e.g. "part")
        column: Row column the level filters on
        numeric: Sort options numerically
        required: No "All" sentinel; falls back to the first option
    """
    name: str
    column: str
    numeric: bool = False
    required: bool = False


@dataclass
class CascadeResult:
    options: dict[str, list[str]]
    selection: dict[str, Optional[str]]
    rows: pd.DataFrame


class FilterCascade:
    """Ordered filter levels where each narrows the options of the next."""

    def __init__(self, levels: list[FilterLevel]):
        self.levels = list(levels)

    @property
    def names(self) -> list[str]:
        return [level.name for level in self.levels]

    def resolve(self, df: pd.DataFrame | None, selection: dict[str, Any] | None = None) -> CascadeResult:
        """
        Compute options per level, validate the selection, and filter rows.

        A selection that is not among its level's options resets that level
        and every level below it to "All" (or to the first option for a
        required level).

        Args:
            df: Loaded rows (None or empty when nothing is loaded)
            selection: Requested value per level name

        Returns:
            CascadeResult with options, the applied selection and the rows
            matching it
        """
        selection = selection or {}
        current = df if df is not None else pd.DataFrame(columns=[lvl.column for lvl in self.levels])
        options: dict[str, list[str]] = {}
        resolved: dict[str, Optional[str]] = {}
        reset = False

        for level in self.levels:
            level_options = option_values(current, level.column, numeric=level.numeric)
            options[level.name] = level_options

            requested = None if reset else normalize_label(selection.get(level.name))
            chosen = self._choose(level, requested, level_options)
            if requested is None:
                corrected = level.required and chosen is not None
            else:
                corrected = not labels_equal(chosen, requested)
            # A corrected level invalidates everything below it
            reset = reset or corrected
            resolved[level.name] = chosen

            if chosen is None:
                # Required level with nothing to choose from
                current = current.iloc[0:0]
            elif chosen != ALL:
                current = current[match_mask(current, level.column, chosen)]

        return CascadeResult(options=options, selection=resolved, rows=current)

    @staticmethod
    def _choose(level: FilterLevel, requested: str | None, level_options: list[str]) -> str | None:
        if level.required:
            for option in level_options:
                if labels_equal(option, requested):
                    return option
            return level_options[0] if level_options else None

        if requested is None or labels_equal(requested, ALL):
            return ALL
        for option in level_options:
            if labels_equal(option, requested):
                return option
        return ALL


# ============================================================================
# Dashboard Cascades
# ============================================================================

ERP_FILTERS = FilterCascade([
    FilterLevel("year", "funnel_year", numeric=True),
    FilterLevel("region", "region"),
    FilterLevel("location", "location"),
])

CRM_FILTERS = FilterCascade([
    FilterLevel("year", "year", numeric=True),
    FilterLevel("region", "marketing_region"),
    FilterLevel("location", "marketing_location"),
])

INTEGRATED_FILTERS = FilterCascade([
    FilterLevel("customer", "customer_name", required=True),
    FilterLevel("part", "part_name"),
    FilterLevel("supplier", "supplier_name"),
])
