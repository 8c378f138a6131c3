"""
Derived KPI computation.
Implements null-guarded business ratios, distinct-entity counts, and
PO delivery-risk classification.
"""
from typing import Any, Callable, Iterable

from aggregation import DistinctCount, MaxWithPayload, Mean, Sum
from data_loader import to_number
from models import PeakRisk, RiskDistribution


# ============================================================================
# Risk Classification Policy
# ============================================================================

NEED_MORE_DATA = "Need More Data"
NO_DATA = "No Data"
RISK_LEVELS = ("Safe", "Medium Risk", "High Risk")

# Fewer grouped POs than this never get a real classification
MIN_POS_FOR_CLASSIFICATION = 3

# Ordered rules; first match wins, "Safe" otherwise.
# Each rule receives (high-risk share of POs, average risk score or 0).
RISK_RULES: list[tuple[str, Callable[[float, float], bool]]] = [
    ("High Risk", lambda high_pct, avg: high_pct >= 0.5 and avg >= 10),
    ("Medium Risk", lambda high_pct, avg: high_pct >= 0.2 or avg >= 6),
]


# ============================================================================
# Ratio Primitives
# ============================================================================

def safe_ratio(numerator: float | None, denominator: float | None) -> float | None:
    """
    Divide, returning None instead of failing on a zero or missing denominator.

    Args:
        numerator: Dividend (None propagates)
        denominator: Divisor

    Returns:
        numerator / denominator, or None
    """
    if numerator is None or denominator is None or denominator == 0:
        return None
    return numerator / denominator


def percentage(part: float | None, whole: float | None) -> float | None:
    """part / whole * 100, None when whole is zero."""
    ratio = safe_ratio(part, whole)
    return None if ratio is None else ratio * 100.0


def column_sum(rows: Iterable[dict], column: str | Callable[[dict], Any]) -> float:
    """Sum of the parseable values of a column (or computed value) across rows."""
    acc = Sum()
    for row in rows:
        acc.observe(column(row) if callable(column) else row.get(column))
    return acc.finalize()


def column_mean(rows: Iterable[dict], column: str) -> float | None:
    """Mean of the parseable values of a column; None when there are none."""
    acc = Mean()
    for row in rows:
        acc.observe(row.get(column))
    return acc.finalize()


def ratio_of_sums(rows: list[dict], numerator: str | Callable, denominator: str | Callable) -> float | None:
    """
    Corpus-level ratio: Σ numerator / Σ denominator over the same rows.

    Each side skips its own unparseable values independently.
    """
    return safe_ratio(column_sum(rows, numerator), column_sum(rows, denominator))


def mean_of_ratios(rows: list[dict], numerator: str, denominator: str) -> float | None:
    """
    Entity-level ratio averaged: mean of numerator/denominator per row.

    Rows where either side is missing or the denominator is zero are skipped.
    Not interchangeable with ratio_of_sums.
    """
    acc = Mean()
    for row in rows:
        acc.observe(safe_ratio(to_number(row.get(numerator)), to_number(row.get(denominator))))
    return acc.finalize()


def distinct_count(rows: Iterable[dict], column: str) -> int:
    """Number of distinct non-null identifiers in a column."""
    acc = DistinctCount()
    for row in rows:
        acc.observe(row.get(column))
    return acc.finalize()


# ============================================================================
# ERP KPIs
# ============================================================================

def cost_incl_scrap(row: dict) -> float:
    # Each part contributes only if it parses
    return (to_number(row.get("total_cost")) or 0.0) + (to_number(row.get("scrap_value")) or 0.0)


def cost_per_good_unit(rows: list[dict]) -> float | None:
    """(Σ total_cost + Σ scrap_value) / Σ good_pieces (ratio of sums)."""
    return ratio_of_sums(rows, cost_incl_scrap, "good_pieces")


def avg_cycle_days(rows: list[dict]) -> float | None:
    """Mean end-to-end cycle (PO to last movement) in days."""
    return column_mean(rows, "end_to_end_cycle_days")


def utilization_pct(rows: list[dict]) -> float | None:
    """Material-to-production utilization: Σ produced / Σ received * 100."""
    return percentage(column_sum(rows, "produced_quantity"), column_sum(rows, "received_quantity"))


# ============================================================================
# CRM KPIs
# ============================================================================

def budget_utilization_pct(total_spend: float, total_budget: float) -> float | None:
    return percentage(total_spend, total_budget)


def revenue_multiple(total_revenue: float, total_spend: float) -> float | None:
    """Dollars of booked revenue per dollar of marketing spend."""
    return safe_ratio(total_revenue, total_spend)


def clv_cac_ratio(rows: list[dict]) -> float | None:
    """
    CLV:CAC as a ratio of sums (Σ CLV / Σ CAC) over the selected rows.

    This is the single definition used everywhere; a mean of per-entity
    ratios is available via mean_of_ratios but is not what the dashboards show.
    """
    return ratio_of_sums(rows, "clv", "cac")


def conversion_pct(customers: int, leads: int) -> float | None:
    return percentage(customers, leads)


# ============================================================================
# Delivery Risk
# ============================================================================

def classify_risk(n_pos: int, high_pct: float, avg_risk_score: float | None) -> str:
    """
    Overall delivery risk level for a set of POs.

    Args:
        n_pos: Number of grouped POs
        high_pct: Share (0-1) of POs labelled "High Risk"
        avg_risk_score: Mean PO risk score, None when no PO has one

    Returns:
        "Need More Data", "High Risk", "Medium Risk" or "Safe"
    """
    if n_pos < MIN_POS_FOR_CLASSIFICATION:
        return NEED_MORE_DATA

    avg = avg_risk_score if avg_risk_score is not None else 0.0
    for level, rule in RISK_RULES:
        if rule(high_pct, avg):
            return level
    return "Safe"


def summarize_risk(po_rows: list[dict]) -> RiskDistribution:
    """
    Distribution of PO risk levels and the overall classification.

    Args:
        po_rows: PO-level rows with risk_level and risk_score

    Returns:
        RiskDistribution; "No Data" when there are no POs
    """
    if not po_rows:
        return RiskDistribution()

    counts = {level: 0 for level in RISK_LEVELS}
    score = Mean()
    for po in po_rows:
        level = po.get("risk_level")
        if level in counts:
            counts[level] += 1
        score.observe(po.get("risk_score"))

    n_pos = len(po_rows)
    high_pct = counts["High Risk"] / n_pos
    avg_risk_score = score.finalize()

    return RiskDistribution(
        n_pos=n_pos,
        safe_count=counts["Safe"],
        medium_count=counts["Medium Risk"],
        high_count=counts["High Risk"],
        high_pct=high_pct,
        avg_risk_score=avg_risk_score,
        overall_level=classify_risk(n_pos, high_pct, avg_risk_score),
    )


def peak_risk(po_rows: list[dict]) -> PeakRisk:
    """Highest PO risk score in the selection with that PO's level (used for colour)."""
    acc = MaxWithPayload()
    for po in po_rows:
        acc.observe(po.get("risk_score"), payload=po.get("risk_level"))

    best_score, best_level = acc.finalize()
    if best_score is None:
        return PeakRisk()
    return PeakRisk(risk_score=best_score, risk_level=best_level or NO_DATA)
