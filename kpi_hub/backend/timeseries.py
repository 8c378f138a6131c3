"""
Calendar bucketing of aggregate rows.

Monthly buckets keep the integrated chart small when the selection is at its
broadest; yearly buckets feed the ERP and CRM trend charts.
"""
from typing import Any

from aggregation import Measure, aggregate, chronological, mean_of, sum_of, within_horizon, year_label
from data_loader import YEAR_HORIZON, extract_year, to_timestamp
from filters import ALL, labels_equal
from models import ChartPoint


MONTHLY_MEASURES = {
    "total_cost": sum_of("total_cost"),
    "lead_time_days": mean_of("lead_time_days"),
    "defect_quantity": sum_of("defect_quantity"),
    "oee_pct": mean_of("oee_pct"),
}


def is_broadest(selection: dict[str, Any], levels: list[str]) -> bool:
    """True when every named filter level is unconstrained ("All")."""
    return all(labels_equal(selection.get(name, ALL), ALL) for name in levels)


def _month_key(row: dict, date_field: str) -> str | None:
    ts = to_timestamp(row.get(date_field))
    if ts is None:
        return None
    return f"{ts.year:04d}-{ts.month:02d}"


def bucket_by_month(rows: list[dict], date_field: str = "po_creation_date") -> list[ChartPoint]:
    """
    Roll PO rows up into calendar months.

    Rows without a parseable date are dropped. Means are re-derived from the
    rows in each month and stay None when nothing contributed.

    Returns:
        ChartPoint per month dated YYYY-MM-01, oldest first
    """
    groups = aggregate(
        rows,
        key=lambda row: _month_key(row, date_field),
        measures=MONTHLY_MEASURES,
        fallback_prefix=None,
    )
    points = [ChartPoint(po_creation_date=f"{month}-01", **values) for month, values in groups.items()]
    return sorted(points, key=lambda p: p.po_creation_date)


def bucket_by_year(
    rows: list[dict],
    year_field: str,
    measures: dict[str, Measure],
    horizon: int = YEAR_HORIZON,
) -> list[dict]:
    """
    Roll rows up into calendar years at or before the horizon.

    Args:
        rows: Rows carrying a year-like field
        year_field: Column holding a year or a date
        measures: Output name -> Measure
        horizon: Last year kept

    Returns:
        List of {"year": "YYYY", **measures}, oldest first; rows with no
        resolvable year are dropped
    """
    groups = aggregate(
        rows,
        key=lambda row: extract_year(row.get(year_field)),
        measures=measures,
        fallback_prefix=None,
    )
    years = sorted(year for year in groups if year <= horizon)
    return [{"year": year_label(year), **groups[year]} for year in years]


def chart_series(po_rows: list[dict], monthly: bool, date_field: str = "po_creation_date") -> list[ChartPoint]:
    """
    Time series for the integrated chart.

    Only dated POs within the horizon are plotted. With monthly=True they
    are bucketed by calendar month, otherwise each PO is its own point.
    """
    dated = [
        po for po in po_rows
        if extract_year(po.get(date_field)) is not None and within_horizon(po.get(date_field))
    ]
    if monthly:
        return bucket_by_month(dated, date_field)

    return [
        ChartPoint(
            po_creation_date=str(po[date_field]),
            total_cost=po.get("total_cost") or 0.0,
            lead_time_days=po.get("lead_time_days"),
            defect_quantity=po.get("defect_quantity") or 0.0,
            oee_pct=po.get("oee_pct"),
        )
        for po in chronological(dated, date_field)
    ]
