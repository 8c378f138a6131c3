"""
Dashboard payload builders.

Each builder takes a dashboard's loaded rows plus a filter selection and
returns the full chart-ready payload. Everything is recomputed per call.
"""
from typing import Any

import pandas as pd

from aggregation import (
    aggregate,
    chronological,
    distinct,
    first_of,
    last_of,
    max_of,
    mean_of,
    sum_of,
    within_horizon,
    year_label,
)
from data_loader import to_flag, to_number, to_timestamp
from filters import ALL, CRM_FILTERS, ERP_FILTERS, INTEGRATED_FILTERS, CascadeResult, labels_equal, normalize_label
from geo import CoordinateResolver, build_geo_nodes, map_viewport
from metrics import (
    avg_cycle_days,
    budget_utilization_pct,
    clv_cac_ratio,
    column_mean,
    column_sum,
    conversion_pct,
    cost_incl_scrap,
    cost_per_good_unit,
    distinct_count,
    peak_risk,
    percentage,
    revenue_multiple,
    safe_ratio,
    summarize_risk,
    utilization_pct,
)
from models import (
    ChannelConversion,
    CostBreakdownRow,
    CrmDashboard,
    CycleTrendPoint,
    ErpDashboard,
    FilterState,
    IntegratedDashboard,
    KpiCard,
    OnTimeCell,
    PoLevelRow,
    SalesCyclePoint,
    SalesCycleSummary,
    StageCounts,
    SupplierPoint,
)
from timeseries import bucket_by_year, chart_series, is_broadest


# Channels with fewer distinct leads are too small to rank
MIN_CHANNEL_LEADS = 10
TOP_CHANNELS = 5

SECONDS_PER_DAY = 86400.0


def _records(result: CascadeResult) -> list[dict]:
    return result.rows.to_dict("records") if not result.rows.empty else []


def _filter_state(result: CascadeResult) -> FilterState:
    return FilterState(options=result.options, selection=result.selection)


def _sort_year_labels(labels) -> list[str]:
    # Numeric years first in order, then anything else alphabetically
    return sorted(labels, key=lambda s: (to_number(s) is None, to_number(s) or 0.0, s))


# ============================================================================
# ERP
# ============================================================================

SUPPLIER_MEASURES = {
    "supplier_name": last_of("supplier_name"),
    "avg_rating": mean_of("supplier_rating"),
    "avg_yield": mean_of("yield_rate_pct"),
    "total_spend": sum_of("total_cost"),
}

HEATMAP_MEASURES = {
    "po_count": distinct("po_number", positional_fallback=True),
    "on_time_count": distinct(
        "po_number",
        positional_fallback=True,
        where=lambda row: to_flag(row.get("on_time_fulfillment_flag")),
    ),
}

CYCLE_MEASURES = {
    "avg_cycle_days": mean_of("end_to_end_cycle_days"),
}

COST_BREAKDOWN_MEASURES = {
    "procurement_cost": sum_of("total_cost"),
    "scrap_cost": sum_of("scrap_value"),
    "obsolete_cost": sum_of("inventory_value", where=lambda row: to_flag(row.get("obsolete_flag"))),
    "cost_incl_scrap": sum_of(getter=cost_incl_scrap),
    "good_pieces": sum_of("good_pieces"),
}


def erp_kpis(rows: list[dict]) -> list[KpiCard]:
    return [
        KpiCard(
            id="cost-good",
            label="Cost per Good Unit",
            value=cost_per_good_unit(rows),
            unit="$",
            helper="Total cost incl. scrap divided by good pieces.",
        ),
        KpiCard(
            id="cycle",
            label="Avg End-to-End Cycle",
            value=avg_cycle_days(rows),
            unit="days",
            helper="Purchase order to last movement.",
        ),
        KpiCard(
            id="util",
            label="Material to Production Utilization",
            value=utilization_pct(rows),
            unit="%",
            helper="Produced vs received quantity.",
        ),
    ]


def supplier_scatter(rows: list[dict]) -> list[SupplierPoint]:
    """One point per supplier that has both an average rating and an average yield."""
    points = []
    groups = aggregate(rows, "supplier_id", SUPPLIER_MEASURES, fallback_prefix="supplier")
    for supplier_id, g in groups.items():
        if g["avg_rating"] is None or g["avg_yield"] is None:
            continue
        points.append(SupplierPoint(
            supplier_id=normalize_label(supplier_id) or str(supplier_id),
            supplier_name=normalize_label(g["supplier_name"]) or "Unknown",
            avg_rating=g["avg_rating"],
            avg_yield=g["avg_yield"],
            total_spend=g["total_spend"],
        ))
    return points


def on_time_heatmap(rows: list[dict]) -> list[OnTimeCell]:
    """On-time fulfillment rate per (region, year) over distinct POs."""
    in_window = [r for r in rows if within_horizon(r.get("funnel_year"))]
    groups = aggregate(
        in_window,
        key=lambda row: (normalize_label(row.get("region")) or "Unknown", year_label(row.get("funnel_year"))),
        measures=HEATMAP_MEASURES,
    )
    cells = []
    for (region, year), g in groups.items():
        rate = percentage(g["on_time_count"], g["po_count"])
        if rate is None:
            continue
        cells.append(OnTimeCell(
            region=region,
            year=year,
            po_count=g["po_count"],
            on_time_count=g["on_time_count"],
            rate=rate,
        ))
    return cells


def build_erp_dashboard(df: pd.DataFrame | None, selection: dict[str, Any]) -> ErpDashboard:
    """
    Supply-to-stock payload: cost, cycle time and utilization KPIs plus
    supplier, on-time, cycle and cost-breakdown charts.
    """
    result = ERP_FILTERS.resolve(df, selection)
    rows = _records(result)

    heatmap = on_time_heatmap(rows)
    cycle_trend = [
        CycleTrendPoint(**point)
        for point in bucket_by_year(rows, "funnel_year", CYCLE_MEASURES)
        if point["avg_cycle_days"] is not None
    ]
    cost_breakdown = [
        CostBreakdownRow(
            year=point["year"],
            procurement_cost=point["procurement_cost"],
            scrap_cost=point["scrap_cost"],
            obsolete_cost=point["obsolete_cost"],
            cost_per_good_unit=safe_ratio(point["cost_incl_scrap"], point["good_pieces"]),
        )
        for point in bucket_by_year(rows, "funnel_year", COST_BREAKDOWN_MEASURES)
    ]

    return ErpDashboard(
        filters=_filter_state(result),
        row_count=len(rows),
        empty=not rows,
        kpis=erp_kpis(rows),
        supplier_scatter=supplier_scatter(rows),
        on_time_heatmap=heatmap,
        heatmap_years=_sort_year_labels({cell.year for cell in heatmap}),
        heatmap_regions=sorted({cell.region for cell in heatmap}),
        cycle_trend=cycle_trend,
        cost_breakdown=cost_breakdown,
    )


# ============================================================================
# CRM
# ============================================================================

# Campaign-level figures repeat on every lead row; take them once per campaign
CAMPAIGN_MEASURES = {
    "spend": first_of("spend"),
    "budget": first_of("budget"),
    "leads_generated": first_of("leads_generated"),
    "leads_converted": first_of("leads_converted"),
}

CHANNEL_MEASURES = {
    "leads": distinct("lead_id"),
    "customers": distinct("customer_id"),
}

SALES_CYCLE_MEASURES = {
    "avg_days": mean_of("cycle_days"),
    "customers": distinct("customer_key"),
}


def top_channels(rows: list[dict]) -> list[ChannelConversion]:
    """Best converting channels (distinct customers / distinct leads)."""
    groups = aggregate(
        rows,
        key=lambda row: normalize_label(row.get("channel")) or "Unknown",
        measures=CHANNEL_MEASURES,
    )
    channels = [
        ChannelConversion(
            channel=channel,
            leads=g["leads"],
            customers=g["customers"],
            conversion_pct=conversion_pct(g["customers"], g["leads"]),
        )
        for channel, g in groups.items()
        if g["leads"] >= MIN_CHANNEL_LEADS
    ]
    channels.sort(key=lambda c: c.conversion_pct, reverse=True)
    return channels[:TOP_CHANNELS]


def _cycle_days(start: Any, end: Any) -> float | None:
    start_ts = to_timestamp(start)
    end_ts = to_timestamp(end)
    if start_ts is None or end_ts is None:
        return None
    return max(0.0, (end_ts - start_ts).total_seconds() / SECONDS_PER_DAY)


def sales_cycle(rows: list[dict]) -> SalesCycleSummary:
    """
    Campaign start to customer creation, in days, once per customer.

    The first row of each customer carrying both dates is the one measured.
    Every campaign year is kept, including future ones; rows without a year
    fall into "Unknown".
    """
    seen: set = set()
    cycles: list[dict] = []
    for index, row in enumerate(rows):
        if normalize_label(row.get("start_date")) is None or normalize_label(row.get("created_date")) is None:
            continue
        customer_key = normalize_label(row.get("customer_id")) or f"row-{index}"
        if customer_key in seen:
            continue
        seen.add(customer_key)

        days = _cycle_days(row.get("start_date"), row.get("created_date"))
        if days is None:
            continue
        cycles.append({"year": row.get("year"), "customer_key": customer_key, "cycle_days": days})

    by_year = aggregate(cycles, key=lambda row: year_label(row.get("year")), measures=SALES_CYCLE_MEASURES)
    return SalesCycleSummary(
        by_year=[SalesCyclePoint(year=year, **by_year[year]) for year in _sort_year_labels(by_year)],
        overall_avg_days=column_mean(cycles, "cycle_days"),
        customers=len(cycles),
    )


def build_crm_dashboard(df: pd.DataFrame | None, selection: dict[str, Any]) -> CrmDashboard:
    """
    Marketing funnel payload: spend to revenue, leads to customers.

    Spend, budget and lead counts are de-duplicated per campaign; revenue is
    summed per row; opportunities and customers are distinct counts.
    """
    result = CRM_FILTERS.resolve(df, selection)
    rows = _records(result)

    campaigns = list(aggregate(rows, "campaign_id", CAMPAIGN_MEASURES).values())
    total_spend = column_sum(campaigns, "spend")
    total_budget = column_sum(campaigns, "budget")
    generated = column_sum(campaigns, "leads_generated")
    converted = column_sum(campaigns, "leads_converted")
    total_revenue = column_sum(rows, "total_booked_revenue")

    kpis = [
        KpiCard(
            id="spend",
            label="Total Marketing Spend",
            value=total_spend,
            unit="$",
            helper="Sum of campaign spend for the selected filters.",
        ),
        KpiCard(
            id="revenue",
            label="Total Revenue",
            value=total_revenue,
            unit="$",
            helper="Total booked revenue for the selected filters.",
        ),
        KpiCard(
            id="budget-utilization",
            label="Budget Utilization",
            value=budget_utilization_pct(total_spend, total_budget),
            unit="%",
            helper="Spend vs budget for the selected filters.",
        ),
        KpiCard(
            id="generated",
            label="Generated Leads",
            value=generated,
            helper="Total leads captured from all campaigns in the selection.",
        ),
        KpiCard(
            id="converted",
            label="Converted Leads",
            value=converted,
            helper="Leads that converted to opportunities or customers.",
        ),
    ]

    return CrmDashboard(
        filters=_filter_state(result),
        row_count=len(rows),
        empty=not rows,
        kpis=kpis,
        revenue_multiple=revenue_multiple(total_revenue, total_spend),
        clv_cac_ratio=clv_cac_ratio(rows),
        avg_clv=column_mean(rows, "clv"),
        avg_cac=column_mean(rows, "cac"),
        stage_counts=StageCounts(
            generated=generated,
            converted=converted,
            opportunities=distinct_count(rows, "opportunity_id"),
            customers=distinct_count(rows, "customer_id"),
        ),
        top_channels=top_channels(rows),
        sales_cycle=sales_cycle(rows),
    )


# ============================================================================
# Integrated (CRM + ERP)
# ============================================================================

PO_MEASURES = {
    "po_creation_date": first_of("po_creation_date"),
    "total_cost": sum_of("total_cost"),
    "lead_time_days": mean_of("lead_time_days"),
    "defect_quantity": sum_of("defect_quantity"),
    "produced_quantity": sum_of("produced_quantity"),
    "good_pieces": sum_of("good_pieces"),
    "oee_pct": mean_of("oee_pct"),
    "risk": max_of("risk_score", payload="risk_level"),
}

# Chart/risk views narrow on these levels
DETAIL_LEVELS = ["part", "supplier"]


def transform_rows_to_po_level(rows: list[dict]) -> list[dict]:
    """
    Group PO line rows into one row per purchase order.

    Lines dated past the horizon are ignored, POs dated past it are dropped,
    and the result is ordered by creation date with undated POs last.
    """
    in_window = [r for r in rows if within_horizon(r.get("po_creation_date"))]
    groups = aggregate(in_window, "po_number", PO_MEASURES, fallback_prefix="po")

    po_rows = []
    for po_number, g in groups.items():
        risk_score, risk_level = g.pop("risk")
        po_rows.append({
            **g,
            "po_number": normalize_label(po_number) or str(po_number),
            "po_creation_date": normalize_label(g["po_creation_date"]),
            "risk_score": risk_score,
            "risk_level": normalize_label(risk_level),
        })

    po_rows = [p for p in po_rows if within_horizon(p["po_creation_date"])]
    return chronological(po_rows, "po_creation_date")


def build_integrated_dashboard(
    df: pd.DataFrame | None,
    selection: dict[str, Any],
    resolver: CoordinateResolver | None = None,
) -> IntegratedDashboard:
    """
    Cross-system payload for one customer: PO cost/lead/defect/OEE series,
    delivery risk, and the supply-flow map.

    The chart rolls up by month while part and supplier are both "All";
    the risk distribution is only computed once both are narrowed.
    """
    result = INTEGRATED_FILTERS.resolve(df, selection)
    rows = _records(result)
    applied = result.selection

    po_rows = transform_rows_to_po_level(rows)
    monthly = is_broadest(applied, DETAIL_LEVELS)
    can_show_risk = applied.get("customer") is not None and not any(
        labels_equal(applied.get(level), ALL) for level in DETAIL_LEVELS
    )
    nodes = build_geo_nodes(rows, resolver)

    return IntegratedDashboard(
        filters=_filter_state(result),
        row_count=len(rows),
        empty=not po_rows,
        po_rows=[PoLevelRow(**po) for po in po_rows],
        chart=chart_series(po_rows, monthly=monthly),
        monthly=monthly,
        peak_risk=peak_risk(po_rows),
        risk_distribution=summarize_risk(po_rows) if can_show_risk else None,
        geo_nodes=nodes,
        viewport=map_viewport(nodes),
    )
