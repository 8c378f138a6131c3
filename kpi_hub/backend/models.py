"""
Pydantic models for raw view rows and API request/response schemas.
"""
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, field_validator


# Values arrive loosely typed: numbers may be strings, flags may be strings,
# anything may be null.
RawValue = Optional[Union[StrictBool, StrictInt, StrictFloat, str]]


# ============================================================================
# Raw Rows (one schema per remote view)
# ============================================================================

class RawRow(BaseModel):
    """Base for view rows: frozen, every field nullable, unknown columns dropped."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _scalar_or_none(cls, value: Any) -> Any:
        # Nested JSON (objects/arrays) is never a usable measure or label
        if value is None or isinstance(value, (bool, int, float, str)):
            return value
        return None

    @classmethod
    def columns(cls) -> tuple[str, ...]:
        return tuple(cls.model_fields)


class ErpFunnelRow(RawRow):
    """Row of erp.erp_funnel_view."""
    funnel_year: RawValue = None
    region: RawValue = None
    location: RawValue = None
    supplier_id: RawValue = None
    supplier_name: RawValue = None
    total_cost: RawValue = None
    scrap_value: RawValue = None
    good_pieces: RawValue = None
    end_to_end_cycle_days: RawValue = None
    supplier_rating: RawValue = None
    yield_rate_pct: RawValue = None
    po_number: RawValue = None
    on_time_fulfillment_flag: RawValue = None
    produced_quantity: RawValue = None
    received_quantity: RawValue = None
    inventory_value: RawValue = None
    obsolete_flag: RawValue = None


class CrmFunnelRow(RawRow):
    """Row of crm.crm_funnel_view."""
    campaign_id: RawValue = None
    campaign_name: RawValue = None
    channel: RawValue = None
    year: RawValue = None
    marketing_region: RawValue = None
    marketing_location: RawValue = None
    budget: RawValue = None
    spend: RawValue = None
    leads_generated: RawValue = None
    leads_converted: RawValue = None
    start_date: RawValue = None
    response_time_hours: RawValue = None
    lead_id: RawValue = None
    opportunity_id: RawValue = None
    customer_id: RawValue = None
    created_date: RawValue = None
    total_booked_revenue: RawValue = None
    cac: RawValue = None
    clv: RawValue = None


class IntegratedFunnelRow(RawRow):
    """Row of crm.crm_erp_funnel_view (CRM customer joined to ERP PO lines)."""
    customer_name: RawValue = None
    customer_region: RawValue = None
    customer_location: RawValue = None
    part_name: RawValue = None
    supplier_name: RawValue = None
    supplier_region: RawValue = None
    supplier_location: RawValue = None
    plant_id: RawValue = None
    plant_region: RawValue = None
    plant_location: RawValue = None
    po_number: RawValue = None
    po_creation_date: RawValue = None
    total_cost: RawValue = None
    lead_time_days: RawValue = None
    defect_quantity: RawValue = None
    produced_quantity: RawValue = None
    good_pieces: RawValue = None
    oee_pct: RawValue = None
    on_time_fulfillment_flag: RawValue = None
    risk_score: RawValue = None
    risk_level: RawValue = None


# ============================================================================
# Shared Output Pieces
# ============================================================================

class KpiCard(BaseModel):
    """A headline number; value is None when the KPI is undefined for the selection."""
    id: str
    label: str
    value: Optional[float] = None
    unit: str = ""
    helper: str = ""


class FilterState(BaseModel):
    """Option lists per filter level plus the selection actually applied."""
    options: dict[str, list[str]] = Field(default_factory=dict)
    selection: dict[str, Optional[str]] = Field(default_factory=dict)


# ============================================================================
# ERP Dashboard
# ============================================================================

class SupplierPoint(BaseModel):
    supplier_id: str
    supplier_name: str
    avg_rating: float
    avg_yield: float
    total_spend: float = 0.0


class OnTimeCell(BaseModel):
    region: str
    year: str
    po_count: int
    on_time_count: int
    rate: float


class CycleTrendPoint(BaseModel):
    year: str
    avg_cycle_days: Optional[float] = None


class CostBreakdownRow(BaseModel):
    year: str
    procurement_cost: float = 0.0
    scrap_cost: float = 0.0
    obsolete_cost: float = 0.0
    cost_per_good_unit: Optional[float] = None


class ErpDashboard(BaseModel):
    filters: FilterState
    row_count: int = 0
    empty: bool = True
    kpis: list[KpiCard] = Field(default_factory=list)
    supplier_scatter: list[SupplierPoint] = Field(default_factory=list)
    on_time_heatmap: list[OnTimeCell] = Field(default_factory=list)
    heatmap_years: list[str] = Field(default_factory=list)
    heatmap_regions: list[str] = Field(default_factory=list)
    cycle_trend: list[CycleTrendPoint] = Field(default_factory=list)
    cost_breakdown: list[CostBreakdownRow] = Field(default_factory=list)


# ============================================================================
# CRM Dashboard
# ============================================================================

class StageCounts(BaseModel):
    """Funnel stages: generated leads → converted leads → opportunities → customers."""
    generated: float = 0.0
    converted: float = 0.0
    opportunities: int = 0
    customers: int = 0


class ChannelConversion(BaseModel):
    channel: str
    leads: int
    customers: int
    conversion_pct: float


class SalesCyclePoint(BaseModel):
    year: str
    avg_days: Optional[float] = None
    customers: int = 0


class SalesCycleSummary(BaseModel):
    by_year: list[SalesCyclePoint] = Field(default_factory=list)
    overall_avg_days: Optional[float] = None
    customers: int = 0


class CrmDashboard(BaseModel):
    filters: FilterState
    row_count: int = 0
    empty: bool = True
    kpis: list[KpiCard] = Field(default_factory=list)
    revenue_multiple: Optional[float] = None
    clv_cac_ratio: Optional[float] = None
    avg_clv: Optional[float] = None
    avg_cac: Optional[float] = None
    stage_counts: StageCounts = Field(default_factory=StageCounts)
    top_channels: list[ChannelConversion] = Field(default_factory=list)
    sales_cycle: SalesCycleSummary = Field(default_factory=SalesCycleSummary)


# ============================================================================
# Integrated Dashboard
# ============================================================================

class PoLevelRow(BaseModel):
    """One purchase order after grouping its line rows."""
    po_number: str
    po_creation_date: Optional[str] = None
    total_cost: float = 0.0
    lead_time_days: Optional[float] = None
    defect_quantity: float = 0.0
    produced_quantity: float = 0.0
    good_pieces: float = 0.0
    oee_pct: Optional[float] = None
    risk_score: Optional[float] = None
    risk_level: Optional[str] = None


class ChartPoint(BaseModel):
    """Time-series point; either a single PO or a calendar-month bucket."""
    po_creation_date: str
    total_cost: float = 0.0
    lead_time_days: Optional[float] = None
    defect_quantity: float = 0.0
    oee_pct: Optional[float] = None


class PeakRisk(BaseModel):
    risk_score: Optional[float] = None
    risk_level: str = "No Data"


class RiskDistribution(BaseModel):
    n_pos: int = 0
    safe_count: int = 0
    medium_count: int = 0
    high_count: int = 0
    high_pct: float = 0.0
    avg_risk_score: Optional[float] = None
    overall_level: str = "No Data"


class GeoNode(BaseModel):
    """Map bubble for one (role, location) pair."""
    id: str
    role: str
    name: str
    region: Optional[str] = None
    location: str
    coords: tuple[float, float]
    display_coords: tuple[float, float]
    po_count: int = 0
    total_cost_sum: float = 0.0
    avg_lead_time_days: Optional[float] = None
    defect_qty_sum: float = 0.0
    avg_oee_pct: Optional[float] = None
    avg_risk_score: Optional[float] = None
    risk_bucket: str = "No Data"
    radius: float = 6.0


class MapViewport(BaseModel):
    center: tuple[float, float] = (20.0, 20.0)
    zoom: float = 1.3


class IntegratedDashboard(BaseModel):
    filters: FilterState
    row_count: int = 0
    empty: bool = True
    po_rows: list[PoLevelRow] = Field(default_factory=list)
    chart: list[ChartPoint] = Field(default_factory=list)
    monthly: bool = False
    peak_risk: PeakRisk = Field(default_factory=PeakRisk)
    risk_distribution: Optional[RiskDistribution] = None
    geo_nodes: list[GeoNode] = Field(default_factory=list)
    viewport: MapViewport = Field(default_factory=MapViewport)


# ============================================================================
# API Requests
# ============================================================================

class RegionalFilterRequest(BaseModel):
    """Request body for POST /erp and POST /crm."""
    year: str = Field(default="All")
    region: str = Field(default="All")
    location: str = Field(default="All")


class IntegratedFilterRequest(BaseModel):
    """Request body for POST /integrated. An empty customer selects the first one."""
    customer: Optional[str] = Field(default=None)
    part: str = Field(default="All")
    supplier: str = Field(default="All")


# ============================================================================
# API Responses
# ============================================================================

class LoadStatus(BaseModel):
    """State of one dashboard's row buffer."""
    dashboard: str
    loaded: bool = False
    loading: bool = False
    error: Optional[str] = None
    row_count: int = 0
    loaded_at: Optional[str] = None


class ViewConfig(BaseModel):
    dashboard: str
    schema_name: str
    view: str
    columns: list[str]
    page_size: int
    max_rows: Optional[int] = None


class ConfigResponse(BaseModel):
    """Response model for GET /config endpoint."""
    views: list[ViewConfig]
    year_horizon: int
    all_sentinel: str = "All"
    min_pos_for_classification: int
    geo_risk_thresholds: dict[str, float] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Response for GET /health endpoint."""
    status: str = "ok"
