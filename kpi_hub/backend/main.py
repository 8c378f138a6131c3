"""
FastAPI application for the KPI hub.
Serves the ERP, CRM and integrated dashboard payloads computed in memory
from rows pulled out of the Supabase views.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from dashboards import build_crm_dashboard, build_erp_dashboard, build_integrated_dashboard
from data_loader import VIEWS, YEAR_HORIZON, DataStore, FetchCancelled, FetchError, SupabasePageSource
from filters import ALL
from geo import GEO_HIGH_RISK, GEO_MEDIUM_RISK
from metrics import MIN_POS_FOR_CLASSIFICATION
from models import (
    ConfigResponse,
    CrmDashboard,
    ErpDashboard,
    HealthResponse,
    IntegratedDashboard,
    IntegratedFilterRequest,
    LoadStatus,
    RegionalFilterRequest,
    ViewConfig,
)


logger = logging.getLogger(__name__)


# ============================================================================
# Application Lifecycle
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the data source on startup; stop in-flight loads on shutdown."""
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_ANON_KEY")

    if url and key:
        source = await SupabasePageSource.connect(url, key)
        app.state.store = DataStore(source)
        logger.info("Data source configured: %s", url)
    else:
        app.state.store = None
        logger.warning("SUPABASE_URL / SUPABASE_ANON_KEY not set; dashboard endpoints will return 503")

    yield

    if app.state.store is not None:
        app.state.store.cancel_all()


# ============================================================================
# FastAPI Application
# ============================================================================

app = FastAPI(
    title="KPI Hub API",
    description="Backend API for the ERP, CRM and integrated KPI dashboards",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS for frontend development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_data_store(request: Request) -> DataStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(
            status_code=503,
            detail="Data source not configured. Set SUPABASE_URL and SUPABASE_ANON_KEY.",
        )
    return store


def _check_dashboard(name: str) -> None:
    if name not in VIEWS:
        raise HTTPException(status_code=404, detail=f"Unknown dashboard: {name}")


async def _rows_for(store: DataStore, name: str):
    """Rows of a dashboard, loading them on first use."""
    try:
        return await store.ensure_loaded(name)
    except FetchError as exc:
        raise HTTPException(status_code=502, detail=f"Failed to load data: {exc}") from exc
    except FetchCancelled as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Simple health check endpoint."""
    return HealthResponse(status="ok")


# ============================================================================
# Configuration
# ============================================================================

@app.get("/config", response_model=ConfigResponse)
async def get_config():
    """
    Views each dashboard reads, their paging limits, and the fixed
    thresholds the payloads are computed with.
    """
    views = [
        ViewConfig(
            dashboard=view.dashboard,
            schema_name=view.schema,
            view=view.view,
            columns=list(view.columns),
            page_size=view.page_size,
            max_rows=view.max_rows,
        )
        for view in VIEWS.values()
    ]
    return ConfigResponse(
        views=views,
        year_horizon=YEAR_HORIZON,
        all_sentinel=ALL,
        min_pos_for_classification=MIN_POS_FOR_CLASSIFICATION,
        geo_risk_thresholds={"high": GEO_HIGH_RISK, "medium": GEO_MEDIUM_RISK},
    )


# ============================================================================
# Load Control
# ============================================================================

@app.get("/dashboards/{name}/status", response_model=LoadStatus)
async def load_status(name: str, store: DataStore = Depends(get_data_store)):
    _check_dashboard(name)
    return LoadStatus(**store.status(name))


@app.post("/dashboards/{name}/load", response_model=LoadStatus)
async def load_dashboard(name: str, store: DataStore = Depends(get_data_store)):
    """Refetch a dashboard's rows from the first page."""
    _check_dashboard(name)
    try:
        await store.load(name)
    except FetchError as exc:
        raise HTTPException(status_code=502, detail=f"Failed to load data: {exc}") from exc
    except FetchCancelled as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return LoadStatus(**store.status(name))


@app.post("/dashboards/{name}/cancel", response_model=LoadStatus)
async def cancel_load(name: str, store: DataStore = Depends(get_data_store)):
    """Stop an in-flight load before its next page. No-op when idle."""
    _check_dashboard(name)
    if store.cancel(name):
        logger.info("Cancellation requested for %s", name)
    return LoadStatus(**store.status(name))


# ============================================================================
# Dashboards
# ============================================================================

# Builders are synchronous and run off the event loop

@app.post("/erp", response_model=ErpDashboard)
async def erp_dashboard(request: RegionalFilterRequest, store: DataStore = Depends(get_data_store)):
    """Supply-to-stock KPIs for a year / region / location selection."""
    df = await _rows_for(store, "erp")
    return await run_in_threadpool(build_erp_dashboard, df, request.model_dump())


@app.post("/crm", response_model=CrmDashboard)
async def crm_dashboard(request: RegionalFilterRequest, store: DataStore = Depends(get_data_store)):
    """Marketing funnel KPIs for a year / region / location selection."""
    df = await _rows_for(store, "crm")
    return await run_in_threadpool(build_crm_dashboard, df, request.model_dump())


@app.post("/integrated", response_model=IntegratedDashboard)
async def integrated_dashboard(request: IntegratedFilterRequest, store: DataStore = Depends(get_data_store)):
    """
    Customer-to-supplier view: PO series, delivery risk and supply map for
    one customer, optionally narrowed to a part and a supplier.
    """
    df = await _rows_for(store, "integrated")
    return await run_in_threadpool(build_integrated_dashboard, df, request.model_dump())


# ============================================================================
# Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)
