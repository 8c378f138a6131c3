"""
Data loading and value parsing for the KPI hub dashboards.
Handles paginated retrieval from Supabase views, lenient coercion of
loosely-typed fields, and the per-dashboard in-memory row buffers.
"""
import asyncio
import functools
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Protocol

import httpx
import numpy as np
import pandas as pd
from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

from models import CrmFunnelRow, ErpFunnelRow, IntegratedFunnelRow, RawRow


logger = logging.getLogger(__name__)


# ============================================================================
# Load Policy
# ============================================================================

DEFAULT_PAGE_SIZE = 20000
INTEGRATED_PAGE_SIZE = 5000
# Hard cap to bound memory and statement latency on the hosted views
MAX_ROWS = 140000

# Records dated after this year are treated as not-yet-valid data
YEAR_HORIZON = 2025

_YEAR_PATTERN = re.compile(r"(\d{4})")
_TRUE_STRINGS = {"true", "t", "1", "yes", "y"}

# Distinct date strings remembered by the parser
DATE_CACHE_SIZE = 262144


# ============================================================================
# Value Parsing
# ============================================================================

def is_missing(value: Any) -> bool:
    """True for None, NaN and blank strings."""
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def to_number(value: Any) -> float | None:
    """
    Coerce a loosely-typed field to a finite float.

    Returns None for nulls, booleans, blank or non-numeric strings and
    non-finite results; never raises.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not np.isfinite(number):
        return None
    return number


def to_timestamp(value: Any) -> pd.Timestamp | None:
    """
    Parse a date/timestamp field into a naive wall-clock Timestamp.

    Timezone offsets are dropped (not converted) so the calendar date the
    source wrote is the one used for bucketing. Returns None when unparseable.
    """
    if isinstance(value, pd.Timestamp):
        ts = value
    elif isinstance(value, (datetime, date)):
        ts = pd.Timestamp(value)
    elif isinstance(value, str) and value.strip():
        return _parse_date_text(value.strip())
    else:
        return None
    return _wall_clock(ts)


def _wall_clock(ts: pd.Timestamp) -> pd.Timestamp | None:
    if pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_localize(None)
    return ts


@functools.lru_cache(maxsize=DATE_CACHE_SIZE)
def _parse_date_text(text: str) -> pd.Timestamp | None:
    # ISO strings (what the views return) skip pandas' per-call format inference
    try:
        return _wall_clock(pd.Timestamp(datetime.fromisoformat(text)))
    except ValueError:
        pass
    try:
        return _wall_clock(pd.to_datetime(text, errors="coerce"))
    except (TypeError, ValueError, OverflowError):
        return None


def extract_year(value: Any) -> int | None:
    """Year of a date-like field; falls back to the first 4-digit run in the text."""
    ts = to_timestamp(value)
    if ts is not None:
        return int(ts.year)
    if is_missing(value) or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    match = _YEAR_PATTERN.search(str(value))
    return int(match.group(1)) if match else None


def to_flag(value: Any) -> bool:
    """Strict truthiness for boolean columns that may arrive string-encoded."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


# ============================================================================
# View Definitions
# ============================================================================

@dataclass(frozen=True)
class ViewSpec:
    """A remote view one dashboard pulls in full."""
    dashboard: str
    schema: str
    view: str
    row_model: type[RawRow]
    page_size: int = DEFAULT_PAGE_SIZE
    max_rows: int | None = MAX_ROWS

    @property
    def columns(self) -> tuple[str, ...]:
        return self.row_model.columns()


ERP_VIEW = ViewSpec(
    dashboard="erp",
    schema="erp",
    view="erp_funnel_view",
    row_model=ErpFunnelRow,
)

CRM_VIEW = ViewSpec(
    dashboard="crm",
    schema="crm",
    view="crm_funnel_view",
    row_model=CrmFunnelRow,
)

INTEGRATED_VIEW = ViewSpec(
    dashboard="integrated",
    schema="crm",
    view="crm_erp_funnel_view",
    row_model=IntegratedFunnelRow,
    page_size=INTEGRATED_PAGE_SIZE,
)

VIEWS: dict[str, ViewSpec] = {v.dashboard: v for v in (ERP_VIEW, CRM_VIEW, INTEGRATED_VIEW)}


# ============================================================================
# Errors
# ============================================================================

class FetchError(RuntimeError):
    """A page request failed; the whole load is abandoned."""


class FetchCancelled(Exception):
    """The load's cancellation token was set between pages."""


# ============================================================================
# Page Sources
# ============================================================================

class PageSource(Protocol):
    async def fetch_page(self, view: ViewSpec, start: int, end: int) -> list[dict]:
        """Return rows start..end (inclusive) of the view, or raise FetchError."""
        ...


class SupabasePageSource:
    """PageSource backed by an explicitly constructed Supabase async client."""

    def __init__(self, client: AsyncClient):
        self.client = client

    @classmethod
    async def connect(cls, url: str, key: str) -> "SupabasePageSource":
        client = await acreate_client(url, key)
        return cls(client)

    async def fetch_page(self, view: ViewSpec, start: int, end: int) -> list[dict]:
        try:
            response = await (
                self.client.schema(view.schema)
                .from_(view.view)
                .select(*view.columns)
                .range(start, end)
                .execute()
            )
        except APIError as exc:
            raise FetchError(exc.message or str(exc)) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"{view.schema}.{view.view}: {exc}") from exc
        return list(response.data or [])


async def fetch_all_rows(
    source: PageSource,
    view: ViewSpec,
    cancel_event: asyncio.Event | None = None,
) -> list[dict]:
    """
    Pull every row of a view with offset pagination.

    Stops on a short page (end of data) or once the view's row cap is reached.
    Any page failure propagates as FetchError and nothing is returned.

    Args:
        source: Page source to read from
        view: View definition (projection, page size, cap)
        cancel_event: Optional token checked before each page

    Returns:
        List of raw row mappings
    """
    page_size = view.page_size
    offset = 0
    rows: list[dict] = []
    pages = 0

    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise FetchCancelled(f"Load of {view.dashboard} cancelled after {pages} pages")

        batch = await source.fetch_page(view, offset, offset + page_size - 1)
        pages += 1
        rows.extend(batch or [])
        logger.debug("%s page %d: %d rows (total %d)", view.dashboard, pages, len(batch or []), len(rows))

        if len(batch or []) < page_size:
            break
        if view.max_rows is not None and len(rows) >= view.max_rows:
            logger.warning("%s hit the %d row cap; remaining rows not loaded", view.dashboard, view.max_rows)
            break
        offset += page_size

    return rows


def rows_to_frame(rows: list[dict], row_model: type[RawRow]) -> pd.DataFrame:
    """
    Validate raw rows against the view schema and build an object-dtype frame.

    Object dtype keeps identifiers as delivered (no int → float drift) and
    nulls are stored as None.
    """
    columns = list(row_model.columns())
    records = [row_model.model_validate(r).model_dump() for r in rows]
    df = pd.DataFrame(records, columns=columns, dtype=object)
    return df.where(df.notna(), None)


# ============================================================================
# Data Store
# ============================================================================

@dataclass
class RowBuffer:
    """In-memory rows and load state for one dashboard."""
    view: ViewSpec
    df: pd.DataFrame | None = None
    loading: bool = False
    error: str | None = None
    loaded_at: datetime | None = None
    cancel_event: asyncio.Event | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def is_loaded(self) -> bool:
        return self.df is not None

    @property
    def row_count(self) -> int:
        return len(self.df) if self.df is not None else 0


class DataStore:
    """
    Holds one row buffer per dashboard view, filled from an injected page source.
    """

    def __init__(self, source: PageSource, views: dict[str, ViewSpec] | None = None):
        self.source = source
        self.views = views if views is not None else VIEWS
        self._buffers = {name: RowBuffer(view=view) for name, view in self.views.items()}

    def buffer(self, name: str) -> RowBuffer:
        if name not in self._buffers:
            raise KeyError(f"Unknown dashboard: {name}")
        return self._buffers[name]

    async def load(self, name: str) -> pd.DataFrame:
        """
        (Re)fetch a dashboard's rows from offset 0.

        On FetchError the buffer's rows are discarded and the message kept;
        on FetchCancelled the previous rows are left as they were.
        """
        buf = self.buffer(name)
        async with buf.lock:
            return await self._fill(name, buf)

    async def ensure_loaded(self, name: str) -> pd.DataFrame:
        """Fetch a dashboard's rows only if they are not already in memory."""
        buf = self.buffer(name)
        if buf.df is not None:
            return buf.df
        async with buf.lock:
            # Another request may have finished the load while we waited
            if buf.df is not None:
                return buf.df
            return await self._fill(name, buf)

    async def _fill(self, name: str, buf: RowBuffer) -> pd.DataFrame:
        # Caller holds buf.lock
        buf.loading = True
        buf.error = None
        buf.cancel_event = asyncio.Event()
        logger.info("Loading %s from %s.%s", name, buf.view.schema, buf.view.view)
        try:
            rows = await fetch_all_rows(self.source, buf.view, buf.cancel_event)
            buf.df = rows_to_frame(rows, buf.view.row_model)
            buf.loaded_at = datetime.now(timezone.utc)
            logger.info("Loaded %s: %d rows", name, len(buf.df))
        except FetchError as exc:
            buf.df = None
            buf.error = str(exc) or "Failed to load data"
            logger.error("Load of %s failed: %s", name, buf.error)
            raise
        except FetchCancelled as exc:
            logger.warning("%s", exc)
            raise
        finally:
            buf.loading = False
            buf.cancel_event = None
        return buf.df

    def cancel(self, name: str) -> bool:
        """Signal an in-flight load to stop before its next page."""
        buf = self.buffer(name)
        if buf.cancel_event is None:
            return False
        buf.cancel_event.set()
        return True

    def cancel_all(self) -> None:
        for name in self._buffers:
            self.cancel(name)

    def get_rows(self, name: str) -> pd.DataFrame | None:
        return self.buffer(name).df

    def status(self, name: str) -> dict:
        buf = self.buffer(name)
        return {
            "dashboard": name,
            "loaded": buf.is_loaded,
            "loading": buf.loading,
            "error": buf.error,
            "row_count": buf.row_count,
            "loaded_at": buf.loaded_at.isoformat() if buf.loaded_at else None,
        }
