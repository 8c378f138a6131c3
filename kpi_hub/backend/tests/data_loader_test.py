import asyncio

import pandas as pd
import pytest

from data_loader import (
    DataStore,
    FetchCancelled,
    FetchError,
    ViewSpec,
    extract_year,
    fetch_all_rows,
    rows_to_frame,
    to_flag,
    to_number,
    to_timestamp,
)
from fakes import ListPageSource
from models import ErpFunnelRow


def _view(page_size=3, max_rows=None):
    return ViewSpec(
        dashboard="erp",
        schema="erp",
        view="erp_funnel_view",
        row_model=ErpFunnelRow,
        page_size=page_size,
        max_rows=max_rows,
    )


def _rows(n):
    return [{"po_number": f"PO{i}", "total_cost": i} for i in range(n)]


# ============================================================================
# Value parsing
# ============================================================================

def test_to_number():
    assert to_number("12.5") == 12.5
    assert to_number(" 3 ") == 3.0
    assert to_number(7) == 7.0
    assert to_number("  ") is None
    assert to_number("n/a") is None
    assert to_number(True) is None
    assert to_number("nan") is None
    assert to_number("inf") is None
    assert to_number(None) is None


def test_to_timestamp_drops_offset():
    ts = to_timestamp("2024-03-05T23:30:00+05:00")
    assert ts == pd.Timestamp("2024-03-05 23:30:00")
    assert ts.tzinfo is None
    assert to_timestamp("not a date") is None
    assert to_timestamp(None) is None


def test_to_timestamp_non_iso_text_and_repeat_parses():
    assert to_timestamp("March 5, 2024") == pd.Timestamp("2024-03-05")
    assert to_timestamp("2024-03-05T10:00:00Z") == pd.Timestamp("2024-03-05 10:00:00")
    first = to_timestamp(" 2024-07-01 ")
    assert first == pd.Timestamp("2024-07-01")
    assert to_timestamp("2024-07-01") is first
    assert to_timestamp("2024-02-30") is None


def test_extract_year():
    assert extract_year("2024-06-30") == 2024
    assert extract_year(2023.0) == 2023
    assert extract_year(2022) == 2022
    assert extract_year(None) is None
    assert extract_year("n/a") is None


def test_to_flag():
    assert to_flag(True)
    assert to_flag("TRUE")
    assert to_flag(" yes ")
    assert to_flag(1)
    assert not to_flag(0)
    assert not to_flag("no")
    assert not to_flag(None)


def test_rows_to_frame_keeps_scalars_and_nulls_the_rest():
    df = rows_to_frame(
        [{"supplier_id": 7, "region": {"nested": True}, "total_cost": "12", "unexpected": 1}],
        ErpFunnelRow,
    )
    assert list(df.columns) == list(ErpFunnelRow.columns())
    record = df.to_dict("records")[0]
    assert record["supplier_id"] == 7
    assert isinstance(record["supplier_id"], int)
    assert record["region"] is None
    assert record["total_cost"] == "12"
    assert record["location"] is None


# ============================================================================
# Fetch loop
# ============================================================================

def test_short_page_ends_pagination():
    source = ListPageSource({"erp": _rows(5)})
    rows = asyncio.run(fetch_all_rows(source, _view(page_size=3)))
    assert len(rows) == 5
    assert source.requests == [("erp", 0, 2), ("erp", 3, 5)]


def test_exact_multiple_needs_one_empty_page():
    source = ListPageSource({"erp": _rows(6)})
    rows = asyncio.run(fetch_all_rows(source, _view(page_size=3)))
    assert len(rows) == 6
    assert len(source.requests) == 3


def test_row_cap_stops_pagination():
    source = ListPageSource({"erp": _rows(10)})
    rows = asyncio.run(fetch_all_rows(source, _view(page_size=3, max_rows=4)))
    assert len(source.requests) == 2
    assert len(rows) == 6


def test_page_failure_returns_nothing():
    source = ListPageSource({"erp": _rows(10)}, fail_on_page=2)
    with pytest.raises(FetchError):
        asyncio.run(fetch_all_rows(source, _view(page_size=3)))


def test_cancel_before_first_page():
    source = ListPageSource({"erp": _rows(10)})
    event = asyncio.Event()
    event.set()
    with pytest.raises(FetchCancelled):
        asyncio.run(fetch_all_rows(source, _view(), cancel_event=event))
    assert source.requests == []


# ============================================================================
# Data store
# ============================================================================

def test_ensure_loaded_fetches_once():
    source = ListPageSource({"erp": _rows(2)})
    store = DataStore(source, views={"erp": _view()})

    async def scenario():
        await asyncio.gather(store.ensure_loaded("erp"), store.ensure_loaded("erp"))
        return await store.ensure_loaded("erp")

    df = asyncio.run(scenario())
    assert len(df) == 2
    assert len(source.requests) == 1
    status = store.status("erp")
    assert status["loaded"] is True
    assert status["loading"] is False
    assert status["row_count"] == 2
    assert status["loaded_at"] is not None


def test_failed_reload_discards_rows():
    source = ListPageSource({"erp": _rows(2)})
    store = DataStore(source, views={"erp": _view()})
    asyncio.run(store.load("erp"))
    assert store.get_rows("erp") is not None

    source.fail_on_page = 2
    with pytest.raises(FetchError):
        asyncio.run(store.load("erp"))
    assert store.get_rows("erp") is None
    assert store.status("erp")["error"] == "page 2 failed"


def test_cancel_mid_load_keeps_previous_rows():
    source = ListPageSource({"erp": _rows(2)})
    store = DataStore(source, views={"erp": _view(page_size=3)})
    asyncio.run(store.load("erp"))
    previous = store.get_rows("erp")

    source.rows_by_view["erp"] = _rows(9)
    source.on_page = lambda page: store.cancel("erp")
    with pytest.raises(FetchCancelled):
        asyncio.run(store.load("erp"))
    assert store.get_rows("erp") is previous
    assert store.status("erp")["loading"] is False


def test_cancel_when_idle_is_noop():
    store = DataStore(ListPageSource(), views={"erp": _view()})
    assert store.cancel("erp") is False


def test_unknown_dashboard():
    store = DataStore(ListPageSource(), views={"erp": _view()})
    with pytest.raises(KeyError):
        store.buffer("nope")
