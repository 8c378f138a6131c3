"""In-memory page sources for driving the fetch loop without a network."""
import asyncio

from data_loader import FetchError


class ListPageSource:
    """Serves slices of fixed per-view row lists and records every request."""

    def __init__(self, rows_by_view=None, fail_on_page=None, on_page=None):
        self.rows_by_view = rows_by_view or {}
        self.fail_on_page = fail_on_page
        self.on_page = on_page
        self.requests = []

    async def fetch_page(self, view, start, end):
        self.requests.append((view.dashboard, start, end))
        await asyncio.sleep(0)
        if self.fail_on_page is not None and len(self.requests) == self.fail_on_page:
            raise FetchError(f"page {self.fail_on_page} failed")
        if self.on_page is not None:
            self.on_page(len(self.requests))
        rows = self.rows_by_view.get(view.dashboard, [])
        return rows[start:end + 1]
