"""Lazy paginated fetch over cursor (search-after) and offset endpoints.

Termination is driven by the total count the server declares in the
``X-Total-Count`` header: pages are requested until the cumulative number
of records received reaches it. Under ``TotalCountPolicy.FIRST_PAGE`` the
total seen on the first page is trusted for the whole scan, so records
added or removed mid-scan can cause an under- or over-fetch. Under
``EVERY_PAGE`` the latest declared total is used instead. Nothing is
deduplicated here.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

import requests

from scripts.idn_management.config import PaginationConfig, TotalCountPolicy
from scripts.idn_management.transport import RetryingTransport

logger = logging.getLogger("idn_management.pagination")

TOTAL_COUNT_HEADER = "X-Total-Count"


@dataclass(frozen=True)
class Page:
    """One page of raw records and the address it was requested with."""

    number: int
    records: list[dict[str, Any]]
    total_count: Optional[int]
    cursor: Optional[str] = None
    offset: Optional[int] = None


class PageStream:
    """Single-pass iterator of pages.

    Iterating a second time yields nothing: the pages are fetched lazily
    and consumed once. ``records()`` flattens the remaining pages.
    """

    def __init__(self, pages: Iterator[Page]) -> None:
        self._pages = pages
        self.pages_fetched = 0
        self.records_received = 0

    def __iter__(self) -> "PageStream":
        return self

    def __next__(self) -> Page:
        page = next(self._pages)
        self.pages_fetched += 1
        self.records_received += len(page.records)
        return page

    def records(self) -> Iterator[dict[str, Any]]:
        for page in self:
            yield from page.records


def _declared_total(resp: requests.Response) -> Optional[int]:
    raw = resp.headers.get(TOTAL_COUNT_HEADER)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s header: %r", TOTAL_COUNT_HEADER, raw)
        return None


class PaginatedFetcher:
    """Builds page streams for list and search endpoints."""

    def __init__(
        self,
        transport: RetryingTransport,
        config: PaginationConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._transport = transport
        self._config = config
        self._sleep = sleep

    @property
    def batch_size(self) -> int:
        return self._config.batch_size

    def cursor(
        self,
        url: str,
        body: dict[str, Any],
        id_field: str = "id",
        params: Optional[dict] = None,
    ) -> PageStream:
        """Stream a search endpoint using ``searchAfter`` on ``id_field``.

        ``body`` must sort on ``id_field`` for the cursor to be stable.
        """
        return PageStream(self._cursor_pages(url, body, id_field, params or {}))

    def offset(self, url: str, params: Optional[dict] = None) -> PageStream:
        """Stream a list endpoint using ``limit``/``offset``."""
        return PageStream(self._offset_pages(url, params or {}))

    def _cursor_pages(
        self, url: str, body: dict[str, Any], id_field: str, params: dict
    ) -> Iterator[Page]:
        limit = self._config.batch_size
        received = 0
        total: Optional[int] = None
        search_after: Optional[str] = None
        number = 0
        while True:
            payload = dict(body)
            if search_after is not None:
                payload["searchAfter"] = [search_after]
            resp = self._transport.execute(
                "POST",
                url,
                params={**params, "limit": limit, "count": "true"},
                json=payload,
            )
            records = resp.json() or []
            total = self._track_total(total, _declared_total(resp), number)
            number += 1
            received += len(records)
            logger.debug(
                "Fetched page %d from %s", number, url,
                extra={"records": received, "total": total},
            )
            yield Page(number, records, total, cursor=search_after)

            if self._finished(records, received, total, limit):
                return
            self._sleep(self._config.page_delay_seconds)
            search_after = str(records[-1][id_field])

    def _offset_pages(self, url: str, params: dict) -> Iterator[Page]:
        limit = self._config.batch_size
        received = 0
        total: Optional[int] = None
        offset = 0
        number = 0
        while True:
            resp = self._transport.execute(
                "GET",
                url,
                params={**params, "limit": limit, "offset": offset, "count": "true"},
            )
            records = resp.json() or []
            total = self._track_total(total, _declared_total(resp), number)
            number += 1
            received += len(records)
            logger.debug(
                "Fetched page %d from %s", number, url,
                extra={"records": received, "total": total},
            )
            yield Page(number, records, total, offset=offset)

            if self._finished(records, received, total, limit):
                return
            # Advance by what was received, short pages included
            offset += len(records)

    def _track_total(self, current: Optional[int], declared: Optional[int], pages_seen: int) -> Optional[int]:
        if pages_seen == 0 or self._config.total_count_policy is TotalCountPolicy.EVERY_PAGE:
            if current is not None and declared is not None and declared != current:
                logger.warning("Declared total changed from %d to %d mid-scan", current, declared)
            return declared if declared is not None else current
        return current

    @staticmethod
    def _finished(records: list, received: int, total: Optional[int], limit: int) -> bool:
        if not records:
            return True
        if total is None:
            return len(records) < limit
        return received >= total
