"""Paginated receipt fetching with rate-limit backoff."""
import asyncio
import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from erp_client import Filter, SortSpec
from receipt_records import dedupe_receipts, format_timestamp, normalize_receipt, parse_timestamp, receipt_timestamp
from sync_errors import RateLimited, RemoteError

log = logging.getLogger(__name__)

PAGE_SIZE = 100
PAGE_DELAY = 0.1

ProgressCallback = Callable[[str, int], None]
Sleep = Callable[[float], Awaitable[Any]]


def _no_progress(message: str, count: int) -> None:
    pass


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for rate-limited calls."""

    max_attempts: int = 5
    base_delay: float = 2.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if retry_after is not None:
            delay = min(max(delay, retry_after), self.max_delay)
        return delay


class ReceiptFetcher:
    def __init__(self, client, timestamp_field: str = "date", page_size: int = PAGE_SIZE,
                 page_delay: float = PAGE_DELAY, retry: Optional[RetryPolicy] = None,
                 delta_buffer: float = 1.0, sleep: Sleep = asyncio.sleep):
        self.client = client
        self.timestamp_field = timestamp_field
        self.page_size = page_size
        self.page_delay = page_delay
        self.retry = retry or RetryPolicy()
        self.delta_buffer = delta_buffer
        self._sleep = sleep

    @property
    def ascending(self) -> SortSpec:
        return SortSpec(self.timestamp_field)

    async def fetch_page(self, filters: Sequence[Filter], sort: Optional[SortSpec],
                         offset: int, limit: int) -> List[Dict[str, Any]]:
        page = await self.client.list_records(filters=filters, sort=sort, limit=limit, offset=offset)
        return [normalize_receipt(doc, self.timestamp_field) for doc in page.items]

    async def _with_retry(self, call: Callable[[], Awaitable[Any]], progress: ProgressCallback,
                          accepted: int = 0) -> Any:
        attempt = 0
        while True:
            try:
                return await call()
            except RateLimited as exc:
                attempt += 1
                if attempt >= self.retry.max_attempts:
                    raise RemoteError(
                        f"Still rate limited after {attempt} attempts", status=exc.status
                    ) from exc
                delay = self.retry.delay_for(attempt, exc.retry_after)
                log.info("Rate limited (attempt %d/%d); sleeping %.1fs", attempt, self.retry.max_attempts, delay)
                progress(f"Rate limited, waiting {delay:g} seconds... ({accepted} receipts fetched)", accepted)
                await self._sleep(delay)

    async def fetch_total_count(self, progress: ProgressCallback = _no_progress) -> int:
        total = await self._with_retry(lambda: self.client.count_records(), progress)
        if total is None:
            raise RemoteError("Remote did not report a total count")
        return int(total)

    async def fetch_all(self, progress: ProgressCallback = _no_progress,
                        filters: Sequence[Filter] = (), sort: Optional[SortSpec] = None,
                        keep: Optional[Callable[[Dict[str, Any]], bool]] = None,
                        label: str = "receipts",
                        seen: Optional[Set[str]] = None) -> List[Dict[str, Any]]:
        """Page through the collection until a short page comes back.

        Rate-limited pages are retried at the same offset; ``keep`` filters
        records after they are fetched but never affects end-of-stream. Ids in
        ``seen`` (left untouched) are treated as already accepted.
        """
        sort = sort or self.ascending
        accepted: List[Dict[str, Any]] = []
        seen = set(seen or ())
        offset = 0
        while True:
            page = await self._with_retry(
                lambda: self.fetch_page(filters, sort, offset, self.page_size),
                progress,
                accepted=len(accepted),
            )
            batch = [r for r in page if keep(r)] if keep else page
            accepted.extend(dedupe_receipts(batch, seen))
            progress(f"Fetched {len(accepted)} {label}...", len(accepted))
            if len(page) < self.page_size:
                break
            offset += self.page_size
            await self._sleep(self.page_delay)
        log.debug("Fetched %d %s in %d page(s)", len(accepted), label, offset // self.page_size + 1)
        return accepted

    async def fetch_since(self, watermark_timestamp: Any,
                          progress: ProgressCallback = _no_progress,
                          known_ids: Optional[Set[str]] = None) -> List[Dict[str, Any]]:
        """Receipts strictly newer than ``watermark_timestamp``, oldest first."""
        since = parse_timestamp(watermark_timestamp)
        if since is None:
            raise RemoteError(f"Unusable watermark timestamp: {watermark_timestamp!r}")
        adjusted = since - dt.timedelta(seconds=self.delta_buffer)

        def _newer(record: Dict[str, Any]) -> bool:
            ts = receipt_timestamp(record)
            return ts is not None and ts > since

        return await self.fetch_all(
            progress,
            filters=[Filter(self.timestamp_field, ">", format_timestamp(adjusted))],
            sort=self.ascending,
            keep=_newer,
            label="new receipts",
            seen=known_ids,
        )
