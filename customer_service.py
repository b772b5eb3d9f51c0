"""
Customer receipts service: keeps the local receipt cache in step with ERPNext
and serves per-(customer, store) aggregates from it.

Each call to get_customer_aggregates() decides between serving the cache,
fetching only receipts newer than the watermark, or refetching everything:

  local == remote, watermark set, refreshed < 1h ago  -> serve cache
  local == remote, watermark set, refresh stale       -> delta fetch
  local receipts and a watermark                      -> delta fetch
  otherwise                                           -> full fetch

A failed delta fetch falls back to a full fetch. A failed full fetch is
raised to the caller. Cache read failures count as a cache miss.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from customer_aggregates import CustomerAggregate, CustomerKey, aggregate_receipts
from erp_client import ERPNextReceiptClient
from receipt_cache import ReceiptCache
from receipt_fetcher import ProgressCallback, ReceiptFetcher, RetryPolicy
from receipt_records import dedupe_receipts, latest_receipt
from sync_config import SyncConfig
from sync_errors import NotInitialized, RemoteError, StoreError
from watermark import Watermark, WatermarkTracker

log = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    DECIDING = "deciding"
    NOOP = "noop"
    DELTA_FETCHING = "delta_fetching"
    FULL_FETCHING = "full_fetching"
    RECONCILING = "reconciling"


class SyncDecision(str, Enum):
    NOOP = "noop"
    DELTA = "delta"
    FULL = "full"


def _no_progress(message: str, count: int) -> None:
    pass


class CustomerService:
    def __init__(self, client, cache: ReceiptCache, config: Optional[SyncConfig] = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config or SyncConfig()
        self.client = client
        self.cache = cache
        self.clock = clock
        self.fetcher = ReceiptFetcher(
            client,
            timestamp_field=self.config.timestamp_field,
            page_size=self.config.page_size,
            page_delay=self.config.page_delay,
            retry=RetryPolicy(
                max_attempts=self.config.rate_limit_attempts,
                base_delay=self.config.rate_limit_delay,
                max_delay=self.config.rate_limit_max_delay,
            ),
            delta_buffer=self.config.delta_buffer,
            sleep=sleep,
        )
        self.watermark = WatermarkTracker(cache)
        self.state = SyncState.IDLE
        self.last_decision: Optional[SyncDecision] = None
        self._customers: Dict[CustomerKey, CustomerAggregate] = {}

    # ---------- lifecycle ----------
    async def open(self) -> "CustomerService":
        await self.cache.open()
        return self

    async def close(self) -> None:
        await self.cache.close()
        close_client = getattr(self.client, "close", None)
        if close_client:
            close_client()

    async def __aenter__(self) -> "CustomerService":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _require_open(self) -> None:
        if not self.cache.is_open:
            raise NotInitialized("CustomerService is not open; call open() first")

    # ---------- public operations ----------
    async def check_connection(self) -> bool:
        try:
            await self.client.list_records(limit=1, offset=0)
            log.info("Receipt database connection successful")
            return True
        except RemoteError as exc:
            log.error("Receipt database connection failed: %s", exc)
            return False

    async def is_refresh_needed(self) -> bool:
        self._require_open()
        try:
            mark = await self.watermark.read()
        except StoreError as exc:
            log.error("Error checking refresh status: %s", exc)
            return True
        return self._is_stale(mark)

    def get_receipt_history(self, key: Sequence[str]) -> List[Dict[str, Any]]:
        """Receipts of one (customer, store) group from the last aggregation."""
        group = self._customers.get(tuple(key))
        return list(group.receipts) if group else []

    async def get_customer_aggregates(self, progress: Optional[ProgressCallback] = None) -> List[CustomerAggregate]:
        self._require_open()
        progress = progress or _no_progress
        try:
            self.state = SyncState.DECIDING
            local = await self._load_local_receipts()
            mark = await self._read_watermark()
            remote_count = await self._remote_count(progress)
            progress(f"Checking for new receipts... (Local: {len(local)}, Database: "
                     f"{remote_count if remote_count is not None else 'unknown'})", len(local))
            decision = self.decide(len(local), remote_count, mark)
            self.last_decision = decision
            log.info("Sync decision: %s (local=%d, remote=%s)", decision.value, len(local), remote_count)

            if decision is SyncDecision.NOOP:
                self.state = SyncState.NOOP
                minutes = round((self.clock() - float(mark.last_refresh)) / 60)
                progress(f"Using cached data (last refreshed {minutes} minutes ago)", len(local))
                return await self._serve_cached(local, progress)

            if decision is SyncDecision.DELTA:
                customers = await self._delta_pass(local, mark, progress)
                if customers is not None:
                    return customers
                self.last_decision = SyncDecision.FULL
            else:
                progress("No local data found, fetching all receipts...", 0)
            return await self._full_pass(progress)
        finally:
            self.state = SyncState.IDLE

    async def force_refresh(self, progress: Optional[ProgressCallback] = None) -> List[CustomerAggregate]:
        self._require_open()
        progress = progress or _no_progress
        progress("Force refreshing all data...", 0)
        try:
            await self.watermark.reset()
        except StoreError as exc:
            log.warning("Failed to clear sync metadata before force refresh: %s", exc)
        self.last_decision = SyncDecision.FULL
        try:
            return await self._full_pass(progress)
        finally:
            self.state = SyncState.IDLE

    # ---------- decision ----------
    def _is_stale(self, mark: Optional[Watermark]) -> bool:
        last = mark.last_refresh if mark else None
        if last is None:
            return True
        try:
            return (self.clock() - float(last)) > self.config.stale_after
        except (TypeError, ValueError):
            return True

    def decide(self, local_count: int, remote_count: Optional[int], mark: Optional[Watermark]) -> SyncDecision:
        has_mark = mark is not None and mark.has_timestamp
        if has_mark and remote_count is not None and local_count == remote_count:
            return SyncDecision.DELTA if self._is_stale(mark) else SyncDecision.NOOP
        if local_count > 0 and has_mark:
            return SyncDecision.DELTA
        return SyncDecision.FULL

    # ---------- passes ----------
    async def _delta_pass(self, local: List[Dict[str, Any]], mark: Watermark,
                          progress: ProgressCallback) -> Optional[List[CustomerAggregate]]:
        self.state = SyncState.DELTA_FETCHING
        progress("Fetching only new receipts since last update...", len(local))
        known = {r.get("id") for r in local}
        try:
            fetched = await self.fetcher.fetch_since(mark.record_timestamp, progress, known_ids=known)
        except RemoteError as exc:
            log.warning("Incremental fetch failed, falling back to full fetch: %s", exc)
            progress("Incremental fetch failed, falling back to full fetch...", 0)
            return None

        new = dedupe_receipts(fetched, set(known))
        if not new:
            progress("No truly new receipts found. Using existing data.", len(local))
            latest = latest_receipt(local)
            if latest is not None:
                await self._advance_watermark(latest)
            await self._touch_refresh_time()
            return await self._serve_cached(local, progress)

        merged = local + new
        if await self._store_receipts(new, replace=False):
            await self._advance_watermark(latest_receipt(merged))
        await self._touch_refresh_time()
        progress(f"Successfully fetched {len(new)} new receipts and updated local storage!", len(merged))
        return await self._reconcile(merged, progress)

    async def _full_pass(self, progress: ProgressCallback) -> List[CustomerAggregate]:
        self.state = SyncState.FULL_FETCHING
        progress("Starting to fetch all receipts...", 0)
        try:
            receipts = await self.fetcher.fetch_all(progress)
        except RemoteError as exc:
            log.error("Error fetching receipts: %s", exc)
            raise
        if await self._store_receipts(receipts, replace=True) and receipts:
            await self._advance_watermark(receipts[-1])
        await self._touch_refresh_time()
        progress(f"Successfully fetched and stored {len(receipts)} receipts locally!", len(receipts))
        return await self._reconcile(receipts, progress)

    async def _reconcile(self, receipts: List[Dict[str, Any]], progress: ProgressCallback) -> List[CustomerAggregate]:
        self.state = SyncState.RECONCILING
        customers = aggregate_receipts(receipts)
        try:
            await self.cache.aggregates.replace_all([c.to_dict() for c in customers])
        except StoreError:
            log.exception("Failed to store %d customers in the cache", len(customers))
        progress(f"Processed {len(receipts)} receipts into {len(customers)} customers", len(receipts))
        return self._remember(customers)

    async def _serve_cached(self, local: List[Dict[str, Any]], progress: ProgressCallback) -> List[CustomerAggregate]:
        """Cached aggregates if they cover every local receipt, else rebuild them."""
        try:
            cached = [CustomerAggregate.from_dict(d) for d in await self.cache.aggregates.get_all()]
        except StoreError as exc:
            log.warning("Error reading cached customers: %s", exc)
            cached = []
        if cached and sum(c.receipt_count for c in cached) == len(local):
            return self._remember(cached)
        return await self._reconcile(local, progress)

    def _remember(self, customers: List[CustomerAggregate]) -> List[CustomerAggregate]:
        self._customers = {c.key: c for c in customers}
        return list(customers)

    # ---------- cache access ----------
    async def _load_local_receipts(self) -> List[Dict[str, Any]]:
        try:
            return await self.cache.records.get_all()
        except StoreError as exc:
            log.error("Error reading receipts from cache, treating as empty: %s", exc)
            return []

    async def _read_watermark(self) -> Optional[Watermark]:
        try:
            return await self.watermark.read()
        except StoreError as exc:
            log.error("Error reading sync metadata, treating as absent: %s", exc)
            return None

    async def _remote_count(self, progress: ProgressCallback) -> Optional[int]:
        try:
            return await self.fetcher.fetch_total_count(progress)
        except RemoteError as exc:
            log.warning("Error getting remote receipt count: %s", exc)
            return None

    async def _store_receipts(self, receipts: List[Dict[str, Any]], replace: bool) -> bool:
        try:
            if replace:
                await self.cache.records.replace_all(receipts)
            else:
                await self.cache.records.put_many(receipts)
            log.info("Stored %d receipts in the cache", len(receipts))
            return True
        except StoreError:
            log.exception("Failed to store %d receipts; clearing watermark", len(receipts))
            try:
                await self.watermark.reset()
            except StoreError as exc:
                log.error("Failed to clear watermark: %s", exc)
            return False

    async def _advance_watermark(self, receipt: Dict[str, Any]) -> None:
        try:
            await self.watermark.advance(receipt)
        except StoreError as exc:
            log.error("Failed to advance watermark: %s", exc)

    async def _touch_refresh_time(self) -> None:
        try:
            await self.watermark.touch_refresh_time(self.clock())
        except StoreError as exc:
            log.error("Failed to store refresh time: %s", exc)


def create_service(config: Optional[SyncConfig] = None) -> CustomerService:
    """Build a service wired to ERPNext and the SQLite cache named in ``config``."""
    config = config or SyncConfig.from_env()
    client = ERPNextReceiptClient(
        config.erp_base,
        api_key=config.api_key,
        api_secret=config.api_secret,
        doctype=config.doctype,
        timeout=config.request_timeout,
    )
    return CustomerService(client, ReceiptCache(config.cache_path), config)
