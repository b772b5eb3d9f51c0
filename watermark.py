"""Sync watermark kept in the cache's metadata partition."""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from receipt_cache import ReceiptCache
from receipt_records import parse_timestamp, receipt_timestamp

log = logging.getLogger(__name__)

LAST_RECORD_ID = "last_processed_receipt_id"
LAST_RECORD_DATE = "last_processed_date"
LAST_REFRESH_TIME = "last_refresh_time"


@dataclass
class Watermark:
    record_id: Optional[str] = None
    record_timestamp: Optional[str] = None
    last_refresh: Optional[float] = None

    @property
    def has_timestamp(self) -> bool:
        return parse_timestamp(self.record_timestamp) is not None


class WatermarkTracker:
    def __init__(self, cache: ReceiptCache):
        self.cache = cache

    async def _get(self, key: str) -> Any:
        row = await self.cache.metadata.get(key)
        return row.get("value") if row else None

    async def _set(self, values: Dict[str, Any]) -> None:
        await self.cache.metadata.put_many([{"key": k, "value": v} for k, v in values.items()])

    async def read(self) -> Optional[Watermark]:
        mark = Watermark(
            record_id=await self._get(LAST_RECORD_ID),
            record_timestamp=await self._get(LAST_RECORD_DATE),
            last_refresh=await self._get(LAST_REFRESH_TIME),
        )
        if mark.record_id is None and mark.record_timestamp is None and mark.last_refresh is None:
            return None
        return mark

    async def advance(self, record: Dict[str, Any]) -> bool:
        """Move the watermark to ``record`` unless that would move it backwards.

        Callers pass the newest record of a batch; returns True if stored.
        """
        new_ts = receipt_timestamp(record)
        if new_ts is None:
            log.warning("Not advancing watermark: receipt %s has no usable date", record.get("id"))
            return False
        current = parse_timestamp(await self._get(LAST_RECORD_DATE))
        if current is not None and new_ts < current:
            log.debug("Watermark %s is ahead of %s; keeping it", current, new_ts)
            return False
        await self._set({LAST_RECORD_ID: record.get("id"), LAST_RECORD_DATE: record.get("date")})
        return True

    async def touch_refresh_time(self, now: float) -> None:
        await self._set({LAST_REFRESH_TIME: now})

    async def reset(self) -> None:
        await self._set({LAST_RECORD_ID: None, LAST_RECORD_DATE: None, LAST_REFRESH_TIME: None})
