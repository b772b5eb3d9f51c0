"""In-memory stand-ins for ERPNext used by the test modules."""
import datetime as dt
from typing import Any, Callable, Dict, List, Optional

from erp_client import RecordPage
from receipt_records import format_timestamp, parse_timestamp
from sync_errors import RateLimited

BASE_TIME = dt.datetime(2024, 1, 1, 9, 0, 0, tzinfo=dt.timezone.utc)


def make_receipts(count: int, start: int = 0, base: dt.datetime = BASE_TIME, step: int = 60) -> List[Dict[str, Any]]:
    """ERPNext-shaped receipt docs R0000.., one minute apart."""
    rows = []
    for i in range(start, start + count):
        rows.append({
            "name": f"R{i:04d}",
            "date": format_timestamp(base + dt.timedelta(seconds=step * i)),
            "customer_name": f"Customer {i % 4}",
            "store_name": f"Store {'CBA'[i % 3]}",
            "total": f"{i % 10}.25",
        })
    return rows


class FakeReceiptClient:
    """Serves ``receipts`` with ERPNext-like filter/sort/offset semantics.

    ``rate_limits`` maps an offset to how many times a page request at that
    offset is answered with RateLimited before succeeding. ``fail`` may
    return an exception to raise for a given call.
    """

    def __init__(self, receipts: Optional[List[Dict[str, Any]]] = None,
                 rate_limits: Optional[Dict[int, int]] = None,
                 fail: Optional[Callable[[Dict[str, Any]], Optional[Exception]]] = None):
        self.receipts = list(receipts or [])
        self.rate_limits = dict(rate_limits or {})
        self.fail = fail
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    @property
    def page_calls(self) -> List[Dict[str, Any]]:
        return [c for c in self.calls if not c["include_total"]]

    @property
    def count_calls(self) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["include_total"]]

    def _matches(self, row: Dict[str, Any], filters) -> bool:
        for f in filters:
            if f.op == ">":
                left, right = parse_timestamp(row.get(f.field)), parse_timestamp(f.value)
                if left is None or right is None or not left > right:
                    return False
            elif f.op == "=" and row.get(f.field) != f.value:
                return False
        return True

    async def list_records(self, filters=(), sort=None, limit=100, offset=0, include_total=False):
        call = {"filters": list(filters), "sort": sort, "limit": limit, "offset": offset,
                "include_total": include_total}
        self.calls.append(call)
        if self.fail is not None:
            exc = self.fail(call)
            if exc is not None:
                raise exc
        if not include_total and self.rate_limits.get(offset, 0) > 0:
            self.rate_limits[offset] -= 1
            raise RateLimited("slow down")
        rows = [r for r in self.receipts if self._matches(r, filters)]
        if sort is not None:
            rows.sort(key=lambda r: parse_timestamp(r.get(sort.field)), reverse=sort.descending)
        page = rows[offset:offset + limit]
        return RecordPage([dict(r) for r in page], len(rows) if include_total else None)

    async def count_records(self, filters=()):
        call = {"filters": list(filters), "sort": None, "limit": 0, "offset": 0, "include_total": True}
        self.calls.append(call)
        if self.fail is not None:
            exc = self.fail(call)
            if exc is not None:
                raise exc
        return len([r for r in self.receipts if self._matches(r, filters)])

    def close(self):
        self.closed = True


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ProgressLog:
    def __init__(self):
        self.events: List[tuple] = []

    def __call__(self, message: str, count: int) -> None:
        self.events.append((message, count))

    @property
    def messages(self) -> List[str]:
        return [m for m, _ in self.events]
