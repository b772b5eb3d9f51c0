"""
ERPNext REST client for the receipt collection.

Lists documents through /api/resource/<doctype> (filters, order_by,
limit_start, limit_page_length) and counts them through
frappe.client.get_count. HTTP 429 (or a body mentioning a rate limit) is raised
as RateLimited so callers can back off; every other failure is a RemoteError.
"""
import asyncio
import json
import logging
import urllib.parse
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import requests

from sync_errors import RateLimited, RemoteError

log = logging.getLogger(__name__)


class Filter(NamedTuple):
    field: str
    op: str
    value: Any


class SortSpec(NamedTuple):
    field: str
    descending: bool = False

    def order_by(self) -> str:
        return f"{self.field} {'desc' if self.descending else 'asc'}"


class RecordPage(NamedTuple):
    items: List[Dict[str, Any]]
    total_count: Optional[int] = None


SUPPORTED_OPS = ("=", ">")


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        j = resp.json()
        return j.get('message') or j.get('exception') or resp.text
    except Exception:
        return resp.text


def _retry_after(resp: requests.Response) -> Optional[float]:
    raw = resp.headers.get('Retry-After')
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


class ERPNextReceiptClient:
    """Blocking requests calls, exposed as coroutines via asyncio.to_thread."""

    def __init__(self, base_url: Optional[str], api_key: Optional[str] = None,
                 api_secret: Optional[str] = None, doctype: str = "POS Receipt",
                 timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.doctype = doctype
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        if not self.base_url:
            raise RemoteError("Missing ERP_BASE in environment")
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        }
        if self.api_key and self.api_secret:
            headers['Authorization'] = f'token {self.api_key}:{self.api_secret}'
        return headers

    def _check(self, resp: requests.Response) -> Dict[str, Any]:
        if resp.status_code == 429:
            raise RateLimited(f"ERPNext rate limit ({resp.status_code})", retry_after=_retry_after(resp))
        if resp.status_code >= 400:
            detail = (_error_message_from_response(resp) or "").strip()
            if 'rate limit' in detail.lower():
                raise RateLimited(detail[:400], retry_after=_retry_after(resp), status=resp.status_code)
            if len(detail) > 400:
                detail = detail[:400] + "…"
            raise RemoteError(f"ERPNext HTTP {resp.status_code}: {detail}", status=resp.status_code)
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteError("ERPNext response JSON decode failed", status=resp.status_code) from exc

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = self.base_url + path
        try:
            resp = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise RemoteError(f"ERPNext request failed: {exc}") from exc
        return self._check(resp)

    @staticmethod
    def _filters_param(filters: Sequence[Filter]) -> List[List[Any]]:
        out = []
        for f in filters:
            if f.op not in SUPPORTED_OPS:
                raise ValueError(f"Unsupported filter operator: {f.op}")
            out.append([f.field, f.op, f.value])
        return out

    def list_records_sync(self, filters: Sequence[Filter] = (), sort: Optional[SortSpec] = None,
                          limit: int = 100, offset: int = 0, include_total: bool = False) -> RecordPage:
        params = {
            'fields': json.dumps(["*"]),
            'filters': json.dumps(self._filters_param(filters)),
            'limit_start': offset,
            'limit_page_length': limit,
        }
        if sort is not None:
            params['order_by'] = sort.order_by()
        path = "/api/resource/" + urllib.parse.quote(self.doctype, safe="")
        body = self._request("GET", path, params=params)
        items = body.get('data') or []
        total = self.count_records_sync(filters) if include_total else None
        return RecordPage(items=list(items), total_count=total)

    def count_records_sync(self, filters: Sequence[Filter] = ()) -> int:
        body = self._request("POST", "/api/method/frappe.client.get_count", json={
            'doctype': self.doctype,
            'filters': self._filters_param(filters),
        })
        try:
            return int(body.get('message') or 0)
        except (TypeError, ValueError) as exc:
            raise RemoteError(f"Unexpected count payload: {body!r}") from exc

    async def count_records(self, filters: Sequence[Filter] = ()) -> int:
        return await asyncio.to_thread(self.count_records_sync, filters)

    async def list_records(self, filters: Sequence[Filter] = (), sort: Optional[SortSpec] = None,
                           limit: int = 100, offset: int = 0, include_total: bool = False) -> RecordPage:
        return await asyncio.to_thread(self.list_records_sync, filters, sort, limit, offset, include_total)

    def close(self) -> None:
        try:
            self.session.close()
        except Exception:
            log.debug("Failed to close ERPNext session", exc_info=True)
