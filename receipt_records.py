"""Receipt record helpers: payload normalization, timestamps and placeholder ids."""
import datetime as dt
import hashlib
import json
from typing import Any, Dict, Iterable, List, Optional

PLACEHOLDER_PREFIX = "local-"


def parse_timestamp(value: Any) -> Optional[dt.datetime]:
    """Parse ISO-8601 / ERPNext datetime strings into aware UTC datetimes.

    Naive values are treated as UTC. Returns None for anything unparseable.
    """
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        stamp = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            stamp = dt.datetime.fromisoformat(text)
        except ValueError:
            return None
    if stamp.tzinfo is None:
        return stamp.replace(tzinfo=dt.timezone.utc)
    return stamp.astimezone(dt.timezone.utc)


def format_timestamp(stamp: dt.datetime) -> str:
    return stamp.astimezone(dt.timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def placeholder_id(raw: Dict[str, Any]) -> str:
    """Stable id for a receipt the remote sent without one.

    Derived from the record content so the same receipt maps to the same
    placeholder on every sync.
    """
    body = json.dumps(raw, sort_keys=True, separators=(",", ":"), default=str)
    return PLACEHOLDER_PREFIX + hashlib.sha1(body.encode("utf-8")).hexdigest()[:16]


def _first_value(doc: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in doc and doc[key] not in (None, ""):
            return doc[key]
    return None


def normalize_receipt(raw: Dict[str, Any], timestamp_field: str = "date") -> Dict[str, Any]:
    """Map a remote receipt document onto the local record shape.

    Unknown fields are kept as-is; id, date, customer_name, store_name and
    total are always present (possibly None).
    """
    record = dict(raw)
    rid = _first_value(raw, ("id", "name", "$id"))
    record["id"] = str(rid) if rid is not None else placeholder_id(raw)
    record["date"] = _first_value(raw, (timestamp_field, "date", "posting_date", "creation"))
    record["customer_name"] = _first_value(raw, ("customer_name", "customerName", "customer"))
    record["store_name"] = _first_value(raw, ("store_name", "storeName", "store"))
    record["total"] = _first_value(raw, ("total", "grand_total", "amountPaid", "amount_paid"))
    return record


def receipt_timestamp(record: Dict[str, Any]) -> Optional[dt.datetime]:
    return parse_timestamp(record.get("date"))


def latest_receipt(records: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Return the record with the greatest timestamp (full scan; first one wins ties)."""
    latest = None
    latest_ts = None
    for record in records:
        ts = receipt_timestamp(record)
        if ts is None:
            continue
        if latest_ts is None or ts > latest_ts:
            latest, latest_ts = record, ts
    return latest


def dedupe_receipts(records: Iterable[Dict[str, Any]], seen: Optional[set] = None) -> List[Dict[str, Any]]:
    """Drop records whose id is already in ``seen`` (updated in place), keeping order."""
    seen = set() if seen is None else seen
    unique = []
    for record in records:
        rid = record.get("id")
        if rid in seen:
            continue
        seen.add(rid)
        unique.append(record)
    return unique
