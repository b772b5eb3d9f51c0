"""Group cached receipts into per-(customer, store) summaries."""
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple

UNKNOWN_CUSTOMER = "Unknown Customer"
NO_STORE_NAME = "No Store Name"

CustomerKey = Tuple[str, str]

_GROUPED_AMOUNT = re.compile(r"^[+-]?\d{1,3}(,\d{3})+(\.\d+)?$")


def coerce_total(value: Any) -> float:
    """Receipt total as a float; anything non-numeric counts as 0.

    Commas are only dropped when they group thousands ("1,234.50");
    a decimal comma such as "12,50" is not a number here.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, str):
        value = value.strip()
        if _GROUPED_AMOUNT.match(value):
            value = value.replace(",", "")
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(amount) or math.isinf(amount):
        return 0.0
    return amount


@dataclass
class CustomerAggregate:
    customer_name: str
    store_name: str
    receipts: List[Dict[str, Any]] = field(default_factory=list)
    total_spent: float = 0.0
    receipt_count: int = 0

    @property
    def key(self) -> CustomerKey:
        return (self.customer_name, self.store_name)

    def add(self, receipt: Dict[str, Any]) -> None:
        self.receipts.append(receipt)
        self.total_spent += coerce_total(receipt.get("total"))
        self.receipt_count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": list(self.key),
            "customer_name": self.customer_name,
            "store_name": self.store_name,
            "receipts": list(self.receipts),
            "total_spent": self.total_spent,
            "receipt_count": self.receipt_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomerAggregate":
        return cls(
            customer_name=data["customer_name"],
            store_name=data["store_name"],
            receipts=list(data.get("receipts") or []),
            total_spent=float(data.get("total_spent") or 0.0),
            receipt_count=int(data.get("receipt_count") or 0),
        )


def customer_key(receipt: Dict[str, Any]) -> CustomerKey:
    return (str(receipt.get("customer_name") or UNKNOWN_CUSTOMER), str(receipt.get("store_name") or NO_STORE_NAME))


def aggregate_receipts(receipts: Iterable[Dict[str, Any]]) -> List[CustomerAggregate]:
    """Build customer aggregates sorted by store name (stable on first appearance)."""
    groups: Dict[CustomerKey, CustomerAggregate] = {}
    for receipt in receipts:
        key = customer_key(receipt)
        group = groups.get(key)
        if group is None:
            group = groups[key] = CustomerAggregate(customer_name=key[0], store_name=key[1])
        group.add(receipt)
    return sorted(groups.values(), key=lambda g: g.store_name)
