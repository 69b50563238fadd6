"""
Order Module
============
Immutable order records for the counter board.

- Frozen dataclasses: every change produces a new Order
- Row mapping to/from the remote orders table
- Counter pricing (takeaway surcharge per unit)
- Display token and QR code generation
"""

import json
import logging
import random
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from order_status import (
    OrderStatus, Partition, StatusTransitionError, normalize_status, partition_for
)


logger = logging.getLogger(__name__)


class OrderKind(Enum):
    """Where the order is eaten."""
    DINE_IN = "dine_in"
    TAKEAWAY = "takeaway"


class OrderOrigin(Enum):
    """Who placed the order."""
    EXTERNAL_APP = "external_app"
    COUNTER = "counter"


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp from the remote store (naive values are UTC)."""
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_NAME_JUNK = re.compile(r"[^a-z0-9]+")


def normalize_item_name(value: Any) -> str:
    """Normalize an item name for matching order lines to stock records."""
    if not value or not isinstance(value, str):
        return ""
    return " ".join(_NAME_JUNK.sub(" ", value.lower()).split())


# ============================================================================
# ORDER LINE
# ============================================================================

@dataclass(frozen=True)
class OrderLine:
    """
    One catalog item on an order.

    item_id may be None for rows that only carry an item name; the
    stock ledger resolves those by normalized name.
    """
    name: str
    quantity: int = 1
    unit_price: float = 0.0
    item_id: Optional[str] = None

    def __post_init__(self):
        if self.quantity < 1:
            raise ValueError(f"Line quantity must be >= 1: {self.quantity}")
        if self.unit_price < 0:
            raise ValueError(f"Line price must be >= 0: {self.unit_price}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderLine":
        return cls(
            name=data.get("name") or data.get("item_name") or "",
            quantity=int(data.get("quantity") or 1),
            unit_price=float(data.get("unit_price") or data.get("price") or 0.0),
            item_id=data.get("item_id") or data.get("food_item_id"),
        )


# ============================================================================
# ORDER
# ============================================================================

@dataclass(frozen=True)
class Order:
    """Immutable order record. Identity is order_id."""
    order_id: str
    token: str
    lines: Tuple[OrderLine, ...]
    total_amount: float
    status: OrderStatus
    kind: OrderKind
    origin: OrderOrigin
    created_at: datetime
    updated_at: datetime
    delivered_at: Optional[datetime] = None
    qr_code: Optional[str] = None
    user_id: Optional[str] = field(default=None, compare=False)

    @property
    def partition(self) -> Partition:
        return partition_for(self.status)

    @property
    def item_label(self) -> str:
        """Human-readable item summary."""
        parts = []
        for line in self.lines:
            parts.append(line.name if line.quantity == 1 else f"{line.name} x{line.quantity}")
        return ", ".join(parts)

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    def with_status(
        self,
        status: OrderStatus,
        at: Optional[datetime] = None,
        delivered_at: Optional[datetime] = None,
        clear_delivered: bool = False
    ) -> "Order":
        """Create a copy with a new status (immutable)."""
        at = at or utcnow()
        return replace(
            self,
            status=status,
            updated_at=at,
            delivered_at=None if clear_delivered else (delivered_at or self.delivered_at),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (presentation / API)."""
        return {
            "order_id": self.order_id,
            "token": self.token,
            "qr_code": self.qr_code,
            "items": [line.to_dict() for line in self.lines],
            "item_label": self.item_label,
            "total_amount": self.total_amount,
            "status": self.status.value,
            "kind": self.kind.value,
            "origin": self.origin.value,
            "partition": self.partition.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }


# ============================================================================
# IDENTIFIERS & PRICING
# ============================================================================

def generate_token(rng: Optional[random.Random] = None) -> str:
    """Four-digit display token shown to the customer."""
    rng = rng or random
    return str(rng.randint(1000, 9999))


def qr_code_for(order_id: str) -> str:
    """Sixteen-digit QR payload derived from the digits of the order id."""
    digits = re.sub(r"\D", "", order_id)
    return (digits + "0" * 16)[:16]


def price_lines(
    lines: Iterable[OrderLine],
    kind: OrderKind,
    takeaway_surcharge: float
) -> float:
    """Total for the lines; takeaway adds a surcharge per unit."""
    surcharge = takeaway_surcharge if kind == OrderKind.TAKEAWAY else 0.0
    return round(
        sum((line.unit_price + surcharge) * line.quantity for line in lines),
        2
    )


def new_order(
    lines: Iterable[OrderLine],
    kind: OrderKind,
    origin: OrderOrigin = OrderOrigin.COUNTER,
    takeaway_surcharge: float = 0.0,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None
) -> Order:
    """
    Build a freshly placed order. Placement always starts at PREPARING.

    Raises:
        ValueError: If there are no lines
    """
    lines = tuple(lines)
    if not lines:
        raise ValueError("Order must have at least one line")

    now = now or utcnow()
    order_id = str(uuid.uuid4())

    return Order(
        order_id=order_id,
        token=generate_token(),
        lines=lines,
        total_amount=price_lines(lines, kind, takeaway_surcharge),
        status=OrderStatus.PREPARING,
        kind=kind,
        origin=origin,
        created_at=now,
        updated_at=now,
        qr_code=qr_code_for(order_id),
        user_id=user_id,
    )


# ============================================================================
# ROW MAPPING
# ============================================================================

def _lines_from_row(row: Dict[str, Any]) -> Tuple[OrderLine, ...]:
    items = row.get("items")
    if isinstance(items, str):
        items = json.loads(items) if items else None

    if items:
        return tuple(OrderLine.from_dict(item) for item in items)

    quantity = int(row.get("quantity") or 1)
    total = float(row.get("total_amount") or 0.0)
    return (
        OrderLine(
            name=row.get("item_name") or "",
            quantity=quantity,
            unit_price=round(total / quantity, 2) if total else 0.0,
            item_id=row.get("food_item_id"),
        ),
    )


def _kind_from_row(value: Any) -> OrderKind:
    # Legacy rows store a boolean "is takeaway"
    if isinstance(value, bool):
        return OrderKind.TAKEAWAY if value else OrderKind.DINE_IN
    if isinstance(value, str) and value.strip().lower().replace("-", "_") == "takeaway":
        return OrderKind.TAKEAWAY
    return OrderKind.DINE_IN


def order_from_row(row: Dict[str, Any], app_user_id: Optional[str] = None) -> Order:
    """
    Map a remote orders row to an Order.

    Raises:
        ValueError: If the row has no id or a malformed field
    """
    order_id = row.get("id") or row.get("order_id")
    if not order_id:
        raise ValueError("Order row missing id")

    created_at = parse_timestamp(row.get("created_at")) or utcnow()
    user_id = row.get("user_id")

    return Order(
        order_id=str(order_id),
        token=str(row.get("order_token") or ""),
        lines=_lines_from_row(row),
        total_amount=float(row.get("total_amount") or 0.0),
        status=normalize_status(row.get("status") or OrderStatus.PREPARING.value),
        kind=_kind_from_row(row.get("order_type")),
        origin=(
            OrderOrigin.EXTERNAL_APP
            if app_user_id and user_id == app_user_id
            else OrderOrigin.COUNTER
        ),
        created_at=created_at,
        updated_at=parse_timestamp(row.get("updated_at")) or created_at,
        delivered_at=parse_timestamp(row.get("delivered_at")),
        qr_code=row.get("qr_code"),
        user_id=user_id,
    )


def order_to_row(order: Order) -> Dict[str, Any]:
    """Map an Order to a remote orders row (insert payload)."""
    first = order.lines[0]
    return {
        "id": order.order_id,
        "order_id": order.order_id,
        "user_id": order.user_id,
        "item_name": order.item_label,
        "food_item_id": first.item_id if len(order.lines) == 1 else None,
        "quantity": order.item_count,
        "items": [line.to_dict() for line in order.lines],
        "total_amount": order.total_amount,
        "status": order.status.value,
        "order_type": order.kind == OrderKind.TAKEAWAY,
        "order_token": order.token,
        "qr_code": order.qr_code,
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat(),
        "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
    }


def orders_from_rows(
    rows: Iterable[Dict[str, Any]],
    app_user_id: Optional[str] = None
) -> List[Order]:
    """Map rows, skipping malformed ones with a warning."""
    orders = []
    for row in rows:
        try:
            orders.append(order_from_row(row, app_user_id))
        except (ValueError, TypeError, StatusTransitionError) as e:
            logger.warning(
                f"Skipping malformed order row: {str(e)}",
                extra={"order_id": row.get("id") if isinstance(row, dict) else None}
            )
    return orders
