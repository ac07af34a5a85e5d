"""Order and product views over store documents.

The documents are created by the storefront and admin screens; these
classes only read the fields the reconciliation core needs.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from autodelivery.store.client import Document
from autodelivery.store.codec import Timestamp

STATUS_PENDING = "pending"
STATUS_PAID = "paid"


def _epoch(value: Any) -> float:
    if not value:
        return 0.0
    try:
        return Timestamp(value).to_datetime().timestamp()
    except ValueError:
        return 0.0


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


def _as_quantity(value: Any) -> int:
    # Stored as a number or a numeric string; anything else is one unit
    number = _as_number(value)
    if (isinstance(number, float) and not math.isfinite(number)) or number < 1:
        return 1
    return int(number)


@dataclass
class StockUnit:
    """One deliverable item."""

    content: str
    note: str = ""

    @classmethod
    def from_stored(cls, item: Any) -> StockUnit:
        # Simple products may store bare strings
        if isinstance(item, str):
            return cls(content=item)
        if isinstance(item, dict):
            return cls(content=item.get("content") or "", note=item.get("note") or "")
        return cls(content="" if item is None else str(item))

    def to_dict(self) -> dict[str, str]:
        return {"content": self.content, "note": self.note}


@dataclass
class Order:
    id: str
    status: str = STATUS_PENDING
    customer_email: str = ""
    customer_phone: str = ""
    total_price: float = 0
    product_id: str = ""
    product_name: str = ""
    variant_id: str = ""
    quantity: int = 1
    invoice_id: str = ""
    created_at: str = ""
    create_time: str = ""
    delivered_items: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_document(cls, doc: Document) -> Order:
        f = doc.fields
        return cls(
            id=doc.id,
            status=f.get("status") or STATUS_PENDING,
            customer_email=f.get("customerEmail") or "",
            customer_phone=str(f.get("customerPhone") or ""),
            total_price=_as_number(f.get("totalPrice")),
            product_id=f.get("productId") or "",
            product_name=f.get("productName") or "",
            variant_id=f.get("variantId") or "",
            quantity=_as_quantity(f.get("quantity")),
            invoice_id=f.get("invoiceId") or "",
            created_at=f.get("createdAt") or "",
            create_time=doc.create_time,
            delivered_items=list(f.get("deliveredItems") or []),
        )

    @property
    def recency(self) -> float:
        """Newest of the store's create time and the ``createdAt`` field."""
        return max(_epoch(self.create_time), _epoch(self.created_at))


@dataclass
class Product:
    id: str
    name: str = ""
    has_variants: bool = False
    stock_items: list[Any] = field(default_factory=list)
    variants: list[Any] = field(default_factory=list)

    @classmethod
    def from_document(cls, doc: Document) -> Product:
        f = doc.fields
        variants = f.get("variants")
        stock = f.get("stockItems")
        return cls(
            id=doc.id,
            name=f.get("name") or "",
            has_variants=bool(f.get("hasVariants")),
            stock_items=list(stock) if isinstance(stock, list) else [],
            variants=list(variants) if isinstance(variants, list) else [],
        )
