"""Stock picking and order completion.

Writes happen in a fixed order: product stock first, order status last.
There is no transaction and no compare-and-swap: two deliveries that read
the same product snapshot concurrently can both pick the same units. The
reconciler narrows this window (invoice dedupe, optional advisory lock);
a conditional write on ``status == pending`` would close it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from autodelivery.config import Settings
from autodelivery.errors import EmptyStockWarning, NotFoundError
from autodelivery.models import STATUS_PAID, Order, Product, StockUnit
from autodelivery.store.client import DocumentStoreClient
from autodelivery.store.codec import Timestamp

logger = logging.getLogger(__name__)


@dataclass
class FulfillmentPlan:
    """What to deliver and how the product document changes."""

    delivered: list[StockUnit] = field(default_factory=list)
    product_fields: dict[str, Any] = field(default_factory=dict)
    product_mask: list[str] = field(default_factory=list)
    remaining: int | None = None
    warning: EmptyStockWarning | None = None


@dataclass
class FulfillmentResult:
    order_id: str
    product_id: str
    delivered: list[StockUnit] = field(default_factory=list)
    remaining: int | None = None
    product_written: bool = False
    warning: EmptyStockWarning | None = None


def pick_stock(stock: list[Any], quantity: int) -> tuple[list[StockUnit], list[Any]]:
    """FIFO pick: the first ``quantity`` units, and the untouched remainder."""
    count = min(max(quantity, 0), len(stock))
    picked = [StockUnit.from_stored(item) for item in stock[:count]]
    return picked, list(stock[count:])


def _requested_quantity(order: Order) -> int:
    # Missing, zero or negative quantities are read as a single unit
    return order.quantity if order.quantity and order.quantity > 0 else 1


def plan_fulfillment(order: Order, product: Product) -> FulfillmentPlan:
    """Compute the delivered units and the product update for ``order``. Pure."""
    quantity = _requested_quantity(order)

    if order.variant_id and product.has_variants and product.variants:
        index = next(
            (
                i
                for i, variant in enumerate(product.variants)
                if isinstance(variant, dict) and variant.get("id") == order.variant_id
            ),
            -1,
        )
        if index == -1:
            return FulfillmentPlan(
                warning=EmptyStockWarning(f"Variant {order.variant_id} not found on {product.id}")
            )
        variant = product.variants[index]
        stock = variant.get("stockItems") or []
        if not stock:
            return FulfillmentPlan(
                warning=EmptyStockWarning(f"Variant stock empty for {order.variant_id}")
            )
        picked, remaining = pick_stock(stock, quantity)
        variants = list(product.variants)
        variants[index] = {**variant, "stockItems": remaining}
        return FulfillmentPlan(
            delivered=picked,
            product_fields={"variants": variants},
            product_mask=["variants"],
            remaining=len(remaining),
        )

    if not product.stock_items:
        return FulfillmentPlan(warning=EmptyStockWarning(f"Product stock empty for {product.id}"))
    picked, remaining = pick_stock(product.stock_items, quantity)
    return FulfillmentPlan(
        delivered=picked,
        product_fields={"stockItems": remaining},
        product_mask=["stockItems"],
        remaining=len(remaining),
    )


class FulfillmentEngine:
    """Applies a fulfillment plan to the store."""

    def __init__(self, settings: Settings, store: DocumentStoreClient) -> None:
        self._store = store
        self._orders = settings.orders_collection
        self._products = settings.products_collection

    async def mark_paid(
        self, order: Order, invoice_id: str, token: str, delivered: list[StockUnit] | None = None
    ) -> None:
        """Flip the order to paid. Always the last write of a fulfillment."""
        fields: dict[str, Any] = {
            "status": STATUS_PAID,
            "invoiceId": invoice_id or "",
            "paidAt": Timestamp.now(),
        }
        mask = ["status", "invoiceId", "paidAt"]
        if delivered:
            fields["deliveredItems"] = [unit.to_dict() for unit in delivered]
            mask.append("deliveredItems")
        await self._store.update(self._orders, order.id, fields, token, mask)

    async def fulfill(self, order: Order, invoice_id: str, token: str) -> FulfillmentResult:
        """Pick stock for ``order``, write the product, then mark the order paid.

        Zero delivered units is not an error: the provider has already
        accepted the payment, so the order is still marked paid.
        """
        result = FulfillmentResult(order_id=order.id, product_id=order.product_id)

        if not order.product_id:
            logger.warning("Order %s has no productId, marking paid without delivery", order.id)
            await self.mark_paid(order, invoice_id, token)
            return result

        try:
            doc = await self._store.get(self._products, order.product_id, token)
        except NotFoundError:
            logger.warning("Product %s not found for order %s", order.product_id, order.id)
            await self.mark_paid(order, invoice_id, token)
            return result

        product = Product.from_document(doc)
        plan = plan_fulfillment(order, product)
        result.delivered = plan.delivered
        result.warning = plan.warning

        if plan.warning is not None:
            logger.warning("Zero-item fulfillment for order %s: %s", order.id, plan.warning)

        if plan.product_mask:
            await self._store.update(
                self._products, product.id, plan.product_fields, token, plan.product_mask
            )
            result.product_written = True
            result.remaining = plan.remaining
            logger.info(
                "Picked %d items for order %s from product %s, %d remaining",
                len(plan.delivered),
                order.id,
                product.id,
                result.remaining,
            )

        await self.mark_paid(order, invoice_id, token, plan.delivered)
        logger.info("Order %s delivered: %d items", order.id, len(plan.delivered))
        return result
