"""Payment reconciliation chain, run in the background after acknowledgment.

token -> duplicate-invoice check -> pending orders -> match -> audit
      -> (order lock) -> fulfill

Every step awaits one outbound call at a time. Any failure aborts the rest
of the chain and relies on the provider redelivering the event; partial
progress (stock taken, order not yet paid) is reconciled from the audit log.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from autodelivery.auth.credentials import CredentialProvider
from autodelivery.config import Settings
from autodelivery.errors import NoMatchError
from autodelivery.fulfillment import FulfillmentEngine, FulfillmentResult
from autodelivery.models import STATUS_PAID, STATUS_PENDING, Order
from autodelivery.store.client import DocumentStoreClient, StructuredQuery
from autodelivery.webhooks.audit import AuditLogger
from autodelivery.webhooks.idempotency import OrderLock
from autodelivery.webhooks.matcher import MatchResult, match_order
from autodelivery.webhooks.normalizer import PaymentEvent

logger = logging.getLogger(__name__)

OUTCOME_FULFILLED = "fulfilled"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_NO_MATCH = "no_match"
OUTCOME_LOCKED = "locked"


@dataclass
class ReconcileOutcome:
    status: str
    order_id: str = ""
    match: MatchResult | None = None
    fulfillment: FulfillmentResult | None = None


class PaymentReconciler:
    """Matches a payment event to a pending order and fulfills it."""

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialProvider,
        store: DocumentStoreClient,
        engine: FulfillmentEngine,
        audit: AuditLogger,
        lock: OrderLock | None = None,
    ) -> None:
        self._settings = settings
        self._credentials = credentials
        self._store = store
        self._engine = engine
        self._audit = audit
        self._lock = lock

    async def load_pending_orders(self, token: str) -> list[Order]:
        """Pending orders, newest first.

        Queried without orderBy so no composite index is needed; sorted in
        memory by the newest of create time and ``createdAt``.
        """
        query = StructuredQuery(
            collection=self._settings.orders_collection,
            where_equal=("status", STATUS_PENDING),
            limit=self._settings.pending_order_limit,
        )
        docs = await self._store.query(query, token)
        orders = [Order.from_document(doc) for doc in docs]
        orders.sort(key=lambda order: order.recency, reverse=True)
        logger.info("Found %d pending orders", len(orders))
        return orders

    async def find_paid_by_invoice(self, invoice_id: str, token: str) -> Order | None:
        """An order already paid by this invoice, if the event is a redelivery."""
        if not invoice_id:
            return None
        query = StructuredQuery(
            collection=self._settings.orders_collection,
            where_equal=("invoiceId", invoice_id),
            limit=1,
        )
        for doc in await self._store.query(query, token):
            order = Order.from_document(doc)
            if order.status == STATUS_PAID:
                return order
        return None

    async def process(self, event: PaymentEvent) -> ReconcileOutcome:
        logger.info(
            "Processing payment: invoice=%s amount=%s order_id=%s",
            event.invoice_id,
            event.amount,
            event.order_id or "-",
        )
        token = await self._credentials.get_token()

        already = await self.find_paid_by_invoice(event.invoice_id, token)
        if already is not None:
            logger.info("Invoice %s already fulfilled order %s, skipping", event.invoice_id, already.id)
            return ReconcileOutcome(status=OUTCOME_DUPLICATE, order_id=already.id)

        orders = await self.load_pending_orders(token)
        try:
            match = match_order(event, orders)
        except NoMatchError:
            logger.warning(
                "No pending orders at all, dropping payment: invoice=%s amount=%s",
                event.invoice_id,
                event.amount,
            )
            await self._audit.record(
                event.raw, token, status=OUTCOME_NO_MATCH, invoice_id=event.invoice_id
            )
            return ReconcileOutcome(status=OUTCOME_NO_MATCH)

        order = match.order
        if match.low_confidence:
            logger.warning("Low-confidence match for order %s (%s, score=%d)", order.id, match.method, match.score)
        await self._audit.record(
            event.raw,
            token,
            status=f"matched:{match.method}",
            matched_order_id=order.id,
            score=match.score,
            invoice_id=event.invoice_id,
        )

        if self._lock is None:
            result = await self._engine.fulfill(order, event.invoice_id, token)
        else:
            async with self._lock.hold(order.id) as acquired:
                if not acquired:
                    return ReconcileOutcome(status=OUTCOME_LOCKED, order_id=order.id, match=match)
                # The pending snapshot may predate a delivery that just released the lock
                current = Order.from_document(
                    await self._store.get(self._settings.orders_collection, order.id, token)
                )
                if current.status != STATUS_PENDING:
                    logger.info("Order %s is already %s, skipping", order.id, current.status)
                    return ReconcileOutcome(status=OUTCOME_DUPLICATE, order_id=order.id, match=match)
                result = await self._engine.fulfill(current, event.invoice_id, token)

        return ReconcileOutcome(
            status=OUTCOME_FULFILLED, order_id=order.id, match=match, fulfillment=result
        )
