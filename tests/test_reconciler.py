"""Tests for the background reconciliation chain.

Tests:
- Scenario A: email + amount match, one unit delivered from three
- Scenario B: empty stock -> paid with zero items, no product write
- Scenario C: explicit order id in the description wins
- Scenario D: email-only beats amount-only
- Redelivery of an already-fulfilled invoice is skipped
- No pending orders -> audited as no_match, nothing mutated
- Audit failures never abort the chain; store failures do
- Pending orders are sorted newest first in memory
- Optional order lock: held lock skips, Redis outage fails open
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from autodelivery.auth.credentials import CredentialProvider
from autodelivery.errors import UpdateError
from autodelivery.fulfillment import FulfillmentEngine
from autodelivery.store.client import DocumentStoreClient
from autodelivery.store.codec import Timestamp
from autodelivery.webhooks.audit import AuditLogger
from autodelivery.webhooks.idempotency import OrderLock
from autodelivery.webhooks.matcher import METHOD_ORDER_ID
from autodelivery.webhooks.normalizer import normalize_event
from autodelivery.webhooks.reconciler import (
    OUTCOME_DUPLICATE,
    OUTCOME_FULFILLED,
    OUTCOME_LOCKED,
    OUTCOME_NO_MATCH,
    PaymentReconciler,
)

from conftest import DOCS_BASE


def _build(settings, http, lock=None) -> PaymentReconciler:
    store = DocumentStoreClient(DOCS_BASE, http)
    return PaymentReconciler(
        settings,
        CredentialProvider(settings, http),
        store,
        FulfillmentEngine(settings, store),
        AuditLogger(settings, store),
        lock=lock,
    )


@pytest.fixture
def reconciler(settings, http) -> PaymentReconciler:
    return _build(settings, http)


def _pending(fake_store, order_id: str, created: str = "2024-01-01T00:00:00Z", **fields) -> None:
    base = {"status": "pending", "quantity": 1, "createdAt": Timestamp(created)}
    base.update(fields)
    fake_store.put("orders", order_id, base, create_time=created)


class TestScenarios:
    @pytest.mark.asyncio
    async def test_scenario_a_email_and_amount(self, reconciler, fake_store):
        _pending(fake_store, "O1", customerEmail="a@x.com", totalPrice=50000, productId="P1")
        fake_store.put("products", "P1", {"name": "Netflix", "stockItems": ["u1", "u2", "u3"]})

        event = normalize_event({"event": "payment.received", "data": {"email": "a@x.com", "amount": 50000}})
        outcome = await reconciler.process(event)

        assert outcome.status == OUTCOME_FULFILLED
        assert outcome.match.score == 3
        order = fake_store.fields("orders", "O1")
        assert order["status"] == "paid"
        assert len(order["deliveredItems"]) == 1
        assert fake_store.fields("products", "P1")["stockItems"] == ["u2", "u3"]

    @pytest.mark.asyncio
    async def test_scenario_b_empty_stock(self, reconciler, fake_store):
        _pending(fake_store, "O1", customerEmail="a@x.com", totalPrice=50000, productId="P1")
        fake_store.put("products", "P1", {"stockItems": []})

        event = normalize_event({"event": "payment.received", "data": {"email": "a@x.com", "amount": 50000}})
        outcome = await reconciler.process(event)

        assert outcome.fulfillment.delivered == []
        assert fake_store.fields("orders", "O1")["status"] == "paid"
        assert fake_store.fields("orders", "O1").get("deliveredItems") is None
        assert fake_store.writes_to("products") == []

    @pytest.mark.asyncio
    async def test_scenario_c_order_id_in_description(self, reconciler, fake_store):
        _pending(fake_store, "NEWEST", created="2024-02-01T00:00:00Z", customerEmail="a@x.com", totalPrice=50000, productId="P1")
        _pending(fake_store, "ORD42", customerEmail="someone@x.com", totalPrice=1, productId="P1")
        fake_store.put("products", "P1", {"stockItems": ["u1", "u2"]})

        event = normalize_event(
            {
                "event": "payment.received",
                "data": {"email": "a@x.com", "amount": 50000, "description": "Order ID: ORD42 - Netflix"},
            }
        )
        outcome = await reconciler.process(event)

        assert outcome.order_id == "ORD42"
        assert outcome.match.method == METHOD_ORDER_ID
        assert fake_store.fields("orders", "ORD42")["status"] == "paid"
        assert fake_store.fields("orders", "NEWEST")["status"] == "pending"

    @pytest.mark.asyncio
    async def test_scenario_d_email_beats_amount(self, reconciler, fake_store):
        _pending(fake_store, "BY_AMOUNT", created="2024-02-01T00:00:00Z", customerEmail="z@x.com", totalPrice=50000)
        _pending(fake_store, "BY_EMAIL", customerEmail="a@x.com", totalPrice=10)

        event = normalize_event({"event": "payment.received", "data": {"email": "a@x.com", "amount": 50000}})
        outcome = await reconciler.process(event)

        assert outcome.order_id == "BY_EMAIL"
        assert fake_store.fields("orders", "BY_AMOUNT")["status"] == "pending"

    @pytest.mark.asyncio
    async def test_variant_order(self, reconciler, fake_store):
        _pending(fake_store, "O1", customerEmail="a@x.com", productId="P1", variantId="v2", quantity=2)
        fake_store.put(
            "products",
            "P1",
            {
                "hasVariants": True,
                "variants": [
                    {"id": "v1", "stockItems": [{"content": "m1", "note": ""}]},
                    {"id": "v2", "stockItems": [{"content": "y1", "note": "1y"}, {"content": "y2", "note": ""}, {"content": "y3", "note": ""}]},
                ],
            },
        )

        await reconciler.process(normalize_event({"event": "payment.received", "data": {"email": "a@x.com"}}))

        variants = fake_store.fields("products", "P1")["variants"]
        assert variants[0]["stockItems"] == [{"content": "m1", "note": ""}]
        assert variants[1]["stockItems"] == [{"content": "y3", "note": ""}]
        assert fake_store.fields("orders", "O1")["deliveredItems"] == [
            {"content": "y1", "note": "1y"},
            {"content": "y2", "note": ""},
        ]


class TestRedelivery:
    @pytest.mark.asyncio
    async def test_fulfilled_invoice_is_skipped(self, reconciler, fake_store):
        _pending(fake_store, "O1", customerEmail="a@x.com", totalPrice=50000, productId="P1")
        _pending(fake_store, "O2", customerEmail="b@x.com", totalPrice=90000, productId="P1")
        fake_store.put("products", "P1", {"stockItems": ["u1", "u2", "u3"]})
        body = {"event": "payment.received", "data": {"id": "inv_1", "email": "a@x.com", "amount": 50000}}

        first = await reconciler.process(normalize_event(body))
        second = await reconciler.process(normalize_event(body))

        assert first.status == OUTCOME_FULFILLED
        assert second.status == OUTCOME_DUPLICATE
        assert second.order_id == "O1"
        # the redelivery did not fall back onto the other pending order
        assert fake_store.fields("orders", "O2")["status"] == "pending"
        assert fake_store.fields("products", "P1")["stockItems"] == ["u2", "u3"]


class TestNoMatch:
    @pytest.mark.asyncio
    async def test_no_pending_orders(self, reconciler, fake_store):
        fake_store.put("orders", "DONE", {"status": "paid"})
        outcome = await reconciler.process(
            normalize_event({"event": "payment.received", "data": {"email": "a@x.com"}})
        )
        assert outcome.status == OUTCOME_NO_MATCH
        assert fake_store.writes_to("orders") == []
        logs = list(fake_store.collection("webhook_logs").values())
        assert logs[0]["status"] == "no_match"
        assert logs[0]["matchedOrderId"] == "NONE"


class TestAuditAndFailures:
    @pytest.mark.asyncio
    async def test_audit_record_written(self, reconciler, fake_store):
        _pending(fake_store, "O1", customerEmail="a@x.com", totalPrice=50000)
        await reconciler.process(
            normalize_event({"event": "payment.received", "data": {"id": "inv_7", "email": "a@x.com", "amount": 50000}})
        )
        (log,) = fake_store.collection("webhook_logs").values()
        assert log["matchedOrderId"] == "O1"
        assert log["status"] == "matched:score"
        assert log["matchScore"] == 3
        assert log["invoiceId"] == "inv_7"
        assert '"amount": 50000' in log["payload"]

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_abort(self, reconciler, fake_store):
        fake_store.fail_writes_to.add("webhook_logs")
        _pending(fake_store, "O1", customerEmail="a@x.com")
        outcome = await reconciler.process(
            normalize_event({"event": "payment.received", "data": {"email": "a@x.com"}})
        )
        assert outcome.status == OUTCOME_FULFILLED
        assert fake_store.fields("orders", "O1")["status"] == "paid"

    @pytest.mark.asyncio
    async def test_store_failure_aborts_after_stock_taken(self, reconciler, fake_store):
        """Accepted inconsistency window: stock already decremented, order still pending."""
        _pending(fake_store, "O1", customerEmail="a@x.com", productId="P1")
        fake_store.put("products", "P1", {"stockItems": ["u1", "u2"]})
        fake_store.fail_writes_to.add("orders")

        with pytest.raises(UpdateError):
            await reconciler.process(normalize_event({"event": "payment.received", "data": {"email": "a@x.com"}}))

        assert fake_store.fields("products", "P1")["stockItems"] == ["u2"]
        assert fake_store.fields("orders", "O1")["status"] == "pending"


class TestPendingOrders:
    @pytest.mark.asyncio
    async def test_sorted_newest_first(self, reconciler, fake_store):
        _pending(fake_store, "OLD", created="2024-01-01T00:00:00Z")
        _pending(fake_store, "NEW", created="2024-03-01T00:00:00Z")
        # createdAt field newer than the store's create time counts
        fake_store.put(
            "orders",
            "MID",
            {"status": "pending", "createdAt": Timestamp("2024-02-01T00:00:00Z")},
            create_time="2023-12-01T00:00:00Z",
        )
        orders = await reconciler.load_pending_orders("tok")
        assert [o.id for o in orders] == ["NEW", "MID", "OLD"]

    @pytest.mark.asyncio
    async def test_fallback_picks_newest(self, reconciler, fake_store):
        _pending(fake_store, "OLD", created="2024-01-01T00:00:00Z")
        _pending(fake_store, "NEW", created="2024-03-01T00:00:00Z")
        outcome = await reconciler.process(
            normalize_event({"event": "payment.received", "data": {"email": "stranger@x.com"}})
        )
        assert outcome.order_id == "NEW"
        assert outcome.match.low_confidence


class TestOrderLock:
    @pytest.mark.asyncio
    async def test_held_lock_skips_fulfillment(self, settings, http, fake_store):
        redis = AsyncMock()
        redis.set.return_value = False  # another delivery holds it
        reconciler = _build(settings, http, lock=OrderLock(redis))
        _pending(fake_store, "O1", customerEmail="a@x.com")

        outcome = await reconciler.process(
            normalize_event({"event": "payment.received", "data": {"email": "a@x.com"}})
        )
        assert outcome.status == OUTCOME_LOCKED
        assert fake_store.fields("orders", "O1")["status"] == "pending"

    @pytest.mark.asyncio
    async def test_lock_released_after_fulfillment(self, settings, http, fake_store):
        redis = AsyncMock()
        redis.set.return_value = True
        redis.get.side_effect = lambda key: redis.set.call_args.args[1]
        reconciler = _build(settings, http, lock=OrderLock(redis))
        _pending(fake_store, "O1", customerEmail="a@x.com")

        await reconciler.process(normalize_event({"event": "payment.received", "data": {"email": "a@x.com"}}))

        assert fake_store.fields("orders", "O1")["status"] == "paid"
        assert redis.set.call_args.args[0] == "fulfill:lock:O1"
        assert redis.set.call_args.kwargs == {"nx": True, "ex": 120}
        redis.delete.assert_awaited_once_with("fulfill:lock:O1")

    @pytest.mark.asyncio
    async def test_order_paid_meanwhile_is_skipped(self, settings, http, fake_store):
        redis = AsyncMock()
        redis.set.return_value = True
        reconciler = _build(settings, http, lock=OrderLock(redis))
        _pending(fake_store, "O1", customerEmail="a@x.com")

        orders = await reconciler.load_pending_orders("tok")
        fake_store.put("orders", "O1", {"status": "paid", "customerEmail": "a@x.com"})
        reconciler.load_pending_orders = AsyncMock(return_value=orders)

        outcome = await reconciler.process(
            normalize_event({"event": "payment.received", "data": {"email": "a@x.com"}})
        )
        assert outcome.status == OUTCOME_DUPLICATE
        assert fake_store.writes_to("orders") == []

    @pytest.mark.asyncio
    async def test_redis_outage_fails_open(self, settings, http, fake_store):
        redis = AsyncMock()
        redis.set.side_effect = ConnectionError("redis down")
        reconciler = _build(settings, http, lock=OrderLock(redis))
        _pending(fake_store, "O1", customerEmail="a@x.com")

        outcome = await reconciler.process(
            normalize_event({"event": "payment.received", "data": {"email": "a@x.com"}})
        )
        assert outcome.status == OUTCOME_FULFILLED
        assert fake_store.fields("orders", "O1")["status"] == "paid"
