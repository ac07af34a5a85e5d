"""Best-effort audit trail of inbound payment events and their match outcome.

Writes never raise: a failed audit write is logged and the reconciliation
chain carries on.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from typing import Any

from autodelivery.config import Settings
from autodelivery.store.client import DESCENDING, Document, DocumentStoreClient, StructuredQuery
from autodelivery.store.codec import Timestamp

logger = logging.getLogger(__name__)

RECENT_LIMIT = 10
# Unordered fallback fetches a few extra so the in-memory sort has slack
RECENT_FALLBACK_LIMIT = 15

NO_ORDER = "NONE"


def new_log_id() -> str:
    return f"webhook_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _received_at(doc: Document) -> str:
    return str(doc.fields.get("receivedAt") or "")


class AuditLogger:
    """Persists one record per processed payment event."""

    def __init__(self, settings: Settings, store: DocumentStoreClient) -> None:
        self._store = store
        self._collection = settings.audit_collection

    async def record(
        self,
        payload: dict[str, Any],
        token: str,
        *,
        status: str,
        matched_order_id: str = "",
        score: int = 0,
        invoice_id: str = "",
    ) -> str | None:
        """Write an audit record. Returns its id, or None if the write failed."""
        log_id = new_log_id()
        fields = {
            "receivedAt": Timestamp.now(),
            "payload": json.dumps(payload, default=str),
            "matchedOrderId": matched_order_id or NO_ORDER,
            "status": status,
            "matchScore": score,
            "invoiceId": invoice_id,
        }
        try:
            # No field mask: full write creates the document
            await self._store.update(self._collection, log_id, fields, token)
        except Exception:
            logger.warning("Failed to write audit record %s", log_id, exc_info=True)
            return None
        logger.info("Webhook audit record written: %s (status=%s)", log_id, status)
        return log_id

    async def recent(self, token: str, limit: int = RECENT_LIMIT) -> list[dict[str, Any]]:
        """Most recent audit records, newest first."""
        query = StructuredQuery(
            collection=self._collection,
            order_by=[("receivedAt", DESCENDING)],
            limit=limit,
        )
        docs = await self._store.query_sorted(
            query, token, key=_received_at, fallback_limit=RECENT_FALLBACK_LIMIT
        )
        return [self._format(doc) for doc in docs[:limit]]

    @staticmethod
    def _format(doc: Document) -> dict[str, Any]:
        raw = doc.fields.get("payload")
        try:
            payload = json.loads(raw) if raw else None
        except (TypeError, ValueError):
            payload = raw
        return {
            "id": doc.id,
            "receivedAt": doc.fields.get("receivedAt"),
            "status": doc.fields.get("status"),
            "matchedOrderId": doc.fields.get("matchedOrderId"),
            "matchScore": doc.fields.get("matchScore"),
            "invoiceId": doc.fields.get("invoiceId"),
            "payload": payload,
        }
