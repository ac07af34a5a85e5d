"""Payment-provider payload normalization.

Every logical field is read through an ordered alias list (camelCase and
snake_case). Classification accepts any of the known payment event types,
or a success status when the body carries no event type at all.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    PAYMENT_COMPLETED = "payment_completed"
    IGNORED = "ignored"


EVENT_TYPE_KEYS = ("event", "type", "event.received")

PAYMENT_EVENT_TYPES = {"payment.received", "payment.success", "payment.completed"}

_SUCCESS_STATUSES = {"success", "paid"}

# Logical field -> candidate keys, first non-empty wins
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "invoice_id": ("id", "invoiceId", "invoice_id", "transactionId", "transaction_id"),
    "email": ("customerEmail", "customer_email", "email", "buyerEmail", "buyer_email"),
    "amount": ("amount", "total", "subtotal", "grandTotal", "grand_total"),
    "phone": ("mobile", "customerMobile", "customer_mobile", "phone"),
    "description": ("description", "productName", "product_name"),
    "redirect_url": ("redirectUrl", "redirect_url"),
}

_ORDER_ID_LABEL = re.compile(r"Order ID:\s*([a-zA-Z0-9]+)", re.IGNORECASE)
_ORDER_ID_PARAM = re.compile(r"[?&]orderId=([^&#]+)")


@dataclass
class PaymentEvent:
    """Canonical payment notification."""

    kind: EventKind
    event_type: str = ""
    invoice_id: str = ""
    email: str = ""
    phone: str = ""
    amount: int = 0
    description: str = ""
    redirect_url: str = ""
    order_id: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_payment(self) -> bool:
        return self.kind is EventKind.PAYMENT_COMPLETED


def pick_field(data: dict[str, Any], logical: str) -> Any:
    """Return the first non-empty value among the aliases of ``logical``."""
    for key in FIELD_ALIASES[logical]:
        value = data.get(key)
        # Falsy values (None, "", 0, False) defer to the next alias
        if value:
            return value
    return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_amount(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        number = value
    else:
        try:
            number = float(str(value).replace(",", "").strip())
        except ValueError:
            return 0
    # json.loads accepts 1e999, Infinity and NaN
    if not math.isfinite(number):
        return 0
    return int(round(number))


def _is_success_status(status: Any) -> bool:
    if status is True:
        return True
    return isinstance(status, str) and status.strip().lower() in _SUCCESS_STATUSES


def extract_order_id(description: str, redirect_url: str) -> str:
    """Best-effort explicit order id: description label first, then redirect URL."""
    match = _ORDER_ID_LABEL.search(description or "")
    if match:
        return match.group(1)
    match = _ORDER_ID_PARAM.search(redirect_url or "")
    if match:
        return match.group(1)
    return ""


def classify(body: Any) -> tuple[EventKind, str, dict[str, Any]]:
    """Return (kind, event_type, data object) for a decoded webhook body."""
    if not isinstance(body, dict):
        return EventKind.IGNORED, "", {}

    event_type = ""
    has_type_field = False
    for key in EVENT_TYPE_KEYS:
        value = body.get(key)
        if value:
            event_type = str(value)
            has_type_field = True
            break

    data = body.get("data")
    if not isinstance(data, dict):
        data = body

    if event_type in PAYMENT_EVENT_TYPES:
        return EventKind.PAYMENT_COMPLETED, event_type, data
    if not has_type_field and _is_success_status(data.get("status", body.get("status"))):
        return EventKind.PAYMENT_COMPLETED, event_type, data
    return EventKind.IGNORED, event_type, data


def normalize_event(body: Any) -> PaymentEvent:
    """Normalize an arbitrary JSON-decoded webhook body into a PaymentEvent."""
    kind, event_type, data = classify(body)
    description = _as_text(pick_field(data, "description"))
    redirect_url = _as_text(pick_field(data, "redirect_url"))
    event = PaymentEvent(
        kind=kind,
        event_type=event_type,
        invoice_id=_as_text(pick_field(data, "invoice_id")),
        email=_as_text(pick_field(data, "email")),
        phone=_as_text(pick_field(data, "phone")),
        amount=_as_amount(pick_field(data, "amount")),
        description=description,
        redirect_url=redirect_url,
        order_id=extract_order_id(description, redirect_url),
        raw=data,
    )
    if event.order_id:
        logger.debug("Explicit order id in payload: %s", event.order_id)
    return event
