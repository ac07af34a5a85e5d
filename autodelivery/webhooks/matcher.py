"""Order matching: pick the pending order a payment event belongs to.

The provider does not reliably echo the originating order id, so matching
is a scored heuristic. Priority (first match wins):

1. explicit order id equals the candidate id -> immediate winner
2. score 3: email + amount                  -> stops the search
3. score 2: email only, or phone + amount
4. score 1: amount only, or phone only
5. no positive score -> newest pending order (fallback)

Operators watch the audit log for fallback and low-score matches.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from autodelivery.errors import NoMatchError
from autodelivery.models import Order
from autodelivery.webhooks.normalizer import PaymentEvent

logger = logging.getLogger(__name__)

# Absorbs rounding and fee differences, in minor currency units
AMOUNT_TOLERANCE = 100
PHONE_SUFFIX_DIGITS = 8
PERFECT_SCORE = 3

METHOD_ORDER_ID = "order_id"
METHOD_SCORE = "score"
METHOD_FALLBACK = "fallback"

_NON_DIGITS = re.compile(r"\D")


@dataclass
class MatchResult:
    order: Order
    method: str
    score: int = 0

    @property
    def low_confidence(self) -> bool:
        return self.method == METHOD_FALLBACK or (self.method == METHOD_SCORE and self.score < 2)


def email_matches(event: PaymentEvent, order: Order) -> bool:
    return bool(event.email and order.customer_email) and (
        event.email.lower() == order.customer_email.lower()
    )


def amount_matches(event: PaymentEvent, order: Order) -> bool:
    if not event.amount or not order.total_price:
        return False
    return abs(order.total_price - event.amount) < AMOUNT_TOLERANCE


def phone_matches(event: PaymentEvent, order: Order) -> bool:
    ours = _NON_DIGITS.sub("", order.customer_phone or "")
    theirs = _NON_DIGITS.sub("", event.phone or "")
    if not ours or not theirs:
        return False
    return ours.endswith(theirs[-PHONE_SUFFIX_DIGITS:]) or theirs.endswith(ours[-PHONE_SUFFIX_DIGITS:])


def score_order(event: PaymentEvent, order: Order) -> int:
    """Score one candidate, 0-3."""
    email = email_matches(event, order)
    amount = amount_matches(event, order)
    phone = phone_matches(event, order)
    if email and amount:
        return 3
    if email or (phone and amount):
        return 2
    if amount or phone:
        return 1
    return 0


def match_order(event: PaymentEvent, orders: list[Order]) -> MatchResult:
    """Select the best pending order for ``event``.

    ``orders`` must be sorted newest first. Raises NoMatchError only when
    there are no pending orders at all.
    """
    if not orders:
        raise NoMatchError("No pending orders")

    # An explicit id wins even over a score-3 candidate earlier in the list
    if event.order_id:
        for order in orders:
            if order.id == event.order_id:
                logger.info("Exact match by order id: %s", order.id)
                return MatchResult(order=order, method=METHOD_ORDER_ID)

    best: MatchResult | None = None
    for order in orders:
        score = score_order(event, order)
        if score > (best.score if best else 0):
            best = MatchResult(order=order, method=METHOD_SCORE, score=score)
            logger.debug("Best match so far: %s (score=%d)", order.id, score)
            if score >= PERFECT_SCORE:
                break

    if best is not None:
        return best

    logger.warning(
        "No match by email/amount/phone, falling back to newest pending order %s",
        orders[0].id,
    )
    return MatchResult(order=orders[0], method=METHOD_FALLBACK)
