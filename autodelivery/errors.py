"""Error taxonomy for the reconciliation core.

Propagation contract:
- ConfigError -> 500 on the endpoint that triggered it, never retried
- AuthError / StoreError -> abort the background task, visible in logs only
- NoMatchError -> logged and audited, event dropped
- EmptyStockWarning -> carried on the fulfillment result, order still paid
"""

from __future__ import annotations


class AutoDeliveryError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(AutoDeliveryError):
    """Missing or malformed credentials / endpoint configuration."""


class AuthError(AutoDeliveryError):
    """The credential exchange did not yield an access token."""


class StoreError(AutoDeliveryError):
    """A document store operation failed: non-2xx status or transport error."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class NotFoundError(StoreError):
    """Point read of a document that does not exist."""


class UpdateError(StoreError):
    """Partial update / upsert rejected by the store."""


class NoMatchError(AutoDeliveryError):
    """No pending order could be selected for a payment event."""


class ProviderError(AutoDeliveryError):
    """The payment provider could not be reached."""


class EmptyStockWarning(UserWarning):
    """Zero units delivered: unknown variant or exhausted stock."""
