"""Payment provider REST proxy: invoice and coupon creation.

The storefront never holds the provider API key; it calls these proxies,
which reshape the request and forward it with the bearer key.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from pydantic import BaseModel, Field

from autodelivery.config import Settings
from autodelivery.errors import ConfigError, ProviderError

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "Digital Product Purchase"


class InvoiceItem(BaseModel):
    name: str = ""
    description: str = ""
    quantity: int = 1
    price: float | None = None
    rate: float | None = None


class InvoiceRequest(BaseModel):
    email: str = Field(min_length=1)
    items: list[InvoiceItem] = Field(min_length=1)
    name: str = ""
    mobile: str = ""
    description: str = ""
    redirectUrl: str = ""
    expiredAt: str = ""


def _rate(value: float | None) -> int | float | None:
    if value is not None and float(value).is_integer():
        return int(value)
    return value


def build_invoice_payload(
    request: InvoiceRequest, settings: Settings, now: datetime | None = None
) -> dict[str, Any]:
    """Map a storefront invoice request onto the provider's invoice schema."""
    now = now or datetime.now(timezone.utc)
    expires = now + timedelta(hours=settings.invoice_ttl_hours)
    payload: dict[str, Any] = {
        "name": request.name or request.email.split("@")[0],
        "email": request.email,
        "mobile": request.mobile,
        "description": request.description or DEFAULT_DESCRIPTION,
        "expiredAt": request.expiredAt or expires.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "items": [
            {
                "description": item.name or item.description,
                "quantity": item.quantity,
                "rate": _rate(item.price if item.price is not None else item.rate),
            }
            for item in request.items
        ],
    }
    redirect_url = request.redirectUrl or settings.default_redirect_url
    if redirect_url:
        payload["redirectUrl"] = redirect_url
    return payload


class PaymentProviderClient:
    """Forwards invoice / coupon creation to the provider."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http

    def _require_config(self) -> None:
        if not self._settings.payment_api_key:
            raise ConfigError("AUTODELIVERY_PAYMENT_API_KEY is not set")
        if not self._settings.payment_base_url:
            raise ConfigError("AUTODELIVERY_PAYMENT_BASE_URL is not set")

    async def _post(self, path: str, body: dict[str, Any]) -> tuple[int, Any]:
        self._require_config()
        url = f"{self._settings.payment_base_url.rstrip('/')}/{path}"
        try:
            response = await self._http.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {self._settings.payment_api_key}"},
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"Payment provider unreachable: {type(e).__name__}") from e
        logger.info("Payment provider %s -> HTTP %d", path, response.status_code)
        try:
            data = response.json()
        except ValueError:
            data = {"error": "Invalid response from payment provider"}
        return response.status_code, data

    async def create_invoice(self, request: InvoiceRequest) -> tuple[int, Any]:
        """Create an invoice. Returns (provider status code, provider JSON)."""
        return await self._post("invoice/create", build_invoice_payload(request, self._settings))

    async def create_coupon(self, body: dict[str, Any]) -> tuple[int, Any]:
        """Create a coupon; the body is forwarded unchanged."""
        return await self._post("coupon/create", body)
