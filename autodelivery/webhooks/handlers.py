"""Webhook HTTP handlers: FastAPI routes for the payment webhook and diagnostics.

The payment webhook handler:
1. Reads the raw body
2. Checks the optional callback token
3. Parses JSON (400 on failure, nothing scheduled)
4. Classifies the event (ignored events are acknowledged, nothing scheduled)
5. Schedules reconciliation and returns 200 immediately

Security contract:
- Reconciliation errors never reach the webhook response; the provider
  would read them as delivery failures and retry-storm the endpoint
- Return 200 for ignored events too
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from autodelivery.errors import ConfigError, ProviderError
from autodelivery.payments.provider import InvoiceRequest
from autodelivery.store.client import StructuredQuery
from autodelivery.webhooks.normalizer import normalize_event
from autodelivery.webhooks.verification import verify_callback_token

logger = logging.getLogger(__name__)

# Webhook receive counter for monitoring (per process)
_webhook_counts: dict[str, int] = {}


def _log_webhook(event_type: str, invoice_id: str, status: str) -> None:
    """Audit log for webhook activity."""
    _webhook_counts[status] = _webhook_counts.get(status, 0) + 1
    logger.info(
        "WEBHOOK_AUDIT event=%s invoice=%s status=%s count=%d",
        event_type or "unknown",
        invoice_id or "-",
        status,
        _webhook_counts[status],
    )


# Returned by _read_json when the body is not valid JSON (a JSON null is a valid body)
_INVALID_JSON = object()


async def _read_json(request: Request) -> Any:
    body = await request.body()
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _INVALID_JSON


async def _handle_payment_webhook(request: Request, background: BackgroundTasks):
    """Acknowledge the provider at once; reconciliation runs after the response."""
    start = time.time()
    services = request.app.state.services

    headers = {k.lower(): v for k, v in request.headers.items()}
    if not verify_callback_token(services.settings, headers):
        _log_webhook("unknown", "", "token_rejected")
        return PlainTextResponse("Unauthorized", status_code=401)

    payload = await _read_json(request)
    if payload is _INVALID_JSON:
        _log_webhook("unknown", "", "invalid_json")
        return PlainTextResponse("Invalid JSON", status_code=400)

    event = normalize_event(payload)
    if not event.is_payment:
        _log_webhook(event.event_type, event.invoice_id, "ignored")
        return PlainTextResponse("OK - Ignored", status_code=200)

    services.scheduler.submit(
        background,
        f"reconcile invoice={event.invoice_id or '-'}",
        services.reconciler.process,
        event,
    )
    _log_webhook(event.event_type, event.invoice_id, "dispatched")

    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook acknowledged in %.1fms", elapsed_ms)
    return PlainTextResponse("OK", status_code=200)


async def _diagnostics(request: Request) -> JSONResponse:
    """Exercise credential exchange and a one-document store query."""
    services = request.app.state.services
    settings = services.settings
    diagnostics: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "env": {
                "SERVICE_ACCOUNT": "OK" if settings.service_account else "MISSING",
                "PAYMENT_API_KEY": "OK" if settings.payment_api_key else "MISSING",
                "PAYMENT_BASE_URL": "OK" if settings.payment_base_url else "MISSING",
            }
        },
    }
    try:
        if not settings.service_account:
            raise ConfigError("Service account missing")

        t0 = time.time()
        token = await services.credentials.get_token()
        diagnostics["checks"]["auth"] = {"status": "OK", "latencyMs": round((time.time() - t0) * 1000)}

        t1 = time.time()
        orders = await services.store.query(
            StructuredQuery(collection=settings.orders_collection, limit=1), token
        )
        diagnostics["checks"]["store"] = {
            "status": "OK",
            "latencyMs": round((time.time() - t1) * 1000),
            "foundOrders": len(orders),
        }
    except Exception as e:
        logger.warning("Diagnostics failed: %s", e)
        return JSONResponse(
            {"ok": False, "message": "System diagnostics FAILED", "error": str(e), "diagnostics": diagnostics},
            status_code=500,
        )
    return JSONResponse({"ok": True, "message": "System diagnostics passed", "diagnostics": diagnostics})


async def _recent_logs(request: Request) -> JSONResponse:
    services = request.app.state.services
    try:
        token = await services.credentials.get_token()
        logs = await services.audit.recent(token)
    except Exception as e:
        logger.warning("Audit log inspection failed: %s", e)
        return JSONResponse({"error": str(e)}, status_code=500)
    return JSONResponse({"ok": True, "count": len(logs), "logs": logs})


def _config_error(e: ConfigError) -> JSONResponse:
    logger.error("Payment provider not configured: %s", e)
    return JSONResponse({"error": "Server configuration error", "details": str(e)}, status_code=500)


async def _create_invoice(request: Request) -> JSONResponse:
    services = request.app.state.services
    if not services.settings.payment_configured():
        return _config_error(ConfigError("Payment provider credentials are not set"))

    body = await _read_json(request)
    if not isinstance(body, dict) or not body.get("email"):
        return JSONResponse(
            {"error": "Invalid payload. Required: email, mobile, description, items"}, status_code=400
        )
    if not isinstance(body.get("items"), list) or not body["items"]:
        return JSONResponse({"error": "Items array is required with at least one item"}, status_code=400)
    try:
        invoice = InvoiceRequest.model_validate(body)
    except ValidationError as e:
        return JSONResponse({"error": "Invalid payload", "fields": e.error_count()}, status_code=400)

    try:
        status, data = await services.payments.create_invoice(invoice)
    except ConfigError as e:
        return _config_error(e)
    except ProviderError as e:
        logger.error("Invoice creation failed: %s", e)
        return JSONResponse({"error": "Failed to create invoice"}, status_code=500)
    return JSONResponse(data, status_code=status)


async def _create_coupon(request: Request) -> JSONResponse:
    services = request.app.state.services
    if not services.settings.payment_configured():
        return _config_error(ConfigError("Payment provider credentials are not set"))

    body = await _read_json(request)
    if not isinstance(body, dict) or not body.get("discount"):
        return JSONResponse({"error": "Invalid payload. Required: discount array"}, status_code=400)

    try:
        status, data = await services.payments.create_coupon(body)
    except ConfigError as e:
        return _config_error(e)
    except ProviderError as e:
        logger.error("Coupon creation failed: %s", e)
        return JSONResponse({"error": "Failed to create coupon"}, status_code=500)
    return JSONResponse(data, status_code=status)


def register_webhook_routes(app: FastAPI) -> None:
    """Register the webhook, diagnostics and provider-proxy routes."""

    @app.post("/webhook")
    async def payment_webhook(request: Request, background_tasks: BackgroundTasks):
        """Receive payment-provider webhooks."""
        return await _handle_payment_webhook(request, background_tasks)

    @app.get("/webhook-test")
    async def webhook_test(request: Request):
        """Diagnostics: credential exchange + trivial store query."""
        return await _diagnostics(request)

    @app.get("/check-logs")
    async def check_logs(request: Request):
        """Most recent audit records."""
        return await _recent_logs(request)

    @app.get("/webhook-status")
    async def webhook_status(request: Request):
        """Webhook receive counts and background task outcomes."""
        return {
            "counts": dict(_webhook_counts),
            "tasks": dict(request.app.state.services.scheduler.counts),
        }

    @app.post("/create-invoice")
    async def create_invoice(request: Request):
        return await _create_invoice(request)

    @app.post("/create-coupon")
    async def create_coupon(request: Request):
        return await _create_coupon(request)

    logger.info("Webhook routes registered: /webhook, /webhook-test, /check-logs")
