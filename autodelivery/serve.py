"""FastAPI application factory.

Settings are read once here and handed to every component; nothing
downstream reads the environment.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from autodelivery.auth.credentials import CredentialProvider
from autodelivery.config import Settings
from autodelivery.fulfillment import FulfillmentEngine
from autodelivery.payments.provider import PaymentProviderClient
from autodelivery.scheduler import TaskScheduler
from autodelivery.store.client import DocumentStoreClient
from autodelivery.webhooks.audit import AuditLogger
from autodelivery.webhooks.handlers import register_webhook_routes
from autodelivery.webhooks.idempotency import OrderLock
from autodelivery.webhooks.reconciler import PaymentReconciler

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT)
    # httpx logs every request URL at INFO, including token exchanges
    logging.getLogger("httpx").setLevel(logging.WARNING)


@dataclass
class Services:
    """Components shared by the route handlers."""

    settings: Settings
    http: httpx.AsyncClient
    credentials: CredentialProvider
    store: DocumentStoreClient
    audit: AuditLogger
    engine: FulfillmentEngine
    reconciler: PaymentReconciler
    scheduler: TaskScheduler
    payments: PaymentProviderClient
    lock: OrderLock | None = None

    async def aclose(self) -> None:
        await self.http.aclose()
        if self.lock is not None:
            await self.lock.close()


def build_services(
    settings: Settings, transport: httpx.AsyncBaseTransport | None = None
) -> Services:
    http = httpx.AsyncClient(timeout=settings.http_timeout, transport=transport)
    credentials = CredentialProvider(settings, http)
    store = DocumentStoreClient(settings.documents_base_url, http)
    audit = AuditLogger(settings, store)
    engine = FulfillmentEngine(settings, store)
    lock = OrderLock.from_settings(settings)
    reconciler = PaymentReconciler(settings, credentials, store, engine, audit, lock=lock)
    return Services(
        settings=settings,
        http=http,
        credentials=credentials,
        store=store,
        audit=audit,
        engine=engine,
        reconciler=reconciler,
        scheduler=TaskScheduler(),
        payments=PaymentProviderClient(settings, http),
        lock=lock,
    )


def create_app(
    settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None
) -> FastAPI:
    """Build the app. ``transport`` replaces the outbound HTTP transport (tests)."""
    settings = settings or Settings()
    configure_logging(settings.log_level)
    services = build_services(settings, transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await services.aclose()

    app = FastAPI(title="autodelivery", lifespan=lifespan)
    app.state.services = services
    register_webhook_routes(app)

    # Storefront calls the invoice proxy cross-origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=86400,
    )
    logger.info("autodelivery app created (lock=%s)", "redis" if services.lock else "off")
    return app


def main() -> None:
    """Run the service with uvicorn (console script ``autodelivery``)."""
    import uvicorn

    uvicorn.run("autodelivery.serve:create_app", factory=True, host="0.0.0.0", port=8080)
