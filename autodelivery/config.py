"""Service configuration, built once at process start."""

from __future__ import annotations

import json

from pydantic import BaseModel, ValidationError
from pydantic_settings import BaseSettings

from autodelivery.errors import ConfigError

TOKEN_URL = "https://oauth2.googleapis.com/token"
DATASTORE_SCOPE = "https://www.googleapis.com/auth/datastore"
FIRESTORE_ROOT = "https://firestore.googleapis.com/v1"


class ServiceAccount(BaseModel):
    """The subset of a service-account key file the token exchange needs."""

    client_email: str
    private_key: str
    project_id: str = ""


class Settings(BaseSettings):
    """Environment-driven settings for the webhook reconciliation service."""

    # Service-account key file contents (JSON blob)
    service_account: str = ""
    project_id: str = ""
    firestore_base_url: str = ""
    token_url: str = TOKEN_URL
    token_scope: str = DATASTORE_SCOPE
    token_cache: bool = False

    orders_collection: str = "orders"
    products_collection: str = "products"
    audit_collection: str = "webhook_logs"
    pending_order_limit: int = 100

    # Payment provider (invoice / coupon proxy)
    payment_base_url: str = ""
    payment_api_key: str = ""
    default_redirect_url: str = ""
    invoice_ttl_hours: int = 24

    # Optional shared secret sent by the provider as X-Callback-Token
    webhook_token: str = ""

    # Optional Redis for the per-order advisory lock; empty disables it
    redis_url: str = ""
    lock_ttl_seconds: int = 120

    http_timeout: float = 30.0
    cors_origins: list[str] = ["*"]
    log_level: str = "INFO"

    model_config = {"env_prefix": "AUTODELIVERY_", "env_file": ".env", "extra": "ignore"}

    def service_account_info(self) -> ServiceAccount:
        """Parse the service-account blob. Raises ConfigError if absent or malformed."""
        if not self.service_account:
            raise ConfigError("AUTODELIVERY_SERVICE_ACCOUNT is not configured")
        try:
            raw = json.loads(self.service_account)
        except json.JSONDecodeError as e:
            raise ConfigError("Invalid AUTODELIVERY_SERVICE_ACCOUNT: not JSON") from e
        if not isinstance(raw, dict):
            raise ConfigError("Invalid AUTODELIVERY_SERVICE_ACCOUNT: expected an object")
        try:
            return ServiceAccount.model_validate(raw)
        except ValidationError as e:
            raise ConfigError(f"Invalid AUTODELIVERY_SERVICE_ACCOUNT: {e.error_count()} bad fields") from e

    def documents_base_url(self) -> str:
        """Base URL of the `(default)` database documents root."""
        if self.firestore_base_url:
            return self.firestore_base_url.rstrip("/")
        project = self.project_id
        if not project and self.service_account:
            project = self.service_account_info().project_id
        if not project:
            raise ConfigError("No project id: set AUTODELIVERY_PROJECT_ID")
        return f"{FIRESTORE_ROOT}/projects/{project}/databases/(default)/documents"

    def payment_configured(self) -> bool:
        return bool(self.payment_base_url and self.payment_api_key)
