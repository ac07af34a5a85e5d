"""Service-account credentials: signed JWT assertion exchanged for a bearer token.

Security contract:
- Assertion is RS256-signed with the service-account private key
- Assertion lifetime is fixed at 3600s (exp = iat + 3600)
- No retry on a failed exchange; the caller re-invokes
- Tokens are never persisted; the optional in-process cache is opt-in
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from autodelivery.config import ServiceAccount, Settings
from autodelivery.errors import AuthError, ConfigError

logger = logging.getLogger(__name__)

ASSERTION_TTL_SECONDS = 3600
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"

# Refresh a cached token this many seconds before it expires
_EXPIRY_SKEW_SECONDS = 60


@dataclass
class CachedToken:
    """A bearer token and its absolute expiry (epoch seconds)."""

    token: str
    expires_at: float

    def is_fresh(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now < self.expires_at - _EXPIRY_SKEW_SECONDS


def build_assertion(
    account: ServiceAccount,
    *,
    scope: str,
    audience: str,
    now: int | None = None,
) -> str:
    """Build and sign the JWT assertion for the bearer grant. No network access."""
    issued_at = int(time.time()) if now is None else now
    claims = {
        "iss": account.client_email,
        "sub": account.client_email,
        "aud": audience,
        "iat": issued_at,
        "exp": issued_at + ASSERTION_TTL_SECONDS,
        "scope": scope,
    }
    try:
        return jwt.encode(claims, account.private_key, algorithm="RS256", headers={"typ": "JWT"})
    except (JOSEError, ValueError, TypeError) as e:
        raise ConfigError("Service-account private key is not a valid RSA key") from e


class CredentialProvider:
    """Turns the configured service account into short-lived bearer tokens."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http
        self._cache_enabled = settings.token_cache
        self._cached: CachedToken | None = None

    async def exchange_assertion(self, assertion: str) -> CachedToken:
        """POST the assertion to the token endpoint. Raises AuthError on failure."""
        try:
            response = await self._http.post(
                self._settings.token_url,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Token endpoint unreachable: {type(e).__name__}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        token = payload.get("access_token")
        if not token:
            reason = payload.get("error_description") or payload.get("error") or f"HTTP {response.status_code}"
            logger.error("Token exchange failed: %s", reason)
            raise AuthError(f"Failed to get access token: {reason}")

        expires_in = payload.get("expires_in") or ASSERTION_TTL_SECONDS
        return CachedToken(token=token, expires_at=time.time() + float(expires_in))

    async def get_token(self) -> str:
        """Return a bearer token, reusing the cached one when enabled and fresh."""
        if self._cache_enabled and self._cached is not None and self._cached.is_fresh():
            return self._cached.token

        account = self._settings.service_account_info()
        assertion = build_assertion(
            account,
            scope=self._settings.token_scope,
            audience=self._settings.token_url,
        )
        cached = await self.exchange_assertion(assertion)
        logger.info("Access token issued for %s", account.client_email)
        if self._cache_enabled:
            self._cached = cached
        return cached.token
