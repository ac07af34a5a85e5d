"""Optional callback-token check for the payment webhook.

Security contract:
- Disabled when no webhook_token is configured (provider sends no signature)
- When enabled, X-Callback-Token must equal the secret (constant-time compare)
- Verification failure -> 401 immediately, no payload processing
"""

from __future__ import annotations

import hmac
import logging

from autodelivery.config import Settings

logger = logging.getLogger(__name__)

CALLBACK_TOKEN_HEADER = "x-callback-token"


def verify_callback_token(settings: Settings, headers: dict[str, str]) -> bool:
    """Check the provider's callback token.

    Args:
        settings: Service settings (``webhook_token`` is the shared secret)
        headers: Request headers (lowercase keys)

    Returns:
        True if no secret is configured or the header matches it
    """
    if not settings.webhook_token:
        return True
    supplied = headers.get(CALLBACK_TOKEN_HEADER)
    if not supplied:
        logger.warning("Webhook rejected: missing %s header", CALLBACK_TOKEN_HEADER)
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), settings.webhook_token.encode("utf-8"))
