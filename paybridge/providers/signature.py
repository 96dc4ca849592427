"""
Webhook signature verification.

Providers sign the exact raw request body with HMAC-SHA256 using a shared
secret and send the hex digest in a header. Verification runs before any
payload parsing or business logic.
"""
import hashlib
import hmac
from typing import Optional

import structlog

from paybridge.core.exceptions import ConfigurationError

logger = structlog.get_logger(__name__)


class WebhookVerifier:
    """
    HMAC-SHA256 verifier for one provider's webhooks.

    If no secret is configured the check is skipped with a warning, unless
    ``required`` is set (production), in which case it is a configuration error.
    """

    def __init__(self, provider: str, secret: str = "", required: bool = False):
        """
        Initialize verifier.

        Args:
            provider: Provider tag, used for logging
            secret: Shared webhook secret (empty disables verification)
            required: Treat a missing secret as a configuration error
        """
        self.provider = provider
        self.secret = secret
        self.required = required

    def sign(self, raw_body: bytes) -> str:
        """Compute the hex HMAC-SHA256 of ``raw_body``."""
        return hmac.new(self.secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()

    @staticmethod
    def _normalise(signature: str) -> str:
        signature = signature.strip()
        if signature.lower().startswith("sha256="):
            signature = signature[len("sha256="):]
        return signature.lower()

    def verify(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """
        Verify a webhook signature in constant time.

        Args:
            raw_body: Raw request body exactly as received
            signature: Signature header value, if any

        Returns:
            bool: True if the signature matches (or verification is skipped)

        Raises:
            ConfigurationError: If no secret is configured but one is required
        """
        if not self.secret:
            if self.required:
                logger.error("webhook_secret_missing", provider=self.provider)
                raise ConfigurationError(
                    f"No webhook secret configured for provider {self.provider}"
                )
            logger.warning("webhook_signature_check_skipped", provider=self.provider)
            return True

        if not signature:
            logger.warning("webhook_signature_missing", provider=self.provider)
            return False

        expected = self.sign(raw_body)
        provided = self._normalise(signature).encode("utf-8", "replace")
        if not hmac.compare_digest(expected.encode("ascii"), provided):
            logger.warning("webhook_signature_mismatch", provider=self.provider)
            return False

        return True
