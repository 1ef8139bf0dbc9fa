# core/security.py
import json
import logging
from typing import Optional

import stripe
from pydantic import ValidationError

from core.config import settings, Settings
from schemas.webhook_schema import StripeEvent

logger = logging.getLogger(__name__)

STRICT = "strict"
LENIENT = "lenient"


# ========================================
# ❌ Errors
# ========================================
class WebhookSecurityError(Exception):
    """Base class for deliveries that must not be trusted."""


class WebhookConfigurationError(WebhookSecurityError):
    """Raised at startup when a strict deployment has no webhook secret."""


class SignatureError(WebhookSecurityError):
    pass


class InvalidPayloadError(WebhookSecurityError):
    pass


# ========================================
# 🔏 Stripe Signature Verification
# ========================================
class SignatureVerifier:
    """
    Authenticates a raw webhook body against the ``Stripe-Signature`` header.

    The body must be the exact bytes Stripe sent; the signature covers them,
    so nothing may parse or re-encode the payload before verification.
    """

    def __init__(
        self,
        secret: Optional[str],
        mode: str = STRICT,
        tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ):
        if mode not in (STRICT, LENIENT):
            raise ValueError(f"Unknown verification mode: {mode}")
        if not secret and mode == STRICT:
            raise WebhookConfigurationError(
                "STRIPE_WEBHOOK_SECRET is required in production for webhook signature verification"
            )
        if not secret:
            logger.warning("⚠️ STRIPE_WEBHOOK_SECRET not set — webhook signature verification disabled (development only)")

        self.secret = secret
        self.mode = mode
        self.tolerance = tolerance

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "SignatureVerifier":
        return cls(
            secret=config.STRIPE_WEBHOOK_SECRET,
            mode=config.WEBHOOK_VERIFICATION_MODE,
            tolerance=config.WEBHOOK_SIGNATURE_TOLERANCE_SECONDS,
        )

    def verify(self, payload: bytes, sig_header: Optional[str]) -> StripeEvent:
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidPayloadError("payload is not valid UTF-8") from e

        if not self.secret:
            logger.warning("⚠️ Webhook signature verification skipped — no webhook secret configured")
            return self._parse(body)

        if not sig_header:
            raise SignatureError("missing signature header")

        try:
            stripe.WebhookSignature.verify_header(body, sig_header, self.secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"❌ Webhook signature verification failed: {e}")
            raise SignatureError("signature mismatch") from e

        return self._parse(body)

    @staticmethod
    def _parse(body: str) -> StripeEvent:
        try:
            return StripeEvent.model_validate(json.loads(body))
        except (ValueError, ValidationError) as e:
            raise InvalidPayloadError(f"invalid event payload: {e}") from e


def ensure_webhook_config(config: Settings = settings) -> SignatureVerifier:
    """Fail closed at startup when a strict deployment has no secret."""
    verifier = SignatureVerifier.from_settings(config)
    logger.info(f"🔏 Webhook signature verification mode: {verifier.mode}")
    return verifier
