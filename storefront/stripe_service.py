import json
import logging

import stripe
from pydantic import ValidationError

from storefront.config import webhook_secret, webhook_tolerance
from storefront.schemas import PaymentEvent

logger = logging.getLogger(__name__)


class WebhookSignatureError(Exception):
    """The payload could not be authenticated as coming from Stripe."""


def verify_webhook_signature(payload: bytes, sig_header: str) -> PaymentEvent:
    """
    Authenticate a webhook body against the Stripe-Signature header.

    `payload` must be the body exactly as received; any re-encoding changes
    the HMAC. The body is only decoded once the signature has matched.
    """
    secret = webhook_secret()
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not set; rejecting webhook")
        raise WebhookSignatureError("Webhook signing secret not configured")

    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookSignatureError("Payload is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(text, sig_header, secret, webhook_tolerance())
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError(str(exc)) from exc

    try:
        return PaymentEvent.model_validate(json.loads(text))
    except (ValueError, ValidationError) as exc:
        raise WebhookSignatureError("Invalid payload") from exc
