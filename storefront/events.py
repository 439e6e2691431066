"""
Stripe event classification and dispatch.

Only event types in SUPPORTED_EVENT_TYPES are routed; each maps to exactly
one handler by exact type string.
"""
import logging
from typing import Any, Awaitable, Callable, Dict

from storefront.fulfillment import (
    handle_checkout_session_completed,
    handle_payment_intent_failed,
    handle_payment_intent_succeeded,
)
from storefront.notifications import Notifier
from storefront.schemas import PaymentEvent

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any], Notifier], Awaitable[None]]

SUPPORTED_EVENT_TYPES = (
    # Payment intents
    "payment_intent.created",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    # Charges
    "charge.succeeded",
    "charge.updated",
    "charge.dispute.created",
    "charge.refund.created",
    # Checkout sessions
    "checkout.session.completed",
    "checkout.session.expired",
    # Customers
    "customer.created",
    "customer.updated",
    # Subscriptions
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    # Invoices
    "invoice.payment_succeeded",
    "invoice.payment_failed",
)

CRITICAL_EVENT_TYPES = (
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "charge.succeeded",
    "checkout.session.completed",
    "charge.dispute.created",
)


def is_supported_event_type(event_type: str) -> bool:
    return event_type in SUPPORTED_EVENT_TYPES


def is_critical_event(event_type: str) -> bool:
    return event_type in CRITICAL_EVENT_TYPES


def get_event_category(event_type: str) -> str:
    if event_type.startswith("payment_intent."):
        return "Payment Intent"
    if event_type.startswith("charge."):
        return "Charge"
    if event_type.startswith("checkout.session."):
        return "Checkout Session"
    if event_type.startswith("customer.subscription."):
        return "Subscription"
    if event_type.startswith("customer."):
        return "Customer"
    if event_type.startswith("invoice."):
        return "Invoice"
    return "Other"


def get_event_priority(event_type: str) -> int:
    """1 = critical, 2 = other payment/charge events, 3 = everything else."""
    if is_critical_event(event_type):
        return 1
    if event_type.startswith(("payment_intent.", "charge.")):
        return 2
    return 3


def _log_only(description: str, fields: tuple, level: int = logging.INFO) -> Handler:
    async def handler(obj: Dict[str, Any], notifier: Notifier) -> None:
        details = " ".join(f"{name}={obj.get(name)}" for name in fields)
        logger.log(level, "%s: %s", description, details)
    return handler


EVENT_HANDLERS: Dict[str, Handler] = {
    "payment_intent.created": _log_only("PaymentIntent created", ("id", "amount", "currency", "status")),
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
    "charge.succeeded": _log_only("Charge succeeded", ("id", "amount", "currency", "status")),
    "charge.updated": _log_only("Charge updated", ("id", "status", "amount")),
    "charge.dispute.created": _log_only("Dispute created", ("id", "reason", "amount", "charge"), logging.WARNING),
    "charge.refund.created": _log_only("Refund created", ("id", "amount", "reason", "charge")),
    "checkout.session.completed": handle_checkout_session_completed,
    "checkout.session.expired": _log_only("Checkout session expired", ("id", "expires_at")),
    "customer.created": _log_only("Customer created", ("id", "email", "name")),
    "customer.updated": _log_only("Customer updated", ("id", "email")),
    "customer.subscription.created": _log_only("Subscription created", ("id", "customer", "status")),
    "customer.subscription.updated": _log_only("Subscription updated", ("id", "status")),
    "customer.subscription.deleted": _log_only("Subscription deleted", ("id", "customer")),
    "invoice.payment_succeeded": _log_only("Invoice payment succeeded", ("id", "amount_paid", "currency")),
    "invoice.payment_failed": _log_only("Invoice payment failed", ("id", "amount_due", "currency")),
}


async def dispatch_event(event: PaymentEvent, notifier: Notifier) -> bool:
    """Invoke the handler for a supported event. Never raises."""
    handler = EVENT_HANDLERS.get(event.type)
    if handler is None:
        logger.info("No handler for event %s (%s)", event.id, event.type)
        return False
    try:
        await handler(event.object, notifier)
    except Exception:
        logger.exception("Handler for %s (%s) failed", event.type, event.id)
        return False
    return True
