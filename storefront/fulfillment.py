"""
Order fulfillment state machine driven by payment webhooks.

pending-payment -> approved-processing, applied at most once per order via a
conditional UPDATE. Only the invocation that wins the transition runs the
side effects (snapshot, inventory, ledger, notifications).
"""
import asyncio
import logging
from functools import partial
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from storefront.database import SessionLocal
from storefront.inventory import deduct_stock_for_order
from storefront.ledger import LedgerRecord, compute_fees, generate_order_number, record_payment
from storefront.models import (
    APPROVED_PROCESSING, LEDGER_COMPLETED, LEDGER_FAILED, PENDING_PAYMENT, OrderReview, utcnow
)
from storefront.notifications import Notifier, notify_admin_order_paid, notify_user_status_changed
from storefront.pipeline import Step, run_steps
from storefront.schemas import CheckoutMetadata, ShippingDetails

logger = logging.getLogger(__name__)

UNKNOWN_CUSTOMER = "Unknown Customer"
UNKNOWN_EMAIL = "unknown@example.com"


def _cents_to_amount(cents) -> Optional[Decimal]:
    if cents is None:
        return None
    return Decimal(int(cents)) / 100


def failed_transaction_id(intent: Dict[str, Any]) -> str:
    """One ledger key per failed charge, distinct from the intent's eventual success."""
    error = intent.get("last_payment_error") or {}
    charge = error.get("charge") or intent.get("latest_charge") or intent["id"]
    if isinstance(charge, dict):
        charge = charge.get("id") or intent["id"]
    return f"stripe_failed_{charge}"


@dataclass
class PaidCheckout:
    """A successful payment, normalized from an intent or a checkout session."""
    gateway_id: str
    metadata: CheckoutMetadata
    shipping: ShippingDetails
    amount: Optional[Decimal]
    currency: str
    customer_name: str
    customer_email: str
    transaction_id: str
    provider_transaction_id: str
    payment_intent_id: str
    card_last4: Optional[str]
    card_brand: Optional[str]
    correlation: Dict[str, str]
    ledger_metadata: Dict[str, Any]
    notes: str
    raw: Dict[str, Any]

    @classmethod
    def from_payment_intent(cls, intent: Dict[str, Any]) -> "PaidCheckout":
        meta = CheckoutMetadata.parse(intent.get("metadata"))
        charges = (intent.get("charges") or {}).get("data") or [{}]
        card = ((charges[0] or {}).get("payment_method_details") or {}).get("card") or {}
        return cls(
            gateway_id=intent["id"],
            metadata=meta,
            shipping=ShippingDetails.from_checkout(meta),
            amount=_cents_to_amount(intent.get("amount_received") or intent.get("amount")),
            currency=intent.get("currency") or "usd",
            customer_name=meta.customer_name or UNKNOWN_CUSTOMER,
            customer_email=meta.customer_email or intent.get("receipt_email") or UNKNOWN_EMAIL,
            transaction_id=f"stripe_{intent['id']}",
            provider_transaction_id=intent["id"],
            payment_intent_id=intent["id"],
            card_last4=card.get("last4") or meta.card_last4,
            card_brand=card.get("brand") or meta.card_brand,
            correlation={"paymentIntentId": intent["id"]},
            ledger_metadata={
                "stripeCustomerId": intent.get("customer"),
                "stripePaymentMethodId": intent.get("payment_method"),
                "ipAddress": meta.ip_address,
                "userAgent": meta.user_agent,
            },
            notes="Payment processed via Stripe",
            raw=intent,
        )

    @classmethod
    def from_checkout_session(cls, session: Dict[str, Any]) -> "PaidCheckout":
        meta = CheckoutMetadata.parse(session.get("metadata"))
        details = session.get("customer_details") or {}
        payment_intent_id = session.get("payment_intent") or session["id"]
        return cls(
            gateway_id=session["id"],
            metadata=meta,
            shipping=ShippingDetails.from_checkout(meta, details),
            amount=_cents_to_amount(session.get("amount_total")),
            currency=session.get("currency") or "usd",
            customer_name=details.get("name") or meta.customer_name or UNKNOWN_CUSTOMER,
            customer_email=details.get("email") or meta.customer_email or UNKNOWN_EMAIL,
            transaction_id=f"stripe_session_{session['id']}",
            provider_transaction_id=payment_intent_id,
            payment_intent_id=payment_intent_id,
            card_last4=meta.card_last4,
            card_brand=meta.card_brand,
            correlation={"sessionId": session["id"]},
            ledger_metadata={
                "stripeCustomerId": session.get("customer"),
                "stripeSessionId": session["id"],
                "stripePaymentIntentId": session.get("payment_intent"),
                "ipAddress": meta.ip_address,
                "userAgent": meta.user_agent,
            },
            notes="Payment processed via Stripe Checkout Session",
            raw=session,
        )


def find_pending_order(db: Session, user_id: Optional[int], order_id: Optional[int] = None) -> Optional[OrderReview]:
    """
    Correlate a payment to a local order awaiting payment.

    An explicit order id from the metadata is joined on directly. Without
    one, fall back to the user's most recently created pending order (ties on
    created_at go to the higher id).
    """
    query = db.query(OrderReview).filter(OrderReview.status == PENDING_PAYMENT)
    if order_id is not None:
        query = query.filter(OrderReview.id == order_id)
        if user_id is not None:
            query = query.filter(OrderReview.user_id == user_id)
        return query.first()
    if user_id is None:
        return None
    return (
        query.filter(OrderReview.user_id == user_id)
        .order_by(OrderReview.created_at.desc(), OrderReview.id.desc())
        .first()
    )


def transition_to_processing(db: Session, order_id: int, order_number: str, now: datetime) -> bool:
    """Compare-and-swap pending-payment -> approved-processing. True if this call won."""
    result = db.execute(
        update(OrderReview)
        .where(OrderReview.id == order_id, OrderReview.status == PENDING_PAYMENT)
        .values(
            status=APPROVED_PROCESSING,
            order_number=order_number,
            reviewed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def save_payment_snapshot(db: Session, order_id: int, payment: PaidCheckout) -> None:
    address = payment.shipping.snapshot()
    values = {
        "shipping_address": address,
        "billing_address": address,
        "payment_method": "card",
        "payment_status": "completed",
        "payment_provider": "stripe",
        "payment_intent_id": payment.payment_intent_id,
        "transaction_id": payment.transaction_id,
        "card_last4": payment.card_last4,
        "card_brand": payment.card_brand,
        "updated_at": utcnow(),
    }
    values.update(payment.metadata.pricing())
    try:
        db.execute(
            update(OrderReview)
            .where(OrderReview.id == order_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Payment and shipping details saved to order %s", order_id)


async def approve_paid_order(payment: PaidCheckout, notifier: Notifier) -> bool:
    """Run the pending-payment -> approved-processing transition for one payment."""
    meta = payment.metadata
    if meta.user_id is None and meta.order_id is None:
        logger.warning("No userId in metadata for %s; cannot correlate an order", payment.gateway_id)
        return False

    with SessionLocal() as db:
        order = await asyncio.to_thread(find_pending_order, db, meta.user_id, meta.order_id)
        if order is None:
            logger.warning(
                "No pending-payment order found for user %s (order %s) after payment %s",
                meta.user_id, meta.order_id, payment.gateway_id,
            )
            return False

        order_id, user_id, stored_total = order.id, order.user_id, order.total
        now = utcnow()
        order_number = generate_order_number(order_id, now)
        if not await asyncio.to_thread(transition_to_processing, db, order_id, order_number, now):
            logger.info("Order %s already left pending-payment; %s treated as duplicate", order_id, payment.gateway_id)
            return False

        logger.info(
            "Order %s approved for processing after payment %s (user %s)",
            order_id, payment.gateway_id, user_id,
        )

        amount = next((a for a in (payment.amount, stored_total, meta.total) if a is not None), None)
        order_total = next((a for a in (meta.total, stored_total, amount) if a is not None), None)

        def ledger_step():
            if amount is None:
                logger.warning(
                    "No amount to record for order %s after payment %s; ledger entry skipped",
                    order_id, payment.gateway_id,
                )
                return None
            fees, net = compute_fees(amount)
            return record_payment(db, LedgerRecord(
                order_id=order_id,
                order_number=order_number,
                customer_id=user_id,
                customer_name=payment.customer_name,
                customer_email=payment.customer_email,
                amount=amount,
                currency=payment.currency,
                status=LEDGER_COMPLETED,
                transaction_id=payment.transaction_id,
                provider_transaction_id=payment.provider_transaction_id,
                gateway_response=payment.raw,
                fees=fees,
                net_amount=net,
                metadata=payment.ledger_metadata,
                notes=payment.notes,
            ))

        await run_steps([
            Step("payment_snapshot", lambda: save_payment_snapshot(db, order_id, payment)),
            Step("inventory", lambda: deduct_stock_for_order(db, order_id)),
            Step("ledger", ledger_step),
            Step("notify_admin", partial(
                notify_admin_order_paid, notifier, order_id, user_id, order_total, APPROVED_PROCESSING,
            )),
            Step("notify_user", partial(
                notify_user_status_changed,
                notifier, order_id, user_id, PENDING_PAYMENT, APPROVED_PROCESSING, now, payment.correlation,
            )),
        ], context=f"order {order_id}")
    return True


async def handle_payment_intent_succeeded(intent: Dict[str, Any], notifier: Notifier) -> None:
    logger.info(
        "Payment succeeded: intent=%s amount=%s currency=%s",
        intent.get("id"), intent.get("amount"), intent.get("currency"),
    )
    await approve_paid_order(PaidCheckout.from_payment_intent(intent), notifier)


async def handle_checkout_session_completed(session: Dict[str, Any], notifier: Notifier) -> None:
    logger.info(
        "Checkout session completed: session=%s payment_status=%s amount_total=%s",
        session.get("id"), session.get("payment_status"), session.get("amount_total"),
    )
    await approve_paid_order(PaidCheckout.from_checkout_session(session), notifier)


async def handle_payment_intent_failed(intent: Dict[str, Any], notifier: Notifier) -> None:
    """Record a failed ledger entry; the order itself is left as it is."""
    error = intent.get("last_payment_error") or {}
    logger.info("Payment failed: intent=%s error=%s", intent.get("id"), error.get("message"))

    meta = CheckoutMetadata.parse(intent.get("metadata"))
    with SessionLocal() as db:
        order = None
        if meta.user_id is not None or meta.order_id is not None:
            order = await asyncio.to_thread(find_pending_order, db, meta.user_id, meta.order_id)

        record = LedgerRecord(
            order_id=order.id if order else None,
            order_number=generate_order_number(order.id) if order else "N/A",
            customer_id=meta.user_id,
            customer_name=meta.customer_name or UNKNOWN_CUSTOMER,
            customer_email=meta.customer_email or intent.get("receipt_email") or UNKNOWN_EMAIL,
            amount=_cents_to_amount(intent.get("amount")) or Decimal("0"),
            currency=intent.get("currency") or "usd",
            status=LEDGER_FAILED,
            transaction_id=failed_transaction_id(intent),
            provider_transaction_id=intent["id"],
            gateway_response=intent,
            metadata={
                "errorCode": error.get("code"),
                "errorMessage": error.get("message"),
                "errorType": error.get("type"),
                "declineCode": error.get("decline_code"),
            },
            notes=f"Payment failed: {error.get('message') or 'Unknown error'}",
        )
        await run_steps(
            [Step("ledger", lambda: record_payment(db, record))],
            context=f"failed payment {intent['id']}",
        )
