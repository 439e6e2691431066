from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, JSON, Text, ForeignKey, Index, UniqueConstraint
)
from storefront.database import Base

# Order review lifecycle, forward-only
PENDING_PAYMENT = "pending-payment"
APPROVED_PROCESSING = "approved-processing"

LEDGER_COMPLETED = "completed"
LEDGER_FAILED = "failed"


def utcnow():
    # Naive UTC, matching the timezone-less DateTime columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderReview(Base):
    __tablename__ = "order_reviews"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    status = Column(String(32), nullable=False, default=PENDING_PAYMENT, index=True)
    order_data = Column(JSON, nullable=True)               # list of cart line items

    total = Column(Numeric(10, 2), nullable=True)
    subtotal = Column(Numeric(10, 2), nullable=True)
    shipping = Column(Numeric(10, 2), nullable=True)
    tax = Column(Numeric(10, 2), nullable=True)

    order_number = Column(String(64), nullable=True, index=True)
    shipping_address = Column(JSON, nullable=True)
    billing_address = Column(JSON, nullable=True)
    payment_method = Column(String(32), nullable=True)
    payment_status = Column(String(32), nullable=True)
    payment_provider = Column(String(32), nullable=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    transaction_id = Column(String(255), nullable=True)
    card_last4 = Column(String(4), nullable=True)
    card_brand = Column(String(32), nullable=True)

    reviewed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_order_reviews_user_status_created", "user_id", "status", "created_at"),
    )


class Variant(Base):
    __tablename__ = "variants"

    id = Column(Integer, primary_key=True)
    product_id = Column(String(64), nullable=False, index=True)
    stock = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class InventoryDeduction(Base):
    """Marker row: stock for this order has already been deducted."""
    __tablename__ = "inventory_deductions"

    order_id = Column(Integer, ForeignKey("order_reviews.id"), primary_key=True)
    deducted_at = Column(DateTime, default=utcnow, nullable=False)


class PaymentLedgerEntry(Base):
    __tablename__ = "payment_ledger"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("order_reviews.id"), nullable=True, index=True)
    order_number = Column(String(64), nullable=False)

    customer_id = Column(Integer, nullable=True, index=True)
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="usd")
    provider = Column(String(32), nullable=False)           # stripe | paypal
    payment_method = Column(String(32), nullable=False)
    status = Column(String(32), nullable=False, index=True)  # completed | failed

    transaction_id = Column(String(255), nullable=False)     # provider-prefixed, e.g. stripe_pi_...
    provider_transaction_id = Column(String(255), nullable=False)
    gateway_response = Column(JSON, nullable=True)           # raw gateway object, audit only

    fees = Column(Numeric(10, 2), nullable=False, default=0)
    net_amount = Column(Numeric(10, 2), nullable=False, default=0)
    # "metadata" is reserved on declarative classes
    payment_metadata = Column("metadata", JSON, nullable=True)
    notes = Column(Text, nullable=True)

    processed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_payment_ledger_transaction_id"),
    )
