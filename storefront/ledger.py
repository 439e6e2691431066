import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront import config
from storefront.models import LEDGER_COMPLETED, LEDGER_FAILED, PaymentLedgerEntry, utcnow

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_fees(amount, fee_rate: Decimal = None, fixed_fee: Decimal = None) -> Tuple[Decimal, Decimal]:
    """Return (fees, net_amount) for a card charge of `amount`."""
    fee_rate = config.STRIPE_FEE_RATE if fee_rate is None else fee_rate
    fixed_fee = config.STRIPE_FIXED_FEE if fixed_fee is None else fixed_fee

    amount = to_money(amount)
    fees = to_money(amount * fee_rate + fixed_fee)
    return fees, amount - fees


def generate_order_number(order_id: int, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        # Naive values are UTC, as stored in the database
        now = now.replace(tzinfo=timezone.utc)
    return f"ORD-{int(now.timestamp() * 1000)}-{order_id}"


@dataclass
class LedgerRecord:
    order_number: str
    customer_name: str
    customer_email: str
    amount: Decimal
    currency: str
    status: str
    transaction_id: str
    provider_transaction_id: str
    order_id: Optional[int] = None
    customer_id: Optional[int] = None
    provider: str = "stripe"
    payment_method: str = "card"
    gateway_response: Optional[Dict[str, Any]] = None
    fees: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    metadata: Dict[str, Any] = field(default_factory=dict)
    notes: Optional[str] = None


def record_payment(db: Session, record: LedgerRecord) -> Optional[PaymentLedgerEntry]:
    """
    Insert one immutable ledger entry, keyed by transaction id.

    Returns None when an entry for the transaction already exists; the
    unique constraint covers the window between the lookup and the insert.
    """
    existing = db.query(PaymentLedgerEntry).filter_by(transaction_id=record.transaction_id).first()
    if existing:
        logger.info(
            "Ledger entry for %s already exists (id=%s); skipping duplicate",
            record.transaction_id, existing.id,
        )
        return None

    now = utcnow()
    entry = PaymentLedgerEntry(
        order_id=record.order_id,
        order_number=record.order_number,
        customer_id=record.customer_id,
        customer_name=record.customer_name,
        customer_email=record.customer_email,
        amount=to_money(record.amount),
        currency=record.currency,
        provider=record.provider,
        payment_method=record.payment_method,
        status=record.status,
        transaction_id=record.transaction_id,
        provider_transaction_id=record.provider_transaction_id,
        gateway_response=record.gateway_response,
        fees=to_money(record.fees),
        net_amount=to_money(record.net_amount),
        payment_metadata={k: v for k, v in record.metadata.items() if v is not None},
        notes=record.notes,
        processed_at=now if record.status == LEDGER_COMPLETED else None,
        failed_at=now if record.status == LEDGER_FAILED else None,
    )
    db.add(entry)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Ledger entry for %s was inserted concurrently; skipping duplicate", record.transaction_id)
        return None
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Ledger entry %s recorded: order=%s status=%s amount=%s fees=%s",
        entry.id, record.order_id, record.status, entry.amount, entry.fees,
    )
    return entry
