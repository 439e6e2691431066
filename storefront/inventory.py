import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from sqlalchemy import case, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.models import InventoryDeduction, OrderReview, Variant, utcnow

logger = logging.getLogger(__name__)

# Made to order, no physical stock
NON_STOCK_PRODUCT_IDS = {"custom-embroidery"}


class InventoryError(Exception):
    pass


@dataclass
class LineItem:
    product_id: str
    quantity: int
    variant_id: Optional[int] = None


@dataclass
class DeductionResult:
    order_id: int
    skipped: bool = False
    deducted: List[LineItem] = field(default_factory=list)
    missing: List[LineItem] = field(default_factory=list)


def _variant_id(item: dict) -> Optional[int]:
    customization = item.get("customization") or {}
    variant = customization.get("selectedVariant") or item.get("selectedVariant") or {}
    value = variant.get("id") if isinstance(variant, dict) else None
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_line_items(order_data: Any) -> List[LineItem]:
    if not isinstance(order_data, list):
        return []

    items = []
    for raw in order_data:
        if not isinstance(raw, dict):
            continue
        product_id = raw.get("productId")
        if not product_id or str(product_id) in NON_STOCK_PRODUCT_IDS:
            continue
        quantity = raw.get("quantity")
        try:
            # Absent means one; an explicit zero is skipped below
            quantity = 1 if quantity is None else int(quantity)
        except (TypeError, ValueError):
            quantity = 1
        if quantity <= 0:
            continue
        items.append(LineItem(str(product_id), quantity, _variant_id(raw)))
    return items


def decrement_stock(db: Session, variant_id: int, quantity: int) -> int:
    """Atomic `stock = max(0, stock - quantity)`; returns rows affected."""
    result = db.execute(
        update(Variant)
        .where(Variant.id == variant_id)
        .values(
            stock=case((Variant.stock > quantity, Variant.stock - quantity), else_=0),
            updated_at=utcnow(),
        )
    )
    return result.rowcount


def _fallback_variant_id(db: Session, product_id: str) -> Optional[int]:
    return db.execute(
        select(Variant.id)
        .where(Variant.product_id == product_id)
        .order_by(Variant.stock.desc(), Variant.id)
        .limit(1)
    ).scalar()


def deduct_stock_for_order(db: Session, order_id: int) -> DeductionResult:
    """
    Decrement stock for every line item of an order, at most once per order.

    The InventoryDeduction marker is inserted in the same transaction as the
    decrements, so a second caller (redelivery, concurrent worker) hits the
    primary key and backs off without touching stock.
    """
    order = db.get(OrderReview, order_id)
    if order is None:
        raise InventoryError(f"Order {order_id} not found for stock deduction")

    result = DeductionResult(order_id=order_id)
    try:
        db.execute(insert(InventoryDeduction).values(order_id=order_id, deducted_at=utcnow()))
    except IntegrityError:
        db.rollback()
        logger.info("Stock already deducted for order %s; skipping", order_id)
        result.skipped = True
        return result

    try:
        items = parse_line_items(order.order_data)
        if not items:
            logger.warning("No stocked items found in order %s", order_id)

        for item in items:
            variant_id = item.variant_id or _fallback_variant_id(db, item.product_id)
            if variant_id is None or decrement_stock(db, variant_id, item.quantity) == 0:
                logger.warning(
                    "Could not deduct %s from product %s (variant %s) for order %s: variant not found",
                    item.quantity, item.product_id, variant_id, order_id,
                )
                result.missing.append(item)
                continue
            item.variant_id = variant_id
            result.deducted.append(item)

        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Stock deduction completed for order %s: %d item(s) deducted, %d missing",
        order_id, len(result.deducted), len(result.missing),
    )
    return result
