import asyncio
from decimal import Decimal

from storefront.fulfillment import (
    PaidCheckout,
    failed_transaction_id,
    find_pending_order,
    handle_checkout_session_completed,
    handle_payment_intent_failed,
    handle_payment_intent_succeeded,
    transition_to_processing,
)
from storefront.models import APPROVED_PROCESSING, PENDING_PAYMENT, OrderReview, PaymentLedgerEntry, utcnow

from conftest import RecordingNotifier, TestingSessionLocal, add_order, older


def test_transition_is_compare_and_swap(db):
    order_id = add_order()
    now = utcnow()

    assert transition_to_processing(db, order_id, "ORD-1-1", now) is True
    assert transition_to_processing(db, order_id, "ORD-2-1", now) is False

    db.expire_all()
    order = db.get(OrderReview, order_id)
    assert order.status == APPROVED_PROCESSING
    assert order.order_number == "ORD-1-1"


def test_transition_never_reverts_a_later_status(db):
    order_id = add_order(status="shipped")

    assert transition_to_processing(db, order_id, "ORD-1-1", utcnow()) is False
    db.expire_all()
    assert db.get(OrderReview, order_id).status == "shipped"


def test_find_pending_order_breaks_ties_by_id(db):
    same_time = older(10)
    first = add_order(created_at=same_time)
    second = add_order(created_at=same_time)

    assert find_pending_order(db, 7).id == max(first, second)


def test_find_pending_order_ignores_other_users_and_statuses(db):
    add_order(user_id=8)
    add_order(user_id=7, status=APPROVED_PROCESSING)

    assert find_pending_order(db, 7) is None


def test_find_pending_order_by_id_requires_matching_user(db):
    order_id = add_order(user_id=8)

    assert find_pending_order(db, 7, order_id) is None
    assert find_pending_order(db, 8, order_id).id == order_id


def test_duplicate_success_runs_side_effects_once(mocker):
    add_order()
    deduct = mocker.patch("storefront.fulfillment.deduct_stock_for_order")
    notifier = RecordingNotifier()
    intent = {"id": "pi_dup", "amount": 2000, "currency": "usd", "metadata": {"userId": "7"}}

    asyncio.run(handle_payment_intent_succeeded(intent, notifier))
    asyncio.run(handle_payment_intent_succeeded(intent, notifier))

    assert deduct.call_count == 1
    assert len(notifier.emitted) == 2


def test_notification_failure_is_isolated():
    order_id = add_order()
    notifier = RecordingNotifier(failing_rooms={"admin_room"})
    intent = {"id": "pi_notify", "amount": 1000, "currency": "usd", "metadata": {"userId": "7"}}

    asyncio.run(handle_payment_intent_succeeded(intent, notifier))

    assert notifier.rooms() == ["user_7"]
    db = TestingSessionLocal()
    assert db.get(OrderReview, order_id).status == APPROVED_PROCESSING
    assert db.query(PaymentLedgerEntry).count() == 1
    db.close()


def test_failed_payment_records_ledger_without_transition():
    order_id = add_order()
    intent = {
        "id": "pi_fail",
        "amount": 4200,
        "currency": "usd",
        "metadata": {"userId": "7"},
        "last_payment_error": {"charge": "ch_declined", "code": "card_declined", "message": "Your card was declined."},
    }

    asyncio.run(handle_payment_intent_failed(intent, RecordingNotifier()))
    asyncio.run(handle_payment_intent_failed(intent, RecordingNotifier()))

    db = TestingSessionLocal()
    assert db.get(OrderReview, order_id).status == PENDING_PAYMENT
    entry = db.query(PaymentLedgerEntry).one()
    assert entry.status == "failed"
    assert entry.order_id == order_id
    assert entry.transaction_id == "stripe_failed_ch_declined"
    assert entry.amount == Decimal("42.00")
    assert entry.fees == Decimal("0.00")
    assert entry.net_amount == Decimal("0.00")
    assert entry.notes == "Payment failed: Your card was declined."
    assert entry.payment_metadata["errorCode"] == "card_declined"
    assert entry.failed_at is not None
    db.close()


def test_failed_payment_without_order_is_labelled_na():
    intent = {"id": "pi_orphan", "amount": 100, "currency": "usd", "metadata": {}}

    asyncio.run(handle_payment_intent_failed(intent, RecordingNotifier()))

    db = TestingSessionLocal()
    entry = db.query(PaymentLedgerEntry).one()
    assert entry.order_id is None
    assert entry.order_number == "N/A"
    assert entry.customer_name == "Unknown Customer"
    db.close()


def test_failed_transaction_id_falls_back_to_intent():
    assert failed_transaction_id({"id": "pi_1"}) == "stripe_failed_pi_1"
    assert failed_transaction_id({"id": "pi_1", "latest_charge": "ch_9"}) == "stripe_failed_ch_9"


def test_checkout_session_falls_back_to_customer_details():
    session = {
        "id": "cs_1",
        "amount_total": 1999,
        "customer_details": {
            "name": "Grace Brewster Hopper",
            "email": "grace@example.com",
            "address": {"line1": "2 Compiler Rd", "city": "Arlington", "postal_code": "22201"},
        },
        "metadata": {"userId": "3", "lastName": "Murray", "total": "19.99"},
    }

    payment = PaidCheckout.from_checkout_session(session)

    assert payment.amount == Decimal("19.99")
    assert payment.provider_transaction_id == "cs_1"
    assert payment.shipping.snapshot() == {
        "firstName": "Grace",
        "lastName": "Murray",
        "street": "2 Compiler Rd",
        "city": "Arlington",
        "zipCode": "22201",
    }


def session_without_amount(session_id, **metadata):
    meta = {"userId": "7"}
    meta.update(metadata)
    return {"id": session_id, "currency": "usd", "metadata": meta}


def test_ledger_falls_back_to_metadata_total():
    order_id = add_order(total=None)

    asyncio.run(handle_checkout_session_completed(session_without_amount("cs_meta", total="55.00"), RecordingNotifier()))

    db = TestingSessionLocal()
    assert db.get(OrderReview, order_id).status == APPROVED_PROCESSING
    entry = db.query(PaymentLedgerEntry).one()
    assert entry.amount == Decimal("55.00")
    assert entry.fees == Decimal("1.90")
    db.close()


def test_missing_amount_skips_ledger_but_still_notifies(caplog):
    order_id = add_order(total=None)
    notifier = RecordingNotifier()

    asyncio.run(handle_checkout_session_completed(session_without_amount("cs_none"), notifier))

    db = TestingSessionLocal()
    assert db.get(OrderReview, order_id).status == APPROVED_PROCESSING
    assert db.query(PaymentLedgerEntry).count() == 0
    db.close()
    assert notifier.rooms() == ["admin_room", "user_7"]
    assert "No amount to record" in caplog.text
    assert "Step ledger failed" not in caplog.text
