from datetime import datetime, timedelta, timezone
from decimal import Decimal

from storefront.ledger import LedgerRecord, compute_fees, generate_order_number, record_payment
from storefront.models import PaymentLedgerEntry


def make_record(transaction_id="stripe_pi_1", **overrides):
    fields = dict(
        order_id=None,
        order_number="ORD-1-1",
        customer_name="Ada",
        customer_email="ada@example.com",
        amount=Decimal("100.00"),
        currency="usd",
        status="completed",
        transaction_id=transaction_id,
        provider_transaction_id="pi_1",
        gateway_response={"id": "pi_1", "object": "payment_intent"},
        fees=Decimal("3.20"),
        net_amount=Decimal("96.80"),
        metadata={"stripeCustomerId": "cus_1", "ipAddress": None},
    )
    fields.update(overrides)
    return LedgerRecord(**fields)


def test_fees_for_one_hundred():
    assert compute_fees(Decimal("100.00")) == (Decimal("3.20"), Decimal("96.80"))


def test_fees_round_half_up_to_cents():
    fees, net = compute_fees("10.05")
    # 10.05 * 0.029 + 0.30 = 0.59145
    assert fees == Decimal("0.59")
    assert net == Decimal("9.46")


def test_fees_accept_custom_schedule():
    assert compute_fees(Decimal("200"), Decimal("0.01"), Decimal("0")) == (Decimal("2.00"), Decimal("198.00"))


def test_order_number_format():
    assert generate_order_number(42, datetime(2024, 1, 2, 3, 4, 5)) == "ORD-1704164645000-42"


def test_order_number_reads_naive_times_as_utc():
    aware = datetime(2024, 1, 2, 5, 4, 5, tzinfo=timezone(timedelta(hours=2)))

    assert generate_order_number(42, aware) == generate_order_number(42, datetime(2024, 1, 2, 3, 4, 5))
    assert generate_order_number(42).startswith("ORD-")


def test_record_payment_persists_audit_payload(db):
    entry = record_payment(db, make_record())

    assert entry is not None
    assert entry.gateway_response == {"id": "pi_1", "object": "payment_intent"}
    assert entry.payment_metadata == {"stripeCustomerId": "cus_1"}
    assert entry.processed_at is not None
    assert entry.failed_at is None


def test_same_transaction_id_is_recorded_once(db):
    assert record_payment(db, make_record()) is not None
    assert record_payment(db, make_record(amount=Decimal("1.00"))) is None

    entries = db.query(PaymentLedgerEntry).all()
    assert len(entries) == 1
    assert entries[0].amount == Decimal("100.00")


def test_concurrent_insert_is_treated_as_duplicate(db, mocker):
    record_payment(db, make_record())
    # Simulate the lookup missing a row committed by a concurrent worker
    mocker.patch.object(db, "query", return_value=mocker.Mock(
        filter_by=mocker.Mock(return_value=mocker.Mock(first=mocker.Mock(return_value=None)))
    ))

    assert record_payment(db, make_record()) is None
