import hashlib
import hmac
import json
import time
from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from storefront.main import app as fastapi_app
from storefront.database import Base
from storefront.models import OrderReview, PENDING_PAYMENT, Variant, utcnow
from storefront.routes import get_notifier

WEBHOOK_SECRET = "whsec_test_secret"

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


class RecordingNotifier:
    """In-memory notifier: remembers every emit, optionally fails on some rooms."""

    def __init__(self, failing_rooms=()):
        self.emitted = []
        self.failing_rooms = set(failing_rooms)

    async def emit_to_room(self, room, event, payload):
        if room in self.failing_rooms:
            raise ConnectionError(f"room {room} unavailable")
        self.emitted.append((room, event, payload))
        return 1

    def rooms(self):
        return [room for room, _, _ in self.emitted]


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode("utf-8")


def add_order(user_id=7, status=PENDING_PAYMENT, created_at=None, order_data=None, total=Decimal("100.00")):
    db = TestingSessionLocal()
    order = OrderReview(
        user_id=user_id,
        status=status,
        total=total,
        order_data=order_data if order_data is not None else [],
        created_at=created_at or utcnow(),
    )
    db.add(order)
    db.commit()
    order_id = order.id
    db.close()
    return order_id


def add_variant(product_id="prod-1", stock=10):
    db = TestingSessionLocal()
    variant = Variant(product_id=product_id, stock=stock)
    db.add(variant)
    db.commit()
    variant_id = variant.id
    db.close()
    return variant_id


def older(minutes):
    return utcnow() - timedelta(minutes=minutes)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def patch_sessions(monkeypatch):
    # Every module that opens its own session must use the test database
    monkeypatch.setattr("storefront.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("storefront.fulfillment.SessionLocal", TestingSessionLocal)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("JWT_SECRET", "jwt_test_secret")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(notifier):
    fastapi_app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()
