from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from core.db import Base, get_db
from core.ratelimit import RateLimiter
from models.enums import OrderStatus, PaymentMethod, PaymentStatus
from models.order import Order
from models.payment import Payment
from services.notifications import NotificationDispatcher
from services.reconciliation import ReconciliationEngine
from tests.helpers import FakeRedis, RecordingTask, auth_headers


@pytest.fixture()
def db():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def task():
    return RecordingTask()


@pytest.fixture()
def dispatcher(task):
    return NotificationDispatcher(task=task)


@pytest.fixture()
def engine(db, dispatcher):
    return ReconciliationEngine(db, dispatcher, enforce_amount_match=True)


@pytest.fixture()
def fake_redis():
    return FakeRedis()


@pytest.fixture()
def client(db, dispatcher, fake_redis):
    def _get_db():
        yield db

    previous_limiter = app.state.rate_limiter
    previous_dispatcher = app.state.dispatcher
    app.dependency_overrides[get_db] = _get_db
    app.state.rate_limiter = RateLimiter(fake_redis)
    app.state.dispatcher = dispatcher
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
        app.state.rate_limiter = previous_limiter
        app.state.dispatcher = previous_dispatcher


@pytest.fixture()
def make_order(db):
    counter = {"n": 1000}

    def _make(total="12100.00", user_id="user-1", **kwargs):
        counter["n"] += 1
        order = Order(
            order_number=kwargs.pop("order_number", f"ORD-{counter['n']}"),
            user_id=user_id,
            customer_name=kwargs.pop("customer_name", "Jane Wanjiku"),
            email=kwargs.pop("email", "jane@example.com"),
            phone=kwargs.pop("phone", "0712345678"),
            currency="KES",
            total=Decimal(total),
            status=kwargs.pop("status", OrderStatus.PENDING),
            payment_status=kwargs.pop("payment_status", PaymentStatus.PENDING),
        )
        db.add(order)
        db.commit()
        db.refresh(order)
        return order

    return _make


@pytest.fixture()
def order(make_order):
    return make_order()


@pytest.fixture()
def make_payment(db):
    def _make(order, **values):
        payment = Payment(
            order_id=order.id,
            amount=order.total,
            currency=order.currency,
            method=values.pop("method", PaymentMethod.MPESA),
            status=values.pop("status", PaymentStatus.PROCESSING),
            **values,
        )
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment

    return _make


@pytest.fixture()
def buyer_headers():
    return auth_headers("user-1")


@pytest.fixture()
def admin_headers():
    return auth_headers("admin-1", role="admin")


