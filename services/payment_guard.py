import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.enums import PaymentStatus
from models.payment import Payment
from services.errors import Conflict, PaymentError


logger = logging.getLogger(__name__)

CORRELATION_FIELDS = ("push_checkout_id", "redirect_reference", "manual_reference_number")


def find_by_correlation(db: Session, field: str, key: str) -> Optional[Payment]:
    if field not in CORRELATION_FIELDS:
        raise ValueError(f"Unknown correlation field: {field}")
    return db.query(Payment).filter(getattr(Payment, field) == key).one_or_none()


def find_for_order(db: Session, order_id: int, lock: bool = False) -> Optional[Payment]:
    query = db.query(Payment).filter(Payment.order_id == order_id)
    if lock:
        query = query.with_for_update()
    return query.one_or_none()


def reference_owner(db: Session, field: str, key: str) -> Optional[int]:
    """Order id holding ``key`` in ``field``, if any."""
    payment = find_by_correlation(db, field, key)
    return payment.order_id if payment else None


def create_payment(db: Session, order_id: int, values: Dict[str, Any], on_conflict: PaymentError) -> Payment:
    """
    Insert the payment for ``order_id`` and flush.

    A uniqueness violation means another request got there first. The
    transaction is rolled back and the insert is retried as an update of the
    row that now exists for this order. If no such row exists the clash was
    on a correlation key owned by a different order, and ``on_conflict`` is
    raised.
    """
    payment = Payment(order_id=order_id, **values)
    db.add(payment)
    try:
        db.flush()
        return payment
    except IntegrityError:
        db.rollback()
        logger.warning("Concurrent payment write detected, retrying as update", extra={"order_id": order_id})

    existing = find_for_order(db, order_id)
    if existing is None:
        raise on_conflict
    if existing.status == PaymentStatus.PAID:
        raise Conflict("Payment already completed")
    return update_payment(db, existing, values, on_conflict)


def update_payment(db: Session, payment: Payment, values: Dict[str, Any], on_conflict: PaymentError) -> Payment:
    for key, value in values.items():
        setattr(payment, key, value)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.warning("Correlation key already claimed by another payment", extra={"payment_id": payment.id})
        raise on_conflict
    return payment
