import enum
import logging
from decimal import Decimal
from typing import Any, Dict

from models.order import Order
from models.payment import Payment


logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    ORDER_CONFIRMED = "ORDER_CONFIRMED"
    MANUAL_PAYMENT_SUBMITTED = "MANUAL_PAYMENT_SUBMITTED"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def build_payload(order: Order, payment: Payment) -> Dict[str, Any]:
    """Everything a template needs, as JSON-serializable values for the task queue."""
    payload = {
        "order_number": order.order_number,
        "customer_name": order.customer_name,
        "customer_email": order.email,
        "customer_phone": order.phone,
        "total": order.total,
        "currency": payment.currency,
        "amount": payment.amount,
        "method": payment.method,
        "payment_status": payment.status,
        "receipt_number": payment.external_receipt_id or payment.redirect_reference,
        "reference_number": payment.manual_reference_number,
        "sender_name": payment.manual_sender_name,
        "error_message": payment.error_message,
        "paid_at": payment.paid_at,
    }
    return {key: _json_safe(value) for key, value in payload.items()}


class NotificationDispatcher:
    """
    Hands notifications to the task queue without waiting for delivery.

    ``notify`` never raises: a payment that has been settled stays settled
    whether or not the buyer's email could be queued.
    """

    def __init__(self, task=None):
        if task is None:
            from tasks.notification_tasks import send_notification_task
            task = send_notification_task
        self._task = task

    def notify(self, kind: NotificationKind, order_id: int, payload: Dict[str, Any]) -> None:
        try:
            self._task.delay(kind.value, order_id, payload)
            logger.info("Notification queued", extra={"kind": kind.value, "order_id": order_id})
        except Exception:
            logger.exception("Failed to queue notification", extra={"kind": kind.value, "order_id": order_id})
