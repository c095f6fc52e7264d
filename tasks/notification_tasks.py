import logging
import smtplib
from typing import Any, Dict

from celery import current_app

from core.config import settings
from services.email import deliver_email, render_template


logger = logging.getLogger(__name__)

# kind -> (subject, recipient); "buyer" goes to the order's email
MESSAGES = {
    "PAYMENT_RECEIVED": ("Payment received for order {order_number}", "buyer"),
    "PAYMENT_FAILED": ("Payment failed for order {order_number}", "buyer"),
    "ORDER_CONFIRMED": ("Order {order_number} confirmed", "buyer"),
    "MANUAL_PAYMENT_SUBMITTED": ("Manual payment awaiting review: order {order_number}", "admin"),
}


def recipient_for(audience: str, payload: Dict[str, Any]) -> str | None:
    if audience == "admin":
        return settings.ADMIN_EMAIL or None
    return payload.get("customer_email") or None


@current_app.task(bind=True, max_retries=3)
def send_notification_task(self, kind: str, order_id: int, payload: Dict[str, Any]):
    """
    Render and send one payment notification.

    Retries up to 3 times on SMTP failure with exponential backoff.
    """
    if kind not in MESSAGES:
        logger.error("Unknown notification kind", extra={"kind": kind, "order_id": order_id})
        return {"status": "skipped", "reason": "unknown kind"}

    subject_template, audience = MESSAGES[kind]
    to_email = recipient_for(audience, payload)
    if not to_email:
        logger.warning("No recipient for notification", extra={"kind": kind, "order_id": order_id})
        return {"status": "skipped", "reason": "no recipient"}

    subject = subject_template.format(order_number=payload.get("order_number", order_id))
    body = render_template(f"emails/{kind.lower()}.txt", payload)

    try:
        sent = deliver_email(to_email, subject, body)
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("Notification delivery failed, retrying", extra={"kind": kind, "order_id": order_id})
        # Retry with exponential backoff
        countdown = min(2 ** self.request.retries, 60)  # Max 60 seconds
        raise self.retry(exc=exc, countdown=countdown)

    return {"status": "sent" if sent else "skipped", "kind": kind, "to": to_email}
