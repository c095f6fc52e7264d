import pytest
import redis
import smtplib
from datetime import datetime
from unittest.mock import MagicMock, Mock, patch

from fastapi import HTTPException

from core.dependencies import Principal, get_current_principal, require_admin
from core.ratelimit import RateLimiter, client_identifier
from models.enums import PaymentMethod, PaymentStatus
from security import jwt as jwt_utils
from services import email as email_service
from services.notifications import NotificationDispatcher, NotificationKind, build_payload
from tasks.notification_tasks import send_notification_task
from tests.helpers import BrokenTask, FakeRedis, RecordingTask


PAYLOAD = {
    "order_number": "ORD-1001",
    "customer_name": "Jane Wanjiku",
    "customer_email": "jane@example.com",
    "customer_phone": "0712345678",
    "total": "12100.00",
    "currency": "KES",
    "amount": "12100.00",
    "method": "MPESA",
    "payment_status": "PAID",
    "receipt_number": "QGH12345XYZ",
    "reference_number": None,
    "sender_name": None,
    "error_message": None,
    "paid_at": "2025-01-01T09:00:00",
}


class TestNotificationDispatcher:
    """Test cases for queueing notifications"""

    def test_notify_queues_task(self):
        """Test notify hands kind, order id and payload to the task"""
        task = RecordingTask()
        NotificationDispatcher(task=task).notify(NotificationKind.PAYMENT_RECEIVED, 7, {"a": 1})
        assert task.calls == [{"kind": "PAYMENT_RECEIVED", "order_id": 7, "payload": {"a": 1}}]

    def test_notify_swallows_broker_errors(self):
        """Test a broker outage never reaches the caller"""
        NotificationDispatcher(task=BrokenTask()).notify(NotificationKind.PAYMENT_FAILED, 7, {})

    def test_default_task(self):
        """Test the Celery task is used when none is given"""
        assert NotificationDispatcher()._task is send_notification_task

    def test_build_payload_json_safe(self, order, make_payment):
        """Test payloads carry only JSON-serializable values"""
        payment = make_payment(
            order,
            status=PaymentStatus.PAID,
            external_receipt_id="QGH12345XYZ",
            paid_at=datetime(2025, 1, 1, 9, 0, 0),
        )
        payload = build_payload(order, payment)

        assert payload["total"] == "12100.00"
        assert payload["method"] == "MPESA"
        assert payload["payment_status"] == "PAID"
        assert payload["paid_at"] == "2025-01-01T09:00:00"
        assert payload["receipt_number"] == "QGH12345XYZ"
        assert payload["customer_email"] == "jane@example.com"

    def test_build_payload_manual(self, order, make_payment):
        """Test manual payments expose the submitted reference"""
        payment = make_payment(order, method=PaymentMethod.MANUAL, manual_reference_number="ABC123", manual_sender_name="Jane W")
        payload = build_payload(order, payment)
        assert payload["reference_number"] == "ABC123"
        assert payload["sender_name"] == "Jane W"
        assert payload["paid_at"] is None


class TestRateLimiter:
    """Test cases for the Redis fixed-window limiter"""

    def test_allows_up_to_limit(self):
        """Test requests within the limit"""
        limiter = RateLimiter(FakeRedis())
        results = [limiter.hit("mpesa:1.2.3.4", 3, 60) for _ in range(4)]

        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]
        assert results[-1].reset_in == 60

    def test_keys_are_independent(self):
        """Test separate clients have separate counters"""
        limiter = RateLimiter(FakeRedis())
        for _ in range(3):
            limiter.hit("mpesa:1.1.1.1", 3, 60)
        assert limiter.hit("mpesa:2.2.2.2", 3, 60).allowed is True

    def test_expiry_set_on_first_hit(self):
        """Test the window starts with the first request"""
        client = MagicMock()
        client.incr.side_effect = [1, 2]
        client.ttl.return_value = 42
        limiter = RateLimiter(client)

        limiter.hit("k", 5, 60)
        limiter.hit("k", 5, 60)

        client.expire.assert_called_once_with("ratelimit:k:5:60", 60)

    def test_fails_open(self):
        """Test a Redis outage lets requests through"""
        client = MagicMock()
        client.incr.side_effect = redis.ConnectionError("down")
        result = RateLimiter(client).hit("k", 1, 60)
        assert result.allowed is True

    def test_client_identifier(self):
        """Test the forwarded address wins over the socket peer"""
        request = Mock()
        request.headers = {"x-forwarded-for": "203.0.113.5, 10.0.0.1"}
        assert client_identifier(request) == "203.0.113.5"

        request.headers = {"x-real-ip": "198.51.100.7"}
        assert client_identifier(request) == "198.51.100.7"

        request.headers = {}
        request.client.host = "127.0.0.1"
        assert client_identifier(request) == "127.0.0.1"


class TestEmailService:
    """Test cases for template rendering and SMTP delivery"""

    @pytest.mark.parametrize("kind", list(NotificationKind))
    def test_every_kind_has_a_template(self, kind):
        """Test each notification kind renders"""
        body = email_service.render_template(f"emails/{kind.value.lower()}.txt", PAYLOAD)
        assert "ORD-1001" in body

    def test_payment_received_template(self):
        """Test the receipt details appear in the buyer email"""
        body = email_service.render_template("emails/payment_received.txt", PAYLOAD)
        assert "KES 12100.00" in body
        assert "QGH12345XYZ" in body

    def test_delivery_disabled_in_tests(self):
        """Test nothing is sent while testing"""
        with patch("services.email.smtplib.SMTP") as mock_smtp:
            assert email_service.deliver_email("jane@example.com", "Subject", "Body") is False
        mock_smtp.assert_not_called()

    def test_delivery_sends(self, monkeypatch):
        """Test a configured SMTP server receives the message"""
        monkeypatch.setattr(email_service.settings, "TESTING", False)
        monkeypatch.setattr(email_service.settings, "SMTP_USERNAME", "shop@example.com")
        monkeypatch.setattr(email_service.settings, "SMTP_PASSWORD", "real-password")

        with patch("services.email.smtplib.SMTP") as mock_smtp:
            server = mock_smtp.return_value.__enter__.return_value
            assert email_service.deliver_email("jane@example.com", "Subject", "Body") is True

        server.starttls.assert_called_once()
        server.login.assert_called_once_with("shop@example.com", "real-password")
        message = server.send_message.call_args.args[0]
        assert message["To"] == "jane@example.com"
        assert message["Subject"] == "Subject"

    def test_placeholder_password_skips(self, monkeypatch):
        """Test the sample password never reaches an SMTP server"""
        monkeypatch.setattr(email_service.settings, "TESTING", False)
        monkeypatch.setattr(email_service.settings, "SMTP_PASSWORD", email_service.PLACEHOLDER_PASSWORD)
        assert email_service.delivery_enabled() is False


class TestNotificationTask:
    """Test cases for the Celery notification task"""

    @patch("tasks.notification_tasks.deliver_email", return_value=True)
    def test_buyer_notification(self, mock_deliver):
        """Test buyer notifications go to the order email"""
        result = send_notification_task("PAYMENT_RECEIVED", 1, PAYLOAD)

        assert result["status"] == "sent"
        to_email, subject, body = mock_deliver.call_args.args
        assert to_email == "jane@example.com"
        assert subject == "Payment received for order ORD-1001"
        assert "QGH12345XYZ" in body

    @patch("tasks.notification_tasks.deliver_email", return_value=True)
    def test_admin_notification(self, mock_deliver):
        """Test manual submissions alert the admin"""
        payload = dict(PAYLOAD, reference_number="ABC123", sender_name="Jane W")
        send_notification_task("MANUAL_PAYMENT_SUBMITTED", 1, payload)

        to_email, subject, body = mock_deliver.call_args.args
        assert to_email == "admin@shop.test"
        assert "ABC123" in body

    @patch("tasks.notification_tasks.deliver_email")
    def test_missing_recipient(self, mock_deliver):
        """Test notifications without an address are skipped"""
        result = send_notification_task("PAYMENT_FAILED", 1, dict(PAYLOAD, customer_email=None))
        assert result["status"] == "skipped"
        mock_deliver.assert_not_called()

    @patch("tasks.notification_tasks.deliver_email")
    def test_unknown_kind(self, mock_deliver):
        """Test unknown kinds are dropped"""
        assert send_notification_task("REFUND_ISSUED", 1, PAYLOAD)["status"] == "skipped"
        mock_deliver.assert_not_called()

    @patch("tasks.notification_tasks.deliver_email", side_effect=smtplib.SMTPServerDisconnected("gone"))
    def test_smtp_failure_retries(self, mock_deliver):
        """Test SMTP errors are retried with backoff"""
        with patch.object(send_notification_task, "retry", side_effect=RuntimeError("retry")) as mock_retry:
            with pytest.raises(RuntimeError):
                send_notification_task("PAYMENT_RECEIVED", 1, PAYLOAD)
        assert mock_retry.call_args.kwargs["countdown"] == 1


class TestSecurity:
    """Test cases for bearer token dependencies"""

    def test_principal_from_token(self):
        """Test subject and role are read from the token"""
        token = jwt_utils.create_access_token("admin-1", {"role": "admin"})
        principal = get_current_principal(f"Bearer {token}")
        assert principal == Principal(user_id="admin-1", role="admin")
        assert principal.is_admin

    @pytest.mark.parametrize("header", [None, "Basic abc", "Bearer", "Bearer garbage"])
    def test_invalid_headers(self, header):
        """Test missing and malformed authorization headers"""
        with pytest.raises(HTTPException) as exc:
            get_current_principal(header)
        assert exc.value.status_code == 401

    def test_expired_token(self):
        """Test expired tokens are refused"""
        token = jwt_utils.create_access_token("user-1", minutes=-1)
        with pytest.raises(HTTPException):
            get_current_principal(f"Bearer {token}")

    def test_require_admin(self):
        """Test non-admin principals are forbidden"""
        with pytest.raises(HTTPException) as exc:
            require_admin(Principal(user_id="user-1"))
        assert exc.value.status_code == 403
        assert require_admin(Principal(user_id="a", role="admin")).is_admin
