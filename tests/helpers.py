"""Test doubles and payload builders shared across test modules."""
import hashlib
import hmac
import json

from core.config import settings
from security import jwt as jwt_utils


class FakeRedis:
    """The three counter commands the rate limiter uses, kept in a dict."""

    def __init__(self):
        self._store = {}
        self._ttl = {}

    def incr(self, key):
        self._store[key] = self._store.get(key, 0) + 1
        return self._store[key]

    def expire(self, key, seconds):
        self._ttl[key] = seconds
        return True

    def ttl(self, key):
        if key not in self._store:
            return -2
        return self._ttl.get(key, -1)


class RecordingTask:
    """Stands in for the Celery task; remembers every ``delay`` call."""

    def __init__(self):
        self.calls = []

    def delay(self, kind, order_id, payload):
        self.calls.append({"kind": kind, "order_id": order_id, "payload": payload})

    def kinds(self):
        return [call["kind"] for call in self.calls]


class BrokenTask:
    def delay(self, *args, **kwargs):
        raise ConnectionError("broker unreachable")


def auth_headers(sub="user-1", role=None):
    extra = {"role": role} if role else None
    return {"Authorization": f"Bearer {jwt_utils.create_access_token(sub, extra)}"}



def stk_callback(checkout_id, result_code=0, amount=12100, receipt="QGH12345XYZ", date="20250101120000", desc=None):
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": desc or ("The service request is processed successfully." if result_code == 0 else "Request cancelled by user"),
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": int(date)},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


def paystack_event(reference, event="charge.success", amount_minor=1210000, status="success"):
    return {
        "event": event,
        "data": {
            "id": 4099260516,
            "reference": reference,
            "status": status,
            "amount": amount_minor,
            "currency": "KES",
            "channel": "card",
            "paid_at": "2025-01-01T09:00:00.000Z",
            "gateway_response": "Approved" if status == "success" else "Declined",
            "authorization": {"last4": "4081", "brand": "visa"},
        },
    }


def sign(body: bytes, secret=None) -> str:
    secret = secret or settings.PAYSTACK_WEBHOOK_SECRET
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def encode(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")
