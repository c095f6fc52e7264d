import hashlib
import hmac
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict

import requests

from core.config import settings
from services.errors import GatewayTimeout, GatewayUnavailable


logger = logging.getLogger(__name__)

PAYSTACK_BASE_URL = "https://api.paystack.co"


def _headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {settings.PAYSTACK_SECRET_KEY}",
        "Content-Type": "application/json",
    }


def to_minor_units(amount: Decimal) -> int:
    """Paystack amounts are sent in the currency's subunit (kobo, cents)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int | str) -> Decimal:
    return (Decimal(str(amount)) / 100).quantize(Decimal("0.01"))


def _request(method: str, path: str, *, reference: str | None = None, **kwargs) -> Dict[str, Any]:
    if not settings.PAYSTACK_SECRET_KEY:
        raise GatewayUnavailable("Card payments are not configured")
    try:
        resp = requests.request(
            method,
            f"{PAYSTACK_BASE_URL}{path}",
            headers=_headers(),
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            **kwargs,
        )
    except requests.Timeout as exc:
        logger.warning("Paystack request timed out", extra={"path": path, "reference": reference})
        raise GatewayTimeout(correlation_key=reference) from exc
    except requests.RequestException as exc:
        logger.error("Paystack request failed: %s", exc, extra={"path": path})
        raise GatewayUnavailable() from exc

    try:
        data = resp.json()
    except ValueError as exc:
        logger.error("Paystack returned non-JSON response", extra={"path": path, "status": resp.status_code})
        raise GatewayUnavailable() from exc

    if not resp.ok or not data.get("status"):
        logger.error(
            "Paystack rejected request: %s",
            data.get("message"),
            extra={"path": path, "status": resp.status_code},
        )
        raise GatewayUnavailable()
    return data


def initialize_transaction(email: str, amount: Decimal, reference: str, currency: str | None = None, callback_url: str | None = None, metadata: Dict[str, Any] | None = None) -> Dict[str, Any]:
    payload = {
        "email": email,
        "amount": to_minor_units(amount),
        "reference": reference,
        "currency": currency or settings.PAYMENT_CURRENCY,
    }
    if callback_url or settings.PAYSTACK_CALLBACK_URL:
        payload["callback_url"] = callback_url or settings.PAYSTACK_CALLBACK_URL
    if metadata:
        payload["metadata"] = metadata

    return _request("POST", "/transaction/initialize", reference=reference, json=payload)


def verify_transaction(reference: str) -> Dict[str, Any]:
    return _request("GET", f"/transaction/verify/{reference}", reference=reference)


def verify_signature(raw_body: bytes, signature: str | None) -> bool:
    """HMAC-SHA512 of the exact request bytes, hex encoded, compared in constant time."""
    secret = settings.PAYSTACK_WEBHOOK_SECRET
    if not signature or not secret:
        return False
    computed = hmac.new(secret.encode("utf-8"), raw_body or b"", hashlib.sha512).hexdigest()
    return hmac.compare_digest(computed, signature.strip())
