import base64
import logging
import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict

import requests

from core.config import settings
from services.errors import GatewayTimeout, GatewayUnavailable


logger = logging.getLogger(__name__)

SANDBOX_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_URL = "https://api.safaricom.co.ke"
AUTH_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Readable messages for the response codes buyers actually run into
RESPONSE_MESSAGES = {
    "1032": "Request cancelled by user",
    "1031": "Request cancelled by user",
    "1037": "Request timeout - user did not respond",
    "1014": "Invalid phone number format",
    "400.002.02": "Invalid request",
    "400.002.08": "Invalid phone number",
}


def _base_url() -> str:
    return PRODUCTION_URL if settings.MPESA_ENVIRONMENT == "production" else SANDBOX_URL


def normalize_msisdn(phone: str) -> str:
    """
    Normalize a Kenyan mobile number to the 2547XXXXXXXX form the provider expects.

    Accepts 07XX..., +2547XX..., 2547XX... and the bare 9-digit subscriber
    number. Raises ValueError for anything that does not end up as 12 digits
    starting with 254.
    """
    cleaned = re.sub(r"\D", "", phone or "")
    if cleaned.startswith("0"):
        cleaned = "254" + cleaned[1:]
    elif len(cleaned) == 9 and not cleaned.startswith("254"):
        cleaned = "254" + cleaned
    if len(cleaned) != 12 or not cleaned.startswith("254"):
        raise ValueError(f"Invalid phone number: expected 254XXXXXXXXX, got {cleaned or phone!r}")
    return cleaned


def timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, ts: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{ts}".encode("utf-8")).decode("ascii")


def _check_configuration() -> None:
    if not (settings.MPESA_CONSUMER_KEY and settings.MPESA_CONSUMER_SECRET):
        logger.error("M-Pesa credentials are missing")
        raise GatewayUnavailable("M-Pesa payments are not configured")
    if not (settings.MPESA_SHORTCODE and settings.MPESA_PASSKEY and settings.MPESA_CALLBACK_URL):
        logger.error("M-Pesa shortcode, passkey or callback URL is missing")
        raise GatewayUnavailable("M-Pesa payments are not configured")
    if not settings.MPESA_CALLBACK_URL.startswith("https://"):
        logger.error("MPESA_CALLBACK_URL must be a public HTTPS URL")
        raise GatewayUnavailable("M-Pesa payments are not configured")


def get_access_token() -> str:
    try:
        resp = requests.get(
            f"{_base_url()}{AUTH_PATH}",
            auth=(settings.MPESA_CONSUMER_KEY, settings.MPESA_CONSUMER_SECRET),
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
        token = resp.json().get("access_token")
    except requests.Timeout as exc:
        # Nothing was sent to the buyer yet, so this is a plain failure
        raise GatewayUnavailable() from exc
    except (requests.RequestException, ValueError) as exc:
        logger.error("M-Pesa auth failed: %s", exc)
        raise GatewayUnavailable() from exc
    if not token:
        logger.error("M-Pesa auth response had no access token")
        raise GatewayUnavailable()
    return token


def stk_push(phone: str, amount: Decimal, account_reference: str, description: str) -> Dict[str, Any]:
    """Send an STK push prompt to ``phone``. Returns the provider's acknowledgement."""
    _check_configuration()
    msisdn = normalize_msisdn(phone)
    whole_amount = int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if whole_amount <= 0:
        raise ValueError(f"Invalid amount: {amount}. Amount must be greater than 0")

    token = get_access_token()
    ts = timestamp()
    body = {
        "BusinessShortCode": settings.MPESA_SHORTCODE,
        "Password": stk_password(settings.MPESA_SHORTCODE, settings.MPESA_PASSKEY, ts),
        "Timestamp": ts,
        "TransactionType": "CustomerPayBillOnline",
        "Amount": str(whole_amount),
        "PartyA": msisdn,
        "PartyB": settings.MPESA_SHORTCODE,
        "PhoneNumber": msisdn,
        "CallBackURL": settings.MPESA_CALLBACK_URL,
        "AccountReference": account_reference,
        "TransactionDesc": description,
    }
    logger.info(
        "Initiating STK push",
        extra={"account_reference": account_reference, "environment": settings.MPESA_ENVIRONMENT},
    )

    try:
        resp = requests.post(
            f"{_base_url()}{STK_PUSH_PATH}",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
    except requests.Timeout as exc:
        # The prompt may already be on the buyer's phone
        logger.warning("STK push timed out", extra={"account_reference": account_reference})
        raise GatewayTimeout() from exc
    except requests.RequestException as exc:
        logger.error("STK push request failed: %s", exc)
        raise GatewayUnavailable() from exc

    try:
        data = resp.json()
    except ValueError as exc:
        logger.error("STK push returned non-JSON response", extra={"status": resp.status_code})
        raise GatewayUnavailable() from exc

    code = str(data.get("ResponseCode", ""))
    if not resp.ok or code != "0":
        message = RESPONSE_MESSAGES.get(code) or data.get("errorMessage") or data.get("ResponseDescription")
        logger.error("STK push rejected (code %s): %s", code or resp.status_code, message)
        raise GatewayUnavailable()

    return data


def query_stk_status(checkout_request_id: str) -> Dict[str, Any]:
    """Ask the provider for the state of an STK push it has not called back about yet."""
    _check_configuration()
    token = get_access_token()
    ts = timestamp()
    body = {
        "BusinessShortCode": settings.MPESA_SHORTCODE,
        "Password": stk_password(settings.MPESA_SHORTCODE, settings.MPESA_PASSKEY, ts),
        "Timestamp": ts,
        "CheckoutRequestID": checkout_request_id,
    }
    try:
        resp = requests.post(
            f"{_base_url()}{STK_QUERY_PATH}",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
        return resp.json()
    except (requests.RequestException, ValueError) as exc:
        logger.error("STK status query failed: %s", exc)
        raise GatewayUnavailable() from exc
