"""
Gateway adapters.

Each adapter knows how to start a payment attempt with its provider
(``initiate``) and how to turn that provider's asynchronous notification
into a canonical ``PaymentOutcome`` (``normalize``). State changes are left
to the reconciliation engine, which treats all three adapters the same way.
"""
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from models.enums import OrderStatus, PaymentMethod
from models.order import Order
from schemas.mpesa import StkCallbackEnvelope
from services import mpesa, paystack
from services.errors import Conflict, GatewayTimeout, GatewayUnavailable, MalformedEvent, Unauthorized


logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-paystack-signature", "x-webhook-signature")
EAT_OFFSET = timedelta(hours=3)


class OutcomeResult(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass(frozen=True)
class RawEvent:
    """An inbound provider notification exactly as it arrived."""
    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        for key, value in self.headers.items():
            if key.lower() == name.lower():
                return value
        return None


@dataclass(frozen=True)
class PaymentOutcome:
    correlation_key: str
    result: OutcomeResult
    reported_amount: Optional[Decimal] = None
    reported_at: Optional[datetime] = None
    external_receipt_id: Optional[str] = None
    failure_reason: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    # Adapter-specific Payment columns to record alongside the transition
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result is OutcomeResult.SUCCESS


@dataclass(frozen=True)
class InitiationResult:
    correlation_key: str
    buyer_message: str
    redirect_url: Optional[str] = None
    access_code: Optional[str] = None
    provider_response: Dict[str, Any] = field(default_factory=dict)
    # Adapter-specific Payment columns stored with the attempt
    details: Dict[str, Any] = field(default_factory=dict)


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _as_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _parse_json(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body or b"")
    except (ValueError, UnicodeDecodeError) as exc:
        raise MalformedEvent("Payload is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedEvent("Payload must be a JSON object")
    return payload


class GatewayAdapter(ABC):
    method: PaymentMethod
    # Payment column holding the key the provider echoes back
    correlation_field: str
    # Fulfillment status an order moves to when this adapter settles it
    paid_order_status: OrderStatus = OrderStatus.CONFIRMED
    # Whether settling also sends the order-confirmation notification
    confirms_order: bool = False
    # Precision the reported amount is compared at
    amount_quantum: Decimal = Decimal("0.01")

    @abstractmethod
    def initiate(self, order: Order, buyer_input: Dict[str, Any]) -> InitiationResult:
        ...

    @abstractmethod
    def normalize(self, raw_event: RawEvent) -> Optional[PaymentOutcome]:
        """Return the canonical outcome, or None for events this adapter ignores."""
        ...


class PushGateway(GatewayAdapter):
    """M-Pesa STK push: the buyer approves a prompt on their phone."""

    method = PaymentMethod.MPESA
    correlation_field = "push_checkout_id"
    paid_order_status = OrderStatus.PROCESSING
    # STK push only charges whole shillings
    amount_quantum = Decimal("1")

    def initiate(self, order: Order, buyer_input: Dict[str, Any]) -> InitiationResult:
        phone = mpesa.normalize_msisdn(buyer_input["phone_number"])
        try:
            response = mpesa.stk_push(
                phone,
                order.total,
                account_reference=order.order_number,
                description=f"Payment for order {order.order_number}",
            )
        except GatewayTimeout as exc:
            # Checkout id only comes back in the response we never got
            raise GatewayTimeout(details={"push_phone": phone}) from exc
        return InitiationResult(
            correlation_key=response["CheckoutRequestID"],
            buyer_message=response.get("CustomerMessage") or "Check your phone to complete the payment",
            provider_response=response,
            details={
                "push_phone": phone,
                "push_merchant_request_id": response.get("MerchantRequestID"),
            },
        )

    def normalize(self, raw_event: RawEvent) -> PaymentOutcome:
        payload = _parse_json(raw_event.body)
        try:
            callback = StkCallbackEnvelope.model_validate(payload).Body.stkCallback
        except ValidationError as exc:
            raise MalformedEvent("Invalid callback format") from exc

        if callback.ResultCode != 0:
            return PaymentOutcome(
                correlation_key=callback.CheckoutRequestID,
                result=OutcomeResult.FAILURE,
                failure_reason=callback.ResultDesc or "Payment failed",
                raw_payload=payload,
            )

        return PaymentOutcome(
            correlation_key=callback.CheckoutRequestID,
            result=OutcomeResult.SUCCESS,
            reported_amount=_as_decimal(callback.metadata_value("Amount")),
            reported_at=self._transaction_date(callback.metadata_value("TransactionDate")),
            external_receipt_id=self._optional_str(callback.metadata_value("MpesaReceiptNumber")),
            raw_payload=payload,
            details={"push_merchant_request_id": callback.MerchantRequestID},
        )

    def normalize_status_query(self, checkout_request_id: str, response: Dict[str, Any]) -> Optional[PaymentOutcome]:
        """
        Turn an STK status query answer into an outcome.

        The provider answers with an error code and no ResultCode while the
        prompt is still open; that is not an outcome yet.
        """
        if "ResultCode" not in response:
            return None
        try:
            code = int(response["ResultCode"])
        except (TypeError, ValueError) as exc:
            raise MalformedEvent("Invalid status query response") from exc
        return PaymentOutcome(
            correlation_key=checkout_request_id,
            result=OutcomeResult.SUCCESS if code == 0 else OutcomeResult.FAILURE,
            failure_reason=None if code == 0 else (response.get("ResultDesc") or "Payment failed"),
            raw_payload=response,
        )

    @staticmethod
    def _optional_str(value: Any) -> Optional[str]:
        return str(value) if value not in (None, "") else None

    @staticmethod
    def _transaction_date(value: Any) -> Optional[datetime]:
        if value in (None, ""):
            return None
        try:
            # YYYYMMDDHHMMSS in East Africa Time (UTC+3); paid_at is stored as naive UTC
            return datetime.strptime(str(value), "%Y%m%d%H%M%S") - EAT_OFFSET
        except ValueError:
            logger.warning("Unparseable TransactionDate in callback", extra={"value": value})
            return None


class RedirectGateway(GatewayAdapter):
    """Paystack hosted checkout, settled by a signed webhook."""

    method = PaymentMethod.PAYSTACK
    correlation_field = "redirect_reference"
    paid_order_status = OrderStatus.CONFIRMED
    confirms_order = True

    @staticmethod
    def make_reference(order: Order) -> str:
        return f"ORD-{order.order_number}-{int(time.time() * 1000)}"

    def initiate(self, order: Order, buyer_input: Dict[str, Any]) -> InitiationResult:
        reference = self.make_reference(order)
        response = paystack.initialize_transaction(
            email=buyer_input["email"],
            amount=order.total,
            reference=reference,
            currency=order.currency,
            metadata={
                "order_id": order.id,
                "order_number": order.order_number,
                "customer_name": order.customer_name,
                "customer_phone": order.phone,
            },
        )
        data = response.get("data") or {}
        if not data.get("authorization_url"):
            logger.error("Paystack initialization returned no authorization URL", extra={"reference": reference})
            raise GatewayUnavailable()
        return InitiationResult(
            correlation_key=data.get("reference") or reference,
            buyer_message="Continue to the secure payment page",
            redirect_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
            provider_response=response,
        )

    def verify(self, raw_event: RawEvent) -> None:
        signature = None
        for name in SIGNATURE_HEADERS:
            signature = raw_event.header(name)
            if signature:
                break
        if not paystack.verify_signature(raw_event.body, signature):
            raise Unauthorized("Invalid signature")

    def normalize(self, raw_event: RawEvent) -> Optional[PaymentOutcome]:
        # Signature covers the exact bytes received, so check before parsing
        self.verify(raw_event)
        payload = _parse_json(raw_event.body)
        event = payload.get("event")
        if event not in ("charge.success", "charge.failed"):
            logger.info("Ignoring Paystack event", extra={"event": event})
            return None

        data = payload.get("data")
        if not isinstance(data, dict) or not data.get("reference"):
            raise MalformedEvent("Webhook data has no reference")

        succeeded = event == "charge.success" and data.get("status") == "success"
        return self._outcome(data, payload, succeeded)

    def normalize_verification(self, response: Dict[str, Any]) -> Optional[PaymentOutcome]:
        """Outcome from a transaction-verify API response (browser return path)."""
        data = response.get("data")
        if not isinstance(data, dict) or not data.get("reference"):
            raise MalformedEvent("Verification response has no reference")
        if data.get("status") not in ("success", "failed", "abandoned", "reversed"):
            # Still ongoing on the provider's side
            return None
        return self._outcome(data, response, data.get("status") == "success")

    def _outcome(self, data: Dict[str, Any], payload: Dict[str, Any], succeeded: bool) -> PaymentOutcome:
        amount = data.get("amount")
        authorization = data.get("authorization") or {}
        paid_at = None
        if succeeded and data.get("paid_at"):
            try:
                paid_at = _as_utc_naive(datetime.fromisoformat(str(data["paid_at"]).replace("Z", "+00:00")))
            except ValueError:
                logger.warning("Unparseable paid_at in Paystack event", extra={"value": data["paid_at"]})

        details = {}
        if succeeded:
            details = {
                "redirect_channel": data.get("channel"),
                "card_last4": authorization.get("last4"),
                "card_brand": authorization.get("brand"),
            }
        return PaymentOutcome(
            correlation_key=str(data["reference"]),
            result=OutcomeResult.SUCCESS if succeeded else OutcomeResult.FAILURE,
            reported_amount=paystack.from_minor_units(amount) if amount is not None else None,
            reported_at=paid_at,
            external_receipt_id=str(data["id"]) if data.get("id") is not None else None,
            failure_reason=None if succeeded else (data.get("gateway_response") or "Payment failed"),
            raw_payload=payload,
            details={k: v for k, v in details.items() if v},
        )


class ManualGateway(GatewayAdapter):
    """
    Buyer pays out of band and reports the transaction reference.

    There is nothing to initiate; the submission itself is handled by the
    engine. ``normalize`` turns an admin's review decision into an outcome.
    """

    method = PaymentMethod.MANUAL
    correlation_field = "manual_reference_number"
    paid_order_status = OrderStatus.CONFIRMED

    def initiate(self, order: Order, buyer_input: Dict[str, Any]) -> InitiationResult:
        raise Conflict("Manual payments are submitted, not initiated")

    def normalize(self, raw_event: RawEvent) -> PaymentOutcome:
        payload = _parse_json(raw_event.body)
        reference = payload.get("reference_number")
        decision = payload.get("decision")
        if not reference or decision not in ("approved", "rejected"):
            raise MalformedEvent("Review must name a reference number and a decision")
        approved = decision == "approved"
        return PaymentOutcome(
            correlation_key=str(reference),
            result=OutcomeResult.SUCCESS if approved else OutcomeResult.FAILURE,
            reported_at=datetime.utcnow() if approved else None,
            failure_reason=None if approved else (payload.get("reason") or "Payment rejected by admin"),
            raw_payload=payload,
        )

    @staticmethod
    def review_event(reference_number: str, approved: bool, reason: str | None = None, reviewer: str | None = None) -> RawEvent:
        body = {
            "reference_number": reference_number,
            "decision": "approved" if approved else "rejected",
            "reason": reason,
            "reviewer": reviewer,
        }
        return RawEvent(body=json.dumps(body).encode("utf-8"))
