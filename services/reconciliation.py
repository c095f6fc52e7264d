"""
Payment reconciliation engine.

Drives a payment and its order through PENDING -> PROCESSING -> PAID/FAILED
in response to initiation requests, provider callbacks, manual submissions
and admin reviews. Every status write is a conditional UPDATE checked by
affected-row count, so concurrent or replayed events settle a payment at
most once and PAID is never left again.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from core.config import settings
from core.db import atomic
from models.enums import OrderStatus, PaymentMethod, PaymentStatus
from models.order import Order
from models.payment import Payment
from services.errors import Conflict, GatewayTimeout, GatewayUnavailable, NotFound, ReferenceAlreadyUsed
from services.gateways import (
    GatewayAdapter,
    InitiationResult,
    ManualGateway,
    OutcomeResult,
    PaymentOutcome,
    PushGateway,
)
from services.notifications import NotificationDispatcher, NotificationKind, build_payload
from services.payment_guard import (
    create_payment,
    find_by_correlation,
    find_for_order,
    reference_owner,
    update_payment,
)
from services import mpesa


logger = logging.getLogger(__name__)

# A later success may still settle a failed attempt; a failure never touches FAILED or PAID
SETTLEABLE = (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED)
FAILABLE = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)
INITIABLE = (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED)


@dataclass(frozen=True)
class ReconciliationResult:
    payment_id: int
    order_id: int
    status: PaymentStatus
    # False when the event was a replay or arrived after settlement
    applied: bool


class ReconciliationEngine:
    def __init__(
        self,
        db: Session,
        dispatcher: NotificationDispatcher,
        enforce_amount_match: Optional[bool] = None,
        manual_gateway: Optional[ManualGateway] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.enforce_amount_match = settings.ENFORCE_AMOUNT_MATCH if enforce_amount_match is None else enforce_amount_match
        self.manual_gateway = manual_gateway or ManualGateway()

    def _get_order(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFound("Order not found")
        return order

    # Initiation

    def initiate(self, adapter: GatewayAdapter, order_id: int, buyer_input: Dict[str, Any]) -> InitiationResult:
        """
        Start a push or redirect payment for an order.

        Re-initiating an unsettled attempt updates the existing payment in
        place. A cash-on-delivery payment is replaced by a fresh gateway
        payment. A timeout leaves the payment PROCESSING, since the provider
        may still complete the transaction and call back.
        """
        order = self._get_order(order_id)
        payment = find_for_order(self.db, order.id)
        self._check_initiable(order, payment)

        # Don't hold a transaction open across the provider call
        self.db.commit()

        try:
            result = adapter.initiate(order, buyer_input)
        except GatewayTimeout as exc:
            logger.warning(
                "Gateway timed out during initiation; leaving payment in PROCESSING",
                extra={"order_id": order.id, "method": adapter.method.value},
            )
            self._record_attempt(adapter, order, exc.correlation_key, exc.details, {"timeout": True})
            raise GatewayUnavailable() from exc

        self._record_attempt(adapter, order, result.correlation_key, result.details, result.provider_response)
        logger.info(
            "Payment initiated",
            extra={"order_id": order.id, "method": adapter.method.value, "correlation_key": result.correlation_key},
        )
        return result

    def _check_initiable(self, order: Order, payment: Optional[Payment]) -> None:
        if (payment and payment.status == PaymentStatus.PAID) or order.payment_status == PaymentStatus.PAID:
            raise Conflict("Payment already completed")
        switching_from_cash = payment is not None and payment.method == PaymentMethod.CASH_ON_DELIVERY
        if order.payment_status not in INITIABLE and not switching_from_cash:
            raise Conflict(f"Order payment status is {order.payment_status.value}. Cannot initiate new payment.")
        if order.total is None or Decimal(str(order.total)) <= 0:
            raise Conflict("Order total must be greater than 0")

    def _record_attempt(
        self,
        adapter: GatewayAdapter,
        order: Order,
        correlation_key: Optional[str],
        details: Dict[str, Any],
        provider_response: Dict[str, Any],
    ) -> Payment:
        values = {
            "method": adapter.method,
            "status": PaymentStatus.PROCESSING,
            "error_message": None,
            "provider_response": provider_response,
            **{k: v for k, v in details.items() if v is not None},
        }
        if correlation_key:
            values[adapter.correlation_field] = correlation_key
        on_conflict = Conflict("Payment reference already in use")

        with atomic(self.db):
            payment = find_for_order(self.db, order.id, lock=True)
            # Re-checked under lock: a callback may have settled it during the provider call
            if payment is not None and payment.status == PaymentStatus.PAID:
                raise Conflict("Payment already completed")

            payment = self._discard_other_method(payment, adapter.method)

            if payment is None:
                values.update(amount=order.total, currency=order.currency)
                payment = create_payment(self.db, order.id, values, on_conflict)
            else:
                payment = update_payment(self.db, payment, values, on_conflict)
            order.payment_status = PaymentStatus.PROCESSING
        return payment

    def _discard_other_method(self, payment: Optional[Payment], method: PaymentMethod) -> Optional[Payment]:
        """
        A payment belongs to one method. Switching methods drops the old row,
        correlation keys included, so a late event for the old method finds nothing.
        """
        if payment is None or payment.method == method:
            return payment
        logger.info(
            "Replacing payment on method change",
            extra={"order_id": payment.order_id, "payment_id": payment.id, "from": payment.method.value, "to": method.value},
        )
        self.db.delete(payment)
        self.db.flush()
        return None

    # Outcomes

    def apply_outcome(self, adapter: GatewayAdapter, outcome: PaymentOutcome) -> ReconciliationResult:
        payment = find_by_correlation(self.db, adapter.correlation_field, outcome.correlation_key)
        if payment is None:
            logger.warning(
                "No payment for correlation key",
                extra={"method": adapter.method.value, "correlation_key": outcome.correlation_key},
            )
            raise NotFound("Payment not found")
        return self._settle(adapter, payment, outcome)

    def _settle(self, adapter: GatewayAdapter, payment: Payment, outcome: PaymentOutcome) -> ReconciliationResult:
        if payment.status == PaymentStatus.PAID:
            logger.info(
                "Payment already PAID; acknowledging without changes",
                extra={"payment_id": payment.id, "result": outcome.result.value},
            )
            return ReconciliationResult(payment.id, payment.order_id, payment.status, applied=False)

        outcome = self._check_amount(adapter, payment, outcome)
        if outcome.succeeded:
            applied = self._mark_paid(adapter, payment, outcome)
        else:
            applied = self._mark_failed(payment, outcome)

        self.db.refresh(payment)
        self.db.refresh(payment.order)
        if applied:
            logger.info(
                "Payment transitioned",
                extra={"payment_id": payment.id, "order_id": payment.order_id, "status": payment.status.value},
            )
            self._dispatch(adapter, payment)
        else:
            logger.info(
                "Duplicate or stale outcome ignored",
                extra={"payment_id": payment.id, "status": payment.status.value, "result": outcome.result.value},
            )
        return ReconciliationResult(payment.id, payment.order_id, payment.status, applied=applied)

    def _check_amount(self, adapter: GatewayAdapter, payment: Payment, outcome: PaymentOutcome) -> PaymentOutcome:
        if not (self.enforce_amount_match and outcome.succeeded and outcome.reported_amount is not None):
            return outcome
        quantum = adapter.amount_quantum
        expected = Decimal(str(payment.amount)).quantize(quantum, rounding=ROUND_HALF_UP)
        reported = outcome.reported_amount.quantize(quantum, rounding=ROUND_HALF_UP)
        if reported == expected:
            return outcome
        logger.warning(
            "Reported amount does not match payment amount",
            extra={"payment_id": payment.id, "expected": str(expected), "reported": str(reported)},
        )
        return replace(
            outcome,
            result=OutcomeResult.FAILURE,
            failure_reason=f"Amount mismatch: expected {expected}, received {reported}",
            details={},
        )

    def _mark_paid(self, adapter: GatewayAdapter, payment: Payment, outcome: PaymentOutcome) -> bool:
        values = {
            "status": PaymentStatus.PAID,
            "paid_at": outcome.reported_at or datetime.utcnow(),
            "error_message": None,
            "provider_response": outcome.raw_payload,
            **{k: v for k, v in outcome.details.items() if v is not None},
        }
        if outcome.external_receipt_id:
            values["external_receipt_id"] = outcome.external_receipt_id

        with atomic(self.db):
            result = self.db.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status.in_(SETTLEABLE))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            self.db.execute(
                update(Order)
                .where(Order.id == payment.order_id)
                .values(payment_status=PaymentStatus.PAID)
                .execution_options(synchronize_session=False)
            )
            # Fulfillment only moves forward, and only from PENDING
            self.db.execute(
                update(Order)
                .where(Order.id == payment.order_id, Order.status == OrderStatus.PENDING)
                .values(status=adapter.paid_order_status)
                .execution_options(synchronize_session=False)
            )
        return True

    def _mark_failed(self, payment: Payment, outcome: PaymentOutcome) -> bool:
        reason = (outcome.failure_reason or "Payment failed")[:500]
        with atomic(self.db):
            result = self.db.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status.in_(FAILABLE))
                .values(status=PaymentStatus.FAILED, error_message=reason, provider_response=outcome.raw_payload)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            self.db.execute(
                update(Order)
                .where(Order.id == payment.order_id)
                .values(payment_status=PaymentStatus.FAILED)
                .execution_options(synchronize_session=False)
            )
        return True

    def _dispatch(self, adapter: GatewayAdapter, payment: Payment) -> None:
        payload = build_payload(payment.order, payment)
        if payment.status == PaymentStatus.PAID:
            self.dispatcher.notify(NotificationKind.PAYMENT_RECEIVED, payment.order_id, payload)
            if adapter.confirms_order:
                self.dispatcher.notify(NotificationKind.ORDER_CONFIRMED, payment.order_id, payload)
        elif payment.status == PaymentStatus.FAILED:
            self.dispatcher.notify(NotificationKind.PAYMENT_FAILED, payment.order_id, payload)

    def reconcile_push_status(self, adapter: PushGateway, checkout_request_id: str) -> ReconciliationResult:
        """Ask the provider about an STK push whose callback never arrived."""
        payment = find_by_correlation(self.db, adapter.correlation_field, checkout_request_id)
        if payment is None:
            raise NotFound("Payment not found")
        if payment.status in (PaymentStatus.PAID, PaymentStatus.FAILED):
            return ReconciliationResult(payment.id, payment.order_id, payment.status, applied=False)

        outcome = adapter.normalize_status_query(checkout_request_id, mpesa.query_stk_status(checkout_request_id))
        if outcome is None:
            return ReconciliationResult(payment.id, payment.order_id, payment.status, applied=False)
        return self._settle(adapter, payment, outcome)

    # Manual payments

    def submit_manual(self, order_id: int, reference_number: str, sender_name: str) -> Payment:
        """
        Record a buyer-reported reference number for admin review.

        The same order may resubmit (to correct the sender name, say) until
        the payment is PAID; a reference already attached to another order's
        payment is refused.
        """
        values = {
            "method": PaymentMethod.MANUAL,
            "status": PaymentStatus.PENDING,
            "manual_reference_number": reference_number,
            "manual_sender_name": sender_name,
            "error_message": None,
        }
        with atomic(self.db):
            order = self._get_order(order_id)
            payment = find_for_order(self.db, order.id, lock=True)
            if payment is not None and payment.status == PaymentStatus.PAID:
                raise Conflict("Payment already completed")

            payment = self._discard_other_method(payment, PaymentMethod.MANUAL)

            owner = reference_owner(self.db, "manual_reference_number", reference_number)
            if owner is not None and owner != order.id:
                logger.warning(
                    "Manual reference number reused across orders",
                    extra={"order_id": order.id, "owner_order_id": owner},
                )
                raise ReferenceAlreadyUsed()

            if payment is None:
                values.update(amount=order.total, currency=order.currency)
                payment = create_payment(self.db, order.id, values, ReferenceAlreadyUsed())
            else:
                payment = update_payment(self.db, payment, values, ReferenceAlreadyUsed())
            order.payment_status = PaymentStatus.PENDING

        logger.info("Manual payment submitted", extra={"order_id": order.id, "payment_id": payment.id})
        self.dispatcher.notify(NotificationKind.MANUAL_PAYMENT_SUBMITTED, order.id, build_payload(order, payment))
        return payment

    def review_manual(self, payment_id: int, approved: bool, reason: Optional[str] = None, reviewer: Optional[str] = None) -> ReconciliationResult:
        """Apply an admin's approve/reject decision through the same transition rules."""
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        if payment.method != PaymentMethod.MANUAL:
            raise Conflict("Only manual payments can be reviewed")
        if payment.status == PaymentStatus.PAID:
            raise Conflict("Payment already approved" if approved else "Cannot reject an already approved payment")

        key = payment.manual_reference_number or f"payment-{payment.id}"
        outcome = self.manual_gateway.normalize(ManualGateway.review_event(key, approved, reason, reviewer))
        return self._settle(self.manual_gateway, payment, outcome)

    # Receipts

    def get_receipt(self, payment_id: int) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        if payment.status != PaymentStatus.PAID:
            raise Conflict("Payment is not settled")
        return payment
