from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from core.config import settings
from core.db import get_db
from core.dependencies import Principal, authorize_order, get_current_principal, get_engine, get_optional_principal
from core.ratelimit import rate_limit
from models.payment import Payment
from schemas.payment import (
    ManualPaymentRequest,
    ManualPaymentResponse,
    OrderSummaryOut,
    PaymentOut,
    ReceiptOut,
)
from services.reconciliation import ReconciliationEngine

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/submit",
    response_model=ManualPaymentResponse,
    status_code=201,
    dependencies=[Depends(rate_limit("manual_submit", settings.RATE_LIMIT_MANUAL_SUBMIT, settings.RATE_LIMIT_WINDOW_SECONDS))],
)
def submit_manual_payment(
    data: ManualPaymentRequest,
    db: Session = Depends(get_db),
    principal: Optional[Principal] = Depends(get_optional_principal),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Record a bank/M-Pesa reference the buyer paid with, for admin review"""
    authorize_order(db, data.order_id, principal)
    payment = engine.submit_manual(data.order_id, data.reference_number, data.sender_name)
    return ManualPaymentResponse(
        message="Payment submitted for verification. You will be notified once it is confirmed.",
        payment_id=payment.id,
    )


@router.get("/{payment_id}/receipt", response_model=ReceiptOut)
def get_receipt(
    payment_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
):
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    if not principal.is_admin and payment.order.user_id != principal.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to view this receipt")

    payment = engine.get_receipt(payment_id)
    return ReceiptOut(
        payment=PaymentOut.model_validate(payment),
        order=OrderSummaryOut.model_validate(payment.order),
    )
