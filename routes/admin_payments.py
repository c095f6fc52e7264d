from typing import Optional

from fastapi import APIRouter, Depends

from core.dependencies import Principal, get_engine, require_admin
from schemas.payment import RejectPaymentRequest, ReviewResponse
from services.reconciliation import ReconciliationEngine

router = APIRouter(prefix="/admin/payments", tags=["admin"])


@router.post("/{payment_id}/approve", response_model=ReviewResponse)
def approve_payment(
    payment_id: int,
    admin: Principal = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Confirm a manual payment after checking the statement"""
    result = engine.review_manual(payment_id, approved=True, reviewer=admin.user_id)
    return ReviewResponse(success=True, message="Payment approved successfully", status=result.status)


@router.post("/{payment_id}/reject", response_model=ReviewResponse)
def reject_payment(
    payment_id: int,
    data: Optional[RejectPaymentRequest] = None,
    admin: Principal = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_engine),
):
    reason = data.reason if data else None
    result = engine.review_manual(payment_id, approved=False, reason=reason, reviewer=admin.user_id)
    message = "Payment rejected" if result.applied else "Payment was already rejected"
    return ReviewResponse(success=True, message=message, status=result.status)
