import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from core.config import settings
from core.db import get_db
from core.dependencies import Principal, authorize_order, get_engine, get_optional_principal, get_redirect_gateway
from core.ratelimit import rate_limit
from models.enums import PaymentStatus
from schemas.payment import PaystackInitRequest, PaystackInitResponse
from services import paystack
from services.errors import MalformedEvent, PaymentError
from services.gateways import RawEvent, RedirectGateway
from services.payment_guard import find_by_correlation
from services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/paystack", tags=["paystack"])


def _redirect(path: str) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.APP_URL.rstrip('/')}{path}", status_code=302)


@router.post(
    "/initiate",
    response_model=PaystackInitResponse,
    dependencies=[Depends(rate_limit("paystack_initiate", settings.RATE_LIMIT_PAYSTACK_INITIATE, settings.RATE_LIMIT_WINDOW_SECONDS))],
)
def initiate_payment(
    data: PaystackInitRequest,
    db: Session = Depends(get_db),
    principal: Optional[Principal] = Depends(get_optional_principal),
    engine: ReconciliationEngine = Depends(get_engine),
    gateway: RedirectGateway = Depends(get_redirect_gateway),
):
    """Create a hosted checkout session and return where to send the buyer"""
    authorize_order(db, data.order_id, principal)
    result = engine.initiate(gateway, data.order_id, {"email": data.email})
    return PaystackInitResponse(
        authorization_url=result.redirect_url,
        access_code=result.access_code,
        reference=result.correlation_key,
    )


@router.post("/webhook")
async def webhook(
    request: Request,
    engine: ReconciliationEngine = Depends(get_engine),
    gateway: RedirectGateway = Depends(get_redirect_gateway),
):
    """Signed charge events; the signature is checked over the raw body before anything else"""
    raw = RawEvent(body=await request.body(), headers=dict(request.headers))
    try:
        outcome = gateway.normalize(raw)
    except MalformedEvent as exc:
        # Signed but unusable; acknowledge so the provider stops retrying
        logger.warning("Malformed Paystack webhook acknowledged: %s", exc.detail)
        return {"received": True}
    if outcome is not None:
        await run_in_threadpool(engine.apply_outcome, gateway, outcome)
    return {"received": True}


@router.get("/callback")
def checkout_return(
    reference: Optional[str] = None,
    trxref: Optional[str] = None,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_engine),
    gateway: RedirectGateway = Depends(get_redirect_gateway),
):
    """
    Browser return from hosted checkout.

    The webhook may not have landed yet, so the transaction is verified with
    the provider and fed through the same engine before redirecting.
    """
    ref = reference or trxref
    if not ref:
        return _redirect("/orders?error=missing_reference")

    payment = find_by_correlation(db, gateway.correlation_field, ref)
    if payment is None:
        logger.warning("Checkout return for unknown reference", extra={"reference": ref})
        return _redirect("/orders?error=payment_not_found")

    if payment.status != PaymentStatus.PAID:
        try:
            outcome = gateway.normalize_verification(paystack.verify_transaction(ref))
            if outcome is not None:
                engine.apply_outcome(gateway, outcome)
        except PaymentError as exc:
            logger.warning("Checkout return verification failed: %s", exc.detail, extra={"reference": ref})
            return _redirect(f"/orders/{payment.order_id}?payment=error")

    if payment.status == PaymentStatus.PAID:
        state = "success"
    elif payment.status == PaymentStatus.FAILED:
        state = "failed"
    else:
        state = "pending"
    return _redirect(f"/orders/{payment.order_id}?payment={state}")
