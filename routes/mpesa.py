import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from core.config import settings
from core.db import get_db
from core.dependencies import Principal, authorize_order, get_engine, get_optional_principal, get_push_gateway
from core.ratelimit import rate_limit
from schemas.payment import MpesaInitRequest, MpesaInitResponse, PaymentStatusOut
from services.errors import MalformedEvent
from services.gateways import PushGateway, RawEvent
from services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mpesa", tags=["mpesa"])

# The provider retries anything that is not acknowledged with this body
ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}


@router.post(
    "/initiate",
    response_model=MpesaInitResponse,
    dependencies=[Depends(rate_limit("mpesa_initiate", settings.RATE_LIMIT_MPESA_INITIATE, settings.RATE_LIMIT_WINDOW_SECONDS))],
)
def initiate_payment(
    data: MpesaInitRequest,
    db: Session = Depends(get_db),
    principal: Optional[Principal] = Depends(get_optional_principal),
    engine: ReconciliationEngine = Depends(get_engine),
    gateway: PushGateway = Depends(get_push_gateway),
):
    """Send an STK push prompt to the buyer's phone"""
    authorize_order(db, data.order_id, principal)
    result = engine.initiate(gateway, data.order_id, {"phone_number": data.phone_number})
    return MpesaInitResponse(
        checkout_request_id=result.correlation_key,
        message=result.buyer_message,
        order_id=data.order_id,
    )


@router.post("/callback")
async def stk_callback(
    request: Request,
    engine: ReconciliationEngine = Depends(get_engine),
    gateway: PushGateway = Depends(get_push_gateway),
):
    """STK push result from the provider; unauthenticated, correlated by checkout id"""
    raw = RawEvent(body=await request.body(), headers=dict(request.headers))
    try:
        outcome = gateway.normalize(raw)
    except MalformedEvent as exc:
        # Acknowledge so the provider stops retrying a payload we will never accept
        logger.warning("Malformed M-Pesa callback acknowledged: %s", exc.detail)
        return ACCEPTED

    await run_in_threadpool(engine.apply_outcome, gateway, outcome)
    return ACCEPTED


@router.post(
    "/status/{checkout_request_id}",
    response_model=PaymentStatusOut,
    dependencies=[Depends(rate_limit("mpesa_status", settings.RATE_LIMIT_MPESA_INITIATE, settings.RATE_LIMIT_WINDOW_SECONDS))],
)
def query_status(
    checkout_request_id: str,
    engine: ReconciliationEngine = Depends(get_engine),
    gateway: PushGateway = Depends(get_push_gateway),
):
    """Ask the provider about a push whose callback never arrived"""
    result = engine.reconcile_push_status(gateway, checkout_request_id)
    return PaymentStatusOut(payment_id=result.payment_id, status=result.status, applied=result.applied)
