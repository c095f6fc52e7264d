from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from core.db import get_db
from models.order import Order
from security import jwt as jwt_utils
from services.gateways import PushGateway, RedirectGateway
from services.notifications import NotificationDispatcher
from services.reconciliation import ReconciliationEngine


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_current_principal(authorization: Optional[str] = Header(default=None, alias="Authorization")) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt_utils.decode_access(token)
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if payload.get("type", "access") != "access" or not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return Principal(user_id=str(payload["sub"]), role=payload.get("role"))


def get_optional_principal(authorization: Optional[str] = Header(default=None, alias="Authorization")) -> Optional[Principal]:
    """Guest checkouts carry no token; a token that is present must still be valid."""
    if authorization is None:
        return None
    return get_current_principal(authorization)


def authorize_order(db: Session, order_id: int, principal: Optional[Principal]) -> None:
    """
    Only the owner of an order may pay for it. Guest orders (no ``user_id``)
    are open to anyone holding the order id. Unknown orders fall through so
    the engine reports them as not found.
    """
    order = db.get(Order, order_id)
    if order is None or order.user_id is None:
        return
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    if principal.user_id != order.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to pay for this order")


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return principal


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_engine(db: Session = Depends(get_db), dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> ReconciliationEngine:
    return ReconciliationEngine(db, dispatcher)


def get_push_gateway() -> PushGateway:
    return PushGateway()


def get_redirect_gateway() -> RedirectGateway:
    return RedirectGateway()
