from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, Numeric, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base
from models.enums import OrderStatus, PaymentStatus


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    # Human-facing number, immutable once assigned at checkout
    order_number: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    # Subject of the external auth provider; None for guest checkouts
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    customer_name: Mapped[str] = mapped_column(String(255), default="")
    email: Mapped[str] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="KES")
    status: Mapped[OrderStatus] = mapped_column(
        SAEnum(OrderStatus, native_enum=False, length=20), default=OrderStatus.PENDING
    )
    # Kept in lockstep with Payment.status by the reconciliation engine
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus, native_enum=False, length=20), default=PaymentStatus.PENDING
    )
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    payment = relationship("Payment", back_populates="order", uselist=False)
