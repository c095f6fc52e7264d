from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Numeric, JSON, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base
from models.enums import PaymentMethod, PaymentStatus


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    # unique: an order has at most one payment
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), unique=True, index=True)
    method: Mapped[PaymentMethod] = mapped_column(SAEnum(PaymentMethod, native_enum=False, length=30))
    status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus, native_enum=False, length=20), default=PaymentStatus.PENDING, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="KES")

    # Correlation keys: many NULLs allowed, any non-null value belongs to one payment only
    push_checkout_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    redirect_reference: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    manual_reference_number: Mapped[str | None] = mapped_column(String(50), unique=True, nullable=True)

    push_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    push_merchant_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    manual_sender_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    redirect_channel: Mapped[str | None] = mapped_column(String(50), nullable=True)
    card_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    card_brand: Mapped[str | None] = mapped_column(String(50), nullable=True)
    external_receipt_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    provider_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("Order", back_populates="payment")
