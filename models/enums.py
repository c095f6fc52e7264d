import enum


class OrderStatus(str, enum.Enum):
    """Fulfillment status of an order."""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, enum.Enum):
    MPESA = "MPESA"  # STK push
    PAYSTACK = "PAYSTACK"  # hosted redirect
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"
    MANUAL = "MANUAL"  # self-reported reference, reviewed by an admin
