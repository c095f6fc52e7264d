"""
Payment error taxonomy.

Every error carries the HTTP status it maps to and a ``detail`` that is safe
to show to a buyer or return to a provider. ``main.py`` turns these into
JSON responses.
"""


class PaymentError(Exception):
    status_code = 400
    default_detail = "Payment request could not be processed"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class Unauthorized(PaymentError):
    status_code = 401
    default_detail = "Invalid signature"


class ReferenceAlreadyUsed(Unauthorized):
    status_code = 409
    default_detail = "This reference number has already been used for another order"


class NotFound(PaymentError):
    status_code = 404
    default_detail = "Payment not found"


class Conflict(PaymentError):
    status_code = 409
    default_detail = "This payment was already completed"


class MalformedEvent(PaymentError):
    status_code = 400
    default_detail = "Malformed payment event"


class GatewayUnavailable(PaymentError):
    status_code = 503
    default_detail = "Payment could not be started, please try again"


class GatewayTimeout(GatewayUnavailable):
    """The provider did not answer in time; the attempt may still complete on its side."""

    def __init__(self, detail: str | None = None, correlation_key: str | None = None, details: dict | None = None):
        super().__init__(detail)
        self.correlation_key = correlation_key
        # Payment columns known before the provider went quiet
        self.details = details or {}
