"""Exceptions raised by the payment services.

Routers do not catch these one by one: ``main.py`` registers a single
handler that renders any :class:`PaymentError` as ``{"detail": ...}`` with
the error's ``status_code``.
"""


class PaymentError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class CheckoutError(PaymentError):
    status_code = 400


class CourseNotFound(PaymentError):
    status_code = 404


class AlreadyEnrolled(PaymentError):
    status_code = 409


class PaymentNotFound(PaymentError):
    status_code = 404


class InvalidTransition(PaymentError):
    status_code = 409


class GatewayError(PaymentError):
    """The provider answered, but with an error or an unusable response."""

    status_code = 502


class TransientGatewayError(GatewayError):
    """The provider could not be reached in time; safe to retry later."""

    status_code = 503


class VerificationError(PaymentError):
    """Operator-supplied verification data was refused; nothing was changed."""

    status_code = 400
