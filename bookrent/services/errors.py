# FILE: bookrent/services/errors.py
"""Error taxonomy of the payment core.

Validation and state-conflict errors go back to the caller synchronously.
Gateway errors carry the gateway's own message. ``UnknownTransaction`` and
``ReconciliationFault`` only surface on the webhook path, where they are
logged and recorded on the gateway event row.
"""
from typing import Optional


class PaymentError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# ---------- validation (caller error, not retried) ----------

class PaymentValidationError(PaymentError):
    status_code = 400


class UnknownPaymentMethod(PaymentValidationError):
    def __init__(self, method_type: str):
        super().__init__(f"Payment method {method_type} not found")
        self.method_type = method_type


class MethodDisabled(PaymentValidationError):
    def __init__(self, method_type: str, reason: str = "disabled"):
        super().__init__(f"Payment method {method_type} is {reason}")
        self.method_type = method_type


class InvalidAmount(PaymentValidationError):
    pass


class NoApplicableRate(PaymentValidationError):
    def __init__(self, from_currency: str, to_currency: str):
        super().__init__(f"No conversion rate available for {from_currency} to {to_currency}")
        self.from_currency = from_currency
        self.to_currency = to_currency


class CaptureExceedsAuthorization(PaymentValidationError):
    pass


class MissingCaptureReason(PaymentValidationError):
    pass


class BookingNotPayable(PaymentValidationError):
    pass


# ---------- lookups ----------

class NotFoundError(PaymentError):
    status_code = 404


class BookingNotFound(NotFoundError):
    def __init__(self, booking_id: str):
        super().__init__(f"Booking not found: {booking_id}")


class PaymentNotFound(NotFoundError):
    def __init__(self, payment_id: str):
        super().__init__(f"Payment not found: {payment_id}")


class AuthorizationNotFound(NotFoundError):
    def __init__(self, authorization_id: str):
        super().__init__(f"Authorization not found: {authorization_id}")


# ---------- state machine ----------

class StateConflict(PaymentError):
    status_code = 409

    def __init__(self, entity: str, current: str, requested: str, message: Optional[str] = None):
        super().__init__(message or f"Cannot move {entity} from '{current}' to '{requested}'")
        self.entity = entity
        self.current = current
        self.requested = requested


# ---------- external dependency ----------

class GatewayError(PaymentError):
    status_code = 502


# ---------- reconciliation ----------

class UnknownTransaction(PaymentError):
    status_code = 404

    def __init__(self, reference: str):
        super().__init__(f"No payment found for gateway reference {reference}")
        self.reference = reference


class ReconciliationFault(PaymentError):
    status_code = 500
