from bookrent.models.user import User
from bookrent.models.booking import Booking
from bookrent.models.payment_method import PaymentMethod
from bookrent.models.conversion_rate import ConversionRate
from bookrent.models.payment import Payment
from bookrent.models.security_deposit import SecurityDepositAuthorization
from bookrent.models.gateway_event import GatewayEvent
from bookrent.models.audit_log import AuditLog

__all__ = [
    "User", "Booking", "PaymentMethod", "ConversionRate",
    "Payment", "SecurityDepositAuthorization",
    "GatewayEvent", "AuditLog"
]
