"""Error taxonomy for the checkout flow.

Every failure the service reports to a client is a :class:`CheckoutError`
carrying a stable :class:`ErrorKind`. The HTTP layer maps kinds to status
codes through :data:`STATUS_BY_KIND`, which must cover every kind.
"""
import enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, enum.Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    PAYMENT_VERIFICATION_ERROR = "PAYMENT_VERIFICATION_ERROR"
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    SIGNATURE_ERROR = "SIGNATURE_ERROR"
    ORDER_CREATION_FAILED = "ORDER_CREATION_FAILED"
    GATEWAY_ERROR = "GATEWAY_ERROR"


STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.AUTHENTICATION_ERROR: 401,
    ErrorKind.AUTHORIZATION_ERROR: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PAYMENT_VERIFICATION_ERROR: 400,
    ErrorKind.INSUFFICIENT_INVENTORY: 409,
    ErrorKind.SIGNATURE_ERROR: 400,
    ErrorKind.ORDER_CREATION_FAILED: 500,
    ErrorKind.GATEWAY_ERROR: 502,
}


class CheckoutError(Exception):
    kind: ErrorKind
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "type": self.kind.value}


class ValidationError(CheckoutError):
    kind = ErrorKind.VALIDATION_ERROR
    default_message = "Validation failed"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.details is not None:
            body["details"] = self.details
        return body


class AuthenticationError(CheckoutError):
    kind = ErrorKind.AUTHENTICATION_ERROR
    default_message = "Unauthorized"


class AuthorizationError(CheckoutError):
    kind = ErrorKind.AUTHORIZATION_ERROR
    default_message = "Forbidden"


class NotFoundError(CheckoutError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Resource not found"


class PaymentVerificationError(CheckoutError):
    kind = ErrorKind.PAYMENT_VERIFICATION_ERROR
    default_message = "Payment could not be verified"


class InsufficientInventory(CheckoutError):
    kind = ErrorKind.INSUFFICIENT_INVENTORY
    default_message = "Insufficient inventory"

    def __init__(self, insufficient: List[str], message: Optional[str] = None):
        super().__init__(message or f"Insufficient inventory for: {', '.join(insufficient)}")
        self.insufficient = list(insufficient)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["insufficient"] = self.insufficient
        return body


class SignatureError(CheckoutError):
    kind = ErrorKind.SIGNATURE_ERROR
    default_message = "Invalid webhook signature"


class OrderCreationFailed(CheckoutError):
    kind = ErrorKind.ORDER_CREATION_FAILED
    default_message = "Failed to create order"


class GatewayError(CheckoutError):
    """The payment processor could not be reached or refused the call.

    ``retryable`` marks timeouts and connection failures: the payment state is
    unknown rather than failed, so callers re-query instead of giving up.
    """
    kind = ErrorKind.GATEWAY_ERROR
    default_message = "Payment service unavailable"

    def __init__(self, message: Optional[str] = None, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable

    @property
    def status_code(self) -> int:
        return 503 if self.retryable else super().status_code
