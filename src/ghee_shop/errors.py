"""Exception hierarchy shared by the service and HTTP layers.

Each exception carries the HTTP status the web layer answers with.  Anything
that is not a :class:`ShopError` is treated as an unexpected failure (500).
"""

from __future__ import annotations


class ShopError(Exception):
    """Base class for expected, client-visible failures."""

    status = 500
    code = "SHOP_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ShopError):
    status = 400
    code = "VALIDATION_ERROR"


class InvalidStatusError(ValidationError):
    code = "INVALID_STATUS"

    def __init__(self, status: str) -> None:
        super().__init__(f"Invalid status: {status!r}")
        self.requested = status


class InvalidTransitionError(ValidationError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move order from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class PaymentVerificationError(ShopError):
    status = 400
    code = "PAYMENT_VERIFICATION_FAILED"


class AuthorizationError(ShopError):
    status = 403
    code = "FORBIDDEN"


class NotFoundError(ShopError):
    status = 404
    code = "NOT_FOUND"


class ProductNotFoundError(NotFoundError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: object) -> None:
        super().__init__(f"Product with ID {product_id} not found")
        self.product_id = product_id


class OrderNotFoundError(NotFoundError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, reference: object) -> None:
        super().__init__(f"Order {reference} not found")
        self.reference = reference


class PaymentGatewayError(ShopError):
    """The payment provider could not be reached or refused the request."""

    status = 502
    code = "PAYMENT_GATEWAY_ERROR"
