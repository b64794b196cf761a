"""Error taxonomy of the settlement pipeline.

Conditional writes that lose a race are not errors: they return ``False``
or ``None`` and the caller no-ops, because another actor already applied
the same transition.
"""


class OrderflowError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(OrderflowError):
    """Bad input; rejected before any state is mutated."""
    status_code = 400


class InsufficientStock(ValidationError):
    def __init__(self, product_id: str, needed: int, available: int):
        super().__init__(
            f"Insufficient stock. Need {needed}, have {available}"
        )
        self.product_id = product_id
        self.needed = needed
        self.available = available


class InsufficientBalance(ValidationError):
    def __init__(self, user_id: str, amount: int):
        super().__init__("Insufficient wallet balance")
        self.user_id = user_id
        self.amount = amount


class NotFound(OrderflowError):
    status_code = 404


class InvariantViolation(OrderflowError):
    status_code = 409


class ExternalError(OrderflowError):
    status_code = 502


class ExternalTransientError(ExternalError):
    """Timeout, 429 or 5xx from a gateway or provider; worth retrying."""


class ExternalPermanentError(ExternalError):
    """The provider rejected the request; retrying will not help."""


class GatewayError(ExternalTransientError):
    """Payment gateway unreachable or answered with something unusable."""


class InvalidInput(ExternalPermanentError):
    """The buyer's order data cannot be fulfilled as given."""
    status_code = 400
