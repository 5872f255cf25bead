"""Exceptions raised by the fulfillment engine.

Four families: validation (bad input, nothing persisted), conflict (the
request is well formed but the current state forbids it), not-found (absent,
or owned by someone else) and storage (the database could not be reached or
stayed locked after retries).
"""

from __future__ import annotations


class FulfillmentError(Exception):
    """Base exception for all engine errors."""

    pass


# ---------------------------
# Validation
# ---------------------------


class ValidationError(FulfillmentError):
    """Malformed or out-of-range input."""

    pass


class EmptyCart(ValidationError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("Cart is empty")


class InvalidAddress(ValidationError):
    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(
            f"Complete shipping address is required (missing: {', '.join(missing)})"
        )


class InvalidStatus(ValidationError):
    def __init__(self, field: str, value: str, reason: str | None = None):
        self.field = field
        self.value = value
        msg = f"Invalid {field}: {value}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


# ---------------------------
# Conflict
# ---------------------------


class ConflictError(FulfillmentError):
    """The current state of the records does not allow the operation."""

    pass


class InsufficientStock(ConflictError):
    def __init__(self, product_id: str, product_name: str, available: int):
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_name}. Available: {available}"
        )


class OrderNotCancellable(ConflictError):
    def __init__(self, order_id: str, order_status: str):
        self.order_id = order_id
        self.order_status = order_status
        super().__init__(f"Order {order_id} cannot be cancelled ({order_status})")


class DuplicateSerial(ConflictError):
    def __init__(self, serial_number: str):
        self.serial_number = serial_number
        super().__init__(
            f"Warranty already registered for serial number {serial_number}"
        )


class WarrantyExpired(ConflictError):
    def __init__(self, warranty_id: str):
        self.warranty_id = warranty_id
        super().__init__("Warranty has expired")


class AlreadyProcessed(ConflictError):
    def __init__(self, order_id: str, payment_status: str):
        self.order_id = order_id
        self.payment_status = payment_status
        super().__init__(
            f"Order {order_id} already processed (payment {payment_status})"
        )


# ---------------------------
# Not found
# ---------------------------


class NotFoundError(FulfillmentError):
    """Record absent or not visible to the caller."""

    pass


class OrderNotFound(NotFoundError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order not found")


class ProductNotFound(NotFoundError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("Product not found")


class WarrantyNotFound(NotFoundError):
    def __init__(self, warranty_id: str):
        self.warranty_id = warranty_id
        super().__init__("Warranty not found")


NotFound = WarrantyNotFound


class ClaimNotFound(NotFoundError):
    def __init__(self, claim_id: str):
        self.claim_id = claim_id
        super().__init__("Claim not found")


# ---------------------------
# Storage
# ---------------------------


class StorageError(FulfillmentError):
    pass


class StorageUnavailable(StorageError):
    """Raised when a transaction could not be committed after retries."""

    def __init__(self, attempts: int, reason: str):
        self.attempts = attempts
        self.reason = reason
        super().__init__(f"Storage unavailable after {attempts} attempt(s): {reason}")
