from rest_framework import status


class CartServiceError(Exception):
    """Base for typed failures surfaced by the cart and stock services."""

    status_code = status.HTTP_400_BAD_REQUEST
    retryable = False

    def as_payload(self):
        return {"error": str(self), "retryable": self.retryable}


class NotFound(CartServiceError):
    status_code = status.HTTP_404_NOT_FOUND


class InsufficientStock(CartServiceError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message, product_id=None, requested=None, available=None):
        super().__init__(message)
        self.product_id = product_id
        self.requested = requested
        self.available = available


class EmptyCart(CartServiceError):
    status_code = status.HTTP_400_BAD_REQUEST


class LockUnavailable(CartServiceError):
    status_code = status.HTTP_423_LOCKED
    retryable = True

    def __init__(self, key):
        super().__init__(f"Resource {key} is busy, try again shortly")
        self.key = key


class TransactionAborted(CartServiceError):
    """Checkout stock commit failed after validation; decrements were undone."""

    status_code = status.HTTP_409_CONFLICT
    retryable = True
