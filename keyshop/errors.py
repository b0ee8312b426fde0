from enum import Enum


class CheckoutFailure(str, Enum):
    """
    User-visible failures that leave no persisted side effect. Values are
    i18n keys, translated by the storefront.
    """
    PRODUCT_NOT_FOUND = "buy.productNotFound"
    USER_BLOCKED = "buy.userBlocked"
    OUT_OF_STOCK = "buy.outOfStock"
    STOCK_LOCKED = "buy.stockLocked"
    LIMIT_EXCEEDED = "buy.limitExceeded"
    INSUFFICIENT_POINTS = "buy.insufficientPoints"
    INVALID_QUANTITY = "buy.invalidQuantity"
    INVALID_AMOUNT = "buy.invalidAmount"


class IntegrityViolation(RuntimeError):
    """Fatal for the request; operators need to look at it."""


class OrderNotFound(IntegrityViolation, LookupError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class AmountMismatch(IntegrityViolation, ValueError):
    def __init__(self, order_id: str, expected, paid):
        super().__init__(
            f"Amount mismatch on {order_id}! Order: {expected}, Paid: {paid}"
        )
        self.order_id = order_id
        self.expected = expected
        self.paid = paid


class OrderStateError(ValueError):
    """An admin or buyer action does not apply to the order's status."""


class NotOrderOwner(PermissionError):
    pass


class CheckoutAborted(Exception):
    # raised inside the checkout transaction to roll it back
    def __init__(self, failure: CheckoutFailure):
        super().__init__(failure.value)
        self.failure = failure


class RefundRequestNotFound(LookupError):
    pass
