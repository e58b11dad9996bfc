"""
ChatShop - Domain errors

Raised by the cart, ledger, placement and fulfillment services and mapped to
chat replies by the conversation handler and to HTTP responses by the API layer.
"""
from decimal import Decimal


class ChatShopError(Exception):
    """Base class for every recoverable domain failure."""


class NoActiveOrder(ChatShopError):
    def __init__(self, message: str = "No open cart for this conversation."):
        super().__init__(message)


class MissingDeliveryAddress(ChatShopError):
    def __init__(self, message: str = "A delivery address is required before confirming."):
        super().__init__(message)


class DuplicateConfirmation(ChatShopError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction '{transaction_id}' is still awaiting payment.")


class InsufficientIngredient(ChatShopError):
    def __init__(self, ingredient_id: str, name: str, required: Decimal, available: Decimal):
        self.ingredient_id = ingredient_id
        self.name = name
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient stock for '{name}': required={required}, available={available}"
        )


class InvalidStatusTransition(ChatShopError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move order from '{current}' to '{target}'.")


class ConcurrencyConflict(ChatShopError):
    """Optimistic write kept colliding after the bounded retry budget."""


class ClassifierTimeout(ChatShopError):
    pass


class ClassifierUnavailable(ChatShopError):
    pass


class NotFound(ChatShopError):
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} '{key}' not found.")


class PaymentRejected(ChatShopError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)
