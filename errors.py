from typing import Any


class ShopError(Exception):
    """Base for business-rule failures raised by the service modules."""

    status_code = 400

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra


class NotFoundError(ShopError):
    status_code = 404


class CartError(ShopError):
    pass


class InsufficientStock(ShopError):
    pass


class InvalidTransition(ShopError):
    pass


class StockConflict(ShopError):
    status_code = 409
