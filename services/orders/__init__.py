"""Order lifecycle, fulfillment and expiry"""

from .exceptions import (
    InsufficientBalanceError,
    InvalidOrderStateError,
    InvalidQuantityError,
    InvalidTopupAmountError,
    InvalidVoucherError,
    OrderNotFoundError,
    OrderServiceError,
    OutOfStockError,
    PaymentGatewayError,
    ProductNotFoundError,
)

__all__ = [
    "InsufficientBalanceError",
    "InvalidOrderStateError",
    "InvalidQuantityError",
    "InvalidTopupAmountError",
    "InvalidVoucherError",
    "OrderNotFoundError",
    "OrderServiceError",
    "OutOfStockError",
    "PaymentGatewayError",
    "ProductNotFoundError",
]
