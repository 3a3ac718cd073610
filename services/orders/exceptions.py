"""Typed failures raised by the order, top-up and gateway services."""

from __future__ import annotations

GENERIC_RETRY_MESSAGE = "❌ Gagal membuat pembayaran. Silakan coba lagi."


class OrderServiceError(Exception):
    """Base error; ``user_message`` is safe to show in chat."""

    user_message = "❌ Terjadi kesalahan. Silakan coba lagi."

    def __init__(self, message: str = "", user_message: str = None) -> None:
        super().__init__(message or self.__class__.__name__)
        if user_message:
            self.user_message = user_message


class ProductNotFoundError(OrderServiceError):
    user_message = "❌ Produk tidak ditemukan."


class InvalidQuantityError(OrderServiceError):
    user_message = "❌ Jumlah tidak valid."


class OutOfStockError(OrderServiceError):
    user_message = "❌ Maaf, stok sudah habis."


class InsufficientBalanceError(OrderServiceError):
    user_message = "❌ Saldo tidak cukup."

    def __init__(self, balance: int = 0, required: int = 0) -> None:
        super().__init__(f"balance {balance} < required {required}")
        self.balance = balance
        self.required = required


class PaymentGatewayError(OrderServiceError):
    user_message = GENERIC_RETRY_MESSAGE


class OrderNotFoundError(OrderServiceError):
    user_message = "❌ Pesanan tidak ditemukan."


class InvalidOrderStateError(OrderServiceError):
    user_message = "❌ Pesanan sudah tidak bisa diubah."


class InvalidVoucherError(OrderServiceError):
    """Carries the voucher rejection text as the chat message."""

    def __init__(self, message: str) -> None:
        super().__init__(message, user_message=f"❌ {message}")


class InvalidTopupAmountError(OrderServiceError):
    pass


__all__ = [
    "GENERIC_RETRY_MESSAGE",
    "OrderServiceError",
    "ProductNotFoundError",
    "InvalidQuantityError",
    "OutOfStockError",
    "InsufficientBalanceError",
    "PaymentGatewayError",
    "OrderNotFoundError",
    "InvalidOrderStateError",
    "InvalidTopupAmountError",
    "InvalidVoucherError",
]
