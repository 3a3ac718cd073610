"""Database package."""

from .models import (  # noqa: F401
    BalanceTransaction,
    Credential,
    Order,
    PaymentStatus,
    Product,
    TopupRequest,
    UserBalance,
    Voucher,
)
