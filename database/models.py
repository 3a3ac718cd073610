"""
SQLAlchemy Models
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PaymentStatus(str, enum.Enum):
    """Settlement state shared by orders and top-ups"""

    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentMethod(str, enum.Enum):
    QRIS = "qris"
    BALANCE = "balance"


class TransactionType(str, enum.Enum):
    TOPUP = "topup"
    PAYMENT = "payment"
    REFUND = "refund"


class Product(Base):
    """Catalog entry; categories are products with is_category set"""

    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    name = Column(String(128), nullable=False)
    description = Column(Text)
    price = Column(Integer)  # rupiah, null for categories
    is_active = Column(Boolean, default=True, nullable=False)
    is_category = Column(Boolean, default=False, nullable=False)
    parent_id = Column(
        Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )
    low_stock_threshold = Column(Integer)  # null -> settings default
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, onupdate=utcnow)

    __table_args__ = (
        Index("idx_product_parent_active", "parent_id", "is_active"),
        CheckConstraint("price IS NULL OR price >= 0", name="ck_product_price"),
    )


class Credential(Base):
    """Sellable secret bundle for a product"""

    __tablename__ = "credentials"

    id = Column(Integer, primary_key=True)
    product_id = Column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    email = Column(String(255), nullable=False)
    password = Column(Text)  # encrypted
    pin = Column(Text)  # encrypted
    extra_info = Column(Text)
    is_sold = Column(Boolean, default=False, nullable=False)
    sold_at = Column(DateTime)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"))
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_credential_pool", "product_id", "is_sold", "created_at"),
        Index("idx_credential_order", "order_id"),
    )


class Order(Base):
    """Purchase of N credentials of one product"""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    order_ref = Column(String(64), nullable=False, unique=True)
    telegram_user_id = Column(BigInteger, nullable=False, index=True)
    telegram_username = Column(String(64))
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    product_name = Column(String(128), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    subtotal = Column(Integer, nullable=False)
    discount_amount = Column(Integer, nullable=False, default=0)
    voucher_code = Column(String(32))
    total_price = Column(Integer, nullable=False)
    amount_to_pay = Column(Integer)  # gateway amount_total (QRIS only)

    payment_status = Column(
        String(16), nullable=False, default=PaymentStatus.PENDING.value
    )
    payment_method = Column(String(16), nullable=False)
    source = Column(String(8), nullable=False, default="bot")
    gateway_transaction_id = Column(String(128))
    qr_payload = Column(Text)
    qr_message_id = Column(BigInteger)
    chat_id = Column(BigInteger)
    notes = Column(Text)
    cancel_reason = Column(String(64))

    created_at = Column(DateTime, default=utcnow, index=True)
    paid_at = Column(DateTime)
    fulfilled_at = Column(DateTime)
    updated_at = Column(DateTime, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "payment_status IN ('pending','paid','expired','cancelled')",
            name="ck_order_status",
        ),
        CheckConstraint("payment_method IN ('qris','balance')", name="ck_order_method"),
        CheckConstraint("quantity > 0", name="ck_order_quantity"),
        Index("idx_order_status_created", "payment_status", "created_at"),
        Index("idx_order_amount_pending", "payment_status", "amount_to_pay"),
    )

    @property
    def paid_amount(self) -> int:
        """What the buyer actually paid, gateway unique digits included"""
        return self.amount_to_pay or self.total_price


class UserBalance(Base):
    """Cached balance, materialized from balance_transactions"""

    __tablename__ = "user_balances"

    user_id = Column(BigInteger, primary_key=True, autoincrement=False)
    username = Column(String(64))
    balance = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (CheckConstraint("balance >= 0", name="ck_balance_floor"),)


class BalanceTransaction(Base):
    """Append-only ledger row (signed amount)"""

    __tablename__ = "balance_transactions"

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    type = Column(String(16), nullable=False)
    description = Column(String(255))
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"))
    topup_id = Column(Integer, ForeignKey("topup_requests.id", ondelete="SET NULL"))
    created_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        CheckConstraint(
            "type IN ('topup','payment','refund')", name="ck_balance_tx_type"
        ),
        Index("idx_balance_tx_user_ts", "user_id", "created_at"),
    )


class TopupRequest(Base):
    """Balance deposit paid through QRIS"""

    __tablename__ = "topup_requests"

    id = Column(Integer, primary_key=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    username = Column(String(64))
    amount = Column(Integer, nullable=False)  # credited on success
    amount_total = Column(Integer, nullable=False)  # charged, with uniquifier
    transaction_id = Column(String(128), nullable=False, unique=True)
    provider_transaction_id = Column(String(128))
    qr_payload = Column(Text)
    status = Column(String(16), nullable=False, default=PaymentStatus.PENDING.value)
    qr_message_id = Column(BigInteger)
    chat_id = Column(BigInteger)
    created_at = Column(DateTime, default=utcnow, index=True)
    paid_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','paid','expired')", name="ck_topup_status"
        ),
        Index("idx_topup_status_created", "status", "created_at"),
    )


class Voucher(Base):
    """Discount code"""

    __tablename__ = "vouchers"

    id = Column(Integer, primary_key=True)
    code = Column(String(32), nullable=False, unique=True)  # stored upper-case
    discount_type = Column(String(16), nullable=False)
    discount_value = Column(Integer, nullable=False)
    min_purchase = Column(Integer, nullable=False, default=0)
    max_uses = Column(Integer)
    used_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    valid_until = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "discount_type IN ('percentage','fixed')", name="ck_voucher_type"
        ),
        CheckConstraint(
            "max_uses IS NULL OR used_count <= max_uses", name="ck_voucher_cap"
        ),
    )


__all__ = [
    "Base",
    "utcnow",
    "PaymentStatus",
    "PaymentMethod",
    "TransactionType",
    "Product",
    "Credential",
    "Order",
    "UserBalance",
    "BalanceTransaction",
    "TopupRequest",
    "Voucher",
]
