"""
Repository layer for catalog, credential pool, orders and vouchers
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import create_engine, func, update
from sqlalchemy.orm import sessionmaker

from core.config import settings
from core.telemetry import logger

from .models import (
    Credential,
    Order,
    PaymentStatus,
    Product,
    Voucher,
    utcnow,
)

engine = create_engine(
    settings.DB_URL,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_pre_ping=True,
    pool_recycle=3600,
    echo=False,
)

SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


class ProductRepository:
    """Catalog access"""

    @staticmethod
    def get_by_id_sync(product_id: int) -> Optional[Product]:
        with SessionLocal() as session:
            return session.query(Product).filter(Product.id == product_id).first()

    @staticmethod
    def list_categories_sync() -> List[Product]:
        with SessionLocal() as session:
            return (
                session.query(Product)
                .filter(Product.is_category.is_(True), Product.is_active.is_(True))
                .order_by(Product.name.asc())
                .all()
            )

    @staticmethod
    def list_products_sync(parent_id: Optional[int] = None) -> List[Product]:
        """Active purchasable products, optionally under one category"""
        with SessionLocal() as session:
            query = session.query(Product).filter(
                Product.is_category.is_(False), Product.is_active.is_(True)
            )
            if parent_id is not None:
                query = query.filter(Product.parent_id == parent_id)
            return query.order_by(Product.name.asc()).all()

    @staticmethod
    def create_sync(
        name: str,
        price: Optional[int] = None,
        description: Optional[str] = None,
        parent_id: Optional[int] = None,
        is_category: bool = False,
        low_stock_threshold: Optional[int] = None,
    ) -> Product:
        with SessionLocal() as session:
            product = Product(
                name=name,
                price=None if is_category else int(price or 0),
                description=description,
                parent_id=parent_id,
                is_category=is_category,
                low_stock_threshold=low_stock_threshold,
                is_active=True,
            )
            session.add(product)
            session.commit()
            session.refresh(product)
            return product

    @staticmethod
    def update_sync(product_id: int, **fields: Any) -> bool:
        allowed = {"name", "price", "description", "parent_id", "low_stock_threshold"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unsupported product fields: {sorted(unknown)}")
        with SessionLocal() as session:
            result = session.execute(
                update(Product).where(Product.id == product_id).values(**fields)
            )
            session.commit()
            return result.rowcount == 1

    @staticmethod
    def deactivate_sync(product_id: int) -> bool:
        """Soft delete; orders keep referencing the row"""
        with SessionLocal() as session:
            result = session.execute(
                update(Product)
                .where(Product.id == product_id, Product.is_active.is_(True))
                .values(is_active=False)
            )
            session.commit()
            return result.rowcount == 1


class CredentialRepository:
    """Credential pool. Allocation is the only place rows become sold."""

    @staticmethod
    def add_bulk_sync(product_id: int, rows: Iterable[Dict[str, Any]]) -> int:
        """
        Inserts credential rows

        Args:
            product_id: Owning product
            rows: dicts with email, password, pin, extra_info (already encrypted)

        Returns:
            Number of inserted rows
        """
        now = utcnow()
        with SessionLocal() as session:
            items = [
                Credential(
                    product_id=product_id,
                    email=row["email"],
                    password=row.get("password"),
                    pin=row.get("pin"),
                    extra_info=row.get("extra_info"),
                    is_sold=False,
                    created_at=row.get("created_at") or now,
                )
                for row in rows
            ]
            session.add_all(items)
            session.commit()
            return len(items)

    @staticmethod
    def get_stock_sync(product_id: int) -> int:
        """Unlocked unsold count, for display and advisory checks"""
        with SessionLocal() as session:
            return int(
                session.query(func.count(Credential.id))
                .filter(
                    Credential.product_id == product_id,
                    Credential.is_sold.is_(False),
                )
                .scalar()
                or 0
            )

    @staticmethod
    def get_stock_map_sync() -> Dict[int, int]:
        with SessionLocal() as session:
            rows = (
                session.query(Credential.product_id, func.count(Credential.id))
                .filter(Credential.is_sold.is_(False))
                .group_by(Credential.product_id)
                .all()
            )
            return {int(product_id): int(count) for product_id, count in rows}

    @staticmethod
    def allocate_sync(product_id: int, quantity: int, order_id: int) -> List[Credential]:
        """
        Binds ``quantity`` unsold credentials to an order, oldest first

        All or nothing: when the pool holds fewer than ``quantity`` unsold rows
        at statement time, nothing is marked and an empty list is returned.
        """
        if quantity <= 0:
            return []
        now = utcnow()
        with SessionLocal() as session:
            candidate_ids = [
                row[0]
                for row in session.query(Credential.id)
                .filter(
                    Credential.product_id == product_id,
                    Credential.is_sold.is_(False),
                )
                .order_by(Credential.created_at.asc(), Credential.id.asc())
                .limit(quantity)
                .with_for_update(skip_locked=True)
                .all()
            ]
            if len(candidate_ids) < quantity:
                session.rollback()
                return []

            result = session.execute(
                update(Credential)
                .where(
                    Credential.id.in_(candidate_ids),
                    Credential.is_sold.is_(False),
                )
                .values(is_sold=True, sold_at=now, order_id=order_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != quantity:
                session.rollback()
                logger.warning(
                    "Credential allocation lost race",
                    extra={
                        "product_id": product_id,
                        "order_id": order_id,
                        "wanted": quantity,
                        "got": result.rowcount,
                    },
                )
                return []
            session.commit()

            return (
                session.query(Credential)
                .filter(Credential.id.in_(candidate_ids))
                .order_by(Credential.created_at.asc(), Credential.id.asc())
                .all()
            )

    @staticmethod
    def mark_sold_sync(credential_ids: Sequence[int], order_id: int) -> int:
        """Admin-side sale marking; only flips rows that are still unsold"""
        if not credential_ids:
            return 0
        with SessionLocal() as session:
            result = session.execute(
                update(Credential)
                .where(
                    Credential.id.in_(list(credential_ids)),
                    Credential.is_sold.is_(False),
                )
                .values(is_sold=True, sold_at=utcnow(), order_id=order_id)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return int(result.rowcount)

    @staticmethod
    def get_by_order_sync(order_id: int) -> List[Credential]:
        with SessionLocal() as session:
            return (
                session.query(Credential)
                .filter(Credential.order_id == order_id)
                .order_by(Credential.created_at.asc(), Credential.id.asc())
                .all()
            )

    @staticmethod
    def list_unsold_sync(product_id: int, limit: Optional[int] = None) -> List[Credential]:
        with SessionLocal() as session:
            query = (
                session.query(Credential)
                .filter(
                    Credential.product_id == product_id,
                    Credential.is_sold.is_(False),
                )
                .order_by(Credential.created_at.asc(), Credential.id.asc())
            )
            if limit:
                query = query.limit(limit)
            return query.all()

    @staticmethod
    def withdraw_unsold_sync(product_id: int) -> List[Credential]:
        """Hard-deletes the unsold pool of a product and returns the removed rows"""
        with SessionLocal() as session:
            rows = (
                session.query(Credential)
                .filter(
                    Credential.product_id == product_id,
                    Credential.is_sold.is_(False),
                )
                .order_by(Credential.created_at.asc(), Credential.id.asc())
                .with_for_update(skip_locked=True)
                .all()
            )
            for row in rows:
                session.delete(row)
            session.commit()
            return rows


class OrderRepository:
    """Order persistence and conditional status transitions"""

    UPDATABLE_FIELDS = {
        "telegram_username",
        "notes",
        "qr_message_id",
        "chat_id",
        "gateway_transaction_id",
    }

    @staticmethod
    def create_sync(**fields: Any) -> Order:
        with SessionLocal() as session:
            order = Order(**fields)
            session.add(order)
            session.commit()
            session.refresh(order)
            return order

    @staticmethod
    def get_by_id_sync(order_id: int) -> Optional[Order]:
        with SessionLocal() as session:
            return session.query(Order).filter(Order.id == order_id).first()

    @staticmethod
    def get_by_ref_sync(order_ref: str) -> Optional[Order]:
        with SessionLocal() as session:
            return session.query(Order).filter(Order.order_ref == order_ref).first()

    @staticmethod
    def get_by_gateway_tx_sync(transaction_id: str) -> Optional[Order]:
        with SessionLocal() as session:
            return (
                session.query(Order)
                .filter(Order.gateway_transaction_id == transaction_id)
                .first()
            )

    @staticmethod
    def update_sync(order_id: int, patch: Dict[str, Any]) -> bool:
        """
        Patches non-state fields of an order

        Status, prices and timestamps only move through the transition
        helpers below.

        Raises:
            ValueError: on fields outside UPDATABLE_FIELDS
        """
        unknown = set(patch) - OrderRepository.UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported order fields: {sorted(unknown)}")
        if not patch:
            return False
        with SessionLocal() as session:
            result = session.execute(
                update(Order)
                .where(Order.id == order_id)
                .values(updated_at=utcnow(), **patch)
            )
            session.commit()
            return result.rowcount == 1

    @staticmethod
    def _transition_sync(
        order_id: int,
        from_statuses: Iterable[PaymentStatus],
        to_status: PaymentStatus,
        *extra_conditions,
        **values: Any,
    ) -> bool:
        with SessionLocal() as session:
            result = session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.payment_status.in_([s.value for s in from_statuses]),
                    *extra_conditions,
                )
                .values(payment_status=to_status.value, updated_at=utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    @staticmethod
    def mark_paid_sync(
        order_id: int, paid_at: Optional[datetime] = None, allow_expired: bool = False
    ) -> bool:
        """pending (or expired, under the late-payment policy) -> paid"""
        sources = [PaymentStatus.PENDING]
        if allow_expired:
            sources.append(PaymentStatus.EXPIRED)
        return OrderRepository._transition_sync(
            order_id, sources, PaymentStatus.PAID, paid_at=paid_at or utcnow()
        )

    @staticmethod
    def cancel_sync(order_id: int, reason: Optional[str] = None) -> bool:
        return OrderRepository._transition_sync(
            order_id,
            [PaymentStatus.PENDING],
            PaymentStatus.CANCELLED,
            cancel_reason=reason,
        )

    @staticmethod
    def expire_sync(order_id: int) -> bool:
        return OrderRepository._transition_sync(
            order_id, [PaymentStatus.PENDING], PaymentStatus.EXPIRED
        )

    @staticmethod
    def compensate_cancel_sync(order_id: int, reason: str) -> bool:
        """paid -> cancelled, only while nothing was delivered"""
        return OrderRepository._transition_sync(
            order_id,
            [PaymentStatus.PAID],
            PaymentStatus.CANCELLED,
            Order.fulfilled_at.is_(None),
            cancel_reason=reason,
        )

    @staticmethod
    def mark_fulfilled_sync(order_id: int) -> bool:
        with SessionLocal() as session:
            result = session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.payment_status == PaymentStatus.PAID.value,
                    Order.fulfilled_at.is_(None),
                )
                .values(fulfilled_at=utcnow(), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    @staticmethod
    def expire_stale_sync(cutoff: datetime) -> List[Order]:
        """
        Moves every pending order created before ``cutoff`` to expired

        Each row is flipped with its own ``status = pending`` guard, so an
        order confirmed between the scan and the update is left alone.

        Returns:
            The orders this call actually expired
        """
        with SessionLocal() as session:
            candidates = (
                session.query(Order)
                .filter(
                    Order.payment_status == PaymentStatus.PENDING.value,
                    Order.created_at < cutoff,
                )
                .order_by(Order.created_at.asc())
                .all()
            )
            expired: List[Order] = []
            now = utcnow()
            for order in candidates:
                result = session.execute(
                    update(Order)
                    .where(
                        Order.id == order.id,
                        Order.payment_status == PaymentStatus.PENDING.value,
                    )
                    .values(payment_status=PaymentStatus.EXPIRED.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    expired.append(order)
            session.commit()
            for order in expired:
                order.payment_status = PaymentStatus.EXPIRED.value
            return expired

    @staticmethod
    def find_pending_by_amount_sync(amount: int, tolerance: int) -> Optional[Order]:
        """
        Oldest pending QRIS order whose charged amount matches

        Exact matches win; otherwise the closest amount within ``tolerance``.
        """
        charged = func.coalesce(Order.amount_to_pay, Order.total_price)
        with SessionLocal() as session:
            base = session.query(Order).filter(
                Order.payment_status == PaymentStatus.PENDING.value,
                Order.payment_method == "qris",
            )
            exact = base.filter(charged == amount).order_by(Order.created_at.asc()).first()
            if exact:
                return exact
            return (
                base.filter(func.abs(charged - amount) <= tolerance)
                .order_by(func.abs(charged - amount).asc(), Order.created_at.asc())
                .first()
            )

    @staticmethod
    def list_recent_sync(limit: int = 10) -> List[Order]:
        with SessionLocal() as session:
            return (
                session.query(Order)
                .order_by(Order.created_at.desc(), Order.id.desc())
                .limit(limit)
                .all()
            )

    @staticmethod
    def list_by_user_sync(user_id: int, limit: int = 10) -> List[Order]:
        with SessionLocal() as session:
            return (
                session.query(Order)
                .filter(Order.telegram_user_id == user_id)
                .order_by(Order.created_at.desc(), Order.id.desc())
                .limit(limit)
                .all()
            )

    @staticmethod
    def list_pending_sync(newer_than: Optional[datetime] = None) -> List[Order]:
        with SessionLocal() as session:
            query = session.query(Order).filter(
                Order.payment_status == PaymentStatus.PENDING.value,
                Order.payment_method == "qris",
            )
            if newer_than is not None:
                query = query.filter(Order.created_at >= newer_than)
            return query.order_by(Order.created_at.asc()).all()

    @staticmethod
    def stats_sync() -> Dict[str, int]:
        """Counts per status plus paid revenue"""
        with SessionLocal() as session:
            rows = (
                session.query(Order.payment_status, func.count(Order.id))
                .group_by(Order.payment_status)
                .all()
            )
            revenue = (
                session.query(func.coalesce(func.sum(Order.total_price), 0))
                .filter(Order.payment_status == PaymentStatus.PAID.value)
                .scalar()
            )
            stats = {status.value: 0 for status in PaymentStatus}
            stats.update({status: int(count) for status, count in rows})
            stats["revenue"] = int(revenue or 0)
            return stats


class VoucherRepository:
    """Voucher lookup and capped usage counter"""

    @staticmethod
    def get_by_code_sync(code: str) -> Optional[Voucher]:
        with SessionLocal() as session:
            return (
                session.query(Voucher)
                .filter(Voucher.code == code.strip().upper())
                .first()
            )

    @staticmethod
    def create_sync(
        code: str,
        discount_type: str,
        discount_value: int,
        min_purchase: int = 0,
        max_uses: Optional[int] = None,
        valid_until: Optional[datetime] = None,
    ) -> Voucher:
        with SessionLocal() as session:
            voucher = Voucher(
                code=code.strip().upper(),
                discount_type=discount_type,
                discount_value=int(discount_value),
                min_purchase=int(min_purchase or 0),
                max_uses=max_uses,
                used_count=0,
                is_active=True,
                valid_until=valid_until,
            )
            session.add(voucher)
            session.commit()
            session.refresh(voucher)
            return voucher

    @staticmethod
    def list_sync(active_only: bool = False) -> List[Voucher]:
        with SessionLocal() as session:
            query = session.query(Voucher)
            if active_only:
                query = query.filter(Voucher.is_active.is_(True))
            return query.order_by(Voucher.created_at.desc()).all()

    @staticmethod
    def deactivate_sync(code: str) -> bool:
        with SessionLocal() as session:
            result = session.execute(
                update(Voucher)
                .where(Voucher.code == code.strip().upper(), Voucher.is_active.is_(True))
                .values(is_active=False)
            )
            session.commit()
            return result.rowcount == 1

    @staticmethod
    def increment_usage_sync(voucher_id: int) -> bool:
        """used_count + 1 unless the voucher is inactive, expired or at its cap"""
        now = utcnow()
        with SessionLocal() as session:
            result = session.execute(
                update(Voucher)
                .where(
                    Voucher.id == voucher_id,
                    Voucher.is_active.is_(True),
                    (Voucher.valid_until.is_(None)) | (Voucher.valid_until > now),
                    (Voucher.max_uses.is_(None))
                    | (Voucher.used_count < Voucher.max_uses),
                )
                .values(used_count=Voucher.used_count + 1)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    @staticmethod
    def release_usage_sync(voucher_id: int) -> bool:
        """Gives back one use taken by increment_usage_sync; never below zero"""
        with SessionLocal() as session:
            result = session.execute(
                update(Voucher)
                .where(Voucher.id == voucher_id, Voucher.used_count > 0)
                .values(used_count=Voucher.used_count - 1)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1


__all__ = [
    "engine",
    "SessionLocal",
    "ProductRepository",
    "CredentialRepository",
    "OrderRepository",
    "VoucherRepository",
]
