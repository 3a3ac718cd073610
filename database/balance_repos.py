"""Repositories for the balance ledger and QRIS top-up requests."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, update

from .models import (
    BalanceTransaction,
    PaymentStatus,
    TopupRequest,
    TransactionType,
    UserBalance,
    utcnow,
)
from .repos import SessionLocal


def _ensure_balance_row(session, user_id: int, username: Optional[str] = None) -> None:
    """INSERT ... ON CONFLICT DO NOTHING so concurrent first credits do not collide"""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        if session.get(UserBalance, user_id) is None:
            session.add(UserBalance(user_id=user_id, username=username, balance=0))
            session.flush()
        return
    now = utcnow()
    session.execute(
        insert(UserBalance)
        .values(
            user_id=user_id,
            username=username,
            balance=0,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["user_id"])
    )


def _read_balance(session, user_id: int) -> int:
    value = (
        session.query(UserBalance.balance)
        .filter(UserBalance.user_id == user_id)
        .scalar()
    )
    return int(value or 0)


def _apply_credit(
    session,
    user_id: int,
    amount: int,
    tx_type: TransactionType,
    description: Optional[str],
    order_id: Optional[int] = None,
    topup_id: Optional[int] = None,
) -> int:
    _ensure_balance_row(session, user_id)
    session.execute(
        update(UserBalance)
        .where(UserBalance.user_id == user_id)
        .values(balance=UserBalance.balance + amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    session.add(
        BalanceTransaction(
            user_id=user_id,
            amount=amount,
            type=tx_type.value,
            description=description,
            order_id=order_id,
            topup_id=topup_id,
        )
    )
    session.flush()
    return _read_balance(session, user_id)


class BalanceRepository:
    """Cached balance plus its append-only transaction log, written together"""

    @staticmethod
    def get_or_create_sync(user_id: int, username: Optional[str] = None) -> UserBalance:
        with SessionLocal() as session:
            _ensure_balance_row(session, user_id, username)
            session.commit()
            return session.get(UserBalance, user_id)

    @staticmethod
    def get_balance_sync(user_id: int) -> int:
        with SessionLocal() as session:
            return _read_balance(session, user_id)

    @staticmethod
    def credit_sync(
        user_id: int,
        amount: int,
        tx_type: TransactionType = TransactionType.TOPUP,
        description: Optional[str] = None,
        order_id: Optional[int] = None,
        topup_id: Optional[int] = None,
    ) -> int:
        """Adds ``amount`` and appends the matching positive row; returns new balance"""
        amount = int(amount)
        with SessionLocal() as session:
            new_balance = _apply_credit(
                session, user_id, amount, tx_type, description, order_id, topup_id
            )
            session.commit()
            return new_balance

    @staticmethod
    def debit_if_enough_balance_sync(
        user_id: int,
        amount: int,
        order_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Optional[int]:
        """
        Single conditional decrement with a floor check

        Returns:
            New balance, or None when funds were insufficient (nothing written)
        """
        amount = int(amount)
        with SessionLocal() as session:
            result = session.execute(
                update(UserBalance)
                .where(UserBalance.user_id == user_id, UserBalance.balance >= amount)
                .values(balance=UserBalance.balance - amount, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.add(
                BalanceTransaction(
                    user_id=user_id,
                    amount=-amount,
                    type=TransactionType.PAYMENT.value,
                    description=description,
                    order_id=order_id,
                )
            )
            session.flush()
            new_balance = _read_balance(session, user_id)
            session.commit()
            return new_balance

    @staticmethod
    def ledger_sum_sync(user_id: int) -> int:
        with SessionLocal() as session:
            value = (
                session.query(func.coalesce(func.sum(BalanceTransaction.amount), 0))
                .filter(BalanceTransaction.user_id == user_id)
                .scalar()
            )
            return int(value or 0)

    @staticmethod
    def history_sync(user_id: int, limit: int = 10) -> List[BalanceTransaction]:
        with SessionLocal() as session:
            return (
                session.query(BalanceTransaction)
                .filter(BalanceTransaction.user_id == user_id)
                .order_by(BalanceTransaction.created_at.desc(), BalanceTransaction.id.desc())
                .limit(limit)
                .all()
            )


class TopupRepository:
    @staticmethod
    def create_sync(
        user_id: int,
        amount: int,
        amount_total: int,
        transaction_id: str,
        provider_transaction_id: Optional[str] = None,
        qr_payload: Optional[str] = None,
        username: Optional[str] = None,
        chat_id: Optional[int] = None,
    ) -> TopupRequest:
        with SessionLocal() as session:
            topup = TopupRequest(
                user_id=user_id,
                username=username,
                amount=int(amount),
                amount_total=int(amount_total),
                transaction_id=transaction_id,
                provider_transaction_id=provider_transaction_id,
                qr_payload=qr_payload,
                chat_id=chat_id,
                status=PaymentStatus.PENDING.value,
            )
            session.add(topup)
            session.commit()
            session.refresh(topup)
            return topup

    @staticmethod
    def get_by_id_sync(topup_id: int) -> Optional[TopupRequest]:
        with SessionLocal() as session:
            return session.query(TopupRequest).filter(TopupRequest.id == topup_id).first()

    @staticmethod
    def get_by_transaction_id_sync(transaction_id: str) -> Optional[TopupRequest]:
        """Looks up by our TOPUP-... reference or the provider's id"""
        with SessionLocal() as session:
            return (
                session.query(TopupRequest)
                .filter(
                    (TopupRequest.transaction_id == transaction_id)
                    | (TopupRequest.provider_transaction_id == transaction_id)
                )
                .first()
            )

    @staticmethod
    def set_qr_message_sync(topup_id: int, chat_id: int, message_id: int) -> bool:
        with SessionLocal() as session:
            result = session.execute(
                update(TopupRequest)
                .where(TopupRequest.id == topup_id)
                .values(chat_id=chat_id, qr_message_id=message_id)
            )
            session.commit()
            return result.rowcount == 1

    @staticmethod
    def complete_and_credit_sync(
        topup_id: int, allow_expired: bool = False
    ) -> Optional[int]:
        """
        pending -> paid and the nominal amount credited, in one transaction

        Returns:
            New balance, or None when this call did not win the transition
        """
        sources = [PaymentStatus.PENDING.value]
        if allow_expired:
            sources.append(PaymentStatus.EXPIRED.value)
        with SessionLocal() as session:
            topup = session.get(TopupRequest, topup_id)
            if topup is None:
                return None
            result = session.execute(
                update(TopupRequest)
                .where(TopupRequest.id == topup_id, TopupRequest.status.in_(sources))
                .values(status=PaymentStatus.PAID.value, paid_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            new_balance = _apply_credit(
                session,
                topup.user_id,
                int(topup.amount),
                TransactionType.TOPUP,
                f"Top up {topup.transaction_id}",
                topup_id=topup.id,
            )
            session.commit()
            return new_balance

    @staticmethod
    def expire_sync(topup_id: int) -> bool:
        with SessionLocal() as session:
            result = session.execute(
                update(TopupRequest)
                .where(
                    TopupRequest.id == topup_id,
                    TopupRequest.status == PaymentStatus.PENDING.value,
                )
                .values(status=PaymentStatus.EXPIRED.value)
            )
            session.commit()
            return result.rowcount == 1

    @staticmethod
    def expire_stale_sync(cutoff: datetime) -> List[TopupRequest]:
        with SessionLocal() as session:
            candidates = (
                session.query(TopupRequest)
                .filter(
                    TopupRequest.status == PaymentStatus.PENDING.value,
                    TopupRequest.created_at < cutoff,
                )
                .order_by(TopupRequest.created_at.asc())
                .all()
            )
            expired: List[TopupRequest] = []
            for topup in candidates:
                result = session.execute(
                    update(TopupRequest)
                    .where(
                        TopupRequest.id == topup.id,
                        TopupRequest.status == PaymentStatus.PENDING.value,
                    )
                    .values(status=PaymentStatus.EXPIRED.value)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    expired.append(topup)
            session.commit()
            for topup in expired:
                topup.status = PaymentStatus.EXPIRED.value
            return expired

    @staticmethod
    def find_pending_by_amount_sync(
        amount: int, tolerance: int
    ) -> Optional[TopupRequest]:
        with SessionLocal() as session:
            base = session.query(TopupRequest).filter(
                TopupRequest.status == PaymentStatus.PENDING.value
            )
            exact = (
                base.filter(TopupRequest.amount_total == amount)
                .order_by(TopupRequest.created_at.asc())
                .first()
            )
            if exact:
                return exact
            return (
                base.filter(func.abs(TopupRequest.amount_total - amount) <= tolerance)
                .order_by(
                    func.abs(TopupRequest.amount_total - amount).asc(),
                    TopupRequest.created_at.asc(),
                )
                .first()
            )

    @staticmethod
    def list_by_user_sync(user_id: int, limit: int = 5) -> List[TopupRequest]:
        with SessionLocal() as session:
            return (
                session.query(TopupRequest)
                .filter(TopupRequest.user_id == user_id)
                .order_by(TopupRequest.created_at.desc())
                .limit(limit)
                .all()
            )

    @staticmethod
    def list_pending_sync(newer_than: Optional[datetime] = None) -> List[TopupRequest]:
        with SessionLocal() as session:
            query = session.query(TopupRequest).filter(
                TopupRequest.status == PaymentStatus.PENDING.value
            )
            if newer_than is not None:
                query = query.filter(TopupRequest.created_at >= newer_than)
            return query.order_by(TopupRequest.created_at.asc()).all()


__all__ = ["BalanceRepository", "TopupRepository"]
