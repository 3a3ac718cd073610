"""Per-user stored value with an append-only transaction log."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from core.telemetry import logger
from database.balance_repos import BalanceRepository
from database.models import BalanceTransaction, TransactionType, UserBalance

INSUFFICIENT_BALANCE = "insufficient_balance"


@dataclass
class DebitResult:
    ok: bool
    new_balance: int
    error: Optional[str] = None


def _positive(amount: int) -> int:
    amount = int(amount)
    if amount <= 0:
        raise ValueError("amount must be positive")
    return amount


class BalanceLedger:
    """All balance mutations go through here."""

    def credit(
        self,
        user_id: int,
        amount: int,
        reason: str,
        topup_id: Optional[int] = None,
    ) -> int:
        new_balance = BalanceRepository.credit_sync(
            user_id,
            _positive(amount),
            TransactionType.TOPUP,
            description=reason,
            topup_id=topup_id,
        )
        logger.info(
            "Balance credited",
            extra={"user_id": user_id, "amount": amount, "balance": new_balance},
        )
        return new_balance

    def debit(self, user_id: int, amount: int, order_id: int, reason: str) -> DebitResult:
        """Atomic debit; insufficient funds leave the ledger untouched"""
        amount = _positive(amount)
        new_balance = BalanceRepository.debit_if_enough_balance_sync(
            user_id, amount, order_id=order_id, description=reason
        )
        if new_balance is None:
            current = BalanceRepository.get_balance_sync(user_id)
            logger.info(
                "Balance debit rejected",
                extra={"user_id": user_id, "amount": amount, "balance": current},
            )
            return DebitResult(ok=False, new_balance=current, error=INSUFFICIENT_BALANCE)
        logger.info(
            "Balance debited",
            extra={
                "user_id": user_id,
                "amount": amount,
                "order_id": order_id,
                "balance": new_balance,
            },
        )
        return DebitResult(ok=True, new_balance=new_balance)

    def refund(self, user_id: int, amount: int, order_id: int, reason: str) -> int:
        new_balance = BalanceRepository.credit_sync(
            user_id,
            _positive(amount),
            TransactionType.REFUND,
            description=reason,
            order_id=order_id,
        )
        logger.warning(
            "Balance refunded",
            extra={
                "user_id": user_id,
                "amount": amount,
                "order_id": order_id,
                "balance": new_balance,
            },
        )
        return new_balance

    def get_balance(self, user_id: int) -> int:
        return BalanceRepository.get_balance_sync(user_id)

    def get_or_create(self, user_id: int, username: Optional[str] = None) -> UserBalance:
        return BalanceRepository.get_or_create_sync(user_id, username)

    def history(self, user_id: int, limit: int = 10) -> List[BalanceTransaction]:
        return BalanceRepository.history_sync(user_id, limit)

    def ledger_sum(self, user_id: int) -> int:
        return BalanceRepository.ledger_sum_sync(user_id)

    def is_consistent(self, user_id: int) -> bool:
        return self.get_balance(user_id) == self.ledger_sum(user_id)
