"""Voucher validation and discount math.

Usage increments go through ``VoucherRepository.increment_usage_sync`` which
re-checks the cap in the UPDATE itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from core.telemetry import logger
from database.models import Voucher, utcnow
from database.repos import VoucherRepository

from .metrics import VOUCHER_REJECTED_TOTAL, VOUCHER_USED_TOTAL


class VoucherError(ValueError):
    """Invalid voucher; ``str(exc)`` is the chat message."""


@dataclass
class VoucherCheck:
    valid: bool
    voucher: Optional[Voucher] = None
    message: Optional[str] = None
    discount: int = 0


def _fmt_idr(amount: int) -> str:
    return f"{int(amount):,}".replace(",", ".")


def calculate_discount(voucher: Voucher, amount: int) -> int:
    """floor(amount * pct / 100) for percentage, min(value, amount) for fixed"""
    if voucher.discount_type == "percentage":
        return (int(amount) * int(voucher.discount_value)) // 100
    return min(int(voucher.discount_value), int(amount))


class VoucherService:
    @staticmethod
    def validate(code: str, amount: int, now: Optional[datetime] = None) -> VoucherCheck:
        """
        Checks a code against an order subtotal

        Returns:
            VoucherCheck with the computed discount, or the rejection message
        """
        now = now or utcnow()
        voucher = VoucherRepository.get_by_code_sync(code or "")
        reason = None
        message = None
        if not voucher:
            reason, message = "not_found", "Kode voucher tidak ditemukan"
        elif not voucher.is_active:
            reason, message = "inactive", "Voucher sudah tidak aktif"
        elif voucher.valid_until and voucher.valid_until < now:
            reason, message = "expired", "Voucher sudah expired"
        elif voucher.max_uses is not None and voucher.used_count >= voucher.max_uses:
            reason, message = "exhausted", "Voucher sudah habis digunakan"
        elif int(amount) < int(voucher.min_purchase or 0):
            reason = "min_purchase"
            message = f"Minimal order Rp {_fmt_idr(voucher.min_purchase)}"

        if reason:
            VOUCHER_REJECTED_TOTAL.labels(reason=reason).inc()
            return VoucherCheck(valid=False, voucher=voucher, message=message)

        return VoucherCheck(
            valid=True, voucher=voucher, discount=calculate_discount(voucher, amount)
        )

    @staticmethod
    def redeem(voucher_id: int) -> bool:
        """Counts one use; False when the cap was reached in the meantime"""
        used = VoucherRepository.increment_usage_sync(voucher_id)
        if used:
            VOUCHER_USED_TOTAL.inc()
        else:
            logger.warning("Voucher redeem rejected", extra={"voucher_id": voucher_id})
        return used

    @staticmethod
    def release(voucher_id: int) -> None:
        """Returns a use reserved for a checkout that never got a charge"""
        if VoucherRepository.release_usage_sync(voucher_id):
            logger.info("Voucher use released", extra={"voucher_id": voucher_id})

    @staticmethod
    def create(
        code: str,
        discount_type: str,
        discount_value: int,
        min_purchase: int = 0,
        max_uses: Optional[int] = None,
        valid_until: Optional[datetime] = None,
    ) -> Voucher:
        code = (code or "").strip().upper()
        if not code or len(code) > 32:
            raise VoucherError("Kode voucher tidak valid")
        if discount_type not in ("percentage", "fixed"):
            raise VoucherError("Tipe diskon harus percentage atau fixed")
        if int(discount_value) <= 0:
            raise VoucherError("Nilai diskon harus lebih dari 0")
        if discount_type == "percentage" and int(discount_value) > 100:
            raise VoucherError("Diskon persen maksimal 100")
        if max_uses is not None and int(max_uses) <= 0:
            raise VoucherError("Batas pemakaian harus lebih dari 0")
        if VoucherRepository.get_by_code_sync(code):
            raise VoucherError("Kode voucher sudah ada")
        voucher = VoucherRepository.create_sync(
            code=code,
            discount_type=discount_type,
            discount_value=int(discount_value),
            min_purchase=int(min_purchase or 0),
            max_uses=max_uses,
            valid_until=valid_until,
        )
        logger.info("Voucher created", extra={"code": code, "type": discount_type})
        return voucher

    @staticmethod
    def deactivate(code: str) -> bool:
        return VoucherRepository.deactivate_sync(code)

    @staticmethod
    def list_all() -> List[Voucher]:
        return VoucherRepository.list_sync()
