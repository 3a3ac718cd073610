"""QRIS top-ups that credit the stored balance."""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from core.config import Settings, settings as default_settings
from core.telemetry import logger
from database.balance_repos import TopupRepository
from database.models import PaymentStatus, TopupRequest, utcnow
from services.gateway.qr_image import render_qr_png
from services.gateway.qris_client import QrisClient
from services.notifier import Notifier
from services.orders.exceptions import InvalidTopupAmountError
from services.orders.metrics import LATE_PAYMENTS_TOTAL, TOPUPS_TOTAL
from services.orders.rendering import fmt_idr


def topup_reference(user_id: int, now_ms: Optional[int] = None) -> str:
    ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"TOPUP-{user_id}-{ms}"


@dataclass
class TopupCompletion:
    applied: bool
    topup: Optional[TopupRequest] = None
    new_balance: Optional[int] = None
    reason: Optional[str] = None


class TopupService:
    def __init__(
        self,
        gateway: Optional[QrisClient] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.gateway = gateway or QrisClient()
        self.notifier = notifier or Notifier()

    def validate_amount(self, amount: int) -> int:
        amount = int(amount)
        if amount < self.settings.TOPUP_MIN_AMOUNT:
            raise InvalidTopupAmountError(
                f"amount {amount} below minimum",
                user_message=f"❌ Minimal topup {fmt_idr(self.settings.TOPUP_MIN_AMOUNT)}",
            )
        if amount > self.settings.TOPUP_MAX_AMOUNT:
            raise InvalidTopupAmountError(
                f"amount {amount} above maximum",
                user_message=f"❌ Maksimal topup {fmt_idr(self.settings.TOPUP_MAX_AMOUNT)}",
            )
        return amount

    async def create_topup(
        self,
        user_id: int,
        amount: int,
        username: Optional[str] = None,
        chat_id: Optional[int] = None,
    ) -> TopupRequest:
        """
        Creates the gateway charge first, then the pending top-up row

        Raises:
            InvalidTopupAmountError: amount outside the configured range
            PaymentGatewayError: charge creation failed (no row written)
        """
        amount = self.validate_amount(amount)
        reference = topup_reference(user_id)
        charge = await self.gateway.create_charge(reference, amount, f"telegram_{user_id}")

        topup = TopupRepository.create_sync(
            user_id=user_id,
            amount=amount,
            amount_total=charge.amount_to_charge,
            transaction_id=reference,
            provider_transaction_id=charge.charge_id,
            qr_payload=charge.qr_payload,
            username=username,
            chat_id=chat_id or user_id,
        )
        TOPUPS_TOTAL.labels(to_status="pending").inc()

        caption = (
            "💳 TOPUP SALDO\n\n"
            f"Nominal: {fmt_idr(amount)}\n"
            f"Total Bayar: {fmt_idr(charge.amount_to_charge)}\n"
            f"ID: {reference}\n\n"
            f"⏳ Bayar dalam {self.settings.TOPUP_EXPIRY_MINUTES} menit.\n"
            "Pastikan nominal sesuai sampai digit terakhir."
        )
        try:
            photo = render_qr_png(charge.qr_payload, filename=f"{reference}.png")
            message_id = await self.notifier.send_photo(
                topup.chat_id, photo, caption=caption
            )
        except Exception as e:
            logger.error("Topup QR render failed", extra={"ref": reference, "error": str(e)})
            message_id = None
        if message_id:
            TopupRepository.set_qr_message_sync(topup.id, topup.chat_id, message_id)
            topup.qr_message_id = message_id

        logger.info(
            "Topup created",
            extra={
                "ref": reference,
                "user_id": user_id,
                "amount": amount,
                "amount_total": charge.amount_to_charge,
            },
        )
        return topup

    async def complete_topup(self, topup_id: int, source: str = "webhook") -> TopupCompletion:
        """
        Settles a top-up and credits the nominal amount

        Idempotent; an expired top-up follows the late-payment policy.
        """
        topup = TopupRepository.get_by_id_sync(topup_id)
        if not topup:
            return TopupCompletion(applied=False, reason="not_found")

        new_balance = TopupRepository.complete_and_credit_sync(topup_id)
        if new_balance is None:
            current = TopupRepository.get_by_id_sync(topup_id)
            if current.status == PaymentStatus.EXPIRED.value:
                if not self.settings.accept_late_payments:
                    LATE_PAYMENTS_TOTAL.labels(decision="rejected").inc()
                    await self.notifier.send_admin_alert(
                        "⚠️ TOPUP TERLAMBAT\n\n"
                        f"ID: {current.transaction_id}\n"
                        f"User: {current.user_id} (@{current.username or '-'})\n"
                        f"Nominal: {fmt_idr(current.amount)}\n"
                        "Topup sudah expired, cek dan proses manual."
                    )
                    return TopupCompletion(
                        applied=False, topup=current, reason="late_payment_rejected"
                    )
                new_balance = TopupRepository.complete_and_credit_sync(
                    topup_id, allow_expired=True
                )
                if new_balance is not None:
                    LATE_PAYMENTS_TOTAL.labels(decision="accepted").inc()
            if new_balance is None:
                current = TopupRepository.get_by_id_sync(topup_id)
                return TopupCompletion(
                    applied=False, topup=current, reason=f"already_{current.status}"
                )

        TOPUPS_TOTAL.labels(to_status="paid").inc()
        logger.info(
            "Topup completed",
            extra={
                "ref": topup.transaction_id,
                "user_id": topup.user_id,
                "amount": topup.amount,
                "balance": new_balance,
                "source": source,
            },
        )
        await self.notifier.delete_message(topup.chat_id, topup.qr_message_id)
        await self.notifier.send_message(
            topup.chat_id or topup.user_id,
            "✅ *Topup Berhasil!*\n\n"
            f"💰 Nominal: {fmt_idr(topup.amount)}\n"
            f"💳 Saldo sekarang: {fmt_idr(new_balance)}\n\n"
            "Terima kasih!",
            parse_mode="Markdown",
        )
        return TopupCompletion(
            applied=True,
            topup=TopupRepository.get_by_id_sync(topup_id),
            new_balance=new_balance,
        )

    async def notify_expired(self, topup: TopupRequest) -> None:
        await self.notifier.delete_message(topup.chat_id, topup.qr_message_id)
        await self.notifier.send_message(
            topup.chat_id or topup.user_id,
            f"⏰ Topup {topup.transaction_id} kedaluwarsa karena belum dibayar.",
        )

    async def expire_topup(self, topup_id: int) -> bool:
        topup = TopupRepository.get_by_id_sync(topup_id)
        if not topup or not TopupRepository.expire_sync(topup_id):
            return False
        TOPUPS_TOTAL.labels(to_status="expired").inc()
        await self.notify_expired(topup)
        return True

    async def cleanup_expired_topups(
        self, ttl_minutes: Optional[int] = None, now: Optional[datetime] = None
    ) -> List[TopupRequest]:
        ttl = ttl_minutes if ttl_minutes is not None else self.settings.TOPUP_EXPIRY_MINUTES
        cutoff = (now or utcnow()) - timedelta(minutes=ttl)
        expired = TopupRepository.expire_stale_sync(cutoff)
        for topup in expired:
            TOPUPS_TOTAL.labels(to_status="expired").inc()
            await self.notify_expired(topup)
        return expired

    def list_user_topups(self, user_id: int, limit: int = 5) -> List[TopupRequest]:
        return TopupRepository.list_by_user_sync(user_id, limit)
